"""
Stateful micro GPT trainer: owns the vocabulary, dataset split, parameters and
Adam state, and exposes one-step training, loss estimation, sampling, and a
plain-number trace of the latest step for display.
"""

import copy
import math
import re
from dataclasses import dataclass, field

from model import (
    BLOCK_SIZE,
    N_EMBD,
    N_HEAD,
    N_LAYER,
    gpt,
    gpt_with_trace,
    init_state_dict,
    make_rng,
    sample_categorical,
    softmax,
    softmax_numeric,
    top_k_indices,
)

LEARNING_RATE = 0.01
BETA1 = 0.85
BETA2 = 0.99
EPS_ADAM = 1e-8
TEMPERATURE = 0.5
PROB_FLOOR = 1e-10
EVAL_SAMPLES = 200
TRACE_TOP_K = 6
PROBE_TOP_K = 8


@dataclass
class StepTrace:
    """Snapshot of the latest training step (or initial probe), as plain numbers and strings."""

    context: list[int] = field(default_factory=list)
    context_tokens: list[str] = field(default_factory=list)
    target_index: int = 0
    target_token: str = "BOS"
    predicted_token: str = "BOS"
    loss: float = 0.0
    lr: float = 0.0
    grad_norm: float = 0.0
    top: list[tuple[str, float]] = field(default_factory=list)
    token_embedding: list[float] = field(default_factory=list)
    position_embedding: list[float] = field(default_factory=list)
    summed_embedding: list[float] = field(default_factory=list)
    mlp_out: list[float] = field(default_factory=list)
    ln_out: list[float] = field(default_factory=list)
    logits: list[float] = field(default_factory=list)
    target_prob: float = 0.0
    attention_weights: list[float] = field(default_factory=list)

    def copy(self) -> "StepTrace":
        """Deep copy, safe to keep in a history while training continues."""
        return copy.deepcopy(self)


def parse_docs(text: str) -> list[str]:
    """One document per line: stripped, empty lines dropped."""
    return [line.strip() for line in re.split(r"\r?\n", text) if line.strip()]


def shuffle_docs(docs: list[str], rng) -> list[str]:
    """Fisher-Yates shuffle driven by a seeded rng; returns a new list."""
    out = list(docs)
    for i in range(len(out) - 1, 0, -1):
        j = int(rng() * (i + 1))
        out[i], out[j] = out[j], out[i]
    return out


def split_docs(docs: list[str]) -> tuple[list[str], list[str], list[str]]:
    """80/10/10 split by index cutoff."""
    n1 = int(0.8 * len(docs))
    n2 = int(0.9 * len(docs))
    return docs[:n1], docs[n1:n2], docs[n2:]


class Trainer:
    """Character-level GPT trained one document per step with Adam."""

    def __init__(
        self,
        dataset_text: str,
        *,
        block_size: int = BLOCK_SIZE,
        n_embd: int = N_EMBD,
        max_steps: int = 1000,
        eval_every: int = 25,
        seed: int = 42,
    ):
        docs = parse_docs(dataset_text)
        if len(docs) < 2:
            raise ValueError("Dataset must have at least 2 non-empty lines.")
        if n_embd <= 0 or n_embd % N_HEAD != 0:
            raise ValueError(f"n_embd must be a positive multiple of n_head={N_HEAD}, got {n_embd}")
        if block_size < 1:
            raise ValueError(f"block_size must be >= 1, got {block_size}")
        if eval_every < 1:
            raise ValueError(f"eval_every must be >= 1, got {eval_every}")
        if max_steps < 0:
            raise ValueError(f"max_steps must be >= 0, got {max_steps}")

        self._block_size = block_size
        self._n_embd = n_embd
        self._max_steps = max_steps
        self._eval_every = eval_every
        self._seed = seed
        self._n_layer = N_LAYER
        self._n_head = N_HEAD
        self._head_dim = n_embd // N_HEAD

        # Tokenizer: sorted unique chars, BOS id is len(uchars)
        self._uchars = sorted(set("".join(docs)))
        self._char_to_id = {ch: i for i, ch in enumerate(self._uchars)}
        self._bos = len(self._uchars)
        self._vocab_size = len(self._uchars) + 1

        # Separate streams so shuffling, init and sampling do not perturb each other
        shuffled = shuffle_docs(docs, make_rng(seed))
        self._train_docs, self._dev_docs, self._test_docs = split_docs(shuffled)
        self._rng = make_rng(seed + 2)

        self._state_dict, self._params = init_state_dict(
            self._vocab_size, n_embd, self._n_layer, block_size, make_rng(seed + 1)
        )
        self._m = [0.0] * len(self._params)
        self._v = [0.0] * len(self._params)

        self._step = 0
        self._losses = []
        self._train_loss = 0.0
        self._dev_loss = 0.0
        self._test_loss = 0.0
        self._sample = ""
        self._top_tokens = []
        self._latest_batch_loss = 0.0
        self._last_trace = StepTrace()

        self.evaluate()
        tokens = self.encode(self._train_docs[0])
        self._last_trace = self._capture_trace(tokens, context_len=1, loss=0.0, lr=LEARNING_RATE, grad_norm=0.0)

    # -------------------------------------------------------------------------
    # Tokenizer
    # -------------------------------------------------------------------------

    def token_str(self, idx: int) -> str:
        if idx == self._bos:
            return "BOS"
        return self._uchars[idx] if 0 <= idx < len(self._uchars) else "?"

    def encode(self, doc: str) -> list[int]:
        """[BOS, char ids..., BOS]."""
        return [self._bos] + [self._char_to_id[ch] for ch in doc] + [self._bos]

    def _empty_cache(self):
        return [[] for _ in range(self._n_layer)], [[] for _ in range(self._n_layer)]

    def _gpt(self, token_id, pos_id, keys, values):
        return gpt(token_id, pos_id, keys, values, self._state_dict, self._n_layer, self._n_head, self._head_dim)

    # -------------------------------------------------------------------------
    # Training
    # -------------------------------------------------------------------------

    def train_step(self) -> None:
        """Forward + backward + Adam on the next training document. No-op once max_steps is reached."""
        if self._step >= self._max_steps:
            return

        params = self._params
        m, v = self._m, self._v
        step = self._step
        doc = self._train_docs[step % len(self._train_docs)]
        tokens = self.encode(doc)
        n = min(self._block_size, len(tokens) - 1)

        if n < 1:
            self._losses.append(0.0)
            self._latest_batch_loss = 0.0
            self._step += 1
            self._maybe_evaluate()
            return

        keys, values = self._empty_cache()
        losses = []
        for pos_id in range(n):
            token_id, target_id = tokens[pos_id], tokens[pos_id + 1]
            logits = self._gpt(token_id, pos_id, keys, values)
            probs = softmax(logits)
            loss_t = -probs[target_id].log()
            losses.append(loss_t)
        loss = (1 / n) * sum(losses)

        for p in params:
            p.grad = 0
        loss.backward()

        grad_sq = sum(p.grad * p.grad for p in params)
        grad_norm = math.sqrt(grad_sq / max(1, len(params)))

        lr_t = LEARNING_RATE * (1 - step / self._max_steps)
        for i, p in enumerate(params):
            g = p.grad
            m[i] = BETA1 * m[i] + (1 - BETA1) * g
            v[i] = BETA2 * v[i] + (1 - BETA2) * (g * g)
            m_hat = m[i] / (1 - BETA1 ** (step + 1))
            v_hat = v[i] / (1 - BETA2 ** (step + 1))
            p.data -= lr_t * m_hat / (v_hat ** 0.5 + EPS_ADAM)
            p.grad = 0

        self._latest_batch_loss = loss.data
        self._losses.append(loss.data)
        self._step += 1
        self._last_trace = self._capture_trace(
            tokens, context_len=min(n + 1, len(tokens)), loss=loss.data, lr=lr_t, grad_norm=grad_norm
        )
        self._maybe_evaluate()

    def _maybe_evaluate(self) -> None:
        if self._step % self._eval_every == 0 or self._step == self._max_steps:
            self.evaluate()

    def _capture_trace(self, tokens, context_len, loss, lr, grad_norm) -> StepTrace:
        """Probe the document's first position with the trace forward pass."""
        keys, values = self._empty_cache()
        logits, captured = gpt_with_trace(
            tokens[0], 0, keys, values, self._state_dict, self._n_layer, self._n_head, self._head_dim
        )
        probs = [p.data for p in softmax(logits)]
        target_id = tokens[1]
        pred_id = max(range(len(probs)), key=lambda i: probs[i])
        context = tokens[:context_len]
        return StepTrace(
            context=list(context),
            context_tokens=[self.token_str(t) for t in context],
            target_index=target_id,
            target_token=self.token_str(target_id),
            predicted_token=self.token_str(pred_id),
            loss=loss,
            lr=lr,
            grad_norm=grad_norm,
            top=[(self.token_str(i), probs[i]) for i in top_k_indices(probs, min(TRACE_TOP_K, len(probs)))],
            token_embedding=captured["token_embedding"],
            position_embedding=captured["position_embedding"],
            summed_embedding=captured["summed_embedding"],
            mlp_out=list(captured["pre_head"]),
            ln_out=list(captured["pre_head"]),
            logits=[l.data for l in logits],
            target_prob=probs[target_id],
            attention_weights=captured["attention_weights"],
        )

    # -------------------------------------------------------------------------
    # Evaluation and sampling
    # -------------------------------------------------------------------------

    def estimate_loss(self, split: list[str], sample_count: int = 128) -> float:
        """Mean per-document NLL over the first sample_count docs of split. No gradients, no updates."""
        total = 0.0
        count = 0
        for doc in split[:sample_count]:
            tokens = self.encode(doc)
            n = min(self._block_size, len(tokens) - 1)
            if n < 1:
                continue
            keys, values = self._empty_cache()
            doc_loss = 0.0
            for pos_id in range(n):
                logits = self._gpt(tokens[pos_id], pos_id, keys, values)
                probs = softmax(logits)
                doc_loss += -math.log(probs[tokens[pos_id + 1]].data + PROB_FLOOR)
            total += doc_loss / n
            count += 1
        return total / count if count > 0 else 0.0

    def generate(self, max_tokens: int = 60, temperature: float = TEMPERATURE) -> str:
        """Sample from BOS until BOS, block_size positions, or max_tokens characters."""
        keys, values = self._empty_cache()
        token_id = self._bos
        generated = []
        for pos_id in range(self._block_size):
            if len(generated) >= max_tokens:
                break
            logits = self._gpt(token_id, pos_id, keys, values)
            scaled = [math.copysign(math.inf, l.data) if temperature == 0 else l.data / temperature for l in logits]
            probs = softmax_numeric(scaled)
            token_id = sample_categorical(probs, self._rng)
            if token_id == self._bos:
                break
            generated.append(self._uchars[token_id])
        return "".join(generated)

    def evaluate(self) -> None:
        """Refresh train/dev/test loss, the current sample, and the next-token probe from BOS."""
        train = self._train_docs
        self._train_loss = self.estimate_loss(train, EVAL_SAMPLES)
        self._dev_loss = self.estimate_loss(self._dev_docs or train, EVAL_SAMPLES)
        self._test_loss = self.estimate_loss(self._test_docs or train, EVAL_SAMPLES)
        self._sample = self.generate(36)

        keys, values = self._empty_cache()
        probs = [p.data for p in softmax(self._gpt(self._bos, 0, keys, values))]
        self._top_tokens = [
            (self.token_str(i), probs[i]) for i in top_k_indices(probs, min(PROBE_TOP_K, len(probs)))
        ]

    # -------------------------------------------------------------------------
    # Read-only state
    # -------------------------------------------------------------------------

    @property
    def step(self) -> int:
        return self._step

    @property
    def max_steps(self) -> int:
        return self._max_steps

    @property
    def eval_every(self) -> int:
        return self._eval_every

    @property
    def block_size(self) -> int:
        return self._block_size

    @property
    def n_embd(self) -> int:
        return self._n_embd

    @property
    def seed(self) -> int:
        return self._seed

    @property
    def losses(self) -> tuple[float, ...]:
        return tuple(self._losses)

    @property
    def train_loss(self) -> float:
        return self._train_loss

    @property
    def dev_loss(self) -> float:
        return self._dev_loss

    @property
    def test_loss(self) -> float:
        return self._test_loss

    @property
    def sample(self) -> str:
        return self._sample

    @property
    def top_tokens(self) -> list[tuple[str, float]]:
        return list(self._top_tokens)

    @property
    def last_trace(self) -> StepTrace:
        return self._last_trace

    @property
    def latest_batch_loss(self) -> float:
        return self._latest_batch_loss

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    @property
    def uchars(self) -> tuple[str, ...]:
        return tuple(self._uchars)

    @property
    def bos(self) -> int:
        return self._bos

    @property
    def train_size(self) -> int:
        return len(self._train_docs)

    @property
    def dev_size(self) -> int:
        return len(self._dev_docs)

    @property
    def test_size(self) -> int:
        return len(self._test_docs)

    @property
    def num_params(self) -> int:
        return len(self._params)


def create_trainer(dataset_text: str, config: dict | None = None) -> Trainer:
    """Build a Trainer from dataset text and an optional flat config dict
    (block_size, n_embd, max_steps, eval_every, seed)."""
    return Trainer(dataset_text, **(config or {}))
