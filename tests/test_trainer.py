"""Tests for the trainer: construction, training step, evaluation, generation, trace."""

import math

import pytest

from model import make_rng, softmax
from trainer import StepTrace, Trainer, create_trainer, parse_docs, shuffle_docs, split_docs

DATASET = "anna\nbob\ncarla\ndiana\nelias\nfrank\n"
ALLOWED_CHARS = set(DATASET.replace("\n", ""))


@pytest.fixture(scope="module")
def trained():
    """Full 200-step run on the six-name dataset."""
    trainer = create_trainer(DATASET, {
        "max_steps": 200,
        "eval_every": 50,
        "seed": 42,
        "block_size": 16,
        "n_embd": 16,
    })
    initial_train_loss = trainer.train_loss
    for _ in range(trainer.max_steps):
        trainer.train_step()
    return trainer, initial_train_loss


@pytest.fixture
def small():
    return create_trainer(DATASET, {"max_steps": 5, "eval_every": 2, "seed": 7})


# --- dataset helpers ---

def test_parse_docs_strips_and_drops_empty():
    assert parse_docs("  anna \r\n\n bob\n\n") == ["anna", "bob"]


def test_shuffle_docs_deterministic_permutation():
    docs = ["a", "b", "c", "d", "e"]
    s1 = shuffle_docs(docs, make_rng(42))
    s2 = shuffle_docs(docs, make_rng(42))
    assert s1 == s2
    assert sorted(s1) == docs
    assert docs == ["a", "b", "c", "d", "e"]


def test_split_docs_cutoffs():
    train, dev, test = split_docs([str(i) for i in range(10)])
    assert (len(train), len(dev), len(test)) == (8, 1, 1)


# --- construction ---

def test_rejects_fewer_than_two_lines():
    with pytest.raises(ValueError, match="at least 2"):
        create_trainer("anna\n\n   \n")


def test_rejects_embedding_not_divisible_by_heads():
    with pytest.raises(ValueError, match="n_embd"):
        create_trainer(DATASET, {"n_embd": 10})


def test_rejects_bad_block_size_and_eval_every():
    with pytest.raises(ValueError):
        create_trainer(DATASET, {"block_size": 0})
    with pytest.raises(ValueError):
        create_trainer(DATASET, {"eval_every": 0})


def test_unknown_config_key_rejected():
    with pytest.raises(TypeError):
        create_trainer(DATASET, {"learning_rate": 0.1})


def test_vocab_and_split_sizes(small):
    assert small.vocab_size == len(ALLOWED_CHARS) + 1
    assert small.bos == small.vocab_size - 1
    assert small.token_str(small.bos) == "BOS"
    assert "".join(small.uchars) == "".join(sorted(ALLOWED_CHARS))
    assert (small.train_size, small.dev_size, small.test_size) == (4, 1, 1)


def test_encode_wraps_with_bos(small):
    ids = small.encode("bob")
    assert ids[0] == ids[-1] == small.bos
    assert "".join(small.token_str(i) for i in ids[1:-1]) == "bob"


def test_empty_dev_split_falls_back_to_train():
    trainer = create_trainer("ab\ncd\n", {"max_steps": 1})
    assert trainer.dev_size == 0
    assert trainer.dev_loss == trainer.train_loss


def test_initial_state(small):
    assert small.step == 0
    assert small.losses == ()
    assert small.num_params > 0
    assert small.train_loss == pytest.approx(math.log(small.vocab_size), abs=1.0)
    assert len(small.top_tokens) == min(8, small.vocab_size)
    assert all(ch in ALLOWED_CHARS for ch in small.sample)

    trace = small.last_trace
    assert isinstance(trace, StepTrace)
    assert trace.context_tokens == ["BOS"]
    assert trace.loss == 0
    assert trace.lr == 0.01
    assert trace.grad_norm == 0
    assert trace.attention_weights == pytest.approx([1.0])
    assert len(trace.logits) == small.vocab_size
    assert len(trace.top) == 6


def test_same_seed_same_initial_state():
    a = create_trainer(DATASET, {"seed": 3})
    b = create_trainer(DATASET, {"seed": 3})
    assert a.last_trace == b.last_trace
    assert a.train_loss == b.train_loss


# --- training ---

def test_train_step_updates_state(small):
    before = [p.data for p in small._params]
    small.train_step()
    assert small.step == 1
    assert len(small.losses) == 1
    assert small.latest_batch_loss == small.losses[0]
    assert small.latest_batch_loss > 0
    assert [p.data for p in small._params] != before
    assert all(p.grad == 0 for p in small._params)

    trace = small.last_trace
    assert trace.lr == pytest.approx(0.01)
    assert trace.grad_norm > 0
    assert trace.loss == small.latest_batch_loss
    assert trace.context_tokens[0] == "BOS"
    assert sum(trace.attention_weights) == pytest.approx(1)
    assert 0 < trace.target_prob <= 1
    assert trace.target_index == small.encode(small._train_docs[0])[1]


def test_documents_cycle_through_training_split(small):
    for i in range(small.max_steps):
        small.train_step()
        doc = small._train_docs[i % small.train_size]
        assert small.last_trace.context == small.encode(doc)


def _reference_adam_step(trainer, step, m, v):
    """Plain re-derivation of one step: mean NLL, backward, bias-corrected Adam."""
    tokens = trainer.encode(trainer._train_docs[step % trainer.train_size])
    n = min(trainer.block_size, len(tokens) - 1)
    keys, values = trainer._empty_cache()
    terms = []
    for pos_id in range(n):
        probs = softmax(trainer._gpt(tokens[pos_id], pos_id, keys, values))
        terms.append(-probs[tokens[pos_id + 1]].log())
    loss = (1 / n) * sum(terms)
    for p in trainer._params:
        p.grad = 0
    loss.backward()
    lr = 0.01 * (1 - step / trainer.max_steps)
    for i, p in enumerate(trainer._params):
        g = p.grad
        m[i] = 0.85 * m[i] + 0.15 * g
        v[i] = 0.99 * v[i] + 0.01 * g * g
        m_hat = m[i] / (1 - 0.85 ** (step + 1))
        v_hat = v[i] / (1 - 0.99 ** (step + 1))
        p.data -= lr * m_hat / (math.sqrt(v_hat) + 1e-8)
        p.grad = 0


def test_adam_updates_match_reference():
    cfg = {"max_steps": 5, "eval_every": 5, "seed": 11}
    trainer = create_trainer(DATASET, cfg)
    reference = create_trainer(DATASET, cfg)
    m = [0.0] * reference.num_params
    v = [0.0] * reference.num_params
    for step in range(3):
        trainer.train_step()
        _reference_adam_step(reference, step, m, v)
        got = [p.data for p in trainer._params]
        want = [p.data for p in reference._params]
        assert got == pytest.approx(want, rel=1e-6, abs=1e-12)


def test_first_adam_step_moves_each_weight_by_about_lr():
    trainer = create_trainer(DATASET, {"max_steps": 5, "seed": 11})
    before = [p.data for p in trainer._params]
    trainer.train_step()
    deltas = [abs(p.data - b) for p, b in zip(trainer._params, before)]
    # bias-corrected first step is lr * g / (|g| + eps)
    assert max(deltas) == pytest.approx(0.01, rel=1e-4)
    assert all(d <= 0.01 + 1e-12 for d in deltas)


def test_learning_rate_decays(small):
    small.train_step()
    small.train_step()
    assert small.last_trace.lr == pytest.approx(0.01 * (1 - 1 / 5))


def test_no_op_past_completion(small):
    for _ in range(small.max_steps):
        small.train_step()
    assert small.step == small.max_steps
    losses = small.losses
    params = [p.data for p in small._params]
    small.train_step()
    assert small.step == small.max_steps
    assert small.losses == losses
    assert [p.data for p in small._params] == params


def test_losses_is_a_snapshot(small):
    small.train_step()
    losses = small.losses
    assert isinstance(losses, tuple)
    small.train_step()
    assert len(losses) == 1
    assert len(small.losses) == 2


def test_trace_copy_is_independent(small):
    small.train_step()
    snapshot = small.last_trace.copy()
    snapshot.logits[0] = 123.0
    snapshot.top.append(("x", 1.0))
    assert small.last_trace.logits[0] != 123.0
    assert ("x", 1.0) not in small.last_trace.top


# --- evaluation / generation ---

def test_estimate_loss_no_mutation(small):
    params = [p.data for p in small._params]
    loss = small.estimate_loss(["anna", "bob"], sample_count=1)
    assert loss > 0
    assert small.estimate_loss([]) == 0.0
    assert [p.data for p in small._params] == params


def test_generate_limits(small):
    assert small.generate(0) == ""
    out = small.generate(3)
    assert isinstance(out, str)
    assert len(out) <= 3


def test_generate_zero_temperature_degrades_without_raising(small):
    out = small.generate(10, temperature=0)
    assert isinstance(out, str)
    assert out == ""


def test_full_training_run(trained):
    trainer, initial_train_loss = trained
    assert trainer.step == 200
    assert len(trainer.losses) > 0
    for loss in (trainer.train_loss, trainer.dev_loss, trainer.test_loss):
        assert isinstance(loss, float)
        assert math.isfinite(loss)
    assert trainer.train_loss < initial_train_loss

    generated = trainer.generate(40)
    assert isinstance(generated, str)
    assert len(generated) <= 40
    assert set(generated) <= ALLOWED_CHARS
    assert "BOS" not in generated


def test_generation_deterministic_under_fixed_seed():
    outputs = []
    for _ in range(2):
        trainer = create_trainer(DATASET, {"max_steps": 10, "eval_every": 5, "seed": 123})
        for _ in range(trainer.max_steps):
            trainer.train_step()
        outputs.append((trainer.generate(30), trainer.generate(30), trainer.losses))
    assert outputs[0] == outputs[1]
    for text in outputs[0][:2]:
        assert isinstance(text, str)
        assert len(text) <= 30


def test_trainer_class_equivalent_to_factory():
    a = Trainer(DATASET, seed=5, max_steps=2)
    b = create_trainer(DATASET, {"seed": 5, "max_steps": 2})
    a.train_step()
    b.train_step()
    assert a.losses == b.losses
