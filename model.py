"""
GPT model core: autograd Value, seeded generator, math helpers, and the
single-position forward pass (with an optional trace variant for display).
Used by trainer.py; every scalar op is recorded in the graph.
"""

import math

# Fixed architecture constants; n_embd and block_size are per-trainer
N_LAYER = 1
N_HEAD = 4
N_EMBD = 16
BLOCK_SIZE = 16


# =============================================================================
# Float helpers: out-of-domain inputs give nan/inf instead of raising
# =============================================================================

def _pow(x, p):
    try:
        out = x ** p
    except ZeroDivisionError:
        return math.inf
    except OverflowError:
        if x < 0 and float(p).is_integer() and int(p) % 2 == 1:
            return -math.inf
        return math.inf
    return math.nan if isinstance(out, complex) else out


def _exp(x):
    try:
        return math.exp(x)
    except OverflowError:
        return math.inf


def _log(x):
    if x > 0:
        return math.log(x)
    if x == 0:
        return -math.inf
    return math.nan


# =============================================================================
# Autograd: scalar values that build a computation graph for backprop
# =============================================================================

class Value:
    """
    Single scalar in the computation graph. Tracks children and local derivatives
    so backward() can propagate gradients via the chain rule.
    """

    def __init__(self, data, children=(), local_grads=(), op=""):
        self.data = data
        self.grad = 0
        self._children = children
        self._local_grads = local_grads  # d(self)/d(child) for each child
        self._op = op

    def __repr__(self):
        return f"Value(data={self.data}, grad={self.grad})"

    def __add__(self, other):
        other = other if isinstance(other, Value) else Value(other)
        return Value(self.data + other.data, (self, other), (1, 1), "+")

    def __mul__(self, other):
        other = other if isinstance(other, Value) else Value(other)
        return Value(self.data * other.data, (self, other), (other.data, self.data), "*")

    def __pow__(self, other):
        return Value(_pow(self.data, other), (self,), (other * _pow(self.data, other - 1),), f"**{other}")

    def log(self): return Value(_log(self.data), (self,), (_pow(self.data, -1),), "log")

    def exp(self):
        e = _exp(self.data)
        return Value(e, (self,), (e,), "exp")

    def tanh(self):
        t = math.tanh(self.data)
        return Value(t, (self,), (1 - t * t,), "tanh")

    def relu(self): return Value(max(self.data, 0), (self,), (float(self.data > 0),), "relu")
    def __neg__(self): return self * -1
    def __radd__(self, other): return self + other
    def __sub__(self, other): return self + (-other)
    def __rsub__(self, other): return other + (-self)
    def __rmul__(self, other): return self * other
    def __truediv__(self, other): return self * (other if isinstance(other, Value) else Value(other))**-1
    def __rtruediv__(self, other): return other * self**-1

    # Named spellings of the operators
    add = __add__
    mul = __mul__
    sub = __sub__
    div = __truediv__
    pow = __pow__

    def backward(self):
        """Backprop: topological order, then apply chain rule (grad flows from this node to children).
        Does not zero gradients; callers reset .grad on parameters before each pass."""
        topo = []
        visited = set()
        # Iterative post-order DFS; a recursive walk overflows on long sequences
        stack = [(self, False)]
        while stack:
            v, expanded = stack.pop()
            if expanded:
                topo.append(v)
                continue
            if v in visited:
                continue
            visited.add(v)
            stack.append((v, True))
            for child in reversed(v._children):
                if child not in visited:
                    stack.append((child, False))
        self.grad = 1  # d(loss)/d(self) = 1 at the loss node
        for v in reversed(topo):
            for child, local_grad in zip(v._children, v._local_grads):
                child.grad += local_grad * v.grad


# =============================================================================
# Deterministic random numbers (xorshift32), independent of the random module
# =============================================================================

def make_rng(seed=1337):
    """Return a zero-argument function yielding a reproducible stream of floats in [0, 1)."""
    state = seed & 0xFFFFFFFF

    def rng():
        nonlocal state
        state ^= (state << 13) & 0xFFFFFFFF
        state ^= state >> 17
        state ^= (state << 5) & 0xFFFFFFFF
        return (state % 1_000_000) / 1_000_000

    return rng


def randn(rng, mean=0.0, std=1.0):
    """Approximately normal sample via Box-Muller (two draws)."""
    u1 = max(rng(), 1e-12)
    u2 = rng()
    z0 = math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)
    return mean + std * z0


# =============================================================================
# Model primitives (work on lists of Value; used in forward and backward)
# =============================================================================

def make_matrix(nout, nin, rng, std=0.08):
    """Random matrix of leaf Values (nout x nin)."""
    return [[Value(randn(rng, 0, std)) for _ in range(nin)] for _ in range(nout)]


def linear(x, w):
    """Matrix-vector: out[i] = sum_j w[i][j] * x[j]. x is 1d, w is 2d (nout x nin)."""
    return [sum(wi * xi for wi, xi in zip(wo, x)) for wo in w]


def softmax(logits):
    """Stable softmax over a list of Value; returns list of Value (probabilities)."""
    max_val = max(val.data for val in logits)
    exps = [(val - max_val).exp() for val in logits]
    total = sum(exps)
    return [e / total for e in exps]


def softmax_numeric(logits):
    """Stable softmax over raw floats; returns list of probabilities (for inference sampling)."""
    max_val = max(logits)
    exps = [_exp(x - max_val) for x in logits]
    total = sum(exps)
    return [e / total for e in exps]


def rmsnorm(x, eps=1e-5):
    """RMS normalization: scale so root-mean-square of x is 1 (no learnable gain/bias here)."""
    ms = sum(xi * xi for xi in x) / len(x)
    scale = (ms + eps) ** -0.5
    return [xi * scale for xi in x]


def sample_categorical(probs, rng):
    """Draw one index from a probability list. Falls back to the last index if rounding leaves a gap."""
    r = rng()
    c = 0.0
    for i, p in enumerate(probs):
        c += p
        if r <= c:
            return i
    return len(probs) - 1


def top_k_indices(values, k):
    """Indices of the k largest values, largest first."""
    return sorted(range(len(values)), key=lambda i: values[i], reverse=True)[:k]


def sparkline(values, width=64):
    """One-line text chart of the last `width` values."""
    if not values:
        return ""
    chars = " .:-=+*#%@"
    window = list(values)[-width:]
    lo, hi = min(window), max(window)
    span = (hi - lo) or 1
    out = []
    for val in window:
        idx = min(len(chars) - 1, int((val - lo) / span * (len(chars) - 1)))
        out.append(chars[idx])
    return "".join(out)


# =============================================================================
# Parameters
# =============================================================================

def init_state_dict(vocab_size, n_embd, n_layer, block_size, rng, std=0.08):
    """Create fresh weights: wte, wpe, lm_head, and per-layer attn + MLP. Returns (state_dict, flat params)."""
    state_dict = {
        "wte": make_matrix(vocab_size, n_embd, rng, std),
        "wpe": make_matrix(block_size, n_embd, rng, std),
        "lm_head": make_matrix(vocab_size, n_embd, rng, std),
    }
    for i in range(n_layer):
        state_dict[f"layer{i}.attn_wq"] = make_matrix(n_embd, n_embd, rng, std)
        state_dict[f"layer{i}.attn_wk"] = make_matrix(n_embd, n_embd, rng, std)
        state_dict[f"layer{i}.attn_wv"] = make_matrix(n_embd, n_embd, rng, std)
        state_dict[f"layer{i}.attn_wo"] = make_matrix(n_embd, n_embd, rng, std)
        state_dict[f"layer{i}.mlp_fc1"] = make_matrix(4 * n_embd, n_embd, rng, std)
        state_dict[f"layer{i}.mlp_fc2"] = make_matrix(n_embd, 4 * n_embd, rng, std)
    params = [p for mat in state_dict.values() for row in mat for p in row]
    return state_dict, params


# =============================================================================
# GPT forward: one step at one position (token_id, pos_id) -> logits over next token
# keys/values are KV-cache lists (one list per layer); we append this position's k,v
# =============================================================================

def _forward(token_id, pos_id, keys, values, state_dict, n_layer, n_head, head_dim, capture=None):
    # Embedding: token + position, then pre-norm
    tok_emb = state_dict["wte"][token_id]
    pos_emb = state_dict["wpe"][pos_id]
    x = [t + p for t, p in zip(tok_emb, pos_emb)]
    if capture is not None:
        capture["token_embedding"] = [v.data for v in tok_emb]
        capture["position_embedding"] = [v.data for v in pos_emb]
        capture["summed_embedding"] = [v.data for v in x]
        capture["attention_weights"] = []
    x = rmsnorm(x)

    for li in range(n_layer):
        # --- Attention (causal): Q from current position, K/V from all positions so far ---
        x_residual = x
        x = rmsnorm(x)
        q = linear(x, state_dict[f"layer{li}.attn_wq"])
        k = linear(x, state_dict[f"layer{li}.attn_wk"])
        v = linear(x, state_dict[f"layer{li}.attn_wv"])
        keys[li].append(k)
        values[li].append(v)
        # Multi-head: split q,k,v by head; each head does scaled dot-product attn
        x_attn = []
        for h in range(n_head):
            hs = h * head_dim
            q_h = q[hs:hs+head_dim]
            k_h = [ki[hs:hs+head_dim] for ki in keys[li]]
            v_h = [vi[hs:hs+head_dim] for vi in values[li]]
            attn_logits = [sum(q_h[j] * k_h[t][j] for j in range(head_dim)) / head_dim**0.5 for t in range(len(k_h))]
            attn_weights = softmax(attn_logits)
            if capture is not None and h == 0:
                capture["attention_weights"] = [w.data for w in attn_weights]
            head_out = [sum(attn_weights[t] * v_h[t][j] for t in range(len(v_h))) for j in range(head_dim)]
            x_attn.extend(head_out)
        x = linear(x_attn, state_dict[f"layer{li}.attn_wo"])
        x = [a + b for a, b in zip(x, x_residual)]
        # --- MLP: expand 4x, ReLU, project back ---
        x_residual = x
        x = rmsnorm(x)
        x = linear(x, state_dict[f"layer{li}.mlp_fc1"])
        x = [xi.relu() for xi in x]
        x = linear(x, state_dict[f"layer{li}.mlp_fc2"])
        x = [a + b for a, b in zip(x, x_residual)]

    if capture is not None:
        capture["pre_head"] = [v.data for v in x]
    # Unembed: project hidden state to vocab-sized logits
    return linear(x, state_dict["lm_head"])


def gpt(token_id, pos_id, keys, values, state_dict, n_layer, n_head, head_dim):
    return _forward(token_id, pos_id, keys, values, state_dict, n_layer, n_head, head_dim)


def gpt_with_trace(token_id, pos_id, keys, values, state_dict, n_layer, n_head, head_dim):
    """Same computation as gpt(); also returns plain-float snapshots of the embeddings,
    pre-head activations and head-0 attention weights. Returns (logits, captured)."""
    captured = {}
    logits = _forward(token_id, pos_id, keys, values, state_dict, n_layer, n_head, head_dim, capture=captured)
    return logits, captured
