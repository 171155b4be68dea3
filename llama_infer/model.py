"""
Llama-2 forward pass for one token at a time, over a flat checkpoint.

This is the CORE of the project. Given (token, pos) it computes the logits
for the next token, reading weights from a WeightStore and writing every
intermediate result into a preallocated InferenceState.

ARCHITECTURE OVERVIEW (per step, bottom-up reading order):
  1. rmsnorm           — Root-mean-square normalization
  2. softmax           — Max-stabilized, in place on a sub-range
  3. matmul            — Row-parallel matrix × vector
  4. RoPE              — Rotary positional embeddings on q and k
  5. attention         — Head-parallel attention over the KV cache
  6. forward           — Embedding → N layers → final norm → classifier

ONE LAYER:
  x ──→ rmsnorm ──→ Wq, Wk, Wv ──→ RoPE(q, k) ──→ cache[l, pos] = (k, v)
  │                                                 │
  │            per head: softmax(q·Kᵀ/√d) · V  ←────┘
  │                          │
  │                          Wo
  │                          │
  └────────────── + ←────────┘          (residual)
  │
  x ──→ rmsnorm ──→ W1 ──→ SiLU ──┐
  │                └──→ W3 ───────⊙──→ W2
  │                                     │
  └────────────── + ←──────────────────┘  (residual)

SINGLE-TOKEN, CACHED DECODING:
  Unlike a training forward pass, which processes a whole (batch, seq_len)
  block with a causal mask, this pass sees ONE token. All earlier positions
  are represented only through the key/value cache, which this call extends
  by one row per layer. The cache is pure memoization: the logits at
  position p are exactly those of a full recomputation over [0, p].

FAILURE MODE:
  Shape mismatches and out-of-range tokens/positions are programming errors
  in the caller. They are asserted, not reported as recoverable errors.
"""

import math
from typing import Optional, Tuple

import torch

from llama_infer.config import ModelConfig
from llama_infer.device import WorkerPool
from llama_infer.state import InferenceState
from llama_infer.weights import WeightStore


# Epsilon added inside the square root of RMSNorm. Fixed by the checkpoint
# format (Llama-2 uses 1e-5).
NORM_EPS = 1e-5


# ═══════════════════════════════════════════════════════════════════════════
# 1. RMSNorm — Root Mean Square Layer Normalization
# ═══════════════════════════════════════════════════════════════════════════

def rmsnorm(
    out: torch.Tensor,
    x: torch.Tensor,
    weight: torch.Tensor,
    eps: float = NORM_EPS,
) -> torch.Tensor:
    """
    Root Mean Square Layer Normalization (Zhang & Sennrich, 2019).

    MATH:
      rms(x)    = sqrt( (1/dim) · Σ x_j² + eps )
      out[j]    = weight[j] · x[j] / rms(x)

      Unlike LayerNorm there is no mean centering and no bias; only the
      magnitude of x is standardized, its direction is preserved.

    `out` may be the same tensor as `x` (the final norm is applied in place).

    Args:
        out: Destination, shape (dim,).
        x: Input, shape (dim,).
        weight: Learned scale (gamma), shape (dim,).
        eps: Numerical floor inside the square root.

    Returns:
        `out`.
    """
    assert out.shape == x.shape == weight.shape, (
        f"rmsnorm shape mismatch: out {tuple(out.shape)}, x {tuple(x.shape)}, "
        f"weight {tuple(weight.shape)}"
    )
    # torch.rsqrt: 1/sqrt(·) in one op
    rms_inv = torch.rsqrt(torch.dot(x, x) / x.numel() + eps)
    torch.mul(x, rms_inv, out=out)
    out.mul_(weight)
    return out


# ═══════════════════════════════════════════════════════════════════════════
# 2. Softmax
# ═══════════════════════════════════════════════════════════════════════════

def softmax(x: torch.Tensor, offset: int = 0, size: Optional[int] = None) -> torch.Tensor:
    """
    Numerically stable softmax, in place, over x[offset : offset + size].

    WHY SUBTRACT THE MAX:
      exp(1000) overflows float32. softmax(x) == softmax(x - c) for any
      constant c, so subtracting max(x) makes the largest exponent exp(0)=1
      and every other term ≤ 1, without changing the result.

    Elements outside the range are untouched, which lets attention run
    softmax over scores [0, pos] of a (seq_len,)-long row.

    Args:
        x: 1-D buffer.
        offset: First element of the range.
        size: Number of elements (default: to the end of x).

    Returns:
        A view of the normalized range.
    """
    assert x.dim() == 1, f"softmax expects a 1-D buffer, got shape {tuple(x.shape)}"
    if size is None:
        size = x.numel() - offset
    assert 0 < size and offset + size <= x.numel()
    seg = x[offset: offset + size]
    seg.sub_(seg.max())
    seg.exp_()
    seg.div_(seg.sum())
    return seg


# ═══════════════════════════════════════════════════════════════════════════
# 3. Matrix × vector, parallel over output rows
# ═══════════════════════════════════════════════════════════════════════════

def matmul(
    out: torch.Tensor,
    x: torch.Tensor,
    w: torch.Tensor,
    pool: Optional[WorkerPool] = None,
) -> torch.Tensor:
    """
    out = W @ x, with W of shape (d, n) row-major.

    By far the most time of a forward step is spent in here.

    PARALLELISM:
      out[i] = dot(W[i, :], x) for i in [0, d). Every output row depends only
      on its own row of W, so the rows are split into contiguous blocks and
      each block is computed by one worker:

        worker 0: out[0:k]   = W[0:k]   @ x
        worker 1: out[k:2k]  = W[k:2k]  @ x
        ...

      Blocks write disjoint slices of `out`, so no locking is needed, and
      the pool joins before returning, so `out` is complete when we return.
      The result does not depend on how many workers computed it.

    Args:
        out: Destination, shape (d,). Must not alias x.
        x: Input vector, shape (n,).
        w: Weight matrix, shape (d, n).
        pool: Worker pool. None computes in one torch call.

    Returns:
        `out`.
    """
    d, n = w.shape
    assert x.shape == (n,), f"matmul: x has shape {tuple(x.shape)}, expected ({n},)"
    assert out.shape == (d,), f"matmul: out has shape {tuple(out.shape)}, expected ({d},)"
    if pool is None:
        torch.mv(w, x, out=out)
    else:
        pool.run_ranges(d, lambda lo, hi: torch.mv(w[lo:hi], x, out=out[lo:hi]))
    return out


def accum(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """Residual connection: a += b."""
    assert a.shape == b.shape
    return a.add_(b)


def silu_(x: torch.Tensor) -> torch.Tensor:
    """
    In-place SiLU / Swish: x · σ(x).

    Smooth everywhere, slightly negative for negative inputs. It gates the
    W1 projection of the SwiGLU feed-forward block.
    """
    return x.mul_(torch.sigmoid(x))


# ═══════════════════════════════════════════════════════════════════════════
# 4. Rotary Positional Embeddings (RoPE)
# ═══════════════════════════════════════════════════════════════════════════

def precompute_rope_frequencies(
    head_size: int,
    seq_len: int,
    theta: float = 10000.0,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Precompute the cos and sin tables for Rotary Positional Embeddings.

    The checkpoint format STORES these tables (freq_cis_real/imag), so the
    forward pass never calls this. The exporter does, to fill them in.

    For dimension pair i of a head at position m:
      θᵢ    = theta^(-2i / head_size)
      angle = m · θᵢ
    Low i rotates fast (fine-grained position), high i rotates slowly
    (long-range position).

    Args:
        head_size: Dimension of each attention head (must be even).
        seq_len: Number of positions to precompute.
        theta: Base frequency. 10000.0 for Llama-2.

    Returns:
        Tuple of (cos, sin), each of shape (seq_len, head_size // 2).
    """
    assert head_size % 2 == 0, f"head_size must be even for RoPE, got {head_size}"
    dim_indices = torch.arange(0, head_size, 2).float()
    freqs = 1.0 / (theta ** (dim_indices / head_size))
    positions = torch.arange(seq_len).float()
    angles = torch.outer(positions, freqs)
    return angles.cos(), angles.sin()


def apply_rope(vec: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
    """
    Rotate each adjacent pair of `vec` in place by the angles for one position.

    THE ROTATION:
      For element pair (a, b) = (vec[i], vec[i+1]), i even:
        a' = a · cos − b · sin
        b' = a · sin + b · cos
      with the angle taken from table column (i mod head_size) / 2, so every
      head is rotated by the same set of angles.

    IMPLEMENTATION:
      View vec (dim,) as (n_heads, head_size//2, 2): the last axis holds the
      (even, odd) pair, and the cos/sin rows of shape (head_size//2,)
      broadcast across heads.

    Args:
        vec: q or k, shape (dim,). Modified in place.
        cos: Row of the cosine table for this position, shape (head_size//2,).
        sin: Row of the sine table for this position, shape (head_size//2,).

    Returns:
        `vec`.
    """
    half = cos.numel()
    assert vec.numel() % (2 * half) == 0
    pairs = vec.view(-1, half, 2)
    a = pairs[..., 0].clone()
    b = pairs[..., 1].clone()
    pairs[..., 0] = a * cos - b * sin
    pairs[..., 1] = a * sin + b * cos
    return vec


# ═══════════════════════════════════════════════════════════════════════════
# 5. Multi-Head Attention over the KV cache
# ═══════════════════════════════════════════════════════════════════════════

def attention(
    layer: int,
    pos: int,
    config: ModelConfig,
    state: InferenceState,
    pool: Optional[WorkerPool] = None,
) -> torch.Tensor:
    """
    Attention of the current query against cached keys/values [0, pos].

    Reads state.q and the layer's cache rows; writes state.att (scores) and
    state.xb (concatenated head outputs).

    PER HEAD h (independent of every other head):
      q_h        = q[h·hs : (h+1)·hs]
      score[t]   = dot(q_h, key_cache[layer, t, h·hs : (h+1)·hs]) / √hs,  t ∈ [0, pos]
      weight     = softmax(score[0 : pos+1])
      xb[h·hs:…] = Σ_t weight[t] · value_cache[layer, t, h·hs : (h+1)·hs]

      Only positions ≤ pos exist in the cache, so causality needs no mask.

    PARALLELISM:
      Heads read the shared cache (nobody writes it during this call) and
      write disjoint slices of att and xb, so they fan out over the pool
      without locks. The pool joins before the output projection reads xb.
    """
    hs = config.head_size
    scale = math.sqrt(hs)
    keys = state.key_cache[layer, : pos + 1]      # (pos+1, dim)
    values = state.value_cache[layer, : pos + 1]  # (pos+1, dim)

    def attend(h: int) -> None:
        lo, hi = h * hs, (h + 1) * hs
        scores = state.att[h, : pos + 1]
        torch.mv(keys[:, lo:hi], state.q[lo:hi], out=scores)
        scores.div_(scale)
        softmax(scores)
        torch.mv(values[:, lo:hi].t(), scores, out=state.xb[lo:hi])

    if pool is None:
        for h in range(config.n_heads):
            attend(h)
    else:
        pool.run(attend, range(config.n_heads))
    return state.xb


# ═══════════════════════════════════════════════════════════════════════════
# 6. Complete forward step
# ═══════════════════════════════════════════════════════════════════════════

@torch.no_grad()
def forward(
    token: int,
    pos: int,
    config: ModelConfig,
    weights: WeightStore,
    state: InferenceState,
    pool: Optional[WorkerPool] = None,
) -> torch.Tensor:
    """
    Compute next-token logits for `token` at position `pos`.

    SIDE EFFECTS:
      - state.logits is overwritten (vocab_size,).
      - For every layer, key_cache[layer, pos] and value_cache[layer, pos]
        are written. Positions must be fed in order 0, 1, 2, ...; entries
        for earlier positions must already be present.
      - Every scratch buffer in `state` is clobbered.

    DATA FLOW:
      x = embedding[token]
      for each layer:
        x += Wo · attention(RoPE(Wq·norm(x)), RoPE(Wk·norm(x)), Wv·norm(x))
        x += W2 · (SiLU(W1·norm(x)) ⊙ W3·norm(x))
      logits = wcls · norm(x)

    Args:
        token: Current token id, 0 ≤ token < vocab_size.
        pos: Position of the token, 0 ≤ pos < seq_len.
        config: Model header.
        weights: Checkpoint tensors.
        state: Run state, mutated in place.
        pool: Optional worker pool for the matmuls and attention heads.

    Returns:
        state.logits.
    """
    assert 0 <= token < config.vocab_size, f"token {token} out of range [0, {config.vocab_size})"
    assert 0 <= pos < config.seq_len, f"pos {pos} out of range [0, {config.seq_len})"

    x = state.x

    # ── Step 1: Token Embedding ────────────────────────────────────────────
    x.copy_(weights.token_embedding[token])

    # RoPE angles for this position, shared by every layer
    cos = weights.freq_cis_real[pos]
    sin = weights.freq_cis_imag[pos]

    # ── Step 2: Transformer layers ─────────────────────────────────────────
    for l in range(config.n_layers):
        lw = weights.layer(l)

        # Attention sublayer (pre-norm)
        rmsnorm(state.xb, x, lw.rms_att)

        matmul(state.q, state.xb, lw.wq, pool)
        matmul(state.k, state.xb, lw.wk, pool)
        matmul(state.v, state.xb, lw.wv, pool)

        apply_rope(state.q, cos, sin)
        apply_rope(state.k, cos, sin)

        # Append this position to the cache (written once, read by all later steps)
        state.key_cache[l, pos].copy_(state.k)
        state.value_cache[l, pos].copy_(state.v)

        attention(l, pos, config, state, pool)

        matmul(state.xb2, state.xb, lw.wo, pool)
        accum(x, state.xb2)

        # Feed-forward sublayer (pre-norm, SwiGLU)
        rmsnorm(state.xb, x, lw.rms_ffn)

        matmul(state.hb, state.xb, lw.w1, pool)
        matmul(state.hb2, state.xb, lw.w3, pool)
        silu_(state.hb)
        state.hb.mul_(state.hb2)

        matmul(state.xb, state.hb, lw.w2, pool)
        accum(x, state.xb)

    # ── Step 3: Final normalization ────────────────────────────────────────
    rmsnorm(x, x, weights.rms_final)

    # ── Step 4: Classifier → logits ────────────────────────────────────────
    matmul(state.logits, x, weights.wcls, pool)
    return state.logits
