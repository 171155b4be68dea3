"""
InferenceState: every mutable buffer a generation run needs, allocated once.

The forward pass does no allocation of its own state. Each step overwrites
the scratch vectors in place and appends one entry per layer to the KV
cache. Sizes are fixed by the ModelConfig:

  ┌─────────────┬──────────────────────────────┬──────────────────────────────┐
  │ buffer      │ shape                        │ holds                        │
  ├─────────────┼──────────────────────────────┼──────────────────────────────┤
  │ x           │ (dim,)                       │ residual stream              │
  │ xb, xb2     │ (dim,)                       │ branch scratch               │
  │ hb, hb2     │ (hidden_dim,)                │ FFN gate / up projections    │
  │ q, k, v     │ (dim,)                       │ current token projections    │
  │ att         │ (n_heads, seq_len)           │ attention scores per head    │
  │ logits      │ (vocab_size,)                │ output of the step           │
  │ key_cache   │ (n_layers, seq_len, dim)     │ rotated keys, per position   │
  │ value_cache │ (n_layers, seq_len, dim)     │ values, per position         │
  │ indices     │ [vocab_size] ints            │ nucleus sampling scratch     │
  └─────────────┴──────────────────────────────┴──────────────────────────────┘

KV CACHE DISCIPLINE:
  Entry (layer, pos) is written exactly once, by the forward call that first
  reaches `pos`, and only read afterwards. Positions are processed strictly
  in order by a single caller, so there is never more than one writer and no
  lock is needed. This is a contract with the caller, not something the
  state enforces.

  A step must run to completion before the next one starts. Interrupting a
  step half way leaves the scratch buffers (and possibly the cache row for
  that position) inconsistent; call reset() before reusing the state.
"""

from dataclasses import dataclass

import torch

from llama_infer.config import ModelConfig


@dataclass(eq=False)
class InferenceState:
    """Scratch buffers and KV cache for one generation run."""

    x: torch.Tensor
    xb: torch.Tensor
    xb2: torch.Tensor
    hb: torch.Tensor
    hb2: torch.Tensor
    q: torch.Tensor
    k: torch.Tensor
    v: torch.Tensor
    att: torch.Tensor
    logits: torch.Tensor
    key_cache: torch.Tensor
    value_cache: torch.Tensor
    indices: list[int]

    @classmethod
    def new(cls, config: ModelConfig) -> "InferenceState":
        """Allocate every buffer for `config`, zero-filled."""
        dim, hidden = config.dim, config.hidden_dim
        cache_shape = (config.n_layers, config.seq_len, dim)
        return cls(
            x=torch.zeros(dim),
            xb=torch.zeros(dim),
            xb2=torch.zeros(dim),
            hb=torch.zeros(hidden),
            hb2=torch.zeros(hidden),
            q=torch.zeros(dim),
            k=torch.zeros(dim),
            v=torch.zeros(dim),
            att=torch.zeros(config.n_heads, config.seq_len),
            logits=torch.zeros(config.vocab_size),
            key_cache=torch.zeros(cache_shape),
            value_cache=torch.zeros(cache_shape),
            indices=list(range(config.vocab_size)),
        )

    def reset(self) -> None:
        """Forget the cached sequence so the state can start a new run."""
        self.key_cache.zero_()
        self.value_cache.zero_()
        self.indices[:] = range(len(self.indices))
