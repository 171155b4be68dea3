"""
Shared fixtures: tiny deterministic checkpoints and vocabularies.

THE TOY MODEL:
  dim=8, hidden_dim=16, n_layers=2, n_heads=2, vocab_size=6, seq_len=16.

  - Embedding row t is the one-hot vector e_t.
  - Classifier row i is e_{(i-1) mod 6}, so logits[i] = x[(i-1) mod 6].
  - Every other matrix is 0.05·sin(...), small enough that the residual
    updates of both layers stay well below 0.5 per component, and all
    norms are ones.

  The final hidden state therefore keeps its largest component at index t,
  and greedy decoding walks the successor chain 1 → 2 → 3 → 4 → 5 → 0 → 1.
  With a SHARED classifier (wcls = embedding) the argmax is the input
  token itself.
"""

import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_infer.config import ModelConfig
from llama_infer.export import serialize_checkpoint
from llama_infer.model import precompute_rope_frequencies
from llama_infer.tokenizer import Tokenizer, Vocabulary
from llama_infer.weights import load_checkpoint, slot_shapes


TOY_PIECES = ("<unk>", "\n<s>\n", "\n</s>\n", " a", "b", "c")


def toy_config(shared_weights: bool = False) -> ModelConfig:
    return ModelConfig(
        dim=8,
        hidden_dim=16,
        n_layers=2,
        n_heads=2,
        n_kv_heads=2,
        vocab_size=6,
        seq_len=16,
        shared_weights=shared_weights,
    )


def _wave(shape, offset: float) -> torch.Tensor:
    n = 1
    for d in shape:
        n *= d
    return 0.05 * torch.sin(torch.arange(n, dtype=torch.float32) * 0.7 + offset).reshape(shape)


def toy_tensors(config: ModelConfig) -> dict[str, torch.Tensor]:
    """Slot tensors of the successor-chain toy model."""
    shapes = slot_shapes(ModelConfig(**{**config.to_dict(), "shared_weights": False}))
    tensors = {}
    for i, (name, shape) in enumerate(shapes.items()):
        tensors[name] = _wave(shape, offset=float(i))

    eye = torch.eye(config.vocab_size, config.dim)
    tensors["token_embedding"] = eye.clone()
    tensors["wcls"] = torch.roll(eye, shifts=1, dims=0)  # row i = e_{(i-1) mod vocab}
    for name in ("rms_att", "rms_ffn", "rms_final"):
        tensors[name] = torch.ones(shapes[name])
    cos, sin = precompute_rope_frequencies(config.head_size, config.seq_len)
    tensors["freq_cis_real"] = cos
    tensors["freq_cis_imag"] = sin
    return tensors


def random_tensors(config: ModelConfig, seed: int = 0) -> dict[str, torch.Tensor]:
    """Random slot tensors (normal, std 0.3) for numerical comparisons."""
    g = torch.Generator().manual_seed(seed)
    shapes = slot_shapes(ModelConfig(**{**config.to_dict(), "shared_weights": False}))
    tensors = {
        name: torch.randn(shape, generator=g) * 0.3
        for name, shape in shapes.items()
        if not name.startswith("freq_cis")
    }
    for name in ("rms_att", "rms_ffn", "rms_final"):
        tensors[name] = 1.0 + tensors[name]
    return tensors


@pytest.fixture
def make_checkpoint():
    """
    Factory: make_checkpoint(shared_weights=False, random=False)
    → (config, weights, raw bytes).
    """
    def _make(shared_weights: bool = False, random: bool = False, config: ModelConfig = None):
        config = config or toy_config(shared_weights)
        tensors = random_tensors(config) if random else toy_tensors(config)
        data = serialize_checkpoint(config, tensors)
        loaded_config, weights = load_checkpoint(data)
        return loaded_config, weights, data
    return _make


@pytest.fixture
def toy_checkpoint(make_checkpoint):
    """(config, weights) of the separate-classifier toy model."""
    config, weights, _ = make_checkpoint()
    return config, weights


@pytest.fixture
def toy_tokenizer():
    """Six-piece vocabulary matching the toy model."""
    return Tokenizer(Vocabulary(TOY_PIECES, (0.0,) * len(TOY_PIECES)))
