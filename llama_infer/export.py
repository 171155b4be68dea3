"""
Exporters: write the flat checkpoint and vocabulary files the runner reads.

The runner never touches PyTorch training checkpoints or SentencePiece
models directly. Both are converted ONCE, ahead of time, into flat binary
files that can be memory-mapped (checkpoint) or parsed in one pass
(vocabulary):

  training checkpoint (.pt)  ──export_training_checkpoint──→  model.bin
  SentencePiece model (.model) ──export_tokenizer────────────→  tokenizer.bin

STATE DICT → CHECKPOINT SLOTS:
  ┌──────────────────────────────────────────┬──────────────────┐
  │ state dict key (per layer i, stacked)    │ slot             │
  ├──────────────────────────────────────────┼──────────────────┤
  │ tok_embeddings.weight                    │ token_embedding  │
  │ layers.{i}.attention_norm.weight         │ rms_att          │
  │ layers.{i}.attention.wq.weight           │ wq               │
  │ layers.{i}.attention.wk.weight           │ wk               │
  │ layers.{i}.attention.wv.weight           │ wv               │
  │ layers.{i}.attention.wo.weight           │ wo               │
  │ layers.{i}.ffn_norm.weight               │ rms_ffn          │
  │ layers.{i}.feed_forward.w_gate.weight    │ w1               │
  │ layers.{i}.feed_forward.w_down.weight    │ w2               │
  │ layers.{i}.feed_forward.w_up.weight      │ w3               │
  │ norm.weight                              │ rms_final        │
  │ output.weight                            │ wcls             │
  └──────────────────────────────────────────┴──────────────────┘
  nn.Linear stores its weight as (out_features, in_features), which is
  exactly the row-major (d, n) layout matmul expects. No transposes.

  The RoPE tables are not learned, so they are computed here
  (precompute_rope_frequencies) and written into their slots.

GROUPED-QUERY ATTENTION:
  The checkpoint layout has Wk and Wv of shape (dim, dim). A model trained
  with n_kv_heads < n_heads has smaller Wk/Wv and cannot be represented;
  exporting one raises FormatError.
"""

import os
import struct
from typing import Optional

import numpy as np
import sentencepiece as spm
import torch
from tqdm import tqdm

from llama_infer.config import ModelConfig
from llama_infer.errors import FormatError
from llama_infer.model import precompute_rope_frequencies
from llama_infer.weights import slot_shapes


# ═══════════════════════════════════════════════════════════════════════════
# Checkpoint
# ═══════════════════════════════════════════════════════════════════════════

def serialize_checkpoint(
    config: ModelConfig,
    tensors: dict[str, torch.Tensor],
    rope_theta: float = 10000.0,
    progress: bool = False,
) -> bytes:
    """
    Header followed by every slot, in order, as little-endian float32.

    Args:
        config: Model header. Its shared_weights flag decides whether a
                classifier slot is written (and the sign of vocab_size).
        tensors: Slot name → tensor. freq_cis_real / freq_cis_imag are
                 computed when absent; wcls is ignored when shared.
        rope_theta: Base frequency for computed RoPE tables.
        progress: Show a tqdm bar over the slots.

    Raises:
        FormatError: If a slot is missing or has the wrong shape.
    """
    tensors = dict(tensors)
    if "freq_cis_real" not in tensors or "freq_cis_imag" not in tensors:
        cos, sin = precompute_rope_frequencies(config.head_size, config.seq_len, rope_theta)
        tensors.setdefault("freq_cis_real", cos)
        tensors.setdefault("freq_cis_imag", sin)

    parts = [config.to_header()]
    slots = slot_shapes(config)
    for name, shape in tqdm(slots.items(), desc="Exporting", disable=not progress):
        if name not in tensors:
            raise FormatError(f"missing tensor for slot {name!r}")
        t = tensors[name]
        if tuple(t.shape) != shape:
            raise FormatError(
                f"slot {name!r} has shape {tuple(t.shape)}, expected {shape}"
            )
        data = t.detach().to(device="cpu", dtype=torch.float32).contiguous().numpy()
        parts.append(data.astype("<f4", copy=False).tobytes())
    return b"".join(parts)


def write_checkpoint(
    path: str,
    config: ModelConfig,
    tensors: dict[str, torch.Tensor],
    rope_theta: float = 10000.0,
    progress: bool = False,
) -> int:
    """Serialize and write a checkpoint file. Returns the number of bytes written."""
    data = serialize_checkpoint(config, tensors, rope_theta, progress)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
    return len(data)


def config_from_model_dict(d: dict) -> ModelConfig:
    """
    Map a training config dict (as saved under "model_config") to a header.

    Raises:
        FormatError: If the model uses grouped key/value heads.
    """
    n_heads = d["n_heads"]
    n_kv_heads = d.get("n_kv_heads") or n_heads
    if n_kv_heads != n_heads:
        raise FormatError(
            f"model uses grouped-query attention (n_kv_heads={n_kv_heads}, "
            f"n_heads={n_heads}); only full multi-head attention can be exported"
        )
    config = ModelConfig(
        dim=d["dim"],
        hidden_dim=d["hidden_dim"],
        n_layers=d["n_layers"],
        n_heads=n_heads,
        n_kv_heads=n_kv_heads,
        vocab_size=d["vocab_size"],
        seq_len=d["max_seq_len"],
        shared_weights=bool(d.get("weight_tying", False)),
    )
    config.validate()
    return config


def tensors_from_state_dict(
    state_dict: dict[str, torch.Tensor],
    n_layers: int,
) -> dict[str, torch.Tensor]:
    """
    Gather and stack state dict entries into checkpoint slots.

    Keys produced by a torch.compile'd model carry an "_orig_mod." prefix;
    it is stripped.

    Raises:
        FormatError: If an expected key is missing.
    """
    sd = {k.removeprefix("_orig_mod."): v for k, v in state_dict.items()}

    def get(key: str) -> torch.Tensor:
        if key not in sd:
            raise FormatError(f"state dict has no entry {key!r}")
        return sd[key]

    def stack(template: str) -> torch.Tensor:
        return torch.stack([get(template.format(i)) for i in range(n_layers)])

    tensors = {
        "token_embedding": get("tok_embeddings.weight"),
        "rms_att": stack("layers.{}.attention_norm.weight"),
        "wq": stack("layers.{}.attention.wq.weight"),
        "wk": stack("layers.{}.attention.wk.weight"),
        "wv": stack("layers.{}.attention.wv.weight"),
        "wo": stack("layers.{}.attention.wo.weight"),
        "rms_ffn": stack("layers.{}.ffn_norm.weight"),
        "w1": stack("layers.{}.feed_forward.w_gate.weight"),
        "w2": stack("layers.{}.feed_forward.w_down.weight"),
        "w3": stack("layers.{}.feed_forward.w_up.weight"),
        "rms_final": get("norm.weight"),
    }
    if "output.weight" in sd:
        tensors["wcls"] = sd["output.weight"]
    return tensors


def export_training_checkpoint(
    checkpoint_path: str,
    output_path: str,
    seq_len: Optional[int] = None,
) -> ModelConfig:
    """
    Convert a training checkpoint (.pt with "model_state_dict" and
    "model_config") into a flat model file.

    Args:
        checkpoint_path: Path to the .pt file.
        output_path: Destination .bin path.
        seq_len: Override the context length written into the header
                 (default: the model's max_seq_len).

    Returns:
        The header that was written.
    """
    checkpoint = torch.load(checkpoint_path, map_location="cpu", weights_only=False)
    model_dict = dict(checkpoint["model_config"])
    if seq_len is not None:
        model_dict["max_seq_len"] = seq_len
    config = config_from_model_dict(model_dict)
    tensors = tensors_from_state_dict(checkpoint["model_state_dict"], config.n_layers)
    write_checkpoint(
        output_path,
        config,
        tensors,
        rope_theta=model_dict.get("rope_theta", 10000.0),
        progress=True,
    )
    return config


# ═══════════════════════════════════════════════════════════════════════════
# Vocabulary
# ═══════════════════════════════════════════════════════════════════════════

def serialize_vocabulary(pieces: list[str], scores: list[float]) -> bytes:
    """
    max_token_length, then (score, length, UTF-8 bytes) per piece.
    """
    assert len(pieces) == len(scores)
    encoded = [p.encode("utf-8") for p in pieces]
    max_token_length = max((len(b) for b in encoded), default=0)
    parts = [struct.pack("<i", max_token_length)]
    for b, score in zip(encoded, scores):
        parts.append(struct.pack("<fi", score, len(b)))
        parts.append(b)
    return b"".join(parts)


def write_vocabulary(path: str, pieces: list[str], scores: list[float]) -> int:
    """Write a vocabulary file. Returns the number of bytes written."""
    data = serialize_vocabulary(pieces, scores)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
    return len(data)


def pieces_from_sentencepiece(model_path: str) -> tuple[list[str], list[float]]:
    """
    Read pieces and scores from a SentencePiece model, rewritten for the
    runner's decoder:

      <s> / </s>       →  "\\n<s>\\n" / "\\n</s>\\n"
      <0xNN>           →  the character chr(0xNN)
      "▁" (U+2581)     →  " "
    """
    sp = spm.SentencePieceProcessor()
    sp.Load(model_path)
    pieces = []
    scores = []
    for i in tqdm(range(sp.GetPieceSize()), desc="Exporting pieces"):
        piece = sp.IdToPiece(i)
        if i == sp.bos_id():
            piece = "\n<s>\n"
        elif i == sp.eos_id():
            piece = "\n</s>\n"
        elif len(piece) == 6 and piece.startswith("<0x") and piece.endswith(">"):
            piece = chr(int(piece[3:5], 16))
        pieces.append(piece.replace("\u2581", " "))
        scores.append(sp.GetScore(i))
    return pieces, scores


def export_tokenizer(model_path: str, output_path: str) -> int:
    """Convert a SentencePiece .model into a vocabulary file. Returns the piece count."""
    pieces, scores = pieces_from_sentencepiece(model_path)
    write_vocabulary(output_path, pieces, scores)
    return len(pieces)
