"""
WeightStore: zero-copy tensor views over a flat checkpoint buffer.

A checkpoint is one contiguous blob: a 28-byte header (see config.py)
followed by float32 tensors in a FIXED slot order, row-major, no padding:

  ┌──────────────────────┬──────────────────────────────┐
  │ slot                 │ shape                        │
  ├──────────────────────┼──────────────────────────────┤
  │ token_embedding      │ (vocab_size, dim)            │
  │ rms_att              │ (n_layers, dim)              │
  │ wq                   │ (n_layers, dim, dim)         │
  │ wk                   │ (n_layers, dim, dim)         │
  │ wv                   │ (n_layers, dim, dim)         │
  │ wo                   │ (n_layers, dim, dim)         │
  │ rms_ffn              │ (n_layers, dim)              │
  │ w1                   │ (n_layers, hidden_dim, dim)  │
  │ w2                   │ (n_layers, dim, hidden_dim)  │
  │ w3                   │ (n_layers, hidden_dim, dim)  │
  │ rms_final            │ (dim,)                       │
  │ freq_cis_real        │ (seq_len, head_size // 2)    │
  │ freq_cis_imag        │ (seq_len, head_size // 2)    │
  │ wcls (if not shared) │ (vocab_size, dim)            │
  └──────────────────────┴──────────────────────────────┘

ZERO COPY:
  Every slot is a torch.frombuffer() view at a running byte offset into the
  SAME backing buffer. Loading a 1 GB checkpoint through a memory map costs
  no extra RAM: pages are faulted in lazily the first time a matmul touches
  them. torch.frombuffer keeps a reference to the buffer, so the memory
  cannot be released while any view is alive.

SHARED CLASSIFIER:
  When the header's vocab_size is positive, the output classifier IS the
  embedding table: wcls and token_embedding are the same tensor object.
  Nothing is duplicated.

The store is created once and never written. Views over read-only buffers
(bytes, read-only maps) are fine for that reason.
"""

import os
import sys
import warnings
from dataclasses import dataclass
from typing import NamedTuple

import numpy as np
import torch

from llama_infer.config import HEADER_SIZE, ModelConfig
from llama_infer.errors import FormatError


FLOAT_BYTES = 4

# Slot order inside a checkpoint. wcls is appended only when not shared.
SLOT_NAMES = (
    "token_embedding",
    "rms_att",
    "wq",
    "wk",
    "wv",
    "wo",
    "rms_ffn",
    "w1",
    "w2",
    "w3",
    "rms_final",
    "freq_cis_real",
    "freq_cis_imag",
    "wcls",
)


def slot_shapes(config: ModelConfig) -> dict[str, tuple[int, ...]]:
    """
    Shapes of every slot stored in a checkpoint for this config, in order.

    wcls is present only when the classifier is NOT shared with the
    embedding table.
    """
    dim, hidden, n_layers = config.dim, config.hidden_dim, config.n_layers
    shapes = {
        "token_embedding": (config.vocab_size, dim),
        "rms_att": (n_layers, dim),
        "wq": (n_layers, dim, dim),
        "wk": (n_layers, dim, dim),
        "wv": (n_layers, dim, dim),
        "wo": (n_layers, dim, dim),
        "rms_ffn": (n_layers, dim),
        "w1": (n_layers, hidden, dim),
        "w2": (n_layers, dim, hidden),
        "w3": (n_layers, hidden, dim),
        "rms_final": (dim,),
        "freq_cis_real": (config.seq_len, config.head_size // 2),
        "freq_cis_imag": (config.seq_len, config.head_size // 2),
    }
    if not config.shared_weights:
        shapes["wcls"] = (config.vocab_size, dim)
    return shapes


def _numel(shape: tuple[int, ...]) -> int:
    n = 1
    for d in shape:
        n *= d
    return n


def checkpoint_nbytes(config: ModelConfig) -> int:
    """Bytes of tensor data (excluding the header) a checkpoint must contain."""
    return sum(_numel(s) for s in slot_shapes(config).values()) * FLOAT_BYTES


class LayerWeights(NamedTuple):
    """2-D views of one transformer layer's weights."""
    rms_att: torch.Tensor   # (dim,)
    wq: torch.Tensor        # (dim, dim)
    wk: torch.Tensor        # (dim, dim)
    wv: torch.Tensor        # (dim, dim)
    wo: torch.Tensor        # (dim, dim)
    rms_ffn: torch.Tensor   # (dim,)
    w1: torch.Tensor        # (hidden_dim, dim)
    w2: torch.Tensor        # (dim, hidden_dim)
    w3: torch.Tensor        # (hidden_dim, dim)


@dataclass(frozen=True, eq=False)
class WeightStore:
    """
    Immutable, zero-copy views of every checkpoint tensor.

    Build with WeightStore.load(config, buffer) or load_checkpoint(buffer).
    """

    token_embedding: torch.Tensor
    rms_att: torch.Tensor
    wq: torch.Tensor
    wk: torch.Tensor
    wv: torch.Tensor
    wo: torch.Tensor
    rms_ffn: torch.Tensor
    w1: torch.Tensor
    w2: torch.Tensor
    w3: torch.Tensor
    rms_final: torch.Tensor
    freq_cis_real: torch.Tensor
    freq_cis_imag: torch.Tensor
    wcls: torch.Tensor

    @classmethod
    def load(cls, config: ModelConfig, buffer, offset: int = HEADER_SIZE) -> "WeightStore":
        """
        Carve every slot out of `buffer`, starting at byte `offset`.

        The total size is checked BEFORE any view is created, so a truncated
        buffer never produces a partially-populated store.

        Args:
            config: Parsed header.
            buffer: Any object supporting the buffer protocol.
            offset: Byte offset of the first tensor (default: just past the
                    header).

        Raises:
            FormatError: If the buffer is shorter than the slots require.
        """
        if sys.byteorder != "little":
            raise FormatError("checkpoints are little-endian; big-endian hosts are not supported")

        available = memoryview(buffer).nbytes - offset
        required = checkpoint_nbytes(config)
        if available < required:
            raise FormatError(
                f"checkpoint truncated: need {required} bytes of weights "
                f"after offset {offset}, found {max(available, 0)}"
            )

        tensors = {}
        cursor = offset
        with warnings.catch_warnings():
            # Read-only buffers (bytes, mmap ACCESS_READ) trigger a warning in
            # torch.frombuffer; the store never writes to its views.
            warnings.filterwarnings("ignore", message=".*not writable.*")
            for name, shape in slot_shapes(config).items():
                count = _numel(shape)
                flat = torch.frombuffer(
                    buffer, dtype=torch.float32, count=count, offset=cursor
                )
                tensors[name] = flat.view(shape)
                cursor += count * FLOAT_BYTES

        if config.shared_weights:
            tensors["wcls"] = tensors["token_embedding"]
        return cls(**tensors)

    @property
    def shared_weights(self) -> bool:
        return self.wcls is self.token_embedding

    @property
    def n_layers(self) -> int:
        return self.wq.shape[0]

    def layer(self, l: int) -> LayerWeights:
        """All weights of layer `l` as 2-D (or 1-D) views."""
        return LayerWeights(
            rms_att=self.rms_att[l],
            wq=self.wq[l],
            wk=self.wk[l],
            wv=self.wv[l],
            wo=self.wo[l],
            rms_ffn=self.rms_ffn[l],
            w1=self.w1[l],
            w2=self.w2[l],
            w3=self.w3[l],
        )

    def named_tensors(self) -> list[tuple[str, torch.Tensor]]:
        """(slot name, tensor) pairs in checkpoint order; an aliased wcls is omitted."""
        pairs = [(name, getattr(self, name)) for name in SLOT_NAMES[:-1]]
        if not self.shared_weights:
            pairs.append(("wcls", self.wcls))
        return pairs


def load_checkpoint(buffer) -> tuple[ModelConfig, WeightStore]:
    """
    Parse the header and carve the weights from one checkpoint buffer.

    Raises:
        FormatError: If the header is invalid or the buffer is truncated.
    """
    config = ModelConfig.from_header(buffer)
    weights = WeightStore.load(config, buffer, offset=HEADER_SIZE)
    return config, weights


def read_checkpoint(path: str) -> tuple[ModelConfig, WeightStore]:
    """
    Memory-map a checkpoint file and load it.

    The map is copy-on-write ("c" mode): the file on disk is never modified,
    pages are only read in when touched, and the mapping stays alive for as
    long as any weight view references it.

    Raises:
        FileNotFoundError: If the file does not exist.
        FormatError: If the contents are malformed.
    """
    if os.path.getsize(path) < HEADER_SIZE:
        # np.memmap refuses empty files with a bare ValueError
        raise FormatError(f"{path} is too small to be a checkpoint")
    data = np.memmap(path, dtype=np.uint8, mode="c")
    return load_checkpoint(data)
