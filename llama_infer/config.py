"""
Configuration for the checkpoint runner.

Two dataclasses live here:

  ModelConfig      — the architecture header stored at the front of every
                     checkpoint file. It is parsed, never chosen: the weights
                     only make sense with the exact dimensions they were
                     exported with.
  GenerationConfig — how a generation run samples (temperature, top-p,
                     seed, step budget, worker threads). Owned by the driver.

CHECKPOINT HEADER LAYOUT (little-endian, 7 × int32 = 28 bytes):
  ┌────────┬────────────┬──────────┬─────────┬────────────┬────────────┬─────────┐
  │ dim    │ hidden_dim │ n_layers │ n_heads │ n_kv_heads │ vocab_size │ seq_len │
  └────────┴────────────┴──────────┴─────────┴────────────┴────────────┴─────────┘

  vocab_size is SIGNED. Its sign, not its magnitude, says whether the output
  classifier shares storage with the token embedding table:
    vocab_size > 0  → shared_weights=True   (classifier = embedding table)
    vocab_size < 0  → shared_weights=False  (separate classifier at the tail)
  The in-memory vocab_size is always the magnitude.
"""

from dataclasses import dataclass, asdict, fields
from typing import Optional
import json
import os
import struct

from llama_infer.errors import ConfigurationError, FormatError


HEADER_FORMAT = "<7i"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 28 bytes

# Token id that starts every sequence and, when sampled, ends generation.
BOS_ID = 1
# Token id SentencePiece uses for end of sequence.
EOS_ID = 2


def resolve_steps(steps: int, seq_len: int) -> int:
    """
    Clamp a step budget to [1, seq_len].

    0 or negative means "run to seq_len", as does anything above seq_len:
    the KV cache has no room for more positions.
    """
    if steps <= 0 or steps > seq_len:
        return seq_len
    return steps


@dataclass
class ModelConfig:
    """
    Architecture hyperparameters parsed from a checkpoint header.

    PARAMETER COUNT (stories15M checkpoint, shared weights):
    ─────────────────────────────────────────────
    Token Embedding (32000 × 288):             9,216,000
    6 Transformer Layers:                       5,975,424
      Per layer:
        Wq, Wk, Wv, Wo (288 × 288 each):          331,776
        W1, W3 (768 × 288 each):                  442,368
        W2 (288 × 768):                           221,184
        2× RMSNorm (288 each):                        576
    Final RMSNorm (288):                                288
    ─────────────────────────────────────────────

    n_kv_heads is carried for completeness, but the weight layout is always
    full multi-head attention: Wk and Wv are (dim, dim) regardless.
    """

    dim: int
    hidden_dim: int
    n_layers: int
    n_heads: int
    n_kv_heads: int
    vocab_size: int
    seq_len: int
    shared_weights: bool = True

    @property
    def head_size(self) -> int:
        """Dimension of each attention head. dim must divide evenly."""
        assert self.dim % self.n_heads == 0, (
            f"dim ({self.dim}) must be divisible by n_heads ({self.n_heads})"
        )
        return self.dim // self.n_heads

    def validate(self) -> None:
        """
        Check the header describes a model we can run.

        A header is untrusted input (it comes from a file), so violations are
        reported as FormatError rather than asserted.
        """
        for name in ("dim", "hidden_dim", "n_layers", "n_heads", "n_kv_heads",
                     "vocab_size", "seq_len"):
            value = getattr(self, name)
            if value <= 0:
                raise FormatError(f"{name} must be positive, got {value}")
        if self.dim % self.n_heads != 0:
            raise FormatError(
                f"dim ({self.dim}) must be divisible by n_heads ({self.n_heads})"
            )
        if self.head_size % 2 != 0:
            raise FormatError(
                f"head_size ({self.head_size}) must be even for RoPE rotation pairs"
            )

    @classmethod
    def from_header(cls, buffer, offset: int = 0) -> "ModelConfig":
        """
        Parse the 28-byte checkpoint header.

        Args:
            buffer: Any object supporting the buffer protocol (bytes, mmap,
                    numpy memmap, ...).
            offset: Byte offset of the header inside the buffer.

        Raises:
            FormatError: If the buffer is too short or the header is invalid.
        """
        view = memoryview(buffer).cast("B")
        if len(view) - offset < HEADER_SIZE:
            raise FormatError(
                f"checkpoint header needs {HEADER_SIZE} bytes, "
                f"buffer has {max(len(view) - offset, 0)}"
            )
        dim, hidden_dim, n_layers, n_heads, n_kv_heads, vocab_size, seq_len = (
            struct.unpack_from(HEADER_FORMAT, view, offset)
        )
        config = cls(
            dim=dim,
            hidden_dim=hidden_dim,
            n_layers=n_layers,
            n_heads=n_heads,
            n_kv_heads=n_kv_heads,
            vocab_size=abs(vocab_size),
            seq_len=seq_len,
            shared_weights=vocab_size > 0,
        )
        config.validate()
        return config

    def to_header(self) -> bytes:
        """Serialize back to the 28-byte header (sign of vocab_size encodes sharing)."""
        signed_vocab = self.vocab_size if self.shared_weights else -self.vocab_size
        return struct.pack(
            HEADER_FORMAT,
            self.dim, self.hidden_dim, self.n_layers, self.n_heads,
            self.n_kv_heads, signed_vocab, self.seq_len,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ModelConfig":
        """Reconstruct from dictionary."""
        return cls(**d)


@dataclass
class GenerationConfig:
    """
    Sampling and run settings for one generation.

    temperature:
      0.0 = greedy argmax on the raw logits (fully deterministic).
      1.0 = sample from the model's distribution as-is.
      Logits are divided by temperature before softmax, so values < 1
      sharpen the distribution and values > 1 flatten it.

    topp:
      Nucleus sampling threshold. Sampling is restricted to the smallest set
      of most-likely tokens whose mass exceeds topp. 0 (or >= 1) disables
      the restriction and samples from the full distribution.

    seed:
      Seed for the xorshift generator. None picks one from the wall clock.
      0 is rejected by the generator itself.

    steps:
      Maximum number of forward passes. 0 (or anything above the model's
      seq_len) runs to seq_len.

    n_workers:
      Threads used for the row-parallel matmuls and head-parallel
      attention. None uses every CPU; 1 runs everything inline.
    """

    temperature: float = 1.0
    topp: float = 0.9
    seed: Optional[int] = None
    steps: int = 256
    n_workers: Optional[int] = None

    def validate(self) -> None:
        for name, kinds in (
            ("temperature", (int, float)),
            ("topp", (int, float)),
            ("steps", (int,)),
            ("seed", (int, type(None))),
            ("n_workers", (int, type(None))),
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, kinds):
                raise ConfigurationError(
                    f"{name} has invalid type {type(value).__name__}: {value!r}"
                )
        if self.temperature < 0.0:
            raise ConfigurationError(
                f"temperature must be >= 0, got {self.temperature}"
            )
        if self.n_workers is not None and self.n_workers < 1:
            raise ConfigurationError(
                f"n_workers must be >= 1, got {self.n_workers}"
            )

    def resolve_steps(self, seq_len: int) -> int:
        """The step budget, clamped to the model's maximum sequence length."""
        return resolve_steps(self.steps, seq_len)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "GenerationConfig":
        """
        Reconstruct from dictionary.

        Raises:
            ConfigurationError: If `d` is not a dict or has unknown keys.
        """
        if not isinstance(d, dict):
            raise ConfigurationError(
                f"generation config must be a JSON object, got {type(d).__name__}"
            )
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(d) - known)
        if unknown:
            raise ConfigurationError(
                f"unknown generation config keys: {', '.join(unknown)} "
                f"(expected a subset of {', '.join(sorted(known))})"
            )
        return cls(**d)

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "GenerationConfig":
        """
        Load configuration from JSON file.

        Raises:
            ConfigurationError: If the file cannot be read, is not valid
                                JSON, or does not describe a GenerationConfig.
        """
        try:
            with open(path, "r") as f:
                d = json.load(f)
        except OSError as e:
            raise ConfigurationError(f"cannot read config file {path}: {e}") from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"config file {path} is not valid JSON: {e}") from e
        return cls.from_dict(d)
