"""
Error kinds raised by llama-infer.

Every failure in the engine is fatal and surfaces as one of these types.
They all derive from LlamaError so a driver can catch the whole family in
one place, and from ValueError so callers that only care about "bad input"
keep working.

  FormatError        : truncated or malformed checkpoint / vocabulary bytes
  VocabularyError    : a prompt character has no single-character entry
  InvalidSeed        : the xorshift generator cannot start from state 0
  ConfigurationError : bad driver inputs (flags, paths, sampling settings)

Internal size invariants (mismatched tensor shapes, out-of-range positions)
are programming errors and are guarded with plain asserts instead.
"""


class LlamaError(Exception):
    """Base class for all llama-infer errors."""


class FormatError(LlamaError, ValueError):
    """A checkpoint or vocabulary buffer is truncated or malformed."""


class VocabularyError(LlamaError, ValueError):
    """Text contains a character that has no singleton vocabulary entry."""


class InvalidSeed(LlamaError, ValueError):
    """The random generator was seeded with 0."""


class ConfigurationError(LlamaError, ValueError):
    """Driver-level input (flags, paths, sampling settings) is invalid."""
