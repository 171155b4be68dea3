"""
Greedy BPE tokenizer over a scored vocabulary file.

This module turns prompt text into token ids the model was trained on, and
token ids back into text pieces, WITHOUT needing the SentencePiece runtime:
everything it needs is in a flat `tokenizer.bin` exported once from a
SentencePiece model (see export.py).

VOCABULARY FILE FORMAT (little-endian):
  ┌──────────────────┬──────────────────────────────────────────────────┐
  │ int32            │ max_token_length (advisory, never used to parse) │
  ├──────────────────┼──────────────────────────────────────────────────┤
  │ per entry:       │                                                  │
  │   float32        │ merge score                                      │
  │   int32          │ byte length L                                    │
  │   L bytes        │ UTF-8 piece text                                 │
  └──────────────────┴──────────────────────────────────────────────────┘
  The entry count is NOT stored: it comes from the checkpoint's vocab_size.

GREEDY BPE ENCODING:
  1. Start with one token per character (Unicode code point).
  2. Look at every adjacent pair. If the concatenation of the two pieces is
     itself in the vocabulary, it is a candidate merge.
  3. Apply the candidate with the HIGHEST score (leftmost on ties).
  4. Repeat until no adjacent pair merges.

  Example (scores made up):
    "the"  →  [t, h, e]
           →  [th, e]      ("th" score 5.0 beats "he" score 2.0)
           →  [the]        ("the" is in the vocabulary)

  Scores come from SentencePiece: earlier (more frequent) merges score
  higher, so this reproduces the merge order learned at training time.

SPACES:
  SentencePiece marks word starts with "▁" (U+2581). The exporter rewrites
  it to a plain space, so " time" is a single piece and a prompt's spaces
  merge into the word that follows them.

SPECIAL TOKENS:
  - <unk> (id=0)
  - <s>   (id=1): BOS. Every sequence starts with it; sampling it ends
                  generation.
  - </s>  (id=2): EOS.
"""

import struct
from dataclasses import dataclass, field
from typing import Optional

from llama_infer.config import BOS_ID, EOS_ID
from llama_infer.errors import FormatError, VocabularyError


@dataclass(frozen=True)
class Vocabulary:
    """
    Ordered pieces with parallel merge scores.

    Lookup by piece text goes through a dict built once at construction.
    If a piece appears more than once, the FIRST id wins, which matches a
    linear scan from the start of the table.
    """

    pieces: tuple[str, ...]
    scores: tuple[float, ...]
    max_token_length: int = 0
    _ids: dict = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        assert len(self.pieces) == len(self.scores), (
            f"{len(self.pieces)} pieces but {len(self.scores)} scores"
        )
        ids = {}
        for i, piece in enumerate(self.pieces):
            ids.setdefault(piece, i)
        object.__setattr__(self, "_ids", ids)

    def __len__(self) -> int:
        return len(self.pieces)

    def lookup(self, piece: str) -> Optional[int]:
        """Id of the first entry equal to `piece`, or None."""
        return self._ids.get(piece)

    @classmethod
    def from_buffer(cls, buffer, vocab_size: int) -> "Vocabulary":
        """
        Parse `vocab_size` entries from a vocabulary file image.

        Raises:
            FormatError: On truncation, a negative piece length, or a piece
                         that is not valid UTF-8.
        """
        view = memoryview(buffer).cast("B")
        total = len(view)
        if total < 4:
            raise FormatError("vocabulary truncated: missing max_token_length")
        (max_token_length,) = struct.unpack_from("<i", view, 0)

        pieces = []
        scores = []
        cursor = 4
        for i in range(vocab_size):
            if cursor + 8 > total:
                raise FormatError(f"vocabulary truncated at entry {i} of {vocab_size}")
            score, length = struct.unpack_from("<fi", view, cursor)
            cursor += 8
            if length < 0:
                raise FormatError(f"vocabulary entry {i} has negative length {length}")
            if cursor + length > total:
                raise FormatError(f"vocabulary truncated inside entry {i}")
            try:
                piece = bytes(view[cursor: cursor + length]).decode("utf-8")
            except UnicodeDecodeError as e:
                raise FormatError(f"vocabulary entry {i} is not valid UTF-8") from e
            cursor += length
            pieces.append(piece)
            scores.append(score)

        return cls(tuple(pieces), tuple(scores), max_token_length)

    @classmethod
    def load(cls, path: str, vocab_size: int) -> "Vocabulary":
        """Read and parse a vocabulary file."""
        with open(path, "rb") as f:
            data = f.read()
        return cls.from_buffer(data, vocab_size)


class Tokenizer:
    """
    Encode prompts and decode generated tokens with a Vocabulary.

    USAGE:
      tokenizer = Tokenizer.from_file("tokenizer.bin", config.vocab_size)

      tokens = tokenizer.encode("Once upon a time")
      # → [9038, 2501, 263, 931]

      prev = BOS_ID
      for token in tokens:
          print(tokenizer.decode_piece(prev, token), end="")
          prev = token
    """

    def __init__(self, vocab: Vocabulary):
        self.vocab = vocab

    @classmethod
    def from_file(cls, path: str, vocab_size: int) -> "Tokenizer":
        return cls(Vocabulary.load(path, vocab_size))

    def encode(
        self,
        text: str,
        bos: bool = False,
        eos: bool = False,
    ) -> list[int]:
        """
        Encode text into token ids with greedy score-ordered BPE.

        The generation loop feeds BOS itself, so by default no special
        tokens are added here.

        Args:
            text: Prompt text.
            bos: If True, prepend BOS (id=1).
            eos: If True, append EOS (id=2).

        Returns:
            List of token ids.

        Raises:
            VocabularyError: If a character of `text` has no single-character
                             vocabulary entry.
        """
        vocab = self.vocab
        tokens = []
        for ch in text:
            token = vocab.lookup(ch)
            if token is None:
                raise VocabularyError(f"character {ch!r} is not in the vocabulary")
            tokens.append(token)

        # Merge the best-scoring adjacent pair until none merges
        while True:
            best_score = None
            best_id = -1
            best_idx = -1
            for i in range(len(tokens) - 1):
                merged = vocab.lookup(vocab.pieces[tokens[i]] + vocab.pieces[tokens[i + 1]])
                if merged is not None and (best_score is None or vocab.scores[merged] > best_score):
                    best_score = vocab.scores[merged]
                    best_id = merged
                    best_idx = i
            if best_idx == -1:
                break
            tokens[best_idx: best_idx + 2] = [best_id]

        if bos:
            tokens = [self.bos_id] + tokens
        if eos:
            tokens = tokens + [self.eos_id]
        return tokens

    def decode_piece(self, prev_token: int, token: int) -> str:
        """
        Text of `token` as it should appear after `prev_token`.

        Following BOS the SentencePiece decoder drops a leading space, so the
        first word of a story does not start with " ".
        """
        piece = self.vocab.pieces[token]
        if prev_token == BOS_ID and piece.startswith(" "):
            piece = piece[1:]
        return piece

    def decode(self, tokens: list[int], prev_token: int = BOS_ID) -> str:
        """Concatenate the pieces of `tokens`, as if they followed `prev_token`."""
        parts = []
        for token in tokens:
            parts.append(self.decode_piece(prev_token, token))
            prev_token = token
        return "".join(parts)

    @property
    def vocab_size(self) -> int:
        return len(self.vocab)

    @property
    def bos_id(self) -> int:
        """Token ID for Beginning Of Sequence (<s>)."""
        return BOS_ID

    @property
    def eos_id(self) -> int:
        """Token ID for End Of Sequence (</s>)."""
        return EOS_ID

    def id_to_piece(self, token_id: int) -> str:
        return self.vocab.pieces[token_id]

    def piece_to_id(self, piece: str) -> int:
        """Id of `piece`, or -1 if it is not in the vocabulary."""
        token = self.vocab.lookup(piece)
        return -1 if token is None else token

    def __len__(self) -> int:
        """Return vocabulary size."""
        return self.vocab_size
