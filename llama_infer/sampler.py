"""
Turning logits into the next token: argmax, sampling, top-p, and the PRNG.

SAMPLING PIPELINE (one call per generated token):

    logits ──┬── temperature == 0 ──→ argmax(logits)             (greedy)
             │
             └── logits /= temperature
                 softmax(logits)                → probabilities
                   ├── 0 < topp < 1 ──→ sample_topp(probabilities)
                   └── otherwise    ──→ sample(probabilities)

  1. TEMPERATURE: Controls randomness
     - temperature < 1.0: Sharper distribution → more deterministic
     - temperature > 1.0: Flatter distribution → more random
     - temperature = 0:   Greedy decoding on the RAW logits

  2. TOP-P (Nucleus Sampling): Adaptive restriction
     - Keep the smallest set of most likely tokens whose mass exceeds p
     - Narrows when the model is confident, widens when it is uncertain

REPRODUCIBILITY:
  Every random draw comes from one explicit Prng object that is passed in.
  There is no hidden global generator: the same seed, weights and settings
  give the same tokens on every run and every platform.
"""

from typing import Optional

import torch

from llama_infer.errors import ConfigurationError, InvalidSeed
from llama_infer.model import softmax


MASK64 = 0xFFFF_FFFF_FFFF_FFFF
XORSHIFT_MULTIPLIER = 0x2545F4914F6CDD1D


# ═══════════════════════════════════════════════════════════════════════════
# Pseudo-random numbers
# ═══════════════════════════════════════════════════════════════════════════

class Prng:
    """
    xorshift64* generator (Vigna, 2014) over a 64-bit unsigned state.

    STEP:
      s ^= s >> 12
      s ^= s << 25      (mod 2^64)
      s ^= s >> 27
      u32 = (s · 0x2545F4914F6CDD1D mod 2^64) >> 32

    A zero state is a fixed point of the xorshift (it would return 0
    forever), so a seed congruent to 0 mod 2^64 is rejected.

    Example:
      rng = Prng(1)
      rng.random_u32()  # → 0x47E4CE4B
    """

    def __init__(self, seed: int):
        state = seed & MASK64
        if state == 0:
            raise InvalidSeed(f"seed {seed} is 0 mod 2^64; xorshift needs a nonzero state")
        self.state = state

    def random_u32(self) -> int:
        """Advance the state and return 32 random bits."""
        s = self.state
        s ^= s >> 12
        s ^= (s << 25) & MASK64
        s ^= s >> 27
        self.state = s
        return ((s * XORSHIFT_MULTIPLIER) & MASK64) >> 32

    def random_f32(self) -> float:
        """Uniform float in [0, 1) with 24 bits of precision (exact in float32)."""
        return (self.random_u32() >> 8) / 16777216.0

    def __repr__(self) -> str:
        return f"Prng(state=0x{self.state:016X})"


# ═══════════════════════════════════════════════════════════════════════════
# Token selection
# ═══════════════════════════════════════════════════════════════════════════

def argmax(x: torch.Tensor) -> int:
    """Index of the largest value; the FIRST one on ties."""
    # torch.argmax returns the first maximal index
    return int(torch.argmax(x))


def sample(probabilities: torch.Tensor, rng: Prng) -> int:
    """
    Draw an index from a probability distribution (must sum to ~1).

    Inverse-CDF sampling: r ~ U[0, 1), return the first i with
    r < probabilities[0] + ... + probabilities[i]. If rounding leaves the
    total mass just below r, the last index is returned.
    """
    n = probabilities.numel()
    r = rng.random_f32()
    cdf = torch.cumsum(probabilities, dim=0)
    # right=True: count of cdf entries <= r, i.e. the first entry > r
    idx = int(torch.searchsorted(cdf, torch.tensor([r], dtype=cdf.dtype), right=True)[0])
    return min(idx, n - 1)


def _sift_down(heap: list[int], probs: dict[int, float], start: int, size: int) -> None:
    """Restore the max-heap property (keyed by probs) below `start` within heap[:size]."""
    parent = start
    while True:
        child = 2 * parent + 1
        if child >= size:
            return
        right = child + 1
        if right < size and probs[heap[right]] > probs[heap[child]]:
            child = right
        if probs[heap[child]] > probs[heap[parent]]:
            heap[parent], heap[child] = heap[child], heap[parent]
            parent = child
        else:
            return


def sample_topp(
    probabilities: torch.Tensor,
    topp: float,
    indices: list[int],
    rng: Prng,
) -> int:
    """
    Top-p (nucleus) sampling: sample only from the most likely tokens whose
    cumulative probability first exceeds `topp`.

    HOW IT WORKS:
      1. Fast path: if a single token already has probability > topp, the
         nucleus is that token alone: return it without drawing.
      2. Keep only tokens with probability >= (1 - topp) / (n - 1), selected
         with one vectorized comparison. The tokens dropped here hold less
         than 1 - topp in total, so the nucleus is always found among the
         survivors. Build a max-heap of the m survivors (O(m)).
      3. Pop the maximum to the tail of `indices`, one at a time, adding its
         probability to the running mass, until the mass exceeds topp or
         every survivor has been taken. Only k pops are needed for a nucleus
         of size k: O(m + k log m) instead of a full sort.
      4. Draw r ~ U[0, mass) and walk the nucleus from the most likely
         token down, returning the first one whose running CDF exceeds r.

    EXAMPLE:
      probs = [0.1, 0.4, 0.05, 0.3, 0.15], topp = 0.8
      pops:   0.4 (1) → 0.3 (3) → 0.15 (4)   mass 0.85 > 0.8, stop
      nucleus = {1, 3, 4}; tokens 0 and 2 can never be returned.

    Args:
        probabilities: Distribution over the vocabulary, shape (n,).
        topp: Mass threshold in (0, 1).
        indices: Scratch list of at least n ints. Its head is overwritten
                 with the surviving token ids on every call, so its contents
                 on entry do not matter.
        rng: Random source.

    Returns:
        The sampled token id.
    """
    n = probabilities.numel()
    assert len(indices) >= n, f"indices scratch has {len(indices)} slots, need {n}"

    best = argmax(probabilities)
    if probabilities[best].item() > topp:
        return best

    # Tokens below the cutoff can never enter the nucleus: even all n - 1 of
    # them together hold at most 1 - topp. Only the survivors go on the heap.
    cutoff = (1.0 - topp) / (n - 1) if n > 1 else 0.0
    candidates = torch.nonzero(probabilities >= cutoff).flatten()
    m = candidates.numel()
    if m == 0:
        return best
    probs = dict(zip(candidates.tolist(), probabilities[candidates].tolist()))

    indices[:m] = probs.keys()
    for i in range(m // 2 - 1, -1, -1):
        _sift_down(indices, probs, i, m)

    # Largest elements accumulate at the tail: indices[last:m] is the nucleus
    cumulative = 0.0
    last = 0
    for end in range(m - 1, -1, -1):
        indices[0], indices[end] = indices[end], indices[0]
        cumulative += probs[indices[end]]
        if cumulative > topp:
            last = end
            break
        _sift_down(indices, probs, 0, end)

    r = rng.random_f32() * cumulative
    cdf = 0.0
    for i in range(m - 1, last - 1, -1):
        cdf += probs[indices[i]]
        if r < cdf:
            return indices[i]
    return indices[last]  # rounding error


class Sampler:
    """
    Sampling policy for a generation run.

    USAGE:
      sampler = Sampler(config.vocab_size, temperature=0.8, topp=0.9, rng=Prng(42))
      next_token = sampler.sample(state.logits, state.indices)

    sample() MUTATES the logits in place (temperature scaling and softmax).
    The next forward step overwrites them anyway.
    """

    def __init__(
        self,
        vocab_size: int,
        temperature: float = 1.0,
        topp: float = 0.9,
        rng: Optional[Prng] = None,
    ):
        assert temperature >= 0.0, f"temperature must be >= 0, got {temperature}"
        if rng is None and temperature != 0.0:
            raise ConfigurationError("a random generator is required when temperature > 0")
        self.vocab_size = vocab_size
        self.temperature = temperature
        self.topp = topp
        self.rng = rng

    @property
    def uses_topp(self) -> bool:
        return 0.0 < self.topp < 1.0

    def sample(self, logits: torch.Tensor, indices: list[int]) -> int:
        """Pick the next token from `logits` (shape (vocab_size,))."""
        assert logits.numel() == self.vocab_size
        if self.temperature == 0.0:
            return argmax(logits)
        logits.div_(self.temperature)
        softmax(logits)
        if self.uses_topp:
            return sample_topp(logits, self.topp, indices, self.rng)
        return sample(logits, self.rng)

    def __repr__(self) -> str:
        return (
            f"Sampler(vocab_size={self.vocab_size}, temperature={self.temperature}, "
            f"topp={self.topp})"
        )
