"""
Generation driver: the autoregressive loop that ties everything together.

One token per step, one forward pass per token:

    token = BOS, pos = 0
    while pos < steps:
        logits = forward(token, pos)            # extends the KV cache by one
        if pos < len(prompt):
            next = prompt[pos]                  # PROMPT phase: force the prompt
        else:
            next = sampler.sample(logits)       # GENERATION phase
        pos += 1
        if next == BOS: stop                    # BOS delimits sequences
        emit decode_piece(token, next)
        token = next

PROMPT PROCESSING:
  There is no separate batched prefill. Prompt tokens go through the same
  single-token forward pass as generated ones; their logits are simply
  ignored and the next prompt token is forced instead of sampled. After the
  prompt is consumed the cache holds every prompt position and sampling
  continues from there.

  Example: prompt = "Once upon" → [9038, 2501]
    pos 0: forward(BOS)   → forced 9038  ("Once")
    pos 1: forward(9038)  → forced 2501  (" upon")
    pos 2: forward(2501)  → sampled      (" a")
    ...

STOPPING:
  - Sampling (or forcing) BOS ends the run; BOS itself is not emitted.
  - Otherwise the run ends after `steps` forward passes.

TIMING:
  The first step is often slower (page faults on the memory-mapped weights,
  thread start-up), so throughput is measured from the END of the first step:
  tok/s = (steps - 1) / time since first step.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from llama_infer.config import BOS_ID, GenerationConfig, ModelConfig, resolve_steps
from llama_infer.device import WorkerPool
from llama_infer.model import forward
from llama_infer.sampler import Prng, Sampler
from llama_infer.state import InferenceState
from llama_infer.tokenizer import Tokenizer
from llama_infer.weights import WeightStore


@dataclass
class GenerateResult:
    """Result of one generation run with timing metrics."""
    text: str
    tokens: list[int] = field(default_factory=list)  # emitted ids, prompt included, BOS excluded
    prompt_tokens: int = 0      # number of prompt tokens (forced, not sampled)
    steps: int = 0              # forward passes run
    total_ms: float = 0.0       # wall time of the whole loop (ms)
    decode_ms: float = 0.0      # wall time after the first step (ms)
    temperature: float = 0.0    # sampling temperature used
    topp: float = 0.0           # top-p value used

    @property
    def generated_tokens(self) -> int:
        """Tokens produced by sampling, excluding the forced prompt."""
        return max(len(self.tokens) - self.prompt_tokens, 0)

    @property
    def tok_per_sec(self) -> float:
        """Throughput excluding the first step (0 if fewer than two steps ran)."""
        if self.steps <= 1 or self.decode_ms <= 0:
            return 0.0
        return (self.steps - 1) / (self.decode_ms / 1000)

    def stats_string(self) -> str:
        """Formatted summary of generation metrics."""
        lines = [
            f"Sampling       : temp={self.temperature}, top_p={self.topp}",
            f"Prompt tokens  : {self.prompt_tokens}",
            f"Output tokens  : {self.generated_tokens}",
            f"Steps          : {self.steps}",
            f"Achieved speed : {self.tok_per_sec:.1f} tok/s",
            f"Total time     : {self.total_ms:.1f} ms",
        ]
        return "\n".join(lines)


def build_sampler(gen_config: GenerationConfig, vocab_size: int) -> Sampler:
    """
    Create the sampler for a run. A missing seed is taken from the clock.

    Raises:
        ConfigurationError: If the settings are invalid.
        InvalidSeed: If the seed is 0 (mod 2^64).
    """
    gen_config.validate()
    seed = gen_config.seed
    if seed is None:
        seed = time.time_ns()
    return Sampler(
        vocab_size,
        temperature=gen_config.temperature,
        topp=gen_config.topp,
        rng=Prng(seed),
    )


def generate(
    config: ModelConfig,
    weights: WeightStore,
    tokenizer: Tokenizer,
    sampler: Sampler,
    prompt: Optional[str] = None,
    steps: int = 256,
    state: Optional[InferenceState] = None,
    pool: Optional[WorkerPool] = None,
    on_piece: Optional[Callable[[str], None]] = None,
) -> GenerateResult:
    """
    Run the generation loop from BOS.

    Args:
        config: Model header.
        weights: Checkpoint tensors.
        tokenizer: Encodes the prompt and decodes emitted tokens.
        sampler: Picks tokens once the prompt is consumed.
        prompt: Optional text to force before sampling starts.
        steps: Maximum forward passes. 0, negative, or more than seq_len
               means seq_len.
        state: Run state to use. A fresh one is allocated when None. A
               passed-in state must be fresh (or reset()), since positions
               restart at 0.
        pool: Optional worker pool for the forward pass.
        on_piece: Called with each decoded piece as soon as it is produced
                  (e.g. to stream text to the terminal).

    Returns:
        GenerateResult with the emitted text, token ids and timing.

    Raises:
        VocabularyError: If the prompt contains a character the vocabulary
                         cannot represent.
    """
    steps = resolve_steps(steps, config.seq_len)

    prompt_tokens = tokenizer.encode(prompt) if prompt else []
    if state is None:
        state = InferenceState.new(config)

    emitted = []
    pieces = []
    token = BOS_ID
    pos = 0

    t_start = time.perf_counter()
    t_first = None

    while pos < steps:
        forward(token, pos, config, weights, state, pool)

        if pos < len(prompt_tokens):
            next_token = prompt_tokens[pos]
        else:
            next_token = sampler.sample(state.logits, state.indices)
        pos += 1

        if next_token == BOS_ID:
            break

        piece = tokenizer.decode_piece(token, next_token)
        if on_piece is not None:
            on_piece(piece)
        pieces.append(piece)
        emitted.append(next_token)
        token = next_token

        if t_first is None:
            t_first = time.perf_counter()

    t_end = time.perf_counter()

    return GenerateResult(
        text="".join(pieces),
        tokens=emitted,
        prompt_tokens=min(len(prompt_tokens), len(emitted)),
        steps=pos,
        total_ms=(t_end - t_start) * 1000,
        decode_ms=(t_end - t_first) * 1000 if t_first is not None else 0.0,
        temperature=sampler.temperature,
        topp=sampler.topp,
    )
