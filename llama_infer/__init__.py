"""
llama-infer: Llama-2 checkpoint runner for the CPU in PyTorch.

This package loads a flat, memory-mapped Llama-2 checkpoint and generates
text one token at a time with a KV cache, greedy BPE prompt encoding and
temperature / top-p sampling.

Key modules:
  - config:    Checkpoint header and generation settings
  - errors:    Error kinds (FormatError, VocabularyError, ...)
  - weights:   Zero-copy tensor views over the checkpoint
  - state:     Preallocated scratch buffers and KV cache
  - model:     Single-token forward pass (RMSNorm, RoPE, attention, SwiGLU)
  - tokenizer: Scored-vocabulary BPE encoder and piece decoder
  - sampler:   argmax, sampling, top-p, xorshift PRNG
  - generate:  Autoregressive generation loop
  - export:    Writers for checkpoint and vocabulary files
  - device:    Worker threads for row- and head-parallel work
  - utils:     Logging, timing, diagnostics
"""

__version__ = "0.1.0"
