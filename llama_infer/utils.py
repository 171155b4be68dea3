"""
Utility functions for the inference runner.

This module contains cross-cutting concerns that don't belong in any
specific component: diagnostics (parameter counting, weight summaries),
timing, and logging.

These utilities are intentionally simple: no frameworks, nothing beyond
the standard library.
"""

import os
import sys
import time
from datetime import datetime
from typing import Optional, TextIO

from llama_infer.weights import WeightStore


# ═══════════════════════════════════════════════════════════════════════════
# MODEL DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

def count_parameters(weights: WeightStore) -> int:
    """
    Count the parameters stored in a checkpoint.

    Every slot counts, RoPE tables included, since they occupy the file too.
    A shared classifier IS the embedding table, so it is counted once.

    Returns:
        Total number of float32 values behind the store.
    """
    return sum(t.numel() for _, t in weights.named_tensors())


def weight_summary(weights: WeightStore) -> str:
    """
    Per-slot breakdown of the checkpoint, returned as a printable table.

    Example output:
      =================================================================
      Checkpoint Weight Summary
      =================================================================
      Slot                                 Shape          Params      %
      -----------------------------------------------------------------
        token_embedding                 32000x288      9,216,000 (60.6%)
        wq                              6x288x288        497,664 ( 3.3%)
        ...
      -----------------------------------------------------------------
        TOTAL                                         15,204,000
        Classifier                                   shared with embedding
        Memory (fp32)                                       58.0 MB
      =================================================================
    """
    named = weights.named_tensors()
    grand_total = sum(t.numel() for _, t in named)

    lines = []
    lines.append("=" * 65)
    lines.append("Checkpoint Weight Summary")
    lines.append("=" * 65)
    lines.append(f"{'Slot':<24} {'Shape':>18} {'Params':>12} {'%':>7}")
    lines.append("-" * 65)

    for name, t in named:
        n = t.numel()
        shape = "x".join(str(d) for d in t.shape)
        pct = 100.0 * n / grand_total if grand_total > 0 else 0
        lines.append(f"  {name:<22} {shape:>18} {n:>12,d} ({pct:>5.1f}%)")

    lines.append("-" * 65)
    lines.append(f"  {'TOTAL':<41} {grand_total:>12,d}")
    classifier = "shared with embedding" if weights.shared_weights else "separate"
    lines.append(f"  {'Classifier':<41} {classifier:>12}")
    fp32_mb = grand_total * 4 / 1024**2
    lines.append(f"  {'Memory (fp32)':<41} {fp32_mb:>9.1f} MB")
    lines.append("=" * 65)
    return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Simple context manager for timing code blocks.

    Usage:
        with Timer("Load checkpoint") as t:
            config, weights = read_checkpoint(path)
        print(t)
        # Prints: "Load checkpoint: 0.0234s"
    """

    def __init__(self, name: str = "Block"):
        self.name = name
        self.elapsed: float = 0.0

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed = time.perf_counter() - self.start

    def __str__(self):
        return f"{self.name}: {self.elapsed:.4f}s"


# ═══════════════════════════════════════════════════════════════════════════
# GENERATION LOGGER
# ═══════════════════════════════════════════════════════════════════════════

class GenerationLogger:
    """
    Lightweight run logger that writes to the console and an optional log file.

    Generated text goes to stdout, so everything this logger writes goes
    to stderr instead: piping the output of a run into a file captures only
    the story.

    Records per run:
      - The model header and sampling settings
      - Load timing and worker count
      - Token counts and throughput (tok/s)
    """

    def __init__(self, log_dir: Optional[str] = None, stream: Optional[TextIO] = None):
        """
        Args:
            log_dir: Directory for log files. If None, only console output.
            stream: Console stream (default: sys.stderr at write time).
        """
        self.stream = stream
        self.log_file = None
        self.log_path = None
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = os.path.join(log_dir, f"generate_{timestamp}.log")
            self.log_file = open(log_path, "w")
            self.log_path = log_path
            self._write(f"Logging to: {log_path}")

    def _write(self, msg: str) -> None:
        """Write message to console and optionally to log file."""
        print(msg, file=self.stream or sys.stderr)
        if self.log_file:
            self.log_file.write(msg + "\n")
            self.log_file.flush()

    def log_config(self, name: str, d: dict) -> None:
        """
        Log a configuration dict, one key per line.

        Example output:
          model:
            dim            : 288
            n_layers       : 6
        """
        lines = [f"{name}:"]
        for key, value in d.items():
            lines.append(f"  {key:<15}: {value}")
        self._write("\n".join(lines))

    def log_result(self, result) -> None:
        """Log the statistics block of a GenerateResult."""
        self._write(
            f"{'─' * 60}\n"
            f"{result.stats_string()}\n"
            f"{'─' * 60}"
        )

    def log_block(self, text: str) -> None:
        """Log a preformatted multi-line block (e.g. weight_summary) as-is."""
        self._write(text)

    def log_info(self, msg: str) -> None:
        """Log an informational message."""
        self._write(f"[INFO] {msg}")

    def close(self) -> None:
        """Close the log file if open."""
        if self.log_file:
            self.log_file.close()
            self.log_file = None

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
