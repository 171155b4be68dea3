"""
CPU execution layer: worker threads for data-parallel fan-out/fan-in.

This module encapsulates ALL threading decisions so that the forward pass
never has to know how many cores it is running on. It asks a WorkerPool to
"run this function over these row ranges" and gets control back only after
every range has finished.

EXECUTION MODEL:
  There are exactly two parallel regions per forward step:

    1. matmul — parallel over OUTPUT ROWS.
       out[i] = dot(W[i, :], x). Every row is independent, so the rows are
       split into one contiguous block per worker and each block is written
       by exactly one worker. No locks needed.

    2. attention — parallel over HEADS.
       Each head reads the shared (read-only during this step) KV cache plus
       its own query slice and writes its own output slice.

  Both regions end in a JOIN: WorkerPool.run() waits for every submitted
  block before returning, so no consumer ever reads a half-written vector.

WHY THREADS WORK HERE:
  The per-block work is a torch kernel (torch.mv, torch.softmax...). torch
  releases the GIL inside its kernels, so blocks really do run on separate
  cores even though they are Python threads.

OVERSUBSCRIPTION:
  torch also has its own intra-op thread pool. When we fan out across N
  workers ourselves, each worker's torch call should run single-threaded,
  otherwise N × torch_threads threads fight over the same cores.
  configure_torch_threads() sets this up; the driver calls it once.
"""

import os
import platform
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Optional

import torch


def get_num_workers(requested: Optional[int] = None) -> int:
    """
    Resolve a worker count.

    Args:
        requested: Explicit count, or None for "every CPU".

    Returns:
        A positive worker count.
    """
    if requested is not None:
        assert requested >= 1, f"n_workers must be >= 1, got {requested}"
        return requested
    return os.cpu_count() or 1


def configure_torch_threads(n_workers: int) -> None:
    """
    Give torch's intra-op pool the cores we are NOT fanning out over.

    With n_workers == 1 we do no fan-out ourselves, so torch keeps its
    default threading and parallelizes inside each kernel instead.
    """
    if n_workers > 1:
        torch.set_num_threads(1)


def split_range(total: int, n_parts: int) -> list[tuple[int, int]]:
    """
    Split [0, total) into at most n_parts contiguous, non-empty ranges.

    Sizes differ by at most one; earlier ranges get the extra element.

      split_range(10, 3) → [(0, 4), (4, 7), (7, 10)]
      split_range(2, 4)  → [(0, 1), (1, 2)]
    """
    n_parts = max(1, min(n_parts, total))
    base, extra = divmod(total, n_parts)
    ranges = []
    start = 0
    for i in range(n_parts):
        end = start + base + (1 if i < extra else 0)
        if end > start:
            ranges.append((start, end))
        start = end
    return ranges


class WorkerPool:
    """
    Fork-join pool for the forward pass.

    USAGE:
      with WorkerPool(4) as pool:
          pool.run_ranges(d, lambda lo, hi: torch.mv(w[lo:hi], x, out=out[lo:hi]))
          pool.run(attend_head, range(n_heads))

    A pool with a single worker executes everything inline on the calling
    thread, which keeps tests and tiny models free of threading overhead.
    """

    def __init__(self, n_workers: Optional[int] = None):
        self.n_workers = get_num_workers(n_workers)
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.n_workers > 1:
            self._executor = ThreadPoolExecutor(
                max_workers=self.n_workers,
                thread_name_prefix="llama-infer",
            )

    def run(self, fn: Callable, items: Iterable) -> None:
        """
        Call fn(item) for every item and wait for all of them (the join).

        The first exception raised by any worker is re-raised here, after
        every submitted call has been waited on.
        """
        if self._executor is None:
            for item in items:
                fn(item)
            return
        futures = [self._executor.submit(fn, item) for item in items]
        error = None
        for future in futures:
            exc = future.exception()
            if exc is not None and error is None:
                error = exc
        if error is not None:
            raise error

    def run_ranges(self, total: int, fn: Callable[[int, int], object]) -> None:
        """Call fn(lo, hi) over one contiguous block of [0, total) per worker."""
        if self._executor is None or total < 2:
            fn(0, total)
            return
        self.run(lambda r: fn(*r), split_range(total, self.n_workers))

    def close(self) -> None:
        """Shut down the worker threads."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
            self.n_workers = 1

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def __repr__(self) -> str:
        return f"WorkerPool(n_workers={self.n_workers})"


def device_info(pool: Optional[WorkerPool] = None) -> str:
    """
    Return a human-readable summary of the CPU we are running on.

    Example output:
      Device: CPU (x86_64)
        Logical cores: 8
        Torch threads: 1
        Workers: 8
    """
    lines = [f"Device: CPU ({platform.machine() or 'unknown'})"]
    lines.append(f"  Logical cores: {os.cpu_count() or 1}")
    lines.append(f"  Torch threads: {torch.get_num_threads()}")
    if pool is not None:
        lines.append(f"  Workers: {pool.n_workers}")
    return "\n".join(lines)
