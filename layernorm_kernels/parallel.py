"""
Data-parallel execution over LayerNorm positions

Every (b, t) position is independent, so the kernels split the flattened
B*T positions into fixed-size chunks and run them on a thread pool. torch
releases the GIL inside its kernels, so chunks genuinely overlap.

Features:
- Fixed chunk boundaries (independent of the worker count)
- Unordered execution, results collected in chunk order
- Deterministic pairwise merge of per-chunk partial accumulators
- Shared, lazily created worker pools
"""

import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChunkFn = Callable[[int, int], T]


def chunk_ranges(total: int, chunk_size: int) -> List[Tuple[int, int]]:
    """Split [0, total) into half-open ranges of at most chunk_size"""
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    return [(start, min(start + chunk_size, total)) for start in range(0, total, chunk_size)]


def tree_reduce(partials: Sequence[T], combine: Callable[[T, T], T]) -> Optional[T]:
    """
    Merge partials pairwise: ((p0+p1)+(p2+p3))+...

    The tree shape depends only on len(partials), so the floating-point
    result is reproducible for a given chunking.
    """
    level = list(partials)
    if not level:
        return None
    while len(level) > 1:
        merged = [combine(level[i], level[i + 1]) for i in range(0, len(level) - 1, 2)]
        if len(level) % 2:
            merged.append(level[-1])
        level = merged
    return level[0]


class PositionExecutor:
    """Runs a chunk function over position ranges on a private thread pool"""

    def __init__(self, num_workers: int = 1):
        if num_workers < 1:
            raise ValueError(f"num_workers must be >= 1, got {num_workers}")
        self.num_workers = num_workers
        self._pool: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _get_pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                logger.debug(f"Starting LayerNorm worker pool with {self.num_workers} threads")
                self._pool = ThreadPoolExecutor(
                    max_workers=self.num_workers, thread_name_prefix="layernorm"
                )
            return self._pool

    def map(self, fn: ChunkFn, total: int, chunk_size: int) -> List[T]:
        """
        Apply fn(start, end) to every chunk of [0, total).

        Chunks may run in any order; the returned list is in chunk order.
        If a chunk raises, chunks not yet started are cancelled and running
        ones are waited for, so no chunk touches the buffers after this
        returns. The exception of the first failed chunk is re-raised.
        """
        ranges = chunk_ranges(total, chunk_size)
        if self.num_workers == 1 or len(ranges) <= 1:
            return [fn(start, end) for start, end in ranges]

        pool = self._get_pool()
        futures = [pool.submit(fn, start, end) for start, end in ranges]
        _, not_done = wait(futures, return_when=FIRST_EXCEPTION)
        if not_done:
            for future in not_done:
                future.cancel()
            wait(not_done)

        for future in futures:
            if not future.cancelled() and future.exception() is not None:
                raise future.exception()
        return [future.result() for future in futures]

    def map_reduce(self, fn: ChunkFn, total: int, chunk_size: int,
                   combine: Callable[[T, T], T]) -> Optional[T]:
        """map() followed by a deterministic tree_reduce() of the results"""
        return tree_reduce(self.map(fn, total, chunk_size), combine)

    def shutdown(self, wait: bool = True):
        """Stop the worker threads; the pool is recreated on next use"""
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()


# Global instances, one per worker count
_executors: Dict[int, PositionExecutor] = {}
_executors_lock = threading.Lock()


def get_executor(num_workers: int) -> PositionExecutor:
    """Get the shared executor for a worker count"""
    with _executors_lock:
        executor = _executors.get(num_workers)
        if executor is None:
            executor = PositionExecutor(num_workers)
            _executors[num_workers] = executor
        return executor


def shutdown_executors():
    """Shut down every shared executor"""
    with _executors_lock:
        executors = list(_executors.values())
        _executors.clear()
    for executor in executors:
        executor.shutdown()
