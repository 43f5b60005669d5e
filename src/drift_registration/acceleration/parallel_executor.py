"""
Parallel execution infrastructure for chunked batch work.

Provides ChunkParallelExecutor for distributing independent chunks of work
(typically ranges of nearest-neighbour query points) across a pool of
workers. Thread pools are the default because the query kernels release the
GIL; process pools remain available for pure-Python workers.
"""

from __future__ import annotations

import logging
import time
from multiprocessing import Pool, cpu_count
from multiprocessing.pool import ThreadPool
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


def split_into_chunks(n_items: int, chunk_size: int) -> List[Tuple[int, int]]:
    """
    Split ``range(n_items)`` into contiguous ``(start, end)`` chunks.

    Args:
        n_items: Total number of items
        chunk_size: Maximum items per chunk (values < 1 are treated as 1)

    Returns:
        List of half-open ranges covering every item exactly once
    """
    chunk_size = max(1, int(chunk_size))
    return [(start, min(start + chunk_size, n_items)) for start in range(0, n_items, chunk_size)]


def _worker_wrapper(args: Tuple[int, Any, Callable, Dict[str, Any]]) -> Tuple[int, Any, Optional[str]]:
    """
    Worker wrapper function for parallel chunk processing.

    Must be at module level for pickling when a process pool is used.

    Args:
        args: Tuple of (chunk_index, chunk, worker_fn, worker_kwargs)

    Returns:
        Tuple of (chunk_index, result, error_message)
    """
    idx, chunk, worker_fn, worker_kwargs = args
    try:
        result = worker_fn(chunk, **worker_kwargs)
        return (idx, result, None)
    except Exception as e:
        error_msg = f"{type(e).__name__}: {str(e)}"
        logger.error("Worker error on chunk %d: %s", idx, error_msg)
        return (idx, None, error_msg)


class ChunkParallelExecutor:
    """
    Parallel executor for chunk-based processing.

    Manages a worker pool, distributes chunks to workers, and collects results
    while maintaining order.

    Example:
        executor = ChunkParallelExecutor(n_workers=4)
        results = executor.map_chunks(
            chunks=split_into_chunks(len(queries), 4096),
            worker_fn=tree.query_range,
            worker_kwargs={'queries': queries},
        )
    """

    def __init__(
        self,
        n_workers: Optional[int] = None,
        use_threads: bool = True,
    ):
        """
        Initialize parallel executor.

        Args:
            n_workers: Number of workers. If None, uses cpu_count - 1
                to leave one core for the host frame loop. Minimum is 1.
            use_threads: Use a thread pool (shared memory, no pickling).
                If False, a process pool is used and worker_fn, chunks
                and kwargs must be picklable.
        """
        if n_workers is None:
            n_workers = max(1, cpu_count() - 1)
        else:
            n_workers = max(1, int(n_workers))

        self.n_workers = n_workers
        self.use_threads = use_threads

        logger.debug(
            "Initialized ChunkParallelExecutor with %d %s workers (total CPUs: %d)",
            self.n_workers,
            "thread" if use_threads else "process",
            cpu_count(),
        )

    def map_chunks(
        self,
        chunks: List[Any],
        worker_fn: Callable,
        worker_kwargs: Dict[str, Any],
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> List[Any]:
        """
        Map worker function over chunks in parallel.

        Args:
            chunks: List of chunks to process
            worker_fn: Function with signature worker_fn(chunk, **worker_kwargs) -> result
            worker_kwargs: Fixed keyword arguments passed to each worker call
            progress_callback: Optional callback called after each chunk
                completes. Signature: callback(completed_count, total_count)

        Returns:
            List of results in same order as input chunks

        Raises:
            RuntimeError: If any chunk fails
        """
        n_chunks = len(chunks)

        if n_chunks == 0:
            logger.debug("No chunks to process")
            return []

        start_time = time.time()

        # Sequential path avoids pool overhead
        if self.n_workers == 1 or n_chunks == 1:
            results = []
            for i, chunk in enumerate(chunks):
                try:
                    results.append(worker_fn(chunk, **worker_kwargs))
                except Exception as e:
                    logger.error("Error processing chunk %d: %s", i, e, exc_info=True)
                    raise RuntimeError(f"Chunk processing failed: {e}") from e
                if progress_callback:
                    progress_callback(i + 1, n_chunks)
            logger.debug(
                "Sequential processing complete: %d chunks in %.4fs",
                n_chunks,
                time.time() - start_time,
            )
            return results

        results = self._parallel_map(chunks, worker_fn, worker_kwargs, progress_callback)
        logger.debug(
            "Parallel processing complete: %d chunks on %d workers in %.4fs",
            n_chunks,
            self.n_workers,
            time.time() - start_time,
        )
        return results

    def _parallel_map(
        self,
        chunks: List[Any],
        worker_fn: Callable,
        worker_kwargs: Dict[str, Any],
        progress_callback: Optional[Callable],
    ) -> List[Any]:
        """
        Execute parallel mapping on a pool.

        Uses imap_unordered for responsiveness, then reorders results to
        match input chunk order.
        """
        n_chunks = len(chunks)
        worker_args = [(i, chunk, worker_fn, worker_kwargs) for i, chunk in enumerate(chunks)]
        pool_cls = ThreadPool if self.use_threads else Pool

        results_dict = {}
        errors = []
        with pool_cls(processes=min(self.n_workers, n_chunks)) as pool:
            for completed, (idx, result, error) in enumerate(
                pool.imap_unordered(_worker_wrapper, worker_args), start=1
            ):
                if error:
                    errors.append((idx, error))
                else:
                    results_dict[idx] = result
                if progress_callback:
                    progress_callback(completed, n_chunks)

        if errors:
            error_msg = f"{len(errors)} chunks failed out of {n_chunks}"
            logger.error(error_msg)
            for idx, error in errors[:5]:
                logger.error("  Chunk %d: %s", idx, error)
            if len(errors) > 5:
                logger.error("  ... and %d more errors", len(errors) - 5)
            raise RuntimeError(error_msg)

        return [results_dict[i] for i in range(n_chunks)]
