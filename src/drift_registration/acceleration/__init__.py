"""
Acceleration Module

This module provides performance infrastructure for the spatial queries:
- JIT-compiled kernels (numba) for the flat KD-tree and point transforms
- Chunked parallel execution over a thread or process pool
"""

from .parallel_executor import ChunkParallelExecutor, split_into_chunks
from .jit_kernels import (
    apply_transform_jit,
    build_flat_tree_jit,
    nearest_node_jit,
    query_batch_parallel_jit,
    query_range_jit,
)

__all__ = [
    # Parallel processing
    "ChunkParallelExecutor",
    "split_into_chunks",
    # JIT kernels
    "apply_transform_jit",
    "build_flat_tree_jit",
    "nearest_node_jit",
    "query_batch_parallel_jit",
    "query_range_jit",
]
