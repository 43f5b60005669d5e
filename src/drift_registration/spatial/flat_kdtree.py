"""
Flat (arena) KD-Tree

Nodes live in parallel integer arrays addressed by node id instead of as
linked objects. The buffers are written once during the build and only read
afterwards, so any number of queries can run against them concurrently:
each query writes nothing but its own output slot.
"""

from __future__ import annotations

import time
from typing import Any, Literal, Optional, Tuple

import numpy as np

from .base import NearestResult, as_point_array, as_query_array, transform_matrix
from ..acceleration.jit_kernels import (
    build_flat_tree_jit,
    query_batch_parallel_jit,
    query_range_jit,
)
from ..acceleration.parallel_executor import ChunkParallelExecutor, split_into_chunks
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

QueryMode = Literal["serial", "parallel", "threads"]


class FlatKDTree:
    """
    KD-tree stored as contiguous node buffers.

    Attributes:
        points: (N, 3) reference points in their original order.
        node_point: Row of ``points`` held by each node.
        node_axis: Split axis of each node (depth % 3).
        node_lesser: Node id of the lesser child, or -1.
        node_greater: Node id of the greater child, or -1.
        depth: Number of tree levels.
    """

    def __init__(
        self,
        points: Any,
        query_mode: QueryMode = "parallel",
        n_workers: Optional[int] = None,
        chunk_size: int = 4096,
        dtype: Any = np.float64,
    ):
        """
        Build the tree.

        Args:
            points: Non-empty (N, 3) array of reference points.
            query_mode: Default batch strategy: 'serial', 'parallel'
                (numba prange) or 'threads' (chunks on a thread pool).
            n_workers: Worker count for 'threads' mode.
            chunk_size: Queries per chunk in 'threads' mode.
            dtype: Storage precision of the reference points.

        Raises:
            ValueError: If points is empty or not (N, 3), or the mode is unknown.
        """
        if query_mode not in ("serial", "parallel", "threads"):
            raise ValueError(f"Unknown query mode '{query_mode}'")

        self.points = as_point_array(points, dtype=dtype)
        self.query_mode = query_mode
        self.chunk_size = chunk_size
        self._executor = (
            ChunkParallelExecutor(n_workers=n_workers, use_threads=True)
            if query_mode == "threads"
            else None
        )

        start = time.time()
        (
            self.node_point,
            self.node_axis,
            self.node_lesser,
            self.node_greater,
            self.depth,
        ) = build_flat_tree_jit(self.points)
        self.depth = int(self.depth)
        logger.debug(
            "FlatKDTree built over %d points in %.4fs (depth %d)",
            len(self.points),
            time.time() - start,
            self.depth,
        )

    @classmethod
    def build(cls, points: Any, **kwargs: Any) -> "FlatKDTree":
        return cls(points, **kwargs)

    def __len__(self) -> int:
        return self.points.shape[0]

    def closest_point(self, target: Any) -> NearestResult:
        """
        Find the stored point closest to ``target``.

        Returns:
            NearestResult whose ``index`` is the row in ``points``.
        """
        nodes, d2, visited = self.query_nodes(as_query_array(target)[:1], mode="serial")
        index = int(self.node_point[nodes[0]])
        return NearestResult(
            point=self.points[index],
            index=index,
            distance=float(np.sqrt(d2[0])),
            visited=int(visited[0]),
        )

    def query_nodes(
        self,
        queries: Any,
        transform: Optional[Any] = None,
        mode: Optional[QueryMode] = None,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Resolve every query against the tree.

        Args:
            queries: (N, 3) query points.
            transform: Optional 4x4 matrix or RigidTransform applied to each
                query point before its search.
            mode: Override the tree's default query mode.

        Returns:
            Tuple of (winning node ids, squared distances, visited node counts).
        """
        q = as_query_array(queries, dtype=self.points.dtype)
        matrix = transform_matrix(transform)
        if matrix is None:
            matrix = np.eye(4)

        n = q.shape[0]
        out_nodes = np.empty(n, dtype=np.int64)
        out_d2 = np.empty(n, dtype=np.float64)
        out_visited = np.empty(n, dtype=np.int64)
        if n == 0:
            return out_nodes, out_d2, out_visited

        mode = mode or self.query_mode
        if mode == "parallel":
            query_batch_parallel_jit(
                self.points, self.node_point, self.node_axis, self.node_lesser,
                self.node_greater, self.depth, q, matrix, out_nodes, out_d2, out_visited,
            )
        elif mode == "threads":
            executor = self._executor or ChunkParallelExecutor(use_threads=True)
            executor.map_chunks(
                chunks=split_into_chunks(n, self.chunk_size),
                worker_fn=self._query_chunk,
                worker_kwargs={
                    "queries": q,
                    "matrix": matrix,
                    "out_nodes": out_nodes,
                    "out_d2": out_d2,
                    "out_visited": out_visited,
                },
            )
        elif mode == "serial":
            query_range_jit(
                self.points, self.node_point, self.node_axis, self.node_lesser,
                self.node_greater, self.depth, q, matrix, 0, n, out_nodes, out_d2, out_visited,
            )
        else:
            raise ValueError(f"Unknown query mode '{mode}'")

        return out_nodes, out_d2, out_visited

    def _query_chunk(
        self,
        chunk: Tuple[int, int],
        queries: np.ndarray,
        matrix: np.ndarray,
        out_nodes: np.ndarray,
        out_d2: np.ndarray,
        out_visited: np.ndarray,
    ) -> int:
        start, end = chunk
        query_range_jit(
            self.points, self.node_point, self.node_axis, self.node_lesser,
            self.node_greater, self.depth, queries, matrix, start, end,
            out_nodes, out_d2, out_visited,
        )
        return end - start

    def query(
        self,
        queries: Any,
        transform: Optional[Any] = None,
        mode: Optional[QueryMode] = None,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Batch nearest-neighbour query.

        Returns:
            Tuple of (indices into ``points``, Euclidean distances).
        """
        nodes, d2, _ = self.query_nodes(queries, transform=transform, mode=mode)
        return self.node_point[nodes], np.sqrt(d2)
