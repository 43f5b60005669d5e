"""KD-Tree with parent-owned child nodes for exact nearest neighbour search."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import numpy as np

from .base import NearestResult, as_point_array, as_query_array, transform_matrix
from ..utils.logging import setup_logger

logger = setup_logger(__name__)


@dataclass(eq=False)
class KDNode:
    point: np.ndarray
    index: int
    axis: int
    lesser: Optional["KDNode"] = None
    greater: Optional["KDNode"] = None

    @property
    def is_leaf(self) -> bool:
        return self.lesser is None and self.greater is None


class _SearchState:
    __slots__ = ("node", "d2", "visited")

    def __init__(self):
        self.node = None
        self.d2 = np.inf
        self.visited = 0


class KDTree:
    """
    Balanced-by-median KD-tree over a fixed (N, 3) point set.

    The tree is built once and is read-only afterwards. Each node keeps the
    median point of its range on the split axis (``depth % 3``); points before
    the median go to ``lesser`` and points after it to ``greater``, so every
    input point is stored exactly once.
    """

    def __init__(self, points: Any):
        """
        Build the tree.

        Args:
            points: Non-empty (N, 3) array of reference points.

        Raises:
            ValueError: If points is empty or not (N, 3).
        """
        self.points = as_point_array(points)
        self.depth = 0

        start = time.time()
        indices = np.arange(self.points.shape[0], dtype=np.int64)
        self.root = self._build(indices, 0)
        logger.debug(
            "KDTree built over %d points in %.4fs (depth %d)",
            len(self.points),
            time.time() - start,
            self.depth,
        )

    @classmethod
    def build(cls, points: Any) -> "KDTree":
        return cls(points)

    def __len__(self) -> int:
        return self.points.shape[0]

    def _build(self, indices: np.ndarray, depth: int) -> Optional[KDNode]:
        if indices.shape[0] == 0:
            return None
        self.depth = max(self.depth, depth + 1)

        axis = depth % 3
        order = np.argsort(self.points[indices, axis], kind="stable")
        indices = indices[order]
        median = indices.shape[0] // 2
        point_index = int(indices[median])

        node = KDNode(point=self.points[point_index], index=point_index, axis=axis)
        if indices.shape[0] > 1:
            node.lesser = self._build(indices[:median], depth + 1)
            node.greater = self._build(indices[median + 1:], depth + 1)
        return node

    def closest_point(self, target: Any) -> NearestResult:
        """
        Find the stored point closest to ``target`` (exact, branch-and-bound).

        Args:
            target: Query point, shape (3,).

        Returns:
            NearestResult with the point, its row index, Euclidean distance
            and the number of nodes visited.
        """
        query = np.asarray(target, dtype=np.float64).reshape(3)
        state = _SearchState()
        self._search(self.root, query, state)
        node = state.node
        return NearestResult(
            point=node.point,
            index=node.index,
            distance=float(np.sqrt(state.d2)),
            visited=state.visited,
        )

    def _search(self, node: KDNode, target: np.ndarray, state: _SearchState) -> None:
        state.visited += 1

        if node.is_leaf:
            d2 = float(np.sum((node.point - target) ** 2))
            if d2 < state.d2:
                state.node, state.d2 = node, d2
            return

        diff = target[node.axis] - node.point[node.axis]
        if diff > 0:
            near, far = node.greater, node.lesser
        else:
            near, far = node.lesser, node.greater

        if near is not None:
            self._search(near, target, state)

        d2 = float(np.sum((node.point - target) ** 2))
        if d2 < state.d2:
            state.node, state.d2 = node, d2

        # Only cross the splitting plane if it is closer than the best match
        if far is not None and diff * diff < state.d2:
            self._search(far, target, state)

    def query(self, queries: Any, transform: Optional[Any] = None) -> Tuple[np.ndarray, np.ndarray]:
        """
        Resolve a batch of queries one at a time.

        Args:
            queries: (N, 3) query points (or a single (3,) point).
            transform: Optional 4x4 matrix or RigidTransform applied to the
                queries before searching.

        Returns:
            Tuple of (indices into ``points``, distances).
        """
        pts = as_query_array(queries)
        matrix = transform_matrix(transform)
        if matrix is not None:
            pts = pts @ matrix[:3, :3].T + matrix[:3, 3]

        indices = np.empty(pts.shape[0], dtype=np.int64)
        distances = np.empty(pts.shape[0], dtype=np.float64)
        for i, p in enumerate(pts):
            result = self.closest_point(p)
            indices[i] = result.index
            distances[i] = result.distance
        return indices, distances
