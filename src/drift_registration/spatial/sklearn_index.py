"""Nearest-neighbour index backed by scikit-learn's KD-tree."""

from __future__ import annotations

import time
from typing import Any, Optional, Tuple

import numpy as np
from sklearn.neighbors import NearestNeighbors

from .base import NearestResult, as_point_array, as_query_array, transform_matrix
from ..utils.logging import setup_logger

logger = setup_logger(__name__)


class SklearnIndex:
    """
    Thin wrapper giving sklearn's NearestNeighbors the index interface.

    Useful as a reference backend and for very large reference clouds.
    """

    def __init__(self, points: Any, n_jobs: Optional[int] = None):
        self.points = as_point_array(points)

        start = time.time()
        self._nbrs = NearestNeighbors(n_neighbors=1, algorithm="kd_tree", n_jobs=n_jobs).fit(self.points)
        logger.debug(
            "scikit-learn KD-tree built over %d points in %.4fs",
            len(self.points),
            time.time() - start,
        )

    def __len__(self) -> int:
        return self.points.shape[0]

    def query(self, queries: Any, transform: Optional[Any] = None) -> Tuple[np.ndarray, np.ndarray]:
        pts = as_query_array(queries)
        if pts.shape[0] == 0:
            return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float64)

        matrix = transform_matrix(transform)
        if matrix is not None:
            pts = pts @ matrix[:3, :3].T + matrix[:3, 3]

        distances, indices = self._nbrs.kneighbors(pts)
        return indices.ravel().astype(np.int64), distances.ravel()

    def closest_point(self, target: Any) -> NearestResult:
        indices, distances = self.query(target)
        index = int(indices[0])
        # sklearn does not report how many nodes it visited
        return NearestResult(point=self.points[index], index=index, distance=float(distances[0]), visited=-1)
