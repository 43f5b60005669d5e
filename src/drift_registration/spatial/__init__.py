"""
Spatial Index Module

Nearest-neighbour indices over a fixed reference point cloud:
- KDTree: owned-node tree, convenient for single queries
- FlatKDTree: arena tree with JIT batch kernels for data-parallel queries
- SklearnIndex: scikit-learn KD-tree behind the same interface
"""

from typing import Any, Optional

from .base import NearestNeighborIndex, NearestResult
from .kdtree import KDNode, KDTree
from .flat_kdtree import FlatKDTree
from .sklearn_index import SklearnIndex
from ..utils.config import IndexConfig


def build_index(points: Any, config: Optional[IndexConfig] = None) -> NearestNeighborIndex:
    """
    Build the index selected by an IndexConfig.

    Args:
        points: Non-empty (N, 3) reference points.
        config: IndexConfig (None uses the defaults).

    Returns:
        An index implementing NearestNeighborIndex.

    Raises:
        ValueError: On empty input or an unknown backend.
    """
    if config is None:
        config = IndexConfig()

    if config.backend == "flat":
        return FlatKDTree(
            points,
            query_mode=config.query_mode,
            n_workers=config.n_workers,
            chunk_size=config.chunk_size,
        )
    if config.backend == "kdtree":
        return KDTree(points)
    if config.backend == "sklearn":
        return SklearnIndex(points, n_jobs=config.n_workers)
    raise ValueError(f"Unknown index backend '{config.backend}'")


__all__ = [
    "NearestNeighborIndex",
    "NearestResult",
    "KDNode",
    "KDTree",
    "FlatKDTree",
    "SklearnIndex",
    "build_index",
]
