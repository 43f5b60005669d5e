"""
Shared types for spatial indices.

Every index backend answers the same batch question: for each query point,
which reference point is nearest and how far away is it. The registration
code only relies on the NearestNeighborIndex protocol defined here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple, runtime_checkable

import numpy as np


@dataclass(frozen=True)
class NearestResult:
    """Answer to a single nearest-neighbour query."""

    point: np.ndarray
    index: int
    distance: float
    visited: int


@runtime_checkable
class NearestNeighborIndex(Protocol):
    points: np.ndarray

    def query(
        self, queries: np.ndarray, transform: Optional[Any] = None
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Return (indices into ``points``, Euclidean distances) per query row."""
        ...

    def __len__(self) -> int:
        ...


def as_point_array(points: Any, dtype: Any = np.float64) -> np.ndarray:
    """
    Validate and convert input to a contiguous (N, 3) array.

    Raises:
        ValueError: If the array is empty or not shaped (N, 3)
    """
    arr = np.ascontiguousarray(points, dtype=dtype)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"Expected an (N, 3) point array, got shape {arr.shape}")
    if arr.shape[0] == 0:
        raise ValueError("Cannot build a spatial index from an empty point set")
    return arr


def as_query_array(queries: Any, dtype: Any = np.float64) -> np.ndarray:
    """Convert a single point or an (N, 3) batch to a contiguous (N, 3) array."""
    arr = np.ascontiguousarray(queries, dtype=dtype)
    if arr.ndim == 1:
        arr = arr.reshape(1, -1)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"Expected (3,) or (N, 3) query points, got shape {arr.shape}")
    return arr


def transform_matrix(transform: Any) -> Optional[np.ndarray]:
    """
    Normalise a transform argument to a 4x4 float64 matrix.

    Accepts None, a 4x4 array, or any object exposing ``as_matrix()``
    (such as RigidTransform).
    """
    if transform is None:
        return None
    if hasattr(transform, "as_matrix"):
        transform = transform.as_matrix()
    matrix = np.asarray(transform, dtype=np.float64)
    if matrix.shape != (4, 4):
        raise ValueError(f"Expected a 4x4 transform matrix, got shape {matrix.shape}")
    return matrix
