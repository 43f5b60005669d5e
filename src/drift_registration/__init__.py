"""
Drift Registration Package

Rigid alignment of a live point cloud (a depth or mesh sample from a tracked
device) to a previously captured reference cloud, used to correct drift
between the device's tracking frame and the environment.

The package provides:
- Spatial indices (KD-tree, flat arena KD-tree with JIT batch queries)
- A one-sided Jacobi SVD and Kabsch rigid-motion estimator
- A frame-driven ICP registration loop with one iteration per host tick
"""

__version__ = "0.1.0"

from .spatial import *
from .alignment import *
from .acceleration import *
from .utils import *

__all__ = [
    "spatial",
    "alignment",
    "acceleration",
    "utils",
]
