"""
Alignment Module

Closed-form rigid-motion estimation and the iterative registration loop
built on top of it.
"""

from .jacobi_svd import SVDResult, jacobi_svd, best_fit_rotation
from .transform import RigidTransform
from .rigid_motion import (
    EstimateStatus,
    MotionEstimate,
    RigidMotionEstimator,
    fit_corresponding,
)
from .registration_loop import IterationResult, LoopState, RegistrationLoop

__all__ = [
    "SVDResult",
    "jacobi_svd",
    "best_fit_rotation",
    "RigidTransform",
    "EstimateStatus",
    "MotionEstimate",
    "RigidMotionEstimator",
    "fit_corresponding",
    "IterationResult",
    "LoopState",
    "RegistrationLoop",
]
