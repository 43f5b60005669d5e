"""
Rigid Motion Estimation

Closed-form (Kabsch/Procrustes) estimate of the rigid transform that best
maps a moving point set onto corresponding reference points:

1. Centroids of the kept moving points (local frame, then mapped by the
   current estimate) and of their reference matches
2. Cross-covariance of the centred pairs
3. Jacobi SVD of the covariance and a proper-rotation extraction
4. Translation from the centroids
5. The delta is composed on the left of the current estimate

Degenerate iterations (too few correspondences, rank-deficient covariance)
are reported through the returned status instead of raising, so a single bad
frame never ends a registration session.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import numpy as np

from .jacobi_svd import best_fit_rotation, jacobi_svd
from .transform import RigidTransform
from ..spatial.base import NearestNeighborIndex
from ..utils.logging import setup_logger

logger = setup_logger(__name__)


class EstimateStatus(str, Enum):
    OK = "ok"
    INSUFFICIENT_CORRESPONDENCES = "insufficient_correspondences"
    RANK_DEFICIENT = "rank_deficient"


@dataclass(frozen=True, eq=False)
class MotionEstimate:
    """
    Outcome of one rigid-motion estimate.

    Attributes:
        delta: Incremental transform (identity when the update was skipped).
        transform: Updated cumulative estimate ``delta ∘ current``.
        status: Why the estimate is (or is not) trustworthy.
        applied: Whether ``delta`` was applied.
        n_correspondences: Pairs used for the covariance.
        n_rejected: Pairs dropped by the distance gate.
        rmse: RMS distance of the kept pairs before the update.
        singular_values: Covariance singular values (None if not computed).
        svd_converged: False if the Jacobi sweeps ran out.
    """

    delta: RigidTransform
    transform: RigidTransform
    status: EstimateStatus
    applied: bool
    n_correspondences: int
    n_rejected: int
    rmse: float
    singular_values: Optional[np.ndarray] = None
    svd_converged: bool = True


@dataclass
class RigidMotionEstimator:
    max_correspondence_distance: Optional[float] = None
    min_correspondences: int = 3
    rank_deficient_policy: str = "reject"  # reject | accept
    rank_tolerance: float = 1e-6
    max_sweeps: Optional[int] = None

    def __post_init__(self):
        if self.rank_deficient_policy not in ("reject", "accept"):
            raise ValueError(f"Unknown rank-deficient policy '{self.rank_deficient_policy}'")
        self.min_correspondences = max(3, int(self.min_correspondences))

    @classmethod
    def from_config(cls, estimator_config: Any, svd_config: Any = None) -> "RigidMotionEstimator":
        return cls(
            max_correspondence_distance=estimator_config.max_correspondence_distance,
            min_correspondences=estimator_config.min_correspondences,
            rank_deficient_policy=estimator_config.rank_deficient_policy,
            rank_tolerance=estimator_config.rank_tolerance,
            max_sweeps=None if svd_config is None else svd_config.max_sweeps,
        )

    def estimate(
        self,
        moving_local: np.ndarray,
        matched_reference: np.ndarray,
        current: Optional[RigidTransform] = None,
    ) -> MotionEstimate:
        """
        Estimate the update from explicit correspondences.

        Args:
            moving_local: Moving points in their own frame (N x 3).
            matched_reference: Reference point paired with each moving point (N x 3).
            current: Current cumulative estimate (identity if None).

        Returns:
            MotionEstimate.

        Raises:
            ValueError: If the two arrays do not have matching (N, 3) shapes.
        """
        moving_local = np.asarray(moving_local, dtype=np.float64)
        matched_reference = np.asarray(matched_reference, dtype=np.float64)
        if moving_local.ndim != 2 or moving_local.shape[-1] != 3 or moving_local.shape != matched_reference.shape:
            raise ValueError(
                f"Correspondence arrays must both be (N, 3); got {moving_local.shape} and {matched_reference.shape}"
            )

        current = current or RigidTransform.identity()
        moving_global = current.apply(moving_local)
        distances = np.linalg.norm(matched_reference - moving_global, axis=1)
        return self._estimate(moving_local, moving_global, matched_reference, distances, current)

    def estimate_from_index(
        self,
        moving_local: np.ndarray,
        index: NearestNeighborIndex,
        current: Optional[RigidTransform] = None,
    ) -> MotionEstimate:
        """
        Estimate the update using nearest neighbours in ``index`` as correspondences.

        The index applies ``current`` to each query point itself, so the tree
        never needs rebuilding as the estimate changes.
        """
        moving_local = np.asarray(moving_local, dtype=np.float64)
        current = current or RigidTransform.identity()

        indices, distances = index.query(moving_local, transform=current)
        matched_reference = index.points[indices]
        moving_global = current.apply(moving_local)
        return self._estimate(moving_local, moving_global, matched_reference, distances, current)

    def _skip(
        self,
        current: RigidTransform,
        status: EstimateStatus,
        n_kept: int,
        n_rejected: int,
        rmse: float,
        singular_values: Optional[np.ndarray] = None,
        svd_converged: bool = True,
    ) -> MotionEstimate:
        return MotionEstimate(
            delta=RigidTransform.identity(),
            transform=current,
            status=status,
            applied=False,
            n_correspondences=n_kept,
            n_rejected=n_rejected,
            rmse=rmse,
            singular_values=singular_values,
            svd_converged=svd_converged,
        )

    def _estimate(
        self,
        moving_local: np.ndarray,
        moving_global: np.ndarray,
        matched_reference: np.ndarray,
        distances: np.ndarray,
        current: RigidTransform,
    ) -> MotionEstimate:
        keep = np.isfinite(distances)
        if self.max_correspondence_distance is not None:
            keep &= distances <= self.max_correspondence_distance
        n_kept = int(np.count_nonzero(keep))
        n_rejected = int(distances.shape[0] - n_kept)
        rmse = float(np.sqrt(np.mean(distances[keep] ** 2))) if n_kept else float("inf")

        if n_kept < self.min_correspondences:
            logger.warning(
                "Only %d correspondences left (%d rejected, %d required); skipping update.",
                n_kept,
                n_rejected,
                self.min_correspondences,
            )
            return self._skip(current, EstimateStatus.INSUFFICIENT_CORRESPONDENCES, n_kept, n_rejected, rmse)

        reference = matched_reference[keep]
        moving = moving_global[keep]

        local_centroid = np.mean(moving_local[keep], axis=0)
        moving_centroid = current.apply(local_centroid)
        reference_centroid = np.mean(reference, axis=0)

        # Cross-covariance: sum of (r - r_c) outer (m - m_c)
        covariance = (reference - reference_centroid).T @ (moving - moving_centroid)

        svd = jacobi_svd(covariance, max_sweeps=self.max_sweeps)
        s = svd.s
        status = EstimateStatus.OK
        if s[0] <= 0.0 or s[1] <= self.rank_tolerance * s[0]:
            status = EstimateStatus.RANK_DEFICIENT
            if self.rank_deficient_policy == "reject":
                logger.warning(
                    "Rank-deficient covariance (singular values %s); skipping update.",
                    np.array2string(s, precision=3),
                )
                return self._skip(current, status, n_kept, n_rejected, rmse, s, svd.converged)
            logger.debug("Rank-deficient covariance accepted (singular values %s).", s)

        R = best_fit_rotation(svd.U, s, svd.Vt)
        t = reference_centroid - R @ moving_centroid
        delta = RigidTransform(R, t)

        logger.debug(
            "Rigid motion from %d pairs (%d rejected): RMSE=%.6f, |Δt|=%.6e, Δθ=%.6e rad",
            n_kept,
            n_rejected,
            rmse,
            float(np.linalg.norm(t)),
            delta.rotation_angle(),
        )

        return MotionEstimate(
            delta=delta,
            transform=delta.compose(current),
            status=status,
            applied=True,
            n_correspondences=n_kept,
            n_rejected=n_rejected,
            rmse=rmse,
            singular_values=s,
            svd_converged=svd.converged,
        )


def fit_corresponding(
    moving: np.ndarray,
    reference: np.ndarray,
    moving_frame: Optional[RigidTransform] = None,
    reference_frame: Optional[RigidTransform] = None,
    max_sweeps: Optional[int] = None,
) -> RigidTransform:
    """
    Single Kabsch solve over known one-to-one correspondences.

    Each set is first mapped through its own frame transform (for instance a
    device's tracking space and a shared world frame); the result maps the
    moving world positions onto the reference world positions.

    Args:
        moving: Moving points (N x 3), N >= 3.
        reference: Reference point for each moving point (N x 3).
        moving_frame: Frame of the moving points (identity if None).
        reference_frame: Frame of the reference points (identity if None).
        max_sweeps: Jacobi sweep budget.

    Returns:
        RigidTransform delta.

    Raises:
        ValueError: On mismatched shapes or fewer than 3 pairs.
    """
    moving = np.asarray(moving, dtype=np.float64)
    reference = np.asarray(reference, dtype=np.float64)
    if moving.shape != reference.shape or moving.ndim != 2 or moving.shape[1] != 3:
        raise ValueError(f"Expected matching (N, 3) arrays, got {moving.shape} and {reference.shape}")
    if moving.shape[0] < 3:
        raise ValueError(f"At least 3 correspondences are required, got {moving.shape[0]}")

    if moving_frame is not None:
        moving = moving_frame.apply(moving)
    if reference_frame is not None:
        reference = reference_frame.apply(reference)

    estimator = RigidMotionEstimator(rank_deficient_policy="accept", max_sweeps=max_sweeps)
    return estimator.estimate(moving, reference).delta
