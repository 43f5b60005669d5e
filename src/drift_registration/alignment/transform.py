"""
Rigid transforms

RigidTransform is an immutable rotation + translation pair. The registration
loop never edits a transform in place; each iteration produces a new value,
which makes publishing the current estimate to other threads a simple
reference swap.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple

import numpy as np
from scipy.spatial.transform import Rotation

from ..acceleration.jit_kernels import apply_transform_jit


@dataclass(frozen=True, eq=False)
class RigidTransform:
    """
    Rigid motion ``x -> rotation @ x + translation``.

    Attributes:
        rotation: 3x3 orthonormal matrix (read-only array).
        translation: Translation vector of length 3 (read-only array).

    Example:
        >>> T = RigidTransform.from_euler("y", 30.0, translation=[1.0, 0.0, 0.0], degrees=True)
        >>> T.inverse().compose(T).is_identity()
        True
    """

    rotation: np.ndarray
    translation: np.ndarray

    def __post_init__(self):
        R = np.array(self.rotation, dtype=np.float64).reshape(3, 3)
        t = np.array(self.translation, dtype=np.float64).reshape(3)
        R.setflags(write=False)
        t.setflags(write=False)
        object.__setattr__(self, "rotation", R)
        object.__setattr__(self, "translation", t)

    # ------------------------ Constructors ------------------------
    @classmethod
    def identity(cls) -> "RigidTransform":
        return cls(np.eye(3), np.zeros(3))

    @classmethod
    def from_matrix(cls, matrix: Any) -> "RigidTransform":
        """Create from a 4x4 homogeneous matrix."""
        M = np.asarray(matrix, dtype=np.float64)
        if M.shape != (4, 4):
            raise ValueError(f"Expected a 4x4 matrix, got shape {M.shape}")
        return cls(M[:3, :3], M[:3, 3])

    @classmethod
    def from_euler(
        cls,
        seq: str,
        angles: Any,
        translation: Optional[Any] = None,
        degrees: bool = False,
    ) -> "RigidTransform":
        """Create from Euler angles (scipy convention) and an optional translation."""
        R = Rotation.from_euler(seq, angles, degrees=degrees).as_matrix()
        t = np.zeros(3) if translation is None else translation
        return cls(R, t)

    # ------------------------ Algebra ------------------------
    def as_matrix(self) -> np.ndarray:
        M = np.eye(4)
        M[:3, :3] = self.rotation
        M[:3, 3] = self.translation
        return M

    def compose(self, other: "RigidTransform") -> "RigidTransform":
        """Return ``self ∘ other``: apply ``other`` first, then ``self``."""
        return RigidTransform(
            self.rotation @ other.rotation,
            self.rotation @ other.translation + self.translation,
        )

    def __matmul__(self, other: "RigidTransform") -> "RigidTransform":
        return self.compose(other)

    def inverse(self) -> "RigidTransform":
        R_inv = self.rotation.T
        return RigidTransform(R_inv, -(R_inv @ self.translation))

    def apply(self, points: Any) -> np.ndarray:
        """
        Transform a single (3,) point or an (N, 3) array of points.
        """
        pts = np.asarray(points, dtype=np.float64)
        if pts.ndim == 1:
            return self.rotation @ pts + self.translation
        if pts.size == 0:
            return pts.reshape(0, 3).copy()
        return apply_transform_jit(np.ascontiguousarray(pts), self.as_matrix())

    def interpolate(self, other: "RigidTransform", alpha: float) -> "RigidTransform":
        """
        Blend from ``self`` (alpha=0) toward ``other`` (alpha=1).

        Rotation is spherically interpolated, translation linearly.
        """
        alpha = float(alpha)
        if alpha >= 1.0:
            return other
        if alpha <= 0.0:
            return self
        r0 = Rotation.from_matrix(self.rotation)
        r1 = Rotation.from_matrix(other.rotation)
        step = Rotation.from_rotvec((r1 * r0.inv()).as_rotvec() * alpha)
        translation = (1.0 - alpha) * self.translation + alpha * other.translation
        return RigidTransform((step * r0).as_matrix(), translation)

    # ------------------------ Metrics ------------------------
    def rotation_angle(self) -> float:
        """Rotation magnitude in radians."""
        # Clamp argument to arccos to valid range to avoid NaNs
        cos_theta = max(min((float(np.trace(self.rotation)) - 1.0) * 0.5, 1.0), -1.0)
        return float(np.arccos(cos_theta))

    def difference(self, other: "RigidTransform") -> Tuple[float, float]:
        """Return (translation distance, rotation angle in radians) between two transforms."""
        relative = other.compose(self.inverse())
        return (
            float(np.linalg.norm(other.translation - self.translation)),
            relative.rotation_angle(),
        )

    def is_identity(self, atol: float = 1e-9) -> bool:
        return bool(
            np.allclose(self.rotation, np.eye(3), atol=atol)
            and np.allclose(self.translation, 0.0, atol=atol)
        )

    def is_finite(self) -> bool:
        return bool(np.isfinite(self.rotation).all() and np.isfinite(self.translation).all())
