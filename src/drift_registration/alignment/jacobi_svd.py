"""
One-sided Jacobi Singular Value Decomposition

Decomposes a real m x n matrix as ``A = U @ diag(s) @ Vt`` by repeatedly
applying plane rotations that orthogonalise pairs of columns (the scheme used
by GSL's ``gsl_linalg_SV_decomp_jacobi``). Registration only needs the 3x3
case, but the routine is general.

Singular values come out in descending order. The rotation needed for
Kabsch alignment is extracted with :func:`best_fit_rotation`, which also
corrects improper (reflection) solutions.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np

from ..utils.logging import setup_logger

logger = setup_logger(__name__)

# Singular values below this fraction of the largest carry no direction information
_NEGLIGIBLE_SINGULAR = float(np.sqrt(np.finfo(np.float64).eps))


@dataclass(frozen=True, eq=False)
class SVDResult:
    U: np.ndarray
    s: np.ndarray
    Vt: np.ndarray
    converged: bool
    sweeps: int

    def reconstruct(self) -> np.ndarray:
        """Return ``U @ diag(s) @ Vt``."""
        return (self.U * self.s) @ self.Vt


def jacobi_svd(matrix: Any, max_sweeps: Optional[int] = None) -> SVDResult:
    """
    Singular value decomposition by one-sided Jacobi rotations.

    Args:
        matrix: Real (m, n) matrix. float32 input is decomposed in float32,
            anything else in float64.
        max_sweeps: Sweep budget. Defaults to ``max(5 * n, 12)``.

    Returns:
        SVDResult. For m < n the shapes are reduced like ``numpy.linalg.svd(
        full_matrices=False)``. ``converged`` is False when the budget ran out
        before a sweep finished without rotating; the decomposition is still
        returned.

    Raises:
        ValueError: If the input is not a non-empty 2D matrix.
    """
    src = np.asarray(matrix)
    if src.ndim != 2 or src.size == 0:
        raise ValueError(f"Expected a non-empty 2D matrix, got shape {src.shape}")
    dtype = np.float32 if src.dtype == np.float32 else np.float64

    A = np.array(src, dtype=dtype)  # working U
    m, n = A.shape
    Q = np.eye(n, dtype=dtype)  # working V
    eps = float(np.finfo(dtype).eps)

    tolerance = 10.0 * m * eps
    sweep_max = max(5 * n, 12) if max_sweeps is None else int(max_sweeps)

    # Column error estimates, carried through the rotations
    col_err = eps * np.linalg.norm(A, axis=0).astype(np.float64)

    count = 1
    sweep = 0
    while count > 0 and sweep <= sweep_max:
        count = n * (n - 1) // 2

        for j in range(n - 1):
            for k in range(j + 1, n):
                cj = A[:, j]
                ck = A[:, k]

                p = 2.0 * float(np.dot(cj, ck))
                a = float(np.linalg.norm(cj))
                b = float(np.linalg.norm(ck))
                q = a * a - b * b
                v = math.hypot(p, q)

                abserr_a = col_err[j]
                abserr_b = col_err[k]

                is_sorted = a >= b
                orthogonal = abs(p) <= tolerance * (a * b)
                noisy_a = a < abserr_a
                noisy_b = b < abserr_b

                if is_sorted and (orthogonal or noisy_a or noisy_b):
                    count -= 1
                    continue

                # A quarter turn swaps unsorted columns
                if v == 0.0 or not is_sorted:
                    cosine = 0.0
                    sine = 1.0
                else:
                    cosine = math.sqrt((v + q) / (2.0 * v))
                    sine = p / (2.0 * v * cosine)

                Aj = A[:, j].copy()
                Ak = A[:, k].copy()
                A[:, j] = Aj * cosine + Ak * sine
                A[:, k] = -Aj * sine + Ak * cosine

                col_err[j] = abs(cosine) * abserr_a + abs(sine) * abserr_b
                col_err[k] = abs(sine) * abserr_a + abs(cosine) * abserr_b

                Qj = Q[:, j].copy()
                Qk = Q[:, k].copy()
                Q[:, j] = Qj * cosine + Qk * sine
                Q[:, k] = -Qj * sine + Qk * cosine

        sweep += 1

    s = np.zeros(n, dtype=dtype)
    prev_norm = -1.0
    for j in range(n):
        norm = float(np.linalg.norm(A[:, j]))
        if norm == 0.0 or prev_norm == 0.0 or (j > 0 and norm <= tolerance * prev_norm):
            # Rank-deficient direction
            s[j] = 0.0
            A[:, j] = 0.0
            prev_norm = 0.0
        else:
            s[j] = norm
            A[:, j] = A[:, j] / norm
            prev_norm = norm

    converged = count == 0
    if not converged:
        logger.warning(
            "Jacobi SVD did not converge after %d sweeps (%d rotations still pending)",
            sweep,
            count,
        )

    U = A
    Vt = Q.T.copy()
    if m < n:
        U = U[:, :m]
        s = s[:m]
        Vt = Vt[:m, :]

    return SVDResult(U=U, s=s, Vt=Vt, converged=converged, sweeps=sweep)


def _complete_basis(U: np.ndarray, s: np.ndarray) -> np.ndarray:
    """Rebuild the columns of a 3x3 U whose singular values are negligible.

    Those columns are zero or numerical noise; they are replaced with an
    orthonormal completion of the remaining columns.
    """
    U = np.array(U, dtype=np.float64)
    cutoff = _NEGLIGIBLE_SINGULAR * float(np.max(s)) if s.size else 0.0
    live = [j for j in range(3) if s[j] > cutoff and np.linalg.norm(U[:, j]) > 0.0]
    dead = [j for j in range(3) if j not in live]
    if not dead:
        return U
    if not live:
        return np.eye(3)

    if len(live) == 1:
        u0 = U[:, live[0]]
        # Seed with the axis least aligned with u0
        seed = np.zeros(3)
        seed[int(np.argmin(np.abs(u0)))] = 1.0
        u1 = np.cross(u0, seed)
        u1 /= np.linalg.norm(u1)
        U[:, dead[0]] = u1
        live.append(dead.pop(0))

    u2 = np.cross(U[:, live[0]], U[:, live[1]])
    U[:, dead[0]] = u2 / np.linalg.norm(u2)
    return U


def best_fit_rotation(U: np.ndarray, s: np.ndarray, Vt: np.ndarray) -> np.ndarray:
    """
    Proper rotation closest to ``U @ diag(s) @ Vt`` (Kabsch).

    ``R = U @ Vt``; when ``det(R) < 0`` the left singular vector of the
    smallest singular value is negated so the result is never a reflection.
    Zeroed (rank-deficient) columns of U are first completed to an
    orthonormal basis.

    Args:
        U, s, Vt: 3x3 decomposition from :func:`jacobi_svd`.

    Returns:
        3x3 rotation matrix with determinant +1.
    """
    U = np.asarray(U, dtype=np.float64)
    Vt = np.asarray(Vt, dtype=np.float64)
    s = np.asarray(s, dtype=np.float64)
    if U.shape != (3, 3) or Vt.shape != (3, 3) or s.shape != (3,):
        raise ValueError("best_fit_rotation expects a 3x3 decomposition")

    U = _complete_basis(U, s)
    R = U @ Vt
    if np.linalg.det(R) < 0:
        U = U.copy()
        U[:, int(np.argmin(s))] *= -1.0
        R = U @ Vt
    return R
