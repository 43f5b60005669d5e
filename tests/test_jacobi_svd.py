"""
Tests for the one-sided Jacobi SVD and the Kabsch rotation extraction.
"""

import logging

import numpy as np
import pytest

from drift_registration.alignment import best_fit_rotation, jacobi_svd


def _random_rotation(rng) -> np.ndarray:
    q, r = np.linalg.qr(rng.normal(size=(3, 3)))
    q = q @ np.diag(np.sign(np.diag(r)))
    if np.linalg.det(q) < 0:
        q[:, 0] *= -1.0
    return q


class TestJacobiSVD:
    def test_reconstructs_random_matrices(self):
        rng = np.random.default_rng(0)
        for _ in range(20):
            A = rng.normal(size=(3, 3))
            result = jacobi_svd(A)
            assert result.converged
            np.testing.assert_allclose(result.reconstruct(), A, atol=1e-12)

    def test_singular_values_descending_and_match_numpy(self):
        rng = np.random.default_rng(1)
        A = rng.normal(size=(3, 3)) * np.array([1.0, 10.0, 0.1])
        result = jacobi_svd(A)

        assert np.all(np.diff(result.s) <= 0)
        np.testing.assert_allclose(result.s, np.linalg.svd(A, compute_uv=False), rtol=1e-12)

    def test_factors_are_orthonormal(self):
        rng = np.random.default_rng(2)
        result = jacobi_svd(rng.normal(size=(3, 3)))
        np.testing.assert_allclose(result.U.T @ result.U, np.eye(3), atol=1e-12)
        np.testing.assert_allclose(result.Vt @ result.Vt.T, np.eye(3), atol=1e-12)

    def test_tall_matrix(self):
        rng = np.random.default_rng(3)
        A = rng.normal(size=(6, 3))
        result = jacobi_svd(A)
        assert result.U.shape == (6, 3)
        assert result.s.shape == (3,)
        assert result.Vt.shape == (3, 3)
        np.testing.assert_allclose(result.reconstruct(), A, atol=1e-12)

    def test_wide_matrix_is_truncated(self):
        rng = np.random.default_rng(4)
        A = rng.normal(size=(2, 4))
        result = jacobi_svd(A)
        assert result.U.shape == (2, 2)
        assert result.s.shape == (2,)
        assert result.Vt.shape == (2, 4)
        np.testing.assert_allclose(result.reconstruct(), A, atol=1e-12)
        np.testing.assert_allclose(result.s, np.linalg.svd(A, compute_uv=False), rtol=1e-12)

    def test_zero_columns_are_zeroed(self):
        A = np.diag([3.0, 0.0, 0.0])
        result = jacobi_svd(A)
        np.testing.assert_array_equal(result.s, [3.0, 0.0, 0.0])
        np.testing.assert_array_equal(result.U[:, 1:], 0.0)
        np.testing.assert_allclose(result.reconstruct(), A)

    def test_rank_one_matrix(self):
        u = np.array([1.0, 2.0, 2.0])
        v = np.array([0.0, 3.0, 4.0])
        A = np.outer(u, v)
        result = jacobi_svd(A)
        assert result.s[0] == pytest.approx(15.0)
        assert np.all(result.s[1:] <= 1e-12 * result.s[0])
        np.testing.assert_allclose(result.reconstruct(), A, atol=1e-12)

    def test_unsorted_diagonal_is_sorted(self):
        result = jacobi_svd(np.diag([1.0, 5.0, 3.0]))
        np.testing.assert_allclose(result.s, [5.0, 3.0, 1.0])
        np.testing.assert_allclose(result.reconstruct(), np.diag([1.0, 5.0, 3.0]), atol=1e-15)

    def test_float32_precision_kept(self):
        rng = np.random.default_rng(5)
        A = rng.normal(size=(3, 3)).astype(np.float32)
        result = jacobi_svd(A)
        assert result.U.dtype == np.float32
        assert result.s.dtype == np.float32
        np.testing.assert_allclose(result.reconstruct(), A, atol=1e-5)

    def test_integer_input_promoted(self):
        result = jacobi_svd(np.array([[2, 0, 0], [0, 1, 0], [0, 0, 3]]))
        assert result.s.dtype == np.float64
        np.testing.assert_allclose(result.s, [3.0, 2.0, 1.0])

    def test_deterministic(self):
        rng = np.random.default_rng(6)
        A = rng.normal(size=(3, 3))
        first = jacobi_svd(A)
        second = jacobi_svd(A)
        np.testing.assert_array_equal(first.U, second.U)
        np.testing.assert_array_equal(first.s, second.s)
        np.testing.assert_array_equal(first.Vt, second.Vt)

    def test_sweep_budget_exhaustion_warns(self, caplog):
        rng = np.random.default_rng(7)
        A = rng.normal(size=(3, 3))
        with caplog.at_level(logging.WARNING):
            result = jacobi_svd(A, max_sweeps=0)
        assert not result.converged
        assert "did not converge" in caplog.text

    def test_empty_matrix_rejected(self):
        with pytest.raises(ValueError):
            jacobi_svd(np.empty((0, 3)))
        with pytest.raises(ValueError):
            jacobi_svd(np.ones(3))


class TestBestFitRotation:
    def test_recovers_rotation_from_covariance(self):
        rng = np.random.default_rng(10)
        R_true = _random_rotation(rng)
        pts = rng.normal(size=(50, 3)) * np.array([3.0, 2.0, 1.0])
        pts -= pts.mean(axis=0)
        H = (pts @ R_true.T).T @ pts

        svd = jacobi_svd(H)
        R = best_fit_rotation(svd.U, svd.s, svd.Vt)
        np.testing.assert_allclose(R, R_true, atol=1e-10)

    def test_reflection_is_corrected(self):
        # Mirrored covariance would give det(U Vt) = -1
        H = np.diag([3.0, 2.0, -1.0])
        svd = jacobi_svd(H)
        R = best_fit_rotation(svd.U, svd.s, svd.Vt)
        assert np.linalg.det(R) == pytest.approx(1.0)
        np.testing.assert_allclose(R.T @ R, np.eye(3), atol=1e-12)
        np.testing.assert_allclose(R, np.eye(3), atol=1e-12)

    def test_planar_covariance_gives_proper_rotation(self):
        rng = np.random.default_rng(11)
        R_true = _random_rotation(rng)
        pts = np.column_stack([rng.normal(size=40) * 2.0, rng.normal(size=40), np.zeros(40)])
        pts -= pts.mean(axis=0)
        H = (pts @ R_true.T).T @ pts

        svd = jacobi_svd(H)
        R = best_fit_rotation(svd.U, svd.s, svd.Vt)
        assert np.linalg.det(R) == pytest.approx(1.0)
        np.testing.assert_allclose(R, R_true, atol=1e-8)

    def test_zero_covariance_gives_orthonormal_result(self):
        svd = jacobi_svd(np.zeros((3, 3)))
        R = best_fit_rotation(svd.U, svd.s, svd.Vt)
        np.testing.assert_allclose(R.T @ R, np.eye(3), atol=1e-12)
        assert np.linalg.det(R) == pytest.approx(1.0)

    def test_wrong_shape_rejected(self):
        with pytest.raises(ValueError):
            best_fit_rotation(np.eye(2), np.ones(2), np.eye(2))
