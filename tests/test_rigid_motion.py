"""
Tests for the closed-form rigid-motion estimator.

Exact-correspondence cases must be recovered in a single estimate; the
degenerate cases (too few pairs, rank-deficient covariance) must be reported
through the estimate status rather than raised.
"""

import logging

import numpy as np
import pytest

from drift_registration.alignment import (
    EstimateStatus,
    RigidMotionEstimator,
    RigidTransform,
    fit_corresponding,
)
from drift_registration.spatial import FlatKDTree
from drift_registration.utils.config import EstimatorConfig, SVDConfig


def _unit_cube() -> np.ndarray:
    return np.array(
        [[x, y, z] for x in (0.0, 1.0) for y in (0.0, 1.0) for z in (0.0, 1.0)]
    )


def _make_random_cloud(n: int = 500, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    # Anisotropic spread to avoid degenerate covariance
    return rng.normal(size=(n, 3)) * np.array([4.0, 2.0, 1.0]) + np.array([3.0, -1.0, 0.5])


class TestExactRecovery:
    def test_recovers_random_transform(self):
        P = _make_random_cloud(200, seed=1)
        T = RigidTransform.from_euler("xyz", [12.0, -7.0, 33.0], translation=[0.4, -2.0, 1.1], degrees=True)

        result = RigidMotionEstimator().estimate(P, T.apply(P))

        assert result.status is EstimateStatus.OK
        assert result.applied
        np.testing.assert_allclose(result.transform.rotation, T.rotation, atol=1e-10)
        np.testing.assert_allclose(result.transform.translation, T.translation, atol=1e-10)

    def test_unit_cube_rotated_about_vertical_axis(self):
        cube = _unit_cube()
        T = RigidTransform.from_euler("y", 30.0, translation=[1.0, 0.0, 0.0], degrees=True)
        moved = T.apply(cube)
        estimator = RigidMotionEstimator()

        # Cube as the moving set, its rotated copy as the reference
        forward = estimator.estimate(cube, moved)
        dt, dr = forward.transform.difference(T)
        assert dr < 1e-3
        assert dt < 1e-3

        # Rotated copy as the moving set: the estimate undoes T
        backward = estimator.estimate(moved, cube)
        dt, dr = backward.transform.inverse().difference(T)
        assert dr < 1e-3
        assert dt < 1e-3
        assert backward.transform.rotation_angle() == pytest.approx(np.deg2rad(30.0), abs=1e-9)

    def test_delta_composes_on_the_left(self):
        P = _make_random_cloud(100, seed=2)
        current = RigidTransform.from_euler("z", 5.0, translation=[0.1, 0.0, 0.0], degrees=True)
        target = RigidTransform.from_euler("z", 15.0, translation=[0.5, 0.2, 0.0], degrees=True)

        result = RigidMotionEstimator().estimate(P, target.apply(P), current=current)

        np.testing.assert_allclose(result.transform.as_matrix(), target.as_matrix(), atol=1e-10)
        np.testing.assert_allclose(
            result.delta.compose(current).as_matrix(), result.transform.as_matrix(), atol=1e-12
        )
        assert result.rmse > 0.0

    def test_mirrored_points_still_give_proper_rotation(self):
        P = _make_random_cloud(100, seed=3)
        mirrored = P * np.array([-1.0, 1.0, 1.0])

        result = RigidMotionEstimator().estimate(P, mirrored)

        assert np.linalg.det(result.transform.rotation) == pytest.approx(1.0)
        np.testing.assert_allclose(
            result.transform.rotation.T @ result.transform.rotation, np.eye(3), atol=1e-10
        )

    def test_coplanar_points(self):
        rng = np.random.default_rng(4)
        P = np.column_stack([rng.uniform(-2, 2, 60), rng.uniform(-1, 1, 60), np.zeros(60)])
        T = RigidTransform.from_euler("xz", [20.0, -40.0], translation=[0.0, 1.0, 2.0], degrees=True)

        result = RigidMotionEstimator().estimate(P, T.apply(P))

        assert result.status is EstimateStatus.OK
        np.testing.assert_allclose(result.transform.as_matrix(), T.as_matrix(), atol=1e-8)

    def test_estimate_from_index_uses_current_transform(self):
        reference = _make_random_cloud(400, seed=5)
        T = RigidTransform.from_euler("z", 3.0, translation=[0.2, -0.1, 0.05], degrees=True)
        moving_local = T.inverse().apply(reference)
        tree = FlatKDTree(reference)

        result = RigidMotionEstimator().estimate_from_index(moving_local, tree, current=T)

        assert result.rmse == pytest.approx(0.0, abs=1e-9)
        assert result.delta.is_identity(atol=1e-9)
        np.testing.assert_allclose(result.transform.as_matrix(), T.as_matrix(), atol=1e-9)


class TestPolicies:
    def test_outliers_rejected_by_distance(self):
        P = _make_random_cloud(100, seed=6)
        T = RigidTransform.from_euler("y", 2.0, translation=[0.05, 0.0, 0.0], degrees=True)
        reference = T.apply(P)
        reference[:5] += 50.0

        gated = RigidMotionEstimator(max_correspondence_distance=1.0).estimate(P, reference)
        assert gated.n_rejected == 5
        assert gated.n_correspondences == 95
        np.testing.assert_allclose(gated.transform.as_matrix(), T.as_matrix(), atol=1e-10)

        ungated = RigidMotionEstimator().estimate(P, reference)
        assert ungated.n_rejected == 0
        assert not np.allclose(ungated.transform.as_matrix(), T.as_matrix(), atol=1e-3)

    def test_insufficient_correspondences_skip_update(self, caplog):
        P = _make_random_cloud(20, seed=7)
        current = RigidTransform.from_euler("x", 4.0, degrees=True)
        estimator = RigidMotionEstimator(max_correspondence_distance=1e-6)

        with caplog.at_level(logging.WARNING):
            result = estimator.estimate(P, P + 1.0, current=current)

        assert result.status is EstimateStatus.INSUFFICIENT_CORRESPONDENCES
        assert not result.applied
        assert result.transform is current
        assert result.delta.is_identity()
        assert result.n_correspondences == 0
        assert "skipping update" in caplog.text

    def test_two_points_are_not_enough(self):
        P = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
        result = RigidMotionEstimator().estimate(P, P)
        assert result.status is EstimateStatus.INSUFFICIENT_CORRESPONDENCES

    def test_min_correspondences_floor(self):
        assert RigidMotionEstimator(min_correspondences=1).min_correspondences == 3

    def test_collinear_points_rejected_by_default(self):
        line = np.outer(np.linspace(-1.0, 1.0, 15), [1.0, 2.0, 0.5])
        T = RigidTransform.from_euler("z", 10.0, translation=[0.3, 0.0, 0.0], degrees=True)

        result = RigidMotionEstimator().estimate(line, T.apply(line))

        assert result.status is EstimateStatus.RANK_DEFICIENT
        assert not result.applied
        assert result.transform.is_identity()
        assert result.singular_values is not None

    def test_collinear_points_accepted_on_request(self):
        line = np.outer(np.linspace(-1.0, 1.0, 15), [1.0, 2.0, 0.5])
        T = RigidTransform.from_euler("z", 10.0, translation=[0.3, 0.0, 0.0], degrees=True)
        reference = T.apply(line)

        result = RigidMotionEstimator(rank_deficient_policy="accept").estimate(line, reference)

        assert result.status is EstimateStatus.RANK_DEFICIENT
        assert result.applied
        assert np.linalg.det(result.transform.rotation) == pytest.approx(1.0)
        np.testing.assert_allclose(result.transform.apply(line), reference, atol=1e-8)

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            RigidMotionEstimator(rank_deficient_policy="ignore")

    def test_shape_mismatch_rejected(self):
        with pytest.raises(ValueError):
            RigidMotionEstimator().estimate(np.zeros((5, 3)), np.zeros((4, 3)))

    def test_from_config(self):
        estimator = RigidMotionEstimator.from_config(
            EstimatorConfig(max_correspondence_distance=0.25, min_correspondences=12,
                            rank_deficient_policy="accept"),
            SVDConfig(max_sweeps=20),
        )
        assert estimator.max_correspondence_distance == 0.25
        assert estimator.min_correspondences == 12
        assert estimator.rank_deficient_policy == "accept"
        assert estimator.max_sweeps == 20


class TestFitCorresponding:
    def test_recovers_drift_between_frames(self):
        rng = np.random.default_rng(8)
        tags_world = rng.uniform(-3.0, 3.0, size=(6, 3))
        drift = RigidTransform.from_euler("y", 8.0, translation=[0.3, 0.0, -0.2], degrees=True)
        device_frame = RigidTransform.from_euler("z", 45.0, translation=[5.0, 1.0, 0.0], degrees=True)
        world_frame = RigidTransform.from_euler("x", -20.0, translation=[0.0, 2.0, 0.0], degrees=True)

        seen_by_device = device_frame.inverse().apply(drift.inverse().apply(tags_world))
        stored = world_frame.inverse().apply(tags_world)

        delta = fit_corresponding(seen_by_device, stored, device_frame, world_frame)

        np.testing.assert_allclose(delta.as_matrix(), drift.as_matrix(), atol=1e-10)

    def test_three_pairs_minimum(self):
        with pytest.raises(ValueError, match="At least 3"):
            fit_corresponding(np.zeros((2, 3)), np.zeros((2, 3)))

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            fit_corresponding(np.zeros((4, 3)), np.zeros((5, 3)))
