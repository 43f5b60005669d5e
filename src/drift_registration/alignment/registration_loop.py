"""
Frame-driven ICP Registration Loop

RegistrationLoop keeps a moving point set aligned to a fixed reference cloud
across frames. It is a two-state machine:

- IDLE: no session; nothing is resident.
- ITERATING: a session is active; the spatial index over the reference cloud
  and the captured moving points stay resident until ``stop()``.

Each ``step()`` performs exactly one ICP iteration (nearest-neighbour query,
rigid-motion estimate, left-composition onto the running estimate) and then
returns control to the caller. The host decides when the next step happens,
typically once per frame tick, either by calling ``step()`` itself, by
advancing the ``iterate()`` generator, or by handing a tick stream to
``run()`` / ``run_async()``.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, Callable, Iterable, Iterator, List, Optional

import numpy as np

from .rigid_motion import MotionEstimate, RigidMotionEstimator
from .transform import RigidTransform
from ..spatial import build_index
from ..spatial.base import NearestNeighborIndex, as_point_array
from ..utils.config import AppConfig
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

TransformListener = Callable[[RigidTransform], None]


class LoopState(str, Enum):
    IDLE = "idle"
    ITERATING = "iterating"


@dataclass(frozen=True, eq=False)
class IterationResult:
    """
    Report for one registration step.

    Attributes:
        iteration: 1-based iteration number within the session.
        estimate: Rigid-motion estimate produced by this step.
        transform: Transform published to listeners after this step.
        converged: Step sizes fell below the configured epsilons.
        diverged: The estimate was reset to the initial transform.
        stopped: The loop ended the session after this step.
        duration: Wall time of the step in seconds.
    """

    iteration: int
    estimate: MotionEstimate
    transform: RigidTransform
    converged: bool
    diverged: bool
    stopped: bool
    duration: float


def _as_transform(value: Any) -> RigidTransform:
    if value is None:
        return RigidTransform.identity()
    if isinstance(value, RigidTransform):
        return value
    return RigidTransform.from_matrix(value)


class RegistrationLoop:
    """
    Continuous ICP alignment of a moving cloud against a reference cloud.

    Example:
        loop = RegistrationLoop(reference_points, config=load_config())
        loop.subscribe(anchor.set_pose)
        loop.start(moving_points, initial_transform=tracking_space)
        for tick in frame_ticks:  # one iteration per frame
            loop.step()
        loop.stop()
    """

    def __init__(
        self,
        reference_points: Any,
        config: Optional[AppConfig] = None,
        estimator: Optional[RigidMotionEstimator] = None,
    ):
        """
        Args:
            reference_points: Non-empty (N, 3) reference cloud.
            config: Application config (defaults if None).
            estimator: Custom estimator; built from ``config`` if None.

        Raises:
            ValueError: If the reference cloud is empty or malformed.
        """
        self.config = config or AppConfig()
        self.reference_points = as_point_array(reference_points)
        self.estimator = estimator or RigidMotionEstimator.from_config(
            self.config.estimator, self.config.svd
        )

        self._lock = threading.Lock()
        self._state = LoopState.IDLE
        self._index: Optional[NearestNeighborIndex] = None
        self._moving: Optional[np.ndarray] = None
        self._initial = RigidTransform.identity()
        self._estimate = RigidTransform.identity()
        self._published = RigidTransform.identity()
        self._has_published = False
        self._iteration = 0
        self._listeners: List[TransformListener] = []

    # ------------------------ Read-only views ------------------------
    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is LoopState.ITERATING

    @property
    def iteration(self) -> int:
        return self._iteration

    @property
    def index(self) -> Optional[NearestNeighborIndex]:
        return self._index

    @property
    def transform(self) -> RigidTransform:
        """Last published transform (a consistent snapshot)."""
        with self._lock:
            return self._published

    @property
    def estimate(self) -> RigidTransform:
        """Current unblended cumulative estimate."""
        with self._lock:
            return self._estimate

    def subscribe(self, listener: TransformListener) -> Callable[[], None]:
        """
        Register a callback receiving every published transform.

        Returns:
            A function that removes the listener again.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------ Session control ------------------------
    def start(self, moving_points: Any, initial_transform: Any = None) -> None:
        """
        Activate a session: capture the moving cloud and build the index.

        Args:
            moving_points: Non-empty (M, 3) moving cloud in its local frame.
            initial_transform: Starting estimate (RigidTransform or 4x4
                matrix), e.g. the device's tracking-space pose.

        Raises:
            RuntimeError: If a session is already active.
            ValueError: If either cloud is empty or malformed.
        """
        if self.is_active:
            raise RuntimeError("Registration session already active; call stop() first")

        moving = as_point_array(moving_points).copy()
        initial = _as_transform(initial_transform)

        start = time.time()
        index = build_index(self.reference_points, self.config.index)
        logger.info(
            "Registration session started: %d moving points, %d reference points, "
            "index '%s' built in %.4f s.",
            len(moving),
            len(self.reference_points),
            self.config.index.backend,
            time.time() - start,
        )

        with self._lock:
            self._index = index
            self._moving = moving
            self._initial = initial
            self._estimate = initial
            self._iteration = 0
            self._has_published = False
            self._state = LoopState.ITERATING
        self._publish(initial)

    def stop(self) -> None:
        """
        End the session and release the index and moving cloud.

        Safe to call between steps and when already idle.
        """
        with self._lock:
            if self._state is LoopState.IDLE:
                return
            self._index = None
            self._moving = None
            self._state = LoopState.IDLE
        logger.info("Registration session stopped after %d iterations.", self._iteration)

    # ------------------------ Iteration ------------------------
    def step(self) -> IterationResult:
        """
        Run exactly one registration iteration.

        Returns:
            IterationResult for this step.

        Raises:
            RuntimeError: If no session is active.
        """
        with self._lock:
            if self._state is not LoopState.ITERATING:
                raise RuntimeError("Registration loop is idle; call start() first")
            index = self._index
            moving = self._moving
            current = self._estimate

        start = time.time()
        estimate = self.estimator.estimate_from_index(moving, index, current)
        updated = estimate.transform

        diverged = False
        limit = self.config.loop.divergence_translation_limit
        # Drift is measured from the session's starting pose, not the origin
        drift = float(np.linalg.norm(updated.translation - self._initial.translation))
        if not updated.is_finite() or (limit is not None and drift > limit):
            logger.warning(
                "Registration estimate diverged (%.3f from the initial translation); "
                "resetting to the initial transform.",
                drift,
            )
            updated = self._initial
            diverged = True

        with self._lock:
            if self._state is not LoopState.ITERATING:
                # stop() ran while this step was computing; discard its result
                logger.debug("Session stopped during iteration %d; result dropped.", self._iteration + 1)
                return IterationResult(
                    iteration=self._iteration,
                    estimate=estimate,
                    transform=self._published,
                    converged=False,
                    diverged=diverged,
                    stopped=True,
                    duration=time.time() - start,
                )
            self._estimate = updated
            self._iteration += 1
            iteration = self._iteration
        published = self._publish(updated, blend=not diverged)

        converged = not diverged and self._is_converged(estimate)
        max_iterations = self.config.loop.max_iterations
        finished = converged or (max_iterations is not None and iteration >= max_iterations)

        duration = time.time() - start
        logger.debug(
            "Iteration %d: status=%s, RMSE=%.6f, pairs=%d, %.4f s",
            iteration,
            estimate.status.value,
            estimate.rmse,
            estimate.n_correspondences,
            duration,
        )

        if finished:
            if converged:
                logger.info("Registration converged after %d iterations.", iteration)
            else:
                logger.info("Registration reached the iteration limit (%d).", iteration)
            self.stop()

        return IterationResult(
            iteration=iteration,
            estimate=estimate,
            transform=published,
            converged=converged,
            diverged=diverged,
            stopped=finished,
            duration=duration,
        )

    def iterate(self) -> Iterator[IterationResult]:
        """
        Generator form of the loop: each ``next()`` runs one step.

        The generator suspends after every step, so the host resumes it once
        per frame. It ends when the session stops.
        """
        while self.is_active:
            yield self.step()

    def run(self, ticks: Iterable[Any]) -> List[IterationResult]:
        """
        Run one step per element of ``ticks`` while the session is active.
        """
        results = []
        for _ in ticks:
            if not self.is_active:
                break
            results.append(self.step())
        return results

    async def run_async(self, ticks: AsyncIterable[Any]) -> List[IterationResult]:
        """
        Run one step per tick of an async frame signal while the session is active.

        Between ticks the coroutine is suspended on the tick source, leaving
        the event loop free for the host.
        """
        results = []
        async for _ in ticks:
            if not self.is_active:
                break
            results.append(self.step())
        return results

    # ------------------------ Internals ------------------------
    def _is_converged(self, estimate: MotionEstimate) -> bool:
        loop_cfg = self.config.loop
        t_eps = loop_cfg.convergence_translation_epsilon
        r_eps_deg = loop_cfg.convergence_rotation_epsilon_deg
        if t_eps is None and r_eps_deg is None:
            return False
        if not estimate.applied:
            return False

        if t_eps is not None and float(np.linalg.norm(estimate.delta.translation)) >= t_eps:
            return False
        if r_eps_deg is not None and estimate.delta.rotation_angle() >= np.deg2rad(r_eps_deg):
            return False
        return True

    def _publish(self, transform: RigidTransform, blend: bool = True) -> RigidTransform:
        alpha = self.config.loop.output_blend
        with self._lock:
            if blend and self._has_published and alpha < 1.0:
                transform = self._published.interpolate(transform, alpha)
            self._published = transform
            self._has_published = True

        for listener in list(self._listeners):
            listener(transform)
        return transform
