#!/usr/bin/env python3
"""
Bundle Adjustment with a Levenberg-Marquardt trust region

This module provides the optimizer: it wraps the raw camera and point arrays
into parameter blocks, runs the linearize / solve / evaluate loop and writes
the refined values back into the caller's arrays.
"""

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from pybal.linear_system import DegenerateLinearSystemError, NormalEquations
from pybal.parameter_block import CameraBlocks, PointBlocks
from pybal.residual import NonFiniteResidualError, Observations
from pybal.robust_loss import HuberLoss, TrivialLoss

logger = logging.getLogger(__name__)


class TerminationType(enum.Enum):
    CONVERGENCE = "CONVERGENCE"
    NO_CONVERGENCE = "NO_CONVERGENCE"
    FAILURE = "FAILURE"


@dataclass
class SolverOptions:
    max_num_iterations: int = 40
    initial_damping: float = 1e-4
    max_damping: float = 1e32
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8
    # None disables the robust loss
    huber_delta: Optional[float] = 1.0
    jacobian_mode: str = "analytic"
    numeric_step: float = 1e-6
    num_threads: int = 4
    min_chunk_size: int = 4096
    max_consecutive_invalid_steps: int = 5
    check_depth: bool = True
    minimizer_progress_to_stdout: bool = False

    def validate(self):
        if self.max_num_iterations < 0:
            raise ValueError("max_num_iterations must be non-negative")
        if not 0 < self.initial_damping <= self.max_damping:
            raise ValueError("initial_damping must be positive and not exceed max_damping")
        for name in ("function_tolerance", "gradient_tolerance", "parameter_tolerance"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.huber_delta is not None and self.huber_delta <= 0:
            raise ValueError("huber_delta must be positive")
        if self.jacobian_mode not in ("analytic", "numeric"):
            raise ValueError(f"unknown jacobian_mode {self.jacobian_mode!r}")
        if self.numeric_step <= 0:
            raise ValueError("numeric_step must be positive")
        if self.num_threads < 1:
            raise ValueError("num_threads must be at least 1")
        if self.max_consecutive_invalid_steps < 1:
            raise ValueError("max_consecutive_invalid_steps must be at least 1")

    def make_loss(self):
        return TrivialLoss() if self.huber_delta is None else HuberLoss(self.huber_delta)


@dataclass
class IterationSummary:
    iteration: int
    cost: float
    cost_change: float
    gradient_max_norm: float
    step_norm: float
    relative_decrease: float
    damping: float
    step_is_valid: bool
    step_is_successful: bool
    iteration_time: float


@dataclass
class SolverSummary:
    num_cameras: int = 0
    num_points: int = 0
    num_residuals: int = 0
    num_variables: int = 0
    termination_type: TerminationType = TerminationType.FAILURE
    message: str = ""
    initial_cost: float = float("nan")
    final_cost: float = float("nan")
    num_iterations: int = 0
    num_successful_steps: int = 0
    num_unsuccessful_steps: int = 0
    final_damping: float = float("nan")
    total_time: float = 0.0
    iterations: List[IterationSummary] = field(default_factory=list)

    def is_converged(self) -> bool:
        return self.termination_type == TerminationType.CONVERGENCE

    def brief_report(self) -> str:
        return (f"Bundle adjustment, iterations: {self.num_iterations}, "
                f"initial cost: {self.initial_cost:.6e}, final cost: {self.final_cost:.6e}, "
                f"termination: {self.termination_type.value}")

    def full_report(self) -> str:
        lines = [
            "Bundle adjustment report",
            "------------------------",
            f"Cameras                 {self.num_cameras:>12d}",
            f"Points                  {self.num_points:>12d}",
            f"Residual blocks         {self.num_residuals:>12d}",
            f"Variables               {self.num_variables:>12d}",
            "",
            f"Initial cost            {self.initial_cost:>12.6e}",
            f"Final cost              {self.final_cost:>12.6e}",
            f"Change                  {self.initial_cost - self.final_cost:>12.6e}",
            "",
            f"Iterations              {self.num_iterations:>12d}",
            f"Successful steps        {self.num_successful_steps:>12d}",
            f"Unsuccessful steps      {self.num_unsuccessful_steps:>12d}",
            f"Final damping           {self.final_damping:>12.6e}",
            f"Total time (s)          {self.total_time:>12.4f}",
            "",
            f"Termination:            {self.termination_type.value} ({self.message})",
        ]
        return "\n".join(lines)


def _progress_header() -> str:
    return "iter      cost      cost_change  |gradient|   |step|    tr_ratio  damping    iter_time"


def _progress_row(it: IterationSummary) -> str:
    return (f"{it.iteration:4d} {it.cost:12.6e} {it.cost_change:11.4e} {it.gradient_max_norm:11.4e} "
            f"{it.step_norm:9.2e} {it.relative_decrease:9.2e} {it.damping:9.2e} {it.iteration_time:9.2e}")


class BundleAdjuster:
    """
    Bundle adjustment optimizer.
    """

    def __init__(self, options: Optional[SolverOptions] = None, fix_first_pose: bool = False,
                 fix_intrinsics: bool = False):
        """
        Initialize the bundle adjuster.

        Args:
            options: solver configuration, defaults to SolverOptions()
            fix_first_pose: hold camera 0 constant (removes the gauge freedom)
            fix_intrinsics: keep focal length and distortion of all cameras fixed
        """
        self.options = options if options is not None else SolverOptions()
        self.fix_first_pose = fix_first_pose
        self.fix_intrinsics = fix_intrinsics

    def define_problem(self, cameras: np.ndarray, points: np.ndarray, camera_index: np.ndarray,
                       point_index: np.ndarray, observations: np.ndarray,
                       information: Optional[np.ndarray] = None,
                       constant_cameras=None, constant_points=None
                       ) -> Tuple[CameraBlocks, PointBlocks, Observations]:
        """
        Wrap raw arrays into parameter blocks and an observation set.
        """
        camera_blocks = CameraBlocks.from_raw(cameras)
        point_blocks = PointBlocks.from_raw(points)
        obs = Observations(camera_index, point_index, observations, information)
        obs.validate(len(camera_blocks), len(point_blocks))

        if constant_cameras is not None:
            camera_blocks.set_constant(np.asarray(constant_cameras, dtype=np.int64))
        if constant_points is not None:
            point_blocks.set_constant(np.asarray(constant_points, dtype=np.int64))
        if self.fix_first_pose and len(camera_blocks) > 0:
            camera_blocks.set_constant(0)
        return camera_blocks, point_blocks, obs

    def _evaluate_candidate(self, system: NormalEquations, cameras: CameraBlocks,
                            points: PointBlocks) -> float:
        cost, depths = system.evaluate_cost(cameras, points)
        if not np.isfinite(cost):
            raise NonFiniteResidualError("candidate cost is not finite")
        if self.options.check_depth:
            flipped = np.count_nonzero((system.depths > 0) & (depths <= 0))
            if flipped:
                raise NonFiniteResidualError(f"{flipped} point(s) moved behind their camera")
        return cost

    def solve(self, cameras: CameraBlocks, points: PointBlocks, observations: Observations) -> SolverSummary:
        """
        Run Levenberg-Marquardt on the given blocks. The blocks are updated in
        place after every accepted step; rejected steps never touch them.

        Returns:
            SolverSummary
        """
        options = self.options
        options.validate()
        observations.validate(len(cameras), len(points))
        start = time.perf_counter()

        blocks = (cameras, points)
        system = NormalEquations(observations, cameras.constant, points.constant, loss=options.make_loss(),
                                 fix_intrinsics=self.fix_intrinsics, jacobian_mode=options.jacobian_mode,
                                 numeric_step=options.numeric_step, num_threads=options.num_threads,
                                 min_chunk_size=options.min_chunk_size)
        summary = SolverSummary(num_cameras=len(cameras), num_points=len(points),
                                num_residuals=len(observations), num_variables=system.num_variables)
        logger.info("Bundle adjustment: %d cameras, %d points, %d observations, %d variables",
                    len(cameras), len(points), len(observations), system.num_variables)

        cost, _ = system.evaluate_cost(cameras, points)
        summary.initial_cost = summary.final_cost = cost
        damping = options.initial_damping
        summary.final_damping = damping
        if not np.isfinite(cost):
            summary.termination_type = TerminationType.FAILURE
            summary.message = "initial cost is not finite"
            summary.total_time = time.perf_counter() - start
            logger.warning(summary.message)
            return summary

        if options.minimizer_progress_to_stdout:
            print(_progress_header())

        nu = 2.0
        consecutive_invalid = 0
        relinearize = True
        gradient_norm = float("nan")
        termination, message = None, ""

        while termination is None:
            iteration_start = time.perf_counter()
            if relinearize:
                system.linearize(cameras, points)
                cost = system.cost
                gradient_norm = system.gradient_max_norm()
                relinearize = False
                if cost == 0.0:
                    termination, message = TerminationType.CONVERGENCE, "cost is zero"
                    break
                if gradient_norm <= options.gradient_tolerance:
                    termination = TerminationType.CONVERGENCE
                    message = f"gradient tolerance reached, max|g| = {gradient_norm:.4e}"
                    break

            if summary.num_iterations >= options.max_num_iterations:
                termination = TerminationType.NO_CONVERGENCE
                message = f"maximum number of iterations reached ({options.max_num_iterations})"
                break
            if damping > options.max_damping:
                termination, message = TerminationType.CONVERGENCE, "damping exceeded its maximum"
                break
            summary.num_iterations += 1

            step_norm = 0.0
            try:
                delta_cameras, delta_points = system.solve_schur(damping)
                step_norm = float(np.sqrt(np.sum(delta_cameras ** 2) + np.sum(delta_points ** 2)))
                x_norm = float(np.sqrt(np.sum(cameras.to_raw()[system.free_cameras] ** 2)
                                       + np.sum(points.positions[system.free_points] ** 2)))
                if step_norm <= options.parameter_tolerance * (x_norm + options.parameter_tolerance):
                    termination = TerminationType.CONVERGENCE
                    message = f"parameter tolerance reached, |step| = {step_norm:.4e}"
                    self._record(summary, cost, 0.0, gradient_norm, step_norm, 0.0, damping, True, False,
                                 iteration_start)
                    break

                candidate = [block.copy() for block in blocks]
                for block, delta in zip(candidate, (delta_cameras, delta_points)):
                    block.apply_update(delta)
                new_cost = self._evaluate_candidate(system, *candidate)
            except (DegenerateLinearSystemError, NonFiniteResidualError) as e:
                logger.debug("iteration %d: invalid step (%s)", summary.num_iterations, e)
                consecutive_invalid += 1
                summary.num_unsuccessful_steps += 1
                self._record(summary, cost, 0.0, gradient_norm, step_norm, 0.0, damping, False, False,
                             iteration_start)
                damping *= nu
                nu *= 2.0
                if consecutive_invalid >= options.max_consecutive_invalid_steps:
                    termination = TerminationType.FAILURE
                    message = f"{consecutive_invalid} consecutive invalid steps, last: {e}"
                continue

            consecutive_invalid = 0
            if new_cost < cost:
                predicted = system.model_cost_change(delta_cameras, delta_points, damping)
                # an inconclusive model keeps the damping as is
                rho = (cost - new_cost) / predicted if predicted > 0 else 0.5
                self._record(summary, new_cost, cost - new_cost, gradient_norm, step_norm, rho, damping, True,
                             True, iteration_start)
                for block, delta in zip(blocks, (delta_cameras, delta_points)):
                    block.apply_update(delta)
                summary.num_successful_steps += 1
                damping *= max(1.0 / 3.0, 1.0 - (2.0 * min(max(rho, 0.5), 1.0) - 1.0) ** 3)
                nu = 2.0
                relinearize = True
                if cost - new_cost <= options.function_tolerance * cost:
                    termination = TerminationType.CONVERGENCE
                    message = f"function tolerance reached, |cost change| / cost = {(cost - new_cost) / cost:.4e}"
                cost = new_cost
                summary.final_cost = new_cost
            else:
                logger.debug("iteration %d: rejected step, cost %.6e -> %.6e", summary.num_iterations, cost,
                             new_cost)
                self._record(summary, cost, cost - new_cost, gradient_norm, step_norm, 0.0, damping, True, False,
                             iteration_start)
                summary.num_unsuccessful_steps += 1
                damping *= nu
                nu *= 2.0

        summary.termination_type = termination
        summary.message = message
        summary.final_cost = cost
        summary.final_damping = damping
        summary.total_time = time.perf_counter() - start
        logger.info("Bundle adjustment finished: %s (%s), cost %.6e -> %.6e in %d iterations",
                    termination.value, message, summary.initial_cost, summary.final_cost, summary.num_iterations)
        if options.minimizer_progress_to_stdout:
            print(summary.brief_report())
        return summary

    def _record(self, summary: SolverSummary, cost, cost_change, gradient_norm, step_norm, relative_decrease,
                damping, valid, successful, iteration_start):
        it = IterationSummary(summary.num_iterations, cost, cost_change, gradient_norm, step_norm,
                              relative_decrease, damping, valid, successful,
                              time.perf_counter() - iteration_start)
        summary.iterations.append(it)
        logger.debug(_progress_row(it))
        if self.options.minimizer_progress_to_stdout:
            print(_progress_row(it))

    def run(self, cameras: np.ndarray, points: np.ndarray, camera_index: np.ndarray, point_index: np.ndarray,
            observations: np.ndarray, information: Optional[np.ndarray] = None,
            constant_cameras=None, constant_points=None) -> SolverSummary:
        """
        Run bundle adjustment on raw arrays.

        Args:
            cameras: (N, 9) or flat camera parameters, updated in place
            points: (M, 3) or flat point parameters, updated in place
            camera_index: (K,) camera index per observation
            point_index: (K,) point index per observation
            observations: (K, 2) or flat pixel measurements
            information: optional (2, 2) or (K, 2, 2) information matrices
            constant_cameras: indices of cameras held fixed
            constant_points: indices of points held fixed

        Returns:
            SolverSummary
        """
        for name, array in (("cameras", cameras), ("points", points)):
            if not isinstance(array, np.ndarray):
                raise TypeError(f"{name} must be a numpy array, it is updated in place")
        camera_blocks, point_blocks, obs = self.define_problem(cameras, points, camera_index, point_index,
                                                               observations, information, constant_cameras,
                                                               constant_points)
        summary = self.solve(camera_blocks, point_blocks, obs)
        camera_blocks.to_raw(out=cameras)
        point_blocks.to_raw(out=points)
        return summary


def solve_bundle_adjustment(cameras: np.ndarray, points: np.ndarray, camera_index: np.ndarray,
                            point_index: np.ndarray, observations: np.ndarray,
                            options: Optional[SolverOptions] = None, information: Optional[np.ndarray] = None,
                            constant_cameras=None, constant_points=None,
                            fix_intrinsics: bool = False) -> SolverSummary:
    """
    Refine cameras and points in place. See BundleAdjuster.run.
    """
    adjuster = BundleAdjuster(options, fix_intrinsics=fix_intrinsics)
    return adjuster.run(cameras, points, camera_index, point_index, observations, information,
                        constant_cameras, constant_points)
