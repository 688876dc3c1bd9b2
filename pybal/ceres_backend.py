#!/usr/bin/env python3
"""
Reference solve through pyceres

Builds the same BAL problem (raw angle-axis cameras, Huber loss) in Ceres and
solves it with SPARSE_SCHUR. Used to cross-check the native optimizer.
"""

import logging
from typing import Optional

import numpy as np
import pyceres

from pybal.bundle_adjustment import SolverOptions
from pybal.parameter_block import CameraBlocks, PointBlocks
from pybal.residual import evaluate_reprojection
from pybal.rotation import so3_left_jacobian

logger = logging.getLogger(__name__)


class BALReprojErrorCost(pyceres.CostFunction):
    """
    Reprojection error cost function for one BAL observation.
    Parameter blocks: camera [angle-axis, t, f, k1, k2] (9) and point (3).
    """
    def __init__(self, x_2d: np.ndarray):
        super().__init__()
        self.x_2d = np.array(x_2d, dtype=np.float64).reshape(1, 2)
        self.set_num_residuals(2)
        self.set_parameter_block_sizes([9, 3])

    def Evaluate(self, parameters, residuals, jacobians):
        camera_parameters = np.asarray(parameters[0], dtype=np.float64)
        point_parameters = np.asarray(parameters[1], dtype=np.float64)
        camera = CameraBlocks.from_raw(camera_parameters)
        point = PointBlocks(point_parameters)
        index = np.zeros(1, dtype=np.int64)
        r, _, J_camera, J_point = evaluate_reprojection(camera, point, index, index, self.x_2d)
        if not np.all(np.isfinite(r)):
            return False
        residuals[:] = r[0]

        if jacobians is not None:
            if jacobians[0] is not None:
                # Ceres updates the angle-axis additively: map the left tangent back through J_l(w)
                J = J_camera[0].copy()
                J[:, :3] = J_camera[0][:, :3] @ so3_left_jacobian(camera_parameters[:3])
                jacobians[0][:] = J.flatten('C')
            if jacobians[1] is not None:
                jacobians[1][:] = J_point[0].flatten('C')
        return True


def define_problem(cameras: np.ndarray, points: np.ndarray, camera_index: np.ndarray, point_index: np.ndarray,
                   observations: np.ndarray, huber_delta: Optional[float] = 1.0,
                   constant_cameras=None, constant_points=None):
    """
    Returns:
        (pyceres.Problem, camera parameter arrays, point parameter arrays)
    """
    prob = pyceres.Problem()
    loss = pyceres.HuberLoss(huber_delta) if huber_delta is not None else None

    camera_params = [np.array(c, dtype=np.float64) for c in np.asarray(cameras).reshape(-1, 9)]
    point_params = [np.array(p, dtype=np.float64) for p in np.asarray(points).reshape(-1, 3)]
    observations = np.asarray(observations, dtype=np.float64).reshape(-1, 2)

    for c, p, x_2d in zip(camera_index, point_index, observations):
        cost = BALReprojErrorCost(x_2d)
        prob.add_residual_block(cost, loss, [camera_params[c], point_params[p]])

    for c in (constant_cameras if constant_cameras is not None else []):
        prob.set_parameter_block_constant(camera_params[c])
    for p in (constant_points if constant_points is not None else []):
        prob.set_parameter_block_constant(point_params[p])
    return prob, camera_params, point_params


def solve_with_ceres(cameras: np.ndarray, points: np.ndarray, camera_index: np.ndarray, point_index: np.ndarray,
                     observations: np.ndarray, options: Optional[SolverOptions] = None,
                     constant_cameras=None, constant_points=None,
                     linear_solver_type=pyceres.LinearSolverType.SPARSE_SCHUR):
    """
    Solve with Ceres and write the result into cameras and points in place.

    Returns:
        pyceres.SolverSummary
    """
    options = options if options is not None else SolverOptions()
    prob, camera_params, point_params = define_problem(cameras, points, camera_index, point_index, observations,
                                                       options.huber_delta, constant_cameras, constant_points)
    logger.info("Problem: %d parameter blocks, %d parameters, %d residual blocks, %d residuals",
                prob.num_parameter_blocks(), prob.num_parameters(), prob.num_residual_blocks(),
                prob.num_residuals())

    ceres_options = pyceres.SolverOptions()
    ceres_options.linear_solver_type = linear_solver_type
    # residuals are evaluated in Python
    ceres_options.num_threads = 1
    ceres_options.minimizer_progress_to_stdout = options.minimizer_progress_to_stdout
    ceres_options.max_num_iterations = options.max_num_iterations
    ceres_options.function_tolerance = options.function_tolerance
    ceres_options.gradient_tolerance = options.gradient_tolerance
    ceres_options.parameter_tolerance = options.parameter_tolerance
    ceres_options.initial_trust_region_radius = 1.0 / options.initial_damping

    summary = pyceres.SolverSummary()
    pyceres.solve(ceres_options, prob, summary)
    logger.info(summary.BriefReport())

    cameras_out = cameras.reshape(-1, 9)
    points_out = points.reshape(-1, 3)
    for i, c in enumerate(camera_params):
        cameras_out[i] = c
    for i, p in enumerate(point_params):
        points_out[i] = p
    return summary
