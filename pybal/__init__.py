#!/usr/bin/env python3
"""
pybal - Python Bundle Adjustment in the Large

Levenberg-Marquardt bundle adjustment of BAL problems with Schur-complement
elimination of the 3D points.
"""

__version__ = "0.1.0"

# Import main classes and functions
from .bundle_adjustment import (
    BundleAdjuster,
    SolverOptions,
    SolverSummary,
    IterationSummary,
    TerminationType,
    solve_bundle_adjustment,
)
from .parameter_block import ParameterBlocks, CameraBlocks, PointBlocks
from .residual import Observation, Observations, ReprojectionResidual, NonFiniteResidualError, check_information
from .robust_loss import HuberLoss, TrivialLoss, Corrector
from .linear_system import NormalEquations, DegenerateLinearSystemError
from .bal_problem import BALProblem, make_synthetic_problem, cameras_to_quaternions, cameras_to_angle_axis
from .ceres_backend import BALReprojErrorCost, solve_with_ceres
from .rotation import (
    quaternion_to_rotation_matrix,
    quaternion_to_angle_axis,
    angle_axis_to_quaternion,
    so3_exp,
    so3_log,
    so3_right_jacobian,
    so3_left_jacobian,
    skew_symmetric
)

__all__ = [
    # Main classes
    "BundleAdjuster",
    "SolverOptions",
    "SolverSummary",
    "IterationSummary",
    "TerminationType",
    "solve_bundle_adjustment",
    "BALProblem",
    "make_synthetic_problem",
    "cameras_to_quaternions",
    "cameras_to_angle_axis",

    # Problem structure
    "ParameterBlocks",
    "CameraBlocks",
    "PointBlocks",
    "Observation",
    "Observations",
    "ReprojectionResidual",
    "check_information",
    "HuberLoss",
    "TrivialLoss",
    "Corrector",
    "NormalEquations",

    # Ceres reference backend
    "BALReprojErrorCost",
    "solve_with_ceres",

    # Errors
    "NonFiniteResidualError",
    "DegenerateLinearSystemError",

    # Rotation utilities
    "quaternion_to_rotation_matrix",
    "quaternion_to_angle_axis",
    "angle_axis_to_quaternion",
    "so3_exp",
    "so3_log",
    "so3_right_jacobian",
    "so3_left_jacobian",
    "skew_symmetric",
]
