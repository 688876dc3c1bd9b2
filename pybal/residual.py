#!/usr/bin/env python3
"""
Reprojection residuals

Every observation links one camera block to one point block. Residuals are
recomputed from the current estimates at every linearization and never
cached across iterations.
"""

import numpy as np
from dataclasses import dataclass
from typing import Iterable, NamedTuple, Optional, Tuple

from pybal.parameter_block import CameraBlocks, PointBlocks


class NonFiniteResidualError(RuntimeError):
    """A projection landed behind a camera or produced a non-finite value."""


def check_information(information: np.ndarray):
    """
    Raise ValueError unless every (2, 2) matrix in `information` is finite,
    symmetric and positive definite.
    """
    information = np.asarray(information, dtype=np.float64)
    if not np.all(np.isfinite(information)):
        raise ValueError("information must be finite")
    if not np.allclose(information, np.swapaxes(information, -1, -2), rtol=1e-12, atol=0.0):
        raise ValueError("information must be symmetric")
    a = information[..., 0, 0]
    det = a * information[..., 1, 1] - information[..., 0, 1] * information[..., 1, 0]
    if np.any(a <= 0) or np.any(det <= 0):
        raise ValueError("information must be positive definite")


class Observation(NamedTuple):
    camera_index: int
    point_index: int
    measurement: np.ndarray


@dataclass(frozen=True)
class Observations:
    """
    Parallel arrays describing the camera/point bipartite graph.

    Attributes:
        camera_index: (N,) camera handle per observation
        point_index: (N,) point handle per observation
        measurements: (N, 2) observed pixel coordinates
        information: optional (N, 2, 2) or (2, 2) inverse measurement covariance,
            identity when None
    """
    camera_index: np.ndarray
    point_index: np.ndarray
    measurements: np.ndarray
    information: Optional[np.ndarray] = None

    def __post_init__(self):
        camera_index = np.asarray(self.camera_index)
        point_index = np.asarray(self.point_index)
        measurements = np.asarray(self.measurements, dtype=np.float64).reshape(-1, 2)
        for name, index in (("camera_index", camera_index), ("point_index", point_index)):
            if index.ndim != 1 or len(index) != len(measurements):
                raise ValueError(f"{name} must be a 1-D array with one entry per observation")
            if len(index) and not np.issubdtype(index.dtype, np.integer):
                raise ValueError(f"{name} must hold integers")
            if len(index) and index.min() < 0:
                raise ValueError(f"{name} must be non-negative")
        information = self.information
        if information is not None:
            information = np.asarray(information, dtype=np.float64)
            if information.shape == (2, 2):
                information = np.broadcast_to(information, (len(measurements), 2, 2))
            if information.shape != (len(measurements), 2, 2):
                raise ValueError("information must be (2, 2) or (N, 2, 2)")
            check_information(information)
        object.__setattr__(self, "camera_index", camera_index.astype(np.int64))
        object.__setattr__(self, "point_index", point_index.astype(np.int64))
        object.__setattr__(self, "measurements", measurements)
        object.__setattr__(self, "information", information)

    def __len__(self):
        return len(self.measurements)

    def __getitem__(self, i: int) -> Observation:
        return Observation(int(self.camera_index[i]), int(self.point_index[i]), self.measurements[i])

    @classmethod
    def from_list(cls, observations: Iterable[Tuple[int, int, np.ndarray]],
                  information: Optional[np.ndarray] = None) -> "Observations":
        """Build from (camera_index, point_index, point_2d) tuples."""
        observations = list(observations)
        camera_index = np.array([o[0] for o in observations], dtype=np.int64)
        point_index = np.array([o[1] for o in observations], dtype=np.int64)
        measurements = np.array([o[2] for o in observations], dtype=np.float64).reshape(-1, 2)
        return cls(camera_index, point_index, measurements, information)

    def validate(self, num_cameras: int, num_points: int):
        if len(self) == 0:
            return
        if self.camera_index.max() >= num_cameras:
            raise ValueError(f"observation references camera {self.camera_index.max()}, "
                             f"only {num_cameras} cameras exist")
        if self.point_index.max() >= num_points:
            raise ValueError(f"observation references point {self.point_index.max()}, "
                             f"only {num_points} points exist")
        if not np.all(np.isfinite(self.measurements)):
            raise ValueError("measurements must be finite")

    def subset(self, selection) -> "Observations":
        information = None if self.information is None else self.information[selection]
        return Observations(self.camera_index[selection], self.point_index[selection],
                            self.measurements[selection], information)

    def sqrt_information(self) -> Optional[np.ndarray]:
        """L^T with information = L L^T, so that |L^T r|^2 = r^T information r."""
        if self.information is None:
            return None
        return np.swapaxes(np.linalg.cholesky(self.information), -1, -2)


def evaluate_reprojection(cameras: CameraBlocks, points: PointBlocks, camera_index: np.ndarray,
                          point_index: np.ndarray, measurements: np.ndarray, jacobians: bool = True):
    """
    Reprojection errors and their analytic Jacobians for a batch of observations.

    Returns:
        residuals: (N, 2) predicted minus observed pixels
        depths: (N,) depth of each point in its camera (positive in front)
        J_camera: (N, 2, 9) w.r.t. [dphi, dt, df, dk1, dk2], or None
        J_point: (N, 2, 3), or None
    """
    X = points.positions[point_index]
    point_in_camera = cameras.transform(camera_index, X)
    z = point_in_camera[:, 2]
    p = -point_in_camera[:, :2] / z[:, None]

    focal, k1, k2 = cameras.intrinsics[camera_index].T
    r2 = np.sum(p * p, axis=1)
    distortion = 1.0 + r2 * (k1 + k2 * r2)
    residuals = (focal * distortion)[:, None] * p - measurements
    depths = -z

    if not jacobians:
        return residuals, depths, None, None

    n = len(camera_index)
    z_inv = 1.0 / z
    # d p / d p_c
    J_normalize = np.zeros((n, 2, 3))
    J_normalize[:, 0, 0] = -z_inv
    J_normalize[:, 1, 1] = -z_inv
    J_normalize[:, :, 2] = point_in_camera[:, :2] * (z_inv ** 2)[:, None]

    # d uv / d p = f (d I + p (dd/dp)^T)
    d_distortion = 2.0 * (k1 + 2.0 * k2 * r2)[:, None] * p
    J_distort = distortion[:, None, None] * np.eye(2) + p[:, :, None] * d_distortion[:, None, :]
    J_distort *= focal[:, None, None]

    J_pc = J_distort @ J_normalize

    J_camera = np.empty((n, 2, 9))
    J_camera[:, :, 0:3] = J_pc @ cameras.rotation_generators(camera_index, X)
    J_camera[:, :, 3:6] = J_pc
    J_camera[:, :, 6] = distortion[:, None] * p
    J_camera[:, :, 7] = (focal * r2)[:, None] * p
    J_camera[:, :, 8] = (focal * r2 * r2)[:, None] * p

    J_point = J_pc @ cameras.rotations[camera_index]
    return residuals, depths, J_camera, J_point


def numeric_reprojection_jacobians(cameras: CameraBlocks, points: PointBlocks, camera_index: np.ndarray,
                                   point_index: np.ndarray, step: float = 1e-6):
    """
    Central-difference Jacobians through apply_update, so rotation columns use the
    same left tangent as the analytic version.
    """
    n = len(camera_index)
    local_cameras = CameraBlocks(cameras.rotations[camera_index], cameras.translations[camera_index],
                                 cameras.intrinsics[camera_index])
    local_points = PointBlocks(points.positions[point_index])
    handles = np.arange(n)

    J_camera = np.empty((n, 2, CameraBlocks.dimension))
    for k in range(CameraBlocks.dimension):
        delta = np.zeros((n, CameraBlocks.dimension))
        delta[:, k] = step
        plus = local_cameras.copy()
        plus.apply_update(delta)
        minus = local_cameras.copy()
        minus.apply_update(-delta)
        J_camera[:, :, k] = (plus.project(handles, local_points.positions)
                             - minus.project(handles, local_points.positions)) / (2 * step)

    J_point = np.empty((n, 2, PointBlocks.dimension))
    for k in range(PointBlocks.dimension):
        offset = np.zeros(PointBlocks.dimension)
        offset[k] = step
        J_point[:, :, k] = (local_cameras.project(handles, local_points.positions + offset)
                            - local_cameras.project(handles, local_points.positions - offset)) / (2 * step)
    return J_camera, J_point


class ReprojectionResidual:
    """
    Reprojection error of a single observation, evaluated at the current
    estimates of the referenced blocks.
    """

    def __init__(self, cameras: CameraBlocks, points: PointBlocks, camera_index: int, point_index: int,
                 measurement: np.ndarray, information: Optional[np.ndarray] = None):
        if not 0 <= camera_index < len(cameras):
            raise ValueError(f"camera {camera_index} does not exist")
        if not 0 <= point_index < len(points):
            raise ValueError(f"point {point_index} does not exist")
        self.cameras = cameras
        self.points = points
        self.camera_index = np.array([camera_index], dtype=np.int64)
        self.point_index = np.array([point_index], dtype=np.int64)
        self.measurement = np.asarray(measurement, dtype=np.float64).reshape(1, 2)
        if information is None:
            self.information = np.eye(2)
        else:
            self.information = np.asarray(information, dtype=np.float64).reshape(2, 2)
            check_information(self.information)

    @classmethod
    def from_observation(cls, cameras: CameraBlocks, points: PointBlocks, observation: Observation,
                         information: Optional[np.ndarray] = None) -> "ReprojectionResidual":
        return cls(cameras, points, observation.camera_index, observation.point_index, observation.measurement,
                   information)

    def error(self) -> np.ndarray:
        residuals, _, _, _ = evaluate_reprojection(self.cameras, self.points, self.camera_index,
                                                   self.point_index, self.measurement, jacobians=False)
        return residuals[0]

    def squared_norm(self) -> float:
        e = self.error()
        return float(e @ self.information @ e)

    def jacobian(self, mode: str = "analytic", step: float = 1e-6) -> Tuple[np.ndarray, np.ndarray]:
        """(2x9, 2x3) Jacobians w.r.t. the camera tangent update and the point."""
        if mode == "numeric":
            J_camera, J_point = numeric_reprojection_jacobians(self.cameras, self.points, self.camera_index,
                                                               self.point_index, step)
        elif mode == "analytic":
            _, _, J_camera, J_point = evaluate_reprojection(self.cameras, self.points, self.camera_index,
                                                            self.point_index, self.measurement)
        else:
            raise ValueError(f"unknown jacobian mode {mode!r}")
        return J_camera[0], J_point[0]
