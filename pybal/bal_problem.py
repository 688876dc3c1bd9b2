#!/usr/bin/env python3
"""
BAL ("Bundle Adjustment in the Large") problem container

Reads and writes the BAL text format, exports PLY point clouds and provides
the normalization / perturbation used to build a deliberately bad initial
guess for demonstrations.

File layout:
    <num_cameras> <num_points> <num_observations>
    <camera_index> <point_index> <x> <y>        (num_observations lines)
    <camera parameters>                          (9 per camera)
    <point parameters>                           (3 per point)

With use_quaternions the cameras are held in memory as 10 values,
[qx, qy, qz, qw, t, f, k1, k2]; files are always angle-axis.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np

from pybal.bundle_adjustment import SolverOptions, SolverSummary, solve_bundle_adjustment
from pybal.parameter_block import CameraBlocks
from pybal.rotation import (
    angle_axis_to_quaternion,
    quaternion_to_angle_axis,
    quaternion_to_rotation_matrix,
    so3_exp,
    so3_log,
)

logger = logging.getLogger(__name__)

CAMERA_BLOCK_SIZE = 9
QUATERNION_CAMERA_BLOCK_SIZE = 10
POINT_BLOCK_SIZE = 3


def camera_block_size(use_quaternions: bool = False) -> int:
    return QUATERNION_CAMERA_BLOCK_SIZE if use_quaternions else CAMERA_BLOCK_SIZE


def camera_to_angle_axis_and_center(cameras: np.ndarray, use_quaternions: bool = False):
    """
    Split cameras into rotation vectors and camera centers c = -R^T t.
    """
    size = camera_block_size(use_quaternions)
    cameras = np.asarray(cameras, dtype=np.float64).reshape(-1, size)
    if use_quaternions:
        angle_axis = quaternion_to_angle_axis(cameras[:, :4])
        R = quaternion_to_rotation_matrix(cameras[:, :4]).reshape(-1, 3, 3)
    else:
        angle_axis = cameras[:, :3].copy()
        R = so3_exp(angle_axis).reshape(-1, 3, 3)
    center = -np.einsum('nji,nj->ni', R, cameras[:, size - 6:size - 3])
    return angle_axis, center


def angle_axis_and_center_to_camera(angle_axis: np.ndarray, center: np.ndarray, cameras: np.ndarray,
                                    use_quaternions: bool = False):
    """
    Write rotations and translations t = -R c into cameras (in place).
    """
    size = camera_block_size(use_quaternions)
    R = so3_exp(angle_axis).reshape(-1, 3, 3)
    if use_quaternions:
        cameras[:, :4] = angle_axis_to_quaternion(angle_axis)
    else:
        cameras[:, :3] = angle_axis
    cameras[:, size - 6:size - 3] = -np.einsum('nij,nj->ni', R, center)


def cameras_to_quaternions(cameras: np.ndarray) -> np.ndarray:
    """(N, 9) angle-axis cameras -> (N, 10) quaternion cameras."""
    cameras = np.asarray(cameras, dtype=np.float64).reshape(-1, CAMERA_BLOCK_SIZE)
    return np.hstack([angle_axis_to_quaternion(cameras[:, :3]), cameras[:, 3:]])


def cameras_to_angle_axis(cameras: np.ndarray) -> np.ndarray:
    """(N, 10) quaternion cameras -> (N, 9) angle-axis cameras."""
    cameras = np.asarray(cameras, dtype=np.float64).reshape(-1, QUATERNION_CAMERA_BLOCK_SIZE)
    return np.hstack([quaternion_to_angle_axis(cameras[:, :4]), cameras[:, 4:]])


class BALProblem:
    """
    Cameras, points and observations of a BAL problem.

    Attributes:
        cameras: (num_cameras, 9) [rotation vector, translation, focal, k1, k2],
            or (num_cameras, 10) with a unit quaternion in front if use_quaternions
        points: (num_points, 3)
        camera_index: (num_observations,)
        point_index: (num_observations,)
        observations: (num_observations, 2)
    """

    def __init__(self, cameras: np.ndarray, points: np.ndarray, camera_index: np.ndarray,
                 point_index: np.ndarray, observations: np.ndarray, use_quaternions: bool = False):
        self.use_quaternions = use_quaternions
        self.cameras = np.asarray(cameras, dtype=np.float64).reshape(-1, self.camera_block_size).copy()
        self.points = np.asarray(points, dtype=np.float64).reshape(-1, POINT_BLOCK_SIZE).copy()
        self.camera_index = np.asarray(camera_index, dtype=np.int64)
        self.point_index = np.asarray(point_index, dtype=np.int64)
        self.observations = np.asarray(observations, dtype=np.float64).reshape(-1, 2)

    @property
    def camera_block_size(self) -> int:
        return camera_block_size(self.use_quaternions)

    @property
    def num_cameras(self) -> int:
        return len(self.cameras)

    @property
    def num_points(self) -> int:
        return len(self.points)

    @property
    def num_observations(self) -> int:
        return len(self.observations)

    def angle_axis_cameras(self) -> np.ndarray:
        """Cameras in the 9-parameter BAL layout (a copy)."""
        if self.use_quaternions:
            return cameras_to_angle_axis(self.cameras)
        return self.cameras.copy()

    @classmethod
    def load(cls, filename: Union[str, Path], use_quaternions: bool = False) -> "BALProblem":
        """
        Load a problem from a BAL text file.

        Args:
            filename: BAL text file
            use_quaternions: hold camera rotations as quaternions

        Raises:
            ValueError: if the file is truncated or malformed
        """
        tokens = Path(filename).read_text().split()
        if len(tokens) < 3:
            raise ValueError(f"{filename}: missing BAL header")
        try:
            num_cameras, num_points, num_observations = (int(t) for t in tokens[:3])
        except ValueError as e:
            raise ValueError(f"{filename}: invalid BAL header") from e
        logger.info("Header: %d cameras, %d points, %d observations", num_cameras, num_points,
                    num_observations)

        num_parameters = CAMERA_BLOCK_SIZE * num_cameras + POINT_BLOCK_SIZE * num_points
        expected = 3 + 4 * num_observations + num_parameters
        if len(tokens) < expected:
            raise ValueError(f"{filename}: expected {expected} values, found {len(tokens)}")

        try:
            table = np.array(tokens[3:3 + 4 * num_observations], dtype=np.float64).reshape(-1, 4)
            parameters = np.array(tokens[3 + 4 * num_observations:expected], dtype=np.float64)
        except ValueError as e:
            raise ValueError(f"{filename}: non-numeric value") from e

        camera_index = table[:, 0].astype(np.int64)
        point_index = table[:, 1].astype(np.int64)
        if num_observations and (camera_index.max() >= num_cameras or point_index.max() >= num_points
                                 or camera_index.min() < 0 or point_index.min() < 0):
            raise ValueError(f"{filename}: observation index out of range")

        cameras = parameters[:CAMERA_BLOCK_SIZE * num_cameras]
        points = parameters[CAMERA_BLOCK_SIZE * num_cameras:]
        if use_quaternions:
            cameras = cameras_to_quaternions(cameras)
        return cls(cameras, points, camera_index, point_index, table[:, 2:4], use_quaternions=use_quaternions)

    def write(self, filename: Union[str, Path]):
        """Save the problem in BAL text format; rotations are written as angle-axis."""
        with open(filename, "w") as f:
            f.write(f"{self.num_cameras} {self.num_points} {self.num_observations}\n")
            for c, p, (x, y) in zip(self.camera_index, self.point_index, self.observations):
                f.write(f"{c} {p} {x:g} {y:g}\n")
            for value in self.angle_axis_cameras().ravel():
                f.write(f"{value:.16g}\n")
            for value in self.points.ravel():
                f.write(f"{value:.16g}\n")

    def write_ply(self, filename: Union[str, Path]):
        """
        Write camera centers (green) and points (white) to an ASCII PLY file for
        inspection in Meshlab or CloudCompare.
        """
        _, centers = camera_to_angle_axis_and_center(self.cameras, self.use_quaternions)
        with open(filename, "w") as f:
            f.write("ply\n")
            f.write("format ascii 1.0\n")
            f.write(f"element vertex {self.num_cameras + self.num_points}\n")
            for axis in "xyz":
                f.write(f"property float {axis}\n")
            for channel in ("red", "green", "blue"):
                f.write(f"property uchar {channel}\n")
            f.write("end_header\n")
            for c in centers:
                f.write(f"{c[0]} {c[1]} {c[2]} 0 255 0\n")
            for p in self.points:
                f.write(f"{p[0]} {p[1]} {p[2]} 255 255 255\n")

    def camera_centers(self) -> np.ndarray:
        return camera_to_angle_axis_and_center(self.cameras, self.use_quaternions)[1]

    def normalize(self):
        """
        Center the scene on the median point and scale it so that the median
        absolute deviation (L1) of the points is 100. Cameras are moved with it.
        """
        if self.num_points == 0:
            return
        median = np.median(self.points, axis=0)
        deviation = np.sum(np.abs(self.points - median), axis=1)
        median_absolute_deviation = np.median(deviation)
        if median_absolute_deviation == 0:
            raise ValueError("cannot normalize: all points coincide")
        scale = 100.0 / median_absolute_deviation
        logger.debug("normalize: median %s, scale %.6g", median, scale)

        self.points = scale * (self.points - median)
        angle_axis, center = camera_to_angle_axis_and_center(self.cameras, self.use_quaternions)
        angle_axis_and_center_to_camera(angle_axis, scale * (center - median), self.cameras,
                                        self.use_quaternions)

    def perturb(self, rotation_sigma: float, translation_sigma: float, point_sigma: float,
                seed: Optional[int] = None):
        """
        Add Gaussian noise: to points, to camera rotation vectors (about the
        camera center) and to camera translations.
        """
        for name, sigma in (("rotation_sigma", rotation_sigma), ("translation_sigma", translation_sigma),
                            ("point_sigma", point_sigma)):
            if sigma < 0:
                raise ValueError(f"{name} must be non-negative")
        rng = np.random.default_rng(seed)

        if point_sigma > 0:
            self.points = self.points + point_sigma * rng.standard_normal(self.points.shape)

        angle_axis, center = camera_to_angle_axis_and_center(self.cameras, self.use_quaternions)
        if rotation_sigma > 0:
            angle_axis = angle_axis + rotation_sigma * rng.standard_normal(angle_axis.shape)
        angle_axis_and_center_to_camera(angle_axis, center, self.cameras, self.use_quaternions)
        if translation_sigma > 0:
            t = slice(self.camera_block_size - 6, self.camera_block_size - 3)
            self.cameras[:, t] += translation_sigma * rng.standard_normal((self.num_cameras, 3))

    def solve(self, options: Optional[SolverOptions] = None, fix_intrinsics: bool = False) -> SolverSummary:
        """Bundle adjust this problem in place."""
        cameras = self.angle_axis_cameras() if self.use_quaternions else self.cameras
        summary = solve_bundle_adjustment(cameras, self.points, self.camera_index, self.point_index,
                                          self.observations, options, fix_intrinsics=fix_intrinsics)
        if self.use_quaternions:
            self.cameras[:] = cameras_to_quaternions(cameras)
        return summary


def make_synthetic_problem(num_cameras: int = 4, num_points: int = 50, radius: float = 6.0,
                           intrinsics=(500.0, 0.01, -0.001), seed: Optional[int] = 0) -> BALProblem:
    """
    Cameras on a circle around the origin, all looking at a cloud of points in
    [-1, 1]^3. Every camera observes every point; observations are exact.
    """
    rng = np.random.default_rng(seed)
    points = rng.uniform(-1.0, 1.0, size=(num_points, 3))

    cameras = np.zeros((num_cameras, CAMERA_BLOCK_SIZE))
    for i in range(num_cameras):
        angle = 2 * np.pi * i / num_cameras
        center = np.array([radius * np.sin(angle), 0.1 * radius * rng.standard_normal(), radius * np.cos(angle)])
        # the camera looks down its -z axis, so +z points from the origin to the center
        z_axis = center / np.linalg.norm(center)
        x_axis = np.cross([0.0, 1.0, 0.0], z_axis)
        x_axis /= np.linalg.norm(x_axis)
        y_axis = np.cross(z_axis, x_axis)
        R = np.stack([x_axis, y_axis, z_axis])
        cameras[i, :3] = so3_log(R)
        cameras[i, 3:6] = -R @ center
        cameras[i, 6:9] = intrinsics

    camera_index = np.repeat(np.arange(num_cameras), num_points)
    point_index = np.tile(np.arange(num_points), num_cameras)
    observations = CameraBlocks.from_raw(cameras).project(camera_index, points[point_index])
    return BALProblem(cameras, points, camera_index, point_index, observations)
