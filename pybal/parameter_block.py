#!/usr/bin/env python3
"""
Parameter blocks

Arenas of same-typed optimizable entities addressed by integer handle.
Every arena knows its tangent dimension, how to read itself from and write
itself back to the flat raw layout, and how to apply a tangent-space update.
The optimizer only talks to this interface.
"""

import numpy as np
from typing import Optional, Union

from pybal.rotation import so3_exp, so3_log, skew_symmetric_batch


def _exp_rows(phi: np.ndarray) -> np.ndarray:
    """so3_exp over rows of an (N, 3) array, tolerating N == 0."""
    if len(phi) == 0:
        return np.zeros((0, 3, 3))
    return so3_exp(phi).reshape(-1, 3, 3)


class ParameterBlocks:
    """
    Base class for an arena of parameter blocks.

    Subclasses define:
        dimension: size of the tangent-space update of one block
        raw_size: number of raw scalars of one block
        marginalizable: whether blocks may be eliminated (Schur complement)
    """
    dimension = 0
    raw_size = 0
    marginalizable = False

    def __init__(self, count: int):
        self.constant = np.zeros(count, dtype=bool)

    def __len__(self):
        return len(self.constant)

    @classmethod
    def from_raw(cls, data: np.ndarray) -> "ParameterBlocks":
        raise NotImplementedError

    def to_raw(self, out: Optional[np.ndarray] = None) -> np.ndarray:
        raise NotImplementedError

    def apply_update(self, delta: np.ndarray):
        raise NotImplementedError

    def copy(self) -> "ParameterBlocks":
        raise NotImplementedError

    def set_constant(self, handle: Union[int, np.ndarray], constant: bool = True):
        """Hold block(s) fixed during the solve."""
        self.constant[handle] = constant

    @property
    def variable_handles(self) -> np.ndarray:
        return np.flatnonzero(~self.constant)

    @classmethod
    def _check_raw(cls, data: np.ndarray) -> np.ndarray:
        data = np.asarray(data, dtype=np.float64)
        if data.size % cls.raw_size != 0:
            raise ValueError(
                f"{cls.__name__} expects a multiple of {cls.raw_size} scalars, got {data.size}")
        return data.reshape(-1, cls.raw_size)

    def _check_delta(self, delta: np.ndarray) -> np.ndarray:
        delta = np.asarray(delta, dtype=np.float64).reshape(-1, self.dimension)
        if len(delta) != len(self):
            raise ValueError(f"update has {len(delta)} blocks, expected {len(self)}")
        return np.where(self.constant[:, None], 0.0, delta)


class CameraBlocks(ParameterBlocks):
    """
    Cameras with pose and intrinsics.

    Raw layout per camera: [rotation vector (3), translation (3), focal, k1, k2].
    The rotation is kept as a matrix; the rotation vector is only used at the
    raw boundary (exp on read, log on write).
    """
    dimension = 9
    raw_size = 9

    def __init__(self, rotations: np.ndarray, translations: np.ndarray, intrinsics: np.ndarray):
        super().__init__(len(rotations))
        self.rotations = np.asarray(rotations, dtype=np.float64).reshape(-1, 3, 3)
        self.translations = np.asarray(translations, dtype=np.float64).reshape(-1, 3)
        # [focal, k1, k2]
        self.intrinsics = np.asarray(intrinsics, dtype=np.float64).reshape(-1, 3)

    @classmethod
    def from_raw(cls, data: np.ndarray) -> "CameraBlocks":
        data = cls._check_raw(data)
        rotations = _exp_rows(data[:, :3])
        return cls(rotations, data[:, 3:6].copy(), data[:, 6:9].copy())

    def to_raw(self, out: Optional[np.ndarray] = None) -> np.ndarray:
        raw = np.empty((len(self), self.raw_size), dtype=np.float64)
        if len(self) > 0:
            raw[:, :3] = so3_log(self.rotations).reshape(-1, 3)
        raw[:, 3:6] = self.translations
        raw[:, 6:9] = self.intrinsics
        if out is None:
            return raw
        out[...] = raw.reshape(out.shape)
        return out

    def apply_update(self, delta: np.ndarray):
        """
        Left-multiplicative retraction on the rotation, additive elsewhere:
            R <- exp(delta[0:3]) R, t <- t + delta[3:6], (f, k1, k2) += delta[6:9]
        """
        delta = self._check_delta(delta)
        self.rotations = _exp_rows(delta[:, :3]) @ self.rotations
        self.translations = self.translations + delta[:, 3:6]
        self.intrinsics = self.intrinsics + delta[:, 6:9]

    def copy(self) -> "CameraBlocks":
        other = CameraBlocks(self.rotations.copy(), self.translations.copy(), self.intrinsics.copy())
        other.constant = self.constant.copy()
        return other

    @property
    def focal(self) -> np.ndarray:
        return self.intrinsics[:, 0]

    def transform(self, handles, points: np.ndarray) -> np.ndarray:
        """p_c = R p + t for camera handle(s) and matching point(s)."""
        points = np.asarray(points, dtype=np.float64)
        R = self.rotations[handles]
        return np.einsum('...ij,...j->...i', R, points) + self.translations[handles]

    def depth(self, handles, points: np.ndarray) -> np.ndarray:
        """Distance along the viewing direction; the camera looks down its -z axis."""
        return -self.transform(handles, points)[..., 2]

    def project(self, handles, points: np.ndarray) -> np.ndarray:
        """
        Predicted pixel coordinates of points seen by cameras.

        Args:
            handles: camera index or array of indices
            points: (3,) or (N, 3) world points matching handles

        Returns:
            (2,) or (N, 2) pixel coordinates
        """
        point_in_camera = self.transform(handles, points)
        p = -point_in_camera[..., :2] / point_in_camera[..., 2:3]
        focal, k1, k2 = np.moveaxis(self.intrinsics[handles], -1, 0)
        r2 = np.sum(p * p, axis=-1)
        distortion = 1.0 + r2 * (k1 + k2 * r2)
        return np.asarray(focal * distortion)[..., None] * p

    def rotation_generators(self, handles, points: np.ndarray) -> np.ndarray:
        """d(p_c)/d(delta_phi) for the left retraction: -[R p]_x."""
        rotated = np.einsum('...ij,...j->...i', self.rotations[handles], points)
        return -skew_symmetric_batch(rotated)


class PointBlocks(ParameterBlocks):
    """
    3D points on the Euclidean manifold. Points only couple to cameras, so they
    are eliminated from the normal equations.
    """
    dimension = 3
    raw_size = 3
    marginalizable = True

    def __init__(self, positions: np.ndarray):
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        super().__init__(len(positions))
        self.positions = positions

    @classmethod
    def from_raw(cls, data: np.ndarray) -> "PointBlocks":
        return cls(cls._check_raw(data).copy())

    def to_raw(self, out: Optional[np.ndarray] = None) -> np.ndarray:
        if out is None:
            return self.positions.copy()
        out[...] = self.positions.reshape(out.shape)
        return out

    def apply_update(self, delta: np.ndarray):
        self.positions = self.positions + self._check_delta(delta)

    def copy(self) -> "PointBlocks":
        other = PointBlocks(self.positions.copy())
        other.constant = self.constant.copy()
        return other
