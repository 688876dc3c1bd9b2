#!/usr/bin/env python3
"""
Normal equations of the bundle adjustment problem and their Schur-complement solve.

The Gauss-Newton matrix has the block structure

    H = | U   W |      U: camera-camera, block diagonal (9x9)
        | W^T V |      V: point-point, block diagonal (3x3)

because every residual touches exactly one camera and one point. The points
are eliminated in closed form and only the reduced camera system

    (U - W V^-1 W^T) dc = b_c - W V^-1 b_p

is factorized; the point update follows by back substitution.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import splu

from pybal.parameter_block import CameraBlocks, PointBlocks
from pybal.residual import Observations, evaluate_reprojection, numeric_reprojection_jacobians
from pybal.robust_loss import Corrector, TrivialLoss

logger = logging.getLogger(__name__)

MIN_DIAGONAL = 1e-6
MAX_DIAGONAL = 1e32


class DegenerateLinearSystemError(RuntimeError):
    """The damped normal equations are singular or produced a non-finite step."""


@dataclass
class _Partial:
    """Accumulators owned by one worker for one chunk of observations."""
    cost: float
    U: np.ndarray
    V: np.ndarray
    g_camera: np.ndarray
    g_point: np.ndarray
    W: np.ndarray
    depths: np.ndarray


def _block_diagonal(blocks: np.ndarray) -> sp.csr_matrix:
    """Sparse block-diagonal matrix from an (n, k, k) stack."""
    n, k, _ = blocks.shape
    offsets = k * np.arange(n)
    rows = offsets[:, None, None] + np.arange(k)[None, :, None]
    cols = offsets[:, None, None] + np.arange(k)[None, None, :]
    rows, cols = np.broadcast_arrays(rows, cols)
    return sp.csr_matrix((blocks.ravel(), (rows.ravel(), cols.ravel())), shape=(n * k, n * k))


def _damped(blocks: np.ndarray, damping: float) -> Tuple[np.ndarray, np.ndarray]:
    """Add damping * clip(diag) to each block's diagonal. Returns (damped blocks, clipped diagonal)."""
    diagonal = np.clip(np.diagonal(blocks, axis1=1, axis2=2), MIN_DIAGONAL, MAX_DIAGONAL)
    damped = blocks.copy()
    k = blocks.shape[1]
    damped[:, np.arange(k), np.arange(k)] += damping * diagonal
    return damped, diagonal


class NormalEquations:
    """
    Linearizes all reprojection residuals at the current estimate and solves the
    damped normal equations.

    Constant cameras and points take part in the residuals but not in the
    linear system. With fix_intrinsics, the focal length and distortion
    columns of every camera are removed as well.
    """

    def __init__(self, observations: Observations, camera_constant: np.ndarray, point_constant: np.ndarray,
                 loss=None, fix_intrinsics: bool = False, jacobian_mode: str = "analytic",
                 numeric_step: float = 1e-6, num_threads: int = 1, min_chunk_size: int = 4096):
        if jacobian_mode not in ("analytic", "numeric"):
            raise ValueError(f"unknown jacobian mode {jacobian_mode!r}")
        self.observations = observations
        self.num_cameras = len(camera_constant)
        self.num_points = len(point_constant)
        self.loss = loss if loss is not None else TrivialLoss()
        self.jacobian_mode = jacobian_mode
        self.numeric_step = numeric_step
        self.num_threads = max(1, int(num_threads))
        self.min_chunk_size = max(1, int(min_chunk_size))
        self.fixed_camera_dims = np.array([6, 7, 8]) if fix_intrinsics else np.array([], dtype=np.int64)
        self.sqrt_information = observations.sqrt_information()

        # variable indexing, fixed for the whole solve
        self.free_cameras = np.flatnonzero(~np.asarray(camera_constant, dtype=bool))
        self.free_points = np.flatnonzero(~np.asarray(point_constant, dtype=bool))
        self.camera_var = -np.ones(self.num_cameras, dtype=np.int64)
        self.camera_var[self.free_cameras] = np.arange(len(self.free_cameras))
        self.point_var = -np.ones(self.num_points, dtype=np.int64)
        self.point_var[self.free_points] = np.arange(len(self.free_points))

        obs_camera_var = self.camera_var[observations.camera_index]
        obs_point_var = self.point_var[observations.point_index]
        self.coupled = np.flatnonzero((obs_camera_var >= 0) & (obs_point_var >= 0))
        self._W_rows = 9 * obs_camera_var[self.coupled]
        self._W_cols = 3 * obs_point_var[self.coupled]

        self.cost = None
        self.depths = None
        self.U = self.V = self.W = None
        self.g_camera = self.g_point = None

    @property
    def num_variables(self) -> int:
        return 9 * len(self.free_cameras) + 3 * len(self.free_points)

    def _chunks(self) -> List[np.ndarray]:
        n = len(self.observations)
        num_chunks = min(self.num_threads, max(1, -(-n // self.min_chunk_size)))
        return np.array_split(np.arange(n), num_chunks)

    def _whiten(self, index: np.ndarray, residuals: np.ndarray, *jacobians: np.ndarray):
        if self.sqrt_information is None:
            return (residuals,) + jacobians
        L_t = self.sqrt_information[index]
        return (np.einsum('nij,nj->ni', L_t, residuals),) + tuple(L_t @ J for J in jacobians)

    def _linearize_chunk(self, cameras: CameraBlocks, points: PointBlocks, index: np.ndarray) -> _Partial:
        obs = self.observations
        camera_index = obs.camera_index[index]
        point_index = obs.point_index[index]
        residuals, depths, J_camera, J_point = evaluate_reprojection(
            cameras, points, camera_index, point_index, obs.measurements[index],
            jacobians=self.jacobian_mode == "analytic")
        if self.jacobian_mode == "numeric":
            J_camera, J_point = numeric_reprojection_jacobians(cameras, points, camera_index, point_index,
                                                               self.numeric_step)
        residuals, J_camera, J_point = self._whiten(index, residuals, J_camera, J_point)

        sq_norm = np.sum(residuals * residuals, axis=1)
        rho = self.loss.evaluate(sq_norm)
        corrector = Corrector(sq_norm, rho)
        J_camera = corrector.correct_jacobian(residuals, J_camera)
        J_point = corrector.correct_jacobian(residuals, J_point)
        residuals = corrector.correct_residuals(residuals)
        if len(self.fixed_camera_dims):
            J_camera[:, :, self.fixed_camera_dims] = 0.0

        J_camera_t = np.swapaxes(J_camera, 1, 2)
        J_point_t = np.swapaxes(J_point, 1, 2)

        U = np.zeros((self.num_cameras, 9, 9))
        g_camera = np.zeros((self.num_cameras, 9))
        np.add.at(U, camera_index, J_camera_t @ J_camera)
        np.add.at(g_camera, camera_index, np.einsum('nij,nj->ni', J_camera_t, residuals))

        V = np.zeros((self.num_points, 3, 3))
        g_point = np.zeros((self.num_points, 3))
        np.add.at(V, point_index, J_point_t @ J_point)
        np.add.at(g_point, point_index, np.einsum('nij,nj->ni', J_point_t, residuals))

        W = J_camera_t @ J_point
        return _Partial(0.5 * float(np.sum(rho[0])), U, V, g_camera, g_point, W, depths)

    def linearize(self, cameras: CameraBlocks, points: PointBlocks):
        """
        Evaluate residuals and Jacobians at the current estimate and assemble
        U, V, W and the gradient. Chunks run on worker threads, each into its own
        accumulators; the partial sums are merged after all workers finished.
        """
        chunks = self._chunks()
        if len(chunks) == 1:
            partials = [self._linearize_chunk(cameras, points, chunks[0])]
        else:
            with ThreadPoolExecutor(max_workers=len(chunks)) as pool:
                partials = list(pool.map(lambda index: self._linearize_chunk(cameras, points, index), chunks))

        self.cost = sum(p.cost for p in partials)
        self.U = sum(p.U for p in partials)
        self.V = sum(p.V for p in partials)
        self.g_camera = sum(p.g_camera for p in partials)
        self.g_point = sum(p.g_point for p in partials)
        self.depths = np.concatenate([p.depths for p in partials])
        self.W = np.concatenate([p.W for p in partials])[self.coupled]
        logger.debug("linearized %d residuals in %d chunk(s), cost %.6e", len(self.observations),
                     len(chunks), self.cost)

    def evaluate_cost(self, cameras: CameraBlocks, points: PointBlocks) -> Tuple[float, np.ndarray]:
        """Robust cost 0.5 * sum rho(|r|^2) and the per-observation depths."""
        obs = self.observations
        residuals, depths, _, _ = evaluate_reprojection(cameras, points, obs.camera_index, obs.point_index,
                                                        obs.measurements, jacobians=False)
        if self.sqrt_information is not None:
            residuals = np.einsum('nij,nj->ni', self.sqrt_information, residuals)
        rho = self.loss.evaluate(np.sum(residuals * residuals, axis=1))
        return 0.5 * float(np.sum(rho[0])), depths

    def gradient_max_norm(self) -> float:
        g = np.concatenate([self.g_camera[self.free_cameras].ravel(), self.g_point[self.free_points].ravel()])
        return float(np.max(np.abs(g))) if len(g) else 0.0

    def _damped_blocks(self, damping: float):
        U, D_camera = _damped(self.U[self.free_cameras], damping)
        V, D_point = _damped(self.V[self.free_points], damping)
        for k in self.fixed_camera_dims:
            U[:, k, k] = 1.0
            D_camera[:, k] = 0.0
        return U, V, D_camera, D_point

    def _W_matrix(self) -> sp.csr_matrix:
        m = len(self.coupled)
        rows = self._W_rows[:, None, None] + np.arange(9)[None, :, None]
        cols = self._W_cols[:, None, None] + np.arange(3)[None, None, :]
        rows, cols = np.broadcast_arrays(rows, cols)
        return sp.csr_matrix((self.W.reshape(m * 27), (rows.ravel(), cols.ravel())),
                             shape=(9 * len(self.free_cameras), 3 * len(self.free_points)))

    def _scatter(self, delta_cameras: np.ndarray, delta_points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        dc = np.zeros((self.num_cameras, 9))
        dc[self.free_cameras] = delta_cameras.reshape(-1, 9)
        dp = np.zeros((self.num_points, 3))
        dp[self.free_points] = delta_points.reshape(-1, 3)
        return dc, dp

    def solve_schur(self, damping: float) -> Tuple[np.ndarray, np.ndarray]:
        """
        Solve (H + damping * D) delta = -g by eliminating the points.

        Returns:
            (num_cameras, 9) camera update and (num_points, 3) point update,
            zero for constant blocks.

        Raises:
            DegenerateLinearSystemError
        """
        U, V, _, _ = self._damped_blocks(damping)
        b_camera = -self.g_camera[self.free_cameras].ravel()
        b_point = -self.g_point[self.free_points]

        try:
            if len(V):
                np.linalg.cholesky(V)
            V_inv = np.linalg.inv(V) if len(V) else np.zeros((0, 3, 3))
        except np.linalg.LinAlgError as e:
            raise DegenerateLinearSystemError(f"point block is not positive definite: {e}") from e

        V_inv_b = np.einsum('nij,nj->ni', V_inv, b_point).ravel()
        if len(self.free_cameras) == 0:
            delta_cameras = np.zeros(0)
        else:
            S = _block_diagonal(U)
            rhs = b_camera
            if len(self.free_points):
                W = self._W_matrix()
                S = S - W @ _block_diagonal(V_inv) @ W.T
                rhs = rhs - W @ V_inv_b
            try:
                delta_cameras = splu(sp.csc_matrix(S)).solve(rhs)
            except RuntimeError as e:
                raise DegenerateLinearSystemError(f"reduced camera system is singular: {e}") from e

        if len(self.free_points) and len(self.free_cameras):
            back = b_point.ravel() - self._W_matrix().T @ delta_cameras
            delta_points = np.einsum('nij,nj->ni', V_inv, back.reshape(-1, 3))
        else:
            delta_points = V_inv_b

        if not (np.all(np.isfinite(delta_cameras)) and np.all(np.isfinite(delta_points))):
            raise DegenerateLinearSystemError("linear solve produced a non-finite step")
        return self._scatter(delta_cameras, delta_points)

    def dense_matrix(self, damping: float = 0.0) -> Tuple[np.ndarray, np.ndarray]:
        """Full damped matrix over [free cameras, free points] and its right-hand side."""
        U, V, _, _ = self._damped_blocks(damping)
        split = 9 * len(self.free_cameras)
        H = np.zeros((self.num_variables, self.num_variables))
        H[:split, :split] = _block_diagonal(U).toarray()
        H[split:, split:] = _block_diagonal(V).toarray()
        H[:split, split:] = self._W_matrix().toarray()
        H[split:, :split] = H[:split, split:].T
        b = -np.concatenate([self.g_camera[self.free_cameras].ravel(), self.g_point[self.free_points].ravel()])
        return H, b

    def solve_dense(self, damping: float) -> Tuple[np.ndarray, np.ndarray]:
        """Solve the full system without elimination; for small problems and checks."""
        H, b = self.dense_matrix(damping)
        try:
            delta = np.linalg.solve(H, b)
        except np.linalg.LinAlgError as e:
            raise DegenerateLinearSystemError(str(e)) from e
        if not np.all(np.isfinite(delta)):
            raise DegenerateLinearSystemError("linear solve produced a non-finite step")
        split = 9 * len(self.free_cameras)
        return self._scatter(delta[:split], delta[split:])

    def model_cost_change(self, delta_cameras: np.ndarray, delta_points: np.ndarray, damping: float) -> float:
        """
        Cost decrease predicted by the damped quadratic model,
        0.5 * delta^T (damping * D delta + b).
        """
        _, _, D_camera, D_point = self._damped_blocks(damping)
        dc = delta_cameras[self.free_cameras]
        dp = delta_points[self.free_points]
        b_dot_delta = -(np.sum(self.g_camera[self.free_cameras] * dc) + np.sum(self.g_point[self.free_points] * dp))
        scaled = np.sum(D_camera * dc * dc) + np.sum(D_point * dp * dp)
        return 0.5 * (b_dot_delta + damping * scaled)
