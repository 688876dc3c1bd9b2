#!/usr/bin/env python3
"""
Tests for normal equation assembly and the Schur-complement solve.
"""

import numpy as np
import unittest

from pybal.bal_problem import make_synthetic_problem
from pybal.linear_system import DegenerateLinearSystemError, NormalEquations
from pybal.parameter_block import CameraBlocks, PointBlocks
from pybal.residual import Observations
from pybal.robust_loss import HuberLoss


def perturbed_blocks(num_cameras=3, num_points=12, seed=0):
    problem = make_synthetic_problem(num_cameras=num_cameras, num_points=num_points, seed=seed)
    observations = Observations(problem.camera_index, problem.point_index, problem.observations)
    problem.perturb(0.02, 0.1, 0.05, seed=seed + 1)
    return CameraBlocks.from_raw(problem.cameras), PointBlocks.from_raw(problem.points), observations


class TestNormalEquations(unittest.TestCase):

    def setUp(self):
        self.cameras, self.points, self.observations = perturbed_blocks()

    def _system(self, **kwargs):
        kwargs.setdefault("loss", HuberLoss(1.0))
        system = NormalEquations(self.observations, self.cameras.constant, self.points.constant, **kwargs)
        system.linearize(self.cameras, self.points)
        return system

    def test_schur_matches_dense(self):
        """Eliminating the points gives the same step as solving the full system."""
        system = self._system()
        for damping in (1e-4, 1e-2, 1.0):
            dc_schur, dp_schur = system.solve_schur(damping)
            dc_dense, dp_dense = system.solve_dense(damping)
            scale = max(np.abs(dc_dense).max(), np.abs(dp_dense).max())
            np.testing.assert_allclose(dc_schur, dc_dense, rtol=1e-6, atol=1e-7 * scale)
            np.testing.assert_allclose(dp_schur, dp_dense, rtol=1e-6, atol=1e-7 * scale)

    def test_schur_matches_dense_with_constant_blocks(self):
        self.cameras.set_constant(0)
        self.points.set_constant(np.array([1, 5]))
        system = self._system()
        dc_schur, dp_schur = system.solve_schur(1e-3)
        dc_dense, dp_dense = system.solve_dense(1e-3)
        np.testing.assert_array_equal(dc_schur[0], np.zeros(9))
        np.testing.assert_array_equal(dp_schur[[1, 5]], np.zeros((2, 3)))
        scale = max(np.abs(dc_dense).max(), np.abs(dp_dense).max())
        np.testing.assert_allclose(dc_schur, dc_dense, rtol=1e-6, atol=1e-7 * scale)
        np.testing.assert_allclose(dp_schur, dp_dense, rtol=1e-6, atol=1e-7 * scale)

    def test_dense_matrix_structure(self):
        """H is symmetric and its blocks are J^T J of the stacked residuals."""
        system = self._system()
        H, b = system.dense_matrix()
        self.assertEqual(H.shape, (system.num_variables, system.num_variables))
        np.testing.assert_allclose(H, H.T, atol=1e-9 * np.abs(H).max())
        self.assertEqual(system.num_variables, 9 * 3 + 3 * 12)
        np.testing.assert_allclose(b, -np.concatenate([system.g_camera.ravel(), system.g_point.ravel()]))

    def test_cost_matches_evaluate_cost(self):
        system = self._system()
        cost, depths = system.evaluate_cost(self.cameras, self.points)
        self.assertAlmostEqual(system.cost, cost, places=9)
        np.testing.assert_allclose(system.depths, depths)
        self.assertTrue(np.all(depths > 0))

    def test_step_decreases_quadratic_model(self):
        system = self._system()
        dc, dp = system.solve_schur(1e-3)
        self.assertGreater(system.model_cost_change(dc, dp, 1e-3), 0.0)

    def test_threaded_matches_single(self):
        """Per-worker partial sums merge to the single-threaded result."""
        single = self._system(num_threads=1)
        threaded = self._system(num_threads=4, min_chunk_size=5)
        self.assertGreater(len(threaded._chunks()), 1)
        self.assertAlmostEqual(single.cost, threaded.cost, places=9)
        for name in ("U", "V", "W", "g_camera", "g_point"):
            expected = getattr(single, name)
            np.testing.assert_allclose(getattr(threaded, name), expected, rtol=1e-12,
                                       atol=1e-12 * np.abs(expected).max(), err_msg=name)

    def test_numeric_jacobian_mode(self):
        analytic = self._system()
        numeric = self._system(jacobian_mode="numeric")
        np.testing.assert_allclose(numeric.g_camera, analytic.g_camera, rtol=1e-4, atol=1e-3)
        np.testing.assert_allclose(numeric.U, analytic.U, rtol=1e-4, atol=1e-6 * np.abs(analytic.U).max())
        np.testing.assert_allclose(numeric.W, analytic.W, rtol=1e-4, atol=1e-6 * np.abs(analytic.W).max())
        with self.assertRaises(ValueError):
            self._system(jacobian_mode="finite")

    def test_fix_intrinsics(self):
        """Focal length and distortion receive a zero update."""
        system = self._system(fix_intrinsics=True)
        dc, _ = system.solve_schur(1e-3)
        np.testing.assert_allclose(dc[:, 6:9], 0.0, atol=1e-14)
        self.assertGreater(np.abs(dc[:, :6]).max(), 0.0)

    def test_information_weighting(self):
        """A scalar information matrix scales cost, gradient and H alike."""
        plain = self._system(loss=None)
        weighted_obs = Observations(self.observations.camera_index, self.observations.point_index,
                                    self.observations.measurements, 4.0 * np.eye(2))
        weighted = NormalEquations(weighted_obs, self.cameras.constant, self.points.constant)
        weighted.linearize(self.cameras, self.points)
        self.assertAlmostEqual(weighted.cost / plain.cost, 4.0, places=9)
        np.testing.assert_allclose(weighted.U, 4.0 * plain.U, rtol=1e-12, atol=1e-12 * np.abs(plain.U).max())
        np.testing.assert_allclose(weighted.g_point, 4.0 * plain.g_point, rtol=1e-12,
                                   atol=1e-12 * np.abs(plain.g_point).max())


class TestDegenerateSystems(unittest.TestCase):

    def test_unobserved_point_without_damping(self):
        """A free point with no observations makes its block singular."""
        cameras, points, observations = perturbed_blocks(num_cameras=2, num_points=5)
        points = PointBlocks(np.vstack([points.positions, [[0.0, 0.0, 0.0]]]))
        system = NormalEquations(observations, cameras.constant, points.constant)
        system.linearize(cameras, points)
        with self.assertRaises(DegenerateLinearSystemError):
            system.solve_schur(0.0)
        # damping regularizes the empty block
        dc, dp = system.solve_schur(1e-3)
        np.testing.assert_array_equal(dp[-1], np.zeros(3))

    def test_all_cameras_constant(self):
        """With every camera fixed only the point systems are solved."""
        cameras, points, observations = perturbed_blocks(num_cameras=2, num_points=4)
        cameras.set_constant(np.array([0, 1]))
        system = NormalEquations(observations, cameras.constant, points.constant)
        system.linearize(cameras, points)
        dc, dp = system.solve_schur(1e-3)
        np.testing.assert_array_equal(dc, np.zeros((2, 9)))
        dc_dense, dp_dense = system.solve_dense(1e-3)
        np.testing.assert_allclose(dp, dp_dense, rtol=1e-8, atol=1e-12)


if __name__ == '__main__':
    unittest.main()
