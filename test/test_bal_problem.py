#!/usr/bin/env python3
"""
Tests for BAL file I/O and problem preprocessing.
"""

import os
import tempfile
import unittest

import numpy as np

from pybal.bal_problem import (
    BALProblem,
    angle_axis_and_center_to_camera,
    camera_to_angle_axis_and_center,
    cameras_to_angle_axis,
    cameras_to_quaternions,
    make_synthetic_problem,
)
from pybal.bundle_adjustment import SolverOptions
from pybal.parameter_block import CameraBlocks
from pybal.rotation import angle_axis_to_quaternion, so3_exp

BAL_TEXT = """2 3 4
0 0 -385.989990 387.120000
1 0 -38.440000 492.120000
0 1 -667.890000 123.110000
1 2 12.5 -7.25
0.0157415
-0.0127909
-0.00440085
-0.0340938
-0.107514
1.12022
399.752
-3.17706e-07
5.88205e-13
0.0159462
-0.0251278
-0.00987873
-0.00789209
-0.117953
1.4204
402.15
-3.5e-07
4.0e-13
-0.612
0.571759
-1.84708
1.7068
-0.0196
-2.35
0.5
0.25
-3.0
"""


class TestBALIO(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, "problem.txt")
        with open(self.path, "w") as f:
            f.write(BAL_TEXT)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_load(self):
        problem = BALProblem.load(self.path)
        self.assertEqual(problem.num_cameras, 2)
        self.assertEqual(problem.num_points, 3)
        self.assertEqual(problem.num_observations, 4)
        np.testing.assert_array_equal(problem.camera_index, [0, 1, 0, 1])
        np.testing.assert_array_equal(problem.point_index, [0, 0, 1, 2])
        np.testing.assert_allclose(problem.observations[0], [-385.98999, 387.12])
        np.testing.assert_allclose(problem.cameras[1, 6:9], [402.15, -3.5e-07, 4.0e-13])
        np.testing.assert_allclose(problem.points[2], [0.5, 0.25, -3.0])

    def test_write_round_trip(self):
        problem = BALProblem.load(self.path)
        out = os.path.join(self.tmpdir.name, "out.txt")
        problem.write(out)
        again = BALProblem.load(out)
        np.testing.assert_array_equal(again.camera_index, problem.camera_index)
        np.testing.assert_array_equal(again.point_index, problem.point_index)
        np.testing.assert_allclose(again.observations, problem.observations, rtol=1e-5)
        np.testing.assert_array_equal(again.cameras, problem.cameras)
        np.testing.assert_array_equal(again.points, problem.points)

    def _write(self, text):
        path = os.path.join(self.tmpdir.name, "bad.txt")
        with open(path, "w") as f:
            f.write(text)
        return path

    def test_truncated_file(self):
        with self.assertRaises(ValueError):
            BALProblem.load(self._write(BAL_TEXT.rsplit("\n", 4)[0]))

    def test_malformed_header(self):
        with self.assertRaises(ValueError):
            BALProblem.load(self._write(""))
        with self.assertRaises(ValueError):
            BALProblem.load(self._write("two 3 4\n"))

    def test_non_numeric_value(self):
        with self.assertRaises(ValueError):
            BALProblem.load(self._write(BAL_TEXT.replace("399.752", "focal")))

    def test_index_out_of_range(self):
        with self.assertRaises(ValueError):
            BALProblem.load(self._write(BAL_TEXT.replace("1 2 12.5", "1 3 12.5")))

    def test_write_ply(self):
        problem = BALProblem.load(self.path)
        ply = os.path.join(self.tmpdir.name, "scene.ply")
        problem.write_ply(ply)
        with open(ply) as f:
            lines = f.read().splitlines()
        self.assertEqual(lines[0], "ply")
        self.assertIn("element vertex 5", lines)
        body = lines[lines.index("end_header") + 1:]
        self.assertEqual(len(body), 5)
        self.assertTrue(body[0].endswith("0 255 0"))
        self.assertTrue(body[-1].endswith("255 255 255"))
        np.testing.assert_allclose([float(v) for v in body[0].split()[:3]], problem.camera_centers()[0])


class TestQuaternionCameras(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, "problem.txt")
        with open(self.path, "w") as f:
            f.write(BAL_TEXT)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_load_converts_rotations(self):
        plain = BALProblem.load(self.path)
        problem = BALProblem.load(self.path, use_quaternions=True)
        self.assertTrue(problem.use_quaternions)
        self.assertEqual(problem.camera_block_size, 10)
        self.assertEqual(problem.cameras.shape, (2, 10))
        np.testing.assert_allclose(problem.cameras[:, :4], angle_axis_to_quaternion(plain.cameras[:, :3]))
        np.testing.assert_allclose(np.linalg.norm(problem.cameras[:, :4], axis=1), 1.0, atol=1e-14)
        np.testing.assert_array_equal(problem.cameras[:, 4:], plain.cameras[:, 3:])
        np.testing.assert_array_equal(problem.points, plain.points)
        np.testing.assert_allclose(problem.camera_centers(), plain.camera_centers(), atol=1e-12)

    def test_write_emits_angle_axis(self):
        problem = BALProblem.load(self.path, use_quaternions=True)
        out = os.path.join(self.tmpdir.name, "out.txt")
        problem.write(out)
        again = BALProblem.load(out)
        self.assertEqual(again.cameras.shape, (2, 9))
        np.testing.assert_allclose(again.cameras, BALProblem.load(self.path).cameras, rtol=1e-12, atol=1e-15)

    def test_layout_conversions(self):
        cameras = make_synthetic_problem(num_cameras=5, num_points=3, seed=4).cameras
        quaternions = cameras_to_quaternions(cameras)
        self.assertEqual(quaternions.shape, (5, 10))
        np.testing.assert_allclose(cameras_to_angle_axis(quaternions), cameras, atol=1e-12)
        aa, center = camera_to_angle_axis_and_center(quaternions, use_quaternions=True)
        aa_ref, center_ref = camera_to_angle_axis_and_center(cameras)
        np.testing.assert_allclose(aa, aa_ref, atol=1e-12)
        np.testing.assert_allclose(center, center_ref, atol=1e-12)
        quaternions[:, 4:7] = 0.0
        angle_axis_and_center_to_camera(aa, center, quaternions, use_quaternions=True)
        np.testing.assert_allclose(cameras_to_angle_axis(quaternions), cameras, atol=1e-12)

    def test_preprocessing_matches_angle_axis(self):
        """normalize and perturb move quaternion cameras exactly like angle-axis ones."""
        plain = make_synthetic_problem(num_cameras=4, num_points=30, seed=6)
        problem = BALProblem(cameras_to_quaternions(plain.cameras), plain.points, plain.camera_index,
                             plain.point_index, plain.observations, use_quaternions=True)
        for p in (plain, problem):
            p.normalize()
            p.perturb(0.05, 0.3, 0.2, seed=9)
        # rotation vectors may land on different branches near pi, so compare matrices
        cameras = problem.angle_axis_cameras()
        np.testing.assert_allclose(so3_exp(cameras[:, :3]), so3_exp(plain.cameras[:, :3]), atol=1e-9)
        np.testing.assert_allclose(cameras[:, 3:], plain.cameras[:, 3:], atol=1e-9)
        np.testing.assert_allclose(problem.points, plain.points, atol=1e-12)

    def test_solve(self):
        truth = make_synthetic_problem(num_cameras=4, num_points=40, seed=7)
        problem = BALProblem(cameras_to_quaternions(truth.cameras), truth.points, truth.camera_index,
                             truth.point_index, truth.observations, use_quaternions=True)
        problem.perturb(0.0, 0.0, 0.05, seed=8)
        cameras = problem.cameras
        summary = problem.solve(SolverOptions(max_num_iterations=100, parameter_tolerance=1e-12))
        self.assertTrue(summary.is_converged(), summary.message)
        self.assertIs(problem.cameras, cameras)
        self.assertEqual(problem.cameras.shape, (4, 10))
        np.testing.assert_allclose(np.linalg.norm(problem.cameras[:, :4], axis=1), 1.0, atol=1e-12)
        predicted = CameraBlocks.from_raw(problem.angle_axis_cameras()).project(
            problem.camera_index, problem.points[problem.point_index])
        np.testing.assert_allclose(predicted, problem.observations, atol=1e-3)


class TestCameraCenters(unittest.TestCase):

    def test_center_round_trip(self):
        problem = make_synthetic_problem(num_cameras=3, num_points=5, seed=1)
        angle_axis, center = camera_to_angle_axis_and_center(problem.cameras)
        cameras = problem.cameras.copy()
        cameras[:, 3:6] = 0.0
        angle_axis_and_center_to_camera(angle_axis, center, cameras)
        np.testing.assert_allclose(cameras, problem.cameras, atol=1e-12)
        # the center maps to the camera origin
        blocks = CameraBlocks.from_raw(problem.cameras)
        np.testing.assert_allclose(blocks.transform(np.arange(3), center), np.zeros((3, 3)), atol=1e-12)


class TestPreprocessing(unittest.TestCase):

    def setUp(self):
        self.problem = make_synthetic_problem(num_cameras=4, num_points=60, seed=3)

    def test_normalize(self):
        """Median moves to the origin, median L1 deviation becomes 100, projections are unchanged."""
        before = CameraBlocks.from_raw(self.problem.cameras).project(
            self.problem.camera_index, self.problem.points[self.problem.point_index])
        self.problem.normalize()
        np.testing.assert_allclose(np.median(self.problem.points, axis=0), np.zeros(3), atol=1e-9)
        deviation = np.sum(np.abs(self.problem.points), axis=1)
        self.assertAlmostEqual(np.median(deviation), 100.0, places=9)
        after = CameraBlocks.from_raw(self.problem.cameras).project(
            self.problem.camera_index, self.problem.points[self.problem.point_index])
        np.testing.assert_allclose(after, before, atol=1e-8)

    def test_normalize_degenerate(self):
        problem = BALProblem(self.problem.cameras, np.ones((4, 3)), np.array([0]), np.array([0]),
                             np.zeros((1, 2)))
        with self.assertRaises(ValueError):
            problem.normalize()

    def test_perturb_is_seeded(self):
        other = make_synthetic_problem(num_cameras=4, num_points=60, seed=3)
        self.problem.perturb(0.1, 0.5, 0.5, seed=42)
        other.perturb(0.1, 0.5, 0.5, seed=42)
        np.testing.assert_array_equal(self.problem.cameras, other.cameras)
        np.testing.assert_array_equal(self.problem.points, other.points)

    def test_rotation_perturbation_keeps_center(self):
        centers = self.problem.camera_centers()
        self.problem.perturb(0.1, 0.0, 0.0, seed=1)
        np.testing.assert_allclose(self.problem.camera_centers(), centers, atol=1e-9)

    def test_perturb_rejects_negative_sigma(self):
        with self.assertRaises(ValueError):
            self.problem.perturb(-0.1, 0.0, 0.0)

    def test_synthetic_observations_are_exact(self):
        cameras = CameraBlocks.from_raw(self.problem.cameras)
        predicted = cameras.project(self.problem.camera_index, self.problem.points[self.problem.point_index])
        np.testing.assert_allclose(predicted, self.problem.observations, atol=1e-9)
        self.assertTrue(np.all(cameras.depth(self.problem.camera_index,
                                            self.problem.points[self.problem.point_index]) > 0))


if __name__ == '__main__':
    unittest.main()
