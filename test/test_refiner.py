#!/usr/bin/env python3
"""
Unit tests for joint refinement of extrinsics, odometry and scene points.
"""

import unittest
import numpy as np
import os
import sys

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from infrastructure_calibration.config import CalibrationConfig
from infrastructure_calibration.graph import CameraRigExtrinsics, FrameSet, Pose
from infrastructure_calibration.initializer import update_odometry
from infrastructure_calibration.refiner import JointRefiner
from infrastructure_calibration.reprojection import session_reprojection_error

from rig_fixtures import make_session


def _perturbed_rig(truth):
    extrinsics = CameraRigExtrinsics(len(truth))
    extrinsics.set_global_camera_pose(
        1, Pose(truth[1].rotation + [0.01, -0.01, 0.0, 0.0], truth[1].translation + [0.05, 0.02, -0.03]))
    extrinsics.set_global_camera_pose(
        2, Pose(truth[2].rotation, truth[2].translation + [-0.03, 0.04, 0.0]))
    return extrinsics


class TestJointRefiner(unittest.TestCase):
    """Test bundle adjustment on a synthetic rig."""

    def setUp(self):
        self.cameras, self.truth, self.framesets, self.point_map, _ = make_session(n_framesets=5)
        self.extrinsics = _perturbed_rig(self.truth)
        update_odometry(self.framesets, self.extrinsics.poses())

    def test_recovers_extrinsics(self):
        refiner = JointRefiner(self.cameras, CalibrationConfig(max_iterations=200))
        summary = refiner.refine(self.framesets, self.extrinsics)

        self.assertLessEqual(summary.final_error.avg, summary.initial_error.avg)
        self.assertLess(summary.final_error.avg, 1e-2)
        self.assertLessEqual(summary.final_cost, summary.initial_cost)

        self.assertTrue(self.extrinsics.get_global_camera_pose(0).is_identity())
        for j in (1, 2):
            np.testing.assert_array_almost_equal(
                self.extrinsics.get_global_camera_pose(j).translation, self.truth[j].translation, decimal=3)

    def test_odometry_is_updated_in_place(self):
        odometry = self.framesets[2].frames[0].odometry
        before = odometry.position.copy()

        JointRefiner(self.cameras, CalibrationConfig(max_iterations=200)).refine(
            self.framesets, self.extrinsics)

        self.assertIs(self.framesets[2].frames[0].odometry, odometry)
        self.assertFalse(np.allclose(odometry.position, before))

    def test_scene_points_fixed_by_default(self):
        before = [p.point.copy() for p in self.point_map]

        JointRefiner(self.cameras, CalibrationConfig(max_iterations=50)).refine(
            self.framesets, self.extrinsics)

        for point, coords in zip(self.point_map, before):
            np.testing.assert_array_equal(point.point, coords)

    def test_optimize_scene_points(self):
        refiner = JointRefiner(self.cameras, CalibrationConfig(max_iterations=100))
        summary = refiner.refine(self.framesets, self.extrinsics, optimize_scene_points=True)

        self.assertLessEqual(summary.final_error.avg, summary.initial_error.avg)
        self.assertTrue(self.extrinsics.get_global_camera_pose(0).is_identity())

        stats = session_reprojection_error(self.framesets, self.cameras, self.extrinsics.poses())
        self.assertAlmostEqual(stats.avg, summary.final_error.avg)

    def test_solver_options(self):
        """The solver is called with a sparse Jacobian and a Cauchy loss."""
        calls = {}

        def fake_solver(fun, x0, **kwargs):
            calls.update(kwargs)

            class Result:
                x = x0
                success = True
                message = 'fake'
                nfev = 1
                njev = 1
                fun = np.zeros(1)
                cost = 0.0
            return Result()

        config = CalibrationConfig(max_iterations=42, loss_scale=2.5)
        JointRefiner(self.cameras, config, solver=fake_solver).refine(self.framesets, self.extrinsics)

        self.assertEqual(calls['loss'], 'cauchy')
        self.assertEqual(calls['f_scale'], 2.5)
        self.assertEqual(calls['max_nfev'], 42)
        self.assertEqual(calls['method'], 'trf')

        sparsity = calls['jac_sparsity']
        # two free cameras, five odometry blocks
        self.assertEqual(sparsity.shape[1], 6 * 2 + 6 * 5)
        # each residual pair touches at most one camera and one odometry block
        self.assertLessEqual(sparsity.tocsr().sum(axis=1).max(), 12)

    def test_no_observations(self):
        summary = JointRefiner(self.cameras).refine([FrameSet(timestamp=0)], self.extrinsics)
        self.assertFalse(summary.success)


if __name__ == '__main__':
    unittest.main()
