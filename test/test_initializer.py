#!/usr/bin/env python3
"""
Unit tests for extrinsics and odometry initialization.
"""

import unittest
import numpy as np
import os
import sys

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from infrastructure_calibration.graph import CameraRigExtrinsics, InitializationError, Pose
from infrastructure_calibration.initializer import (
    ExtrinsicsInitializer,
    estimate_odometry,
    extrinsics_from_frameset,
    update_odometry,
)

from rig_fixtures import make_rig_motion, make_session


def _assert_pose_equal(test, pose, expected, decimal=6):
    np.testing.assert_array_almost_equal(pose.to_matrix(), expected.to_matrix(), decimal=decimal)


class TestExtrinsicsHypothesis(unittest.TestCase):
    """Test the per-frame-set building blocks."""

    def setUp(self):
        self.cameras, self.extrinsics, self.framesets, _, _ = make_session(n_framesets=3)

    def test_extrinsics_from_complete_frameset(self):
        T_cam_ref = extrinsics_from_frameset(self.framesets[1], 3)

        self.assertTrue(T_cam_ref[0].is_identity())
        for j in range(3):
            _assert_pose_equal(self, T_cam_ref[j], self.extrinsics[j])

    def test_estimate_odometry(self):
        odometry = estimate_odometry(self.framesets[2], self.extrinsics)
        position, attitude = make_rig_motion(2)

        self.assertEqual(odometry.timestamp, self.framesets[2].timestamp)
        np.testing.assert_array_almost_equal(odometry.position, position)
        np.testing.assert_array_almost_equal(odometry.attitude, attitude)

    def test_update_odometry_shares_object(self):
        update_odometry(self.framesets, self.extrinsics)

        for frameset in self.framesets:
            odometry = frameset.frames[0].odometry
            self.assertIsNotNone(odometry)
            for frame in frameset.frames:
                self.assertIs(frame.odometry, odometry)

        # a second pass updates the existing objects in place
        before = self.framesets[0].frames[0].odometry
        update_odometry(self.framesets, self.extrinsics)
        self.assertIs(self.framesets[0].frames[0].odometry, before)


class TestExtrinsicsInitializer(unittest.TestCase):
    """Test the hypothesis search."""

    def test_exact_session(self):
        cameras, truth, framesets, _, _ = make_session(n_framesets=4)
        extrinsics = CameraRigExtrinsics(3)

        result = ExtrinsicsInitializer(cameras).initialize(framesets, extrinsics)

        self.assertEqual(len(result.hypothesis_errors), 4)
        self.assertLess(result.avg_error, 1e-6)
        self.assertTrue(extrinsics.get_global_camera_pose(0).is_identity())
        for j in (1, 2):
            _assert_pose_equal(self, extrinsics.get_global_camera_pose(j), truth[j])

        for k, frameset in enumerate(framesets):
            position, _ = make_rig_motion(k)
            np.testing.assert_array_almost_equal(frameset.frames[0].odometry.position, position)

    def test_lowest_error_hypothesis_is_selected(self):
        """A frame set with a corrupted camera pose is not used as hypothesis."""
        cameras, truth, framesets, _, _ = make_session(n_framesets=4)

        corrupted = framesets[0].frames[1]
        corrupted.pose = Pose(corrupted.pose.rotation, corrupted.pose.translation + [0.3, -0.2, 0.1])

        extrinsics = CameraRigExtrinsics(3)
        result = ExtrinsicsInitializer(cameras).initialize(framesets, extrinsics)

        self.assertNotEqual(result.frameset_index, 0)
        self.assertGreater(result.hypothesis_errors[0], result.avg_error)
        _assert_pose_equal(self, extrinsics.get_global_camera_pose(1), truth[1])

    def test_incomplete_frame_sets_are_not_hypotheses(self):
        cameras, truth, framesets, _, _ = make_session(
            n_framesets=3, cameras_per_set=[[0, 1], [0, 1, 2], [1, 2]])

        extrinsics = CameraRigExtrinsics(3)
        result = ExtrinsicsInitializer(cameras).initialize(framesets, extrinsics)

        self.assertEqual(result.frameset_index, 1)
        self.assertEqual(list(result.hypothesis_errors), [1])
        for frameset in framesets:
            self.assertIsNotNone(frameset.frames[0].odometry)

    def test_no_complete_frame_set(self):
        cameras, _, framesets, _, _ = make_session(
            n_framesets=2, cameras_per_set=[[0, 1], [1, 2]])

        with self.assertRaises(InitializationError):
            ExtrinsicsInitializer(cameras).initialize(framesets, CameraRigExtrinsics(3))

    def test_empty_session(self):
        cameras, _, _, _, _ = make_session(n_framesets=0)

        with self.assertRaises(InitializationError):
            ExtrinsicsInitializer(cameras).initialize([], CameraRigExtrinsics(3))


if __name__ == '__main__':
    unittest.main()
