#!/usr/bin/env python3
"""
Unit tests for descriptor matching and place recognition.
"""

import unittest
import numpy as np
import os
import sys
import tempfile

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import cv2

from infrastructure_calibration.features import (
    FeaturePipeline,
    array_to_keypoint,
    keypoint_to_array,
    match_features,
)
from infrastructure_calibration.graph import Frame, FrameID, Point2DFeature, SparseGraph
from infrastructure_calibration.location_recognition import LocationRecognition


def _features(descriptors, frame=None):
    return [Point2DFeature(np.zeros(6), d, index=i, frame=frame) for i, d in enumerate(descriptors)]


def _random_descriptors(n, seed, size=32):
    return np.random.default_rng(seed).normal(size=(n, size)).astype(np.float32)


class TestFeaturePipeline(unittest.TestCase):
    """Test OpenCV feature helpers."""

    def test_keypoint_roundtrip(self):
        kp = cv2.KeyPoint(12.5, 7.25, 3.0, 45.0, 0.5, 2)
        kp_back = array_to_keypoint(keypoint_to_array(kp))

        self.assertAlmostEqual(kp_back.pt[0], 12.5, places=4)
        self.assertAlmostEqual(kp_back.pt[1], 7.25, places=4)
        self.assertAlmostEqual(kp_back.size, 3.0, places=4)
        self.assertEqual(kp_back.octave, 2)

    def test_unknown_feature_type(self):
        with self.assertRaises(ValueError):
            FeaturePipeline('SURF_GPU')

    def test_detect_and_compute(self):
        """ORB finds and describes corners of synthetic rectangles."""
        image = np.zeros((320, 320, 3), dtype=np.uint8)
        for x, y, w, h in [(50, 50, 60, 40), (180, 70, 50, 90), (90, 200, 120, 50)]:
            cv2.rectangle(image, (x, y), (x + w, y + h), (255, 255, 255), -1)

        pipeline = FeaturePipeline('ORB', 500)
        keypoints = pipeline.detect(pipeline.preprocess(image))
        keypoints, descriptors = pipeline.compute(image, keypoints)

        self.assertGreater(len(keypoints), 0)
        self.assertEqual(descriptors.shape[0], len(keypoints))
        self.assertEqual(descriptors.dtype, np.uint8)


class TestMatchFeatures(unittest.TestCase):
    """Test ratio-tested, cross-checked matching."""

    def setUp(self):
        self.pipeline = FeaturePipeline('SIFT')

    def test_permuted_descriptors(self):
        train = _random_descriptors(40, seed=1)
        order = np.random.default_rng(2).permutation(40)
        query = train[order] + 0.01

        matches = match_features(_features(query), _features(train), self.pipeline, 0.7)

        self.assertEqual(len(matches), 40)
        for m in matches:
            self.assertEqual(m.trainIdx, order[m.queryIdx])

    def test_ambiguous_matches_rejected(self):
        """Duplicated train descriptors fail the ratio test."""
        base = _random_descriptors(10, seed=3)
        train = np.vstack([base, base])

        matches = match_features(_features(base), _features(train), self.pipeline, 0.7)
        self.assertEqual(matches, [])

    def test_cross_check(self):
        """A train descriptor is matched by at most one query descriptor."""
        train = _random_descriptors(20, seed=4)
        query = np.vstack([train[:10] + 0.01, train[:10] + 0.02])

        matches = match_features(_features(query), _features(train), self.pipeline, 0.7)
        train_indices = [m.trainIdx for m in matches]
        self.assertEqual(len(train_indices), len(set(train_indices)))

    def test_mismatched_descriptors(self):
        float_desc = _random_descriptors(10, seed=5)
        short_desc = _random_descriptors(10, seed=5, size=16)
        binary_desc = np.zeros((10, 32), dtype=np.uint8)

        self.assertEqual(match_features(_features(float_desc), _features(short_desc), self.pipeline), [])
        self.assertEqual(match_features(_features(float_desc), _features(binary_desc), self.pipeline), [])
        self.assertEqual(match_features([], _features(float_desc), self.pipeline), [])


class TestLocationRecognition(unittest.TestCase):
    """Test reference frame retrieval."""

    def setUp(self):
        self.graph = SparseGraph(2)
        self.descriptors = []
        seed = 10
        for camera_idx in range(2):
            segment = []
            for _ in range(3):
                frame = Frame(camera_id=camera_idx, timestamp=seed)
                desc = _random_descriptors(30, seed=seed)
                frame.features2d = _features(desc, frame)
                self.descriptors.append(desc)
                segment.append(frame)
                seed += 1
            self.graph.segments(camera_idx).append(segment)

    def _query(self, descriptors):
        frame = Frame(camera_id=0)
        frame.features2d = _features(descriptors, frame)
        return frame

    def test_most_similar_frame_first(self):
        recognition = LocationRecognition()
        recognition.setup(self.graph)
        self.assertEqual(recognition.frame_count, 6)

        candidates = recognition.knn_match(self._query(self.descriptors[4] + 0.01), 3)
        self.assertEqual(candidates[0], FrameID(1, 0, 1))
        self.assertLessEqual(len(candidates), 3)

    def test_index_cache(self):
        with tempfile.TemporaryDirectory() as tmp:
            recognition = LocationRecognition()
            recognition.setup(self.graph, tmp)
            self.assertTrue(os.path.exists(os.path.join(tmp, LocationRecognition.CACHE_FILENAME)))

            cached = LocationRecognition()
            cached.setup(self.graph, tmp)

        self.assertEqual(cached.frame_count, 6)
        candidates = cached.knn_match(self._query(self.descriptors[2]), 1)
        self.assertEqual(candidates, [FrameID(0, 0, 2)])

    def test_empty_map(self):
        recognition = LocationRecognition()
        recognition.setup(SparseGraph(1))
        self.assertEqual(recognition.knn_match(self._query(self.descriptors[0]), 5), [])


if __name__ == '__main__':
    unittest.main()
