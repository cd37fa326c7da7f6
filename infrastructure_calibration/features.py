"""
Feature detection, description and descriptor matching.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .graph import Point2DFeature

logger = logging.getLogger(__name__)


# Feature type mapping: name -> detector factory
FEATURE_TYPE_MAP = {
    "SIFT": lambda n: cv2.SIFT_create(nfeatures=n),
    "ORB": lambda n: cv2.ORB_create(nfeatures=n if n > 0 else 2000),
    "AKAZE": lambda n: cv2.AKAZE_create(),
    "BRISK": lambda n: cv2.BRISK_create(),
}


def keypoint_to_array(kp: cv2.KeyPoint) -> np.ndarray:
    """[x, y, size, angle, response, octave]"""
    return np.array([kp.pt[0], kp.pt[1], kp.size, kp.angle, kp.response, kp.octave],
                    dtype=np.float64)


def array_to_keypoint(arr: np.ndarray) -> cv2.KeyPoint:
    return cv2.KeyPoint(float(arr[0]), float(arr[1]), float(arr[2]),
                        float(arr[3]), float(arr[4]), int(arr[5]))


def norm_for_descriptors(descriptors: np.ndarray) -> int:
    """Binary descriptors use Hamming distance, float descriptors L2."""
    return cv2.NORM_HAMMING if descriptors.dtype == np.uint8 else cv2.NORM_L2


class FeaturePipeline:
    """
    Keypoint detection, descriptor extraction and k-nearest-neighbour
    descriptor matching backed by OpenCV.
    """

    def __init__(self, feature_type: str = 'SIFT', max_features: int = 0):
        if feature_type not in FEATURE_TYPE_MAP:
            raise ValueError(f"Unknown feature type: {feature_type}")

        self.feature_type = feature_type
        self.max_features = max_features

    def _create(self):
        # OpenCV detectors are not guaranteed thread-safe; one per call
        return FEATURE_TYPE_MAP[self.feature_type](self.max_features)

    @staticmethod
    def preprocess(image: np.ndarray) -> np.ndarray:
        """Grayscale conversion and histogram equalization."""
        return cv2.equalizeHist(FeaturePipeline.to_gray(image))

    @staticmethod
    def to_gray(image: np.ndarray) -> np.ndarray:
        if image.ndim == 3:
            return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        return image

    def detect(self, image: np.ndarray) -> List[cv2.KeyPoint]:
        return list(self._create().detect(self.to_gray(image), None))

    def compute(self, image: np.ndarray,
                keypoints: Sequence[cv2.KeyPoint]) -> Tuple[List[cv2.KeyPoint], Optional[np.ndarray]]:
        """
        Compute descriptors. OpenCV may drop keypoints it cannot describe,
        so the surviving keypoints are returned alongside the descriptors.
        """
        keypoints, descriptors = self._create().compute(self.to_gray(image), list(keypoints))
        return list(keypoints), descriptors

    def knn_match(self, query: np.ndarray, train: np.ndarray, k: int = 2) -> List[List[cv2.DMatch]]:
        if len(query) == 0 or len(train) == 0:
            return []
        matcher = cv2.BFMatcher(norm_for_descriptors(query), crossCheck=False)
        return matcher.knnMatch(query, train, k=k)


def build_descriptor_mat(features: Sequence[Point2DFeature]) -> np.ndarray:
    """Stack feature descriptors into one (N, D) matrix."""
    return np.vstack([np.asarray(f.descriptor).reshape(1, -1) for f in features])


def _ratio_test(knn: List[List[cv2.DMatch]], max_distance_ratio: float) -> dict:
    best = {}
    for candidates in knn:
        if len(candidates) < 2:
            continue
        m, n = candidates[0], candidates[1]
        if m.distance < max_distance_ratio * n.distance:
            best[m.queryIdx] = m.trainIdx
    return best


def match_features(query_features: Sequence[Point2DFeature],
                   train_features: Sequence[Point2DFeature],
                   pipeline: FeaturePipeline,
                   max_distance_ratio: float = 0.7) -> List[cv2.DMatch]:
    """
    Match two feature lists with a ratio test in both directions and a
    cross-check. Descriptor shape or type mismatches yield no matches.
    """
    if not query_features or not train_features:
        return []

    query = build_descriptor_mat(query_features)
    train = build_descriptor_mat(train_features)

    if query.shape[1] != train.shape[1]:
        logger.warning("Descriptor lengths do not match (%d vs %d)", query.shape[1], train.shape[1])
        return []

    if query.dtype != train.dtype:
        logger.warning("Descriptor types do not match (%s vs %s)", query.dtype, train.dtype)
        return []

    fwd = _ratio_test(pipeline.knn_match(query, train, 2), max_distance_ratio)
    rev = _ratio_test(pipeline.knn_match(train, query, 2), max_distance_ratio)

    matches = []
    for query_idx, train_idx in sorted(fwd.items()):
        if rev.get(train_idx) == query_idx:
            matches.append(cv2.DMatch(query_idx, train_idx, 0.0))

    return matches
