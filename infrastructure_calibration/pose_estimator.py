"""
Per-image camera localization against the reference map.
"""

import logging
import time
from typing import Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .config import CalibrationConfig
from .features import FeaturePipeline, keypoint_to_array, match_features
from .graph import Frame, Point2DFeature, Point3DFeature, Pose, SparseGraph
from .location_recognition import LocationRecognition
from .point_map import Point3DMap
from .reprojection import frame_reprojection_error

logger = logging.getLogger(__name__)


def solve_pnp_ransac(scene_points: np.ndarray, image_points: np.ndarray,
                     inlier_threshold: float, max_iterations: int,
                     confidence: float = 0.99) -> Tuple[Optional[np.ndarray], Optional[np.ndarray], np.ndarray]:
    """
    EPnP inside RANSAC on normalized image coordinates (identity camera matrix).

    Returns:
        Tuple of (rvec, tvec, inlier indices); inliers are empty on failure.
    """
    no_inliers = np.zeros(0, dtype=np.int64)

    if len(scene_points) < 4:
        return None, None, no_inliers

    try:
        success, rvec, tvec, inliers = cv2.solvePnPRansac(
            np.ascontiguousarray(scene_points, dtype=np.float64).reshape(-1, 3),
            np.ascontiguousarray(image_points, dtype=np.float64).reshape(-1, 2),
            np.eye(3), None,
            iterationsCount=max_iterations,
            reprojectionError=inlier_threshold,
            confidence=confidence,
            flags=cv2.SOLVEPNP_EPNP
        )
    except cv2.error as e:
        logger.debug("solvePnPRansac failed: %s", e)
        return None, None, no_inliers

    if not success or inliers is None:
        return None, None, no_inliers

    return rvec.ravel(), tvec.ravel(), inliers.ravel().astype(np.int64)


class FramePoseEstimator:
    """
    Localizes single camera images against the reference map and registers
    the resulting 2D-3D associations in the session point map.
    """

    def __init__(self, cameras: Sequence, reference_graph: SparseGraph,
                 location_recognition: LocationRecognition,
                 point_map: Point3DMap,
                 config: CalibrationConfig,
                 feature_pipeline: Optional[FeaturePipeline] = None,
                 pnp_solver: Callable = solve_pnp_ransac):
        self.cameras = cameras
        self.reference_graph = reference_graph
        self.location_recognition = location_recognition
        self.point_map = point_map
        self.config = config
        self.feature_pipeline = feature_pipeline or FeaturePipeline(config.feature_type,
                                                                    config.max_features)
        self.pnp_solver = pnp_solver

    def estimate(self, image: np.ndarray, timestamp: int, camera_id: int,
                 preprocess: bool = False) -> Frame:
        """
        Detect features in ``image`` and estimate the camera pose.

        The returned frame has ``pose`` None when localization failed.
        """
        frame = Frame(camera_id=camera_id, timestamp=timestamp)

        image_proc = self.feature_pipeline.preprocess(image) if preprocess else image

        keypoints = self.feature_pipeline.detect(image_proc)
        keypoints, descriptors = self.feature_pipeline.compute(image_proc, keypoints)

        if descriptors is None or len(keypoints) == 0:
            logger.info("[Cam %d] No features detected", camera_id)
            return frame

        for i, kp in enumerate(keypoints):
            frame.features2d.append(Point2DFeature(keypoint_to_array(kp), descriptors[i],
                                                   index=i, frame=frame))

        return self.localize(frame)

    def localize(self, frame: Frame) -> Frame:
        """Estimate the pose of a frame whose features are already extracted."""
        ts_start = time.time()
        cfg = self.config
        camera = self.cameras[frame.camera_id]

        if not frame.features2d:
            return frame

        candidates = self.location_recognition.knn_match(frame, cfg.nearest_image_matches)

        rays = camera.lift_projective(np.array([f.pt for f in frame.features2d]))
        rectified = rays[:, :2] / rays[:, 2:3]

        best_inlier_count = 0
        best_corr: List[Tuple[Point2DFeature, Point3DFeature]] = []
        best_rvec = best_tvec = None

        for fid in candidates:
            train_frame = self.reference_graph.frame(fid)

            matches = match_features(frame.features2d, train_frame.features2d,
                                     self.feature_pipeline, cfg.max_distance_ratio)

            if len(matches) < cfg.min_correspondences_2d2d:
                continue

            corr = []
            image_points = []
            scene_points = []
            for match in matches:
                p3d = train_frame.features2d[match.trainIdx].feature3d
                if p3d is None:
                    continue

                corr.append((frame.features2d[match.queryIdx], p3d))
                image_points.append(rectified[match.queryIdx])
                scene_points.append(p3d.point)

            if len(corr) < cfg.min_correspondences_2d3d:
                continue

            rvec, tvec, inliers = self.pnp_solver(np.array(scene_points), np.array(image_points),
                                                  cfg.scaled_reproj_error_thresh,
                                                  cfg.pnp_ransac_iterations,
                                                  confidence=cfg.pnp_confidence)

            n_inliers = len(inliers)
            if n_inliers < cfg.min_correspondences_2d3d:
                continue

            # ties keep the first candidate seen
            if n_inliers > best_inlier_count:
                best_inlier_count = n_inliers
                best_corr = [corr[i] for i in inliers]
                best_rvec, best_tvec = rvec, tvec

        if best_inlier_count < cfg.min_correspondences_2d3d:
            logger.info("[Cam %d] Localization failed (%d candidates)", frame.camera_id, len(candidates))
            return frame

        logger.info("[Cam %d] Found %d inlier 2D-3D correspondences from nearest image",
                    frame.camera_id, best_inlier_count)

        frame.pose = Pose.from_rvec_tvec(best_rvec, best_tvec)

        for p2d, p3d in best_corr:
            self.point_map.add_observation(p3d, p2d)

        frame.features2d = [f for f in frame.features2d if f.feature3d is not None]

        if logger.isEnabledFor(logging.DEBUG):
            stats = frame_reprojection_error(frame, camera)
            logger.debug("[Cam %d] Estimated camera pose\n"
                         "    rvec: %s\n    tvec: %s\n    time: %.3f s\n  reproj: %.4f px\n      ts: %d",
                         frame.camera_id, np.round(best_rvec, 6), np.round(best_tvec, 6),
                         time.time() - ts_start, stats.avg, frame.timestamp)

        return frame
