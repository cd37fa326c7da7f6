"""
Extrinsic calibration of a multi-camera rig against a reference map.

Each camera is localized in a prebuilt infrastructure map; synchronized
localizations form frame sets from which the camera extrinsics and the rig
odometry are initialized and then jointly refined.
"""

import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .config import CalibrationConfig
from .features import FeaturePipeline
from .frameset_store import load_frame_sets, save_frame_sets
from .graph import CalibrationError, CameraRigExtrinsics, Frame, FrameSet, MapLoadError, SparseGraph
from .initializer import ExtrinsicsInitializer, InitializationResult
from .location_recognition import LocationRecognition
from .point_map import Point3DMap
from .pose_estimator import FramePoseEstimator
from .refiner import JointRefiner, RefinementSummary
from .reprojection import ErrorStats, session_reprojection_error
from .utils import extrinsics_to_dict

logger = logging.getLogger(__name__)


class InfrastructureCalibrationSolver:
    """
    Solver for infrastructure-based multi-camera extrinsic calibration.

    Camera 0 is the reference camera; all extrinsics are expressed
    relative to it.
    """

    REFERENCE_GRAPH_FILENAME = 'frames_3.sg'

    def __init__(self, cameras: Sequence, config: Optional[CalibrationConfig] = None,
                 camera_names: Optional[List[str]] = None,
                 feature_pipeline: Optional[FeaturePipeline] = None):
        """
        Initialize the calibration solver.

        Args:
            cameras: Camera models, indexed by camera id
            config: Calibration constants
            camera_names: Optional names used when exporting extrinsics
            feature_pipeline: Feature detector/matcher shared by all cameras
        """
        self.cameras = list(cameras)
        self.config = config or CalibrationConfig()
        self.camera_names = camera_names or [f"cam{i}" for i in range(len(self.cameras))]
        self.feature_pipeline = feature_pipeline or FeaturePipeline(self.config.feature_type,
                                                                    self.config.max_features)

        self.reference_graph: Optional[SparseGraph] = None
        self.location_recognition: Optional[LocationRecognition] = None
        self.estimator: Optional[FramePoseEstimator] = None

        self.point_map = Point3DMap()
        self.framesets: List[FrameSet] = []
        self._extrinsics = CameraRigExtrinsics(len(self.cameras))

        self._x_last = 0.0
        self._y_last = 0.0
        self.odometry_distance = 0.0

        self.initializer = ExtrinsicsInitializer(self.cameras)
        self.refiner = JointRefiner(self.cameras, self.config)

        self.initialization: Optional[InitializationResult] = None

    @property
    def extrinsics(self) -> CameraRigExtrinsics:
        return self._extrinsics

    def load_map(self, map_directory: str):
        """
        Load the reference map and set up place recognition.

        Raises:
            MapLoadError: if the map graph cannot be read
        """
        graph_path = os.path.join(map_directory, self.REFERENCE_GRAPH_FILENAME)
        logger.info("Loading map from %s", graph_path)

        try:
            graph = SparseGraph.read_binary(graph_path)
        except MapLoadError as e:
            logger.error("Cannot read graph file %s: %s", graph_path, e)
            raise

        self.set_reference_map(graph, map_directory)

    def set_reference_map(self, graph: SparseGraph, map_directory: Optional[str] = None,
                          location_recognition: Optional[LocationRecognition] = None):
        """Use an already loaded reference map. Resets the session."""
        self.reference_graph = graph

        if location_recognition is None:
            logger.info("Setting up location recognition...")
            location_recognition = LocationRecognition()
            location_recognition.setup(graph, map_directory)
        self.location_recognition = location_recognition

        self.estimator = FramePoseEstimator(self.cameras, graph, location_recognition,
                                            self.point_map, self.config, self.feature_pipeline)
        self.reset()

    def reset(self):
        """Clear all collected calibration data."""
        self.point_map.clear()
        self.framesets.clear()
        self._x_last = 0.0
        self._y_last = 0.0
        self.odometry_distance = 0.0
        self._extrinsics.reset()
        self.initialization = None

    def add_frame_set(self, images: Sequence[np.ndarray], timestamp: int,
                      preprocess: bool = False) -> bool:
        """
        Localize one synchronized image per camera and keep the result as a
        frame set if enough cameras were localized and the rig has moved
        far enough since the last kept frame set.

        Returns:
            True if the frame set was added
        """
        if self.estimator is None:
            raise CalibrationError("No reference map loaded")

        if len(images) != len(self.cameras):
            logger.warning("Number of images (%d) does not match camera count (%d)",
                           len(images), len(self.cameras))
            return False

        frames: List[Frame] = []
        with ThreadPoolExecutor(max_workers=len(self.cameras)) as pool:
            futures = [pool.submit(self.estimator.estimate, images[i], timestamp, i, preprocess)
                       for i in range(len(self.cameras))]

            for camera_id, future in enumerate(futures):
                try:
                    frames.append(future.result())
                except Exception:
                    logger.exception("[Cam %d] Pose estimation failed", camera_id)

        frameset = FrameSet(timestamp=timestamp,
                            frames=[frame for frame in frames if frame.pose is not None])

        return self.commit_frame_set(frameset)

    def commit_frame_set(self, frameset: FrameSet) -> bool:
        """Apply the frame-count and keyframe-distance tests and keep the frame set."""
        if len(frameset.frames) < 2:
            logger.info("Skipping frame set at ts = %d: %d camera(s) localized",
                        frameset.timestamp, len(frameset.frames))
            return False

        if self.framesets:
            prev = {frame.camera_id: frame for frame in self.framesets[-1].frames}

            # keyframe distance is the smallest displacement of any camera
            # localized in both frame sets
            distances = [np.linalg.norm(frame.camera_center() - prev[frame.camera_id].camera_center())
                         for frame in frameset.frames if frame.camera_id in prev]

            if not distances or min(distances) <= self.config.min_keyframe_distance:
                logger.info("Skipping frame set as inter-frame distance is too small")
                return False

        self.framesets.append(frameset)

        logger.info("Added frame set %d [ %s ] ts = %d", len(self.framesets),
                    ' '.join(str(cid) for cid in frameset.camera_ids()), frameset.timestamp)
        return True

    def add_odometry(self, x: float, y: float, yaw: float, timestamp: int):
        """Accumulate the planar distance travelled by the vehicle."""
        # a previous sample at exactly (0, 0) is treated as no sample
        if self._x_last != 0.0 or self._y_last != 0.0:
            self.odometry_distance += math.hypot(x - self._x_last, y - self._y_last)

        self._x_last = x
        self._y_last = y

    def run(self) -> RefinementSummary:
        """
        Initialize extrinsics and odometry, then refine them jointly.

        Raises:
            InitializationError: if no complete frame set was collected
        """
        stats = session_reprojection_error(self.framesets, self.cameras)
        logger.info("Average reprojection error over all frames: %.4f px", stats.avg)

        if self.framesets:
            n_frames = sum(len(frameset.frames) for frameset in self.framesets)
            logger.info("Average number of frames per set: %.2f", n_frames / len(self.framesets))

        self.initialization = self.initializer.initialize(self.framesets, self._extrinsics)

        summary = self.optimize(self.config.optimize_scene_points)

        logger.info("Odometry distance: %.3f m", self.odometry_distance)
        return summary

    def optimize(self, optimize_scene_points: bool = False) -> RefinementSummary:
        """Run joint refinement of extrinsics and odometry (and scene points)."""
        return self.refiner.refine(self.framesets, self._extrinsics, optimize_scene_points)

    def reprojection_error(self) -> ErrorStats:
        """Session reprojection error under the current extrinsics and odometry."""
        return session_reprojection_error(self.framesets, self.cameras, self._extrinsics.poses())

    def save_frame_sets(self, filename: str):
        save_frame_sets(self.framesets, len(self.cameras), filename)

    def load_frame_sets(self, filename: str):
        """
        Replace the session with frame sets read from ``filename``.

        Raises:
            MapLoadError: if the file cannot be read
        """
        framesets, point_map = load_frame_sets(filename)

        self.framesets = framesets
        self.point_map = point_map
        if self.estimator is not None:
            self.estimator.point_map = point_map

    def extrinsics_dict(self) -> Dict[str, Dict]:
        """Extrinsics of every non-reference camera, keyed by camera name."""
        return extrinsics_to_dict(self._extrinsics.poses(), self.camera_names)

    def get_statistics(self) -> Dict[str, Any]:
        """Get statistics about collected calibration data."""
        camera_count = len(self.cameras)
        frames_per_camera = [0] * camera_count
        observations = 0
        for frameset in self.framesets:
            for frame in frameset.frames:
                frames_per_camera[frame.camera_id] += 1
                observations += sum(1 for f in frame.features2d if f.feature3d is not None)

        return {
            'frame_sets': len(self.framesets),
            'complete_frame_sets': sum(1 for fs in self.framesets if fs.is_complete(camera_count)),
            'frames_per_camera': dict(zip(self.camera_names, frames_per_camera)),
            'scene_points': len(self.point_map),
            'observations': observations,
            'odometry_distance': self.odometry_distance,
        }
