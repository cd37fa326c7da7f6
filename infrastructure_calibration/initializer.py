"""
Initial estimate of camera extrinsics and rig odometry.

Every complete frame set (all cameras localized) yields an extrinsics
hypothesis: the relative pose of each camera with respect to camera 0 in
that frame set. For each hypothesis the odometry of every frame set is
re-estimated by averaging the rig poses implied by its cameras, and the
hypothesis with the lowest average reprojection error over the whole
session is kept.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

import numpy as np

from .graph import CameraRigExtrinsics, FrameSet, InitializationError, Odometry, Pose
from .reprojection import session_reprojection_error
from .utils import average_quaternions, matrix_from_quaternion, ypr_from_matrix

logger = logging.getLogger(__name__)


@dataclass
class InitializationResult:
    frameset_index: int
    avg_error: float
    extrinsics: List[Pose]
    hypothesis_errors: Dict[int, float] = field(default_factory=dict)


def extrinsics_from_frameset(frameset: FrameSet, camera_count: int) -> List[Pose]:
    """
    Relative pose of every camera with respect to camera 0 in a complete
    frame set: T_cam_ref[j] = pose_0 * pose_j^-1.
    """
    poses = {frame.camera_id: frame.pose for frame in frameset.frames}

    T_cam_ref = [Pose.identity()]
    for j in range(1, camera_count):
        T_cam_ref.append(poses[0].compose(poses[j].inverse()))

    return T_cam_ref


def estimate_odometry(frameset: FrameSet, T_cam_ref: Sequence[Pose]) -> Odometry:
    """
    Rig pose of a frame set: mean of the rig positions implied by each
    camera, rotation averaged on SO(3), attitude as [yaw, pitch, roll].
    """
    positions = []
    quats = []
    for frame in frameset.frames:
        H = frame.pose.inverse().compose(T_cam_ref[frame.camera_id].inverse())
        positions.append(H.translation)
        quats.append(H.rotation)

    q_avg = average_quaternions(quats)

    return Odometry(timestamp=frameset.timestamp,
                    position=np.mean(positions, axis=0),
                    attitude=ypr_from_matrix(matrix_from_quaternion(q_avg)))


def update_odometry(framesets: Sequence[FrameSet], T_cam_ref: Sequence[Pose]):
    """
    Re-estimate the odometry of every frame set. The odometry object is
    shared by all frames of a set; an existing one is updated in place.
    """
    for frameset in framesets:
        if not frameset.frames:
            continue

        odometry = estimate_odometry(frameset, T_cam_ref)

        existing = frameset.frames[0].odometry
        if existing is not None:
            existing.timestamp = odometry.timestamp
            existing.position = odometry.position
            existing.attitude = odometry.attitude
            odometry = existing

        for frame in frameset.frames:
            frame.odometry = odometry


class ExtrinsicsInitializer:
    """Hypothesis search over complete frame sets."""

    def __init__(self, cameras: Sequence):
        self.cameras = cameras

    def initialize(self, framesets: Sequence[FrameSet],
                   extrinsics: CameraRigExtrinsics) -> InitializationResult:
        """
        Select the lowest-error extrinsics hypothesis, write it to
        ``extrinsics`` and leave every frame set with odometry computed
        from it.

        Raises:
            InitializationError: if no complete frame set exists
        """
        camera_count = len(self.cameras)

        # without loss of generality, camera 0 is the reference frame
        extrinsics.set_global_camera_pose(0, Pose.identity())

        best_error = float('inf')
        best_index = -1
        best_T_cam_ref = None
        hypothesis_errors = {}

        for i, frameset in enumerate(framesets):
            if not frameset.is_complete(camera_count):
                continue

            T_cam_ref = extrinsics_from_frameset(frameset, camera_count)
            update_odometry(framesets, T_cam_ref)

            stats = session_reprojection_error(framesets, self.cameras, T_cam_ref)
            hypothesis_errors[i] = stats.avg
            logger.debug("Extrinsics hypothesis from frame set %d: %s", i, stats)

            if stats.avg < best_error:
                best_error = stats.avg
                best_index = i
                best_T_cam_ref = T_cam_ref

        if best_T_cam_ref is None:
            logger.error("No complete frame sets were found")
            raise InitializationError("No complete frame sets were found")

        for j in range(1, camera_count):
            extrinsics.set_global_camera_pose(j, best_T_cam_ref[j])

        update_odometry(framesets, best_T_cam_ref)

        logger.info("Initial extrinsics from frame set %d of %d complete (avg error %.4f px)",
                    best_index, len(hypothesis_errors), best_error)

        return InitializationResult(best_index, best_error, best_T_cam_ref, hypothesis_errors)
