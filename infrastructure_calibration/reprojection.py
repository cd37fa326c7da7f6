"""
Reprojection errors of 2D-3D associations under the rig model
(camera extrinsic + rig odometry) or under a frame's own PnP pose.

The world-to-camera composition here is the one used by the joint
refiner's residuals, so errors measured during initialization and during
optimization are directly comparable.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

from .graph import Frame, FrameSet, Pose
from .utils import matrix_from_ypr


@dataclass
class ErrorStats:
    """Min / max / average reprojection error in pixels over ``count`` observations."""
    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0
    count: int = 0

    @classmethod
    def from_errors(cls, errors: np.ndarray) -> 'ErrorStats':
        errors = np.asarray(errors, dtype=np.float64).ravel()
        if len(errors) == 0:
            return cls()
        return cls(float(errors.min()), float(errors.max()), float(errors.mean()), len(errors))

    @classmethod
    def combine(cls, stats: Iterable['ErrorStats']) -> 'ErrorStats':
        stats = [s for s in stats if s.count > 0]
        if not stats:
            return cls()
        count = sum(s.count for s in stats)
        total = sum(s.avg * s.count for s in stats)
        return cls(min(s.min for s in stats), max(s.max for s in stats), total / count, count)

    def __str__(self):
        return f"avg = {self.avg:.4f} px | max = {self.max:.4f} px | count = {self.count}"


def world_to_camera(T_cam_ref: Pose, position: np.ndarray,
                    attitude: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    World-to-camera rotation and translation of a camera with extrinsic
    ``T_cam_ref`` on a rig at ``position`` with attitude [yaw, pitch, roll].

    The world-to-rig rotation is the inverse of Rz(yaw) * Ry(pitch) * Rx(roll).
    """
    R_world_ref = matrix_from_ypr(attitude).T
    R_ext = T_cam_ref.rotation_matrix()

    R_cam = R_ext.T @ R_world_ref
    t_cam = -R_cam @ np.asarray(position, dtype=np.float64) - R_ext.T @ T_cam_ref.translation

    return R_cam, t_cam


def reprojection_error(camera, point: np.ndarray, T_cam_ref: Pose,
                       position: np.ndarray, attitude: np.ndarray,
                       observed: np.ndarray) -> float:
    """Pixel error of one observation under the rig model."""
    R_cam, t_cam = world_to_camera(T_cam_ref, position, attitude)
    return float(camera.reprojection_error(np.asarray(point, dtype=np.float64).reshape(3),
                                           R_cam, t_cam, observed))


def _associations(frame: Frame) -> Tuple[np.ndarray, np.ndarray]:
    features = [f for f in frame.features2d if f.feature3d is not None]
    points = np.array([f.feature3d.point for f in features], dtype=np.float64).reshape(-1, 3)
    observed = np.array([f.pt for f in features], dtype=np.float64).reshape(-1, 2)
    return points, observed


def frame_reprojection_error(frame: Frame, camera,
                             T_cam_ref: Optional[Pose] = None) -> ErrorStats:
    """
    Reprojection error of a frame's associated features.

    With ``T_cam_ref`` the rig model (extrinsic + the frame's odometry) is
    used; without it the frame's own PnP pose is used.
    """
    points, observed = _associations(frame)
    if len(points) == 0:
        return ErrorStats()

    if T_cam_ref is None:
        if frame.pose is None:
            return ErrorStats()
        R, t = frame.pose.rotation_matrix(), frame.pose.translation
    else:
        if frame.odometry is None:
            return ErrorStats()
        R, t = world_to_camera(T_cam_ref, frame.odometry.position, frame.odometry.attitude)

    return ErrorStats.from_errors(camera.reprojection_error(points, R, t, observed))


def frameset_reprojection_error(frameset: FrameSet, cameras: Sequence,
                                extrinsics: Sequence[Pose]) -> ErrorStats:
    return ErrorStats.combine(
        frame_reprojection_error(frame, cameras[frame.camera_id], extrinsics[frame.camera_id])
        for frame in frameset.frames)


def session_reprojection_error(framesets: Sequence[FrameSet], cameras: Sequence,
                               extrinsics: Optional[Sequence[Pose]] = None) -> ErrorStats:
    """
    Reprojection error over every frame of the session: rig model when
    ``extrinsics`` is given, per-frame PnP poses otherwise.
    """
    if extrinsics is None:
        return ErrorStats.combine(
            frame_reprojection_error(frame, cameras[frame.camera_id])
            for frameset in framesets for frame in frameset.frames)

    return ErrorStats.combine(
        frameset_reprojection_error(frameset, cameras, extrinsics) for frameset in framesets)
