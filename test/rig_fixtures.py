"""
Synthetic three-camera rig driving past a cloud of reference map points.
Observations are exact projections unless noise is requested.
"""

import os
import sys
from typing import List, Optional, Tuple

import numpy as np

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from scipy.spatial.transform import Rotation

from infrastructure_calibration.camera import PinholeCamera
from infrastructure_calibration.graph import Frame, FrameSet, Point2DFeature, Point3DFeature, Pose
from infrastructure_calibration.point_map import Point3DMap
from infrastructure_calibration.reprojection import world_to_camera

IMAGE_SIZE = (640, 480)
DESCRIPTOR_SIZE = 32


def make_camera(name: str = '') -> PinholeCamera:
    K = np.array([[300.0, 0.0, 320.0],
                  [0.0, 300.0, 240.0],
                  [0.0, 0.0, 1.0]])
    return PinholeCamera(K, image_size=IMAGE_SIZE, name=name)


def make_cameras(count: int = 3) -> List[PinholeCamera]:
    return [make_camera(f"cam{i}") for i in range(count)]


def make_extrinsics() -> List[Pose]:
    """Camera-to-reference poses of the rig; camera 0 is the reference."""
    return [
        Pose.identity(),
        Pose(Rotation.from_euler('y', 0.15).as_quat(), [0.5, 0.0, 0.05]),
        Pose(Rotation.from_euler('yx', [-0.1, 0.05]).as_quat(), [-0.45, 0.1, 0.0]),
    ]


def make_reference_points(count: int = 150, seed: int = 0) -> List[Point3DFeature]:
    rng = np.random.default_rng(seed)
    coords = np.column_stack([
        rng.uniform(-3.0, 9.0, count),
        rng.uniform(-2.5, 2.5, count),
        rng.uniform(8.0, 12.0, count),
    ])
    return [Point3DFeature(p, index=i) for i, p in enumerate(coords)]


def make_rig_motion(frameset_index: int) -> Tuple[np.ndarray, np.ndarray]:
    """Rig (position, [yaw, pitch, roll]) at a frame set."""
    position = np.array([1.0 * frameset_index, 0.05 * frameset_index, 0.0])
    attitude = np.array([0.03 * frameset_index, 0.02, -0.01])
    return position, attitude


def make_descriptor(point_index: int) -> np.ndarray:
    """Deterministic, well separated float descriptor per reference point."""
    rng = np.random.default_rng(1000 + point_index)
    return rng.normal(size=DESCRIPTOR_SIZE).astype(np.float32)


def observe(camera: PinholeCamera, R: np.ndarray, t: np.ndarray,
            points: List[Point3DFeature],
            noise: float = 0.0,
            rng: Optional[np.random.Generator] = None) -> List[Tuple[Point3DFeature, np.ndarray]]:
    """Visible points with their (optionally noisy) pixel projections."""
    coords = np.array([p.point for p in points])
    P_cam = coords @ R.T + t

    in_front = P_cam[:, 2] > 0.5
    pixels = np.zeros((len(points), 2))
    pixels[in_front] = camera.project(P_cam[in_front])

    width, height = IMAGE_SIZE
    visible = (in_front & (pixels[:, 0] >= 0) & (pixels[:, 0] < width)
               & (pixels[:, 1] >= 0) & (pixels[:, 1] < height))

    if noise > 0:
        rng = rng or np.random.default_rng(0)
        pixels = pixels + rng.normal(scale=noise, size=pixels.shape)

    return [(points[i], pixels[i]) for i in np.flatnonzero(visible)]


def make_frame(camera_id: int, timestamp: int, pose: Pose,
               observations: List[Tuple[Point3DFeature, np.ndarray]],
               point_map: Optional[Point3DMap] = None) -> Frame:
    """
    A localized frame. With ``point_map`` the features are associated to
    session points the way the pose estimator does it; without, they
    refer to the given points directly.
    """
    frame = Frame(camera_id=camera_id, timestamp=timestamp, pose=pose)
    for i, (point, pixel) in enumerate(observations):
        feature = Point2DFeature([pixel[0], pixel[1], 1.0, 0.0, 0.0, 0.0],
                                 make_descriptor(point.index), index=i, frame=frame)
        if point_map is not None:
            point_map.add_observation(point, feature)
        else:
            feature.feature3d = point
            point.features2d.append(feature)
        frame.features2d.append(feature)
    return frame


def make_session(n_framesets: int = 6, noise: float = 0.0, seed: int = 0,
                 cameras_per_set=None):
    """
    Frame sets of the synthetic rig with exact PnP poses.

    Args:
        cameras_per_set: Optional list of camera id lists, one per frame set

    Returns:
        Tuple of (cameras, true extrinsics, frame sets, point map, reference points)
    """
    cameras = make_cameras()
    extrinsics = make_extrinsics()
    ref_points = make_reference_points(seed=seed)
    point_map = Point3DMap()
    rng = np.random.default_rng(seed)

    framesets = []
    for k in range(n_framesets):
        position, attitude = make_rig_motion(k)
        timestamp = 1000 + 100 * k
        camera_ids = cameras_per_set[k] if cameras_per_set else range(len(cameras))

        frameset = FrameSet(timestamp=timestamp)
        for j in camera_ids:
            R, t = world_to_camera(extrinsics[j], position, attitude)
            pose = Pose.from_matrix(_to_matrix(R, t))
            observations = observe(cameras[j], R, t, ref_points, noise, rng)
            frameset.frames.append(make_frame(j, timestamp, pose, observations, point_map))
        framesets.append(frameset)

    return cameras, extrinsics, framesets, point_map, ref_points


def _to_matrix(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = t
    return T
