"""
Data model shared by the reference map and the calibration session:
poses, odometry, 2D/3D features, frames, frame sets, the sparse graph
(with its binary file format) and the camera rig extrinsics.
"""

import weakref
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, List, NamedTuple, Optional

import cv2
import numpy as np

from .utils import matrix_from_quaternion, quaternion_from_matrix


class CalibrationError(Exception):
    """Base class for fatal calibration errors."""


class MapLoadError(CalibrationError):
    """The reference map or a frame-set file cannot be read."""


class InitializationError(CalibrationError):
    """No initial extrinsics estimate can be computed."""


@dataclass(eq=False)
class Pose:
    """Rigid transform: rotation quaternion [x, y, z, w] and translation."""
    rotation: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 0.0, 1.0]))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        q = np.asarray(self.rotation, dtype=np.float64).reshape(4)
        self.rotation = q / np.linalg.norm(q)
        self.translation = np.asarray(self.translation, dtype=np.float64).reshape(3).copy()

    @classmethod
    def identity(cls) -> 'Pose':
        return cls()

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> 'Pose':
        T = np.asarray(T, dtype=np.float64)
        return cls(quaternion_from_matrix(T[:3, :3]), T[:3, 3])

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> 'Pose':
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls(quaternion_from_matrix(R), np.asarray(tvec).reshape(3))

    def rotation_matrix(self) -> np.ndarray:
        return matrix_from_quaternion(self.rotation)

    def to_matrix(self) -> np.ndarray:
        T = np.eye(4)
        T[:3, :3] = self.rotation_matrix()
        T[:3, 3] = self.translation
        return T

    def inverse(self) -> 'Pose':
        R = self.rotation_matrix()
        q_inv = self.rotation * np.array([-1.0, -1.0, -1.0, 1.0])
        return Pose(q_inv, -R.T @ self.translation)

    def compose(self, other: 'Pose') -> 'Pose':
        """self * other"""
        return Pose.from_matrix(self.to_matrix() @ other.to_matrix())

    def copy(self) -> 'Pose':
        return Pose(self.rotation.copy(), self.translation.copy())

    def is_identity(self, atol: float = 1e-9) -> bool:
        return np.allclose(self.to_matrix(), np.eye(4), atol=atol)

    def __repr__(self):
        return f"Pose(rotation={np.round(self.rotation, 6).tolist()}, translation={np.round(self.translation, 6).tolist()})"


@dataclass(eq=False)
class Odometry:
    """Rig pose in the map frame; attitude is [yaw, pitch, roll]."""
    timestamp: int = 0
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    attitude: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.position = np.asarray(self.position, dtype=np.float64).reshape(3).copy()
        self.attitude = np.asarray(self.attitude, dtype=np.float64).reshape(3).copy()


class Point2DFeature:
    """
    A detected keypoint and its descriptor.

    ``keypoint`` holds [x, y, size, angle, response, octave]. ``frame`` is a
    non-owning back-reference to the frame that owns this feature.
    """

    def __init__(self, keypoint: np.ndarray, descriptor: np.ndarray, index: int = 0,
                 frame: Optional['Frame'] = None,
                 feature3d: Optional['Point3DFeature'] = None):
        self.keypoint = np.asarray(keypoint, dtype=np.float64).reshape(6)
        self.descriptor = descriptor
        self.index = index
        self._frame = weakref.ref(frame) if frame is not None else None
        self.feature3d = feature3d

    @property
    def frame(self) -> Optional['Frame']:
        return self._frame() if self._frame is not None else None

    @frame.setter
    def frame(self, frame: Optional['Frame']):
        self._frame = weakref.ref(frame) if frame is not None else None

    @property
    def pt(self) -> np.ndarray:
        return self.keypoint[:2]

    def __repr__(self):
        return f"Point2DFeature(index={self.index}, pt={self.pt.tolist()})"


@dataclass(eq=False)
class Point3DFeature:
    """A scene point and every 2D feature observing it."""
    point: np.ndarray
    index: int = -1
    features2d: List[Point2DFeature] = field(default_factory=list)

    def __post_init__(self):
        self.point = np.asarray(self.point, dtype=np.float64).reshape(3).copy()


@dataclass(eq=False)
class Frame:
    """One camera's observation at one timestamp. ``pose`` is None when localization failed."""
    camera_id: int
    timestamp: int = 0
    pose: Optional[Pose] = None
    features2d: List[Point2DFeature] = field(default_factory=list)
    odometry: Optional[Odometry] = None

    def camera_center(self) -> np.ndarray:
        """Camera position in map coordinates."""
        return self.pose.inverse().translation


@dataclass(eq=False)
class FrameSet:
    """Synchronized frames sharing one timestamp, at most one per camera."""
    timestamp: int
    frames: List[Frame] = field(default_factory=list)

    def camera_ids(self) -> List[int]:
        return [frame.camera_id for frame in self.frames]

    def frame(self, camera_id: int) -> Optional[Frame]:
        for frame in self.frames:
            if frame.camera_id == camera_id:
                return frame
        return None

    def is_complete(self, camera_count: int) -> bool:
        return len(set(self.camera_ids())) >= camera_count


class FrameID(NamedTuple):
    camera_idx: int
    segment_idx: int
    frame_idx: int


class CameraRigExtrinsics:
    """
    Global pose of every camera relative to the reference camera (index 0).
    The reference camera is always the identity.
    """

    def __init__(self, camera_count: int):
        self._poses = [Pose.identity() for _ in range(camera_count)]

    @property
    def camera_count(self) -> int:
        return len(self._poses)

    def reset(self):
        self._poses = [Pose.identity() for _ in range(self.camera_count)]

    def set_global_camera_pose(self, camera_idx: int, pose):
        if not isinstance(pose, Pose):
            pose = Pose.from_matrix(pose)

        if camera_idx == 0 and not pose.is_identity(atol=1e-6):
            raise ValueError("The reference camera extrinsic must be the identity")

        self._poses[camera_idx] = Pose.identity() if camera_idx == 0 else pose.copy()

    def get_global_camera_pose(self, camera_idx: int) -> Pose:
        return self._poses[camera_idx].copy()

    def poses(self) -> List[Pose]:
        return [pose.copy() for pose in self._poses]


_MAGIC = b'ICSG'
_VERSION = 1
_DTYPE_FIELD = 8


class _Reader:
    """Sequential reader over a binary graph file that fails loudly on truncation."""

    def __init__(self, f: BinaryIO, path: str):
        self.f = f
        self.path = path

    def array(self, dtype, count: int) -> np.ndarray:
        dtype = np.dtype(dtype)
        if count == 0:
            return np.zeros(0, dtype=dtype)
        nbytes = dtype.itemsize * count
        buf = self.f.read(nbytes)
        if len(buf) != nbytes:
            raise MapLoadError(f"Truncated graph file: {self.path}")
        return np.frombuffer(buf, dtype=dtype, count=count).copy()

    def scalar(self, dtype):
        return self.array(dtype, 1)[0].item()


class SparseGraph:
    """
    Frames grouped by camera into ordered segments, plus the 3D point
    arena their 2D features refer to.
    """

    def __init__(self, camera_count: int = 0):
        self.frame_segments: List[List[List[Frame]]] = [[] for _ in range(camera_count)]
        self.points: List[Point3DFeature] = []

    def camera_count(self) -> int:
        return len(self.frame_segments)

    def segments(self, camera_idx: int) -> List[List[Frame]]:
        while len(self.frame_segments) <= camera_idx:
            self.frame_segments.append([])
        return self.frame_segments[camera_idx]

    def frame(self, fid: FrameID) -> Frame:
        return self.frame_segments[fid.camera_idx][fid.segment_idx][fid.frame_idx]

    def frame_ids(self):
        for camera_idx, segments in enumerate(self.frame_segments):
            for segment_idx, segment in enumerate(segments):
                for frame_idx in range(len(segment)):
                    yield FrameID(camera_idx, segment_idx, frame_idx)

    def write_binary(self, path: str):
        """
        Write the graph. Points are written in first-reference order and
        re-indexed; features without a 3D association store -1.
        """
        point_index: Dict[Point3DFeature, int] = {}
        points = []
        for segments in self.frame_segments:
            for segment in segments:
                for frame in segment:
                    for feature in frame.features2d:
                        p = feature.feature3d
                        if p is not None and p not in point_index:
                            point_index[p] = len(points)
                            points.append(p.point)

        with open(path, 'wb') as f:
            f.write(_MAGIC)
            f.write(np.uint32(_VERSION).tobytes())

            f.write(np.uint64(len(points)).tobytes())
            f.write(np.asarray(points, dtype='<f8').reshape(-1, 3).tobytes())

            f.write(np.uint32(self.camera_count()).tobytes())
            for segments in self.frame_segments:
                f.write(np.uint32(len(segments)).tobytes())
                for segment in segments:
                    f.write(np.uint32(len(segment)).tobytes())
                    for frame in segment:
                        self._write_frame(f, frame, point_index)

    @staticmethod
    def _write_frame(f: BinaryIO, frame: Frame, point_index: Dict[Point3DFeature, int]):
        f.write(np.int32(frame.camera_id).tobytes())
        f.write(np.uint64(frame.timestamp).tobytes())

        has_pose = frame.pose is not None
        f.write(np.uint8(has_pose).tobytes())
        if has_pose:
            pose = np.concatenate([frame.pose.rotation, frame.pose.translation])
        else:
            pose = np.zeros(7)
        f.write(pose.astype('<f8').tobytes())

        features = frame.features2d
        if features:
            descriptors = np.vstack([np.asarray(feat.descriptor).reshape(1, -1) for feat in features])
        else:
            descriptors = np.zeros((0, 0), dtype=np.float32)

        dtype_str = descriptors.dtype.str.encode('ascii').ljust(_DTYPE_FIELD)

        f.write(np.uint32(len(features)).tobytes())
        f.write(np.uint32(descriptors.shape[1]).tobytes())
        f.write(dtype_str)

        keypoints = np.array([feat.keypoint for feat in features], dtype='<f8').reshape(-1, 6)
        indices = np.array([point_index[feat.feature3d] if feat.feature3d is not None else -1
                            for feat in features], dtype='<i8')

        f.write(keypoints.tobytes())
        f.write(np.ascontiguousarray(descriptors).tobytes())
        f.write(indices.tobytes())

    @classmethod
    def read_binary(cls, path: str) -> 'SparseGraph':
        try:
            with open(path, 'rb') as f:
                return cls._read(_Reader(f, path))
        except OSError as e:
            raise MapLoadError(f"Cannot read graph file {path}: {e}") from e

    @classmethod
    def _read(cls, reader: _Reader) -> 'SparseGraph':
        magic = reader.f.read(len(_MAGIC))
        if magic != _MAGIC:
            raise MapLoadError(f"Not a graph file: {reader.path}")

        version = reader.scalar('<u4')
        if version != _VERSION:
            raise MapLoadError(f"Unsupported graph file version {version}: {reader.path}")

        graph = cls()

        n_points = reader.scalar('<u8')
        coords = reader.array('<f8', 3 * n_points).reshape(-1, 3)
        graph.points = [Point3DFeature(p, index=i) for i, p in enumerate(coords)]

        n_cameras = reader.scalar('<u4')
        for camera_idx in range(n_cameras):
            segments = graph.segments(camera_idx)
            n_segments = reader.scalar('<u4')
            for _ in range(n_segments):
                n_frames = reader.scalar('<u4')
                segments.append([graph._read_frame(reader) for _ in range(n_frames)])

        return graph

    def _read_frame(self, reader: _Reader) -> Frame:
        camera_id = reader.scalar('<i4')
        timestamp = reader.scalar('<u8')
        has_pose = reader.scalar('<u1')
        pose = reader.array('<f8', 7)

        frame = Frame(camera_id=camera_id, timestamp=timestamp,
                      pose=Pose(pose[:4], pose[4:]) if has_pose else None)

        n_features = reader.scalar('<u4')
        desc_cols = reader.scalar('<u4')
        dtype_field = reader.f.read(_DTYPE_FIELD)
        try:
            dtype_str = dtype_field.decode('ascii').strip()
            desc_dtype = np.dtype(dtype_str)
        except (UnicodeDecodeError, TypeError) as e:
            raise MapLoadError(f"Invalid descriptor type {dtype_field!r} in {reader.path}") from e

        keypoints = reader.array('<f8', 6 * n_features).reshape(-1, 6)
        descriptors = reader.array(desc_dtype, desc_cols * n_features).reshape(n_features, desc_cols)
        indices = reader.array('<i8', n_features)

        for i in range(n_features):
            feature = Point2DFeature(keypoints[i], descriptors[i], index=i, frame=frame)
            if indices[i] >= 0:
                if indices[i] >= len(self.points):
                    raise MapLoadError(f"Invalid 3D point index {indices[i]} in {reader.path}")
                point = self.points[indices[i]]
                feature.feature3d = point
                point.features2d.append(feature)
            frame.features2d.append(feature)

        return frame

