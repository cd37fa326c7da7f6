"""
Session-wide map of 3D scene points observed during calibration.

Reference map points are identified by their stable index in the reference
graph's point arena. Every reference point observed in the session resolves
to exactly one locally owned Point3DFeature, regardless of which camera or
frame observed it first.
"""

import threading
from typing import Dict, Iterable, Iterator, List, Optional

from .graph import Point2DFeature, Point3DFeature


class Point3DMap:
    """Identity-keyed, thread-safe arena of session 3D points."""

    def __init__(self):
        self._lock = threading.Lock()
        self._points: List[Point3DFeature] = []
        self._index: Dict[int, int] = {}

    @classmethod
    def from_points(cls, points: Iterable[Point3DFeature]) -> 'Point3DMap':
        """
        Adopt already associated points, e.g. from a replayed frame-set file.

        Adopted points carry no reference-map key, so later observations
        never resolve to them and always get their own session points.
        """
        point_map = cls()
        for point in points:
            point.index = len(point_map._points)
            point_map._points.append(point)
        return point_map

    def __len__(self) -> int:
        with self._lock:
            return len(self._points)

    def __iter__(self) -> Iterator[Point3DFeature]:
        return iter(self.points)

    @property
    def points(self) -> List[Point3DFeature]:
        with self._lock:
            return list(self._points)

    def get(self, ref_index: int) -> Optional[Point3DFeature]:
        with self._lock:
            handle = self._index.get(ref_index)
            return self._points[handle] if handle is not None else None

    def _lookup_or_create(self, ref_point: Point3DFeature) -> Point3DFeature:
        if ref_point.index < 0:
            raise ValueError("Reference point has no stable index")

        handle = self._index.get(ref_point.index)
        if handle is not None:
            return self._points[handle]

        handle = len(self._points)
        feature3d = Point3DFeature(ref_point.point, index=handle)
        self._points.append(feature3d)
        self._index[ref_point.index] = handle
        return feature3d

    def lookup_or_create(self, ref_point: Point3DFeature) -> Point3DFeature:
        """Session point for ``ref_point``, created on first sight."""
        with self._lock:
            return self._lookup_or_create(ref_point)

    def add_observation(self, ref_point: Point3DFeature,
                        feature2d: Point2DFeature) -> Point3DFeature:
        """
        Look up or create the session point for ``ref_point`` and link
        ``feature2d`` to it in both directions.
        """
        with self._lock:
            feature3d = self._lookup_or_create(ref_point)
            feature3d.features2d.append(feature2d)
            feature2d.feature3d = feature3d

        return feature3d

    def clear(self):
        with self._lock:
            self._points.clear()
            self._index.clear()
