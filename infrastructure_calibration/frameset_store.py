"""
Persistence of calibration sessions as sparse graph files, so that a
session can be replayed without re-running detection and localization.
"""

import logging
from typing import List, Sequence, Tuple

from .graph import FrameSet, SparseGraph
from .point_map import Point3DMap

logger = logging.getLogger(__name__)


def frame_sets_to_graph(framesets: Sequence[FrameSet], camera_count: int) -> SparseGraph:
    """Group frames by camera into a single segment each, in arrival order."""
    graph = SparseGraph(camera_count)

    for frameset in framesets:
        for frame in frameset.frames:
            segments = graph.segments(frame.camera_id)
            if not segments:
                segments.append([])
            segments[0].append(frame)

    for segments in graph.frame_segments:
        if not segments:
            segments.append([])

    return graph


def graph_to_frame_sets(graph: SparseGraph) -> List[FrameSet]:
    """
    Rebuild the time-ordered frame sets of a session graph by a k-way merge
    over the first segment of every camera: each step takes the smallest
    pending timestamp and collects the frame of every camera carrying it.
    """
    segments = [cam_segments[0] if cam_segments else [] for cam_segments in graph.frame_segments]
    marks = [0] * len(segments)

    framesets = []
    while any(mark < len(segment) for mark, segment in zip(marks, segments)):
        timestamp = min(segment[mark].timestamp
                        for mark, segment in zip(marks, segments) if mark < len(segment))

        frameset = FrameSet(timestamp=timestamp)
        for i, segment in enumerate(segments):
            if marks[i] < len(segment) and segment[marks[i]].timestamp == timestamp:
                frameset.frames.append(segment[marks[i]])
                marks[i] += 1

        framesets.append(frameset)

    return framesets


def save_frame_sets(framesets: Sequence[FrameSet], camera_count: int, path: str):
    frame_sets_to_graph(framesets, camera_count).write_binary(path)
    logger.info("Wrote %d frame sets to %s", len(framesets), path)


def load_frame_sets(path: str) -> Tuple[List[FrameSet], Point3DMap]:
    """
    Load frame sets written by ``save_frame_sets``.

    Returns:
        Tuple of (frame sets ordered by timestamp, point map holding their 3D points)

    Raises:
        MapLoadError: if the file cannot be read
    """
    graph = SparseGraph.read_binary(path)

    framesets = graph_to_frame_sets(graph)
    point_map = Point3DMap.from_points(graph.points)

    logger.info("Loaded %d frame sets from %s", len(framesets), path)
    return framesets, point_map
