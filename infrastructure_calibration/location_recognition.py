"""
Place recognition against the reference map.

Every reference descriptor votes for the frame it belongs to; a query
frame's descriptors are matched to their nearest reference descriptor and
the frames with the most votes are returned as localization candidates.
"""

import logging
import os
from typing import List, Optional

import cv2
import numpy as np

from .features import build_descriptor_mat, norm_for_descriptors
from .graph import Frame, FrameID, SparseGraph

logger = logging.getLogger(__name__)


class LocationRecognition:
    """k-nearest reference frame lookup by descriptor voting."""

    CACHE_FILENAME = 'location_index.npz'

    def __init__(self):
        self._descriptors: Optional[np.ndarray] = None
        self._labels = np.zeros(0, dtype=np.int64)
        self._frame_ids: List[FrameID] = []

    @property
    def frame_count(self) -> int:
        return len(self._frame_ids)

    def setup(self, graph: SparseGraph, map_directory: Optional[str] = None):
        """
        Index every reference frame of ``graph``. A cached index in
        ``map_directory`` is used when it matches the graph. Otherwise the
        freshly built index is written there.
        """
        if map_directory is not None and self._load(graph, map_directory):
            logger.info("Loaded location index for %d frames", self.frame_count)
            return

        frame_ids = []
        blocks = []
        labels = []
        for fid in graph.frame_ids():
            frame = graph.frame(fid)
            if not frame.features2d:
                continue
            blocks.append(build_descriptor_mat(frame.features2d))
            labels.append(np.full(len(frame.features2d), len(frame_ids), dtype=np.int64))
            frame_ids.append(fid)

        self._frame_ids = frame_ids
        if blocks:
            self._descriptors = np.vstack(blocks)
            self._labels = np.concatenate(labels)
        else:
            self._descriptors = None
            self._labels = np.zeros(0, dtype=np.int64)

        logger.info("Built location index: %d frames, %d descriptors",
                    self.frame_count, len(self._labels))

        if map_directory is not None:
            try:
                self.save(map_directory)
            except OSError as e:
                logger.warning("Cannot write location index to %s: %s", map_directory, e)

    def _load(self, graph: SparseGraph, map_directory: str) -> bool:
        path = os.path.join(map_directory, self.CACHE_FILENAME)
        if not os.path.exists(path):
            return False

        with np.load(path) as data:
            descriptors = data['descriptors']
            labels = data['labels']
            frame_ids = [FrameID(*map(int, row)) for row in data['frame_ids']]

        for fid in frame_ids:
            if (fid.camera_idx >= graph.camera_count()
                    or fid.segment_idx >= len(graph.frame_segments[fid.camera_idx])
                    or fid.frame_idx >= len(graph.frame_segments[fid.camera_idx][fid.segment_idx])):
                logger.warning("Location index %s does not match the map; rebuilding", path)
                return False

        self._descriptors = descriptors
        self._labels = labels
        self._frame_ids = frame_ids
        return True

    def save(self, map_directory: str):
        if self._descriptors is None:
            return
        path = os.path.join(map_directory, self.CACHE_FILENAME)
        np.savez(path,
                 descriptors=self._descriptors,
                 labels=self._labels,
                 frame_ids=np.array(self._frame_ids, dtype=np.int64).reshape(-1, 3))
        logger.info("Saved location index to %s", path)

    def knn_match(self, frame: Frame, k: int) -> List[FrameID]:
        """Return up to ``k`` reference frames, most similar first."""
        if self._descriptors is None or not frame.features2d:
            return []

        query = build_descriptor_mat(frame.features2d)
        if query.shape[1] != self._descriptors.shape[1] or query.dtype != self._descriptors.dtype:
            logger.warning("Query descriptors do not match the location index")
            return []

        matcher = cv2.BFMatcher(norm_for_descriptors(query), crossCheck=False)
        matches = matcher.match(query, self._descriptors)
        if not matches:
            return []

        train_idx = np.array([m.trainIdx for m in matches], dtype=np.int64)
        votes = np.bincount(self._labels[train_idx], minlength=self.frame_count)

        order = np.argsort(-votes, kind='stable')
        return [self._frame_ids[i] for i in order[:k] if votes[i] > 0]
