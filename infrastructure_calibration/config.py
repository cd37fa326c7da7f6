"""
Calibration configuration: tuning constants and rig/camera loading.
"""

import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .camera import PinholeCamera
from .utils import load_camera_config, load_intrinsics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalibrationConfig:
    """Constants fixed at construction of the calibration solver."""
    # 2D-2D matching
    max_distance_ratio: float = 0.7
    min_correspondences_2d2d: int = 20
    min_correspondences_2d3d: int = 25

    # Keyframe gating (reference map units)
    min_keyframe_distance: float = 0.3

    # Place recognition
    nearest_image_matches: int = 10

    # PnP RANSAC; the pixel threshold is scaled by the nominal focal length
    # because PnP runs on normalised image coordinates
    nominal_focal_length: float = 300.0
    reproj_error_thresh: float = 2.0
    pnp_ransac_iterations: int = 200
    pnp_confidence: float = 0.99

    # Feature pipeline
    feature_type: str = 'SIFT'
    max_features: int = 0

    # Joint refinement
    max_iterations: int = 1000
    loss_scale: float = 1.0
    optimize_scene_points: bool = False

    @property
    def scaled_reproj_error_thresh(self) -> float:
        return self.reproj_error_thresh / self.nominal_focal_length

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CalibrationConfig':
        if not data:
            return cls()

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown calibration config keys: {sorted(unknown)}")

        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_calibration_config(config_path: Optional[str]) -> CalibrationConfig:
    """Load calibration constants from a YAML file (defaults when path is None)."""
    if config_path is None:
        return CalibrationConfig()

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f)

    return CalibrationConfig.from_dict(data)


def load_cameras(cameras_config: Dict[str, Any],
                 intrinsics_dir: str) -> Tuple[List[str], List[PinholeCamera]]:
    """
    Build the ordered camera list of a rig.

    Cameras are indexed in the order they appear under ``cameras``; if a
    ``reference_camera`` is given it is moved to index 0.

    Returns:
        (camera_names, cameras)
    """
    camera_entries = cameras_config.get('cameras')
    if not camera_entries:
        raise ValueError("No cameras defined in config")

    names = list(camera_entries.keys())

    reference = cameras_config.get('reference_camera')
    if reference is not None:
        if reference not in camera_entries:
            raise ValueError(f"Reference camera {reference} is not a configured camera")
        names.remove(reference)
        names.insert(0, reference)

    cameras = []
    for name in names:
        cam_config = camera_entries[name] or {}
        intrinsics_file = cam_config.get('intrinsics_file')

        if intrinsics_file is None:
            raise ValueError(f"No intrinsics file specified for camera {name}")

        intrinsics = load_intrinsics(os.path.join(intrinsics_dir, intrinsics_file))

        if 'distortion_model' in cam_config:
            intrinsics['is_fisheye'] = cam_config['distortion_model'] == 'fisheye'
            if intrinsics['is_fisheye']:
                intrinsics['dist_coeffs'] = intrinsics['dist_coeffs'][:4]

        cameras.append(PinholeCamera.from_intrinsics(intrinsics, name=name))
        logger.info("Loaded camera %d '%s' (%s)", len(cameras) - 1, name,
                    'fisheye' if intrinsics['is_fisheye'] else 'pinhole')

    return names, cameras


def load_rig(cameras_config_path: str,
             intrinsics_dir: str) -> Tuple[List[str], List[PinholeCamera]]:
    """Load a rig description from its cameras YAML file."""
    return load_cameras(load_camera_config(cameras_config_path), intrinsics_dir)
