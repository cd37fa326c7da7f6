# infrastructure_calibration package
"""
Infrastructure-based extrinsic calibration of multi-camera rigs.

Cameras are localized against a prebuilt sparse map of the environment;
the relative poses between cameras are then initialized from synchronized
localizations and refined jointly with the rig odometry.
"""

import logging
import sys

logger = logging.getLogger('infrastructure_calibration')
logger.setLevel(logging.INFO)

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(logging.DEBUG)

formatter = logging.Formatter('[%(levelname)s] %(message)s')
console_handler.setFormatter(formatter)

logger.addHandler(console_handler)

from .calibration_solver import InfrastructureCalibrationSolver
from .camera import PinholeCamera
from .config import CalibrationConfig, load_calibration_config, load_rig
from .graph import (
    CalibrationError,
    CameraRigExtrinsics,
    Frame,
    FrameSet,
    InitializationError,
    MapLoadError,
    Odometry,
    Pose,
    SparseGraph,
)
from .utils import load_camera_config, load_intrinsics, quaternion_from_matrix

__all__ = [
    'InfrastructureCalibrationSolver',
    'PinholeCamera',
    'CalibrationConfig',
    'load_calibration_config',
    'load_rig',
    'CalibrationError',
    'CameraRigExtrinsics',
    'Frame',
    'FrameSet',
    'InitializationError',
    'MapLoadError',
    'Odometry',
    'Pose',
    'SparseGraph',
    'load_camera_config',
    'load_intrinsics',
    'quaternion_from_matrix',
]
