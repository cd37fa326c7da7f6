"""
Utility functions for infrastructure-based rig calibration.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import yaml
from scipy.spatial.transform import Rotation

logger = logging.getLogger(__name__)


def load_camera_config(config_path: str) -> Dict[str, Any]:
    """Load camera rig configuration from YAML file."""
    with open(config_path, 'r') as f:
        return yaml.safe_load(f)


def load_intrinsics(intrinsics_path: str) -> Dict[str, Any]:
    """
    Load camera intrinsics from YAML file.
    Supports the ROS / Main Street Autonomy calibration format.

    Returns dict with:
        - camera_matrix: 3x3 numpy array
        - dist_coeffs: distortion coefficients
        - distortion_model: string
        - image_size: (width, height)
        - is_fisheye: bool
    """
    with open(intrinsics_path, 'r') as f:
        lines = f.read().split('\n')
        yaml_lines = [l for l in lines if not l.strip().startswith('#')]
        data = yaml.safe_load('\n'.join(yaml_lines))

    camera_matrix = np.array(data['camera_matrix']['data'], dtype=np.float64).reshape(3, 3)
    dist_coeffs = np.array(data['distortion_coefficients']['data'], dtype=np.float64)

    distortion_model = data.get('distortion_model', 'plumb_bob')

    fisheye_models = ['equidistant', 'fisheye', 'kb4', 'kannala_brandt']
    is_fisheye = distortion_model.lower() in fisheye_models

    # OpenCV fisheye model takes exactly k1..k4
    if is_fisheye and len(dist_coeffs) > 4:
        logger.info("Truncating %d distortion coefficients to 4 for fisheye model",
                    len(dist_coeffs))
        dist_coeffs = dist_coeffs[:4]

    return {
        'camera_matrix': camera_matrix,
        'dist_coeffs': dist_coeffs,
        'distortion_model': distortion_model,
        'image_size': (data['image_width'], data['image_height']),
        'camera_name': data.get('camera_name', 'unknown'),
        'is_fisheye': is_fisheye
    }


def quaternion_from_matrix(R: np.ndarray) -> np.ndarray:
    """
    Convert a 3x3 rotation matrix to quaternion [x, y, z, w].

    Args:
        R: 3x3 rotation matrix

    Returns:
        Quaternion as [x, y, z, w]
    """
    trace = np.trace(R)

    if trace > 0:
        s = 0.5 / np.sqrt(trace + 1.0)
        w = 0.25 / s
        x = (R[2, 1] - R[1, 2]) * s
        y = (R[0, 2] - R[2, 0]) * s
        z = (R[1, 0] - R[0, 1]) * s
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        w = (R[2, 1] - R[1, 2]) / s
        x = 0.25 * s
        y = (R[0, 1] + R[1, 0]) / s
        z = (R[0, 2] + R[2, 0]) / s
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        w = (R[0, 2] - R[2, 0]) / s
        x = (R[0, 1] + R[1, 0]) / s
        y = 0.25 * s
        z = (R[1, 2] + R[2, 1]) / s
    else:
        s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        w = (R[1, 0] - R[0, 1]) / s
        x = (R[0, 2] + R[2, 0]) / s
        y = (R[1, 2] + R[2, 1]) / s
        z = 0.25 * s

    return np.array([x, y, z, w])


def matrix_from_quaternion(q: np.ndarray) -> np.ndarray:
    """
    Convert quaternion [x, y, z, w] to 3x3 rotation matrix.

    Args:
        q: Quaternion as [x, y, z, w]

    Returns:
        3x3 rotation matrix
    """
    x, y, z, w = q

    n = np.sqrt(x*x + y*y + z*z + w*w)
    x, y, z, w = x/n, y/n, z/n, w/n

    return np.array([
        [1 - 2*y*y - 2*z*z, 2*x*y - 2*z*w, 2*x*z + 2*y*w],
        [2*x*y + 2*z*w, 1 - 2*x*x - 2*z*z, 2*y*z - 2*x*w],
        [2*x*z - 2*y*w, 2*y*z + 2*x*w, 1 - 2*x*x - 2*y*y]
    ])


def average_quaternions(quats: Sequence[np.ndarray]) -> np.ndarray:
    """
    Average quaternions [x, y, z, w] with the eigenvector method of
    Markley et al. 2007.

    The result is the rotation minimising the sum of squared chordal
    distances to the inputs. It does not depend on input order or on the
    sign of any input quaternion; the returned sign is chosen to lie in
    the hemisphere of the first input.
    """
    Q = np.asarray(quats, dtype=np.float64).reshape(-1, 4)
    if len(Q) == 0:
        raise ValueError("Cannot average an empty set of quaternions")

    Q = Q / np.linalg.norm(Q, axis=1, keepdims=True)

    M = Q.T @ Q / len(Q)
    _, eigenvectors = np.linalg.eigh(M)

    # eigh sorts eigenvalues ascending
    q_avg = eigenvectors[:, -1]
    if np.dot(q_avg, Q[0]) < 0:
        q_avg = -q_avg

    return q_avg / np.linalg.norm(q_avg)


def ypr_from_matrix(R: np.ndarray) -> np.ndarray:
    """
    Decompose R = Rz(yaw) * Ry(pitch) * Rx(roll) into [yaw, pitch, roll].
    """
    return Rotation.from_matrix(R).as_euler('ZYX')


def matrix_from_ypr(ypr: np.ndarray) -> np.ndarray:
    """Rotation matrix Rz(yaw) * Ry(pitch) * Rx(roll) from [yaw, pitch, roll]."""
    return Rotation.from_euler('ZYX', ypr).as_matrix()


def save_extrinsics_yaml(extrinsics: Dict[str, Dict], output_path: str,
                         reference_frame: str = "cam0",
                         stats: Optional[Dict[str, Any]] = None):
    """
    Save computed extrinsics to YAML file.

    Args:
        extrinsics: Dict mapping camera_name -> {translation, quaternion, parent, child}
        output_path: Path to save the YAML file
        reference_frame: Name of the reference camera
        stats: Optional calibration statistics written as comments
    """
    lines = [
        "# Extrinsic calibration computed by infrastructure_calibration package",
        f"# Reference frame: {reference_frame}",
    ]

    if stats:
        for key, value in stats.items():
            lines.append(f"# {key}: {value}")

    lines.extend([
        "# Position xyz; Quaternions xyzw",
        "# [ x_m, y_m, z_m, qx, qy, qz, qw]",
    ])

    for cam_name, data in extrinsics.items():
        t = data['translation']
        q = data['quaternion']
        parent = data.get('parent', reference_frame)
        child = data.get('child', cam_name)

        lines.append(f"{cam_name}:")
        lines.append(f'  parent: "{parent}"')
        lines.append(f'  child: "{child}"')
        lines.append(f"  value: [{t[0]:.6f}, {t[1]:.6f}, {t[2]:.6f}, {q[0]:.6f}, {q[1]:.6f}, {q[2]:.6f}, {q[3]:.6f}]")

    os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
    with open(output_path, 'w') as f:
        f.write('\n'.join(lines) + '\n')

    logger.info("Saved extrinsics to %s", output_path)


def save_extrinsics_urdf(extrinsics: Dict[str, Dict], output_path: str,
                         reference_frame: str = "cam0"):
    """
    Save computed extrinsics to URDF format for visualization.

    Args:
        extrinsics: Dict mapping camera_name -> {translation, quaternion}
        output_path: Path to save the URDF file
        reference_frame: Name of the reference camera
    """
    lines = [
        '<?xml version="1.0"?>',
        '<robot name="camera_rig_extrinsics">',
        f'  <link name="{reference_frame}"/>',
    ]

    for cam_name, data in extrinsics.items():
        t = data['translation']
        rpy = Rotation.from_quat(data['quaternion']).as_euler('xyz')
        parent = data.get('parent', reference_frame)

        lines.extend([
            f'  <link name="{cam_name}"/>',
            f'  <joint name="{parent}_to_{cam_name}" type="fixed">',
            f'    <parent link="{parent}"/>',
            f'    <child link="{cam_name}"/>',
            f'    <origin xyz="{t[0]:.6f} {t[1]:.6f} {t[2]:.6f}" rpy="{rpy[0]:.6f} {rpy[1]:.6f} {rpy[2]:.6f}"/>',
            '  </joint>',
        ])

    lines.append('</robot>')

    with open(output_path, 'w') as f:
        f.write('\n'.join(lines) + '\n')

    logger.info("Saved URDF to %s", output_path)


def extrinsics_to_dict(poses: List[Any], camera_names: List[str]) -> Dict[str, Dict]:
    """
    Convert per-camera extrinsic poses into the {name: {translation, quaternion,
    parent, child}} mapping used by the YAML and URDF writers. The reference
    camera (index 0) is omitted.
    """
    reference = camera_names[0]
    result = {}
    for idx, pose in enumerate(poses):
        if idx == 0:
            continue
        result[camera_names[idx]] = {
            'translation': np.asarray(pose.translation, dtype=np.float64),
            'quaternion': np.asarray(pose.rotation, dtype=np.float64),
            'parent': reference,
            'child': camera_names[idx],
            'transform_matrix': pose.to_matrix(),
        }
    return result
