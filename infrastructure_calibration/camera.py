"""
Projective camera model used for localization and reprojection errors.
Supports both pinhole (plumb bob) and fisheye (equidistant) distortion.
"""

from typing import Any, Dict, Optional, Tuple

import cv2
import numpy as np


class PinholeCamera:
    """
    Camera intrinsics with OpenCV projection and undistortion.

    Points are (N, 3) arrays in camera coordinates, pixels are (N, 2).
    """

    def __init__(self, camera_matrix: np.ndarray,
                 dist_coeffs: Optional[np.ndarray] = None,
                 is_fisheye: bool = False,
                 image_size: Optional[Tuple[int, int]] = None,
                 name: str = ''):
        self.camera_matrix = np.asarray(camera_matrix, dtype=np.float64).reshape(3, 3)
        self.is_fisheye = is_fisheye
        self.image_size = image_size
        self.name = name

        n_coeffs = 4 if is_fisheye else 5
        if dist_coeffs is None or len(dist_coeffs) == 0:
            dist_coeffs = np.zeros(n_coeffs)
        self.dist_coeffs = np.asarray(dist_coeffs, dtype=np.float64).ravel()

    @classmethod
    def from_intrinsics(cls, intrinsics: Dict[str, Any], name: Optional[str] = None) -> 'PinholeCamera':
        """Create a camera from a dict returned by ``utils.load_intrinsics``."""
        return cls(intrinsics['camera_matrix'],
                   intrinsics['dist_coeffs'],
                   intrinsics.get('is_fisheye', False),
                   intrinsics.get('image_size'),
                   name or intrinsics.get('camera_name', ''))

    def lift_projective(self, pixels: np.ndarray) -> np.ndarray:
        """Lift pixels to viewing rays (x, y, 1) in camera coordinates."""
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 1, 2)
        if len(pixels) == 0:
            return np.zeros((0, 3))

        if self.is_fisheye:
            normalized = cv2.fisheye.undistortPoints(pixels, self.camera_matrix, self.dist_coeffs)
        else:
            normalized = cv2.undistortPoints(pixels, self.camera_matrix, self.dist_coeffs)

        normalized = normalized.reshape(-1, 2)
        return np.hstack([normalized, np.ones((len(normalized), 1))])

    def project(self, points_cam: np.ndarray) -> np.ndarray:
        """Project points given in camera coordinates to pixels."""
        points_cam = np.asarray(points_cam, dtype=np.float64).reshape(-1, 3)
        if len(points_cam) == 0:
            return np.zeros((0, 2))

        rvec = np.zeros(3)
        tvec = np.zeros(3)

        if self.is_fisheye:
            pixels, _ = cv2.fisheye.projectPoints(points_cam.reshape(-1, 1, 3), rvec, tvec,
                                                  self.camera_matrix, self.dist_coeffs)
        else:
            pixels, _ = cv2.projectPoints(points_cam, rvec, tvec,
                                          self.camera_matrix, self.dist_coeffs)

        return pixels.reshape(-1, 2)

    def reprojection_error(self, points: np.ndarray, R: np.ndarray, t: np.ndarray,
                           observed: np.ndarray):
        """
        Pixel distance between observed pixels and the projection of
        world points under the world-to-camera transform (R, t).

        Returns a float for a single point, an (N,) array otherwise.
        """
        points = np.asarray(points, dtype=np.float64)
        single = points.ndim == 1

        P = points.reshape(-1, 3)
        P_cam = P @ np.asarray(R).T + np.asarray(t).reshape(1, 3)

        predicted = self.project(P_cam)
        errors = np.linalg.norm(predicted - np.asarray(observed, dtype=np.float64).reshape(-1, 2), axis=1)

        if single:
            return float(errors[0])
        return errors

    def __repr__(self):
        model = 'fisheye' if self.is_fisheye else 'pinhole'
        return f"PinholeCamera(name={self.name!r}, model={model})"
