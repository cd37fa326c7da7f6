"""
Joint refinement of camera extrinsics, rig odometry and (optionally)
scene points by robust sparse nonlinear least squares.

Parameter layout:
    [cameras (δrot 3, t 3) | odometry (position 3, attitude 3) | points (3)]

Extrinsic rotations stay on the unit-quaternion manifold: each camera
carries a 3-vector increment δ applied as R = R0 · exp(δ) and the result
is written back as a normalized quaternion. The reference camera (index 0)
and cameras without observations have no parameters.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix
from scipy.spatial.transform import Rotation

from .config import CalibrationConfig
from .graph import CameraRigExtrinsics, FrameSet, Odometry, Point3DFeature, Pose
from .reprojection import ErrorStats, session_reprojection_error
from .utils import quaternion_from_matrix

logger = logging.getLogger(__name__)


@dataclass
class RefinementSummary:
    success: bool
    message: str
    iterations: int = 0
    function_evaluations: int = 0
    initial_cost: float = 0.0
    final_cost: float = 0.0
    initial_error: Optional[ErrorStats] = None
    final_error: Optional[ErrorStats] = None
    elapsed: float = 0.0

    def brief_report(self) -> str:
        return (f"{'Converged' if self.success else 'Stopped'}: {self.message} | "
                f"iterations = {self.iterations}, evaluations = {self.function_evaluations}, "
                f"cost {self.initial_cost:.6g} -> {self.final_cost:.6g}")


class _Problem:
    """Observation tables and parameter layout of one refinement run."""

    def __init__(self, framesets: Sequence[FrameSet], extrinsics: Sequence[Pose],
                 optimize_scene_points: bool):
        self.optimize_scene_points = optimize_scene_points

        obs_cam, obs_odo, obs_point, observed = [], [], [], []
        odometry_index: Dict[Odometry, int] = {}
        point_index: Dict[Point3DFeature, int] = {}
        self.odometry: List[Odometry] = []
        self.points: List[Point3DFeature] = []

        for frameset in framesets:
            for frame in frameset.frames:
                if frame.odometry is None:
                    continue

                for feature in frame.features2d:
                    p3d = feature.feature3d
                    if p3d is None:
                        continue

                    if frame.odometry not in odometry_index:
                        odometry_index[frame.odometry] = len(self.odometry)
                        self.odometry.append(frame.odometry)
                    if p3d not in point_index:
                        point_index[p3d] = len(self.points)
                        self.points.append(p3d)

                    obs_cam.append(frame.camera_id)
                    obs_odo.append(odometry_index[frame.odometry])
                    obs_point.append(point_index[p3d])
                    observed.append(feature.pt)

        self.obs_cam = np.array(obs_cam, dtype=np.int64)
        self.obs_odo = np.array(obs_odo, dtype=np.int64)
        self.obs_point = np.array(obs_point, dtype=np.int64)
        self.observed = np.array(observed, dtype=np.float64).reshape(-1, 2)
        self.point_coords = np.array([p.point for p in self.points], dtype=np.float64).reshape(-1, 3)

        # fixed values for every camera; free cameras are overwritten per evaluation
        self.R_ext0 = np.array([pose.rotation_matrix() for pose in extrinsics]).reshape(-1, 3, 3)
        self.t_ext0 = np.array([pose.translation for pose in extrinsics]).reshape(-1, 3)

        self.free_cameras = sorted(set(obs_cam) - {0})
        self.camera_offset = {cam: 6 * i for i, cam in enumerate(self.free_cameras)}
        self.odometry_offset = 6 * len(self.free_cameras)
        self.point_offset = self.odometry_offset + 6 * len(self.odometry)
        self.n_params = self.point_offset + (3 * len(self.points) if optimize_scene_points else 0)

    @property
    def n_observations(self) -> int:
        return len(self.obs_cam)

    def initial_parameters(self) -> np.ndarray:
        x0 = np.zeros(self.n_params)
        for cam, offset in self.camera_offset.items():
            x0[offset + 3:offset + 6] = self.t_ext0[cam]
        for i, odometry in enumerate(self.odometry):
            offset = self.odometry_offset + 6 * i
            x0[offset:offset + 3] = odometry.position
            x0[offset + 3:offset + 6] = odometry.attitude
        if self.optimize_scene_points:
            x0[self.point_offset:] = self.point_coords.ravel()
        return x0

    def camera_extrinsics(self, x: np.ndarray):
        R_ext = self.R_ext0.copy()
        t_ext = self.t_ext0.copy()
        for cam, offset in self.camera_offset.items():
            R_ext[cam] = self.R_ext0[cam] @ Rotation.from_rotvec(x[offset:offset + 3]).as_matrix()
            t_ext[cam] = x[offset + 3:offset + 6]
        return R_ext, t_ext

    def unpack_odometry(self, x: np.ndarray):
        block = x[self.odometry_offset:self.point_offset].reshape(-1, 6)
        return block[:, :3], block[:, 3:]

    def unpack_points(self, x: np.ndarray) -> np.ndarray:
        if self.optimize_scene_points:
            return x[self.point_offset:].reshape(-1, 3)
        return self.point_coords

    def jacobian_sparsity(self) -> lil_matrix:
        S = lil_matrix((2 * self.n_observations, self.n_params), dtype=bool)
        for k in range(self.n_observations):
            rows = slice(2 * k, 2 * k + 2)

            cam = self.obs_cam[k]
            if cam in self.camera_offset:
                offset = self.camera_offset[cam]
                S[rows, offset:offset + 6] = True

            offset = self.odometry_offset + 6 * self.obs_odo[k]
            S[rows, offset:offset + 6] = True

            if self.optimize_scene_points:
                offset = self.point_offset + 3 * self.obs_point[k]
                S[rows, offset:offset + 3] = True
        return S


class JointRefiner:
    """Bundle adjustment over extrinsics, odometry and optionally scene points."""

    def __init__(self, cameras: Sequence, config: Optional[CalibrationConfig] = None,
                 solver: Callable = least_squares):
        self.cameras = cameras
        self.config = config or CalibrationConfig()
        self.solver = solver

    def _residuals(self, x: np.ndarray, problem: _Problem) -> np.ndarray:
        R_ext, t_ext = problem.camera_extrinsics(x)
        positions, attitudes = problem.unpack_odometry(x)
        points = problem.unpack_points(x)

        # world-to-rig rotation is (Rz Ry Rx)^T, see reprojection.world_to_camera
        R_rig = Rotation.from_euler('ZYX', attitudes).as_matrix().reshape(-1, 3, 3)

        X = points[problem.obs_point] - positions[problem.obs_odo]
        X_rig = np.einsum('kji,kj->ki', R_rig[problem.obs_odo], X)
        X_cam = np.einsum('kji,kj->ki', R_ext[problem.obs_cam], X_rig - t_ext[problem.obs_cam])

        predicted = np.empty_like(problem.observed)
        for cam in np.unique(problem.obs_cam):
            mask = problem.obs_cam == cam
            predicted[mask] = self.cameras[cam].project(X_cam[mask])

        return (predicted - problem.observed).ravel()

    def _robust_cost(self, residuals: np.ndarray) -> float:
        """Cauchy cost as reported by least_squares."""
        c = self.config.loss_scale
        return float(0.5 * c ** 2 * np.sum(np.log1p((residuals / c) ** 2)))

    def refine(self, framesets: Sequence[FrameSet], extrinsics: CameraRigExtrinsics,
               optimize_scene_points: Optional[bool] = None) -> RefinementSummary:
        """
        Optimize in place: extrinsics are written back to ``extrinsics``,
        odometry objects and (optionally) scene points are updated on the
        frame graph.
        """
        if optimize_scene_points is None:
            optimize_scene_points = self.config.optimize_scene_points

        ts_start = time.time()
        poses = extrinsics.poses()
        initial_error = session_reprojection_error(framesets, self.cameras, poses)
        logger.info("Initial reprojection error: %s", initial_error)

        problem = _Problem(framesets, poses, optimize_scene_points)
        if problem.n_observations == 0:
            logger.warning("No 2D-3D observations to optimize")
            return RefinementSummary(False, "no observations",
                                     initial_error=initial_error, final_error=initial_error)

        x0 = problem.initial_parameters()
        result = self.solver(
            self._residuals, x0,
            jac_sparsity=problem.jacobian_sparsity(),
            method='trf',
            loss='cauchy', f_scale=self.config.loss_scale,
            x_scale='jac',
            max_nfev=self.config.max_iterations,
            args=(problem,)
        )

        self._write_back(result.x, problem, extrinsics)

        final_error = session_reprojection_error(framesets, self.cameras, extrinsics.poses())

        summary = RefinementSummary(
            success=bool(result.success),
            message=str(result.message),
            iterations=int(getattr(result, 'njev', 0) or 0),
            function_evaluations=int(result.nfev),
            initial_cost=self._robust_cost(self._residuals(x0, problem)),
            final_cost=float(result.cost),
            initial_error=initial_error,
            final_error=final_error,
            elapsed=time.time() - ts_start
        )

        logger.info(summary.brief_report())
        logger.info("Optimization took %.3f s", summary.elapsed)
        logger.info("Final reprojection error: %s", final_error)

        return summary

    @staticmethod
    def _write_back(x: np.ndarray, problem: _Problem, extrinsics: CameraRigExtrinsics):
        R_ext, t_ext = problem.camera_extrinsics(x)
        for cam in problem.free_cameras:
            extrinsics.set_global_camera_pose(cam, Pose(quaternion_from_matrix(R_ext[cam]), t_ext[cam]))

        positions, attitudes = problem.unpack_odometry(x)
        for i, odometry in enumerate(problem.odometry):
            odometry.position = positions[i].copy()
            odometry.attitude = attitudes[i].copy()

        if problem.optimize_scene_points:
            coords = problem.unpack_points(x)
            for i, point in enumerate(problem.points):
                point.point = coords[i].copy()
