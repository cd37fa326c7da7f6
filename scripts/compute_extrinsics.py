#!/usr/bin/env python3
"""
Compute rig extrinsics by localizing recorded images in a reference map.

Images are expected as <images-dir>/<camera_name>/<timestamp>.<ext>, one
image per camera for every timestamp.

Usage:
    compute_extrinsics.py \
        --cameras-config /path/to/cameras.yaml \
        --intrinsics-dir /path/to/intrinsics \
        --map-dir /path/to/map \
        --images-dir /path/to/images \
        --output /path/to/output_extrinsics.yaml
"""

import argparse
import logging
import os
import sys
from typing import Dict, List

import cv2
import numpy as np

# Add package to path for standalone execution
try:
    from infrastructure_calibration.calibration_solver import InfrastructureCalibrationSolver
    from infrastructure_calibration.config import load_calibration_config, load_rig
    from infrastructure_calibration.graph import CalibrationError
    from infrastructure_calibration.utils import save_extrinsics_yaml, save_extrinsics_urdf
except ImportError:
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    from infrastructure_calibration.calibration_solver import InfrastructureCalibrationSolver
    from infrastructure_calibration.config import load_calibration_config, load_rig
    from infrastructure_calibration.graph import CalibrationError
    from infrastructure_calibration.utils import save_extrinsics_yaml, save_extrinsics_urdf

logger = logging.getLogger('infrastructure_calibration.compute_extrinsics')

IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.bmp')


def list_images(images_dir: str, camera_names: List[str]) -> Dict[int, List[str]]:
    """
    Collect image paths per timestamp.

    Returns:
        Dict mapping timestamp -> image paths ordered by camera index, for
        timestamps where every camera has an image.
    """
    per_camera = []
    for name in camera_names:
        cam_dir = os.path.join(images_dir, name)
        images = {}
        if os.path.isdir(cam_dir):
            for f in os.listdir(cam_dir):
                stem, ext = os.path.splitext(f)
                if ext.lower() in IMAGE_EXTENSIONS and stem.isdigit():
                    images[int(stem)] = os.path.join(cam_dir, f)
        else:
            logger.warning("No image directory for camera %s", name)
        per_camera.append(images)

    all_timestamps = set().union(*(images.keys() for images in per_camera))
    common = set.intersection(*(set(images) for images in per_camera)) if per_camera else set()

    if len(common) < len(all_timestamps):
        logger.warning("Skipping %d timestamps without an image from every camera",
                       len(all_timestamps) - len(common))

    return {ts: [images[ts] for images in per_camera] for ts in sorted(common)}


def load_odometry(solver: InfrastructureCalibrationSolver, odometry_path: str):
    """Feed a whitespace separated 'timestamp x y yaw' file to the solver."""
    data = np.loadtxt(odometry_path, ndmin=2)
    for timestamp, x, y, yaw in data[:, :4]:
        solver.add_odometry(x, y, yaw, int(timestamp))


def main():
    parser = argparse.ArgumentParser(
        description='Compute rig extrinsics from images localized in a reference map'
    )

    parser.add_argument('--cameras-config', type=str, required=True,
                        help='Path to cameras.yaml config file')
    parser.add_argument('--intrinsics-dir', type=str, required=True,
                        help='Directory containing intrinsics YAML files')
    parser.add_argument('--calibration-config', type=str, default=None,
                        help='Path to calibration.yaml with solver constants (optional)')
    parser.add_argument('--map-dir', type=str, default=None,
                        help='Directory containing the reference map')

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument('--images-dir', type=str,
                        help='Directory containing one image subdirectory per camera')
    source.add_argument('--frame-sets', type=str,
                        help='Replay frame sets saved by a previous run')

    parser.add_argument('--odometry', type=str, default=None,
                        help='Vehicle odometry file with lines "timestamp x y yaw" (optional)')
    parser.add_argument('--save-frame-sets', type=str, default=None,
                        help='Save collected frame sets to this file (optional)')
    parser.add_argument('--output', '-o', type=str, default='extrinsics_calibrated.yaml',
                        help='Output file path for extrinsics (default: extrinsics_calibrated.yaml)')
    parser.add_argument('--output-urdf', type=str, default=None,
                        help='Output URDF file path (optional)')
    parser.add_argument('--optimize-points', action='store_true',
                        help='Also refine scene point positions')
    parser.add_argument('--preprocess', action='store_true',
                        help='Equalize image histograms before feature detection')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Verbose output')

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger('infrastructure_calibration').setLevel(logging.DEBUG)

    if args.images_dir and not args.map_dir:
        parser.error('--map-dir is required with --images-dir')

    try:
        logger.info("Loading configurations...")
        camera_names, cameras = load_rig(args.cameras_config, args.intrinsics_dir)
        config = load_calibration_config(args.calibration_config)
        if args.optimize_points:
            config = config.from_dict({**config.to_dict(), 'optimize_scene_points': True})

        solver = InfrastructureCalibrationSolver(cameras, config, camera_names)

        if args.frame_sets:
            solver.load_frame_sets(args.frame_sets)
        else:
            solver.load_map(args.map_dir)

            image_sets = list_images(args.images_dir, camera_names)
            logger.info("Found %d synchronized image sets", len(image_sets))

            for timestamp, paths in image_sets.items():
                images = [cv2.imread(path) for path in paths]

                if any(image is None for image in images):
                    logger.warning("Failed to load images for ts = %d", timestamp)
                    continue

                solver.add_frame_set(images, timestamp, preprocess=args.preprocess)

        if args.odometry:
            load_odometry(solver, args.odometry)

        if args.save_frame_sets:
            solver.save_frame_sets(args.save_frame_sets)

        summary = solver.run()
    except CalibrationError as e:
        logger.error("Calibration failed: %s", e)
        sys.exit(1)

    # Print results
    print("\n" + "=" * 60)
    print("CALIBRATION RESULTS")
    print("=" * 60)

    reference = camera_names[0]
    extrinsics = solver.extrinsics_dict()

    for cam_name, data in extrinsics.items():
        t = data['translation']
        q = data['quaternion']
        print(f"\n{cam_name} (relative to {reference}):")
        print(f"  Translation: [{t[0]:.6f}, {t[1]:.6f}, {t[2]:.6f}]")
        print(f"  Quaternion:  [{q[0]:.6f}, {q[1]:.6f}, {q[2]:.6f}, {q[3]:.6f}]")
        print(f"  Distance:    {np.linalg.norm(t):.4f}")

    final_error = solver.reprojection_error()
    stats = {
        'frame_sets': len(solver.framesets),
        'reprojection_error_px': f"{final_error.avg:.4f}",
        'optimizer': summary.message,
    }

    save_extrinsics_yaml(extrinsics, args.output, reference, stats)

    if args.output_urdf:
        save_extrinsics_urdf(extrinsics, args.output_urdf, reference)

    print("\nCalibration complete!")
    print(f"  Extrinsics saved to: {args.output}")
    if args.output_urdf:
        print(f"  URDF saved to: {args.output_urdf}")


if __name__ == '__main__':
    main()
