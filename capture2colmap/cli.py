"""
Command-line interface for capture2colmap.

This module provides the main entry point for the CLI tool.

Exit codes:
    0: success
    1: configuration error
    2: format or I/O error (including dataset validation issues)
    130: cancelled (Ctrl-C)
"""

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Optional

import numpy as np

from . import coordinates
from .camera import Pose
from .config import create_argument_parser, Config
from .coverage import CoverageAnalyzer
from .dataset import Dataset, DatasetWriter, validate_dataset
from .depth import load_depth, save_preview, validate_depth_range
from .errors import CancelledError, CaptureError, ConfigurationError, FormatError
from .exporter import read_model
from .path import TrajectoryPlanner, validate_trajectory
from .ply import ply_info, read_point_cloud, splats_from_point_cloud, validate_splats, write_splats
from .utils import compute_auto_orbit_radius

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_FORMAT = 2
EXIT_CANCELLED = 130


def _resolve_sparse_dir(path: str) -> Path:
    """Accept either a dataset root or the sparse model directory itself."""
    path = Path(path)
    if (path / "sparse" / "0").is_dir():
        return path / "sparse" / "0"
    return path


def run_plan(config: Config, args: argparse.Namespace, cancel_event: threading.Event) -> int:
    """Generate a trajectory, report coverage, and optionally write its COLMAP model."""
    traj = config.trajectory
    cov = config.coverage
    convention = coordinates.get_convention(traj.convention)
    camera = config.camera.to_camera_model()
    bounds = (np.asarray(cov.bounds_min, dtype=np.float64), np.asarray(cov.bounds_max, dtype=np.float64))

    radius = traj.radius
    if radius is None:
        radius = compute_auto_orbit_radius(
            bounds, (camera.width, camera.height), camera.fx, traj.fill_ratio, convention
        )

    if args.verbose:
        print("=" * 60)
        print("capture2colmap - trajectory planning")
        print("=" * 60)
        print(f"Pattern: {traj.pattern} ({traj.count} poses)")
        print(f"Radius: {radius:.3f} ({convention.name})")
        print(f"Camera: {camera.width}x{camera.height}, {camera.horizontal_fov_deg:.1f} deg HFOV")
        print("=" * 60)

    planner = TrajectoryPlanner(
        center=traj.center,
        radius=radius,
        convention=convention,
        min_elevation_deg=traj.min_elevation_deg,
        max_elevation_deg=traj.max_elevation_deg,
        start_azimuth_deg=traj.start_azimuth_deg,
    )
    analyzer = CoverageAnalyzer(
        bounds[0], bounds[1],
        resolution=cov.resolution,
        hfov_deg=camera.horizontal_fov_deg,
        aspect_ratio=camera.aspect_ratio,
        convention=convention,
    )

    params = traj.pattern_params()
    if traj.pattern == "spline":
        # Config keyframes are bare positions; orient them toward the center
        params["keyframes"] = [
            Pose.look_at(position, planner.center, convention) for position in params["keyframes"]
        ]
    if traj.pattern == "adaptive":
        params.update(
            analyzer=analyzer,
            min_views=cov.min_views,
            target_coverage=cov.target_coverage,
            max_passes=cov.max_passes,
            cancel_event=cancel_event,
        )
    poses = planner.generate(traj.pattern, traj.count, **params)
    print(f"Generated {len(poses)} poses ({traj.pattern})")

    report = analyzer.analyze(poses, cov.min_views, cancel_event)
    print(f"Coverage: {report.summary()}")

    warnings = validate_trajectory(poses, planner.center, traj.min_elevation_deg, traj.max_elevation_deg)
    warnings += camera.validate_for_training()
    for warning in warnings:
        print(f"  Warning: {warning}")

    if args.no_export:
        return EXIT_OK

    writer = DatasetWriter(
        config.export.output_dir,
        binary=config.export.binary,
        text=config.export.text,
        workers=config.export.workers,
        depth_format=config.depth.format,
    )
    dataset = Dataset.from_poses(camera, poses, config.export.filename_pattern)
    manifest = writer.write(dataset, cancel_event)
    print(f"COLMAP model ({manifest.n_frames} images) → {writer.sparse_dir}")
    return EXIT_OK


def run_coverage(config: Config, args: argparse.Namespace, cancel_event: threading.Event) -> int:
    """Report voxel coverage of the poses in an existing COLMAP model."""
    cov = config.coverage
    sparse_dir = _resolve_sparse_dir(args.model)
    cameras, images, _ = read_model(sparse_dir)
    if not images:
        raise FormatError(f"No images in {sparse_dir}")

    first = images[min(images)]
    camera = cameras.get(first.camera_id)
    if camera is None:
        raise FormatError(f"Image {first.image_id} references unknown camera {first.camera_id}")

    poses = [images[image_id].to_pose() for image_id in sorted(images)]
    analyzer = CoverageAnalyzer(
        cov.bounds_min, cov.bounds_max,
        resolution=cov.resolution,
        hfov_deg=camera.horizontal_fov_deg,
        aspect_ratio=camera.aspect_ratio,
        convention=coordinates.get_convention(config.trajectory.convention),
    )
    report = analyzer.analyze(poses, cov.min_views, cancel_event)
    print(f"Coverage: {report.summary()}")

    regions = analyzer.under_covered_regions(report.counts, cov.min_views)
    for centroid, n_voxels in regions[:5]:
        print(f"  Under-covered: {n_voxels} voxels around {np.round(centroid, 3).tolist()}")
    return EXIT_OK


def run_validate(config: Config, args: argparse.Namespace, cancel_event: threading.Event) -> int:
    """Check a dataset directory; non-zero exit when issues are found."""
    issues = validate_dataset(args.dataset)
    if not issues:
        print(f"✓ {args.dataset}: no issues found")
        return EXIT_OK
    for issue in issues:
        print(f"  {issue}")
    print(f"{len(issues)} issue(s) found in {args.dataset}")
    return EXIT_FORMAT


def run_splat_init(config: Config, args: argparse.Namespace, cancel_event: threading.Event) -> int:
    """Initialize a splat PLY from a point cloud or a model's points3D."""
    source = Path(args.model)
    if source.suffix.lower() == ".ply":
        info = ply_info(source)
        if info.is_splat:
            raise ConfigurationError(f"{source} is already a Gaussian splat file")
        points, colors = read_point_cloud(source)
    else:
        _, _, point_records = read_model(_resolve_sparse_dir(args.model))
        if not point_records:
            raise ConfigurationError(f"{source} has no points3D to initialize splats from")
        records = [point_records[i] for i in sorted(point_records)]
        points = np.array([p.xyz for p in records])
        colors = np.array([p.rgb for p in records], dtype=np.uint8)

    initial_scale = args.initial_scale
    if initial_scale is None:
        initial_scale = config.export.splat_initial_scale

    splats = splats_from_point_cloud(points, colors, initial_scale=initial_scale, normals=not args.no_normals)
    for warning in validate_splats(splats):
        print(f"  Warning: {warning}")

    path = write_splats(args.output, splats)
    print(f"{len(splats)} splats ({splats.record_size} bytes each) → {path}")
    return EXIT_OK


def run_depth_preview(config: Config, args: argparse.Namespace, cancel_event: threading.Event) -> int:
    """Write an 8-bit preview of a saved depth map."""
    result = load_depth(args.depth)
    for warning in validate_depth_range(result):
        print(f"  Warning: {warning}")

    processor = config.depth.to_processor()
    image = processor.preview(result, config.depth.colormap)
    path = save_preview(image, args.output)
    print(f"Depth preview ({result.width}x{result.height}, {config.depth.colormap or 'grayscale'}) → {path}")
    return EXIT_OK


COMMANDS = {
    "plan": run_plan,
    "coverage": run_coverage,
    "validate": run_validate,
    "splat-init": run_splat_init,
    "depth-preview": run_depth_preview,
}


def main(argv: Optional[list] = None) -> int:
    """
    Main entry point for CLI.

    Args:
        argv: Command-line arguments (None = sys.argv)

    Returns:
        Exit code (0 = success, non-zero = error)
    """
    # Parse arguments
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    # Handle --save-config
    if args.save_config:
        template = Config.generate_default_config_template()
        with open(args.save_config, 'w') as f:
            f.write(template)
        print(f"Default configuration saved to: {args.save_config}")
        print(f"Edit this file and use with: capture2colmap plan --config {args.save_config}")
        return EXIT_OK

    if args.command is None:
        parser.print_help(sys.stderr)
        return EXIT_CONFIG

    verbose = getattr(args, "verbose", False)
    args.verbose = verbose

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s"
    )

    # Create config
    try:
        config = Config.from_args(args)
        config.validate()
    except (ConfigurationError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        print("\nUse --help for usage information or --save-config to generate a template.", file=sys.stderr)
        return EXIT_CONFIG
    except OSError as e:
        print(f"Error: Cannot read config: {e}", file=sys.stderr)
        return EXIT_FORMAT

    cancel_event = threading.Event()
    try:
        return COMMANDS[args.command](config, args, cancel_event)

    except KeyboardInterrupt:
        cancel_event.set()
        print("\nCancelled.", file=sys.stderr)
        return EXIT_CANCELLED
    except CancelledError as e:
        print(f"Cancelled: {e}", file=sys.stderr)
        return EXIT_CANCELLED
    except (ConfigurationError, ValueError) as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except (FormatError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FORMAT
    except CaptureError as e:
        print(f"Error: {e}", file=sys.stderr)
        if verbose:
            import traceback
            traceback.print_exc()
        return EXIT_CONFIG


if __name__ == "__main__":
    sys.exit(main())
