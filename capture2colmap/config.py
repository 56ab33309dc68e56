"""
Configuration management for capture2colmap.

Handles:
- Command-line argument parsing
- YAML config file loading
- Configuration validation
- Merging configs with defaults
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional
import argparse

import numpy as np

from . import coordinates
from .camera import CameraModel, CameraModelKind
from .depth import DEPTH_FORMATS, DepthProcessor
from .errors import ConfigurationError
from .path import MAX_REFINEMENT_PASSES, PATTERNS


@dataclass
class CameraConfig:
    """Camera intrinsics configuration."""
    width: int = 1920
    height: int = 1080
    hfov_deg: float = 90.0
    focal_length: Optional[float] = None  # Pixels; overrides hfov_deg if set
    model: str = "PINHOLE"
    camera_id: int = 1

    def to_camera_model(self) -> CameraModel:
        kind = CameraModelKind.from_name(self.model)
        if self.focal_length is not None:
            return CameraModel.from_focal(
                self.camera_id, self.width, self.height,
                (self.focal_length, self.focal_length), kind=kind
            )
        return CameraModel.from_fov(self.camera_id, self.width, self.height, self.hfov_deg, kind)


@dataclass
class TrajectoryConfig:
    """Trajectory configuration."""
    pattern: str = "spherical"  # spherical, orbital, hemisphere, spiral, spline, adaptive, panoramic
    count: int = 200
    center: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    radius: Optional[float] = None  # None = auto-compute from coverage bounds
    fill_ratio: float = 0.8
    convention: str = "opengl"
    min_elevation_deg: float = -90.0
    max_elevation_deg: float = 90.0
    start_azimuth_deg: float = 0.0

    # Orbital / hemisphere
    num_rings: int = 5
    views_per_ring: Optional[int] = None  # None = count // num_rings
    stagger: bool = False
    radius_variation: float = 0.0

    # Spiral
    turns: float = 3.0

    # Spline: list of [x, y, z] positions
    keyframes: List[List[float]] = field(default_factory=list)
    look_at_center: bool = False

    def pattern_params(self) -> Dict[str, Any]:
        """Keyword arguments for TrajectoryPlanner.generate()."""
        if self.pattern in ("orbital", "hemisphere"):
            return {
                "num_rings": self.num_rings,
                "views_per_ring": self.views_per_ring,
                "stagger": self.stagger,
                "radius_variation": self.radius_variation,
            }
        if self.pattern == "spiral":
            return {"turns": self.turns, "radius_variation": self.radius_variation}
        if self.pattern == "spline":
            return {"keyframes": self.keyframes, "look_at_center": self.look_at_center}
        return {}


@dataclass
class DepthConfig:
    """Depth linearization configuration."""
    near: float = 10.0
    far: float = 100000.0
    unbounded_far: bool = False
    unit_scale: float = 0.01  # Centimeters to meters
    units: str = "m"
    invert: bool = False
    gamma: float = 1.0  # Display only
    format: str = "npy"
    colormap: Optional[str] = None

    def to_processor(self) -> DepthProcessor:
        return DepthProcessor(
            near=self.near,
            far=self.far,
            unbounded_far=self.unbounded_far,
            unit_scale=self.unit_scale,
            units=self.units,
            invert=self.invert,
            gamma=self.gamma,
        )


@dataclass
class CoverageConfig:
    """Coverage analysis configuration."""
    bounds_min: List[float] = field(default_factory=lambda: [-1.0, -1.0, -1.0])
    bounds_max: List[float] = field(default_factory=lambda: [1.0, 1.0, 1.0])
    resolution: int = 32
    min_views: int = 3
    target_coverage: float = 0.95
    max_passes: int = 10


@dataclass
class ExportConfig:
    """Export configuration."""
    output_dir: str = "./output"
    binary: bool = True
    text: bool = False
    filename_pattern: str = "frame_{:04d}.png"
    workers: Optional[int] = None  # None = CPU count
    splat_initial_scale: float = -5.0


SECTIONS = {
    "camera": CameraConfig,
    "trajectory": TrajectoryConfig,
    "depth": DepthConfig,
    "coverage": CoverageConfig,
    "export": ExportConfig,
}


def _load_section(section_cls, data: Optional[Dict[str, Any]], name: str):
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(section_cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown option(s) in '{name}': {', '.join(unknown)}")
    defaults = section_cls()
    return section_cls(**{key: data.get(key, getattr(defaults, key)) for key in known})


@dataclass
class Config:
    """Complete configuration."""
    camera: CameraConfig = field(default_factory=CameraConfig)
    trajectory: TrajectoryConfig = field(default_factory=TrajectoryConfig)
    depth: DepthConfig = field(default_factory=DepthConfig)
    coverage: CoverageConfig = field(default_factory=CoverageConfig)
    export: ExportConfig = field(default_factory=ExportConfig)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "Config":
        """
        Create config from parsed command-line arguments.

        Loads config file if specified, then applies command-line overrides.

        Args:
            args: Parsed arguments from argparse

        Returns:
            Config instance
        """
        config_path = getattr(args, "config", None)
        config = cls.from_yaml(config_path) if config_path else cls()

        def override(section, attr: str, arg_name: Optional[str] = None):
            value = getattr(args, arg_name or attr, None)
            if value is not None:
                setattr(section, attr, value)

        # Camera overrides
        override(config.camera, "width")
        override(config.camera, "height")
        override(config.camera, "hfov_deg", "fov")
        override(config.camera, "focal_length")

        # Trajectory overrides
        override(config.trajectory, "pattern")
        override(config.trajectory, "count")
        override(config.trajectory, "radius")
        override(config.trajectory, "convention")
        override(config.trajectory, "min_elevation_deg", "min_elevation")
        override(config.trajectory, "max_elevation_deg", "max_elevation")
        override(config.trajectory, "num_rings")
        if getattr(args, "center", None) is not None:
            config.trajectory.center = [float(v) for v in args.center]

        # Depth overrides
        override(config.depth, "colormap")
        override(config.depth, "gamma")

        # Coverage overrides
        override(config.coverage, "resolution", "voxel_resolution")
        override(config.coverage, "min_views")
        if getattr(args, "bounds_min", None) is not None:
            config.coverage.bounds_min = [float(v) for v in args.bounds_min]
        if getattr(args, "bounds_max", None) is not None:
            config.coverage.bounds_max = [float(v) for v in args.bounds_max]

        # Export overrides
        override(config.export, "output_dir")
        override(config.export, "workers")
        if getattr(args, "text", False):
            config.export.text = True
        if getattr(args, "no_binary", False):
            config.export.binary = False

        return config

    @classmethod
    def from_yaml(cls, filepath: str) -> "Config":
        """
        Load config from YAML file.

        Missing sections and options take their defaults.

        Args:
            filepath: Path to YAML config file

        Raises:
            ConfigurationError: On unknown sections or options
        """
        try:
            import yaml
        except ImportError:
            raise ImportError(
                "PyYAML is required for config files. "
                "Install with: pip install pyyaml"
            )

        with open(filepath, 'r') as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {filepath} must contain a mapping")
        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise ConfigurationError(f"Unknown config section(s): {', '.join(unknown)}")

        return cls(**{
            name: _load_section(section_cls, data.get(name), name)
            for name, section_cls in SECTIONS.items()
        })

    def to_dict(self) -> Dict[str, Any]:
        return {name: asdict(getattr(self, name)) for name in SECTIONS}

    def to_yaml(self, filepath: str) -> None:
        """
        Save config to YAML file.

        Args:
            filepath: Path to save YAML config file
        """
        try:
            import yaml
        except ImportError:
            raise ImportError(
                "PyYAML is required for config files. "
                "Install with: pip install pyyaml"
            )

        with open(filepath, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def validate(self) -> None:
        """
        Check option values and combinations.

        Raises:
            ConfigurationError: Describing the first invalid option
        """
        cam = self.camera
        if cam.width <= 0 or cam.height <= 0:
            raise ConfigurationError(f"Image size must be positive, got {cam.width}x{cam.height}")
        if not 0.0 < cam.hfov_deg < 180.0:
            raise ConfigurationError(f"camera.hfov_deg must be in (0, 180), got {cam.hfov_deg}")
        if cam.focal_length is not None and cam.focal_length <= 0:
            raise ConfigurationError(f"camera.focal_length must be positive, got {cam.focal_length}")
        CameraModelKind.from_name(cam.model)

        traj = self.trajectory
        if traj.pattern not in PATTERNS:
            raise ConfigurationError(
                f"Unknown trajectory pattern '{traj.pattern}'. Choose from: {', '.join(PATTERNS)}"
            )
        if traj.count < 1:
            raise ConfigurationError(f"trajectory.count must be >= 1, got {traj.count}")
        if traj.radius is not None and traj.radius <= 0:
            raise ConfigurationError(f"trajectory.radius must be positive, got {traj.radius}")
        if not -90.0 <= traj.min_elevation_deg < traj.max_elevation_deg <= 90.0:
            raise ConfigurationError(
                f"Elevation band must satisfy -90 <= min < max <= 90, "
                f"got [{traj.min_elevation_deg}, {traj.max_elevation_deg}]"
            )
        coordinates.get_convention(traj.convention)
        if len(traj.center) != 3:
            raise ConfigurationError("trajectory.center must have 3 components")
        if traj.pattern == "spline" and len(traj.keyframes) < 2:
            raise ConfigurationError("Spline trajectory needs at least 2 keyframes")

        depth = self.depth
        if depth.format not in DEPTH_FORMATS:
            raise ConfigurationError(
                f"Unknown depth format '{depth.format}'. Choose from: {', '.join(DEPTH_FORMATS)}"
            )
        # Plane and scale checks live in DepthProcessor
        depth.to_processor()

        cov = self.coverage
        if len(cov.bounds_min) != 3 or len(cov.bounds_max) != 3:
            raise ConfigurationError("Coverage bounds must have 3 components")
        if not np.all(np.asarray(cov.bounds_max) > np.asarray(cov.bounds_min)):
            raise ConfigurationError(
                f"Coverage bounds are empty: min={cov.bounds_min}, max={cov.bounds_max}"
            )
        if cov.resolution < 1:
            raise ConfigurationError(f"coverage.resolution must be >= 1, got {cov.resolution}")
        if cov.min_views < 1:
            raise ConfigurationError(f"coverage.min_views must be >= 1, got {cov.min_views}")
        if not 0.0 < cov.target_coverage <= 1.0:
            raise ConfigurationError(f"coverage.target_coverage must be in (0, 1], got {cov.target_coverage}")
        if not 1 <= cov.max_passes <= MAX_REFINEMENT_PASSES:
            raise ConfigurationError(f"coverage.max_passes must be in [1, {MAX_REFINEMENT_PASSES}], got {cov.max_passes}")

        export = self.export
        if not export.binary and not export.text:
            raise ConfigurationError("At least one of export.binary/export.text must be enabled")
        if export.workers is not None and export.workers < 1:
            raise ConfigurationError(f"export.workers must be >= 1, got {export.workers}")
        try:
            export.filename_pattern.format(1)
        except (IndexError, KeyError, ValueError):
            raise ConfigurationError(
                f"export.filename_pattern needs one {{}} placeholder, got '{export.filename_pattern}'"
            )

    @staticmethod
    def generate_default_config_template() -> str:
        """
        Generate a default configuration template with comments.

        Returns:
            YAML string with comments explaining each option
        """
        return """# capture2colmap Configuration File
#
# Configures trajectory planning, coverage analysis, depth conversion and
# COLMAP export. Command-line arguments override values specified here.

# Camera intrinsics (shared by all frames)
camera:
  # Image size in pixels
  width: 1920
  height: 1080

  # Horizontal field of view in degrees
  hfov_deg: 90.0

  # Focal length in pixels (null = derive from hfov_deg)
  focal_length: null

  # COLMAP camera model: SIMPLE_PINHOLE, PINHOLE, SIMPLE_RADIAL, RADIAL, OPENCV, FULL_OPENCV
  model: "PINHOLE"
  camera_id: 1

# Camera trajectory
trajectory:
  # Pattern: spherical, orbital, hemisphere, spiral, spline, adaptive, panoramic
  pattern: "spherical"

  # Number of poses (orbital/hemisphere: split across rings unless views_per_ring is set;
  # panoramic: six outward views per station, count // 6 stations)
  count: 200

  # Focus point and orbit radius (radius null = auto-compute from coverage bounds)
  center: [0.0, 0.0, 0.0]
  radius: null
  fill_ratio: 0.8

  # World convention of center, keyframes and bounds: opengl, opencv, colmap, unreal
  convention: "opengl"

  # Elevation band in degrees
  min_elevation_deg: -90.0
  max_elevation_deg: 90.0
  start_azimuth_deg: 0.0

  # Orbital / hemisphere rings
  num_rings: 5
  views_per_ring: null
  stagger: false
  radius_variation: 0.0

  # Spiral turns
  turns: 3.0

  # Spline keyframes as [x, y, z] positions
  keyframes: []
  look_at_center: false

# Depth buffer conversion
depth:
  # Clip planes in source units (centimeters for UE5 captures)
  near: 10.0
  far: 100000.0
  unbounded_far: false

  # Multiplier from source units to output units
  unit_scale: 0.01
  units: "m"

  # Store 1/distance instead of distance
  invert: false

  # Display gamma for depth-preview (never applied to stored depth)
  gamma: 1.0

  # Storage format: npy, raw, png16
  format: "npy"

  # Matplotlib colormap for depth-preview (null = grayscale)
  colormap: null

# Voxel coverage analysis
coverage:
  bounds_min: [-1.0, -1.0, -1.0]
  bounds_max: [1.0, 1.0, 1.0]

  # Voxels per axis
  resolution: 32

  # Views needed for a voxel to count as well covered
  min_views: 3

  # Adaptive refinement stops at this well-covered ratio
  target_coverage: 0.95
  max_passes: 10

# Export configuration
export:
  # Dataset root (images/, sparse/0/, depth/)
  output_dir: "./output"

  # COLMAP encodings to write
  binary: true
  text: false

  # Image filename pattern (Python format string)
  filename_pattern: "frame_{:04d}.png"

  # Worker threads for frame processing (null = CPU count)
  workers: null

  # Log-scale for splats initialized from points
  splat_initial_scale: -5.0
"""


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config", "-c",
        help="Path to YAML configuration file"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output"
    )


def _add_camera_options(parser: argparse.ArgumentParser) -> None:
    camera_group = parser.add_argument_group("Camera Options")
    camera_group.add_argument(
        "--width",
        type=int,
        metavar="PIXELS",
        help="Image width in pixels"
    )
    camera_group.add_argument(
        "--height",
        type=int,
        metavar="PIXELS",
        help="Image height in pixels"
    )
    camera_group.add_argument(
        "--fov",
        type=float,
        metavar="DEGREES",
        help="Horizontal field of view in degrees"
    )
    camera_group.add_argument(
        "--focal-length",
        type=float,
        help="Focal length in pixels (overrides --fov)"
    )


def _add_coverage_options(parser: argparse.ArgumentParser) -> None:
    coverage_group = parser.add_argument_group("Coverage Options")
    coverage_group.add_argument(
        "--bounds-min",
        type=float,
        nargs=3,
        metavar=("X", "Y", "Z"),
        help="Minimum corner of the target volume"
    )
    coverage_group.add_argument(
        "--bounds-max",
        type=float,
        nargs=3,
        metavar=("X", "Y", "Z"),
        help="Maximum corner of the target volume"
    )
    coverage_group.add_argument(
        "--voxel-resolution",
        type=int,
        metavar="N",
        help="Voxels per axis"
    )
    coverage_group.add_argument(
        "--min-views",
        type=int,
        metavar="N",
        help="Views needed for a voxel to count as well covered"
    )


def create_argument_parser() -> argparse.ArgumentParser:
    """
    Create command-line argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="capture2colmap",
        description="Plan capture trajectories, check their coverage, and write COLMAP datasets and splat PLY files",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        epilog="Configuration file (YAML) can be used to set all options. Command-line arguments override config file values."
    )

    # Generate default config
    parser.add_argument(
        "--save-config",
        metavar="PATH",
        help="Save default configuration to YAML file and exit"
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    # plan
    plan = subparsers.add_parser(
        "plan",
        help="Generate a trajectory, report its coverage, and write its COLMAP model",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    _add_common_options(plan)
    path_group = plan.add_argument_group("Trajectory Options")
    path_group.add_argument(
        "--pattern",
        choices=list(PATTERNS),
        help="Trajectory pattern"
    )
    path_group.add_argument(
        "--count", "-n",
        type=int,
        help="Number of poses"
    )
    path_group.add_argument(
        "--radius",
        type=float,
        help="Orbit radius in world units (default: auto-computed from bounds)"
    )
    path_group.add_argument(
        "--center",
        type=float,
        nargs=3,
        metavar=("X", "Y", "Z"),
        help="Focus point"
    )
    path_group.add_argument(
        "--convention",
        choices=sorted(coordinates.CONVENTIONS),
        help="World convention of center, keyframes and bounds"
    )
    path_group.add_argument(
        "--min-elevation",
        type=float,
        metavar="DEGREES",
        help="Lower bound of the elevation band"
    )
    path_group.add_argument(
        "--max-elevation",
        type=float,
        metavar="DEGREES",
        help="Upper bound of the elevation band"
    )
    path_group.add_argument(
        "--num-rings",
        type=int,
        metavar="N",
        help="Ring count (orbital/hemisphere)"
    )
    _add_camera_options(plan)
    _add_coverage_options(plan)
    export_group = plan.add_argument_group("Export Options")
    export_group.add_argument(
        "--output-dir", "-o",
        help="Dataset root for the COLMAP model"
    )
    export_group.add_argument(
        "--no-export",
        action="store_true",
        help="Only report; do not write a COLMAP model"
    )
    export_group.add_argument(
        "--text",
        action="store_true",
        help="Also write text model files"
    )
    export_group.add_argument(
        "--no-binary",
        action="store_true",
        help="Skip binary model files"
    )
    export_group.add_argument(
        "--workers",
        type=int,
        metavar="N",
        help="Worker threads"
    )

    # coverage
    coverage = subparsers.add_parser(
        "coverage",
        help="Report voxel coverage of an existing COLMAP model's poses",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    _add_common_options(coverage)
    coverage.add_argument(
        "model",
        help="Sparse model directory (e.g. output/sparse/0) or dataset root"
    )
    _add_coverage_options(coverage)

    # validate
    validate = subparsers.add_parser(
        "validate",
        help="Check a dataset directory for problems",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    _add_common_options(validate)
    validate.add_argument(
        "dataset",
        help="Dataset root directory"
    )

    # splat-init
    splat = subparsers.add_parser(
        "splat-init",
        help="Create an initial Gaussian splat PLY from a model's points3D",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    _add_common_options(splat)
    splat.add_argument(
        "model",
        help="Sparse model directory, dataset root, or point cloud .ply"
    )
    splat.add_argument(
        "output",
        help="Output splat .ply path"
    )
    splat.add_argument(
        "--initial-scale",
        type=float,
        help="Log-scale for every splat"
    )
    splat.add_argument(
        "--no-normals",
        action="store_true",
        help="Omit nx/ny/nz properties"
    )

    # depth-preview
    preview = subparsers.add_parser(
        "depth-preview",
        help="Render a saved depth map as an 8-bit PNG preview",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    _add_common_options(preview)
    preview.add_argument(
        "depth",
        help="Depth file written by the dataset writer (.npy, .raw or .png with its .json sidecar)"
    )
    preview.add_argument(
        "output",
        help="Output preview .png path"
    )
    preview.add_argument(
        "--colormap",
        metavar="NAME",
        help="Matplotlib colormap (default: grayscale)"
    )
    preview.add_argument(
        "--gamma",
        type=float,
        help="Display gamma"
    )

    return parser
