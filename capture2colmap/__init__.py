"""
capture2colmap - Turn rendered captures into COLMAP datasets for Gaussian Splatting.

This package covers the capture-to-dataset conversion:
- Camera trajectory planning (Fibonacci sphere, orbital rings, splines, adaptive)
- Coordinate and unit convention conversion (UE5, OpenCV/COLMAP, OpenGL)
- Reversed-Z depth linearization and export
- Voxel coverage estimation
- COLMAP text/binary models and Gaussian splat PLY files

Example usage:
    from capture2colmap import TrajectoryPlanner, CameraModel, Dataset, DatasetWriter

    planner = TrajectoryPlanner(center=[0, 0, 0], radius=5.0)
    poses = planner.spherical(200)
    camera = CameraModel.from_fov(1, 1920, 1080, 90.0)
    DatasetWriter("./output").write(Dataset.from_poses(camera, poses))
"""

__version__ = "0.1.0"

from .camera import CameraModel, CameraModelKind, Pose
from .coordinates import (
    COLMAP,
    OPENCV,
    OPENGL,
    UNREAL,
    Convention,
    cartesian_to_spherical,
    convert_intrinsics,
    convert_pose,
    get_convention,
    spherical_to_cartesian,
)
from .coverage import CoverageAnalyzer, CoverageReport
from .dataset import Dataset, DatasetManifest, DatasetWriter, Frame, validate_dataset
from .depth import DepthProcessor, DepthResult, linearize
from .errors import (
    CancelledError,
    CaptureError,
    ConfigurationError,
    ConversionError,
    DatasetIOError,
    FormatError,
)
from .exporter import ColmapExporter, read_model
from .path import TrajectoryPlanner
from .ply import GaussianSplats, read_splats, write_splats
from .utils import compute_auto_orbit_radius, compute_default_focal_length

__all__ = [
    "COLMAP",
    "CameraModel",
    "CameraModelKind",
    "CancelledError",
    "CaptureError",
    "ColmapExporter",
    "ConfigurationError",
    "Convention",
    "ConversionError",
    "CoverageAnalyzer",
    "CoverageReport",
    "Dataset",
    "DatasetIOError",
    "DatasetManifest",
    "DatasetWriter",
    "DepthProcessor",
    "DepthResult",
    "FormatError",
    "Frame",
    "GaussianSplats",
    "OPENCV",
    "OPENGL",
    "Pose",
    "TrajectoryPlanner",
    "UNREAL",
    "cartesian_to_spherical",
    "compute_auto_orbit_radius",
    "compute_default_focal_length",
    "convert_intrinsics",
    "convert_pose",
    "get_convention",
    "linearize",
    "read_model",
    "read_splats",
    "spherical_to_cartesian",
    "validate_dataset",
    "write_splats",
]
