"""
Voxel-grid visibility coverage for camera trajectories.

The target volume is split into a regular grid. A voxel counts as seen by a
pose when its center lies in front of the camera and inside the horizontal
and vertical half-FOV cones. This is a pure view-frustum test: there is no
occlusion or ray casting against scene geometry, so a voxel hidden behind
a wall still counts as seen. Treat the ratios as an upper bound.
"""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from . import coordinates
from .camera import Pose
from .coordinates import Convention
from .errors import CancelledError, ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_RESOLUTION = 32


@dataclass
class CoverageReport:
    """
    Result of a coverage analysis.

    Attributes:
        counts: Per-voxel visibility counts, shape (res, res, res), indexed [x, y, z]
        min_views: Threshold used for well_covered_ratio
        coverage_ratio: Fraction of voxels seen by at least one pose
        well_covered_ratio: Fraction of voxels seen by at least min_views poses
        n_poses: Number of poses evaluated
    """

    counts: NDArray[np.int64]
    min_views: int
    coverage_ratio: float
    well_covered_ratio: float
    n_poses: int

    @property
    def total_voxels(self) -> int:
        return int(self.counts.size)

    @property
    def mean_views(self) -> float:
        return float(self.counts.mean())

    def summary(self) -> str:
        return (
            f"{self.n_poses} poses: coverage {self.coverage_ratio:.1%}, "
            f"well-covered (>= {self.min_views} views) {self.well_covered_ratio:.1%}, "
            f"mean {self.mean_views:.1f} views/voxel"
        )


class CoverageAnalyzer:
    """
    Estimate how much of an axis-aligned volume a set of poses can see.

    Example:
        analyzer = CoverageAnalyzer(bounds_min, bounds_max, resolution=32,
                                    hfov_deg=90.0, aspect_ratio=16 / 9)
        report = analyzer.analyze(poses, min_views=3)
        print(report.summary())
    """

    def __init__(
        self,
        bounds_min: NDArray[np.float64],
        bounds_max: NDArray[np.float64],
        resolution: int = DEFAULT_RESOLUTION,
        hfov_deg: float = 90.0,
        aspect_ratio: float = 16.0 / 9.0,
        convention: Convention = coordinates.OPENGL
    ):
        """
        Args:
            bounds_min, bounds_max: Corners of the target volume
            resolution: Voxels per axis
            hfov_deg: Horizontal field of view of every pose
            aspect_ratio: Width / height of the image
            convention: Convention of the bounds; poses in another
                        convention are converted before testing

        Raises:
            ConfigurationError: On empty bounds or invalid FOV/resolution
        """
        self.bounds_min = np.asarray(bounds_min, dtype=np.float64).reshape(3)
        self.bounds_max = np.asarray(bounds_max, dtype=np.float64).reshape(3)
        if not np.all(self.bounds_max > self.bounds_min):
            raise ConfigurationError(
                f"Coverage bounds are empty: min={self.bounds_min}, max={self.bounds_max}"
            )
        if int(resolution) < 1:
            raise ConfigurationError(f"Voxel resolution must be >= 1, got {resolution}")
        if not 0.0 < hfov_deg < 180.0:
            raise ConfigurationError(f"FOV must be in (0, 180) degrees, got {hfov_deg}")
        if aspect_ratio <= 0:
            raise ConfigurationError(f"Aspect ratio must be positive, got {aspect_ratio}")

        self.resolution = int(resolution)
        self.hfov_deg = hfov_deg
        self.aspect_ratio = aspect_ratio
        self.convention = convention

        self.tan_half_h = np.tan(np.radians(hfov_deg) / 2.0)
        self.tan_half_v = self.tan_half_h / aspect_ratio

        self.voxel_size = (self.bounds_max - self.bounds_min) / self.resolution
        idx = np.arange(self.resolution)
        ii, jj, kk = np.meshgrid(idx, idx, idx, indexing="ij")
        self.voxel_indices = np.stack([ii.ravel(), jj.ravel(), kk.ravel()], axis=1)
        self.voxel_centers = self.bounds_min + (self.voxel_indices + 0.5) * self.voxel_size

    @property
    def vfov_deg(self) -> float:
        return float(np.degrees(2.0 * np.arctan(self.tan_half_v)))

    def visibility_counts(
        self,
        poses: Sequence[Pose],
        cancel_event: Optional[threading.Event] = None
    ) -> NDArray[np.int64]:
        """
        Count, per voxel, how many poses see its center.

        Returns:
            Counts, shape (res, res, res)

        Raises:
            CancelledError: If cancel_event is set between poses
        """
        counts = np.zeros(len(self.voxel_centers), dtype=np.int64)

        for pose in poses:
            if cancel_event is not None and cancel_event.is_set():
                raise CancelledError("Coverage analysis cancelled")

            if pose.convention != self.convention:
                pose = coordinates.convert_pose(pose, pose.convention, self.convention)

            offsets = self.voxel_centers - pose.position
            z = offsets @ pose.forward_vector
            x = offsets @ pose.right_vector
            y = offsets @ pose.up_vector

            visible = (
                (z > 0.0)
                & (np.abs(x) <= z * self.tan_half_h)
                & (np.abs(y) <= z * self.tan_half_v)
            )
            counts += visible

        return counts.reshape(self.resolution, self.resolution, self.resolution)

    def analyze(
        self,
        poses: Sequence[Pose],
        min_views: int = 3,
        cancel_event: Optional[threading.Event] = None
    ) -> CoverageReport:
        """
        Compute coverage ratios for a pose sequence.

        Args:
            poses: Camera poses
            min_views: Visibility count for a voxel to be well covered
            cancel_event: Optional cancellation flag, checked per pose

        Raises:
            ConfigurationError: If min_views < 1
        """
        if min_views < 1:
            raise ConfigurationError(f"min_views must be >= 1, got {min_views}")

        counts = self.visibility_counts(poses, cancel_event)
        total = counts.size
        report = CoverageReport(
            counts=counts,
            min_views=min_views,
            coverage_ratio=float(np.count_nonzero(counts > 0)) / total,
            well_covered_ratio=float(np.count_nonzero(counts >= min_views)) / total,
            n_poses=len(poses),
        )
        logger.debug("Coverage: %s", report.summary())
        return report

    def under_covered_regions(
        self,
        counts: NDArray[np.int64],
        min_views: int,
        divisions: int = 4
    ) -> List[Tuple[NDArray[np.float64], int]]:
        """
        Group under-covered voxels into coarse regions.

        The grid is split into divisions^3 blocks; every block holding at
        least one voxel seen by fewer than min_views poses becomes a region.

        Returns:
            List of (centroid, n_voxels), largest region first
        """
        flat = counts.ravel()
        under = flat < min_views
        if not np.any(under):
            return []

        divisions = max(1, min(int(divisions), self.resolution))
        block = self.voxel_indices[under] * divisions // self.resolution
        block_ids = (block[:, 0] * divisions + block[:, 1]) * divisions + block[:, 2]

        unique_ids, inverse = np.unique(block_ids, return_inverse=True)
        sizes = np.bincount(inverse)
        centers = self.voxel_centers[under]
        centroids = np.stack([
            np.bincount(inverse, weights=centers[:, axis]) for axis in range(3)
        ], axis=1) / sizes[:, np.newaxis]

        # Largest first; stable sort keeps block order for ties
        order = np.argsort(-sizes, kind="stable")
        return [(centroids[i], int(sizes[i])) for i in order]
