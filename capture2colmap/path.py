"""
Camera trajectory generation.

This module provides the TrajectoryPlanner class which generates ordered
camera poses around a focus point:

- Spherical: Fibonacci lattice, near-uniform over an elevation band
- Orbital: Rings at distinct elevations (optionally staggered)
- Hemisphere: Orbital rings restricted to the upper half
- Spiral: One continuous descending helix
- Spline: Catmull-Rom path through user keyframes
- Adaptive: Spherical baseline refined toward under-covered voxels
- Panoramic: Six outward cube-map views per station on a line through the center

All positions and orientations are in the planner's world convention.
Cameras look at the focus point, except spline poses, which interpolate
their keyframe orientations unless told otherwise, and panoramic poses,
which face outward.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from . import coordinates
from .camera import Pose
from .coordinates import Convention
from .coverage import CoverageAnalyzer
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

GOLDEN_RATIO = (1.0 + np.sqrt(5.0)) / 2.0

# Heuristic bound; refinement is not guaranteed to reach its target
MAX_REFINEMENT_PASSES = 10

PATTERNS = ("spherical", "orbital", "hemisphere", "spiral", "spline", "adaptive", "panoramic")

# View order at each panoramic station
PANORAMIC_DIRECTIONS = ("forward", "right", "backward", "left", "up", "down")


class TrajectoryPlanner:
    """
    Generate camera trajectories around a focus point.

    Example:
        planner = TrajectoryPlanner(center=[0, 0, 0], radius=5.0)
        poses = planner.spherical(200)
        poses = planner.generate("orbital", num_rings=5, views_per_ring=24)
    """

    def __init__(
        self,
        center: NDArray[np.float64],
        radius: float,
        convention: Convention = coordinates.OPENGL,
        min_elevation_deg: float = -90.0,
        max_elevation_deg: float = 90.0,
        start_azimuth_deg: float = 0.0
    ):
        """
        Initialize TrajectoryPlanner.

        Args:
            center: Focus point the cameras orbit and look at
            radius: Distance from center to camera
            convention: World convention for the generated poses
            min_elevation_deg: Lower bound of the elevation band
            max_elevation_deg: Upper bound of the elevation band
            start_azimuth_deg: Azimuth of the first ring sample

        Raises:
            ConfigurationError: On non-positive radius or an invalid band
        """
        self.center = np.asarray(center, dtype=np.float64).reshape(3)
        if not np.all(np.isfinite(self.center)):
            raise ConfigurationError(f"Trajectory center must be finite, got {self.center}")
        if not np.isfinite(radius) or radius <= 0:
            raise ConfigurationError(f"Trajectory radius must be positive, got {radius}")
        if not -90.0 <= min_elevation_deg < max_elevation_deg <= 90.0:
            raise ConfigurationError(
                f"Elevation band must satisfy -90 <= min < max <= 90, "
                f"got [{min_elevation_deg}, {max_elevation_deg}]"
            )

        self.radius = float(radius)
        self.convention = convention
        self.min_elevation_deg = min_elevation_deg
        self.max_elevation_deg = max_elevation_deg
        self.start_azimuth_deg = start_azimuth_deg

    def _pose_at(self, position: NDArray[np.float64], target: Optional[NDArray] = None) -> Pose:
        if target is None:
            target = self.center
        return Pose.look_at(position, target, self.convention)

    def _position(self, radius: float, azimuth_deg: float, elevation_deg: float) -> NDArray[np.float64]:
        return self.center + coordinates.spherical_to_cartesian(
            radius, azimuth_deg, elevation_deg, self.convention
        )

    @staticmethod
    def _check_count(count: int, minimum: int = 1, what: str = "count") -> int:
        if int(count) != count or count < minimum:
            raise ConfigurationError(f"{what} must be an integer >= {minimum}, got {count}")
        return int(count)

    def spherical(self, count: int) -> List[Pose]:
        """
        Fibonacci lattice over the elevation band.

        Sample i has azimuth 2*pi*i/phi and cos(polar) = 1 - 2*(i + 0.5)/count.
        With a partial band, cos(polar) is mapped linearly onto the band so
        samples stay equal-area inside it instead of piling up on its edges.

        Args:
            count: Number of poses

        Returns:
            List of exactly count poses looking at the center
        """
        count = self._check_count(count)

        z_low = np.sin(np.radians(self.min_elevation_deg))
        z_high = np.sin(np.radians(self.max_elevation_deg))

        poses = []
        for i in range(count):
            t = (i + 0.5) / count
            cos_polar = 1.0 - 2.0 * t
            # [-1, 1] -> [z_low, z_high]; identity for the full sphere
            z = z_low + (cos_polar + 1.0) * 0.5 * (z_high - z_low)
            elevation_deg = np.degrees(np.arcsin(np.clip(z, -1.0, 1.0)))
            azimuth_deg = self.start_azimuth_deg + np.degrees(2.0 * np.pi * i / GOLDEN_RATIO)

            position = self._position(self.radius, azimuth_deg, elevation_deg)
            poses.append(self._pose_at(position))

        return poses

    def orbital(
        self,
        num_rings: int,
        views_per_ring: int,
        stagger: bool = False,
        radius_variation: float = 0.0
    ) -> List[Pose]:
        """
        Rings of evenly spaced views at distinct elevations.

        Ring k sits at the center of the k-th of num_rings equal slices of
        the elevation band, so no ring lands on a pole.

        Args:
            num_rings: Number of rings
            views_per_ring: Azimuth samples per ring
            stagger: Offset alternate rings by half an angular step
            radius_variation: Ring k uses radius * (1 + v * sin(k * pi / num_rings))

        Returns:
            num_rings * views_per_ring poses, ring by ring, bottom ring first
        """
        num_rings = self._check_count(num_rings, what="num_rings")
        views_per_ring = self._check_count(views_per_ring, what="views_per_ring")
        if radius_variation <= -1.0:
            raise ConfigurationError(f"radius_variation must be > -1, got {radius_variation}")

        band = self.max_elevation_deg - self.min_elevation_deg
        angular_step = 360.0 / views_per_ring

        poses = []
        for ring in range(num_rings):
            elevation_deg = self.min_elevation_deg + (ring + 0.5) * band / num_rings
            ring_radius = self.radius * (1.0 + radius_variation * np.sin(ring * np.pi / num_rings))

            azimuth_offset = self.start_azimuth_deg
            if stagger:
                azimuth_offset += (ring % 2) * (angular_step / 2.0)

            for view in range(views_per_ring):
                azimuth_deg = azimuth_offset + view * angular_step
                position = self._position(ring_radius, azimuth_deg, elevation_deg)
                poses.append(self._pose_at(position))

        return poses

    def hemisphere(self, num_rings: int, views_per_ring: int, **kwargs) -> List[Pose]:
        """Orbital rings with the band clipped to [0, 85] degrees."""
        low = max(0.0, self.min_elevation_deg)
        high = min(85.0, self.max_elevation_deg)
        if high <= low:
            raise ConfigurationError(
                f"Elevation band [{self.min_elevation_deg}, {self.max_elevation_deg}] "
                f"has no overlap with the upper hemisphere"
            )
        upper = TrajectoryPlanner(
            self.center, self.radius, self.convention, low, high, self.start_azimuth_deg
        )
        return upper.orbital(num_rings, views_per_ring, **kwargs)

    def spiral(self, count: int, turns: float = 3.0, radius_variation: float = 0.0) -> List[Pose]:
        """
        Continuous helix from the top of the band to the bottom.

        The band is clipped to [-85, 85] degrees so the ends stay off the poles.

        Args:
            count: Number of poses
            turns: Full rotations over the whole path
            radius_variation: Radius * (1 + v * sin(2 * pi * t)) along the path
        """
        count = self._check_count(count)
        if turns <= 0:
            raise ConfigurationError(f"turns must be positive, got {turns}")

        top = min(85.0, self.max_elevation_deg)
        bottom = max(-85.0, self.min_elevation_deg)

        poses = []
        for i in range(count):
            t = i / (count - 1) if count > 1 else 0.0
            elevation_deg = top - t * (top - bottom)
            azimuth_deg = self.start_azimuth_deg + t * 360.0 * turns
            radius = self.radius * (1.0 + radius_variation * np.sin(t * 2.0 * np.pi))
            position = self._position(radius, azimuth_deg, elevation_deg)
            poses.append(self._pose_at(position))

        return poses

    def panoramic(self, num_positions: int) -> List[Pose]:
        """
        Outward-facing cube-map views from stations on a line through the center.

        Stations are evenly spaced along the convention's forward axis over
        [-radius, radius] around the center (a single station sits on the
        center). Each station gets six views, in PANORAMIC_DIRECTIONS order,
        all sharing the station position.

        Args:
            num_positions: Number of stations

        Returns:
            6 * num_positions poses, station by station
        """
        num_positions = self._check_count(num_positions, what="num_positions")
        if num_positions == 1:
            offsets = np.zeros(1)
        else:
            offsets = np.linspace(-self.radius, self.radius, num_positions)

        axis = self.convention.forward
        poses = []
        for offset in offsets:
            position = self.center + offset * axis
            for direction in PANORAMIC_DIRECTIONS:
                poses.append(self._pose_at(position, position + self.convention.direction(direction)))

        return poses

    def spline(
        self,
        keyframes: Sequence[Pose],
        count: int,
        look_at_center: bool = False
    ) -> List[Pose]:
        """
        Catmull-Rom path through keyframe positions.

        Positions use a uniform Catmull-Rom spline with clamped end tangents
        and pass through every keyframe. Orientations slerp between the two
        bracketing keyframes, or look at the center when look_at_center.

        Args:
            keyframes: At least 2 poses; converted to the planner convention
            count: Number of samples (>= 2), first and last on the end keyframes

        Raises:
            ConfigurationError: Fewer than 2 keyframes, count < 2, or all
                                keyframes at the same position
        """
        if len(keyframes) < 2:
            raise ConfigurationError(
                f"Spline trajectory needs at least 2 keyframes, got {len(keyframes)}"
            )
        count = self._check_count(count, minimum=2)

        frames = [coordinates.convert_pose(k, k.convention, self.convention) for k in keyframes]
        points = np.array([k.position for k in frames])
        if np.allclose(points, points[0]):
            raise ConfigurationError("Spline keyframes are degenerate: all share one position")

        n = len(frames)
        poses = []
        for sample in range(count):
            u = sample * (n - 1) / (count - 1)
            seg = min(int(u), n - 2)
            t = u - seg

            p0 = points[max(seg - 1, 0)]
            p1 = points[seg]
            p2 = points[seg + 1]
            p3 = points[min(seg + 2, n - 1)]
            position = catmull_rom(p0, p1, p2, p3, t)

            if look_at_center:
                poses.append(self._pose_at(position))
            else:
                rotation = coordinates.slerp(frames[seg].rotation, frames[seg + 1].rotation, t)
                poses.append(Pose(position, rotation, self.convention))

        return poses

    def adaptive(
        self,
        count: int,
        analyzer: CoverageAnalyzer,
        min_views: int = 3,
        target_coverage: float = 0.95,
        min_baseline: Optional[float] = None,
        max_passes: int = MAX_REFINEMENT_PASSES,
        region_divisions: int = 4,
        cancel_event: Optional[threading.Event] = None
    ) -> List[Pose]:
        """
        Spherical baseline refined toward under-covered voxels.

        Each pass evaluates coverage, groups voxels seen by fewer than
        min_views poses into coarse regions, and adds one pose per region
        aimed at the region centroid, provided it keeps min_baseline from
        every existing pose. Stops at target_coverage (well-covered ratio),
        when a pass adds nothing, or after max_passes.

        Args:
            count: Size of the spherical baseline
            analyzer: Coverage analyzer for the target volume
            min_views: Visibility threshold per voxel
            target_coverage: Well-covered ratio that ends refinement
            min_baseline: Minimum distance between poses
                          (default: half the baseline lattice spacing)
            max_passes: Refinement pass cap
            region_divisions: Region grid size per axis
            cancel_event: Optional cancellation flag

        Returns:
            Baseline poses followed by the added ones
        """
        if not 0.0 < target_coverage <= 1.0:
            raise ConfigurationError(f"target_coverage must be in (0, 1], got {target_coverage}")
        if min_views < 1:
            raise ConfigurationError(f"min_views must be >= 1, got {min_views}")
        if not 1 <= max_passes <= MAX_REFINEMENT_PASSES:
            raise ConfigurationError(
                f"max_passes must be in [1, {MAX_REFINEMENT_PASSES}], got {max_passes}"
            )

        poses = self.spherical(count)
        if min_baseline is None:
            min_baseline = 0.5 * self.radius * np.sqrt(4.0 * np.pi / len(poses))
        elif min_baseline < 0:
            raise ConfigurationError(f"min_baseline must be non-negative, got {min_baseline}")

        for n_pass in range(1, max_passes + 1):
            report = analyzer.analyze(poses, min_views=min_views, cancel_event=cancel_event)
            if report.well_covered_ratio >= target_coverage:
                logger.debug("Adaptive pass %d: target reached (%s)", n_pass, report.summary())
                break

            regions = analyzer.under_covered_regions(report.counts, min_views, region_divisions)
            added = 0
            for centroid, _ in regions:
                pose = self._refinement_pose(centroid, poses, min_baseline)
                if pose is not None:
                    poses.append(pose)
                    added += 1

            logger.debug(
                "Adaptive pass %d: %d under-covered regions, added %d poses (%s)",
                n_pass, len(regions), added, report.summary()
            )
            if added == 0:
                break
        else:
            logger.debug("Adaptive refinement stopped at the %d-pass cap", max_passes)

        return poses

    def _refinement_pose(
        self,
        centroid: NDArray[np.float64],
        existing: Sequence[Pose],
        min_baseline: float
    ) -> Optional[Pose]:
        """
        Pose on the orbit sphere facing centroid, or None if every candidate
        is closer than min_baseline to an existing pose.
        """
        direction = centroid - self.center
        norm = np.linalg.norm(direction)
        direction = direction / norm if norm > 1e-9 else self.convention.up

        # Orthonormal basis around direction for the fallback candidates
        helper = self.convention.forward if abs(np.dot(direction, self.convention.up)) > 0.9 \
            else self.convention.up
        a = np.cross(direction, helper)
        a = a / np.linalg.norm(a)
        b = np.cross(direction, a)

        positions = np.array([p.position for p in existing])
        step = min(min_baseline / self.radius, np.pi / 6.0)

        candidates = [direction]
        for ring in (1, 2, 3):
            theta = ring * step
            for k in range(6):
                phi = k * np.pi / 3.0 + ring * np.pi / 6.0
                offset = np.cos(phi) * a + np.sin(phi) * b
                candidates.append(np.cos(theta) * direction + np.sin(theta) * offset)

        for candidate in candidates:
            position = self.center + self.radius * candidate
            if len(positions) and np.min(np.linalg.norm(positions - position, axis=1)) < min_baseline:
                continue
            if np.linalg.norm(centroid - position) < 1e-9:
                continue
            return self._pose_at(position, centroid)

        return None

    def generate(self, pattern: str, count: Optional[int] = None, **params: Any) -> List[Pose]:
        """
        Generate a trajectory by pattern name.

        Args:
            pattern: One of PATTERNS
            count: Number of poses (spherical, spiral, spline, adaptive);
                   for orbital/hemisphere it sets views_per_ring, and for
                   panoramic num_positions, when those are not given
            **params: Pattern-specific parameters:
                - orbital/hemisphere: num_rings, views_per_ring, stagger, radius_variation
                - spiral: turns, radius_variation
                - spline: keyframes, look_at_center
                - adaptive: analyzer, min_views, target_coverage, min_baseline, ...
                - panoramic: num_positions (default: count // 6)

        Raises:
            ConfigurationError: Unknown pattern or missing parameters
        """
        if pattern == "spherical":
            return self.spherical(self._require(count, "count", pattern))

        if pattern in ("orbital", "hemisphere"):
            num_rings = params.pop("num_rings", 3)
            views_per_ring = params.pop("views_per_ring", None)
            if views_per_ring is None:
                views_per_ring = max(1, self._require(count, "count", pattern) // num_rings)
            method = self.orbital if pattern == "orbital" else self.hemisphere
            return method(num_rings, views_per_ring, **params)

        if pattern == "spiral":
            return self.spiral(self._require(count, "count", pattern), **params)

        if pattern == "spline":
            keyframes = params.pop("keyframes", None)
            if keyframes is None:
                raise ConfigurationError("Spline trajectory requires keyframes")
            return self.spline(keyframes, self._require(count, "count", pattern), **params)

        if pattern == "adaptive":
            analyzer = params.pop("analyzer", None)
            if analyzer is None:
                raise ConfigurationError("Adaptive trajectory requires a CoverageAnalyzer")
            return self.adaptive(self._require(count, "count", pattern), analyzer, **params)

        if pattern == "panoramic":
            num_positions = params.pop("num_positions", None)
            if num_positions is None:
                num_positions = max(1, self._require(count, "count", pattern) // len(PANORAMIC_DIRECTIONS))
            return self.panoramic(num_positions)

        raise ConfigurationError(f"Unknown trajectory pattern '{pattern}'. Choose from: {', '.join(PATTERNS)}")

    @staticmethod
    def _require(value: Optional[int], name: str, pattern: str) -> int:
        if value is None:
            raise ConfigurationError(f"{pattern} trajectory requires {name}")
        return value

    @staticmethod
    def auto_compute_radius(
        scene_bounds: Tuple[NDArray[np.float64], NDArray[np.float64]],
        fill_ratio: float = 0.8,
        fov_deg: float = 90.0
    ) -> float:
        """
        Automatically compute orbit radius to frame the scene.

        Computes the distance needed so the scene's bounding sphere fills
        a specified portion of the viewport.

        Args:
            scene_bounds: (min_corner, max_corner)
            fill_ratio: How much of viewport to fill (0.0 to 1.0)
                       0.8 = scene occupies 80% of image
            fov_deg: Camera field of view in degrees

        Returns:
            Recommended orbit radius
        """
        if not 0.0 < fill_ratio <= 1.0:
            raise ConfigurationError(f"fill_ratio must be in (0, 1], got {fill_ratio}")

        min_corner, max_corner = scene_bounds
        scene_size = np.linalg.norm(np.asarray(max_corner) - np.asarray(min_corner))

        # Distance needed for scene to subtend desired angle
        desired_angle_rad = np.radians(fov_deg * fill_ratio)
        return float((scene_size / 2.0) / np.tan(desired_angle_rad / 2.0))

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"TrajectoryPlanner(center={self.center}, radius={self.radius:.2f}, "
            f"convention={self.convention.name})"
        )


def catmull_rom(
    p0: NDArray[np.float64],
    p1: NDArray[np.float64],
    p2: NDArray[np.float64],
    p3: NDArray[np.float64],
    t: float
) -> NDArray[np.float64]:
    """Uniform Catmull-Rom point between p1 (t=0) and p2 (t=1)."""
    t2 = t * t
    t3 = t2 * t
    return 0.5 * (
        2.0 * p1
        + (p2 - p0) * t
        + (2.0 * p0 - 5.0 * p1 + 4.0 * p2 - p3) * t2
        + (3.0 * p1 - p0 - 3.0 * p2 + p3) * t3
    )


def average_overlap(poses: Sequence[Pose], hfov_deg: float) -> float:
    """
    Mean view overlap between consecutive poses (wrapping around).

    Overlap of a pair is 1 - angle/hfov clamped to [0, 1], where angle is
    the angle between their forward vectors.
    """
    if len(poses) < 2:
        return 0.0

    forwards = np.array([p.forward_vector for p in poses])
    nexts = np.roll(forwards, -1, axis=0)
    cosines = np.clip(np.sum(forwards * nexts, axis=1), -1.0, 1.0)
    angles = np.degrees(np.arccos(cosines))
    return float(np.mean(np.clip(1.0 - angles / hfov_deg, 0.0, 1.0)))


def validate_trajectory(
    poses: Sequence[Pose],
    center: NDArray[np.float64],
    min_elevation_deg: float = -90.0,
    max_elevation_deg: float = 90.0
) -> List[str]:
    """
    Check a trajectory against what splat training handles well.

    Returns:
        List of human-readable warnings (empty if none)
    """
    warnings = []

    n = len(poses)
    if n < 50:
        warnings.append(f"Low viewpoint count ({n}). 100-180 recommended for 3DGS training.")
    elif n > 500:
        warnings.append(f"High viewpoint count ({n}). May significantly increase capture and training time.")

    if n == 0:
        return warnings

    convention = poses[0].convention
    center = np.asarray(center, dtype=np.float64)
    distances = np.array([np.linalg.norm(p.position - center) for p in poses])
    radius_m = float(np.median(distances)) * convention.meters_per_unit
    if radius_m < 1.0:
        warnings.append("Very small radius (<1m). May cause near-plane clipping issues.")
    elif radius_m > 100.0:
        warnings.append("Very large radius (>100m). May affect depth precision.")

    if max_elevation_deg - min_elevation_deg < 30.0:
        warnings.append("Narrow elevation range (<30 deg). May result in incomplete vertical coverage.")

    if n >= 2:
        forwards = np.array([p.forward_vector for p in poses])
        cosines = np.clip(np.sum(forwards[:-1] * forwards[1:], axis=1), -1.0, 1.0)
        mean_step = float(np.degrees(np.mean(np.arccos(cosines))))
        if mean_step > 30.0:
            warnings.append(
                f"Mean angular step ({mean_step:.1f} deg) may result in insufficient overlap."
            )

    for warning in warnings:
        logger.debug("trajectory: %s", warning)
    return warnings


def optimal_orbit_config(
    bounds_min: NDArray[np.float64],
    bounds_max: NDArray[np.float64],
    desired_overlap: float = 0.7,
    hfov_deg: float = 90.0,
    aspect_ratio: float = 16.0 / 9.0,
    min_elevation_deg: float = -30.0,
    max_elevation_deg: float = 60.0
) -> Dict[str, Any]:
    """
    Orbital parameters that frame a bounding box with a desired overlap.

    Radius is 1.3x the distance at which the largest half-extent fills the
    horizontal FOV. Views per ring (clamped to [12, 72]) and rings (clamped
    to [3, 8]) follow from stepping (1 - overlap) of a FOV at a time.

    Returns:
        Dictionary with center, radius, num_rings, views_per_ring, stagger,
        radius_variation, min_elevation_deg, max_elevation_deg
    """
    if not 0.0 <= desired_overlap < 1.0:
        raise ConfigurationError(f"desired_overlap must be in [0, 1), got {desired_overlap}")

    bounds_min = np.asarray(bounds_min, dtype=np.float64)
    bounds_max = np.asarray(bounds_max, dtype=np.float64)
    max_extent = float(np.max(bounds_max - bounds_min)) / 2.0

    min_distance = max_extent / np.tan(np.radians(hfov_deg) / 2.0)
    radius = 1.3 * min_distance

    angular_step = hfov_deg * (1.0 - desired_overlap)
    views_per_ring = int(np.clip(np.ceil(360.0 / angular_step), 12, 72))

    vfov_deg = np.degrees(2.0 * np.arctan(np.tan(np.radians(hfov_deg) / 2.0) / aspect_ratio))
    vertical_step = vfov_deg * (1.0 - desired_overlap)
    num_rings = int(np.clip(np.ceil((max_elevation_deg - min_elevation_deg) / vertical_step), 3, 8))

    return {
        "center": (bounds_min + bounds_max) / 2.0,
        "radius": float(radius),
        "num_rings": num_rings,
        "views_per_ring": views_per_ring,
        "stagger": True,
        "radius_variation": 0.1,
        "min_elevation_deg": min_elevation_deg,
        "max_elevation_deg": max_elevation_deg,
    }
