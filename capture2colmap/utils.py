"""
Utility functions for capture2colmap.

This module provides helper functions used across the library:
- Auto-framing calculations for orbit cameras
- Default focal length computation
"""

import numpy as np
from typing import Tuple
from numpy.typing import NDArray

from . import coordinates
from .coordinates import Convention
from .errors import ConfigurationError


def compute_default_focal_length(
    width: int,
    fov_deg: float = 90.0
) -> float:
    """
    Compute focal length for a given horizontal field of view.

    Args:
        width: Image width in pixels
        fov_deg: Desired horizontal field of view in degrees (default: 90°)

    Returns:
        Focal length in pixels
    """
    if not 0.0 < fov_deg < 180.0:
        raise ConfigurationError(f"FOV must be in (0, 180) degrees, got {fov_deg}")
    return width / (2.0 * np.tan(np.radians(fov_deg / 2.0)))


def compute_auto_orbit_radius(
    bounds: Tuple[NDArray[np.float64], NDArray[np.float64]],
    render_size: Tuple[int, int],
    focal_length: float,
    fill_ratio: float = 0.8,
    convention: Convention = coordinates.OPENGL
) -> float:
    """
    Compute orbit radius that frames the scene properly in the viewport.

    It computes the required distance separately for horizontal and vertical
    dimensions, then uses the maximum to ensure the scene fits in both.
    This handles portrait aspect ratios too.

    Args:
        bounds: Tuple of (min_corner, max_corner) arrays, each shape (3,)
        render_size: (width, height) in pixels
        focal_length: Camera focal length in pixels
        fill_ratio: How much of the viewport should be filled (0.0 to 1.0)
                   Default 0.8 leaves 20% padding around the scene
        convention: Convention of the bounds; its up axis is "vertical"

    Returns:
        Orbit radius in world units (distance from orbit center to camera)

    Note:
        The horizontal extent is the larger of the two non-up extents, since
        an orbiting camera sees the scene from every azimuth.
    """
    if not 0.0 < fill_ratio <= 1.0:
        raise ConfigurationError(f"fill_ratio must be in (0, 1], got {fill_ratio}")

    width, height = render_size
    min_corner, max_corner = bounds
    extent = np.abs(np.asarray(max_corner, dtype=np.float64) - np.asarray(min_corner, dtype=np.float64))

    up_axis = int(np.argmax(np.abs(convention.up)))
    scene_height = extent[up_axis]
    scene_width = max(extent[i] for i in range(3) if i != up_axis)

    # Compute FOVs in radians
    horizontal_fov_rad = 2 * np.arctan(width / (2 * focal_length))
    vertical_fov_rad = 2 * np.arctan(height / (2 * focal_length))

    # Radius needed to fit horizontal extent in horizontal FOV
    radius_h = (scene_width / 2.0) / np.tan(horizontal_fov_rad * fill_ratio / 2.0)

    # Radius needed to fit vertical extent in vertical FOV
    radius_v = (scene_height / 2.0) / np.tan(vertical_fov_rad * fill_ratio / 2.0)

    return float(max(radius_h, radius_v))
