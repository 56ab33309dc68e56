"""
Depth buffer linearization and export.

Renderers hand over depth as a non-linear "reversed" encoding in [0, 1]:
1.0 at the near plane, 0.0 at the far plane (or at infinity when the
projection has no far plane). This module turns those samples into metric
linear distance and runs the downstream steps in a fixed order:

    linearize -> unit-convert -> (optional) invert -> (optional) gamma

Gamma only ever touches a visualization copy; stored depth stays linear
(or inverse-linear when inversion is enabled).
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from . import coordinates
from .camera import CameraModel, Pose
from .errors import ConfigurationError, ConversionError, DatasetIOError

logger = logging.getLogger(__name__)

DEPTH_FORMATS = ("npy", "raw", "png16")
DEPTH_EXTENSIONS = {"npy": ".npy", "raw": ".raw", "png16": ".png"}


def _check_planes(near: float, far: float, unbounded_far: bool) -> None:
    if not np.isfinite(near) or near <= 0:
        raise ConfigurationError(f"Near plane must be positive and finite, got {near}")
    if not unbounded_far and (not np.isfinite(far) or far <= near):
        raise ConfigurationError(f"Far plane ({far}) must be finite and beyond near ({near})")


def linearize(
    sample: Union[float, NDArray],
    near: float,
    far: float,
    unbounded_far: bool = False
) -> Union[float, NDArray[np.float64]]:
    """
    Convert reversed depth samples to linear distance.

    Args:
        sample: Depth sample(s) in [0, 1], 1 = near, 0 = far
        near: Near plane distance
        far: Far plane distance (ignored when unbounded_far)
        unbounded_far: Projection has no far plane (infinite reversed-Z)

    Returns:
        Distance in the same units as near/far; a float for scalar input,
        otherwise an array of the input's shape

    Note:
        Bounded: far*near / (far - (1 - sample)*(far - near)), the standard
        formula applied to the conventional depth 1 - sample. It simplifies
        to far*near / (near + sample*(far - near)).
        Unbounded: near / sample.
        sample <= 0 maps to far (inf when unbounded); sample >= 1 to near.

    Raises:
        ConfigurationError: If near/far are invalid
        ConversionError: If any sample is not finite
    """
    _check_planes(near, far, unbounded_far)

    s = np.asarray(sample, dtype=np.float64)
    if not np.all(np.isfinite(s)):
        raise ConversionError("Depth samples contain non-finite values")

    with np.errstate(divide="ignore", invalid="ignore"):
        if unbounded_far:
            distance = near / s
            far_value = np.inf
        else:
            distance = (far * near) / (near + s * (far - near))
            far_value = far

    distance = np.where(s <= 0.0, far_value, distance)
    distance = np.where(s >= 1.0, near, distance)

    if distance.ndim == 0:
        return float(distance)
    return distance


@dataclass
class DepthResult:
    """
    Processed depth map with its metadata.

    Attributes:
        data: Depth values, shape (H, W), float32
        min_depth, max_depth: Range over finite pixels
        near, far: Clip planes after unit conversion
        units: Unit label ("m", "cm", ...)
        inverted: True if data holds 1/distance
    """

    data: NDArray[np.float32]
    min_depth: float
    max_depth: float
    near: float
    far: float
    units: str = "m"
    inverted: bool = False

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    def is_valid(self) -> bool:
        return self.data.ndim == 2 and self.data.size > 0

    def metadata(self, fmt: str) -> dict:
        """Plain-dict description written next to exported depth files."""
        return {
            "width": self.width,
            "height": self.height,
            "min_depth": self.min_depth,
            "max_depth": self.max_depth,
            "near": self.near,
            "far": self.far if np.isfinite(self.far) else None,
            "units": self.units,
            "inverted": self.inverted,
            "format": fmt,
            "dtype": "float32",
            "byte_order": "little",
        }


def _finite_range(data: NDArray) -> Tuple[float, float]:
    finite = data[np.isfinite(data)]
    if finite.size == 0:
        return float("nan"), float("nan")
    return float(finite.min()), float(finite.max())


class DepthProcessor:
    """
    Applies the ordered depth transform chain to raw depth buffers.

    Example:
        processor = DepthProcessor(near=10.0, far=100000.0, unit_scale=0.01)
        result = processor.process(raw_samples)   # meters
    """

    def __init__(
        self,
        near: float = 10.0,
        far: float = 100000.0,
        unbounded_far: bool = False,
        unit_scale: float = 0.01,
        units: str = "m",
        invert: bool = False,
        gamma: float = 1.0
    ):
        """
        Args:
            near, far: Clip planes in source units (UE5: centimeters)
            unbounded_far: Infinite reversed-Z projection
            unit_scale: Multiplier from source units to output units
            units: Label of the output units
            invert: Store 1/distance instead of distance
            gamma: Display gamma, used only by preview()
        """
        _check_planes(near, far, unbounded_far)
        if not np.isfinite(unit_scale) or unit_scale <= 0:
            raise ConfigurationError(f"unit_scale must be positive, got {unit_scale}")
        if not np.isfinite(gamma) or gamma <= 0:
            raise ConfigurationError(f"Gamma must be positive, got {gamma}")

        self.near = near
        self.far = far
        self.unbounded_far = unbounded_far
        self.unit_scale = unit_scale
        self.units = units
        self.invert = invert
        self.gamma = gamma

    def process(self, raw: NDArray) -> DepthResult:
        """
        Run linearize -> unit-convert -> invert on a raw depth buffer.

        Args:
            raw: Reversed depth samples, shape (H, W)

        Returns:
            DepthResult with float32 data
        """
        raw = np.asarray(raw)
        if raw.ndim != 2 or raw.size == 0:
            raise ConversionError(f"Depth buffer must be a non-empty 2D array, got shape {raw.shape}")

        distance = linearize(raw, self.near, self.far, self.unbounded_far)

        distance = distance * self.unit_scale
        near = self.near * self.unit_scale
        far = np.inf if self.unbounded_far else self.far * self.unit_scale
        min_depth, max_depth = _finite_range(distance)

        if self.invert:
            with np.errstate(divide="ignore"):
                distance = 1.0 / distance
            # 1/x reverses ordering, so the extremes swap
            min_depth, max_depth = 1.0 / max_depth, 1.0 / min_depth

        return DepthResult(
            data=distance.astype(np.float32),
            min_depth=min_depth,
            max_depth=max_depth,
            near=near,
            far=far,
            units=self.units,
            inverted=self.invert,
        )

    def preview(self, result: DepthResult, colormap: Optional[str] = None) -> NDArray[np.uint8]:
        """Display image of a processed result with this processor's gamma."""
        return visualization(result, self.gamma, colormap)


def visualization(
    result: DepthResult,
    gamma: float = 1.0,
    colormap: Optional[str] = None
) -> NDArray[np.uint8]:
    """
    Build an 8-bit display image from a depth result.

    Works on a copy; result.data is left untouched.

    Args:
        result: Processed depth
        gamma: Display gamma (2.2 brightens mid-range depth)
        colormap: Optional matplotlib colormap name ("viridis", "plasma", etc.)
                 If None, returns grayscale depth

    Returns:
        RGBA image, shape (height, width, 4), dtype uint8
        Alpha = 255 where depth is finite, 0 elsewhere
    """
    if gamma <= 0:
        raise ConfigurationError(f"Gamma must be positive, got {gamma}")

    depth = np.array(result.data, dtype=np.float64)
    mask = np.isfinite(depth)
    alpha = mask.astype(np.uint8) * 255

    depth_range = result.max_depth - result.min_depth
    if not np.isfinite(depth_range) or depth_range <= 0:
        depth_range = 1.0

    normalized = np.zeros_like(depth)
    normalized[mask] = np.clip((depth[mask] - result.min_depth) / depth_range, 0.0, 1.0)
    if not result.inverted:
        # Closer = white (1.0), farther = black (0.0)
        normalized[mask] = 1.0 - normalized[mask]
    normalized = normalized ** (1.0 / gamma)

    if colormap is not None:
        try:
            import matplotlib
        except ImportError:
            raise ImportError(
                "matplotlib is required for depth colormaps. "
                "Install with: pip install matplotlib"
            )

        try:
            cmap = matplotlib.colormaps[colormap]
        except KeyError:
            raise ConfigurationError(f"Unknown matplotlib colormap '{colormap}'") from None
        depth_colored = (cmap(normalized)[:, :, :3] * 255).astype(np.uint8)
    else:
        depth_gray = (normalized * 255).astype(np.uint8)
        depth_colored = np.stack([depth_gray] * 3, axis=-1)

    return np.dstack([depth_colored, alpha])


def save_preview(image: NDArray[np.uint8], path: Union[str, Path]) -> Path:
    """
    Write a visualization() image as PNG.

    Args:
        image: RGB or RGBA image (H, W, C)
        path: Output path

    Note:
        OpenCV expects BGR(A) order, so channels are swapped before writing.
    """
    try:
        import cv2
    except ImportError:
        raise ImportError(
            "opencv-python is required for depth previews. "
            "Install with: pip install opencv-python"
        )

    if image.ndim != 3 or image.shape[2] not in (3, 4):
        raise ConfigurationError(f"Preview must be an RGB or RGBA image, got shape {image.shape}")
    if image.shape[2] == 4:
        image_bgr = cv2.cvtColor(image, cv2.COLOR_RGBA2BGRA)
    else:
        image_bgr = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)

    path = Path(path)
    if not cv2.imwrite(str(path), image_bgr):
        raise DatasetIOError(f"OpenCV could not write {path}")
    logger.debug("Saved depth preview %dx%d to %s", image.shape[1], image.shape[0], path)
    return path


def save_depth(result: DepthResult, path: Union[str, Path], fmt: str = "npy") -> Path:
    """
    Write a depth map plus a JSON metadata sidecar.

    Formats:
        npy: float32 NumPy array
        raw: headerless float32 little-endian, row-major
        png16: 16-bit grayscale normalized to [min_depth, max_depth]

    Args:
        result: Processed depth
        path: Output file path (extension is replaced to match fmt)
        fmt: One of DEPTH_FORMATS

    Returns:
        Path of the written depth file

    Raises:
        ConfigurationError: Unknown format
        DatasetIOError: If writing fails
    """
    if fmt not in DEPTH_FORMATS:
        raise ConfigurationError(f"Unknown depth format '{fmt}'. Choose from: {', '.join(DEPTH_FORMATS)}")

    path = Path(path).with_suffix(DEPTH_EXTENSIONS[fmt])
    data = result.data.astype("<f4")

    try:
        if fmt == "npy":
            np.save(path, data)
        elif fmt == "raw":
            data.tofile(path)
        else:
            _save_png16(result, path)

        with open(path.with_suffix(".json"), "w") as f:
            json.dump(result.metadata(fmt), f, indent=2)
    except OSError as e:
        raise DatasetIOError(f"Failed to write depth map {path}: {e}") from e

    logger.debug("Saved %s depth %dx%d to %s", fmt, result.width, result.height, path)
    return path


def _save_png16(result: DepthResult, path: Path) -> None:
    try:
        import cv2
    except ImportError:
        raise ImportError(
            "opencv-python is required for PNG depth export. "
            "Install with: pip install opencv-python"
        )

    depth_range = result.max_depth - result.min_depth
    if not np.isfinite(depth_range) or depth_range <= 0:
        depth_range = 1.0

    depth = np.nan_to_num(result.data.astype(np.float64), nan=result.max_depth,
                          posinf=result.max_depth, neginf=result.min_depth)
    normalized = np.clip((depth - result.min_depth) / depth_range, 0.0, 1.0)
    pixels = np.round(normalized * 65535.0).astype(np.uint16)

    if not cv2.imwrite(str(path), pixels):
        raise OSError(f"OpenCV could not write {path}")


def load_depth(path: Union[str, Path]) -> DepthResult:
    """
    Read a depth map written by save_depth(), using its JSON sidecar.

    PNG16 input is de-normalized back to [min_depth, max_depth], so it is
    only accurate to 1/65535 of the range.
    """
    path = Path(path)
    with open(path.with_suffix(".json"), "r") as f:
        meta = json.load(f)

    fmt = meta["format"]
    if fmt == "npy":
        data = np.load(path)
    elif fmt == "raw":
        data = np.fromfile(path, dtype="<f4").reshape(meta["height"], meta["width"])
    else:
        try:
            import cv2
        except ImportError:
            raise ImportError(
                "opencv-python is required for PNG depth import. "
                "Install with: pip install opencv-python"
            )
        pixels = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
        if pixels is None:
            raise DatasetIOError(f"OpenCV could not read {path}")
        depth_range = meta["max_depth"] - meta["min_depth"]
        data = meta["min_depth"] + pixels.astype(np.float64) / 65535.0 * depth_range

    far = meta["far"] if meta["far"] is not None else np.inf
    return DepthResult(
        data=np.asarray(data, dtype=np.float32),
        min_depth=meta["min_depth"],
        max_depth=meta["max_depth"],
        near=meta["near"],
        far=far,
        units=meta["units"],
        inverted=meta["inverted"],
    )


def validate_depth_range(result: DepthResult) -> List[str]:
    """
    Sanity-check a processed depth map.

    Returns:
        List of warnings (empty if the map looks usable)
    """
    warnings = []

    if not result.is_valid():
        return [f"Depth map has invalid shape {result.data.shape}"]

    n_bad = int(np.count_nonzero(~np.isfinite(result.data)))
    if n_bad:
        warnings.append(f"{n_bad} of {result.data.size} depth pixels are not finite")

    if not np.isfinite(result.min_depth) or not np.isfinite(result.max_depth):
        warnings.append("Depth map contains no finite values")
    elif result.max_depth - result.min_depth < 1e-6:
        warnings.append(f"Degenerate depth range [{result.min_depth}, {result.max_depth}]")
    elif not result.inverted and np.isfinite(result.far) and result.max_depth >= result.far:
        warnings.append("Some pixels sit on the far plane (sky or missing geometry)")

    return warnings


def depth_to_points(
    depth: NDArray,
    camera_model: CameraModel,
    pose: Pose,
    stride: int = 4,
    colors: Optional[NDArray[np.uint8]] = None,
    max_depth: Optional[float] = None
) -> Tuple[NDArray[np.float64], NDArray[np.uint8]]:
    """
    Back-project a linear planar depth map into world points.

    The pose is converted to the OpenCV convention, so depth must be in
    that convention's units (meters) and the points come back in it.

    Args:
        depth: Linear depth along the optical axis, shape (H, W)
        camera_model: Intrinsics matching the depth resolution
        pose: Camera-to-world pose of the view
        stride: Pixel subsampling step
        colors: Optional RGB image, shape (H, W, 3)
        max_depth: Drop pixels at or beyond this distance

    Returns:
        points: (N, 3) world positions
        colors: (N, 3) uint8 RGB (mid-gray when no image is given)
    """
    depth = np.asarray(depth, dtype=np.float64)
    if depth.shape != (camera_model.height, camera_model.width):
        raise ConfigurationError(
            f"Depth shape {depth.shape} does not match camera "
            f"{camera_model.width}x{camera_model.height}"
        )
    if stride < 1:
        raise ConfigurationError(f"stride must be >= 1, got {stride}")

    vs = np.arange(0, depth.shape[0], stride)
    us = np.arange(0, depth.shape[1], stride)
    uu, vv = np.meshgrid(us, vs)
    uu = uu.ravel()
    vv = vv.ravel()
    d = depth[vv, uu]

    mask = np.isfinite(d) & (d > 0)
    if max_depth is not None:
        mask &= d < max_depth
    uu, vv, d = uu[mask], vv[mask], d[mask]

    # Pixel centers sit at +0.5 in COLMAP's image coordinates
    x_cam = (uu + 0.5 - camera_model.cx) * d / camera_model.fx
    y_cam = (vv + 0.5 - camera_model.cy) * d / camera_model.fy
    pts_cam = np.stack([x_cam, y_cam, d], axis=1)

    pose_cv = coordinates.convert_pose(pose, pose.convention, coordinates.OPENCV)
    points = pts_cam @ pose_cv.rotation_matrix.T + pose_cv.position

    if colors is not None:
        point_colors = np.asarray(colors, dtype=np.uint8)[vv, uu, :3]
    else:
        point_colors = np.full((len(points), 3), 128, dtype=np.uint8)

    return points, point_colors
