"""
Camera poses and intrinsic camera models.

This module provides the two plain data types shared by every stage:

- Pose: camera-to-world position and orientation in a named convention
- CameraModel: COLMAP camera intrinsics (model kind plus parameter vector)

Both are immutable. Conversions between conventions live in coordinates.py.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from . import coordinates
from .coordinates import Convention
from .errors import ConfigurationError, ConversionError
from .utils import compute_default_focal_length

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Pose:
    """
    Camera-to-world pose.

    Attributes:
        position: Camera center in world coords, shape (3,), float64
        rotation: Unit quaternion (w, x, y, z) mapping camera-local vectors
                  to world vectors
        convention: Convention both position and rotation are expressed in

    A non-unit rotation is renormalized on construction (and logged);
    a zero-norm or non-finite one raises ConversionError.
    """

    position: NDArray[np.float64]
    rotation: NDArray[np.float64] = field(
        default_factory=lambda: np.array([1.0, 0.0, 0.0, 0.0])
    )
    convention: Convention = coordinates.OPENCV

    def __post_init__(self):
        position = np.array(self.position, dtype=np.float64).reshape(3)
        if not np.all(np.isfinite(position)):
            raise ConversionError(f"Pose position contains non-finite values: {position}")
        rotation = coordinates.normalize_quaternion(self.rotation)

        position.setflags(write=False)
        rotation.setflags(write=False)
        object.__setattr__(self, "position", position)
        object.__setattr__(self, "rotation", rotation)

    @classmethod
    def from_matrix(
        cls,
        position: NDArray[np.float64],
        rotation_matrix: NDArray[np.float64],
        convention: Convention = coordinates.OPENCV
    ) -> "Pose":
        """Create a pose from a camera-to-world rotation matrix."""
        return cls(
            position=position,
            rotation=coordinates.rotation_to_quaternion_wxyz(rotation_matrix),
            convention=convention
        )

    @classmethod
    def look_at(
        cls,
        eye: NDArray[np.float64],
        target: NDArray[np.float64],
        convention: Convention = coordinates.OPENCV,
        up: Optional[NDArray[np.float64]] = None
    ) -> "Pose":
        """
        Create a pose at 'eye' looking at 'target'.

        Args:
            eye: Camera position in world coords
            target: Point to look at in world coords
            convention: Convention of eye/target and of the resulting pose
            up: Up direction hint (default: the convention's up axis)
        """
        R = coordinates.look_at_rotation(eye, target, convention, up)
        return cls.from_matrix(eye, R, convention)

    @property
    def rotation_matrix(self) -> NDArray[np.float64]:
        """Camera-to-world rotation matrix, shape (3, 3)."""
        return coordinates.quaternion_to_rotation(self.rotation)

    @property
    def forward_vector(self) -> NDArray[np.float64]:
        """Viewing direction in world coords (unit length)."""
        return self.rotation_matrix @ self.convention.forward

    @property
    def up_vector(self) -> NDArray[np.float64]:
        """Camera up direction in world coords (unit length)."""
        return self.rotation_matrix @ self.convention.up

    @property
    def right_vector(self) -> NDArray[np.float64]:
        """Camera right direction in world coords (unit length)."""
        return self.rotation_matrix @ self.convention.right

    def get_c2w(self) -> NDArray[np.float64]:
        """
        Get camera-to-world transformation matrix.

        Returns:
            4x4 matrix that transforms points from camera space to world space
        """
        c2w = np.eye(4)
        c2w[:3, :3] = self.rotation_matrix
        c2w[:3, 3] = self.position
        return c2w

    def get_w2c(self) -> NDArray[np.float64]:
        """
        Get world-to-camera transformation matrix.

        Returns:
            4x4 matrix, the inverse of get_c2w()
        """
        R_w2c = self.rotation_matrix.T
        w2c = np.eye(4)
        w2c[:3, :3] = R_w2c
        w2c[:3, 3] = -R_w2c @ self.position
        return w2c

    def to_convention(self, target: Convention) -> "Pose":
        """Shorthand for coordinates.convert_pose(self, self.convention, target)."""
        return coordinates.convert_pose(self, self.convention, target)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"Pose(pos={np.array2string(self.position, precision=4)}, "
            f"quat={np.array2string(self.rotation, precision=4)}, "
            f"convention={self.convention.name})"
        )


class CameraModelKind(Enum):
    """
    COLMAP camera models.

    Each value is (model_id, param_count, principal_point_index), where the
    principal point occupies params[index] and params[index + 1].
    """

    SIMPLE_PINHOLE = (0, 3, 1)   # f, cx, cy
    PINHOLE = (1, 4, 2)          # fx, fy, cx, cy
    SIMPLE_RADIAL = (2, 4, 1)    # f, cx, cy, k
    RADIAL = (3, 5, 1)           # f, cx, cy, k1, k2
    OPENCV = (4, 8, 2)           # fx, fy, cx, cy, k1, k2, p1, p2
    FULL_OPENCV = (6, 12, 2)     # fx, fy, cx, cy, k1, k2, p1, p2, k3, k4, k5, k6

    @property
    def model_id(self) -> int:
        return self.value[0]

    @property
    def param_count(self) -> int:
        return self.value[1]

    @property
    def principal_point_index(self) -> int:
        return self.value[2]

    @property
    def has_separate_focal(self) -> bool:
        return self.principal_point_index == 2

    @classmethod
    def from_id(cls, model_id: int) -> "CameraModelKind":
        for kind in cls:
            if kind.model_id == model_id:
                return kind
        raise ConfigurationError(f"Unknown COLMAP camera model id: {model_id}")

    @classmethod
    def from_name(cls, name: str) -> "CameraModelKind":
        try:
            return cls[name.upper()]
        except KeyError:
            raise ConfigurationError(
                f"Unknown camera model '{name}'. Choose from: {', '.join(k.name for k in cls)}"
            ) from None


@dataclass(frozen=True)
class CameraModel:
    """
    Camera intrinsics in COLMAP form.

    Attributes:
        camera_id: Unique id, >= 1
        width: Image width in pixels
        height: Image height in pixels
        kind: COLMAP camera model
        params: Parameter vector, length fixed by kind
    """

    camera_id: int
    width: int
    height: int
    kind: CameraModelKind
    params: Tuple[float, ...]

    def __post_init__(self):
        if int(self.camera_id) < 1:
            raise ConfigurationError(f"Camera id must be >= 1, got {self.camera_id}")
        if int(self.width) <= 0 or int(self.height) <= 0:
            raise ConfigurationError(
                f"Camera size must be positive, got {self.width}x{self.height}"
            )
        if not isinstance(self.kind, CameraModelKind):
            raise ConfigurationError(f"Camera kind must be a CameraModelKind, got {self.kind!r}")

        params = tuple(float(p) for p in self.params)
        if len(params) != self.kind.param_count:
            raise ConfigurationError(
                f"{self.kind.name} takes {self.kind.param_count} params, got {len(params)}"
            )
        if not all(np.isfinite(params)):
            raise ConversionError(f"Camera params contain non-finite values: {params}")

        object.__setattr__(self, "camera_id", int(self.camera_id))
        object.__setattr__(self, "width", int(self.width))
        object.__setattr__(self, "height", int(self.height))
        object.__setattr__(self, "params", params)

    @classmethod
    def from_focal(
        cls,
        camera_id: int,
        width: int,
        height: int,
        focal_length: Tuple[float, float],
        principal_point: Optional[Tuple[float, float]] = None,
        kind: CameraModelKind = CameraModelKind.PINHOLE
    ) -> "CameraModel":
        """
        Create a camera model from pixel focal lengths.

        Distortion coefficients, if the kind has any, are zero. Single-focal
        kinds use fx.
        """
        fx, fy = focal_length
        if principal_point is None:
            cx, cy = width / 2.0, height / 2.0
        else:
            cx, cy = principal_point

        if kind.has_separate_focal:
            head = [fx, fy, cx, cy]
        else:
            head = [fx, cx, cy]
        params = head + [0.0] * (kind.param_count - len(head))
        return cls(camera_id, width, height, kind, tuple(params))

    @classmethod
    def from_fov(
        cls,
        camera_id: int,
        width: int,
        height: int,
        fov_deg: float,
        kind: CameraModelKind = CameraModelKind.PINHOLE,
        is_horizontal_fov: bool = True
    ) -> "CameraModel":
        """
        Create camera model from field of view angle.

        Args:
            camera_id: Camera id (>= 1)
            width, height: Image size in pixels
            fov_deg: Field of view in degrees
            kind: COLMAP camera model
            is_horizontal_fov: If True, fov_deg is horizontal FOV
                              If False, fov_deg is vertical FOV

        Raises:
            ConfigurationError: If fov_deg is not in (0, 180)
        """
        extent = width if is_horizontal_fov else height
        focal = compute_default_focal_length(extent, fov_deg)
        return cls.from_focal(camera_id, width, height, (focal, focal), kind=kind)

    @classmethod
    def from_sensor(
        cls,
        camera_id: int,
        width: int,
        height: int,
        focal_length_mm: float,
        sensor_width_mm: float = 36.0,
        sensor_height_mm: Optional[float] = None,
        kind: CameraModelKind = CameraModelKind.PINHOLE
    ) -> "CameraModel":
        """
        Create camera model from a physical lens and sensor.

        fx = focal_mm * width / sensor_width_mm; fy uses the sensor height
        when given, otherwise square pixels are assumed.
        """
        if focal_length_mm <= 0 or sensor_width_mm <= 0:
            raise ConfigurationError("Focal length and sensor width must be positive")

        fx = focal_length_mm * width / sensor_width_mm
        if sensor_height_mm:
            fy = focal_length_mm * height / sensor_height_mm
        else:
            fy = fx
        return cls.from_focal(camera_id, width, height, (fx, fy), kind=kind)

    @property
    def fx(self) -> float:
        return self.params[0]

    @property
    def fy(self) -> float:
        return self.params[1] if self.kind.has_separate_focal else self.params[0]

    @property
    def cx(self) -> float:
        return self.params[self.kind.principal_point_index]

    @property
    def cy(self) -> float:
        return self.params[self.kind.principal_point_index + 1]

    @property
    def horizontal_fov_deg(self) -> float:
        return float(np.degrees(2.0 * np.arctan(self.width / (2.0 * self.fx))))

    @property
    def vertical_fov_deg(self) -> float:
        return float(np.degrees(2.0 * np.arctan(self.height / (2.0 * self.fy))))

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    def intrinsics_matrix(self) -> NDArray[np.float64]:
        """
        Get camera intrinsics as 3x3 matrix.

        Returns:
            Intrinsic matrix K:
            [[fx,  0, cx],
             [ 0, fy, cy],
             [ 0,  0,  1]]
        """
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0]
        ])

    def validate_for_training(self) -> List[str]:
        """
        Check the intrinsics against what splat training handles well.

        Returns:
            List of human-readable warnings (empty if none)
        """
        warnings = []

        hfov = self.horizontal_fov_deg
        if hfov < 30.0:
            warnings.append(f"Narrow horizontal FOV ({hfov:.1f} deg) reduces view overlap")
        elif hfov > 120.0:
            warnings.append(f"Wide horizontal FOV ({hfov:.1f} deg) may need a fisheye model")

        off_x = abs(self.cx - self.width / 2.0) / self.width
        off_y = abs(self.cy - self.height / 2.0) / self.height
        if off_x > 0.1 or off_y > 0.1:
            warnings.append(
                f"Principal point ({self.cx:.1f}, {self.cy:.1f}) is far from the image center"
            )

        if not np.isclose(self.fx, self.fy, rtol=1e-3):
            warnings.append(f"Non-square pixels (fx={self.fx:.3f}, fy={self.fy:.3f})")

        if min(self.width, self.height) < 256:
            warnings.append(f"Small image size {self.width}x{self.height}")
        elif max(self.width, self.height) > 4096:
            warnings.append(f"Large image size {self.width}x{self.height} increases training memory")

        for warning in warnings:
            logger.debug("camera %d: %s", self.camera_id, warning)
        return warnings
