"""
Coordinate conventions and conversion functions.

A convention describes how a 3D engine or file format lays out its axes.
Every convention is expressed against one semantic reference frame:

    +X: Right
    +Y: Up
    +Z: Forward

Each axis of a convention is labelled with the semantic direction it points
along, which fixes both the signed axis permutation between any two
conventions and their handedness. Positions additionally carry a unit scale
(meters per unit).

Predefined conventions:
    UNREAL: +X forward, +Y right, +Z up, centimeters, left-handed
    OPENCV / COLMAP: +X right, +Y down, +Z forward, meters, right-handed
    OPENGL: +X right, +Y up, +Z backward, meters, right-handed

A camera rotation maps camera-local vectors to world vectors, both in the
same convention. The camera looks along that convention's semantic forward
direction, so an OpenCV camera looks down +Z and an OpenGL camera down -Z.

All functions here are pure. Conversions happen only at system boundaries:
the planner works in its configured world convention and the exporter
converts into OPENCV when writing COLMAP files.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from .errors import ConfigurationError, ConversionError

logger = logging.getLogger(__name__)

SEMANTIC_DIRECTIONS: Dict[str, NDArray[np.float64]] = {
    "right": np.array([1.0, 0.0, 0.0]),
    "left": np.array([-1.0, 0.0, 0.0]),
    "up": np.array([0.0, 1.0, 0.0]),
    "down": np.array([0.0, -1.0, 0.0]),
    "forward": np.array([0.0, 0.0, 1.0]),
    "backward": np.array([0.0, 0.0, -1.0]),
}

# Threshold on |forward . up| above which look-at switches its up reference
POLE_THRESHOLD = 0.999


@dataclass(frozen=True)
class Convention:
    """
    Coordinate convention descriptor.

    Attributes:
        name: Human-readable name
        axes: Semantic direction of the +X, +Y and +Z axes, each one of
              right/left/up/down/forward/backward
        handedness: "left" or "right"; must agree with axes
        meters_per_unit: Unit scale for positions (0.01 for centimeters)
        row_origin: Pixel row origin, "top" or "bottom"
    """

    name: str
    axes: Tuple[str, str, str]
    handedness: str
    meters_per_unit: float = 1.0
    row_origin: str = "top"

    def __post_init__(self):
        object.__setattr__(self, "axes", tuple(a.lower() for a in self.axes))

        if len(self.axes) != 3:
            raise ConfigurationError(f"{self.name}: expected 3 axes, got {self.axes}")
        for axis in self.axes:
            if axis not in SEMANTIC_DIRECTIONS:
                raise ConfigurationError(f"{self.name}: unknown axis direction '{axis}'")
        if self.handedness not in ("left", "right"):
            raise ConfigurationError(
                f"{self.name}: handedness must be 'left' or 'right', got '{self.handedness}'"
            )
        if self.row_origin not in ("top", "bottom"):
            raise ConfigurationError(
                f"{self.name}: row_origin must be 'top' or 'bottom', got '{self.row_origin}'"
            )
        if not np.isfinite(self.meters_per_unit) or self.meters_per_unit <= 0:
            raise ConfigurationError(
                f"{self.name}: meters_per_unit must be positive, got {self.meters_per_unit}"
            )

        det = float(np.linalg.det(self.to_semantic))
        if not np.isclose(abs(det), 1.0):
            raise ConfigurationError(
                f"{self.name}: axes {self.axes} do not span three distinct directions"
            )

        # The semantic frame (right, up, forward) is itself left-handed
        derived = "left" if det > 0 else "right"
        if derived != self.handedness:
            raise ConfigurationError(
                f"{self.name}: axes {self.axes} form a {derived}-handed frame, "
                f"but handedness is declared '{self.handedness}'"
            )

    @property
    def to_semantic(self) -> NDArray[np.float64]:
        """3x3 matrix mapping coordinates in this convention to semantic coords."""
        return np.column_stack([SEMANTIC_DIRECTIONS[a] for a in self.axes])

    def direction(self, semantic: str) -> NDArray[np.float64]:
        """Unit vector, in this convention, of a semantic direction."""
        return self.to_semantic.T @ SEMANTIC_DIRECTIONS[semantic]

    @property
    def up(self) -> NDArray[np.float64]:
        return self.direction("up")

    @property
    def forward(self) -> NDArray[np.float64]:
        return self.direction("forward")

    @property
    def right(self) -> NDArray[np.float64]:
        return self.direction("right")

    @property
    def cross_sign(self) -> float:
        """Sign that makes np.cross produce physical directions in this frame."""
        return 1.0 if self.handedness == "right" else -1.0


UNREAL = Convention("unreal", ("forward", "right", "up"), "left", 0.01, "top")
OPENCV = Convention("opencv", ("right", "down", "forward"), "right", 1.0, "top")
OPENGL = Convention("opengl", ("right", "up", "backward"), "right", 1.0, "bottom")
COLMAP = OPENCV

CONVENTIONS: Dict[str, Convention] = {
    "unreal": UNREAL,
    "ue5": UNREAL,
    "opencv": OPENCV,
    "colmap": COLMAP,
    "opengl": OPENGL,
}


def get_convention(name: str) -> Convention:
    """
    Look up a predefined convention by name (case-insensitive).

    Raises:
        ConfigurationError: If the name is unknown
    """
    try:
        return CONVENTIONS[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown convention '{name}'. Choose from: {', '.join(sorted(CONVENTIONS))}"
        ) from None


def basis_change(source: Convention, target: Convention) -> NDArray[np.float64]:
    """
    Change-of-basis matrix B with v_target = B @ v_source.

    B is a signed permutation matrix, so B^-1 == B^T exactly.
    """
    return target.to_semantic.T @ source.to_semantic


def axis_mapping(source: Convention, target: Convention) -> List[Tuple[int, int]]:
    """
    Signed axis permutation from source to target.

    Returns:
        For each source axis, (target_axis_index, sign)

    Example:
        axis_mapping(UNREAL, OPENCV) -> [(2, 1), (0, 1), (1, -1)]
        UE +X (forward) lands on OpenCV +Z, UE +Y on +X, UE +Z on -Y.
    """
    B = basis_change(source, target)
    mapping = []
    for j in range(3):
        i = int(np.argmax(np.abs(B[:, j])))
        mapping.append((i, int(np.sign(B[i, j]))))
    return mapping


def _check_finite(values: NDArray, what: str) -> None:
    if not np.all(np.isfinite(values)):
        raise ConversionError(f"{what} contains non-finite values: {values}")


def convert_position(
    position: NDArray[np.float64],
    source: Convention,
    target: Convention
) -> NDArray[np.float64]:
    """
    Convert positions, shape (3,) or (N, 3), including the unit scale.
    """
    position = np.asarray(position, dtype=np.float64)
    _check_finite(position, "position")
    B = basis_change(source, target)
    scale = source.meters_per_unit / target.meters_per_unit
    return (position @ B.T) * scale


def convert_direction(
    direction: NDArray[np.float64],
    source: Convention,
    target: Convention
) -> NDArray[np.float64]:
    """Convert direction vectors, shape (3,) or (N, 3). No unit scale."""
    direction = np.asarray(direction, dtype=np.float64)
    _check_finite(direction, "direction")
    return direction @ basis_change(source, target).T


def convert_rotation(
    R: NDArray[np.float64],
    source: Convention,
    target: Convention
) -> NDArray[np.float64]:
    """
    Convert a rotation matrix by conjugation: R' = B @ R @ B^-1.

    Relabelling the matrix entries is not enough when the handedness
    changes; conjugation keeps R' a proper rotation in the target frame.
    """
    B = basis_change(source, target)
    return B @ np.asarray(R, dtype=np.float64) @ B.T


def normalize_quaternion(q: NDArray[np.float64], tolerance: float = 1e-6) -> NDArray[np.float64]:
    """
    Return q as a unit quaternion.

    A quaternion whose norm differs from 1 by more than tolerance is
    renormalized and a warning is logged.

    Raises:
        ConversionError: If q has non-finite components or zero norm
    """
    q = np.asarray(q, dtype=np.float64).reshape(4)
    _check_finite(q, "quaternion")

    norm = float(np.linalg.norm(q))
    if norm < 1e-12:
        raise ConversionError("Cannot normalize a zero-norm quaternion")
    if abs(norm - 1.0) > tolerance:
        logger.warning("Renormalizing quaternion %s with norm %.9g", q, norm)
    return q / norm


def canonical_quaternion(q: NDArray[np.float64]) -> NDArray[np.float64]:
    """Flip q to the hemisphere with a non-negative scalar component."""
    q = np.asarray(q, dtype=np.float64)
    if q[0] < 0.0:
        return -q
    if q[0] == 0.0:
        # Tie-break on the first non-zero vector component
        for value in q[1:]:
            if value != 0.0:
                return -q if value < 0.0 else q
    return q


def quaternion_multiply(q1: NDArray[np.float64], q2: NDArray[np.float64]) -> NDArray[np.float64]:
    """Hamilton product q1 * q2, both (w, x, y, z)."""
    w1, x1, y1, z1 = q1
    w2, x2, y2, z2 = q2
    return np.array([
        w1 * w2 - x1 * x2 - y1 * y2 - z1 * z2,
        w1 * x2 + x1 * w2 + y1 * z2 - z1 * y2,
        w1 * y2 - x1 * z2 + y1 * w2 + z1 * x2,
        w1 * z2 + x1 * y2 - y1 * x2 + z1 * w2,
    ])


def quaternion_angle_between(q1: NDArray[np.float64], q2: NDArray[np.float64]) -> float:
    """
    Rotation angle in radians between two unit quaternions.

    Uses atan2 on the relative rotation, which stays accurate for tiny
    angles where arccos of the dot product does not.
    """
    q1_conj = np.array([q1[0], -q1[1], -q1[2], -q1[3]], dtype=np.float64)
    rel = quaternion_multiply(q1_conj, np.asarray(q2, dtype=np.float64))
    return float(2.0 * np.arctan2(np.linalg.norm(rel[1:]), abs(rel[0])))


def slerp(q1: NDArray[np.float64], q2: NDArray[np.float64], t: float) -> NDArray[np.float64]:
    """Spherical linear interpolation between unit quaternions, shortest arc."""
    q1 = normalize_quaternion(q1)
    q2 = normalize_quaternion(q2)
    dot = float(np.dot(q1, q2))
    if dot < 0.0:
        q2 = -q2
        dot = -dot
    if dot > 0.9995:
        # Nearly parallel: lerp avoids dividing by sin(theta) ~ 0
        q = q1 + t * (q2 - q1)
        return q / np.linalg.norm(q)

    theta = np.arccos(dot)
    sin_theta = np.sin(theta)
    q = (np.sin((1.0 - t) * theta) * q1 + np.sin(t * theta) * q2) / sin_theta
    return q / np.linalg.norm(q)


def quaternion_to_rotation(q: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Convert a (w, x, y, z) quaternion to a 3x3 rotation matrix.

    The quaternion is normalized first (see normalize_quaternion).
    """
    w, x, y, z = normalize_quaternion(q)
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
        [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
        [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
    ])


def rotation_to_quaternion_wxyz(R: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Convert 3x3 rotation matrix to quaternion in (w, x, y, z) order.

    This is the quaternion convention used by COLMAP and 3DGS PLY files.
    The result is unit length with a non-negative scalar component.

    Note:
        Many libraries (scipy, pyquaternion) use (x, y, z, w) order.
        COLMAP uses (w, x, y, z) order - be careful!
    """
    R = np.asarray(R, dtype=np.float64)
    _check_finite(R, "rotation matrix")
    trace = R[0, 0] + R[1, 1] + R[2, 2]

    if trace > 0:
        s = 0.5 / np.sqrt(trace + 1.0)
        w = 0.25 / s
        x = (R[2, 1] - R[1, 2]) * s
        y = (R[0, 2] - R[2, 0]) * s
        z = (R[1, 0] - R[0, 1]) * s
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        w = (R[2, 1] - R[1, 2]) / s
        x = 0.25 * s
        y = (R[0, 1] + R[1, 0]) / s
        z = (R[0, 2] + R[2, 0]) / s
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        w = (R[0, 2] - R[2, 0]) / s
        x = (R[0, 1] + R[1, 0]) / s
        y = 0.25 * s
        z = (R[1, 2] + R[2, 1]) / s
    else:
        s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        w = (R[1, 0] - R[0, 1]) / s
        x = (R[0, 2] + R[2, 0]) / s
        y = (R[1, 2] + R[2, 1]) / s
        z = 0.25 * s

    q = np.array([w, x, y, z], dtype=np.float64)
    return canonical_quaternion(q / np.linalg.norm(q))


def convert_pose(pose, source: Convention, target: Convention):
    """
    Convert a Pose from one convention to another.

    The position goes through the signed permutation and unit scale; the
    rotation is conjugated by the basis change and returned in canonical
    sign. The map is an exact similarity transform, so converting A -> B
    -> A reproduces the input to floating round-off.

    Args:
        pose: camera.Pose tagged with the source convention
        source: Convention the pose is expressed in
        target: Convention to convert into

    Returns:
        New Pose tagged with the target convention

    Raises:
        ConfigurationError: If the pose is tagged with a different convention
        ConversionError: If the pose holds non-finite values
    """
    if pose.convention != source:
        raise ConfigurationError(
            f"Pose is expressed in '{pose.convention.name}', not '{source.name}'"
        )
    if source == target:
        return pose

    position = convert_position(pose.position, source, target)
    R = convert_rotation(quaternion_to_rotation(pose.rotation), source, target)
    rotation = rotation_to_quaternion_wxyz(R)

    return dataclasses.replace(pose, position=position, rotation=rotation, convention=target)


def convert_intrinsics(camera_model, source: Convention, target: Convention):
    """
    Convert a CameraModel between conventions.

    Focal lengths and principal points are pixel-space quantities; only
    the principal point's vertical component changes, and only when the
    pixel row origin flips (cy' = height - cy).
    """
    if source.row_origin == target.row_origin:
        return camera_model

    params = list(camera_model.params)
    index = camera_model.kind.principal_point_index + 1
    params[index] = camera_model.height - params[index]
    return dataclasses.replace(camera_model, params=tuple(params))


def look_at_rotation(
    eye: NDArray[np.float64],
    target: NDArray[np.float64],
    convention: Convention,
    up: Optional[NDArray[np.float64]] = None
) -> NDArray[np.float64]:
    """
    Camera-to-world rotation for a camera at 'eye' looking at 'target'.

    Args:
        eye: Camera position, shape (3,)
        target: Point the camera looks at, shape (3,)
        convention: Convention of eye/target and of the returned rotation
        up: Up direction hint (default: the convention's up axis)

    Returns:
        3x3 rotation mapping camera-local vectors to world vectors

    Note:
        Camera world axes:
        - forward = (target - eye) normalized
        - right = forward x up
        - actual_up = right x forward

        Near the poles, where |forward . up| > 0.999, the convention's
        forward axis replaces the up hint so the cross product stays
        well conditioned.
    """
    if up is None:
        up = convention.up
    up = np.asarray(up, dtype=np.float64)

    forward = np.asarray(target, dtype=np.float64) - np.asarray(eye, dtype=np.float64)
    norm = np.linalg.norm(forward)
    if norm < 1e-12:
        raise ConfigurationError(f"Camera position {eye} coincides with its look-at target")
    forward = forward / norm

    if abs(np.dot(forward, up)) > POLE_THRESHOLD:
        up = convention.forward

    sign = convention.cross_sign
    right = sign * np.cross(forward, up)
    right = right / np.linalg.norm(right)
    actual_up = sign * np.cross(right, forward)

    # Columns: camera right/up/forward in world coords; rows of local_axes
    # are the same directions in camera-local coords
    world_axes = np.column_stack([right, actual_up, forward])
    local_axes = np.column_stack([convention.right, convention.up, convention.forward])
    return world_axes @ local_axes.T


def world_to_colmap(pose) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    COLMAP extrinsics (world-to-camera) for a camera-to-world Pose.

    The pose is first converted into the OpenCV convention.

    Returns:
        qvec: World-to-camera quaternion (w, x, y, z), canonical sign
        tvec: World origin in camera coordinates, -R_w2c @ camera_center
    """
    pose = convert_pose(pose, pose.convention, OPENCV)
    R_w2c = quaternion_to_rotation(pose.rotation).T
    tvec = -R_w2c @ pose.position
    qvec = rotation_to_quaternion_wxyz(R_w2c)
    return qvec, tvec


def colmap_to_world(
    qvec: NDArray[np.float64],
    tvec: NDArray[np.float64]
) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Inverse of world_to_colmap, in the OpenCV convention.

    Returns:
        position: Camera center in world coords
        rotation: Camera-to-world quaternion (w, x, y, z)
    """
    R_c2w = quaternion_to_rotation(qvec).T
    position = -R_c2w @ np.asarray(tvec, dtype=np.float64)
    return position, rotation_to_quaternion_wxyz(R_c2w)


def cartesian_to_spherical(
    position: NDArray[np.float64],
    convention: Convention = OPENGL
) -> Tuple[float, float, float]:
    """
    Convert Cartesian coordinates to spherical, relative to the origin.

    Inverse of spherical_to_cartesian().

    Returns:
        Tuple of (radius, azimuth_deg, elevation_deg)
    """
    right, up, forward = convention.to_semantic @ np.asarray(position, dtype=np.float64)
    radius = float(np.sqrt(right * right + up * up + forward * forward))
    if radius < 1e-10:
        return 0.0, 0.0, 0.0
    elevation_deg = float(np.degrees(np.arcsin(np.clip(up / radius, -1.0, 1.0))))
    azimuth_deg = float(np.degrees(np.arctan2(right, forward)))
    return radius, azimuth_deg, elevation_deg


def spherical_to_cartesian(
    radius: float,
    azimuth_deg: float,
    elevation_deg: float,
    convention: Convention = OPENGL
) -> NDArray[np.float64]:
    """
    Convert spherical coordinates to Cartesian in the given convention.

    Used for generating camera positions on orbits and lattices.

    Args:
        radius: Distance from origin
        azimuth_deg: Angle around the up axis, measured from the forward
                     axis toward the right axis (degrees)
        elevation_deg: Angle above the horizontal plane (degrees)
                       Positive = up, negative = down
        convention: Convention whose up/forward/right axes are used

    Returns:
        Cartesian coordinates, shape (3,)

    Note:
        Azimuth 0 = forward, 90 = right, 180 = backward, 270 = left.
        Elevation 0 = horizontal plane, +90 = straight up.
    """
    azim_rad = np.radians(azimuth_deg)
    elev_rad = np.radians(elevation_deg)

    semantic = radius * np.array([
        np.cos(elev_rad) * np.sin(azim_rad),
        np.sin(elev_rad),
        np.cos(elev_rad) * np.cos(azim_rad),
    ])
    return convention.to_semantic.T @ semantic
