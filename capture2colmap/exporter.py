"""
COLMAP sparse model export and import.

This module writes and reads the three files of a COLMAP sparse model, in
both encodings:

- cameras.txt / cameras.bin: Camera intrinsic parameters
- images.txt / images.bin: Per-image world-to-camera extrinsics
- points3D.txt / points3D.bin: Sparse 3D points (optional)

Binary files are little-endian and start with a uint64 record count.
Text files carry the usual comment header and print floats with 17
significant digits, so text and binary decode to the same values.

This is the coordinate conversion point for output: poses are converted
from their own convention into OpenCV (COLMAP) when image records are built.

Every file is written to '<name>.partial' and renamed into place only
after it is complete, so an interrupted write never leaves a file that
looks finished.
"""

import logging
import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from . import coordinates
from .camera import CameraModel, CameraModelKind, Pose
from .errors import ConfigurationError, DatasetIOError, FormatError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

CAMERA_HEADER = (
    "# Camera list with one line of data per camera:\n"
    "# CAMERA_ID, MODEL, WIDTH, HEIGHT, PARAMS[]\n"
)
IMAGE_HEADER = (
    "# Image list with two lines of data per image:\n"
    "# IMAGE_ID, QW, QX, QY, QZ, TX, TY, TZ, CAMERA_ID, NAME\n"
    "# POINTS2D[] as (X, Y, POINT3D_ID)\n"
)
POINT_HEADER = (
    "# 3D point list with one line of data per point:\n"
    "# POINT3D_ID, X, Y, Z, R, G, B, ERROR, TRACK[] as (IMAGE_ID, POINT2D_IDX)\n"
)

# Fixed-size parts of binary records, in bytes
CAMERA_RECORD_FIXED = struct.calcsize("<IiQQ")
IMAGE_RECORD_FIXED = struct.calcsize("<I4d3dI") + 1 + struct.calcsize("<Q")
POINT_RECORD_FIXED = struct.calcsize("<Q3d3BdQ")


def _fmt(value: float) -> str:
    return "%.17g" % value


@dataclass
class ImageRecord:
    """
    One entry of images.txt / images.bin.

    Attributes:
        image_id: Unique id, >= 1
        qvec: World-to-camera quaternion (w, x, y, z), unit, w >= 0
        tvec: World origin in camera coords (-R_w2c @ camera_center)
        camera_id: Id of the CameraModel used by this image
        name: Image file name relative to images/
    """

    image_id: int
    qvec: NDArray[np.float64]
    tvec: NDArray[np.float64]
    camera_id: int
    name: str

    def __post_init__(self):
        if int(self.image_id) < 1:
            raise ConfigurationError(f"Image id must be >= 1, got {self.image_id}")
        if not self.name or any(c.isspace() or c == "\0" for c in self.name):
            raise ConfigurationError(f"Image name must be non-empty without whitespace: {self.name!r}")
        self.image_id = int(self.image_id)
        self.camera_id = int(self.camera_id)
        self.qvec = coordinates.canonical_quaternion(coordinates.normalize_quaternion(self.qvec))
        self.tvec = np.asarray(self.tvec, dtype=np.float64).reshape(3)

    @classmethod
    def from_pose(cls, image_id: int, pose: Pose, camera_id: int, name: str) -> "ImageRecord":
        """Build the COLMAP record for a camera-to-world pose in any convention."""
        qvec, tvec = coordinates.world_to_colmap(pose)
        return cls(image_id, qvec, tvec, camera_id, name)

    def to_pose(self) -> Pose:
        """Camera-to-world pose in the OpenCV convention."""
        position, rotation = coordinates.colmap_to_world(self.qvec, self.tvec)
        return Pose(position, rotation, coordinates.OPENCV)

    @property
    def binary_size(self) -> int:
        return IMAGE_RECORD_FIXED + len(self.name.encode("utf-8"))


@dataclass
class Point3DRecord:
    """One entry of points3D.txt / points3D.bin."""

    point_id: int
    xyz: NDArray[np.float64]
    rgb: NDArray[np.uint8]
    error: float = 0.0
    track: Tuple[Tuple[int, int], ...] = field(default_factory=tuple)

    def __post_init__(self):
        self.xyz = np.asarray(self.xyz, dtype=np.float64).reshape(3)
        self.rgb = np.asarray(self.rgb, dtype=np.uint8).reshape(3)
        self.track = tuple((int(i), int(j)) for i, j in self.track)

    @property
    def binary_size(self) -> int:
        return POINT_RECORD_FIXED + 8 * len(self.track)


def points_from_arrays(
    points: NDArray[np.float64],
    colors: Optional[NDArray[np.uint8]] = None
) -> List[Point3DRecord]:
    """Wrap (N, 3) positions and colors as records with ids from 1."""
    points = np.asarray(points, dtype=np.float64)
    if colors is None:
        colors = np.full((len(points), 3), 128, dtype=np.uint8)
    return [
        Point3DRecord(point_id, pos, color)
        for point_id, (pos, color) in enumerate(zip(points, colors), start=1)
    ]


class AtomicFile:
    """
    File written under '<name>.partial' and renamed on commit.

    Used as a context manager it commits on success and deletes the
    partial file when the body raises.
    """

    def __init__(self, path: PathLike, mode: str = "wb"):
        self.path = Path(path)
        self.partial_path = self.path.with_name(self.path.name + ".partial")
        self.mode = mode
        self.handle = None

    def open(self):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if "b" in self.mode:
                self.handle = open(self.partial_path, self.mode)
            else:
                self.handle = open(self.partial_path, self.mode, encoding="utf-8", newline="\n")
        except OSError as e:
            raise DatasetIOError(f"Cannot open {self.partial_path} for writing: {e}") from e
        return self.handle

    def write(self, data) -> None:
        try:
            self.handle.write(data)
        except OSError as e:
            raise DatasetIOError(f"Write to {self.partial_path} failed: {e}") from e

    def commit(self, expected_size: Optional[int] = None) -> Path:
        """Close, optionally size-check, and move into place."""
        try:
            self.handle.close()
            if expected_size is not None:
                verify_file_size(self.partial_path, expected_size)
            os.replace(self.partial_path, self.path)
        except OSError as e:
            raise DatasetIOError(f"Failed to finalize {self.path}: {e}") from e
        return self.path

    def abort(self) -> None:
        """Close and delete the partial file."""
        if self.handle is not None and not self.handle.closed:
            self.handle.close()
        try:
            self.partial_path.unlink()
        except FileNotFoundError:
            pass
        logger.debug("Removed partial file %s", self.partial_path)

    def __enter__(self) -> "AtomicFile":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.abort()
        elif not self.handle.closed:
            self.commit()


def verify_file_size(path: PathLike, expected_size: int) -> None:
    """
    Raise FormatError unless the file is exactly expected_size bytes.
    """
    actual = os.path.getsize(path)
    if actual != expected_size:
        raise FormatError(
            f"{path}: expected {expected_size} bytes from header and record layout, found {actual}"
        )


# Cameras

def write_cameras_text(cameras: Sequence[CameraModel], path: PathLike) -> Path:
    """
    Write cameras.txt.

    Format (one line per camera):
    CAMERA_ID MODEL WIDTH HEIGHT PARAMS[]
    """
    _check_unique([c.camera_id for c in cameras], "camera")
    with AtomicFile(path, "w") as out:
        out.write(CAMERA_HEADER)
        out.write(f"# Number of cameras: {len(cameras)}\n")
        for cam in cameras:
            params_str = " ".join(_fmt(p) for p in cam.params)
            out.write(f"{cam.camera_id} {cam.kind.name} {cam.width} {cam.height} {params_str}\n")
        return out.commit()


def write_cameras_binary(cameras: Sequence[CameraModel], path: PathLike) -> Path:
    """
    Write cameras.bin.

    Record: camera_id uint32, model_id int32, width uint64, height uint64,
    params float64[param_count].
    """
    _check_unique([c.camera_id for c in cameras], "camera")
    expected = 8 + sum(CAMERA_RECORD_FIXED + 8 * c.kind.param_count for c in cameras)

    with AtomicFile(path, "wb") as out:
        out.write(struct.pack("<Q", len(cameras)))
        for cam in cameras:
            out.write(struct.pack("<IiQQ", cam.camera_id, cam.kind.model_id, cam.width, cam.height))
            out.write(struct.pack("<" + "d" * len(cam.params), *cam.params))
        return out.commit(expected)


def read_cameras_text(path: PathLike) -> Dict[int, CameraModel]:
    cameras = {}
    for line in _data_lines(path):
        elems = line.split()
        kind = CameraModelKind.from_name(elems[1])
        cam = CameraModel(int(elems[0]), int(elems[2]), int(elems[3]), kind,
                          tuple(float(p) for p in elems[4:]))
        cameras[cam.camera_id] = cam
    return cameras


def read_cameras_binary(path: PathLike) -> Dict[int, CameraModel]:
    cameras = {}
    with open(path, "rb") as fid:
        (count,) = _read(fid, "<Q")
        for _ in range(count):
            camera_id, model_id, width, height = _read(fid, "<IiQQ")
            kind = CameraModelKind.from_id(model_id)
            params = _read(fid, "<" + "d" * kind.param_count)
            cameras[camera_id] = CameraModel(camera_id, width, height, kind, params)
        _expect_eof(fid, path)
    return cameras


# Images

class ImageStreamWriter:
    """
    Append-only writer for images.txt and/or images.bin.

    The record count goes into both headers up front, so it must be known
    before the first record. Records must arrive in the order they should
    appear; commit() fails if fewer or more than n_images were written.

    Example:
        with ImageStreamWriter(sparse_dir, n_images=len(records)) as writer:
            for record in records:
                writer.write(record)
    """

    def __init__(self, sparse_dir: PathLike, n_images: int, binary: bool = True, text: bool = False):
        if not binary and not text:
            raise ConfigurationError("At least one of binary/text output must be enabled")
        self.sparse_dir = Path(sparse_dir)
        self.n_images = n_images
        self.files: Dict[str, AtomicFile] = {}
        if binary:
            self.files["bin"] = AtomicFile(self.sparse_dir / "images.bin", "wb")
        if text:
            self.files["txt"] = AtomicFile(self.sparse_dir / "images.txt", "w")
        self.written = 0
        self.expected_bin_size = 8
        self._last_id = 0

    @property
    def paths(self) -> List[Path]:
        return [f.path for f in self.files.values()]

    def open(self) -> "ImageStreamWriter":
        try:
            for kind, out in self.files.items():
                out.open()
                if kind == "bin":
                    out.write(struct.pack("<Q", self.n_images))
                else:
                    out.write(IMAGE_HEADER)
                    out.write(f"# Number of images: {self.n_images}\n")
        except Exception:
            self.abort()
            raise
        return self

    def write(self, record: ImageRecord) -> None:
        if self.written >= self.n_images:
            raise FormatError(f"More than the declared {self.n_images} image records")
        if record.image_id <= self._last_id:
            raise FormatError(
                f"Image ids must increase: {record.image_id} after {self._last_id}"
            )

        if "bin" in self.files:
            out = self.files["bin"]
            out.write(struct.pack("<I", record.image_id))
            out.write(struct.pack("<4d", *record.qvec))
            out.write(struct.pack("<3d", *record.tvec))
            out.write(struct.pack("<I", record.camera_id))
            out.write(record.name.encode("utf-8") + b"\x00")
            out.write(struct.pack("<Q", 0))  # no 2D observations
            self.expected_bin_size += record.binary_size

        if "txt" in self.files:
            q, t = record.qvec, record.tvec
            self.files["txt"].write(
                f"{record.image_id} "
                f"{_fmt(q[0])} {_fmt(q[1])} {_fmt(q[2])} {_fmt(q[3])} "
                f"{_fmt(t[0])} {_fmt(t[1])} {_fmt(t[2])} "
                f"{record.camera_id} {record.name}\n"
            )
            # Empty POINTS2D line
            self.files["txt"].write("\n")

        self._last_id = record.image_id
        self.written += 1

    def commit(self) -> List[Path]:
        if self.written != self.n_images:
            raise FormatError(f"Declared {self.n_images} images but wrote {self.written}")
        paths = []
        for kind, out in self.files.items():
            paths.append(out.commit(self.expected_bin_size if kind == "bin" else None))
        return paths

    def abort(self) -> None:
        for out in self.files.values():
            out.abort()

    def __enter__(self) -> "ImageStreamWriter":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.abort()
        else:
            try:
                self.commit()
            except Exception:
                self.abort()
                raise


def write_images_text(images: Sequence[ImageRecord], path: PathLike) -> Path:
    """Write images.txt (two lines per image, second line empty)."""
    path = Path(path)
    _check_unique([i.image_id for i in images], "image")
    writer = ImageStreamWriter(path.parent, len(images), binary=False, text=True)
    writer.files["txt"] = AtomicFile(path, "w")
    with writer:
        for record in sorted(images, key=lambda r: r.image_id):
            writer.write(record)
    return path


def write_images_binary(images: Sequence[ImageRecord], path: PathLike) -> Path:
    """
    Write images.bin.

    Record: image_id uint32, qvec float64[4], tvec float64[3],
    camera_id uint32, NUL-terminated name, num_points2D uint64 (always 0).
    """
    path = Path(path)
    _check_unique([i.image_id for i in images], "image")
    writer = ImageStreamWriter(path.parent, len(images), binary=True, text=False)
    writer.files["bin"] = AtomicFile(path, "wb")
    with writer:
        for record in sorted(images, key=lambda r: r.image_id):
            writer.write(record)
    return path


def read_images_text(path: PathLike) -> Dict[int, ImageRecord]:
    images = {}
    lines = list(_data_lines(path, keep_empty=True))
    # Records come in pairs; the POINTS2D line may be empty
    for header in lines[0::2]:
        elems = header.split()
        if not elems:
            continue
        record = ImageRecord(
            image_id=int(elems[0]),
            qvec=np.array([float(v) for v in elems[1:5]]),
            tvec=np.array([float(v) for v in elems[5:8]]),
            camera_id=int(elems[8]),
            name=elems[9],
        )
        images[record.image_id] = record
    return images


def read_images_binary(path: PathLike) -> Dict[int, ImageRecord]:
    images = {}
    with open(path, "rb") as fid:
        (count,) = _read(fid, "<Q")
        for _ in range(count):
            (image_id,) = _read(fid, "<I")
            qvec = np.array(_read(fid, "<4d"))
            tvec = np.array(_read(fid, "<3d"))
            (camera_id,) = _read(fid, "<I")
            name = _read_cstring(fid, path)
            (num_points2d,) = _read(fid, "<Q")
            # x, y float64 and point3D_id int64 per observation
            skipped = fid.read(24 * num_points2d)
            if len(skipped) != 24 * num_points2d:
                raise FormatError(f"Truncated observations for image {image_id} in {path}")
            images[image_id] = ImageRecord(image_id, qvec, tvec, camera_id, name)
        _expect_eof(fid, path)
    return images


# Points

def write_points3d_text(points: Sequence[Point3DRecord], path: PathLike) -> Path:
    """
    Write points3D.txt.

    Format (one line per point):
    POINT3D_ID X Y Z R G B ERROR TRACK[] as (IMAGE_ID, POINT2D_IDX)
    """
    _check_unique([p.point_id for p in points], "point")
    with AtomicFile(path, "w") as out:
        out.write(POINT_HEADER)
        out.write(f"# Number of points: {len(points)}\n")
        for p in points:
            track = "".join(f" {image_id} {idx}" for image_id, idx in p.track)
            out.write(
                f"{p.point_id} {_fmt(p.xyz[0])} {_fmt(p.xyz[1])} {_fmt(p.xyz[2])} "
                f"{p.rgb[0]} {p.rgb[1]} {p.rgb[2]} {_fmt(p.error)}{track}\n"
            )
        return out.commit()


def write_points3d_binary(points: Sequence[Point3DRecord], path: PathLike) -> Path:
    """
    Write points3D.bin.

    Record: point_id uint64, xyz float64[3], rgb uint8[3], error float64,
    track_length uint64, then (image_id uint32, point2D_idx uint32) pairs.
    """
    _check_unique([p.point_id for p in points], "point")
    expected = 8 + sum(p.binary_size for p in points)

    with AtomicFile(path, "wb") as out:
        out.write(struct.pack("<Q", len(points)))
        for p in points:
            out.write(struct.pack(
                "<Q3d3Bd", p.point_id, *p.xyz, *(int(c) for c in p.rgb), p.error
            ))
            out.write(struct.pack("<Q", len(p.track)))
            for image_id, idx in p.track:
                out.write(struct.pack("<II", image_id, idx))
        return out.commit(expected)


def read_points3d_text(path: PathLike) -> Dict[int, Point3DRecord]:
    points = {}
    for line in _data_lines(path):
        elems = line.split()
        track_elems = [int(v) for v in elems[8:]]
        point = Point3DRecord(
            point_id=int(elems[0]),
            xyz=np.array([float(v) for v in elems[1:4]]),
            rgb=np.array([int(v) for v in elems[4:7]], dtype=np.uint8),
            error=float(elems[7]),
            track=tuple(zip(track_elems[0::2], track_elems[1::2])),
        )
        points[point.point_id] = point
    return points


def read_points3d_binary(path: PathLike) -> Dict[int, Point3DRecord]:
    points = {}
    with open(path, "rb") as fid:
        (count,) = _read(fid, "<Q")
        for _ in range(count):
            values = _read(fid, "<Q3d3BdQ")
            track_length = values[-1]
            flat = _read(fid, "<" + "I" * (2 * track_length)) if track_length else ()
            point = Point3DRecord(
                point_id=values[0],
                xyz=np.array(values[1:4]),
                rgb=np.array(values[4:7], dtype=np.uint8),
                error=values[7],
                track=tuple(zip(flat[0::2], flat[1::2])),
            )
            points[point.point_id] = point
        _expect_eof(fid, path)
    return points


def read_model(
    sparse_dir: PathLike
) -> Tuple[Dict[int, CameraModel], Dict[int, ImageRecord], Dict[int, Point3DRecord]]:
    """
    Read a sparse model, preferring binary files over text.

    Raises:
        FileNotFoundError: If cameras or images are missing in both encodings
    """
    sparse_dir = Path(sparse_dir)

    def pick(stem: str) -> Tuple[Optional[Path], bool]:
        for ext, is_binary in ((".bin", True), (".txt", False)):
            candidate = sparse_dir / (stem + ext)
            if candidate.exists():
                return candidate, is_binary
        return None, False

    cam_path, cam_bin = pick("cameras")
    img_path, img_bin = pick("images")
    if cam_path is None or img_path is None:
        raise FileNotFoundError(f"No cameras/images files in {sparse_dir}")

    cameras = read_cameras_binary(cam_path) if cam_bin else read_cameras_text(cam_path)
    images = read_images_binary(img_path) if img_bin else read_images_text(img_path)

    pts_path, pts_bin = pick("points3D")
    points = {}
    if pts_path is not None:
        points = read_points3d_binary(pts_path) if pts_bin else read_points3d_text(pts_path)

    return cameras, images, points


class ColmapExporter:
    """
    Export camera models, image poses and points as a COLMAP sparse model.

    COLMAP uses the OpenCV camera convention (Y-down, Z-forward). Poses in
    any other convention are converted when the image records are built.
    """

    def __init__(
        self,
        cameras: Sequence[CameraModel],
        images: Sequence[ImageRecord],
        points: Optional[Sequence[Point3DRecord]] = None
    ):
        """
        Initialize COLMAP exporter.

        Args:
            cameras: Camera models (unique ids)
            images: Image records; every camera_id must name a camera
            points: Optional sparse points

        Raises:
            ConfigurationError: On duplicate ids or unknown camera references
        """
        _check_unique([c.camera_id for c in cameras], "camera")
        _check_unique([i.image_id for i in images], "image")
        known = {c.camera_id for c in cameras}
        for record in images:
            if record.camera_id not in known:
                raise ConfigurationError(
                    f"Image {record.image_id} references unknown camera {record.camera_id}"
                )

        self.cameras = list(cameras)
        self.images = sorted(images, key=lambda r: r.image_id)
        self.points = list(points) if points is not None else []

    @classmethod
    def from_poses(
        cls,
        camera: CameraModel,
        poses: Sequence[Pose],
        image_names: Sequence[str],
        points: Optional[Sequence[Point3DRecord]] = None
    ) -> "ColmapExporter":
        """
        Create exporter for one shared camera and a list of poses.

        Image ids are assigned 1..N in pose order.
        """
        if len(poses) != len(image_names):
            raise ConfigurationError(
                f"Number of poses ({len(poses)}) must match "
                f"number of image names ({len(image_names)})"
            )
        images = [
            ImageRecord.from_pose(image_id, pose, camera.camera_id, name)
            for image_id, (pose, name) in enumerate(zip(poses, image_names), start=1)
        ]
        return cls([camera], images, points)

    def export(self, sparse_dir: PathLike, binary: bool = True, text: bool = False) -> List[Path]:
        """
        Write the model into sparse_dir (created if needed).

        points3D is always written, empty when there are no points, since
        COLMAP readers expect all three files.

        Returns:
            Paths of the written files
        """
        if not binary and not text:
            raise ConfigurationError("At least one of binary/text output must be enabled")

        sparse_dir = Path(sparse_dir)
        written = []
        if binary:
            written.append(write_cameras_binary(self.cameras, sparse_dir / "cameras.bin"))
            written.append(write_images_binary(self.images, sparse_dir / "images.bin"))
            written.append(write_points3d_binary(self.points, sparse_dir / "points3D.bin"))
        if text:
            written.append(write_cameras_text(self.cameras, sparse_dir / "cameras.txt"))
            written.append(write_images_text(self.images, sparse_dir / "images.txt"))
            written.append(write_points3d_text(self.points, sparse_dir / "points3D.txt"))

        logger.debug(
            "Exported %d cameras, %d images, %d points to %s",
            len(self.cameras), len(self.images), len(self.points), sparse_dir
        )
        return written


def _check_unique(ids: Sequence[int], what: str) -> None:
    if len(set(ids)) != len(ids):
        raise ConfigurationError(f"Duplicate {what} ids")


def _read(fid: BinaryIO, fmt: str) -> tuple:
    size = struct.calcsize(fmt)
    data = fid.read(size)
    if len(data) != size:
        raise FormatError(f"Unexpected end of file in {getattr(fid, 'name', 'stream')}")
    return struct.unpack(fmt, data)


def _read_cstring(fid: BinaryIO, path: PathLike) -> str:
    chars = bytearray()
    while True:
        c = fid.read(1)
        if not c:
            raise FormatError(f"Unterminated image name in {path}")
        if c == b"\x00":
            return chars.decode("utf-8")
        chars += c


def _expect_eof(fid: BinaryIO, path: PathLike) -> None:
    if fid.read(1):
        raise FormatError(f"Trailing data after the last record in {path}")


def _data_lines(path: PathLike, keep_empty: bool = False):
    """Yield non-comment lines, stripped of the trailing newline."""
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.rstrip("\n")
            if line.startswith("#"):
                continue
            if not line.strip() and not keep_empty:
                continue
            yield line
