"""
Dataset assembly and writing.

This module ties the pieces together:
- Frame / Dataset data structures
- Output directory layout (images/, sparse/0/, depth/)
- DatasetWriter: serializes a Dataset, or streams renderer captures through
  a worker pool into an ordered single-writer thread
- DatasetManifest and validate_dataset for downstream consumers

Image pixels are owned by the external renderer. This module only records
their file names in the COLMAP model.
"""

import heapq
import json
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from . import coordinates
from .camera import CameraModel, Pose
from .coordinates import Convention
from .depth import DEPTH_FORMATS, DepthProcessor, DepthResult, depth_to_points, save_depth
from .errors import CancelledError, ConfigurationError, DatasetIOError, FormatError
from .exporter import (
    AtomicFile,
    ImageRecord,
    ImageStreamWriter,
    points_from_arrays,
    read_model,
    write_cameras_binary,
    write_cameras_text,
    write_points3d_binary,
    write_points3d_text,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

DEFAULT_FILENAME_PATTERN = "frame_{:04d}.png"
MANIFEST_NAME = "manifest.json"
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".exr", ".tif", ".tiff")

# Poll interval for the writer while it waits on out-of-order frames
_WAIT_SECONDS = 0.05


def generate_filenames(
    n_frames: int,
    pattern: str = DEFAULT_FILENAME_PATTERN,
    start_index: int = 1
) -> List[str]:
    """
    Generate sequential filenames.

    Args:
        n_frames: Number of filenames to generate
        pattern: Format string with one {} placeholder for frame number
        start_index: Starting frame number (default 1 for 1-based indexing)

    Example:
        generate_filenames(3, "frame_{:04d}.png", 1)
        → ["frame_0001.png", "frame_0002.png", "frame_0003.png"]
    """
    return [pattern.format(i) for i in range(start_index, start_index + n_frames)]


def create_layout(root: PathLike) -> Dict[str, Path]:
    """
    Create the dataset directory tree.

    Returns:
        Dict with 'root', 'images', 'sparse' and 'depth' paths
    """
    root = Path(root)
    layout = {
        "root": root,
        "images": root / "images",
        "sparse": root / "sparse" / "0",
        "depth": root / "depth",
    }
    try:
        for path in layout.values():
            path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DatasetIOError(f"Cannot create dataset layout under {root}: {e}") from e
    return layout


@dataclass(frozen=True, eq=False)
class Frame:
    """
    One captured view.

    Attributes:
        frame_id: Unique id, >= 1; also the COLMAP image id
        pose: Camera-to-world pose
        camera: Intrinsics used for this view
        timestamp: Capture time in seconds
        depth: Optional processed (linear) depth
        color_ref: Renderer-owned handle to the color buffer (path, array, ...)
        name: Image file name under images/; generated from frame_id if None
    """

    frame_id: int
    pose: Pose
    camera: CameraModel
    timestamp: float = 0.0
    depth: Optional[DepthResult] = None
    color_ref: Any = None
    name: Optional[str] = None

    def __post_init__(self):
        if int(self.frame_id) < 1:
            raise ConfigurationError(f"Frame id must be >= 1, got {self.frame_id}")

    @property
    def image_name(self) -> str:
        if self.name is not None:
            return self.name
        return DEFAULT_FILENAME_PATTERN.format(self.frame_id)


@dataclass
class Dataset:
    """
    Cameras, frames and optional sparse points, ready to be written once.

    Attributes:
        cameras: Camera models, unique ids
        frames: Frames with increasing ids and non-decreasing timestamps
        points: Optional (N, 3) sparse points in `convention`
        point_colors: Optional (N, 3) uint8 colors for the points
        convention: Convention of the points and of the intrinsics' pixel rows
    """

    cameras: List[CameraModel]
    frames: List[Frame]
    points: Optional[NDArray[np.float64]] = None
    point_colors: Optional[NDArray[np.uint8]] = None
    convention: Convention = coordinates.OPENCV

    @classmethod
    def from_poses(
        cls,
        camera: CameraModel,
        poses: Sequence[Pose],
        filename_pattern: str = DEFAULT_FILENAME_PATTERN,
        frame_rate: float = 30.0
    ) -> "Dataset":
        """Dataset with one shared camera and frames 1..N for planned poses."""
        names = generate_filenames(len(poses), filename_pattern)
        frames = [
            Frame(i, pose, camera, timestamp=(i - 1) / frame_rate, name=name)
            for i, (pose, name) in enumerate(zip(poses, names), start=1)
        ]
        return cls([camera], frames)

    def validate(self) -> None:
        """
        Check ids, ordering and camera references.

        Raises:
            ConfigurationError: On the first problem found
        """
        camera_ids = [c.camera_id for c in self.cameras]
        if len(set(camera_ids)) != len(camera_ids):
            raise ConfigurationError("Duplicate camera ids in dataset")
        known = set(camera_ids)

        previous_id = 0
        previous_time = -np.inf
        for frame in self.frames:
            if frame.frame_id <= previous_id:
                raise ConfigurationError(
                    f"Frame ids must increase: {frame.frame_id} after {previous_id}"
                )
            if frame.timestamp < previous_time:
                raise ConfigurationError(f"Frame {frame.frame_id} timestamp goes backwards")
            if frame.camera.camera_id not in known:
                raise ConfigurationError(
                    f"Frame {frame.frame_id} uses camera {frame.camera.camera_id} not in dataset"
                )
            previous_id = frame.frame_id
            previous_time = frame.timestamp

        if self.points is not None:
            points = np.asarray(self.points)
            if points.ndim != 2 or points.shape[1] != 3:
                raise ConfigurationError(f"Points must have shape (N, 3), got {points.shape}")
            if self.point_colors is not None and len(self.point_colors) != len(points):
                raise ConfigurationError("Point colors must match the number of points")

    @property
    def n_points(self) -> int:
        return 0 if self.points is None else len(self.points)

    def __len__(self) -> int:
        return len(self.frames)


class Capture(NamedTuple):
    """What the external renderer hands over for one requested pose."""

    frame_id: int
    pose: Pose
    color_ref: Any = None
    raw_depth: Optional[NDArray] = None
    timestamp: float = 0.0


@dataclass
class DatasetManifest:
    """
    Plain summary of a written dataset for reporting steps.
    """

    root: str
    n_frames: int
    n_cameras: int
    n_points: int
    bounds_min: Optional[List[float]]
    bounds_max: Optional[List[float]]
    files: List[str] = field(default_factory=list)
    depth_files: List[str] = field(default_factory=list)
    convention: str = coordinates.OPENCV.name

    def to_dict(self) -> dict:
        return asdict(self)

    def save(self, path: Optional[PathLike] = None) -> Path:
        path = Path(path) if path is not None else Path(self.root) / MANIFEST_NAME
        with AtomicFile(path, "w") as out:
            out.write(json.dumps(self.to_dict(), indent=2))
            out.write("\n")
            return out.commit()

    @classmethod
    def load(cls, path: PathLike) -> "DatasetManifest":
        with open(path, "r", encoding="utf-8") as f:
            return cls(**json.load(f))


def scene_bounds(
    positions: Iterable[NDArray[np.float64]],
    points: Optional[NDArray[np.float64]] = None
) -> Optional[Tuple[NDArray[np.float64], NDArray[np.float64]]]:
    """Axis-aligned bounds over camera positions and points, or None if empty."""
    arrays = [np.asarray(p, dtype=np.float64).reshape(-1, 3) for p in positions]
    if points is not None and len(points):
        arrays.append(np.asarray(points, dtype=np.float64).reshape(-1, 3))
    if not arrays:
        return None
    stacked = np.concatenate(arrays, axis=0)
    if len(stacked) == 0:
        return None
    return stacked.min(axis=0), stacked.max(axis=0)


class OrderedQueue:
    """
    Hand items to one consumer in a fixed key order.

    Producers put() in any order; get() blocks until the next expected key
    has arrived. Keys must be known up front.
    """

    def __init__(self, keys: Sequence[int]):
        self._expected = sorted(keys)
        self._next = 0
        self._heap: List[Tuple[int, Any]] = []
        self._cond = threading.Condition()

    def put(self, key: int, item: Any) -> None:
        with self._cond:
            heapq.heappush(self._heap, (key, item))
            self._cond.notify_all()

    def get(self, cancel_event: Optional[threading.Event] = None) -> Any:
        """
        Next item in key order.

        Raises:
            CancelledError: If cancel_event is set while waiting
            IndexError: If every expected key was already taken
        """
        if self._next >= len(self._expected):
            raise IndexError("All items were already taken")
        wanted = self._expected[self._next]

        with self._cond:
            while not self._heap or self._heap[0][0] != wanted:
                if cancel_event is not None and cancel_event.is_set():
                    raise CancelledError("Cancelled while waiting for frame %d" % wanted)
                self._cond.wait(_WAIT_SECONDS)
            _, item = heapq.heappop(self._heap)

        self._next += 1
        return item

    def __len__(self) -> int:
        return len(self._expected) - self._next


@dataclass
class _Processed:
    frame: Frame
    points: Optional[NDArray[np.float64]] = None
    colors: Optional[NDArray[np.uint8]] = None


class DatasetWriter:
    """
    Write COLMAP datasets.

    All poses are converted to the OpenCV convention that COLMAP expects.
    Files are written atomically; a cancelled or failed write removes
    everything it created in this call.

    Example:
        writer = DatasetWriter("./output", binary=True, text=True)
        manifest = writer.write(Dataset.from_poses(camera, poses))
    """

    def __init__(
        self,
        root: PathLike,
        binary: bool = True,
        text: bool = False,
        workers: Optional[int] = None,
        depth_format: str = "npy",
        max_points: int = 100000
    ):
        """
        Args:
            root: Dataset root directory
            binary: Write .bin model files
            text: Write .txt model files
            workers: Producer threads for process_frames (None: CPU count)
            depth_format: Format for depth maps, one of DEPTH_FORMATS
            max_points: Cap on sparse points from back-projected depth

        Raises:
            ConfigurationError: If neither encoding is enabled or the
                                depth format is unknown
        """
        if not binary and not text:
            raise ConfigurationError("At least one of binary/text output must be enabled")
        if depth_format not in DEPTH_FORMATS:
            raise ConfigurationError(
                f"Unknown depth format '{depth_format}'. Choose from: {', '.join(DEPTH_FORMATS)}"
            )
        if workers is not None and workers < 1:
            raise ConfigurationError(f"workers must be >= 1, got {workers}")

        self.root = Path(root)
        self.binary = binary
        self.text = text
        self.workers = workers or os.cpu_count() or 1
        self.depth_format = depth_format
        self.max_points = max_points

    @property
    def sparse_dir(self) -> Path:
        return self.root / "sparse" / "0"

    @property
    def depth_dir(self) -> Path:
        return self.root / "depth"

    def write(self, dataset: Dataset, cancel_event: Optional[threading.Event] = None) -> DatasetManifest:
        """
        Write a complete dataset.

        Frames are appended in id order, checking cancel_event before each.

        Returns:
            Manifest of the written dataset (also saved as manifest.json)

        Raises:
            ConfigurationError: If the dataset is inconsistent
            CancelledError: If cancel_event was set; partial files are removed
        """
        dataset.validate()
        create_layout(self.root)

        stream = ImageStreamWriter(self.sparse_dir, len(dataset.frames), self.binary, self.text)
        depth_files: List[Path] = []
        stream.open()
        try:
            for frame in dataset.frames:
                self._check_cancel(cancel_event)
                self._append(stream, frame, depth_files)
            stream.commit()
        except BaseException:
            stream.abort()
            _remove(depth_files)
            raise

        return self._finish(
            dataset.cameras, dataset.frames, dataset.points, dataset.point_colors,
            dataset.convention, stream.paths, depth_files
        )

    def process_frames(
        self,
        captures: Sequence[Any],
        camera: CameraModel,
        depth_processor: Optional[DepthProcessor] = None,
        cancel_event: Optional[threading.Event] = None,
        filename_pattern: str = DEFAULT_FILENAME_PATTERN,
        convention: Convention = coordinates.OPENCV,
        point_stride: Optional[int] = None
    ) -> DatasetManifest:
        """
        Stream renderer captures into a dataset.

        Each capture is (frame_id, pose, color_ref, raw_depth[, timestamp]).
        A worker pool linearizes depth and converts poses; one writer thread
        appends image records in increasing frame id order, whatever order
        the workers finish in.

        Args:
            captures: Renderer output, one entry per frame
            camera: Shared intrinsics
            depth_processor: Turns raw depth into linear depth; depth is
                             skipped when None
            cancel_event: Set to stop; checked per frame by every thread
            filename_pattern: Image name pattern, formatted with frame_id
            convention: Convention of the camera's pixel rows
            point_stride: Back-project depth with this pixel stride into
                          sparse points (None: no points)

        Raises:
            CancelledError: If cancel_event was set; partial files are removed
        """
        captures = [Capture(*c) for c in captures]
        ids = [int(c.frame_id) for c in captures]
        if len(set(ids)) != len(ids):
            raise ConfigurationError("Duplicate frame ids in captures")
        in_order = sorted(captures, key=lambda c: int(c.frame_id))
        for previous, current in zip(in_order, in_order[1:]):
            if current.timestamp < previous.timestamp:
                raise ConfigurationError(f"Frame {current.frame_id} timestamp goes backwards")
        if point_stride is not None and depth_processor is None:
            raise ConfigurationError("point_stride needs a depth_processor")

        cancel_event = cancel_event or threading.Event()
        create_layout(self.root)

        queue = OrderedQueue(ids)
        stream = ImageStreamWriter(self.sparse_dir, len(ids), self.binary, self.text)
        stream.open()

        frames: List[Frame] = []
        depth_files: List[Path] = []
        point_chunks: List[NDArray] = []
        color_chunks: List[NDArray] = []
        writer_errors: List[BaseException] = []

        def drain():
            try:
                for _ in range(len(ids)):
                    self._check_cancel(cancel_event)
                    processed = queue.get(cancel_event)
                    self._append(stream, processed.frame, depth_files)
                    frames.append(processed.frame)
                    if processed.points is not None:
                        point_chunks.append(processed.points)
                        color_chunks.append(processed.colors)
            except Exception as e:
                writer_errors.append(e)
                cancel_event.set()

        writer = threading.Thread(target=drain, name="capture2colmap-writer")
        writer.start()

        try:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                futures = [
                    executor.submit(
                        self._produce, capture, camera, depth_processor, queue,
                        cancel_event, filename_pattern, convention, point_stride
                    )
                    for capture in captures
                ]
                for future in as_completed(futures):
                    if future.exception() is not None:
                        cancel_event.set()
                    future.result()  # Raise any exceptions
            writer.join()
            if writer_errors:
                raise writer_errors[0]
            stream.commit()
        except BaseException as e:
            cancel_event.set()
            writer.join()
            stream.abort()
            _remove(depth_files)
            logger.debug("Frame processing stopped: %s", e)
            if writer_errors and isinstance(e, CancelledError) and e is not writer_errors[0]:
                raise writer_errors[0] from None
            raise

        points = colors = None
        if point_chunks:
            points, colors = self._subsample(np.concatenate(point_chunks), np.concatenate(color_chunks))

        # depth_to_points already returns OpenCV world points
        return self._finish(
            [camera], frames, points, colors, convention, stream.paths, depth_files,
            points_convention=coordinates.OPENCV
        )

    def _produce(
        self,
        capture: Capture,
        camera: CameraModel,
        depth_processor: Optional[DepthProcessor],
        queue: OrderedQueue,
        cancel_event: threading.Event,
        filename_pattern: str,
        convention: Convention,
        point_stride: Optional[int]
    ) -> None:
        self._check_cancel(cancel_event)

        depth = None
        if depth_processor is not None and capture.raw_depth is not None:
            depth = depth_processor.process(capture.raw_depth)

        pose = coordinates.convert_pose(capture.pose, capture.pose.convention, coordinates.OPENCV)
        frame = Frame(
            frame_id=int(capture.frame_id),
            pose=pose,
            camera=camera,
            timestamp=float(capture.timestamp),
            depth=depth,
            color_ref=capture.color_ref,
            name=filename_pattern.format(int(capture.frame_id)),
        )

        points = colors = None
        if point_stride is not None and depth is not None:
            linear = 1.0 / depth.data if depth.inverted else depth.data
            image = capture.color_ref if isinstance(capture.color_ref, np.ndarray) else None
            camera_cv = coordinates.convert_intrinsics(camera, convention, coordinates.OPENCV)
            if convention.row_origin != coordinates.OPENCV.row_origin:
                # Buffers count rows from the bottom; back-projection counts from the top
                linear = linear[::-1]
                if image is not None:
                    image = image[::-1]
            points, colors = depth_to_points(
                linear, camera_cv, pose, stride=point_stride, colors=image,
                max_depth=depth.far if np.isfinite(depth.far) else None
            )

        queue.put(frame.frame_id, _Processed(frame, points, colors))

    def _append(self, stream: ImageStreamWriter, frame: Frame, depth_files: List[Path]) -> None:
        stream.write(ImageRecord.from_pose(
            frame.frame_id, frame.pose, frame.camera.camera_id, frame.image_name
        ))
        if frame.depth is not None:
            stem = Path(frame.image_name).stem
            depth_files.append(save_depth(frame.depth, self.depth_dir / stem, self.depth_format))

    def _subsample(self, points: NDArray, colors: NDArray) -> Tuple[NDArray, NDArray]:
        if len(points) <= self.max_points:
            return points, colors
        # Evenly spaced indices keep the result deterministic
        indices = np.linspace(0, len(points) - 1, self.max_points).astype(np.int64)
        return points[indices], colors[indices]

    def _finish(
        self,
        cameras: Sequence[CameraModel],
        frames: Sequence[Frame],
        points: Optional[NDArray],
        colors: Optional[NDArray],
        convention: Convention,
        image_paths: List[Path],
        depth_files: List[Path],
        points_convention: Optional[Convention] = None
    ) -> DatasetManifest:
        """
        Write cameras and points after the image stream, then the manifest.

        convention applies to the cameras' pixel rows; points are in
        points_convention, which defaults to convention.
        """
        if points_convention is None:
            points_convention = convention
        cameras_cv = [coordinates.convert_intrinsics(c, convention, coordinates.OPENCV) for c in cameras]

        points_cv = None
        records = []
        if points is not None and len(points):
            points_cv = coordinates.convert_position(np.asarray(points, dtype=np.float64),
                                                     points_convention, coordinates.OPENCV)
            records = points_from_arrays(points_cv, colors)

        written = list(image_paths)
        try:
            if self.binary:
                written.append(write_cameras_binary(cameras_cv, self.sparse_dir / "cameras.bin"))
                written.append(write_points3d_binary(records, self.sparse_dir / "points3D.bin"))
            if self.text:
                written.append(write_cameras_text(cameras_cv, self.sparse_dir / "cameras.txt"))
                written.append(write_points3d_text(records, self.sparse_dir / "points3D.txt"))
        except BaseException:
            _remove(written + depth_files)
            raise

        bounds = scene_bounds((f.pose.to_convention(coordinates.OPENCV).position for f in frames), points_cv)
        manifest = DatasetManifest(
            root=str(self.root),
            n_frames=len(frames),
            n_cameras=len(cameras_cv),
            n_points=len(records),
            bounds_min=None if bounds is None else bounds[0].tolist(),
            bounds_max=None if bounds is None else bounds[1].tolist(),
            files=[str(p) for p in written],
            depth_files=[str(p) for p in depth_files],
        )
        manifest.save()

        logger.debug(
            "Wrote dataset to %s: %d frames, %d cameras, %d points",
            self.root, manifest.n_frames, manifest.n_cameras, manifest.n_points
        )
        return manifest

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledError("Dataset write cancelled")


def _remove(paths: Iterable[Path]) -> None:
    """Delete written files, including the JSON sidecars of depth maps."""
    for path in paths:
        path = Path(path)
        candidates = [path]
        if path.parent.name == "depth":
            candidates.append(path.with_suffix(".json"))
        for candidate in candidates:
            try:
                candidate.unlink()
            except FileNotFoundError:
                pass


def validate_dataset(root: PathLike) -> List[str]:
    """
    Check a written dataset for problems that would stop training.

    Checks:
    - images/ and sparse/0/ exist
    - cameras and images files parse
    - every image references a known camera
    - if images/ holds image files, every image record has one

    Returns:
        List of issues (empty if the dataset looks usable)
    """
    root = Path(root)
    issues = []

    images_dir = root / "images"
    sparse_dir = root / "sparse" / "0"
    for path in (images_dir, sparse_dir):
        if not path.is_dir():
            issues.append(f"Missing directory {path}")
    if not sparse_dir.is_dir():
        return issues

    try:
        cameras, images, points = read_model(sparse_dir)
    except (FileNotFoundError, FormatError, ValueError) as e:
        issues.append(f"Cannot read sparse model: {e}")
        return issues

    for record in images.values():
        if record.camera_id not in cameras:
            issues.append(f"Image {record.image_id} references unknown camera {record.camera_id}")

    for camera in cameras.values():
        for warning in camera.validate_for_training():
            issues.append(f"Camera {camera.camera_id}: {warning}")

    if images_dir.is_dir():
        present = {p.name for p in images_dir.iterdir() if p.suffix.lower() in IMAGE_EXTENSIONS}
        if present:
            missing = sorted(r.name for r in images.values() if r.name not in present)
            if missing:
                issues.append(f"{len(missing)} image records have no file in images/, e.g. {missing[0]}")
            if len(present) != len(images):
                issues.append(f"images/ holds {len(present)} files but the model lists {len(images)} images")

    if not images:
        issues.append("Sparse model has no images")

    return issues
