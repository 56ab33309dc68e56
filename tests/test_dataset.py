"""
Tests for dataset assembly, streaming writes and validation.
"""

import json
import threading
import time

import numpy as np
import pytest

from capture2colmap import dataset as ds
from capture2colmap.camera import CameraModel, Pose
from capture2colmap.coordinates import OPENCV, OPENGL
from capture2colmap.dataset import Dataset, DatasetManifest, DatasetWriter, Frame, OrderedQueue
from capture2colmap.depth import DepthProcessor
from capture2colmap.errors import CancelledError, ConfigurationError
from capture2colmap.exporter import read_model
from capture2colmap.path import TrajectoryPlanner


class CancelAfter(threading.Event):
    """Event that reports set after n checks."""

    def __init__(self, n):
        super().__init__()
        self.n = n
        self.calls = 0
        self._lock = threading.Lock()

    def is_set(self):
        with self._lock:
            self.calls += 1
            return self.calls > self.n or super().is_set()


@pytest.fixture
def camera():
    return CameraModel.from_fov(1, 1920, 1080, 90.0)


@pytest.fixture
def poses():
    return TrajectoryPlanner([0, 0, 0], 4.0).orbital(2, 10)


def all_files(root):
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


class TestFilenames:
    """Test filename generation."""

    def test_default_pattern(self):
        assert ds.generate_filenames(3) == ["frame_0001.png", "frame_0002.png", "frame_0003.png"]

    def test_start_index(self):
        assert ds.generate_filenames(2, "img_{:03d}.jpg", start_index=0) == ["img_000.jpg", "img_001.jpg"]


class TestDataset:
    """Test dataset construction and validation."""

    def test_from_poses(self, camera, poses):
        dataset = Dataset.from_poses(camera, poses, frame_rate=10.0)
        assert len(dataset) == 20
        assert dataset.frames[0].frame_id == 1
        assert dataset.frames[-1].image_name == "frame_0020.png"
        assert np.isclose(dataset.frames[1].timestamp, 0.1)
        dataset.validate()

    def test_ids_must_increase(self, camera, poses):
        frames = [Frame(2, poses[0], camera), Frame(1, poses[1], camera)]
        with pytest.raises(ConfigurationError):
            Dataset([camera], frames).validate()

    def test_timestamps_must_not_go_back(self, camera, poses):
        frames = [Frame(1, poses[0], camera, timestamp=1.0), Frame(2, poses[1], camera, timestamp=0.5)]
        with pytest.raises(ConfigurationError):
            Dataset([camera], frames).validate()

    def test_unknown_camera(self, camera, poses):
        other = CameraModel.from_fov(2, 1920, 1080, 60.0)
        with pytest.raises(ConfigurationError):
            Dataset([camera], [Frame(1, poses[0], other)]).validate()

    def test_duplicate_cameras(self, camera, poses):
        with pytest.raises(ConfigurationError):
            Dataset([camera, camera], [Frame(1, poses[0], camera)]).validate()

    def test_bad_points(self, camera, poses):
        with pytest.raises(ConfigurationError):
            Dataset([camera], [Frame(1, poses[0], camera)], points=np.zeros((4, 2))).validate()

    def test_frame_id_positive(self, camera, poses):
        with pytest.raises(ConfigurationError):
            Frame(0, poses[0], camera)


class TestOrderedQueue:
    """Test in-order hand-off between threads."""

    def test_out_of_order_puts(self):
        queue = OrderedQueue([1, 2, 3, 4])

        def produce():
            for key in (4, 2, 3, 1):
                time.sleep(0.01)
                queue.put(key, f"item{key}")

        producer = threading.Thread(target=produce)
        producer.start()
        received = [queue.get() for _ in range(4)]
        producer.join()

        assert received == ["item1", "item2", "item3", "item4"]
        assert len(queue) == 0

    def test_exhausted(self):
        queue = OrderedQueue([1])
        queue.put(1, "a")
        queue.get()
        with pytest.raises(IndexError):
            queue.get()

    def test_cancel_while_waiting(self):
        queue = OrderedQueue([1, 2])
        queue.put(2, "b")
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CancelledError):
            queue.get(cancel)


class TestDatasetWriter:
    """Test writing complete datasets."""

    def test_layout_and_manifest(self, tmp_path, camera, poses):
        writer = DatasetWriter(tmp_path, binary=True, text=True)
        manifest = writer.write(Dataset.from_poses(camera, poses))

        for name in ("cameras", "images", "points3D"):
            assert (tmp_path / "sparse" / "0" / f"{name}.bin").exists()
            assert (tmp_path / "sparse" / "0" / f"{name}.txt").exists()
        assert (tmp_path / "images").is_dir()
        assert (tmp_path / "depth").is_dir()
        assert not [p for p in all_files(tmp_path) if p.endswith(".partial")]

        assert manifest.n_frames == 20
        assert manifest.n_cameras == 1
        assert manifest.n_points == 0
        assert manifest.convention == "opencv"

        saved = json.loads((tmp_path / "manifest.json").read_text())
        assert saved["n_frames"] == 20
        assert DatasetManifest.load(tmp_path / "manifest.json").n_frames == 20

    def test_poses_written_in_opencv(self, tmp_path, camera, poses):
        DatasetWriter(tmp_path).write(Dataset.from_poses(camera, poses))
        _, images, _ = read_model(tmp_path / "sparse" / "0")

        for frame_id, pose in enumerate(poses, start=1):
            expected = pose.to_convention(OPENCV)
            decoded = images[frame_id].to_pose()
            assert np.allclose(decoded.position, expected.position)
            assert np.allclose(decoded.forward_vector, expected.forward_vector)

    def test_manifest_bounds(self, tmp_path, camera):
        poses = [Pose([1.0, 2.0, 3.0], convention=OPENCV), Pose([-1.0, 0.0, 5.0], convention=OPENCV)]
        manifest = DatasetWriter(tmp_path).write(Dataset.from_poses(camera, poses))
        assert manifest.bounds_min == [-1.0, 0.0, 3.0]
        assert manifest.bounds_max == [1.0, 2.0, 5.0]

    def test_points_converted(self, tmp_path, camera, poses):
        """Points given in OpenGL are stored in OpenCV."""
        dataset = Dataset.from_poses(camera, poses)
        dataset.points = np.array([[0.0, 1.0, 2.0]])
        dataset.point_colors = np.array([[10, 20, 30]], dtype=np.uint8)
        dataset.convention = OPENGL

        manifest = DatasetWriter(tmp_path).write(dataset)
        _, _, points = read_model(tmp_path / "sparse" / "0")

        assert manifest.n_points == 1
        assert np.allclose(points[1].xyz, [0.0, -1.0, -2.0])
        assert list(points[1].rgb) == [10, 20, 30]

    def test_depth_maps_written(self, tmp_path, camera, poses):
        processor = DepthProcessor(near=10.0, far=1000.0)
        result = processor.process(np.full((4, 6), 0.5))
        frames = [Frame(i, pose, camera, depth=result) for i, pose in enumerate(poses[:3], start=1)]

        manifest = DatasetWriter(tmp_path, depth_format="raw").write(Dataset([camera], frames))

        assert len(manifest.depth_files) == 3
        assert (tmp_path / "depth" / "frame_0001.raw").exists()
        assert (tmp_path / "depth" / "frame_0001.json").exists()

    def test_requires_an_encoding(self, tmp_path):
        with pytest.raises(ConfigurationError):
            DatasetWriter(tmp_path, binary=False, text=False)

    def test_cancel_before_start(self, tmp_path, camera, poses):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CancelledError):
            DatasetWriter(tmp_path, text=True).write(Dataset.from_poses(camera, poses), cancel)
        assert all_files(tmp_path) == []

    def test_cancel_mid_write_removes_partials(self, tmp_path, camera, poses):
        """Frames already written, and their depth maps, are removed."""
        result = DepthProcessor(near=10.0, far=1000.0).process(np.full((4, 6), 0.5))
        frames = [Frame(i, pose, camera, depth=result) for i, pose in enumerate(poses, start=1)]

        cancel = CancelAfter(5)
        with pytest.raises(CancelledError):
            DatasetWriter(tmp_path, text=True).write(Dataset([camera], frames), cancel)

        assert all_files(tmp_path) == []


class TestProcessFrames:
    """Test streaming renderer captures through the worker pool."""

    def test_images_in_frame_order(self, tmp_path, camera, poses):
        """Captures arrive in reverse; records are written by increasing id."""
        captures = [(i, pose) for i, pose in enumerate(poses, start=1)][::-1]
        manifest = DatasetWriter(tmp_path, workers=4, text=True).process_frames(captures, camera)

        assert manifest.n_frames == 20
        _, images, _ = read_model(tmp_path / "sparse" / "0")
        assert list(images) == list(range(1, 21))
        assert images[3].name == "frame_0003.png"

    def test_depth_and_points(self, tmp_path, poses):
        small = CameraModel.from_fov(1, 8, 6, 90.0)
        processor = DepthProcessor(near=10.0, far=1000.0, unit_scale=0.01)
        captures = [(i, pose, None, np.full((6, 8), 0.5)) for i, pose in enumerate(poses[:4], start=1)]

        writer = DatasetWriter(tmp_path, workers=2, depth_format="npy")
        manifest = writer.process_frames(captures, small, processor, convention=OPENCV, point_stride=2)

        assert len(manifest.depth_files) == 4
        # 4 x 3 samples per frame
        assert manifest.n_points == 4 * 12
        _, _, points = read_model(tmp_path / "sparse" / "0")
        assert len(points) == 48

    def test_points_from_opengl_captures(self, tmp_path):
        """A camera 5 m back from the origin sees a 1 m plane at OpenCV z = -4."""
        small = CameraModel.from_fov(1, 8, 6, 90.0)
        processor = DepthProcessor(near=1.0, far=100.0, unit_scale=1.0)
        pose = Pose.look_at([0.0, 0.0, 5.0], [0.0, 0.0, 0.0], OPENGL)
        image = np.full((6, 8, 3), 128, dtype=np.uint8)
        # OpenGL buffers start at the bottom row
        image[0] = (255, 0, 0)

        writer = DatasetWriter(tmp_path, workers=1)
        manifest = writer.process_frames(
            [(1, pose, image, np.ones((6, 8)))], small, processor, convention=OPENGL, point_stride=1
        )

        _, _, points = read_model(tmp_path / "sparse" / "0")
        xyz = np.array([p.xyz for p in points.values()])
        rgb = np.array([p.rgb for p in points.values()])
        assert manifest.n_points == 48
        assert np.allclose(xyz.mean(axis=0), [0.0, 0.0, -4.0], atol=1e-6)
        assert np.allclose(xyz[:, 2], -4.0)
        # Bottom of the image is +y in OpenCV
        red = np.all(rgb == (255, 0, 0), axis=1)
        assert np.count_nonzero(red) == 8
        assert np.all(xyz[red, 1] > 0)

    def test_timestamps_must_not_decrease(self, tmp_path, camera, poses):
        captures = [(1, poses[0], None, None, 5.0), (2, poses[1], None, None, 1.0)]
        with pytest.raises(ConfigurationError, match="timestamp"):
            DatasetWriter(tmp_path).process_frames(captures, camera)
        assert not (tmp_path / "sparse").exists()

    def test_equal_timestamps_allowed(self, tmp_path, camera, poses):
        captures = [(2, poses[1], None, None, 1.0), (1, poses[0], None, None, 1.0)]
        assert DatasetWriter(tmp_path).process_frames(captures, camera).n_frames == 2

    def test_point_cap(self, tmp_path, poses):
        small = CameraModel.from_fov(1, 8, 6, 90.0)
        processor = DepthProcessor(near=10.0, far=1000.0)
        captures = [(i, pose, None, np.full((6, 8), 0.5)) for i, pose in enumerate(poses[:4], start=1)]

        writer = DatasetWriter(tmp_path, workers=2, max_points=10)
        assert writer.process_frames(captures, small, processor, point_stride=1).n_points == 10

    def test_duplicate_ids(self, tmp_path, camera, poses):
        with pytest.raises(ConfigurationError):
            DatasetWriter(tmp_path).process_frames([(1, poses[0]), (1, poses[1])], camera)

    def test_cancel(self, tmp_path, camera, poses):
        captures = [(i, pose) for i, pose in enumerate(poses, start=1)]
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CancelledError):
            DatasetWriter(tmp_path, workers=2, text=True).process_frames(captures, camera, cancel_event=cancel)

        sparse = tmp_path / "sparse" / "0"
        assert not list(sparse.iterdir())
        assert not (tmp_path / "manifest.json").exists()

    def test_producer_error_propagates(self, tmp_path, camera, poses):
        """A bad depth buffer stops the run and leaves no model behind."""
        processor = DepthProcessor(near=10.0, far=1000.0)
        captures = [(i, pose, None, np.full((6, 8), 0.5)) for i, pose in enumerate(poses[:4], start=1)]
        captures[2] = (3, poses[2], None, np.zeros(5))

        with pytest.raises(ValueError):
            DatasetWriter(tmp_path, workers=2).process_frames(captures, camera, processor)

        assert not list((tmp_path / "sparse" / "0").iterdir())
        assert not list((tmp_path / "depth").iterdir())


class TestValidateDataset:
    """Test dataset checks."""

    def test_clean_dataset(self, tmp_path, camera, poses):
        DatasetWriter(tmp_path).write(Dataset.from_poses(camera, poses))
        assert ds.validate_dataset(tmp_path) == []

    def test_missing_directories(self, tmp_path):
        issues = ds.validate_dataset(tmp_path)
        assert len(issues) == 2
        assert all("Missing directory" in issue for issue in issues)

    def test_missing_image_files(self, tmp_path, camera, poses):
        DatasetWriter(tmp_path).write(Dataset.from_poses(camera, poses))
        (tmp_path / "images" / "frame_0001.png").write_bytes(b"")

        issues = ds.validate_dataset(tmp_path)
        assert any("no file in images/" in issue for issue in issues)

    def test_unreadable_model(self, tmp_path, camera, poses):
        DatasetWriter(tmp_path).write(Dataset.from_poses(camera, poses))
        images_bin = tmp_path / "sparse" / "0" / "images.bin"
        images_bin.write_bytes(images_bin.read_bytes()[:20])

        issues = ds.validate_dataset(tmp_path)
        assert any("Cannot read sparse model" in issue for issue in issues)

    def test_camera_warnings_reported(self, tmp_path, poses):
        narrow = CameraModel.from_fov(1, 1920, 1080, 20.0)
        DatasetWriter(tmp_path).write(Dataset.from_poses(narrow, poses))
        assert any("Narrow" in issue for issue in ds.validate_dataset(tmp_path))
