"""
Tests for depth linearization and export.
"""

import numpy as np
import pytest

from capture2colmap import depth
from capture2colmap.camera import CameraModel, Pose
from capture2colmap.coordinates import OPENCV
from capture2colmap.depth import DepthProcessor, DepthResult, linearize
from capture2colmap.errors import ConfigurationError, ConversionError


class TestLinearize:
    """Test reversed-Z linearization."""

    def test_near_and_far(self):
        """1.0 is the near plane, 0.0 the far plane."""
        assert np.isclose(linearize(1.0, 10.0, 100000.0), 10.0)
        assert np.isclose(linearize(0.0, 10.0, 100000.0), 100000.0)

    def test_monotonically_decreasing(self):
        samples = np.linspace(0.0, 1.0, 101)
        distances = linearize(samples, 10.0, 100000.0)
        assert np.all(np.diff(distances) < 0)

    def test_formula(self):
        """d = f*n / (n + s*(f - n))."""
        near, far, s = 10.0, 1000.0, 0.25
        expected = far * near / (near + s * (far - near))
        assert np.isclose(linearize(s, near, far), expected)

    def test_unbounded(self):
        """Infinite far plane: d = near / s."""
        assert np.isclose(linearize(0.5, 10.0, 0.0, unbounded_far=True), 20.0)
        assert np.isclose(linearize(0.01, 10.0, 0.0, unbounded_far=True), 1000.0)
        assert linearize(0.0, 10.0, 0.0, unbounded_far=True) == np.inf

    def test_out_of_range_samples_clamp(self):
        assert np.isclose(linearize(1.5, 10.0, 1000.0), 10.0)
        assert np.isclose(linearize(-0.5, 10.0, 1000.0), 1000.0)

    def test_scalar_and_array_types(self):
        assert isinstance(linearize(0.5, 10.0, 1000.0), float)
        assert linearize(np.full((4, 3), 0.5), 10.0, 1000.0).shape == (4, 3)

    def test_invalid_planes(self):
        with pytest.raises(ConfigurationError):
            linearize(0.5, 0.0, 1000.0)
        with pytest.raises(ConfigurationError):
            linearize(0.5, 100.0, 10.0)

    def test_non_finite_samples(self):
        with pytest.raises(ConversionError):
            linearize(np.array([0.5, np.nan]), 10.0, 1000.0)


class TestDepthProcessor:
    """Test the ordered processing chain."""

    def test_unit_conversion(self):
        """Centimeter planes scaled to meters."""
        processor = DepthProcessor(near=10.0, far=1000.0, unit_scale=0.01)
        result = processor.process(np.array([[1.0, 0.5], [0.25, 0.0]]))

        assert result.data.dtype == np.float32
        assert np.isclose(result.data[0, 0], 0.1)
        assert np.isclose(result.data[1, 1], 10.0)
        assert np.isclose(result.min_depth, 0.1)
        assert np.isclose(result.max_depth, 10.0)
        assert np.isclose(result.near, 0.1)
        assert np.isclose(result.far, 10.0)
        assert not result.inverted

    def test_invert_after_unit_conversion(self):
        """Inversion runs on meters, and the range extremes swap."""
        processor = DepthProcessor(near=10.0, far=500.0, unit_scale=0.01, invert=True)
        result = processor.process(np.array([[1.0, 0.0]]))

        assert result.inverted
        assert np.isclose(result.data[0, 0], 10.0)   # 1 / 0.1 m
        assert np.isclose(result.data[0, 1], 0.2)    # 1 / 5 m
        assert np.isclose(result.min_depth, 0.2)
        assert np.isclose(result.max_depth, 10.0)

    def test_gamma_does_not_touch_stored_depth(self):
        processor = DepthProcessor(near=10.0, far=1000.0, gamma=2.2)
        result = processor.process(np.linspace(0.0, 1.0, 16).reshape(4, 4))
        before = result.data.copy()

        image = processor.preview(result)

        assert np.array_equal(result.data, before)
        assert image.shape == (4, 4, 4)
        assert image.dtype == np.uint8

    def test_gamma_brightens_preview(self):
        raw = np.linspace(0.0, 1.0, 16).reshape(4, 4)
        plain = DepthProcessor(near=10.0, far=1000.0).process(raw)
        linear_image = depth.visualization(plain, gamma=1.0)
        bright_image = depth.visualization(plain, gamma=2.2)
        assert bright_image[..., 0].sum() > linear_image[..., 0].sum()

    def test_nearest_is_white(self):
        result = DepthProcessor(near=10.0, far=1000.0).process(np.array([[1.0, 0.0]]))
        image = depth.visualization(result)
        assert image[0, 0, 0] == 255
        assert image[0, 1, 0] == 0
        assert np.all(image[..., 3] == 255)

    def test_infinite_pixels_are_transparent(self):
        processor = DepthProcessor(near=10.0, unbounded_far=True)
        result = processor.process(np.array([[1.0, 0.5, 0.0]]))
        image = depth.visualization(result)
        assert image[0, 2, 3] == 0
        assert image[0, 0, 3] == 255

    def test_colormap(self):
        pytest.importorskip("matplotlib")
        result = DepthProcessor(near=10.0, far=1000.0).process(np.linspace(0, 1, 9).reshape(3, 3))
        image = depth.visualization(result, colormap="viridis")
        assert image.shape == (3, 3, 4)

    def test_unknown_colormap(self):
        pytest.importorskip("matplotlib")
        result = DepthProcessor(near=10.0, far=1000.0).process(np.full((2, 2), 0.5))
        with pytest.raises(ConfigurationError, match="colormap"):
            depth.visualization(result, colormap="not_a_colormap")

    def test_rejects_bad_buffer(self):
        processor = DepthProcessor()
        with pytest.raises(ConversionError):
            processor.process(np.zeros(5))

    def test_rejects_bad_settings(self):
        with pytest.raises(ConfigurationError):
            DepthProcessor(unit_scale=0.0)
        with pytest.raises(ConfigurationError):
            DepthProcessor(gamma=-1.0)


class TestSaveLoad:
    """Test depth export formats."""

    @pytest.fixture
    def result(self):
        raw = np.linspace(0.05, 1.0, 12).reshape(3, 4)
        return DepthProcessor(near=10.0, far=1000.0, unit_scale=0.01).process(raw)

    @pytest.mark.parametrize("fmt", ["npy", "raw"])
    def test_exact_round_trip(self, tmp_path, result, fmt):
        path = depth.save_depth(result, tmp_path / "frame_0001", fmt)

        assert path.suffix == depth.DEPTH_EXTENSIONS[fmt]
        assert path.with_suffix(".json").exists()

        loaded = depth.load_depth(path)
        assert np.array_equal(loaded.data, result.data)
        assert loaded.units == "m"
        assert np.isclose(loaded.far, result.far)

    def test_raw_is_headerless_float32(self, tmp_path, result):
        path = depth.save_depth(result, tmp_path / "d", "raw")
        assert path.stat().st_size == result.data.size * 4

    def test_png16_round_trip(self, tmp_path, result):
        pytest.importorskip("cv2")
        path = depth.save_depth(result, tmp_path / "d", "png16")
        loaded = depth.load_depth(path)
        tolerance = (result.max_depth - result.min_depth) / 65535.0
        assert np.allclose(loaded.data, result.data, atol=tolerance * 1.01)

    def test_preview_png(self, tmp_path, result):
        cv2 = pytest.importorskip("cv2")
        image = DepthProcessor().preview(result)
        path = depth.save_preview(image, tmp_path / "preview.png")

        written = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
        assert written.shape == (3, 4, 4)
        # Nearest sample is white
        assert np.all(written[2, 3, :3] == 255)

    def test_preview_rejects_grayscale(self, tmp_path):
        pytest.importorskip("cv2")
        with pytest.raises(ConfigurationError):
            depth.save_preview(np.zeros((3, 4), dtype=np.uint8), tmp_path / "preview.png")

    def test_unbounded_far_in_metadata(self, tmp_path):
        result = DepthProcessor(near=10.0, unbounded_far=True).process(np.array([[0.5, 1.0]]))
        path = depth.save_depth(result, tmp_path / "d", "npy")
        assert depth.load_depth(path).far == np.inf

    def test_unknown_format(self, tmp_path, result):
        with pytest.raises(ConfigurationError):
            depth.save_depth(result, tmp_path / "d", "exr")


class TestValidateDepthRange:
    """Test depth sanity warnings."""

    def test_clean_map(self):
        result = DepthProcessor(near=10.0, far=1000.0).process(np.array([[0.9, 0.5]]))
        assert depth.validate_depth_range(result) == []

    def test_sky_pixels(self):
        result = DepthProcessor(near=10.0, far=1000.0).process(np.array([[0.9, 0.0]]))
        assert any("far plane" in w for w in depth.validate_depth_range(result))

    def test_degenerate_range(self):
        result = DepthProcessor(near=10.0, far=1000.0).process(np.full((2, 2), 0.5))
        assert any("Degenerate" in w for w in depth.validate_depth_range(result))

    def test_invalid_shape(self):
        result = DepthResult(np.zeros(3, dtype=np.float32), 0.0, 1.0, 0.1, 10.0)
        assert depth.validate_depth_range(result)


class TestDepthToPoints:
    """Test back-projection of depth maps."""

    def test_identity_camera(self):
        """Constant depth 2 in front of an identity OpenCV camera."""
        camera = CameraModel.from_focal(1, 4, 4, (2.0, 2.0))
        pose = Pose([0.0, 0.0, 0.0], convention=OPENCV)
        points, colors = depth.depth_to_points(np.full((4, 4), 2.0), camera, pose, stride=1)

        assert points.shape == (16, 3)
        assert np.allclose(points[:, 2], 2.0)
        assert colors.shape == (16, 3)
        # Pixel (1, 1) center is at (1.5, 1.5); cx = cy = 2
        assert np.allclose(points[5], [-0.5, -0.5, 2.0])

    def test_stride_and_max_depth(self):
        camera = CameraModel.from_focal(1, 8, 8, (4.0, 4.0))
        pose = Pose([0.0, 0.0, 0.0], convention=OPENCV)
        d = np.full((8, 8), 2.0)
        d[0, 0] = 50.0
        points, _ = depth.depth_to_points(d, camera, pose, stride=2, max_depth=10.0)
        assert len(points) == 15

    def test_shape_mismatch(self):
        camera = CameraModel.from_focal(1, 8, 8, (4.0, 4.0))
        with pytest.raises(ConfigurationError):
            depth.depth_to_points(np.ones((4, 4)), camera, Pose([0.0, 0.0, 0.0]))
