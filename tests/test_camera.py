"""
Tests for Pose and CameraModel.
"""

import dataclasses

import numpy as np
import pytest

from capture2colmap.camera import CameraModel, CameraModelKind, Pose
from capture2colmap.coordinates import OPENCV, OPENGL
from capture2colmap.errors import ConfigurationError, ConversionError


class TestCameraModelKind:
    """Test the COLMAP model table."""

    def test_ids_and_param_counts(self):
        expected = {
            "SIMPLE_PINHOLE": (0, 3),
            "PINHOLE": (1, 4),
            "SIMPLE_RADIAL": (2, 4),
            "RADIAL": (3, 5),
            "OPENCV": (4, 8),
            "FULL_OPENCV": (6, 12),
        }
        for name, (model_id, count) in expected.items():
            kind = CameraModelKind[name]
            assert kind.model_id == model_id
            assert kind.param_count == count

    def test_lookup(self):
        assert CameraModelKind.from_id(4) is CameraModelKind.OPENCV
        assert CameraModelKind.from_name("pinhole") is CameraModelKind.PINHOLE

    def test_unknown_lookup_raises(self):
        with pytest.raises(ConfigurationError):
            CameraModelKind.from_id(5)
        with pytest.raises(ConfigurationError):
            CameraModelKind.from_name("FISHEYE")


class TestCameraModel:
    """Test camera model construction and derived values."""

    def test_param_count_checked(self):
        with pytest.raises(ConfigurationError):
            CameraModel(1, 640, 480, CameraModelKind.PINHOLE, (500.0, 500.0, 320.0))

    def test_non_finite_params_rejected(self):
        with pytest.raises(ConversionError):
            CameraModel(1, 640, 480, CameraModelKind.PINHOLE, (np.inf, 500.0, 320.0, 240.0))

    def test_invalid_id_rejected(self):
        with pytest.raises(ConfigurationError):
            CameraModel(0, 640, 480, CameraModelKind.PINHOLE, (500.0, 500.0, 320.0, 240.0))

    def test_from_fov(self):
        """90 deg HFOV: fx = (width / 2) / tan(45 deg) = width / 2."""
        camera = CameraModel.from_fov(1, 1920, 1080, 90.0)
        assert np.isclose(camera.fx, 960.0)
        assert np.isclose(camera.fy, 960.0)
        assert np.isclose(camera.cx, 960.0)
        assert np.isclose(camera.cy, 540.0)
        assert np.isclose(camera.horizontal_fov_deg, 90.0)

    def test_from_vertical_fov(self):
        camera = CameraModel.from_fov(1, 1920, 1080, 90.0, is_horizontal_fov=False)
        assert np.isclose(camera.fy, 540.0)
        assert np.isclose(camera.vertical_fov_deg, 90.0)

    def test_from_sensor(self):
        """36 mm lens on a 36 mm sensor: fx equals the image width."""
        camera = CameraModel.from_sensor(1, 1920, 1080, focal_length_mm=36.0, sensor_width_mm=36.0)
        assert np.isclose(camera.fx, 1920.0)
        assert np.isclose(camera.fy, 1920.0)

    def test_single_focal_kind(self):
        camera = CameraModel.from_focal(2, 800, 600, (700.0, 700.0), kind=CameraModelKind.SIMPLE_RADIAL)
        assert camera.params == (700.0, 400.0, 300.0, 0.0)
        assert camera.fx == camera.fy == 700.0
        assert camera.cy == 300.0

    def test_distortion_kinds_pad_with_zeros(self):
        camera = CameraModel.from_focal(1, 800, 600, (700.0, 710.0), kind=CameraModelKind.OPENCV)
        assert len(camera.params) == 8
        assert camera.params[4:] == (0.0, 0.0, 0.0, 0.0)

    def test_intrinsics_matrix(self):
        camera = CameraModel.from_focal(1, 800, 600, (700.0, 710.0), principal_point=(390.0, 310.0))
        K = camera.intrinsics_matrix()
        assert np.allclose(K, [[700, 0, 390], [0, 710, 310], [0, 0, 1]])

    def test_immutable(self):
        camera = CameraModel.from_fov(1, 640, 480, 60.0)
        with pytest.raises(dataclasses.FrozenInstanceError):
            camera.width = 320


class TestValidateForTraining:
    """Test training-suitability warnings."""

    def test_typical_camera_is_clean(self):
        assert CameraModel.from_fov(1, 1920, 1080, 90.0).validate_for_training() == []

    def test_narrow_fov(self):
        warnings = CameraModel.from_fov(1, 1920, 1080, 20.0).validate_for_training()
        assert any("Narrow" in w for w in warnings)

    def test_wide_fov(self):
        warnings = CameraModel.from_fov(1, 1920, 1080, 150.0).validate_for_training()
        assert any("Wide" in w for w in warnings)

    def test_off_center_principal_point(self):
        camera = CameraModel.from_focal(1, 1000, 1000, (800.0, 800.0), principal_point=(700.0, 500.0))
        assert any("Principal point" in w for w in camera.validate_for_training())

    def test_non_square_pixels(self):
        camera = CameraModel.from_focal(1, 1000, 1000, (800.0, 900.0))
        assert any("Non-square" in w for w in camera.validate_for_training())

    def test_image_size(self):
        small = CameraModel.from_fov(1, 200, 150, 90.0)
        large = CameraModel.from_fov(1, 8192, 4096, 90.0)
        assert any("Small" in w for w in small.validate_for_training())
        assert any("Large" in w for w in large.validate_for_training())


class TestPose:
    """Test Pose construction and transforms."""

    def test_defaults(self):
        pose = Pose([1.0, 2.0, 3.0])
        assert np.allclose(pose.rotation, [1, 0, 0, 0])
        assert pose.convention == OPENCV
        assert np.allclose(pose.rotation_matrix, np.eye(3))

    def test_arrays_are_read_only(self):
        pose = Pose([1.0, 2.0, 3.0])
        with pytest.raises(ValueError):
            pose.position[0] = 5.0
        with pytest.raises(ValueError):
            pose.rotation[0] = 0.0

    def test_frozen(self):
        pose = Pose([1.0, 2.0, 3.0])
        with pytest.raises(dataclasses.FrozenInstanceError):
            pose.position = np.zeros(3)

    def test_input_is_copied(self):
        position = np.array([1.0, 2.0, 3.0])
        pose = Pose(position)
        position[0] = 10.0
        assert pose.position[0] == 1.0

    def test_non_finite_position_rejected(self):
        with pytest.raises(ConversionError):
            Pose([np.nan, 0.0, 0.0])

    def test_zero_rotation_rejected(self):
        with pytest.raises(ConversionError):
            Pose([0.0, 0.0, 0.0], [0.0, 0.0, 0.0, 0.0])

    def test_identity_equality(self):
        """Poses compare by identity, not by value."""
        a = Pose([1.0, 2.0, 3.0])
        b = Pose([1.0, 2.0, 3.0])
        assert a == a
        assert a != b

    def test_c2w_w2c_inverse(self):
        pose = Pose.look_at([3.0, 1.0, -2.0], [0.0, 0.0, 0.0], OPENGL)
        assert np.allclose(pose.get_w2c() @ pose.get_c2w(), np.eye(4))

    def test_w2c_maps_center_to_origin(self):
        pose = Pose.look_at([3.0, 1.0, -2.0], [0.0, 0.0, 0.0], OPENCV)
        center = np.append(pose.position, 1.0)
        assert np.allclose(pose.get_w2c() @ center, [0, 0, 0, 1])

    def test_look_at_target_in_front(self):
        """In OpenCV camera space the target has positive z."""
        pose = Pose.look_at([3.0, 1.0, -2.0], [0.5, 0.0, 0.0], OPENCV)
        target_cam = pose.get_w2c() @ np.array([0.5, 0.0, 0.0, 1.0])
        assert target_cam[2] > 0
        assert np.allclose(target_cam[:2], 0.0)

    def test_from_matrix(self):
        R = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
        pose = Pose.from_matrix([0.0, 0.0, 0.0], R, OPENGL)
        assert np.allclose(pose.rotation_matrix, R)
        assert pose.convention == OPENGL
