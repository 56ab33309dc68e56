"""
Tests for coordinate convention conversions.

Conversions feed every written pose, so they must be exact.
"""

import itertools
import logging

import numpy as np
import pytest

from capture2colmap import coordinates
from capture2colmap.camera import CameraModel, Pose
from capture2colmap.coordinates import OPENCV, OPENGL, UNREAL
from capture2colmap.errors import ConfigurationError, ConversionError

ALL_CONVENTIONS = [UNREAL, OPENCV, OPENGL]


def random_quaternion(rng):
    q = rng.normal(size=4)
    return q / np.linalg.norm(q)


class TestConvention:
    """Test the convention descriptors."""

    def test_predefined_handedness(self):
        """UE is left-handed, OpenCV and OpenGL right-handed."""
        assert UNREAL.handedness == "left"
        assert OPENCV.handedness == "right"
        assert OPENGL.handedness == "right"

    def test_colmap_is_opencv(self):
        assert coordinates.COLMAP is OPENCV

    def test_semantic_axes(self):
        """Up/forward/right vectors match each convention's axis labels."""
        assert np.allclose(UNREAL.forward, [1, 0, 0])
        assert np.allclose(UNREAL.right, [0, 1, 0])
        assert np.allclose(UNREAL.up, [0, 0, 1])

        assert np.allclose(OPENCV.forward, [0, 0, 1])
        assert np.allclose(OPENCV.up, [0, -1, 0])

        assert np.allclose(OPENGL.forward, [0, 0, -1])
        assert np.allclose(OPENGL.up, [0, 1, 0])

    def test_declared_handedness_must_match_axes(self):
        """(right, up, forward) is a left-handed frame."""
        with pytest.raises(ConfigurationError):
            coordinates.Convention("bad", ("right", "up", "forward"), "right")

    def test_repeated_axis_rejected(self):
        with pytest.raises(ConfigurationError):
            coordinates.Convention("bad", ("right", "left", "up"), "right")

    def test_get_convention_aliases(self):
        assert coordinates.get_convention("UE5") is UNREAL
        assert coordinates.get_convention("colmap") is OPENCV

    def test_get_convention_unknown(self):
        with pytest.raises(ConfigurationError):
            coordinates.get_convention("blender")


class TestAxisMapping:
    """Test the signed axis permutation."""

    def test_unreal_to_opencv(self):
        """UE +X -> CV +Z, UE +Y -> CV +X, UE +Z -> CV -Y."""
        assert coordinates.axis_mapping(UNREAL, OPENCV) == [(2, 1), (0, 1), (1, -1)]

    def test_identity_mapping(self):
        assert coordinates.axis_mapping(OPENGL, OPENGL) == [(0, 1), (1, 1), (2, 1)]

    def test_opengl_to_opencv_flips_y_and_z(self):
        assert coordinates.axis_mapping(OPENGL, OPENCV) == [(0, 1), (1, -1), (2, -1)]

    def test_basis_change_is_orthogonal(self):
        for source, target in itertools.product(ALL_CONVENTIONS, repeat=2):
            B = coordinates.basis_change(source, target)
            assert np.allclose(B @ B.T, np.eye(3))


class TestConvertPosition:
    """Test position conversion including unit scale."""

    def test_unreal_centimeters_to_opencv_meters(self):
        """UE (100, 0, 0) cm is 1 m forward: OpenCV (0, 0, 1)."""
        result = coordinates.convert_position(np.array([100.0, 0.0, 0.0]), UNREAL, OPENCV)
        assert np.allclose(result, [0.0, 0.0, 1.0])

    def test_unreal_up_is_opencv_negative_y(self):
        result = coordinates.convert_position(np.array([0.0, 0.0, 250.0]), UNREAL, OPENCV)
        assert np.allclose(result, [0.0, -2.5, 0.0])

    def test_batch(self):
        """(N, 3) arrays convert row by row."""
        points = np.array([[100.0, 0.0, 0.0], [0.0, 100.0, 0.0]])
        result = coordinates.convert_position(points, UNREAL, OPENGL)
        assert result.shape == (2, 3)
        assert np.allclose(result[0], [0.0, 0.0, -1.0])
        assert np.allclose(result[1], [1.0, 0.0, 0.0])

    def test_non_finite_rejected(self):
        with pytest.raises(ConversionError):
            coordinates.convert_position(np.array([np.nan, 0.0, 0.0]), UNREAL, OPENCV)


class TestConvertPose:
    """Test pose conversion between conventions."""

    def test_round_trip_all_pairs(self):
        """A -> B -> A reproduces random poses."""
        rng = np.random.default_rng(0)
        for source, target in itertools.permutations(ALL_CONVENTIONS, 2):
            for _ in range(20):
                pose = Pose(rng.uniform(-500, 500, size=3), random_quaternion(rng), source)
                there = coordinates.convert_pose(pose, source, target)
                back = coordinates.convert_pose(there, target, source)

                assert there.convention == target
                assert back.convention == source
                assert np.allclose(back.position, pose.position, atol=1e-9)
                assert np.allclose(back.rotation_matrix, pose.rotation_matrix, atol=1e-9)

    def test_viewing_direction_is_preserved(self):
        """The camera keeps looking at the same physical point."""
        rng = np.random.default_rng(1)
        for source, target in itertools.permutations(ALL_CONVENTIONS, 2):
            pose = Pose(rng.uniform(-5, 5, size=3), random_quaternion(rng), source)
            converted = coordinates.convert_pose(pose, source, target)

            expected = coordinates.convert_direction(pose.forward_vector, source, target)
            assert np.allclose(converted.forward_vector, expected, atol=1e-9)
            expected_up = coordinates.convert_direction(pose.up_vector, source, target)
            assert np.allclose(converted.up_vector, expected_up, atol=1e-9)

    def test_rotation_stays_proper(self):
        """Conjugation keeps det(R) = +1 across a handedness change."""
        rng = np.random.default_rng(2)
        pose = Pose([0.0, 0.0, 0.0], random_quaternion(rng), UNREAL)
        converted = coordinates.convert_pose(pose, UNREAL, OPENCV)
        assert np.isclose(np.linalg.det(converted.rotation_matrix), 1.0)

    def test_canonical_quaternion_sign(self):
        rng = np.random.default_rng(3)
        for _ in range(20):
            pose = Pose([0.0, 0.0, 0.0], random_quaternion(rng), UNREAL)
            converted = coordinates.convert_pose(pose, UNREAL, OPENGL)
            assert converted.rotation[0] >= 0.0

    def test_same_convention_is_noop(self):
        pose = Pose([1.0, 2.0, 3.0], convention=OPENGL)
        assert coordinates.convert_pose(pose, OPENGL, OPENGL) is pose

    def test_tag_mismatch_raises(self):
        """A pose tagged OpenCV cannot be converted as if it were OpenGL."""
        pose = Pose([1.0, 2.0, 3.0], convention=OPENCV)
        with pytest.raises(ConfigurationError):
            coordinates.convert_pose(pose, OPENGL, UNREAL)

    def test_to_convention_shorthand(self):
        pose = Pose([100.0, 0.0, 0.0], convention=UNREAL)
        assert np.allclose(pose.to_convention(OPENCV).position, [0.0, 0.0, 1.0])


class TestQuaternions:
    """Test quaternion helpers."""

    def test_zero_quaternion_raises(self):
        with pytest.raises(ConversionError):
            coordinates.normalize_quaternion(np.zeros(4))

    def test_nan_quaternion_raises(self):
        with pytest.raises(ConversionError):
            coordinates.normalize_quaternion(np.array([np.nan, 0.0, 0.0, 1.0]))

    def test_renormalize_logs_warning(self, caplog):
        """Non-unit input is renormalized with a warning."""
        with caplog.at_level(logging.WARNING, logger="capture2colmap.coordinates"):
            q = coordinates.normalize_quaternion(np.array([2.0, 0.0, 0.0, 0.0]))

        assert np.allclose(q, [1.0, 0.0, 0.0, 0.0])
        assert any("Renormalizing" in r.getMessage() for r in caplog.records)

    def test_unit_quaternion_is_silent(self, caplog):
        with caplog.at_level(logging.WARNING, logger="capture2colmap.coordinates"):
            coordinates.normalize_quaternion(np.array([0.0, 1.0, 0.0, 0.0]))
        assert not caplog.records

    def test_matrix_round_trip(self):
        rng = np.random.default_rng(4)
        for _ in range(50):
            q = coordinates.canonical_quaternion(random_quaternion(rng))
            R = coordinates.quaternion_to_rotation(q)
            assert np.allclose(coordinates.rotation_to_quaternion_wxyz(R), q, atol=1e-9)

    def test_slerp_endpoints(self):
        rng = np.random.default_rng(5)
        q1 = coordinates.canonical_quaternion(random_quaternion(rng))
        q2 = coordinates.canonical_quaternion(random_quaternion(rng))

        assert coordinates.quaternion_angle_between(coordinates.slerp(q1, q2, 0.0), q1) < 1e-6
        assert coordinates.quaternion_angle_between(coordinates.slerp(q1, q2, 1.0), q2) < 1e-6


class TestSpherical:
    """Test spherical coordinate helpers."""

    def test_opengl_azimuth_zero_is_negative_z(self):
        """Azimuth 0 points along the convention's forward axis."""
        assert np.allclose(coordinates.spherical_to_cartesian(1.0, 0.0, 0.0, OPENGL), [0, 0, -1])

    def test_azimuth_90_is_right(self):
        assert np.allclose(coordinates.spherical_to_cartesian(2.0, 90.0, 0.0, OPENGL), [2, 0, 0])

    def test_elevation_90_is_up(self):
        assert np.allclose(coordinates.spherical_to_cartesian(1.0, 0.0, 90.0, OPENGL), [0, 1, 0])
        assert np.allclose(coordinates.spherical_to_cartesian(1.0, 0.0, 90.0, UNREAL), [0, 0, 1])

    def test_round_trip(self):
        for convention in ALL_CONVENTIONS:
            position = coordinates.spherical_to_cartesian(3.0, 40.0, -25.0, convention)
            r, az, el = coordinates.cartesian_to_spherical(position, convention)
            assert np.isclose(r, 3.0)
            assert np.isclose(az, 40.0)
            assert np.isclose(el, -25.0)

    def test_origin(self):
        assert coordinates.cartesian_to_spherical(np.zeros(3)) == (0.0, 0.0, 0.0)


class TestLookAt:
    """Test look-at rotations."""

    def test_forward_points_at_target(self):
        for convention in ALL_CONVENTIONS:
            eye = np.array([3.0, -2.0, 5.0])
            pose = Pose.look_at(eye, np.zeros(3), convention)
            expected = -eye / np.linalg.norm(eye)
            assert np.allclose(pose.forward_vector, expected)

    def test_up_stays_above(self):
        """A level camera's up vector points along world up."""
        pose = Pose.look_at([0.0, 0.0, 5.0], [0.0, 0.0, 0.0], OPENGL)
        assert np.allclose(pose.up_vector, [0, 1, 0])
        assert np.allclose(pose.right_vector, [1, 0, 0])

    def test_pole_is_well_defined(self):
        """Looking straight down still gives a proper rotation."""
        pose = Pose.look_at([0.0, 5.0, 0.0], [0.0, 0.0, 0.0], OPENGL)
        R = pose.rotation_matrix
        assert np.allclose(pose.forward_vector, [0, -1, 0])
        assert np.isclose(np.linalg.det(R), 1.0)
        assert np.allclose(R @ R.T, np.eye(3))

    def test_eye_equals_target_raises(self):
        with pytest.raises(ConfigurationError):
            Pose.look_at([1.0, 1.0, 1.0], [1.0, 1.0, 1.0], OPENGL)


class TestColmapExtrinsics:
    """Test world-to-camera conversion for COLMAP."""

    def test_identity_camera(self):
        """OpenCV camera at (0, 0, -5): the origin sits 5 m ahead."""
        pose = Pose([0.0, 0.0, -5.0], convention=OPENCV)
        qvec, tvec = coordinates.world_to_colmap(pose)
        assert np.allclose(qvec, [1, 0, 0, 0])
        assert np.allclose(tvec, [0, 0, 5])

    def test_inverse(self):
        rng = np.random.default_rng(6)
        for convention in ALL_CONVENTIONS:
            pose = Pose(rng.uniform(-3, 3, size=3), random_quaternion(rng), convention)
            qvec, tvec = coordinates.world_to_colmap(pose)
            position, rotation = coordinates.colmap_to_world(qvec, tvec)

            expected = pose.to_convention(OPENCV)
            assert np.allclose(position, expected.position, atol=1e-9)
            assert np.allclose(
                coordinates.quaternion_to_rotation(rotation), expected.rotation_matrix, atol=1e-9
            )

    def test_tvec_maps_center_to_origin(self):
        """R_w2c @ C + t = 0 for the camera center C."""
        pose = Pose.look_at([2.0, 1.0, -4.0], [0.0, 0.0, 0.0], OPENCV)
        qvec, tvec = coordinates.world_to_colmap(pose)
        R_w2c = coordinates.quaternion_to_rotation(qvec)
        assert np.allclose(R_w2c @ pose.position + tvec, 0.0)


class TestConvertIntrinsics:
    """Test intrinsics conversion."""

    def test_row_origin_flip(self):
        camera = CameraModel.from_focal(1, 1920, 1080, (1000.0, 1000.0), principal_point=(960.0, 300.0))
        converted = coordinates.convert_intrinsics(camera, OPENGL, OPENCV)
        assert np.isclose(converted.cy, 780.0)
        assert np.isclose(converted.cx, 960.0)
        assert np.isclose(converted.fx, 1000.0)

    def test_same_row_origin_unchanged(self):
        camera = CameraModel.from_fov(1, 640, 480, 60.0)
        assert coordinates.convert_intrinsics(camera, UNREAL, OPENCV) is camera
