"""Tests for mapping landmark sets to glasses poses."""

from __future__ import annotations

import math

import pytest

from pose_resolver import MIN_LANDMARK_COUNT, Pose, PoseResolver, anchors
from scene_graph import SceneNode
from tryon_config import PoseCalibration
from tests.conftest import make_landmarks

NO_OFFSETS = PoseCalibration(scale_multiplier=2.2, vertical_offset=0.0,
                             horizontal_offset=0.0, depth_offset=0.0)


class TestPosition:
    def test_symmetric_eyes_land_on_the_vertical_axis(self) -> None:
        pose = PoseResolver(NO_OFFSETS).resolve(make_landmarks((0.3, 0.5, 0), (0.7, 0.5, 0)), 1.0)

        assert pose is not None
        assert pose.position[0] == pytest.approx(0.0)
        assert pose.position[1] == pytest.approx(0.0)

    def test_horizontal_offset_is_scaled_by_aspect(self) -> None:
        pose = PoseResolver(NO_OFFSETS).resolve(make_landmarks((0.5, 0.5, 0), (0.7, 0.5, 0)), 16 / 9)

        assert pose.position[0] == pytest.approx((0.6 - 0.5) * 2 * 16 / 9)

    def test_image_y_down_maps_to_render_y_down(self) -> None:
        pose = PoseResolver(NO_OFFSETS).resolve(make_landmarks((0.3, 0.75, 0), (0.7, 0.75, 0)), 1.0)

        assert pose.position[1] == pytest.approx(-0.5)

    def test_depth_is_negated(self) -> None:
        pose = PoseResolver(NO_OFFSETS).resolve(make_landmarks((0.3, 0.5, 0.1), (0.7, 0.5, 0.3)), 1.0)

        assert pose.position[2] == pytest.approx(-0.2)

    def test_default_offsets_are_applied(self) -> None:
        pose = PoseResolver().resolve(make_landmarks((0.3, 0.5, 0.0), (0.7, 0.5, 0.0)), 1.0)

        assert pose.position == pytest.approx((0.0, -0.05, 0.3))


class TestScaleAndRotation:
    def test_scale_is_positive(self) -> None:
        pose = PoseResolver().resolve(make_landmarks((0.45, 0.5, 0), (0.55, 0.5, 0)), 4 / 3)

        assert pose.scale > 0
        assert pose.scale == pytest.approx(0.1 * 4 / 3 * 2.2)

    def test_doubling_eye_distance_doubles_scale(self) -> None:
        resolver = PoseResolver()
        near = resolver.resolve(make_landmarks((0.45, 0.5, 0), (0.55, 0.5, 0)), 1.5)
        far = resolver.resolve(make_landmarks((0.4, 0.5, 0), (0.6, 0.5, 0)), 1.5)

        assert far.scale == pytest.approx(2 * near.scale)

    def test_rotation_follows_eye_line(self) -> None:
        pose = PoseResolver().resolve(make_landmarks((0.3, 0.5, 0), (0.7, 0.6, 0)), 1.0)

        assert pose.rotation_z == pytest.approx(math.atan2(0.1, 0.4))
        assert pose.rotation_z == pytest.approx(0.2450, abs=1e-4)

    def test_level_eyes_give_no_rotation(self) -> None:
        pose = PoseResolver().resolve(make_landmarks(), 1.0)

        assert pose.rotation_z == pytest.approx(0.0)


class TestRejectedInput:
    def test_no_face_returns_none(self) -> None:
        resolver = PoseResolver()

        assert resolver.resolve(None, 1.0) is None
        assert resolver.resolve((), 1.0) is None

    def test_truncated_set_returns_none(self) -> None:
        landmarks = make_landmarks(count=MIN_LANDMARK_COUNT - 1)

        assert PoseResolver().resolve(landmarks, 1.0) is None

    def test_minimum_size_set_is_accepted(self) -> None:
        landmarks = make_landmarks(count=MIN_LANDMARK_COUNT)

        assert PoseResolver().resolve(landmarks, 1.0) is not None

    @pytest.mark.parametrize("aspect", [0.0, -1.0, None])
    def test_uncalibrated_aspect_raises(self, aspect) -> None:
        with pytest.raises(ValueError, match="not calibrated"):
            PoseResolver().resolve(make_landmarks(), aspect)


class TestPose:
    def test_anchors_include_nose_bridge(self) -> None:
        left, right, nose = anchors(make_landmarks((0.3, 0.4, 0), (0.7, 0.4, 0)))

        assert (left.x, right.x) == (0.3, 0.7)
        assert nose.y == pytest.approx(0.45)

    def test_apply_sets_position_uniform_scale_and_z_rotation(self) -> None:
        node = SceneNode.group("glasses")
        node.rotation[0] = 0.25

        Pose(position=(0.1, -0.2, 0.3), scale=0.5, rotation_z=0.7).apply_to(node)

        assert list(node.position) == pytest.approx([0.1, -0.2, 0.3])
        assert list(node.scale) == pytest.approx([0.5, 0.5, 0.5])
        assert list(node.rotation) == pytest.approx([0.25, 0.0, 0.7])
