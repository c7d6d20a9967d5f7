"""Tests for the tagged scene graph and the orthographic camera."""

from __future__ import annotations

import math

import numpy as np
import pytest
from trimesh.transformations import euler_matrix, transform_points

from scene_graph import NodeKind, OrthographicCamera, SceneNode

TRIANGLE = ([[0, 0, 0], [1, 0, 0], [0, 1, 0]], [[0, 1, 2]])


def _triangle(name="tri") -> SceneNode:
    return SceneNode.mesh(*TRIANGLE, name=name)


class TestSceneNode:
    def test_mesh_and_group_are_tagged(self) -> None:
        assert _triangle().kind is NodeKind.MESH
        assert SceneNode.group().kind is NodeKind.GROUP

    def test_mesh_nodes_reject_children(self) -> None:
        with pytest.raises(TypeError):
            _triangle().add(_triangle())

    def test_replace_swaps_in_the_same_slot(self) -> None:
        a, b, c = SceneNode.group("a"), SceneNode.group("b"), SceneNode.group("c")
        root = SceneNode.group("root", [a, b])

        root.replace(a, c)

        assert root.children == [c, b]
        assert all(child is not a for child in root.children)

    def test_replace_unknown_child_raises(self) -> None:
        root = SceneNode.group("root")

        with pytest.raises(ValueError):
            root.replace(SceneNode.group("x"), SceneNode.group("y"))

    def test_walk_meshes_composes_parent_transforms(self) -> None:
        tri = _triangle()
        tri.position[:] = (1.0, 0.0, 0.0)
        root = SceneNode.group("root", [tri])
        root.scale[:] = (2.0, 2.0, 2.0)

        [(node, world)] = list(root.walk_meshes())
        pts = transform_points(node.vertices, world)

        assert node is tri
        np.testing.assert_allclose(pts[0], [2.0, 0.0, 0.0])
        np.testing.assert_allclose(pts[1], [4.0, 0.0, 0.0])

    def test_hidden_subtrees_are_skipped(self) -> None:
        hidden = SceneNode.group("hidden", [_triangle()])
        hidden.visible = False

        assert list(SceneNode.group("root", [hidden]).walk_meshes()) == []

    def test_bounds_cover_all_meshes(self) -> None:
        far = _triangle("far")
        far.position[:] = (0.0, 0.0, -3.0)
        lo, hi = SceneNode.group("root", [_triangle(), far]).bounds()

        np.testing.assert_allclose(lo, [0.0, 0.0, -3.0])
        np.testing.assert_allclose(hi, [1.0, 1.0, 0.0])

    def test_bounds_of_empty_group_is_none(self) -> None:
        assert SceneNode.group().bounds() is None

    def test_describe_lists_children(self) -> None:
        info = SceneNode.group("root", [_triangle()]).describe()

        assert info["kind"] == "group"
        assert info["children"][0]["faces"] == 1


class TestTransforms:
    def test_z_rotation_turns_x_into_y(self) -> None:
        node = SceneNode.group()
        node.rotation[2] = math.pi / 2

        np.testing.assert_allclose(transform_points([[1, 0, 0]], node.local_matrix())[0], [0, 1, 0], atol=1e-12)

    def test_euler_angles_compose_x_after_z(self) -> None:
        node = SceneNode.group()
        node.rotation[:] = (math.pi / 2, 0.0, math.pi / 2)

        np.testing.assert_allclose(node.local_matrix(), euler_matrix(math.pi / 2, 0.0, math.pi / 2, "rxyz"))
        np.testing.assert_allclose(transform_points([[1, 0, 0]], node.local_matrix())[0], [0, 0, 1], atol=1e-12)

    def test_local_matrix_is_translate_rotate_scale(self) -> None:
        node = SceneNode.group()
        node.position[:] = (1.0, 2.0, 3.0)
        node.scale[:] = (2.0, 2.0, 2.0)

        np.testing.assert_allclose(transform_points([[1, 0, 0]], node.local_matrix())[0], [3.0, 2.0, 3.0])


class TestOrthographicCamera:
    def test_default_bounds(self) -> None:
        cam = OrthographicCamera()

        assert (cam.left, cam.right, cam.top, cam.bottom) == (-1.0, 1.0, 1.0, -1.0)

    def test_aspect_sets_horizontal_half_extent(self) -> None:
        cam = OrthographicCamera.for_aspect(16 / 9)

        assert cam.right == pytest.approx(16 / 9)
        assert cam.left == pytest.approx(-16 / 9)
        assert (cam.top, cam.bottom) == (1.0, -1.0)

    def test_project_maps_bounds_to_ndc(self) -> None:
        cam = OrthographicCamera.for_aspect(2.0)
        x, y, depth = cam.project([[2.0, -1.0, 0.0], [0.0, 0.0, 0.5]])

        np.testing.assert_allclose(x, [1.0, 0.0])
        np.testing.assert_allclose(y, [-1.0, 0.0])
        np.testing.assert_allclose(depth, [1.0, 0.5])
