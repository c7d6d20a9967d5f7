import enum
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import numpy as np
from trimesh.transformations import euler_matrix, transform_points, translation_matrix


class NodeKind(enum.Enum):
    GROUP = "group"
    MESH = "mesh"


def _zeros():
    return np.zeros(3, np.float64)


def _ones():
    return np.ones(3, np.float64)


@dataclass(eq=False)
class SceneNode:
    """Scene graph node; ``kind`` decides whether it carries geometry or children."""

    kind: NodeKind
    name: str = ""
    position: np.ndarray = field(default_factory=_zeros)
    rotation: np.ndarray = field(default_factory=_zeros)  # Euler XYZ, radians
    scale: np.ndarray = field(default_factory=_ones)
    children: List["SceneNode"] = field(default_factory=list)
    vertices: Optional[np.ndarray] = None
    faces: Optional[np.ndarray] = None
    color: Tuple[int, int, int] = (255, 255, 255)  # BGR
    unlit: bool = False
    visible: bool = True

    @classmethod
    def group(cls, name="", children=()):
        return cls(NodeKind.GROUP, name=name, children=list(children))

    @classmethod
    def mesh(cls, vertices, faces, color=(255, 255, 255), unlit=False, name=""):
        return cls(
            NodeKind.MESH,
            name=name,
            vertices=np.asarray(vertices, np.float64).reshape(-1, 3),
            faces=np.asarray(faces, np.int64).reshape(-1, 3),
            color=tuple(int(c) for c in color),
            unlit=unlit,
        )

    def add(self, child):
        if self.kind is not NodeKind.GROUP:
            raise TypeError(f"cannot add children to a {self.kind.value} node")
        self.children.append(child)
        return child

    def replace(self, old, new):
        """Swap ``old`` for ``new`` in place, so no reader sees neither or both."""
        for i, c in enumerate(self.children):
            if c is old:
                self.children[i] = new
                return
        raise ValueError(f"{old.name or old.kind.value!r} is not attached to {self.name!r}")

    def local_matrix(self):
        S = np.diag([*self.scale, 1.0])
        # Rotating axes X then Y then Z: R = Rx @ Ry @ Rz
        R = euler_matrix(*self.rotation, axes="rxyz")
        return translation_matrix(self.position) @ R @ S

    def walk_meshes(self, parent=None) -> Iterator[Tuple["SceneNode", np.ndarray]]:
        """Yield ``(mesh_node, world_matrix)`` for every visible mesh below this node."""
        if not self.visible:
            return
        world = self.local_matrix() if parent is None else parent @ self.local_matrix()
        if self.kind is NodeKind.MESH:
            yield self, world
        elif self.kind is NodeKind.GROUP:
            for child in self.children:
                yield from child.walk_meshes(world)

    def bounds(self):
        """World-space axis-aligned bounds ``(min, max)`` of the meshes, or None."""
        lo, hi = None, None
        for node, world in self.walk_meshes():
            if node.vertices is None or not len(node.vertices):
                continue
            pts = transform_points(node.vertices, world)
            mn, mx = pts.min(axis=0), pts.max(axis=0)
            lo = mn if lo is None else np.minimum(lo, mn)
            hi = mx if hi is None else np.maximum(hi, mx)
        if lo is None:
            return None
        return lo, hi

    def describe(self):
        info = {
            "kind": self.kind.value,
            "name": self.name,
            "position": [round(float(v), 4) for v in self.position],
            "rotation": [round(float(v), 4) for v in self.rotation],
            "scale": [round(float(v), 4) for v in self.scale],
        }
        if self.kind is NodeKind.MESH:
            info["vertices"] = int(len(self.vertices))
            info["faces"] = int(len(self.faces))
        else:
            info["children"] = [c.describe() for c in self.children]
        return info


@dataclass
class OrthographicCamera:
    """Orthographic camera at ``(0, 0, z)`` looking down -Z at the origin."""

    left: float = -1.0
    right: float = 1.0
    top: float = 1.0
    bottom: float = -1.0
    near: float = 0.1
    far: float = 100.0
    z: float = 1.0

    @classmethod
    def for_aspect(cls, aspect):
        return cls(left=-aspect, right=aspect, top=1.0, bottom=-1.0)

    def project(self, points_world):
        """Return NDC x/y and view depth (distance in front of the camera)."""
        p = np.asarray(points_world, np.float64)
        depth = self.z - p[:, 2]
        ndc_x = (2.0 * p[:, 0] - (self.right + self.left)) / (self.right - self.left)
        ndc_y = (2.0 * p[:, 1] - (self.top + self.bottom)) / (self.top - self.bottom)
        return ndc_x, ndc_y, depth
