import asyncio
import io
import logging
import math
import os
from typing import Callable, Optional

import trimesh

from scene_graph import SceneNode

logger = logging.getLogger(__name__)

PLACEHOLDER_COLOR = (255, 0, 0)  # BGR
DEFAULT_MESH_COLOR = (200, 200, 200)
CHUNK_SIZE = 256 * 1024


class AssetLoadError(RuntimeError):
    pass


def build_placeholder():
    """Synthetic glasses shown until the real model is ready."""
    bridge = trimesh.creation.cylinder(radius=0.01, height=0.24, sections=8)
    lens = trimesh.creation.torus(major_radius=0.08, minor_radius=0.01,
                                  major_sections=32, minor_sections=16)

    group = SceneNode.group("placeholder")
    bridge_node = SceneNode.mesh(bridge.vertices, bridge.faces, PLACEHOLDER_COLOR,
                                 unlit=True, name="bridge")
    # trimesh cylinders run along Z, the bridge runs along X
    bridge_node.rotation[1] = math.pi / 2
    group.add(bridge_node)
    for name, x in (("left_lens", -0.2), ("right_lens", 0.2)):
        lens_node = SceneNode.mesh(lens.vertices, lens.faces, PLACEHOLDER_COLOR,
                                   unlit=True, name=name)
        lens_node.position[0] = x
        group.add(lens_node)
    return group


def _main_color(mesh):
    visual = mesh.visual
    try:
        if visual.kind == "texture":
            visual = visual.to_color()
        rgba = visual.main_color
    except (AttributeError, ValueError):
        return DEFAULT_MESH_COLOR
    r, g, b = (int(v) for v in rgba[:3])
    return (b, g, r)


def scene_to_node(scene, name="model"):
    group = SceneNode.group(name)
    for node_name in scene.graph.nodes_geometry:
        transform, geom_name = scene.graph[node_name]
        geom = scene.geometry.get(geom_name)
        if not isinstance(geom, trimesh.Trimesh) or not len(geom.faces):
            continue
        vertices = trimesh.transformations.transform_points(geom.vertices, transform)
        group.add(SceneNode.mesh(vertices, geom.faces, _main_color(geom), name=str(node_name)))
    if not group.children:
        raise AssetLoadError("model contains no renderable meshes")
    return group


class AssetLoader:
    """Reads a model file in chunks (reporting progress) and parses it with trimesh."""

    def __init__(self, chunk_size=CHUNK_SIZE):
        self.chunk_size = chunk_size

    async def load(self, path, on_progress: Optional[Callable[[float], None]] = None) -> SceneNode:
        return await asyncio.to_thread(self._load_sync, path, on_progress)

    def _load_sync(self, path, on_progress):
        try:
            total = os.path.getsize(path)
            data = bytearray()
            with open(path, "rb") as f:
                while True:
                    chunk = f.read(self.chunk_size)
                    if not chunk:
                        break
                    data += chunk
                    if on_progress is not None:
                        on_progress(len(data) / total if total else 1.0)
        except OSError as e:
            raise AssetLoadError(f"cannot read {path}: {e}") from e

        file_type = os.path.splitext(path)[1].lstrip(".").lower()
        resolver = trimesh.resolvers.FilePathResolver(os.path.dirname(os.path.abspath(path)))
        try:
            loaded = trimesh.load(io.BytesIO(bytes(data)), file_type=file_type,
                                  force="scene", resolver=resolver)
        except Exception as e:
            raise AssetLoadError(f"cannot parse {path}: {e}") from e
        return scene_to_node(loaded, name=os.path.basename(path))


class AssetStage:
    """Owns the glasses model attached to the scene.

    The placeholder is attached at construction. ``load_final`` swaps it for
    the loaded model at most once; a failed load keeps the placeholder for
    good.
    """

    def __init__(self, scene: SceneNode, loader: Optional[AssetLoader] = None):
        self.scene = scene
        self.loader = loader or AssetLoader()
        self.placeholder = build_placeholder()
        self.scene.add(self.placeholder)
        self._active = self.placeholder
        self._load_task = None
        self.load_error = None

    def active_model(self) -> SceneNode:
        return self._active

    @property
    def is_final(self):
        return self._active is not self.placeholder

    async def load_final(self, path) -> bool:
        # Later calls share the first load, whatever path they pass
        if self._load_task is None:
            self._load_task = asyncio.get_running_loop().create_task(self._load(path))
        return await asyncio.shield(self._load_task)

    async def _load(self, path):
        try:
            loaded = await self.loader.load(path, on_progress=self._on_progress)
        except AssetLoadError as e:
            self.load_error = e
            logger.error("Error loading glasses model: %s", e)
            return False

        bounds = loaded.bounds()
        if bounds is not None:
            loaded.position -= (bounds[0] + bounds[1]) / 2.0
        model = SceneNode.group("glasses", [loaded])

        self.scene.replace(self.placeholder, model)
        self._active = model
        logger.info("Glasses model loaded: %s", path)
        return True

    @staticmethod
    def _on_progress(fraction):
        logger.debug("Loading: %.0f%%", fraction * 100)
