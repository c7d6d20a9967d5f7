import logging
import time

import cv2
import numpy as np
from trimesh.transformations import transform_points

from capture_session import FrameSize
from scene_graph import OrthographicCamera, SceneNode

logger = logging.getLogger(__name__)

# One ambient light plus directional lights at +Z and -Z
AMBIENT = 0.55
DIRECTIONAL = 0.45
SUBPIXEL_SHIFT = 4


class OverlaySurface:
    """Transparent BGRA drawing surface composited above the 3D layer."""

    def __init__(self, width, height):
        self.pixels = np.zeros((height, width, 4), np.uint8)

    @property
    def size(self):
        h, w = self.pixels.shape[:2]
        return w, h

    def resize(self, width, height):
        self.pixels = np.zeros((height, width, 4), np.uint8)

    def clear(self):
        self.pixels[...] = 0

    def text(self, text, org, color=(0, 255, 0), scale=1.0, thickness=2):
        cv2.putText(self.pixels, text, org, cv2.FONT_HERSHEY_SIMPLEX, scale,
                    (*color, 255), thickness, cv2.LINE_AA)


def blend(frame, layer):
    alpha = layer[..., 3:4].astype(np.float32) / 255.0
    fg = layer[..., :3].astype(np.float32)
    return (frame * (1 - alpha) + fg * alpha).astype(np.uint8)


def rasterize(root: SceneNode, camera: OrthographicCamera, target):
    """Draw every visible mesh under ``root`` into the BGRA ``target``.

    Triangles are depth-sorted back to front and filled flat; returns the
    number of triangles drawn.
    """
    h, w = target.shape[:2]
    polys, depths, colors = [], [], []

    for node, world in root.walk_meshes():
        if node.vertices is None or node.faces is None or not len(node.faces):
            continue
        pts = transform_points(node.vertices, world)
        ndc_x, ndc_y, depth = camera.project(pts)
        px = np.stack([(ndc_x + 1.0) * 0.5 * w, (1.0 - ndc_y) * 0.5 * h], axis=1)

        tri = node.faces
        tri_depth = depth[tri]
        keep = np.all((tri_depth >= camera.near) & (tri_depth <= camera.far), axis=1)
        tri_px = px[tri]
        lo, hi = tri_px.min(axis=1), tri_px.max(axis=1)
        keep &= (hi[:, 0] >= 0) & (lo[:, 0] < w) & (hi[:, 1] >= 0) & (lo[:, 1] < h)
        if not keep.any():
            continue
        tri = tri[keep]

        base = np.array(node.color, np.float64)
        if node.unlit:
            col = np.tile(base, (len(tri), 1))
        else:
            v0, v1, v2 = pts[tri[:, 0]], pts[tri[:, 1]], pts[tri[:, 2]]
            n = np.cross(v1 - v0, v2 - v0)
            nz = np.abs(n[:, 2]) / (np.linalg.norm(n, axis=1) + 1e-12)
            col = base[None, :] * (AMBIENT + DIRECTIONAL * nz)[:, None]

        polys.append(tri_px[keep])
        depths.append(tri_depth[keep].mean(axis=1))
        colors.append(np.clip(col, 0, 255))

    if not polys:
        return 0

    polys = np.round(np.concatenate(polys) * (1 << SUBPIXEL_SHIFT)).astype(np.int32)
    depths = np.concatenate(depths)
    colors = np.rint(np.concatenate(colors)).astype(np.int32)

    # Painter's algorithm: farthest first
    for i in np.argsort(-depths, kind="stable"):
        b, g, r = colors[i]
        cv2.fillConvexPoly(target, polys[i], (int(b), int(g), int(r), 255),
                           cv2.LINE_AA, SUBPIXEL_SHIFT)
    return len(depths)


class Compositor:
    """Renders the scene over the video frame through an orthographic camera.

    Until calibration the camera spans [-1, 1] on both axes; afterwards its
    horizontal half-extent equals the video aspect ratio, so one vertical
    unit always covers half of the video height.
    """

    def __init__(self, scene: SceneNode, width=1280, height=720, jpeg_quality=80):
        self.scene = scene
        self.camera = OrthographicCamera()
        self.width, self.height = width, height
        self.jpeg_quality = jpeg_quality
        self.overlay = OverlaySurface(width, height)
        self._layer = np.zeros((height, width, 4), np.uint8)
        self.frame_size = None
        self._calibrated_session = None

        self.last_jpeg = None
        self.last_ts = 0.0
        self.render_count = 0
        self.triangles = 0

    @property
    def is_calibrated(self):
        return self.frame_size is not None

    @property
    def aspect(self):
        return self.frame_size.aspect if self.frame_size is not None else None

    def calibrate(self, size, session_id=None):
        """Fit the camera to the first frame of a session; later calls in the same session are ignored."""
        if self.is_calibrated and session_id == self._calibrated_session:
            logger.debug("Projection already calibrated for session %s", session_id)
            return False
        size = FrameSize(int(size[0]), int(size[1]))
        if size.width <= 0 or size.height <= 0:
            raise ValueError(f"invalid frame size {size}")

        self.frame_size = size
        self.width, self.height = size
        self.camera = OrthographicCamera.for_aspect(size.aspect)
        self.overlay.resize(size.width, size.height)
        self._layer = np.zeros((size.height, size.width, 4), np.uint8)
        self._calibrated_session = session_id
        logger.info("Camera initialized. Aspect: %.3f (%dx%d)", size.aspect, *size)
        return True

    def clear_overlay(self):
        self.overlay.clear()

    def render(self, frame=None):
        h, w = self.height, self.width
        if frame is None:
            base = np.zeros((h, w, 3), np.uint8)
        elif frame.shape[:2] != (h, w):
            # Resolution changed mid-session: stretched, not recalibrated
            base = cv2.resize(frame, (w, h))
        else:
            base = frame

        self._layer[...] = 0
        self.triangles = rasterize(self.scene, self.camera, self._layer)
        out = blend(blend(base, self._layer), self.overlay.pixels)

        self.render_count += 1
        ok, buf = cv2.imencode(".jpg", out, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if ok:
            self.last_jpeg, self.last_ts = buf.tobytes(), time.time()
