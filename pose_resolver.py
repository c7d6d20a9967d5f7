import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from face_landmarks import LEFT_EYE_OUTER, NOSE_BRIDGE, RIGHT_EYE_OUTER, Landmark
from tryon_config import PoseCalibration

# Sets shorter than the full face oval (index 454) are treated as truncated
MIN_LANDMARK_COUNT = 455


@dataclass(frozen=True)
class Pose:
    position: Tuple[float, float, float]
    scale: float
    rotation_z: float

    def apply_to(self, node):
        node.position[:] = self.position
        node.scale[:] = (self.scale, self.scale, self.scale)
        node.rotation[2] = self.rotation_z


def anchors(landmarks: Sequence[Landmark]):
    """Return ``(left_eye_outer, right_eye_outer, nose_bridge)``."""
    return landmarks[LEFT_EYE_OUTER], landmarks[RIGHT_EYE_OUTER], landmarks[NOSE_BRIDGE]


class PoseResolver:
    """Maps one landmark set to the glasses pose in render space.

    Render space is the orthographic camera's: Y spans [-1, 1] over the video
    height and X spans [-aspect, aspect] over its width.
    """

    def __init__(self, calibration: Optional[PoseCalibration] = None):
        self.calibration = calibration or PoseCalibration()

    def resolve(self, landmarks: Optional[Sequence[Landmark]], aspect: float) -> Optional[Pose]:
        if aspect is None or aspect <= 0:
            raise ValueError(f"projection not calibrated (aspect={aspect!r})")
        if not landmarks or len(landmarks) < MIN_LANDMARK_COUNT:
            return None

        left, right, _nose = anchors(landmarks)
        c = self.calibration

        # Midpoint between the eyes, not the nose bridge
        cx = (left.x + right.x) / 2
        cy = (left.y + right.y) / 2
        cz = (left.z + right.z) / 2

        # Image Y grows downward, render Y grows upward
        position = (
            (cx - 0.5) * 2 * aspect + c.horizontal_offset,
            (0.5 - cy) * 2 + c.vertical_offset,
            -cz + c.depth_offset,
        )

        eye_distance = abs(right.x - left.x)
        scale = eye_distance * aspect * c.scale_multiplier

        # In-plane tilt only
        rotation_z = math.atan2(right.y - left.y, right.x - left.x)

        return Pose(position=position, scale=scale, rotation_z=rotation_z)
