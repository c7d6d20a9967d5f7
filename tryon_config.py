import os
from dataclasses import dataclass, field
from typing import Optional

HERE = os.path.dirname(os.path.abspath(__file__))


def env_bool(name, default="0"):
    return os.environ.get(name, default).strip().lower() in ("1","true","yes","on","y")


def env_optional_int(name):
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else None


@dataclass(frozen=True)
class PoseCalibration:
    """Fixed calibration constants used when mapping landmarks to a pose."""

    scale_multiplier: float = 2.2
    vertical_offset: float = -0.05
    horizontal_offset: float = 0.0
    depth_offset: float = 0.3


@dataclass(frozen=True)
class TryOnConfig:
    cam_index: int = 0
    cap_width: int = 1280
    cap_height: int = 720
    cap_fps: Optional[int] = None
    cap_exact: bool = False
    mirror: bool = True
    first_frame_timeout: float = 5.0

    landmarker_task: str = os.path.join(HERE, "models", "face_landmarker.task")
    landmarker_delegate: str = "GPU"
    max_faces: int = 1

    glasses_model: str = os.path.join(HERE, "Glass", "scene.gltf")

    display_hz: float = 60.0
    jpeg_quality: int = 80
    show_hud: bool = True

    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"

    pose: PoseCalibration = field(default_factory=PoseCalibration)


def load_pose_calibration():
    return PoseCalibration(
        scale_multiplier=float(os.environ.get("SCALE_MULTIPLIER", "2.2")),
        vertical_offset=float(os.environ.get("VERTICAL_OFFSET", "-0.05")),
        horizontal_offset=float(os.environ.get("HORIZONTAL_OFFSET", "0.0")),
        depth_offset=float(os.environ.get("DEPTH_OFFSET", "0.3")),
    )


def load_config():
    """Read every setting from the environment, falling back to defaults."""
    defaults = TryOnConfig()
    return TryOnConfig(
        cam_index=int(os.environ.get("CAM_INDEX", str(defaults.cam_index))),
        cap_width=int(os.environ.get("CAP_W", str(defaults.cap_width))),
        cap_height=int(os.environ.get("CAP_H", str(defaults.cap_height))),
        cap_fps=env_optional_int("CAP_FPS"),
        cap_exact=env_bool("CAP_EXACT", "0"),
        mirror=env_bool("H_MIRROR", "1"),
        first_frame_timeout=float(os.environ.get("FIRST_FRAME_TIMEOUT", "5.0")),
        landmarker_task=os.environ.get("FACE_LANDMARKER_TASK", defaults.landmarker_task),
        landmarker_delegate=os.environ.get("LANDMARKER_DELEGATE", "GPU").strip().upper(),
        max_faces=int(os.environ.get("MAX_FACES", "1")),
        glasses_model=os.environ.get("GLASSES_MODEL", defaults.glasses_model),
        display_hz=float(os.environ.get("DISPLAY_HZ", "60")),
        jpeg_quality=int(os.environ.get("JPEG_QUALITY", "80")),
        show_hud=env_bool("SHOW_HUD", "1"),
        host=os.environ.get("HOST", defaults.host),
        port=int(os.environ.get("PORT", str(defaults.port))),
        log_level=os.environ.get("LOG_LEVEL", "INFO").strip().upper(),
        pose=load_pose_calibration(),
    )
