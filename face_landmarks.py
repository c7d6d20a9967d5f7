"""MediaPipe face landmarker wrapper.

The landmarker is created asynchronously (model load happens off the event
loop) and starts in IMAGE mode; callers switch it to VIDEO mode once before
streaming frames through ``detect_for_video``.
"""
import asyncio
import enum
import logging
import os
from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

import cv2
import mediapipe as mp
import numpy as np

logger = logging.getLogger(__name__)

# MediaPipe face mesh topology
LEFT_EYE_OUTER = 33
RIGHT_EYE_OUTER = 263
NOSE_BRIDGE = 168


class Landmark(NamedTuple):
    x: float
    y: float
    z: float = 0.0


LandmarkSet = Tuple[Landmark, ...]


def to_landmark_set(points) -> LandmarkSet:
    return tuple(
        Landmark(float(p.x), float(p.y), float(getattr(p, "z", 0.0) or 0.0))
        for p in points
    )


@dataclass(frozen=True)
class DetectionResult:
    faces: Tuple[LandmarkSet, ...]
    timestamp_ms: int = 0

    def first_face(self) -> Optional[LandmarkSet]:
        return self.faces[0] if self.faces else None


class RunningMode(str, enum.Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"


class Delegate(str, enum.Enum):
    CPU = "CPU"
    GPU = "GPU"


@dataclass(frozen=True)
class ProviderConfig:
    model_path: str
    delegate: Delegate = Delegate.GPU
    running_mode: RunningMode = RunningMode.IMAGE
    max_faces: int = 1
    output_blendshapes: bool = True


class ProviderUnavailable(RuntimeError):
    pass


class FaceLandmarkProvider:

    def __init__(self, config: ProviderConfig):
        self.config = config
        self._landmarker = None
        self._running_mode = RunningMode(config.running_mode)
        self._last_ts_ms = -1

    @classmethod
    def create_from_options(cls, config: ProviderConfig) -> "FaceLandmarkProvider":
        return cls(config)

    @property
    def ready(self) -> bool:
        return self._landmarker is not None

    @property
    def running_mode(self) -> RunningMode:
        return self._running_mode

    async def warm_up(self):
        if self._landmarker is not None:
            return
        self._landmarker = await asyncio.to_thread(self._create, self._running_mode)
        logger.info("Face landmarker loaded (%s mode, %s delegate)",
                    self._running_mode.value, self.config.delegate.value)

    async def set_running_mode(self, mode: RunningMode):
        mode = RunningMode(mode)
        if mode is self._running_mode:
            return
        if self._landmarker is None:
            # Picked up by warm_up()
            self._running_mode = mode
            return
        landmarker = await asyncio.to_thread(self._create, mode)
        old, self._landmarker = self._landmarker, landmarker
        self._running_mode = mode
        self._last_ts_ms = -1
        old.close()
        logger.info("Face landmarker switched to %s mode", mode.value)

    def detect(self, image: np.ndarray) -> Optional[DetectionResult]:
        if not self._usable(RunningMode.IMAGE):
            return None
        result = self._landmarker.detect(self._to_mp_image(image))
        return self._convert(result, 0)

    def detect_for_video(self, frame: np.ndarray, timestamp_ms) -> Optional[DetectionResult]:
        if not self._usable(RunningMode.VIDEO):
            return None
        # VIDEO mode rejects timestamps that do not increase
        ts = int(timestamp_ms)
        if ts <= self._last_ts_ms:
            ts = self._last_ts_ms + 1
        self._last_ts_ms = ts
        result = self._landmarker.detect_for_video(self._to_mp_image(frame), ts)
        return self._convert(result, ts)

    def close(self):
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None

    def _usable(self, mode):
        if self._landmarker is None:
            logger.warning("Wait! face landmarker not loaded yet, detection skipped")
            return False
        if self._running_mode is not mode:
            logger.warning("Face landmarker is in %s mode, %s detection skipped",
                           self._running_mode.value, mode.value)
            return False
        return True

    def _create(self, mode):
        path = self.config.model_path
        if not os.path.exists(path):
            raise ProviderUnavailable(f"Face landmarker task model not found: {path}")
        try:
            return self._build(mode, self.config.delegate)
        except (RuntimeError, ValueError) as e:
            if self.config.delegate is not Delegate.GPU:
                raise ProviderUnavailable(str(e)) from e
            logger.warning("GPU delegate unavailable (%s), falling back to CPU", e)
        try:
            return self._build(mode, Delegate.CPU)
        except (RuntimeError, ValueError) as e:
            raise ProviderUnavailable(str(e)) from e

    def _build(self, mode, delegate):
        base_options = mp.tasks.BaseOptions(
            model_asset_path=self.config.model_path,
            delegate=getattr(mp.tasks.BaseOptions.Delegate, delegate.value),
        )
        options = mp.tasks.vision.FaceLandmarkerOptions(
            base_options=base_options,
            running_mode=getattr(mp.tasks.vision.RunningMode, mode.value),
            num_faces=self.config.max_faces,
            output_face_blendshapes=self.config.output_blendshapes,
        )
        return mp.tasks.vision.FaceLandmarker.create_from_options(options)

    @staticmethod
    def _to_mp_image(frame_bgr):
        rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        return mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)

    @staticmethod
    def _convert(result, ts):
        faces = getattr(result, "face_landmarks", None) or []
        return DetectionResult(faces=tuple(to_landmark_set(f) for f in faces), timestamp_ms=ts)
