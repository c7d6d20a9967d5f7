import asyncio
import enum
import logging
import os
import sys
from dataclasses import dataclass
from typing import Callable, List, NamedTuple, Optional

import cv2

from camera_async import AsyncVideoCapture, open_device

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    ACTIVE = "active"
    STOPPED = "stopped"


_TRANSITIONS = {
    SessionState.IDLE: {SessionState.ACQUIRING},
    SessionState.ACQUIRING: {SessionState.ACTIVE, SessionState.IDLE, SessionState.STOPPED},
    SessionState.ACTIVE: {SessionState.STOPPED},
    SessionState.STOPPED: {SessionState.ACQUIRING},
}


class InvalidSessionTransition(RuntimeError):
    pass


class CaptureError(Exception):
    """Camera acquisition failed; the session is left ready for another start."""


class DeviceNotFound(CaptureError):
    pass


class PermissionDenied(CaptureError):
    pass


class ConstraintsUnsatisfiable(CaptureError):
    pass


class CaptureCancelled(CaptureError):
    pass


class FrameSize(NamedTuple):
    width: int
    height: int

    @property
    def aspect(self):
        return self.width / self.height


@dataclass(frozen=True)
class CaptureConstraints:
    device_index: int = 0
    width: Optional[int] = 1280
    height: Optional[int] = 720
    fps: Optional[int] = None
    exact: bool = False
    mirror: bool = True
    first_frame_timeout: float = 5.0


def acquire_device(constraints: CaptureConstraints) -> AsyncVideoCapture:
    """Open the camera described by ``constraints``; blocking."""
    index = constraints.device_index
    if sys.platform.startswith("linux"):
        node = f"/dev/video{index}"
        if os.path.exists(node) and not os.access(node, os.R_OK | os.W_OK):
            raise PermissionDenied(f"no access to {node}")

    cap = open_device(index, constraints.width, constraints.height, constraints.fps)
    if not cap.isOpened():
        cap.release()
        raise DeviceNotFound(f"camera {index} is not available")

    if constraints.exact and constraints.width and constraints.height:
        got = (int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)), int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)))
        if got != (constraints.width, constraints.height):
            cap.release()
            raise ConstraintsUnsatisfiable(
                f"camera {index} offers {got[0]}x{got[1]}, "
                f"{constraints.width}x{constraints.height} required")

    return AsyncVideoCapture(cap, mirror=constraints.mirror)


class CaptureSession:
    """Lifecycle of the camera: IDLE -> ACQUIRING -> ACTIVE -> STOPPED.

    ``session_id`` changes on every start and stop, so work started under one
    session can tell it has been superseded.
    """

    def __init__(self, device_factory: Callable[[CaptureConstraints], AsyncVideoCapture] = acquire_device):
        self._device_factory = device_factory
        self._state = SessionState.IDLE
        self._capture = None
        self._session_id = 0
        self._first_frame_callbacks: List[Callable] = []
        self.frame_size: Optional[FrameSize] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_id(self) -> int:
        return self._session_id

    @property
    def is_active(self):
        return self._state is SessionState.ACTIVE

    def on_first_frame(self, callback):
        """Register ``callback(frame_size, session_id)``; runs once per successful start."""
        self._first_frame_callbacks.append(callback)

    def _transition(self, new):
        if new not in _TRANSITIONS[self._state]:
            raise InvalidSessionTransition(f"{self._state.name} -> {new.name}")
        logger.debug("Camera session %s -> %s", self._state.name, new.name)
        self._state = new

    async def start(self, constraints: Optional[CaptureConstraints] = None) -> AsyncVideoCapture:
        constraints = constraints or CaptureConstraints()
        self._transition(SessionState.ACQUIRING)
        self._session_id += 1
        sid = self._session_id
        self.frame_size = None

        try:
            capture = await asyncio.to_thread(self._device_factory, constraints)
        except Exception:
            # Any acquisition failure, typed or not, leaves the session retryable
            if sid == self._session_id:
                self._transition(SessionState.IDLE)
            raise

        if sid != self._session_id:
            await asyncio.to_thread(capture.release)
            raise CaptureCancelled("camera stopped while starting")
        self._capture = capture

        try:
            size = await asyncio.to_thread(capture.wait_first_frame, constraints.first_frame_timeout)
        except Exception:
            if sid == self._session_id:
                self._release()
                self._transition(SessionState.IDLE)
            raise
        if sid != self._session_id:
            # stop() already released the device
            raise CaptureCancelled("camera stopped while starting")
        if size is None:
            self._release()
            self._transition(SessionState.IDLE)
            raise ConstraintsUnsatisfiable(
                f"no frame from camera {constraints.device_index} "
                f"within {constraints.first_frame_timeout:.1f}s")

        self.frame_size = FrameSize(*size)
        try:
            for callback in list(self._first_frame_callbacks):
                callback(self.frame_size, sid)
        except Exception:
            self._release()
            self._transition(SessionState.IDLE)
            raise

        self._transition(SessionState.ACTIVE)
        logger.info("Camera session %d active: %dx%d", sid, *self.frame_size)
        return capture

    def stop(self):
        if self._state in (SessionState.IDLE, SessionState.STOPPED):
            return
        self._session_id += 1
        self._transition(SessionState.STOPPED)
        self.frame_size = None
        self._release()
        logger.info("Camera session stopped")

    def _release(self):
        capture, self._capture = self._capture, None
        if capture is not None:
            capture.release()

    def current_frame(self):
        """``(frame, timestamp)`` of the newest frame, or ``(None, -1.0)`` when not active."""
        if self._state is not SessionState.ACTIVE or self._capture is None:
            return None, -1.0
        return self._capture.latest()

    def read_fps(self):
        if self._capture is None:
            return 0.0
        return self._capture.get_read_fps()
