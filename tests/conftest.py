"""Shared fakes for the try-on pipeline tests."""

from __future__ import annotations

import threading
from typing import Optional

import numpy as np
import pytest

from capture_session import CaptureSession
from face_landmarks import (
    LEFT_EYE_OUTER,
    NOSE_BRIDGE,
    RIGHT_EYE_OUTER,
    DetectionResult,
    Landmark,
    RunningMode,
)


def make_landmarks(left=(0.3, 0.5, 0.0), right=(0.7, 0.5, 0.0), count=478):
    """A full-size landmark set with only the eye corners and nose bridge placed."""
    points = [Landmark(0.5, 0.5, 0.0)] * count
    if count > LEFT_EYE_OUTER:
        points[LEFT_EYE_OUTER] = Landmark(*left)
    if count > RIGHT_EYE_OUTER:
        points[RIGHT_EYE_OUTER] = Landmark(*right)
    if count > NOSE_BRIDGE:
        points[NOSE_BRIDGE] = Landmark(0.5, 0.45, -0.02)
    return tuple(points)


def face_result(*faces) -> DetectionResult:
    return DetectionResult(faces=tuple(faces), timestamp_ms=0)


class FakeCapture:
    """Stands in for AsyncVideoCapture: the test decides the frame and its timestamp."""

    def __init__(self, width=64, height=36, first_frame=True, gate=None, error=None):
        self.width, self.height = width, height
        self.gate: Optional[threading.Event] = gate
        self.error: Optional[Exception] = error
        self.waiting = threading.Event()
        self.frame = np.full((height, width, 3), 40, np.uint8)
        self.timestamp = 0.0
        self.first_frame = first_frame
        self.released = False

    def latest(self):
        return self.frame, self.timestamp

    def wait_first_frame(self, timeout=None):
        self.waiting.set()
        if self.gate is not None:
            self.gate.wait(5.0)
        if self.error is not None:
            raise self.error
        return (self.width, self.height) if self.first_frame else None

    def get_read_fps(self):
        return 30.0

    def release(self):
        self.released = True


class FakeDeviceFactory:
    """Device factory recording every acquisition; can fail or block on demand."""

    def __init__(self, width=64, height=36):
        self.width, self.height = width, height
        self.captures = []
        self.error: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None
        self.first_frame = True
        self.first_frame_gate: Optional[threading.Event] = None
        self.first_frame_error: Optional[Exception] = None

    def __call__(self, constraints):
        if self.gate is not None:
            self.gate.wait(5.0)
        if self.error is not None:
            raise self.error
        capture = FakeCapture(self.width, self.height, first_frame=self.first_frame,
                              gate=self.first_frame_gate, error=self.first_frame_error)
        self.captures.append(capture)
        return capture

    @property
    def last(self) -> FakeCapture:
        return self.captures[-1]


class FakeProvider:
    """Landmark provider double; ``result`` is returned by every video detection."""

    def __init__(self, ready=True, result=None):
        self._ready = ready
        self.running_mode = RunningMode.IMAGE
        self.result = result
        self.mode_switches = []
        self.video_calls = []
        self.block: Optional[threading.Event] = None
        self.entered = threading.Event()
        self.closed = False

    @property
    def ready(self):
        return self._ready

    async def warm_up(self):
        self._ready = True

    async def set_running_mode(self, mode):
        self.mode_switches.append(mode)
        self.running_mode = mode

    def detect_for_video(self, frame, timestamp_ms):
        self.video_calls.append(timestamp_ms)
        self.entered.set()
        if self.block is not None:
            self.block.wait(5.0)
        return self.result

    def close(self):
        self.closed = True


@pytest.fixture()
def devices() -> FakeDeviceFactory:
    return FakeDeviceFactory()


@pytest.fixture()
def session(devices: FakeDeviceFactory) -> CaptureSession:
    return CaptureSession(device_factory=devices)
