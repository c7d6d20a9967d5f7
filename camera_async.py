# Asynchronous camera reading: a background thread keeps pulling frames so the
# render loop only ever picks up the newest one instead of waiting on camera IO.

import logging
import threading
import time

import cv2

logger = logging.getLogger(__name__)


class AsyncVideoCapture:
    """
    Asynchronous video capture - keeps reading the newest frame in a background thread

    Every frame is stamped with the capture-relative time it arrived at, so
    consumers can tell whether the frame has advanced since they last looked.
    """

    def __init__(self, cap, mirror=False):
        """
        Args:
            cap: an opened cv2.VideoCapture (or anything with read/get/set/release)
            mirror: flip frames horizontally (selfie view)
        """
        self.cap = cap
        self.mirror = mirror

        self.frame = None
        self.timestamp = -1.0
        self.first_frame = threading.Event()

        # Thread control
        self.lock = threading.Lock()
        self.running = True
        self._t0 = time.monotonic()

        # Performance statistics
        self.read_count = 0
        self.last_read_time = time.time()

        self.thread = threading.Thread(target=self._reader, daemon=True)
        self.thread.start()

    def _reader(self):
        """Background thread - keeps reading the newest frame"""
        while self.running:
            ret, frame = self.cap.read()
            if ret and frame is not None:
                if self.mirror:
                    frame = cv2.flip(frame, 1)
                with self.lock:
                    self.frame = frame
                    self.timestamp = time.monotonic() - self._t0
                    self.read_count += 1
                self.first_frame.set()
            else:
                # Read failed, wait a little before retrying
                time.sleep(0.01)

    def latest(self):
        """Newest frame and its timestamp; frames are replaced, never modified in place."""
        with self.lock:
            return self.frame, self.timestamp

    def wait_first_frame(self, timeout=None):
        """Block until the first frame arrives; returns (width, height) or None on timeout."""
        if not self.first_frame.wait(timeout):
            return None
        with self.lock:
            h, w = self.frame.shape[:2]
        return w, h

    def release(self):
        """Stop the reader thread and release the device"""
        if not self.running:
            return
        self.running = False
        if self.thread.is_alive() and self.thread is not threading.current_thread():
            self.thread.join(timeout=1.0)
        self.cap.release()
        logger.debug("Capture device released")

    def get_read_fps(self):
        """Actual read frame rate of the background thread"""
        now = time.time()
        dt = now - self.last_read_time
        if dt > 0:
            fps = self.read_count / dt
            self.read_count = 0
            self.last_read_time = now
            return fps
        return 0

    def __del__(self):
        if getattr(self, "running", False):
            self.release()


def open_device(src=0, width=None, height=None, fps=None):
    """Open a cv2.VideoCapture and request the given resolution/frame rate."""
    cap = cv2.VideoCapture(src)
    if width is not None:
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
    if height is not None:
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
    if fps is not None:
        cap.set(cv2.CAP_PROP_FPS, fps)
    return cap
