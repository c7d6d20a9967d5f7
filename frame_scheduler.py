import asyncio
import logging
import time

from face_landmarks import RunningMode

logger = logging.getLogger(__name__)


class FrameScheduler:
    """Drives one iteration per display refresh.

    Each tick: detect on the newest frame if it advanced, clear the overlay,
    apply the latest pose, render. Rendering happens on every tick, whatever
    the session state; detection and pose application only while the
    session is active.
    """

    def __init__(self, session, provider, resolver, stage, compositor,
                 display_hz=60.0, show_hud=False, clock=time.monotonic):
        self.session = session
        self.provider = provider
        self.resolver = resolver
        self.stage = stage
        self.compositor = compositor
        self.display_hz = display_hz
        self.show_hud = show_hud
        self._clock = clock

        self._session_seen = None
        self._last_frame_time = -1.0
        self._latest = None
        self._frame = None
        self._closed = False
        self._warned_unready = False

        self.pose = None
        self.tick_count = 0
        self.detect_count = 0
        self._fps_ema = 0.0
        self._t_prev = None

    @property
    def latest_result(self):
        return self._latest

    async def tick(self):
        self.tick_count += 1
        session = self.session

        if session.is_active:
            sid = session.session_id
            if sid != self._session_seen:
                self._session_seen = sid
                self._last_frame_time = -1.0
                self._latest = None
            frame, frame_time = session.current_frame()
            if frame is not None:
                self._frame = frame
                if frame_time != self._last_frame_time:
                    await self._detect(frame, frame_time, sid)

        # clear -> pose -> render
        self.compositor.clear_overlay()
        if session.is_active:
            self._apply_pose()
        if self.show_hud:
            self._draw_hud()
        self.compositor.render(self._frame)

    async def _detect(self, frame, frame_time, sid):
        provider = self.provider
        if not provider.ready:
            if not self._warned_unready:
                logger.warning("Wait! face landmarker not loaded yet, rendering without tracking")
                self._warned_unready = True
            return
        if provider.running_mode is not RunningMode.VIDEO:
            await provider.set_running_mode(RunningMode.VIDEO)
            if not self._is_current(sid):
                return

        self._last_frame_time = frame_time
        ts_ms = int(self._clock() * 1000)
        result = await asyncio.to_thread(provider.detect_for_video, frame, ts_ms)
        self.detect_count += 1
        if not self._is_current(sid):
            logger.debug("Dropping detection from ended session %d", sid)
            return
        self._latest = result

    def _is_current(self, sid):
        return self.session.is_active and self.session.session_id == sid

    def _apply_pose(self):
        pose = None
        aspect = self.compositor.aspect
        if self._latest is not None and aspect is not None:
            pose = self.resolver.resolve(self._latest.first_face(), aspect)
        if pose is None:
            # No face or truncated set: hold the last pose, also on a model swapped in meanwhile
            pose = self.pose
        if pose is None:
            return
        pose.apply_to(self.stage.active_model())
        self.pose = pose

    def _draw_hud(self):
        t = self._clock()
        if self._t_prev is not None:
            dt = t - self._t_prev
            if dt > 0:
                fps = 1.0 / dt
                self._fps_ema = fps if self._fps_ema == 0 else 0.9*self._fps_ema + 0.1*fps
        self._t_prev = t
        w, _ = self.compositor.overlay.size
        self.compositor.overlay.text(f"{self._fps_ema:4.1f} FPS", (w - 200, 42))

    async def run(self):
        interval = 1.0 / self.display_hz
        logger.info("Frame loop started (%.0f Hz)", self.display_hz)
        while not self._closed:
            started = self._clock()
            try:
                await self.tick()
            except Exception:
                logger.exception("Frame tick failed")
            await asyncio.sleep(max(0.0, interval - (self._clock() - started)))
        logger.info("Frame loop stopped")

    def close(self):
        self._closed = True
