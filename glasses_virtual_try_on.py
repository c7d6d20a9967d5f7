import asyncio
import logging
import threading
import time

from flask import Flask, Response, jsonify, send_from_directory

from asset_stage import AssetStage
from capture_session import (
    CaptureCancelled,
    CaptureConstraints,
    CaptureError,
    CaptureSession,
    ConstraintsUnsatisfiable,
    DeviceNotFound,
    InvalidSessionTransition,
    PermissionDenied,
)
from compositor import Compositor
from face_landmarks import (
    Delegate,
    FaceLandmarkProvider,
    ProviderConfig,
    ProviderUnavailable,
    RunningMode,
)
from frame_scheduler import FrameScheduler
from pose_resolver import PoseResolver
from scene_graph import SceneNode
from tryon_config import HERE, load_config

logger = logging.getLogger(__name__)

CAPTURE_ERROR_STATUS = {
    DeviceNotFound: 404,
    PermissionDenied: 403,
    ConstraintsUnsatisfiable: 422,
    CaptureCancelled: 409,
}


class TryOnRuntime:
    """Wires the pipeline together and runs it on an event loop in its own thread.

    Flask request threads reach the pipeline only through ``submit``, so the
    session, stage and scheduler are only ever touched from the loop thread.
    """

    def __init__(self, config, provider=None, session=None, loader=None):
        self.config = config
        self.scene = SceneNode.group("scene")
        self.stage = AssetStage(self.scene, loader)
        self.session = session or CaptureSession()
        self.provider = provider or FaceLandmarkProvider.create_from_options(ProviderConfig(
            model_path=config.landmarker_task,
            delegate=Delegate(config.landmarker_delegate),
            running_mode=RunningMode.IMAGE,
            max_faces=config.max_faces,
        ))
        self.compositor = Compositor(self.scene, config.cap_width, config.cap_height,
                                     config.jpeg_quality)
        self.session.on_first_frame(self.compositor.calibrate)
        self.scheduler = FrameScheduler(
            self.session, self.provider, PoseResolver(config.pose), self.stage,
            self.compositor, display_hz=config.display_hz, show_hud=config.show_hud,
        )
        self.provider_error = None
        self.loop = None
        self._thread = None

    def start(self):
        if self._thread is not None:
            return
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="tryon-loop", daemon=True)
        self._thread.start()

    def _run_loop(self):
        asyncio.set_event_loop(self.loop)
        try:
            self.loop.run_until_complete(self._main())
        finally:
            self.loop.close()

    async def _main(self):
        background = [
            asyncio.create_task(self._warm_up()),
            asyncio.create_task(self.stage.load_final(self.config.glasses_model)),
        ]
        try:
            await self.scheduler.run()
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            self.session.stop()

    async def _warm_up(self):
        try:
            await self.provider.warm_up()
        except ProviderUnavailable as e:
            self.provider_error = e
            logger.error("Face landmarker unavailable: %s", e)

    def submit(self, coro, timeout=None):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def constraints(self):
        c = self.config
        return CaptureConstraints(
            device_index=c.cam_index,
            width=c.cap_width,
            height=c.cap_height,
            fps=c.cap_fps,
            exact=c.cap_exact,
            mirror=c.mirror,
            first_frame_timeout=c.first_frame_timeout,
        )

    async def enable_camera(self):
        if not self.provider.ready:
            raise ProviderUnavailable("face landmarker not loaded yet")
        await self.session.start(self.constraints())
        return self.status()

    async def close_camera(self):
        self.session.stop()
        return self.status()

    def status(self):
        pose = self.scheduler.pose
        return {
            "session": self.session.state.value,
            "sessionId": self.session.session_id,
            "landmarkerReady": self.provider.ready,
            "landmarkerError": str(self.provider_error) if self.provider_error else None,
            "aspect": self.compositor.aspect,
            "model": "final" if self.stage.is_final else "placeholder",
            "modelError": str(self.stage.load_error) if self.stage.load_error else None,
            "pose": None if pose is None else {
                "position": list(pose.position),
                "scale": pose.scale,
                "rotationZ": pose.rotation_z,
            },
            "captureFps": round(self.session.read_fps(), 1),
            "triangles": self.compositor.triangles,
            "ticks": self.scheduler.tick_count,
            "detections": self.scheduler.detect_count,
        }

    def shutdown(self, timeout=2.0):
        if self._thread is None:
            return
        self.loop.call_soon_threadsafe(self.scheduler.close)
        self._thread.join(timeout)
        self._thread = None
        self.provider.close()


def generate_stream(runtime):
    last_sent = None
    interval = 1.0 / runtime.config.display_hz
    while True:
        jpeg, ts = runtime.compositor.last_jpeg, runtime.compositor.last_ts
        if jpeg is None or ts == last_sent:
            time.sleep(interval)
            continue
        last_sent = ts
        yield (b'--frame\r\nContent-Type: image/jpeg\r\n\r\n' + jpeg + b'\r\n')


def create_app(runtime):
    app = Flask(__name__, static_folder=None)
    start_timeout = runtime.config.first_frame_timeout + 10.0

    @app.route("/")
    def root():
        return send_from_directory(HERE, "glasses_virtual_try_on.html")

    @app.route("/stream.mjpg")
    def stream_jpg():
        return Response(generate_stream(runtime), mimetype="multipart/x-mixed-replace; boundary=frame")

    @app.route("/snapshot")
    def snapshot():
        jpeg, ts = runtime.compositor.last_jpeg, runtime.compositor.last_ts
        if jpeg is None: return "no frame yet", 503
        return Response(jpeg, headers={
            "Content-Type": "image/jpeg",
            "Content-Disposition": f'attachment; filename="snapshot_{int(ts)}.jpg"'
        })

    @app.route("/api/camera/start", methods=["POST"])
    def api_camera_start():
        try:
            state = runtime.submit(runtime.enable_camera(), timeout=start_timeout)
        except ProviderUnavailable as e:
            logger.warning("Camera start refused: %s", e)
            return jsonify(ok=False, err=str(e), state=runtime.status()), 503
        except CaptureError as e:
            logger.warning("Camera start failed: %s", e)
            code = CAPTURE_ERROR_STATUS.get(type(e), 500)
            return jsonify(ok=False, err=str(e), kind=type(e).__name__, state=runtime.status()), code
        except InvalidSessionTransition as e:
            return jsonify(ok=False, err=str(e), state=runtime.status()), 409
        return jsonify(ok=True, state=state)

    @app.route("/api/camera/stop", methods=["POST"])
    def api_camera_stop():
        state = runtime.submit(runtime.close_camera(), timeout=5.0)
        return jsonify(ok=True, state=state)

    @app.route("/api/status")
    def api_status():
        return jsonify(runtime.status())

    @app.route("/api/debug_scene")
    def api_debug_scene():
        return jsonify(runtime.scene.describe())

    return app


if __name__ == "__main__":
    config = load_config()
    logging.basicConfig(level=config.log_level, format="[%(levelname)s] %(name)s: %(message)s")

    print("\n" + "="*70)
    print("AR Virtual Try-On System - 3D glasses overlay")
    print("="*70)
    print(f"  - Camera: {config.cam_index}, Resolution: {config.cap_width}x{config.cap_height}")
    print(f"  - Landmarker: {config.landmarker_task} ({config.landmarker_delegate})")
    print(f"  - Glasses model: {config.glasses_model}")
    print(f"  - Calibration: scale={config.pose.scale_multiplier} "
          f"offsets=({config.pose.horizontal_offset}, {config.pose.vertical_offset}, {config.pose.depth_offset})")
    print("="*70 + "\n")

    runtime = TryOnRuntime(config)
    runtime.start()
    app = create_app(runtime)
    try:
        app.run(host=config.host, port=config.port, threaded=True)
    finally:
        runtime.shutdown()
