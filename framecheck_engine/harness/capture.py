"""Screenshot and frame-sequence capture on top of an external frame source.

The platform grabber is not part of this package: anything with a
`grab() -> PIL.Image.Image | None` method can back a `CaptureService`.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Mapping, Protocol

from PIL import Image

from ..config import HarnessConfig
from ..runs.events import EventWriter
from ..utils import ensure_dir, now_utc
from .errors import CaptureFailed
from .protocol import CaptureRegion, CaptureResult, FrameCaptureResult


class FrameSource(Protocol):
    def grab(self) -> Image.Image | None:
        ...


def _grab(source: FrameSource) -> Image.Image:
    try:
        image = source.grab()
    except Exception as exc:
        raise CaptureFailed(f"frame source failed: {exc}") from exc
    if image is None:
        raise CaptureFailed("frame source returned no image")
    return image


def _save_png(image: Image.Image, path: Path) -> None:
    ensure_dir(path.parent)
    image.save(path, format="PNG")


class FrameCaptureSession:
    """Grab frames at a fixed rate until stopped, writing each one as a PNG.

    Grabbing runs on its own thread; encoding runs on a single-worker executor
    so frames land on disk in order. `stop()` waits for every queued write
    before it builds the result, and returns the same result on every call.
    """

    def __init__(
        self,
        source: FrameSource,
        fps: int,
        output_dir: Path,
        *,
        duration: float | None = None,
        events: EventWriter | None = None,
    ) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        if duration is not None and duration < 0:
            raise ValueError("duration must not be negative")
        self.source = source
        self.fps = int(fps)
        self.output_dir = Path(output_dir)
        self.duration = duration
        self._events = events

        self._lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="framecheck-frame-writer")
        self._thread: threading.Thread | None = None
        self._pending: list[Future[None]] = []
        self._frame_paths: list[str] = []
        self._errors: list[str] = []
        self._accepting = True
        self._started_at: float | None = None
        self._result: FrameCaptureResult | None = None
        self._failure: CaptureFailed | None = None

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop_event.is_set()

    @property
    def frame_count(self) -> int:
        with self._lock:
            return len(self._frame_paths)

    def start(self) -> None:
        with self._lock:
            if self._thread is not None:
                raise CaptureFailed("frame capture already started")
            ensure_dir(self.output_dir)
            self._started_at = time.monotonic()
            self._thread = threading.Thread(
                target=self._grab_loop,
                name="framecheck-frame-grabber",
                daemon=True,
            )
            self._thread.start()
        self._emit("frame_capture_started", fps=self.fps, duration=self.duration, output_dir=str(self.output_dir))

    def run(self) -> FrameCaptureResult:
        """Capture for the preset duration and return the finished result."""
        if self.duration is None:
            raise ValueError("run() requires a duration")
        self.start()
        self._stop_event.wait(self.duration)
        return self.stop()

    def stop(self) -> FrameCaptureResult:
        with self._stop_lock:
            if self._result is not None:
                return self._result
            if self._failure is not None:
                raise self._failure
            if self._thread is None:
                raise CaptureFailed("frame capture was never started")
            self._stop_event.set()
            stopped_at = time.monotonic()
            self._thread.join()
            with self._lock:
                self._accepting = False
                pending = list(self._pending)
                frame_paths = tuple(self._frame_paths)
                errors = list(self._errors)
            done, _ = wait(pending)
            self._writer.shutdown(wait=True)
            for future in done:
                exc = future.exception()
                if exc is not None:
                    errors.append(f"frame write failed: {exc}")
            elapsed = max(0.0, stopped_at - (self._started_at or stopped_at))
            if errors:
                self._failure = CaptureFailed("; ".join(errors))
                self._emit("frame_capture_failed", error=str(self._failure), frame_count=len(frame_paths))
                raise self._failure
            self._result = FrameCaptureResult(
                frame_dir=str(self.output_dir),
                frame_count=len(frame_paths),
                fps=self.fps,
                duration=elapsed,
                frame_paths=frame_paths,
            )
            self._emit(
                "frame_capture_finished",
                frame_count=self._result.frame_count,
                duration=round(elapsed, 4),
                output_dir=str(self.output_dir),
            )
            return self._result

    def _grab_loop(self) -> None:
        interval = 1.0 / self.fps
        next_tick = time.monotonic()
        while not self._stop_event.is_set():
            try:
                image = _grab(self.source)
            except CaptureFailed as exc:
                with self._lock:
                    self._errors.append(str(exc))
                # wake run() so the failure surfaces without waiting out the duration
                self._stop_event.set()
                return
            self._enqueue(image)
            next_tick += interval
            delay = next_tick - time.monotonic()
            if delay > 0:
                self._stop_event.wait(delay)
            else:
                # Fell behind; drop the backlog instead of grabbing in a burst.
                next_tick = time.monotonic()

    def _enqueue(self, image: Image.Image) -> None:
        with self._lock:
            if not self._accepting:
                return
            path = self.output_dir / f"frame_{len(self._frame_paths):04d}.png"
            self._frame_paths.append(str(path))
            self._pending.append(self._writer.submit(_save_png, image.copy(), path))

    def _emit(self, event_type: str, **payload: Any) -> None:
        if self._events is not None:
            self._events.emit(event_type, **payload)


class CaptureService:
    def __init__(self, source: FrameSource, config: HarnessConfig, *, events: EventWriter | None = None) -> None:
        self.source = source
        self.config = config
        self._events = events
        self._lock = threading.Lock()
        self._capture_index = 0
        self._session: FrameCaptureSession | None = None

    @property
    def active_session(self) -> FrameCaptureSession | None:
        with self._lock:
            return self._session

    def capture_window(
        self,
        output_path: str | Path | None = None,
        tags: Mapping[str, str] | None = None,
    ) -> CaptureResult:
        image = _grab(self.source)
        return self._write_capture(image, output_path, tags)

    def capture_region(
        self,
        region: CaptureRegion,
        output_path: str | Path | None = None,
        tags: Mapping[str, str] | None = None,
    ) -> CaptureResult:
        image = _grab(self.source)
        scale = self.config.scale_factor
        left = max(0, round(region.x * scale))
        top = max(0, round(region.y * scale))
        right = min(image.width, round((region.x + region.width) * scale))
        bottom = min(image.height, round((region.y + region.height) * scale))
        if right <= left or bottom <= top:
            raise CaptureFailed(
                f"region {region.x},{region.y} {region.width}x{region.height} lies outside the captured image"
            )
        return self._write_capture(image.crop((left, top, right, bottom)), output_path, tags)

    def start_frame_capture(self, fps: int, duration: float, output_dir: str | Path | None = None) -> FrameCaptureResult:
        """Blocking capture of `duration` seconds of frames."""
        session = self._open_session(fps, output_dir, duration=duration)
        try:
            return session.run()
        finally:
            self._release_session(session)

    def begin_frame_capture(self, fps: int, output_dir: str | Path | None = None) -> FrameCaptureSession:
        session = self._open_session(fps, output_dir)
        try:
            session.start()
        except Exception:
            self._release_session(session)
            raise
        return session

    def end_frame_capture(self) -> FrameCaptureResult:
        session = self._take_session()
        if session is None:
            raise CaptureFailed("no frame capture in progress")
        return session.stop()

    def stop_frame_capture(self) -> FrameCaptureResult | None:
        session = self._take_session()
        if session is None:
            return None
        return session.stop()

    def _open_session(
        self,
        fps: int,
        output_dir: str | Path | None,
        *,
        duration: float | None = None,
    ) -> FrameCaptureSession:
        with self._lock:
            if self._session is not None:
                raise CaptureFailed("a frame capture is already running")
            target = Path(output_dir) if output_dir else self._default_frame_dir()
            session = FrameCaptureSession(self.source, fps, target, duration=duration, events=self._events)
            self._session = session
        return session

    def _release_session(self, session: FrameCaptureSession) -> None:
        with self._lock:
            if self._session is session:
                self._session = None

    def _take_session(self) -> FrameCaptureSession | None:
        with self._lock:
            session = self._session
            self._session = None
        return session

    def _default_frame_dir(self) -> Path:
        return self.config.frame_dir / now_utc().strftime("frames-%Y%m%dT%H%M%S%f")

    def _next_capture_path(self) -> Path:
        with self._lock:
            self._capture_index += 1
            index = self._capture_index
        return self.config.capture_dir / f"framecheck-capture-{index:04d}.png"

    def _write_capture(
        self,
        image: Image.Image,
        output_path: str | Path | None,
        tags: Mapping[str, str] | None,
    ) -> CaptureResult:
        path = Path(output_path) if output_path else self._next_capture_path()
        try:
            _save_png(image, path)
        except OSError as exc:
            raise CaptureFailed(f"could not write capture to {path}: {exc}") from exc
        result = CaptureResult(
            image_path=str(path),
            width=image.width,
            height=image.height,
            scale_factor=self.config.scale_factor,
            timestamp=now_utc(),
            tags=dict(tags or {}),
        )
        if self._events is not None:
            self._events.emit("capture_written", image_path=result.image_path, width=result.width, height=result.height)
        return result
