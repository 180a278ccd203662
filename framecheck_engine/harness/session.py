"""Per-process harness state and command routing.

One `HarnessSession` is built at application start and handed to the
`CommandRouter`, which is the callable the server dispatches to. The
application registers handlers for the commands only it can execute
(loading files, switching modes, resizing) and inherits the built-in ones.

    session = HarnessSession(config, CaptureService(grabber, config))
    router = CommandRouter(session)
    router.register(LoadFile, app.handle_load_file)
    server = HarnessServer(config.socket_path, router, handoff=handoff)
"""

from __future__ import annotations

import threading
from typing import Callable, TypeVar

from ..config import HarnessConfig
from .capture import CaptureService
from .errors import CaptureFailed, UnknownCommand
from .protocol import (
    BeginFrameCapture,
    CaptureRegionCommand,
    CaptureWindow,
    Command,
    EndFrameCapture,
    Ping,
    Pong,
    Quit,
    Response,
    SetPreference,
    StartFrameCapture,
    StopFrameCapture,
)
from .render import DEFAULT_RENDER_TIMEOUT_S, RenderCompletionSignal

C = TypeVar("C", bound=Command)
R = TypeVar("R")

REDUCE_MOTION = "reduce_motion"


class HarnessSession:
    def __init__(
        self,
        config: HarnessConfig,
        capture: CaptureService | None = None,
        render: RenderCompletionSignal | None = None,
    ) -> None:
        self.config = config
        self.capture = capture
        self.render = render or RenderCompletionSignal()
        self._lock = threading.Lock()
        self._preferences: dict[str, bool] = {}
        self._tags: dict[str, str] = {}

    def set_preference(self, name: str, enabled: bool) -> None:
        with self._lock:
            self._preferences[name] = bool(enabled)

    def preference(self, name: str, default: bool = False) -> bool:
        with self._lock:
            return self._preferences.get(name, default)

    def clear_preference(self, name: str) -> None:
        with self._lock:
            self._preferences.pop(name, None)

    @property
    def reduce_motion(self) -> bool:
        return self.preference(REDUCE_MOTION)

    def set_tag(self, name: str, value: str) -> None:
        """Record application context (theme, view mode) attached to later captures."""
        with self._lock:
            self._tags[name] = value

    def tags(self) -> dict[str, str]:
        with self._lock:
            return dict(self._tags)

    def run_and_await_render(
        self,
        mutate: Callable[[], R],
        timeout: float = DEFAULT_RENDER_TIMEOUT_S,
    ) -> R:
        """Arm the render latch, apply `mutate`, then block until the view reports a render.

        If `mutate` raises, the latch is disarmed and the error propagates.
        """
        self.render.prepare_for_render()
        try:
            result = mutate()
        except Exception:
            self.render.cancel_prepare()
            raise
        self.render.await_prepared_render(timeout=timeout)
        return result


class CommandRouter:
    def __init__(self, session: HarnessSession) -> None:
        self.session = session
        self._routes: dict[str, Callable[[Command], Response]] = {}
        self.register(Ping, self._ping)
        self.register(Quit, self._quit)
        self.register(SetPreference, self._set_preference)
        self.register(CaptureWindow, self._capture_window)
        self.register(CaptureRegionCommand, self._capture_region)
        self.register(StartFrameCapture, self._start_frame_capture)
        self.register(StopFrameCapture, self._stop_frame_capture)
        self.register(BeginFrameCapture, self._begin_frame_capture)
        self.register(EndFrameCapture, self._end_frame_capture)

    def register(self, command_type: type[C], handler: Callable[[C], Response]) -> None:
        self._routes[command_type.type] = handler  # type: ignore[assignment]

    def routes(self) -> list[str]:
        return sorted(self._routes)

    def __call__(self, command: Command) -> Response:
        handler = self._routes.get(command.type)
        if handler is None:
            raise UnknownCommand(command.type)
        return handler(command)

    def _capture_service(self) -> CaptureService:
        if self.session.capture is None:
            raise CaptureFailed("no capture source configured")
        return self.session.capture

    def _ping(self, command: Ping) -> Response:
        return Response.ok(data=Pong())

    def _quit(self, command: Quit) -> Response:
        return Response.ok("Quitting")

    def _set_preference(self, command: SetPreference) -> Response:
        self.session.set_preference(command.name, command.enabled)
        state = "enabled" if command.enabled else "disabled"
        return Response.ok(f"{command.name} {state}")

    def _capture_window(self, command: CaptureWindow) -> Response:
        result = self._capture_service().capture_window(command.output_path, tags=self.session.tags())
        return Response.ok(data=result)

    def _capture_region(self, command: CaptureRegionCommand) -> Response:
        result = self._capture_service().capture_region(
            command.region,
            command.output_path,
            tags=self.session.tags(),
        )
        return Response.ok(data=result)

    def _start_frame_capture(self, command: StartFrameCapture) -> Response:
        result = self._capture_service().start_frame_capture(command.fps, command.duration, command.output_dir)
        return Response.ok(data=result)

    def _stop_frame_capture(self, command: StopFrameCapture) -> Response:
        result = self._capture_service().stop_frame_capture()
        if result is None:
            return Response.ok("No frame capture in progress")
        return Response.ok(data=result)

    def _begin_frame_capture(self, command: BeginFrameCapture) -> Response:
        session = self._capture_service().begin_frame_capture(command.fps, command.output_dir)
        return Response.ok(f"Frame capture started: {session.output_dir}")

    def _end_frame_capture(self, command: EndFrameCapture) -> Response:
        return Response.ok(data=self._capture_service().end_frame_capture())
