"""Test-side client for the harness server.

The protocol has no request ids, so correctness depends on strict
request/response alternation: `send` holds a lock for the whole round trip
and every convenience wrapper funnels through it.

    client = HarnessClient(socket_path_for_pid(proc.pid))
    client.connect()
    expect_ok(client.load_file("/tmp/fixture.md"))
    capture = expect_data(client.capture_window(), CaptureResult)
"""

from __future__ import annotations

import errno
import select
import socket
import threading
import time
from pathlib import Path
from typing import Any, TypeVar

from ..runs.events import EventWriter
from .errors import ConnectionFailed, HarnessTimeout, UnexpectedResponse
from .protocol import (
    BeginFrameCapture,
    CaptureRegion,
    CaptureRegionCommand,
    CaptureWindow,
    Command,
    CycleTheme,
    EndFrameCapture,
    GetThemeColors,
    GetWindowInfo,
    LoadFile,
    Ping,
    Quit,
    ReloadFile,
    ResizeWindow,
    Response,
    ResponseData,
    ScrollTo,
    SetPreference,
    SetSidebarWidth,
    SetTheme,
    SimulateSelection,
    StartFrameCapture,
    StopFrameCapture,
    SwitchMode,
    ToggleSidebar,
    decode_response,
    encode_command,
)

D = TypeVar("D", bound=ResponseData)

READ_CHUNK_BYTES = 4096
DEFAULT_CONNECT_RETRIES = 20
DEFAULT_RETRY_DELAY_S = 0.25

FILE_TIMEOUT_S = 30.0
MODE_TIMEOUT_S = 15.0
CAPTURE_TIMEOUT_S = 10.0
FRAME_CAPTURE_GRACE_S = 30.0
PING_TIMEOUT_S = 5.0


def expect_ok(response: Response) -> Response:
    if not response.is_ok:
        raise UnexpectedResponse(f"expected ok response, got error: {response.message or '<no message>'}")
    return response


def expect_data(response: Response, data_type: type[D]) -> D:
    expect_ok(response)
    if not isinstance(response.data, data_type):
        got = type(response.data).__name__ if response.data is not None else "no data"
        raise UnexpectedResponse(f"expected {data_type.kind} payload, got {got}")
    return response.data


class HarnessClient:
    def __init__(self, socket_path: str | Path, *, events: EventWriter | None = None) -> None:
        self.socket_path = Path(socket_path).expanduser()
        self._events = events
        self._lock = threading.Lock()
        self._sock: socket.socket | None = None
        self._buffer = bytearray()

    @property
    def is_connected(self) -> bool:
        return self._sock is not None

    def connect(self, retries: int = DEFAULT_CONNECT_RETRIES, retry_delay: float = DEFAULT_RETRY_DELAY_S) -> None:
        """Connect, tolerating a server whose socket does not exist yet."""
        attempts = max(1, int(retries))
        last_error = ""
        for attempt in range(1, attempts + 1):
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.connect(str(self.socket_path))
            except OSError as exc:
                sock.close()
                if exc.errno == errno.ENOENT:
                    last_error = "socket not found"
                elif isinstance(exc, ConnectionRefusedError) or exc.errno == errno.ECONNREFUSED:
                    last_error = "connection refused"
                else:
                    last_error = str(exc)
                if attempt < attempts:
                    time.sleep(max(0.0, retry_delay))
                continue
            with self._lock:
                if self._sock is not None:
                    self._sock.close()
                self._sock = sock
                self._buffer.clear()
            self._emit("client_connected", socket_path=str(self.socket_path), attempts=attempt)
            return
        raise ConnectionFailed(
            f"could not connect to {self.socket_path} after {attempts} attempts: {last_error}"
        )

    def disconnect(self) -> None:
        with self._lock:
            self._close_locked()

    def __enter__(self) -> "HarnessClient":
        if not self.is_connected:
            self.connect()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.disconnect()

    def send(self, command: Command, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        """Write one command and block up to `timeout` seconds for its response.

        On timeout any partially received bytes stay buffered for the next call.
        """
        payload = encode_command(command)
        with self._lock:
            sock = self._sock
            if sock is None:
                raise ConnectionFailed("not connected")
            try:
                sock.sendall(payload)
            except OSError as exc:
                self._close_locked()
                raise ConnectionFailed(f"socket write failed: {exc}") from exc
            self._emit("command_sent", command=command.type)
            try:
                line = self._read_line(sock, timeout)
            except HarnessTimeout:
                self._emit("command_timeout", command=command.type, timeout_s=timeout)
                raise
            response = decode_response(line)
        self._emit("response_received", command=command.type, status=response.status)
        return response

    # File commands

    def load_file(self, path: str | Path, timeout: float = FILE_TIMEOUT_S) -> Response:
        return self.send(LoadFile(path=str(path)), timeout=timeout)

    def reload_file(self, timeout: float = FILE_TIMEOUT_S) -> Response:
        return self.send(ReloadFile(), timeout=timeout)

    # Mode and theme commands

    def switch_mode(self, mode: str, timeout: float = MODE_TIMEOUT_S) -> Response:
        return self.send(SwitchMode(mode=mode), timeout=timeout)

    def cycle_theme(self, timeout: float = MODE_TIMEOUT_S) -> Response:
        return self.send(CycleTheme(), timeout=timeout)

    def set_theme(self, theme: str, timeout: float = MODE_TIMEOUT_S) -> Response:
        return self.send(SetTheme(theme=theme), timeout=timeout)

    # Capture commands

    def capture_window(self, output_path: str | None = None, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        return self.send(CaptureWindow(output_path=output_path), timeout=timeout)

    def capture_region(
        self,
        region: CaptureRegion,
        output_path: str | None = None,
        timeout: float = CAPTURE_TIMEOUT_S,
    ) -> Response:
        return self.send(CaptureRegionCommand(region=region, output_path=output_path), timeout=timeout)

    def start_frame_capture(
        self,
        fps: int,
        duration: float,
        output_dir: str | None = None,
        timeout: float | None = None,
    ) -> Response:
        if timeout is None:
            timeout = max(FILE_TIMEOUT_S, duration + FRAME_CAPTURE_GRACE_S)
        return self.send(StartFrameCapture(fps=fps, duration=duration, output_dir=output_dir), timeout=timeout)

    def stop_frame_capture(self, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        return self.send(StopFrameCapture(), timeout=timeout)

    def begin_frame_capture(self, fps: int, output_dir: str | None = None, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        return self.send(BeginFrameCapture(fps=fps, output_dir=output_dir), timeout=timeout)

    def end_frame_capture(self, timeout: float = FILE_TIMEOUT_S) -> Response:
        return self.send(EndFrameCapture(), timeout=timeout)

    # Info commands

    def get_window_info(self, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        return self.send(GetWindowInfo(), timeout=timeout)

    def get_theme_colors(self, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        return self.send(GetThemeColors(), timeout=timeout)

    # Preference and pass-through commands

    def set_preference(self, name: str, enabled: bool, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        return self.send(SetPreference(name=name, enabled=enabled), timeout=timeout)

    def set_reduce_motion(self, enabled: bool, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        return self.set_preference("reduce_motion", enabled, timeout=timeout)

    def scroll_to(self, y_offset: float, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        return self.send(ScrollTo(y_offset=y_offset), timeout=timeout)

    def resize_window(self, width: float, height: float, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        return self.send(ResizeWindow(width=width, height=height), timeout=timeout)

    def set_sidebar_width(self, width: float, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        return self.send(SetSidebarWidth(width=width), timeout=timeout)

    def toggle_sidebar(self, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        return self.send(ToggleSidebar(), timeout=timeout)

    def simulate_selection(self, start: int, end: int, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        return self.send(SimulateSelection(start=start, end=end), timeout=timeout)

    # Lifecycle commands

    def ping(self, timeout: float = PING_TIMEOUT_S) -> Response:
        return self.send(Ping(), timeout=timeout)

    def quit(self, timeout: float = CAPTURE_TIMEOUT_S) -> Response:
        return self.send(Quit(), timeout=timeout)

    # Socket I/O

    def _read_line(self, sock: socket.socket, timeout: float) -> bytes:
        line = self._extract_line()
        if line is not None:
            return line
        deadline = time.monotonic() + max(0.0, float(timeout))
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HarnessTimeout(f"no response within {timeout}s")
            try:
                readable, _, _ = select.select([sock], [], [], remaining)
            except (OSError, ValueError) as exc:
                self._close_locked()
                raise ConnectionFailed(f"poll failed: {exc}") from exc
            if not readable:
                raise HarnessTimeout(f"no response within {timeout}s")
            try:
                chunk = sock.recv(READ_CHUNK_BYTES)
            except OSError as exc:
                self._close_locked()
                raise ConnectionFailed(f"socket read failed: {exc}") from exc
            if not chunk:
                self._close_locked()
                raise ConnectionFailed("server closed the connection")
            self._buffer.extend(chunk)
            line = self._extract_line()
            if line is not None:
                return line

    def _extract_line(self) -> bytes | None:
        idx = self._buffer.find(b"\n")
        if idx < 0:
            return None
        line = bytes(self._buffer[:idx])
        del self._buffer[: idx + 1]
        return line

    def _close_locked(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        self._buffer.clear()

    def _emit(self, event_type: str, **payload: Any) -> None:
        if self._events is not None:
            self._events.emit(event_type, **payload)
