"""Unix-socket harness server embedded in the application under test.

The server owns one listening socket and one accept thread. It serves a single
client at a time: each framed line is decoded into a command, handed to the
application's handler (optionally on the application's primary thread through
a `MainThreadHandoff`), and answered with exactly one framed response.
"""

from __future__ import annotations

import contextlib
import socket
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..runs.events import EventWriter
from .errors import CommandDecodeError, ConnectionFailed, HarnessError, UnknownCommand
from .handoff import MainThreadHandoff
from .protocol import Command, Quit, Response, decode_command, encode_response


CommandHandler = Callable[[Command], Response]

READ_CHUNK_BYTES = 4096
DEFAULT_POLL_INTERVAL_S = 0.2
DEFAULT_WRITE_TIMEOUT_S = 10.0


class ServerState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    ACCEPTING = "accepting"
    SERVING = "serving"
    STOPPED = "stopped"


class HarnessServer:
    def __init__(
        self,
        socket_path: str | Path,
        handler: CommandHandler,
        *,
        handoff: MainThreadHandoff | None = None,
        handoff_timeout_s: float | None = None,
        events: EventWriter | None = None,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        write_timeout_s: float = DEFAULT_WRITE_TIMEOUT_S,
    ) -> None:
        self.socket_path = Path(socket_path).expanduser()
        self._handler = handler
        self._handoff = handoff
        self._handoff_timeout_s = handoff_timeout_s
        self._events = events
        self._poll_interval_s = max(0.01, float(poll_interval_s))
        self._write_timeout_s = write_timeout_s

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._listener: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._state = ServerState.IDLE

    @property
    def state(self) -> ServerState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state in {ServerState.LISTENING, ServerState.ACCEPTING, ServerState.SERVING}

    def start(self) -> None:
        """Bind the socket and begin accepting on a background thread.

        Raises `ConnectionFailed` when the socket cannot be bound; the server
        then stays idle.
        """
        with self._lock:
            if self._state in {ServerState.LISTENING, ServerState.ACCEPTING, ServerState.SERVING}:
                return
            if self._state is ServerState.STOPPED:
                raise HarnessError("server was stopped; create a new instance to listen again")
            listener = self._bind()
            self._listener = listener
            self._stop.clear()
            self._state = ServerState.LISTENING
            self._thread = threading.Thread(
                target=self._accept_loop,
                args=(listener,),
                name="framecheck-harness-server",
                daemon=True,
            )
            self._thread.start()
        self._emit("server_started", socket_path=str(self.socket_path))

    def stop(self) -> None:
        """Close the listener and remove the socket file. Safe to call repeatedly."""
        with self._lock:
            if self._state in {ServerState.IDLE, ServerState.STOPPED}:
                return
            self._stop.set()
            listener = self._listener
            self._listener = None
            self._state = ServerState.STOPPED
        if listener is not None:
            listener.close()
        with contextlib.suppress(FileNotFoundError):
            self.socket_path.unlink()
        self._emit("server_stopped", socket_path=str(self.socket_path))

    def wait(self, timeout: float | None = None) -> bool:
        """Join the accept thread; returns False if it is still alive after `timeout`."""
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def __enter__(self) -> "HarnessServer":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()
        self.wait(timeout=2.0)

    def _bind(self) -> socket.socket:
        path = self.socket_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.exists() or path.is_symlink():
                path.unlink()
        except OSError as exc:
            raise ConnectionFailed(f"could not clear stale socket at {path}: {exc}") from exc
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            listener.bind(str(path))
            listener.listen(1)
            listener.settimeout(self._poll_interval_s)
        except OSError as exc:
            listener.close()
            raise ConnectionFailed(f"could not listen on {path}: {exc}") from exc
        return listener

    def _set_state(self, state: ServerState) -> None:
        with self._lock:
            if self._state is not ServerState.STOPPED:
                self._state = state

    def _accept_loop(self, listener: socket.socket) -> None:
        while not self._stop.is_set():
            self._set_state(ServerState.ACCEPTING)
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._stop.is_set() or listener.fileno() < 0:
                    break
                self._emit("accept_failed", error=str(exc))
                time.sleep(self._poll_interval_s)
                continue
            self._set_state(ServerState.SERVING)
            self._emit("client_connected")
            with conn:
                reason = self._serve_connection(conn)
            self._emit("client_disconnected", reason=reason)

    def _serve_connection(self, conn: socket.socket) -> str:
        conn.settimeout(self._poll_interval_s)
        buffer = bytearray()
        while True:
            if self._stop.is_set():
                return "server_stopped"
            try:
                chunk = conn.recv(READ_CHUNK_BYTES)
            except socket.timeout:
                continue
            except OSError as exc:
                return f"read_failed: {exc}"
            if not chunk:
                return "peer_closed"
            buffer.extend(chunk)
            while True:
                idx = buffer.find(b"\n")
                if idx < 0:
                    break
                line = bytes(buffer[:idx])
                del buffer[: idx + 1]
                if not line.strip():
                    continue
                command, response = self._respond(line)
                try:
                    self._write(conn, response)
                except OSError as exc:
                    return f"write_failed: {exc}"
                if isinstance(command, Quit):
                    self.stop()
                    return "quit"

    def _respond(self, line: bytes) -> tuple[Command | None, Response]:
        try:
            command = decode_command(line)
        except UnknownCommand as exc:
            self._emit("command_failed", error=str(exc), tag=exc.tag)
            return None, Response.error(str(exc))
        except CommandDecodeError as exc:
            self._emit("command_failed", error=str(exc))
            return None, Response.error("failed to decode command")

        self._emit("command_received", command=command.type)
        started = time.monotonic()
        try:
            response = self._dispatch(command)
        except HarnessError as exc:
            response = Response.error(str(exc))
        except Exception as exc:
            response = Response.error(f"{command.type} failed: {exc}")
        if not isinstance(response, Response):
            response = Response.error(f"{command.type} handler returned no response")
        if not response.is_ok:
            self._emit("command_failed", command=command.type, error=response.message)
        self._emit(
            "command_completed",
            command=command.type,
            status=response.status,
            latency_ms=int((time.monotonic() - started) * 1000),
        )
        return command, response

    def _dispatch(self, command: Command) -> Response:
        if self._handoff is None:
            return self._handler(command)
        return self._handoff.call(self._handler, command, timeout=self._handoff_timeout_s)

    def _write(self, conn: socket.socket, response: Response) -> None:
        conn.settimeout(self._write_timeout_s)
        try:
            conn.sendall(encode_response(response))
        finally:
            conn.settimeout(self._poll_interval_s)

    def _emit(self, event_type: str, **payload: Any) -> None:
        if self._events is not None:
            self._events.emit(event_type, **payload)
