from __future__ import annotations

import shutil
import socket
import tempfile
import threading
import time
from pathlib import Path
from typing import Iterator

import pytest
from PIL import Image

from framecheck_engine.config import HarnessConfig
from framecheck_engine.harness.capture import CaptureService
from framecheck_engine.harness.client import HarnessClient, expect_data, expect_ok
from framecheck_engine.harness.errors import ConnectionFailed, HarnessError, HarnessTimeout, UnexpectedResponse
from framecheck_engine.harness.handoff import MainThreadHandoff
from framecheck_engine.harness.protocol import (
    CaptureResult,
    Command,
    LoadFile,
    Pong,
    Response,
    SwitchMode,
    WindowInfoResult,
)
from framecheck_engine.harness.server import HarnessServer, ServerState
from framecheck_engine.harness.session import CommandRouter, HarnessSession
from framecheck_engine.runs.events import EventWriter, read_events


@pytest.fixture
def socket_path() -> Iterator[Path]:
    # AF_UNIX paths are limited to ~108 bytes, so stay out of pytest's deep tmp_path.
    root = Path(tempfile.mkdtemp(prefix="fc-", dir="/tmp"))
    try:
        yield root / "harness.sock"
    finally:
        shutil.rmtree(root, ignore_errors=True)


class SolidSource:
    def grab(self) -> Image.Image:
        return Image.new("RGB", (64, 48), (30, 60, 90))


def _router(socket_path: Path) -> CommandRouter:
    config = HarnessConfig(socket_path=socket_path, capture_dir=socket_path.parent / "captures")
    session = HarnessSession(config, CaptureService(SolidSource(), config))
    router = CommandRouter(session)

    def load_file(command: LoadFile) -> Response:
        if not command.path.endswith(".md"):
            raise ValueError(f"not markdown: {command.path}")
        session.set_tag("file", command.path)
        return Response.ok(f"Loaded: {command.path}")

    router.register(LoadFile, load_file)
    return router


def _raw_exchange(sock: socket.socket, payload: bytes) -> bytes:
    sock.sendall(payload)
    buffer = b""
    while not buffer.endswith(b"\n"):
        chunk = sock.recv(4096)
        if not chunk:
            break
        buffer += chunk
    return buffer


def test_ping_round_trip(socket_path: Path) -> None:
    with HarnessServer(socket_path, _router(socket_path)) as server:
        assert server.is_running
        assert socket_path.exists()
        with HarnessClient(socket_path) as client:
            response = client.ping()
            assert isinstance(expect_data(response, Pong), Pong)
            assert expect_ok(client.load_file("/tmp/doc.md")).message == "Loaded: /tmp/doc.md"
    assert server.state is ServerState.STOPPED
    assert not socket_path.exists()


def test_decode_failures_keep_connection_open(socket_path: Path) -> None:
    with HarnessServer(socket_path, _router(socket_path)):
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as raw:
            raw.connect(str(socket_path))
            garbage = _raw_exchange(raw, b"this is not json\n")
            assert b'"status":"error"' in garbage
            assert b"failed to decode command" in garbage
            unknown = _raw_exchange(raw, b'{"type": "launch_rockets"}\n')
            assert b"unknown command: launch_rockets" in unknown
            pong = _raw_exchange(raw, b'{"type": "ping"}\n')
            assert b'"kind":"pong"' in pong


def test_handler_errors_become_error_responses(socket_path: Path) -> None:
    with HarnessServer(socket_path, _router(socket_path)):
        with HarnessClient(socket_path) as client:
            failed = client.load_file("/tmp/image.png")
            assert not failed.is_ok
            assert "not markdown" in (failed.message or "")
            unrouted = client.switch_mode("preview")
            assert unrouted.message == "unknown command: switch_mode"
            with pytest.raises(UnexpectedResponse):
                expect_ok(unrouted)
            assert client.ping().is_ok


def test_non_response_return_is_reported(socket_path: Path) -> None:
    def handler(command: Command) -> Response:
        return None  # type: ignore[return-value]

    with HarnessServer(socket_path, handler):
        with HarnessClient(socket_path) as client:
            response = client.ping()
    assert not response.is_ok
    assert "returned no response" in (response.message or "")


def test_quit_replies_then_stops(socket_path: Path) -> None:
    server = HarnessServer(socket_path, _router(socket_path))
    server.start()
    client = HarnessClient(socket_path)
    client.connect()
    assert client.quit().message == "Quitting"
    assert server.wait(timeout=5)
    assert server.state is ServerState.STOPPED
    assert not socket_path.exists()
    with pytest.raises(ConnectionFailed):
        client.ping(timeout=2)
    client.disconnect()
    client.disconnect()


def test_stop_is_idempotent_and_final(socket_path: Path) -> None:
    server = HarnessServer(socket_path, _router(socket_path))
    server.stop()
    assert server.state is ServerState.IDLE
    server.start()
    server.start()
    server.stop()
    server.stop()
    assert server.wait(timeout=5)
    assert server.state is ServerState.STOPPED
    with pytest.raises(HarnessError):
        server.start()


def test_start_removes_stale_socket_file(socket_path: Path) -> None:
    socket_path.write_text("stale", encoding="utf-8")
    with HarnessServer(socket_path, _router(socket_path)):
        with HarnessClient(socket_path) as client:
            assert client.ping().is_ok


def test_bind_failure_is_surfaced(socket_path: Path) -> None:
    blocker = socket_path.parent / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    server = HarnessServer(blocker / "harness.sock", _router(socket_path))
    with pytest.raises(ConnectionFailed):
        server.start()
    assert server.state is ServerState.IDLE


def test_dropped_connection_does_not_stop_server(socket_path: Path) -> None:
    with HarnessServer(socket_path, _router(socket_path)):
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as raw:
            raw.connect(str(socket_path))
            raw.sendall(b'{"type": "pi')
        with HarnessClient(socket_path) as client:
            assert client.ping().is_ok


def test_dispatch_through_main_thread_handoff(socket_path: Path) -> None:
    handoff = MainThreadHandoff()
    seen: list[int] = []

    def handler(command: Command) -> Response:
        seen.append(threading.get_ident())
        return Response.ok(data=WindowInfoResult(width=800, height=600, x=0, y=0, scale_factor=2.0))

    results: list[Response] = []
    with HarnessServer(socket_path, handler, handoff=handoff, handoff_timeout_s=5):
        def drive() -> None:
            with HarnessClient(socket_path) as client:
                results.append(client.get_window_info())

        driver = threading.Thread(target=drive)
        driver.start()
        while driver.is_alive():
            handoff.run_pending(wait_s=0.01)
        driver.join()

    assert seen == [threading.get_ident()]
    info = expect_data(results[0], WindowInfoResult)
    assert (info.width, info.height) == (800, 600)


def test_capture_over_the_socket(socket_path: Path) -> None:
    router = _router(socket_path)
    router.session.set_tag("theme", "dark")
    out = socket_path.parent / "window.png"
    with HarnessServer(socket_path, router):
        with HarnessClient(socket_path) as client:
            capture = expect_data(client.capture_window(str(out)), CaptureResult)
    assert Path(capture.image_path) == out
    assert (capture.width, capture.height) == (64, 48)
    assert capture.tags == {"theme": "dark"}
    with Image.open(out) as image:
        assert image.size == (64, 48)


def test_timeout_keeps_partial_response_buffered(socket_path: Path) -> None:
    listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    listener.bind(str(socket_path))
    listener.listen(1)
    release = threading.Event()

    def fake_server() -> None:
        conn, _ = listener.accept()
        with conn:
            conn.recv(4096)
            conn.sendall(b'{"status":"ok","mes')
            release.wait(5)
            conn.sendall(b'sage":"late"}\n')
            conn.recv(4096)
            conn.sendall(b'{"status":"ok","data":{"kind":"pong"}}\n')
            time.sleep(0.2)

    thread = threading.Thread(target=fake_server, daemon=True)
    thread.start()
    try:
        with HarnessClient(socket_path) as client:
            with pytest.raises(HarnessTimeout):
                client.ping(timeout=0.2)
            release.set()
            late = client.ping(timeout=2)
            assert late.message == "late"
            assert isinstance(client.ping(timeout=2).data, Pong)
    finally:
        thread.join(timeout=5)
        listener.close()


def test_server_and_client_emit_events(socket_path: Path, tmp_path: Path) -> None:
    events_path = tmp_path / "events.jsonl"
    writer = EventWriter(events_path, "session-1")
    with HarnessServer(socket_path, _router(socket_path), events=writer.child("server")):
        with HarnessClient(socket_path, events=writer.child("client")) as client:
            client.ping()
    events = read_events(events_path)
    server_types = [event["type"] for event in events if event["source"] == "server"]
    client_types = [event["type"] for event in events if event["source"] == "client"]
    assert server_types[0] == "server_started"
    assert "command_received" in server_types
    assert "command_completed" in server_types
    assert "server_stopped" in server_types
    assert client_types == ["client_connected", "command_sent", "response_received"]


def test_concurrent_sends_stay_matched_to_their_requests(socket_path: Path) -> None:
    def echo_mode(command: Command) -> Response:
        assert isinstance(command, SwitchMode)
        return Response.ok(f"mode:{command.mode}")

    mismatches: list[str] = []
    errors: list[BaseException] = []
    with HarnessServer(socket_path, echo_mode):
        with HarnessClient(socket_path) as client:
            def worker(worker_id: int) -> None:
                try:
                    for idx in range(50):
                        mode = f"w{worker_id}-{idx}"
                        response = client.switch_mode(mode, timeout=5)
                        if response.message != f"mode:{mode}":
                            mismatches.append(f"{mode} -> {response.message}")
                except HarnessError as exc:
                    errors.append(exc)

            threads = [threading.Thread(target=worker, args=(worker_id,)) for worker_id in range(4)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=30)

    assert errors == []
    assert mismatches == []
