from __future__ import annotations

import shutil
import socket
import tempfile
import threading
from pathlib import Path
from typing import Iterator

import pytest

from framecheck_engine.harness.client import HarnessClient
from framecheck_engine.harness.errors import ConnectionFailed
from framecheck_engine.harness.protocol import Pong, Response
from framecheck_engine.harness.server import HarnessServer


@pytest.fixture
def socket_path() -> Iterator[Path]:
    root = Path(tempfile.mkdtemp(prefix="fc-", dir="/tmp"))
    try:
        yield root / "late.sock"
    finally:
        shutil.rmtree(root, ignore_errors=True)


def test_connect_gives_up_when_socket_never_appears(socket_path: Path) -> None:
    client = HarnessClient(socket_path)
    with pytest.raises(ConnectionFailed, match="after 3 attempts: socket not found"):
        client.connect(retries=3, retry_delay=0.01)
    assert not client.is_connected


def test_connect_reports_refused_for_stale_socket_file(socket_path: Path) -> None:
    stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    stale.bind(str(socket_path))
    stale.close()
    with pytest.raises(ConnectionFailed, match="connection refused"):
        HarnessClient(socket_path).connect(retries=1)


def test_connect_waits_for_a_late_server(socket_path: Path) -> None:
    server = HarnessServer(socket_path, lambda command: Response.ok(data=Pong()))
    timer = threading.Timer(0.3, server.start)
    timer.start()
    try:
        client = HarnessClient(socket_path)
        client.connect(retries=50, retry_delay=0.05)
        assert isinstance(client.ping().data, Pong)
        client.disconnect()
    finally:
        timer.join()
        server.stop()
        server.wait(timeout=2)


def test_send_without_connection_fails() -> None:
    with pytest.raises(ConnectionFailed, match="not connected"):
        HarnessClient("/tmp/framecheck-missing.sock").ping()
