"""Harness configuration resolved once at process start."""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, replace
from pathlib import Path

from .harness.protocol import current_socket_path
from .runs.events import EventWriter
from .utils import getenv_flag, getenv_float, getenv_int, load_dotenv


DEFAULT_CAPTURE_DIR = "/tmp/framecheck-captures"
DEFAULT_FRAME_DIR = "/tmp/framecheck-frames"
DEFAULT_SCALE_FACTOR = 2.0
DEFAULT_CONNECT_RETRIES = 20
DEFAULT_RETRY_DELAY_S = 0.25


@dataclass(frozen=True)
class HarnessConfig:
    socket_path: Path
    capture_dir: Path = Path(DEFAULT_CAPTURE_DIR)
    frame_dir: Path = Path(DEFAULT_FRAME_DIR)
    events_path: Path | None = None
    scale_factor: float = DEFAULT_SCALE_FACTOR
    connect_retries: int = DEFAULT_CONNECT_RETRIES
    retry_delay_s: float = DEFAULT_RETRY_DELAY_S

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "HarnessConfig":
        if dotenv:
            load_dotenv()
        raw_socket = os.getenv("FRAMECHECK_SOCKET_PATH") or current_socket_path()
        raw_events = os.getenv("FRAMECHECK_EVENTS_PATH")
        if getenv_flag("FRAMECHECK_DISABLE_EVENTS"):
            raw_events = None
        return cls(
            socket_path=Path(raw_socket).expanduser(),
            capture_dir=Path(os.getenv("FRAMECHECK_CAPTURE_DIR") or DEFAULT_CAPTURE_DIR).expanduser(),
            frame_dir=Path(os.getenv("FRAMECHECK_FRAME_DIR") or DEFAULT_FRAME_DIR).expanduser(),
            events_path=Path(raw_events).expanduser() if raw_events else None,
            scale_factor=max(0.1, getenv_float("FRAMECHECK_SCALE_FACTOR", DEFAULT_SCALE_FACTOR)),
            connect_retries=max(1, getenv_int("FRAMECHECK_CONNECT_RETRIES", DEFAULT_CONNECT_RETRIES)),
            retry_delay_s=max(0.0, getenv_float("FRAMECHECK_RETRY_DELAY_S", DEFAULT_RETRY_DELAY_S)),
        )

    def with_socket(self, socket_path: str | Path) -> "HarnessConfig":
        return replace(self, socket_path=Path(socket_path).expanduser())

    def event_writer(self, source: str, session_id: str | None = None) -> EventWriter | None:
        if self.events_path is None:
            return None
        return EventWriter(self.events_path, session_id or str(uuid.uuid4()), source=source)
