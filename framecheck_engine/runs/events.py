"""Append-only harness event stream (JSONL)."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

from ..utils import now_utc_iso, serialize


@dataclass
class EventWriter:
    path: Path
    session_id: str
    source: str = "framecheck"
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, init=False)

    def emit(self, event_type: str, **payload: Any) -> dict[str, Any]:
        event: dict[str, Any] = {
            "type": event_type,
            "session_id": self.session_id,
            "source": self.source,
            "ts": now_utc_iso(),
        }
        event.update({key: serialize(value) for key, value in payload.items()})
        line = f"{json.dumps(event, sort_keys=True)}\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)
        return event

    def child(self, source: str) -> "EventWriter":
        """Writer sharing this stream's file under a different `source` label."""
        writer = EventWriter(self.path, self.session_id, source=source)
        writer._lock = self._lock
        return writer


def read_events(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    events: list[dict[str, Any]] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            events.append(payload)
    return events
