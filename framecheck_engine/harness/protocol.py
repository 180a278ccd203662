"""Harness wire protocol.

Every message is one JSON object terminated by a single `\\n`. Commands carry a
`type` tag plus their parameters; responses carry `status`, an optional
`message` and an optional `data` payload tagged by `kind`. Timestamps use a
fixed UTC format so protocol logs stay diffable.

    {"type": "load_file", "path": "/tmp/doc.md"}
    {"status": "ok", "message": "Loaded: /tmp/doc.md"}
    {"status": "ok", "data": {"kind": "pong"}}
"""

from __future__ import annotations

import json
import os
import types
import typing
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from datetime import datetime
from typing import Any, ClassVar, Mapping

from ..utils import format_timestamp, parse_timestamp
from .errors import CommandDecodeError, UnknownCommand, UnexpectedResponse


SOCKET_PATH_TEMPLATE = "/tmp/framecheck-harness-{pid}.sock"
STATUS_OK = "ok"
STATUS_ERROR = "error"
FRAME_DELIMITER = b"\n"


def socket_path_for_pid(pid: int) -> str:
    """Socket path a driver can derive from the application's process id."""
    return SOCKET_PATH_TEMPLATE.format(pid=int(pid))


def current_socket_path() -> str:
    return socket_path_for_pid(os.getpid())


# Value coding


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if is_dataclass(value) and not isinstance(value, type):
        return _encode_fields(value)
    if isinstance(value, Mapping):
        return {str(key): _encode_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode_value(item) for item in value]
    return value


def _encode_fields(obj: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for item in fields(obj):
        value = getattr(obj, item.name)
        if value is None:
            continue
        payload[item.name] = _encode_value(value)
    return payload


def _coerce(value: Any, hint: Any, where: str) -> Any:
    origin = typing.get_origin(hint)
    args = typing.get_args(hint)
    if origin in (typing.Union, types.UnionType):
        if value is None and type(None) in args:
            return None
        candidates = [arg for arg in args if arg is not type(None)]
        return _coerce(value, candidates[0], where)
    if hint is Any:
        return value
    if hint is bool:
        if not isinstance(value, bool):
            raise CommandDecodeError(f"{where}: expected boolean")
        return value
    if hint is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise CommandDecodeError(f"{where}: expected integer")
        return value
    if hint is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise CommandDecodeError(f"{where}: expected number")
        return float(value)
    if hint is str:
        if not isinstance(value, str):
            raise CommandDecodeError(f"{where}: expected string")
        return value
    if hint is datetime:
        if not isinstance(value, str):
            raise CommandDecodeError(f"{where}: expected timestamp string")
        try:
            return parse_timestamp(value)
        except ValueError as exc:
            raise CommandDecodeError(f"{where}: {exc}") from exc
    if origin is tuple:
        if not isinstance(value, list):
            raise CommandDecodeError(f"{where}: expected array")
        return tuple(_coerce(item, args[0], f"{where}[{idx}]") for idx, item in enumerate(value))
    if origin is dict:
        if not isinstance(value, dict):
            raise CommandDecodeError(f"{where}: expected object")
        return {str(key): _coerce(item, args[1], f"{where}.{key}") for key, item in value.items()}
    if isinstance(hint, type) and is_dataclass(hint):
        if not isinstance(value, dict):
            raise CommandDecodeError(f"{where}: expected object")
        return _decode_fields(hint, value, where)
    return value


def _decode_fields(cls: type, payload: Mapping[str, Any], where: str) -> Any:
    hints = typing.get_type_hints(cls)
    kwargs: dict[str, Any] = {}
    for item in fields(cls):
        if not item.init:
            continue
        if item.name in payload and payload[item.name] is not None:
            kwargs[item.name] = _coerce(payload[item.name], hints[item.name], f"{where}.{item.name}")
        elif item.default is MISSING and item.default_factory is MISSING:
            raise CommandDecodeError(f"{where}: missing field '{item.name}'")
    return cls(**kwargs)


def _encode_line(payload: Mapping[str, Any]) -> bytes:
    # json.dumps escapes control characters, so the only raw newline is the delimiter.
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8") + FRAME_DELIMITER


def _load_line(line: bytes | str) -> Any:
    if isinstance(line, bytes):
        line = line.decode("utf-8")
    return json.loads(line.strip())


# Commands


@dataclass(frozen=True)
class CaptureRegion:
    x: float
    y: float
    width: float
    height: float


COMMAND_TYPES: dict[str, type["Command"]] = {}


@dataclass(frozen=True)
class Command:
    type: ClassVar[str] = ""

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if cls.type:
            COMMAND_TYPES[cls.type] = cls

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        payload.update(_encode_fields(self))
        return payload


@dataclass(frozen=True)
class LoadFile(Command):
    type: ClassVar[str] = "load_file"
    path: str


@dataclass(frozen=True)
class SwitchMode(Command):
    type: ClassVar[str] = "switch_mode"
    mode: str


@dataclass(frozen=True)
class CycleTheme(Command):
    type: ClassVar[str] = "cycle_theme"


@dataclass(frozen=True)
class SetTheme(Command):
    type: ClassVar[str] = "set_theme"
    theme: str


@dataclass(frozen=True)
class ReloadFile(Command):
    type: ClassVar[str] = "reload_file"


@dataclass(frozen=True)
class CaptureWindow(Command):
    type: ClassVar[str] = "capture_window"
    output_path: str | None = None


@dataclass(frozen=True)
class CaptureRegionCommand(Command):
    type: ClassVar[str] = "capture_region"
    region: CaptureRegion
    output_path: str | None = None


@dataclass(frozen=True)
class StartFrameCapture(Command):
    """Timed capture: the response arrives once `duration` seconds of frames are on disk."""

    type: ClassVar[str] = "start_frame_capture"
    fps: int
    duration: float
    output_dir: str | None = None


@dataclass(frozen=True)
class StopFrameCapture(Command):
    type: ClassVar[str] = "stop_frame_capture"


@dataclass(frozen=True)
class BeginFrameCapture(Command):
    """Split capture: returns immediately, frames accumulate until `end_frame_capture`."""

    type: ClassVar[str] = "begin_frame_capture"
    fps: int
    output_dir: str | None = None


@dataclass(frozen=True)
class EndFrameCapture(Command):
    type: ClassVar[str] = "end_frame_capture"


@dataclass(frozen=True)
class GetWindowInfo(Command):
    type: ClassVar[str] = "get_window_info"


@dataclass(frozen=True)
class GetThemeColors(Command):
    type: ClassVar[str] = "get_theme_colors"


@dataclass(frozen=True)
class SetPreference(Command):
    type: ClassVar[str] = "set_preference"
    name: str
    enabled: bool


@dataclass(frozen=True)
class ScrollTo(Command):
    type: ClassVar[str] = "scroll_to"
    y_offset: float


@dataclass(frozen=True)
class ResizeWindow(Command):
    type: ClassVar[str] = "resize_window"
    width: float
    height: float


@dataclass(frozen=True)
class SetSidebarWidth(Command):
    type: ClassVar[str] = "set_sidebar_width"
    width: float


@dataclass(frozen=True)
class ToggleSidebar(Command):
    type: ClassVar[str] = "toggle_sidebar"


@dataclass(frozen=True)
class SimulateSelection(Command):
    type: ClassVar[str] = "simulate_selection"
    start: int
    end: int


@dataclass(frozen=True)
class Ping(Command):
    type: ClassVar[str] = "ping"


@dataclass(frozen=True)
class Quit(Command):
    type: ClassVar[str] = "quit"


def encode_command(command: Command) -> bytes:
    return _encode_line(command.to_payload())


def decode_command(line: bytes | str) -> Command:
    try:
        payload = _load_line(line)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CommandDecodeError(f"invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise CommandDecodeError("command must be a JSON object")
    tag = payload.get("type")
    if not isinstance(tag, str) or not tag:
        raise CommandDecodeError("command is missing its 'type' tag")
    cls = COMMAND_TYPES.get(tag)
    if cls is None:
        raise UnknownCommand(tag)
    return _decode_fields(cls, payload, tag)


# Response payloads


@dataclass(frozen=True)
class RGBColor:
    """Color with 0.0-1.0 components, as reported by the application."""

    red: float
    green: float
    blue: float


RESPONSE_KINDS: dict[str, type["ResponseData"]] = {}


@dataclass(frozen=True)
class ResponseData:
    kind: ClassVar[str] = ""

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if cls.kind:
            RESPONSE_KINDS[cls.kind] = cls

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind}
        payload.update(_encode_fields(self))
        return payload


@dataclass(frozen=True)
class CaptureResult(ResponseData):
    kind: ClassVar[str] = "capture"
    image_path: str
    width: int
    height: int
    scale_factor: float
    timestamp: datetime
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FrameCaptureResult(ResponseData):
    kind: ClassVar[str] = "frame_capture"
    frame_dir: str
    frame_count: int
    fps: int
    duration: float
    frame_paths: tuple[str, ...] = ()


@dataclass(frozen=True)
class WindowInfoResult(ResponseData):
    kind: ClassVar[str] = "window_info"
    width: float
    height: float
    x: float
    y: float
    scale_factor: float
    current_file_path: str | None = None
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ThemeColorsResult(ResponseData):
    kind: ClassVar[str] = "theme_colors"
    theme_name: str
    colors: dict[str, RGBColor] = field(default_factory=dict)


@dataclass(frozen=True)
class Pong(ResponseData):
    kind: ClassVar[str] = "pong"


@dataclass(frozen=True)
class Response:
    status: str
    message: str | None = None
    data: ResponseData | None = None

    @classmethod
    def ok(cls, message: str | None = None, data: ResponseData | None = None) -> "Response":
        return cls(status=STATUS_OK, message=message, data=data)

    @classmethod
    def error(cls, message: str) -> "Response":
        return cls(status=STATUS_ERROR, message=message)

    @property
    def is_ok(self) -> bool:
        return self.status == STATUS_OK

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status}
        if self.message is not None:
            payload["message"] = self.message
        if self.data is not None:
            payload["data"] = self.data.to_payload()
        return payload


def encode_response(response: Response) -> bytes:
    return _encode_line(response.to_payload())


def decode_response(line: bytes | str) -> Response:
    try:
        payload = _load_line(line)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise UnexpectedResponse(f"response is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise UnexpectedResponse("response must be a JSON object")
    status = payload.get("status")
    if status not in {STATUS_OK, STATUS_ERROR}:
        raise UnexpectedResponse(f"response has invalid status: {status!r}")
    message = payload.get("message")
    if message is not None and not isinstance(message, str):
        raise UnexpectedResponse("response message must be a string")
    data = None
    raw_data = payload.get("data")
    if raw_data is not None:
        if not isinstance(raw_data, dict):
            raise UnexpectedResponse("response data must be an object")
        kind = raw_data.get("kind")
        cls = RESPONSE_KINDS.get(kind) if isinstance(kind, str) else None
        if cls is None:
            raise UnexpectedResponse(f"unknown response data kind: {kind!r}")
        try:
            data = _decode_fields(cls, raw_data, kind)
        except CommandDecodeError as exc:
            raise UnexpectedResponse(str(exc)) from exc
    return Response(status=status, message=message, data=data)
