"""framecheck CLI entrypoints."""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import replace
from pathlib import Path
from typing import Any

from .config import HarnessConfig
from .eval.color import PixelColor, parse_color
from .eval.frame_analyzer import AnimatableProperty, FrameAnalyzer
from .eval.geometry import Rect
from .harness.client import HarnessClient
from .harness.errors import HarnessError
from .harness.protocol import CaptureRegion, decode_command, socket_path_for_pid
from .runs.manifest import CaptureManifest
from .utils import load_dotenv, serialize


def _parse_rect(raw: str) -> Rect:
    parts = [part.strip() for part in raw.split(",")]
    if len(parts) != 4:
        raise argparse.ArgumentTypeError(f"expected x,y,width,height, got {raw!r}")
    try:
        x, y, width, height = (float(part) for part in parts)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid rect {raw!r}: {exc}") from exc
    return Rect(x, y, width, height)


def _parse_color_arg(raw: str) -> PixelColor:
    try:
        return parse_color(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _parse_tag(raw: str) -> tuple[str, str]:
    if "=" not in raw:
        raise argparse.ArgumentTypeError(f"expected key=value, got {raw!r}")
    key, value = raw.split("=", 1)
    return key.strip(), value.strip()


def _add_socket_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--socket", help="Harness socket path")
    parser.add_argument("--pid", type=int, help="Application pid (derives the socket path)")
    parser.add_argument("--events", help="Append client events to this JSONL file")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="framecheck", description="framecheck visual verification harness")
    sub = parser.add_subparsers(dest="command")

    ping = sub.add_parser("ping", help="Check that the application answers")
    _add_socket_args(ping)
    ping.add_argument("--timeout", type=float, default=5.0)

    send = sub.add_parser("send", help="Send one raw JSON command")
    _add_socket_args(send)
    send.add_argument("--command", dest="payload", required=True, help='e.g. {"type": "cycle_theme"}')
    send.add_argument("--timeout", type=float, default=30.0)

    capture = sub.add_parser("capture", help="Capture the window or a region")
    _add_socket_args(capture)
    capture.add_argument("--out", help="Output PNG path")
    capture.add_argument("--region", type=_parse_rect, help="x,y,width,height in points")
    capture.add_argument("--timeout", type=float, default=10.0)

    analyze = sub.add_parser("analyze", help="Measure animation timing from captured frames")
    kinds = analyze.add_subparsers(dest="analysis")

    def frames_parser(name: str, help_text: str) -> argparse.ArgumentParser:
        item = kinds.add_parser(name, help=help_text)
        item.add_argument("--frames", required=True, help="Directory of frame_NNNN.png files")
        item.add_argument("--fps", type=float, required=True)
        item.add_argument("--scale", type=float, default=2.0)
        return item

    pulse = frames_parser("pulse", "Oscillation rate of a region's brightness")
    pulse.add_argument("--region", type=_parse_rect, required=True)
    pulse.add_argument("--threshold", type=float, default=10.0, help="Stationary amplitude threshold")

    transition = frames_parser("transition", "10%-90% duration of a color transition")
    transition.add_argument("--region", type=_parse_rect, required=True)
    transition.add_argument("--start-color", dest="start_color", type=_parse_color_arg, required=True)
    transition.add_argument("--end-color", dest="end_color", type=_parse_color_arg, required=True)

    spring = frames_parser("spring", "Spring response, damping and settle time")
    spring.add_argument("--region", type=_parse_rect, required=True)
    spring.add_argument(
        "--property",
        dest="prop",
        choices=[item.value for item in AnimatableProperty],
        default=AnimatableProperty.OPACITY.value,
    )

    stagger = frames_parser("stagger", "Appearance delays of several regions")
    stagger.add_argument("--region", dest="regions", type=_parse_rect, action="append", required=True)
    stagger.add_argument("--background", type=_parse_color_arg, required=True)
    stagger.add_argument("--threshold", type=int, default=20)

    manifest = sub.add_parser("manifest", help="Write a capture manifest for a set of images")
    manifest.add_argument("--out", required=True, help="Manifest JSON path")
    manifest.add_argument("--scale", type=float, default=2.0)
    manifest.add_argument("--tag", dest="tags", type=_parse_tag, action="append", default=[])
    manifest.add_argument("--baseline", help="Print differences against this manifest")
    manifest.add_argument("images", nargs="+")

    return parser


def _resolve_socket(args: argparse.Namespace) -> Path | None:
    if args.socket:
        return Path(args.socket).expanduser()
    if args.pid:
        return Path(socket_path_for_pid(args.pid))
    raw = os.getenv("FRAMECHECK_SOCKET_PATH")
    return Path(raw).expanduser() if raw else None


def _connect(args: argparse.Namespace) -> HarnessClient | None:
    socket_path = _resolve_socket(args)
    if socket_path is None:
        print("No socket: pass --socket or --pid, or set FRAMECHECK_SOCKET_PATH.")
        return None
    config = HarnessConfig.from_env(dotenv=False).with_socket(socket_path)
    if args.events:
        config = replace(config, events_path=Path(args.events))
    client = HarnessClient(socket_path, events=config.event_writer("framecheck-cli"))
    client.connect(retries=config.connect_retries, retry_delay=config.retry_delay_s)
    return client


def _print_json(payload: Any) -> None:
    print(json.dumps(serialize(payload), indent=2, sort_keys=True))


def _handle_ping(args: argparse.Namespace) -> int:
    try:
        client = _connect(args)
        if client is None:
            return 2
        with client:
            response = client.ping(timeout=args.timeout)
    except HarnessError as exc:
        print(f"Ping failed: {exc}")
        return 1
    if not response.is_ok:
        print(f"Ping failed: {response.message}")
        return 1
    print("pong")
    return 0


def _handle_send(args: argparse.Namespace) -> int:
    try:
        command = decode_command(args.payload)
    except HarnessError as exc:
        print(f"Invalid command: {exc}")
        return 2
    try:
        client = _connect(args)
        if client is None:
            return 2
        with client:
            response = client.send(command, timeout=args.timeout)
    except HarnessError as exc:
        print(f"Send failed: {exc}")
        return 1
    _print_json(response.to_payload())
    return 0 if response.is_ok else 1


def _handle_capture(args: argparse.Namespace) -> int:
    try:
        client = _connect(args)
        if client is None:
            return 2
        with client:
            if args.region is not None:
                region = CaptureRegion(args.region.x, args.region.y, args.region.width, args.region.height)
                response = client.capture_region(region, output_path=args.out, timeout=args.timeout)
            else:
                response = client.capture_window(output_path=args.out, timeout=args.timeout)
    except HarnessError as exc:
        print(f"Capture failed: {exc}")
        return 1
    _print_json(response.to_payload())
    return 0 if response.is_ok else 1


def _frame_paths(frame_dir: Path) -> list[Path]:
    paths = sorted(frame_dir.glob("frame_*.png"))
    return paths or sorted(frame_dir.glob("*.png"))


def _handle_analyze(args: argparse.Namespace) -> int:
    if not args.analysis:
        print("Choose an analysis: pulse, transition, spring or stagger.")
        return 2
    frame_dir = Path(args.frames)
    paths = _frame_paths(frame_dir)
    if not paths:
        print(f"No frames found in {frame_dir}")
        return 1
    analyzer = FrameAnalyzer.from_paths(paths, fps=args.fps, scale_factor=args.scale)
    if args.analysis == "pulse":
        result: Any = analyzer.measure_pulse(args.region, stationary_threshold=args.threshold)
    elif args.analysis == "transition":
        result = analyzer.measure_transition_duration(args.region, args.start_color, args.end_color)
    elif args.analysis == "spring":
        result = analyzer.measure_spring_curve(args.region, AnimatableProperty(args.prop))
    else:
        result = {"delays": analyzer.measure_stagger_delays(args.regions, args.background, threshold=args.threshold)}
    _print_json(result)
    return 0


def _handle_manifest(args: argparse.Namespace) -> int:
    manifest = CaptureManifest(Path(args.out))
    tags = dict(args.tags)
    for image in args.images:
        path = Path(image)
        if not path.exists():
            print(f"Missing image: {path}")
            return 1
        manifest.add_image(path, scale_factor=args.scale, tags=tags)
    manifest.save()
    print(f"Wrote {len(manifest.entries)} captures to {manifest.path}")
    if args.baseline:
        _print_json(manifest.diff(CaptureManifest.load(Path(args.baseline))))
    return 0


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "ping":
        raise SystemExit(_handle_ping(args))
    if args.command == "send":
        raise SystemExit(_handle_send(args))
    if args.command == "capture":
        raise SystemExit(_handle_capture(args))
    if args.command == "analyze":
        raise SystemExit(_handle_analyze(args))
    if args.command == "manifest":
        raise SystemExit(_handle_manifest(args))
    parser.print_help()
    raise SystemExit(1)


if __name__ == "__main__":
    main()
