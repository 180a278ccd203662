"""Capture manifest for downstream image diffing."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from PIL import Image

from ..harness.protocol import CaptureResult, FrameCaptureResult
from ..utils import file_sha256, format_timestamp, now_utc_iso, read_json, write_json


@dataclass
class CaptureEntry:
    capture_id: str
    image_path: str
    sha256: str
    width: int
    height: int
    scale_factor: float
    captured_at: str
    tags: dict[str, str] = field(default_factory=dict)


class CaptureManifest:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.schema_version = 1
        self.manifest_id = str(uuid.uuid4())
        self.created_at = now_utc_iso()
        self.entries: list[CaptureEntry] = []

    @classmethod
    def load(cls, path: Path) -> "CaptureManifest":
        payload = read_json(path, {})
        manifest = cls(path)
        if not isinstance(payload, dict):
            return manifest
        manifest.schema_version = payload.get("schema_version", 1)
        manifest.manifest_id = payload.get("manifest_id", manifest.manifest_id)
        manifest.created_at = payload.get("created_at", manifest.created_at)
        entries = payload.get("captures", [])
        if isinstance(entries, list):
            for item in entries:
                if not isinstance(item, dict) or not item.get("image_path"):
                    continue
                manifest.entries.append(
                    CaptureEntry(
                        capture_id=item.get("capture_id", ""),
                        image_path=item["image_path"],
                        sha256=item.get("sha256", ""),
                        width=int(item.get("width", 0)),
                        height=int(item.get("height", 0)),
                        scale_factor=float(item.get("scale_factor", 1.0)),
                        captured_at=item.get("captured_at", ""),
                        tags=dict(item.get("tags") or {}),
                    )
                )
        return manifest

    def _next_capture_id(self) -> str:
        return f"c{len(self.entries) + 1}"

    def add_image(
        self,
        image_path: Path | str,
        *,
        scale_factor: float = 1.0,
        tags: Mapping[str, str] | None = None,
        captured_at: str | None = None,
    ) -> CaptureEntry:
        path = Path(image_path)
        with Image.open(path) as image:
            width, height = image.size
        entry = CaptureEntry(
            capture_id=self._next_capture_id(),
            image_path=str(path),
            sha256=file_sha256(path),
            width=width,
            height=height,
            scale_factor=scale_factor,
            captured_at=captured_at or now_utc_iso(),
            tags=dict(tags or {}),
        )
        self.entries.append(entry)
        return entry

    def add_capture(self, result: CaptureResult, tags: Mapping[str, str] | None = None) -> CaptureEntry:
        merged = dict(result.tags)
        merged.update(tags or {})
        return self.add_image(
            result.image_path,
            scale_factor=result.scale_factor,
            tags=merged,
            captured_at=format_timestamp(result.timestamp),
        )

    def add_frame_capture(
        self,
        result: FrameCaptureResult,
        *,
        scale_factor: float = 1.0,
        tags: Mapping[str, str] | None = None,
    ) -> list[CaptureEntry]:
        added = []
        for index, frame_path in enumerate(result.frame_paths):
            frame_tags = dict(tags or {})
            frame_tags["sequence"] = result.frame_dir
            frame_tags["frame_index"] = str(index)
            frame_tags["fps"] = str(result.fps)
            added.append(self.add_image(frame_path, scale_factor=scale_factor, tags=frame_tags))
        return added

    def find(self, image_path: Path | str) -> CaptureEntry | None:
        target = str(image_path)
        for entry in self.entries:
            if entry.image_path == target:
                return entry
        return None

    def diff(self, baseline: "CaptureManifest") -> dict[str, list[str]]:
        """Compare against a baseline manifest by image file name."""
        current = {Path(entry.image_path).name: entry for entry in self.entries}
        previous = {Path(entry.image_path).name: entry for entry in baseline.entries}
        return {
            "added": sorted(set(current) - set(previous)),
            "removed": sorted(set(previous) - set(current)),
            "changed": sorted(
                name for name in set(current) & set(previous) if current[name].sha256 != previous[name].sha256
            ),
        }

    def save(self) -> None:
        payload = {
            "schema_version": self.schema_version,
            "manifest_id": self.manifest_id,
            "created_at": self.created_at,
            "captures": [self._serialize_entry(entry) for entry in self.entries],
        }
        write_json(self.path, payload)

    def _serialize_entry(self, entry: CaptureEntry) -> dict[str, Any]:
        return {
            "capture_id": entry.capture_id,
            "image_path": entry.image_path,
            "sha256": entry.sha256,
            "width": entry.width,
            "height": entry.height,
            "scale_factor": entry.scale_factor,
            "captured_at": entry.captured_at,
            "tags": entry.tags,
        }
