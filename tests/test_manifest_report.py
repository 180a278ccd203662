from __future__ import annotations

import json
from pathlib import Path

from PIL import Image

from framecheck_engine.harness.protocol import CaptureResult, FrameCaptureResult
from framecheck_engine.runs.manifest import CaptureManifest
from framecheck_engine.runs.report import CheckResult, ResultReporter, ResultStatus
from framecheck_engine.utils import parse_timestamp


def _png(path: Path, color: tuple[int, int, int], size: tuple[int, int] = (8, 6)) -> Path:
    Image.new("RGB", size, color).save(path)
    return path


def test_manifest_round_trip(tmp_path: Path) -> None:
    image = _png(tmp_path / "heading.png", (10, 10, 10))
    manifest = CaptureManifest(tmp_path / "manifest.json")
    entry = manifest.add_image(image, scale_factor=2.0, tags={"theme": "dark"})
    assert entry.capture_id == "c1"
    assert (entry.width, entry.height) == (8, 6)
    manifest.save()

    loaded = CaptureManifest.load(tmp_path / "manifest.json")
    assert loaded.manifest_id == manifest.manifest_id
    assert len(loaded.entries) == 1
    restored = loaded.find(image)
    assert restored is not None
    assert restored.sha256 == entry.sha256
    assert restored.tags == {"theme": "dark"}
    assert restored.scale_factor == 2.0


def test_manifest_load_tolerates_missing_and_malformed(tmp_path: Path) -> None:
    assert CaptureManifest.load(tmp_path / "absent.json").entries == []
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"captures": [{"sha256": "x"}, "junk"]}), encoding="utf-8")
    assert CaptureManifest.load(bad).entries == []


def test_add_capture_merges_tags_and_keeps_timestamp(tmp_path: Path) -> None:
    image = _png(tmp_path / "window.png", (1, 2, 3))
    result = CaptureResult(
        image_path=str(image),
        width=8,
        height=6,
        scale_factor=2.0,
        timestamp=parse_timestamp("2026-01-02T03:04:05.000006Z"),
        tags={"theme": "dark", "mode": "preview"},
    )
    manifest = CaptureManifest(tmp_path / "manifest.json")
    entry = manifest.add_capture(result, tags={"mode": "split"})
    assert entry.tags == {"theme": "dark", "mode": "split"}
    assert entry.captured_at == "2026-01-02T03:04:05.000006Z"


def test_add_frame_capture_tags_each_frame(tmp_path: Path) -> None:
    paths = tuple(str(_png(tmp_path / f"frame_{idx:04d}.png", (idx, idx, idx))) for idx in range(3))
    result = FrameCaptureResult(frame_dir=str(tmp_path), frame_count=3, fps=60, duration=0.05, frame_paths=paths)
    manifest = CaptureManifest(tmp_path / "manifest.json")
    entries = manifest.add_frame_capture(result, scale_factor=2.0, tags={"check": "orb"})
    assert [entry.capture_id for entry in entries] == ["c1", "c2", "c3"]
    assert entries[2].tags == {"check": "orb", "sequence": str(tmp_path), "frame_index": "2", "fps": "60"}


def test_manifest_diff_by_file_name(tmp_path: Path) -> None:
    base_dir = tmp_path / "base"
    head_dir = tmp_path / "head"
    base_dir.mkdir()
    head_dir.mkdir()
    baseline = CaptureManifest(base_dir / "manifest.json")
    baseline.add_image(_png(base_dir / "same.png", (0, 0, 0)))
    baseline.add_image(_png(base_dir / "changed.png", (0, 0, 0)))
    baseline.add_image(_png(base_dir / "gone.png", (0, 0, 0)))
    current = CaptureManifest(head_dir / "manifest.json")
    current.add_image(_png(head_dir / "same.png", (0, 0, 0)))
    current.add_image(_png(head_dir / "changed.png", (255, 0, 0)))
    current.add_image(_png(head_dir / "new.png", (0, 0, 0)))
    assert current.diff(baseline) == {"added": ["new.png"], "removed": ["gone.png"], "changed": ["changed.png"]}


def test_reporter_rewrites_report_after_each_result(tmp_path: Path) -> None:
    report_path = tmp_path / "report.json"
    reporter = ResultReporter(report_path)
    reporter.passed("heading spacing", "typography", expected="24", actual="24")
    first = json.loads(report_path.read_text(encoding="utf-8"))
    assert first["total_tests"] == 1
    assert first["passed"] == 1

    reporter.failed("orb pulse", "animation", expected="12 cpm", actual="0 cpm", message="orb is stationary")
    reporter.record(CheckResult(name="sidebar", status=ResultStatus.PASS, reference="layout"))
    report = json.loads(report_path.read_text(encoding="utf-8"))
    assert (report["total_tests"], report["passed"], report["failed"]) == (3, 2, 1)
    assert report["coverage"] == {
        "animation": {"passed": 0, "failed": 1},
        "layout": {"passed": 1, "failed": 0},
        "typography": {"passed": 1, "failed": 0},
    }
    assert report["results"][1]["status"] == "fail"
    assert report["results"][1]["message"] == "orb is stationary"
    assert report["timestamp"].endswith("Z")


def test_reporter_reset(tmp_path: Path) -> None:
    reporter = ResultReporter(tmp_path / "report.json")
    reporter.passed("a", "ref")
    reporter.reset()
    assert reporter.results == []
    assert reporter.report()["total_tests"] == 0
