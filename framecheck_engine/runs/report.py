"""Structured pass/fail report for visual verification runs."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from ..utils import now_utc_iso, serialize, write_json


class ResultStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: ResultStatus
    reference: str
    expected: str | None = None
    actual: str | None = None
    image_paths: tuple[str, ...] = ()
    duration: float = 0.0
    message: str | None = None


class ResultReporter:
    """Collects results and rewrites the JSON report after every record."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._results: list[CheckResult] = []

    @property
    def results(self) -> list[CheckResult]:
        with self._lock:
            return list(self._results)

    def record(self, result: CheckResult) -> None:
        with self._lock:
            self._results.append(result)
            snapshot = list(self._results)
        write_json(self.path, self._build_report(snapshot))

    def passed(self, name: str, reference: str, **details: Any) -> CheckResult:
        result = CheckResult(name=name, status=ResultStatus.PASS, reference=reference, **details)
        self.record(result)
        return result

    def failed(self, name: str, reference: str, **details: Any) -> CheckResult:
        result = CheckResult(name=name, status=ResultStatus.FAIL, reference=reference, **details)
        self.record(result)
        return result

    def report(self) -> dict[str, Any]:
        return self._build_report(self.results)

    def reset(self) -> None:
        with self._lock:
            self._results.clear()

    def _build_report(self, results: list[CheckResult]) -> dict[str, Any]:
        passed = sum(1 for result in results if result.status is ResultStatus.PASS)
        coverage: dict[str, dict[str, int]] = {}
        for result in results:
            bucket = coverage.setdefault(result.reference, {"passed": 0, "failed": 0})
            bucket["passed" if result.status is ResultStatus.PASS else "failed"] += 1
        return {
            "timestamp": now_utc_iso(),
            "total_tests": len(results),
            "passed": passed,
            "failed": len(results) - passed,
            "results": [serialize(result) for result in results],
            "coverage": coverage,
        }
