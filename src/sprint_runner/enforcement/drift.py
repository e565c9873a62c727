from __future__ import annotations

import logging
from collections.abc import Iterable

from sprint_runner.models import DriftReport

logger = logging.getLogger(__name__)


def _normalize(path: str) -> str:
    normalized = path.strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


class DriftDetector:
    """Measures how far an issue's changes stray outside its declared files."""

    def __init__(self, threshold: float = 0.0) -> None:
        self.threshold = threshold

    def check(self, changed_files: Iterable[str], expected_files: Iterable[str]) -> DriftReport:
        changed: list[str] = []
        for path in changed_files:
            normalized = _normalize(path)
            if normalized and normalized not in changed:
                changed.append(normalized)
        expected = {_normalize(path) for path in expected_files if path.strip()}
        unplanned = tuple(path for path in changed if path not in expected)
        total = len(changed)
        report = DriftReport(
            total_files_changed=total,
            planned_changes=total - len(unplanned),
            unplanned_changes=unplanned,
            drift_percentage=len(unplanned) / total if total else 0.0,
        )
        logger.debug(
            "Drift %.2f: %d of %d changed files unplanned",
            report.drift_percentage,
            len(unplanned),
            total,
        )
        return report

    def exceeds(self, report: DriftReport) -> bool:
        return report.drift_percentage > self.threshold

    def holistic(
        self, changed_by_issue: dict[int, Iterable[str]], expected_by_issue: dict[int, Iterable[str]]
    ) -> DriftReport:
        """Sprint-wide drift across every executed issue.

        Issues that declared no expected files count all of their changes as planned.
        """
        changed: list[str] = []
        expected: list[str] = []
        for number, files in changed_by_issue.items():
            files = list(files)
            declared = list(expected_by_issue.get(number, []))
            changed.extend(files)
            expected.extend(declared if declared else files)
        return self.check(changed, expected)
