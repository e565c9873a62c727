from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from sprint_runner.models import HuddleEntry, RetroResult

logger = logging.getLogger(__name__)

VELOCITY_HEADER = "\n".join(
    [
        "# Velocity Tracker",
        "",
        "| Sprint | Date | Goal | Planned | Done | Carry | Hours | Issues/Hr | Notes |",
        "|--------|------|------|---------|------|-------|-------|-----------|-------|",
        "",
    ]
)


def format_duration(seconds: float) -> str:
    total = round(seconds)
    if total < 60:
        return f"{total}s"
    minutes, remaining = divmod(total, 60)
    return f"{minutes}m {remaining}s"


def _status_icon(passed: bool) -> str:
    return "✅" if passed else "❌"


def _check_lines(entry: HuddleEntry) -> list[str]:
    return [
        f"  - {_status_icon(check.passed)} {check.name}: {check.detail}"
        for check in entry.quality_result.checks
    ]


def format_huddle_comment(entry: HuddleEntry) -> str:
    quality = "PASSED" if entry.quality_result.passed else "FAILED"
    lines = [
        f"### {_status_icon(entry.status == 'completed')} Huddle: #{entry.issue_number} {entry.title}",
        "",
        f"**Status**: {entry.status} | **Duration**: {format_duration(entry.duration_seconds)}"
        f" | **Quality**: {quality} | **Retries**: {entry.retry_count}",
    ]
    if entry.error_message:
        lines.extend(["", f"**Error**: {entry.error_message}"])
    if entry.quality_result.checks:
        lines.extend(["", "**Quality Checks**:", *_check_lines(entry)])
    elif entry.status == "failed":
        lines.extend(["", "**Quality Checks**: _No diagnostic data available_"])
    if entry.code_review:
        lines.extend(["", "**Challenger**:", entry.code_review])
    lines.extend(["", f"**Files Changed** ({len(entry.files_changed)}):"])
    lines.extend(f"  - `{path}`" for path in entry.files_changed)
    if entry.cleanup_warning:
        lines.extend(["", entry.cleanup_warning])
    lines.extend(["", f"_{entry.timestamp}_"])
    return "\n".join(lines)


def format_sprint_log_entry(entry: HuddleEntry) -> str:
    quality = "PASSED" if entry.quality_result.passed else "FAILED"
    lines = [
        f"### {_status_icon(entry.status == 'completed')} #{entry.issue_number}: {entry.title}",
        "",
        f"- **Status**: {entry.status}",
        f"- **Duration**: {format_duration(entry.duration_seconds)}",
        f"- **Quality**: {quality}",
        f"- **Files changed**: {len(entry.files_changed)}",
        f"- **Retries**: {entry.retry_count}",
    ]
    if entry.error_message:
        lines.append(f"- **Error**: {entry.error_message}")
    if entry.quality_result.checks:
        lines.extend(["", "**Quality Checks**:", *_check_lines(entry)])
    elif entry.status == "failed":
        lines.extend(["", "**Quality Checks**: _No diagnostic data available_"])
    if entry.cleanup_warning:
        lines.extend(["", entry.cleanup_warning])
    lines.extend(["", f"_{entry.timestamp}_", ""])
    return "\n".join(lines)


class SprintLog:
    """Markdown artifacts under ``docs/sprints`` for one sprint."""

    def __init__(self, project_root: Path, slug: str, prefix: str, sprint_number: int) -> None:
        self.directory = project_root / "docs" / "sprints"
        self.slug = slug
        self.prefix = prefix
        self.sprint_number = sprint_number

    @property
    def path(self) -> Path:
        return self.directory / f"{self.slug}-{self.sprint_number}-log.md"

    def retro_path(self, sprint_number: int | None = None) -> Path:
        number = self.sprint_number if sprint_number is None else sprint_number
        return self.directory / f"{self.slug}-{number}-retro.md"

    def create(self, goal: str, planned_count: int) -> Path:
        date = datetime.now(UTC).date().isoformat()
        content = "\n".join(
            [
                f"# {self.prefix} {self.sprint_number} Log ({date})",
                "",
                f"**Goal**: {goal}",
                f"**Planned**: {planned_count} issues",
                "",
                "## Huddles",
                "",
            ]
        )
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            self.path.write_text(content, encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to write sprint log %s: %s", self.path, exc)
        return self.path

    def append(self, text: str) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(text + "\n")
        except OSError as exc:
            logger.warning("Failed to append to sprint log %s: %s", self.path, exc)

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8") if self.path.exists() else ""

    def write_retro(self, retro: RetroResult) -> Path:
        lines = [f"# {self.prefix} {self.sprint_number} Retro", "", "## Went well"]
        lines.extend(f"- {item}" for item in retro.went_well)
        lines.extend(["", "## Went badly"])
        lines.extend(f"- {item}" for item in retro.went_badly)
        lines.extend(["", "## Improvements"])
        lines.extend(f"- {item.title}: {item.description}" for item in retro.improvements)
        path = self.retro_path()
        self.directory.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    def previous_retro(self) -> str:
        path = self.retro_path(self.sprint_number - 1)
        return path.read_text(encoding="utf-8") if path.exists() else ""


@dataclass(slots=True)
class VelocityEntry:
    sprint: int
    date: str
    goal: str
    planned: int
    done: int
    carry: int
    hours: float
    issues_per_hour: float
    notes: str = ""

    def to_row(self) -> str:
        goal = self.goal.replace("|", "/").replace("\n", " ")
        return (
            f"| {self.sprint} | {self.date} | {goal} | {self.planned} | {self.done} | "
            f"{self.carry} | {self.hours} | {self.issues_per_hour} | {self.notes} |"
        )


class VelocityTracker:
    def __init__(self, project_root: Path) -> None:
        self.path = project_root / "docs" / "sprints" / "velocity.md"

    def read(self) -> list[VelocityEntry]:
        if not self.path.exists():
            return []
        entries: list[VelocityEntry] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.startswith("| "):
                continue
            cols = [col.strip() for col in line.strip().strip("|").split("|")]
            if len(cols) < 8 or not cols[0].isdigit():
                continue
            try:
                entries.append(
                    VelocityEntry(
                        sprint=int(cols[0]),
                        date=cols[1],
                        goal=cols[2],
                        planned=int(cols[3]),
                        done=int(cols[4]),
                        carry=int(cols[5]),
                        hours=float(cols[6]),
                        issues_per_hour=float(cols[7]),
                        notes=cols[8] if len(cols) > 8 else "",
                    )
                )
            except ValueError:
                logger.warning("Skipping malformed velocity row: %s", line)
        return entries

    def record(self, entry: VelocityEntry) -> None:
        """Insert or replace the row for ``entry.sprint``."""
        entries = [existing for existing in self.read() if existing.sprint != entry.sprint]
        entries.append(entry)
        entries.sort(key=lambda item: item.sprint)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                VELOCITY_HEADER + "\n".join(item.to_row() for item in entries) + "\n",
                encoding="utf-8",
            )
        except OSError as exc:
            logger.warning("Failed to write velocity data %s: %s", self.path, exc)
