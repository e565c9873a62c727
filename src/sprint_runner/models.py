from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

STATE_VERSION = "1"

SprintPhase = Literal[
    "init",
    "refine",
    "plan",
    "execute",
    "review",
    "retro",
    "paused",
    "failed",
    "complete",
]
IssueStatus = Literal["completed", "failed"]
CheckCategory = Literal["test", "lint", "type", "build", "diff", "other"]

TERMINAL_PHASES: frozenset[str] = frozenset({"failed", "complete"})


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _int_list(values: Any) -> list[int]:
    if not isinstance(values, list):
        return []
    return [int(value) for value in values if isinstance(value, (int, str)) and str(value).isdigit()]


def _str_list(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    return [str(value) for value in values if str(value).strip()]


@dataclass(slots=True)
class SprintIssue:
    number: int
    title: str
    depends_on: list[int] = field(default_factory=list)
    acceptance_criteria: str = ""
    expected_files: list[str] = field(default_factory=list)
    points: int = 0
    body: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SprintIssue:
        # Planning agents answer in camelCase; persisted state uses snake_case.
        criteria = data.get("acceptance_criteria", data.get("acceptanceCriteria", ""))
        expected = data.get("expected_files", data.get("expectedFiles", []))
        return cls(
            number=int(data["number"]),
            title=str(data.get("title", "")),
            depends_on=_int_list(data.get("depends_on", data.get("dependsOn", []))),
            acceptance_criteria=str(criteria or ""),
            expected_files=_str_list(expected),
            points=int(data.get("points", 0) or 0),
            body=str(data.get("body", "") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "depends_on": list(self.depends_on),
            "acceptance_criteria": self.acceptance_criteria,
            "expected_files": list(self.expected_files),
            "points": self.points,
            "body": self.body,
        }


@dataclass(slots=True)
class SprintPlan:
    sprint_number: int
    issues: list[SprintIssue] = field(default_factory=list)
    rationale: str = ""
    estimated_points: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, sprint_number: int | None = None) -> SprintPlan:
        raw_issues = data.get("issues", data.get("sprint_issues", []))
        issues = [
            SprintIssue.from_dict(item) for item in raw_issues or [] if isinstance(item, dict)
        ]
        number = data.get("sprint_number", data.get("sprintNumber", sprint_number))
        estimated = data.get("estimated_points")
        if estimated is None:
            estimated = sum(issue.points for issue in issues)
        return cls(
            sprint_number=int(number if number is not None else 0),
            issues=issues,
            rationale=str(data.get("rationale", "") or ""),
            estimated_points=int(estimated),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sprint_number": self.sprint_number,
            "issues": [issue.to_dict() for issue in self.issues],
            "rationale": self.rationale,
            "estimated_points": self.estimated_points,
        }


@dataclass(slots=True, frozen=True)
class QualityCheck:
    name: str
    passed: bool
    detail: str
    category: CheckCategory = "other"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "detail": self.detail,
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QualityCheck:
        return cls(
            name=str(data["name"]),
            passed=bool(data["passed"]),
            detail=str(data.get("detail", "")),
            category=data.get("category", "other"),
        )


@dataclass(slots=True, frozen=True)
class QualityResult:
    passed: bool
    checks: tuple[QualityCheck, ...] = ()

    @classmethod
    def from_checks(cls, checks: list[QualityCheck]) -> QualityResult:
        return cls(passed=all(check.passed for check in checks), checks=tuple(checks))

    @property
    def failed_checks(self) -> list[QualityCheck]:
        return [check for check in self.checks if not check.passed]

    def to_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "checks": [check.to_dict() for check in self.checks]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QualityResult:
        checks = tuple(QualityCheck.from_dict(item) for item in data.get("checks", []))
        return cls(passed=bool(data.get("passed", False)), checks=checks)


@dataclass(slots=True, frozen=True)
class DriftReport:
    total_files_changed: int
    planned_changes: int
    unplanned_changes: tuple[str, ...]
    drift_percentage: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_files_changed": self.total_files_changed,
            "planned_changes": self.planned_changes,
            "unplanned_changes": list(self.unplanned_changes),
            "drift_percentage": self.drift_percentage,
        }


@dataclass(slots=True, frozen=True)
class ChallengerResult:
    approved: bool
    feedback: str


@dataclass(slots=True, frozen=True)
class DiffStat:
    lines_changed: int = 0
    files_changed: int = 0
    files: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class HuddleEntry:
    issue_number: int
    title: str
    status: IssueStatus
    quality_result: QualityResult
    duration_seconds: float
    files_changed: tuple[str, ...] = ()
    timestamp: str = field(default_factory=utcnow_iso)
    retry_count: int = 0
    points: int = 0
    branch: str = ""
    code_review: str | None = None
    error_message: str | None = None
    cleanup_warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_number": self.issue_number,
            "title": self.title,
            "status": self.status,
            "quality_result": self.quality_result.to_dict(),
            "duration_seconds": self.duration_seconds,
            "files_changed": list(self.files_changed),
            "timestamp": self.timestamp,
            "retry_count": self.retry_count,
            "points": self.points,
            "branch": self.branch,
            "code_review": self.code_review,
            "error_message": self.error_message,
            "cleanup_warning": self.cleanup_warning,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HuddleEntry:
        return cls(
            issue_number=int(data["issue_number"]),
            title=str(data.get("title", "")),
            status=data["status"],
            quality_result=QualityResult.from_dict(data.get("quality_result", {})),
            duration_seconds=float(data.get("duration_seconds", 0.0)),
            files_changed=tuple(data.get("files_changed", [])),
            timestamp=str(data.get("timestamp", "")),
            retry_count=int(data.get("retry_count", 0)),
            points=int(data.get("points", 0)),
            branch=str(data.get("branch", "")),
            code_review=data.get("code_review"),
            error_message=data.get("error_message"),
            cleanup_warning=data.get("cleanup_warning"),
        )


@dataclass(slots=True)
class ReviewResult:
    summary: str = ""
    demo_items: list[str] = field(default_factory=list)
    open_items: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewResult:
        return cls(
            summary=str(data.get("summary", "") or ""),
            demo_items=_str_list(data.get("demo_items", data.get("demoItems", []))),
            open_items=_str_list(data.get("open_items", data.get("openItems", []))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "demo_items": list(self.demo_items),
            "open_items": list(self.open_items),
        }


@dataclass(slots=True)
class Improvement:
    title: str
    description: str = ""
    auto_applicable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "auto_applicable": self.auto_applicable,
        }


@dataclass(slots=True)
class RetroResult:
    went_well: list[str] = field(default_factory=list)
    went_badly: list[str] = field(default_factory=list)
    improvements: list[Improvement] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetroResult:
        improvements: list[Improvement] = []
        for item in data.get("improvements", []) or []:
            if not isinstance(item, dict):
                continue
            improvements.append(
                Improvement(
                    title=str(item.get("title", "") or ""),
                    description=str(item.get("description", "") or ""),
                    auto_applicable=bool(
                        item.get("auto_applicable", item.get("autoApplicable", False))
                    ),
                )
            )
        return cls(
            went_well=_str_list(data.get("went_well", data.get("wentWell", []))),
            went_badly=_str_list(data.get("went_badly", data.get("wentBadly", []))),
            improvements=improvements,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "went_well": list(self.went_well),
            "went_badly": list(self.went_badly),
            "improvements": [item.to_dict() for item in self.improvements],
        }


@dataclass(slots=True)
class SprintMetrics:
    planned: int = 0
    completed: int = 0
    failed: int = 0
    points_planned: int = 0
    points_completed: int = 0
    avg_duration_seconds: float = 0.0
    first_pass_rate: int = 0
    drift_incidents: int = 0

    @property
    def velocity(self) -> int:
        return self.points_completed

    @classmethod
    def from_results(cls, results: list[HuddleEntry], drift_incidents: int = 0) -> SprintMetrics:
        planned = len(results)
        done = [entry for entry in results if entry.status == "completed"]
        first_pass = sum(1 for entry in results if entry.retry_count == 0)
        return cls(
            planned=planned,
            completed=len(done),
            failed=planned - len(done),
            points_planned=sum(entry.points for entry in results),
            points_completed=sum(entry.points for entry in done),
            avg_duration_seconds=(
                round(sum(entry.duration_seconds for entry in results) / planned, 1)
                if planned
                else 0.0
            ),
            first_pass_rate=round(first_pass * 100 / planned) if planned else 0,
            drift_incidents=drift_incidents,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "planned": self.planned,
            "completed": self.completed,
            "failed": self.failed,
            "points_planned": self.points_planned,
            "points_completed": self.points_completed,
            "velocity": self.velocity,
            "avg_duration_seconds": self.avg_duration_seconds,
            "first_pass_rate": self.first_pass_rate,
            "drift_incidents": self.drift_incidents,
        }


@dataclass(slots=True)
class SprintState:
    sprint_number: int
    phase: SprintPhase = "init"
    started_at: str = field(default_factory=utcnow_iso)
    plan: SprintPlan | None = None
    results: list[HuddleEntry] = field(default_factory=list)
    drift_incidents: int = 0
    version: str = STATE_VERSION
    phase_before_pause: SprintPhase | None = None
    error: str | None = None
    review: ReviewResult | None = None
    retro: RetroResult | None = None
    refined_issues: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def completed_issue_numbers(self) -> set[int]:
        return {entry.issue_number for entry in self.results}

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "sprint_number": self.sprint_number,
            "phase": self.phase,
            "started_at": self.started_at,
            "plan": self.plan.to_dict() if self.plan else None,
            "results": [entry.to_dict() for entry in self.results],
            "drift_incidents": self.drift_incidents,
            "phase_before_pause": self.phase_before_pause,
            "error": self.error,
            "review": self.review.to_dict() if self.review else None,
            "retro": self.retro.to_dict() if self.retro else None,
            "refined_issues": list(self.refined_issues),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SprintState:
        plan = data.get("plan")
        review = data.get("review")
        retro = data.get("retro")
        return cls(
            sprint_number=int(data["sprint_number"]),
            phase=data.get("phase", "init"),
            started_at=str(data.get("started_at", "")),
            plan=SprintPlan.from_dict(plan) if isinstance(plan, dict) else None,
            results=[HuddleEntry.from_dict(item) for item in data.get("results", [])],
            drift_incidents=int(data.get("drift_incidents", 0)),
            version=str(data.get("version", "")),
            phase_before_pause=data.get("phase_before_pause"),
            error=data.get("error"),
            review=ReviewResult.from_dict(review) if isinstance(review, dict) else None,
            retro=RetroResult.from_dict(retro) if isinstance(retro, dict) else None,
            refined_issues=list(data.get("refined_issues", [])),
        )
