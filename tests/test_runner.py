import asyncio
import json
import re
from pathlib import Path
from typing import Any

import pytest

from sprint_runner.config import RunnerConfig
from sprint_runner.enforcement import QualityGate
from sprint_runner.errors import (
    InvalidTransitionError,
    LockContentionError,
    SessionError,
    SessionTimeoutError,
)
from sprint_runner.events import SprintEventBus
from sprint_runner.git import GitWorkspace, MergeResult
from sprint_runner.models import DiffStat, QualityCheck, QualityResult, SprintIssue, SprintPlan
from sprint_runner.runner import SprintRunner, run_sprint_loop
from sprint_runner.sessions import SessionOptions, SessionProvider
from sprint_runner.state import StateStore
from sprint_runner.tracker import IssueTracker, Milestone, TrackerIssue

REVIEW_JSON = '{"summary": "Sprint went fine", "demoItems": [], "openItems": []}'
RETRO_JSON = '{"wentWell": ["Focus"], "wentBadly": [], "improvements": []}'


class AgentProvider(SessionProvider):
    def __init__(self, challenger_replies: list[str] | None = None) -> None:
        self.challenger_replies = list(challenger_replies or [])
        self.worker_prompts: list[str] = []
        self.open: set[str] = set()
        self._count = 0

    async def create_session(self, options: SessionOptions) -> str:
        self._count += 1
        session_id = f"{options.role}-{self._count}"
        self.open.add(session_id)
        return session_id

    async def send_prompt(self, session_id: str, prompt: str, timeout: float) -> str:
        await asyncio.sleep(0)
        role = session_id.rsplit("-", 1)[0]
        if role == "challenger":
            return self.challenger_replies.pop(0) if self.challenger_replies else "APPROVED: fine"
        if role == "review":
            return REVIEW_JSON
        if role == "retro":
            return RETRO_JSON
        self.worker_prompts.append(prompt)
        return "Committed the change."

    async def end_session(self, session_id: str) -> None:
        self.open.discard(session_id)


class BoardTracker(IssueTracker):
    def __init__(self, labels: dict[int, list[str]] | None = None) -> None:
        super().__init__()
        self.labels = labels or {}
        self.statuses: dict[int, list[str]] = {}
        self.comments: dict[int, list[str]] = {}
        self.blocked: dict[int, str] = {}
        self.open_milestones: list[str] = []
        self.closed_milestones: list[str] = []

    async def get_issue(self, number: int) -> TrackerIssue:
        return TrackerIssue(number=number, title=f"Issue {number}", body=f"Body of {number}")

    async def list_issues(self, **kwargs: Any) -> list[TrackerIssue]:
        return []

    async def get_labels(self, number: int) -> list[str]:
        return list(self.labels.get(number, []))

    async def set_label(self, number: int, label: str) -> None:
        self.labels.setdefault(number, []).append(label)

    async def set_status(self, number: int, label: str) -> None:
        self.statuses.setdefault(number, []).append(label)

    async def add_comment(self, number: int, body: str) -> None:
        self.comments.setdefault(number, []).append(body)

    async def set_blocked_status(self, number: int, reason: str) -> None:
        self.blocked[number] = reason

    async def get_milestone(self, title: str) -> Milestone | None:
        return Milestone(number=1, title=title)

    async def set_milestone(self, number: int, title: str) -> None:
        return None

    async def create_issue(self, title: str, body: str, labels: list[str] | None = None) -> TrackerIssue:
        return TrackerIssue(number=999, title=title, body=body)

    async def get_next_open_milestone(self, prefix: str = "Sprint") -> tuple[Milestone, int] | None:
        if not self.open_milestones:
            return None
        title = self.open_milestones[0]
        return Milestone(number=1, title=title), int(title.split()[-1])

    async def close_milestone(self, title: str) -> None:
        self.open_milestones.remove(title)
        self.closed_milestones.append(title)


class WorktreeGit(GitWorkspace):
    def __init__(
        self,
        changes: dict[str, list[str]] | None = None,
        conflicts: dict[str, tuple[str, ...]] | None = None,
    ) -> None:
        super().__init__(Path("."))
        self.changes = changes or {}
        self.conflicts = conflicts or {}
        self.changed_calls: list[str] = []
        self.reverted: list[str] = []
        self.removed: list[Path] = []
        self.merged: list[str] = []

    async def merge_branch(self, branch: str, base: str, *, squash: bool = False) -> MergeResult:
        if branch in self.conflicts:
            return MergeResult(merged=False, conflict_files=self.conflicts[branch])
        self.merged.append(branch)
        return MergeResult(merged=True)

    async def create_worktree(self, path: Path, branch: str, base: str) -> None:
        path.mkdir(parents=True, exist_ok=True)

    async def remove_worktree(self, path: Path) -> None:
        self.removed.append(path)

    async def changed_files(self, branch: str, base: str) -> list[str]:
        self.changed_calls.append(branch)
        return list(self.changes.get(branch, ["src/feature.py"]))

    async def diff_stat(self, branch: str, base: str) -> DiffStat:
        return DiffStat(lines_changed=20, files_changed=1, files=("src/feature.py",))

    async def revert_branch(self, branch: str, base: str, worktree: Path | None = None) -> None:
        self.reverted.append(branch)


class ScriptedGate(QualityGate):
    def __init__(self, config: RunnerConfig, outcomes: dict[int, list[bool]] | None = None) -> None:
        super().__init__(config.quality_gates, WorktreeGit())
        self.outcomes = outcomes or {}

    async def run(self, worktree: Path, branch: str, base: str) -> QualityResult:
        number = int(branch.rsplit("-", 1)[-1])
        script = self.outcomes.get(number, [])
        passed = script.pop(0) if script else True
        check = QualityCheck(
            name="lint-clean",
            passed=passed,
            detail="Lint clean" if passed else "E501 line too long",
            category="lint",
        )
        return QualityResult.from_checks([check])


def _config(**sprint: Any) -> RunnerConfig:
    config = RunnerConfig.default()
    config.project.name = "demo"
    config.project.worktree_base = "worktrees"
    config.sprint.max_parallel_sessions = 1
    config.sprint.max_retries = 3
    for key, value in sprint.items():
        setattr(config.sprint, key, value)
    return config


def _plan(*issues: SprintIssue) -> SprintPlan:
    return SprintPlan(sprint_number=1, issues=list(issues), rationale="Ship the basics")


def _runner(
    tmp_path: Path,
    config: RunnerConfig,
    *,
    provider: AgentProvider | None = None,
    tracker: BoardTracker | None = None,
    git: WorktreeGit | None = None,
    outcomes: dict[int, list[bool]] | None = None,
    gate: QualityGate | None = None,
    events: SprintEventBus | None = None,
) -> SprintRunner:
    return SprintRunner.build(
        config,
        tmp_path,
        provider=provider or AgentProvider(),
        tracker=tracker or BoardTracker(),
        git=git or WorktreeGit(),
        quality_gate=gate or ScriptedGate(config, outcomes),
        events=events,
    )


def _record(bus: SprintEventBus, *names: str) -> list[tuple[str, dict[str, Any]]]:
    seen: list[tuple[str, dict[str, Any]]] = []
    for name in names:
        bus.on(name, lambda payload, name=name: seen.append((name, payload)))  # type: ignore[misc]
    return seen


def test_full_cycle_retries_until_gate_passes(tmp_path: Path) -> None:
    bus = SprintEventBus()
    seen = _record(bus, "phase:change", "issue:succeed", "sprint:complete", "sprint:planned")
    provider = AgentProvider()
    tracker = BoardTracker()
    runner = _runner(
        tmp_path,
        _config(),
        provider=provider,
        tracker=tracker,
        outcomes={1: [False, False, True]},
        events=bus,
    )
    plan = _plan(
        SprintIssue(number=1, title="Login", acceptance_criteria="can sign in", points=3),
        SprintIssue(number=2, title="Logout", acceptance_criteria="can sign out", points=2),
    )

    state = asyncio.run(runner.start(plan))

    assert state.phase == "complete"
    by_issue = {entry.issue_number: entry for entry in state.results}
    assert by_issue[1].status == "completed"
    assert by_issue[1].retry_count == 2
    assert by_issue[2].retry_count == 0
    assert state.review is not None and state.review.summary == "Sprint went fine"
    assert state.retro is not None and state.retro.went_well == ["Focus"]

    phases = [payload["to"] for name, payload in seen if name == "phase:change"]
    assert phases == ["refine", "plan", "execute", "review", "retro", "complete"]
    complete = [payload for name, payload in seen if name == "sprint:complete"]
    assert complete[0]["metrics"]["velocity"] == 5
    assert complete[0]["metrics"]["first_pass_rate"] == 50

    retry_prompts = [prompt for prompt in provider.worker_prompts if "issue #1 " in prompt]
    assert len(retry_prompts) == 3
    assert "E501 line too long" in retry_prompts[1]
    assert tracker.statuses[1] == ["status:in-progress", "status:done"]
    assert "Huddle: #1 Login" in tracker.comments[1][0]
    assert provider.open == set()

    store = StateStore(tmp_path, "sprint", 1)
    assert store.load_state().phase == "complete"  # type: ignore[union-attr]
    assert not store.lock_path.exists()
    velocity = (tmp_path / "docs" / "sprints" / "velocity.md").read_text(encoding="utf-8")
    assert "| 1 |" in velocity
    log = (tmp_path / "docs" / "sprints" / "sprint-1-log.md").read_text(encoding="utf-8")
    assert "### ✅ #1: Login" in log


def test_failed_issue_does_not_abort_sprint(tmp_path: Path) -> None:
    bus = SprintEventBus()
    seen = _record(bus, "issue:fail")
    tracker = BoardTracker()
    runner = _runner(
        tmp_path,
        _config(max_retries=1),
        tracker=tracker,
        outcomes={1: [False, False]},
        events=bus,
    )

    state = asyncio.run(
        runner.start(_plan(SprintIssue(number=1, title="Login"), SprintIssue(number=2, title="Logout")))
    )

    assert state.phase == "complete"
    by_issue = {entry.issue_number: entry for entry in state.results}
    assert by_issue[1].status == "failed"
    assert by_issue[1].retry_count == 1
    assert by_issue[2].status == "completed"
    assert seen == [("issue:fail", {"issue_number": 1, "reason": "Quality gate failed: lint-clean"})]
    assert tracker.blocked == {1: "Quality gate failed: lint-clean"}


def test_dependent_issues_run_after_their_dependencies(tmp_path: Path) -> None:
    bus = SprintEventBus()
    seen = _record(bus, "issue:start", "issue:succeed")
    runner = _runner(tmp_path, _config(max_parallel_sessions=3), events=bus)
    plan = _plan(
        SprintIssue(number=3, title="Report", depends_on=[1, 2]),
        SprintIssue(number=1, title="Model"),
        SprintIssue(number=2, title="Storage"),
    )

    state = asyncio.run(runner.start(plan))

    assert state.phase == "complete"
    order = [(name, payload["issue_number"]) for name, payload in seen]
    assert order.index(("issue:start", 3)) > order.index(("issue:succeed", 1))
    assert order.index(("issue:start", 3)) > order.index(("issue:succeed", 2))


def test_challenger_rejection_triggers_retry(tmp_path: Path) -> None:
    provider = AgentProvider(["REJECTED: no tests for the error path", "APPROVED: covered now"])
    runner = _runner(tmp_path, _config(), provider=provider)

    state = asyncio.run(runner.start(_plan(SprintIssue(number=1, title="Login"))))

    entry = state.results[0]
    assert entry.status == "completed"
    assert entry.retry_count == 1
    assert entry.code_review == "covered now"
    assert "no tests for the error path" in provider.worker_prompts[1]


def test_done_issues_are_skipped(tmp_path: Path) -> None:
    git = WorktreeGit()
    runner = _runner(tmp_path, _config(), git=git, tracker=BoardTracker({1: ["status:done"]}))

    state = asyncio.run(
        runner.start(_plan(SprintIssue(number=1, title="Old"), SprintIssue(number=2, title="New")))
    )

    assert [entry.issue_number for entry in state.results] == [2]
    assert git.changed_calls == ["sprint/1/issue-2"]


def test_drift_overflow_fails_the_sprint(tmp_path: Path) -> None:
    bus = SprintEventBus()
    seen = _record(bus, "sprint:error", "issue:fail")
    git = WorktreeGit({"sprint/1/issue-1": ["src/login.py", "src/billing.py"]})
    runner = _runner(
        tmp_path,
        _config(max_drift_incidents=0, auto_revert_drift=True),
        git=git,
        events=bus,
    )
    issue = SprintIssue(number=1, title="Login", expected_files=["src/login.py"])

    state = asyncio.run(runner.start(_plan(issue, SprintIssue(number=2, title="Later", depends_on=[1]))))

    assert state.phase == "failed"
    assert state.drift_incidents == 1
    assert "Drift incidents (1) exceeded the maximum of 0" in (state.error or "")
    assert [entry.issue_number for entry in state.results] == [1]
    names = [name for name, _ in seen]
    assert "sprint:error" in names and "issue:fail" in names
    assert not StateStore(tmp_path, "sprint", 1).lock_path.exists()


def test_drift_with_auto_revert_retries(tmp_path: Path) -> None:
    class SettlingGit(WorktreeGit):
        async def changed_files(self, branch: str, base: str) -> list[str]:
            self.changed_calls.append(branch)
            if len(self.changed_calls) == 1:
                return ["src/login.py", "README.md"]
            return ["src/login.py"]

    git = SettlingGit()
    runner = _runner(tmp_path, _config(max_drift_incidents=2, auto_revert_drift=True), git=git)
    issue = SprintIssue(number=1, title="Login", expected_files=["src/login.py"])

    state = asyncio.run(runner.start(_plan(issue)))

    assert state.phase == "complete"
    assert git.reverted == ["sprint/1/issue-1"]
    assert state.results[0].status == "completed"
    assert state.results[0].retry_count == 1
    assert state.drift_incidents == 1


def test_drift_without_auto_revert_pauses_until_resumed(tmp_path: Path) -> None:
    bus = SprintEventBus()
    seen = _record(bus, "sprint:paused", "sprint:resumed")
    git = WorktreeGit({"sprint/1/issue-1": ["src/login.py", "src/billing.py"]})
    config = _config(max_drift_incidents=3)
    plan = _plan(
        SprintIssue(number=1, title="Login", expected_files=["src/login.py"]),
        SprintIssue(number=2, title="Logout", depends_on=[1]),
    )

    paused = asyncio.run(_runner(tmp_path, config, git=git, events=bus).start(plan))

    assert paused.phase == "paused"
    assert paused.phase_before_pause == "execute"
    assert [entry.issue_number for entry in paused.results] == [1]
    assert paused.results[0].retry_count == 0
    assert git.reverted == []

    resumed = asyncio.run(_runner(tmp_path, config, git=git, events=bus).start())

    assert resumed.phase == "complete"
    assert [entry.issue_number for entry in resumed.results] == [1, 2]
    assert git.changed_calls.count("sprint/1/issue-1") == 1
    assert [name for name, _ in seen] == ["sprint:paused", "sprint:resumed"]


def test_pause_and_resume_during_execution(tmp_path: Path) -> None:
    bus = SprintEventBus()
    seen = _record(bus, "sprint:paused", "sprint:resumed", "sprint:complete")
    runner = _runner(tmp_path, _config(), events=bus)

    def pause_on_start(payload: dict[str, Any]) -> None:
        if runner.pause("operator break"):
            asyncio.get_running_loop().call_later(0.05, runner.resume)

    bus.on("issue:start", pause_on_start)

    state = asyncio.run(runner.start(_plan(SprintIssue(number=1, title="Login"))))

    assert state.phase == "complete"
    assert [name for name, _ in seen] == ["sprint:paused", "sprint:resumed", "sprint:complete"]
    assert seen[0][1] == {"phase": "execute", "reason": "operator break"}


def test_transition_rules(tmp_path: Path) -> None:
    bus = SprintEventBus()
    seen = _record(bus, "phase:change")
    runner = _runner(tmp_path, _config(), events=bus)

    with pytest.raises(InvalidTransitionError):
        runner.transition("execute")

    runner.transition("refine")
    assert runner.pause() is True
    assert runner.get_state().phase_before_pause == "refine"
    with pytest.raises(InvalidTransitionError):
        runner.transition("plan")
    assert runner.resume() is True
    assert runner.get_state().phase == "refine"

    runner.transition("failed")
    with pytest.raises(InvalidTransitionError):
        runner.transition("plan")
    assert runner.pause() is False

    assert [(payload["from"], payload["to"]) for _, payload in seen] == [
        ("init", "refine"),
        ("refine", "paused"),
        ("paused", "refine"),
        ("refine", "failed"),
    ]
    saved = json.loads(StateStore(tmp_path, "sprint", 1).state_path.read_text(encoding="utf-8"))
    assert saved["phase"] == "failed"


def test_get_state_returns_a_snapshot(tmp_path: Path) -> None:
    runner = _runner(tmp_path, _config())

    snapshot = runner.get_state()
    snapshot.phase = "complete"
    snapshot.results.append(None)  # type: ignore[arg-type]

    assert runner.get_state().phase == "init"
    assert runner.get_state().results == []


def test_lock_contention_aborts_start(tmp_path: Path) -> None:
    bus = SprintEventBus()
    seen = _record(bus, "sprint:error", "sprint:start")
    holder = StateStore(tmp_path, "sprint", 1)
    holder.acquire_lock()
    runner = _runner(tmp_path, _config(), events=bus)

    with pytest.raises(LockContentionError):
        asyncio.run(runner.start(_plan(SprintIssue(number=1, title="Login"))))

    assert [name for name, _ in seen] == ["sprint:error"]
    assert holder.lock_path.exists()
    holder.release_lock()


def test_plan_with_cycle_fails_the_sprint(tmp_path: Path) -> None:
    bus = SprintEventBus()
    seen = _record(bus, "sprint:error")
    runner = _runner(tmp_path, _config(), events=bus)
    plan = _plan(
        SprintIssue(number=1, title="A", depends_on=[2]),
        SprintIssue(number=2, title="B", depends_on=[1]),
    )

    state = asyncio.run(runner.start(plan))

    assert state.phase == "failed"
    assert "Circular dependencies" in (state.error or "")
    assert len(seen) == 1


def test_sprint_loop_runs_open_milestones_in_order(tmp_path: Path) -> None:
    tracker = BoardTracker()
    tracker.open_milestones = ["Sprint 1", "Sprint 2"]
    started: list[int] = []

    def config_for(number: int) -> RunnerConfig:
        config = _config()
        config.sprint.number = number
        return config

    def runner_for(config: RunnerConfig) -> SprintRunner:
        started.append(config.sprint.number)
        runner = _runner(tmp_path, config, tracker=tracker)
        issue = SprintIssue(number=config.sprint.number * 10, title="Work")
        runner.ceremonies.plan = _fixed_plan(SprintPlan(config.sprint.number, [issue]))  # type: ignore[method-assign]
        return runner

    states = asyncio.run(run_sprint_loop(config_for, runner_for, tracker, "Sprint"))

    assert started == [1, 2]
    assert [state.phase for state in states] == ["complete", "complete"]
    assert tracker.closed_milestones == ["Sprint 1", "Sprint 2"]


def _fixed_plan(plan: SprintPlan):
    async def plan_sprint(refined: list[dict[str, Any]]) -> SprintPlan:
        return plan

    return plan_sprint


class TimelineProvider(AgentProvider):
    def __init__(self) -> None:
        super().__init__()
        self.timeline: list[str] = []

    async def create_session(self, options: SessionOptions) -> str:
        session_id = await super().create_session(options)
        if options.role == "worker":
            self.timeline.append(f"open {session_id}")
        return session_id

    async def send_prompt(self, session_id: str, prompt: str, timeout: float) -> str:
        if session_id.startswith("worker"):
            match = re.search(r"issue #(\d+) of", prompt)
            self.timeline.append(f"prompt #{match.group(1) if match else '?'}")
        return await super().send_prompt(session_id, prompt, timeout)

    async def end_session(self, session_id: str) -> None:
        if session_id.startswith("worker"):
            self.timeline.append(f"close {session_id}")
        await super().end_session(session_id)


def test_issues_reach_the_agent_in_dispatch_order(tmp_path: Path) -> None:
    class SlowFirstWorktree(WorktreeGit):
        async def create_worktree(self, path: Path, branch: str, base: str) -> None:
            if branch.endswith("issue-1"):
                await asyncio.sleep(0.05)
            await super().create_worktree(path, branch, base)

    provider = TimelineProvider()
    runner = _runner(
        tmp_path,
        _config(max_parallel_sessions=1, enable_challenger=False),
        provider=provider,
        git=SlowFirstWorktree(),
    )

    state = asyncio.run(
        runner.start(_plan(SprintIssue(number=1, title="A"), SprintIssue(number=2, title="B")))
    )

    assert state.phase == "complete"
    assert provider.timeline == [
        "open worker-1",
        "prompt #1",
        "close worker-1",
        "open worker-2",
        "prompt #2",
        "close worker-2",
    ]


def test_unexpected_issue_error_is_recorded_as_failure(tmp_path: Path) -> None:
    class VanishingGate(ScriptedGate):
        async def run(self, worktree: Path, branch: str, base: str) -> QualityResult:
            if branch.endswith("issue-1"):
                raise NotADirectoryError("worktree vanished")
            return await super().run(worktree, branch, base)

    bus = SprintEventBus()
    seen = _record(bus, "issue:fail")
    provider = AgentProvider()
    config = _config(max_parallel_sessions=2)
    runner = _runner(tmp_path, config, provider=provider, gate=VanishingGate(config), events=bus)

    state = asyncio.run(
        runner.start(_plan(SprintIssue(number=1, title="A"), SprintIssue(number=2, title="B")))
    )

    assert state.phase == "complete"
    by_issue = {entry.issue_number: entry for entry in state.results}
    assert by_issue[1].status == "failed"
    assert by_issue[1].error_message == "Unexpected error: worktree vanished"
    assert by_issue[2].status == "completed"
    assert seen == [("issue:fail", {"issue_number": 1, "reason": "Unexpected error: worktree vanished"})]
    assert provider.open == set()


def test_session_close_failure_is_recorded_as_failure(tmp_path: Path) -> None:
    class StuckCloseProvider(AgentProvider):
        async def end_session(self, session_id: str) -> None:
            await super().end_session(session_id)
            if session_id.startswith("worker"):
                raise RuntimeError("agent process did not exit")

    runner = _runner(tmp_path, _config(), provider=StuckCloseProvider())

    state = asyncio.run(runner.start(_plan(SprintIssue(number=1, title="A"))))

    assert state.phase == "complete"
    assert [(entry.issue_number, entry.status) for entry in state.results] == [(1, "failed")]
    assert state.results[0].error_message == "Unexpected error: agent process did not exit"


def test_completed_branches_are_merged_before_dependents_run(tmp_path: Path) -> None:
    git = WorktreeGit()
    runner = _runner(tmp_path, _config(), git=git)
    plan = _plan(
        SprintIssue(number=1, title="Model"),
        SprintIssue(number=2, title="View", depends_on=[1]),
    )

    state = asyncio.run(runner.start(plan))

    assert state.phase == "complete"
    assert git.merged == ["sprint/1/issue-1", "sprint/1/issue-2"]
    assert [entry.status for entry in state.results] == ["completed", "completed"]


def test_merge_conflict_blocks_the_issue(tmp_path: Path) -> None:
    git = WorktreeGit(conflicts={"sprint/1/issue-1": ("src/app.py",)})
    tracker = BoardTracker()
    runner = _runner(tmp_path, _config(), git=git, tracker=tracker)

    state = asyncio.run(runner.start(_plan(SprintIssue(number=1, title="Model"))))

    entry = state.results[0]
    assert entry.status == "failed"
    assert entry.error_message == "Merge conflict on sprint/1/issue-1: src/app.py"
    assert tracker.blocked == {1: "Merge conflict on sprint/1/issue-1: src/app.py"}
    assert git.merged == []


def test_merge_can_be_disabled(tmp_path: Path) -> None:
    git = WorktreeGit()
    config = _config()
    config.project.auto_merge = False
    runner = _runner(tmp_path, config, git=git)

    state = asyncio.run(runner.start(_plan(SprintIssue(number=1, title="Model"))))

    assert state.results[0].status == "completed"
    assert git.merged == []


def test_execution_stops_when_a_whole_group_fails(tmp_path: Path) -> None:
    git = WorktreeGit()
    runner = _runner(tmp_path, _config(max_retries=0), git=git, outcomes={1: [False]})
    plan = _plan(
        SprintIssue(number=1, title="Model"),
        SprintIssue(number=2, title="View", depends_on=[1]),
    )

    state = asyncio.run(runner.start(plan))

    assert state.phase == "complete"
    assert [(entry.issue_number, entry.status) for entry in state.results] == [(1, "failed")]
    assert "sprint/1/issue-2" not in git.changed_calls


def test_session_timeout_counts_as_one_attempt(tmp_path: Path) -> None:
    class FlakyProvider(AgentProvider):
        def __init__(self) -> None:
            super().__init__()
            self.timeouts = 1

        async def send_prompt(self, session_id: str, prompt: str, timeout: float) -> str:
            if session_id.startswith("worker") and self.timeouts:
                self.timeouts -= 1
                raise SessionTimeoutError(
                    f"Agent session {session_id} timed out after {timeout:.1f}s",
                    session_id=session_id,
                )
            return await super().send_prompt(session_id, prompt, timeout)

    provider = FlakyProvider()
    runner = _runner(tmp_path, _config(), provider=provider)

    state = asyncio.run(runner.start(_plan(SprintIssue(number=1, title="Login"))))

    entry = state.results[0]
    assert entry.status == "completed"
    assert entry.retry_count == 1
    assert "timed out" in provider.worker_prompts[0]


def test_non_retriable_session_error_fails_without_retry(tmp_path: Path) -> None:
    class BrokenProvider(AgentProvider):
        async def send_prompt(self, session_id: str, prompt: str, timeout: float) -> str:
            if session_id.startswith("worker"):
                self.worker_prompts.append(prompt)
                raise SessionError("agent binary crashed", session_id=session_id, retriable=False)
            return await super().send_prompt(session_id, prompt, timeout)

    provider = BrokenProvider()
    runner = _runner(tmp_path, _config(), provider=provider)

    state = asyncio.run(runner.start(_plan(SprintIssue(number=1, title="Login"))))

    entry = state.results[0]
    assert entry.status == "failed"
    assert entry.retry_count == 0
    assert entry.error_message == "agent binary crashed"
    assert len(provider.worker_prompts) == 1
