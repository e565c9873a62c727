from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from sprint_runner.backends import build_backend
from sprint_runner.ceremonies import Ceremonies, render_feedback
from sprint_runner.config import RunnerConfig
from sprint_runner.documentation import (
    SprintLog,
    VelocityEntry,
    VelocityTracker,
    format_huddle_comment,
    format_sprint_log_entry,
)
from sprint_runner.enforcement import ChallengerReview, DriftDetector, QualityGate
from sprint_runner.errors import (
    ChallengerRejection,
    DriftExceeded,
    ExternalToolError,
    InvalidTransitionError,
    LockContentionError,
    QualityGateFailure,
    SessionError,
    SprintRunnerError,
    StateVersionError,
)
from sprint_runner.events import SprintEventBus
from sprint_runner.git import GitWorkspace
from sprint_runner.models import (
    TERMINAL_PHASES,
    DriftReport,
    HuddleEntry,
    IssueStatus,
    QualityResult,
    SprintIssue,
    SprintMetrics,
    SprintPhase,
    SprintPlan,
    SprintState,
)
from sprint_runner.planning import build_execution_groups
from sprint_runner.sessions import BackendSessionProvider, SessionOptions, SessionPool, SessionProvider
from sprint_runner.state import StateStore
from sprint_runner.tracker import STATUS_DONE, STATUS_IN_PROGRESS, IssueTracker

logger = logging.getLogger(__name__)

FORWARD_TRANSITIONS: dict[str, str] = {
    "init": "refine",
    "refine": "plan",
    "plan": "execute",
    "execute": "review",
    "review": "retro",
    "retro": "complete",
}


class _SprintHalted(Exception):
    """Raised at a checkpoint when the sprint paused for human intervention."""


@dataclass(slots=True)
class _IssueProgress:
    files_changed: list[str] = field(default_factory=list)
    quality: QualityResult = field(default_factory=lambda: QualityResult(passed=False))
    code_review: str | None = None
    drift: DriftReport | None = None
    retry_count: int = 0


class SprintRunner:
    """Drives one sprint through refine, plan, execute, review and retro.

    Every phase change goes through :meth:`transition`, which persists the
    state and emits ``phase:change``. Issues inside an execution group run
    concurrently, bounded by the session pool; each issue is retried as a
    whole (prompt, drift check, quality gate, challenger) against one shared
    retry budget.
    """

    def __init__(
        self,
        config: RunnerConfig,
        *,
        project_root: Path,
        store: StateStore,
        pool: SessionPool,
        tracker: IssueTracker,
        git: GitWorkspace,
        quality_gate: QualityGate,
        drift: DriftDetector,
        challenger: ChallengerReview,
        ceremonies: Ceremonies,
        sprint_log: SprintLog,
        velocity: VelocityTracker,
        events: SprintEventBus | None = None,
    ) -> None:
        self.config = config
        self.project_root = project_root
        self.store = store
        self.pool = pool
        self.tracker = tracker
        self.git = git
        self.quality_gate = quality_gate
        self.drift = drift
        self.challenger = challenger
        self.ceremonies = ceremonies
        self.sprint_log = sprint_log
        self.velocity = velocity
        self.events = events or SprintEventBus()
        self._state = SprintState(sprint_number=config.sprint.number)
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._halted = False
        self._aborted = False
        self._drift_issues: set[int] = set()
        self._supplied_plan: SprintPlan | None = None
        self._merge_lock = asyncio.Lock()

    @classmethod
    def build(
        cls,
        config: RunnerConfig,
        project_root: Path,
        *,
        provider: SessionProvider | None = None,
        tracker: IssueTracker | None = None,
        git: GitWorkspace | None = None,
        quality_gate: QualityGate | None = None,
        events: SprintEventBus | None = None,
    ) -> SprintRunner:
        root = config.project_root(project_root)
        if provider is None:
            provider = BackendSessionProvider(build_backend(config.agent.backend, config.agent.binary))
        tracker = tracker or IssueTracker(root)
        git = git or GitWorkspace(root)
        timeout = config.agent.session_timeout_seconds
        pool = SessionPool(provider, config.sprint.max_parallel_sessions, prompt_timeout=timeout)
        sprint_log = SprintLog(root, config.slug, config.sprint.prefix, config.sprint.number)
        velocity = VelocityTracker(root)
        return cls(
            config,
            project_root=root,
            store=StateStore(root, config.slug, config.sprint.number),
            pool=pool,
            tracker=tracker,
            git=git,
            quality_gate=quality_gate or QualityGate(config.quality_gates, git),
            drift=DriftDetector(config.sprint.drift_threshold),
            challenger=ChallengerReview(
                provider,
                git,
                base_branch=config.project.base_branch,
                timeout=timeout,
                model=config.agent.challenger_model or config.agent.model or None,
                working_directory=root,
            ),
            ceremonies=Ceremonies(config, pool, tracker, sprint_log, velocity, root),
            sprint_log=sprint_log,
            velocity=velocity,
            events=events,
        )

    # -- state machine -------------------------------------------------

    def get_state(self) -> SprintState:
        return copy.deepcopy(self._state)

    def _persist(self) -> None:
        self.store.save_state(self._state)

    def _check_transition(self, current: str, requested: str) -> None:
        if current in TERMINAL_PHASES:
            raise InvalidTransitionError(current, requested)
        if requested == "failed":
            return
        if current == "paused":
            if requested != self._state.phase_before_pause:
                raise InvalidTransitionError(current, requested)
            return
        if requested == "paused":
            return
        if FORWARD_TRANSITIONS.get(current) != requested:
            raise InvalidTransitionError(current, requested)

    def transition(self, next_phase: SprintPhase) -> None:
        current = self._state.phase
        self._check_transition(current, next_phase)
        if next_phase == "paused":
            self._state.phase_before_pause = current
        elif current == "paused":
            self._state.phase_before_pause = None
        self._state.phase = next_phase
        self._persist()
        logger.info("Sprint %d: %s -> %s", self._state.sprint_number, current, next_phase)
        self.events.emit("phase:change", {"from": current, "to": next_phase})

    def pause(self, reason: str | None = None) -> bool:
        phase = self._state.phase
        if phase == "paused" or phase in TERMINAL_PHASES:
            logger.warning("Cannot pause sprint in phase %s", phase)
            return False
        self._resumed.clear()
        self.transition("paused")
        self.events.emit("sprint:paused", {"phase": phase, "reason": reason})
        return True

    def resume(self) -> bool:
        if self._state.phase != "paused" or self._state.phase_before_pause is None:
            logger.warning("Cannot resume sprint in phase %s", self._state.phase)
            return False
        restored = self._state.phase_before_pause
        self._halted = False
        self.transition(restored)
        self._resumed.set()
        self.events.emit("sprint:resumed", {"phase": restored})
        return True

    def _fail(self, message: str) -> None:
        self._aborted = True
        self._state.error = message
        if self._state.phase not in TERMINAL_PHASES:
            self.transition("failed")
        logger.error("Sprint %d failed: %s", self._state.sprint_number, message)
        self.events.emit("sprint:error", {"sprint_number": self._state.sprint_number, "error": message})

    async def _checkpoint(self) -> None:
        while self._state.phase == "paused":
            if self._halted:
                raise _SprintHalted()
            await self._resumed.wait()

    # -- lifecycle -----------------------------------------------------

    async def start(self, plan: SprintPlan | None = None) -> SprintState:
        try:
            self.store.acquire_lock()
        except LockContentionError as exc:
            self.events.emit("sprint:error", {"sprint_number": self.config.sprint.number, "error": str(exc)})
            raise
        try:
            try:
                previous = self.store.load_state()
            except StateVersionError as exc:
                self.events.emit(
                    "sprint:error", {"sprint_number": self.config.sprint.number, "error": str(exc)}
                )
                raise
            resumed = self._adopt_previous_state(previous)
            if plan is not None and not resumed:
                self._supplied_plan = plan
            self.events.emit(
                "sprint:start", {"sprint_number": self._state.sprint_number, "resumed": resumed}
            )
            try:
                await self._run_phases()
            except _SprintHalted:
                logger.warning(
                    "Sprint %d halted for human intervention; resume it once the branch is fixed",
                    self._state.sprint_number,
                )
            except (SprintRunnerError, OSError) as exc:
                self._fail(str(exc))
        finally:
            await self.pool.drain_all()
            self.store.release_lock()
        return self.get_state()

    def _adopt_previous_state(self, previous: SprintState | None) -> bool:
        if previous is None:
            self._state = SprintState(sprint_number=self.config.sprint.number)
            return False
        if previous.phase == "complete":
            logger.info("Sprint %d already complete", previous.sprint_number)
            self._state = previous
            return True
        if previous.phase == "failed":
            logger.info(
                "Previous run of sprint %d failed (%s); starting over",
                previous.sprint_number,
                previous.error,
            )
            self._state = SprintState(sprint_number=self.config.sprint.number)
            return False
        self._state = previous
        self._state.error = None
        logger.info("Resuming sprint %d from %s", previous.sprint_number, previous.phase)
        if previous.phase == "paused":
            self.resume()
        return True

    async def _run_phases(self) -> None:
        while self._state.phase not in TERMINAL_PHASES:
            phase = self._state.phase
            await self._run_phase_work(phase)
            if self._aborted or self._state.phase in TERMINAL_PHASES:
                return
            await self._checkpoint()
            next_phase = FORWARD_TRANSITIONS[self._state.phase]
            self.transition(next_phase)  # type: ignore[arg-type]
            if next_phase == "complete":
                self._on_complete()

    async def _run_phase_work(self, phase: str) -> None:
        if phase == "refine":
            await self._refine()
        elif phase == "plan":
            await self._plan()
        elif phase == "execute":
            await self._execute()
        elif phase == "review":
            await self._review()
        elif phase == "retro":
            await self._retro()

    def _on_complete(self) -> None:
        metrics = SprintMetrics.from_results(self._state.results, self._state.drift_incidents)
        self._record_velocity(metrics)
        logger.info(
            "Sprint %d complete: %d/%d issues, velocity %d",
            self._state.sprint_number,
            metrics.completed,
            metrics.planned,
            metrics.velocity,
        )
        self.events.emit(
            "sprint:complete",
            {"sprint_number": self._state.sprint_number, "metrics": metrics.to_dict()},
        )

    def _record_velocity(self, metrics: SprintMetrics) -> None:
        durations = sum(entry.duration_seconds for entry in self._state.results)
        hours = round(durations / 3600, 2)
        self.velocity.record(
            VelocityEntry(
                sprint=self._state.sprint_number,
                date=self._state.started_at[:10],
                goal=self._state.plan.rationale if self._state.plan else "",
                planned=metrics.planned,
                done=metrics.completed,
                carry=metrics.failed,
                hours=hours,
                issues_per_hour=round(metrics.completed / hours, 2) if hours else 0.0,
            )
        )

    # -- ceremonies ----------------------------------------------------

    async def _refine(self) -> None:
        if self._supplied_plan is not None:
            return
        try:
            self._state.refined_issues = await self.ceremonies.refine()
        except SprintRunnerError as exc:
            logger.warning("Refinement failed, planning without it: %s", exc)
            self._state.refined_issues = []
        self._persist()

    async def _plan(self) -> None:
        if self._supplied_plan is not None:
            plan = self._supplied_plan
            await self.ceremonies.publish_plan(plan)
        else:
            plan = await self.ceremonies.plan(self._state.refined_issues)
        self._state.plan = plan
        self._persist()
        self.events.emit(
            "sprint:planned",
            {"issues": [{"number": issue.number, "title": issue.title} for issue in plan.issues]},
        )

    async def _review(self) -> None:
        try:
            self._state.review = await self.ceremonies.review(self._state)
        except SprintRunnerError as exc:
            logger.warning("Sprint review failed: %s", exc)
        self._persist()

    async def _retro(self) -> None:
        try:
            self._state.retro = await self.ceremonies.retro(self._state, self._state.review)
        except SprintRunnerError as exc:
            logger.warning("Sprint retro failed: %s", exc)
        self._persist()

    # -- execution -----------------------------------------------------

    async def _pending_issues(self, plan: SprintPlan) -> list[SprintIssue]:
        finished = self._state.completed_issue_numbers()
        pending: list[SprintIssue] = []
        for issue in plan.issues:
            if issue.number in finished:
                continue
            try:
                labels = await self.tracker.get_labels(issue.number)
            except ExternalToolError as exc:
                logger.warning("Cannot read labels of #%d: %s", issue.number, exc)
                labels = []
            if STATUS_DONE in labels:
                logger.info("Skipping #%d, already %s", issue.number, STATUS_DONE)
                continue
            if not issue.acceptance_criteria.strip():
                logger.warning("Issue #%d has no acceptance criteria", issue.number)
            pending.append(issue)
        return pending

    async def _execute(self) -> None:
        plan = self._state.plan
        if plan is None:
            raise SprintRunnerError("Cannot execute a sprint without a plan. Run planning first.")
        pending = await self._pending_issues(plan)
        groups = build_execution_groups(pending)
        logger.info("Executing %d issues in %d groups", len(pending), len(groups))
        for index, group in enumerate(groups, start=1):
            await self._checkpoint()
            if self._aborted:
                return
            for issue in group:
                self.events.emit("issue:start", {"issue_number": issue.number, "title": issue.title})
            outcomes = await asyncio.gather(
                *(self._run_issue(issue) for issue in group), return_exceptions=True
            )
            for issue, outcome in zip(group, outcomes):
                if isinstance(outcome, Exception):
                    await self._record_crashed_issue(issue, outcome)
            if self._aborted:
                return
            finished = {entry.issue_number: entry.status for entry in self._state.results}
            group_statuses = [finished.get(issue.number, "failed") for issue in group]
            if not self._halted and all(status == "failed" for status in group_statuses):
                logger.warning(
                    "All %d issues in group %d failed, skipping the remaining groups",
                    len(group),
                    index,
                )
                break
        self._log_holistic_drift(plan)

    async def _record_crashed_issue(self, issue: SprintIssue, exc: Exception) -> None:
        logger.error("Issue #%d crashed", issue.number, exc_info=exc)
        if any(entry.issue_number == issue.number for entry in self._state.results):
            return
        entry = HuddleEntry(
            issue_number=issue.number,
            title=issue.title,
            status="failed",
            quality_result=QualityResult(passed=False),
            duration_seconds=0.0,
            points=issue.points,
            branch=self.config.branch_name(issue.number),
            error_message=f"Unexpected error: {exc}",
        )
        await self._finish_issue(issue, entry)

    def _log_holistic_drift(self, plan: SprintPlan) -> None:
        changed = {entry.issue_number: entry.files_changed for entry in self._state.results}
        expected = {issue.number: issue.expected_files for issue in plan.issues}
        report = self.drift.holistic(changed, expected)
        if report.drift_percentage > 0:
            logger.warning(
                "Sprint-wide drift %.0f%%: %s",
                report.drift_percentage * 100,
                ", ".join(report.unplanned_changes),
            )

    def _worktree_path(self, issue_number: int) -> Path:
        base = Path(self.config.project.worktree_base)
        if not base.is_absolute():
            base = self.project_root / base
        return (base / f"issue-{issue_number}").resolve()

    def _register_drift(self, issue: SprintIssue, report: DriftReport) -> None:
        """Count a drift incident once per issue; abort the sprint past the maximum."""
        if issue.number not in self._drift_issues:
            self._drift_issues.add(issue.number)
            self._state.drift_incidents += 1
            self._persist()
        limit = self.config.sprint.max_drift_incidents
        if self._state.drift_incidents > limit and not self._aborted:
            message = (
                f"Drift incidents ({self._state.drift_incidents}) exceeded the maximum of {limit}. "
                "Tighten issue scopes or raise sprint.max_drift_incidents, then restart."
            )
            self._fail(message)
            raise DriftExceeded(message, drift=report.drift_percentage, sprint_wide=True)

    async def _attempt(
        self,
        issue: SprintIssue,
        session_id: str,
        branch: str,
        worktree: Path,
        feedback: str | None,
        progress: _IssueProgress,
    ) -> None:
        base = self.config.project.base_branch
        await self.pool.send(session_id, self.ceremonies.worker_prompt(issue, branch, worktree, feedback))

        progress.files_changed = await self.git.changed_files(branch, base)
        if issue.expected_files:
            report = self.drift.check(progress.files_changed, issue.expected_files)
            progress.drift = report
            if self.drift.exceeds(report):
                self._register_drift(issue, report)
                message = (
                    f"Scope drift {report.drift_percentage:.0%} on #{issue.number}: "
                    f"unplanned {', '.join(report.unplanned_changes)}"
                )
                if self.config.sprint.auto_revert_drift:
                    await self.git.revert_branch(branch, base, worktree)
                    progress.files_changed = []
                raise DriftExceeded(message, drift=report.drift_percentage)

        progress.quality = await self.quality_gate.run(worktree, branch, base)
        if not progress.quality.passed:
            failed = [check.name for check in progress.quality.failed_checks]
            raise QualityGateFailure(
                f"Quality gate failed: {', '.join(failed)}", failed_checks=failed
            )

        if self.config.sprint.enable_challenger:
            verdict = await self.challenger.review(issue, branch)
            progress.code_review = verdict.feedback
            if not verdict.approved:
                raise ChallengerRejection(verdict.feedback)

    async def _attempt_with_retries(
        self,
        issue: SprintIssue,
        session_id: str,
        branch: str,
        worktree: Path,
        progress: _IssueProgress,
    ) -> tuple[IssueStatus, str | None]:
        max_retries = self.config.sprint.max_retries
        error: str | None = None
        feedback: str | None = None
        for attempt in range(max_retries + 1):
            if self._aborted:
                return "failed", error or "Sprint aborted"
            progress.retry_count = attempt
            try:
                await self._attempt(issue, session_id, branch, worktree, feedback, progress)
            except QualityGateFailure as exc:
                error = str(exc)
                feedback = render_feedback(attempt + 1, max_retries, error, progress.quality)
            except DriftExceeded as exc:
                error = str(exc)
                if exc.sprint_wide:
                    return "failed", error
                if not self.config.sprint.auto_revert_drift:
                    self._halted = True
                    self.pause(f"Drift on #{issue.number} needs human review")
                    return "failed", error
                feedback = render_feedback(attempt + 1, max_retries, error)
            except ChallengerRejection as exc:
                error = str(exc)
                feedback = render_feedback(attempt + 1, max_retries, error)
            except SessionError as exc:
                error = str(exc)
                if not exc.retriable:
                    return "failed", error
                feedback = render_feedback(attempt + 1, max_retries, error)
            else:
                return "completed", None
            logger.info(
                "Issue #%d attempt %d/%d failed: %s",
                issue.number,
                attempt + 1,
                max_retries + 1,
                error,
            )
        return "failed", error

    async def _run_issue(self, issue: SprintIssue) -> None:
        """Run one issue end to end inside a pool slot and record the outcome.

        The slot is taken before any tracker or git work, so issues reach the
        agent in dispatch order. Failures of any kind end up as a failed entry.
        """
        started = time.monotonic()
        base = self.config.project.base_branch
        branch = self.config.branch_name(issue.number)
        worktree = self._worktree_path(issue.number)
        progress = _IssueProgress()
        status: IssueStatus = "failed"
        error: str | None = None
        cleanup_warning: str | None = None

        try:
            session_id = await self.pool.acquire(
                SessionOptions(
                    role="worker",
                    working_directory=worktree,
                    model=self.config.agent.model or None,
                )
            )
        except SessionError as exc:
            error = str(exc)
            logger.error("Issue #%d could not open an agent session: %s", issue.number, exc)
        else:
            worktree_ready = False
            try:
                await self.tracker.set_status(issue.number, STATUS_IN_PROGRESS)
                await self.git.create_worktree(worktree, branch, base)
                worktree_ready = True
                status, error = await self._attempt_with_retries(
                    issue, session_id, branch, worktree, progress
                )
            except (ExternalToolError, SessionError) as exc:
                status, error = "failed", str(exc)
                logger.error("Issue #%d aborted: %s", issue.number, exc)
            except Exception as exc:
                status, error = "failed", f"Unexpected error: {exc}"
                logger.exception("Issue #%d crashed", issue.number)
            finally:
                if worktree_ready:
                    try:
                        await self.git.remove_worktree(worktree)
                    except ExternalToolError as exc:
                        cleanup_warning = f"Orphaned worktree requires manual cleanup: `{worktree}`"
                        logger.error("Failed to remove worktree %s: %s", worktree, exc)
                await self.pool.release(session_id)

        if status == "completed" and self.config.project.auto_merge:
            error = await self._merge(issue, branch)
            if error is not None:
                status = "failed"

        entry = HuddleEntry(
            issue_number=issue.number,
            title=issue.title,
            status=status,
            quality_result=progress.quality,
            duration_seconds=round(time.monotonic() - started, 2),
            files_changed=tuple(progress.files_changed),
            retry_count=progress.retry_count,
            points=issue.points,
            branch=branch,
            code_review=progress.code_review,
            error_message=error,
            cleanup_warning=cleanup_warning,
        )
        await self._finish_issue(issue, entry)

    async def _merge(self, issue: SprintIssue, branch: str) -> str | None:
        """Merge a completed branch into the base branch; return an error on failure."""
        base = self.config.project.base_branch
        async with self._merge_lock:
            try:
                result = await self.git.merge_branch(
                    branch, base, squash=self.config.project.squash_merge
                )
            except ExternalToolError as exc:
                logger.error("Merging #%d into %s failed: %s", issue.number, base, exc)
                return f"Merge failed: {exc}"
        if not result.merged:
            files = ", ".join(result.conflict_files) or "unknown files"
            return f"Merge conflict on {branch}: {files}"
        return None

    async def _finish_issue(self, issue: SprintIssue, entry: HuddleEntry) -> None:
        self._state.results.append(entry)
        self._persist()
        if entry.status == "completed":
            self.events.emit(
                "issue:succeed",
                {
                    "issue_number": issue.number,
                    "retry_count": entry.retry_count,
                    "duration_seconds": entry.duration_seconds,
                },
            )
        else:
            reason = entry.error_message or "execution failed"
            self.events.emit("issue:fail", {"issue_number": issue.number, "reason": reason})
        try:
            self.sprint_log.append(format_sprint_log_entry(entry))
        except OSError as exc:
            logger.warning("Failed to append #%d to the sprint log: %s", issue.number, exc)
        try:
            await self.tracker.add_comment(issue.number, format_huddle_comment(entry))
            if entry.status == "completed":
                await self.tracker.set_status(issue.number, STATUS_DONE)
            else:
                await self.tracker.set_blocked_status(
                    issue.number, entry.error_message or "execution failed"
                )
        except ExternalToolError as exc:
            logger.warning("Failed to update tracker for #%d: %s", issue.number, exc)


async def run_sprint_loop(
    config_for: Callable[[int], RunnerConfig],
    runner_for: Callable[[RunnerConfig], SprintRunner],
    tracker: IssueTracker,
    prefix: str = "Sprint",
) -> list[SprintState]:
    """Run consecutive sprints, one per open milestone named ``<prefix> <N>``."""
    results: list[SprintState] = []
    seen: set[int] = set()
    while True:
        found = await tracker.get_next_open_milestone(prefix)
        if found is None:
            logger.info("No open sprint milestones left")
            break
        milestone, number = found
        if number in seen:
            logger.error("Milestone %s is still open after its sprint ran, stopping", milestone.title)
            break
        seen.add(number)
        runner = runner_for(config_for(number))
        state = await runner.start()
        results.append(state)
        if state.phase != "complete":
            logger.warning("Sprint %d ended in %s, stopping loop", number, state.phase)
            break
        try:
            await tracker.close_milestone(milestone.title)
        except ExternalToolError as exc:
            logger.warning("Failed to close milestone %s: %s", milestone.title, exc)
    return results
