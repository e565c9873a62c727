from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from sprint_runner.config import (
    DEFAULT_CONFIG_FILENAME,
    RunnerConfig,
    load_config,
    save_config,
)
from sprint_runner.errors import SprintRunnerError
from sprint_runner.events import SprintEventBus
from sprint_runner.models import SprintMetrics, SprintPlan, SprintState
from sprint_runner.notifications import NtfyNotifier
from sprint_runner.runner import SprintRunner, run_sprint_loop
from sprint_runner.state import StateStore
from sprint_runner.tracker import IssueTracker

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: RunnerConfig
    events: SprintEventBus
    notifier: NtfyNotifier


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _echo_progress(events: SprintEventBus) -> None:
    def on_phase(payload: dict[str, Any]) -> None:
        click.echo(f"Phase: {payload['from']} -> {payload['to']}")

    def on_issue_start(payload: dict[str, Any]) -> None:
        click.echo(f"Started #{payload['issue_number']}: {payload.get('title', '')}")

    def on_issue_succeed(payload: dict[str, Any]) -> None:
        click.echo(f"Completed #{payload['issue_number']} (retries: {payload.get('retry_count', 0)})")

    def on_issue_fail(payload: dict[str, Any]) -> None:
        click.echo(f"Failed #{payload['issue_number']}: {payload.get('reason', '')}", err=True)

    events.on("phase:change", on_phase)
    events.on("issue:start", on_issue_start)
    events.on("issue:succeed", on_issue_succeed)
    events.on("issue:fail", on_issue_fail)


def _load_runtime(repo_root: Path, config_path: Path, sprint: int | None = None) -> Runtime:
    try:
        config = load_config(config_path)
    except SprintRunnerError as exc:
        raise click.ClickException(str(exc)) from exc
    if sprint is not None:
        config.sprint.number = sprint
    events = SprintEventBus()
    notifier = NtfyNotifier(config.notifications)
    notifier.attach(events)
    _echo_progress(events)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        events=events,
        notifier=notifier,
    )


def _read_plan(plan_path: Path, sprint_number: int) -> SprintPlan:
    try:
        data = json.loads(plan_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Cannot read plan {plan_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise click.ClickException(f"Plan {plan_path} must contain a JSON object")
    plan = SprintPlan.from_dict(data, sprint_number=sprint_number)
    plan.sprint_number = sprint_number
    return plan


async def _start_sprint(runtime: Runtime, plan: SprintPlan | None = None) -> SprintState:
    runner = SprintRunner.build(runtime.config, runtime.repo_root, events=runtime.events)
    try:
        return await runner.start(plan)
    finally:
        await runtime.notifier.aclose()


def _echo_summary(state: SprintState) -> None:
    metrics = SprintMetrics.from_results(state.results, state.drift_incidents)
    click.echo(f"Sprint {state.sprint_number}: {state.phase}")
    click.echo(f"Issues: {metrics.completed}/{metrics.planned} completed")
    click.echo(f"Velocity: {metrics.velocity} points")
    click.echo(f"First-pass rate: {metrics.first_pass_rate}%")
    if state.drift_incidents:
        click.echo(f"Drift incidents: {state.drift_incidents}")
    if state.error:
        click.echo(f"Error: {state.error}", err=True)


def _finish(state: SprintState) -> None:
    _echo_summary(state)
    if state.phase == "failed":
        raise click.ClickException(f"Sprint {state.sprint_number} failed")
    if state.phase == "paused":
        click.echo("Sprint paused. Fix the flagged issue, then run `sprint-runner resume`.")


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Sprint runner CLI."""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--name", "project_name", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)
def init_command(backend: str | None, project_name: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except SprintRunnerError as exc:
        raise click.ClickException(str(exc)) from exc
    if backend:
        config.agent.backend = backend  # type: ignore[assignment]
    if project_name:
        config.project.name = project_name
    elif config.project.name == "my-project":
        config.project.name = repo_root.name
    save_config(config_path, config)

    (config.project_root(repo_root) / "docs" / "sprints").mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized sprint runner in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.agent.backend}")


@cli.command("run")
@click.option("--sprint", "sprint_number", type=click.IntRange(min=1), default=None)
@click.option(
    "--plan",
    "plan_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON sprint plan to execute instead of running refinement and planning.",
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)
def run_command(sprint_number: int | None, plan_file: Path | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value), sprint_number)
    plan = _read_plan(plan_file, runtime.config.sprint.number) if plan_file else None
    try:
        state = asyncio.run(_start_sprint(runtime, plan))
    except (SprintRunnerError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc
    _finish(state)


@cli.command("resume")
@click.option("--sprint", "sprint_number", type=click.IntRange(min=1), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)
def resume_command(sprint_number: int | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value), sprint_number)
    config = runtime.config
    store = StateStore(config.project_root(repo_root), config.slug, config.sprint.number)
    if not store.has_state():
        raise click.ClickException(
            f"No saved state for sprint {config.sprint.number}. Use `sprint-runner run` to start it."
        )
    try:
        state = asyncio.run(_start_sprint(runtime))
    except (SprintRunnerError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc
    _finish(state)


@cli.command("status")
@click.option("--sprint", "sprint_number", type=click.IntRange(min=1), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)
def status_command(sprint_number: int | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value), sprint_number)
    config = runtime.config
    store = StateStore(config.project_root(repo_root), config.slug, config.sprint.number)
    try:
        state = store.load_state()
    except SprintRunnerError as exc:
        raise click.ClickException(str(exc)) from exc
    if state is None:
        click.echo(f"No saved state for sprint {config.sprint.number}.")
        return
    payload = state.to_dict()
    payload["metrics"] = SprintMetrics.from_results(state.results, state.drift_incidents).to_dict()
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("loop")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)
def loop_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    base = runtime.config
    project_root = base.project_root(repo_root)

    def config_for(number: int) -> RunnerConfig:
        config = RunnerConfig.from_dict(base.to_dict())
        config.sprint.number = number
        return config

    def runner_for(config: RunnerConfig) -> SprintRunner:
        return SprintRunner.build(config, repo_root, events=runtime.events)

    async def run_loop() -> list[SprintState]:
        try:
            return await run_sprint_loop(
                config_for, runner_for, IssueTracker(project_root), base.sprint.prefix
            )
        finally:
            await runtime.notifier.aclose()

    try:
        states = asyncio.run(run_loop())
    except (SprintRunnerError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc
    if not states:
        click.echo("No open sprint milestones found.")
        return
    for state in states:
        _echo_summary(state)
    if states[-1].phase == "failed":
        raise click.ClickException(f"Sprint {states[-1].sprint_number} failed")
