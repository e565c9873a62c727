from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from sprint_runner.config import RunnerConfig
from sprint_runner.documentation import SprintLog, VelocityTracker
from sprint_runner.errors import SessionError
from sprint_runner.models import (
    HuddleEntry,
    QualityResult,
    ReviewResult,
    RetroResult,
    SprintIssue,
    SprintMetrics,
    SprintPlan,
    SprintState,
)
from sprint_runner.sessions.pool import SessionPool
from sprint_runner.sessions.provider import SessionOptions
from sprint_runner.tracker import STATUS_PLANNED, IssueTracker

logger = logging.getLogger(__name__)

FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*\n(.*?)\n```", re.DOTALL)

DEFAULT_TEMPLATES: dict[str, str] = {
    "refinement": """\
You are refining the idea backlog of {{PROJECT_NAME}} ahead of sprint {{SPRINT_NUMBER}}.

Idea issues:
{{IDEAS}}

Recent velocity:
{{VELOCITY_DATA}}

For every idea worth pursuing, write concrete acceptance criteria on the issue and
score it with ICE (impact x confidence x ease). Answer with JSON only:
{"refined_issues": [{"number": 1, "title": "...", "ice_score": 120}]}
""",
    "planning": """\
You are planning sprint {{SPRINT_NUMBER}} of {{PROJECT_NAME}} (base branch {{BASE_BRANCH}}).

Open backlog:
{{BACKLOG}}

Refinement output:
{{REFINED_ISSUES}}

Recent velocity:
{{VELOCITY_DATA}}

Select at most {{MAX_ISSUES}} issues that fit the team's velocity, order them by
dependency, and declare the files each issue is expected to touch. Answer with JSON only:
{"sprintNumber": {{SPRINT_NUMBER}}, "rationale": "...", "estimated_points": 8,
 "sprint_issues": [{"number": 1, "title": "...", "depends_on": [],
   "acceptanceCriteria": "...", "expectedFiles": ["src/..."], "points": 3}]}
""",
    "worker": """\
You are implementing issue #{{ISSUE_NUMBER}} of {{PROJECT_NAME}} during sprint {{SPRINT_NUMBER}}.

## {{ISSUE_TITLE}}

{{ISSUE_BODY}}

## Acceptance criteria
{{ACCEPTANCE_CRITERIA}}

## Expected files
{{EXPECTED_FILES}}

Work in {{WORKTREE_PATH}} on branch {{BRANCH_NAME}} (based on {{BASE_BRANCH}}).
Keep the change under {{MAX_DIFF_LINES}} changed lines, add or update tests, stay within
the expected files, and commit your work on the branch before you finish.
""",
    "review": """\
You are running the sprint review for sprint {{SPRINT_NUMBER}} of {{PROJECT_NAME}}.

Issue outcomes:
{{SPRINT_ISSUES}}

Metrics:
{{METRICS}}

Most frequently failed quality gates: {{FAILED_GATES}}

Summarise the sprint for stakeholders. Answer with JSON only:
{"summary": "...", "demoItems": ["..."], "openItems": ["..."]}
""",
    "retro": """\
You are facilitating the retrospective for sprint {{SPRINT_NUMBER}} of {{PROJECT_NAME}}.

Review data:
{{SPRINT_REVIEW_DATA}}

Velocity:
{{VELOCITY_DATA}}

Improvements agreed in the previous retro:
{{PREVIOUS_RETRO_IMPROVEMENTS}}

Answer with JSON only:
{"wentWell": ["..."], "wentBadly": ["..."],
 "improvements": [{"title": "...", "description": "...", "autoApplicable": false}]}
""",
}


def substitute_prompt(template: str, variables: dict[str, str]) -> str:
    rendered = template
    for key, value in variables.items():
        rendered = rendered.replace("{{" + key + "}}", value)
    return rendered


def sanitize_prompt_input(text: str) -> str:
    return f"<user_content>\n{text}\n</user_content>"


def extract_json(text: str) -> Any:
    """Return the first JSON value in an agent response.

    A fenced code block wins; otherwise the first balanced ``{...}`` or
    ``[...]`` in the text is parsed.
    """
    fenced = FENCED_JSON_PATTERN.search(text)
    if fenced:
        try:
            return json.loads(fenced.group(1))
        except json.JSONDecodeError as exc:
            raise SessionError(
                f"Failed to parse JSON from response: {exc}. Input: {text[:200]!r}",
                retriable=False,
            ) from exc

    match = re.search(r"[{\[]", text)
    if match is None:
        raise SessionError("No JSON found in response", retriable=False)
    start = match.start()
    opener = text[start]
    closer = "}" if opener == "{" else "]"
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(text[start : index + 1])
                except json.JSONDecodeError as exc:
                    raise SessionError(
                        f"Failed to parse JSON from response: {exc}. Input: {text[:200]!r}",
                        retriable=False,
                    ) from exc
    raise SessionError("No complete JSON found in response", retriable=False)


def top_failed_gates(results: list[HuddleEntry], limit: int = 3) -> str:
    counts: dict[str, int] = {}
    for entry in results:
        for check in entry.quality_result.failed_checks:
            counts[check.name] = counts.get(check.name, 0) + 1
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]
    return ", ".join(f"{name} ({count})" for name, count in ranked)


def render_feedback(
    attempt: int,
    max_retries: int,
    reason: str,
    quality: QualityResult | None = None,
) -> str:
    lines = [f"## Previous attempt failed (retry {attempt}/{max_retries})", "", reason]
    if quality is not None and quality.failed_checks:
        lines.extend(["", "Failing checks:"])
        lines.extend(f"- {check.name}: {check.detail}" for check in quality.failed_checks)
    lines.extend(["", "Fix the problems above and commit again."])
    return "\n".join(lines)


class Ceremonies:
    """Agent-driven work of the refine, plan, review and retro phases."""

    def __init__(
        self,
        config: RunnerConfig,
        pool: SessionPool,
        tracker: IssueTracker,
        sprint_log: SprintLog,
        velocity: VelocityTracker,
        project_root: Path,
    ) -> None:
        self.config = config
        self.pool = pool
        self.tracker = tracker
        self.sprint_log = sprint_log
        self.velocity = velocity
        self.project_root = project_root

    def load_template(self, name: str) -> str:
        override = self.project_root / "prompts" / f"{name}.md"
        if override.exists():
            return override.read_text(encoding="utf-8")
        return DEFAULT_TEMPLATES[name]

    def _base_variables(self) -> dict[str, str]:
        velocity = [
            {"sprint": entry.sprint, "planned": entry.planned, "done": entry.done}
            for entry in self.velocity.read()
        ]
        return {
            "PROJECT_NAME": self.config.project.name,
            "SPRINT_NUMBER": str(self.config.sprint.number),
            "BASE_BRANCH": self.config.project.base_branch,
            "VELOCITY_DATA": json.dumps(velocity),
        }

    async def _ask(self, role: str, prompt: str) -> Any:
        options = SessionOptions(
            role=role,
            working_directory=self.project_root,
            model=self.config.agent.model or None,
        )

        async def exchange(session_id: str) -> str:
            return await self.pool.send(session_id, prompt)

        response = await self.pool.execute_in_session(options, exchange)
        return extract_json(response)

    async def refine(self) -> list[dict[str, Any]]:
        ideas = await self.tracker.list_issues(labels=["type:idea"], state="open")
        if not ideas:
            logger.info("No type:idea issues found, skipping refinement")
            return []
        logger.info("Refining %d idea issues", len(ideas))
        variables = self._base_variables()
        variables["IDEAS"] = sanitize_prompt_input(
            json.dumps([{"number": idea.number, "title": idea.title} for idea in ideas])
        )
        parsed = await self._ask(
            "refinement", substitute_prompt(self.load_template("refinement"), variables)
        )
        refined = parsed.get("refined_issues", []) if isinstance(parsed, dict) else []
        result: list[dict[str, Any]] = []
        for item in refined:
            if not isinstance(item, dict) or "number" not in item:
                continue
            score = item.get("ice_score", 0)
            if not isinstance(score, (int, float)) or score <= 0:
                logger.warning("Issue #%s has zero or negative ICE score", item["number"])
            result.append(
                {"number": int(item["number"]), "title": str(item.get("title", "")), "ice_score": score}
            )
        return result

    async def plan(self, refined: list[dict[str, Any]]) -> SprintPlan:
        backlog = await self.tracker.list_issues(state="open")
        logger.info("Loaded %d backlog issues", len(backlog))
        variables = self._base_variables()
        variables["MAX_ISSUES"] = str(self.config.sprint.max_issues)
        variables["BACKLOG"] = sanitize_prompt_input(
            json.dumps(
                [
                    {"number": issue.number, "title": issue.title, "labels": issue.labels}
                    for issue in backlog
                ]
            )
        )
        variables["REFINED_ISSUES"] = json.dumps(refined) if refined else "No refinement data"
        parsed = await self._ask(
            "planner", substitute_prompt(self.load_template("planning"), variables)
        )
        if not isinstance(parsed, dict):
            raise SessionError("Planning agent did not return a JSON object", retriable=False)
        plan = SprintPlan.from_dict(parsed, sprint_number=self.config.sprint.number)
        plan.sprint_number = self.config.sprint.number
        if len(plan.issues) > self.config.sprint.max_issues:
            logger.warning(
                "Plan has %d issues, keeping the first %d",
                len(plan.issues),
                self.config.sprint.max_issues,
            )
            plan.issues = plan.issues[: self.config.sprint.max_issues]
        await self.publish_plan(plan)
        return plan

    async def publish_plan(self, plan: SprintPlan) -> None:
        title = f"{self.config.sprint.prefix} {plan.sprint_number}"
        if await self.tracker.get_milestone(title) is None:
            await self.tracker.create_milestone(title, f"{title} milestone")
        for issue in plan.issues:
            if not issue.body:
                issue.body = (await self.tracker.get_issue(issue.number)).body
            await self.tracker.set_label(issue.number, STATUS_PLANNED)
            await self.tracker.set_milestone(issue.number, title)
        self.sprint_log.create(plan.rationale, len(plan.issues))
        logger.info(
            "Sprint %d planned: %d issues, %d points",
            plan.sprint_number,
            len(plan.issues),
            plan.estimated_points,
        )

    def worker_prompt(
        self,
        issue: SprintIssue,
        branch: str,
        worktree: Path,
        feedback: str | None = None,
    ) -> str:
        variables = self._base_variables()
        variables.update(
            {
                "ISSUE_NUMBER": str(issue.number),
                "ISSUE_TITLE": issue.title,
                "ISSUE_BODY": sanitize_prompt_input(issue.body),
                "ACCEPTANCE_CRITERIA": sanitize_prompt_input(issue.acceptance_criteria),
                "EXPECTED_FILES": "\n".join(f"- {path}" for path in issue.expected_files)
                or "- (not declared)",
                "BRANCH_NAME": branch,
                "WORKTREE_PATH": str(worktree),
                "MAX_DIFF_LINES": str(self.config.quality_gates.max_diff_lines),
            }
        )
        prompt = substitute_prompt(self.load_template("worker"), variables)
        if feedback:
            prompt = f"{prompt}\n\n{feedback}"
        return prompt

    async def review(self, state: SprintState) -> ReviewResult:
        metrics = SprintMetrics.from_results(state.results, state.drift_incidents)
        variables = self._base_variables()
        variables.update(
            {
                "SPRINT_ISSUES": json.dumps(
                    [
                        {
                            "number": entry.issue_number,
                            "status": entry.status,
                            "points": entry.points,
                            "branch": entry.branch,
                        }
                        for entry in state.results
                    ]
                ),
                "METRICS": json.dumps(metrics.to_dict()),
                "FAILED_GATES": top_failed_gates(state.results) or "none",
            }
        )
        parsed = await self._ask("review", substitute_prompt(self.load_template("review"), variables))
        review = ReviewResult.from_dict(parsed if isinstance(parsed, dict) else {})
        logger.info(
            "Sprint review: %d demo items, %d open items",
            len(review.demo_items),
            len(review.open_items),
        )
        return review

    async def retro(self, state: SprintState, review: ReviewResult | None) -> RetroResult:
        metrics = SprintMetrics.from_results(state.results, state.drift_incidents)
        variables = self._base_variables()
        variables.update(
            {
                "SPRINT_REVIEW_DATA": json.dumps(
                    {"review": review.to_dict() if review else None, "metrics": metrics.to_dict()}
                ),
                "PREVIOUS_RETRO_IMPROVEMENTS": self.sprint_log.previous_retro() or "None available",
            }
        )
        parsed = await self._ask("retro", substitute_prompt(self.load_template("retro"), variables))
        retro = RetroResult.from_dict(parsed if isinstance(parsed, dict) else {})
        for improvement in retro.improvements:
            if improvement.auto_applicable:
                continue
            if not improvement.title.strip() or not improvement.description.strip():
                logger.warning("Skipping improvement without title or description")
                continue
            await self.tracker.create_issue(
                f"chore(process): {improvement.title}",
                improvement.description,
                labels=["type:chore", "scope:process"],
            )
            logger.info("Created improvement issue: %s", improvement.title)
        self.sprint_log.write_retro(retro)
        return retro
