from __future__ import annotations

import logging
from pathlib import Path

from sprint_runner.git import GitWorkspace
from sprint_runner.models import ChallengerResult, SprintIssue
from sprint_runner.sessions.provider import SessionOptions, SessionProvider

logger = logging.getLogger(__name__)

APPROVED_MARKER = "APPROVED"


def parse_verdict(response: str) -> ChallengerResult:
    text = response.strip()
    if text.startswith(APPROVED_MARKER):
        remainder = text[len(APPROVED_MARKER):].lstrip(": \t\r\n")
        return ChallengerResult(approved=True, feedback=remainder)
    return ChallengerResult(approved=False, feedback=response)


def build_challenger_prompt(
    issue: SprintIssue,
    branch: str,
    base: str,
    lines_changed: int,
    files: list[str],
) -> str:
    lines = [
        "You are an adversarial code reviewer (the Challenger).",
        "Review this change critically. Look for:",
        "- Scope creep beyond the issue",
        "- Missing tests or inadequate coverage",
        "- Architectural violations",
        "- Security concerns",
        "- Performance regressions",
        "",
        f"## Issue #{issue.number}: {issue.title}",
        "",
        issue.body or issue.acceptance_criteria,
        "",
        "## Diff Stats",
        f"- Lines changed: {lines_changed}",
        f"- Files changed: {len(files)}",
        f"- Files: {', '.join(files)}",
        "",
        f"## Branch: {branch} (base: {base})",
        "",
        "Respond with EXACTLY one of these on the first line:",
        "APPROVED: <one-line summary>",
        "REJECTED: <one-line reason>",
        "",
        "Then provide detailed feedback below.",
    ]
    return "\n".join(lines)


class ChallengerReview:
    """Second-opinion review in a session of its own.

    The session comes straight from the provider rather than the worker pool,
    so a review never waits behind the worker that produced the change.
    """

    def __init__(
        self,
        provider: SessionProvider,
        git: GitWorkspace,
        *,
        base_branch: str,
        timeout: float,
        model: str | None = None,
        working_directory: Path | None = None,
    ) -> None:
        self.provider = provider
        self.git = git
        self.base_branch = base_branch
        self.timeout = timeout
        self.model = model
        self.working_directory = working_directory

    async def review(self, issue: SprintIssue, branch: str) -> ChallengerResult:
        stat = await self.git.diff_stat(branch, self.base_branch)
        prompt = build_challenger_prompt(
            issue, branch, self.base_branch, stat.lines_changed, list(stat.files)
        )
        session_id = await self.provider.create_session(
            SessionOptions(
                role="challenger",
                working_directory=self.working_directory,
                model=self.model or None,
            )
        )
        try:
            response = await self.provider.send_prompt(session_id, prompt, self.timeout)
        finally:
            await self.provider.end_session(session_id)
        result = parse_verdict(response)
        logger.info(
            "Challenger %s issue #%d", "approved" if result.approved else "rejected", issue.number
        )
        return result
