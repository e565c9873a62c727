from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sprint_runner.errors import ExternalToolError

logger = logging.getLogger(__name__)

STATUS_PLANNED = "status:planned"
STATUS_IN_PROGRESS = "status:in-progress"
STATUS_DONE = "status:done"
STATUS_BLOCKED = "status:blocked"
STATUS_LABELS = (STATUS_PLANNED, STATUS_IN_PROGRESS, STATUS_DONE, STATUS_BLOCKED)

ISSUE_FIELDS = "number,title,body,labels,state"
ISSUE_URL_PATTERN = re.compile(r"/(\d+)\s*$")


@dataclass(slots=True)
class TrackerIssue:
    number: int
    title: str
    body: str = ""
    labels: list[str] = field(default_factory=list)
    state: str = "OPEN"

    @classmethod
    def from_gh(cls, data: dict[str, Any]) -> TrackerIssue:
        labels = [
            str(item.get("name", "")) for item in data.get("labels", []) if isinstance(item, dict)
        ]
        return cls(
            number=int(data["number"]),
            title=str(data.get("title", "")),
            body=str(data.get("body", "") or ""),
            labels=labels,
            state=str(data.get("state", "OPEN")),
        )


@dataclass(slots=True)
class Milestone:
    number: int
    title: str
    description: str = ""
    state: str = "open"


@dataclass(slots=True)
class PullRequest:
    number: int
    head_ref: str
    state: str
    merge_state: str
    url: str


def parse_sprint_number(title: str, prefix: str = "Sprint") -> int | None:
    match = re.match(rf"^{re.escape(prefix)}\s+(\d+)$", title.strip(), re.IGNORECASE)
    return int(match.group(1)) if match else None


class IssueTracker:
    """GitHub issues, labels, milestones and pull requests through the ``gh`` CLI."""

    def __init__(self, repo_root: Path | None = None, binary: str = "gh") -> None:
        self.repo_root = repo_root
        self.binary = binary

    async def _run_gh(self, args: list[str]) -> str:
        logger.debug("gh %s", " ".join(args[:3]))
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                cwd=str(self.repo_root) if self.repo_root else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ExternalToolError(f"gh {' '.join(args)}", f"{self.binary} not found") from exc
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            logger.error("gh %s failed: %s", args[0], message)
            raise ExternalToolError(f"gh {' '.join(args)}", message, exit_code=process.returncode)
        return stdout.decode("utf-8", errors="replace").strip()

    async def _run_gh_json(self, args: list[str]) -> Any:
        output = await self._run_gh(args)
        try:
            return json.loads(output) if output else None
        except json.JSONDecodeError as exc:
            raise ExternalToolError(f"gh {' '.join(args)}", f"unparsable output: {exc}") from exc

    async def get_issue(self, number: int) -> TrackerIssue:
        data = await self._run_gh_json(["issue", "view", str(number), "--json", ISSUE_FIELDS])
        if not isinstance(data, dict):
            raise ExternalToolError(f"gh issue view {number}", "empty response")
        return TrackerIssue.from_gh(data)

    async def list_issues(
        self,
        *,
        labels: list[str] | None = None,
        state: str | None = None,
        milestone: str | None = None,
    ) -> list[TrackerIssue]:
        args = ["issue", "list", "--json", ISSUE_FIELDS]
        if labels:
            args.extend(["--label", ",".join(labels)])
        if state:
            args.extend(["--state", state])
        if milestone:
            args.extend(["--milestone", milestone])
        data = await self._run_gh_json(args)
        return [TrackerIssue.from_gh(item) for item in data or [] if isinstance(item, dict)]

    async def create_issue(
        self, title: str, body: str, labels: list[str] | None = None
    ) -> TrackerIssue:
        args = ["issue", "create", "--title", title, "--body", body]
        if labels:
            args.extend(["--label", ",".join(labels)])
        url = await self._run_gh(args)
        match = ISSUE_URL_PATTERN.search(url)
        if match is None:
            raise ExternalToolError("gh issue create", f"could not parse issue number from {url!r}")
        return await self.get_issue(int(match.group(1)))

    async def update_issue(
        self,
        number: int,
        *,
        title: str | None = None,
        body: str | None = None,
        state: str | None = None,
    ) -> None:
        args = ["issue", "edit", str(number)]
        if title:
            args.extend(["--title", title])
        if body:
            args.extend(["--body", body])
        if len(args) > 3:
            await self._run_gh(args)
        if state == "closed":
            await self._run_gh(["issue", "close", str(number)])
        elif state == "open":
            await self._run_gh(["issue", "reopen", str(number)])

    async def add_comment(self, number: int, body: str) -> None:
        await self._run_gh(["issue", "comment", str(number), "--body", body])

    async def set_label(self, number: int, label: str) -> None:
        await self._run_gh(["issue", "edit", str(number), "--add-label", label])

    async def remove_label(self, number: int, label: str) -> None:
        await self._run_gh(["issue", "edit", str(number), "--remove-label", label])

    async def get_labels(self, number: int) -> list[str]:
        data = await self._run_gh_json(["issue", "view", str(number), "--json", "labels"])
        labels = data.get("labels", []) if isinstance(data, dict) else []
        return [str(item.get("name", "")) for item in labels if isinstance(item, dict)]

    async def set_status(self, number: int, label: str) -> None:
        """Swap any existing status label for ``label``."""
        current = await self.get_labels(number)
        for existing in current:
            if existing in STATUS_LABELS and existing != label:
                await self.remove_label(number, existing)
        if label not in current:
            await self.set_label(number, label)

    async def set_blocked_status(self, number: int, reason: str) -> None:
        await self.add_comment(number, f"🚫 **Blocked**: {reason}")
        await self.set_label(number, STATUS_BLOCKED)

    async def _list_milestones(self, state: str = "all") -> list[Milestone]:
        output = await self._run_gh(
            [
                "api",
                "repos/{owner}/{repo}/milestones",
                "--paginate",
                "--method",
                "GET",
                "-F",
                f"state={state}",
            ]
        )
        milestones: list[Milestone] = []
        # --paginate prints one JSON array per page.
        for page in output.splitlines():
            if not page.strip():
                continue
            try:
                items = json.loads(page)
            except json.JSONDecodeError:
                logger.warning("Skipping unparsable milestone page")
                continue
            for item in items if isinstance(items, list) else []:
                milestones.append(
                    Milestone(
                        number=int(item["number"]),
                        title=str(item.get("title", "")),
                        description=str(item.get("description", "") or ""),
                        state=str(item.get("state", "open")),
                    )
                )
        return milestones

    async def get_milestone(self, title: str) -> Milestone | None:
        for milestone in await self._list_milestones():
            if milestone.title == title:
                return milestone
        return None

    async def create_milestone(self, title: str, description: str = "") -> Milestone:
        args = ["api", "repos/{owner}/{repo}/milestones", "-f", f"title={title}"]
        if description:
            args.extend(["-f", f"description={description}"])
        data = await self._run_gh_json(args)
        if not isinstance(data, dict):
            raise ExternalToolError("gh api milestones", "empty response")
        logger.info("Created milestone %s", title)
        return Milestone(
            number=int(data["number"]),
            title=str(data.get("title", title)),
            description=str(data.get("description", "") or ""),
            state=str(data.get("state", "open")),
        )

    async def set_milestone(self, number: int, title: str) -> None:
        await self._run_gh(["issue", "edit", str(number), "--milestone", title])

    async def close_milestone(self, title: str) -> None:
        milestone = await self.get_milestone(title)
        if milestone is None:
            raise ExternalToolError("gh api milestones", f"milestone not found: {title}")
        await self._run_gh(
            [
                "api",
                "-X",
                "PATCH",
                f"repos/{{owner}}/{{repo}}/milestones/{milestone.number}",
                "-f",
                "state=closed",
            ]
        )
        logger.info("Closed milestone %s", title)

    async def get_next_open_milestone(self, prefix: str = "Sprint") -> tuple[Milestone, int] | None:
        candidates: list[tuple[int, Milestone]] = []
        for milestone in await self._list_milestones("open"):
            number = parse_sprint_number(milestone.title, prefix)
            if number is not None:
                candidates.append((number, milestone))
        if not candidates:
            return None
        number, milestone = min(candidates, key=lambda item: item[0])
        return milestone, number

    async def list_pull_requests(
        self,
        *,
        state: str = "open",
        base: str | None = None,
        head: str | None = None,
    ) -> list[PullRequest]:
        args = [
            "pr",
            "list",
            "--state",
            state,
            "--json",
            "number,headRefName,state,mergeStateStatus,url",
        ]
        if base:
            args.extend(["--base", base])
        if head:
            args.extend(["--head", head])
        data = await self._run_gh_json(args)
        return [
            PullRequest(
                number=int(item["number"]),
                head_ref=str(item.get("headRefName", "")),
                state=str(item.get("state", "")),
                merge_state=str(item.get("mergeStateStatus", "")),
                url=str(item.get("url", "")),
            )
            for item in data or []
            if isinstance(item, dict)
        ]
