from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from sprint_runner.errors import ExternalToolError
from sprint_runner.models import DiffStat

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GitResult:
    returncode: int
    stdout: str
    stderr: str


@dataclass(slots=True, frozen=True)
class MergeResult:
    merged: bool
    conflict_files: tuple[str, ...] = ()


class GitWorkspace:
    """Async wrapper over the git CLI for per-issue branches and worktrees."""

    def __init__(self, repo_root: Path, binary: str = "git") -> None:
        self.repo_root = repo_root.resolve()
        self.binary = binary

    async def _run_git(
        self, args: list[str], *, cwd: Path | None = None, check: bool = True
    ) -> GitResult:
        command = [self.binary, "--no-pager", *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd or self.repo_root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ExternalToolError(f"git {' '.join(args)}", f"{self.binary} not found") from exc
        stdout, stderr = await process.communicate()
        result = GitResult(
            returncode=process.returncode if process.returncode is not None else 1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if check and result.returncode != 0:
            raise ExternalToolError(
                f"git {' '.join(args)}",
                result.stderr.strip() or result.stdout.strip(),
                exit_code=result.returncode,
            )
        return result

    async def create_worktree(self, path: Path, branch: str, base: str) -> None:
        """Check out ``branch`` (reset to ``base``) in a fresh worktree at ``path``."""
        await self._run_git(["worktree", "remove", str(path), "--force"], check=False)
        created = await self._run_git(["branch", branch, base], check=False)
        if created.returncode != 0:
            if "already exists" not in created.stderr:
                raise ExternalToolError(
                    f"git branch {branch} {base}", created.stderr.strip(), exit_code=created.returncode
                )
            logger.info("Branch %s already exists, resetting it to %s", branch, base)
            await self._run_git(["branch", "-f", branch, base])
        added = await self._run_git(["worktree", "add", str(path), branch], check=False)
        if added.returncode != 0:
            await self._run_git(["branch", "-D", branch], check=False)
            raise ExternalToolError(
                f"git worktree add {path}", added.stderr.strip(), exit_code=added.returncode
            )
        logger.info("Created worktree %s on %s", path, branch)

    async def remove_worktree(self, path: Path) -> None:
        await self._run_git(["worktree", "remove", str(path), "--force"])

    async def changed_files(self, branch: str, base: str) -> list[str]:
        result = await self._run_git(["diff", "--name-only", f"{base}...{branch}"])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def diff_stat(self, branch: str, base: str) -> DiffStat:
        result = await self._run_git(["diff", "--numstat", f"{base}...{branch}"], check=False)
        if result.returncode != 0:
            logger.warning("git diff %s...%s failed: %s", base, branch, result.stderr.strip())
            return DiffStat()
        files: list[str] = []
        lines_changed = 0
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 3:
                continue
            added, deleted, file_path = parts[0], parts[1], parts[2]
            # Binary files report "-" for both counts.
            lines_changed += (0 if added == "-" else int(added)) + (
                0 if deleted == "-" else int(deleted)
            )
            files.append(file_path)
        return DiffStat(lines_changed=lines_changed, files_changed=len(files), files=tuple(files))

    async def merge_branch(self, branch: str, base: str, *, squash: bool = False) -> MergeResult:
        """Merge ``branch`` into ``base`` in the main checkout.

        Conflicts abort the merge and are reported in the result; any other
        git failure raises :class:`ExternalToolError`.
        """
        await self._run_git(["checkout", base])
        args = ["merge", "--squash", branch] if squash else ["merge", "--no-edit", branch]
        merged = await self._run_git(args, check=False)
        if merged.returncode != 0:
            output = merged.stdout + merged.stderr
            conflict_files: list[str] = []
            if "CONFLICT" in output:
                unmerged = await self._run_git(
                    ["diff", "--name-only", "--diff-filter=U"], check=False
                )
                conflict_files = [line.strip() for line in unmerged.stdout.splitlines() if line.strip()]
            # A squash merge never writes MERGE_HEAD, so `merge --abort` cannot undo it.
            await self._run_git(["reset", "--merge"], check=False)
            if "CONFLICT" in output:
                logger.warning("Merging %s into %s conflicted: %s", branch, base, conflict_files)
                return MergeResult(merged=False, conflict_files=tuple(conflict_files))
            raise ExternalToolError(
                f"git {' '.join(args)}",
                merged.stderr.strip() or merged.stdout.strip(),
                exit_code=merged.returncode,
            )
        if squash:
            staged = await self._run_git(["diff", "--cached", "--quiet"], check=False)
            if staged.returncode != 0:
                await self._run_git(
                    ["commit", "--no-edit", "-m", f"Squash merge branch '{branch}' into {base}"]
                )
        logger.info("Merged %s into %s", branch, base)
        return MergeResult(merged=True)

    async def revert_branch(self, branch: str, base: str, worktree: Path | None = None) -> None:
        """Discard every change on ``branch`` so it points at ``base`` again."""
        if worktree is not None and worktree.exists():
            await self._run_git(["reset", "--hard", base], cwd=worktree)
            await self._run_git(["clean", "-fd"], cwd=worktree)
        else:
            await self._run_git(["branch", "-f", branch, base])
        logger.warning("Reverted %s to %s", branch, base)
