from __future__ import annotations

import asyncio
import logging
import re
import shlex
from dataclasses import dataclass
from pathlib import Path

from sprint_runner.config import QualityGatesConfig
from sprint_runner.git import GitWorkspace
from sprint_runner.models import CheckCategory, QualityCheck, QualityResult

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
OUTPUT_TAIL_CHARS = 1000


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    output_tail: str
    used_shell: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


async def run_command(command: str, cwd: Path) -> CommandResult:
    command_text = command.strip()
    if not command_text:
        return CommandResult(command=command, exit_code=1, output_tail="Command is empty.")

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    argv: list[str] = []
    if not used_shell:
        try:
            argv = shlex.split(command_text)
        except ValueError:
            used_shell = True

    try:
        if used_shell:
            process = await asyncio.create_subprocess_shell(
                command_text,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        else:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
    except (FileNotFoundError, PermissionError) as exc:
        return CommandResult(
            command=command, exit_code=127, output_tail=f"Cannot run {command_text!r}: {exc}"
        )
    stdout, _ = await process.communicate()
    return CommandResult(
        command=command,
        exit_code=process.returncode if process.returncode is not None else 1,
        output_tail=stdout.decode("utf-8", errors="replace").strip()[-OUTPUT_TAIL_CHARS:],
        used_shell=used_shell,
    )


class QualityGate:
    """Runs the configured checks against an issue branch.

    Every enabled check runs even after an earlier one fails, so the agent's
    retry feedback lists all problems at once.
    """

    def __init__(self, config: QualityGatesConfig, git: GitWorkspace) -> None:
        self.config = config
        self.git = git

    def _find_test_files(self, worktree: Path) -> list[Path]:
        found: set[Path] = set()
        for pattern in self.config.test_file_patterns:
            for path in worktree.glob(pattern):
                if "node_modules" in path.parts or ".git" in path.parts:
                    continue
                if path.is_file():
                    found.add(path)
        return sorted(found)

    async def _command_check(
        self, name: str, category: CheckCategory, command: str, worktree: Path, ok_detail: str
    ) -> QualityCheck:
        result = await run_command(command, worktree)
        if result.ok:
            return QualityCheck(name=name, passed=True, detail=ok_detail, category=category)
        detail = result.output_tail or f"{command} exited with {result.exit_code}"
        return QualityCheck(name=name, passed=False, detail=detail, category=category)

    async def run(self, worktree: Path, branch: str, base: str) -> QualityResult:
        checks: list[QualityCheck] = []
        gates = self.config

        if gates.require_tests:
            test_files = self._find_test_files(worktree)
            checks.append(
                QualityCheck(
                    name="tests-exist",
                    passed=bool(test_files),
                    detail=(
                        f"Found {len(test_files)} test file(s)"
                        if test_files
                        else "No test files found"
                    ),
                    category="test",
                )
            )
            checks.append(
                await self._command_check(
                    "tests-pass", "test", gates.test_command, worktree, "Tests passed"
                )
            )
        if gates.require_lint:
            checks.append(
                await self._command_check(
                    "lint-clean", "lint", gates.lint_command, worktree, "Lint clean"
                )
            )
        if gates.require_types:
            checks.append(
                await self._command_check(
                    "types-clean", "type", gates.type_check_command, worktree, "Types clean"
                )
            )
        if gates.require_build:
            checks.append(
                await self._command_check(
                    "build", "build", gates.build_command, worktree, "Build succeeded"
                )
            )
        if gates.max_diff_lines > 0:
            stat = await self.git.diff_stat(branch, base)
            within = stat.lines_changed <= gates.max_diff_lines
            checks.append(
                QualityCheck(
                    name="diff-size",
                    passed=within,
                    detail=(
                        f"{stat.lines_changed} lines changed (max {gates.max_diff_lines})"
                        if within
                        else f"{stat.lines_changed} lines changed exceeds max {gates.max_diff_lines}"
                    ),
                    category="diff",
                )
            )

        result = QualityResult.from_checks(checks)
        logger.info(
            "Quality gate %s for %s (%d checks, %d failed)",
            "passed" if result.passed else "failed",
            branch,
            len(checks),
            len(result.failed_checks),
        )
        return result
