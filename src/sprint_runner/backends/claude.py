from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from sprint_runner.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    appears_partial_json,
    extract_event_text,
)


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            user_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if system_prompt.strip():
            command.extend(["--append-system-prompt", system_prompt])
        if model and model.strip():
            command.extend(["--model", model.strip()])
        return command

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        working_directory: Path | None = None,
        model: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> AsyncIterator[str]:
        if context:
            user_prompt = (
                f"{user_prompt}\n\nContext JSON:\n"
                f"{json.dumps(context, ensure_ascii=False, indent=2)}"
            )
        cwd = working_directory or self.working_directory
        command = self.build_command(system_prompt, user_prompt, model)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend="claude", retriable=False
            )

        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield line
                    continue

                if isinstance(event, dict):
                    content = extract_event_text(event)
                    if content:
                        yield content

            if parse_buffer:
                yield parse_buffer

            return_code = await process.wait()
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()

        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"Claude backend failed with exit code {return_code}: {stderr_output}",
                backend="claude",
                exit_code=return_code,
                retriable=True,
            )
