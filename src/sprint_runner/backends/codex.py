from __future__ import annotations

import asyncio
import json
import logging
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

logger = logging.getLogger(__name__)


class CodexBackend(AgentBackend):
    name = "codex"

    def __init__(self, binary: str = "codex", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        if model and model.strip():
            command.extend(["-m", model.strip()])
        command.append(self._render_prompt(user_prompt, context))
        return command

    @staticmethod
    def _render_prompt(user_prompt: str, context: dict[str, Any] | None) -> str:
        parts = [user_prompt]
        if context:
            parts.append("Context JSON:")
            parts.append(json.dumps(context, ensure_ascii=False, indent=2))
        return "\n\n".join(parts)

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        working_directory: Path | None = None,
        model: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, model, context)
        cwd = working_directory or self.working_directory
        logger.debug("Starting codex exec in %s (model=%s)", cwd, model or "default")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Codex binary not found: {self.binary}",
                backend="codex",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Codex backend did not expose stdout.", backend="codex", retriable=False
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
                    logger.debug("Skipping non-JSON codex output: %s", line[:200])
                    continue

                if isinstance(event, dict):
                    content = extract_event_text(event)
                    if content:
                        yield content

            if parse_buffer:
                logger.debug("Discarding %d bytes of unterminated codex JSON", len(parse_buffer))

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
                f"Codex backend failed with exit code {return_code}: {stderr_output}",
                backend="codex",
                exit_code=return_code,
                retriable=True,
            )
