from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from sprint_runner.errors import SessionError


class BackendExecutionError(SessionError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message, retriable=retriable)
        self.backend = backend
        self.exit_code = exit_code


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class AgentBackend(ABC):
    """A coding agent reachable through a one-shot prompt invocation."""

    name = "agent"

    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        working_directory: Path | None = None,
        model: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> AsyncIterator[str]:
        """Execute an agent and stream textual chunks."""

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        working_directory: Path | None = None,
        model: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> str:
        chunks: list[str] = []
        async for chunk in self.execute(
            system_prompt,
            user_prompt,
            working_directory=working_directory,
            model=model,
            context=context,
        ):
            chunks.append(chunk)
        return "".join(chunks).strip()


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def extract_event_text(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)

    delta = event.get("delta")
    if isinstance(delta, str):
        return delta

    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return extract_event_text(message)

    result = event.get("result")
    if isinstance(result, str) and event.get("type") != "result":
        return result
    return ""
