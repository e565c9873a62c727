from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from sprint_runner.backends.base import AgentBackend
from sprint_runner.errors import SessionError, SessionTimeoutError

logger = logging.getLogger(__name__)

HISTORY_EXCHANGES = 2
HISTORY_CHARS = 4000


@dataclass(slots=True)
class SessionOptions:
    role: str = "worker"
    working_directory: Path | None = None
    model: str | None = None
    system_prompt: str = ""


class SessionProvider(ABC):
    """Opens, prompts and closes agent sessions."""

    @abstractmethod
    async def create_session(self, options: SessionOptions) -> str:
        """Open a session and return its identifier."""

    @abstractmethod
    async def send_prompt(self, session_id: str, prompt: str, timeout: float) -> str:
        """Send one prompt and return the agent's full response.

        Raises ``SessionTimeoutError`` when ``timeout`` seconds pass first.
        """

    @abstractmethod
    async def end_session(self, session_id: str) -> None:
        """Close the session. Closing an unknown session is a no-op."""


@dataclass(slots=True)
class _BackendSession:
    options: SessionOptions
    history: list[tuple[str, str]] = field(default_factory=list)


class BackendSessionProvider(SessionProvider):
    """Session provider over a one-shot CLI agent backend.

    Each prompt is a separate agent invocation; the last few exchanges of a
    session are replayed so follow-up prompts (retry feedback) keep context.
    """

    def __init__(self, backend: AgentBackend) -> None:
        self.backend = backend
        self._sessions: dict[str, _BackendSession] = {}

    @property
    def open_sessions(self) -> int:
        return len(self._sessions)

    async def create_session(self, options: SessionOptions) -> str:
        session_id = f"{options.role}-{uuid4().hex[:12]}"
        self._sessions[session_id] = _BackendSession(options=options)
        logger.debug("Opened %s session %s", self.backend.name, session_id)
        return session_id

    def _render(self, session: _BackendSession, prompt: str) -> str:
        if not session.history:
            return prompt
        parts = ["## Earlier in this session"]
        for previous_prompt, response in session.history[-HISTORY_EXCHANGES:]:
            parts.append(f"### Request\n{previous_prompt[-HISTORY_CHARS:]}")
            parts.append(f"### Your response\n{response[-HISTORY_CHARS:]}")
        parts.append("## Current request")
        parts.append(prompt)
        return "\n\n".join(parts)

    async def send_prompt(self, session_id: str, prompt: str, timeout: float) -> str:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionError(
                f"Unknown agent session: {session_id}", session_id=session_id, retriable=False
            )
        try:
            response = await asyncio.wait_for(
                self.backend.complete(
                    session.options.system_prompt,
                    self._render(session, prompt),
                    working_directory=session.options.working_directory,
                    model=session.options.model,
                ),
                timeout=timeout,
            )
        except TimeoutError as exc:
            raise SessionTimeoutError(
                f"Agent session {session_id} timed out after {timeout:.1f}s",
                session_id=session_id,
            ) from exc
        session.history.append((prompt, response))
        return response

    async def end_session(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.debug("Closed session %s", session_id)
