from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sprint_runner.errors import SessionError
from sprint_runner.sessions.provider import SessionOptions, SessionProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class PooledSession:
    session_id: str
    created_at: float


@dataclass(slots=True)
class PoolStats:
    active: int
    available: int
    total: int


class SessionPool:
    """Caps the number of concurrently open agent sessions.

    Waiters queue in arrival order. A slot freed by ``release`` is handed to
    the longest-waiting caller, so an acquire that arrives later can never
    overtake one already waiting.
    """

    def __init__(
        self,
        provider: SessionProvider,
        max_sessions: int,
        *,
        prompt_timeout: float = 600.0,
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.provider = provider
        self.max_sessions = max_sessions
        self.prompt_timeout = prompt_timeout
        self._active: dict[str, PooledSession] = {}
        self._reserved = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    def _occupied(self) -> int:
        return len(self._active) + self._reserved

    def _wake_next(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # The slot is reserved for the woken waiter before it resumes.
                self._reserved += 1
                waiter.set_result(None)
                return

    async def acquire(self, options: SessionOptions | None = None) -> str:
        if any(waiter.done() for waiter in self._waiters):
            self._waiters = deque(waiter for waiter in self._waiters if not waiter.done())
        if self._occupied() >= self.max_sessions or self._waiters:
            waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                if waiter.done() and not waiter.cancelled():
                    self._reserved -= 1
                    self._wake_next()
                raise
            self._reserved -= 1

        # Claim the slot before the first await so no other caller can take it.
        self._reserved += 1
        try:
            session_id = await self.provider.create_session(options or SessionOptions())
        except BaseException:
            self._reserved -= 1
            self._wake_next()
            raise
        self._reserved -= 1
        self._active[session_id] = PooledSession(session_id=session_id, created_at=time.monotonic())
        logger.debug(
            "Acquired session %s (%d/%d active)", session_id, len(self._active), self.max_sessions
        )
        return session_id

    async def release(self, session_id: str) -> None:
        if session_id not in self._active:
            logger.warning("Release of unknown session %s ignored", session_id)
            return
        del self._active[session_id]
        try:
            await self.provider.end_session(session_id)
        finally:
            self._wake_next()
        logger.debug("Released session %s", session_id)

    async def send(self, session_id: str, prompt: str) -> str:
        if session_id not in self._active:
            raise SessionError(
                f"Session {session_id} is not held by this pool",
                session_id=session_id,
                retriable=False,
            )
        return await self.provider.send_prompt(session_id, prompt, self.prompt_timeout)

    async def execute_in_session(
        self,
        options: SessionOptions | None,
        fn: Callable[[str], Awaitable[T]],
    ) -> T:
        session_id = await self.acquire(options)
        try:
            return await fn(session_id)
        finally:
            await self.release(session_id)

    async def drain_all(self) -> None:
        session_ids = list(self._active)
        if not session_ids:
            return
        results = await asyncio.gather(
            *(self.release(session_id) for session_id in session_ids), return_exceptions=True
        )
        for session_id, result in zip(session_ids, results):
            if isinstance(result, Exception):
                logger.warning("Failed to close session %s while draining: %s", session_id, result)

    def get_stats(self) -> PoolStats:
        active = len(self._active)
        return PoolStats(
            active=active,
            available=max(0, self.max_sessions - active),
            total=self.max_sessions,
        )
