from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal

import httpx

from sprint_runner.config import NotificationsConfig
from sprint_runner.events import SprintEventBus

logger = logging.getLogger(__name__)

Priority = Literal["min", "low", "default", "high", "urgent"]
PRIORITY_LEVELS: dict[str, int] = {"min": 1, "low": 2, "default": 3, "high": 4, "urgent": 5}


class NtfyNotifier:
    """Push notifications to an ntfy topic.

    Delivery problems are logged and never raised, since a missed push must
    not affect the sprint.
    """

    def __init__(
        self,
        config: NotificationsConfig,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._pending: set[asyncio.Task[bool]] = set()

    @property
    def enabled(self) -> bool:
        return self.config.ntfy_enabled and bool(self.config.ntfy_topic.strip())

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def send(
        self,
        title: str,
        message: str,
        priority: Priority = "default",
        tags: list[str] | None = None,
    ) -> bool:
        if not self.enabled:
            return False
        # JSON publishing keeps non-ASCII titles out of HTTP headers.
        payload: dict[str, Any] = {
            "topic": self.config.ntfy_topic.strip(),
            "title": title,
            "message": message,
            "priority": PRIORITY_LEVELS.get(priority, 3),
            "tags": list(tags or []),
        }
        try:
            response = await self._get_client().post(
                self.config.ntfy_server.rstrip("/") + "/", json=payload
            )
        except httpx.HTTPError as exc:
            logger.warning("ntfy notification error: %s", exc)
            return False
        if response.is_error:
            logger.warning("ntfy notification failed with HTTP %d", response.status_code)
            return False
        return True

    def _dispatch(self, title: str, message: str, priority: Priority, tags: list[str]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, dropping notification %r", title)
            return
        task = loop.create_task(self.send(title, message, priority, tags))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def attach(self, bus: SprintEventBus) -> None:
        def on_issue_fail(payload: dict[str, Any]) -> None:
            self._dispatch(
                "🚫 Issue Blocked",
                f"Issue #{payload.get('issue_number')} failed: {payload.get('reason', '')}",
                "high",
                ["warning"],
            )

        def on_sprint_complete(payload: dict[str, Any]) -> None:
            self._dispatch(
                "✅ Sprint Complete",
                f"Sprint {payload.get('sprint_number')} finished successfully",
                "default",
                ["tada"],
            )

        def on_sprint_error(payload: dict[str, Any]) -> None:
            self._dispatch(
                "❌ Sprint Error", str(payload.get("error", "")), "urgent", ["rotating_light"]
            )

        bus.on("issue:fail", on_issue_fail)
        bus.on("sprint:complete", on_sprint_complete)
        bus.on("sprint:error", on_sprint_error)

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.flush()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
