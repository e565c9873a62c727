from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from sprint_runner.errors import LockContentionError, StateVersionError
from sprint_runner.models import STATE_VERSION, SprintState

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # The process exists but belongs to another user.
        return True
    return True


class StateStore:
    """Crash-safe persistence of one sprint's state plus its process lock."""

    def __init__(self, project_root: Path, slug: str, sprint_number: int) -> None:
        self.project_root = project_root.resolve()
        self.slug = slug
        self.sprint_number = sprint_number
        self.state_dir = self.project_root / "docs" / "sprints"

    @property
    def state_path(self) -> Path:
        return self.state_dir / f"{self.slug}-{self.sprint_number}-state.json"

    @property
    def lock_path(self) -> Path:
        return self.state_path.with_name(self.state_path.name + ".lock")

    def has_state(self) -> bool:
        return self.state_path.exists()

    def save_state(self, state: SprintState) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        payload = state.to_dict()
        payload["version"] = STATE_VERSION
        serialized = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
        temp_path = self.state_path.with_name(self.state_path.name + ".tmp")
        with temp_path.open("w", encoding="utf-8") as handle:
            handle.write(serialized)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, self.state_path)

    def load_state(self) -> SprintState | None:
        if not self.state_path.exists():
            return None
        payload = json.loads(self.state_path.read_text(encoding="utf-8"))
        found = payload.get("version") if isinstance(payload, dict) else None
        if found != STATE_VERSION:
            raise StateVersionError(self.state_path, found, STATE_VERSION)
        return SprintState.from_dict(payload)

    def acquire_lock(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        pid_bytes = str(os.getpid()).encode("utf-8")
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            holder = self._read_lock_pid()
            if holder is not None and _pid_alive(holder):
                raise LockContentionError(self.sprint_number, holder, self.lock_path) from None
            logger.warning(
                "Taking over stale sprint lock %s (holder PID %s is gone)", self.lock_path, holder
            )
            self.lock_path.write_bytes(pid_bytes)
            return
        try:
            os.write(fd, pid_bytes)
        finally:
            os.close(fd)

    def _read_lock_pid(self) -> int | None:
        try:
            raw = self.lock_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def release_lock(self) -> None:
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
