from __future__ import annotations

from pathlib import Path


class SprintRunnerError(RuntimeError):
    """Base class for every error raised by the sprint runner."""


class ConfigurationError(SprintRunnerError):
    """Raised when configuration is missing or invalid."""


class LockContentionError(SprintRunnerError):
    """Raised when another live process holds the sprint lock."""

    def __init__(self, sprint_number: int, pid: int, lock_path: Path) -> None:
        super().__init__(
            f"Sprint {sprint_number} is already running (PID {pid}). Lock: {lock_path}"
        )
        self.sprint_number = sprint_number
        self.pid = pid
        self.lock_path = lock_path


class StateVersionError(SprintRunnerError):
    """Raised when a persisted state file carries an unsupported schema version."""

    def __init__(self, path: Path, found: object, expected: str) -> None:
        super().__init__(
            f"Incompatible sprint state version in {path}: got {found!r}, "
            f"expected {expected!r}. Delete the state file and restart."
        )
        self.path = path
        self.found = found
        self.expected = expected


class InvalidTransitionError(SprintRunnerError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Illegal sprint phase transition: {current} -> {requested}")
        self.current = current
        self.requested = requested


class SessionError(SprintRunnerError):
    """Raised when an agent session cannot be opened or prompted."""

    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.retriable = retriable


class SessionTimeoutError(SessionError):
    """Raised when a prompt exceeds the configured session timeout."""


class QualityGateFailure(SprintRunnerError):
    def __init__(self, message: str, *, failed_checks: list[str] | None = None) -> None:
        super().__init__(message)
        self.failed_checks = list(failed_checks or [])


class DriftExceeded(SprintRunnerError):
    """Raised when changed files stray too far from the planned files.

    ``sprint_wide`` is set once the sprint-level incident budget is exhausted.
    """

    def __init__(self, message: str, *, drift: float, sprint_wide: bool = False) -> None:
        super().__init__(message)
        self.drift = drift
        self.sprint_wide = sprint_wide


class ChallengerRejection(SprintRunnerError):
    def __init__(self, feedback: str) -> None:
        super().__init__(f"Challenger rejected the change: {feedback}")
        self.feedback = feedback


class ExternalToolError(SprintRunnerError):
    """Raised when an external CLI (gh, git) or HTTP service fails."""

    def __init__(self, command: str, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(f"{command} failed: {message}")
        self.command = command
        self.message = message
        self.exit_code = exit_code


class PlanValidationError(SprintRunnerError):
    """Raised when a sprint plan cannot be scheduled (e.g. circular dependencies)."""
