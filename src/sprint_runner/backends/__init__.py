from sprint_runner.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
)
from sprint_runner.backends.claude import ClaudeCodeBackend
from sprint_runner.backends.codex import CodexBackend

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "build_backend",
]


def build_backend(name: str, binary: str = "") -> AgentBackend:
    if name == "codex":
        return CodexBackend(binary=binary or "codex")
    return ClaudeCodeBackend(binary=binary or "claude")
