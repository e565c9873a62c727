from sprint_runner.sessions.pool import PooledSession, PoolStats, SessionPool
from sprint_runner.sessions.provider import (
    BackendSessionProvider,
    SessionOptions,
    SessionProvider,
)

__all__ = [
    "BackendSessionProvider",
    "PoolStats",
    "PooledSession",
    "SessionOptions",
    "SessionPool",
    "SessionProvider",
]
