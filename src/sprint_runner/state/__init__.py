from sprint_runner.state.store import StateStore

__all__ = ["StateStore"]
