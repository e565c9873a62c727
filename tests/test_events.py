import logging
from typing import Any

import pytest

from sprint_runner.events import SprintEventBus


def test_handlers_run_in_registration_order() -> None:
    bus = SprintEventBus()
    calls: list[str] = []
    bus.on("issue:start", lambda payload: calls.append(f"first:{payload['issue_number']}"))
    bus.on("issue:start", lambda payload: calls.append(f"second:{payload['issue_number']}"))

    bus.emit("issue:start", {"issue_number": 7})

    assert calls == ["first:7", "second:7"]


def test_unsubscribe_removes_handler() -> None:
    bus = SprintEventBus()
    calls: list[dict[str, Any]] = []
    unsubscribe = bus.on("sprint:complete", calls.append)
    assert bus.listener_count("sprint:complete") == 1

    unsubscribe()
    bus.emit("sprint:complete", {"sprint_number": 1})

    assert calls == []
    assert bus.listener_count("sprint:complete") == 0


def test_failing_handler_does_not_stop_others(caplog: pytest.LogCaptureFixture) -> None:
    bus = SprintEventBus()
    calls: list[str] = []

    def broken(payload: dict[str, Any]) -> None:
        raise ValueError("handler bug")

    bus.on("issue:fail", broken)
    bus.on("issue:fail", lambda payload: calls.append(payload["reason"]))

    with caplog.at_level(logging.ERROR):
        bus.emit("issue:fail", {"issue_number": 3, "reason": "gate"})

    assert calls == ["gate"]
    assert "Event handler for issue:fail failed" in caplog.text


def test_reentrant_emit_is_bounded(caplog: pytest.LogCaptureFixture) -> None:
    bus = SprintEventBus(max_depth=3)
    seen: list[int] = []

    def echo(payload: dict[str, Any]) -> None:
        seen.append(payload["depth"])
        bus.emit("log", {"depth": payload["depth"] + 1})

    bus.on("log", echo)
    with caplog.at_level(logging.ERROR):
        bus.emit("log", {"depth": 1})

    assert seen == [1, 2, 3]
    assert "re-entrant emit depth" in caplog.text


def test_handlers_receive_a_copy_of_the_payload() -> None:
    bus = SprintEventBus()
    payload = {"issue_number": 1}
    bus.on("issue:succeed", lambda body: body.update(issue_number=99))

    bus.emit("issue:succeed", payload)

    assert payload == {"issue_number": 1}
