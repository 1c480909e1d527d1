from __future__ import annotations

import json
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

from agentloop.constants import SESSION_FILE, SESSION_HISTORY_FILE
from agentloop.session import SessionManager


class _FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def _manager(tmp_path: Path, clock: _FakeClock, expiry_hours: float = 24) -> SessionManager:
    return SessionManager(tmp_path, tmp_path / ".agentloop", expiry_hours, clock=clock)


def _start() -> _FakeClock:
    return _FakeClock(datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc))


def test_initialize_creates_unique_session(tmp_path: Path) -> None:
    clock = _start()
    manager = _manager(tmp_path, clock)

    record = manager.initialize(loop_index=1)

    assert re.fullmatch(r"loop-\d{8}T\d{12}Z-[0-9a-f]{8}", record.session_id)
    assert record.created_at == "2026-03-01T08:00:00Z"
    history = manager.load_history()
    assert history[-1]["reason"] == "session_created"
    assert history[-1]["to_state"] == "active"
    assert history[-1]["loop_number"] == 1


def test_initialize_keeps_existing_session(tmp_path: Path) -> None:
    clock = _start()
    manager = _manager(tmp_path, clock)
    first = manager.initialize()

    clock.advance(minutes=5)
    second = manager.initialize()

    assert second.session_id == first.session_id
    assert len(manager.load_history()) == 1


def test_session_expires_at_exactly_expiry_hours(tmp_path: Path) -> None:
    clock = _start()
    manager = _manager(tmp_path, clock, expiry_hours=24)
    manager.initialize()

    clock.advance(hours=23, minutes=59)
    assert manager.is_resumable() is True

    clock.advance(minutes=1)
    assert manager.is_resumable() is False


def test_touch_extends_session_life(tmp_path: Path) -> None:
    clock = _start()
    manager = _manager(tmp_path, clock, expiry_hours=1)
    manager.initialize()

    clock.advance(minutes=50)
    manager.touch()
    clock.advance(minutes=50)

    assert manager.is_resumable() is True


def test_no_session_is_not_resumable(tmp_path: Path) -> None:
    manager = _manager(tmp_path, _start())

    assert manager.is_resumable() is False
    assert manager.touch() is None


def test_reset_clears_token_and_records_transition(tmp_path: Path) -> None:
    clock = _start()
    manager = _manager(tmp_path, clock)
    manager.initialize()
    manager.adopt_agent_session("agent-42")
    assert manager.resume_token() == "agent-42"

    clock.advance(minutes=3)
    record = manager.reset("circuit_open", loop_index=7)

    assert record.session_id == ""
    assert record.agent_session_id == ""
    assert record.reset_reason == "circuit_open"
    assert record.reset_at == "2026-03-01T08:03:00Z"
    assert manager.is_resumable() is False
    assert manager.resume_token() == ""
    last = manager.load_history()[-1]
    assert (last["from_state"], last["to_state"], last["reason"], last["loop_number"]) == (
        "active",
        "reset",
        "circuit_open",
        7,
    )


def test_history_is_capped_at_fifty_entries(tmp_path: Path) -> None:
    clock = _start()
    manager = _manager(tmp_path, clock)
    for loop_index in range(60):
        manager.reset("manual", loop_index=loop_index)

    history = json.loads((tmp_path / ".agentloop" / SESSION_HISTORY_FILE).read_text(encoding="utf-8"))
    assert len(history) == 50
    assert history[0]["loop_number"] == 10
    assert history[-1]["loop_number"] == 59


def test_corrupted_session_file_is_recovered(tmp_path: Path) -> None:
    session_path = tmp_path / ".agentloop" / SESSION_FILE
    session_path.parent.mkdir(parents=True)
    session_path.write_text("{broken", encoding="utf-8")
    manager = _manager(tmp_path, _start())

    record = manager.initialize(loop_index=2)

    assert record.session_id
    last = manager.load_history()[-1]
    assert last["reason"] == "corrupted_file_recovery"
    assert last["from_state"] == "corrupted"


def test_adopt_ignores_blank_tokens(tmp_path: Path) -> None:
    manager = _manager(tmp_path, _start())
    manager.initialize()

    manager.adopt_agent_session("   ")

    record = manager.load()
    assert record is not None
    assert record.agent_session_id == ""
