from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from agentloop.constants import CALL_COUNT_FILE
from agentloop.rate_limiter import RateLimiter, _window_bucket


class _FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now = self.now + timedelta(seconds=seconds)


def _limiter(tmp_path: Path, clock: _FakeClock, max_calls: int = 3) -> RateLimiter:
    return RateLimiter(
        tmp_path,
        tmp_path / ".agentloop",
        max_calls,
        clock=clock,
        sleep=clock.sleep,
    )


def test_window_bucket_is_hour_granular() -> None:
    moment = datetime(2026, 3, 1, 14, 59, 59, tzinfo=timezone.utc)
    assert _window_bucket(moment) == "2026030114"


def test_record_call_counts_until_budget_exhausted(tmp_path: Path) -> None:
    clock = _FakeClock(datetime(2026, 3, 1, 10, 5, tzinfo=timezone.utc))
    limiter = _limiter(tmp_path, clock)

    assert [limiter.record_call() for _ in range(3)] == [1, 2, 3]
    assert limiter.can_make_call() is False
    payload = json.loads((tmp_path / ".agentloop" / CALL_COUNT_FILE).read_text(encoding="utf-8"))
    assert payload == {"calls_made": 3, "window": "2026030110"}


def test_new_window_resets_counter(tmp_path: Path) -> None:
    clock = _FakeClock(datetime(2026, 3, 1, 10, 55, tzinfo=timezone.utc))
    limiter = _limiter(tmp_path, clock)
    for _ in range(3):
        limiter.record_call()

    assert limiter.reset_if_new_window() is False
    clock.now = datetime(2026, 3, 1, 11, 0, 1, tzinfo=timezone.utc)

    assert limiter.reset_if_new_window() is True
    assert limiter.calls_made() == 0
    assert limiter.can_make_call() is True


def test_corrupted_counter_is_treated_as_zero(tmp_path: Path) -> None:
    clock = _FakeClock(datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc))
    counter_path = tmp_path / ".agentloop" / CALL_COUNT_FILE
    counter_path.parent.mkdir(parents=True)
    counter_path.write_text("not a number", encoding="utf-8")
    limiter = _limiter(tmp_path, clock)

    assert limiter.calls_made() == 0
    assert limiter.record_call() == 1


def test_seconds_until_reset_and_next_reset(tmp_path: Path) -> None:
    clock = _FakeClock(datetime(2026, 3, 1, 10, 45, tzinfo=timezone.utc))
    limiter = _limiter(tmp_path, clock)

    assert limiter.seconds_until_reset() == 15 * 60
    assert limiter.next_reset() == "2026-03-01T11:00:00Z"


def test_wait_for_window_reset_reports_countdown(tmp_path: Path) -> None:
    clock = _FakeClock(datetime(2026, 3, 1, 10, 57, 30, tzinfo=timezone.utc))
    limiter = _limiter(tmp_path, clock)
    for _ in range(3):
        limiter.record_call()
    messages: list[str] = []

    limiter.wait_for_window_reset(messages.append, report_interval=60)

    assert clock.now == datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc)
    assert clock.sleeps == [60, 60, 30]
    assert messages[0].endswith("02:30")
    assert limiter.calls_made() == 0
    assert limiter.can_make_call() is True
