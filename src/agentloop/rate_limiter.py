"""Hourly call budget for agent invocations."""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from agentloop.constants import CALL_COUNT_FILE, RATE_LIMIT_WAIT_REPORT_SECONDS
from agentloop.models import StateError
from agentloop.schemas import _load_validated_json
from agentloop.utils import Clock, _append_log, _format_utc, _utc_datetime, _write_json


def _window_bucket(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y%m%d%H")


def _next_window_start(moment: datetime) -> datetime:
    current = moment.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
    return current + timedelta(hours=1)


class RateLimiter:
    def __init__(
        self,
        repo_root: Path,
        loop_dir: Path,
        max_calls_per_hour: int,
        *,
        clock: Clock = _utc_datetime,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repo_root = repo_root
        self.path = loop_dir / CALL_COUNT_FILE
        self.max_calls_per_hour = max_calls_per_hour
        self._clock = clock
        self._sleep = sleep

    def _load(self) -> tuple[int, str]:
        try:
            payload = _load_validated_json(self.path, "call_count")
        except StateError:
            return (0, "")
        return (int(payload["calls_made"]), str(payload["window"]))

    def _store(self, calls_made: int, window: str) -> None:
        _write_json(self.path, {"calls_made": calls_made, "window": window})

    def calls_made(self) -> int:
        calls, window = self._load()
        if window != _window_bucket(self._clock()):
            return 0
        return calls

    def can_make_call(self) -> bool:
        return self.calls_made() < self.max_calls_per_hour

    def record_call(self) -> int:
        current_window = _window_bucket(self._clock())
        calls, window = self._load()
        if window != current_window:
            calls = 0
        calls += 1
        self._store(calls, current_window)
        return calls

    def reset_if_new_window(self) -> bool:
        """Zero the counter when the hour bucket has moved; return True if it did."""
        current_window = _window_bucket(self._clock())
        calls, window = self._load()
        if window == current_window and self.path.exists():
            return False
        self._store(0, current_window)
        if window:
            _append_log(
                self.repo_root,
                f"rate limiter window reset window={current_window} previous_calls={calls}",
            )
        return True

    def seconds_until_reset(self) -> float:
        now = self._clock()
        return max(0.0, (_next_window_start(now) - now).total_seconds())

    def next_reset(self) -> str:
        return _format_utc(_next_window_start(self._clock()))

    def wait_for_window_reset(
        self,
        display: Callable[[str], None] | None = None,
        *,
        report_interval: float = RATE_LIMIT_WAIT_REPORT_SECONDS,
    ) -> None:
        """Block until the next hour boundary, reporting the countdown, then reset."""
        target = _next_window_start(self._clock())
        remaining = (target - self._clock()).total_seconds()
        _append_log(
            self.repo_root,
            f"rate limit wait calls={self.calls_made()} max={self.max_calls_per_hour} "
            f"wait_seconds={remaining:.0f}",
        )
        while remaining > 0:
            if display is not None:
                minutes, seconds = divmod(int(remaining), 60)
                display(f"rate limit reached; next window in {minutes:02d}:{seconds:02d}")
            self._sleep(min(report_interval, remaining))
            remaining = (target - self._clock()).total_seconds()
        self.reset_if_new_window()
