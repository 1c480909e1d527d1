"""Rolling exit-signal windows and the graceful-exit decision."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from agentloop.constants import (
    COMPLETION_INDICATOR_MIN_CONFIDENCE,
    EXIT_REASON_COMPLETION_SIGNALS,
    EXIT_REASON_PLAN_COMPLETE,
    EXIT_REASON_PROJECT_COMPLETE,
    EXIT_REASON_TEST_SATURATION,
    EXIT_SIGNALS_FILE,
    PLAN_DONE_ITEM_PATTERN,
    PLAN_OPEN_ITEM_PATTERN,
)
from agentloop.models import ExitSignalConfig, ResponseAnalysis, StateError
from agentloop.schemas import _load_validated_json
from agentloop.utils import _append_log, _write_json

WINDOW_KEYS = ("test_only_loops", "done_signals", "completion_indicators")


def _count_plan_items(plan_path: Path) -> tuple[int, int]:
    """Return ``(total, checked)`` markdown checklist items in the plan file."""
    if not plan_path.exists():
        return (0, 0)
    try:
        lines = plan_path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError):
        return (0, 0)
    open_items = 0
    done_items = 0
    in_comment = False
    for line in lines:
        stripped = line.strip()
        if in_comment:
            if "-->" in stripped:
                in_comment = False
            continue
        if stripped.startswith("<!--"):
            if "-->" not in stripped:
                in_comment = True
            continue
        if PLAN_OPEN_ITEM_PATTERN.match(line):
            open_items += 1
        elif PLAN_DONE_ITEM_PATTERN.match(line):
            done_items += 1
    return (open_items + done_items, done_items)


def _empty_window() -> dict[str, list[int]]:
    return {key: [] for key in WINDOW_KEYS}


class ExitSignalAggregator:
    def __init__(
        self,
        repo_root: Path,
        loop_dir: Path,
        config: ExitSignalConfig,
        *,
        plan_path: Path | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.path = loop_dir / EXIT_SIGNALS_FILE
        self.config = config
        self.plan_path = plan_path

    def load_window(self) -> dict[str, list[int]]:
        try:
            payload = _load_validated_json(self.path, "exit_signals")
        except StateError:
            return _empty_window()
        return {key: [int(value) for value in payload[key]] for key in WINDOW_KEYS}

    def _append(self, entries: list[int], loop_index: int) -> list[int]:
        entries.append(loop_index)
        return entries[-self.config.window_size :]

    def record(self, analysis: ResponseAnalysis) -> dict[str, list[int]]:
        window = self.load_window()
        loop_index = analysis.loop_number
        if analysis.is_test_only:
            window["test_only_loops"] = self._append(window["test_only_loops"], loop_index)
        elif analysis.has_progress:
            window["test_only_loops"] = []
        if analysis.has_completion_signal:
            window["done_signals"] = self._append(window["done_signals"], loop_index)
        if analysis.confidence_score >= COMPLETION_INDICATOR_MIN_CONFIDENCE:
            window["completion_indicators"] = self._append(
                window["completion_indicators"], loop_index
            )
        _write_json(self.path, window)
        return window

    def reset(self) -> None:
        _write_json(self.path, _empty_window())

    def evaluate_exit(self, latest: ResponseAnalysis | None = None) -> str | None:
        """Return the first graceful-exit reason that applies, or ``None``."""
        window = self.load_window()
        if len(window["test_only_loops"]) >= self.config.test_saturation_threshold:
            return self._decide(EXIT_REASON_TEST_SATURATION, window)
        if len(window["done_signals"]) >= self.config.done_signal_threshold:
            return self._decide(EXIT_REASON_COMPLETION_SIGNALS, window)
        if (
            len(window["completion_indicators"]) >= self.config.completion_indicator_threshold
            and latest is not None
            and latest.explicit_exit_signal
        ):
            return self._decide(EXIT_REASON_PROJECT_COMPLETE, window)
        if self.plan_path is not None:
            total, checked = _count_plan_items(self.plan_path)
            if total > 0 and checked > 0 and total == checked:
                return self._decide(EXIT_REASON_PLAN_COMPLETE, window, detail=f"items={total}")
        return None

    def _decide(self, reason: str, window: dict[str, Any], *, detail: str = "") -> str:
        counts = " ".join(f"{key}={len(window[key])}" for key in WINDOW_KEYS)
        suffix = f" {detail}" if detail else ""
        _append_log(self.repo_root, f"exit signal reason={reason} {counts}{suffix}")
        return reason
