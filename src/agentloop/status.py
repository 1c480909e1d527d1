"""Status and progress snapshots consumed by monitoring tools."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from agentloop.constants import PROGRESS_FILE, STATUS_FILE
from agentloop.utils import _load_json_if_exists, _utc_now, _write_json


def _write_status_snapshot(
    loop_dir: Path,
    *,
    loop_count: int,
    calls_made_this_hour: int,
    max_calls_per_hour: int,
    last_action: str,
    status: str,
    exit_reason: str = "",
    next_reset: str = "",
) -> dict[str, Any]:
    payload = {
        "timestamp": _utc_now(),
        "loop_count": loop_count,
        "calls_made_this_hour": calls_made_this_hour,
        "max_calls_per_hour": max_calls_per_hour,
        "last_action": last_action,
        "status": status,
        "exit_reason": exit_reason,
        "next_reset": next_reset,
    }
    _write_json(loop_dir / STATUS_FILE, payload)
    return payload


def _write_progress_snapshot(
    loop_dir: Path,
    *,
    status: str,
    loop_index: int,
    elapsed_seconds: float,
    timeout_seconds: float,
    output_lines: int = 0,
    last_output: str = "",
) -> None:
    _write_json(
        loop_dir / PROGRESS_FILE,
        {
            "timestamp": _utc_now(),
            "status": status,
            "loop": loop_index,
            "elapsed_seconds": round(elapsed_seconds, 1),
            "timeout_seconds": timeout_seconds,
            "output_lines": output_lines,
            "last_output": last_output,
        },
    )


def _load_status_snapshot(loop_dir: Path) -> dict[str, Any]:
    payload = _load_json_if_exists(loop_dir / STATUS_FILE)
    if not isinstance(payload, dict):
        return {}
    return payload


def _load_progress_snapshot(loop_dir: Path) -> dict[str, Any]:
    payload = _load_json_if_exists(loop_dir / PROGRESS_FILE)
    if not isinstance(payload, dict):
        return {}
    return payload
