from __future__ import annotations

import json
import os
import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path

from agentloop.constants import LOCK_STALE_SECONDS
from agentloop.state import (
    _acquire_lock,
    _force_break_lock,
    _heartbeat_lock,
    _inspect_lock,
    _release_lock,
    _resolve_lock_path,
)


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds").replace("+00:00", "Z")


def _write_foreign_lock(lock_path: Path, *, host: str, pid: int, heartbeat: datetime) -> None:
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text(
        json.dumps(
            {
                "pid": pid,
                "host": host,
                "owner_uuid": "foreign",
                "started_at": _iso(heartbeat),
                "last_heartbeat_at": _iso(heartbeat),
                "command": "agentloop run",
            }
        ),
        encoding="utf-8",
    )


def test_acquire_writes_owner_payload_and_release_removes_it(tmp_path: Path) -> None:
    lock_path = _resolve_lock_path(tmp_path / ".agentloop")

    ok, msg = _acquire_lock(
        lock_path, repo_root=tmp_path, command="agentloop run", stale_seconds=LOCK_STALE_SECONDS
    )

    assert ok is True
    assert "lock acquired" in msg
    payload = json.loads(lock_path.read_text(encoding="utf-8"))
    assert payload["pid"] == os.getpid()
    assert payload["host"] == socket.gethostname()
    assert payload["repo_root"] == str(tmp_path)
    assert {"owner_uuid", "started_at", "last_heartbeat_at", "command"} <= set(payload)

    _heartbeat_lock(lock_path)
    info = _inspect_lock(lock_path)
    assert info is not None
    assert info["age_seconds"] is not None

    _release_lock(lock_path)
    assert not lock_path.exists()


def test_second_acquire_is_refused_while_holder_is_live(tmp_path: Path) -> None:
    lock_path = _resolve_lock_path(tmp_path / ".agentloop")
    _acquire_lock(lock_path, repo_root=tmp_path, command="agentloop run", stale_seconds=LOCK_STALE_SECONDS)

    ok, msg = _acquire_lock(
        lock_path, repo_root=tmp_path, command="agentloop run", stale_seconds=LOCK_STALE_SECONDS
    )

    assert ok is False
    assert "agentloop unlock" in msg


def test_stale_lock_from_different_host_is_replaced(tmp_path: Path) -> None:
    lock_path = _resolve_lock_path(tmp_path / ".agentloop")
    stale_time = datetime.now(timezone.utc) - timedelta(seconds=LOCK_STALE_SECONDS + 60)
    _write_foreign_lock(lock_path, host="other-host", pid=12345, heartbeat=stale_time)

    ok, msg = _acquire_lock(
        lock_path, repo_root=tmp_path, command="agentloop run", stale_seconds=LOCK_STALE_SECONDS
    )

    assert ok is True
    assert "replaced stale lock" in msg
    assert json.loads(lock_path.read_text(encoding="utf-8"))["pid"] == os.getpid()
    assert list(lock_path.parent.glob("lock.stale.*")) == []


def test_fresh_lock_from_dead_local_pid_is_replaced(tmp_path: Path) -> None:
    lock_path = _resolve_lock_path(tmp_path / ".agentloop")
    _write_foreign_lock(
        lock_path,
        host=socket.gethostname(),
        pid=2**22 + 17,
        heartbeat=datetime.now(timezone.utc),
    )

    ok, msg = _acquire_lock(
        lock_path, repo_root=tmp_path, command="agentloop run", stale_seconds=LOCK_STALE_SECONDS
    )

    assert ok is True
    assert "replaced stale lock" in msg


def test_release_leaves_foreign_lock_alone(tmp_path: Path) -> None:
    lock_path = _resolve_lock_path(tmp_path / ".agentloop")
    _write_foreign_lock(lock_path, host="other-host", pid=12345, heartbeat=datetime.now(timezone.utc))

    _release_lock(lock_path)

    assert lock_path.exists()


def test_force_break_reports_holder(tmp_path: Path) -> None:
    lock_path = _resolve_lock_path(tmp_path / ".agentloop")
    assert _force_break_lock(lock_path, reason="manual") == "no lock to break"
    _write_foreign_lock(lock_path, host="other-host", pid=12345, heartbeat=datetime.now(timezone.utc))

    message = _force_break_lock(lock_path, reason="operator request")

    assert "pid=12345" in message
    assert "host=other-host" in message
    assert "reason=operator request" in message
    assert not lock_path.exists()
    assert _inspect_lock(lock_path) is None
