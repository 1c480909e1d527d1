"""Single-writer lock guarding one loop process per working directory.

The lock is a JSON file created with ``O_EXCL``. The holder refreshes
``last_heartbeat_at`` while the loop runs. A lock whose heartbeat is older than
the stale window, or whose pid no longer exists on this host, may be taken over.
"""

from __future__ import annotations

import json
import os
import socket
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from agentloop.constants import LOCK_FILE
from agentloop.utils import _parse_utc, _utc_now, _write_json

_TAKEOVER_ATTEMPTS = 3


def _resolve_lock_path(loop_dir: Path) -> Path:
    return loop_dir / LOCK_FILE


def _load_lock(lock_path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}


def _heartbeat_age(payload: dict[str, Any], now: datetime) -> float | None:
    heartbeat = _parse_utc(str(payload.get("last_heartbeat_at", "")))
    if heartbeat is None:
        return None
    return max(0.0, (now - heartbeat).total_seconds())


def _process_exists(raw_pid: Any) -> bool:
    try:
        pid = int(raw_pid)
    except (TypeError, ValueError):
        return False
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _holder_is_live(payload: dict[str, Any], *, now: datetime, stale_seconds: int) -> bool:
    age = _heartbeat_age(payload, now)
    if age is None or age > stale_seconds:
        return False
    if payload.get("host") != socket.gethostname():
        return True
    return _process_exists(payload.get("pid"))


def _create_exclusive(lock_path: Path, payload: dict[str, Any]) -> None:
    fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)
        handle.write("\n")


def _discard_stale(lock_path: Path, token: str) -> bool:
    """Move a stale lock aside and delete it; return False if it vanished first."""
    parked = lock_path.with_name(f"{lock_path.name}.stale.{token}")
    try:
        os.replace(lock_path, parked)
    except FileNotFoundError:
        return False
    parked.unlink(missing_ok=True)
    return True


def _acquire_lock(
    lock_path: Path,
    *,
    repo_root: Path,
    command: str,
    stale_seconds: int,
) -> tuple[bool, str]:
    """Create the lock for this process, taking over a stale one.

    Returns ``(acquired, message)``; the message names the live holder when
    the lock is refused.
    """
    now = datetime.now(timezone.utc)
    owner = uuid.uuid4().hex
    stamp = _utc_now()
    payload = {
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "owner_uuid": owner,
        "started_at": stamp,
        "last_heartbeat_at": stamp,
        "command": command,
        "repo_root": str(repo_root),
    }
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    took_over = False
    for _attempt in range(_TAKEOVER_ATTEMPTS):
        try:
            _create_exclusive(lock_path, payload)
        except FileExistsError:
            holder = _load_lock(lock_path)
            if holder and _holder_is_live(holder, now=now, stale_seconds=stale_seconds):
                age = _heartbeat_age(holder, now)
                age_text = "unknown" if age is None else f"{age:.0f}s"
                return (
                    False,
                    (
                        f"another loop is running against {repo_root} "
                        f"(pid={holder.get('pid', '<unknown>')}, host={holder.get('host', '<unknown>')}, "
                        f"heartbeat_age={age_text}); use `agentloop unlock` if it is gone"
                    ),
                )
            try:
                took_over = _discard_stale(lock_path, owner[:8]) or took_over
            except OSError as exc:
                return (False, f"failed to replace stale lock at {lock_path}: {exc}")
            continue
        except OSError as exc:
            return (False, f"failed to acquire lock at {lock_path}: {exc}")
        verb = "replaced stale lock" if took_over else "lock acquired"
        return (True, f"{verb} at {lock_path}")
    return (False, f"failed to acquire lock at {lock_path} after {_TAKEOVER_ATTEMPTS} attempts")


def _heartbeat_lock(lock_path: Path) -> None:
    payload = _load_lock(lock_path)
    if payload.get("pid") == os.getpid():
        payload["last_heartbeat_at"] = _utc_now()
        _write_json(lock_path, payload)


def _release_lock(lock_path: Path) -> None:
    """Remove the lock unless another process holds it."""
    holder_pid = _load_lock(lock_path).get("pid")
    if isinstance(holder_pid, int) and holder_pid != os.getpid():
        return
    lock_path.unlink(missing_ok=True)


def _inspect_lock(lock_path: Path) -> dict[str, Any] | None:
    payload = _load_lock(lock_path)
    if not payload:
        return None
    return {**payload, "age_seconds": _heartbeat_age(payload, datetime.now(timezone.utc))}


def _force_break_lock(lock_path: Path, *, reason: str) -> str:
    """Delete the lock whoever holds it and describe what was removed."""
    if not lock_path.exists():
        return "no lock to break"
    holder = _load_lock(lock_path)
    lock_path.unlink(missing_ok=True)
    details = ", ".join(f"{key}={holder.get(key, '<unknown>')}" for key in ("pid", "host", "started_at"))
    return f"lock broken: {details}, reason={reason}"
