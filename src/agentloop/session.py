"""Continuation-session lifecycle: creation, use, expiry, and reset."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any

from agentloop.constants import (
    SESSION_FILE,
    SESSION_HISTORY_FILE,
    SESSION_HISTORY_LIMIT,
    SESSION_STATE_ACTIVE,
    SESSION_STATE_CORRUPTED,
    SESSION_STATE_INACTIVE,
    SESSION_STATE_RESET,
)
from agentloop.models import SessionRecord, StateError
from agentloop.schemas import _load_validated_json
from agentloop.utils import (
    Clock,
    _append_log,
    _generate_session_id,
    _parse_utc,
    _utc_datetime,
    _utc_now,
    _write_json,
)


def _record_from_payload(payload: dict[str, Any]) -> SessionRecord:
    return SessionRecord(
        session_id=str(payload["session_id"]),
        created_at=str(payload["created_at"]),
        last_used=str(payload["last_used"]),
        reset_at=str(payload["reset_at"]),
        reset_reason=str(payload["reset_reason"]),
        agent_session_id=str(payload.get("agent_session_id", "") or ""),
    )


class SessionManager:
    def __init__(
        self,
        repo_root: Path,
        loop_dir: Path,
        expiry_hours: float,
        *,
        clock: Clock = _utc_datetime,
    ) -> None:
        self.repo_root = repo_root
        self.path = loop_dir / SESSION_FILE
        self.history_path = loop_dir / SESSION_HISTORY_FILE
        self.expiry_hours = expiry_hours
        self._clock = clock

    # -- persistence -------------------------------------------------------

    def load(self) -> SessionRecord | None:
        try:
            payload = _load_validated_json(self.path, "session")
        except StateError:
            return None
        return _record_from_payload(payload)

    def _store(self, record: SessionRecord) -> None:
        _write_json(self.path, record.to_payload())

    def load_history(self) -> list[dict[str, Any]]:
        try:
            history = _load_validated_json(self.history_path, "session_history")
        except StateError:
            return []
        return list(history)

    def _append_history(
        self, *, from_state: str, to_state: str, reason: str, loop_index: int
    ) -> None:
        history = self.load_history()
        history.append(
            {
                "timestamp": _utc_now(self._clock),
                "from_state": from_state,
                "to_state": to_state,
                "reason": reason,
                "loop_number": max(0, int(loop_index)),
            }
        )
        _write_json(self.history_path, history[-SESSION_HISTORY_LIMIT:])

    def _new_record(self) -> SessionRecord:
        now = _utc_now(self._clock)
        return SessionRecord(
            session_id=_generate_session_id(self._clock),
            created_at=now,
            last_used=now,
        )

    # -- lifecycle ---------------------------------------------------------

    def initialize(self, loop_index: int = 0) -> SessionRecord:
        """Return the active session, creating one when none exists or the file is corrupt."""
        if self.path.exists():
            try:
                payload = _load_validated_json(self.path, "session")
            except StateError as exc:
                record = self._new_record()
                self._store(record)
                self._append_history(
                    from_state=SESSION_STATE_CORRUPTED,
                    to_state=SESSION_STATE_ACTIVE,
                    reason="corrupted_file_recovery",
                    loop_index=loop_index,
                )
                _append_log(self.repo_root, f"session file recreated session_id={record.session_id}: {exc}")
                return record
            existing = _record_from_payload(payload)
            if existing.session_id:
                return existing
        record = self._new_record()
        self._store(record)
        self._append_history(
            from_state=SESSION_STATE_INACTIVE,
            to_state=SESSION_STATE_ACTIVE,
            reason="session_created",
            loop_index=loop_index,
        )
        _append_log(self.repo_root, f"session created session_id={record.session_id}")
        return record

    def is_resumable(self) -> bool:
        record = self.load()
        if record is None or not record.session_id:
            return False
        last_used = _parse_utc(record.last_used)
        if last_used is None:
            return False
        return self._clock() - last_used < timedelta(hours=self.expiry_hours)

    def touch(self) -> SessionRecord | None:
        record = self.load()
        if record is None or not record.session_id:
            return None
        record.last_used = _utc_now(self._clock)
        self._store(record)
        return record

    def adopt_agent_session(self, agent_session_id: str) -> None:
        """Remember the continuation token the agent reported for its own context."""
        token = str(agent_session_id).strip()
        record = self.load()
        if not token or record is None or not record.session_id:
            return
        if record.agent_session_id == token:
            return
        record.agent_session_id = token
        self._store(record)
        _append_log(self.repo_root, f"session adopted agent session_id={token}")

    def resume_token(self) -> str:
        if not self.is_resumable():
            return ""
        record = self.load()
        return record.agent_session_id if record is not None else ""

    def reset(self, reason: str, loop_index: int = 0) -> SessionRecord:
        """Drop the continuation token and record why."""
        previous = self.load()
        from_state = (
            SESSION_STATE_ACTIVE
            if previous is not None and previous.session_id
            else SESSION_STATE_INACTIVE
        )
        now = _utc_now(self._clock)
        record = SessionRecord(
            session_id="",
            created_at=previous.created_at if previous is not None else now,
            last_used=previous.last_used if previous is not None else now,
            reset_at=now,
            reset_reason=reason,
        )
        self._store(record)
        self._append_history(
            from_state=from_state,
            to_state=SESSION_STATE_RESET,
            reason=reason,
            loop_index=loop_index,
        )
        _append_log(self.repo_root, f"session reset reason={reason} loop={loop_index}")
        return record

    def status_lines(self) -> list[str]:
        record = self.load()
        if record is None:
            return ["session: none"]
        return [
            f"session_id: {record.session_id or '-'}",
            f"agent_session_id: {record.agent_session_id or '-'}",
            f"created_at: {record.created_at}",
            f"last_used: {record.last_used}",
            f"resumable: {self.is_resumable()}",
            f"reset_at: {record.reset_at or '-'}",
            f"reset_reason: {record.reset_reason or '-'}",
        ]
