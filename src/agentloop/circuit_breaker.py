"""Circuit breaker that halts the loop when the agent stops making progress.

States:

* ``CLOSED``: normal operation.
* ``HALF_OPEN``: no progress for ``half_open_threshold`` loops; still allowed
  to run, and one productive loop closes the circuit again.
* ``OPEN``: no progress for ``no_progress_threshold`` loops, or the same error
  for ``same_error_threshold`` loops. Terminal until :meth:`CircuitBreaker.reset`.

State lives in ``circuit_state.json``; every state change is appended to
``circuit_history.json`` (capped at ``history_limit`` entries).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from agentloop.constants import (
    CIRCUIT_CLOSED,
    CIRCUIT_HALF_OPEN,
    CIRCUIT_HISTORY_FILE,
    CIRCUIT_OPEN,
    CIRCUIT_STATE_FILE,
)
from agentloop.models import CircuitBreakerConfig, CircuitState, LoopResultEvent, StateError
from agentloop.schemas import _load_validated_json
from agentloop.utils import Clock, _append_log, _utc_datetime, _utc_now, _write_json


def _state_from_payload(payload: dict[str, Any]) -> CircuitState:
    return CircuitState(
        state=str(payload["state"]),
        last_change=str(payload["last_change"]),
        consecutive_no_progress=int(payload["consecutive_no_progress"]),
        consecutive_same_error=int(payload["consecutive_same_error"]),
        last_progress_loop=int(payload["last_progress_loop"]),
        total_opens=int(payload["total_opens"]),
        reason=str(payload["reason"]),
        current_loop=int(payload["current_loop"]),
    )


class CircuitBreaker:
    def __init__(
        self,
        repo_root: Path,
        loop_dir: Path,
        config: CircuitBreakerConfig,
        *,
        clock: Clock = _utc_datetime,
    ) -> None:
        self.repo_root = repo_root
        self.state_path = loop_dir / CIRCUIT_STATE_FILE
        self.history_path = loop_dir / CIRCUIT_HISTORY_FILE
        self.config = config
        self._clock = clock

    # -- persistence -------------------------------------------------------

    def _default_state(self) -> CircuitState:
        return CircuitState(state=CIRCUIT_CLOSED, last_change=_utc_now(self._clock))

    def initialize(self) -> CircuitState:
        """Load the persisted state, replacing a missing or corrupted file with defaults."""
        if not self.state_path.exists():
            state = self._default_state()
            _write_json(self.state_path, state.to_payload())
            return state
        try:
            payload = _load_validated_json(self.state_path, "circuit_state")
        except StateError as exc:
            _append_log(self.repo_root, f"circuit breaker state discarded: {exc}")
            state = self._default_state()
            _write_json(self.state_path, state.to_payload())
            return state
        return _state_from_payload(payload)

    def load_state(self) -> CircuitState:
        try:
            payload = _load_validated_json(self.state_path, "circuit_state")
        except StateError:
            return self._default_state()
        return _state_from_payload(payload)

    def load_history(self) -> list[dict[str, Any]]:
        try:
            history = _load_validated_json(self.history_path, "circuit_history")
        except StateError:
            return []
        return list(history)

    def _append_history(
        self, *, loop_index: int, from_state: str, to_state: str, reason: str
    ) -> None:
        history = self.load_history()
        history.append(
            {
                "timestamp": _utc_now(self._clock),
                "loop": loop_index,
                "from_state": from_state,
                "to_state": to_state,
                "reason": reason,
            }
        )
        _write_json(self.history_path, history[-self.config.history_limit :])

    # -- decisions ---------------------------------------------------------

    def can_execute(self) -> bool:
        return self.load_state().state != CIRCUIT_OPEN

    def _next_state(
        self, state: CircuitState, *, has_progress: bool
    ) -> tuple[str, str]:
        current = state.state
        if current == CIRCUIT_CLOSED:
            if state.consecutive_no_progress >= self.config.no_progress_threshold:
                return (
                    CIRCUIT_OPEN,
                    f"no progress detected in {state.consecutive_no_progress} consecutive loops",
                )
            if state.consecutive_same_error >= self.config.same_error_threshold:
                return (
                    CIRCUIT_OPEN,
                    f"same error repeated in {state.consecutive_same_error} consecutive loops",
                )
            if state.consecutive_no_progress >= self.config.half_open_threshold:
                return (
                    CIRCUIT_HALF_OPEN,
                    f"monitoring: {state.consecutive_no_progress} loops without progress",
                )
            return (CIRCUIT_CLOSED, state.reason)
        if current == CIRCUIT_HALF_OPEN:
            if has_progress:
                return (CIRCUIT_CLOSED, "progress detected, circuit recovered")
            if state.consecutive_no_progress >= self.config.no_progress_threshold:
                return (
                    CIRCUIT_OPEN,
                    f"no recovery, opening circuit after {state.consecutive_no_progress} loops",
                )
            return (CIRCUIT_HALF_OPEN, state.reason)
        return (CIRCUIT_OPEN, state.reason)

    def record_loop_result(
        self,
        loop_index: int,
        files_changed: int,
        has_errors: bool,
        output_length: int = 0,
    ) -> tuple[str, bool]:
        """Fold one loop's outcome into the breaker and return ``(state, can_continue)``."""
        return self.record(
            LoopResultEvent(
                loop_index=loop_index,
                files_changed=files_changed,
                has_errors=has_errors,
                output_length=output_length,
            )
        )

    def record(self, event: LoopResultEvent) -> tuple[str, bool]:
        state = self.initialize()
        previous = state.state

        has_progress = event.files_changed > 0
        if has_progress:
            state.consecutive_no_progress = 0
            state.last_progress_loop = event.loop_index
        else:
            state.consecutive_no_progress += 1
        state.consecutive_same_error = state.consecutive_same_error + 1 if event.has_errors else 0
        state.current_loop = event.loop_index

        new_state, reason = self._next_state(state, has_progress=has_progress)
        if new_state == CIRCUIT_OPEN and previous != CIRCUIT_OPEN:
            state.total_opens += 1
        if new_state != previous:
            state.state = new_state
            state.reason = reason
            state.last_change = _utc_now(self._clock)
            self._append_history(
                loop_index=event.loop_index,
                from_state=previous,
                to_state=new_state,
                reason=reason,
            )
            _append_log(
                self.repo_root,
                f"circuit breaker transition loop={event.loop_index} {previous}->{new_state} reason={reason}",
            )
        _write_json(self.state_path, state.to_payload())
        return (state.state, state.state != CIRCUIT_OPEN)

    def reset(self, reason: str = "manual reset") -> CircuitState:
        """Force the breaker back to CLOSED, zeroing every counter including ``total_opens``."""
        previous = self.load_state()
        state = CircuitState(
            state=CIRCUIT_CLOSED,
            last_change=_utc_now(self._clock),
            reason=reason,
            current_loop=previous.current_loop,
        )
        _write_json(self.state_path, state.to_payload())
        self._append_history(
            loop_index=previous.current_loop,
            from_state=previous.state,
            to_state=CIRCUIT_CLOSED,
            reason=reason,
        )
        _append_log(
            self.repo_root,
            f"circuit breaker reset {previous.state}->{CIRCUIT_CLOSED} reason={reason}",
        )
        return state

    def status_lines(self) -> list[str]:
        state = self.load_state()
        lines = [
            f"state: {state.state}",
            f"reason: {state.reason or '-'}",
            f"last_change: {state.last_change}",
            f"current_loop: {state.current_loop}",
            f"consecutive_no_progress: {state.consecutive_no_progress}",
            f"consecutive_same_error: {state.consecutive_same_error}",
            f"last_progress_loop: {state.last_progress_loop}",
            f"total_opens: {state.total_opens}",
        ]
        if state.state == CIRCUIT_OPEN:
            lines.append("halted: run `agentloop circuit reset` after fixing the underlying issue")
        return lines
