"""Compose rate limiting, the circuit breaker, response analysis, exit signals,
and the session lifecycle into the unattended agent loop."""

from __future__ import annotations

import time
from typing import Callable

from agentloop.circuit_breaker import CircuitBreaker
from agentloop.constants import (
    CIRCUIT_OPEN,
    LOCK_STALE_SECONDS,
    OUTCOME_API_LIMIT,
    OUTCOME_SUCCESS,
    OUTCOME_TIMEOUT,
    STOP_REASON_API_LIMIT,
    STOP_REASON_INTERRUPTED,
    STOP_REASON_MAX_LOOPS,
    STOP_REASON_STAGNATION,
)
from agentloop.exit_signals import ExitSignalAggregator
from agentloop.models import (
    AgentRunResult,
    IterationResult,
    LoopConfig,
    LoopConfigError,
    LoopSummary,
    StateError,
)
from agentloop.progress import ChangeTracker
from agentloop.rate_limiter import RateLimiter
from agentloop.response_analyzer import ResponseAnalyzer
from agentloop.runners import ProgressCallback, _invoke_agent_runner
from agentloop.session import SessionManager
from agentloop.state import _acquire_lock, _heartbeat_lock, _release_lock, _resolve_lock_path
from agentloop.status import _write_progress_snapshot, _write_status_snapshot
from agentloop.utils import Clock, _append_log, _utc_datetime

ACTION_CONTINUE = "continue"
ACTION_EXIT = "exit"
ACTION_HALT = "halt"
ACTION_WAIT = "wait"

AgentInvoker = Callable[..., AgentRunResult]
OperatorChoice = Callable[[AgentRunResult], str]


def _print_display(message: str) -> None:
    print(f"agentloop run: {message}")


class LoopOrchestrator:
    def __init__(
        self,
        config: LoopConfig,
        *,
        invoke_agent: AgentInvoker | None = None,
        clock: Clock = _utc_datetime,
        sleep: Callable[[float], None] = time.sleep,
        display: Callable[[str], None] | None = _print_display,
        operator_choice: OperatorChoice | None = None,
    ) -> None:
        self.config = config
        self.repo_root = config.repo_root
        self.loop_dir = config.loop_dir
        self._clock = clock
        self._sleep = sleep
        self._display = display
        self._operator_choice = operator_choice
        self._invoke_agent = invoke_agent or _invoke_agent_runner

        self.rate_limiter = RateLimiter(
            self.repo_root,
            self.loop_dir,
            config.max_calls_per_hour,
            clock=clock,
            sleep=sleep,
        )
        self.circuit_breaker = CircuitBreaker(
            self.repo_root, self.loop_dir, config.circuit_breaker, clock=clock
        )
        self.change_tracker = ChangeTracker(self.repo_root)
        self.analyzer = ResponseAnalyzer(
            self.repo_root,
            self.loop_dir,
            progress_probe=self.change_tracker.changed_file_count,
            clock=clock,
        )
        self.exit_signals = ExitSignalAggregator(
            self.repo_root,
            self.loop_dir,
            config.exit_signals,
            plan_path=config.plan_path,
        )
        self.session = SessionManager(
            self.repo_root, self.loop_dir, config.session_expiry_hours, clock=clock
        )
        self.lock_path = _resolve_lock_path(self.loop_dir)
        self._lock_held = False
        self._loop_count = 0
        self._current_loop = 0
        self._last_action = ""

    # -- reporting ---------------------------------------------------------

    def _show(self, message: str) -> None:
        if self._display is not None:
            self._display(message)

    def _write_status(self, *, status: str, last_action: str, exit_reason: str = "") -> None:
        self._last_action = last_action
        _write_status_snapshot(
            self.loop_dir,
            loop_count=self._loop_count,
            calls_made_this_hour=self.rate_limiter.calls_made(),
            max_calls_per_hour=self.config.max_calls_per_hour,
            last_action=last_action,
            status=status,
            exit_reason=exit_reason,
            next_reset=self.rate_limiter.next_reset(),
        )

    def _progress_reporter(self, loop_index: int) -> ProgressCallback:
        def _report(elapsed_seconds: float, output_lines: int, last_output: str) -> None:
            _write_progress_snapshot(
                self.loop_dir,
                status="executing",
                loop_index=loop_index,
                elapsed_seconds=elapsed_seconds,
                timeout_seconds=self.config.timeout_seconds,
                output_lines=output_lines,
                last_output=last_output,
            )
            if self._lock_held:
                _heartbeat_lock(self.lock_path)
            minutes, seconds = divmod(int(elapsed_seconds), 60)
            self._show(f"loop {loop_index} running {minutes:02d}:{seconds:02d} lines={output_lines}")

        return _report

    # -- session -----------------------------------------------------------

    def _prepare_session(self, loop_index: int) -> str:
        """Replace a missing or expired session, mark it used, and return the resume token."""
        record = self.session.load()
        if record is None or not record.session_id:
            self.session.initialize(loop_index)
        elif not self.session.is_resumable():
            self.session.reset("expired", loop_index)
            self.session.initialize(loop_index)
        self.session.touch()
        if not self.config.session_continuity:
            return ""
        return self.session.resume_token()

    # -- api limit ---------------------------------------------------------

    def _resolve_api_limit_action(self, result: AgentRunResult) -> str:
        action = self.config.on_api_limit
        if action == "prompt":
            if self._operator_choice is None:
                return "abort"
            try:
                action = str(self._operator_choice(result)).strip().lower()
            except EOFError:
                return "abort"
        return "wait" if action == "wait" else "abort"

    # -- iteration ---------------------------------------------------------

    def run_iteration(self, loop_index: int) -> IterationResult:
        """Run one guarded loop iteration and report what the loop should do next."""
        self._current_loop = loop_index
        self.rate_limiter.reset_if_new_window()
        resume_token = self._prepare_session(loop_index)

        if not self.circuit_breaker.can_execute():
            _append_log(self.repo_root, f"loop halted before loop={loop_index}: circuit breaker is OPEN")
            return IterationResult(
                loop_index=loop_index,
                action=ACTION_HALT,
                reason=STOP_REASON_STAGNATION,
                circuit_state=CIRCUIT_OPEN,
            )

        if not self.rate_limiter.can_make_call():
            self._write_status(status="paused", last_action="rate_limited")
            self.rate_limiter.wait_for_window_reset(self._show)

        exit_reason = self.exit_signals.evaluate_exit(self.analyzer.load_latest())
        if exit_reason is not None:
            return IterationResult(
                loop_index=loop_index,
                action=ACTION_EXIT,
                reason=exit_reason,
                circuit_state=self.circuit_breaker.load_state().state,
            )

        calls = self.rate_limiter.record_call()
        self._loop_count += 1
        self._write_status(status="running", last_action="executing")
        _append_log(
            self.repo_root,
            f"loop start loop={loop_index} calls_this_hour={calls}/{self.config.max_calls_per_hour}",
        )
        self._show(f"loop {loop_index} starting ({calls}/{self.config.max_calls_per_hour} calls this hour)")

        self.change_tracker.capture()
        result = self._invoke_agent(
            self.config,
            loop_index=loop_index,
            resume_token=resume_token,
            progress_callback=self._progress_reporter(loop_index),
        )

        if result.outcome == OUTCOME_API_LIMIT:
            return self._handle_api_limit(loop_index, result)

        analysis = None
        if result.outcome == OUTCOME_TIMEOUT:
            files_changed = self.change_tracker.changed_file_count()
            has_errors = True
            output_length = 0
        else:
            analysis = self.analyzer.analyze(
                result.output,
                loop_index,
                output_file=result.output_path or "",
            )
            self.exit_signals.record(analysis)
            if analysis.session_id and self.config.session_continuity:
                self.session.adopt_agent_session(analysis.session_id)
            files_changed = analysis.files_modified
            has_errors = result.outcome != OUTCOME_SUCCESS or analysis.has_errors
            output_length = analysis.output_length

        circuit_state, can_continue = self.circuit_breaker.record_loop_result(
            loop_index,
            files_changed,
            has_errors,
            output_length=output_length,
        )
        _append_log(
            self.repo_root,
            (
                f"loop finished loop={loop_index} outcome={result.outcome} files_changed={files_changed} "
                f"has_errors={has_errors} circuit={circuit_state}"
            ),
        )

        if not can_continue:
            return IterationResult(
                loop_index=loop_index,
                action=ACTION_HALT,
                outcome=result.outcome,
                reason=STOP_REASON_STAGNATION,
                circuit_state=circuit_state,
                analysis=analysis,
            )

        if result.outcome == OUTCOME_SUCCESS:
            self._write_status(status="running", last_action="completed")
            self._show(f"loop {loop_index} completed; circuit={circuit_state}")
            self._sleep(self.config.success_pause_seconds)
        else:
            last_action = "timeout" if result.outcome == OUTCOME_TIMEOUT else "failed"
            self._write_status(status="running", last_action=last_action)
            self._show(
                f"loop {loop_index} {result.outcome}; retrying in {self.config.failure_backoff_seconds:.0f}s"
            )
            self._sleep(self.config.failure_backoff_seconds)
        return IterationResult(
            loop_index=loop_index,
            action=ACTION_CONTINUE,
            outcome=result.outcome,
            circuit_state=circuit_state,
            analysis=analysis,
        )

    def _handle_api_limit(self, loop_index: int, result: AgentRunResult) -> IterationResult:
        self._write_status(status="paused", last_action="api_limit")
        action = self._resolve_api_limit_action(result)
        _append_log(self.repo_root, f"agent usage limit loop={loop_index} action={action}")
        circuit_state = self.circuit_breaker.load_state().state
        if action == "wait":
            self._show("agent usage limit reached; waiting for the next hour window")
            self.rate_limiter.wait_for_window_reset(self._show)
            return IterationResult(
                loop_index=loop_index,
                action=ACTION_WAIT,
                outcome=result.outcome,
                circuit_state=circuit_state,
            )
        return IterationResult(
            loop_index=loop_index,
            action=ACTION_HALT,
            outcome=result.outcome,
            reason=STOP_REASON_API_LIMIT,
            circuit_state=circuit_state,
        )

    # -- loop --------------------------------------------------------------

    def run(self) -> LoopSummary:
        """Run iterations until an exit signal, a halt, or the loop cap."""
        if not self.config.prompt_path.exists():
            raise LoopConfigError(f"prompt file is missing at {self.config.prompt_path}")
        acquired, message = _acquire_lock(
            self.lock_path,
            repo_root=self.repo_root,
            command="agentloop run",
            stale_seconds=LOCK_STALE_SECONDS,
        )
        if not acquired:
            raise StateError(message)
        self._lock_held = True
        _append_log(self.repo_root, f"loop process started: {message}")

        iterations: list[IterationResult] = []
        try:
            self.circuit_breaker.initialize()
            loop_index = self.circuit_breaker.load_state().current_loop + 1
            self.session.initialize(loop_index)
            while True:
                if self.config.max_loops and self._loop_count >= self.config.max_loops:
                    return self._finish(0, STOP_REASON_MAX_LOOPS, iterations, status="completed")
                result = self.run_iteration(loop_index)
                iterations.append(result)
                _heartbeat_lock(self.lock_path)
                if result.action == ACTION_EXIT:
                    return self._finish(0, result.reason, iterations, status="completed")
                if result.action == ACTION_HALT:
                    return self._finish(1, result.reason, iterations, status="halted")
                loop_index += 1
        except KeyboardInterrupt:
            self.cleanup(STOP_REASON_INTERRUPTED)
            return LoopSummary(
                exit_code=130,
                exit_reason=STOP_REASON_INTERRUPTED,
                loop_count=self._loop_count,
                iterations=tuple(iterations),
            )
        finally:
            if self._lock_held:
                _release_lock(self.lock_path)
                self._lock_held = False

    def _finish(
        self,
        exit_code: int,
        exit_reason: str,
        iterations: list[IterationResult],
        *,
        status: str,
    ) -> LoopSummary:
        self._write_status(status=status, last_action=status, exit_reason=exit_reason)
        _append_log(
            self.repo_root,
            f"loop stopped reason={exit_reason} exit_code={exit_code} loops={self._loop_count}",
        )
        self._show(f"stopped: {exit_reason} after {self._loop_count} loop(s)")
        return LoopSummary(
            exit_code=exit_code,
            exit_reason=exit_reason,
            loop_count=self._loop_count,
            iterations=tuple(iterations),
        )

    def cleanup(self, reason: str = STOP_REASON_INTERRUPTED) -> None:
        """Reset the session, write a final status, and release the lock, tolerating partial state."""
        _append_log(self.repo_root, f"loop cleanup reason={reason} loop={self._current_loop}")

        def _release() -> None:
            if self._lock_held:
                _release_lock(self.lock_path)
                self._lock_held = False

        steps: tuple[tuple[str, Callable[[], object]], ...] = (
            ("session reset", lambda: self.session.reset(reason, self._current_loop)),
            (
                "status snapshot",
                lambda: self._write_status(status=reason, last_action=reason, exit_reason=reason),
            ),
            ("lock release", _release),
        )
        for label, step in steps:
            try:
                step()
            except Exception as exc:
                _append_log(self.repo_root, f"loop cleanup step failed step={label}: {exc}")
