from __future__ import annotations

import argparse
import json
import signal
import sys
from pathlib import Path
from typing import Any

from agentloop.circuit_breaker import CircuitBreaker
from agentloop.config import _config_summary, _load_loop_config
from agentloop.constants import STOP_REASON_STAGNATION
from agentloop.exit_signals import ExitSignalAggregator
from agentloop.models import AgentRunResult, LoopConfig, LoopConfigError, StateError
from agentloop.orchestrator import LoopOrchestrator
from agentloop.rate_limiter import RateLimiter
from agentloop.response_analyzer import ResponseAnalyzer
from agentloop.session import SessionManager
from agentloop.state import _force_break_lock, _inspect_lock, _resolve_lock_path
from agentloop.status import _load_progress_snapshot, _load_status_snapshot
from agentloop.utils import _append_log


def _resolve_repo_root(args: argparse.Namespace) -> Path:
    return Path(getattr(args, "repo_root", ".") or ".").expanduser().resolve()


def _load_config_or_report(args: argparse.Namespace, command: str) -> LoopConfig | None:
    overrides: dict[str, Any] = {
        "timeout_minutes": getattr(args, "timeout", None),
        "max_calls_per_hour": getattr(args, "calls", None),
        "max_loops": getattr(args, "max_loops", None),
        "prompt_file": getattr(args, "prompt", None),
        "plan_file": getattr(args, "plan", None),
        "output_format": getattr(args, "output_format", None),
        "allowed_tools": getattr(args, "allowed_tools", None),
        "session_expiry_hours": getattr(args, "session_expiry", None),
        "on_api_limit": getattr(args, "on_api_limit", None),
        "agent_command": getattr(args, "agent_command", None),
    }
    if getattr(args, "no_continue", False):
        overrides["session_continuity"] = False
    try:
        return _load_loop_config(_resolve_repo_root(args), overrides)
    except LoopConfigError as exc:
        print(f"agentloop {command}: ERROR {exc}", file=sys.stderr)
        return None


def _interactive_api_limit_choice(result: AgentRunResult) -> str:
    if not sys.stdin.isatty():
        return "abort"
    print("agentloop run: the agent reported its usage limit.")
    if result.detail:
        print(f"  detail: {result.detail}")
    answer = input("Wait for the next hour window [w] or abort [a]? ").strip().lower()
    return "wait" if answer.startswith("w") else "abort"


def _raise_keyboard_interrupt(_signum: int, _frame: Any) -> None:
    raise KeyboardInterrupt


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_config_or_report(args, "run")
    if config is None:
        return 1
    print("agentloop run")
    for key, value in _config_summary(config).items():
        print(f"{key}: {value}")

    orchestrator = LoopOrchestrator(config, operator_choice=_interactive_api_limit_choice)
    previous_handler = signal.signal(signal.SIGTERM, _raise_keyboard_interrupt)
    try:
        summary = orchestrator.run()
    except (LoopConfigError, StateError) as exc:
        print(f"agentloop run: ERROR {exc}", file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    print(f"exit_reason: {summary.exit_reason}")
    print(f"loops: {summary.loop_count}")
    if summary.exit_reason == STOP_REASON_STAGNATION:
        print(
            "agentloop run: circuit breaker is OPEN; inspect .agentloop/logs and run "
            "`agentloop circuit reset` to resume",
            file=sys.stderr,
        )
    return summary.exit_code


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_config_or_report(args, "status")
    if config is None:
        return 1
    status = _load_status_snapshot(config.loop_dir)
    if getattr(args, "json", False):
        payload = {
            "status": status,
            "progress": _load_progress_snapshot(config.loop_dir),
            "circuit": CircuitBreaker(
                config.repo_root, config.loop_dir, config.circuit_breaker
            ).load_state().to_payload(),
            "exit_signals": ExitSignalAggregator(
                config.repo_root, config.loop_dir, config.exit_signals
            ).load_window(),
        }
        print(json.dumps(payload, indent=2))
        return 0

    print("agentloop status")
    print(f"repo_root: {config.repo_root}")
    if status:
        for key in ("status", "last_action", "loop_count", "exit_reason", "timestamp"):
            print(f"{key}: {status.get(key, '') or '-'}")
    else:
        print("status: no loop has run yet")
    limiter = RateLimiter(config.repo_root, config.loop_dir, config.max_calls_per_hour)
    print(f"calls_this_hour: {limiter.calls_made()}/{config.max_calls_per_hour}")
    print(f"next_reset: {limiter.next_reset()}")
    breaker = CircuitBreaker(config.repo_root, config.loop_dir, config.circuit_breaker)
    print(f"circuit: {breaker.load_state().state}")
    window = ExitSignalAggregator(config.repo_root, config.loop_dir, config.exit_signals).load_window()
    print(
        "exit_signals: "
        + " ".join(f"{key}={len(entries)}" for key, entries in window.items())
    )
    latest = ResponseAnalyzer(config.repo_root, config.loop_dir).load_latest()
    if latest is not None:
        print(
            f"last_analysis: loop={latest.loop_number} confidence={latest.confidence_score} "
            f"exit_signal={latest.exit_signal} summary={latest.work_summary}"
        )
    lock = _inspect_lock(_resolve_lock_path(config.loop_dir))
    print(f"lock: {'held by pid ' + str(lock.get('pid')) if lock else 'none'}")
    return 0


# ---------------------------------------------------------------------------
# circuit
# ---------------------------------------------------------------------------


def _cmd_circuit(args: argparse.Namespace) -> int:
    config = _load_config_or_report(args, "circuit")
    if config is None:
        return 1
    breaker = CircuitBreaker(config.repo_root, config.loop_dir, config.circuit_breaker)
    action = args.action

    if action == "show":
        print("agentloop circuit")
        for line in breaker.status_lines():
            print(f"  {line}")
        history = breaker.load_history()
        limit = max(0, int(getattr(args, "history", 5) or 0))
        if history and limit:
            print("  recent transitions:")
            for entry in history[-limit:]:
                print(
                    f"    {entry['timestamp']} loop={entry['loop']} "
                    f"{entry['from_state']}->{entry['to_state']} {entry['reason']}"
                )
        return 0

    if action == "reset":
        reason = getattr(args, "reason", "") or "manual reset"
        state = breaker.reset(reason)
        ExitSignalAggregator(config.repo_root, config.loop_dir, config.exit_signals).reset()
        _append_log(config.repo_root, f"exit signal windows cleared by circuit reset reason={reason}")
        print(f"agentloop circuit: reset to {state.state} ({reason})")
        return 0

    print(f"agentloop circuit: unknown action '{action}'", file=sys.stderr)
    return 1


# ---------------------------------------------------------------------------
# session
# ---------------------------------------------------------------------------


def _cmd_session(args: argparse.Namespace) -> int:
    config = _load_config_or_report(args, "session")
    if config is None:
        return 1
    manager = SessionManager(config.repo_root, config.loop_dir, config.session_expiry_hours)
    action = args.action

    if action == "show":
        print("agentloop session")
        for line in manager.status_lines():
            print(f"  {line}")
        return 0

    if action == "reset":
        reason = getattr(args, "reason", "") or "manual_reset"
        manager.reset(reason)
        print(f"agentloop session: reset ({reason})")
        return 0

    print(f"agentloop session: unknown action '{action}'", file=sys.stderr)
    return 1


# ---------------------------------------------------------------------------
# unlock
# ---------------------------------------------------------------------------


def _cmd_unlock(args: argparse.Namespace) -> int:
    repo_root = _resolve_repo_root(args)
    config = _load_config_or_report(args, "unlock")
    if config is None:
        return 1
    lock_path = _resolve_lock_path(config.loop_dir)
    info = _inspect_lock(lock_path)
    if info is None:
        print("agentloop unlock: no active lock")
        return 0
    reason = getattr(args, "reason", "") or "manual unlock"
    message = _force_break_lock(lock_path, reason=reason)
    _append_log(repo_root, f"lock break: {message}")
    print(f"agentloop unlock: {message}")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_repo_root_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--repo-root",
        default=".",
        help="Working directory the loop operates on (default: current directory)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="agentloop command line interface")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run the autonomous agent loop until it exits or halts")
    _add_repo_root_argument(run)
    run.add_argument("--prompt", default=None, help="Prompt file (default: .agentloop/PROMPT.md)")
    run.add_argument("--plan", default=None, help="Checklist plan file (default: .agentloop/fix_plan.md)")
    run.add_argument("--calls", type=int, default=None, help="Maximum agent calls per hour")
    run.add_argument("--timeout", type=int, default=None, help="Per-invocation timeout in minutes (1-120)")
    run.add_argument("--max-loops", type=int, default=None, help="Stop after this many loops (0 = unlimited)")
    run.add_argument(
        "--output-format",
        choices=("json", "text"),
        default=None,
        help="Agent output format: json (structured) or text (freeform)",
    )
    run.add_argument(
        "--allowed-tools",
        default=None,
        help="Comma-separated whitelist of agent tools",
    )
    run.add_argument("--session-expiry", type=float, default=None, help="Session expiry in hours")
    run.add_argument(
        "--no-continue",
        action="store_true",
        help="Do not pass the agent's session token back between loops",
    )
    run.add_argument(
        "--on-api-limit",
        choices=("prompt", "wait", "abort"),
        default=None,
        help="What to do when the agent reports its usage limit",
    )
    run.add_argument("--agent-command", default=None, help="Override the agent command template")
    run.set_defaults(handler=_cmd_run)

    status = subparsers.add_parser("status", help="Show loop status, rate limit, and breaker state")
    _add_repo_root_argument(status)
    status.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    status.set_defaults(handler=_cmd_status)

    circuit = subparsers.add_parser("circuit", help="Inspect or reset the circuit breaker")
    _add_repo_root_argument(circuit)
    circuit.add_argument("action", choices=("show", "reset"))
    circuit.add_argument("--reason", default="", help="Reason recorded for a reset")
    circuit.add_argument("--history", type=int, default=5, help="Number of transitions to show")
    circuit.set_defaults(handler=_cmd_circuit)

    session = subparsers.add_parser("session", help="Inspect or reset the continuation session")
    _add_repo_root_argument(session)
    session.add_argument("action", choices=("show", "reset"))
    session.add_argument("--reason", default="", help="Reason recorded for a reset")
    session.set_defaults(handler=_cmd_session)

    unlock = subparsers.add_parser("unlock", help="Force-break a stale loop lock")
    _add_repo_root_argument(unlock)
    unlock.add_argument("--reason", default="", help="Reason recorded in the loop log")
    unlock.set_defaults(handler=_cmd_unlock)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))
