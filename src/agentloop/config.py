from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from agentloop.constants import (
    API_LIMIT_ACTIONS,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_ALLOWED_TOOLS,
    DEFAULT_API_LIMIT_ACTION,
    DEFAULT_CIRCUIT_HISTORY_LIMIT,
    DEFAULT_COMPLETION_INDICATOR_THRESHOLD,
    DEFAULT_DONE_SIGNAL_THRESHOLD,
    DEFAULT_EXIT_SIGNAL_WINDOW,
    DEFAULT_FAILURE_BACKOFF_SECONDS,
    DEFAULT_HALF_OPEN_THRESHOLD,
    DEFAULT_MAX_CALLS_PER_HOUR,
    DEFAULT_NO_PROGRESS_THRESHOLD,
    DEFAULT_OUTPUT_DECLINE_THRESHOLD,
    DEFAULT_OUTPUT_FORMAT,
    DEFAULT_PLAN_FILE,
    DEFAULT_PROGRESS_INTERVAL_SECONDS,
    DEFAULT_PROMPT_FILE,
    DEFAULT_SAME_ERROR_THRESHOLD,
    DEFAULT_SESSION_EXPIRY_HOURS,
    DEFAULT_SUCCESS_PAUSE_SECONDS,
    DEFAULT_TEST_SATURATION_THRESHOLD,
    DEFAULT_TIMEOUT_MINUTES,
    MAX_TIMEOUT_MINUTES,
    MIN_TIMEOUT_MINUTES,
    OUTPUT_FORMATS,
    POLICY_FILE_NAME,
)
from agentloop.models import (
    CircuitBreakerConfig,
    ExitSignalConfig,
    LoopConfig,
    LoopConfigError,
    _coerce_bool,
    _coerce_float,
    _coerce_int,
    _coerce_positive_int,
)
from agentloop.utils import _resolve_loop_dir

_OUTPUT_FORMAT_ALIASES = {
    "json": "json",
    "structured": "json",
    "text": "text",
    "freeform": "text",
}


def _load_loop_policy(repo_root: Path) -> dict[str, Any]:
    policy_path = _resolve_loop_dir(repo_root) / POLICY_FILE_NAME
    if not policy_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except Exception:
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _policy_section(policy: dict[str, Any], name: str) -> dict[str, Any]:
    section = policy.get(name)
    if not isinstance(section, dict):
        return {}
    return section


def _pick(overrides: dict[str, Any], key: str, section: dict[str, Any], field: str, default: Any) -> Any:
    value = overrides.get(key)
    if value is not None:
        return value
    value = section.get(field)
    if value is not None:
        return value
    return default


def _resolve_repo_path(repo_root: Path, raw_path: Any) -> Path:
    candidate = Path(str(raw_path).strip()).expanduser()
    if candidate.is_absolute():
        return candidate
    return repo_root / candidate


def _resolve_output_format(raw_value: Any) -> str:
    value = str(raw_value).strip().lower()
    resolved = _OUTPUT_FORMAT_ALIASES.get(value)
    if resolved is None:
        raise LoopConfigError(
            f"output format must be one of {', '.join(OUTPUT_FORMATS)}, got '{raw_value}'"
        )
    return resolved


def _resolve_allowed_tools(raw_value: Any) -> tuple[str, ...]:
    if isinstance(raw_value, str):
        entries = raw_value.split(",")
    elif isinstance(raw_value, (list, tuple)):
        entries = [str(entry) for entry in raw_value]
    else:
        raise LoopConfigError("allowed tools must be a list or a comma-separated string")
    tools: list[str] = []
    for entry in entries:
        value = entry.strip()
        if value and value not in tools:
            tools.append(value)
    return tuple(tools)


def _load_circuit_breaker_config(policy: dict[str, Any]) -> CircuitBreakerConfig:
    section = _policy_section(policy, "circuit_breaker")
    no_progress = _coerce_positive_int(
        section.get("no_progress_threshold"), default=DEFAULT_NO_PROGRESS_THRESHOLD
    )
    half_open = _coerce_positive_int(
        section.get("half_open_threshold"), default=DEFAULT_HALF_OPEN_THRESHOLD
    )
    if half_open > no_progress:
        half_open = no_progress
    return CircuitBreakerConfig(
        no_progress_threshold=no_progress,
        same_error_threshold=_coerce_positive_int(
            section.get("same_error_threshold"), default=DEFAULT_SAME_ERROR_THRESHOLD
        ),
        half_open_threshold=half_open,
        output_decline_threshold=_coerce_positive_int(
            section.get("output_decline_threshold"), default=DEFAULT_OUTPUT_DECLINE_THRESHOLD
        ),
        history_limit=_coerce_positive_int(
            section.get("history_limit"), default=DEFAULT_CIRCUIT_HISTORY_LIMIT
        ),
    )


def _load_exit_signal_config(policy: dict[str, Any]) -> ExitSignalConfig:
    section = _policy_section(policy, "exit_signals")
    return ExitSignalConfig(
        test_saturation_threshold=_coerce_positive_int(
            section.get("test_saturation_threshold"), default=DEFAULT_TEST_SATURATION_THRESHOLD
        ),
        done_signal_threshold=_coerce_positive_int(
            section.get("done_signal_threshold"), default=DEFAULT_DONE_SIGNAL_THRESHOLD
        ),
        completion_indicator_threshold=_coerce_positive_int(
            section.get("completion_indicator_threshold"),
            default=DEFAULT_COMPLETION_INDICATOR_THRESHOLD,
        ),
        window_size=_coerce_positive_int(
            section.get("window_size"), default=DEFAULT_EXIT_SIGNAL_WINDOW
        ),
    )


def _load_loop_config(
    repo_root: Path,
    overrides: dict[str, Any] | None = None,
) -> LoopConfig:
    """Resolve defaults, ``.agentloop/loop_policy.yaml`` and CLI overrides into one config."""
    overrides = {key: value for key, value in (overrides or {}).items() if value is not None}
    repo_root = repo_root.expanduser().resolve()
    policy = _load_loop_policy(repo_root)
    agent = _policy_section(policy, "agent")
    loop = _policy_section(policy, "loop")
    session = _policy_section(policy, "session")

    timeout_minutes = _coerce_int(
        _pick(overrides, "timeout_minutes", agent, "timeout_minutes", DEFAULT_TIMEOUT_MINUTES),
        default=-1,
    )
    if not MIN_TIMEOUT_MINUTES <= timeout_minutes <= MAX_TIMEOUT_MINUTES:
        raise LoopConfigError(
            f"timeout must be between {MIN_TIMEOUT_MINUTES} and {MAX_TIMEOUT_MINUTES} minutes"
        )

    max_calls = _coerce_int(
        _pick(overrides, "max_calls_per_hour", loop, "max_calls_per_hour", DEFAULT_MAX_CALLS_PER_HOUR),
        default=0,
    )
    if max_calls < 1:
        raise LoopConfigError("max calls per hour must be >= 1")

    expiry_hours = _coerce_float(
        _pick(overrides, "session_expiry_hours", session, "expiry_hours", DEFAULT_SESSION_EXPIRY_HOURS),
        default=-1.0,
    )
    if expiry_hours <= 0:
        raise LoopConfigError("session expiry hours must be > 0")

    on_api_limit = str(
        _pick(overrides, "on_api_limit", loop, "on_api_limit", DEFAULT_API_LIMIT_ACTION)
    ).strip().lower()
    if on_api_limit not in API_LIMIT_ACTIONS:
        raise LoopConfigError(
            f"on_api_limit must be one of {', '.join(API_LIMIT_ACTIONS)}, got '{on_api_limit}'"
        )

    agent_command = str(
        _pick(overrides, "agent_command", agent, "command", DEFAULT_AGENT_COMMAND)
    ).strip()
    if not agent_command:
        raise LoopConfigError("agent command must be non-empty")

    max_loops = max(0, _coerce_int(_pick(overrides, "max_loops", loop, "max_loops", 0), default=0))

    return LoopConfig(
        repo_root=repo_root,
        loop_dir=_resolve_loop_dir(repo_root),
        prompt_path=_resolve_repo_path(
            repo_root, _pick(overrides, "prompt_file", loop, "prompt_file", DEFAULT_PROMPT_FILE)
        ),
        plan_path=_resolve_repo_path(
            repo_root, _pick(overrides, "plan_file", loop, "plan_file", DEFAULT_PLAN_FILE)
        ),
        agent_command=agent_command,
        output_format=_resolve_output_format(
            _pick(overrides, "output_format", agent, "output_format", DEFAULT_OUTPUT_FORMAT)
        ),
        allowed_tools=_resolve_allowed_tools(
            _pick(overrides, "allowed_tools", agent, "allowed_tools", list(DEFAULT_ALLOWED_TOOLS))
        ),
        timeout_minutes=timeout_minutes,
        max_calls_per_hour=max_calls,
        max_loops=max_loops,
        session_continuity=_coerce_bool(
            _pick(overrides, "session_continuity", session, "continuity", True), default=True
        ),
        session_expiry_hours=expiry_hours,
        success_pause_seconds=max(
            0.0,
            _coerce_float(loop.get("success_pause_seconds"), default=DEFAULT_SUCCESS_PAUSE_SECONDS),
        ),
        failure_backoff_seconds=max(
            0.0,
            _coerce_float(loop.get("failure_backoff_seconds"), default=DEFAULT_FAILURE_BACKOFF_SECONDS),
        ),
        progress_interval_seconds=max(
            0.5,
            _coerce_float(
                loop.get("progress_interval_seconds"), default=DEFAULT_PROGRESS_INTERVAL_SECONDS
            ),
        ),
        on_api_limit=on_api_limit,
        circuit_breaker=_load_circuit_breaker_config(policy),
        exit_signals=_load_exit_signal_config(policy),
    )


def _config_summary(config: LoopConfig) -> dict[str, Any]:
    return {
        "repo_root": str(config.repo_root),
        "prompt_file": str(config.prompt_path),
        "plan_file": str(config.plan_path),
        "agent_command": config.agent_command,
        "output_format": config.output_format,
        "allowed_tools": list(config.allowed_tools),
        "timeout_minutes": config.timeout_minutes,
        "max_calls_per_hour": config.max_calls_per_hour,
        "max_loops": config.max_loops,
        "session_continuity": config.session_continuity,
        "session_expiry_hours": config.session_expiry_hours,
        "on_api_limit": config.on_api_limit,
    }
