"""Agentloop data models: exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _coerce_int(value: Any, *, default: int) -> int:
    if isinstance(value, bool):
        return int(value)
    try:
        return int(value)
    except Exception:
        return default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed > 0 else default


class StateError(RuntimeError):
    """Raised when persisted state cannot be loaded or validated."""


class LoopConfigError(RuntimeError):
    """Raised when the loop configuration is invalid or a required input is missing."""


class AgentRunnerError(RuntimeError):
    """Raised when the agent command cannot be built or launched."""


@dataclass(frozen=True)
class CircuitBreakerConfig:
    no_progress_threshold: int
    same_error_threshold: int
    half_open_threshold: int
    output_decline_threshold: int
    history_limit: int


@dataclass(frozen=True)
class ExitSignalConfig:
    test_saturation_threshold: int
    done_signal_threshold: int
    completion_indicator_threshold: int
    window_size: int


@dataclass(frozen=True)
class LoopConfig:
    repo_root: Path
    loop_dir: Path
    prompt_path: Path
    plan_path: Path
    agent_command: str
    output_format: str
    allowed_tools: tuple[str, ...]
    timeout_minutes: int
    max_calls_per_hour: int
    max_loops: int
    session_continuity: bool
    session_expiry_hours: float
    success_pause_seconds: float
    failure_backoff_seconds: float
    progress_interval_seconds: float
    on_api_limit: str
    circuit_breaker: CircuitBreakerConfig
    exit_signals: ExitSignalConfig

    @property
    def timeout_seconds(self) -> float:
        return float(self.timeout_minutes) * 60.0

    @property
    def structured_output(self) -> bool:
        return self.output_format == "json"


@dataclass
class CircuitState:
    state: str
    last_change: str
    consecutive_no_progress: int = 0
    consecutive_same_error: int = 0
    last_progress_loop: int = 0
    total_opens: int = 0
    reason: str = ""
    current_loop: int = 0

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LoopResultEvent:
    loop_index: int
    files_changed: int
    has_errors: bool
    output_length: int = 0


@dataclass(frozen=True)
class StructuredResponse:
    """Canonical view of one structured agent payload, whatever field names it used."""

    summary: str
    has_result_field: bool
    session_id: str
    files_changed: int
    is_error: bool
    status: str
    exit_flag: bool | None
    error_message: str
    error_code: str
    error_count: int
    work_type: str
    declared_confidence: int
    progress_indicators: tuple[str, ...]
    files_created: tuple[str, ...]
    files_missing: tuple[str, ...]


@dataclass(frozen=True)
class ResponseAnalysis:
    loop_number: int
    timestamp: str
    output_file: str
    output_format: str
    has_completion_signal: bool
    is_test_only: bool
    is_stuck: bool
    has_progress: bool
    files_modified: int
    confidence_score: int
    exit_signal: bool
    work_summary: str
    output_length: int
    explicit_exit_signal: bool = False
    error_count: int = 0
    session_id: str = ""

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "loop_number": self.loop_number,
            "timestamp": self.timestamp,
            "output_file": self.output_file,
            "output_format": self.output_format,
            "analysis": {
                "has_completion_signal": self.has_completion_signal,
                "is_test_only": self.is_test_only,
                "is_stuck": self.is_stuck,
                "has_progress": self.has_progress,
                "files_modified": self.files_modified,
                "confidence_score": self.confidence_score,
                "exit_signal": self.exit_signal,
                "work_summary": self.work_summary,
                "output_length": self.output_length,
                "explicit_exit_signal": self.explicit_exit_signal,
                "error_count": self.error_count,
                "session_id": self.session_id,
            },
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ResponseAnalysis":
        analysis = payload.get("analysis", {})
        if not isinstance(analysis, dict):
            analysis = {}
        return cls(
            loop_number=_coerce_int(payload.get("loop_number"), default=0),
            timestamp=str(payload.get("timestamp", "")),
            output_file=str(payload.get("output_file", "")),
            output_format=str(payload.get("output_format", "freeform")),
            has_completion_signal=_coerce_bool(analysis.get("has_completion_signal")),
            is_test_only=_coerce_bool(analysis.get("is_test_only")),
            is_stuck=_coerce_bool(analysis.get("is_stuck")),
            has_progress=_coerce_bool(analysis.get("has_progress")),
            files_modified=_coerce_int(analysis.get("files_modified"), default=0),
            confidence_score=_coerce_int(analysis.get("confidence_score"), default=0),
            exit_signal=_coerce_bool(analysis.get("exit_signal")),
            work_summary=str(analysis.get("work_summary", "")),
            output_length=_coerce_int(analysis.get("output_length"), default=0),
            explicit_exit_signal=_coerce_bool(analysis.get("explicit_exit_signal")),
            error_count=_coerce_int(analysis.get("error_count"), default=0),
            session_id=str(analysis.get("session_id", "") or ""),
        )


@dataclass
class SessionRecord:
    session_id: str
    created_at: str
    last_used: str
    reset_at: str = ""
    reset_reason: str = ""
    agent_session_id: str = ""

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AgentRunResult:
    outcome: str
    output: str
    exit_code: int | None
    duration_seconds: float
    output_path: Path | None = None
    detail: str = ""


@dataclass(frozen=True)
class IterationResult:
    loop_index: int
    action: str
    outcome: str = ""
    reason: str = ""
    circuit_state: str = ""
    analysis: ResponseAnalysis | None = None


@dataclass(frozen=True)
class LoopSummary:
    exit_code: int
    exit_reason: str
    loop_count: int
    iterations: tuple[IterationResult, ...] = field(default_factory=tuple)
