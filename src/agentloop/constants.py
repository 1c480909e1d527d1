"""Agentloop constants: file layout, thresholds, detection patterns, and defaults."""

from __future__ import annotations

import re

LOOP_DIR_NAME = ".agentloop"
POLICY_FILE_NAME = "loop_policy.yaml"
LOG_FILE_NAME = "loop.log"

CIRCUIT_STATE_FILE = "circuit_state.json"
CIRCUIT_HISTORY_FILE = "circuit_history.json"
EXIT_SIGNALS_FILE = "exit_signals.json"
RESPONSE_ANALYSIS_FILE = "response_analysis.json"
ANALYZER_STATE_FILE = "analyzer_state.json"
SESSION_FILE = "session.json"
SESSION_HISTORY_FILE = "session_history.json"
CALL_COUNT_FILE = "call_count.json"
STATUS_FILE = "status.json"
PROGRESS_FILE = "progress.json"
LOCK_FILE = "lock"

# Circuit breaker states
CIRCUIT_CLOSED = "CLOSED"
CIRCUIT_HALF_OPEN = "HALF_OPEN"
CIRCUIT_OPEN = "OPEN"
CIRCUIT_STATES = (CIRCUIT_CLOSED, CIRCUIT_HALF_OPEN, CIRCUIT_OPEN)

DEFAULT_NO_PROGRESS_THRESHOLD = 3
DEFAULT_SAME_ERROR_THRESHOLD = 5
DEFAULT_HALF_OPEN_THRESHOLD = 2
# Loaded into CircuitBreakerConfig but not consulted by the transition table.
DEFAULT_OUTPUT_DECLINE_THRESHOLD = 70
DEFAULT_CIRCUIT_HISTORY_LIMIT = 200

# Exit signal aggregation
DEFAULT_TEST_SATURATION_THRESHOLD = 3
DEFAULT_DONE_SIGNAL_THRESHOLD = 2
DEFAULT_COMPLETION_INDICATOR_THRESHOLD = 2
DEFAULT_EXIT_SIGNAL_WINDOW = 5
COMPLETION_INDICATOR_MIN_CONFIDENCE = 60

EXIT_REASON_TEST_SATURATION = "test_saturation"
EXIT_REASON_COMPLETION_SIGNALS = "completion_signals"
EXIT_REASON_PROJECT_COMPLETE = "project_complete"
EXIT_REASON_PLAN_COMPLETE = "plan_complete"

# Session lifecycle
DEFAULT_SESSION_EXPIRY_HOURS = 24
SESSION_HISTORY_LIMIT = 50
SESSION_STATE_ACTIVE = "active"
SESSION_STATE_INACTIVE = "inactive"
SESSION_STATE_RESET = "reset"
SESSION_STATE_CORRUPTED = "corrupted"

# Rate limiting / loop pacing
DEFAULT_MAX_CALLS_PER_HOUR = 100
DEFAULT_TIMEOUT_MINUTES = 15
MIN_TIMEOUT_MINUTES = 1
MAX_TIMEOUT_MINUTES = 120
DEFAULT_SUCCESS_PAUSE_SECONDS = 5.0
DEFAULT_FAILURE_BACKOFF_SECONDS = 30.0
DEFAULT_PROGRESS_INTERVAL_SECONDS = 10.0
RATE_LIMIT_WAIT_REPORT_SECONDS = 60.0
LOCK_STALE_SECONDS = 3 * 60 * 60

# Agent runner
OUTPUT_FORMATS = ("json", "text")
DEFAULT_OUTPUT_FORMAT = "json"
DEFAULT_AGENT_COMMAND = (
    "claude -p --output-format {output_format} "
    "--allowedTools {allowed_tools} {resume_flags}"
)
DEFAULT_ALLOWED_TOOLS = ("Write", "Read", "Edit", "Bash(git *)")
DEFAULT_PROMPT_FILE = f"{LOOP_DIR_NAME}/PROMPT.md"
DEFAULT_PLAN_FILE = f"{LOOP_DIR_NAME}/fix_plan.md"
API_LIMIT_ACTIONS = ("prompt", "wait", "abort")
DEFAULT_API_LIMIT_ACTION = "prompt"

OUTCOME_SUCCESS = "success"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_API_LIMIT = "api_limit"
OUTCOME_FAILURE = "failure"

# Loop stop reasons
STOP_REASON_STAGNATION = "stagnation_detected"
STOP_REASON_API_LIMIT = "api_limit"
STOP_REASON_MAX_LOOPS = "max_loops_reached"
STOP_REASON_INTERRUPTED = "interrupted"

# ---------------------------------------------------------------------------
# Response analysis patterns
# ---------------------------------------------------------------------------

STATUS_BLOCK_PATTERN = re.compile(
    r"---LOOP_STATUS---\s*\n(?P<body>.*?)\n\s*---END_LOOP_STATUS---",
    re.DOTALL,
)

COMPLETION_KEYWORDS: tuple[str, ...] = (
    "done",
    "complete",
    "completed",
    "finished",
    "all tasks complete",
    "project complete",
    "ready for review",
)

TEST_COMMAND_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"running tests", re.IGNORECASE),
    re.compile(r"npm (run )?test", re.IGNORECASE),
    re.compile(r"\bpytest\b", re.IGNORECASE),
    re.compile(r"\bjest\b", re.IGNORECASE),
    re.compile(r"\bbats\b", re.IGNORECASE),
    re.compile(r"cargo test", re.IGNORECASE),
    re.compile(r"go test", re.IGNORECASE),
)

IMPLEMENTATION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bimplement(ing|ed)?\b", re.IGNORECASE),
    re.compile(r"\bcreat(ing|ed)\b", re.IGNORECASE),
    re.compile(r"\bwriting\b", re.IGNORECASE),
    re.compile(r"\badd(ing|ed)\b", re.IGNORECASE),
    re.compile(r"\bfunction\b", re.IGNORECASE),
    re.compile(r"\bclass\b", re.IGNORECASE),
)

# Lines that look like a structured-data key mentioning "error" are echoes of
# field names, not errors.
ERROR_FIELD_LINE_PATTERN = re.compile(r'^\s*"[^"\n]*error[^"\n]*"\s*:', re.IGNORECASE)

ERROR_LINE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\s*(Error|ERROR|error):"),
    re.compile(r"\]: error"),
    re.compile(r"Error occurred"),
    re.compile(r"failed with error"),
    re.compile(r"[Ee]xception"),
    re.compile(r"Fatal|FATAL"),
)
# Structured payloads are stuck above this count, freeform output at or above it.
STUCK_ERROR_COUNT = 5

NO_WORK_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"nothing to do", re.IGNORECASE),
    re.compile(r"no (more )?work remaining", re.IGNORECASE),
    re.compile(r"no changes (needed|required)", re.IGNORECASE),
    re.compile(r"already implemented", re.IGNORECASE),
    re.compile(r"up to date", re.IGNORECASE),
)

SUMMARY_LINE_PATTERN = re.compile(
    r"\b(summary|completed|implemented|fixed|finished|done)\b",
    re.IGNORECASE,
)
DEFAULT_WORK_SUMMARY = "Output analyzed, no explicit summary found"
WORK_SUMMARY_MAX_CHARS = 160

API_LIMIT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"usage limit reached", re.IGNORECASE),
    re.compile(r"5-hour limit", re.IGNORECASE),
    re.compile(r"rate limit reached", re.IGNORECASE),
    re.compile(r"limit will reset", re.IGNORECASE),
)

PLAN_OPEN_ITEM_PATTERN = re.compile(r"^\s*[-*+]\s+\[ \]\s+\S")
PLAN_DONE_ITEM_PATTERN = re.compile(r"^\s*[-*+]\s+\[[xX]\]\s+\S")
