"""JSON schemas for the documents agentloop persists under ``.agentloop/``.

Every loader validates what it reads against these schemas; a document that
fails validation is treated exactly like a missing one and replaced by the
owning component's default.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from agentloop.constants import CIRCUIT_STATES
from agentloop.models import StateError
from agentloop.utils import _read_json

_NON_NEGATIVE_INT = {"type": "integer", "minimum": 0}
_LOOP_INDEX_LIST = {"type": "array", "items": _NON_NEGATIVE_INT}

SCHEMAS: dict[str, dict[str, Any]] = {
    "circuit_state": {
        "type": "object",
        "required": [
            "state",
            "last_change",
            "consecutive_no_progress",
            "consecutive_same_error",
            "last_progress_loop",
            "total_opens",
            "reason",
            "current_loop",
        ],
        "properties": {
            "state": {"enum": list(CIRCUIT_STATES)},
            "last_change": {"type": "string"},
            "consecutive_no_progress": _NON_NEGATIVE_INT,
            "consecutive_same_error": _NON_NEGATIVE_INT,
            "last_progress_loop": _NON_NEGATIVE_INT,
            "total_opens": _NON_NEGATIVE_INT,
            "reason": {"type": "string"},
            "current_loop": _NON_NEGATIVE_INT,
        },
    },
    "circuit_history": {
        "type": "array",
        "items": {
            "type": "object",
            "required": ["timestamp", "loop", "from_state", "to_state", "reason"],
            "properties": {
                "timestamp": {"type": "string"},
                "loop": _NON_NEGATIVE_INT,
                "from_state": {"enum": list(CIRCUIT_STATES)},
                "to_state": {"enum": list(CIRCUIT_STATES)},
                "reason": {"type": "string"},
            },
        },
    },
    "exit_signals": {
        "type": "object",
        "required": ["test_only_loops", "done_signals", "completion_indicators"],
        "properties": {
            "test_only_loops": _LOOP_INDEX_LIST,
            "done_signals": _LOOP_INDEX_LIST,
            "completion_indicators": _LOOP_INDEX_LIST,
        },
    },
    "response_analysis": {
        "type": "object",
        "required": ["loop_number", "timestamp", "output_format", "analysis"],
        "properties": {
            "loop_number": _NON_NEGATIVE_INT,
            "timestamp": {"type": "string"},
            "output_file": {"type": "string"},
            "output_format": {"enum": ["structured", "freeform"]},
            "analysis": {
                "type": "object",
                "required": [
                    "has_completion_signal",
                    "is_test_only",
                    "is_stuck",
                    "has_progress",
                    "files_modified",
                    "confidence_score",
                    "exit_signal",
                    "work_summary",
                    "output_length",
                ],
                "properties": {
                    "has_completion_signal": {"type": "boolean"},
                    "is_test_only": {"type": "boolean"},
                    "is_stuck": {"type": "boolean"},
                    "has_progress": {"type": "boolean"},
                    "files_modified": _NON_NEGATIVE_INT,
                    "confidence_score": {"type": "integer"},
                    "exit_signal": {"type": "boolean"},
                    "work_summary": {"type": "string"},
                    "output_length": _NON_NEGATIVE_INT,
                },
            },
        },
    },
    "analyzer_state": {
        "type": "object",
        "required": ["last_output_length"],
        "properties": {"last_output_length": _NON_NEGATIVE_INT},
    },
    "session": {
        "type": "object",
        "required": ["session_id", "created_at", "last_used", "reset_at", "reset_reason"],
        "properties": {
            "session_id": {"type": "string"},
            "created_at": {"type": "string"},
            "last_used": {"type": "string"},
            "reset_at": {"type": "string"},
            "reset_reason": {"type": "string"},
            "agent_session_id": {"type": "string"},
        },
    },
    "session_history": {
        "type": "array",
        "items": {
            "type": "object",
            "required": ["timestamp", "from_state", "to_state", "reason", "loop_number"],
            "properties": {
                "timestamp": {"type": "string"},
                "from_state": {"type": "string"},
                "to_state": {"type": "string"},
                "reason": {"type": "string"},
                "loop_number": _NON_NEGATIVE_INT,
            },
        },
    },
    "call_count": {
        "type": "object",
        "required": ["calls_made", "window"],
        "properties": {
            "calls_made": _NON_NEGATIVE_INT,
            "window": {"type": "string"},
        },
    },
}

_VALIDATORS = {
    name: Draft202012Validator(schema) for name, schema in SCHEMAS.items()
}


def _schema_errors(name: str, payload: Any) -> list[str]:
    validator = _VALIDATORS[name]
    errors = sorted(validator.iter_errors(payload), key=lambda error: list(error.path))
    messages: list[str] = []
    for error in errors:
        location = ".".join(str(part) for part in error.path) or "<root>"
        messages.append(f"{location}: {error.message}")
    return messages


def _load_validated_json(path: Path, schema_name: str) -> Any:
    """Load ``path`` and validate it against ``schema_name``.

    Raises ``StateError`` when the file is missing, unparsable, or invalid.
    """
    payload = _read_json(path)
    errors = _schema_errors(schema_name, payload)
    if errors:
        raise StateError(
            f"{path.name} failed {schema_name} schema validation: {'; '.join(errors[:3])}"
        )
    return payload
