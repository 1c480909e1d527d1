"""Classify one agent invocation's output into a ``ResponseAnalysis`` record.

Two parsing paths:

* **structured**: output that starts with ``{`` or ``[`` and parses as JSON.
  Heterogeneous field names are folded into one ``StructuredResponse`` by
  :func:`_normalize_structured_payload`; nothing downstream sees the raw keys.
* **freeform**: everything else, scored with fixed keyword/pattern
  heuristics unless the agent emitted an explicit ``---LOOP_STATUS---`` block.

Field precedence for structured payloads (first present wins, then default):

==================  ==============================================================
summary             ``result`` > ``summary`` > ``message`` > ""
session token       ``session_id`` > ``sessionId`` > ``metadata.session_id`` > ""
files changed       ``files_modified`` > ``files_changed`` > ``metadata.files_changed`` > 0
error flag          ``is_error`` > ``has_errors`` > ``metadata.is_error`` > False
status              ``status`` > ``metadata.status`` > ""
exit flag           ``exit_signal`` > ``EXIT_SIGNAL`` > ``metadata.exit_signal`` > None
error message       ``error_message`` > ``error`` > ``metadata.error`` > ""
error code          ``error_code`` > ``code`` > ""
error count         ``error_count`` > ``len(errors)`` > ``1 if error flag else 0``
work type           ``work_type`` > ``workType`` > ``metadata.work_type`` > ""
confidence          ``confidence`` > ``confidence_score`` > 0
progress            ``progress_indicators`` > ``metadata.progress_indicators`` > []
created files       ``files_created`` > ``created_files`` > []
missing files       ``missing_files`` > ``files_missing`` > []
==================  ==============================================================
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Callable

from agentloop.constants import (
    ANALYZER_STATE_FILE,
    COMPLETION_KEYWORDS,
    DEFAULT_WORK_SUMMARY,
    ERROR_FIELD_LINE_PATTERN,
    ERROR_LINE_PATTERNS,
    IMPLEMENTATION_PATTERNS,
    NO_WORK_PATTERNS,
    RESPONSE_ANALYSIS_FILE,
    STATUS_BLOCK_PATTERN,
    STUCK_ERROR_COUNT,
    SUMMARY_LINE_PATTERN,
    TEST_COMMAND_PATTERNS,
    WORK_SUMMARY_MAX_CHARS,
)
from agentloop.models import (
    ResponseAnalysis,
    StateError,
    StructuredResponse,
    _coerce_bool,
    _coerce_int,
)
from agentloop.schemas import _load_validated_json
from agentloop.utils import Clock, _append_log, _compact_log_text, _utc_datetime, _utc_now, _write_json

_COMPLETION_KEYWORD_PATTERNS = tuple(
    re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE) for keyword in COMPLETION_KEYWORDS
)
_MISSING = object()


# ---------------------------------------------------------------------------
# Structured payload adapter
# ---------------------------------------------------------------------------


def _parse_structured_output(output: str) -> dict[str, Any] | None:
    text = output.strip()
    if not text or text[0] not in "{[":
        return None
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, list):
        objects = [entry for entry in payload if isinstance(entry, dict)]
        results = [entry for entry in objects if entry.get("type") == "result"]
        if results:
            return results[-1]
        if objects:
            return objects[-1]
    return None


def _lookup(payload: dict[str, Any], key: str) -> Any:
    current: Any = payload
    for part in key.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _first_present(payload: dict[str, Any], keys: tuple[str, ...], default: Any) -> Any:
    for key in keys:
        value = _lookup(payload, key)
        if value is not _MISSING and value is not None:
            return value
    return default


def _string_list(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    if isinstance(value, (list, tuple)):
        return tuple(str(entry) for entry in value if str(entry).strip())
    return ()


def _optional_bool(value: Any) -> bool | None:
    if value is None:
        return None
    return _coerce_bool(value)


def _normalize_structured_payload(payload: dict[str, Any]) -> StructuredResponse:
    summary = _first_present(payload, ("result", "summary", "message"), "")
    is_error = _coerce_bool(_first_present(payload, ("is_error", "has_errors", "metadata.is_error"), False))

    raw_error = _first_present(payload, ("error_message", "error", "metadata.error"), "")
    if isinstance(raw_error, dict):
        error_message = str(raw_error.get("message", "") or "")
        error_code = str(raw_error.get("code", "") or "")
    else:
        error_message = "" if isinstance(raw_error, bool) else str(raw_error)
        error_code = ""
    error_code = str(_first_present(payload, ("error_code", "code"), error_code) or "")

    raw_errors = payload.get("errors")
    default_error_count = 1 if is_error else 0
    if isinstance(raw_errors, list):
        default_error_count = len(raw_errors)
    error_count = max(0, _coerce_int(payload.get("error_count"), default=default_error_count))

    return StructuredResponse(
        summary=summary if isinstance(summary, str) else json.dumps(summary),
        has_result_field=_first_present(payload, ("result",), None) is not None,
        session_id=str(_first_present(payload, ("session_id", "sessionId", "metadata.session_id"), "") or ""),
        files_changed=max(
            0,
            _coerce_int(
                _first_present(payload, ("files_modified", "files_changed", "metadata.files_changed"), 0),
                default=0,
            ),
        ),
        is_error=is_error,
        status=str(_first_present(payload, ("status", "metadata.status"), "") or "").strip(),
        exit_flag=_optional_bool(
            _first_present(payload, ("exit_signal", "EXIT_SIGNAL", "metadata.exit_signal"), None)
        ),
        error_message=error_message,
        error_code=error_code,
        error_count=error_count,
        work_type=str(_first_present(payload, ("work_type", "workType", "metadata.work_type"), "") or "").strip(),
        declared_confidence=_coerce_int(_first_present(payload, ("confidence", "confidence_score"), 0), default=0),
        progress_indicators=_string_list(
            _first_present(payload, ("progress_indicators", "metadata.progress_indicators"), [])
        ),
        files_created=_string_list(_first_present(payload, ("files_created", "created_files"), [])),
        files_missing=_string_list(_first_present(payload, ("missing_files", "files_missing"), [])),
    )


# ---------------------------------------------------------------------------
# Explicit status block
# ---------------------------------------------------------------------------


def _parse_status_block(text: str) -> dict[str, str] | None:
    match = STATUS_BLOCK_PATTERN.search(text)
    if match is None:
        return None
    fields: dict[str, str] = {}
    for raw_line in match.group("body").splitlines():
        if ":" not in raw_line:
            continue
        key, value = raw_line.split(":", 1)
        key = key.strip().upper()
        if key:
            fields[key] = value.strip()
    return fields


def _explicit_exit_flag(block: dict[str, str] | None) -> bool | None:
    if not block:
        return None
    raw_flag = block.get("EXIT_SIGNAL")
    if raw_flag is not None and raw_flag.strip():
        return _coerce_bool(raw_flag)
    if block.get("STATUS", "").strip().upper() == "COMPLETE":
        return True
    return None


# ---------------------------------------------------------------------------
# Freeform heuristics
# ---------------------------------------------------------------------------


def _has_completion_keyword(text: str) -> bool:
    return any(pattern.search(text) for pattern in _COMPLETION_KEYWORD_PATTERNS)


def _count_pattern_matches(text: str, patterns: tuple[re.Pattern[str], ...]) -> int:
    return sum(len(pattern.findall(text)) for pattern in patterns)


def _count_error_lines(text: str) -> int:
    """Count error-looking lines, ignoring echoed structured keys such as ``"is_error":``."""
    count = 0
    for line in text.splitlines():
        if ERROR_FIELD_LINE_PATTERN.search(line):
            continue
        if any(pattern.search(line) for pattern in ERROR_LINE_PATTERNS):
            count += 1
    return count


def _strip_status_block(text: str) -> str:
    return STATUS_BLOCK_PATTERN.sub("", text)


def _extract_work_summary(text: str, block: dict[str, str] | None = None) -> str:
    if block:
        recommendation = block.get("RECOMMENDATION", "").strip()
        if recommendation:
            return _compact_log_text(recommendation, limit=WORK_SUMMARY_MAX_CHARS)
    for line in _strip_status_block(text).splitlines():
        stripped = line.strip().lstrip("#*->").strip()
        if stripped and SUMMARY_LINE_PATTERN.search(stripped):
            return _compact_log_text(stripped, limit=WORK_SUMMARY_MAX_CHARS)
    return DEFAULT_WORK_SUMMARY


class ResponseAnalyzer:
    def __init__(
        self,
        repo_root: Path,
        loop_dir: Path,
        *,
        progress_probe: Callable[[], int] | None = None,
        clock: Clock = _utc_datetime,
    ) -> None:
        self.repo_root = repo_root
        self.analysis_path = loop_dir / RESPONSE_ANALYSIS_FILE
        self.state_path = loop_dir / ANALYZER_STATE_FILE
        self._progress_probe = progress_probe
        self._clock = clock

    # -- persistence -------------------------------------------------------

    def previous_output_length(self) -> int:
        try:
            payload = _load_validated_json(self.state_path, "analyzer_state")
        except StateError:
            return 0
        return int(payload["last_output_length"])

    def _store_output_length(self, length: int) -> None:
        _write_json(self.state_path, {"last_output_length": length})

    def load_latest(self) -> ResponseAnalysis | None:
        try:
            payload = _load_validated_json(self.analysis_path, "response_analysis")
        except StateError:
            return None
        return ResponseAnalysis.from_payload(payload)

    def _probe_changed_files(self) -> int:
        if self._progress_probe is None:
            return 0
        try:
            return max(0, int(self._progress_probe()))
        except Exception as exc:
            _append_log(self.repo_root, f"response analyzer progress probe failed: {exc}")
            return 0

    # -- analysis ----------------------------------------------------------

    def analyze(self, output: str, loop_index: int, *, output_file: Path | str = "") -> ResponseAnalysis:
        text = output or ""
        previous_length = self.previous_output_length()
        payload = _parse_structured_output(text)
        if payload is not None:
            analysis = self._analyze_structured(
                _normalize_structured_payload(payload),
                loop_index=loop_index,
                output_length=len(text),
                output_file=str(output_file),
            )
        else:
            analysis = self._analyze_freeform(
                text,
                loop_index=loop_index,
                previous_length=previous_length,
                output_file=str(output_file),
            )
        self._store_output_length(len(text))
        _write_json(self.analysis_path, analysis.to_payload())
        _append_log(
            self.repo_root,
            (
                f"response analysis loop={loop_index} format={analysis.output_format} "
                f"confidence={analysis.confidence_score} exit_signal={analysis.exit_signal} "
                f"explicit={analysis.explicit_exit_signal} progress={analysis.has_progress} "
                f"files={analysis.files_modified} test_only={analysis.is_test_only} "
                f"errors={analysis.error_count} stuck={analysis.is_stuck}"
            ),
        )
        return analysis

    def _analyze_structured(
        self,
        response: StructuredResponse,
        *,
        loop_index: int,
        output_length: int,
        output_file: str,
    ) -> ResponseAnalysis:
        block = _parse_status_block(response.summary)
        exit_flag = response.exit_flag
        if exit_flag is None and response.status.lower() != "complete":
            exit_flag = _explicit_exit_flag(block)
        exit_signal = response.status.lower() == "complete" or bool(exit_flag)

        if exit_signal:
            confidence = 100
        else:
            confidence = response.declared_confidence + 50
            if response.has_result_field:
                confidence += 20
            confidence += 5 * len(response.progress_indicators)

        files_modified = response.files_changed
        if files_modified == 0:
            files_modified = self._probe_changed_files()

        work_type = response.work_type or (block or {}).get("WORK_TYPE", "")
        summary = _compact_log_text(response.summary, limit=WORK_SUMMARY_MAX_CHARS) if response.summary.strip() else ""
        if block or not summary:
            summary = _extract_work_summary(response.summary, block)

        return ResponseAnalysis(
            loop_number=loop_index,
            timestamp=_utc_now(self._clock),
            output_file=output_file,
            output_format="structured",
            has_completion_signal=exit_signal,
            is_test_only=work_type.strip().upper() == "TEST_ONLY",
            is_stuck=response.error_count > STUCK_ERROR_COUNT,
            has_progress=files_modified > 0,
            files_modified=files_modified,
            confidence_score=confidence,
            exit_signal=exit_signal,
            work_summary=summary,
            output_length=output_length,
            explicit_exit_signal=exit_signal,
            error_count=response.error_count,
            session_id=response.session_id,
        )

    def _analyze_freeform(
        self,
        text: str,
        *,
        loop_index: int,
        previous_length: int,
        output_file: str,
    ) -> ResponseAnalysis:
        block = _parse_status_block(text)
        explicit_flag = _explicit_exit_flag(block)
        body = _strip_status_block(text)
        confidence = 0
        has_completion_signal = False

        if _has_completion_keyword(body):
            has_completion_signal = True
            confidence += 10

        test_matches = _count_pattern_matches(body, TEST_COMMAND_PATTERNS)
        implementation_matches = _count_pattern_matches(body, IMPLEMENTATION_PATTERNS)
        is_test_only = test_matches > 0 and implementation_matches == 0

        error_count = _count_error_lines(body)
        is_stuck = error_count >= STUCK_ERROR_COUNT

        if any(pattern.search(body) for pattern in NO_WORK_PATTERNS):
            has_completion_signal = True
            confidence += 15

        files_modified = self._probe_changed_files()
        has_progress = files_modified > 0
        if has_progress:
            confidence += 20

        output_length = len(text)
        if previous_length > 0 and output_length / previous_length < 0.5:
            confidence += 10

        if explicit_flag is not None:
            # An explicit flag in either direction replaces keyword-derived completion.
            has_completion_signal = explicit_flag
            exit_signal = explicit_flag
            if explicit_flag:
                confidence = 100
        else:
            exit_signal = confidence >= 40 or has_completion_signal

        return ResponseAnalysis(
            loop_number=loop_index,
            timestamp=_utc_now(self._clock),
            output_file=output_file,
            output_format="freeform",
            has_completion_signal=has_completion_signal,
            is_test_only=is_test_only,
            is_stuck=is_stuck,
            has_progress=has_progress,
            files_modified=files_modified,
            confidence_score=confidence,
            exit_signal=exit_signal,
            work_summary=_extract_work_summary(text, block),
            output_length=output_length,
            explicit_exit_signal=bool(explicit_flag),
            error_count=error_count,
        )
