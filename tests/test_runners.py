from __future__ import annotations

import json
import subprocess
import threading
import time
from pathlib import Path

import pytest
import yaml

import agentloop.runners as runners
from agentloop.config import _load_loop_config
from agentloop.models import AgentRunnerError, LoopConfig


class _StaticStream:
    def __init__(self, lines: list[str]) -> None:
        self._lines = list(lines)

    def readline(self) -> str:
        if self._lines:
            return self._lines.pop(0)
        time.sleep(0.005)
        return ""

    def close(self) -> None:
        return None


class _RecordingStdin:
    def __init__(self) -> None:
        self.text = ""
        self.closed = False

    def write(self, value: str) -> int:
        self.text += value
        return len(value)

    def flush(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class _FinishedProcess:
    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    returncode = 0
    launched: list[dict] = []

    def __init__(self, argv, **kwargs) -> None:
        self.stdin = _RecordingStdin()
        self.stdout = _StaticStream(type(self).stdout_lines)
        self.stderr = _StaticStream(type(self).stderr_lines)
        self.pid = 999999
        type(self).launched.append({"argv": argv, "kwargs": kwargs, "stdin": self.stdin})

    def wait(self, timeout: float | None = None) -> int:
        return type(self).returncode

    def poll(self) -> int | None:
        return type(self).returncode

    def terminate(self) -> None:
        return None

    def kill(self) -> None:
        return None


class _HangingProcess:
    terminated = False

    def __init__(self, *_args, **_kwargs) -> None:
        self.stdin = _RecordingStdin()
        self.stdout = _StaticStream(["thinking...\n"])
        self.stderr = _StaticStream([])
        self.pid = 999999
        self._terminated = False

    def wait(self, timeout: float | None = None) -> int:
        if self._terminated:
            return -15
        if timeout:
            time.sleep(min(timeout, 0.01))
        raise subprocess.TimeoutExpired(cmd="fake-agent", timeout=timeout or 0.0)

    def poll(self) -> int | None:
        return -15 if self._terminated else None

    def terminate(self) -> None:
        self._terminated = True
        type(self).terminated = True

    def kill(self) -> None:
        self._terminated = True


class _StubbornProcess(_HangingProcess):
    """Ignores SIGTERM; only kill() stops it."""

    calls: list[str] = []

    def terminate(self) -> None:
        type(self).calls.append("terminate")

    def kill(self) -> None:
        type(self).calls.append("kill")
        self._terminated = True


def _config(tmp_path: Path, **overrides) -> LoopConfig:
    prompt_path = tmp_path / ".agentloop" / "PROMPT.md"
    prompt_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_path.write_text("Fix the failing tests.\n", encoding="utf-8")
    values = {"agent_command": "fake-agent --format {output_format} {resume_flags}"}
    values.update(overrides)
    return _load_loop_config(tmp_path, values)


def _use_process(monkeypatch: pytest.MonkeyPatch, process_class: type, **attrs) -> None:
    for name, value in attrs.items():
        monkeypatch.setattr(process_class, name, value)
    monkeypatch.setattr(runners.subprocess, "Popen", process_class)


# ---------------------------------------------------------------------------
# Command building and classification
# ---------------------------------------------------------------------------


def test_default_command_quotes_tools_and_resume_token(tmp_path: Path) -> None:
    config = _load_loop_config(tmp_path)

    argv = runners._build_agent_command(config, resume_token="abc-123")

    assert argv == [
        "claude",
        "-p",
        "--output-format",
        "json",
        "--allowedTools",
        "Write",
        "Read",
        "Edit",
        "Bash(git *)",
        "--resume",
        "abc-123",
    ]


def test_resume_flags_dropped_without_continuity(tmp_path: Path) -> None:
    config = _load_loop_config(tmp_path, {"session_continuity": False})

    argv = runners._build_agent_command(config, resume_token="abc-123")

    assert "--resume" not in argv


def test_shell_syntax_in_template_is_rejected(tmp_path: Path) -> None:
    config = _load_loop_config(tmp_path, {"agent_command": "claude -p | tee out.log"})

    with pytest.raises(AgentRunnerError, match="shell metacharacters"):
        runners._build_agent_command(config)


@pytest.mark.parametrize(
    "exit_code, output, timed_out, expected",
    [
        (0, "all good", False, "success"),
        (None, "", True, "timeout"),
        (1, "boom", False, "failure"),
        (1, "Claude usage limit reached. Your limit will reset at 5pm", False, "api_limit"),
        (0, json.dumps({"is_error": True, "result": "5-hour limit hit"}), False, "api_limit"),
        (0, json.dumps({"is_error": True, "result": "tool crashed"}), False, "success"),
    ],
)
def test_classify_agent_outcome(exit_code, output, timed_out, expected) -> None:
    assert (
        runners._classify_agent_outcome(exit_code=exit_code, output=output, timed_out=timed_out)
        == expected
    )


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


def test_successful_run_streams_prompt_and_saves_output(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _use_process(
        monkeypatch,
        _FinishedProcess,
        stdout_lines=['{"result": "done", "session_id": "s-9"}\n'],
        stderr_lines=["warning: slow disk\n"],
        returncode=0,
        launched=[],
    )
    config = _config(tmp_path)

    result = runners._invoke_agent_runner(config, loop_index=4, resume_token="s-8")

    assert result.outcome == "success"
    assert result.exit_code == 0
    assert json.loads(result.output)["session_id"] == "s-9"
    launched = _FinishedProcess.launched[-1]
    assert launched["argv"] == ["fake-agent", "--format", "json", "--resume", "s-8"]
    assert launched["stdin"].text == "Fix the failing tests.\n"
    assert launched["stdin"].closed is True
    assert launched["kwargs"]["env"]["AGENTLOOP_LOOP_INDEX"] == "4"
    assert result.output_path is not None
    assert result.output_path.name.startswith("agent_output_4_")
    saved = result.output_path.read_text(encoding="utf-8")
    assert '"session_id": "s-9"' in saved
    assert "warning: slow disk" in saved
    log_text = (tmp_path / ".agentloop" / "logs" / "loop.log").read_text(encoding="utf-8")
    assert "agent runner finished loop=4 outcome=success" in log_text


def test_nonzero_exit_with_limit_phrase_is_api_limit(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _use_process(
        monkeypatch,
        _FinishedProcess,
        stdout_lines=[],
        stderr_lines=["rate limit reached, try later\n"],
        returncode=2,
        launched=[],
    )

    result = runners._invoke_agent_runner(_config(tmp_path), loop_index=1)

    assert result.outcome == "api_limit"
    assert result.exit_code == 2


def test_deadline_terminates_worker_as_timeout(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _use_process(monkeypatch, _HangingProcess, terminated=False)
    monkeypatch.setattr(runners, "RUNNER_WAIT_SLICE_SECONDS", 0.01)

    result = runners._invoke_agent_runner(_config(tmp_path), loop_index=2, timeout_seconds=0.1)

    assert result.outcome == "timeout"
    assert result.output == ""
    assert _HangingProcess.terminated is True
    log_text = (tmp_path / ".agentloop" / "logs" / "loop.log").read_text(encoding="utf-8")
    assert "agent runner timeout loop=2" in log_text


def test_progress_callback_errors_do_not_stop_deadline(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _use_process(monkeypatch, _HangingProcess, terminated=False)
    monkeypatch.setattr(runners, "RUNNER_WAIT_SLICE_SECONDS", 0.01)
    calls: list[tuple[float, int, str]] = []

    def _report(elapsed: float, lines: int, last: str) -> None:
        calls.append((elapsed, lines, last))
        raise RuntimeError("display went away")

    policy_path = tmp_path / ".agentloop" / "loop_policy.yaml"
    policy_path.parent.mkdir(parents=True, exist_ok=True)
    policy_path.write_text(yaml.safe_dump({"loop": {"progress_interval_seconds": 0.5}}), encoding="utf-8")

    result = runners._invoke_agent_runner(
        _config(tmp_path),
        loop_index=3,
        progress_callback=_report,
        timeout_seconds=0.8,
    )

    assert result.outcome == "timeout"
    assert calls
    assert calls[0][2] in {"", "thinking..."}
    log_text = (tmp_path / ".agentloop" / "logs" / "loop.log").read_text(encoding="utf-8")
    assert "progress report failed" in log_text


def test_missing_executable_is_a_failure(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    def _raise_not_found(*_args, **_kwargs):
        raise FileNotFoundError("fake-agent")

    monkeypatch.setattr(runners.subprocess, "Popen", _raise_not_found)

    result = runners._invoke_agent_runner(_config(tmp_path), loop_index=1)

    assert result.outcome == "failure"
    assert result.exit_code is None
    assert "fake-agent" in result.detail


def test_unreadable_prompt_is_a_failure(tmp_path: Path) -> None:
    config = _load_loop_config(tmp_path, {"agent_command": "fake-agent"})

    result = runners._invoke_agent_runner(config, loop_index=1)

    assert result.outcome == "failure"


def test_slow_progress_report_does_not_delay_deadline(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _use_process(monkeypatch, _HangingProcess, terminated=False)
    monkeypatch.setattr(runners, "RUNNER_WAIT_SLICE_SECONDS", 0.01)
    release = threading.Event()
    reports: list[int] = []

    def _stalled_report(_elapsed: float, lines: int, _last: str) -> None:
        reports.append(lines)
        release.wait(5)

    policy_path = tmp_path / ".agentloop" / "loop_policy.yaml"
    policy_path.parent.mkdir(parents=True, exist_ok=True)
    policy_path.write_text(yaml.safe_dump({"loop": {"progress_interval_seconds": 0.5}}), encoding="utf-8")

    try:
        result = runners._invoke_agent_runner(
            _config(tmp_path),
            loop_index=5,
            progress_callback=_stalled_report,
            timeout_seconds=0.8,
        )
    finally:
        release.set()

    assert result.outcome == "timeout"
    assert result.duration_seconds < 2.5
    assert reports
    assert _HangingProcess.terminated is True


def test_interrupt_from_progress_report_kills_worker(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _use_process(monkeypatch, _StubbornProcess, calls=[])
    monkeypatch.setattr(runners, "RUNNER_WAIT_SLICE_SECONDS", 0.01)
    monkeypatch.setattr(runners, "RUNNER_KILL_GRACE_SECONDS", 0.05)

    def _operator_interrupt(_elapsed: float, _lines: int, _last: str) -> None:
        raise KeyboardInterrupt

    policy_path = tmp_path / ".agentloop" / "loop_policy.yaml"
    policy_path.parent.mkdir(parents=True, exist_ok=True)
    policy_path.write_text(yaml.safe_dump({"loop": {"progress_interval_seconds": 0.5}}), encoding="utf-8")

    with pytest.raises(KeyboardInterrupt):
        runners._invoke_agent_runner(
            _config(tmp_path),
            loop_index=6,
            progress_callback=_operator_interrupt,
            timeout_seconds=30,
        )

    assert _StubbornProcess.calls == ["terminate", "kill"]
    log_text = (tmp_path / ".agentloop" / "logs" / "loop.log").read_text(encoding="utf-8")
    assert "agent runner interrupted loop=6" in log_text


def test_interrupt_while_waiting_terminates_worker(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _use_process(monkeypatch, _HangingProcess, terminated=False)
    original_wait = _HangingProcess.wait
    waits: list[float | None] = []

    def _wait_then_interrupt(self, timeout: float | None = None) -> int:
        waits.append(timeout)
        if len(waits) == 1:
            raise KeyboardInterrupt
        return original_wait(self, timeout)

    monkeypatch.setattr(_HangingProcess, "wait", _wait_then_interrupt)

    with pytest.raises(KeyboardInterrupt):
        runners._invoke_agent_runner(_config(tmp_path), loop_index=7, timeout_seconds=30)

    assert _HangingProcess.terminated is True
    assert waits[1] == runners.RUNNER_KILL_GRACE_SECONDS
