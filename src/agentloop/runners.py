from __future__ import annotations

import os
import re
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Callable

from agentloop.constants import (
    API_LIMIT_PATTERNS,
    OUTCOME_API_LIMIT,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    OUTCOME_TIMEOUT,
)
from agentloop.models import AgentRunResult, AgentRunnerError, LoopConfig
from agentloop.response_analyzer import _normalize_structured_payload, _parse_structured_output
from agentloop.utils import (
    Clock,
    _append_log,
    _compact_log_text,
    _redact_sensitive_text,
    _utc_datetime,
)

RUNNER_WAIT_SLICE_SECONDS = 1.0
RUNNER_KILL_GRACE_SECONDS = 2.0

ProgressCallback = Callable[[float, int, str], None]

_SHELL_META_PATTERN = re.compile(r"[|&;<>()$`]")


def _command_uses_shell_syntax(command: str) -> bool:
    return bool(_SHELL_META_PATTERN.search(command))


def _substitute_runner_command(
    template: str,
    *,
    output_format: str,
    allowed_tools: tuple[str, ...],
    resume_flags: str,
    prompt_path: Path,
) -> str:
    command = str(template)
    replacements = {
        "{output_format}": shlex.quote(output_format),
        "{allowed_tools}": " ".join(shlex.quote(tool) for tool in allowed_tools),
        "{resume_flags}": resume_flags,
        "{prompt_path}": shlex.quote(str(prompt_path)),
    }
    for token, value in replacements.items():
        command = command.replace(token, value)
    return command


def _build_agent_command(config: LoopConfig, *, resume_token: str = "") -> list[str]:
    """Render the configured command template into an argv list.

    Raises ``AgentRunnerError`` when the template uses shell syntax or does not
    split into at least one argument.
    """
    # Only the template is checked; substituted tool names may contain metacharacters.
    if _command_uses_shell_syntax(config.agent_command):
        raise AgentRunnerError(
            "agent.command contains shell metacharacters; "
            "configure an argv-safe command without pipes/subshell syntax"
        )
    resume_flags = ""
    if config.session_continuity and resume_token:
        resume_flags = f"--resume {shlex.quote(resume_token)}"
    command = _substitute_runner_command(
        config.agent_command,
        output_format=config.output_format,
        allowed_tools=config.allowed_tools,
        resume_flags=resume_flags,
        prompt_path=config.prompt_path,
    )
    try:
        argv = shlex.split(command)
    except ValueError as exc:
        raise AgentRunnerError(f"agent command could not be parsed: {exc}") from exc
    if not argv:
        raise AgentRunnerError("agent command resolved to empty arguments")
    return argv


def _mentions_api_limit(output: str) -> bool:
    return any(pattern.search(output) for pattern in API_LIMIT_PATTERNS)


def _classify_agent_outcome(
    *, exit_code: int | None, output: str, timed_out: bool, stderr: str = ""
) -> str:
    if timed_out:
        return OUTCOME_TIMEOUT
    combined = f"{output}\n{stderr}"
    if exit_code != 0:
        return OUTCOME_API_LIMIT if _mentions_api_limit(combined) else OUTCOME_FAILURE
    payload = _parse_structured_output(output)
    if payload is not None and _normalize_structured_payload(payload).is_error:
        if _mentions_api_limit(combined):
            return OUTCOME_API_LIMIT
    return OUTCOME_SUCCESS


def _agent_output_path(loop_dir: Path, loop_index: int, clock: Clock) -> Path:
    stamp = clock().strftime("%Y%m%dT%H%M%SZ")
    return loop_dir / "logs" / f"agent_output_{loop_index}_{stamp}.log"


def _write_agent_output(path: Path, stdout_text: str, stderr_text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    rendered = stdout_text
    if stderr_text:
        rendered += "\n--- stderr ---\n" + stderr_text
    path.write_text(rendered, encoding="utf-8")


def _stop_process(process: Any) -> None:
    """Terminate a running agent, escalating to kill after the grace period."""
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=RUNNER_KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def _invoke_agent_runner(
    config: LoopConfig,
    *,
    loop_index: int,
    resume_token: str = "",
    progress_callback: ProgressCallback | None = None,
    timeout_seconds: float | None = None,
    clock: Clock = _utc_datetime,
) -> AgentRunResult:
    """Run one agent invocation under a hard deadline and classify the result.

    The prompt file is streamed on stdin. Launch errors are returned as
    ``failure`` results rather than raised.
    """
    repo_root = config.repo_root
    deadline_seconds = config.timeout_seconds if timeout_seconds is None else float(timeout_seconds)
    output_path = _agent_output_path(config.loop_dir, loop_index, clock)
    started = time.monotonic()

    try:
        prompt_text = config.prompt_path.read_text(encoding="utf-8")
        argv = _build_agent_command(config, resume_token=resume_token)
    except (OSError, AgentRunnerError) as exc:
        _append_log(repo_root, f"agent runner launch error loop={loop_index}: {exc}")
        return AgentRunResult(
            outcome=OUTCOME_FAILURE,
            output="",
            exit_code=None,
            duration_seconds=0.0,
            detail=str(exc),
        )

    env = os.environ.copy()
    env["AGENTLOOP_LOOP_INDEX"] = str(loop_index)
    env["AGENTLOOP_REPO_ROOT"] = str(repo_root)
    env["AGENTLOOP_PROMPT_PATH"] = str(config.prompt_path)
    env["AGENTLOOP_OUTPUT_FORMAT"] = config.output_format

    _append_log(
        repo_root,
        (
            f"agent runner start loop={loop_index} timeout_seconds={deadline_seconds:.0f} "
            f"resume={'yes' if resume_token else 'no'} "
            f"command={_redact_sensitive_text(' '.join(argv))}"
        ),
    )

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []

    def _pump_stream(stream: Any, sink: list[str]) -> None:
        if stream is None:
            return
        try:
            for line in iter(stream.readline, ""):
                sink.append(line)
        finally:
            try:
                stream.close()
            except Exception:
                pass

    process: subprocess.Popen[str] | None = None
    stdout_thread: threading.Thread | None = None
    stderr_thread: threading.Thread | None = None
    reporter_thread: threading.Thread | None = None
    reporter_stop = threading.Event()
    reporter_interrupts: list[BaseException] = []
    exit_code: int | None = None
    timed_out = False

    def _report_progress() -> None:
        while not reporter_stop.wait(config.progress_interval_seconds):
            last_output = stdout_lines[-1].strip() if stdout_lines else ""
            try:
                progress_callback(time.monotonic() - started, len(stdout_lines), last_output)
            except Exception as exc:
                _append_log(repo_root, f"agent runner progress report failed loop={loop_index}: {exc}")
            except BaseException as exc:
                reporter_interrupts.append(exc)
                return

    try:
        try:
            process = subprocess.Popen(
                argv,
                cwd=repo_root,
                shell=False,
                text=True,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=1,
                env=env,
            )
        except OSError as exc:
            _append_log(repo_root, f"agent runner launch error loop={loop_index}: {exc}")
            return AgentRunResult(
                outcome=OUTCOME_FAILURE,
                output="",
                exit_code=None,
                duration_seconds=time.monotonic() - started,
                detail=str(exc),
            )
        if process.stdin is not None:
            try:
                process.stdin.write(prompt_text)
                process.stdin.flush()
            except BrokenPipeError:
                pass
            finally:
                process.stdin.close()

        stdout_thread = threading.Thread(
            target=_pump_stream, args=(process.stdout, stdout_lines), daemon=True
        )
        stderr_thread = threading.Thread(
            target=_pump_stream, args=(process.stderr, stderr_lines), daemon=True
        )
        stdout_thread.start()
        stderr_thread.start()
        if progress_callback is not None:
            # Progress reports run off the deadline countdown.
            reporter_thread = threading.Thread(target=_report_progress, daemon=True)
            reporter_thread.start()

        while True:
            if reporter_interrupts:
                raise reporter_interrupts[0]
            remaining = deadline_seconds - (time.monotonic() - started)
            if remaining <= 0:
                timed_out = True
                break
            try:
                exit_code = process.wait(timeout=min(remaining, RUNNER_WAIT_SLICE_SECONDS))
                break
            except subprocess.TimeoutExpired:
                pass

        if timed_out:
            _append_log(
                repo_root,
                f"agent runner timeout loop={loop_index} timeout_seconds={deadline_seconds:.0f}",
            )
            _stop_process(process)
    except BaseException:
        if process is not None:
            _append_log(repo_root, f"agent runner interrupted loop={loop_index}; stopping agent pid={process.pid}")
            _stop_process(process)
        raise
    finally:
        reporter_stop.set()
        if reporter_thread is not None:
            reporter_thread.join(timeout=RUNNER_WAIT_SLICE_SECONDS)
        if stdout_thread is not None:
            stdout_thread.join(timeout=2)
        if stderr_thread is not None:
            stderr_thread.join(timeout=2)

    duration = time.monotonic() - started
    stdout_text = "".join(stdout_lines)
    stderr_text = "".join(stderr_lines)
    try:
        _write_agent_output(output_path, stdout_text, stderr_text)
    except OSError as exc:
        _append_log(repo_root, f"agent output could not be saved path={output_path}: {exc}")

    if stdout_text.strip():
        _append_log(
            repo_root,
            f"agent runner stdout loop={loop_index}: {_compact_log_text(_redact_sensitive_text(stdout_text.strip()))}",
        )
    if stderr_text.strip():
        _append_log(
            repo_root,
            f"agent runner stderr loop={loop_index}: {_compact_log_text(_redact_sensitive_text(stderr_text.strip()))}",
        )

    outcome = _classify_agent_outcome(
        exit_code=exit_code,
        output=stdout_text,
        timed_out=timed_out,
        stderr=stderr_text,
    )
    _append_log(
        repo_root,
        (
            f"agent runner finished loop={loop_index} outcome={outcome} "
            f"exit_code={exit_code if exit_code is not None else '-'} duration_seconds={duration:.1f}"
        ),
    )
    return AgentRunResult(
        outcome=outcome,
        output="" if timed_out else stdout_text,
        exit_code=exit_code,
        duration_seconds=duration,
        output_path=output_path,
        detail=_compact_log_text(stderr_text.strip()) if stderr_text.strip() else "",
    )
