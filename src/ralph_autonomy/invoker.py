"""Run one agent process with a wall-clock timeout and consume its event stream."""

from __future__ import annotations

import datetime as dt
import os
import shlex
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from .events import MESSAGE_END_EVENT, TOOL_START_EVENT, IncrementalEventParser, RunStats, extract_tool_detail
from .exceptions import AgentRunError, AgentTimeoutError
from .run_options import ResolvedRunOptions

DEFAULT_AGENT_COMMAND = "pi"
AGENT_BASE_ARGS = ("--mode", "json", "--print", "--no-session")
READ_CHUNK_BYTES = 65536

NON_INTERACTIVE_ENV_OVERRIDES = {
    "CI": "1",
    "TERM": "dumb",
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_PAGER": "cat",
    "PYTHONUNBUFFERED": "1",
    "FORCE_COLOR": "0",
    "NO_COLOR": "1",
}


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _print(msg: str) -> None:
    print(f"[{_now_iso()}] {msg}", flush=True)


def build_subprocess_env(extra_env: Mapping[str, str] | None = None) -> dict[str, str]:
    env = os.environ.copy()
    env.update(NON_INTERACTIVE_ENV_OVERRIDES)
    if extra_env:
        env.update(extra_env)
    return env


def _resolve_binary(command: str) -> tuple[str, ...]:
    parts = shlex.split(command) or [DEFAULT_AGENT_COMMAND]
    found = shutil.which(parts[0])
    if found:
        parts[0] = found
    return tuple(parts)


@dataclass(frozen=True)
class AgentClient:
    """How to launch the agent runtime: binary, fixed flags, working tree, environment."""

    command: tuple[str, ...] = (DEFAULT_AGENT_COMMAND,)
    base_args: tuple[str, ...] = AGENT_BASE_ARGS
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Any) -> "AgentClient":
        return cls(
            command=_resolve_binary(settings.agent_cmd),
            cwd=settings.root,
            env=dict(settings.agent_env),
        )

    def build_argv(self, prompt: str, resolved: ResolvedRunOptions) -> list[str]:
        argv = [*self.command, *self.base_args]
        if resolved.model is not None:
            argv += ["--provider", resolved.model.provider, "--model", resolved.model.id]
        if resolved.thinking:
            argv += ["--thinking", resolved.thinking]
        if resolved.scoped_models:
            argv += ["--models", ",".join(item.to_token() for item in resolved.scoped_models)]
        if resolved.tools:
            argv += ["--tools", ",".join(resolved.tools)]
        argv.append(prompt)
        return argv


@dataclass
class AgentRunResult:
    role: str
    argv: list[str]
    exit_code: int | None = None
    stop_reason: str | None = None
    error_message: str = ""
    timed_out: bool = False
    duration_sec: float = 0.0
    event_count: int = 0
    stats: RunStats = field(default_factory=RunStats)

    @property
    def ok(self) -> bool:
        return (
            not self.timed_out
            and self.stop_reason not in ("error", "aborted")
            and self.exit_code == 0
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "exit_code": self.exit_code,
            "stop_reason": self.stop_reason,
            "error_message": self.error_message,
            "timed_out": self.timed_out,
            "duration_sec": round(self.duration_sec, 3),
            "event_count": self.event_count,
            "stats": self.stats.to_dict(),
        }


def _kill_process_group(process: subprocess.Popen) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (AttributeError, ProcessLookupError, PermissionError):
        process.kill()


class AgentInvoker:
    """Runs the agent for one prompt and classifies the outcome.

    Response content is never interpreted; only tool starts, token usage
    and the final assistant stop reason are read from the stream.
    """

    def __init__(self, client: AgentClient, emit: Callable[[str], None] = _print) -> None:
        self.client = client
        self.emit = emit

    def invoke(self, prompt: str, resolved: ResolvedRunOptions, role: str = "worker") -> AgentRunResult:
        argv = self.client.build_argv(prompt, resolved)
        result = AgentRunResult(role=role, argv=argv)
        label = role.upper()
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                argv,
                cwd=str(self.client.cwd) if self.client.cwd else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                env=build_subprocess_env(self.client.env),
                start_new_session=True,
            )
        except FileNotFoundError as err:
            missing = err.filename or argv[0]
            result.exit_code = 127
            result.error_message = f"[ENOENT] command not found: {missing}"
            raise AgentRunError(result.error_message, result) from err

        timed_out = threading.Event()

        def _on_timeout() -> None:
            timed_out.set()
            _kill_process_group(process)

        timer = threading.Timer(resolved.timeout_sec, _on_timeout)
        timer.daemon = True
        timer.start()
        parser = IncrementalEventParser()
        try:
            assert process.stdout is not None
            while True:
                chunk = process.stdout.read1(READ_CHUNK_BYTES)
                if not chunk:
                    break
                for event in parser.feed(chunk):
                    self._handle_event(event, result, label)
            for event in parser.flush():
                self._handle_event(event, result, label)
            result.exit_code = process.wait()
        finally:
            timer.cancel()
            if process.poll() is None:
                _kill_process_group(process)
                process.wait()
            if process.stdout is not None:
                process.stdout.close()

        result.duration_sec = time.monotonic() - started
        result.timed_out = timed_out.is_set()
        self.emit(result.stats.summary(role))

        if result.timed_out:
            message = f"Timed out after {resolved.timeout_sec:g}s"
            result.error_message = message
            raise AgentTimeoutError(message, result)
        if result.stop_reason == "error":
            raise AgentRunError(result.error_message or "agent reported an error", result)
        if result.stop_reason == "aborted":
            raise AgentRunError(result.error_message or "agent run aborted", result)
        if result.exit_code != 0:
            raise AgentRunError(result.error_message or f"agent exited with code {result.exit_code}", result)
        return result

    def _handle_event(self, event: dict[str, Any], result: AgentRunResult, label: str) -> None:
        result.event_count += 1
        result.stats.apply(event)
        kind = event.get("type")
        if kind == TOOL_START_EVENT:
            detail = extract_tool_detail(event.get("args"))
            self.emit(f"[{label}] {event.get('toolName', 'unknown')} {detail}".rstrip())
        elif kind == MESSAGE_END_EVENT:
            message = event.get("message")
            if isinstance(message, dict) and message.get("role") == "assistant":
                stop_reason = message.get("stopReason")
                if stop_reason:
                    result.stop_reason = str(stop_reason)
                if message.get("errorMessage"):
                    result.error_message = str(message["errorMessage"])


def run_command(
    cmd: list[str],
    cwd: Path,
    timeout_sec: float,
    extra_env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a command to completion; 124 on timeout, 127 when the binary is missing."""
    env = build_subprocess_env(extra_env)
    try:
        process = subprocess.Popen(
            cmd,
            cwd=str(cwd),
            text=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
        )
    except FileNotFoundError as err:
        missing = err.filename or (cmd[0] if cmd else "")
        return subprocess.CompletedProcess(
            cmd,
            returncode=127,
            stdout="",
            stderr=f"[ENOENT] command not found: {missing}",
        )
    start = time.monotonic()
    while True:
        try:
            stdout, stderr = process.communicate(timeout=1)
            return subprocess.CompletedProcess(cmd, returncode=process.returncode or 0, stdout=stdout, stderr=stderr)
        except subprocess.TimeoutExpired:
            if time.monotonic() - start >= timeout_sec:
                process.kill()
                stdout, stderr = process.communicate()
                return subprocess.CompletedProcess(
                    cmd,
                    returncode=124,
                    stdout=stdout,
                    stderr=stderr + f"\n[TIMEOUT] command exceeded {timeout_sec:g}s: {' '.join(cmd)}",
                )
