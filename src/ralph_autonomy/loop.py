"""Loop controller: decide, execute, verify, commit, repeat.

Each iteration re-reads the backlog, asks the decision function for an
action, runs the agent, and reconciles git so that no run ends with
unsaved progress. The loop stops on a halt, an exhausted backlog, the
iteration ceiling, an agent failure, or a continuous-mode generation that
produced nothing.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from .actions import Action, ActionKind, SupervisorConfig
from .exceptions import AgentRunError
from .invoker import AgentInvoker
from .progress import ProgressTracker
from .prompts import with_resume
from .run_options import ModelRegistry, ResolvedRunOptions, parse_timeout, resolve_run_options
from .specs import SpecBackend
from .task_state import ChecklistBackend, TaskBackend

LOGGER = logging.getLogger("ralph_autonomy.loop")

DEFAULT_PUSH_EVERY = 4
DEFAULT_MAX_ITERATIONS = 400
SUPERVISOR_COMMIT_MESSAGE = "chore: supervisor"
ROLE_NAMES = {ActionKind.WORK: "worker", ActionKind.GENERATE: "generator"}


class LoopStatus(str, Enum):
    COMPLETED = "completed"
    HALTED = "halted"
    ONCE = "once"
    DRY_RUN = "dry_run"
    GENERATION_EMPTY = "generation_empty"
    CEILING_REACHED = "ceiling_reached"
    AGENT_FAILED = "agent_failed"
    NOT_A_REPOSITORY = "not_a_repository"


EXIT_CODES = {
    LoopStatus.COMPLETED: 0,
    LoopStatus.HALTED: 0,
    LoopStatus.ONCE: 0,
    LoopStatus.DRY_RUN: 0,
    LoopStatus.GENERATION_EMPTY: 1,
    LoopStatus.AGENT_FAILED: 1,
    LoopStatus.NOT_A_REPOSITORY: 1,
    LoopStatus.CEILING_REACHED: 3,
}


@dataclass(frozen=True)
class LoopOutcome:
    status: LoopStatus
    reason: str
    iterations: int
    commits: int

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "iterations": self.iterations,
            "commits": self.commits,
            "exit_code": self.exit_code,
        }


@dataclass(frozen=True)
class LoopFlags:
    once: bool = False
    dry_run: bool = False
    context: str | None = None


@dataclass(frozen=True)
class LoopConfig:
    """Static description of a loop: backlog location, decision function, cadences."""

    name: str
    decide: Callable[[Any], Action]
    task_file: Path | None = None
    spec_dir: Path | None = None
    timeout: int | float | str = 300
    push_every: int = DEFAULT_PUSH_EVERY
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    continuous: bool = False
    supervisor: SupervisorConfig | None = None
    stop_on_agent_error: bool = True
    heartbeat_file: Path | None = None

    def __post_init__(self) -> None:
        if (self.task_file is None) == (self.spec_dir is None):
            raise ValueError("exactly one of task_file or spec_dir must be set")
        if self.push_every < 1:
            raise ValueError(f"push_every must be >= 1, got {self.push_every}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        parse_timeout(self.timeout)

    def backend(self, root: Path) -> TaskBackend:
        if self.spec_dir is not None:
            return SpecBackend(_under(root, self.spec_dir))
        assert self.task_file is not None
        return ChecklistBackend(_under(root, self.task_file))


def _under(root: Path, path: Path) -> Path:
    path = Path(path)
    return path if path.is_absolute() else root / path


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _print(msg: str) -> None:
    print(f"[{_now_iso()}] {msg}", flush=True)


def _write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


def write_heartbeat(
    path: Path,
    *,
    loop: str,
    phase: str,
    iteration: int,
    commits: int,
    message: str,
    extra: dict[str, Any] | None = None,
) -> None:
    payload: dict[str, Any] = {
        "timestamp": _now_iso(),
        "pid": os.getpid(),
        "loop": loop,
        "phase": phase,
        "iteration": iteration,
        "commits": commits,
        "message": message,
    }
    if extra:
        payload.update(extra)
    _write_text_atomic(path, json.dumps(payload, indent=2, sort_keys=True) + "\n")


class LoopController:
    def __init__(
        self,
        config: LoopConfig,
        *,
        root: Path,
        tracker: ProgressTracker,
        invoker: AgentInvoker,
        registry: ModelRegistry,
        flags: LoopFlags = LoopFlags(),
        emit: Callable[[str], None] = _print,
    ) -> None:
        self.config = config
        self.root = Path(root)
        self.tracker = tracker
        self.invoker = invoker
        self.registry = registry
        self.flags = flags
        self.emit = emit
        self.backend = config.backend(self.root)
        self.iteration = 0
        self.commits = 0
        self._baseline = 0
        self._last_supervised: int | None = None
        self._last_pushed: int | None = None

    # -- helpers -----------------------------------------------------------

    def _heartbeat(self, phase: str, message: str, extra: dict[str, Any] | None = None) -> None:
        if self.config.heartbeat_file is None:
            return
        write_heartbeat(
            _under(self.root, self.config.heartbeat_file),
            loop=self.config.name,
            phase=phase,
            iteration=self.iteration,
            commits=self.commits,
            message=message,
            extra=extra,
        )

    def _finish(self, status: LoopStatus, reason: str) -> LoopOutcome:
        outcome = LoopOutcome(status=status, reason=reason, iterations=self.iteration, commits=self.commits)
        self.emit(f"[{self.config.name}] {status.value}: {reason}")
        self._heartbeat("stopped", reason, {"status": status.value, "exit_code": outcome.exit_code})
        return outcome

    def _recount(self) -> None:
        self.commits = self.tracker.commit_count() - self._baseline

    def _snapshot(self, dirty: bool) -> Any:
        return self.backend.snapshot(
            iteration=self.iteration,
            commits=self.commits,
            context=self.flags.context,
            dirty=dirty,
        )

    def _invoke(self, prompt: str, resolved: ResolvedRunOptions, role: str) -> AgentRunError | None:
        try:
            self.invoker.invoke(prompt, resolved, role=role)
        except AgentRunError as err:
            self.emit(f"[{role.upper()}] failed: {err}")
            return err
        return None

    def _maybe_push(self) -> None:
        if self.commits <= 0 or self.commits % self.config.push_every != 0:
            return
        if self._last_pushed == self.commits:
            return
        self._last_pushed = self.commits
        self.emit(f"[{self.config.name}] pushing after {self.commits} commits")
        self.tracker.push()

    # -- main loop ---------------------------------------------------------

    def run(self) -> LoopOutcome:
        if not self.tracker.is_repository():
            return self._finish(LoopStatus.NOT_A_REPOSITORY, f"not a git repository: {self.root}")

        self.backend.ensure()
        self._baseline = self.tracker.commit_count()
        mode = "continuous" if self.config.continuous else "until done"
        self.emit(f"[{self.config.name}] starting ({mode}, backlog: {self.backend.location})")
        self._heartbeat("starting", "loop started")

        while True:
            self.iteration += 1
            if self.iteration > self.config.max_iterations:
                self.iteration = self.config.max_iterations
                return self._finish(
                    LoopStatus.CEILING_REACHED,
                    f"reached max iterations ({self.config.max_iterations})",
                )
            self.emit(f"[Iteration {self.iteration}/{self.config.max_iterations}]")

            dirty = self.tracker.has_uncommitted_changes()
            state = self._snapshot(dirty)

            supervisor = self.config.supervisor
            if supervisor is not None and supervisor.is_due(self.commits) and self._last_supervised != self.commits:
                outcome = self._supervise(supervisor, state)
                if outcome is not None:
                    return outcome
                continue

            action = self.config.decide(state)
            if not isinstance(action, Action):
                raise TypeError(f"decide() must return an Action, got {type(action).__name__}")
            if action.kind is ActionKind.HALT:
                return self._finish(LoopStatus.HALTED, action.reason or "halted")

            outcome = self._execute(action, state, dirty)
            if outcome is not None:
                return outcome

    def _supervise(self, supervisor: SupervisorConfig, state: Any) -> LoopOutcome | None:
        self._last_supervised = self.commits
        prompt = supervisor.render_prompt(state)
        if self.flags.dry_run:
            self.emit(f"(dry-run) would run supervisor after {self.commits} commits")
            return self._finish(LoopStatus.DRY_RUN, "dry run")
        self.emit(f"[SUPERVISOR] reviewing after {self.commits} commits")
        self._heartbeat("supervising", f"review after {self.commits} commits")
        resolved = resolve_run_options(supervisor.options, self.registry, self.config.timeout)
        failure = self._invoke(prompt, resolved, "supervisor")
        self.tracker.ensure_commit(SUPERVISOR_COMMIT_MESSAGE)
        self._recount()
        if failure is not None and self.config.stop_on_agent_error:
            return self._finish(LoopStatus.AGENT_FAILED, f"supervisor failed: {failure}")
        return None

    def _execute(self, action: Action, state: Any, dirty: bool) -> LoopOutcome | None:
        role = ROLE_NAMES[action.kind]
        resolved = resolve_run_options(action.options, self.registry, self.config.timeout)
        prompt = with_resume(action.prompt, dirty)

        if self.flags.dry_run:
            self.emit("(dry-run) Prompt:")
            print(prompt, flush=True)
            self.emit(f"(dry-run) Options: {json.dumps(resolved.to_dict(), sort_keys=True)}")
            return self._finish(LoopStatus.DRY_RUN, "dry run")

        token = self.backend.begin_work(state) if action.kind is ActionKind.WORK else None
        self._heartbeat("running", f"{role} run", {"action": action.kind.value})
        failure = self._invoke(prompt, resolved, role)
        touched = self.backend.finish_work(token, ok=failure is None)

        self._heartbeat("reconciling", "checking commit state")
        message = self.backend.commit_message(action.kind, self.iteration)
        self.tracker.ensure_commit(message)
        # a fresh agent commit skips ensure_commit, so backlog bookkeeping is committed here
        if touched and self.tracker.has_uncommitted_changes():
            self.tracker.auto_commit(message)
        self._recount()

        if failure is not None:
            if self.config.stop_on_agent_error:
                return self._finish(LoopStatus.AGENT_FAILED, str(failure))
            LOGGER.warning("continuing after agent failure: %s", failure)
            return None

        after = self._snapshot(False)
        if self.config.continuous and action.kind is ActionKind.GENERATE and not self.backend.has_available(after):
            return self._finish(LoopStatus.GENERATION_EMPTY, "generation produced no actionable items")

        self._maybe_push()

        if not self.config.continuous and action.kind is ActionKind.WORK and self.backend.is_exhausted(after):
            return self._finish(LoopStatus.COMPLETED, "all tasks complete")
        if self.flags.once:
            return self._finish(LoopStatus.ONCE, "single iteration complete")
        return None
