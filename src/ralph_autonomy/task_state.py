"""Checklist task state: parse open ``- [ ]`` items from a markdown file."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .actions import ActionKind

CHECKLIST_HEADER = "# Tasks\n\n"
OPEN_ITEM_PATTERN = re.compile(r"^[ \t]*[-*+][ \t]*\[ \][ \t]+(.*)$", re.MULTILINE)


@dataclass(frozen=True)
class State:
    """Snapshot handed to a decision function at the top of an iteration."""

    iteration: int
    commits: int
    todos: tuple[str, ...] = ()
    context: str | None = None
    has_uncommitted_changes: bool = False

    @property
    def has_todos(self) -> bool:
        return bool(self.todos)

    @property
    def next_todo(self) -> str | None:
        return self.todos[0] if self.todos else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "commits": self.commits,
            "has_todos": self.has_todos,
            "next_todo": self.next_todo,
            "todos": list(self.todos),
            "context": self.context,
            "has_uncommitted_changes": self.has_uncommitted_changes,
        }


def parse_open_items(text: str) -> list[str]:
    labels = (match.group(1).strip() for match in OPEN_ITEM_PATTERN.finditer(text))
    return [label for label in labels if label]


def ensure_checklist(path: Path) -> bool:
    """Create the checklist with its header when missing. Returns True when created."""
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(CHECKLIST_HEADER, encoding="utf-8")
    return True


def read_open_items(path: Path) -> list[str]:
    ensure_checklist(path)
    return parse_open_items(path.read_text(encoding="utf-8"))


class TaskBackend(Protocol):
    """Where the loop reads its backlog from and how it reconciles a run."""

    location: Path

    def ensure(self) -> None:
        ...

    def snapshot(self, *, iteration: int, commits: int, context: str | None, dirty: bool) -> Any:
        ...

    def is_exhausted(self, state: Any) -> bool:
        ...

    def has_available(self, state: Any) -> bool:
        ...

    def begin_work(self, state: Any) -> Any:
        ...

    def finish_work(self, token: Any, ok: bool) -> bool:
        """Settle the claimed item. Returns True when backlog files were touched."""
        ...

    def commit_message(self, kind: ActionKind, iteration: int) -> str:
        ...


@dataclass
class ChecklistBackend:
    location: Path
    messages: dict[ActionKind, str] = field(
        default_factory=lambda: {
            ActionKind.WORK: "chore: iteration {iteration}",
            ActionKind.GENERATE: "chore: generate tasks",
        }
    )

    def ensure(self) -> None:
        ensure_checklist(self.location)

    def snapshot(self, *, iteration: int, commits: int, context: str | None, dirty: bool) -> State:
        return State(
            iteration=iteration,
            commits=commits,
            todos=tuple(read_open_items(self.location)),
            context=context,
            has_uncommitted_changes=dirty,
        )

    def is_exhausted(self, state: State) -> bool:
        return not state.has_todos

    def has_available(self, state: State) -> bool:
        return state.has_todos

    def begin_work(self, state: State) -> None:
        return None

    def finish_work(self, token: Any, ok: bool) -> bool:
        return False

    def commit_message(self, kind: ActionKind, iteration: int) -> str:
        return self.messages.get(kind, "chore: iteration {iteration}").format(iteration=iteration)
