"""Actions returned by a decision function, and supervisor configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Union

from .run_options import RunOptions


class ActionKind(str, Enum):
    WORK = "work"
    GENERATE = "generate"
    HALT = "halt"


@dataclass(frozen=True)
class Action:
    """One decision: run the agent on a prompt, or stop the loop."""

    kind: ActionKind
    prompt: str = ""
    options: RunOptions = field(default_factory=RunOptions)
    reason: str = ""

    @property
    def runs_agent(self) -> bool:
        return self.kind is not ActionKind.HALT

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "prompt": self.prompt,
            "reason": self.reason,
        }


def _coerce_options(options: RunOptions | dict[str, Any] | None) -> RunOptions:
    if options is None:
        return RunOptions()
    if isinstance(options, RunOptions):
        return options
    return RunOptions(**options)


def work(prompt: str, options: RunOptions | dict[str, Any] | None = None) -> Action:
    return Action(kind=ActionKind.WORK, prompt=prompt.strip(), options=_coerce_options(options))


def generate(prompt: str, options: RunOptions | dict[str, Any] | None = None) -> Action:
    return Action(kind=ActionKind.GENERATE, prompt=prompt.strip(), options=_coerce_options(options))


def halt(reason: str) -> Action:
    return Action(kind=ActionKind.HALT, reason=reason)


# Spec-directory vocabulary.
implement = work
research = generate


PromptSource = Union[str, Callable[[Any], str]]


@dataclass(frozen=True)
class SupervisorConfig:
    """A review run that pre-empts ``decide`` every ``every`` commits."""

    prompt: PromptSource
    every: int
    options: RunOptions = field(default_factory=RunOptions)

    def __post_init__(self) -> None:
        if self.every < 1:
            raise ValueError(f"supervisor cadence must be >= 1, got {self.every}")

    def is_due(self, commits: int) -> bool:
        return commits > 0 and commits % self.every == 0

    def render_prompt(self, state: Any) -> str:
        text = self.prompt(state) if callable(self.prompt) else self.prompt
        return str(text).strip()


def supervisor(
    prompt: PromptSource,
    every: int,
    options: RunOptions | dict[str, Any] | None = None,
) -> SupervisorConfig:
    return SupervisorConfig(prompt=prompt, every=every, options=_coerce_options(options))
