"""Exception hierarchy for the autonomy loop."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .invoker import AgentRunResult


class AutonomyError(RuntimeError):
    """Base exception for loop engine errors."""


class ConfigError(AutonomyError):
    """Raised when a settings value cannot be interpreted."""


class ResolverError(AutonomyError):
    """Raised when a model, provider or thinking level cannot be resolved."""


class GitError(AutonomyError):
    """Raised when a git status or commit primitive fails."""


class AgentRunError(AutonomyError):
    """Raised when an agent run ends in error, abort or a non-zero exit."""

    def __init__(self, message: str, result: AgentRunResult | None = None) -> None:
        super().__init__(message)
        self.result = result


class AgentTimeoutError(AgentRunError):
    """Raised when an agent run is killed by its wall-clock timeout."""
