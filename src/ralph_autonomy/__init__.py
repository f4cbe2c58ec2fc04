"""ralph_autonomy package initialization."""

from .actions import Action, ActionKind, SupervisorConfig, generate, halt, implement, research, supervisor, work
from .cli import run_loop
from .exceptions import (
    AgentRunError,
    AgentTimeoutError,
    AutonomyError,
    ConfigError,
    GitError,
    ResolverError,
)
from .loop import LoopConfig, LoopOutcome, LoopStatus
from .run_options import RunOptions
from .specs import SpecItem, SpecState
from .task_state import State

__all__ = [
    'Action',
    'ActionKind',
    'AgentRunError',
    'AgentTimeoutError',
    'AutonomyError',
    'ConfigError',
    'GitError',
    'LoopConfig',
    'LoopOutcome',
    'LoopStatus',
    'ResolverError',
    'RunOptions',
    'SpecItem',
    'SpecState',
    'State',
    'SupervisorConfig',
    'generate',
    'halt',
    'implement',
    'research',
    'run_loop',
    'supervisor',
    'work',
]
