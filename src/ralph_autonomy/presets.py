"""Stock decision functions and supervisor prompts for the two loop flavors."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Callable

from .actions import Action, generate, halt, implement, research, work
from .prompts import build_implement_prompt, build_research_prompt, context_block
from .run_options import RunOptions
from .specs import SpecState
from .task_state import State

DEFAULT_TASK_FILE = Path(".ralph/TODO.md")
DEFAULT_SPEC_DIR = Path(".ralph/SPECS")


def work_prompt(task_file: Path | str) -> str:
    return textwrap.dedent(
        f"""
        - Look at {task_file} for the current task list
        - Pick a logical chunk of work and do it
        - Update {task_file} (check off completed items)
        - Commit: git add -A && git commit -m "<what you did>"
        - Exit after committing
        """
    )


def generate_prompt(task_file: Path | str, context: str | None) -> str:
    return (
        f"{task_file} has no actionable items. Wipe it clean and start fresh.\n"
        f"{context_block(context)}"
        f"- Look through the codebase and add useful work items to {task_file}\n"
        '- Commit: git add -A && git commit -m "<what you added>"\n'
        "- Exit after committing. Don't do any coding yet.\n"
    )


def ralph_decide(
    state: State,
    task_file: Path | str = DEFAULT_TASK_FILE,
    work_options: RunOptions | None = None,
    generate_options: RunOptions | None = None,
) -> Action:
    """Work while the checklist has open items, otherwise ask for new ones."""
    if state.has_todos:
        return work(work_prompt(task_file), work_options)
    return generate(generate_prompt(task_file, state.context), generate_options)


def ralph_supervisor_prompt(task_file: Path | str = DEFAULT_TASK_FILE, window: int = 12) -> str:
    return textwrap.dedent(
        f"""
        You are a supervisor reviewing recent work.

        Run: git log -n {window} --oneline

        Your job:
        1. Check if work is going in a productive direction
        2. Look for any issues, bugs, or regressions
        3. Update {task_file} if priorities should change
        4. If everything looks good, just note it and exit

        If you make changes:
        - git add -A && git commit -m "supervisor: <adjustment>"
        - Exit
        """
    ).strip()


def research_base_prompt(context: str | None) -> str:
    focus = f"\nFocus on: {context}\n" if context else ""
    return f"""
You are a senior architect researching the codebase to identify the next piece of work.
{focus}
Your job is to:
1. Explore the codebase thoroughly
2. Identify a specific, well-scoped task that needs to be done
3. Research it deeply - understand all the files involved, patterns to follow, edge cases
4. Create a detailed spec that another model can implement without needing your context
""".strip()


def spec_worker_decide(
    state: SpecState,
    research_options: RunOptions | None = None,
    implement_options: RunOptions | None = None,
) -> Action:
    """Implement the next free spec; halt while only claimed specs remain; otherwise research."""
    if state.next_spec is not None:
        return implement(build_implement_prompt(state.next_spec), implement_options)
    if state.claimed_specs:
        return halt(f"{len(state.claimed_specs)} spec(s) still in progress")
    prompt = build_research_prompt(state.spec_dir, research_base_prompt(state.context), state.context)
    return research(prompt, research_options)


def spec_supervisor_prompt(state: SpecState) -> str:
    listing = "\n".join(
        f"- {item.name} ({'WIP' if item.claimed else 'available'})" for item in state.specs
    )
    return f"""
You are the Spec Supervisor. Review the current state of the spec queue.

CURRENT SPECS:
{listing or "(empty)"}

SPEC DIRECTORY: {state.spec_dir}

Your responsibilities:

1. REVIEW: Check if any specs are stale or blocked
2. PRIORITIZE: Reorder specs if needed (rename files with new numbers)
3. CLEAN UP: Delete specs that are no longer relevant
4. UNBLOCK: If a spec is WIP but seems abandoned, remove the WIP marker

After any changes:
- git add -A && git commit -m "supervisor: <what you did>"
- Exit
""".strip()


def bind(decide: Callable[..., Action], **kwargs) -> Callable[[object], Action]:
    """Fix keyword arguments of a preset so it matches ``decide(state)``."""

    def _decide(state: object) -> Action:
        return decide(state, **kwargs)

    _decide.__name__ = getattr(decide, "__name__", "decide")
    return _decide
