"""Prompt text shared by the loops: resume addendum and spec handoff prompts."""

from __future__ import annotations

import textwrap
from pathlib import Path

from .specs import WIP_MARKER, SpecItem

RESUME_SUFFIX = textwrap.dedent(
    """\
    ---
    NOTE: There are uncommitted changes from a previous run.
    Run "git diff" to see the current state.
    Finish the in-progress work and commit."""
)


def with_resume(prompt: str, dirty: bool) -> str:
    if not dirty:
        return prompt
    return f"{prompt}\n\n{RESUME_SUFFIX}"


def context_block(context: str | None) -> str:
    if not context:
        return ""
    return f"Use this goal as context:\n\n<instructions>\n{context}\n</instructions>\n\n"


def build_research_prompt(spec_dir: Path | str, base_prompt: str, context: str | None = None) -> str:
    extra = f"\n\nAdditional context:\n<context>\n{context}\n</context>\n" if context else ""
    return f"""
{base_prompt}
{extra}

IMPORTANT: Your context window is full. I'm going to start you over fresh with a new model.
Create a detailed copy/paste for your future self to execute on what you've compiled.

Save your findings as a markdown file in {spec_dir}/ using this format:

1. First, determine the next available number by checking existing files in {spec_dir}/
2. Create a file named: <number>-<brief-description>.md (e.g., 001-add-validation.md)
3. The file should contain EVERYTHING your future self needs to implement this:
   - Clear problem statement
   - Specific files to modify
   - Exact code changes or patterns to follow
   - Any gotchas or edge cases
   - Verification steps

Example structure:
```markdown
# <Title>

## Problem
<What needs to be done and why>

## Implementation
<Detailed step-by-step instructions>

## Files to Modify
- `path/to/file1.py` - <what to change>
- `path/to/file2.py` - <what to change>

## Verification
<How to verify the implementation is correct>
```

After creating the spec file:
- git add -A && git commit -m "spec: <brief description>"
- Exit
""".strip()


def build_implement_prompt(spec: SpecItem) -> str:
    return f"""
You are implementing a spec from a previous research session.

SPEC FILE: {spec.path}

<spec>
{spec.content.strip()}
</spec>

WORKFLOW:
1. The spec is marked "{WIP_MARKER}"; leave the marker in place while you work
2. Implement everything described in the spec
3. Verify your changes work (run tests, typecheck, etc.)
4. When FULLY complete, DELETE the spec file (git will preserve history)

IMPORTANT:
- The spec file contains detailed instructions from a previous session
- Follow them precisely
- If something is unclear, make a reasonable decision and document it
- Delete the spec file only when FULLY complete

When done:
- git add -A && git commit -m "<what you implemented>"
- Exit
""".strip()
