"""Directory of numbered spec files used to hand work between models.

A researcher writes ``NNN-slug.md``; a worker claims it by prepending the
WIP marker, implements it, and deletes the file. Git keeps the history, so
finished specs never clutter the directory.

Claiming is a read-then-write on the file and is not atomic across
processes: two workers on separate machines can both claim the same spec.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .actions import ActionKind

LOGGER = logging.getLogger("ralph_autonomy.specs")

WIP_MARKER = "<!-- WIP: IN PROGRESS -->"
WIP_PATTERN = re.compile(r"^<!--\s*WIP:\s*IN PROGRESS\s*-->")
SPEC_NUMBER_PATTERN = re.compile(r"^(\d+)-")
SEQUENCE_FILE = ".spec-sequence"
SLUG_MAX_CHARS = 50


@dataclass(frozen=True)
class SpecItem:
    path: Path
    name: str
    number: int
    claimed: bool
    content: str
    raw_content: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "name": self.name,
            "number": self.number,
            "claimed": self.claimed,
        }


@dataclass(frozen=True)
class SpecState:
    """Snapshot of the spec directory for one iteration."""

    iteration: int
    commits: int
    spec_dir: Path
    specs: tuple[SpecItem, ...] = ()
    context: str | None = None
    has_uncommitted_changes: bool = False

    @property
    def available_specs(self) -> tuple[SpecItem, ...]:
        return tuple(item for item in self.specs if not item.claimed)

    @property
    def claimed_specs(self) -> tuple[SpecItem, ...]:
        return tuple(item for item in self.specs if item.claimed)

    @property
    def has_available_specs(self) -> bool:
        return bool(self.available_specs)

    @property
    def next_spec(self) -> SpecItem | None:
        available = self.available_specs
        return available[0] if available else None

    # Checklist-shaped aliases so one decision function can serve both loops.
    @property
    def todos(self) -> tuple[str, ...]:
        return tuple(item.name for item in self.available_specs)

    @property
    def has_todos(self) -> bool:
        return self.has_available_specs

    @property
    def next_todo(self) -> str | None:
        spec = self.next_spec
        return spec.name if spec else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "commits": self.commits,
            "spec_dir": str(self.spec_dir),
            "specs": [item.to_dict() for item in self.specs],
            "has_available_specs": self.has_available_specs,
            "next_spec": self.next_spec.name if self.next_spec else None,
            "context": self.context,
            "has_uncommitted_changes": self.has_uncommitted_changes,
        }


def parse_spec_number(filename: str) -> int | None:
    match = SPEC_NUMBER_PATTERN.match(filename)
    return int(match.group(1)) if match else None


def format_spec_number(number: int) -> str:
    return f"{number:03d}"


def slugify(description: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", description.lower()).strip("-")
    return slug[:SLUG_MAX_CHARS]


def create_spec_filename(number: int, description: str) -> str:
    return f"{format_spec_number(number)}-{slugify(description) or 'spec'}.md"


def is_claimed(text: str) -> bool:
    return bool(WIP_PATTERN.match(text))


def strip_claim(text: str) -> str:
    if not is_claimed(text):
        return text
    return WIP_PATTERN.sub("", text, count=1).strip()


class SpecDirectory:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    @property
    def sequence_path(self) -> Path:
        return self.path / SEQUENCE_FILE

    def ensure(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)

    def read_item(self, path: Path) -> SpecItem | None:
        if path.suffix != ".md" or not path.is_file():
            return None
        number = parse_spec_number(path.name)
        if number is None:
            return None
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as err:
            LOGGER.warning("skipping unreadable spec %s: %s", path, err)
            return None
        claimed = is_claimed(raw)
        return SpecItem(
            path=path,
            name=path.name,
            number=number,
            claimed=claimed,
            content=strip_claim(raw) if claimed else raw,
            raw_content=raw,
        )

    def items(self) -> list[SpecItem]:
        if not self.path.is_dir():
            return []
        items = [item for item in (self.read_item(p) for p in self.path.iterdir()) if item is not None]
        return sorted(items, key=lambda item: (item.number, item.name))

    def find(self, ref: str) -> SpecItem:
        """Look up an item by file name, path, or number."""
        candidate = Path(ref)
        if candidate.is_file():
            item = self.read_item(candidate)
            if item is not None:
                return item
        for item in self.items():
            if item.name == ref or (ref.isdigit() and item.number == int(ref)):
                return item
        raise FileNotFoundError(f"spec not found in {self.path}: {ref}")

    def _recorded_high_water(self) -> int:
        try:
            text = self.sequence_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return 0
        try:
            return int(text)
        except ValueError:
            LOGGER.warning("ignoring malformed %s: %r", self.sequence_path, text)
            return 0

    def _record_high_water(self, number: int) -> None:
        if number <= self._recorded_high_water():
            return
        self.ensure()
        self.sequence_path.write_text(f"{number}\n", encoding="utf-8")

    def observe(self, items: list[SpecItem]) -> None:
        """Raise the high-water mark to the largest number currently on disk."""
        if items:
            self._record_high_water(max(item.number for item in items))

    def next_number(self) -> int:
        numbers = [item.number for item in self.items()]
        return max([0, self._recorded_high_water(), *numbers]) + 1

    def allocate_number(self) -> int:
        number = self.next_number()
        self._record_high_water(number)
        return number

    def claim(self, item: SpecItem | Path) -> None:
        path = item.path if isinstance(item, SpecItem) else Path(item)
        text = path.read_text(encoding="utf-8")
        if is_claimed(text):
            return
        path.write_text(f"{WIP_MARKER}\n\n{text}", encoding="utf-8")

    def release(self, item: SpecItem | Path) -> None:
        path = item.path if isinstance(item, SpecItem) else Path(item)
        text = path.read_text(encoding="utf-8")
        if not is_claimed(text):
            return
        path.write_text(strip_claim(text) + "\n", encoding="utf-8")

    def complete(self, item: SpecItem | Path) -> None:
        path = item.path if isinstance(item, SpecItem) else Path(item)
        number = item.number if isinstance(item, SpecItem) else parse_spec_number(path.name)
        if number is not None:
            self._record_high_water(number)
        path.unlink(missing_ok=True)

    def create(self, description: str, content: str) -> Path:
        self.ensure()
        path = self.path / create_spec_filename(self.allocate_number(), description)
        path.write_text(content, encoding="utf-8")
        return path


@dataclass
class SpecBackend:
    location: Path
    directory: SpecDirectory = field(init=False)
    messages: dict[ActionKind, str] = field(
        default_factory=lambda: {
            ActionKind.WORK: "chore: implement spec (iteration {iteration})",
            ActionKind.GENERATE: "spec: add new spec",
        }
    )

    def __post_init__(self) -> None:
        self.directory = SpecDirectory(self.location)

    def ensure(self) -> None:
        self.directory.ensure()

    def snapshot(self, *, iteration: int, commits: int, context: str | None, dirty: bool) -> SpecState:
        self.directory.ensure()
        specs = self.directory.items()
        self.directory.observe(specs)
        return SpecState(
            iteration=iteration,
            commits=commits,
            spec_dir=self.location,
            specs=tuple(specs),
            context=context,
            has_uncommitted_changes=dirty,
        )

    def is_exhausted(self, state: SpecState) -> bool:
        return not state.specs

    def has_available(self, state: SpecState) -> bool:
        return state.has_available_specs

    def begin_work(self, state: SpecState) -> SpecItem | None:
        spec = state.next_spec
        if spec is not None:
            self.directory.claim(spec)
        return spec

    def finish_work(self, token: SpecItem | None, ok: bool) -> bool:
        if token is None:
            return False
        if ok:
            self.directory.complete(token)
            return True
        if token.path.exists():
            self.directory.release(token)
            return True
        return False

    def commit_message(self, kind: ActionKind, iteration: int) -> str:
        return self.messages.get(kind, "chore: iteration {iteration}").format(iteration=iteration)
