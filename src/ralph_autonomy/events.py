"""Incremental JSON-lines parsing of the agent event stream."""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

LOGGER = logging.getLogger("ralph_autonomy.events")

TOOL_START_EVENT = "tool_execution_start"
MESSAGE_END_EVENT = "message_end"


class IncrementalEventParser:
    """Split a byte stream into JSON object records on newline boundaries.

    Only complete records are parsed. The trailing partial record stays in
    ``buffer`` until the next ``feed``; ``consumed`` counts bytes already
    turned into records (or skipped) over the parser's lifetime.
    """

    def __init__(self) -> None:
        self.buffer = b""
        self.consumed = 0

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        if not chunk:
            return []
        self.buffer += chunk
        cut = self.buffer.rfind(b"\n")
        if cut < 0:
            return []
        complete, self.buffer = self.buffer[: cut + 1], self.buffer[cut + 1 :]
        self.consumed += len(complete)
        records: list[dict[str, Any]] = []
        for line in complete.split(b"\n"):
            record = _parse_line(line)
            if record is not None:
                records.append(record)
        return records

    def flush(self) -> list[dict[str, Any]]:
        if not self.buffer:
            return []
        tail, self.buffer = self.buffer, b""
        self.consumed += len(tail)
        record = _parse_line(tail)
        return [record] if record is not None else []


def _parse_line(line: bytes) -> dict[str, Any] | None:
    text = line.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        LOGGER.debug("skipping malformed event line: %s", text[:200])
        return None
    if not isinstance(payload, dict):
        LOGGER.debug("skipping non-object event line: %s", text[:200])
        return None
    return payload


def extract_tool_detail(args: Any) -> str:
    if not isinstance(args, dict):
        return ""
    for key in ("path", "command", "pattern"):
        value = args.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


@dataclass
class RunStats:
    tools: Counter = field(default_factory=Counter)
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def apply(self, event: dict[str, Any]) -> None:
        kind = event.get("type")
        if kind == TOOL_START_EVENT:
            name = str(event.get("toolName", "") or "unknown")
            self.tools[name] += 1
        elif kind == MESSAGE_END_EVENT:
            message = event.get("message")
            if not isinstance(message, dict) or message.get("role") != "assistant":
                return
            usage = message.get("usage")
            if isinstance(usage, dict):
                self.input_tokens += _safe_int(usage.get("input"))
                self.output_tokens += _safe_int(usage.get("output"))

    def summary(self, role: str) -> str:
        tokens = f"{self.total_tokens / 1000:.1f}k tokens"
        tool_part = " ".join(f"{name}:{count}" for name, count in self.tools.items())
        line = f"[{role.upper()}] {tokens}"
        return f"{line}, {tool_part}" if tool_part else line

    def to_dict(self) -> dict[str, Any]:
        return {
            "tools": dict(self.tools),
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


def _safe_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
