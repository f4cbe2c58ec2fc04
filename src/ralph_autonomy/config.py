"""Settings loaded from ``.env.autonomy`` and the process environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .exceptions import ConfigError
from .run_options import ModelRegistry, parse_timeout

ENV_FILE_NAME = ".env.autonomy"
ENV_FILE_VAR = "RALPH_AUTONOMY_ENV_FILE"
TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


def _load_env_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    data: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        raw = line.strip()
        if not raw or raw.startswith("#") or "=" not in raw:
            continue
        if raw.startswith("export "):
            raw = raw[len("export ") :].strip()
        key, value = raw.split("=", 1)
        data[key.strip()] = value.strip().strip("\"").strip("'")
    return data


@dataclass(frozen=True)
class AutonomySettings:
    root: Path
    env_file: Path
    agent_cmd: str = "pi"
    models_file: Path | None = None
    heartbeat_file: Path | None = None
    log_level: str = "INFO"
    push_every: int | None = None
    max_iterations: int | None = None
    timeout: float | None = None
    continuous: bool | None = None
    supervisor_every: int | None = None
    recent_commit_sec: int = 15
    agent_env: dict[str, str] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict, repr=False)

    @classmethod
    def from_root(cls, root: Path, env_file: Path | None = None) -> "AutonomySettings":
        root = Path(root).resolve()
        env_path = env_file.resolve() if env_file else Path(
            os.environ.get(ENV_FILE_VAR, str(root / ENV_FILE_NAME))
        ).resolve()
        from_file = _load_env_file(env_path)
        merged = {**from_file, **os.environ}

        def _optional_path(key: str) -> Path | None:
            raw = merged.get(key, "").strip()
            if not raw:
                return None
            path = Path(raw).expanduser()
            return path if path.is_absolute() else (root / path).resolve()

        def _int(key: str, minimum: int = 1) -> int | None:
            raw = merged.get(key, "").strip()
            if not raw:
                return None
            try:
                value = int(raw)
            except ValueError as err:
                raise ConfigError(f"{key} must be an integer, got {raw!r}") from err
            if value < minimum:
                raise ConfigError(f"{key} must be >= {minimum}, got {value}")
            return value

        def _bool(key: str) -> bool | None:
            raw = merged.get(key)
            if raw is None:
                return None
            lowered = raw.strip().lower()
            if lowered in TRUE_VALUES:
                return True
            if lowered in FALSE_VALUES:
                return False
            raise ConfigError(f"{key} must be a boolean, got {raw!r}")

        def _timeout(key: str) -> float | None:
            raw = merged.get(key, "").strip()
            if not raw:
                return None
            try:
                return parse_timeout(raw)
            except ValueError as err:
                raise ConfigError(f"{key}: {err}") from err

        recent_commit_sec = _int("RALPH_AUTONOMY_RECENT_COMMIT_SEC", minimum=0)
        return cls(
            root=root,
            env_file=env_path,
            agent_cmd=merged.get("RALPH_AUTONOMY_AGENT_CMD", "pi").strip() or "pi",
            models_file=_optional_path("RALPH_AUTONOMY_MODELS_FILE"),
            heartbeat_file=_optional_path("RALPH_AUTONOMY_HEARTBEAT_FILE"),
            log_level=merged.get("RALPH_AUTONOMY_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            push_every=_int("RALPH_AUTONOMY_PUSH_EVERY"),
            max_iterations=_int("RALPH_AUTONOMY_MAX_ITERATIONS"),
            timeout=_timeout("RALPH_AUTONOMY_TIMEOUT"),
            continuous=_bool("RALPH_AUTONOMY_CONTINUOUS"),
            supervisor_every=_int("RALPH_AUTONOMY_SUPERVISOR_EVERY"),
            recent_commit_sec=15 if recent_commit_sec is None else recent_commit_sec,
            agent_env=from_file,
            environment=merged,
        )

    def load_registry(self) -> ModelRegistry:
        if self.models_file is None:
            return ModelRegistry.default(env=self.environment)
        if not self.models_file.exists():
            raise FileNotFoundError(f"models file not found: {self.models_file}")
        return ModelRegistry.from_file(self.models_file, env=self.environment)

    def apply_overrides(self, loop_config: Any) -> Any:
        """Return ``loop_config`` with any cadence/ceiling/timeout values set here."""
        changes: dict[str, Any] = {}
        if self.push_every is not None:
            changes["push_every"] = self.push_every
        if self.max_iterations is not None:
            changes["max_iterations"] = self.max_iterations
        if self.timeout is not None:
            changes["timeout"] = self.timeout
        if self.continuous is not None:
            changes["continuous"] = self.continuous
        if self.heartbeat_file is not None and getattr(loop_config, "heartbeat_file", None) is None:
            changes["heartbeat_file"] = self.heartbeat_file
        if self.supervisor_every is not None and getattr(loop_config, "supervisor", None) is not None:
            changes["supervisor"] = replace(loop_config.supervisor, every=self.supervisor_every)
        return replace(loop_config, **changes) if changes else loop_config

    def configure_logging(self) -> None:
        logging.basicConfig(
            level=getattr(logging, self.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": str(self.root),
            "env_file": str(self.env_file),
            "agent_cmd": self.agent_cmd,
            "models_file": str(self.models_file) if self.models_file else None,
            "heartbeat_file": str(self.heartbeat_file) if self.heartbeat_file else None,
            "log_level": self.log_level,
            "push_every": self.push_every,
            "max_iterations": self.max_iterations,
            "timeout": self.timeout,
            "continuous": self.continuous,
            "supervisor_every": self.supervisor_every,
            "recent_commit_sec": self.recent_commit_sec,
        }
