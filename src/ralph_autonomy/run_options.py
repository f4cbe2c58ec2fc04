"""Run option resolution: model registry lookup, model cycling lists, tool allowlists, timeouts."""

from __future__ import annotations

import fnmatch
import json
import logging
import os
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from .exceptions import ResolverError

LOGGER = logging.getLogger("ralph_autonomy.run_options")

THINKING_LEVELS = ("off", "minimal", "low", "medium", "high", "xhigh")
KNOWN_TOOLS = ("read", "bash", "edit", "write", "grep", "find", "ls")
DEFAULT_TIMEOUT_SEC = 300.0
PLACEHOLDER_CREDENTIALS = {"", "replace_me", "changeme"}

DEFAULT_PROVIDER_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google": "GEMINI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "xai": "XAI_API_KEY",
    "groq": "GROQ_API_KEY",
}

DEFAULT_MODELS = (
    ("anthropic", "claude-opus-4-5", "Claude Opus 4.5"),
    ("anthropic", "claude-sonnet-4-5", "Claude Sonnet 4.5"),
    ("anthropic", "claude-haiku-4-5", "Claude Haiku 4.5"),
    ("openai", "gpt-5.2", "GPT-5.2"),
    ("openai", "gpt-4o-mini", "GPT-4o mini"),
    ("google", "gemini-2.5-pro", "Gemini 2.5 Pro"),
    ("google", "gemini-2.5-flash", "Gemini 2.5 Flash"),
)

_DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*(s|m|h)$", re.IGNORECASE)
_SECONDS_PATTERN = re.compile(r"^\d+(?:\.\d+)?$")
_DURATION_MULTIPLIERS = {"s": 1.0, "m": 60.0, "h": 3600.0}
_GLOB_CHARS = set("*?[")


@dataclass(frozen=True)
class RunOptions:
    """Sparse per-run configuration supplied by a decision function or supervisor."""

    model: str | None = None
    provider: str | None = None
    models: str | None = None
    thinking: str | None = None
    tools: str | None = None
    timeout: int | float | str | None = None


@dataclass(frozen=True)
class ModelSpec:
    """One parsed token of a model cycling list: ``[provider/]model[:thinking]``."""

    model: str
    provider: str | None = None
    thinking: str | None = None

    @property
    def is_pattern(self) -> bool:
        return any(ch in _GLOB_CHARS for ch in self.model)


@dataclass(frozen=True)
class ModelInfo:
    provider: str
    id: str
    name: str = ""

    @property
    def ref(self) -> str:
        return f"{self.provider}/{self.id}"


@dataclass(frozen=True)
class ScopedModel:
    model: ModelInfo
    thinking: str

    def to_token(self) -> str:
        return f"{self.model.ref}:{self.thinking}"


@dataclass(frozen=True)
class ResolvedRunOptions:
    """Concrete configuration for one agent invocation."""

    model: ModelInfo | None = None
    thinking: str | None = None
    scoped_models: tuple[ScopedModel, ...] = ()
    tools: tuple[str, ...] | None = None
    timeout_sec: float = DEFAULT_TIMEOUT_SEC

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model.ref if self.model else None,
            "thinking": self.thinking,
            "models": [item.to_token() for item in self.scoped_models],
            "tools": list(self.tools) if self.tools is not None else None,
            "timeout_sec": self.timeout_sec,
        }


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------


def parse_timeout(value: int | float | str) -> float:
    """Return a timeout in seconds from a number, a digit string, or ``30s``/``5m``/``1h``."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid timeout: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        if _SECONDS_PATTERN.match(text):
            seconds = float(text)
        else:
            match = _DURATION_PATTERN.match(text)
            if not match:
                raise ValueError(
                    f'Invalid timeout: "{value}". Use "30s", "5m", "1h", or a number of seconds'
                )
            seconds = float(match.group(1)) * _DURATION_MULTIPLIERS[match.group(2).lower()]
    if seconds <= 0:
        raise ValueError(f"Timeout must be positive: {value!r}")
    return seconds


def resolve_timeout_sec(
    timeout: int | float | str | None,
    default: int | float | str | None = None,
) -> float:
    if timeout not in (None, ""):
        return parse_timeout(timeout)  # type: ignore[arg-type]
    if default not in (None, ""):
        return parse_timeout(default)  # type: ignore[arg-type]
    return DEFAULT_TIMEOUT_SEC


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def _read_structured(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return yaml.safe_load(text)


def _provider_keys_from_payload(payload: Any) -> dict[str, str]:
    rows = payload.get("providers", {}) if isinstance(payload, dict) else {}
    out: dict[str, str] = {}
    if isinstance(rows, dict):
        for name, row in rows.items():
            key_env = row.get("api_key_env", "") if isinstance(row, dict) else row
            if str(name).strip() and str(key_env or "").strip():
                out[str(name).strip()] = str(key_env).strip()
    elif isinstance(rows, list):
        for row in rows:
            if not isinstance(row, dict):
                continue
            name = str(row.get("name", "")).strip()
            key_env = str(row.get("api_key_env", "") or "").strip()
            if name and key_env:
                out[name] = key_env
    return out


def _models_from_payload(payload: Any) -> list[ModelInfo]:
    if isinstance(payload, dict):
        rows = payload.get("models", [])
    elif isinstance(payload, list):
        rows = payload
    else:
        rows = []
    out: list[ModelInfo] = []
    for row in rows if isinstance(rows, list) else []:
        if not isinstance(row, dict):
            continue
        provider = str(row.get("provider", "")).strip()
        model_id = str(row.get("id", "")).strip()
        if not provider or not model_id:
            continue
        out.append(ModelInfo(provider=provider, id=model_id, name=str(row.get("name", "") or "").strip()))
    return out


class ModelRegistry:
    """Known models per provider, with credentials looked up in the environment."""

    def __init__(
        self,
        models: Iterable[ModelInfo],
        provider_keys: Mapping[str, str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._models = list(models)
        self._provider_keys = dict(DEFAULT_PROVIDER_KEYS)
        if provider_keys:
            self._provider_keys.update(provider_keys)
        self._env = env if env is not None else os.environ

    @classmethod
    def default(cls, env: Mapping[str, str] | None = None) -> "ModelRegistry":
        models = [ModelInfo(provider=p, id=i, name=n) for p, i, n in DEFAULT_MODELS]
        return cls(models, env=env)

    @classmethod
    def from_payload(cls, payload: Any, env: Mapping[str, str] | None = None) -> "ModelRegistry":
        models = _models_from_payload(payload)
        if not models:
            models = [ModelInfo(provider=p, id=i, name=n) for p, i, n in DEFAULT_MODELS]
        return cls(models, provider_keys=_provider_keys_from_payload(payload), env=env)

    @classmethod
    def from_file(cls, path: Path | str, env: Mapping[str, str] | None = None) -> "ModelRegistry":
        return cls.from_payload(_read_structured(Path(path).expanduser()), env=env)

    def all(self) -> list[ModelInfo]:
        return list(self._models)

    def find(self, provider: str, model_id: str) -> ModelInfo | None:
        for model in self._models:
            if model.provider == provider and model.id == model_id:
                return model
        return None

    def match(self, pattern: str, provider: str | None = None) -> list[ModelInfo]:
        needle = pattern.lower()
        out: list[ModelInfo] = []
        for model in self._models:
            if provider and model.provider != provider:
                continue
            if fnmatch.fnmatch(model.id.lower(), needle) or (
                model.name and fnmatch.fnmatch(model.name.lower(), needle)
            ):
                out.append(model)
        return out

    def api_key_env(self, provider: str) -> str:
        return self._provider_keys.get(provider, f"{provider.upper().replace('-', '_')}_API_KEY")

    def has_credentials(self, model: ModelInfo) -> bool:
        value = str(self._env.get(self.api_key_env(model.provider), "") or "").strip()
        return value.lower() not in PLACEHOLDER_CREDENTIALS

    def available(self) -> list[ModelInfo]:
        return [model for model in self._models if self.has_credentials(model)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "models": [
                {**asdict(model), "ref": model.ref, "credentials": self.has_credentials(model)}
                for model in self._models
            ],
            "providers": dict(sorted(self._provider_keys.items())),
        }


# ---------------------------------------------------------------------------
# Model cycling grammar
# ---------------------------------------------------------------------------


def parse_csv_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def normalize_thinking(value: str | None) -> str | None:
    if value is None:
        return None
    level = str(value).strip().lower()
    if not level:
        return None
    if level not in THINKING_LEVELS:
        raise ResolverError(
            f"Unknown thinking level: {value!r}. Expected one of: {', '.join(THINKING_LEVELS)}"
        )
    return level


def parse_model_token(
    token: str,
    fallback_provider: str | None = None,
    fallback_thinking: str | None = None,
) -> ModelSpec:
    model_part, _, thinking_part = token.strip().partition(":")
    model_part = model_part.strip()
    thinking = normalize_thinking(thinking_part) or normalize_thinking(fallback_thinking) or "off"
    if "/" in model_part:
        provider, _, model_id = model_part.partition("/")
        return ModelSpec(model=model_id.strip(), provider=provider.strip() or None, thinking=thinking)
    return ModelSpec(model=model_part, provider=fallback_provider, thinking=thinking)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def resolve_model_string(
    registry: ModelRegistry,
    model: str,
    provider: str | None = None,
) -> ModelInfo | None:
    if "/" in model:
        prefix, _, rest = model.partition("/")
        return registry.find(prefix, rest)
    if provider:
        return registry.find(provider, model)

    candidates = registry.all()
    for candidate in candidates:
        if candidate.id == model:
            return candidate
    for candidate in candidates:
        if candidate.name and candidate.name == model:
            return candidate
    needle = model.lower()
    for candidate in candidates:
        if needle in candidate.id.lower() or (candidate.name and needle in candidate.name.lower()):
            return candidate
    return None


def _resolve_spec(registry: ModelRegistry, spec: ModelSpec, token: str) -> list[ModelInfo]:
    if spec.is_pattern:
        matches = registry.match(spec.model, spec.provider)
        if not matches:
            raise ResolverError(f'No models match pattern in models list: "{token}"')
        return matches
    resolved = resolve_model_string(registry, spec.model, spec.provider)
    if resolved is None:
        raise ResolverError(f'Unknown model in models list: "{token}"')
    return [resolved]


def resolve_run_model(
    options: RunOptions | None,
    registry: ModelRegistry,
) -> tuple[ModelInfo | None, str | None, tuple[ScopedModel, ...]]:
    """Pick the model and thinking level for one run.

    Order: explicit model, then the cycling list (first credentialed entry,
    falling back to the first entry), then the first credentialed model of a
    bare provider. Returns ``(None, thinking, ())`` to defer to the runtime.
    """
    options = options or RunOptions()
    provider = (options.provider or "").strip() or None
    thinking = normalize_thinking(options.thinking)

    if options.model:
        resolved = resolve_model_string(registry, options.model.strip(), provider)
        if resolved is None:
            prefix = f"{provider}/" if provider else ""
            raise ResolverError(
                f"Unknown model: {prefix}{options.model}. "
                'Try provider/model (e.g. "anthropic/claude-sonnet-4-5") or pass provider and model.'
            )
        return resolved, thinking, ()

    tokens = parse_csv_list(options.models)
    if tokens:
        scoped: list[ScopedModel] = []
        for token in tokens:
            spec = parse_model_token(token, provider, thinking)
            for model in _resolve_spec(registry, spec, token):
                scoped.append(ScopedModel(model=model, thinking=spec.thinking or "off"))
        for candidate in scoped:
            if registry.has_credentials(candidate.model):
                return candidate.model, candidate.thinking, tuple(scoped)
        # No credentials anywhere: keep the first entry so the runtime reports the auth error.
        return scoped[0].model, scoped[0].thinking, tuple(scoped)

    if provider:
        for model in registry.available():
            if model.provider == provider:
                return model, thinking, ()

    return None, thinking, ()


def resolve_tools(tools_csv: str | None) -> tuple[str, ...] | None:
    """Map an allowlist to known tool names; ``None`` means the runtime default toolset."""
    requested = parse_csv_list(tools_csv)
    if not requested:
        return None
    tools: list[str] = []
    for name in requested:
        key = name.lower()
        if key not in KNOWN_TOOLS:
            LOGGER.warning('Unknown tool: "%s" (ignored)', name)
            continue
        if key not in tools:
            tools.append(key)
    return tuple(tools) if tools else None


def resolve_run_options(
    options: RunOptions | None,
    registry: ModelRegistry,
    default_timeout: int | float | str | None = None,
) -> ResolvedRunOptions:
    options = options or RunOptions()
    model, thinking, scoped = resolve_run_model(options, registry)
    return ResolvedRunOptions(
        model=model,
        thinking=thinking,
        scoped_models=scoped,
        tools=resolve_tools(options.tools),
        timeout_sec=resolve_timeout_sec(options.timeout, default_timeout),
    )
