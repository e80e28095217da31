"""
Agent configuration: YAML file, environment overrides, CLI overrides.

Everything is folded into one ``AgentConfig`` value at startup and handed to
each component's constructor.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from .errors import ConfigValidationError, ErrorKind
from .provider_routing import DEFAULT_PROVIDER_PREFERENCE

ENV_PREFIXES = ("LINK_ASSISTANT_AGENT_", "AGENT_")

DEFAULT_MAX_ATTEMPTS_PER_CLASS = {
    ErrorKind.CONNECTION_STALLED: 3,
    ErrorKind.TIMEOUT: 3,
    ErrorKind.STREAM_PARSE: 3,
    ErrorKind.EMPTY_RESPONSE: 3,
}


def _load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge two dicts recursively. Lists are replaced, scalars replace."""
    out: Dict[str, Any] = dict(base)
    for k, v in (override or {}).items():
        if isinstance(out.get(k), dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _as_int(section: str, key: str, value: Any, *, minimum: int = 0) -> int:
    if isinstance(value, bool):
        raise ConfigValidationError(f"{section}.{key} must be an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigValidationError(f"{section}.{key} must be an integer, got {value!r}") from exc
    if number < minimum:
        raise ConfigValidationError(f"{section}.{key} must be >= {minimum}, got {number}")
    return number


def _as_float(section: str, key: str, value: Any, *, minimum: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigValidationError(f"{section}.{key} must be a number, got {value!r}") from exc
    if number < minimum:
        raise ConfigValidationError(f"{section}.{key} must be >= {minimum}, got {number}")
    return number


def _check_keys(section: str, data: Mapping[str, Any], allowed: Tuple[str, ...]) -> None:
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise ConfigValidationError(f"unknown keys in {section}: {', '.join(unknown)}")


@dataclass
class RetryConfig:
    max_retry_delay_ms: int = 1_200_000
    retry_timeout_ms: int = 604_800_000
    per_class_timeout_ms: Dict[str, int] = field(default_factory=dict)
    initial_delay_ms: int = 2_000
    backoff_factor: float = 2.0
    max_delay_no_headers_ms: int = 30_000
    max_attempts_per_class: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_MAX_ATTEMPTS_PER_CLASS)
    )

    def timeout_for(self, error_class: str) -> int:
        return int(self.per_class_timeout_ms.get(error_class, self.retry_timeout_ms))

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "RetryConfig":
        data = dict(data or {})
        _check_keys("retry", data, tuple(f.name for f in fields(cls)))
        cfg = cls()
        for key in ("max_retry_delay_ms", "retry_timeout_ms", "initial_delay_ms", "max_delay_no_headers_ms"):
            if key in data:
                setattr(cfg, key, _as_int("retry", key, data[key]))
        if "backoff_factor" in data:
            cfg.backoff_factor = _as_float("retry", "backoff_factor", data["backoff_factor"], minimum=1.0)
        if "per_class_timeout_ms" in data:
            raw = data["per_class_timeout_ms"] or {}
            if not isinstance(raw, dict):
                raise ConfigValidationError("retry.per_class_timeout_ms must be a mapping")
            cfg.per_class_timeout_ms = {
                str(k): _as_int("retry.per_class_timeout_ms", str(k), v) for k, v in raw.items()
            }
        if "max_attempts_per_class" in data:
            raw = data["max_attempts_per_class"] or {}
            if not isinstance(raw, dict):
                raise ConfigValidationError("retry.max_attempts_per_class must be a mapping")
            merged = dict(DEFAULT_MAX_ATTEMPTS_PER_CLASS)
            merged.update(
                {str(k): _as_int("retry.max_attempts_per_class", str(k), v) for k, v in raw.items()}
            )
            cfg.max_attempts_per_class = merged
        return cfg


@dataclass
class StreamConfig:
    chunk_timeout_ms: int = 120_000
    step_timeout_ms: int = 600_000

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "StreamConfig":
        data = dict(data or {})
        _check_keys("stream", data, ("chunk_timeout_ms", "step_timeout_ms"))
        cfg = cls()
        for key in ("chunk_timeout_ms", "step_timeout_ms"):
            if key in data:
                setattr(cfg, key, _as_int("stream", key, data[key], minimum=1))
        return cfg


@dataclass
class RoutingConfig:
    allow_fallback: bool = True
    provider_preference: List[str] = field(default_factory=lambda: list(DEFAULT_PROVIDER_PREFERENCE))
    circuit_failure_threshold: int = 3
    circuit_window_ms: int = 600_000
    circuit_cooldown_ms: int = 900_000

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "RoutingConfig":
        data = dict(data or {})
        _check_keys(
            "routing",
            data,
            (
                "allow_fallback",
                "provider_preference",
                "circuit_failure_threshold",
                "circuit_window_ms",
                "circuit_cooldown_ms",
            ),
        )
        cfg = cls()
        if "allow_fallback" in data:
            cfg.allow_fallback = bool(data["allow_fallback"])
        if "circuit_failure_threshold" in data:
            cfg.circuit_failure_threshold = _as_int(
                "routing", "circuit_failure_threshold", data["circuit_failure_threshold"], minimum=1
            )
        for key in ("circuit_window_ms", "circuit_cooldown_ms"):
            if key in data:
                setattr(cfg, key, _as_int("routing", key, data[key], minimum=1))
        if "provider_preference" in data:
            pref = data["provider_preference"]
            if not isinstance(pref, list) or not all(isinstance(p, str) for p in pref):
                raise ConfigValidationError("routing.provider_preference must be a list of provider ids")
            cfg.provider_preference = list(pref)
        return cfg


@dataclass
class LoggingConfig:
    enabled: bool = False
    root_dir: str = "logging"
    retention_max_runs: Optional[int] = None
    telemetry_path: Optional[str] = None
    redact: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "LoggingConfig":
        data = dict(data or {})
        _check_keys("logging", data, tuple(f.name for f in fields(cls)))
        cfg = cls()
        if "enabled" in data:
            cfg.enabled = bool(data["enabled"])
        if "redact" in data:
            cfg.redact = bool(data["redact"])
        if data.get("root_dir"):
            cfg.root_dir = str(data["root_dir"])
        if data.get("retention_max_runs") is not None:
            cfg.retention_max_runs = _as_int("logging", "retention_max_runs", data["retention_max_runs"], minimum=1)
        if data.get("telemetry_path"):
            cfg.telemetry_path = str(data["telemetry_path"])
        return cfg


@dataclass
class AgentConfig:
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    max_steps: int = 50
    dry_run: bool = False
    verbose: bool = False
    retry: RetryConfig = field(default_factory=RetryConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    providers: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "AgentConfig":
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ConfigValidationError("configuration root must be a mapping")
        _check_keys("config", data, tuple(f.name for f in fields(cls)))
        providers = data.get("providers") or {}
        if not isinstance(providers, dict):
            raise ConfigValidationError("providers must be a mapping")
        model = data.get("model")
        if model is not None and not isinstance(model, str):
            raise ConfigValidationError("model must be a string")
        return cls(
            model=model or None,
            system_prompt=data.get("system_prompt") or None,
            max_steps=_as_int("config", "max_steps", data.get("max_steps", 50), minimum=1),
            dry_run=bool(data.get("dry_run", False)),
            verbose=bool(data.get("verbose", False)),
            retry=RetryConfig.from_dict(data.get("retry")),
            stream=StreamConfig.from_dict(data.get("stream")),
            routing=RoutingConfig.from_dict(data.get("routing")),
            logging=LoggingConfig.from_dict(data.get("logging")),
            providers=dict(providers),
        )

    def apply_env(self, environ: Optional[Mapping[str, str]] = None) -> "AgentConfig":
        """Apply ``LINK_ASSISTANT_AGENT_*`` / ``AGENT_*`` overrides in place."""
        env = os.environ if environ is None else environ

        def lookup(name: str) -> Optional[str]:
            for prefix in ENV_PREFIXES:
                value = env.get(prefix + name)
                if value not in (None, ""):
                    return value
            return None

        value = lookup("RETRY_TIMEOUT")
        if value is not None:
            self.retry.retry_timeout_ms = _as_int("env", "RETRY_TIMEOUT", value) * 1000
        value = lookup("MAX_RETRY_DELAY")
        if value is not None:
            self.retry.max_retry_delay_ms = _as_int("env", "MAX_RETRY_DELAY", value) * 1000
        value = lookup("STREAM_CHUNK_TIMEOUT_MS")
        if value is not None:
            self.stream.chunk_timeout_ms = _as_int("env", "STREAM_CHUNK_TIMEOUT_MS", value, minimum=1)
        value = lookup("STREAM_STEP_TIMEOUT_MS")
        if value is not None:
            self.stream.step_timeout_ms = _as_int("env", "STREAM_STEP_TIMEOUT_MS", value, minimum=1)
        value = lookup("DRY_RUN")
        if value is not None:
            self.dry_run = value.strip().lower() in ("1", "true", "yes", "on")
        value = lookup("VERBOSE")
        if value is not None:
            self.verbose = value.strip().lower() in ("1", "true", "yes", "on")
        return self


def _resolve_extends(doc: Dict[str, Any], config_path: Path) -> Dict[str, Any]:
    extends_val = doc.get("extends")
    if not extends_val:
        return doc
    paths = list(extends_val) if isinstance(extends_val, (list, tuple)) else [extends_val]
    merged: Dict[str, Any] = {}
    for rel in paths:
        base_path = (config_path.parent / str(rel)).resolve()
        merged = _deep_merge(merged, _read_document(base_path))
    return _deep_merge(merged, {k: v for k, v in doc.items() if k != "extends"})


def _read_document(path: Path) -> Dict[str, Any]:
    if path.suffix.lower() == ".json":
        with open(path, "r", encoding="utf-8") as f:
            doc = json.load(f) or {}
    else:
        doc = _load_yaml(path)
    if not isinstance(doc, dict):
        raise ConfigValidationError(f"configuration in {path} must be a mapping")
    return _resolve_extends(doc, path)


def load_config(
    path: Optional[Union[str, Path]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> AgentConfig:
    """Load config from ``path`` (YAML or JSON, ``extends`` supported) then env overrides."""
    doc: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.exists():
            raise ConfigValidationError(f"configuration file not found: {path}")
        try:
            doc = _read_document(config_path)
        except ConfigValidationError:
            raise
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise ConfigValidationError(f"could not read configuration {path}: {exc}") from exc
    return AgentConfig.from_dict(doc).apply_env(environ)
