"""Frozen dataclasses for configuration and YAML loader with env-var interpolation."""

from __future__ import annotations

import dataclasses
import os
import re
import typing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")

SUPPORTED_INFRASTRUCTURE_TYPES = ("aws-ec2",)


def _resolve_env(text: str) -> str:
    """Substitute every ${NAME} in text; an unset NAME is a configuration error."""
    missing = [name for name in _ENV_PATTERN.findall(text) if name not in os.environ]
    if missing:
        raise ConfigError(f"Environment variable '{missing[0]}' is not set")
    return _ENV_PATTERN.sub(lambda m: os.environ[m.group(1)], text)


def _expand(node: Any) -> Any:
    if isinstance(node, str):
        return _resolve_env(node)
    if isinstance(node, dict):
        return {key: _expand(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand(item) for item in node]
    return node


@dataclass(frozen=True)
class AWSConfig:
    vm_user_login: str = "ec2-user"
    node_running_timeout_ms: int = 1_200_000  # also the spot request lifetime
    pricing_region: str = "us-east-1"  # the pricing API is only served from a few regions
    regions: list[str] = field(default_factory=list)  # empty = infrastructure region only
    waiter_delay_seconds: int = 15


@dataclass(frozen=True)
class TagsConfig:
    defaults: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"  # "json" or "text"


@dataclass(frozen=True)
class AppConfig:
    aws: AWSConfig = field(default_factory=AWSConfig)
    tags: TagsConfig = field(default_factory=TagsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructures: list[dict[str, Any]] = field(default_factory=list)


def _section(cls: type, data: dict[str, Any]) -> Any:
    """Build dataclass cls from data, recursing into dataclass-typed fields. Unknown keys are ignored."""
    hints = typing.get_type_hints(cls)
    kwargs: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        field_type = hints[f.name]
        if dataclasses.is_dataclass(field_type):
            if not isinstance(value, dict):
                raise ConfigError(f"'{f.name}' must be a mapping")
            value = _section(field_type, value)
        kwargs[f.name] = value
    return cls(**kwargs)


def load_config(path: str | Path) -> AppConfig:
    """Load and validate configuration from a YAML file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("Configuration file must be a YAML mapping")

    config = _section(AppConfig, _expand(raw))
    _validate(config)
    return config


def _validate(config: AppConfig) -> None:
    """Validate configuration values."""
    if config.aws.node_running_timeout_ms <= 0:
        raise ConfigError("aws.node_running_timeout_ms must be > 0")

    if config.aws.waiter_delay_seconds < 1:
        raise ConfigError("aws.waiter_delay_seconds must be >= 1")

    if not 0 < config.server.port < 65536:
        raise ConfigError("server.port must be between 1 and 65535")

    if config.logging.format not in ("json", "text"):
        raise ConfigError("logging.format must be 'json' or 'text'")

    seen: set[str] = set()
    for entry in config.infrastructures:
        if not isinstance(entry, dict) or not entry.get("id"):
            raise ConfigError("every entry of 'infrastructures' must be a mapping with an 'id'")
        if entry["id"] in seen:
            raise ConfigError(f"infrastructure id '{entry['id']}' is declared twice")
        seen.add(entry["id"])
        if entry.get("type") not in SUPPORTED_INFRASTRUCTURE_TYPES:
            raise ConfigError(
                f"infrastructure '{entry['id']}' has unsupported type {entry.get('type')!r} "
                f"(supported: {', '.join(SUPPORTED_INFRASTRUCTURE_TYPES)})"
            )
