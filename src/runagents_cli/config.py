"""Persisted configuration for the RunAgents CLI."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from .logging import REDACTED, get_logger


DEFAULT_ENDPOINT = "http://localhost:8092"
CONFIG_DIR_NAME = ".runagents"
CONFIG_FILE_NAME = "config.json"

_logger = get_logger("runagents.config")


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded, saved, or resolved."""


@dataclass(frozen=True)
class ConfigRecord:
    """Endpoint and API key stored in the user's config file."""

    endpoint: str = DEFAULT_ENDPOINT
    api_key: str = ""

    def __post_init__(self) -> None:
        if self.endpoint:
            _validate_endpoint(self.endpoint)

    def to_dict(self) -> Dict[str, str]:
        return {"endpoint": self.endpoint, "api_key": self.api_key}

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        return {
            "endpoint": self.endpoint,
            "api_key": REDACTED if self.api_key else None,
        }


@dataclass(frozen=True)
class ClientConfig:
    """Effective settings for a single CLI invocation."""

    endpoint: str
    api_key: str
    output: str
    timeout: float = 30.0


def _validate_endpoint(endpoint: str) -> None:
    parts = urlsplit(endpoint)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise ConfigError(
            f"endpoint must be an absolute http(s) URL, got {endpoint!r}"
        )


def config_dir(home: Optional[Path] = None) -> Path:
    return (home or Path.home()) / CONFIG_DIR_NAME


def config_path(home: Optional[Path] = None) -> Path:
    """Return the location of the config file (``~/.runagents/config.json``)."""

    return config_dir(home) / CONFIG_FILE_NAME


def load_config(path: Optional[Path] = None) -> ConfigRecord:
    """Read the stored record, falling back to defaults when no file exists."""

    path = path or config_path()
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        _logger.debug("No config file found, using defaults", extra={"path": str(path)})
        return ConfigRecord()
    except OSError as exc:
        raise ConfigError(f"failed to read config file: {exc}") from exc

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"failed to parse config file: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ConfigError("failed to parse config file: expected a JSON object")

    return ConfigRecord(
        endpoint=_coerce_str(parsed.get("endpoint")),
        api_key=_coerce_str(parsed.get("api_key")),
    )


def save_config(record: ConfigRecord, path: Optional[Path] = None) -> None:
    """Write the record as indented JSON with owner-only permissions."""

    path = path or config_path()
    directory = path.parent
    try:
        if not directory.exists():
            directory.mkdir(mode=0o700, parents=True)
        data = json.dumps(record.to_dict(), indent=2)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
        # O_CREAT only applies the mode to new files
        os.chmod(path, 0o600)
    except OSError as exc:
        raise ConfigError(f"failed to write config file: {exc}") from exc
    _logger.debug("Saved config", extra={"path": str(path), **record.logging_dict()})


def update_config(record: ConfigRecord, key: str, value: str) -> ConfigRecord:
    """Return a copy of ``record`` with one user-facing key changed."""

    if key == "endpoint":
        return replace(record, endpoint=value)
    if key == "api-key":
        return replace(record, api_key=value)
    raise ConfigError(f"unknown config key {key!r}; valid keys: endpoint, api-key")


def resolve_settings(
    record: ConfigRecord,
    endpoint_override: Optional[str] = None,
    api_key_override: Optional[str] = None,
    output: str = "table",
) -> ClientConfig:
    """Combine command-line overrides with the stored record."""

    endpoint = endpoint_override or record.endpoint
    api_key = api_key_override or record.api_key
    if not endpoint:
        raise ConfigError(
            "no endpoint configured; run 'runagents config set endpoint <url>' "
            "or use --endpoint"
        )
    if endpoint_override:
        _validate_endpoint(endpoint_override)
    return ClientConfig(endpoint=endpoint, api_key=api_key, output=output)


def mask_api_key(key: str) -> str:
    """Mask all but the first and last four characters of a key."""

    if len(key) <= 8:
        return "*" * len(key)
    return key[:4] + "*" * (len(key) - 8) + key[-4:]


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"failed to parse config file: expected a string, got {value!r}")
    return value
