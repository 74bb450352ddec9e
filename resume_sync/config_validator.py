"""Configuration validator for sync-layer startup checks."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List
from urllib.parse import urlparse


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class ConfigError:
    """A single configuration issue."""
    field: str
    message: str
    severity: Severity


_POSITIVE_NUMBERS = (
    "request_timeout",
    "cache_ttl_seconds",
    "poll_interval_seconds",
    "reconnect_delay_seconds",
    "page_cache_ttl_seconds",
)


def validate_config(raw_config: Dict[str, Any]) -> List[ConfigError]:
    """Validate raw configuration and return a list of issues.

    Args:
        raw_config: Raw config dict (the ``sync`` section, or the top level)

    Returns:
        List of ConfigError (empty = valid)
    """
    errors: List[ConfigError] = []
    config = raw_config.get("sync", raw_config)
    if not isinstance(config, dict):
        return [ConfigError(field="sync", message="sync section must be a mapping", severity=Severity.ERROR)]

    # --- API base ---
    api_base = config.get("api_base", "http://localhost:5000/api")
    parsed = urlparse(api_base) if isinstance(api_base, str) else None
    if not parsed or parsed.scheme not in {"http", "https"} or not parsed.netloc:
        errors.append(ConfigError(
            field="api_base",
            message=f"api_base must be an absolute http(s) URL, got {api_base!r}",
            severity=Severity.ERROR,
        ))
    elif parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
        errors.append(ConfigError(
            field="api_base",
            message="api_base uses plain http; bearer tokens will be sent unencrypted",
            severity=Severity.WARNING,
        ))

    # --- Durations ---
    for name in _POSITIVE_NUMBERS:
        if name not in config:
            continue
        value = config[name]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            errors.append(ConfigError(
                field=name,
                message=f"{name} must be a positive number, got {value!r}",
                severity=Severity.ERROR,
            ))

    poll_interval = config.get("poll_interval_seconds")
    if isinstance(poll_interval, (int, float)) and not isinstance(poll_interval, bool):
        if 0 < poll_interval < 10:
            errors.append(ConfigError(
                field="poll_interval_seconds",
                message="poll_interval_seconds below 10s will hammer the notifications endpoint",
                severity=Severity.WARNING,
            ))

    for name in ("capability_ttl_seconds", "poll_idle_timeout_seconds"):
        value = config.get(name)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0):
            errors.append(ConfigError(
                field=name,
                message=f"{name} must be a positive number or null, got {value!r}",
                severity=Severity.ERROR,
            ))

    # --- Store bounds ---
    for name, minimum in (("notification_cap", 1), ("undo_depth", 1)):
        if name not in config:
            continue
        value = config[name]
        if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
            errors.append(ConfigError(
                field=name,
                message=f"{name} must be an integer >= {minimum}, got {value!r}",
                severity=Severity.ERROR,
            ))

    # --- Paths ---
    for name in ("refresh_path", "login_url"):
        value = config.get(name)
        if value is not None and (not isinstance(value, str) or not value.startswith("/")):
            errors.append(ConfigError(
                field=name,
                message=f"{name} must be an absolute path starting with '/', got {value!r}",
                severity=Severity.ERROR,
            ))

    storage_path = config.get("storage_path")
    if isinstance(storage_path, str) and storage_path:
        parent = Path(storage_path).expanduser().parent
        if parent.exists() and not parent.is_dir():
            errors.append(ConfigError(
                field="storage_path",
                message=f"storage_path parent is not a directory: {parent}",
                severity=Severity.ERROR,
            ))

    return errors


def has_errors(issues: List[ConfigError]) -> bool:
    """Check if any issues are errors (not just warnings)."""
    return any(e.severity == Severity.ERROR for e in issues)
