"""Configuration loading for the sync layer."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

ENV_PREFIX = "RESUME_SYNC_"
DEFAULT_CONFIG_PATH = "config/config.local.yaml"


@dataclass
class SyncConfig:
    """Runtime settings shared by the client, stream transport and store."""

    api_base: str = "http://localhost:5000/api"
    request_timeout: float = 30.0
    cache_ttl_seconds: float = 30.0
    refresh_path: str = "/auth/refresh"
    login_url: str = "/login"
    storage_path: str = "~/.resume-sync/storage.json"
    poll_interval_seconds: float = 180.0
    reconnect_delay_seconds: float = 5.0
    notification_cap: int = 50
    undo_depth: int = 5
    page_cache_ttl_seconds: float = 300.0
    capability_ttl_seconds: Optional[float] = None
    poll_idle_timeout_seconds: Optional[float] = None
    verbose: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        """Build a config from a raw mapping, ignoring unknown keys."""
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                continue
            kwargs[key] = _resolve_env_placeholder(value)
        return cls(**kwargs)

    @property
    def resolved_storage_path(self) -> Path:
        return Path(self.storage_path).expanduser()


def _resolve_env_placeholder(value: Any) -> Any:
    # "${VAR}" -> value of VAR (empty string if unset)
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        return os.getenv(value[2:-1], "")
    return value


def _coerce(raw: str, template: Any) -> Any:
    if isinstance(template, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(template, int):
        return int(raw)
    if isinstance(template, float):
        return float(raw)
    return raw


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect ``RESUME_SYNC_<FIELD>`` overrides, typed after the dataclass defaults."""
    environ = dict(os.environ if environ is None else environ)
    defaults = SyncConfig()
    overrides: Dict[str, Any] = {}
    for f in fields(SyncConfig):
        raw = environ.get(ENV_PREFIX + f.name.upper())
        if raw is None or raw == "":
            continue
        template = getattr(defaults, f.name)
        if template is None:
            overrides[f.name] = float(raw)
        else:
            overrides[f.name] = _coerce(raw, template)
    return overrides


def load_raw_config(config_path: str = DEFAULT_CONFIG_PATH) -> dict:
    """Load raw configuration dictionary from YAML file.

    Priority order:
    1. config.local.yaml (user's local config with secrets)
    2. config.yaml (template/defaults)

    Missing files yield an empty mapping; the dataclass defaults apply.
    """
    import yaml

    def _load_yaml(path: Path) -> dict:
        if not path.exists():
            return {}
        with open(path) as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"Config file must be a mapping: {path}")
            return data

    def _deep_merge(base: dict, override: dict) -> dict:
        merged = dict(base)
        for key, value in override.items():
            base_value = merged.get(key)
            if isinstance(base_value, dict) and isinstance(value, dict):
                merged[key] = _deep_merge(base_value, value)
            else:
                merged[key] = value
        return merged

    target = Path(config_path)
    if target.name == "config.local.yaml":
        base = _load_yaml(target.with_name("config.yaml"))
        return _deep_merge(base, _load_yaml(target))
    return _load_yaml(target)


def load_config(
    config_path: str = DEFAULT_CONFIG_PATH,
    environ: Optional[Dict[str, str]] = None,
) -> SyncConfig:
    """Load YAML config (``sync:`` section or top level) and apply env overrides."""
    data = load_raw_config(config_path)
    section = data.get("sync", data)
    if not isinstance(section, dict):
        raise ValueError(f"'sync' section must be a mapping in {config_path}")
    merged = dict(section)
    merged.update(env_overrides(environ))
    return SyncConfig.from_dict(merged)
