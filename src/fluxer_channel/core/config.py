from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .exceptions import ConfigurationError

DEFAULT_CONFIG_FILE = "fluxer-channel.yml"
CONFIG_PATH_ENV = "FLUXER_CHANNEL_CONFIG"


class ConfigError(ConfigurationError):
    """Raised when the config file cannot be read or parsed."""


def _load_yaml_dict(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except Exception as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping: {path}")
    return data


def resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return path if not path.is_dir() else path / DEFAULT_CONFIG_FILE
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return Path.cwd() / DEFAULT_CONFIG_FILE


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the host config mapping (``{"channels": {"fluxer": {...}}}``)."""

    config_path = resolve_config_path(path)
    if path is not None and not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    return _load_yaml_dict(config_path)


def channel_section(cfg: Any, channel: str) -> Dict[str, Any]:
    if not isinstance(cfg, dict):
        return {}
    channels = cfg.get("channels")
    if not isinstance(channels, dict):
        return {}
    section = channels.get(channel)
    return section if isinstance(section, dict) else {}
