from __future__ import annotations

from pathlib import Path

import pytest

from fluxer_channel.core.config import (
    CONFIG_PATH_ENV,
    DEFAULT_CONFIG_FILE,
    ConfigError,
    channel_section,
    load_config,
    resolve_config_path,
)
from fluxer_channel.core.exceptions import ConfigurationError


def test_load_config_reads_yaml_mapping(tmp_path: Path) -> None:
    config_path = tmp_path / "fluxer.yml"
    config_path.write_text(
        "channels:\n  fluxer:\n    token: abc\n    dm:\n      policy: open\n",
        encoding="utf-8",
    )

    cfg = load_config(config_path)

    assert channel_section(cfg, "fluxer") == {"token": "abc", "dm": {"policy": "open"}}


def test_load_config_missing_explicit_path_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yml")


def test_load_config_rejects_non_mapping(tmp_path: Path) -> None:
    config_path = tmp_path / "fluxer.yml"
    config_path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="must be a mapping"):
        load_config(config_path)


def test_load_config_rejects_invalid_yaml(tmp_path: Path) -> None:
    config_path = tmp_path / "fluxer.yml"
    config_path.write_text("channels: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(config_path)


def test_resolve_config_path_prefers_env(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv(CONFIG_PATH_ENV, str(tmp_path / "custom.yml"))
    assert resolve_config_path() == tmp_path / "custom.yml"
    assert resolve_config_path(tmp_path) == tmp_path / DEFAULT_CONFIG_FILE


def test_channel_section_tolerates_malformed_config() -> None:
    assert channel_section(None, "fluxer") == {}
    assert channel_section({"channels": []}, "fluxer") == {}
    assert channel_section({"channels": {"fluxer": "token"}}, "fluxer") == {}
