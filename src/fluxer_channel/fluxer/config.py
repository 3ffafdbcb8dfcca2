from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .constants import DEFAULT_MEDIA_MAX_MB, FLUXER_CHANNEL_ID
from .errors import FluxerConfigError

DM_POLICY_OPTIONS = frozenset({"pairing", "allowlist", "open", "disabled"})
GROUP_POLICY_OPTIONS = frozenset({"open", "disabled"})
REPLY_TO_MODE_OPTIONS = frozenset({"off", "on"})
DEFAULT_DM_POLICY = "pairing"
DEFAULT_GROUP_POLICY = "open"
DEFAULT_REPLY_TO_MODE = "off"
DEFAULT_MEDIA_DIR = ".fluxer-channel/media"
DEFAULT_STATE_FILE = ".fluxer-channel/pairing.sqlite3"

_ALLOW_ENTRY_PREFIX_RE = re.compile(r"^(fluxer|user):", re.IGNORECASE)


def normalize_allow_entry(raw: str) -> str:
    return _ALLOW_ENTRY_PREFIX_RE.sub("", str(raw).strip())


@dataclass(frozen=True)
class FluxerDmConfig:
    policy: str = DEFAULT_DM_POLICY
    allow_from: tuple[str, ...] = ()


@dataclass(frozen=True)
class FluxerChannelConfig:
    dm: FluxerDmConfig = field(default_factory=FluxerDmConfig)
    group_policy: str = DEFAULT_GROUP_POLICY
    reply_to_mode: str = DEFAULT_REPLY_TO_MODE
    media_max_mb: float = DEFAULT_MEDIA_MAX_MB
    media_dir: Path = Path(DEFAULT_MEDIA_DIR)
    state_file: Path = Path(DEFAULT_STATE_FILE)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def media_max_bytes(self) -> int:
        return int(self.media_max_mb * 1024 * 1024)

    @property
    def reply_to_enabled(self) -> bool:
        return self.reply_to_mode != "off"

    @classmethod
    def from_raw(
        cls, raw: Any, *, root: Optional[Path] = None
    ) -> "FluxerChannelConfig":
        cfg: dict[str, Any] = raw if isinstance(raw, dict) else {}
        dm_raw = cfg.get("dm")
        dm_cfg = dm_raw if isinstance(dm_raw, dict) else {}

        dm_policy = _parse_choice(
            dm_cfg.get("policy"),
            default=DEFAULT_DM_POLICY,
            options=DM_POLICY_OPTIONS,
            key=f"channels.{FLUXER_CHANNEL_ID}.dm.policy",
        )
        group_policy = _parse_choice(
            cfg.get("groupPolicy"),
            default=DEFAULT_GROUP_POLICY,
            options=GROUP_POLICY_OPTIONS,
            key=f"channels.{FLUXER_CHANNEL_ID}.groupPolicy",
        )
        reply_to_mode = _parse_choice(
            cfg.get("replyToMode"),
            default=DEFAULT_REPLY_TO_MODE,
            options=REPLY_TO_MODE_OPTIONS,
            key=f"channels.{FLUXER_CHANNEL_ID}.replyToMode",
        )

        media_max_mb_raw = cfg.get("mediaMaxMb", DEFAULT_MEDIA_MAX_MB)
        if isinstance(media_max_mb_raw, bool) or not isinstance(
            media_max_mb_raw, (int, float)
        ):
            raise FluxerConfigError(
                f"channels.{FLUXER_CHANNEL_ID}.mediaMaxMb must be a number"
            )
        if media_max_mb_raw <= 0:
            raise FluxerConfigError(
                f"channels.{FLUXER_CHANNEL_ID}.mediaMaxMb must be > 0"
            )

        base = root if root is not None else Path.cwd()
        media_dir = _parse_path(
            cfg.get("mediaDir", DEFAULT_MEDIA_DIR),
            base=base,
            key=f"channels.{FLUXER_CHANNEL_ID}.mediaDir",
        )
        state_file = _parse_path(
            cfg.get("stateFile", DEFAULT_STATE_FILE),
            base=base,
            key=f"channels.{FLUXER_CHANNEL_ID}.stateFile",
        )

        return cls(
            dm=FluxerDmConfig(
                policy=dm_policy,
                allow_from=tuple(_parse_allow_from(dm_cfg.get("allowFrom"))),
            ),
            group_policy=group_policy,
            reply_to_mode=reply_to_mode,
            media_max_mb=float(media_max_mb_raw),
            media_dir=media_dir,
            state_file=state_file,
            raw=dict(cfg),
        )


def _parse_choice(
    value: Any, *, default: str, options: frozenset[str], key: str
) -> str:
    if value is None:
        return default
    token = str(value).strip().lower()
    if not token:
        return default
    if token not in options:
        allowed = ", ".join(sorted(options))
        raise FluxerConfigError(f"{key} must be one of: {allowed}")
    return token


def _parse_allow_from(value: Any) -> list[str]:
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple, set, frozenset)) else [value]
    parsed: list[str] = []
    for item in items:
        token = normalize_allow_entry(str(item))
        if token:
            parsed.append(token)
    return parsed


def _parse_path(value: Any, *, base: Path, key: str) -> Path:
    if not isinstance(value, str) or not value.strip():
        raise FluxerConfigError(f"{key} must be a string path")
    path = Path(value.strip()).expanduser()
    if not path.is_absolute():
        path = base / path
    return path.resolve()
