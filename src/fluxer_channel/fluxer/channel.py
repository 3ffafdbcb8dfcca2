"""Channel-plugin surface: account resolution, targets, status and startup."""

from __future__ import annotations

import asyncio
import copy
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from ..core.config import channel_section
from ..core.exceptions import ConfigurationError
from ..core.logging_utils import log_event
from .config import FluxerChannelConfig, normalize_allow_entry
from .constants import (
    DEFAULT_ACCOUNT_ID,
    FLUXER_CHANNEL_ID,
    FLUXER_CHANNEL_LABEL,
    FLUXER_MAX_MESSAGE_LENGTH,
    FLUXER_TOKEN_ENV,
    PAIRING_APPROVED_MESSAGE,
    START_PROBE_TIMEOUT_MS,
)
from .models import ProbeResult
from .outbound import OutboundDelivery, USER_TARGET_PREFIX, normalize_target, probe_bot
from .session import ConnectionSession, RuntimeStatus

CHANNEL_META = {
    "id": FLUXER_CHANNEL_ID,
    "label": FLUXER_CHANNEL_LABEL,
    "selectionLabel": FLUXER_CHANNEL_LABEL,
    "docsPath": f"/channels/{FLUXER_CHANNEL_ID}",
    "blurb": "Discord-compatible chat; configure a bot token.",
}
CHANNEL_CAPABILITIES = {
    "chatTypes": ("direct", "channel"),
    "media": True,
    "reactions": False,
    "polls": False,
    "threads": False,
}
TEXT_CHUNK_LIMIT = FLUXER_MAX_MESSAGE_LENGTH
TARGET_HINT = "<channelId|user:ID>"
ALLOW_FROM_PATH = f"channels.{FLUXER_CHANNEL_ID}.dm.allowFrom"

_TARGET_ID_RE = re.compile(r"^\d{17,20}$")
_TARGET_PREFIX_RE = re.compile(r"^(fluxer:|channel:|user:)", re.IGNORECASE)


@dataclass(frozen=True)
class FluxerAccount:
    account_id: str
    enabled: bool
    token: Optional[str]
    token_source: str
    config: dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None


def resolve_account(
    cfg: Any,
    account_id: Optional[str] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> FluxerAccount:
    section = channel_section(cfg, FLUXER_CHANNEL_ID)
    environ = os.environ if env is None else env
    config_token = section.get("token")
    config_token = config_token.strip() if isinstance(config_token, str) else ""
    env_token = (environ.get(FLUXER_TOKEN_ENV) or "").strip()
    if config_token:
        token: Optional[str] = config_token
        token_source = "config"
    elif env_token:
        token = env_token
        token_source = f"env:{FLUXER_TOKEN_ENV}"
    else:
        token = None
        token_source = "none"
    name = section.get("name")
    return FluxerAccount(
        account_id=account_id or DEFAULT_ACCOUNT_ID,
        enabled=section.get("enabled") is not False,
        token=token,
        token_source=token_source,
        config=dict(section),
        name=name if isinstance(name, str) else None,
    )


def is_configured(account: FluxerAccount) -> bool:
    return bool((account.token or "").strip())


def describe_account(account: FluxerAccount) -> dict[str, Any]:
    return {
        "accountId": account.account_id,
        "name": account.name,
        "enabled": account.enabled,
        "configured": is_configured(account),
        "tokenSource": account.token_source,
    }


def resolve_allow_from(cfg: Any) -> list[str]:
    dm = channel_section(cfg, FLUXER_CHANNEL_ID).get("dm")
    allow_from = dm.get("allowFrom") if isinstance(dm, dict) else None
    if not isinstance(allow_from, (list, tuple)):
        return []
    return [str(entry) for entry in allow_from]


def format_allow_from(allow_from: Iterable[Any]) -> list[str]:
    formatted = [str(entry).strip().lower() for entry in allow_from]
    return [entry for entry in formatted if entry]


def format_pairing_approve_hint() -> str:
    return (
        "Approve via: fluxer-channel pairing list / "
        "fluxer-channel pairing approve <code>"
    )


def resolve_dm_policy(account: FluxerAccount) -> dict[str, Any]:
    dm = account.config.get("dm")
    dm_cfg = dm if isinstance(dm, dict) else {}
    return {
        "policy": dm_cfg.get("policy") or "pairing",
        "allowFrom": list(dm_cfg.get("allowFrom") or []),
        "allowFromPath": ALLOW_FROM_PATH,
        "approveHint": format_pairing_approve_hint(),
    }


def looks_like_id(raw: str) -> bool:
    return bool(_TARGET_ID_RE.match(_TARGET_PREFIX_RE.sub("", raw).strip()))


def validate_setup_input(
    *, token: Optional[str] = None, use_env: bool = False
) -> Optional[str]:
    if not use_env and not (token or "").strip():
        return (
            f"{FLUXER_CHANNEL_LABEL} requires a token "
            f"(or --use-env for {FLUXER_TOKEN_ENV})."
        )
    return None


def apply_account_config(
    cfg: Mapping[str, Any], *, token: Optional[str] = None, use_env: bool = False
) -> dict[str, Any]:
    updated = copy.deepcopy(dict(cfg))
    channels = updated.setdefault("channels", {})
    if not isinstance(channels, dict):
        channels = {}
        updated["channels"] = channels
    section = channels.get(FLUXER_CHANNEL_ID)
    section = dict(section) if isinstance(section, dict) else {}
    section["enabled"] = True
    if not use_env and token:
        section["token"] = token
    channels[FLUXER_CHANNEL_ID] = section
    return updated


def collect_status_issues(
    snapshots: Sequence[Mapping[str, Any]],
) -> list[dict[str, Any]]:
    issues: list[dict[str, Any]] = []
    for snapshot in snapshots:
        last_error = snapshot.get("lastError")
        last_error = last_error.strip() if isinstance(last_error, str) else ""
        if not last_error:
            continue
        issues.append(
            {
                "channel": FLUXER_CHANNEL_ID,
                "accountId": snapshot.get("accountId"),
                "kind": "runtime",
                "message": f"Channel error: {last_error}",
            }
        )
    return issues


def build_account_snapshot(
    account: FluxerAccount,
    *,
    runtime: Optional[RuntimeStatus] = None,
    probe: Optional[ProbeResult] = None,
) -> dict[str, Any]:
    status = runtime.to_dict() if runtime is not None else {}
    probe_payload = probe.to_dict() if probe is not None else None
    return {
        **describe_account(account),
        "running": status.get("running", False),
        "lastStartAt": status.get("lastStartAt"),
        "lastStopAt": status.get("lastStopAt"),
        "lastError": status.get("lastError"),
        "bot": probe_payload.get("bot") if probe_payload else None,
        "probe": probe_payload,
        "lastInboundAt": status.get("lastInboundAt"),
        "lastOutboundAt": status.get("lastOutboundAt"),
    }


async def probe_account(
    account: FluxerAccount, *, timeout_ms: int = START_PROBE_TIMEOUT_MS
) -> ProbeResult:
    token = (account.token or "").strip()
    if not token:
        return ProbeResult(ok=False, error="no token")
    return await probe_bot(token, timeout_ms)


async def send_text(
    outbound: OutboundDelivery,
    to: str,
    text: str,
    *,
    reply_to_id: Optional[str] = None,
) -> dict[str, Any]:
    target = normalize_target(to) or to
    result = await outbound.send_message(target, text, reply_to=reply_to_id)
    return {
        "channel": FLUXER_CHANNEL_ID,
        "messageId": result.message_id,
        "channelId": result.channel_id,
    }


async def send_media(
    outbound: OutboundDelivery,
    to: str,
    text: str,
    media_url: str,
    *,
    reply_to_id: Optional[str] = None,
) -> dict[str, Any]:
    target = normalize_target(to) or to
    result = await outbound.send_message(
        target, text, reply_to=reply_to_id, media_url=media_url
    )
    return {
        "channel": FLUXER_CHANNEL_ID,
        "messageId": result.message_id,
        "channelId": result.channel_id,
    }


async def notify_approval(outbound: OutboundDelivery, sender_id: str) -> None:
    await outbound.send_message(
        f"{USER_TARGET_PREFIX}{normalize_allow_entry(sender_id)}",
        PAIRING_APPROVED_MESSAGE,
    )


async def start_account(
    account: FluxerAccount,
    *,
    host_config: Mapping[str, Any],
    stop_event: asyncio.Event,
    logger: logging.Logger,
    runtime: Any = None,
    root: Optional[Path] = None,
    on_status: Optional[Callable[[dict[str, Any]], None]] = None,
    session_factory: Callable[..., ConnectionSession] = ConnectionSession,
) -> None:
    """Start the gateway for ``account`` and run until ``stop_event`` is set."""

    token = (account.token or "").strip()
    if not token:
        raise ConfigurationError(f"{FLUXER_CHANNEL_LABEL} bot token is required")
    config = FluxerChannelConfig.from_raw(account.config, root=root)

    bot_label = ""
    probe = await probe_bot(token, START_PROBE_TIMEOUT_MS)
    if probe.ok and probe.bot is not None:
        bot_label = f" (@{probe.bot.username})"
        if on_status is not None:
            on_status(
                {
                    "accountId": account.account_id,
                    "bot": {"id": probe.bot.id, "username": probe.bot.username},
                }
            )

    log_event(
        logger,
        logging.INFO,
        "fluxer.account.starting",
        account_id=account.account_id,
        label=f"starting {FLUXER_CHANNEL_LABEL} provider{bot_label}",
    )
    session = session_factory(
        token=token,
        config=config,
        logger=logger,
        account_id=account.account_id,
        host_config=host_config,
        runtime=runtime,
    )
    await session.run(stop_event)
