from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Optional

from .models import InboundAttachment, InboundMessage, SessionIdentity


def now_ms() -> int:
    return int(time.time() * 1000)


def _as_id(value: object) -> Optional[str]:
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def parse_timestamp_ms(value: Any) -> Optional[int]:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _parse_attachments(value: Any) -> tuple[InboundAttachment, ...]:
    if not isinstance(value, list):
        return ()
    attachments: list[InboundAttachment] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        if not isinstance(url, str) or not url:
            continue
        content_type = item.get("content_type")
        filename = item.get("filename")
        attachments.append(
            InboundAttachment(
                url=url,
                content_type=content_type if isinstance(content_type, str) else None,
                filename=filename if isinstance(filename, str) else None,
            )
        )
    return tuple(attachments)


def decode_message_create(
    payload: dict[str, Any], *, received_ms: Optional[int] = None
) -> Optional[InboundMessage]:
    """Decode a MESSAGE_CREATE dispatch; ``None`` when required ids are missing."""

    author = payload.get("author")
    if not isinstance(author, dict):
        return None
    message_id = _as_id(payload.get("id"))
    channel_id = _as_id(payload.get("channel_id"))
    sender_id = _as_id(author.get("id"))
    if message_id is None or channel_id is None or sender_id is None:
        return None

    guild_id = _as_id(payload.get("guild_id"))
    username = author.get("username")
    content = payload.get("content")
    referenced = payload.get("referenced_message")
    referenced_id = (
        _as_id(referenced.get("id")) if isinstance(referenced, dict) else None
    )
    timestamp = parse_timestamp_ms(payload.get("timestamp"))
    if timestamp is None:
        timestamp = received_ms if received_ms is not None else now_ms()

    return InboundMessage(
        id=message_id,
        conversation_id=channel_id,
        is_direct=guild_id is None,
        sender_id=sender_id,
        sender_name=username if isinstance(username, str) else sender_id,
        is_bot=author.get("bot") is True,
        text=content if isinstance(content, str) else "",
        timestamp=timestamp,
        referenced_message_id=referenced_id,
        attachments=_parse_attachments(payload.get("attachments")),
        guild_id=guild_id,
    )


def decode_ready(payload: dict[str, Any]) -> Optional[SessionIdentity]:
    user = payload.get("user")
    if not isinstance(user, dict):
        return None
    user_id = _as_id(user.get("id"))
    if user_id is None:
        return None
    username = user.get("username")
    discriminator = user.get("discriminator")
    return SessionIdentity(
        self_user_id=user_id,
        self_username=username if isinstance(username, str) else user_id,
        discriminator=discriminator if isinstance(discriminator, str) else None,
    )
