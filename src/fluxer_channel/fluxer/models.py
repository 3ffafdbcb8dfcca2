"""Channel-domain models shared by the inbound pipeline and outbound delivery."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


@dataclass(frozen=True)
class InboundAttachment:
    url: str
    content_type: Optional[str] = None
    filename: Optional[str] = None


@dataclass(frozen=True)
class InboundMessage:
    """Decoded MESSAGE_CREATE event."""

    id: str
    conversation_id: str
    is_direct: bool
    sender_id: str
    sender_name: str
    is_bot: bool
    text: str
    timestamp: int
    referenced_message_id: Optional[str] = None
    attachments: tuple[InboundAttachment, ...] = field(default_factory=tuple)
    guild_id: Optional[str] = None


@dataclass(frozen=True)
class SessionIdentity:
    self_user_id: str
    self_username: str
    discriminator: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.self_username}#{self.discriminator or '0000'}"


class AccessDecision(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    CHALLENGE_ISSUED = "challenge_issued"

    @property
    def allowed(self) -> bool:
        return self is AccessDecision.ALLOWED


@dataclass(frozen=True)
class DispatchEnvelope:
    """Normalized inbound context handed to the reply dispatcher."""

    body: str
    body_for_agent: str
    raw_body: str
    command_body: str
    from_: str
    to: str
    session_key: str
    account_id: str
    chat_type: str
    conversation_label: str
    sender_name: str
    sender_id: str
    sender_username: str
    provider: str
    surface: str
    message_sid: str
    timestamp: int
    originating_channel: str
    originating_to: str
    group_subject: Optional[str] = None
    was_mentioned: Optional[bool] = None
    reply_to_id: Optional[str] = None
    media_path: Optional[str] = None
    media_url: Optional[str] = None

    def as_context(self) -> dict[str, Any]:
        context: dict[str, Any] = {
            "Body": self.body,
            "BodyForAgent": self.body_for_agent,
            "RawBody": self.raw_body,
            "CommandBody": self.command_body,
            "From": self.from_,
            "To": self.to,
            "SessionKey": self.session_key,
            "AccountId": self.account_id,
            "ChatType": self.chat_type,
            "ConversationLabel": self.conversation_label,
            "SenderName": self.sender_name,
            "SenderId": self.sender_id,
            "SenderUsername": self.sender_username,
            "GroupSubject": self.group_subject,
            "Provider": self.provider,
            "Surface": self.surface,
            "WasMentioned": self.was_mentioned,
            "MessageSid": self.message_sid,
            "ReplyToId": self.reply_to_id,
            "Timestamp": self.timestamp,
            "MediaPath": self.media_path,
            "MediaUrl": self.media_url,
            "OriginatingChannel": self.originating_channel,
            "OriginatingTo": self.originating_to,
        }
        return {key: value for key, value in context.items() if value is not None}


@dataclass(frozen=True)
class ReplyPayload:
    text: Optional[str] = None
    media_url: Optional[str] = None
    audio_as_voice: bool = False


@dataclass(frozen=True)
class SendResult:
    message_id: Optional[str] = None
    channel_id: Optional[str] = None


@dataclass(frozen=True)
class BotIdentity:
    id: str
    username: str


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    error: Optional[str] = None
    bot: Optional[BotIdentity] = None
    elapsed_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": self.ok}
        if self.error is not None:
            payload["error"] = self.error
        if self.bot is not None:
            payload["bot"] = {"id": self.bot.id, "username": self.bot.username}
        if self.elapsed_ms is not None:
            payload["elapsedMs"] = self.elapsed_ms
        return payload
