from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, Mapping, Optional, Pattern, Sequence

from ..core.logging_utils import log_event
from .config import FluxerChannelConfig
from .constants import ALLOWLIST_WILDCARD, FLUXER_CHANNEL_ID
from .models import AccessDecision, InboundMessage, SessionIdentity
from .ports import MentionMatcher, PairingStore

SendReply = Callable[[str, str], Awaitable[Any]]


def self_mention_pattern(self_user_id: str) -> Pattern[str]:
    return re.compile(rf"<@!?{re.escape(self_user_id)}>", re.IGNORECASE)


def strip_self_mention(text: str, identity: Optional[SessionIdentity]) -> str:
    if identity is None:
        return text
    pattern = re.compile(
        rf"<@!?{re.escape(identity.self_user_id)}>\s*", re.IGNORECASE
    )
    return pattern.sub("", text).strip()


def allowlist_allows(sender_id: str, allow_from: Sequence[str]) -> bool:
    return any(entry == sender_id or entry == ALLOWLIST_WILDCARD for entry in allow_from)


def format_pairing_reply(code: str) -> str:
    return "\n".join(
        [
            "🦐 OpenClaw: access not configured.",
            "",
            f"Pairing code: `{code}`",
            "",
            "Ask the bot owner to approve:",
            f"`openclaw pairing approve {FLUXER_CHANNEL_ID} <code>`",
        ]
    )


class AccessPolicy:
    """Decides whether an inbound message may reach the agent.

    Direct conversations follow ``dm.policy``; everything else follows
    ``groupPolicy`` plus mention gating. The merged allowlist is re-read on
    every decision so approvals written to the pairing store apply to the
    very next message.
    """

    def __init__(
        self,
        config: FluxerChannelConfig,
        *,
        identity: Callable[[], Optional[SessionIdentity]],
        send_reply: SendReply,
        pairing_store: Optional[PairingStore] = None,
        mention_matcher: Optional[MentionMatcher] = None,
        host_config: Optional[Mapping[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config
        self._identity = identity
        self._send_reply = send_reply
        self._pairing_store = pairing_store
        self._mention_matcher = mention_matcher
        self._logger = logger or logging.getLogger(__name__)
        self._mention_patterns: Sequence[Pattern[str]] = ()
        if mention_matcher is not None:
            try:
                self._mention_patterns = tuple(
                    mention_matcher.build_patterns(host_config or {})
                )
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "fluxer.mentions.build_failed",
                    exc=exc,
                )

    async def read_allowlist(self) -> list[str]:
        merged = list(self._config.dm.allow_from)
        if self._pairing_store is None:
            return merged
        try:
            stored = await self._pairing_store.read_allowlist(FLUXER_CHANNEL_ID)
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "fluxer.pairing.allowlist_unavailable",
                exc=exc,
            )
            return merged
        merged.extend(str(entry) for entry in stored or ())
        return merged

    async def is_allowed(self, sender_id: str) -> bool:
        return allowlist_allows(sender_id, await self.read_allowlist())

    def is_mentioned(self, text: str) -> bool:
        identity = self._identity()
        if identity is not None and self_mention_pattern(identity.self_user_id).search(
            text
        ):
            return True
        if self._mention_matcher is None:
            return False
        try:
            return bool(self._mention_matcher.matches(text, self._mention_patterns))
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "fluxer.mentions.match_failed",
                exc=exc,
            )
            return False

    async def decide(self, message: InboundMessage) -> AccessDecision:
        if message.is_direct:
            return await self._decide_direct(message)
        return self._decide_group(message)

    async def _decide_direct(self, message: InboundMessage) -> AccessDecision:
        policy = self._config.dm.policy
        if policy == "disabled":
            return AccessDecision.DENIED
        if policy == "open":
            return AccessDecision.ALLOWED
        if await self.is_allowed(message.sender_id):
            return AccessDecision.ALLOWED
        if policy == "pairing" and await self._issue_pairing_challenge(message):
            return AccessDecision.CHALLENGE_ISSUED
        log_event(
            self._logger,
            logging.INFO,
            "fluxer.policy.dm_denied",
            sender_id=message.sender_id,
            policy=policy,
        )
        return AccessDecision.DENIED

    def _decide_group(self, message: InboundMessage) -> AccessDecision:
        if self._config.group_policy == "disabled":
            return AccessDecision.DENIED
        if not self.is_mentioned(message.text.strip()):
            return AccessDecision.DENIED
        return AccessDecision.ALLOWED

    async def _issue_pairing_challenge(self, message: InboundMessage) -> bool:
        """Record a pairing request and send its code once.

        Returns ``False`` when no pending request could be recorded or its
        code could not be delivered.
        """

        if self._pairing_store is None:
            return False
        try:
            request = await self._pairing_store.upsert_pairing_request(
                FLUXER_CHANNEL_ID,
                message.sender_id,
                {"name": message.sender_name},
            )
            if request.created:
                await self._send_reply(
                    message.conversation_id, format_pairing_reply(request.code)
                )
                log_event(
                    self._logger,
                    logging.INFO,
                    "fluxer.pairing.requested",
                    sender_id=message.sender_id,
                    conversation_id=message.conversation_id,
                )
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "fluxer.pairing.reply_failed",
                sender_id=message.sender_id,
                exc=exc,
            )
            return False
        return True
