"""Inbound message pipeline.

Every MESSAGE_CREATE event runs through the same ordered checks; the first
check that rejects the message ends processing:

1. messages from this bot or any other bot are dropped,
2. backlog older than the startup grace window is dropped,
3. messages with neither text nor attachments are dropped,
4. the access policy (DM policy, or group policy plus mention gating),

after which the first attachment is materialized, the session key is
resolved, the body is cleaned, and the envelope is handed to the dispatch
stages in order until one succeeds. The typing indicator runs for the
whole dispatch and is stopped on every exit path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from ..core.exceptions import DispatchExhausted
from ..core.logging_utils import log_event
from .config import FluxerChannelConfig
from .constants import (
    DIRECT_SESSION_KEY,
    FALLBACK_SYSTEM_EVENT_PREVIEW_CHARS,
    FLUXER_CHANNEL_ID,
    FLUXER_CHANNEL_LABEL,
    GROUP_SYSTEM_EVENT_PREVIEW_CHARS,
    STARTUP_GRACE_MS,
)
from .models import DispatchEnvelope, InboundMessage, ReplyPayload, SessionIdentity
from .outbound import OutboundDelivery
from .policy import AccessPolicy, strip_self_mention
from .ports import (
    ChannelCapabilities,
    DispatcherOptions,
    ReplyDispatcher,
    RouteRequest,
    SystemEventSink,
)
from .typing_indicator import TypingIndicator

STATUS_SUPPRESSED = "suppressed"
STATUS_STALE = "stale"
STATUS_EMPTY = "empty"
STATUS_DENIED = "denied"
STATUS_EXHAUSTED = "exhausted"
STATUS_FAILED = "failed"


def fallback_session_key(message: InboundMessage) -> str:
    if message.is_direct:
        return DIRECT_SESSION_KEY
    return f"agent:main:{FLUXER_CHANNEL_ID}:channel:{message.conversation_id}"


def system_event_text(sender_name: str, body: str, limit: int) -> str:
    return f"{FLUXER_CHANNEL_LABEL} message from {sender_name}: {body[:limit]}"


@dataclass(frozen=True)
class DispatchAttempt:
    message: InboundMessage
    envelope: DispatchEnvelope
    options: DispatcherOptions


class DispatchStage(Protocol):
    name: str

    async def run(self, attempt: DispatchAttempt) -> None: ...


class ReplyDispatcherStage:
    """Hands the envelope to a buffered reply dispatcher."""

    def __init__(
        self,
        name: str,
        dispatcher: ReplyDispatcher,
        *,
        host_config: Mapping[str, Any],
        announce_to: Optional[SystemEventSink] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.name = name
        self._dispatcher = dispatcher
        self._host_config = host_config
        self._announce_to = announce_to
        self._logger = logger or logging.getLogger(__name__)

    async def run(self, attempt: DispatchAttempt) -> None:
        await self._dispatcher.dispatch(
            attempt.envelope, self._host_config, attempt.options
        )
        if self._announce_to is None or attempt.message.is_direct:
            return
        # The reply already went out; a failed announcement must not
        # trigger the next stage.
        try:
            self._announce_to.enqueue(
                system_event_text(
                    attempt.message.sender_name,
                    attempt.envelope.body_for_agent,
                    GROUP_SYSTEM_EVENT_PREVIEW_CHARS,
                ),
                session_key=attempt.envelope.session_key,
            )
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "fluxer.system_event.failed",
                stage=self.name,
                exc=exc,
            )


class SystemEventStage:
    """Last resort: surface the message as a system event, no reply."""

    name = "system_event"

    def __init__(self, sink: SystemEventSink) -> None:
        self._sink = sink

    async def run(self, attempt: DispatchAttempt) -> None:
        self._sink.enqueue(
            system_event_text(
                attempt.message.sender_name,
                attempt.envelope.body_for_agent,
                FALLBACK_SYSTEM_EVENT_PREVIEW_CHARS,
            ),
            session_key=attempt.envelope.session_key,
        )


def build_dispatch_stages(
    capabilities: ChannelCapabilities,
    *,
    host_config: Mapping[str, Any],
    logger: Optional[logging.Logger] = None,
) -> tuple[DispatchStage, ...]:
    stages: list[DispatchStage] = []
    if capabilities.block_dispatcher is not None:
        stages.append(
            ReplyDispatcherStage(
                "block",
                capabilities.block_dispatcher,
                host_config=host_config,
                announce_to=capabilities.system_events,
                logger=logger,
            )
        )
    if capabilities.message_dispatcher is not None:
        stages.append(
            ReplyDispatcherStage(
                "buffered",
                capabilities.message_dispatcher,
                host_config=host_config,
                logger=logger,
            )
        )
    if capabilities.system_events is not None:
        stages.append(SystemEventStage(capabilities.system_events))
    return tuple(stages)


class InboundPipeline:
    def __init__(
        self,
        *,
        config: FluxerChannelConfig,
        policy: AccessPolicy,
        outbound: OutboundDelivery,
        capabilities: ChannelCapabilities,
        identity: Callable[[], Optional[SessionIdentity]],
        startup_ms: int,
        account_id: str,
        stages: Sequence[DispatchStage],
        grace_ms: int = STARTUP_GRACE_MS,
        typing_factory: Optional[Callable[[], TypingIndicator]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config
        self._policy = policy
        self._outbound = outbound
        self._capabilities = capabilities
        self._identity = identity
        self._startup_ms = startup_ms
        self._grace_ms = grace_ms
        self._account_id = account_id
        self._stages = tuple(stages)
        self._logger = logger or logging.getLogger(__name__)
        self._typing_factory = typing_factory or (
            lambda: TypingIndicator(self._outbound.trigger_typing, logger=self._logger)
        )

    @property
    def stages(self) -> tuple[DispatchStage, ...]:
        return self._stages

    async def handle(self, message: InboundMessage) -> str:
        identity = self._identity()
        if message.is_bot:
            return STATUS_SUPPRESSED
        if identity is not None and message.sender_id == identity.self_user_id:
            return STATUS_SUPPRESSED
        if message.timestamp < self._startup_ms - self._grace_ms:
            return STATUS_STALE

        body_text = message.text.strip()
        if not body_text and not message.attachments:
            return STATUS_EMPTY

        try:
            decision = await self._policy.decide(message)
            if not decision.allowed:
                return STATUS_DENIED
            return await self._process(message, body_text, identity)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "fluxer.handler.failed",
                message_id=message.id,
                conversation_id=message.conversation_id,
                exc=exc,
            )
            reporter = self._capabilities.error_reporter
            if reporter is not None:
                try:
                    reporter.error(f"{FLUXER_CHANNEL_ID} handler failed: {exc}")
                except Exception as report_exc:
                    log_event(
                        self._logger,
                        logging.DEBUG,
                        "fluxer.handler.report_failed",
                        exc=report_exc,
                    )
            return STATUS_FAILED

    async def _process(
        self,
        message: InboundMessage,
        body_text: str,
        identity: Optional[SessionIdentity],
    ) -> str:
        media_path = await self._materialize_media(message)
        session_key, account_id = self._resolve_session(message)
        clean_body = strip_self_mention(body_text, identity)

        typing = self._typing_factory()
        async with typing.session(message.conversation_id):
            envelope = self._build_envelope(
                message,
                body_text=body_text,
                clean_body=clean_body,
                session_key=session_key,
                account_id=account_id,
                media_path=media_path,
            )
            attempt = DispatchAttempt(
                message=message,
                envelope=envelope,
                options=DispatcherOptions(
                    deliver=self._deliver_callback(message),
                    on_error=self._on_reply_error,
                ),
            )
            return await self._run_stages(attempt)

    async def _materialize_media(self, message: InboundMessage) -> Optional[str]:
        fetcher = self._capabilities.media_fetcher
        if fetcher is None or not message.attachments:
            return None
        # Only the first attachment is materialized.
        attachment = message.attachments[0]
        try:
            fetched = await fetcher.fetch_remote(attachment.url)
            saved = await fetcher.save_buffer(
                fetched.buffer,
                fetched.content_type or attachment.content_type,
                "inbound",
                self._config.media_max_bytes,
            )
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "fluxer.media.download_failed",
                message_id=message.id,
                url=attachment.url,
                exc=exc,
            )
            return None
        return saved.path

    def _resolve_session(self, message: InboundMessage) -> tuple[str, str]:
        resolver = self._capabilities.routing_resolver
        if resolver is None:
            return fallback_session_key(message), self._account_id
        try:
            route = resolver.resolve_route(
                RouteRequest(
                    channel=FLUXER_CHANNEL_ID,
                    account_id=self._account_id,
                    peer_kind="direct" if message.is_direct else "channel",
                    peer_id=(
                        message.sender_id
                        if message.is_direct
                        else message.conversation_id
                    ),
                )
            )
            session_key = route.session_key
            if not session_key:
                raise ValueError("routing resolver returned an empty session key")
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "fluxer.routing.fallback",
                conversation_id=message.conversation_id,
                exc=exc,
            )
            return fallback_session_key(message), self._account_id
        return session_key, route.account_id or self._account_id

    def _build_envelope(
        self,
        message: InboundMessage,
        *,
        body_text: str,
        clean_body: str,
        session_key: str,
        account_id: str,
        media_path: Optional[str],
    ) -> DispatchEnvelope:
        from_label = (
            message.sender_name if message.is_direct else f"#{message.conversation_id}"
        )
        formatter = self._capabilities.envelope_formatter
        formatted_body: Optional[str] = None
        if formatter is not None:
            try:
                formatted_body = formatter.format(
                    channel=FLUXER_CHANNEL_LABEL,
                    from_label=from_label,
                    timestamp=message.timestamp,
                    body=clean_body,
                )
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.DEBUG,
                    "fluxer.envelope.format_failed",
                    exc=exc,
                )
        if formatted_body is None:
            formatted_body = (
                f"[{FLUXER_CHANNEL_LABEL} message from {from_label}]\n{clean_body}"
            )

        return DispatchEnvelope(
            body=formatted_body,
            body_for_agent=clean_body,
            raw_body=body_text,
            command_body=clean_body,
            from_=(
                f"{FLUXER_CHANNEL_ID}:{message.sender_id}"
                if message.is_direct
                else f"{FLUXER_CHANNEL_ID}:channel:{message.conversation_id}"
            ),
            to=message.conversation_id,
            session_key=session_key,
            account_id=account_id,
            chat_type="direct" if message.is_direct else "channel",
            conversation_label=from_label,
            sender_name=message.sender_name,
            sender_id=message.sender_id,
            sender_username=message.sender_name,
            group_subject=None if message.is_direct else message.conversation_id,
            provider=FLUXER_CHANNEL_ID,
            surface=FLUXER_CHANNEL_ID,
            was_mentioned=None if message.is_direct else True,
            message_sid=message.id,
            reply_to_id=message.referenced_message_id,
            timestamp=message.timestamp,
            media_path=media_path,
            media_url=media_path,
            originating_channel=FLUXER_CHANNEL_ID,
            originating_to=message.conversation_id,
        )

    def _deliver_callback(self, message: InboundMessage):
        reply_to = message.id if self._config.reply_to_enabled else None

        async def deliver(payload: ReplyPayload) -> None:
            await self._outbound.send_message(
                message.conversation_id,
                payload.text or "",
                reply_to=reply_to,
                media_url=payload.media_url,
            )

        return deliver

    def _on_reply_error(self, exc: BaseException, kind: str) -> None:
        log_event(
            self._logger,
            logging.WARNING,
            "fluxer.reply.failed",
            kind=kind,
            exc=exc,
        )

    async def _run_stages(self, attempt: DispatchAttempt) -> str:
        errors: list[str] = []
        for stage in self._stages:
            try:
                await stage.run(attempt)
            except Exception as exc:
                errors.append(f"{stage.name}: {exc}")
                log_event(
                    self._logger,
                    logging.WARNING,
                    "fluxer.dispatch.stage_failed",
                    stage=stage.name,
                    message_id=attempt.message.id,
                    exc=exc,
                )
                continue
            log_event(
                self._logger,
                logging.INFO,
                "fluxer.dispatch.delivered",
                stage=stage.name,
                conversation_id=attempt.message.conversation_id,
                session_key=attempt.envelope.session_key,
            )
            return f"dispatched:{stage.name}"

        exhausted = DispatchExhausted(
            f"no dispatch stage accepted message from {attempt.message.sender_name}",
            errors=errors,
        )
        log_event(
            self._logger,
            logging.WARNING,
            "fluxer.dispatch.exhausted",
            message_id=attempt.message.id,
            stages=[stage.name for stage in self._stages],
            errors=exhausted.errors,
            exc=exhausted,
        )
        return STATUS_EXHAUSTED
