"""Host collaborator contracts consumed by the Fluxer channel.

The channel never talks to the agent host directly; everything it needs
(pairing approvals, mention patterns, media storage, routing, reply
dispatch, system events) arrives through the narrow protocols below.
Which collaborators a host provides is probed once, when the session is
set up, into :class:`ChannelCapabilities`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Mapping,
    Optional,
    Pattern,
    Protocol,
    Sequence,
    runtime_checkable,
)

from .models import DispatchEnvelope, ReplyPayload


@dataclass(frozen=True)
class PairingRequest:
    code: str
    created: bool


@dataclass(frozen=True)
class FetchedMedia:
    buffer: bytes
    content_type: Optional[str] = None


@dataclass(frozen=True)
class SavedMedia:
    path: str
    content_type: Optional[str] = None


@dataclass(frozen=True)
class RouteRequest:
    channel: str
    account_id: str
    peer_kind: str
    peer_id: str


@dataclass(frozen=True)
class ResolvedRoute:
    session_key: str
    account_id: Optional[str] = None


DeliverCallback = Callable[[ReplyPayload], Awaitable[None]]
ErrorCallback = Callable[[BaseException, str], None]


@dataclass(frozen=True)
class DispatcherOptions:
    deliver: DeliverCallback
    on_error: ErrorCallback


@runtime_checkable
class PairingStore(Protocol):
    async def read_allowlist(self, channel: str) -> Sequence[str]: ...

    async def upsert_pairing_request(
        self, channel: str, sender_id: str, meta: Mapping[str, Any]
    ) -> PairingRequest: ...


@runtime_checkable
class MentionMatcher(Protocol):
    def build_patterns(self, config: Mapping[str, Any]) -> Sequence[Pattern[str]]: ...

    def matches(self, text: str, patterns: Sequence[Pattern[str]]) -> bool: ...


@runtime_checkable
class MediaFetcher(Protocol):
    async def fetch_remote(self, url: str) -> FetchedMedia: ...

    async def save_buffer(
        self,
        buffer: bytes,
        content_type: Optional[str],
        direction: str,
        max_bytes: int,
    ) -> SavedMedia: ...


@runtime_checkable
class RoutingResolver(Protocol):
    def resolve_route(self, request: RouteRequest) -> ResolvedRoute: ...


@runtime_checkable
class ReplyDispatcher(Protocol):
    async def dispatch(
        self,
        envelope: DispatchEnvelope,
        config: Mapping[str, Any],
        options: DispatcherOptions,
    ) -> None: ...


@runtime_checkable
class SystemEventSink(Protocol):
    def enqueue(self, text: str, *, session_key: str) -> None: ...


@runtime_checkable
class RuntimeErrorReporter(Protocol):
    def error(self, message: str) -> None: ...


@runtime_checkable
class EnvelopeFormatter(Protocol):
    def format(
        self, *, channel: str, from_label: str, timestamp: int, body: str
    ) -> str: ...


def _present(candidate: Any, protocol: type) -> Any:
    if candidate is None:
        return None
    return candidate if isinstance(candidate, protocol) else None


@dataclass(frozen=True)
class ChannelCapabilities:
    """Optional host collaborators, resolved once per session."""

    pairing_store: Optional[PairingStore] = None
    mention_matcher: Optional[MentionMatcher] = None
    media_fetcher: Optional[MediaFetcher] = None
    routing_resolver: Optional[RoutingResolver] = None
    block_dispatcher: Optional[ReplyDispatcher] = None
    message_dispatcher: Optional[ReplyDispatcher] = None
    system_events: Optional[SystemEventSink] = None
    error_reporter: Optional[RuntimeErrorReporter] = None
    envelope_formatter: Optional[EnvelopeFormatter] = None

    @classmethod
    def probe(cls, runtime: Any) -> "ChannelCapabilities":
        """Capture the collaborators ``runtime`` actually implements.

        Attributes that are missing or do not satisfy their protocol are
        recorded as absent.
        """

        if runtime is None:
            return cls()
        return cls(
            pairing_store=_present(
                getattr(runtime, "pairing_store", None), PairingStore
            ),
            mention_matcher=_present(
                getattr(runtime, "mention_matcher", None), MentionMatcher
            ),
            media_fetcher=_present(
                getattr(runtime, "media_fetcher", None), MediaFetcher
            ),
            routing_resolver=_present(
                getattr(runtime, "routing_resolver", None), RoutingResolver
            ),
            block_dispatcher=_present(
                getattr(runtime, "block_dispatcher", None), ReplyDispatcher
            ),
            message_dispatcher=_present(
                getattr(runtime, "message_dispatcher", None), ReplyDispatcher
            ),
            system_events=_present(
                getattr(runtime, "system_events", None), SystemEventSink
            ),
            error_reporter=_present(
                getattr(runtime, "error_reporter", None), RuntimeErrorReporter
            ),
            envelope_formatter=_present(
                getattr(runtime, "envelope_formatter", None), EnvelopeFormatter
            ),
        )
