"""Fluxer channel integration."""

from .channel import (
    CHANNEL_CAPABILITIES,
    CHANNEL_META,
    TEXT_CHUNK_LIMIT,
    FluxerAccount,
    apply_account_config,
    build_account_snapshot,
    collect_status_issues,
    describe_account,
    format_allow_from,
    is_configured,
    looks_like_id,
    notify_approval,
    resolve_account,
    resolve_allow_from,
    send_media,
    send_text,
    start_account,
    validate_setup_input,
)
from .config import FluxerChannelConfig, FluxerDmConfig
from .constants import (
    FLUXER_API_BASE_URL,
    FLUXER_CHANNEL_ID,
    FLUXER_GATEWAY_URL,
    FLUXER_MAX_MESSAGE_LENGTH,
)
from .errors import (
    FluxerAPIError,
    FluxerConfigError,
    FluxerGatewayHalted,
    FluxerPermanentError,
    FluxerTransientError,
)
from .gateway import FluxerGatewayClient, GatewayListener
from .models import AccessDecision, DispatchEnvelope, InboundMessage
from .outbound import OutboundDelivery, normalize_target, probe_bot
from .pipeline import InboundPipeline
from .policy import AccessPolicy
from .ports import ChannelCapabilities
from .rest import FluxerRestClient
from .session import ConnectionSession, RuntimeStatus
from .typing_indicator import TypingIndicator

__all__ = [
    "CHANNEL_CAPABILITIES",
    "CHANNEL_META",
    "FLUXER_API_BASE_URL",
    "FLUXER_CHANNEL_ID",
    "FLUXER_GATEWAY_URL",
    "FLUXER_MAX_MESSAGE_LENGTH",
    "TEXT_CHUNK_LIMIT",
    "FluxerAccount",
    "FluxerChannelConfig",
    "FluxerDmConfig",
    "FluxerConfigError",
    "FluxerAPIError",
    "FluxerTransientError",
    "FluxerPermanentError",
    "FluxerGatewayHalted",
    "FluxerRestClient",
    "FluxerGatewayClient",
    "GatewayListener",
    "AccessDecision",
    "AccessPolicy",
    "ChannelCapabilities",
    "ConnectionSession",
    "RuntimeStatus",
    "DispatchEnvelope",
    "InboundMessage",
    "InboundPipeline",
    "OutboundDelivery",
    "TypingIndicator",
    "normalize_target",
    "probe_bot",
    "resolve_account",
    "describe_account",
    "is_configured",
    "resolve_allow_from",
    "format_allow_from",
    "looks_like_id",
    "validate_setup_input",
    "apply_account_config",
    "collect_status_issues",
    "build_account_snapshot",
    "notify_approval",
    "send_text",
    "send_media",
    "start_account",
]
