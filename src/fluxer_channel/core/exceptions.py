"""Shared error taxonomy for the channel adapter.

Every adapter-specific error derives from :class:`FluxerChannelError` so
callers can separate expected integration failures from programming
errors. Transient/permanent markers drive retry decisions in the
transport layer.
"""

from __future__ import annotations

from typing import Optional


class FluxerChannelError(Exception):
    """Base error for the channel adapter."""

    recoverable: bool = True
    severity: str = "warning"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class ConfigurationError(FluxerChannelError):
    """Missing or invalid configuration; fatal at startup."""

    recoverable = False
    severity = "error"


class TransportError(FluxerChannelError):
    """HTTP or gateway failure for a single call."""


class TransientError(TransportError):
    """Retryable transport failure (rate limits, network issues)."""


class PermanentError(TransportError):
    """Non-retryable transport failure (auth, invalid requests)."""

    recoverable = False
    severity = "error"


class MediaUnavailable(FluxerChannelError):
    """Inbound media could not be fetched or stored."""


class DispatchExhausted(FluxerChannelError):
    """Every dispatch stage failed for a message."""

    def __init__(self, message: str, *, errors: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])
