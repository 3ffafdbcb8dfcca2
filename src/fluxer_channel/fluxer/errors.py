from __future__ import annotations

from typing import Optional

from ..core.exceptions import (
    ConfigurationError,
    PermanentError,
    TransientError,
    TransportError,
)


class FluxerConfigError(ConfigurationError):
    """Fluxer channel configuration error."""


class FluxerAPIError(TransportError):
    """Fluxer API request error."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        user_message: Optional[str] = None,
    ) -> None:
        if user_message is None:
            user_message = "Fluxer API error."
        super().__init__(message, user_message=user_message)
        self.status_code = status_code
        self.retry_after = retry_after


class FluxerTransientError(FluxerAPIError, TransientError):
    """Retryable Fluxer API error (rate limits, network issues)."""


class FluxerPermanentError(FluxerAPIError, PermanentError):
    """Non-retryable Fluxer API error (bad token, invalid requests)."""

    recoverable = PermanentError.recoverable
    severity = PermanentError.severity


class FluxerGatewayHalted(FluxerPermanentError):
    """The gateway refused the session; reconnecting cannot succeed."""

    def __init__(self, message: str, *, close_code: Optional[int] = None) -> None:
        super().__init__(message, user_message="Fluxer gateway rejected the bot.")
        self.close_code = close_code
