from __future__ import annotations

FLUXER_CHANNEL_ID = "fluxer"
FLUXER_CHANNEL_LABEL = "Fluxer"
FLUXER_API_BASE_URL = "https://api.fluxer.app/v1"
FLUXER_GATEWAY_URL = "wss://gateway.fluxer.app/?v=1&encoding=json"
FLUXER_TOKEN_ENV = "FLUXER_BOT_TOKEN"
DEFAULT_ACCOUNT_ID = "default"

# Platform hard limit for message content.
FLUXER_MAX_MESSAGE_LENGTH = 2000

# Typing state expires after ~10s on the platform; refresh well before that.
TYPING_EXPIRY_SECONDS = 10.0
TYPING_REFRESH_SECONDS = 5.0

STARTUP_GRACE_MS = 10_000
DEFAULT_MEDIA_MAX_MB = 25
DEFAULT_PROBE_TIMEOUT_MS = 5000
START_PROBE_TIMEOUT_MS = 3000

ALLOWLIST_WILDCARD = "*"
DIRECT_SESSION_KEY = "agent:main:main"

GROUP_SYSTEM_EVENT_PREVIEW_CHARS = 160
FALLBACK_SYSTEM_EVENT_PREVIEW_CHARS = 500

PAIRING_APPROVED_MESSAGE = (
    "✅ OpenClaw access approved. Send a message to start chatting."
)
