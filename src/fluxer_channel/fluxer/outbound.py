from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from ..core.logging_utils import log_event
from .constants import DEFAULT_PROBE_TIMEOUT_MS, FLUXER_API_BASE_URL
from .models import BotIdentity, ProbeResult, SendResult
from .rest import FluxerRestClient

USER_TARGET_PREFIX = "user:"


def normalize_target(raw: str) -> Optional[str]:
    """Strip ``fluxer:``/``channel:`` prefixes; keep ``user:`` addressing."""

    normalized = raw.strip()
    if normalized.startswith("fluxer:"):
        normalized = normalized[len("fluxer:") :].strip()
    if normalized.lower().startswith("channel:"):
        normalized = normalized[len("channel:") :].strip()
    return normalized or None


def _is_remote_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def _filename_from_url(url: str) -> str:
    name = PurePosixPath(urlparse(url).path).name
    return name or "file"


class OutboundDelivery:
    """Sends text, media and typing signals through one shared REST handle."""

    def __init__(
        self,
        rest_client: FluxerRestClient,
        *,
        logger: Optional[logging.Logger] = None,
        on_sent: Optional[Callable[[], None]] = None,
    ) -> None:
        self._rest = rest_client
        self._logger = logger or logging.getLogger(__name__)
        self._on_sent = on_sent

    @property
    def rest(self) -> FluxerRestClient:
        return self._rest

    async def open_dm_channel(self, user_id: str) -> str:
        channel = await self._rest.create_dm_channel(recipient_id=user_id)
        channel_id = channel.get("id")
        if not isinstance(channel_id, str) or not channel_id:
            raise ValueError(f"DM channel response for user {user_id} missing id")
        return channel_id

    async def resolve_channel_id(self, target: str) -> str:
        if target.startswith(USER_TARGET_PREFIX):
            return await self.open_dm_channel(target[len(USER_TARGET_PREFIX) :])
        return target

    async def send_message(
        self,
        target: str,
        text: str,
        *,
        reply_to: Optional[str] = None,
        media_url: Optional[str] = None,
    ) -> SendResult:
        channel_id = await self.resolve_channel_id(target)

        body: dict[str, Any] = {}
        if text:
            body["content"] = text
        if reply_to:
            body["message_reference"] = {"message_id": reply_to}

        if media_url:
            data, filename, content_type = await self._load_media(media_url)
            result = await self._rest.create_channel_message_with_attachment(
                channel_id=channel_id,
                data=data,
                filename=filename,
                content_type=content_type,
                payload=body,
            )
        else:
            result = await self._rest.create_channel_message(
                channel_id=channel_id, payload=body
            )

        if self._on_sent is not None:
            self._on_sent()
        log_event(
            self._logger,
            logging.DEBUG,
            "fluxer.outbound.sent",
            channel_id=channel_id,
            reply_to=reply_to,
            has_media=bool(media_url),
        )
        message_id = result.get("id")
        result_channel = result.get("channel_id")
        return SendResult(
            message_id=message_id if isinstance(message_id, str) else None,
            channel_id=result_channel if isinstance(result_channel, str) else None,
        )

    async def _load_media(self, media_url: str) -> tuple[bytes, str, Optional[str]]:
        if _is_remote_url(media_url):
            data, content_type = await self._rest.download(media_url)
            return data, _filename_from_url(media_url), content_type
        path = Path(media_url).expanduser()
        data = await asyncio.to_thread(path.read_bytes)
        return data, path.name, None

    async def trigger_typing(self, channel_id: str) -> None:
        await self._rest.trigger_typing(channel_id=channel_id)

    async def fetch_channel(self, channel_id: str) -> Optional[dict[str, Any]]:
        try:
            channel = await self._rest.get_channel(channel_id=channel_id)
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "fluxer.outbound.fetch_channel_failed",
                channel_id=channel_id,
                exc=exc,
            )
            return None
        return channel or None


async def probe_bot(
    token: str,
    timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
    *,
    base_url: str = FLUXER_API_BASE_URL,
    rest_factory: Callable[..., FluxerRestClient] = FluxerRestClient,
) -> ProbeResult:
    """Fetch ``/users/@me`` with a hard deadline; never raises."""

    started = time.monotonic()
    try:
        async with rest_factory(
            bot_token=token, base_url=base_url, max_retries=0
        ) as rest:
            user = await asyncio.wait_for(
                rest.get_current_user(), timeout=timeout_ms / 1000.0
            )
    except asyncio.TimeoutError:
        return ProbeResult(ok=False, error=f"probe timed out after {timeout_ms}ms")
    except Exception as exc:
        return ProbeResult(ok=False, error=str(exc) or type(exc).__name__)
    elapsed_ms = int((time.monotonic() - started) * 1000)
    user_id = user.get("id")
    username = user.get("username")
    if not isinstance(user_id, str) or not isinstance(username, str):
        return ProbeResult(
            ok=False, error="probe response missing user id", elapsed_ms=elapsed_ms
        )
    return ProbeResult(
        ok=True,
        bot=BotIdentity(id=user_id, username=username),
        elapsed_ms=elapsed_ms,
    )
