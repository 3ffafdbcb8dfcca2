from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, Optional

import httpx

from .constants import FLUXER_API_BASE_URL
from .errors import FluxerAPIError, FluxerPermanentError, FluxerTransientError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class FluxerRestClient:
    def __init__(
        self,
        *,
        bot_token: str,
        timeout_seconds: float = 10.0,
        base_url: str = FLUXER_API_BASE_URL,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout_seconds, transport=transport
        )
        self._authorization_header = f"Bot {bot_token}"
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "FluxerRestClient":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    def _calculate_retry_delay(self, attempt: int) -> float:
        delay = self._retry_base_delay * (2**attempt) + random.uniform(0, 1)
        return float(min(delay, self._retry_max_delay))

    def _is_retryable_error(self, exc: Exception) -> bool:
        return isinstance(
            exc,
            (
                httpx.ConnectError,
                httpx.ReadError,
                httpx.WriteError,
                httpx.ConnectTimeout,
                httpx.ReadTimeout,
                httpx.WriteTimeout,
            ),
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        files: list[tuple[str, tuple[str, bytes, str]]] | None = None,
        expect_json: bool = True,
    ) -> Any:
        """Send one API request, retrying rate limits, 5xx and network errors.

        When ``files`` is given the request is multipart and ``payload`` is
        carried in the ``payload_json`` form field.
        """

        rate_limit_retries = 0
        retry_attempt = 0
        headers = {"Authorization": self._authorization_header}

        while True:
            try:
                if files:
                    data = {"payload_json": json.dumps(payload)} if payload else None
                    response = await self._client.request(
                        method, path, files=files, data=data, headers=headers
                    )
                else:
                    response = await self._client.request(
                        method, path, json=payload, headers=headers
                    )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status_code = exc.response.status_code
                if status_code == 429:
                    retry_after_raw = exc.response.headers.get("Retry-After")
                    if (
                        retry_after_raw is not None
                        and rate_limit_retries < self._max_retries
                    ):
                        rate_limit_retries += 1
                        try:
                            retry_after = max(float(retry_after_raw), 0.0)
                        except ValueError:
                            retry_after = 0.0
                        logger.info(
                            "Fluxer rate limited on %s %s, retrying after %.1fs (attempt %d)",
                            method,
                            path,
                            retry_after,
                            rate_limit_retries,
                        )
                        await asyncio.sleep(retry_after)
                        continue
                    raise FluxerTransientError(
                        f"Fluxer API rate limit exceeded for {method} {path}",
                        status_code=status_code,
                    ) from exc

                body_preview = (
                    (exc.response.text or "").strip().replace("\n", " ")[:200]
                )
                if 500 <= status_code < 600:
                    if retry_attempt < self._max_retries:
                        retry_attempt += 1
                        delay = self._calculate_retry_delay(retry_attempt)
                        logger.warning(
                            "Fluxer server error %d on %s %s, retrying in %.1fs (attempt %d/%d)",
                            status_code,
                            method,
                            path,
                            delay,
                            retry_attempt,
                            self._max_retries,
                        )
                        await asyncio.sleep(delay)
                        continue
                    raise FluxerTransientError(
                        f"Fluxer API server error for {method} {path}: "
                        f"status={status_code} body={body_preview!r}",
                        status_code=status_code,
                    ) from exc
                if status_code in {401, 403}:
                    raise FluxerPermanentError(
                        f"Fluxer API authentication failure for {method} {path}: "
                        f"status={status_code} body={body_preview!r}",
                        status_code=status_code,
                    ) from exc
                raise FluxerAPIError(
                    f"Fluxer API request failed for {method} {path}: "
                    f"status={status_code} body={body_preview!r}",
                    status_code=status_code,
                ) from exc
            except httpx.HTTPError as exc:
                if self._is_retryable_error(exc) and retry_attempt < self._max_retries:
                    retry_attempt += 1
                    delay = self._calculate_retry_delay(retry_attempt)
                    logger.warning(
                        "Fluxer network error on %s %s: %s, retrying in %.1fs (attempt %d/%d)",
                        method,
                        path,
                        type(exc).__name__,
                        delay,
                        retry_attempt,
                        self._max_retries,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise FluxerTransientError(
                    f"Fluxer API network error for {method} {path}: {exc}"
                ) from exc

            if not expect_json or not response.content:
                return {} if expect_json else None
            try:
                return response.json()
            except ValueError as exc:
                raise FluxerAPIError(
                    f"Fluxer API returned non-JSON success response for {method} {path}"
                ) from exc

    async def get_gateway_bot(self) -> dict[str, Any]:
        payload = await self._request("GET", "/gateway/bot")
        return payload if isinstance(payload, dict) else {}

    async def get_current_user(self) -> dict[str, Any]:
        payload = await self._request("GET", "/users/@me")
        return payload if isinstance(payload, dict) else {}

    async def get_channel(self, *, channel_id: str) -> dict[str, Any]:
        payload = await self._request("GET", f"/channels/{channel_id}")
        return payload if isinstance(payload, dict) else {}

    async def create_dm_channel(self, *, recipient_id: str) -> dict[str, Any]:
        payload = await self._request(
            "POST", "/users/@me/channels", payload={"recipient_id": recipient_id}
        )
        return payload if isinstance(payload, dict) else {}

    async def create_channel_message(
        self,
        *,
        channel_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/channels/{channel_id}/messages",
            payload=payload,
        )
        return response if isinstance(response, dict) else {}

    async def create_channel_message_with_attachment(
        self,
        *,
        channel_id: str,
        data: bytes,
        filename: str,
        content_type: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        files = [
            ("files[0]", (filename, data, content_type or DEFAULT_CONTENT_TYPE)),
        ]
        response = await self._request(
            "POST",
            f"/channels/{channel_id}/messages",
            payload=payload or None,
            files=files,
        )
        return response if isinstance(response, dict) else {}

    async def trigger_typing(self, *, channel_id: str) -> None:
        await self._request(
            "POST",
            f"/channels/{channel_id}/typing",
            payload={},
            expect_json=False,
        )

    async def download(self, url: str) -> tuple[bytes, Optional[str]]:
        """Fetch an absolute URL without API credentials."""

        try:
            response = await self._client.get(url, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise FluxerAPIError(
                f"Fluxer media download failed for {url}: "
                f"status={exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise FluxerTransientError(
                f"Fluxer media download network error for {url}: {exc}"
            ) from exc
        return response.content, response.headers.get("content-type")
