from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import Optional

import httpx

from ..core.exceptions import MediaUnavailable
from .ports import FetchedMedia, SavedMedia

MEDIA_CONTENT_TYPE_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "audio/mpeg": ".mp3",
    "audio/ogg": ".ogg",
    "audio/wav": ".wav",
    "video/mp4": ".mp4",
    "application/pdf": ".pdf",
    "text/plain": ".txt",
}


def normalize_mime_type(mime_type: Optional[str]) -> Optional[str]:
    if not mime_type:
        return None
    base = mime_type.lower().split(";", 1)[0].strip()
    return base or None


def extension_for(content_type: Optional[str]) -> str:
    return MEDIA_CONTENT_TYPE_EXTENSIONS.get(normalize_mime_type(content_type) or "", ".bin")


class LocalMediaStore:
    """Downloads attachments over HTTP and stores them under ``root``.

    Files land in ``root/<direction>/``. Downloads are streamed and abandoned
    as soon as they pass ``max_bytes``; buffers larger than the ``max_bytes``
    given to :meth:`save_buffer` are rejected as well. Both raise
    :class:`MediaUnavailable`.
    """

    def __init__(
        self,
        root: Path,
        *,
        max_bytes: Optional[int] = None,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._root = root
        self._max_bytes = max_bytes
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def root(self) -> Path:
        return self._root

    def _too_large(self, size: int) -> bool:
        return self._max_bytes is not None and size > self._max_bytes

    async def fetch_remote(self, url: str) -> FetchedMedia:
        chunks: list[bytes] = []
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    declared = response.headers.get("content-length", "")
                    if declared.isdigit() and self._too_large(int(declared)):
                        raise MediaUnavailable(
                            f"Media at {url} exceeds {self._max_bytes} bytes limit "
                            f"(declared {declared} bytes)"
                        )
                    received = 0
                    async for chunk in response.aiter_bytes():
                        received += len(chunk)
                        if self._too_large(received):
                            raise MediaUnavailable(
                                f"Media at {url} exceeds {self._max_bytes} bytes limit"
                            )
                        chunks.append(chunk)
                    content_type = response.headers.get("content-type")
        except httpx.HTTPError as exc:
            raise MediaUnavailable(f"Failed to fetch media {url}: {exc}") from exc
        return FetchedMedia(buffer=b"".join(chunks), content_type=content_type)

    async def save_buffer(
        self,
        buffer: bytes,
        content_type: Optional[str],
        direction: str,
        max_bytes: int,
    ) -> SavedMedia:
        if len(buffer) > max_bytes:
            raise MediaUnavailable(
                f"Media exceeds {max_bytes} bytes limit ({len(buffer)} bytes)"
            )
        target_dir = self._root / direction
        path = target_dir / f"{uuid.uuid4().hex}{extension_for(content_type)}"

        def _write() -> None:
            target_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(buffer)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise MediaUnavailable(f"Failed to store media at {path}: {exc}") from exc
        return SavedMedia(path=str(path), content_type=normalize_mime_type(content_type))
