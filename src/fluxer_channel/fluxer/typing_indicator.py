from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from ..core.logging_utils import log_event
from .constants import TYPING_EXPIRY_SECONDS, TYPING_REFRESH_SECONDS

SendTyping = Callable[[str], Awaitable[None]]


class TypingIndicator:
    """Keeps the platform typing state alive for one message.

    ``start`` sends a signal immediately and then every ``interval_seconds``
    from a task owned by this object; ``stop`` cancels and joins that task.
    """

    def __init__(
        self,
        send_typing: SendTyping,
        *,
        interval_seconds: float = TYPING_REFRESH_SECONDS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if interval_seconds <= 0 or interval_seconds >= TYPING_EXPIRY_SECONDS:
            raise ValueError(
                f"typing interval must be in (0, {TYPING_EXPIRY_SECONDS}) seconds"
            )
        self._send_typing = send_typing
        self._interval_seconds = interval_seconds
        self._logger = logger or logging.getLogger(__name__)
        self._task: Optional[asyncio.Task[None]] = None
        self._active = False
        self._conversation_id: Optional[str] = None

    @property
    def active(self) -> bool:
        return self._active

    async def start(self, conversation_id: str) -> None:
        if self._active:
            return
        self._active = True
        self._conversation_id = conversation_id
        await self._send_once()
        self._task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        self._active = False
        task = self._task
        self._task = None
        if task is None:
            return
        if not task.done():
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @contextlib.asynccontextmanager
    async def session(self, conversation_id: str) -> AsyncIterator["TypingIndicator"]:
        try:
            await self.start(conversation_id)
            yield self
        finally:
            await self.stop()

    async def _refresh_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self._interval_seconds)
            if not self._active:
                return
            await self._send_once()

    async def _send_once(self) -> None:
        conversation_id = self._conversation_id
        if conversation_id is None:
            return
        try:
            await self._send_typing(conversation_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "fluxer.typing.failed",
                conversation_id=conversation_id,
                exc=exc,
            )
