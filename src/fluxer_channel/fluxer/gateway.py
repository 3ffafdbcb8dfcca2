"""Fluxer gateway transport.

One connection at a time: HELLO, then IDENTIFY (or RESUME when the previous
session can be continued), then a read loop that turns READY and
MESSAGE_CREATE dispatches into typed listener calls. A heartbeat task runs
beside the read loop and closes the socket when an ack goes missing, which
hands control back to the reconnect loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import platform
import random
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

from ..core.logging_utils import log_event
from .constants import FLUXER_GATEWAY_URL
from .decoding import decode_message_create, decode_ready, now_ms
from .errors import FluxerAPIError, FluxerGatewayHalted, FluxerPermanentError
from .models import InboundMessage, SessionIdentity
from .rest import FluxerRestClient

GATEWAY_QUERY = "v=1&encoding=json"
# Authentication failed, or the bot asked for intents it may not use.
FATAL_CLOSE_CODES = frozenset({4004, 4010, 4011, 4012, 4013, 4014})
# Invalid sequence / session timed out: the next handshake must IDENTIFY.
SESSION_RESET_CLOSE_CODES = frozenset({4007, 4009})
HEARTBEAT_MISSED_CLOSE_CODE = 4000
MAX_RECONNECT_DELAY_SECONDS = 30.0


class GatewayOp(IntEnum):
    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    RESUME = 6
    RECONNECT = 7
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11


class GatewayListener(Protocol):
    async def on_ready(self, identity: SessionIdentity) -> None: ...

    async def on_message(self, message: InboundMessage) -> None: ...


@dataclass(frozen=True)
class GatewayFrame:
    op: int
    d: Any = None
    s: Optional[int] = None
    t: Optional[str] = None

    @classmethod
    def decode(cls, raw: str | bytes) -> "GatewayFrame":
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise FluxerAPIError(f"Fluxer gateway sent invalid JSON: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("op"), int):
            raise FluxerAPIError(f"Malformed Fluxer gateway frame: {text[:200]!r}")
        seq = payload.get("s")
        event = payload.get("t")
        return cls(
            op=payload["op"],
            d=payload.get("d"),
            s=seq if isinstance(seq, int) else None,
            t=event if isinstance(event, str) else None,
        )


def _frame(op: GatewayOp, data: Any) -> dict[str, Any]:
    return {"op": int(op), "d": data}


def identify_frame(token: str, *, intents: int = 0) -> dict[str, Any]:
    return _frame(
        GatewayOp.IDENTIFY,
        {
            "token": token,
            "intents": intents,
            "properties": {
                "os": platform.system().lower() or "unknown",
                "browser": "fluxer-channel",
                "device": "fluxer-channel",
            },
            "presence": {
                "status": "online",
                "activities": [],
                "since": None,
                "afk": False,
            },
        },
    )


def resume_frame(token: str, session_id: str, sequence: Optional[int]) -> dict[str, Any]:
    return _frame(
        GatewayOp.RESUME, {"token": token, "session_id": session_id, "seq": sequence}
    )


def heartbeat_frame(sequence: Optional[int]) -> dict[str, Any]:
    return _frame(GatewayOp.HEARTBEAT, sequence)


def reconnect_delay(
    attempt: int, *, rand: Callable[[], float] = random.random
) -> float:
    """Seconds to wait before reconnect ``attempt``: 1 s doubling, +/-20%, max 30 s."""

    exponent = min(max(attempt, 0), 5)
    jitter = 0.8 + 0.4 * min(max(rand(), 0.0), 1.0)
    return min(float(2**exponent) * jitter, MAX_RECONNECT_DELAY_SECONDS)


def close_code_of(exc: BaseException) -> Optional[int]:
    for source in (getattr(exc, "rcvd", None), exc):
        code = getattr(source, "code", None)
        if isinstance(code, int):
            return code
    return None


def _with_query(url: str) -> str:
    return url if "?" in url else f"{url}?{GATEWAY_QUERY}"


class FluxerGatewayClient:
    """Keeps one bot connection to the Fluxer gateway alive.

    ``rest`` is the session's shared REST handle; it is used to discover the
    gateway URL and is never closed here. READY stores the session id and
    resume URL so that later reconnects send RESUME instead of IDENTIFY.
    """

    def __init__(
        self,
        *,
        rest: FluxerRestClient,
        bot_token: str,
        logger: logging.Logger,
        intents: int = 0,
        gateway_url: Optional[str] = None,
        clock: Callable[[], int] = now_ms,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._rest = rest
        self._bot_token = bot_token
        self._logger = logger
        self._intents = intents
        self._gateway_url = gateway_url
        self._discovered_url: Optional[str] = None
        self._clock = clock
        self._rand = rand
        self._sequence: Optional[int] = None
        self._session_id: Optional[str] = None
        self._resume_url: Optional[str] = None
        self._awaiting_ack = False
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._websocket: Any = None
        self._stop_event = asyncio.Event()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def can_resume(self) -> bool:
        return self._session_id is not None

    async def stop(self) -> None:
        self._stop_event.set()
        await self._cancel_heartbeat()
        websocket = self._websocket
        if websocket is not None:
            with contextlib.suppress(Exception):
                await websocket.close()

    async def run(self, listener: GatewayListener) -> None:
        """Stay connected until :meth:`stop` is called.

        Raises :class:`FluxerGatewayHalted` when the gateway or the REST API
        rejects the bot outright; every other failure is retried with backoff.
        """

        attempt = 0
        while not self._stop_event.is_set():
            established = False
            try:
                established = await self._connect_once(listener)
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as exc:
                self._on_closed(close_code_of(exc))
            except FluxerPermanentError as exc:
                log_event(
                    self._logger, logging.ERROR, "fluxer.gateway.halted", exc=exc
                )
                if isinstance(exc, FluxerGatewayHalted):
                    raise
                raise FluxerGatewayHalted(str(exc)) from exc
            except Exception as exc:
                log_event(self._logger, logging.WARNING, "fluxer.gateway.error", exc=exc)
            finally:
                self._websocket = None
                await self._cancel_heartbeat()

            if self._stop_event.is_set():
                break
            if established:
                attempt = 0
            delay = reconnect_delay(attempt, rand=self._rand)
            attempt += 1
            log_event(
                self._logger,
                logging.INFO,
                "fluxer.gateway.reconnecting",
                delay_seconds=round(delay, 2),
                resume=self.can_resume,
            )
            if await self._pause(delay):
                break

    def _on_closed(self, code: Optional[int]) -> None:
        if code in FATAL_CLOSE_CODES:
            log_event(self._logger, logging.ERROR, "fluxer.gateway.halted", close_code=code)
            raise FluxerGatewayHalted(
                f"Fluxer gateway closed the connection with code {code}",
                close_code=code,
            )
        if code in SESSION_RESET_CLOSE_CODES:
            self._reset_session()
        log_event(self._logger, logging.INFO, "fluxer.gateway.closed", close_code=code)

    async def _pause(self, delay: float) -> bool:
        """Sleep ``delay`` seconds; ``True`` when :meth:`stop` ended the wait early."""

        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _connect_url(self) -> str:
        if self.can_resume and self._resume_url:
            return _with_query(self._resume_url)
        if self._gateway_url:
            return self._gateway_url
        if self._discovered_url is None:
            payload = await self._rest.get_gateway_bot()
            url = payload.get("url") if isinstance(payload, dict) else None
            self._discovered_url = (
                _with_query(url) if isinstance(url, str) and url else FLUXER_GATEWAY_URL
            )
        return self._discovered_url

    async def _connect_once(self, listener: GatewayListener) -> bool:
        url = await self._connect_url()
        async with websockets.connect(url) as websocket:
            self._websocket = websocket
            if self._stop_event.is_set():
                return False
            return await self._run_connection(websocket, listener)

    async def _run_connection(self, websocket: Any, listener: GatewayListener) -> bool:
        """Drive one socket; ``True`` once READY or RESUMED was seen on it."""

        hello = GatewayFrame.decode(await websocket.recv())
        interval_ms = (
            hello.d.get("heartbeat_interval")
            if hello.op == GatewayOp.HELLO and isinstance(hello.d, dict)
            else None
        )
        if not isinstance(interval_ms, (int, float)) or interval_ms <= 0:
            raise FluxerAPIError("Fluxer gateway did not open with a HELLO frame")

        self._awaiting_ack = False
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(websocket, float(interval_ms) / 1000.0)
        )
        await self._send(websocket, self._handshake_frame())

        established = False
        async for raw in websocket:
            frame = GatewayFrame.decode(raw)
            if frame.s is not None:
                self._sequence = frame.s
            if frame.op == GatewayOp.DISPATCH:
                if await self._dispatch(frame, listener):
                    established = True
            elif frame.op == GatewayOp.HEARTBEAT:
                await self._send(websocket, heartbeat_frame(self._sequence))
            elif frame.op == GatewayOp.HEARTBEAT_ACK:
                self._awaiting_ack = False
            elif frame.op == GatewayOp.RECONNECT:
                log_event(self._logger, logging.INFO, "fluxer.gateway.reconnect_requested")
                break
            elif frame.op == GatewayOp.INVALID_SESSION:
                resumable = frame.d is True
                if not resumable:
                    self._reset_session()
                log_event(
                    self._logger,
                    logging.WARNING,
                    "fluxer.gateway.invalid_session",
                    resumable=resumable,
                )
                break
        return established

    def _handshake_frame(self) -> dict[str, Any]:
        if self._session_id is not None:
            log_event(
                self._logger,
                logging.INFO,
                "fluxer.gateway.resuming",
                session_id=self._session_id,
                sequence=self._sequence,
            )
            return resume_frame(self._bot_token, self._session_id, self._sequence)
        return identify_frame(self._bot_token, intents=self._intents)

    async def _dispatch(self, frame: GatewayFrame, listener: GatewayListener) -> bool:
        if frame.t == "RESUMED":
            log_event(
                self._logger,
                logging.INFO,
                "fluxer.gateway.resumed",
                sequence=self._sequence,
            )
            return True
        if not isinstance(frame.d, dict):
            return False
        if frame.t == "READY":
            self._remember_session(frame.d)
            identity = decode_ready(frame.d)
            if identity is None:
                log_event(self._logger, logging.WARNING, "fluxer.gateway.ready_invalid")
            else:
                log_event(
                    self._logger, logging.INFO, "fluxer.gateway.ready", user=identity.label
                )
                await listener.on_ready(identity)
            return True
        if frame.t == "MESSAGE_CREATE":
            message = decode_message_create(frame.d, received_ms=self._clock())
            if message is not None:
                await listener.on_message(message)
        return False

    def _remember_session(self, data: dict[str, Any]) -> None:
        session_id = data.get("session_id")
        resume_url = data.get("resume_gateway_url")
        self._session_id = session_id if isinstance(session_id, str) and session_id else None
        self._resume_url = resume_url if isinstance(resume_url, str) and resume_url else None

    def _reset_session(self) -> None:
        self._session_id = None
        self._resume_url = None
        self._sequence = None

    async def _send(self, websocket: Any, frame: dict[str, Any]) -> None:
        await websocket.send(json.dumps(frame))

    async def _heartbeat_loop(self, websocket: Any, interval_seconds: float) -> None:
        # The first beat lands at a random point inside the interval.
        delay = interval_seconds * self._rand()
        while True:
            await asyncio.sleep(delay)
            delay = interval_seconds
            if self._awaiting_ack:
                log_event(self._logger, logging.WARNING, "fluxer.gateway.heartbeat_missed")
                await websocket.close(
                    code=HEARTBEAT_MISSED_CLOSE_CODE, reason="heartbeat ack missing"
                )
                return
            self._awaiting_ack = True
            await self._send(websocket, heartbeat_frame(self._sequence))

    async def _cancel_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            log_event(
                self._logger, logging.DEBUG, "fluxer.gateway.heartbeat_ended", exc=exc
            )
