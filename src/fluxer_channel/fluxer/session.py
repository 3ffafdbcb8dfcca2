from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from ..core.exceptions import ConfigurationError
from ..core.logging_utils import log_event
from .config import FluxerChannelConfig
from .constants import DEFAULT_ACCOUNT_ID, STARTUP_GRACE_MS
from .decoding import now_ms
from .gateway import FluxerGatewayClient
from .models import InboundMessage, SendResult, SessionIdentity
from .outbound import OutboundDelivery
from .pipeline import InboundPipeline, build_dispatch_stages
from .policy import AccessPolicy
from .ports import ChannelCapabilities
from .rest import FluxerRestClient


@dataclass
class RuntimeStatus:
    account_id: str
    running: bool = False
    last_start_at: Optional[int] = None
    last_stop_at: Optional[int] = None
    last_error: Optional[str] = None
    last_inbound_at: Optional[int] = None
    last_outbound_at: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "running": self.running,
            "lastStartAt": self.last_start_at,
            "lastStopAt": self.last_stop_at,
            "lastError": self.last_error,
            "lastInboundAt": self.last_inbound_at,
            "lastOutboundAt": self.last_outbound_at,
        }


class ConnectionSession:
    """Owns one account's gateway connection and feeds it into the pipeline.

    The REST handle created here is shared by the gateway (URL discovery),
    outbound delivery, the typing indicator and pairing replies for the
    lifetime of the session. The session is the gateway's listener.
    """

    def __init__(
        self,
        *,
        token: Optional[str],
        config: FluxerChannelConfig,
        logger: logging.Logger,
        account_id: str = DEFAULT_ACCOUNT_ID,
        host_config: Optional[Mapping[str, Any]] = None,
        runtime: Any = None,
        rest_client: Optional[FluxerRestClient] = None,
        gateway_client: Optional[FluxerGatewayClient] = None,
        grace_ms: int = STARTUP_GRACE_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        token = (token or "").strip()
        if not token:
            raise ConfigurationError("Fluxer bot token is required")

        self._logger = logger
        self._clock = clock
        self._startup_ms = clock()
        self._identity: Optional[SessionIdentity] = None
        self._tasks: set[asyncio.Task[None]] = set()
        self.status = RuntimeStatus(account_id=account_id)

        self._rest = (
            rest_client
            if rest_client is not None
            else FluxerRestClient(bot_token=token)
        )
        self._owns_rest = rest_client is None
        self._gateway = (
            gateway_client
            if gateway_client is not None
            else FluxerGatewayClient(
                rest=self._rest, bot_token=token, logger=logger, clock=clock
            )
        )

        host_cfg: Mapping[str, Any] = host_config or {}
        self._capabilities = ChannelCapabilities.probe(runtime)
        self._outbound = OutboundDelivery(
            self._rest, logger=logger, on_sent=self._mark_outbound
        )
        self._policy = AccessPolicy(
            config,
            identity=lambda: self._identity,
            send_reply=self._send_policy_reply,
            pairing_store=self._capabilities.pairing_store,
            mention_matcher=self._capabilities.mention_matcher,
            host_config=host_cfg,
            logger=logger,
        )
        self._pipeline = InboundPipeline(
            config=config,
            policy=self._policy,
            outbound=self._outbound,
            capabilities=self._capabilities,
            identity=lambda: self._identity,
            startup_ms=self._startup_ms,
            grace_ms=grace_ms,
            account_id=account_id,
            stages=build_dispatch_stages(
                self._capabilities, host_config=host_cfg, logger=logger
            ),
            logger=logger,
        )

    @property
    def identity(self) -> Optional[SessionIdentity]:
        return self._identity

    @property
    def startup_ms(self) -> int:
        return self._startup_ms

    @property
    def capabilities(self) -> ChannelCapabilities:
        return self._capabilities

    @property
    def outbound(self) -> OutboundDelivery:
        return self._outbound

    @property
    def pipeline(self) -> InboundPipeline:
        return self._pipeline

    def _mark_outbound(self) -> None:
        self.status.last_outbound_at = self._clock()

    async def _send_policy_reply(self, conversation_id: str, text: str) -> SendResult:
        return await self._outbound.send_message(conversation_id, text)

    async def on_ready(self, identity: SessionIdentity) -> None:
        # Resumes and re-identifies keep the first identity.
        if self._identity is None:
            self._identity = identity

    async def on_message(self, message: InboundMessage) -> None:
        self.status.last_inbound_at = self._clock()
        task = asyncio.create_task(self._handle_message(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_message(self, message: InboundMessage) -> None:
        try:
            await self._pipeline.handle(message)
        except Exception as exc:
            self.status.last_error = str(exc)
            log_event(
                self._logger,
                logging.ERROR,
                "fluxer.message.unhandled_error",
                message_id=message.id,
                exc=exc,
            )

    async def wait_idle(self) -> None:
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run until ``stop_event`` is set, then tear the gateway down."""

        self.status.running = True
        self.status.last_start_at = self._clock()
        self.status.last_error = None
        gateway_task = asyncio.create_task(self._gateway.run(self))
        stop_task = asyncio.create_task(stop_event.wait())
        try:
            await asyncio.wait(
                {gateway_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if gateway_task.done() and not gateway_task.cancelled():
                exc = gateway_task.exception()
                if exc is not None:
                    self.status.last_error = str(exc)
                    log_event(
                        self._logger,
                        logging.ERROR,
                        "fluxer.session.gateway_failed",
                        account_id=self.status.account_id,
                        exc=exc,
                    )
                    raise exc
        finally:
            if stop_event.is_set():
                log_event(
                    self._logger,
                    logging.INFO,
                    "fluxer.session.abort_received",
                    account_id=self.status.account_id,
                )
            await self._shutdown(gateway_task, stop_task)

    async def _shutdown(
        self, gateway_task: asyncio.Task[None], stop_task: asyncio.Task[Any]
    ) -> None:
        stop_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await stop_task
        # stop() closes the socket and wakes any reconnect pause, so the
        # gateway task returns on its own.
        await self._gateway.stop()
        if not gateway_task.done():
            try:
                await gateway_task
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.DEBUG,
                    "fluxer.session.gateway_exit_error",
                    exc=exc,
                )
        await self.wait_idle()
        if self._owns_rest:
            await self._rest.close()
        self.status.running = False
        self.status.last_stop_at = self._clock()
        log_event(
            self._logger,
            logging.INFO,
            "fluxer.session.stopped",
            account_id=self.status.account_id,
        )
