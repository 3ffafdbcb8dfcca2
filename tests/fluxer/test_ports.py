from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

from fluxer_channel.fluxer.media import LocalMediaStore
from fluxer_channel.fluxer.models import DispatchEnvelope
from fluxer_channel.fluxer.pairing_store import SqlitePairingStore
from fluxer_channel.fluxer.ports import ChannelCapabilities, DispatcherOptions
from fluxer_channel.fluxer.system_events import (
    LocalRuntime,
    LoggingErrorReporter,
    LoggingSystemEventSink,
)


class _Dispatcher:
    async def dispatch(
        self,
        envelope: DispatchEnvelope,
        config: Mapping[str, Any],
        options: DispatcherOptions,
    ) -> None:
        return None


class _HostRuntime:
    block_dispatcher = _Dispatcher()
    message_dispatcher = "not a dispatcher"
    routing_resolver = None


def test_probe_none_runtime_has_no_capabilities() -> None:
    capabilities = ChannelCapabilities.probe(None)
    assert capabilities == ChannelCapabilities()


def test_probe_keeps_only_protocol_conforming_collaborators() -> None:
    runtime = _HostRuntime()

    capabilities = ChannelCapabilities.probe(runtime)

    assert capabilities.block_dispatcher is runtime.block_dispatcher
    assert capabilities.message_dispatcher is None
    assert capabilities.routing_resolver is None
    assert capabilities.pairing_store is None
    assert capabilities.system_events is None


def test_local_runtime_satisfies_collaborator_protocols(tmp_path: Path) -> None:
    logger = logging.getLogger("test.ports")
    runtime = LocalRuntime(
        pairing_store=SqlitePairingStore(tmp_path / "pairing.sqlite3"),
        media_fetcher=LocalMediaStore(tmp_path / "media"),
        system_events=LoggingSystemEventSink(logger),
        error_reporter=LoggingErrorReporter(logger),
    )

    capabilities = ChannelCapabilities.probe(runtime)

    assert capabilities.pairing_store is runtime.pairing_store
    assert capabilities.media_fetcher is runtime.media_fetcher
    assert capabilities.system_events is runtime.system_events
    assert capabilities.error_reporter is runtime.error_reporter
    assert capabilities.block_dispatcher is None
    assert capabilities.message_dispatcher is None
