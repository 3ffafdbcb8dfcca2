from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..core.logging_utils import log_event
from .media import LocalMediaStore
from .pairing_store import SqlitePairingStore


class LoggingSystemEventSink:
    """System-event sink for standalone runs: events go to the log."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def enqueue(self, text: str, *, session_key: str) -> None:
        log_event(
            self._logger,
            logging.INFO,
            "fluxer.system_event",
            session_key=session_key,
            text=text,
        )


class LoggingErrorReporter:
    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def error(self, message: str) -> None:
        log_event(self._logger, logging.ERROR, "fluxer.runtime.error", message=message)


@dataclass
class LocalRuntime:
    """Collaborators available without an agent host.

    No reply dispatcher is wired, so inbound messages end in the
    system-event stage.
    """

    pairing_store: Optional[SqlitePairingStore] = None
    media_fetcher: Optional[LocalMediaStore] = None
    system_events: Optional[LoggingSystemEventSink] = None
    error_reporter: Optional[LoggingErrorReporter] = None
