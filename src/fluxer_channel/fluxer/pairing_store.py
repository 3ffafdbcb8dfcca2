from __future__ import annotations

import asyncio
import json
import secrets
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from .ports import PairingRequest

PAIRING_SCHEMA_VERSION = 1
PAIRING_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PAIRING_CODE_LENGTH = 8


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_pairing_code(length: int = PAIRING_CODE_LENGTH) -> str:
    return "".join(secrets.choice(PAIRING_CODE_ALPHABET) for _ in range(length))


@dataclass(frozen=True)
class PendingPairing:
    channel: str
    sender_id: str
    code: str
    meta: dict[str, Any]
    created_at: str


class SqlitePairingStore:
    """Local pairing store: pending requests plus approved senders.

    Requests are keyed by ``(channel, sender_id)`` so repeated messages
    from an unapproved sender reuse the first code (``created=False``).
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="fluxer-pairing"
        )
        self._connection: Optional[sqlite3.Connection] = None

    @property
    def path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        await self._run(self._connection_sync)

    async def close(self) -> None:
        await self._run(self._close_sync)
        self._executor.shutdown(wait=True)

    async def read_allowlist(self, channel: str) -> list[str]:
        return await self._run(self._read_allowlist_sync, channel)

    async def upsert_pairing_request(
        self, channel: str, sender_id: str, meta: Mapping[str, Any]
    ) -> PairingRequest:
        return await self._run(
            self._upsert_pairing_request_sync, channel, sender_id, dict(meta)
        )

    async def list_pending(self, channel: str) -> list[PendingPairing]:
        return await self._run(self._list_pending_sync, channel)

    async def approve(self, channel: str, code: str) -> Optional[str]:
        """Approve a pending code; returns the sender id, or ``None``."""

        return await self._run(self._approve_sync, channel, code.strip().upper())

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def _connection_sync(self) -> sqlite3.Connection:
        if self._connection is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._ensure_schema(conn)
            self._connection = conn
        return self._connection

    def _close_sync(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_info (
                    version INTEGER NOT NULL
                )
                """
            )
            row = conn.execute(
                "SELECT version FROM schema_info ORDER BY version DESC LIMIT 1"
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO schema_info(version) VALUES (?)",
                    (PAIRING_SCHEMA_VERSION,),
                )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pairing_requests (
                    channel TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    code TEXT NOT NULL,
                    meta_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (channel, sender_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS allow_from (
                    channel TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    approved_at TEXT NOT NULL,
                    PRIMARY KEY (channel, sender_id)
                )
                """
            )

    def _read_allowlist_sync(self, channel: str) -> list[str]:
        conn = self._connection_sync()
        rows = conn.execute(
            "SELECT sender_id FROM allow_from WHERE channel = ? ORDER BY approved_at",
            (channel,),
        ).fetchall()
        return [str(row["sender_id"]) for row in rows]

    def _upsert_pairing_request_sync(
        self, channel: str, sender_id: str, meta: dict[str, Any]
    ) -> PairingRequest:
        conn = self._connection_sync()
        with conn:
            row = conn.execute(
                "SELECT code FROM pairing_requests WHERE channel = ? AND sender_id = ?",
                (channel, sender_id),
            ).fetchone()
            if row is not None:
                conn.execute(
                    "UPDATE pairing_requests SET meta_json = ? "
                    "WHERE channel = ? AND sender_id = ?",
                    (json.dumps(meta), channel, sender_id),
                )
                return PairingRequest(code=str(row["code"]), created=False)
            code = generate_pairing_code()
            conn.execute(
                """
                INSERT INTO pairing_requests (channel, sender_id, code, meta_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (channel, sender_id, code, json.dumps(meta), now_iso()),
            )
        return PairingRequest(code=code, created=True)

    def _list_pending_sync(self, channel: str) -> list[PendingPairing]:
        conn = self._connection_sync()
        rows = conn.execute(
            "SELECT * FROM pairing_requests WHERE channel = ? ORDER BY created_at",
            (channel,),
        ).fetchall()
        pending: list[PendingPairing] = []
        for row in rows:
            try:
                meta = json.loads(row["meta_json"] or "{}")
            except json.JSONDecodeError:
                meta = {}
            pending.append(
                PendingPairing(
                    channel=str(row["channel"]),
                    sender_id=str(row["sender_id"]),
                    code=str(row["code"]),
                    meta=meta if isinstance(meta, dict) else {},
                    created_at=str(row["created_at"]),
                )
            )
        return pending

    def _approve_sync(self, channel: str, code: str) -> Optional[str]:
        conn = self._connection_sync()
        with conn:
            row = conn.execute(
                "SELECT sender_id FROM pairing_requests WHERE channel = ? AND code = ?",
                (channel, code),
            ).fetchone()
            if row is None:
                return None
            sender_id = str(row["sender_id"])
            conn.execute(
                """
                INSERT INTO allow_from (channel, sender_id, approved_at)
                VALUES (?, ?, ?)
                ON CONFLICT(channel, sender_id) DO NOTHING
                """,
                (channel, sender_id, now_iso()),
            )
            conn.execute(
                "DELETE FROM pairing_requests WHERE channel = ? AND sender_id = ?",
                (channel, sender_id),
            )
        return sender_id
