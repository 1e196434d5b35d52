"""
Agent registry backed by SQLite.

Tables
------
servers      – one row per remote agent (identity, shared secret, last snapshot)
server_data  – bounded history of pushed snapshots per agent

Authentication is trust-on-first-use: the first push for an unknown id
stores its secret, every later push must present the same secret.
"""
from __future__ import annotations

import hmac
import json
import logging
import time
from pathlib import Path
from typing import Any

import aiosqlite

from Jail_Control.errors import AuthenticationError, JailControlError, ValidationError

logger = logging.getLogger("jailwatch.registry")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

CREATE_SERVERS = """
CREATE TABLE IF NOT EXISTS servers (
    id            TEXT PRIMARY KEY,
    name          TEXT NOT NULL,
    address       TEXT,
    remote_url    TEXT,
    secret        TEXT NOT NULL,
    created_at    REAL NOT NULL,
    last_seen     REAL NOT NULL,
    last_snapshot TEXT
);
"""

CREATE_SERVER_DATA = """
CREATE TABLE IF NOT EXISTS server_data (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    server_id TEXT    NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
    ts        REAL    NOT NULL,
    jails     TEXT    NOT NULL DEFAULT '[]',
    bans      TEXT    NOT NULL DEFAULT '[]',
    log_tail  TEXT    NOT NULL DEFAULT '[]'
);
"""

CREATE_SERVER_DATA_IDX = "CREATE INDEX IF NOT EXISTS idx_server_data_server ON server_data(server_id, ts);"

_PUBLIC_COLUMNS = "id, name, address, remote_url, created_at, last_seen, last_snapshot"


class AgentRegistry:
    def __init__(self, db_path: Path, online_window: float = 60.0, history_limit: int = 100) -> None:
        self.db_path = db_path
        self.online_window = online_window
        self.history_limit = history_limit

    async def init(self) -> None:
        """Create tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(CREATE_SERVERS)
            await db.execute(CREATE_SERVER_DATA)
            await db.execute(CREATE_SERVER_DATA_IDX)
            await db.commit()

    # ------------------------------------------------------------------
    # Registration / authentication
    # ------------------------------------------------------------------

    async def register(
        self,
        server_id: str,
        secret: str,
        name: str | None = None,
        address: str | None = None,
        remote_url: str | None = None,
    ) -> dict[str, Any]:
        if not server_id or not secret:
            raise ValidationError("Agent id and secret are required")
        now = time.time()
        if not remote_url and address and address != "unknown":
            remote_url = f"http://{address}:4040"

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            # first writer wins if two unknown agents race for the same id
            await db.execute(
                """INSERT OR IGNORE INTO servers (id, name, address, remote_url, secret, created_at, last_seen)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (server_id, name or f"Server {server_id[:8]}", address, remote_url, secret, now, now),
            )
            async with db.execute("SELECT secret FROM servers WHERE id = ?", (server_id,)) as cursor:
                row = await cursor.fetchone()
            if row is None or not _same_secret(row["secret"], secret):
                await db.rollback()
                logger.warning("Rejected push for %s: secret mismatch", server_id)
                raise AuthenticationError("Invalid agent credentials", {"server_id": server_id})
            await db.execute(
                """UPDATE servers
                   SET last_seen = ?, name = COALESCE(?, name), address = COALESCE(?, address),
                       remote_url = COALESCE(?, remote_url)
                   WHERE id = ?""",
                (now, name, address, remote_url, server_id),
            )
            await db.commit()
        server = await self.get(server_id, include_snapshot=False)
        if server is None:
            # row removed between the commit and the read
            raise JailControlError("Agent registration was not persisted", {"server_id": server_id})
        return server

    async def verify_secret(self, server_id: str, secret: str) -> bool:
        stored = await self.get_secret(server_id)
        return stored is not None and _same_secret(stored, secret)

    async def get_secret(self, server_id: str) -> str | None:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT secret FROM servers WHERE id = ?", (server_id,)) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else None

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def store_snapshot(self, server_id: str, snapshot: dict[str, Any]) -> None:
        now = time.time()
        latest = json.dumps({**snapshot, "ts": now})
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE servers SET last_snapshot = ?, last_seen = ? WHERE id = ?",
                (latest, now, server_id),
            )
            await db.execute(
                "INSERT INTO server_data (server_id, ts, jails, bans, log_tail) VALUES (?, ?, ?, ?, ?)",
                (
                    server_id,
                    now,
                    json.dumps(snapshot.get("jails", [])),
                    json.dumps(snapshot.get("bans", [])),
                    json.dumps(snapshot.get("logTail", [])),
                ),
            )
            await db.execute(
                """DELETE FROM server_data
                   WHERE server_id = ? AND id NOT IN (
                       SELECT id FROM server_data WHERE server_id = ? ORDER BY ts DESC, id DESC LIMIT ?
                   )""",
                (server_id, server_id, self.history_limit),
            )
            await db.commit()

    async def history(self, server_id: str, limit: int = 100) -> list[dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT ts, jails, bans, log_tail FROM server_data WHERE server_id = ? ORDER BY ts DESC, id DESC LIMIT ?",
                (server_id, min(limit, self.history_limit)),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            {
                "ts": r["ts"],
                "jails": json.loads(r["jails"]),
                "bans": json.loads(r["bans"]),
                "logTail": json.loads(r["log_tail"]),
            }
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(self, server_id: str, include_snapshot: bool = True) -> dict[str, Any] | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(f"SELECT {_PUBLIC_COLUMNS} FROM servers WHERE id = ?", (server_id,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return self._to_server(dict(row), include_snapshot)

    async def list_servers(self) -> list[dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(f"SELECT {_PUBLIC_COLUMNS} FROM servers ORDER BY last_seen DESC") as cursor:
                rows = await cursor.fetchall()
        servers = []
        for row in rows:
            server = self._to_server(dict(row), include_snapshot=True)
            snapshot = server.pop("lastSnapshot") or {}
            server["jailCount"] = len(snapshot.get("jails", []))
            server["banCount"] = len(snapshot.get("bans", []))
            servers.append(server)
        return servers

    def _to_server(self, row: dict[str, Any], include_snapshot: bool) -> dict[str, Any]:
        server = {
            "id": row["id"],
            "name": row["name"],
            "address": row["address"],
            "remoteUrl": row["remote_url"],
            "createdAt": row["created_at"],
            "lastSeen": row["last_seen"],
            "online": self.is_online(row["last_seen"]),
        }
        if include_snapshot:
            raw = row.get("last_snapshot")
            server["lastSnapshot"] = json.loads(raw) if raw else None
        return server

    def is_online(self, last_seen: float, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now - last_seen < self.online_window


def _same_secret(stored: str, offered: str) -> bool:
    return hmac.compare_digest(stored.encode("utf-8"), offered.encode("utf-8"))
