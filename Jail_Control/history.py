"""
Historical ban data.

Two independent, read-only sources:

  BanLedger       – fail2ban's sqlite database (``bans`` table). Answers
                    "which bans are active and for how much longer".
  EventLogReader  – fail2ban's text log. Answers "what happened recently"
                    (ban / unban / restore events).

The two are never merged: the log rotates and the database is purged on
its own schedule.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from datetime import datetime
from pathlib import Path

import aiosqlite

from Jail_Control.models import ActiveBan, BanEvent

logger = logging.getLogger("jailwatch.history")

# ---------------------------------------------------------------------------
# Ledger (sqlite)
# ---------------------------------------------------------------------------

ACTIVE_BANS_SQL = """
SELECT jail, ip, timeofban, bantime
FROM bans
WHERE bantime < 0 OR (timeofban + bantime) > ?
ORDER BY timeofban DESC
"""


class BanLedger:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def _uri(self) -> str:
        return f"file:{self.db_path}?mode=ro"

    async def _query(self, sql: str, params: tuple) -> list[dict]:
        if not self.db_path.exists():
            logger.warning("Ban ledger not found: %s", self.db_path)
            return []
        try:
            async with aiosqlite.connect(self._uri(), uri=True) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(sql, params) as cursor:
                    rows = await cursor.fetchall()
        except (aiosqlite.Error, OSError) as exc:
            logger.warning("Cannot read ban ledger %s: %s", self.db_path, exc)
            return []
        return [dict(r) for r in rows]

    async def active_bans(self, now: float | None = None) -> list[ActiveBan]:
        now = time.time() if now is None else now
        rows = await self._query(ACTIVE_BANS_SQL, (int(now),))
        bans: list[ActiveBan] = []
        for row in rows:
            bantime = int(row["bantime"])
            banned_at = float(row["timeofban"])
            remaining = None if bantime < 0 else max(0.0, banned_at + bantime - now)
            bans.append(ActiveBan(row["jail"], row["ip"], banned_at, bantime, remaining))
        return bans

    async def history(self, jail: str | None = None, limit: int = 100) -> list[BanEvent]:
        sql = "SELECT jail, ip, timeofban, bantime FROM bans"
        params: tuple = ()
        if jail:
            sql += " WHERE jail = ?"
            params = (jail,)
        sql += " ORDER BY timeofban DESC LIMIT ?"
        rows = await self._query(sql, (*params, int(limit)))
        return [
            BanEvent(jail=r["jail"], address=r["ip"], action="ban", timestamp=float(r["timeofban"]), source="ledger")
            for r in rows
        ]


# ---------------------------------------------------------------------------
# Event log (text)
# ---------------------------------------------------------------------------

ACTION_RE = re.compile(
    r"fail2ban\.(?:actions?)\s*(?:\[[^\]]+\])?:\s+(?:NOTICE|WARNING|INFO|ERROR)?\s*"
    r"\[([^\]]+)\]\s+(Ban|Unban|Restore\s+Ban)\s+(\S+)",
    re.IGNORECASE,
)
TIMESTAMP_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})\s+(\d{2}:\d{2}:\d{2})(?:,(\d{3}))?")


def parse_event_line(line: str) -> BanEvent | None:
    ts_match = TIMESTAMP_RE.match(line)
    action_match = ACTION_RE.search(line)
    if ts_match is None or action_match is None:
        return None
    date, clock, millis = ts_match.groups()
    try:
        # fail2ban writes local time
        stamp = datetime.strptime(f"{date} {clock}", "%Y-%m-%d %H:%M:%S").timestamp()
    except ValueError:
        return None
    if millis:
        stamp += int(millis) / 1000.0

    jail, action, address = action_match.groups()
    action = action.lower()
    if action.startswith("restore"):
        action = "restore"
    return BanEvent(jail=jail, address=address, action=action, timestamp=stamp)


def parse_events(text: str, jail: str | None = None, limit: int = 50) -> list[BanEvent]:
    """Ban/unban/restore events, newest first."""
    events = []
    for line in text.splitlines():
        event = parse_event_line(line)
        if event is None:
            continue
        if jail and event.jail != jail:
            continue
        events.append(event)
    events.sort(key=lambda e: e.timestamp, reverse=True)
    return events[:limit]


def tail_lines(path: Path, count: int, block_size: int = 64 * 1024) -> list[str]:
    """Last ``count`` lines of a file without reading all of it."""
    if count <= 0:
        return []
    with path.open("rb") as f:
        f.seek(0, os.SEEK_END)
        end = f.tell()
        data = b""
        while end > 0 and data.count(b"\n") <= count:
            start = max(0, end - block_size)
            f.seek(start)
            data = f.read(end - start) + data
            end = start
    lines = data.decode("utf-8", errors="replace").splitlines()
    return lines[-count:]


class EventLogReader:
    def __init__(self, log_path: Path) -> None:
        self.log_path = log_path

    async def tail(self, count: int = 50) -> list[str]:
        try:
            return await asyncio.to_thread(tail_lines, self.log_path, count)
        except OSError as exc:
            logger.warning("Cannot read %s: %s", self.log_path, exc)
            return []

    async def events(self, jail: str | None = None, limit: int = 50) -> list[BanEvent]:
        # over-read, most lines are not ban actions
        lines = await self.tail(limit * (10 if jail else 5))
        return parse_events("\n".join(lines), jail=jail, limit=limit)
