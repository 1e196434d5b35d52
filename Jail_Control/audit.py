"""Append-only JSON-lines audit log for control actions."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger("jailwatch.audit")


class AuditLog:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = asyncio.Lock()

    def _append(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))
            f.write("\n")

    async def record(self, action: str, jail: str | None = None, **fields: Any) -> None:
        """Write one entry. Failures are logged, never raised."""
        payload = {"ts": time.time(), "action": action, "jail": jail, **fields}
        try:
            async with self._lock:
                await asyncio.to_thread(self._append, payload)
        except OSError as exc:
            logger.error("Audit write to %s failed: %s", self.path, exc)

    def tail(self, limit: int = 100) -> list[dict[str, Any]]:
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except OSError:
            return []
        entries: list[dict[str, Any]] = []
        for line in lines[-limit:]:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        entries.reverse()
        return entries
