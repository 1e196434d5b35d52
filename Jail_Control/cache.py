"""In-process TTL cache with stale fallback and single-flight loading."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger("jailwatch.cache")

_MISSING = object()


@dataclass
class _Entry:
    value: Any
    expires_at: float


class TTLCache:
    """Fresh entries expire after ``ttl``; a shadow copy lives for ``stale_ttl``.

    ``invalidate`` drops fresh entries only, so the shadow copy can still be
    served when the next load fails. ``clear`` drops both.
    """

    def __init__(
        self,
        default_ttl: float = 5.0,
        stale_ttl: float = 300.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self.stale_ttl = stale_ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._stale: dict[str, _Entry] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._sweeper: asyncio.Task | None = None
        self.hits = 0
        self.misses = 0
        self.stale_hits = 0

    # ------------------------------------------------------------------
    # Basic operations
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return default
        if entry.expires_at <= self._clock():
            del self._entries[key]
            self.misses += 1
            return default
        self.hits += 1
        return entry.value

    def get_stale(self, key: str, default: Any = None) -> Any:
        entry = self._stale.get(key)
        if entry is None or entry.expires_at <= self._clock():
            return default
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None, stale_ttl: float | None = None) -> None:
        now = self._clock()
        self._entries[key] = _Entry(value, now + (self.default_ttl if ttl is None else ttl))
        self._stale[key] = _Entry(value, now + (self.stale_ttl if stale_ttl is None else stale_ttl))

    def invalidate(self, pattern: str) -> int:
        keys = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()
        self._stale.clear()

    def sweep(self) -> int:
        now = self._clock()
        removed = 0
        for store in (self._entries, self._stale):
            for key in [k for k, e in store.items() if e.expires_at <= now]:
                del store[key]
                removed += 1
        return removed

    def stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "stale_entries": len(self._stale),
            "inflight": len(self._inflight),
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "hit_rate": round(self.hits / total, 3) if total else 0.0,
            "keys": sorted(self._entries),
        }

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: float | None = None,
        budget: float | None = None,
    ) -> Any:
        """Return a fresh value, loading it at most once per key at a time.

        Falls back to the stale copy when the loader raises, or when it runs
        longer than ``budget`` seconds. Without a stale copy the loader's
        result (or exception) is returned to the caller.
        """
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key, loader, ttl))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))

        try:
            if budget is not None and self.get_stale(key, _MISSING) is not _MISSING:
                return await asyncio.wait_for(asyncio.shield(task), timeout=budget)
            return await asyncio.shield(task)
        except asyncio.TimeoutError:
            logger.warning("Loading %s exceeded %.1fs, serving stale copy", key, budget)
            return self._serve_stale(key)
        except Exception:
            stale = self.get_stale(key, _MISSING)
            if stale is _MISSING:
                raise
            logger.warning("Loading %s failed, serving stale copy", key, exc_info=True)
            return self._serve_stale(key)

    def _serve_stale(self, key: str) -> Any:
        self.stale_hits += 1
        return self.get_stale(key)

    async def _load(self, key: str, loader: Callable[[], Awaitable[Any]], ttl: float | None) -> Any:
        value = await loader()
        self.set(key, value, ttl)
        return value

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Loader for %s raised %r", key, task.exception())

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="cache-sweep")

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                removed = self.sweep()
                if removed:
                    logger.debug("Cache sweep removed %d entries", removed)
            except Exception as exc:
                logger.exception("Cache sweep error: %s", exc)
