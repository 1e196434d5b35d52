"""Service facade: builds the engine components once and exposes the operations."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from Jail_Control.assembler import ReconciliationAssembler, assemble
from Jail_Control.audit import AuditLog
from Jail_Control.cache import TTLCache
from Jail_Control.common import require_jail_name
from Jail_Control.config import Settings
from Jail_Control.daemon import EnforcementDaemon, Fail2banClient
from Jail_Control.discovery import JailDiscovery
from Jail_Control.errors import JailNotConfigured
from Jail_Control.executor import ActionExecutor
from Jail_Control.filters import FilterManager
from Jail_Control.history import BanLedger, EventLogReader
from Jail_Control.hoststats import host_stats
from Jail_Control.jailconf import JailConfigReader
from Jail_Control.models import ActionOutcome, RuntimeJailState
from Jail_Control.probe import RuntimeStateProbe
from Jail_Control.runner import CommandRunner

logger = logging.getLogger("jailwatch.service")


def build_runner(settings: Settings) -> CommandRunner:
    return CommandRunner(
        {"fail2ban-client": settings.client_path, "systemctl": settings.systemctl_path},
        sudo_path=settings.sudo_path,
        use_sudo=settings.use_sudo,
        default_timeout=settings.command_timeout,
        max_output_bytes=settings.max_output_bytes,
    )


class JailService:
    def __init__(
        self,
        settings: Settings,
        daemon: EnforcementDaemon | None = None,
        *,
        cache: TTLCache | None = None,
        audit: AuditLog | None = None,
        stats: Callable[[], Awaitable[dict[str, Any]]] = host_stats,
    ) -> None:
        self.settings = settings
        self.daemon = daemon or Fail2banClient(
            build_runner(settings),
            probe_timeout=settings.probe_timeout,
            action_timeout=settings.action_timeout,
            command_timeout=settings.command_timeout,
            service_name=settings.service_name,
        )
        self.cache = cache or TTLCache(
            default_ttl=settings.jails_ttl,
            stale_ttl=settings.stale_ttl,
            sweep_interval=settings.sweep_interval,
        )
        self.audit = audit or AuditLog(settings.audit_log)
        self.host_stats = stats

        self.config_reader = JailConfigReader(settings.config_dir)
        self.filters = FilterManager(settings.config_dir)
        self.discovery = JailDiscovery(settings.config_dir, self.daemon)
        self.probe = RuntimeStateProbe(self.daemon, timeout=settings.probe_timeout + settings.probe_grace)
        self.ledger = BanLedger(settings.ledger_db)
        self.event_log = EventLogReader(settings.event_log)
        self.assembler = ReconciliationAssembler(
            self.discovery,
            self.daemon,
            self.probe,
            self.config_reader,
            self.host_stats,
            concurrency=settings.probe_concurrency,
        )
        self.executor = ActionExecutor(
            self.daemon,
            self.probe,
            self.discovery,
            self.config_reader,
            self.filters,
            self.audit,
            self.cache,
            settle_delay=settings.settle_delay,
            restart_settle=settings.restart_settle,
            restart_retry_delay=settings.restart_retry_delay,
        )

    @classmethod
    def from_env(cls) -> "JailService":
        return cls(Settings.from_env())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.cache.start()
        logger.info("Jail service started (config dir %s)", self.settings.config_dir)

    async def stop(self) -> None:
        await self.cache.stop()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _load_jails(self) -> dict[str, Any]:
        assembly = await self.assembler.build()
        if assembly.host is not None:
            self.cache.set("system", assembly.host, self.settings.system_ttl)
        view = assembly.view.to_dict()
        if view["serverStatus"] == "offline":
            last = self.cache.get_stale("jails")
            if last and last.get("jails"):
                view["jails"] = last["jails"]
                view["errors"].append("fail2ban unreachable, showing last known jail state")
        return view

    async def jails(self) -> dict[str, Any]:
        return await self.cache.get_or_load(
            "jails", self._load_jails, ttl=self.settings.jails_ttl, budget=self.settings.latency_budget
        )

    async def jail(self, name: str) -> dict[str, Any]:
        name = require_jail_name(name)

        async def load() -> dict[str, Any]:
            if not await self.discovery.is_configured(name):
                raise JailNotConfigured(name)
            config = await asyncio.to_thread(self.config_reader.read, name)
            configs = {name: config} if config else None
            state = await self.probe.probe(name)

            async def probed(_name: str) -> RuntimeJailState:
                return state

            active = {name} if state.enabled or state.note else set()
            jails, errors = await assemble([name], active, probed, 1, configs)
            return {"jail": jails[0].to_dict(), "errors": errors, "lastUpdated": time.time()}

        return await self.cache.get_or_load(
            f"jail:{name}", load, ttl=self.settings.jail_ttl, budget=self.settings.latency_budget
        )

    async def system(self) -> dict[str, Any]:
        return await self.cache.get_or_load("system", self.host_stats, ttl=self.settings.system_ttl)

    async def active_bans(self) -> list[dict[str, Any]]:
        async def load() -> list[dict[str, Any]]:
            return [b.to_dict() for b in await self.ledger.active_bans()]

        return await self.cache.get_or_load("bans:active", load, ttl=self.settings.bans_ttl)

    async def ledger_history(self, jail: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        if jail:
            require_jail_name(jail)
        return [e.to_dict() for e in await self.ledger.history(jail, limit)]

    async def events(self, jail: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        if jail:
            require_jail_name(jail)
        return [e.to_dict() for e in await self.event_log.events(jail, limit)]

    async def log_tail(self, lines: int = 50) -> list[str]:
        return await self.event_log.tail(lines)

    async def jail_config(self, name: str) -> dict[str, Any]:
        name = require_jail_name(name)
        source = await asyncio.to_thread(self.config_reader.source, name)
        if source is None:
            raise JailNotConfigured(name)
        return source.to_dict()

    async def snapshot(self) -> dict[str, Any]:
        """Payload an agent pushes to the central instance."""
        view = await self.jails()
        return {
            "jails": view["jails"],
            "serverStatus": view["serverStatus"],
            "bans": await self.active_bans(),
            "logTail": await self.log_tail(50),
            "system": await self.system(),
        }

    def health(self) -> dict[str, Any]:
        return {"status": "ok", "ts": time.time(), "cache": self.cache.stats()}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def enable(self, name: str) -> ActionOutcome:
        return await self.executor.enable(name)

    async def disable(self, name: str) -> ActionOutcome:
        return await self.executor.disable(name)

    async def toggle(self, name: str) -> ActionOutcome:
        return await self.executor.toggle(name)

    async def unban(self, name: str, address: str) -> ActionOutcome:
        return await self.executor.unban(name, address)

    async def restart(self) -> ActionOutcome:
        return await self.executor.restart_service()

    async def create_filter(self, name: str, failregex: str, ignoreregex: str = "") -> str:
        path = self.filters.create(name, failregex, ignoreregex)
        await self.audit.record("create_filter", None, filter=name, path=str(path))
        return str(path)

    async def update_jail_config(self, name: str, content: str) -> dict[str, Any]:
        path = await self.executor.write_jail_config(name, content)
        return {"success": True, "jail": name, "path": path, "message": "Jail configuration saved, restart fail2ban to apply"}
