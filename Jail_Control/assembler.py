"""Merge configured jails, live daemon state and host stats into one view."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from Jail_Control.common import infer_category, infer_severity
from Jail_Control.daemon import EnforcementDaemon
from Jail_Control.discovery import DiscoveryResult, JailDiscovery
from Jail_Control.errors import EnforcementUnavailable
from Jail_Control.jailconf import JailConfig, JailConfigReader
from Jail_Control.models import ReconciledJail, ReconciledView, RuntimeJailState
from Jail_Control.probe import RuntimeStateProbe
from Jail_Control.result import Degraded, FetchResult, Ok, Unavailable

logger = logging.getLogger("jailwatch.assembler")

StateFetcher = Callable[[str], Awaitable[RuntimeJailState]]


async def _capture(coro: Awaitable[Any], label: str) -> FetchResult:
    try:
        return Ok(await coro)
    except Exception as exc:  # noqa: BLE001
        logger.warning("%s unavailable: %s", label, exc)
        return Unavailable(f"{label}: {exc}", exc)


async def assemble(
    configured: list[str],
    active: set[str],
    fetch_state: StateFetcher,
    concurrency: int = 8,
    configs: dict[str, JailConfig] | None = None,
) -> tuple[list[ReconciledJail], list[str]]:
    """One ReconciledJail per configured name; only running jails are probed."""
    configs = configs or {}
    sem = asyncio.Semaphore(max(1, concurrency))

    async def fetch(name: str) -> FetchResult:
        async with sem:
            result = await _capture(fetch_state(name), f"jail {name}")
        if isinstance(result, Ok) and result.value.note:
            return Degraded(result.value, result.value.note)
        return result

    enabled_names = [n for n in configured if n in active]
    fetched = await asyncio.gather(*(fetch(n) for n in enabled_names))
    states: dict[str, FetchResult] = dict(zip(enabled_names, fetched))

    jails: list[ReconciledJail] = []
    errors: list[str] = []
    for name in configured:
        cfg = configs.get(name)
        state = RuntimeJailState.disabled()
        enabled = False
        result = states.get(name)
        if result is not None:
            if isinstance(result, Unavailable):
                # the daemon listed it, but details could not be read
                enabled = True
                errors.append(result.reason)
            else:
                state = result.value
                enabled = state.enabled
                if isinstance(result, Degraded):
                    errors.append(result.reason)

        jails.append(
            ReconciledJail(
                name=name,
                enabled=enabled,
                currently_banned=state.currently_banned if enabled else 0,
                banned_ips=list(state.banned_addresses) if enabled else [],
                total_banned=state.total_banned,
                max_retry=state.max_retry if state.max_retry is not None else _opt(cfg, "maxretry"),
                ban_time=state.ban_time if state.ban_time is not None else _opt(cfg, "bantime"),
                find_time=state.find_time if state.find_time is not None else _opt(cfg, "findtime"),
                category=infer_category(name),
                severity=infer_severity(name, state.currently_banned if enabled else 0),
                filter=cfg.filter_name if cfg else None,
            )
        )
    return jails, errors


def _opt(cfg: JailConfig | None, key: str) -> int | None:
    return cfg.int_option(key) if cfg else None


def derive_server_status(active: FetchResult, host: FetchResult) -> str:
    if active.usable:
        return "online"
    if isinstance(active, Unavailable) and isinstance(active.error, EnforcementUnavailable):
        return "offline"
    return "partial" if host.usable else "offline"


@dataclass
class Assembly:
    view: ReconciledView
    host: dict[str, Any] | None = None


class ReconciliationAssembler:
    def __init__(
        self,
        discovery: JailDiscovery,
        daemon: EnforcementDaemon,
        probe: RuntimeStateProbe,
        config_reader: JailConfigReader,
        host_stats: Callable[[], Awaitable[dict[str, Any]]],
        concurrency: int = 8,
    ) -> None:
        self.discovery = discovery
        self.daemon = daemon
        self.probe = probe
        self.config_reader = config_reader
        self.host_stats = host_stats
        self.concurrency = concurrency

    async def build(self) -> Assembly:
        configured, active, host, configs = await asyncio.gather(
            _capture(self.discovery.discover(), "discovery"),
            _capture(self.daemon.global_status(), "fail2ban"),
            _capture(self.host_stats(), "host stats"),
            _capture(asyncio.to_thread(self.config_reader.read_all), "jail config"),
        )

        errors: list[str] = []
        names: list[str] = []
        if isinstance(configured, Ok):
            discovered: DiscoveryResult = configured.value
            names = discovered.names
            errors.extend(discovered.warnings)
        else:
            errors.append(configured.reason)

        status = derive_server_status(active, host)
        jails: list[ReconciledJail] = []
        if isinstance(active, Ok):
            jails, jail_errors = await assemble(
                names,
                set(active.value),
                self.probe.probe,
                self.concurrency,
                configs.value if configs.usable else None,
            )
            errors.extend(jail_errors)
        else:
            errors.append(active.reason)
            if status == "partial":
                # running state unknown; list configured jails as not running
                jails, _ = await assemble(names, set(), self.probe.probe, self.concurrency,
                                          configs.value if configs.usable else None)

        if isinstance(host, Unavailable):
            errors.append(host.reason)

        view = ReconciledView(jails=jails, server_status=status, errors=errors, last_updated=time.time())
        return Assembly(view=view, host=host.value if host.usable else None)
