"""Jail discovery: configuration files are the source of truth for existence."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from Jail_Control.common import is_valid_jail_name
from Jail_Control.daemon import EnforcementDaemon
from Jail_Control.errors import DiscoveryError, JailControlError
from Jail_Control.jailconf import RESERVED_SECTIONS, config_sources

logger = logging.getLogger("jailwatch.discovery")

_SECTION = re.compile(r"^\[([^\]]+)\]", re.MULTILINE)


@dataclass
class DiscoveryResult:
    names: list[str]
    warnings: list[str] = field(default_factory=list)
    from_daemon: bool = False


def extract_jail_names(content: str) -> list[str]:
    names: list[str] = []
    for match in _SECTION.finditer(content):
        name = match.group(1).strip()
        if name and name.lower() not in RESERVED_SECTIONS:
            names.append(name)
    return names


def _scan(config_dir: Path) -> tuple[list[str], list[str]]:
    seen: dict[str, None] = {}
    warnings: list[str] = []
    jail_d = config_dir / "jail.d"
    if jail_d.exists() and not jail_d.is_dir():
        warnings.append("jail.d is not a directory")
    for path in config_sources(config_dir):
        if not path.exists():
            continue
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            warnings.append(f"Failed to read {path.name}: {exc}")
            continue
        for name in extract_jail_names(content):
            if not is_valid_jail_name(name):
                warnings.append(f"Ignoring section [{name}] in {path.name}: not a valid jail name")
                continue
            seen.setdefault(name, None)
    return list(seen), warnings


class JailDiscovery:
    def __init__(self, config_dir: Path, daemon: EnforcementDaemon) -> None:
        self.config_dir = config_dir
        self.daemon = daemon

    async def discover(self) -> DiscoveryResult:
        names, warnings = await asyncio.to_thread(_scan, self.config_dir)
        for warning in warnings:
            logger.warning("Discovery: %s", warning)
        if names:
            return DiscoveryResult(names=sorted(names), warnings=warnings)

        logger.info("No jails found under %s, asking the daemon", self.config_dir)
        try:
            active = await self.daemon.global_status()
        except JailControlError as exc:
            warnings.append(f"Fallback to fail2ban-client status failed: {exc}")
            raise DiscoveryError("Jail discovery failed", {"warnings": warnings}) from exc
        names = sorted({name for name in active if is_valid_jail_name(name)})
        return DiscoveryResult(names=names, warnings=warnings, from_daemon=True)

    async def is_configured(self, name: str) -> bool:
        result = await self.discover()
        return name in result.names
