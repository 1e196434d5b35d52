"""Core records shared across the engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class RuntimeJailState:
    enabled: bool
    currently_banned: int = 0
    banned_addresses: tuple[str, ...] = ()
    total_banned: int | None = None
    max_retry: int | None = None
    ban_time: int | None = None
    find_time: int | None = None
    note: str | None = None

    def __post_init__(self) -> None:
        if not self.enabled and (self.currently_banned or self.banned_addresses):
            raise ValueError("a disabled jail cannot report bans")
        # drop duplicates while keeping daemon order
        object.__setattr__(self, "banned_addresses", tuple(dict.fromkeys(self.banned_addresses)))

    @classmethod
    def disabled(cls, note: str | None = None) -> "RuntimeJailState":
        return cls(enabled=False, note=note)


@dataclass
class ReconciledJail:
    name: str
    enabled: bool
    currently_banned: int = 0
    banned_ips: list[str] = field(default_factory=list)
    total_banned: int | None = None
    max_retry: int | None = None
    ban_time: int | None = None
    find_time: int | None = None
    category: str = "other"
    severity: str = "low"
    filter: str | None = None

    @property
    def status(self) -> str:
        return "ENABLED" if self.enabled else "DISABLED"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "enabled": self.enabled,
            "status": self.status,
            "currently_banned": self.currently_banned,
            "banned_ips": list(self.banned_ips),
            "total_banned": self.total_banned,
            "max_retry": self.max_retry,
            "ban_time": self.ban_time,
            "find_time": self.find_time,
            "category": self.category,
            "severity": self.severity,
            "filter": self.filter,
        }


@dataclass(frozen=True)
class BanEvent:
    jail: str
    address: str
    action: str  # ban | unban | restore
    timestamp: float
    source: str = "log"

    def to_dict(self) -> dict[str, Any]:
        return {
            "jail": self.jail,
            "ip": self.address,
            "action": self.action,
            "timestamp": self.timestamp,
            "source": self.source,
        }


@dataclass(frozen=True)
class ActiveBan:
    jail: str
    address: str
    banned_at: float
    ban_time: int
    remaining: float | None  # None for permanent bans

    def to_dict(self) -> dict[str, Any]:
        return {
            "jail": self.jail,
            "ip": self.address,
            "banned_at": self.banned_at,
            "ban_time": self.ban_time,
            "remaining_seconds": None if self.remaining is None else int(self.remaining),
            "permanent": self.remaining is None,
        }


@dataclass
class ActionOutcome:
    success: bool
    jail: str | None
    action: str
    final_state: bool | None = None
    nok_ignored: bool = False
    message: str = ""
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "jail": self.jail,
            "action": self.action,
            "finalState": None if self.final_state is None else ("ENABLED" if self.final_state else "DISABLED"),
            "enabled": self.final_state,
            "nokIgnored": self.nok_ignored,
            "message": self.message,
            "warnings": list(self.warnings),
        }


@dataclass
class ReconciledView:
    jails: list[ReconciledJail]
    server_status: str
    errors: list[str]
    last_updated: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "jails": [j.to_dict() for j in self.jails],
            "serverStatus": self.server_status,
            "errors": list(self.errors),
            "lastUpdated": self.last_updated,
        }
