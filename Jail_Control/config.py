"""Runtime settings for the jail control engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _root_dir() -> Path:
    return Path(__file__).resolve().parents[1]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    config_dir: Path = Path("/etc/fail2ban")
    client_path: str = "/usr/bin/fail2ban-client"
    systemctl_path: str = "/usr/bin/systemctl"
    sudo_path: str = "sudo"
    use_sudo: bool = True
    service_name: str = "fail2ban"
    ledger_db: Path = Path("/var/lib/fail2ban/fail2ban.sqlite3")
    event_log: Path = Path("/var/log/fail2ban.log")
    db_path: Path = Path("/data/jailwatch.db")
    audit_log: Path = Path("jail_actions.jsonl")

    # seconds
    jails_ttl: float = 5.0
    jail_ttl: float = 5.0
    system_ttl: float = 30.0
    bans_ttl: float = 10.0
    stale_ttl: float = 300.0
    sweep_interval: float = 60.0
    latency_budget: float = 8.0

    probe_timeout: float = 5.0
    probe_grace: float = 1.0
    action_timeout: float = 10.0
    command_timeout: float = 30.0
    settle_delay: float = 0.5
    restart_settle: float = 2.0
    restart_retry_delay: float = 3.0
    probe_concurrency: int = 8
    max_output_bytes: int = 5 * 1024 * 1024

    online_window: float = 60.0
    snapshot_history: int = 100
    api_token: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        audit_name = os.getenv("AUDIT_LOG", "jail_actions.jsonl").strip()
        audit_path = Path(audit_name)
        if not audit_path.is_absolute():
            audit_path = (_root_dir() / audit_path).resolve()
        return cls(
            config_dir=Path(os.getenv("FAIL2BAN_CONFIG_DIR", "/etc/fail2ban").strip()),
            client_path=os.getenv("FAIL2BAN_CLIENT_PATH", "/usr/bin/fail2ban-client").strip(),
            systemctl_path=os.getenv("SYSTEMCTL_PATH", "/usr/bin/systemctl").strip(),
            sudo_path=os.getenv("SUDO_PATH", "sudo").strip(),
            use_sudo=_env_bool("USE_SUDO", True),
            service_name=os.getenv("FAIL2BAN_SERVICE", "fail2ban").strip(),
            ledger_db=Path(os.getenv("FAIL2BAN_DB", "/var/lib/fail2ban/fail2ban.sqlite3").strip()),
            event_log=Path(os.getenv("FAIL2BAN_LOG", "/var/log/fail2ban.log").strip()),
            db_path=Path(os.getenv("DB_PATH", "/data/jailwatch.db").strip()),
            audit_log=audit_path,
            jails_ttl=_env_float("CACHE_JAILS_TTL", 5.0),
            jail_ttl=_env_float("CACHE_JAIL_TTL", 5.0),
            system_ttl=_env_float("CACHE_SYSTEM_TTL", 30.0),
            bans_ttl=_env_float("CACHE_BANS_TTL", 10.0),
            stale_ttl=_env_float("CACHE_STALE_TTL", 300.0),
            sweep_interval=_env_float("CACHE_SWEEP_INTERVAL", 60.0),
            latency_budget=_env_float("LATENCY_BUDGET", 8.0),
            probe_timeout=_env_float("PROBE_TIMEOUT", 5.0),
            probe_grace=max(0.0, _env_float("PROBE_GRACE", 1.0)),
            action_timeout=_env_float("ACTION_TIMEOUT", 10.0),
            command_timeout=_env_float("COMMAND_TIMEOUT", 30.0),
            settle_delay=_env_float("SETTLE_DELAY", 0.5),
            restart_settle=_env_float("RESTART_SETTLE", 2.0),
            restart_retry_delay=_env_float("RESTART_RETRY_DELAY", 3.0),
            probe_concurrency=max(1, _env_int("PROBE_CONCURRENCY", 8)),
            max_output_bytes=max(1024, _env_int("MAX_OUTPUT_BYTES", 5 * 1024 * 1024)),
            online_window=_env_float("ONLINE_WINDOW", 60.0),
            snapshot_history=max(1, _env_int("SNAPSHOT_HISTORY", 100)),
            api_token=os.getenv("API_TOKEN", "").strip(),
        )
