"""Runtime state probe for a single jail."""

from __future__ import annotations

import asyncio
import logging

from Jail_Control.daemon import EnforcementDaemon
from Jail_Control.errors import DaemonNok, ProbeKilled, ProbeTimeout
from Jail_Control.models import RuntimeJailState

logger = logging.getLogger("jailwatch.probe")


class RuntimeStateProbe:
    """Ask the daemon whether a jail is running and what it has banned.

    A NOK answer means the jail is stopped. A timeout or a killed status
    command is treated as stopped too, but the returned state carries a note
    so callers can surface it. Every other failure propagates.

    ``timeout`` is a backstop around the whole daemon call. The daemon's own
    command timeout should be shorter so its child is killed first.
    """

    def __init__(self, daemon: EnforcementDaemon, timeout: float = 5.0) -> None:
        self.daemon = daemon
        self.timeout = timeout

    async def probe(self, name: str) -> RuntimeJailState:
        try:
            status = await asyncio.wait_for(self.daemon.jail_status(name), timeout=self.timeout)
        except DaemonNok:
            return RuntimeJailState.disabled()
        except ProbeKilled as exc:
            logger.warning("Probe of jail %s failed: %s, assuming disabled", name, exc.message)
            return RuntimeJailState.disabled(note=f"{name}: status probe was killed, assumed disabled")
        except (ProbeTimeout, asyncio.TimeoutError):
            logger.warning("Probe of jail %s timed out after %.1fs, assuming disabled", name, self.timeout)
            return RuntimeJailState.disabled(note=f"{name}: status probe timed out, assumed disabled")

        return RuntimeJailState(
            enabled=True,
            currently_banned=status.currently_banned,
            banned_addresses=tuple(status.banned_addresses),
            total_banned=status.total_banned,
            max_retry=status.max_retry,
            ban_time=status.ban_time,
            find_time=status.find_time,
        )
