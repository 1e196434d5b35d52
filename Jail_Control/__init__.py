"""
Jail_Control package.

Discovers fail2ban jails from configuration, probes their live state,
reconciles both into one view and runs verified control actions
(start / stop / unban / restart) against the daemon.
"""
from __future__ import annotations

from Jail_Control.config import Settings
from Jail_Control.service import JailService

__all__ = ["JailService", "Settings"]
