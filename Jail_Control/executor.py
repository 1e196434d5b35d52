"""
Jail control actions with post-condition verification.

Each action walks a small state machine:

  IDLE -> DISPATCHED -> VERIFYING -> SUCCEEDED | FAILED

The daemon answers NOK both for real errors and for "already in that
state", so a NOK is never trusted on its own: the jail is re-probed after
a settle delay and the outcome is decided from what the probe sees.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum

from Jail_Control.audit import AuditLog
from Jail_Control.cache import TTLCache
from Jail_Control.common import is_valid_jail_name, require_ip, require_jail_name
from Jail_Control.daemon import DaemonReply, EnforcementDaemon
from Jail_Control.discovery import JailDiscovery
from Jail_Control.errors import (
    ActionVerificationFailed,
    CommandError,
    ConfigurationError,
    DaemonNok,
    IdempotentNoOp,
    JailControlError,
    JailNotConfigured,
    ValidationError,
)
from Jail_Control.filters import FilterManager
from Jail_Control.jailconf import JailConfigReader
from Jail_Control.models import ActionOutcome, RuntimeJailState
from Jail_Control.probe import RuntimeStateProbe

logger = logging.getLogger("jailwatch.executor")


class ActionState(str, Enum):
    IDLE = "idle"
    DISPATCHED = "dispatched"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_NEXT = {
    ActionState.IDLE: {ActionState.DISPATCHED, ActionState.FAILED},
    ActionState.DISPATCHED: {ActionState.VERIFYING, ActionState.FAILED},
    ActionState.VERIFYING: {ActionState.SUCCEEDED, ActionState.FAILED},
    ActionState.SUCCEEDED: set(),
    ActionState.FAILED: set(),
}


class ActionAttempt:
    def __init__(self, jail: str | None, action: str) -> None:
        self.jail = jail
        self.action = action
        self.state = ActionState.IDLE

    def advance(self, state: ActionState) -> None:
        if state not in _NEXT[self.state]:
            raise RuntimeError(f"illegal transition {self.state.value} -> {state.value}")
        logger.debug("%s %s: %s -> %s", self.action, self.jail, self.state.value, state.value)
        self.state = state


class ActionExecutor:
    def __init__(
        self,
        daemon: EnforcementDaemon,
        probe: RuntimeStateProbe,
        discovery: JailDiscovery,
        config_reader: JailConfigReader,
        filters: FilterManager,
        audit: AuditLog,
        cache: TTLCache,
        *,
        settle_delay: float = 0.5,
        restart_settle: float = 2.0,
        restart_retry_delay: float = 3.0,
        idempotent: bool = True,
    ) -> None:
        self.daemon = daemon
        self.probe = probe
        self.discovery = discovery
        self.config_reader = config_reader
        self.filters = filters
        self.audit = audit
        self.cache = cache
        self.settle_delay = settle_delay
        self.restart_settle = restart_settle
        self.restart_retry_delay = restart_retry_delay
        self.idempotent = idempotent

    # ------------------------------------------------------------------
    # Public actions
    # ------------------------------------------------------------------

    async def enable(self, name: str) -> ActionOutcome:
        return await self._run(name, "enable", lambda _before: True)

    async def disable(self, name: str) -> ActionOutcome:
        return await self._run(name, "disable", lambda _before: False)

    async def toggle(self, name: str) -> ActionOutcome:
        return await self._run(name, "toggle", lambda before: not before.enabled)

    async def unban(self, name: str, address: str) -> ActionOutcome:
        name = await self._admit("unban", name, ip=str(address)[:64])
        try:
            address = require_ip(address)
        except ValidationError as exc:
            await self.audit.record("unban", name, phase="rejected", ip=str(address)[:64], reason=exc.message)
            raise
        attempt = ActionAttempt(name, "unban")
        await self.audit.record("unban", name, ip=address, phase="requested")

        try:
            attempt.advance(ActionState.DISPATCHED)
            reply = await self.daemon.unban(name, address)
            await self.audit.record("unban", name, ip=address, phase="dispatched", nok=reply.nok, output=reply.output[:400])
            await asyncio.sleep(self.settle_delay)
            attempt.advance(ActionState.VERIFYING)
            after = await self.probe.probe(name)
        except JailControlError as exc:
            await self._fail(attempt, str(exc), ip=address)
            raise

        if address in after.banned_addresses:
            await self._fail(attempt, "address still banned", ip=address)
            raise ActionVerificationFailed(name, "unban", f"{address} not banned", f"{address} banned", reply.output)

        attempt.advance(ActionState.SUCCEEDED)
        self._invalidate(name)
        outcome = ActionOutcome(
            success=True,
            jail=name,
            action="unban",
            final_state=after.enabled,
            nok_ignored=reply.nok,
            message=f"{address} is not banned in {name}" if reply.nok else f"Unbanned {address} from {name}",
        )
        await self.audit.record("unban", name, ip=address, phase="succeeded", nok=reply.nok)
        return outcome

    async def write_jail_config(self, name: str, content: str) -> str:
        """Save edited jail text. The running daemon only sees it after a restart."""
        name = await self._admit("write_jail_config", name, configured=False)
        try:
            path = await asyncio.to_thread(self.config_reader.write, name, content)
        except (ValidationError, ConfigurationError) as exc:
            await self.audit.record(
                "write_jail_config", name, phase="rejected", reason=exc.message, errors=exc.details.get("errors")
            )
            raise
        self._invalidate(name)
        await self.audit.record("write_jail_config", name, phase="succeeded", path=str(path))
        return str(path)

    async def restart_service(self) -> ActionOutcome:
        attempt = ActionAttempt(None, "restart")
        await self.audit.record("restart", None, phase="requested")
        try:
            attempt.advance(ActionState.DISPATCHED)
            reply = await self.daemon.restart()
            if not reply.ok:
                raise CommandError(
                    "fail2ban restart failed",
                    {
                        "timedOut": reply.timed_out,
                        "output": reply.output[:2000],
                        "suggestions": ["systemctl status fail2ban", "journalctl -u fail2ban -n 50", "fail2ban-client -t"],
                    },
                )
            await asyncio.sleep(self.restart_settle)
            attempt.advance(ActionState.VERIFYING)
            if not await self.daemon.is_active():
                raise ActionVerificationFailed("fail2ban", "restart", "active", "inactive", reply.output)
            active = await self._global_status_with_retry()
        except JailControlError as exc:
            await self._fail(attempt, str(exc))
            raise

        attempt.advance(ActionState.SUCCEEDED)
        self.cache.clear()
        await self.audit.record("restart", None, phase="succeeded", jails=active)
        return ActionOutcome(
            success=True,
            jail=None,
            action="restart",
            message=f"fail2ban restarted with {len(active)} active jail(s)",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, name: str, action: str, pick_target) -> ActionOutcome:
        name = await self._admit(action, name)

        attempt = ActionAttempt(name, action)
        warnings: list[str] = []
        try:
            before = await self.probe.probe(name)
            if before.note:
                warnings.append(before.note)
            target: bool = pick_target(before)
            await self.audit.record(action, name, phase="requested", target=_label(target), before=_label(before.enabled))

            if target:
                warnings.extend(await self._preflight(name))

            attempt.advance(ActionState.DISPATCHED)
            reply = await (self.daemon.start(name) if target else self.daemon.stop(name))
            nok = self._absorb(name, action, reply, before, target)
            await self.audit.record(
                action, name, phase="dispatched", nok=reply.nok, timed_out=reply.timed_out, output=reply.output[:400]
            )

            await asyncio.sleep(self.settle_delay)
            attempt.advance(ActionState.VERIFYING)
            after = await self.probe.probe(name)
        except JailControlError as exc:
            await self._fail(attempt, str(exc))
            raise

        if after.note:
            warnings.append(after.note)
        converged = after.enabled == target
        if not converged and not (nok and after.enabled == before.enabled):
            await self._fail(attempt, "state did not converge", expected=_label(target), actual=_label(after.enabled))
            raise ActionVerificationFailed(name, action, _label(target), _label(after.enabled), reply.output)

        attempt.advance(ActionState.SUCCEEDED)
        self._invalidate(name)
        if converged:
            message = f"Jail {'enabled' if target else 'disabled'}"
            if nok:
                message += " (already in requested state)"
        else:
            message = "fail2ban answered NOK and the jail state is unchanged"
        await self.audit.record(action, name, phase="succeeded", final=_label(after.enabled), nok=nok)
        return ActionOutcome(
            success=True,
            jail=name,
            action=action,
            final_state=after.enabled,
            nok_ignored=nok,
            message=message,
            warnings=warnings,
        )

    def _absorb(self, name: str, action: str, reply: DaemonReply, before: RuntimeJailState, target: bool) -> bool:
        """True when a NOK (or a timeout) was received and left for verification to judge."""
        if not (reply.nok or reply.timed_out):
            return False
        if self.idempotent:
            logger.info("%s %s: daemon answered %s, verifying state", action, name,
                        "NOK" if reply.nok else "nothing before the timeout")
            return True
        if before.enabled == target:
            raise IdempotentNoOp(f"Jail '{name}' is already {_label(target)}", {"jail": name})
        raise DaemonNok(f"fail2ban refused to {action} '{name}'", reply.stdout, reply.stderr)

    async def _preflight(self, name: str) -> list[str]:
        config = await asyncio.to_thread(self.config_reader.read, name)
        if config is None:
            return [f"No configuration section found for {name}; filter check skipped"]
        self.filters.preflight(config)
        missing = await asyncio.to_thread(self.config_reader.missing_log_paths, config)
        return [f"Log file not found: {path}" for path in missing]

    async def _admit(self, action: str, name: object, configured: bool = True, **fields) -> str:
        """Validated jail name; rejected requests are written to the audit log before raising."""
        try:
            jail = require_jail_name(name)
            if configured:
                await self._require_configured(jail)
        except (ValidationError, JailNotConfigured) as exc:
            await self.audit.record(
                action,
                name if is_valid_jail_name(name) else None,
                phase="rejected",
                requested=str(name)[:128],
                reason=exc.message,
                **fields,
            )
            raise
        return jail

    async def _require_configured(self, name: str) -> None:
        if not await self.discovery.is_configured(name):
            raise JailNotConfigured(name)

    async def _global_status_with_retry(self) -> list[str]:
        try:
            return await self.daemon.global_status()
        except JailControlError as exc:
            logger.warning("fail2ban not answering after restart (%s), retrying", exc)
            await asyncio.sleep(self.restart_retry_delay)
            return await self.daemon.global_status()

    async def _fail(self, attempt: ActionAttempt, reason: str, **fields) -> None:
        if attempt.state not in (ActionState.SUCCEEDED, ActionState.FAILED):
            attempt.advance(ActionState.FAILED)
        logger.warning("%s %s failed: %s", attempt.action, attempt.jail or "", reason)
        await self.audit.record(attempt.action, attempt.jail, phase="failed", reason=reason, **fields)

    def _invalidate(self, name: str) -> None:
        self.cache.invalidate("jails*")
        self.cache.invalidate(f"jail:{name}")
        self.cache.invalidate("bans*")


def _label(enabled: bool) -> str:
    return "ENABLED" if enabled else "DISABLED"
