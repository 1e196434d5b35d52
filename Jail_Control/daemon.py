"""Enforcement daemon interface and the fail2ban-client adapter."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from Jail_Control.errors import CommandError, DaemonNok, EnforcementUnavailable, ProbeKilled, ProbeTimeout
from Jail_Control.parsers import JailStatus, classify_error, parse_global_status, parse_jail_status, safe_parse
from Jail_Control.runner import CommandResult, CommandRunner

logger = logging.getLogger("jailwatch.daemon")

_UNAVAILABLE_KINDS = {"command_not_found", "permission_error", "connection_error", "service_down"}


@dataclass(frozen=True)
class DaemonReply:
    """Raw answer to a control command. ``nok`` and ``timed_out`` are not errors here."""

    ok: bool
    nok: bool = False
    timed_out: bool = False
    stdout: str = ""
    stderr: str = ""

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class EnforcementDaemon(ABC):
    """One coroutine per daemon capability."""

    @abstractmethod
    async def global_status(self) -> list[str]:
        """Names of the jails the daemon is currently running."""

    @abstractmethod
    async def jail_status(self, name: str) -> JailStatus:
        """Raises DaemonNok when the jail is not running."""

    @abstractmethod
    async def start(self, name: str) -> DaemonReply: ...

    @abstractmethod
    async def stop(self, name: str) -> DaemonReply: ...

    @abstractmethod
    async def unban(self, name: str, address: str) -> DaemonReply: ...

    @abstractmethod
    async def restart(self) -> DaemonReply: ...

    @abstractmethod
    async def is_active(self) -> bool: ...


def _raise_for_unavailable(result: CommandResult) -> None:
    klass = classify_error(result.stdout, result.stderr)
    if klass.is_error and klass.kind in _UNAVAILABLE_KINDS:
        raise EnforcementUnavailable(
            klass.message or "fail2ban unavailable",
            kind=klass.kind or "service_down",
            details={"stderr": result.stderr.strip()[:400], "stdout": result.stdout.strip()[:400]},
        )


def _killed(result: CommandResult) -> bool:
    return not result.timed_out and result.returncode < 0


class Fail2banClient(EnforcementDaemon):
    """Talks to fail2ban through ``fail2ban-client`` and ``systemctl``."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        probe_timeout: float = 5.0,
        action_timeout: float = 10.0,
        command_timeout: float = 30.0,
        service_name: str = "fail2ban",
    ) -> None:
        self.runner = runner
        self.probe_timeout = probe_timeout
        self.action_timeout = action_timeout
        self.command_timeout = command_timeout
        self.service_name = service_name

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def global_status(self) -> list[str]:
        result = await self.runner.run("fail2ban-client", ["status"], timeout=self.probe_timeout)
        if result.timed_out:
            raise ProbeTimeout("fail2ban-client status timed out")
        if _killed(result):
            raise ProbeKilled(f"fail2ban-client status was killed by signal {-result.returncode}")
        _raise_for_unavailable(result)
        if result.returncode != 0:
            raise CommandError(
                f"fail2ban-client status exited with {result.returncode}",
                {"stderr": result.stderr.strip()[:400]},
            )
        names, errors = safe_parse(parse_global_status, result.stdout, None)
        if names is None:
            raise CommandError("Unrecognised fail2ban-client status output", {"errors": errors})
        return names

    async def jail_status(self, name: str) -> JailStatus:
        result = await self.runner.run("fail2ban-client", ["status", name], timeout=self.probe_timeout)
        if result.timed_out:
            raise ProbeTimeout(f"fail2ban-client status {name} timed out", {"jail": name})
        if _killed(result):
            raise ProbeKilled(
                f"fail2ban-client status {name} was killed by signal {-result.returncode}", {"jail": name}
            )
        _raise_for_unavailable(result)
        klass = classify_error(result.stdout, result.stderr)
        if klass.kind == "nok":
            raise DaemonNok(f"Jail '{name}' is not running", result.stdout, result.stderr)
        if result.returncode != 0:
            raise CommandError(
                f"fail2ban-client status {name} exited with {result.returncode}",
                {"jail": name, "stderr": result.stderr.strip()[:400]},
            )
        status, errors = safe_parse(parse_jail_status, result.stdout, JailStatus())
        if errors:
            logger.warning("Status of %s could not be fully parsed: %s", name, "; ".join(errors))
        return status

    async def is_active(self) -> bool:
        result = await self.runner.run(
            "systemctl", ["is-active", self.service_name], timeout=self.probe_timeout
        )
        return result.ok and result.stdout.strip() == "active"

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def _control(self, args: list[str], timeout: float) -> DaemonReply:
        result = await self.runner.run("fail2ban-client", args, timeout=timeout)
        if _killed(result):
            logger.warning("fail2ban-client %s was killed by signal %d", " ".join(args), -result.returncode)
        if result.timed_out or _killed(result):
            return DaemonReply(ok=False, timed_out=True, stdout=result.stdout, stderr=result.stderr)
        _raise_for_unavailable(result)
        klass = classify_error(result.stdout, result.stderr)
        if klass.kind == "nok":
            return DaemonReply(ok=False, nok=True, stdout=result.stdout, stderr=result.stderr)
        if result.returncode != 0:
            raise CommandError(
                f"fail2ban-client {' '.join(args)} exited with {result.returncode}",
                {"stdout": result.stdout.strip()[:400], "stderr": result.stderr.strip()[:400]},
            )
        return DaemonReply(ok=True, stdout=result.stdout, stderr=result.stderr)

    async def start(self, name: str) -> DaemonReply:
        return await self._control(["start", name], self.action_timeout)

    async def stop(self, name: str) -> DaemonReply:
        return await self._control(["stop", name], self.action_timeout)

    async def unban(self, name: str, address: str) -> DaemonReply:
        return await self._control(["set", name, "unbanip", address], self.action_timeout)

    async def restart(self) -> DaemonReply:
        result = await self.runner.run(
            "systemctl", ["restart", self.service_name], timeout=self.command_timeout
        )
        if result.timed_out or _killed(result):
            return DaemonReply(ok=False, timed_out=True, stdout=result.stdout, stderr=result.stderr)
        klass = classify_error(result.stdout, result.stderr)
        if klass.kind in {"command_not_found", "permission_error"}:
            raise EnforcementUnavailable(klass.message or "systemctl unavailable", kind=klass.kind or "")
        return DaemonReply(ok=result.returncode == 0, stdout=result.stdout, stderr=result.stderr)
