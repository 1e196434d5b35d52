"""Async subprocess runner with timeouts, output caps and a command whitelist."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field

from Jail_Control.errors import ValidationError

logger = logging.getLogger("jailwatch.runner")

_CHUNK = 64 * 1024
_REAP_TIMEOUT = 5.0


@dataclass
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    truncated: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


@dataclass
class _Capture:
    limit: int
    chunks: list[bytes] = field(default_factory=list)
    size: int = 0
    truncated: bool = False

    def feed(self, data: bytes) -> None:
        room = self.limit - self.size
        if room <= 0:
            self.truncated = True
            return
        if len(data) > room:
            data = data[:room]
            self.truncated = True
        self.chunks.append(data)
        self.size += len(data)

    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8", errors="replace")


async def _drain(stream: asyncio.StreamReader | None, capture: _Capture) -> None:
    if stream is None:
        return
    while True:
        data = await stream.read(_CHUNK)
        if not data:
            return
        # keep reading past the cap so the child never blocks on a full pipe
        capture.feed(data)


async def _reap(proc: asyncio.subprocess.Process, out: _Capture, err: _Capture) -> None:
    """Kill ``proc`` and wait for it so no zombie is left behind."""
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    try:
        await asyncio.wait_for(
            asyncio.gather(_drain(proc.stdout, out), _drain(proc.stderr, err), proc.wait()),
            timeout=_REAP_TIMEOUT,
        )
    except asyncio.TimeoutError:
        logger.error("Process %s did not exit after SIGKILL", proc.pid)


class CommandRunner:
    """Runs whitelisted executables, optionally behind ``sudo -n``."""

    def __init__(
        self,
        programs: dict[str, str],
        *,
        sudo_path: str = "sudo",
        use_sudo: bool = True,
        default_timeout: float = 30.0,
        max_output_bytes: int = 5 * 1024 * 1024,
    ) -> None:
        self.programs = dict(programs)
        self.sudo_path = sudo_path
        self.use_sudo = use_sudo
        self.default_timeout = default_timeout
        self.max_output_bytes = max_output_bytes

    def build_command(self, program: str, args: list[str]) -> list[str]:
        if program not in self.programs:
            raise ValidationError(f"Command not allowed: {program}", {"program": program})
        command = [self.programs[program], *[str(a) for a in args]]
        if self.use_sudo and os.geteuid() != 0:
            command = [self.sudo_path, "-n", *command]
        return command

    async def run(self, program: str, args: list[str], timeout: float | None = None) -> CommandResult:
        command = self.build_command(program, args)
        limit = self.default_timeout if timeout is None else timeout
        started = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return CommandResult(command, 127, stderr=f"{command[0]}: command not found")
        except PermissionError as exc:
            return CommandResult(command, 126, stderr=f"{command[0]}: permission denied ({exc})")

        out = _Capture(self.max_output_bytes)
        err = _Capture(self.max_output_bytes)
        timed_out = False
        try:
            await asyncio.wait_for(
                asyncio.gather(_drain(proc.stdout, out), _drain(proc.stderr, err), proc.wait()),
                timeout=limit,
            )
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("Command timed out after %.1fs: %s", limit, " ".join(command))
        finally:
            # also runs when the caller cancels us
            if proc.returncode is None:
                await _reap(proc, out, err)

        returncode = proc.returncode if proc.returncode is not None else -9
        if out.truncated or err.truncated:
            logger.warning("Output of %s exceeded %d bytes and was truncated", command[0], self.max_output_bytes)
        return CommandResult(
            command=command,
            returncode=returncode,
            stdout=out.text(),
            stderr=err.text(),
            timed_out=timed_out,
            truncated=out.truncated or err.truncated,
            duration=time.monotonic() - started,
        )
