from __future__ import annotations

import os
import unittest
from unittest import mock

from Jail_Control.config import Settings
from Jail_Control.daemon import Fail2banClient
from Jail_Control.errors import CommandError, DaemonNok, EnforcementUnavailable, ProbeKilled, ProbeTimeout
from Jail_Control.hoststats import collect_host_stats
from Jail_Control.runner import CommandResult, CommandRunner
from tests.test_parsers import GLOBAL, JAIL


class StubRunner(CommandRunner):
    """Answers from a table keyed by the joined argument list."""

    def __init__(self, answers: dict[str, CommandResult]) -> None:
        super().__init__({"fail2ban-client": "fail2ban-client", "systemctl": "systemctl"}, use_sudo=False)
        self.answers = answers
        self.seen: list[tuple[str, list[str], float | None]] = []

    async def run(self, program: str, args: list[str], timeout: float | None = None) -> CommandResult:
        self.seen.append((program, list(args), timeout))
        key = " ".join([program, *args])
        return self.answers.get(key, CommandResult([program, *args], 0))


def done(stdout: str = "", stderr: str = "", code: int = 0, timed_out: bool = False) -> CommandResult:
    return CommandResult([], code, stdout=stdout, stderr=stderr, timed_out=timed_out)


class TestFail2banClient(unittest.IsolatedAsyncioTestCase):
    async def test_global_status(self) -> None:
        client = Fail2banClient(StubRunner({"fail2ban-client status": done(GLOBAL)}), probe_timeout=2)
        self.assertEqual(await client.global_status(), ["sshd", "nginx-404"])

    async def test_global_status_failures(self) -> None:
        cases = [
            (done(stderr="sudo: fail2ban-client: command not found", code=1), EnforcementUnavailable),
            (done(stderr="ERROR  Failed to access socket path: /var/run/fail2ban/fail2ban.sock", code=255), EnforcementUnavailable),
            (done(timed_out=True, code=-9), ProbeTimeout),
            (done(code=-15), ProbeKilled),
            (done(stderr="boom", code=2), CommandError),
            (done("unexpected banner"), CommandError),
        ]
        for result, error in cases:
            with self.subTest(error=error.__name__, stderr=result.stderr):
                client = Fail2banClient(StubRunner({"fail2ban-client status": result}))
                with self.assertRaises(error):
                    await client.global_status()

    async def test_jail_status(self) -> None:
        runner = StubRunner({
            "fail2ban-client status sshd": done(JAIL),
            "fail2ban-client status nginx": done(stderr="ERROR   NOK: ('nginx',)", code=255),
        })
        client = Fail2banClient(runner, probe_timeout=3)
        status = await client.jail_status("sshd")
        self.assertEqual(status.currently_banned, 2)
        self.assertEqual(runner.seen[0], ("fail2ban-client", ["status", "sshd"], 3))
        with self.assertRaises(DaemonNok):
            await client.jail_status("nginx")

    async def test_killed_jail_status(self) -> None:
        runner = StubRunner({"fail2ban-client status sshd": done(code=-9)})
        with self.assertRaises(ProbeKilled) as ctx:
            await Fail2banClient(runner).jail_status("sshd")
        self.assertIsInstance(ctx.exception, ProbeTimeout)
        self.assertEqual(ctx.exception.details["jail"], "sshd")

    async def test_control_replies(self) -> None:
        runner = StubRunner({
            "fail2ban-client stop sshd": done(stderr="Sorry but the jail 'sshd' does not exist", code=255),
            "fail2ban-client start sshd": done(timed_out=True, code=-9),
            "fail2ban-client set sshd unbanip 203.0.113.5": done("1"),
            "fail2ban-client start broken": done(stderr="Traceback", code=1),
            "fail2ban-client stop nginx": done(code=-9),
        })
        client = Fail2banClient(runner, action_timeout=7)
        reply = await client.stop("sshd")
        self.assertTrue(reply.nok)
        self.assertFalse(reply.ok)
        self.assertTrue((await client.start("sshd")).timed_out)
        killed = await client.stop("nginx")
        self.assertTrue(killed.timed_out)
        self.assertFalse(killed.ok)
        self.assertTrue((await client.unban("sshd", "203.0.113.5")).ok)
        with self.assertRaises(CommandError):
            await client.start("broken")
        self.assertTrue(all(timeout == 7 for _, _, timeout in runner.seen))

    async def test_service_commands(self) -> None:
        runner = StubRunner({"systemctl is-active fail2ban": done("active\n")})
        client = Fail2banClient(runner)
        self.assertTrue(await client.is_active())
        self.assertTrue((await client.restart()).ok)
        self.assertEqual(runner.seen[-1][:2], ("systemctl", ["restart", "fail2ban"]))


class TestSudoPrefix(unittest.TestCase):
    def test_sudo_added_for_non_root(self) -> None:
        runner = CommandRunner({"fail2ban-client": "/usr/bin/fail2ban-client"}, use_sudo=True)
        with mock.patch("os.geteuid", return_value=1000):
            self.assertEqual(runner.build_command("fail2ban-client", ["status"])[:2], ["sudo", "-n"])
        with mock.patch("os.geteuid", return_value=0):
            self.assertEqual(runner.build_command("fail2ban-client", ["status"]), ["/usr/bin/fail2ban-client", "status"])


class TestSettings(unittest.TestCase):
    def test_from_env(self) -> None:
        env = {"FAIL2BAN_CONFIG_DIR": "/tmp/f2b", "USE_SUDO": "false", "PROBE_TIMEOUT": "oops", "API_TOKEN": " t ", "PROBE_GRACE": "-2"}
        with mock.patch.dict(os.environ, env):
            settings = Settings.from_env()
        self.assertEqual(str(settings.config_dir), "/tmp/f2b")
        self.assertFalse(settings.use_sudo)
        self.assertEqual(settings.probe_timeout, 5.0)
        self.assertEqual(settings.probe_grace, 0.0)
        self.assertEqual(settings.api_token, "t")
        self.assertTrue(settings.audit_log.is_absolute())


class TestHostStats(unittest.TestCase):
    def test_shape(self) -> None:
        stats = collect_host_stats()
        self.assertIn("hostname", stats)
        self.assertGreaterEqual(stats["memory"]["total"], 1)
        self.assertGreaterEqual(stats["cpu"]["count"], 1)


if __name__ == "__main__":
    unittest.main()
