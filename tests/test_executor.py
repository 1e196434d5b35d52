from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from Jail_Control.daemon import DaemonReply
from Jail_Control.errors import (
    ActionVerificationFailed,
    DaemonNok,
    IdempotentNoOp,
    JailNotConfigured,
    PreflightError,
    ValidationError,
)
from Jail_Control.service import JailService
from tests.fakes import FakeDaemon, fake_stats, make_service, make_settings, write_config


class ExecutorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.daemon = FakeDaemon({"sshd": ["203.0.113.5"]})
        self.service = make_service(self.root, self.daemon, {"sshd": None, "nginx-404": None})

    def tearDown(self) -> None:
        self._tmp.cleanup()


class TestEnableDisable(ExecutorTestCase):
    async def test_disable_stopped_jail_is_idempotent(self) -> None:
        outcome = await self.service.disable("nginx-404")
        self.assertTrue(outcome.success)
        self.assertTrue(outcome.nok_ignored)
        data = outcome.to_dict()
        self.assertEqual(data["finalState"], "DISABLED")
        self.assertTrue(data["nokIgnored"])

    async def test_double_disable(self) -> None:
        first = await self.service.disable("sshd")
        second = await self.service.disable("sshd")
        self.assertTrue(first.success)
        self.assertFalse(first.nok_ignored)
        self.assertTrue(second.success)
        self.assertTrue(second.nok_ignored)
        self.assertEqual(second.final_state, False)

    async def test_enable_then_disable_round_trip(self) -> None:
        enabled = await self.service.enable("nginx-404")
        self.assertEqual(enabled.to_dict()["finalState"], "ENABLED")
        self.assertIn("nginx-404", self.daemon.running)
        disabled = await self.service.disable("nginx-404")
        self.assertEqual(disabled.to_dict()["finalState"], "DISABLED")
        self.assertNotIn("nginx-404", self.daemon.running)

    async def test_toggle_flips_state(self) -> None:
        outcome = await self.service.toggle("sshd")
        self.assertFalse(outcome.final_state)
        outcome = await self.service.toggle("sshd")
        self.assertTrue(outcome.final_state)

    async def test_stuck_jail_fails_verification(self) -> None:
        self.daemon.stuck.add("nginx-404")
        with self.assertRaises(ActionVerificationFailed) as ctx:
            await self.service.enable("nginx-404")
        self.assertEqual(ctx.exception.details["expected"], "ENABLED")
        self.assertEqual(ctx.exception.details["actual"], "DISABLED")
        phases = [e.get("phase") for e in self.service.audit.tail()]
        self.assertEqual(phases[0], "failed")

    async def test_invalid_name_never_reaches_daemon(self) -> None:
        for name in ("", "ssh d", "sshd;reboot", "../x"):
            with self.subTest(name=name):
                with self.assertRaises(ValidationError):
                    await self.service.enable(name)
        self.assertEqual(self.daemon.calls, [])

    async def test_unknown_jail(self) -> None:
        with self.assertRaises(JailNotConfigured):
            await self.service.disable("postfix")
        self.assertEqual(self.daemon.dispatched(), [])

    async def test_action_invalidates_cached_view(self) -> None:
        before = await self.service.jails()
        self.assertIs(await self.service.jails(), before)
        await self.service.disable("sshd")
        after = await self.service.jails()
        sshd = next(j for j in after["jails"] if j["name"] == "sshd")
        self.assertFalse(sshd["enabled"])

    async def test_audit_trail(self) -> None:
        await self.service.enable("nginx-404")
        entries = self.service.audit.tail()
        self.assertEqual([e["phase"] for e in entries], ["succeeded", "dispatched", "requested"])
        self.assertTrue(all(e["jail"] == "nginx-404" for e in entries))

    async def test_rejections_are_audited(self) -> None:
        with self.assertRaises(ValidationError):
            await self.service.enable("ssh d")
        with self.assertRaises(JailNotConfigured):
            await self.service.disable("postfix")
        with self.assertRaises(ValidationError):
            await self.service.unban("sshd", "not-an-ip")
        unban, unknown, invalid = self.service.audit.tail()
        self.assertTrue(all(e["phase"] == "rejected" for e in (unban, unknown, invalid)))
        self.assertEqual((unban["action"], unban["jail"], unban["ip"]), ("unban", "sshd", "not-an-ip"))
        self.assertEqual((unknown["action"], unknown["jail"]), ("disable", "postfix"))
        self.assertIn("not configured", unknown["reason"])
        self.assertIsNone(invalid["jail"])
        self.assertEqual(invalid["requested"], "ssh d")
        self.assertEqual(self.daemon.calls, [])


class TestJailConfigWrite(ExecutorTestCase):
    async def test_write_is_audited_and_readable(self) -> None:
        result = await self.service.update_jail_config("sshd", "[sshd]\nenabled = true\nmaxretry = 2\n")
        self.assertTrue(result["path"].endswith("jail.local"))
        config = await self.service.jail_config("sshd")
        self.assertEqual(config["content"], "[sshd]\nenabled = true\nmaxretry = 2\n")
        self.assertIn("[nginx-404]", Path(result["path"]).read_text(encoding="utf-8"))
        entry = self.service.audit.tail()[0]
        self.assertEqual((entry["action"], entry["phase"], entry["jail"]), ("write_jail_config", "succeeded", "sshd"))
        self.assertEqual(self.daemon.calls, [])

    async def test_bad_content_is_rejected(self) -> None:
        local = self.root / "fail2ban" / "jail.local"
        before = local.read_text(encoding="utf-8")
        with self.assertRaises(ValidationError):
            await self.service.update_jail_config("sshd", "[nginx-404]\nenabled = false\n")
        self.assertEqual(local.read_text(encoding="utf-8"), before)
        entry = self.service.audit.tail()[0]
        self.assertEqual(entry["phase"], "rejected")
        self.assertTrue(entry["errors"])

    async def test_unknown_jail_config(self) -> None:
        with self.assertRaises(JailNotConfigured):
            await self.service.jail_config("postfix")
        with self.assertRaises(ValidationError):
            await self.service.update_jail_config("../jail.local", "[x]\n")
        self.assertEqual(self.service.audit.tail()[0]["phase"], "rejected")


class TestStrictMode(ExecutorTestCase):
    async def test_strict_mode_surfaces_nok(self) -> None:
        self.service.executor.idempotent = False
        with self.assertRaises(IdempotentNoOp):
            await self.service.disable("nginx-404")

    async def test_strict_mode_real_nok(self) -> None:
        self.service.executor.idempotent = False

        async def refuse(name):
            return DaemonReply(ok=False, nok=True, stdout="ERROR NOK")

        self.daemon.stop = refuse
        with self.assertRaises(DaemonNok):
            await self.service.disable("sshd")


class TestPreflight(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_missing_filter_blocks_start(self) -> None:
        config_dir = write_config(self.root, {"nginx-404": None}, filters=[])
        daemon = FakeDaemon()
        service = JailService(make_settings(self.root, config_dir), daemon, stats=fake_stats)
        with self.assertRaises(PreflightError) as ctx:
            await service.enable("nginx-404")
        self.assertIn("filterPath", ctx.exception.details)
        self.assertEqual(daemon.dispatched(), [])

    async def test_missing_logpath_is_a_warning(self) -> None:
        config_dir = write_config(self.root, {"sshd": None})
        with (config_dir / "jail.local").open("a", encoding="utf-8") as f:
            f.write(f"logpath = {self.root / 'nope.log'}\n")
        service = JailService(make_settings(self.root, config_dir), FakeDaemon(), stats=fake_stats)
        outcome = await service.enable("sshd")
        self.assertTrue(outcome.success)
        self.assertTrue(any("nope.log" in w for w in outcome.warnings))


class TestUnbanRestart(ExecutorTestCase):
    async def test_unban(self) -> None:
        outcome = await self.service.unban("sshd", "203.0.113.5")
        self.assertTrue(outcome.success)
        self.assertFalse(outcome.nok_ignored)
        self.assertEqual(self.daemon.running["sshd"], [])

    async def test_unban_not_banned_is_idempotent(self) -> None:
        outcome = await self.service.unban("sshd", "198.51.100.7")
        self.assertTrue(outcome.success)
        self.assertTrue(outcome.nok_ignored)

    async def test_unban_rejects_bad_address(self) -> None:
        with self.assertRaises(ValidationError):
            await self.service.unban("sshd", "not-an-ip")
        self.assertEqual(self.daemon.dispatched(), [])

    async def test_restart_clears_cache(self) -> None:
        await self.service.jails()
        self.assertIsNotNone(self.service.cache.get_stale("jails"))
        outcome = await self.service.restart()
        self.assertTrue(outcome.success)
        self.assertEqual(self.daemon.restarts, 1)
        self.assertIsNone(self.service.cache.get_stale("jails"))

    async def test_restart_inactive_fails(self) -> None:
        self.daemon.active = False
        with self.assertRaises(ActionVerificationFailed):
            await self.service.restart()


if __name__ == "__main__":
    unittest.main()
