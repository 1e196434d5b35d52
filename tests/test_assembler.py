from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from Jail_Control.assembler import assemble, derive_server_status
from Jail_Control.errors import CommandError, EnforcementUnavailable
from Jail_Control.models import RuntimeJailState
from Jail_Control.result import Degraded, Ok, Unavailable
from Jail_Control.service import JailService
from tests.fakes import FakeDaemon, make_service, make_settings, write_config


async def broken_stats() -> dict:
    raise OSError("no /proc")


class TestAssemble(unittest.IsolatedAsyncioTestCase):
    async def test_one_entry_per_configured_jail(self) -> None:
        probed: list[str] = []

        async def fetch(name: str) -> RuntimeJailState:
            probed.append(name)
            return RuntimeJailState(enabled=True, currently_banned=1, banned_addresses=("192.0.2.1",))

        jails, errors = await assemble(["a", "b", "c"], {"b", "zzz"}, fetch)
        self.assertEqual([j.name for j in jails], ["a", "b", "c"])
        self.assertEqual(probed, ["b"])
        self.assertEqual({j.name for j in jails if j.enabled}, {"b"})
        self.assertEqual(errors, [])
        for jail in jails:
            if not jail.enabled:
                self.assertEqual(jail.currently_banned, 0)
                self.assertEqual(jail.banned_ips, [])

    async def test_failed_probe_keeps_jail_enabled_with_error(self) -> None:
        async def fetch(name: str) -> RuntimeJailState:
            raise CommandError("garbled")

        jails, errors = await assemble(["sshd"], {"sshd"}, fetch)
        self.assertTrue(jails[0].enabled)
        self.assertEqual(len(errors), 1)
        self.assertIn("sshd", errors[0])

    def test_server_status(self) -> None:
        down = Unavailable("fail2ban", EnforcementUnavailable("gone"))
        flaky = Unavailable("fail2ban", CommandError("exit 1"))
        host = Ok({})
        no_host = Unavailable("host", OSError())
        self.assertEqual(derive_server_status(Ok([]), no_host), "online")
        self.assertEqual(derive_server_status(Degraded([], "slow"), host), "online")
        self.assertEqual(derive_server_status(down, host), "offline")
        self.assertEqual(derive_server_status(flaky, host), "partial")
        self.assertEqual(derive_server_status(flaky, no_host), "offline")


class TestReconciledView(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_configured_but_stopped_jails_are_listed(self) -> None:
        daemon = FakeDaemon({"sshd": ["203.0.113.5", "203.0.113.9"]})
        service = make_service(self.root, daemon, {"sshd": None, "nginx-404": None, "recidive": None})
        view = await service.jails()
        self.assertEqual(view["serverStatus"], "online")
        by_name = {j["name"]: j for j in view["jails"]}
        self.assertEqual(set(by_name), {"sshd", "nginx-404", "recidive"})
        self.assertEqual(by_name["sshd"]["status"], "ENABLED")
        self.assertEqual(by_name["sshd"]["currently_banned"], 2)
        self.assertEqual(by_name["nginx-404"]["status"], "DISABLED")
        self.assertEqual(by_name["nginx-404"]["banned_ips"], [])
        self.assertEqual(by_name["nginx-404"]["max_retry"], 5)
        self.assertEqual(by_name["nginx-404"]["category"], "nginx")
        self.assertEqual(view["errors"], [])

    async def test_daemon_missing_is_offline(self) -> None:
        daemon = FakeDaemon({"sshd": []})
        daemon.unavailable = True
        service = make_service(self.root, daemon, {"sshd": None})
        view = await service.jails()
        self.assertEqual(view["serverStatus"], "offline")
        self.assertEqual(view["jails"], [])
        self.assertTrue(view["errors"])

    async def test_offline_shows_last_known_state(self) -> None:
        daemon = FakeDaemon({"sshd": []})
        service = make_service(self.root, daemon, {"sshd": None})
        await service.jails()
        service.cache.invalidate("jails")
        daemon.unavailable = True
        view = await service.jails()
        self.assertEqual(view["serverStatus"], "offline")
        self.assertEqual([j["name"] for j in view["jails"]], ["sshd"])
        self.assertTrue(any("last known" in e for e in view["errors"]))

    async def test_list_failure_is_partial(self) -> None:
        daemon = FakeDaemon({"sshd": []})
        daemon.list_timeout = True
        service = make_service(self.root, daemon, {"sshd": None})
        view = await service.jails()
        self.assertEqual(view["serverStatus"], "partial")
        self.assertEqual([j["enabled"] for j in view["jails"]], [False])

    async def test_list_failure_without_host_stats_is_offline(self) -> None:
        daemon = FakeDaemon({"sshd": []})
        daemon.list_timeout = True
        config_dir = write_config(self.root, {"sshd": None})
        service = JailService(make_settings(self.root, config_dir), daemon, stats=broken_stats)
        view = await service.jails()
        self.assertEqual(view["serverStatus"], "offline")

    async def test_slow_probe_is_degraded(self) -> None:
        daemon = FakeDaemon({"sshd": []})
        daemon.status_delay = 1.0
        service = make_service(self.root, daemon, {"sshd": None}, probe_timeout=0.05)
        view = await service.jails()
        self.assertEqual(view["serverStatus"], "online")
        self.assertFalse(view["jails"][0]["enabled"])
        self.assertTrue(any("timed out" in e for e in view["errors"]))

    async def test_single_jail(self) -> None:
        daemon = FakeDaemon({"sshd": ["203.0.113.5"]})
        service = make_service(self.root, daemon, {"sshd": None, "nginx-404": None})
        data = await service.jail("sshd")
        self.assertTrue(data["jail"]["enabled"])
        self.assertEqual(data["jail"]["banned_ips"], ["203.0.113.5"])
        data = await service.jail("nginx-404")
        self.assertFalse(data["jail"]["enabled"])


if __name__ == "__main__":
    unittest.main()
