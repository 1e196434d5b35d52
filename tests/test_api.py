from __future__ import annotations

import importlib
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

import httpx
from fastapi.testclient import TestClient

import app.main as app_main
from agent import AgentPusher, create_agent_app, load_identity
from app.main import create_app
from app.registry import AgentRegistry
from app.remote import RemoteActionClient, canonical, sign_payload
from Jail_Control.config import Settings
from tests.fakes import FakeDaemon, make_service


class ApiTestCase(unittest.TestCase):
    token = ""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.daemon = FakeDaemon({"sshd": ["203.0.113.5"]})
        self.service = make_service(self.root, self.daemon, {"sshd": None, "nginx-404": None}, api_token=self.token)
        self.client = TestClient(create_app(service=self.service))
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        self._tmp.cleanup()


class TestJailEndpoints(ApiTestCase):
    def test_list(self) -> None:
        r = self.client.get("/api/jails")
        self.assertEqual(r.status_code, 200)
        data = r.json()
        self.assertEqual(data["serverStatus"], "online")
        self.assertEqual(sorted(j["name"] for j in data["jails"]), ["nginx-404", "sshd"])
        self.assertIn("lastUpdated", data)

    def test_single_jail_errors(self) -> None:
        self.assertEqual(self.client.get("/api/jails/sshd").status_code, 200)
        r = self.client.get("/api/jails/postfix")
        self.assertEqual(r.status_code, 404)
        self.assertFalse(r.json()["success"])
        self.assertEqual(self.client.get("/api/jails/bad$name").status_code, 400)

    def test_disable_stopped_jail(self) -> None:
        r = self.client.post("/api/jails/nginx-404/disable")
        self.assertEqual(r.status_code, 200)
        data = r.json()
        self.assertTrue(data["success"])
        self.assertTrue(data["nokIgnored"])
        self.assertEqual(data["finalState"], "DISABLED")

    def test_daemon_unavailable(self) -> None:
        self.daemon.unavailable = True
        self.assertEqual(self.client.post("/api/jails/sshd/enable").status_code, 503)
        self.assertEqual(self.client.get("/api/jails").json()["serverStatus"], "offline")

    def test_unban(self) -> None:
        r = self.client.post("/api/bans/unban", json={"jail": "sshd", "ip": "203.0.113.5"})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(self.daemon.running["sshd"], [])
        r = self.client.post("/api/bans/unban", json={"jail": "sshd", "ip": "nope"})
        self.assertEqual(r.status_code, 400)

    def test_create_filter(self) -> None:
        body = {"name": "myapp", "failregex": "^<HOST> denied$"}
        self.assertEqual(self.client.post("/api/filters", json=body).status_code, 201)
        self.assertEqual(self.client.post("/api/filters", json=body).status_code, 409)

    def test_jail_config_read_write(self) -> None:
        r = self.client.get("/api/jail-config/sshd")
        self.assertEqual(r.status_code, 200)
        data = r.json()
        self.assertTrue(data["path"].endswith("jail.local"))
        self.assertEqual(data["content"], "[sshd]\nenabled = true\n")
        self.assertFalse(data["inherited"])

        r = self.client.put("/api/jail-config/sshd", json={"content": "[sshd]\nenabled = true\nbantime = 3600\n"})
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.json()["success"])
        self.assertIn("bantime = 3600", self.client.get("/api/jail-config/sshd").json()["content"])
        self.assertEqual(self.client.get("/api/audit").json()[0]["action"], "write_jail_config")

    def test_jail_config_errors(self) -> None:
        self.assertEqual(self.client.get("/api/jail-config/postfix").status_code, 404)
        self.assertEqual(self.client.get("/api/jail-config/bad$name").status_code, 400)
        r = self.client.put("/api/jail-config/sshd", json={"content": "bantime = 1"})
        self.assertEqual(r.status_code, 400)
        self.assertTrue(r.json()["details"]["errors"])
        self.assertEqual(self.client.put("/api/jail-config/sshd", json={}).status_code, 422)

    def test_history_and_audit(self) -> None:
        self.assertEqual(self.client.get("/api/history").json(), [])
        self.assertEqual(self.client.get("/api/history?source=ledger").json(), [])
        self.assertEqual(self.client.get("/api/history?source=nope").status_code, 400)
        self.client.post("/api/jails/sshd/disable")
        audit = self.client.get("/api/audit").json()
        self.assertEqual(audit[0]["phase"], "succeeded")

    def test_health(self) -> None:
        data = self.client.get("/api/health").json()
        self.assertEqual(data["status"], "ok")
        self.assertIn("cache", data)


class TestTokenAuth(ApiTestCase):
    token = "hunter2"

    def test_writes_need_token(self) -> None:
        self.assertEqual(self.client.post("/api/jails/sshd/disable").status_code, 401)
        r = self.client.post("/api/jails/sshd/disable", headers={"Authorization": "Bearer hunter2"})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(self.client.get("/api/jails").status_code, 200)
        self.assertEqual(self.client.get("/api/servers").status_code, 401)
        self.assertEqual(self.client.get("/api/jail-config/sshd").status_code, 401)
        r = self.client.put("/api/jail-config/sshd", json={"content": "[sshd]\nenabled = false\n"})
        self.assertEqual(r.status_code, 401)


class TestAgentPush(ApiTestCase):
    def push(self, agent_id: str, key: str, **body) -> httpx.Response:
        return self.client.post(
            "/api/agent/push",
            json={"jails": [{"name": "sshd"}], "bans": [], "logTail": ["x"], **body},
            headers={"X-Agent-ID": agent_id, "X-Agent-Key": key},
        )

    def test_trust_on_first_use(self) -> None:
        r = self.push("agent-1", "k1", name="web-1")
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.json()["accepted"])
        self.assertEqual(self.push("agent-1", "k1").status_code, 200)
        self.assertEqual(self.push("agent-1", "other").status_code, 401)

        server = self.client.get("/api/servers/agent-1").json()
        self.assertEqual(server["name"], "web-1")
        self.assertEqual(server["lastSnapshot"]["logTail"], ["x"])
        self.assertEqual(len(self.client.get("/api/servers/agent-1/history").json()), 2)
        self.assertEqual(self.client.get("/api/servers").json()[0]["jailCount"], 1)

    def test_missing_headers(self) -> None:
        r = self.client.post("/api/agent/push", json={"jails": []})
        self.assertEqual(r.status_code, 401)

    def test_unknown_server(self) -> None:
        self.assertEqual(self.client.get("/api/servers/ghost").status_code, 404)
        self.assertEqual(self.client.get("/api/servers/ghost/history").status_code, 404)
        r = self.client.post("/api/servers/ghost/action", json={"action": "restart"})
        self.assertEqual(r.status_code, 404)


class TestAgentApp(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.daemon = FakeDaemon({"sshd": ["203.0.113.5"]})
        self.service = make_service(self.root, self.daemon, {"sshd": None})
        self.client = TestClient(create_agent_app(self.service, "agent-secret"))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def send(self, body: dict, secret: str = "agent-secret") -> httpx.Response:
        return self.client.post(
            "/api/action",
            content=canonical(body),
            headers={"x-signature": sign_payload(secret, body), "content-type": "application/json"},
        )

    def test_signed_action(self) -> None:
        r = self.send({"action": "stop", "params": {"jail": "sshd"}, "ts": int(time.time())})
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.json()["ok"])
        self.assertNotIn("sshd", self.daemon.running)

    def test_bad_signature(self) -> None:
        r = self.send({"action": "restart", "params": {}, "ts": int(time.time())}, secret="wrong")
        self.assertEqual(r.status_code, 401)
        self.assertEqual(self.daemon.restarts, 0)

    def test_missing_signature_and_bad_json(self) -> None:
        self.assertEqual(self.client.post("/api/action", json={"action": "restart"}).status_code, 401)
        r = self.client.post("/api/action", content=b"{", headers={"x-signature": "00"})
        self.assertEqual(r.status_code, 400)

    def test_engine_errors_are_mapped(self) -> None:
        r = self.send({"action": "stop", "params": {"jail": "postfix"}, "ts": int(time.time())})
        self.assertEqual(r.status_code, 404)
        self.assertFalse(r.json()["ok"])
        r = self.send({"action": "reboot", "params": {}, "ts": int(time.time())})
        self.assertEqual(r.status_code, 400)

    def test_identity_persisted(self) -> None:
        path = self.root / "identity.json"
        agent_id, secret = load_identity(path)
        self.assertEqual(load_identity(path), (agent_id, secret))
        self.assertEqual(len(secret), 64)
        self.assertEqual(path.stat().st_mode & 0o777, 0o600)


class TestCentralToAgent(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        (root / "central").mkdir()
        (root / "agent").mkdir()
        self.agent_daemon = FakeDaemon({"sshd": ["203.0.113.5"]})
        self.agent_service = make_service(root / "agent", self.agent_daemon, {"sshd": None})
        agent_app = create_agent_app(self.agent_service, "agent-secret")

        central_service = make_service(root / "central", FakeDaemon(), {"sshd": None})
        self.registry = AgentRegistry(root / "central" / "jailwatch.db")
        await self.registry.init()
        self.central = create_app(
            service=central_service,
            registry=self.registry,
            remote=RemoteActionClient(transport=httpx.ASGITransport(app=agent_app)),
        )

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_push_then_forward_action(self) -> None:
        pusher = AgentPusher(
            self.agent_service,
            "http://central",
            "agent-1",
            "agent-secret",
            name="web-1",
            remote_url="http://agent",
            transport=httpx.ASGITransport(app=self.central),
        )
        reply = await pusher.push_once()
        self.assertTrue(reply["accepted"])
        server = await self.registry.get("agent-1")
        self.assertEqual(server["remoteUrl"], "http://agent")
        self.assertEqual(server["lastSnapshot"]["jails"][0]["name"], "sshd")

        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=self.central), base_url="http://central") as client:
            r = await client.post(
                "/api/servers/agent-1/action",
                json={"action": "unban", "params": {"jail": "sshd", "ip": "203.0.113.5"}},
            )
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.json()["result"]["ok"])
        self.assertEqual(self.agent_daemon.running["sshd"], [])


class TestAppModule(unittest.TestCase):
    def test_import_builds_no_app(self) -> None:
        with mock.patch.object(Settings, "from_env", side_effect=AssertionError("settings read at import")):
            importlib.reload(app_main)
        self.assertFalse(hasattr(app_main, "app"))


if __name__ == "__main__":
    unittest.main()
