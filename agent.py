#!/usr/bin/env python3
"""JailWatch remote agent.

Runs next to fail2ban on a managed host and:
- pushes a snapshot (jails, active bans, log tail, host stats) to the
  central instance every ``--interval`` seconds
- serves ``POST /api/action`` for signed start/stop/unban/restart requests
  coming back from the central instance
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import secrets
import uuid
from pathlib import Path
from typing import Any

import httpx
import uvicorn
from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

from Jail_Control.errors import JailControlError, ValidationError, http_status
from Jail_Control.service import JailService
from app.remote import REMOTE_ACTIONS, verify_signature

logger = logging.getLogger("jailwatch.agent")


def load_identity(path: Path, agent_id: str = "", secret: str = "") -> tuple[str, str]:
    """Return (id, secret), generating and persisting them on first run."""
    stored: dict[str, str] = {}
    if path.exists():
        try:
            stored = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable identity file %s: %s", path, exc)
    agent_id = agent_id or stored.get("id") or str(uuid.uuid4())
    secret = secret or stored.get("secret") or secrets.token_hex(32)
    if stored.get("id") != agent_id or stored.get("secret") != secret:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"id": agent_id, "secret": secret}), encoding="utf-8")
        os.chmod(path, 0o600)
    return agent_id, secret


class AgentPusher:
    def __init__(
        self,
        service: JailService,
        server_url: str,
        agent_id: str,
        secret: str,
        *,
        interval: float = 30.0,
        name: str | None = None,
        remote_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.service = service
        self.server_url = server_url.rstrip("/")
        self.agent_id = agent_id
        self.secret = secret
        self.interval = interval
        self.name = name
        self.remote_url = remote_url
        self.transport = transport

    async def push_once(self) -> dict[str, Any]:
        payload = await self.service.snapshot()
        payload["name"] = self.name
        payload["remote_url"] = self.remote_url
        headers = {"X-Agent-ID": self.agent_id, "X-Agent-Key": self.secret}
        async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
            r = await client.post(f"{self.server_url}/api/agent/push", json=payload, headers=headers)
            r.raise_for_status()
            return r.json()

    async def run(self) -> None:
        while True:
            try:
                await self.push_once()
                logger.debug("Snapshot pushed to %s", self.server_url)
            except Exception as exc:
                logger.exception("Push to %s failed: %s", self.server_url, exc)
            await asyncio.sleep(self.interval)


async def dispatch(service: JailService, action: str, params: dict[str, Any]) -> dict[str, Any]:
    if action not in REMOTE_ACTIONS:
        raise ValidationError(f"Unknown action: {action}")
    if action == "restart":
        outcome = await service.restart()
    elif action == "unban":
        outcome = await service.unban(str(params.get("jail", "")), str(params.get("ip", "")))
    elif action == "start":
        outcome = await service.enable(str(params.get("jail", "")))
    else:
        outcome = await service.disable(str(params.get("jail", "")))
    return outcome.to_dict()


def create_agent_app(service: JailService, secret: str, pusher: AgentPusher | None = None) -> FastAPI:
    app = FastAPI(title="JailWatch agent", version="0.1.0")
    tasks: list[asyncio.Task] = []

    @app.on_event("startup")
    async def startup() -> None:
        service.start()
        if pusher is not None:
            tasks.append(asyncio.create_task(pusher.run(), name="agent-push"))
        logger.info("Agent started.")

    @app.on_event("shutdown")
    async def shutdown() -> None:
        for task in tasks:
            task.cancel()
        await service.stop()

    @app.get("/api/health")
    async def api_health() -> JSONResponse:
        return JSONResponse(service.health())

    @app.post("/api/action")
    async def api_action(request: Request, x_signature: str | None = Header(default=None)) -> JSONResponse:
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"ok": False, "error": "Invalid JSON"}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({"ok": False, "error": "Invalid payload"}, status_code=400)
        if not x_signature:
            return JSONResponse({"ok": False, "error": "Missing x-signature header"}, status_code=401)
        if not verify_signature(secret, payload, x_signature):
            logger.warning("Rejected action with bad signature from %s", request.client.host if request.client else "?")
            return JSONResponse({"ok": False, "error": "Invalid signature"}, status_code=401)

        params = payload.get("params") or {}
        try:
            result = await dispatch(service, str(payload.get("action", "")), params)
        except JailControlError as exc:
            return JSONResponse(
                {"ok": False, "error": exc.message, "details": exc.details},
                status_code=http_status(exc),
            )
        return JSONResponse({"ok": True, "result": result})

    return app


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="JailWatch remote agent")
    parser.add_argument(
        "--server",
        default=os.getenv("JAILWATCH_SERVER", ""),
        help="Central instance URL (example: http://hq.example:8000)",
    )
    parser.add_argument("--id", default=os.getenv("AGENT_ID", ""), help="Agent id (generated when empty)")
    parser.add_argument("--secret", default=os.getenv("AGENT_SECRET", ""), help="Shared secret (generated when empty)")
    parser.add_argument("--name", default=os.getenv("AGENT_NAME") or None, help="Display name on the central instance")
    parser.add_argument(
        "--identity-file",
        default=os.getenv("AGENT_IDENTITY_FILE", "agent_identity.json"),
        help="Where the generated id/secret are kept",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=float(os.getenv("PUSH_INTERVAL", "30")),
        help="Seconds between snapshot pushes",
    )
    parser.add_argument("--host", default=os.getenv("AGENT_HOST", "0.0.0.0"), help="Action receiver bind address")
    parser.add_argument("--port", type=int, default=int(os.getenv("AGENT_PORT", "4040")), help="Action receiver port")
    parser.add_argument(
        "--remote-url",
        default=os.getenv("AGENT_REMOTE_URL") or None,
        help="URL the central instance should use to reach this agent",
    )
    return parser.parse_args()


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
    )
    args = parse_args()
    agent_id, secret = load_identity(Path(args.identity_file), args.id, args.secret)
    service = JailService.from_env()

    pusher = None
    if args.server:
        pusher = AgentPusher(
            service,
            args.server,
            agent_id,
            secret,
            interval=args.interval,
            name=args.name,
            remote_url=args.remote_url,
        )
        logger.info("Agent %s pushing to %s every %.0fs", agent_id, args.server, args.interval)
    else:
        logger.info("No --server given, running the action receiver only")

    uvicorn.run(create_agent_app(service, secret, pusher), host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
