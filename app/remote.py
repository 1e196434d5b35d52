"""
Signed control requests between the central instance and remote agents.

The central instance POSTs ``{action, params, ts}`` to ``<remote_url>/api/action``
with an ``x-signature`` header: hex HMAC-SHA256 of the canonical JSON body,
keyed with the agent's shared secret.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any

import httpx

from Jail_Control.errors import CommandError, EnforcementUnavailable, ValidationError

logger = logging.getLogger("jailwatch.remote")

REMOTE_ACTIONS = {"start", "stop", "unban", "restart"}
MAX_CLOCK_SKEW = 300


def canonical(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")


def sign_payload(secret: str, payload: dict[str, Any]) -> str:
    return hmac.new(secret.encode("utf-8"), canonical(payload), hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: dict[str, Any], signature: str, now: float | None = None) -> bool:
    """Constant-time check of the signature plus a freshness window on ``ts``."""
    expected = sign_payload(secret, payload)
    if not hmac.compare_digest(expected, signature or ""):
        return False
    now = time.time() if now is None else now
    try:
        ts = float(payload.get("ts", 0))
    except (TypeError, ValueError):
        return False
    return abs(now - ts) <= MAX_CLOCK_SKEW


def build_request(action: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    if action not in REMOTE_ACTIONS:
        raise ValidationError(f"Unknown action: {action}", {"allowed": sorted(REMOTE_ACTIONS)})
    return {"action": action, "params": params or {}, "ts": int(time.time())}


class RemoteActionClient:
    def __init__(self, timeout: float = 15.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout = timeout
        self.transport = transport

    async def send(self, remote_url: str, secret: str, action: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        body = build_request(action, params)
        headers = {"x-signature": sign_payload(secret, body)}
        url = f"{remote_url.rstrip('/')}/api/action"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.post(url, content=canonical(body), headers={**headers, "content-type": "application/json"})
        except httpx.HTTPError as exc:
            logger.warning("Agent at %s unreachable: %s", remote_url, exc)
            raise EnforcementUnavailable(f"Agent unreachable: {exc}", kind="agent_unreachable") from exc

        try:
            data = r.json()
        except ValueError:
            data = {"error": r.text[:400]}
        if r.status_code >= 400 or not data.get("ok", False):
            raise CommandError(
                f"Agent rejected {action}: {data.get('error', r.status_code)}",
                {"status": r.status_code, "agent": data},
            )
        return data
