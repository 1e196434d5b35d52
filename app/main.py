"""
JailWatch – FastAPI application entry point.

Build the app with create_app(); main.py serves it with uvicorn. Importing this
module builds nothing.

On startup the registry tables are created and the cache sweeper starts.

Exposes:
  GET  /api/health                 → liveness + cache stats
  GET  /api/jails                  → reconciled jail list + serverStatus + errors
  GET  /api/jails/{name}           → one reconciled jail
  POST /api/jails/{name}/enable    → start jail, verified
  POST /api/jails/{name}/disable   → stop jail, verified
  POST /api/jails/{name}/toggle    → flip jail state, verified
  POST /api/bans/unban             → unban one address from one jail
  GET  /api/bans/active            → active bans from the fail2ban database
  GET  /api/history                → ban / unban events (log or database)
  GET  /api/audit                  → recent control actions
  POST /api/filters                → write a new filter.d file
  GET  /api/jail-config/{name}     → editable section of a jail + owning file
  PUT  /api/jail-config/{name}     → validated, audited write of that section
  POST /api/fail2ban/restart       → restart fail2ban, clears caches
  GET  /api/system                 → host resource stats
  POST /api/agent/push             → remote agent snapshot (X-Agent-ID / X-Agent-Key)
  GET  /api/servers                → registered agents
  GET  /api/servers/{id}           → one agent + latest snapshot
  GET  /api/servers/{id}/history   → bounded snapshot history
  POST /api/servers/{id}/action    → signed action forwarded to the agent
"""
from __future__ import annotations

import hmac
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from Jail_Control.config import Settings
from Jail_Control.errors import AuthenticationError, JailControlError, ValidationError, http_status
from Jail_Control.service import JailService
from app.models import AgentSnapshot, FilterRequest, JailConfigUpdate, RemoteAction, UnbanRequest
from app.registry import AgentRegistry
from app.remote import RemoteActionClient

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
)
logger = logging.getLogger("jailwatch")


def create_app(
    service: JailService | None = None,
    registry: AgentRegistry | None = None,
    remote: RemoteActionClient | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    settings = settings or (service.settings if service else Settings.from_env())
    service = service or JailService(settings)
    registry = registry or AgentRegistry(
        settings.db_path,
        online_window=settings.online_window,
        history_limit=settings.snapshot_history,
    )
    remote = remote or RemoteActionClient()

    app = FastAPI(title="JailWatch", version="0.1.0")
    app.state.service = service
    app.state.registry = registry

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    @app.on_event("startup")
    async def startup() -> None:
        await registry.init()
        service.start()
        logger.info("JailWatch started.")

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await service.stop()

    @app.exception_handler(JailControlError)
    async def handle_engine_error(request: Request, exc: JailControlError) -> JSONResponse:
        code = http_status(exc)
        if code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            {"success": False, "error": exc.message, "details": exc.details},
            status_code=code,
        )

    async def require_token(authorization: str | None = Header(default=None)) -> None:
        if not settings.api_token:
            return
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), settings.api_token):
            raise HTTPException(status_code=401, detail="Missing or invalid API token")

    # -----------------------------------------------------------------------
    # Read endpoints
    # -----------------------------------------------------------------------

    @app.get("/api/health")
    async def api_health() -> JSONResponse:
        return JSONResponse(service.health())

    @app.get("/api/jails")
    async def api_jails() -> JSONResponse:
        return JSONResponse(await service.jails())

    @app.get("/api/jails/{name}")
    async def api_jail(name: str) -> JSONResponse:
        return JSONResponse(await service.jail(name))

    @app.get("/api/bans/active")
    async def api_active_bans() -> JSONResponse:
        return JSONResponse(await service.active_bans())

    @app.get("/api/history")
    async def api_history(jail: str | None = None, limit: int = 50, source: str = "log") -> JSONResponse:
        limit = max(1, min(limit, 1000))
        if source == "ledger":
            return JSONResponse(await service.ledger_history(jail, limit))
        if source != "log":
            raise ValidationError("source must be 'log' or 'ledger'")
        return JSONResponse(await service.events(jail, limit))

    @app.get("/api/audit")
    async def api_audit(limit: int = 100) -> JSONResponse:
        return JSONResponse(service.audit.tail(max(1, min(limit, 1000))))

    @app.get("/api/system")
    async def api_system() -> JSONResponse:
        return JSONResponse(await service.system())

    # -----------------------------------------------------------------------
    # Write endpoints
    # -----------------------------------------------------------------------

    @app.post("/api/jails/{name}/enable", dependencies=[Depends(require_token)])
    async def api_enable(name: str) -> JSONResponse:
        return JSONResponse((await service.enable(name)).to_dict())

    @app.post("/api/jails/{name}/disable", dependencies=[Depends(require_token)])
    async def api_disable(name: str) -> JSONResponse:
        return JSONResponse((await service.disable(name)).to_dict())

    @app.post("/api/jails/{name}/toggle", dependencies=[Depends(require_token)])
    async def api_toggle(name: str) -> JSONResponse:
        return JSONResponse((await service.toggle(name)).to_dict())

    @app.post("/api/bans/unban", dependencies=[Depends(require_token)])
    async def api_unban(body: UnbanRequest) -> JSONResponse:
        return JSONResponse((await service.unban(body.jail, body.ip)).to_dict())

    @app.post("/api/filters", dependencies=[Depends(require_token)])
    async def api_create_filter(body: FilterRequest) -> JSONResponse:
        path = await service.create_filter(body.name, body.failregex, body.ignoreregex)
        return JSONResponse({"success": True, "path": path}, status_code=201)

    @app.get("/api/jail-config/{name}", dependencies=[Depends(require_token)])
    async def api_jail_config(name: str) -> JSONResponse:
        return JSONResponse({"success": True, **(await service.jail_config(name))})

    @app.put("/api/jail-config/{name}", dependencies=[Depends(require_token)])
    async def api_write_jail_config(name: str, body: JailConfigUpdate) -> JSONResponse:
        return JSONResponse(await service.update_jail_config(name, body.content))

    @app.post("/api/fail2ban/restart", dependencies=[Depends(require_token)])
    async def api_restart() -> JSONResponse:
        return JSONResponse((await service.restart()).to_dict())

    # -----------------------------------------------------------------------
    # Agents
    # -----------------------------------------------------------------------

    @app.post("/api/agent/push")
    async def api_agent_push(
        request: Request,
        body: AgentSnapshot,
        agent_id: str | None = Header(default=None, alias="X-Agent-ID"),
        agent_key: str | None = Header(default=None, alias="X-Agent-Key"),
    ) -> JSONResponse:
        if not agent_id or not agent_key:
            raise AuthenticationError("Missing X-Agent-ID or X-Agent-Key header")
        address = body.address or (request.client.host if request.client else None)
        server = await registry.register(agent_id, agent_key, body.name, address, body.remote_url)
        await registry.store_snapshot(
            agent_id,
            {
                "jails": body.jails,
                "bans": body.bans,
                "logTail": body.logTail,
                "serverStatus": body.serverStatus,
                "system": body.system,
            },
        )
        return JSONResponse({"accepted": True, "server": server})

    @app.get("/api/servers", dependencies=[Depends(require_token)])
    async def api_servers() -> JSONResponse:
        return JSONResponse(await registry.list_servers())

    @app.get("/api/servers/{server_id}", dependencies=[Depends(require_token)])
    async def api_server(server_id: str) -> JSONResponse:
        server = await registry.get(server_id)
        if server is None:
            raise HTTPException(status_code=404, detail="Server not found")
        return JSONResponse(server)

    @app.get("/api/servers/{server_id}/history", dependencies=[Depends(require_token)])
    async def api_server_history(server_id: str, limit: int = 100) -> JSONResponse:
        if await registry.get(server_id, include_snapshot=False) is None:
            raise HTTPException(status_code=404, detail="Server not found")
        return JSONResponse(await registry.history(server_id, max(1, limit)))

    @app.post("/api/servers/{server_id}/action", dependencies=[Depends(require_token)])
    async def api_server_action(server_id: str, body: RemoteAction) -> JSONResponse:
        server = await registry.get(server_id, include_snapshot=False)
        secret = await registry.get_secret(server_id)
        if server is None or secret is None:
            raise HTTPException(status_code=404, detail="Server not found")
        if not server["remoteUrl"]:
            raise ValidationError("Server has no remote URL", {"server_id": server_id})
        result = await remote.send(server["remoteUrl"], secret, body.action, body.params)
        return JSONResponse({"success": True, "server": server_id, "result": result})

    return app
