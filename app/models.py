"""
Pydantic models for request bodies and agent snapshots.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class UnbanRequest(BaseModel):
    """Body of POST /api/bans/unban."""
    jail: str
    ip: str


class FilterRequest(BaseModel):
    """Body of POST /api/filters."""
    name: str
    failregex: str
    ignoreregex: str = ""


class JailConfigUpdate(BaseModel):
    """Body of PUT /api/jail-config/{name}: the full [name] section."""
    content: str


class AgentSnapshot(BaseModel):
    """State an agent pushes to the central instance."""
    name: Optional[str] = None                # Display name (defaults to "Server <id[:8]>")
    address: Optional[str] = None             # Address the agent reports for itself
    remote_url: Optional[str] = None          # Where the agent's action receiver listens
    jails: List[Dict[str, Any]] = []
    bans: List[Dict[str, Any]] = []
    logTail: List[str] = []
    serverStatus: Optional[str] = None
    system: Optional[Dict[str, Any]] = None


class RemoteAction(BaseModel):
    """Body of POST /api/servers/{id}/action."""
    action: str                               # start | stop | unban | restart
    params: Dict[str, Any] = {}
