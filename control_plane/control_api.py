"""
Control API for a running talk loop.

This module exposes:
- Read API: controller status, event query
- Write API: stop the loop, report network status

Commands are not applied here. They are queued on the CommandChannel and
applied by the turn controller on its next iteration, which emits
control.command_applied.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from observability.events import Component as ObsComponent, EventEmitter, Severity
from observability.event_store import event_store

from .commands import CommandChannel


router = APIRouter(prefix="/control", tags=["control"])
emitter = EventEmitter(ObsComponent.CONTROL_PLANE)

StatusProvider = Callable[[], Dict[str, Any]]


class StopRequest(BaseModel):
    reason: str = Field("control_api", min_length=1, max_length=64)


class NetworkRequest(BaseModel):
    online: bool


class CommandResponse(BaseModel):
    status: str
    command: str
    correlation_id: str


class StatusResponse(BaseModel):
    session_id: str
    state: str
    turns_completed: int
    n_past: int
    network_online: Optional[bool] = None
    persistence_active: bool


def _channel(request: Request) -> CommandChannel:
    return request.app.state.channel


def _status(request: Request) -> Dict[str, Any]:
    return request.app.state.status_provider()


def _parse_ts(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        # A literal + is decoded to a space in query strings
        cleaned = value.replace(" ", "+").replace("Z", "+00:00")
        if "+" not in cleaned and "-" not in cleaned[-6:]:
            cleaned += "+00:00"
        return datetime.fromisoformat(cleaned)
    except (ValueError, AttributeError):
        raise HTTPException(status_code=400, detail=f"Invalid {name} timestamp: {value}")


@router.get("/status", response_model=StatusResponse)
async def get_status(request: Request) -> StatusResponse:
    return StatusResponse(**_status(request))


@router.post("/stop", response_model=CommandResponse)
async def stop(request: Request, req: Optional[StopRequest] = None) -> CommandResponse:
    reason = req.reason if req is not None else "control_api"
    command = _channel(request).request_stop(reason=reason)
    session_id = _status(request).get("session_id", "")

    emitter.emit(
        "control.command_received",
        session_id=session_id,
        severity=Severity.INFO,
        correlation_id=command.correlation_id,
        command=command.kind,
        reason=reason,
    )
    return CommandResponse(status="queued", command=command.kind, correlation_id=command.correlation_id)


@router.post("/network", response_model=CommandResponse)
async def report_network(request: Request, req: NetworkRequest) -> CommandResponse:
    command = _channel(request).report_network(req.online)
    session_id = _status(request).get("session_id", "")

    emitter.emit(
        "control.command_received",
        session_id=session_id,
        severity=Severity.INFO,
        correlation_id=command.correlation_id,
        command=command.kind,
        online=req.online,
    )
    return CommandResponse(status="queued", command=command.kind, correlation_id=command.correlation_id)


@router.get("/events")
async def get_events(
    request: Request,
    event_type: Optional[str] = Query(None, description="Exact type, or prefix ending in .*"),
    component: Optional[str] = Query(None, description="Filter by component"),
    correlation_id: Optional[str] = Query(None, description="Filter by turn or command id"),
    since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    until: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
) -> dict:
    since_dt = _parse_ts(since, "since")
    until_dt = _parse_ts(until, "until")
    session_id = _status(request).get("session_id")

    events = event_store.query(
        session_id=session_id,
        event_type=event_type,
        component=component,
        correlation_id=correlation_id,
        since=since_dt,
        until=until_dt,
        limit=limit,
    )
    return {
        "session_id": session_id,
        "events": events,
        "count": len(events),
    }


def create_app(channel: CommandChannel, status_provider: StatusProvider) -> FastAPI:
    """Control API app bound to one controller's channel and status."""
    app = FastAPI(title="Talk Loop Control API")
    app.state.channel = channel
    app.state.status_provider = status_provider
    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "component": "control_plane"}

    return app
