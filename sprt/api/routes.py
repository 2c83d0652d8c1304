"""API routes for the usage engine.

Endpoints:
  GET  /api/stats               — snapshot history merged with live data
  GET  /api/realtime            — today / this-week totals
  GET  /api/sessions            — recent sessions with active flag
  GET  /api/projects            — sessions and messages per project
  GET  /api/rate-limits?force=  — 5h / 7d / 7d-model claims
  POST /api/refresh             — refresh now and wait for the result
  GET  /api/display-label       — compact label (current + suggested)
  PUT  /api/display-label       — set the compact label
  GET  /api/stream              — SSE stream of data-changed signals
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from sprt.usage.errors import DataUnavailableError
from sprt.usage.models import UsageView
from sprt.usage.service import UsageService

logger = logging.getLogger(__name__)

router = APIRouter()


# -- Request models ------------------------------------------------------------


class DisplayLabelRequest(BaseModel):
    label: str


def _service(request: Request) -> UsageService:
    return request.app.state.service


def _view_to_dict(view: UsageView) -> dict[str, Any]:
    return {
        "computed_at": view.computed_at.isoformat() if view.computed_at else None,
        "stats": view.merged.model_dump(mode="json"),
        "realtime": view.realtime.model_dump(mode="json"),
        "sessions": [s.model_dump(mode="json") for s in view.sessions],
        "projects": [p.model_dump(mode="json") for p in view.projects],
    }


# -- Usage endpoints -----------------------------------------------------------


@router.get("/stats")
async def get_stats(request: Request) -> dict[str, Any]:
    """Daily activity (last 7 days), model usage and totals.

    ``status`` is ``no_data`` when Claude Code has never written a stats
    cache and ``error`` when the cache exists but cannot be parsed.
    """
    stats = await _service(request).get_merged_stats()
    return stats.model_dump(mode="json")


@router.get("/realtime")
async def get_realtime(request: Request) -> dict[str, Any]:
    stats = await _service(request).get_realtime_stats()
    return stats.model_dump(mode="json")


@router.get("/sessions")
async def get_sessions(request: Request) -> dict[str, Any]:
    sessions = await _service(request).get_active_sessions()
    return {
        "sessions": [s.model_dump(mode="json") for s in sessions],
        "active": sum(1 for s in sessions if s.active),
    }


@router.get("/projects")
async def get_projects(request: Request) -> dict[str, Any]:
    """Busiest projects of the rolling week, by message count."""
    projects = await _service(request).get_project_usage()
    return {"projects": [p.model_dump(mode="json") for p in projects]}


@router.get("/rate-limits")
async def get_rate_limits(request: Request, force: bool = False) -> dict[str, Any]:
    """Current quota claims. Served from a short-lived cache unless forced."""
    try:
        result = await _service(request).get_rate_limits(force=force)
    except DataUnavailableError as e:
        raise HTTPException(status_code=503, detail={"message": str(e), "source": e.source})
    return result.model_dump(mode="json")


@router.post("/refresh")
async def refresh(request: Request) -> dict[str, Any]:
    """Rescan now and return the freshly computed view."""
    view = await _service(request).refresh()
    return _view_to_dict(view)


# -- Display label -------------------------------------------------------------


@router.get("/display-label")
def get_display_label(request: Request) -> dict[str, Any]:
    service = _service(request)
    return {"label": service.display_label, "suggested": service.suggested_display_label()}


@router.put("/display-label")
def set_display_label(req: DisplayLabelRequest, request: Request) -> dict[str, Any]:
    service = _service(request)
    service.set_display_label(req.label)
    return {"label": service.display_label}


# -- SSE stream ----------------------------------------------------------------


@router.get("/stream")
async def stream(request: Request) -> StreamingResponse:
    """Server-Sent Events: one ``data-changed`` event per completed refresh."""
    service = _service(request)
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=50)

    def on_change(view: UsageView) -> None:
        data = {"computed_at": view.computed_at.isoformat() if view.computed_at else None}
        try:
            queue.put_nowait(data)
        except asyncio.QueueFull:
            pass  # slow consumer, drop

    service.subscribe(on_change)

    async def event_generator():
        try:
            yield "event: init\ndata: {}\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    data = await asyncio.wait_for(queue.get(), timeout=30)
                    yield f"event: data-changed\ndata: {json.dumps(data)}\n\n"
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
        finally:
            service.unsubscribe(on_change)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
