from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from ...infrastructure.event_bus import StatusEventBus, get_event_bus
from ...observability.telemetry_sink import list_recent_events

router = APIRouter(prefix="/status", tags=["status"])

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


async def event_stream(
    bus: StatusEventBus,
    channel_id: str,
    *,
    heartbeat_seconds: Optional[float] = None,
) -> AsyncIterator[str]:
    """SSE frames for one channel: the ``connected`` ack, any backlog, then live events.

    The subscription is released when the client goes away.
    """
    sub = bus.subscribe(channel_id)
    try:
        async for payload in sub.events(heartbeat_seconds):
            yield format_sse(payload)
    finally:
        sub.close()


@router.get("/{channel_id}/stream", response_class=StreamingResponse)
async def stream_status(channel_id: str, bus: StatusEventBus = Depends(get_event_bus)) -> StreamingResponse:
    return StreamingResponse(event_stream(bus, channel_id), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/stats")
def status_stats(bus: StatusEventBus = Depends(get_event_bus)) -> Dict[str, Any]:
    return bus.get_stats()


@router.get("/events/recent")
def recent_events(
    limit: int = Query(25, ge=1, le=200),
    conversation_id: Optional[str] = Query(None, alias="conversationId"),
) -> Dict[str, List[Dict[str, Any]]]:
    events = list_recent_events(limit, conversation_id=conversation_id)
    return {"events": [e.to_dict() for e in events]}
