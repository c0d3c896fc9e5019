from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Deque, Dict, List, Optional

from ..domain.models import utc_now_iso

_logger = logging.getLogger("scaffolder.telemetry")
_metric_logger = logging.getLogger("scaffolder.metrics")

METRIC_TYPES = ("gauge", "counter", "gauge_delta")


@dataclass
class TelemetryEvent:
    name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    conversation_id: Optional[str] = None
    actor: Optional[str] = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "properties": dict(self.properties),
            "conversationId": self.conversation_id,
            "actor": self.actor,
            "timestamp": self.timestamp,
        }


_MAX_BUFFER = 200
_RECENT_EVENTS: Deque[TelemetryEvent] = deque(maxlen=_MAX_BUFFER)
_LOCK = Lock()


def record_event(event: TelemetryEvent) -> None:
    """Log a user-facing action and keep it in the recent-events ring."""
    with _LOCK:
        _RECENT_EVENTS.append(event)
    _logger.info(
        "telemetry_event",
        extra={
            "telemetry_name": event.name,
            "telemetry_actor": event.actor,
            "conversation_id": event.conversation_id,
            "telemetry_properties": event.properties,
        },
    )


def list_recent_events(
    limit: int = 50,
    *,
    name: Optional[str] = None,
    conversation_id: Optional[str] = None,
) -> List[TelemetryEvent]:
    """Newest-last slice of the ring, optionally filtered by event name or conversation."""
    if limit <= 0:
        return []
    with _LOCK:
        events = list(_RECENT_EVENTS)
    if name is not None:
        events = [e for e in events if e.name == name]
    if conversation_id is not None:
        events = [e for e in events if e.conversation_id == conversation_id]
    return events[-limit:]


def clear_events() -> None:
    with _LOCK:
        _RECENT_EVENTS.clear()


def record_metric(
    *,
    name: str,
    value: float,
    properties: Optional[Dict[str, Any]] = None,
    metric_type: str = "gauge",
) -> None:
    """Emit a metric payload through the metrics logger.

    ``metric_type`` is ``gauge`` (default), ``counter`` or ``gauge_delta``
    for +/- adjustments; anything else is logged as a gauge.
    """
    if metric_type not in METRIC_TYPES:
        metric_type = "gauge"
    _metric_logger.info(
        "metric_event",
        extra={
            "metric_name": name,
            "metric_value": value,
            "metric_properties": dict(properties or {}),
            "metric_type": metric_type,
        },
    )
