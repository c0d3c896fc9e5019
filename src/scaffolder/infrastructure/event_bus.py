"""Per-conversation status channels with buffering for late subscribers.

Producers start emitting as soon as a long-running action begins, which is
usually before the client has attached its listener. Events published to a
channel without a live sink are held in a bounded FIFO buffer and flushed,
in order, to the next subscriber right after its ``connected`` acknowledgement.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Tuple, Union

from ..config import ScaffolderConfig
from ..domain.models import StatusEvent, utc_now_iso
from ..observability.metrics import STATUS_EVENTS
from .events import publish_event

logger = logging.getLogger("scaffolder.events")

_CLOSED = object()

EventPayload = Dict[str, Any]


class StatusSubscription:
    """Live sink for one channel. Consumed by the SSE endpoint."""

    def __init__(self, bus: "StatusEventBus", channel_id: str) -> None:
        self.channel_id = channel_id
        self.connected_at = time.time()
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, payload: EventPayload) -> None:
        if not self._closed:
            self._queue.put_nowait(payload)

    def _close(self) -> List[EventPayload]:
        """Close the sink and hand back payloads that were never read."""
        if self._closed:
            return []
        self._closed = True
        unread = self.drain()
        self._queue.put_nowait(_CLOSED)
        return unread

    def drain(self) -> List[EventPayload]:
        items: List[EventPayload] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            items.append(item)
        return items

    async def get(self, timeout: Optional[float] = None) -> Optional[EventPayload]:
        """Return the next payload, ``None`` once closed.

        Raises ``asyncio.TimeoutError`` when nothing arrives within ``timeout``.
        """
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    async def events(self, heartbeat_seconds: Optional[float] = None) -> AsyncIterator[EventPayload]:
        interval = heartbeat_seconds if heartbeat_seconds is not None else self._bus.heartbeat_seconds
        while True:
            try:
                item = await self.get(timeout=interval)
            except asyncio.TimeoutError:
                if self._closed:
                    return
                yield {"type": "heartbeat", "channelId": self.channel_id, "ts": utc_now_iso()}
                continue
            if item is None:
                return
            yield item

    def close(self) -> None:
        self._bus.unsubscribe(self.channel_id, self)


@dataclass
class _Channel:
    sink: Optional[StatusSubscription] = None
    buffer: Deque[Tuple[float, EventPayload]] = field(default_factory=deque)
    connected: asyncio.Event = field(default_factory=asyncio.Event)
    connected_at: Optional[float] = None
    disconnected_at: Optional[float] = None
    waiters: int = 0
    delivered: int = 0
    dropped: int = 0


class StatusEventBus:
    """Injected publish/subscribe service; one instance per process (or per test)."""

    def __init__(
        self,
        *,
        buffer_max_size: int = 100,
        buffer_max_age_seconds: float = 60.0,
        heartbeat_seconds: float = 15.0,
        connect_wait_seconds: float = 3.0,
        mirror: bool = True,
    ) -> None:
        self.buffer_max_size = max(1, buffer_max_size)
        self.buffer_max_age_seconds = buffer_max_age_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.connect_wait_seconds = connect_wait_seconds
        self._mirror = mirror
        self._channels: Dict[str, _Channel] = {}
        self._lock = RLock()

    @classmethod
    def from_config(cls, config: ScaffolderConfig) -> "StatusEventBus":
        return cls(
            buffer_max_size=config.buffer_max_size,
            buffer_max_age_seconds=config.buffer_max_age_seconds,
            heartbeat_seconds=config.heartbeat_seconds,
            connect_wait_seconds=config.connect_wait_seconds,
        )

    def _channel(self, channel_id: str) -> _Channel:
        ch = self._channels.get(channel_id)
        if ch is None:
            ch = _Channel()
            self._channels[channel_id] = ch
        return ch

    def _live_sink(self, ch: _Channel) -> Optional[StatusSubscription]:
        if ch.sink is not None and not ch.sink.closed:
            return ch.sink
        return None

    def _expire(self, ch: _Channel, now: float) -> None:
        while ch.buffer and now - ch.buffer[0][0] > self.buffer_max_age_seconds:
            ch.buffer.popleft()
            ch.dropped += 1
            STATUS_EVENTS.labels(delivery="expired").inc()

    def _append(self, ch: _Channel, payload: EventPayload, now: float) -> None:
        ch.buffer.append((now, payload))
        while len(ch.buffer) > self.buffer_max_size:
            ch.buffer.popleft()
            ch.dropped += 1
            STATUS_EVENTS.labels(delivery="dropped").inc()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def subscribe(self, channel_id: str) -> StatusSubscription:
        now = time.monotonic()
        with self._lock:
            ch = self._channel(channel_id)
            previous = self._live_sink(ch)
            if previous is not None:
                # replace-sink: the new connection wins, unread events carry over
                for payload in previous._close():
                    if payload.get("type") not in ("connected", "heartbeat"):
                        self._append(ch, payload, now)
            self._expire(ch, now)
            backlog = [payload for _, payload in ch.buffer]
            ch.buffer.clear()
            sub = StatusSubscription(self, channel_id)
            sub._deliver(
                {
                    "type": "connected",
                    "channelId": channel_id,
                    "bufferedCount": len(backlog),
                    "ts": utc_now_iso(),
                }
            )
            for payload in backlog:
                sub._deliver(payload)
            ch.delivered += len(backlog)
            ch.sink = sub
            ch.connected_at = sub.connected_at
            ch.disconnected_at = None
            ch.connected.set()
        logger.info("status_subscribed", extra={"channel_id": channel_id, "buffered_count": len(backlog)})
        return sub

    def publish(self, channel_id: str, event: Union[StatusEvent, EventPayload]) -> bool:
        """Deliver ``event`` live or buffer it. Returns True on live delivery."""
        payload = event.model_dump() if isinstance(event, StatusEvent) else dict(event)
        now = time.monotonic()
        with self._lock:
            ch = self._channel(channel_id)
            sink = self._live_sink(ch)
            if sink is not None:
                sink._deliver(payload)
                ch.delivered += 1
                live = True
            else:
                self._expire(ch, now)
                self._append(ch, payload, now)
                live = False
        STATUS_EVENTS.labels(delivery="live" if live else "buffered").inc()
        if not live:
            logger.debug("status_event_buffered", extra={"channel_id": channel_id, "event_type": payload.get("type")})
        if self._mirror:
            publish_event("status", {"channelId": channel_id, **payload})
        return live

    def unsubscribe(self, channel_id: str, subscription: Optional[StatusSubscription] = None) -> bool:
        now = time.monotonic()
        with self._lock:
            ch = self._channels.get(channel_id)
            if ch is None or ch.sink is None:
                if subscription is not None:
                    subscription._close()
                return False
            if subscription is not None and ch.sink is not subscription:
                # stale handle from a replaced connection
                subscription._close()
                return False
            unread = ch.sink._close()
            restored = [p for p in unread if p.get("type") not in ("connected", "heartbeat")]
            for payload in reversed(restored):
                ch.buffer.appendleft((now, payload))
            while len(ch.buffer) > self.buffer_max_size:
                ch.buffer.popleft()
                ch.dropped += 1
            ch.sink = None
            ch.disconnected_at = now
            ch.connected.clear()
        logger.info("status_unsubscribed", extra={"channel_id": channel_id, "restored": len(restored)})
        return True

    async def wait_for_connection(self, channel_id: str, timeout: Optional[float] = None) -> bool:
        """Wait (without polling) until ``channel_id`` has a live sink or ``timeout`` seconds pass."""
        wait_s = self.connect_wait_seconds if timeout is None else timeout
        with self._lock:
            ch = self._channel(channel_id)
            if self._live_sink(ch) is not None:
                return True
            ch.waiters += 1
            connected = ch.connected
        try:
            await asyncio.wait_for(connected.wait(), timeout=max(0.0, wait_s))
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            with self._lock:
                ch.waiters -= 1

    def is_connected(self, channel_id: str) -> bool:
        with self._lock:
            ch = self._channels.get(channel_id)
            return bool(ch and self._live_sink(ch))

    def buffered_count(self, channel_id: str) -> int:
        with self._lock:
            ch = self._channels.get(channel_id)
            return len(ch.buffer) if ch else 0

    def transfer(self, from_channel: str, to_channel: str) -> int:
        """Move buffered events from a temporary channel id to its durable successor."""
        if from_channel == to_channel:
            return 0
        now = time.monotonic()
        with self._lock:
            src = self._channels.get(from_channel)
            if src is None or not src.buffer:
                return 0
            moved = [payload for _, payload in src.buffer]
            src.buffer.clear()
        for payload in moved:
            self._publish_quiet(to_channel, payload, now)
        logger.info("status_channel_transferred", extra={"from": from_channel, "to": to_channel, "moved": len(moved)})
        return len(moved)

    def _publish_quiet(self, channel_id: str, payload: EventPayload, now: float) -> None:
        # already mirrored once under the old id
        with self._lock:
            ch = self._channel(channel_id)
            sink = self._live_sink(ch)
            if sink is not None:
                sink._deliver(payload)
                ch.delivered += 1
            else:
                self._append(ch, payload, now)

    def prune(self) -> int:
        """Drop idle channels whose buffers have fully expired."""
        now = time.monotonic()
        removed = 0
        with self._lock:
            for channel_id in list(self._channels):
                ch = self._channels[channel_id]
                if self._live_sink(ch) is not None or ch.waiters:
                    continue
                self._expire(ch, now)
                if not ch.buffer:
                    del self._channels[channel_id]
                    removed += 1
        return removed

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            detail = {
                channel_id: {
                    "connected": self._live_sink(ch) is not None,
                    "buffered": len(ch.buffer),
                    "delivered": ch.delivered,
                    "dropped": ch.dropped,
                }
                for channel_id, ch in self._channels.items()
            }
        return {
            "channels": len(detail),
            "connected": sum(1 for d in detail.values() if d["connected"]),
            "bufferedEvents": sum(d["buffered"] for d in detail.values()),
            "detail": detail,
        }


class StatusReporter:
    """Publishes ``StatusEvent``s for one channel, optionally scaled into a progress window."""

    def __init__(self, bus: StatusEventBus, channel_id: str, *, window: Tuple[int, int] = (0, 100)) -> None:
        self.bus = bus
        self.channel_id = channel_id
        self.window = window
        self.last: Optional[StatusEvent] = None

    def scoped(self, low: int, high: int) -> "StatusReporter":
        return StatusReporter(self.bus, self.channel_id, window=(low, high))

    def emit(
        self,
        phase: str,
        message: str,
        *,
        severity: str = "info",
        progress: int = 0,
        technical_details: Optional[str] = None,
    ) -> StatusEvent:
        low, high = self.window
        scaled = low + (max(0, min(100, progress)) * (high - low)) // 100
        event = StatusEvent(
            phase=phase,
            message=message,
            severity=severity,
            progress=scaled,
            technical_details=technical_details,
        )
        self.bus.publish(self.channel_id, event)
        self.last = event
        return event

    def forward(self, payload: EventPayload) -> bool:
        """Publish a non-status payload (live code preview) on the same channel."""
        return self.bus.publish(self.channel_id, payload)

    def release(self) -> bool:
        """Drop the live sink; unread events go back to the buffer for the next subscribe."""
        return self.bus.unsubscribe(self.channel_id)


_bus: Optional[StatusEventBus] = None


def get_event_bus() -> StatusEventBus:
    global _bus
    if _bus is None:
        _bus = StatusEventBus.from_config(ScaffolderConfig.from_env())
    return _bus
