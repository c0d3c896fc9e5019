from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Callable, Iterable, List, Optional, TypeVar

from ..errors import AbortedError

logger = logging.getLogger("scaffolder.streaming")

T = TypeVar("T")

_ITEM = "item"
_DONE = "done"
_ERROR = "error"


class CancellationToken:
    """Shared abort signal checked at every suspension point of a long-running action."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], Any]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "Operation cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
        for cb in callbacks:
            try:
                cb()
            except Exception as exc:
                logger.warning("cancel_callback_failed", extra={"err": str(exc)})

    def on_cancel(self, callback: Callable[[], Any]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortedError(self._reason or "Operation cancelled")


async def iter_in_thread(
    factory: Callable[[], Iterable[T]],
    *,
    cancel: Optional[CancellationToken] = None,
) -> AsyncIterator[T]:
    """Drive a blocking iterator in a worker thread and yield its items on the event loop.

    The worker stops pulling once the consumer goes away or ``cancel`` fires,
    and a cancel ends the consumer right away without waiting for the next item;
    an exception raised by the iterator is re-raised in the consumer.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    stop = threading.Event()

    def post(kind: str, value: Any) -> None:
        try:
            loop.call_soon_threadsafe(queue.put_nowait, (kind, value))
        except RuntimeError:
            # loop already closed; nobody is listening
            stop.set()

    def worker() -> None:
        try:
            for item in factory():
                if stop.is_set() or (cancel is not None and cancel.cancelled):
                    break
                post(_ITEM, item)
        except Exception as exc:
            post(_ERROR, exc)
        else:
            post(_DONE, None)

    thread = threading.Thread(target=worker, name="scaffolder-stream", daemon=True)
    thread.start()
    if cancel is not None:
        # wakes the consumer even when the iterator is stalled between items
        cancel.on_cancel(lambda: post(_DONE, None))
    try:
        while True:
            kind, value = await queue.get()
            if kind == _DONE:
                return
            if kind == _ERROR:
                raise value
            yield value
            if cancel is not None and cancel.cancelled:
                return
    finally:
        stop.set()
