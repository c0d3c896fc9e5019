from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger("scaffolder.agents")

ConsentKey = Tuple[str, str, str]


@dataclass
class ConsentRequest:
    id: str
    conversation_id: str
    tool: str
    preview: str
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat().replace("+00:00", "Z"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "consent_request",
            "requestId": self.id,
            "conversationId": self.conversation_id,
            "tool": self.tool,
            "preview": self.preview,
            "createdAt": self.created_at,
        }


class ConsentManager:
    """Async yes/no gate for state-mutating tools.

    Requests are keyed by ``(conversation, tool, preview)``: asking again while
    an identical request is open waits on the same decision. ``notify`` is
    called once per new request so the caller can surface it (for example on
    the status stream).
    """

    def __init__(self, notify: Optional[Callable[[ConsentRequest], Any]] = None) -> None:
        self._notify = notify
        self._pending: Dict[ConsentKey, Tuple[ConsentRequest, asyncio.Future]] = {}
        self._by_id: Dict[str, ConsentKey] = {}
        self._always: Dict[str, Set[str]] = {}

    def always_allow(self, conversation_id: str, tool: str) -> None:
        self._always.setdefault(conversation_id, set()).add(tool)

    def is_always_allowed(self, conversation_id: str, tool: str) -> bool:
        return tool in self._always.get(conversation_id, set())

    def pending(self, conversation_id: Optional[str] = None) -> List[ConsentRequest]:
        return [
            req for req, _ in self._pending.values() if conversation_id is None or req.conversation_id == conversation_id
        ]

    async def request(
        self,
        conversation_id: str,
        tool: str,
        preview: str,
        *,
        timeout: Optional[float] = None,
    ) -> bool:
        if self.is_always_allowed(conversation_id, tool):
            return True
        key = (conversation_id, tool, preview)
        entry = self._pending.get(key)
        if entry is None:
            req = ConsentRequest(id=f"consent_{uuid.uuid4().hex[:12]}", conversation_id=conversation_id, tool=tool, preview=preview)
            fut = asyncio.get_running_loop().create_future()
            entry = (req, fut)
            self._pending[key] = entry
            self._by_id[req.id] = key
            logger.info("consent_requested", extra={"request_id": req.id, "tool": tool, "conversation_id": conversation_id})
            if self._notify is not None:
                try:
                    self._notify(req)
                except Exception as exc:
                    logger.warning("consent_notify_failed", extra={"request_id": req.id, "err": str(exc)})
        req, fut = entry
        try:
            if timeout is None:
                return await asyncio.shield(fut)
            return await asyncio.wait_for(asyncio.shield(fut), timeout)
        except asyncio.TimeoutError:
            logger.warning("consent_timeout", extra={"request_id": req.id, "tool": tool})
            self._settle(key, False)
            return False

    def resolve(self, request_id: str, allowed: bool, *, always: bool = False) -> bool:
        """Answer an open request; ``False`` when the id is unknown or already settled."""
        key = self._by_id.get(request_id)
        if key is None:
            return False
        if allowed and always:
            self.always_allow(key[0], key[1])
        logger.info("consent_resolved", extra={"request_id": request_id, "allowed": allowed, "always": always})
        return self._settle(key, allowed)

    def cancel(self, conversation_id: str) -> int:
        """Deny and clear every open request of a conversation."""
        keys = [k for k in self._pending if k[0] == conversation_id]
        for key in keys:
            self._settle(key, False)
        if keys:
            logger.info("consent_cleared", extra={"conversation_id": conversation_id, "count": len(keys)})
        return len(keys)

    def _settle(self, key: ConsentKey, allowed: bool) -> bool:
        entry = self._pending.pop(key, None)
        if entry is None:
            return False
        req, fut = entry
        self._by_id.pop(req.id, None)
        if not fut.done():
            fut.set_result(allowed)
        return True
