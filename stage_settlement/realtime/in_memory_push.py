"""
In-Memory Push Adapter (Development Mode)

Per-user asyncio.Queue inboxes. No external broker needed for
development and tests.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional

from .push_adapter import PushAdapter


class InMemoryPushAdapter(PushAdapter):

    def __init__(self, maxsize: int = 100):
        self._inboxes: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()
        self._maxsize = maxsize

    async def send(self, user_id: str, message: Dict[str, Any]) -> None:
        self.validate_message(message)
        serialized = self._serialize_message(message)

        async with self._lock:
            inbox = self._inboxes.setdefault(user_id, asyncio.Queue(maxsize=self._maxsize))
            try:
                inbox.put_nowait(serialized)
            except asyncio.QueueFull:
                # Slow consumer: drop rather than block the sender
                pass

    def drain(self, user_id: str) -> List[Dict[str, Any]]:
        """Return and clear every queued message for user_id."""
        inbox = self._inboxes.get(user_id)
        messages = []
        while inbox is not None and not inbox.empty():
            messages.append(json.loads(inbox.get_nowait()))
        return messages

    async def close(self) -> None:
        async with self._lock:
            self._inboxes.clear()


_default_adapter: Optional[PushAdapter] = None


def get_push_adapter() -> PushAdapter:
    """Process-wide in-memory adapter, created on first use."""
    global _default_adapter
    if _default_adapter is None:
        _default_adapter = InMemoryPushAdapter()
    return _default_adapter
