"""
Live client connections.

The orchestrator publishes through ``_WSRef`` wrappers rather than raw
WebSockets, so a send after the client went away is a silent no-op instead
of an exception in the middle of a run.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import WebSocket

logger = logging.getLogger(__name__)

DEFAULT_CHAT = "default"


class _WSRef:
    """Mutable WebSocket reference that silently drops sends when disconnected.

    When a send fails the reference clears itself; every later send is a
    no-op. Sends are serialized so messages published from callbacks reach
    the client in the order they were published.
    """
    __slots__ = ("ws", "_lock")

    def __init__(self, ws: Optional[WebSocket]):
        self.ws: Optional[WebSocket] = ws
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.ws is not None

    async def send_json(self, data: Dict[str, Any]) -> None:
        async with self._lock:
            _ws = self.ws
            if _ws is None:
                return
            try:
                await _ws.send_json(data)
            except Exception:
                self.ws = None          # mark disconnected on first failure


def connection_key(workspace_id: str, chat_session_id: Optional[str]) -> Tuple[str, str]:
    return workspace_id, (chat_session_id or "").strip() or DEFAULT_CHAT


class ConnectionRegistry:
    """Which live connection receives events for a (workspace, chat session) pair."""

    def __init__(self):
        self._conns: Dict[Tuple[str, str], _WSRef] = {}

    def register(self, workspace_id: str, chat_session_id: Optional[str], wsr: _WSRef) -> None:
        self._conns[connection_key(workspace_id, chat_session_id)] = wsr

    def unregister(self, workspace_id: str, chat_session_id: Optional[str],
                   wsr: Optional[_WSRef] = None) -> None:
        key = connection_key(workspace_id, chat_session_id)
        if wsr is not None and self._conns.get(key) is not wsr:
            return
        self._conns.pop(key, None)

    def unregister_socket(self, wsr: _WSRef) -> int:
        """Drop every registration held by one connection; returns how many."""
        keys = [k for k, v in self._conns.items() if v is wsr]
        for key in keys:
            del self._conns[key]
        if keys:
            logger.debug("Connection closed; dropped %d registration(s)", len(keys))
        return len(keys)

    def get(self, workspace_id: str, chat_session_id: Optional[str]) -> Optional[_WSRef]:
        return self._conns.get(connection_key(workspace_id, chat_session_id))

    def __len__(self) -> int:
        return len(self._conns)
