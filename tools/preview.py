"""Dev-server port detection, the per-workspace preview port registry and reachability probing."""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

# Ordered: explicit URLs first, then generic phrasing, then assignments.
_PORT_PATTERNS = [
    re.compile(r"Local:\s*(?:https?://[^\s]+)?localhost:(\d+)", re.IGNORECASE),
    re.compile(r"localhost:(\d+)", re.IGNORECASE),
    re.compile(r"://127\.0\.0\.1:(\d+)", re.IGNORECASE),
    re.compile(r"(?:dev server|server)\s+(?:running|started|listening)\s+at\s+(?:https?://)?[^\s]*:(\d+)", re.IGNORECASE),
    re.compile(r"(?:listen|listening|started|running).*[:\s](\d{4,5})\b", re.IGNORECASE),
    re.compile(r"port\s*[=:]\s*(\d+)", re.IGNORECASE),
]

_REBUILD_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"built\s+in\s+",
        r"hmr\s+update",
        r"page\s+reload",
        r"reloading",
        r"\[vite\]\s+hmr",
        r"compiled\s+successfully",
        r"compiled\s+in\s+",
        r"webpack\s+compiled",
        r"done\s+in\s+\d+\s*ms",
    )
]

MIN_PORT = 1024
MAX_PORT = 65535
PROBE_HOSTS = ("127.0.0.1", "::1")
PROBE_ATTEMPT_TIMEOUT = 2.0
PROBE_RETRY_INTERVAL = 0.4


def detect_port(text: str) -> Optional[int]:
    """Return the first plausible dev-server port mentioned in output text."""
    if not text:
        return None
    for pattern in _PORT_PATTERNS:
        m = pattern.search(text)
        if m:
            port = int(m.group(1))
            if MIN_PORT <= port <= MAX_PORT:
                return port
    return None


def detect_rebuild(text: str) -> bool:
    """True if output looks like a finished rebuild / hot reload."""
    if not text:
        return False
    return any(p.search(text) for p in _REBUILD_PATTERNS)


@dataclass
class PortEntry:
    port: int
    updated_at: float
    host: Optional[str] = None


class PortRegistry:
    """One preview port per workspace, last write wins, expiring after ``ttl`` seconds."""

    def __init__(self, ttl: float = 3600.0, reserved: Iterable[int] = (3001, 5173),
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.reserved = frozenset(reserved)
        self._clock = clock
        self._entries: Dict[str, PortEntry] = {}

    def register(self, workspace_id: str, port: int) -> bool:
        """Record a port. True only when the workspace's port is new or changed."""
        if port in self.reserved:
            return False
        now = self._clock()
        prev = self._live_entry(workspace_id)
        if prev is not None and prev.port == port:
            prev.updated_at = now
            return False
        self._entries[workspace_id] = PortEntry(port=port, updated_at=now)
        return True

    def _live_entry(self, workspace_id: str) -> Optional[PortEntry]:
        entry = self._entries.get(workspace_id)
        if entry is None:
            return None
        if entry.port in self.reserved or self._clock() - entry.updated_at > self.ttl:
            del self._entries[workspace_id]
            return None
        return entry

    def get(self, workspace_id: str) -> Optional[int]:
        entry = self._live_entry(workspace_id)
        return entry.port if entry else None

    def preview_target(self, workspace_id: str) -> Optional[Tuple[str, int]]:
        entry = self._live_entry(workspace_id)
        if entry is None:
            return None
        host = (entry.host or "").strip() or "127.0.0.1"
        return host, entry.port

    def set_host(self, workspace_id: str, host: str) -> None:
        entry = self._entries.get(workspace_id)
        if entry is not None:
            entry.host = host

    def clear(self, workspace_id: str) -> None:
        self._entries.pop(workspace_id, None)

    def detect_and_register(self, workspace_id: str, text: str) -> Optional[int]:
        """Port newly registered from this output, or None."""
        port = detect_port(text)
        if port is None:
            return None
        return port if self.register(workspace_id, port) else None


async def _try_connect(host: str, port: int) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), PROBE_ATTEMPT_TIMEOUT)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def wait_reachable(port: int, timeout: float) -> Optional[str]:
    """Poll IPv4 then IPv6 loopback until one accepts; returns that host or None on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        for host in PROBE_HOSTS:
            if await _try_connect(host, port):
                return host
        await asyncio.sleep(PROBE_RETRY_INTERVAL)
    logger.info("Port %s not reachable within %.1fs", port, timeout)
    return None
