"""Bookkeeping for processes started on behalf of a workspace.

DevServerRegistry keeps at most one dev server per workspace; RunningCommands lets
the client cancel a single long-running shell call by (workspace_id, call_id).
"""

import logging
import re
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

KillFn = Callable[[], None]

_DEV_SERVER_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\bnpm\s+run\s+dev\b",
        r"\bnpm\s+run\s+start\b",
        r"\bnpm\s+start\b",
        r"\byarn\s+(dev|start)\b",
        r"\bpnpm\s+(dev|run\s+dev|start)\b",
        r"\bnpx\s+vite\b",
        r"\bvite\b",
        r"\bnext\s+dev\b",
        r"\bng\s+serve\b",
        r"\bnuxt\s+(dev|run)\b",
        r"\bwebpack\s+(serve|dev-server)\b",
    )
]

_BUILD_PATTERNS = [
    re.compile(p) for p in (
        r"\bnpm\s+run\s+build\b",
        r"\b(?:yarn|pnpm)\s+(?:run\s+)?build\b",
        r"\b(?:npx\s+)?vite\s+build\b",
        r"\b(?:ng\s+build|next\s+build)\b",
    )
]


def is_build_command(command: str) -> bool:
    c = (command or "").strip().lower()
    return any(p.search(c) for p in _BUILD_PATTERNS)


def is_dev_server_command(command: str) -> bool:
    """Long-running dev server launches (npm run dev, vite, next dev, ...)."""
    c = (command or "").strip()
    if not c or is_build_command(c):
        return False
    return any(p.search(c) for p in _DEV_SERVER_PATTERNS)


def _safe_kill(kill: KillFn, what: str) -> None:
    try:
        kill()
    except Exception as e:
        logger.warning("Failed to kill %s: %s", what, e)


class DevServerRegistry:
    """Kill function of the dev server currently tracked for each workspace."""

    def __init__(self):
        self._kills: Dict[str, KillFn] = {}

    def kill_existing(self, workspace_id: str) -> bool:
        kill = self._kills.pop(workspace_id, None)
        if kill is None:
            return False
        _safe_kill(kill, f"dev server for {workspace_id}")
        return True

    def register(self, workspace_id: str, kill: KillFn) -> None:
        self._kills[workspace_id] = kill

    def unregister(self, workspace_id: str, kill: Optional[KillFn] = None) -> None:
        """Forget the workspace's dev server; with ``kill`` given, only if it is still that one."""
        current = self._kills.get(workspace_id)
        if current is None:
            return
        if kill is not None and current is not kill:
            return
        del self._kills[workspace_id]

    def get(self, workspace_id: str) -> Optional[KillFn]:
        return self._kills.get(workspace_id)

    def kill_all(self) -> int:
        workspaces = list(self._kills)
        for workspace_id in workspaces:
            self.kill_existing(workspace_id)
        return len(workspaces)


class RunningCommands:
    """(workspace_id, call_id) -> kill function for shell calls still running."""

    def __init__(self):
        self._running: Dict[Tuple[str, str], KillFn] = {}

    def register(self, workspace_id: str, call_id: str, kill: KillFn) -> None:
        self._running[(workspace_id, call_id)] = kill

    def unregister(self, workspace_id: str, call_id: str) -> None:
        self._running.pop((workspace_id, call_id), None)

    def kill(self, workspace_id: str, call_id: str) -> bool:
        """Kill a registered command. False if nothing is registered under that key."""
        kill = self._running.pop((workspace_id, call_id), None)
        if kill is None:
            return False
        _safe_kill(kill, f"command {call_id} in {workspace_id}")
        return True

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._running
