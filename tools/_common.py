"""Shared types and state for the tools package."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from backend import LocalBackend, workspace_backend
from tools.processes import DevServerRegistry, KillFn

T = TypeVar("T")


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None
    exit_code: Optional[int] = None
    payload: Optional[Dict[str, Any]] = None
    start_line: Optional[int] = None
    end_line: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            out: Dict[str, Any] = {"success": False, "error": self.error or "Tool failed", "output": self.output}
        else:
            out = {"success": True, "output": self.output}
        if self.exit_code is not None:
            out["exitCode"] = self.exit_code
        if self.payload is not None:
            out["payload"] = self.payload
        return out


@dataclass
class ToolHooks:
    """Optional callbacks for streaming shell output back to a client."""
    on_stream: Optional[Callable[[str, str], None]] = None      # (call_id, chunk)
    on_stream_end: Optional[Callable[[str, int], None]] = None  # (call_id, exit_code)
    on_spawn: Optional[Callable[[str, KillFn], None]] = None    # (call_id, kill)


class SettleOnce(Generic[T]):
    """A result that can be settled exactly once, whichever trigger gets there first.

    Process exit, a timeout and a grace window can all race to settle the same
    result; every trigger calls ``settle`` and only the first one wins.
    """

    def __init__(self):
        self._future: "asyncio.Future[T]" = asyncio.get_running_loop().create_future()

    @property
    def settled(self) -> bool:
        return self._future.done()

    def settle(self, value: T) -> bool:
        if self._future.done():
            return False
        self._future.set_result(value)
        return True

    def __await__(self):
        return self._future.__await__()


@dataclass
class LastEdit:
    target_file: str
    instructions: str
    edit_sketch: str


class LastEditStore:
    """Single most-recent edit per workspace, consumed by reapply."""

    def __init__(self):
        self._edits: Dict[str, LastEdit] = {}

    def set(self, workspace_id: str, edit: LastEdit) -> None:
        self._edits[workspace_id] = edit

    def get(self, workspace_id: str) -> Optional[LastEdit]:
        return self._edits.get(workspace_id)


class TodoStore:
    """Agent-maintained todo list per workspace."""

    def __init__(self):
        self._todos: Dict[str, List[Dict[str, Any]]] = {}

    def set(self, workspace_id: str, todos: List[Dict[str, Any]]) -> None:
        self._todos[workspace_id] = list(todos)

    def get(self, workspace_id: str) -> List[Dict[str, Any]]:
        return list(self._todos.get(workspace_id, []))


@dataclass
class ToolContext:
    """Everything a tool needs beyond its arguments; owned by the orchestrator."""
    settings: Any
    synthesis: Any = None
    dev_servers: DevServerRegistry = field(default_factory=DevServerRegistry)
    last_edits: LastEditStore = field(default_factory=LastEditStore)
    todos: TodoStore = field(default_factory=TodoStore)
    # Background stream readers that outlive an optimistic dev-server result
    background: set = field(default_factory=set)

    def backend(self, workspace_id: str) -> LocalBackend:
        return workspace_backend(self.settings.workspace_root, workspace_id)
