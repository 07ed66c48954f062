"""
Agent package - running the external coding-agent CLI and decoding its output.

Modules:
- supervisor: spawn/abort the agent process (pseudo-terminal or plain subprocess)
- prompts: system instructions and the per-run config bundle
- decoder: incremental stream decoder producing ordered events
- events: event types and normalization of raw event objects
- repair: JSON repair chain for terminal-mangled event lines
- recovery: pattern-based salvage of objects no repair step could parse
"""

from .events import AgentEvent, TextEvent, ToolEvent, SessionEvent, ErrorEvent, normalize_event
from .decoder import StreamDecoder, DecodeResult
from .repair import RepairError, repair_json
from .supervisor import (
    AgentSpawnError,
    ProcessHandle,
    RunCallbacks,
    SIGNAL_EXIT_CODE,
    abort,
    start_run,
)

__all__ = [
    "AgentEvent",
    "TextEvent",
    "ToolEvent",
    "SessionEvent",
    "ErrorEvent",
    "normalize_event",
    "StreamDecoder",
    "DecodeResult",
    "RepairError",
    "repair_json",
    "AgentSpawnError",
    "ProcessHandle",
    "RunCallbacks",
    "SIGNAL_EXIT_CODE",
    "abort",
    "start_run",
]
