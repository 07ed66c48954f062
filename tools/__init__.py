"""
Tool call routing for the agent bridge.
Each tool call is normalized to a ToolKind with typed arguments, sandbox-checked
where it runs shell commands, and executed against one workspace directory.
"""

from tools._common import (  # noqa: F401
    ToolResult,
    ToolHooks,
    ToolContext,
    SettleOnce,
    LastEdit,
    LastEditStore,
    TodoStore,
)
from tools.schemas import (  # noqa: F401
    ToolKind,
    ToolCall,
    ToolArgumentError,
    TOOL_NAME_NORMALIZE,
    CUSTOM_TOOL_NAMES,
    ALLOWED_BUILTIN_TOOLS,
    canonical_kind,
    parse_arguments,
    normalize_call,
)
from tools.sandbox import is_allowed, attempts_escape, is_kill_all  # noqa: F401
from tools.processes import DevServerRegistry, RunningCommands, is_dev_server_command  # noqa: F401
from tools.preview import PortRegistry, detect_port, detect_rebuild, wait_reachable  # noqa: F401
from tools.dispatch import execute_tool, execute_batch, BatchOutcome  # noqa: F401
