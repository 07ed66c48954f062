"""Tool execution dispatch: one normalized entry point and concurrent batches."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from tools._common import ToolContext, ToolHooks, ToolResult
from tools.schemas import ToolArgumentError, ToolCall, ToolKind, normalize_call
from tools import file_ops, search_ops, external_ops

logger = logging.getLogger(__name__)

ToolImpl = Callable[..., Awaitable[ToolResult]]

TOOL_IMPLEMENTATIONS: Dict[ToolKind, ToolImpl] = {
    ToolKind.RUN_TERMINAL_CMD: external_ops.run_terminal_cmd,
    ToolKind.READ_FILE: file_ops.read_file,
    ToolKind.LIST_DIR: search_ops.list_dir,
    ToolKind.GREP_SEARCH: search_ops.grep_search,
    ToolKind.FILE_SEARCH: search_ops.file_search,
    ToolKind.CODEBASE_SEARCH: search_ops.codebase_search,
    ToolKind.EDIT_FILE: file_ops.edit_file,
    ToolKind.SEARCH_REPLACE: file_ops.search_replace,
    ToolKind.DELETE_FILE: file_ops.delete_file,
    ToolKind.REAPPLY: file_ops.reapply,
    ToolKind.READ_LINTS: external_ops.read_lints,
    ToolKind.WEB_SEARCH: external_ops.web_search,
    ToolKind.CREATE_DIAGRAM: external_ops.create_diagram,
    ToolKind.EDIT_NOTEBOOK: file_ops.edit_notebook,
    ToolKind.TODO_WRITE: external_ops.todo_write,
    ToolKind.TODO_READ: external_ops.todo_read,
}


async def execute_tool(
    workspace_id: str,
    call: ToolCall,
    ctx: ToolContext,
    hooks: Optional[ToolHooks] = None,
) -> ToolResult:
    """Execute one tool call. Never raises: every failure comes back as a ToolResult."""
    try:
        kind, args = normalize_call(call.raw_name, call.arguments)
    except ToolArgumentError as e:
        if call.kind is None:
            logger.info(f"Unsupported tool requested: {call.raw_name}")
        return ToolResult(success=False, output="", error=str(e))

    impl = TOOL_IMPLEMENTATIONS[kind]
    try:
        result = await impl(args, ctx, workspace_id, call_id=call.call_id, hooks=hooks)
    except Exception as e:
        logger.exception(f"Tool execution error: {kind.value} ({call.call_id})")
        return ToolResult(success=False, output="", error=f"Tool error: {e}")
    log = logger.info if result.success else logger.warning
    log("%s %s [%s] -> %s", kind.value, call.call_id, workspace_id,
        "ok" if result.success else result.error)
    return result


@dataclass
class BatchOutcome:
    call: ToolCall
    result: ToolResult


async def execute_batch(
    workspace_id: str,
    calls: List[ToolCall],
    ctx: ToolContext,
    hooks: Optional[ToolHooks] = None,
) -> List[BatchOutcome]:
    """Run calls concurrently; each outcome stands alone, in submission order."""
    results = await asyncio.gather(
        *(execute_tool(workspace_id, call, ctx, hooks) for call in calls),
        return_exceptions=True,
    )
    outcomes: List[BatchOutcome] = []
    for call, res in zip(calls, results):
        if isinstance(res, BaseException):
            # CancelledError from a sibling-independent cancel lands here too
            res = ToolResult(success=False, output="", error=f"Tool error: {res}")
        outcomes.append(BatchOutcome(call=call, result=res))
    return outcomes
