"""
HTTP endpoints: the tool callback used by the agent's custom tools, command
kill, health, and the preview target for a workspace.
"""

import logging
import time
import uuid

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tools import ToolCall
from web.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _str_field(body: dict, key: str) -> str:
    value = body.get(key)
    return value.strip() if isinstance(value, str) else ""


@router.post("/api/agent/execute-tool")
async def execute_tool_endpoint(request: Request):
    """Run one tool call for the agent process and return its result synchronously."""
    body = await _json_body(request)
    workspace_id = _str_field(body, "workspaceId")
    tool = _str_field(body, "tool")
    if not workspace_id or not tool:
        return JSONResponse({"success": False, "error": "Missing workspaceId or tool"}, status_code=400)

    call_id = _str_field(body, "callId") or f"tool-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"
    arguments = body.get("arguments")
    call = ToolCall(call_id=call_id, raw_name=tool, arguments=arguments if isinstance(arguments, dict) else {})
    chat_session_id = _str_field(body, "chatSessionId") or None

    result = await _orchestrator(request).execute_tool_request(workspace_id, chat_session_id, call)
    return JSONResponse(result.to_dict())


@router.post("/api/agent/kill-command")
async def kill_command(request: Request):
    body = await _json_body(request)
    workspace_id = _str_field(body, "workspaceId")
    call_id = _str_field(body, "callId")
    if not workspace_id or not call_id:
        return JSONResponse({"success": False, "error": "Missing workspaceId or callId"}, status_code=400)
    killed = _orchestrator(request).kill_command(workspace_id, call_id)
    if killed:
        logger.info(f"Killed command {call_id} in {workspace_id}")
    return {"success": killed}


@router.get("/api/health")
async def health():
    return {"status": "ok"}


@router.get("/api/preview/{workspace_id}/target")
async def preview_target(workspace_id: str, request: Request):
    """Where a live preview for the workspace can be reached, if one is registered."""
    target = _orchestrator(request).ports.preview_target(workspace_id)
    if target is None:
        return JSONResponse({"error": "No preview running for this workspace"}, status_code=404)
    host, port = target
    return {"port": port, "host": host, "url": f"http://localhost:{port}"}
