"""
Agent WebSocket endpoint: ``run`` and ``abort`` control messages.

A run is started in the background so the socket keeps reading, which is
what lets an ``abort`` arrive while the agent is still working.
"""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from web.orchestrator import Orchestrator
from web.state import _WSRef

logger = logging.getLogger(__name__)

router = APIRouter()


def _has_run_payload(msg: dict) -> bool:
    if not msg.get("workspaceId"):
        return False
    current = msg.get("currentUserMessage")
    return isinstance(msg.get("message"), str) or (isinstance(current, str) and bool(current.strip()))


@router.websocket("/api/agent")
async def agent_socket(ws: WebSocket):
    await ws.accept()
    orch: Orchestrator = ws.app.state.orchestrator
    wsr = _WSRef(ws)
    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await wsr.send_json({"type": "error", "error": "Invalid message"})
                continue
            if not isinstance(msg, dict):
                continue

            mtype = msg.get("type")
            if mtype == "run":
                if not _has_run_payload(msg):
                    await wsr.send_json({"type": "error", "error": "Missing workspaceId or message"})
                    continue
                orch.spawn(orch.start(wsr, msg))
            elif mtype == "abort":
                workspace_id = str(msg.get("workspaceId") or "").strip()
                if workspace_id:
                    orch.abort(workspace_id)
            else:
                logger.debug(f"Ignoring agent socket message type: {mtype}")
    except WebSocketDisconnect:
        pass
    finally:
        orch.connections.unregister_socket(wsr)
        wsr.ws = None
