"""
Session orchestrator: owns every agent run and all per-workspace state.

A run is started from a WebSocket ``run`` message. The agent's raw output
goes through a per-run StreamDecoder, and the decoded events are
republished to the client as ``chunk`` / ``tool_call`` / ``thinking`` /
``error`` messages, plus ``preview_ready`` / ``preview_refresh`` whenever
output reveals a dev-server port or a rebuild. Tool calls that the agent's
custom tools send back over HTTP re-enter through ``execute_tool_request``
and are published to whichever connection is registered for the workspace.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Coroutine, Dict, List, Optional, Set

from agent import (
    AgentSpawnError,
    DecodeResult,
    ErrorEvent,
    ProcessHandle,
    RunCallbacks,
    SessionEvent,
    StreamDecoder,
    TextEvent,
    ToolEvent,
    abort as abort_process,
    start_run,
)
from collaborators import TextSynthesis
from config import AppConfig, app_config
from tools import (
    PortRegistry,
    RunningCommands,
    ToolCall,
    ToolContext,
    ToolHooks,
    ToolResult,
    detect_rebuild,
    execute_batch,
    execute_tool,
    wait_reachable,
)
from tools.schemas import COMMAND_KEYS, PATH_KEYS, SHELL_TOOL_NAMES, ToolKind, pick

from web.state import ConnectionRegistry, _WSRef

logger = logging.getLogger(__name__)

BUILTIN_DISABLED_NOTE = "Built-in tools are disabled. Use the custom tools instead."

MODE_PREFIXES = {
    "Agent": "[Mode: Agent] Full autonomous agent: resolve the user's request completely before ending your turn.\n\n",
    "Plan": "[Mode: Plan] The user wants you to focus on planning first: outline steps before making changes.\n\n",
    "Debug": "[Mode: Debug] The user is in debug mode: focus on finding and fixing bugs, explaining root cause.\n\n",
    "Ask": "[Mode: Ask] The user is asking a question: answer concisely, optionally with code references.\n\n",
}


@dataclass
class AgentRun:
    key: str
    workspace_id: str
    chat_session_id: Optional[str]
    model: Optional[str]
    wsr: _WSRef
    decoder: StreamDecoder = field(default_factory=StreamDecoder)
    handle: Optional[ProcessHandle] = None
    status: str = "running"  # running | ended | errored | aborted
    # Call ids already executed in-process, so repeated pending states run once
    executed: Set[str] = field(default_factory=set)


def _display_path(tool: str, args: Dict[str, Any]) -> Optional[str]:
    if tool == "file_search":
        value = pick(args, ("query", "path"))
    elif tool == "web_search":
        value = pick(args, ("search_term", "query", "path"))
    else:
        value = pick(args, ("relative_workspace_path",) + PATH_KEYS)
    if isinstance(value, str):
        return value
    return "." if tool == "list_dir" else None


def pending_message(call: ToolCall) -> Dict[str, Any]:
    msg: Dict[str, Any] = {"type": "tool_call", "callId": call.call_id, "tool": call.raw_name, "pending": True}
    path = _display_path(call.raw_name, call.arguments)
    if path is not None:
        msg["path"] = path
    if call.kind == ToolKind.RUN_TERMINAL_CMD:
        command = pick(call.arguments, COMMAND_KEYS)
        if isinstance(command, str):
            msg["command"] = command
    return msg


def completed_message(call: ToolCall, result: ToolResult) -> Dict[str, Any]:
    """The final ``tool_call`` upsert for a call the router executed."""
    msg = pending_message(call)
    msg["pending"] = False
    msg["content"] = result.output if result.success else (result.error or result.output)
    if result.exit_code is not None:
        msg["exitCode"] = result.exit_code
    if not result.success or (result.exit_code is not None and result.exit_code != 0):
        msg["failed"] = True
    if result.start_line is not None and result.end_line is not None:
        msg["startLine"] = result.start_line
        msg["endLine"] = result.end_line
    if result.payload and isinstance(result.payload.get("todos"), list):
        msg["todos"] = result.payload["todos"]
    return msg


class Orchestrator:
    """Process-wide owner of runs, registries and client connections."""

    def __init__(self, settings: AppConfig = app_config, synthesis: Optional[TextSynthesis] = None):
        self.settings = settings
        self.synthesis = synthesis
        self.ports = PortRegistry(ttl=settings.port_ttl, reserved=settings.reserved_ports)
        self.running_commands = RunningCommands()
        self.tools = ToolContext(settings=settings, synthesis=synthesis)
        self.connections = ConnectionRegistry()
        # "workspace:chat" -> the agent's own session id, for continuing a conversation
        self.continuations: Dict[str, str] = {}
        self.runs: Dict[str, AgentRun] = {}
        self._run_seq = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Background tasks and publishing
    # ------------------------------------------------------------------

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        """Run ``coro`` in the background, holding a reference until it finishes."""
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    def publish_soon(self, wsr: Optional[_WSRef], msg: Dict[str, Any]) -> None:
        """Queue a message from synchronous code; sends keep publication order."""
        if wsr is None or not wsr.connected:
            return
        self.spawn(wsr.send_json(msg))

    def signal_preview(self, wsr: Optional[_WSRef], workspace_id: str, text: str) -> None:
        """Announce a newly detected dev-server port, or a rebuild, found in output text."""
        port = self.ports.detect_and_register(workspace_id, text)
        if port is not None:
            logger.info(f"Dev server port {port} detected for {workspace_id}")
            self.spawn(self._announce_preview(wsr, workspace_id, port))
        if detect_rebuild(text):
            self.publish_soon(wsr, {"type": "preview_refresh", "workspaceId": workspace_id})

    async def _announce_preview(self, wsr: Optional[_WSRef], workspace_id: str, port: int) -> None:
        host = await wait_reachable(port, self.settings.preview_probe_timeout)
        # The port may have been replaced while probing
        if host and self.ports.get(workspace_id) == port:
            self.ports.set_host(workspace_id, host)
        if wsr is not None:
            await wsr.send_json({
                "type": "preview_ready",
                "workspaceId": workspace_id,
                "port": port,
                "url": f"http://localhost:{port}",
            })

    def stream_hooks(self, wsr: Optional[_WSRef], workspace_id: str) -> ToolHooks:
        """Hooks that track running shell commands and stream their output to ``wsr``."""

        def on_spawn(call_id: str, kill) -> None:
            self.running_commands.register(workspace_id, call_id, kill)

        def on_stream(call_id: str, chunk: str) -> None:
            self.publish_soon(wsr, {"type": "tool_output_stream", "callId": call_id, "chunk": chunk})
            self.signal_preview(wsr, workspace_id, chunk)

        def on_stream_end(call_id: str, exit_code: int) -> None:
            self.running_commands.unregister(workspace_id, call_id)
            self.publish_soon(wsr, {"type": "tool_output_end", "callId": call_id, "exitCode": exit_code})

        return ToolHooks(on_stream=on_stream, on_stream_end=on_stream_end, on_spawn=on_spawn)

    # ------------------------------------------------------------------
    # Message composition
    # ------------------------------------------------------------------

    async def summarize(self, messages: List[Dict[str, str]]) -> str:
        if self.synthesis is None or not messages:
            return ""
        try:
            return (await asyncio.to_thread(self.synthesis.summarize, messages)).strip()
        except Exception as e:
            logger.warning(f"Conversation summary failed, sending the message alone: {e}")
            return ""

    async def compose_message(self, msg: Dict[str, Any]) -> str:
        """The text handed to the agent: user message, optional summary, mode prefix."""
        conversation = msg.get("conversationMessages")
        conversation = [m for m in conversation if isinstance(m, dict)] if isinstance(conversation, list) else []
        current = msg.get("currentUserMessage")
        current = current.strip() if isinstance(current, str) else ""
        raw = msg.get("message")
        raw = raw.strip() if isinstance(raw, str) else ""

        if conversation and current:
            summary = await self.summarize(conversation)
            if summary:
                logger.info(f"Conversation summary used ({len(summary)} chars)")
                text = (f"Current user message (respond to this):\n{current}\n\n"
                        f"---\nConversation context:\n{summary}")
            else:
                text = current
        else:
            text = raw or current

        mode = msg.get("agentMode")
        mode = mode.strip() if isinstance(mode, str) else "Ask"
        return MODE_PREFIXES.get(mode, "") + text

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    @staticmethod
    def continuation_key(workspace_id: str, chat_session_id: Optional[str]) -> Optional[str]:
        return f"{workspace_id}:{chat_session_id}" if chat_session_id else None

    async def start(self, wsr: _WSRef, msg: Dict[str, Any]) -> Optional[AgentRun]:
        """Handle a ``run`` message. Returns the run, or None if the agent could not start."""
        workspace_id = str(msg.get("workspaceId") or "").strip()
        chat = msg.get("chatSessionId")
        chat_session_id = chat.strip() if isinstance(chat, str) and chat.strip() else None
        model = msg.get("model") if isinstance(msg.get("model"), str) and msg.get("model") else None

        self.connections.register(workspace_id, chat_session_id, wsr)
        run = AgentRun(
            key=f"{workspace_id}:{next(self._run_seq)}",
            workspace_id=workspace_id,
            chat_session_id=chat_session_id,
            model=model,
            wsr=wsr,
        )
        self.runs[run.key] = run

        callbacks = RunCallbacks(
            on_data=lambda data: self._on_data(run, data),
            on_end=lambda code: self._on_end(run, code),
        )
        try:
            message = await self.compose_message(msg)
            ckey = self.continuation_key(workspace_id, chat_session_id)
            continuation_id = self.continuations.get(ckey) if ckey else None
            logger.info(f"Run requested, workspace: {workspace_id}, continuing: {bool(continuation_id)}, "
                        f"message length: {len(message)}")
            handle = await start_run(
                workspace_id, message, callbacks,
                model=model,
                continuation_id=continuation_id,
                chat_session_id=chat_session_id,
                settings=self.settings,
            )
        except (AgentSpawnError, ValueError) as e:
            self._start_failed(run)
            logger.error(f"Run failed to start for {workspace_id}: {e}")
            await wsr.send_json({"type": "error", "error": str(e)})
            return None
        except Exception as e:
            self._start_failed(run)
            logger.exception(f"Unexpected error starting run for {workspace_id}")
            await wsr.send_json({"type": "error", "error": f"Failed to start agent: {e}"})
            return None

        run.handle = handle
        if run.status == "aborted":
            # Aborted while the process was being spawned
            abort_process(handle)
        return run

    def _start_failed(self, run: AgentRun) -> None:
        run.status = "errored"
        self.runs.pop(run.key, None)

    def _on_data(self, run: AgentRun, data: bytes) -> None:
        self._publish_decoded(run, run.decoder.feed(data))

    def _on_end(self, run: AgentRun, code: int) -> None:
        self._publish_decoded(run, run.decoder.finish())
        if run.status == "running":
            run.status = "ended"
        self.runs.pop(run.key, None)
        self.publish_soon(run.wsr, {"type": "end", "code": code})

    def _publish_decoded(self, run: AgentRun, result: DecodeResult) -> None:
        wsr = run.wsr
        inline: List[ToolCall] = []
        for event in result.events:
            if isinstance(event, TextEvent):
                self.publish_soon(wsr, {"type": "chunk", "data": event.content})
                self.signal_preview(wsr, run.workspace_id, event.content)
            elif isinstance(event, SessionEvent):
                ckey = self.continuation_key(run.workspace_id, run.chat_session_id)
                if ckey:
                    self.continuations[ckey] = event.session_id
            elif isinstance(event, ErrorEvent):
                self.publish_soon(wsr, {"type": "error", "error": event.message})
            elif isinstance(event, ToolEvent):
                self._publish_tool_event(run, event, inline)
        if result.placeholder:
            self.publish_soon(wsr, {"type": "thinking", "data": ""})
        if inline:
            self.spawn(self._run_inline(run, inline))

    def _publish_tool_event(self, run: AgentRun, event: ToolEvent, inline: List[ToolCall]) -> None:
        wsr = run.wsr
        if event.is_disabled_builtin:
            logger.warning(f"Ignoring built-in tool (custom tools only): {event.raw_tool}")
            msg: Dict[str, Any] = {
                "type": "tool_call", "callId": event.call_id, "tool": event.tool,
                "pending": False, "content": BUILTIN_DISABLED_NOTE,
            }
            if event.path is not None:
                msg["path"] = event.path
            self.publish_soon(wsr, msg)
            return

        self.publish_soon(wsr, event.to_message())
        if event.raw_tool in SHELL_TOOL_NAMES and event.content:
            self.signal_preview(wsr, run.workspace_id, event.content)

        if (self.settings.inline_tool_execution and event.is_custom and event.pending
                and event.call_id not in run.executed):
            run.executed.add(event.call_id)
            inline.append(ToolCall(call_id=event.call_id, raw_name=event.raw_tool, arguments=dict(event.input)))

    async def _run_inline(self, run: AgentRun, calls: List[ToolCall]) -> None:
        hooks = self.stream_hooks(run.wsr, run.workspace_id)
        outcomes = await execute_batch(run.workspace_id, calls, self.tools, hooks)
        for outcome in outcomes:
            call, result = outcome.call, outcome.result
            if call.kind == ToolKind.RUN_TERMINAL_CMD and result.success and result.output:
                self.signal_preview(run.wsr, run.workspace_id, result.output)
            await run.wsr.send_json(completed_message(call, result))

    def abort(self, workspace_id: str) -> int:
        """Terminate every run of a workspace; returns how many were signalled."""
        count = 0
        for run in list(self.runs.values()):
            if run.workspace_id != workspace_id or run.status != "running":
                continue
            run.status = "aborted"
            if run.handle is not None:
                abort_process(run.handle)
            count += 1
        if count:
            logger.info(f"Aborted {count} run(s) for {workspace_id}")
        return count

    # ------------------------------------------------------------------
    # Tool callback entry point
    # ------------------------------------------------------------------

    async def execute_tool_request(self, workspace_id: str, chat_session_id: Optional[str],
                                   call: ToolCall) -> ToolResult:
        """Run a tool for the agent's out-of-process custom tools, mirroring it to the client."""
        wsr = self.connections.get(workspace_id, chat_session_id)
        if wsr is not None:
            await wsr.send_json(pending_message(call))
        result = await execute_tool(workspace_id, call, self.tools, self.stream_hooks(wsr, workspace_id))
        if call.kind == ToolKind.RUN_TERMINAL_CMD and result.success and result.output:
            self.signal_preview(wsr, workspace_id, result.output)
        if wsr is not None:
            await wsr.send_json(completed_message(call, result))
        return result

    def kill_command(self, workspace_id: str, call_id: str) -> bool:
        return self.running_commands.kill(workspace_id, call_id)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        for run in list(self.runs.values()):
            if run.handle is not None and run.status == "running":
                run.status = "aborted"
                abort_process(run.handle)
        killed = self.tools.dev_servers.kill_all()
        if killed:
            logger.info(f"Shutdown: stopped {killed} dev server(s)")
        for task in list(self._tasks):
            task.cancel()
