"""Shell-backed and external tools: run_terminal_cmd, read_lints, web_search, create_diagram, todos."""

import asyncio
import codecs
import json
import logging
import os
import re
import signal
from typing import Any, Callable, Dict, List, Optional

from backend import find_project_root
from tools._common import SettleOnce, ToolContext, ToolHooks, ToolResult
from tools.processes import is_dev_server_command
from tools.sandbox import attempts_escape, is_allowed, is_kill_all, strip_redundant_cd
from tools.schemas import (
    CreateDiagramArgs, ReadLintsArgs, ShellArgs, TodoReadArgs, TodoWriteArgs, WebSearchArgs,
)

logger = logging.getLogger(__name__)

SIGNAL_EXIT_CODE = 130
TIMEOUT_EXIT_CODE = -1
TIMEOUT_NOTICE = "\n[Command timed out and was terminated.]\n"
# Seconds between SIGTERM and SIGKILL for a timed-out process group
KILL_GRACE = 1.0
DEV_SERVER_PLACEHOLDER = (
    "(Dev server started. Output will stream in the terminal. "
    "If you see errors in the terminal, fix them and re-run if needed.)"
)
LINT_COMMAND = "npm run lint 2>&1"

KILL_ALL_ERROR = (
    "Killing all Node processes is not allowed (it would stop the host app and other apps). "
    "Only processes started in this workspace can be stopped."
)
NOT_ALLOWED_ERROR = (
    "Command not allowed. Only npm, npx, node, yarn, pnpm, git (and cd within workspace) are permitted."
)
ESCAPE_ERROR = "Command may not leave the workspace directory."

_LINT_COUNT_PATTERNS = [
    (re.compile(r"(\d+)\s+problems?\s+\((\d+)\s+errors?", re.IGNORECASE), 2),
    (re.compile(r"(\d+)\s+errors?\s+and\s+\d+\s+warnings?", re.IGNORECASE), 1),
    (re.compile(r"✖\s*(\d+)\s+problems?", re.IGNORECASE), 1),
    (re.compile(r"Found\s+(\d+)\s+errors?", re.IGNORECASE), 1),
    (re.compile(r"(\d+)\s+errors?\s+found", re.IGNORECASE), 1),
    (re.compile(r"(\d+)\s+errors?\b", re.IGNORECASE), 1),
]


def parse_lint_error_count(output: str) -> int:
    """Error count from eslint / tsc style summaries; 0 when none is recognized."""
    if not output:
        return 0
    for pattern, group in _LINT_COUNT_PATTERNS:
        m = pattern.search(output)
        if m:
            return int(m.group(group))
    return 0


def _kill_process_group(proc: asyncio.subprocess.Process, sig: int = signal.SIGTERM) -> None:
    """Kill a process and its entire process group."""
    # start_new_session makes the shell the group leader; the group outlives it.
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, OSError):
        pass
    try:
        proc.kill()
    except (ProcessLookupError, OSError):
        pass


def _exit_code(returncode: Optional[int]) -> int:
    if returncode is None or returncode < 0:
        return SIGNAL_EXIT_CODE
    return returncode


def _call(hook: Optional[Callable[..., None]], *args: Any) -> None:
    if hook is None:
        return
    try:
        hook(*args)
    except Exception as e:
        logger.debug("tool hook failed: %s", e)


async def run_shell(
    command: str,
    cwd: str,
    *,
    call_id: str,
    ctx: ToolContext,
    workspace_id: str,
    hooks: Optional[ToolHooks] = None,
    dev_server: bool = False,
    timeout: Optional[float] = None,
    stream: bool = True,
) -> ToolResult:
    """Run a shell command, streaming merged output, and settle its result exactly once.

    Normal commands settle when they exit or when ``timeout`` kills them. Dev
    servers also settle after the grace window while output keeps streaming.
    """
    hooks = hooks or ToolHooks()
    on_stream = hooks.on_stream if stream else None
    env = dict(os.environ, TERM="dumb", FORCE_COLOR="0")
    proc = await asyncio.create_subprocess_shell(
        command, cwd=cwd, env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        start_new_session=True,
    )
    loop = asyncio.get_running_loop()
    result: SettleOnce[ToolResult] = SettleOnce()
    chunks: List[str] = []
    timed_out = False

    def kill() -> None:
        _kill_process_group(proc)

    if dev_server:
        # Another launch may have registered while we were spawning.
        ctx.dev_servers.kill_existing(workspace_id)
        ctx.dev_servers.register(workspace_id, kill)
    _call(hooks.on_spawn, call_id, kill)

    def on_timeout() -> None:
        nonlocal timed_out
        timed_out = True
        chunks.append(TIMEOUT_NOTICE)
        _call(on_stream, call_id, TIMEOUT_NOTICE)
        kill()
        loop.call_later(KILL_GRACE, _kill_process_group, proc, signal.SIGKILL)
        # Children that ignore SIGTERM may hold the pipe open; do not wait for EOF.
        _call(hooks.on_stream_end, call_id, TIMEOUT_EXIT_CODE)
        result.settle(ToolResult(success=False, output="".join(chunks),
                                 error=f"Command timed out after {timeout:g}s",
                                 exit_code=TIMEOUT_EXIT_CODE))

    def on_grace() -> None:
        output = "".join(chunks) or DEV_SERVER_PLACEHOLDER
        if result.settle(ToolResult(success=True, output=output, exit_code=0)):
            logger.info("Dev server %s still running after grace window; returning early", call_id)

    timeout_handle = loop.call_later(timeout, on_timeout) if timeout else None
    grace_handle = loop.call_later(ctx.settings.dev_server_grace, on_grace) if dev_server else None

    async def pump() -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        code = SIGNAL_EXIT_CODE
        try:
            while True:
                data = await proc.stdout.read(4096)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    chunks.append(text)
                    _call(on_stream, call_id, text)
            tail = decoder.decode(b"", final=True)
            if tail:
                chunks.append(tail)
                _call(on_stream, call_id, tail)
            code = _exit_code(await proc.wait())
        except Exception as e:
            logger.exception(f"Output reader failed for {call_id}")
            kill()
            result.settle(ToolResult(success=False, output="".join(chunks), error=str(e), exit_code=code))
        finally:
            for handle in (timeout_handle, grace_handle):
                if handle is not None:
                    handle.cancel()
            if dev_server:
                ctx.dev_servers.unregister(workspace_id, kill)
        if timed_out:
            return
        _call(hooks.on_stream_end, call_id, code)
        output = "".join(chunks)
        if code == 0:
            result.settle(ToolResult(success=True, output=output, exit_code=0))
        else:
            result.settle(ToolResult(success=False, output=output,
                                     error=f"Command exited with code {code}", exit_code=code))

    task = asyncio.create_task(pump())
    ctx.background.add(task)
    task.add_done_callback(ctx.background.discard)
    return await result


async def _project_root(ctx: ToolContext, workspace_id: str) -> str:
    ws_dir = ctx.backend(workspace_id).working_directory
    await asyncio.to_thread(os.makedirs, ws_dir, exist_ok=True)
    return await asyncio.to_thread(find_project_root, ws_dir)


async def run_terminal_cmd(args: ShellArgs, ctx: ToolContext, workspace_id: str,
                           call_id: str = "", hooks: Optional[ToolHooks] = None, **kw: Any) -> ToolResult:
    """Sandbox-check a command and run it in the workspace's project root."""
    command = args.command.strip()
    if is_kill_all(command):
        logger.warning("Blocked kill-all command in %s: %s", workspace_id, command)
        return ToolResult(success=False, output="", error=KILL_ALL_ERROR)
    if not is_allowed(command):
        return ToolResult(success=False, output="", error=NOT_ALLOWED_ERROR)
    project_root = await _project_root(ctx, workspace_id)
    if attempts_escape(command, project_root):
        return ToolResult(success=False, output="", error=ESCAPE_ERROR)

    command = strip_redundant_cd(command, project_root)
    dev_server = is_dev_server_command(command)
    if dev_server:
        ctx.dev_servers.kill_existing(workspace_id)
    logger.info(f"run_terminal_cmd [{workspace_id}/{call_id}] dev_server={dev_server}: {command}")
    return await run_shell(
        command, project_root,
        call_id=call_id, ctx=ctx, workspace_id=workspace_id, hooks=hooks,
        dev_server=dev_server,
        timeout=None if dev_server else ctx.settings.command_timeout,
    )


async def read_lints(args: ReadLintsArgs, ctx: ToolContext, workspace_id: str,
                     call_id: str = "", hooks: Optional[ToolHooks] = None, **kw: Any) -> ToolResult:
    """Run the project's lint script and summarize its error count."""
    project_root = await _project_root(ctx, workspace_id)
    spawn_only = ToolHooks(on_spawn=hooks.on_spawn if hooks else None)
    res = await run_shell(
        LINT_COMMAND, project_root,
        call_id=call_id, ctx=ctx, workspace_id=workspace_id, hooks=spawn_only,
        timeout=ctx.settings.lint_timeout, stream=False,
    )
    output = res.output.strip()
    error_count = parse_lint_error_count(output)
    if error_count == 0:
        summary = "No linting errors found."
    else:
        summary = f"{error_count} linting error{'' if error_count == 1 else 's'} found."
    ok = res.exit_code == 0 and error_count == 0
    return ToolResult(
        success=ok,
        output=f"{summary}\n\n{output}" if output else summary,
        error=None if ok else summary if error_count else res.error or summary,
        exit_code=res.exit_code,
        payload={"errorCount": error_count, "summary": summary},
    )


def _web_search_sync(query: str, max_results: int) -> ToolResult:
    try:
        from duckduckgo_search import DDGS
        with DDGS() as ddgs:
            results = list(ddgs.text(query, max_results=max_results))
        if not results:
            return ToolResult(success=True, output="No results found for that query.")
        lines = [f"Web search: \"{query}\"\n"]
        for i, r in enumerate(results, 1):
            title = (r.get("title") or "").strip()
            href = (r.get("href") or r.get("link") or "").strip()
            body = (r.get("body") or "").strip()[:400]
            lines.append(f"{i}. {title}\n   {href}\n   {body}\n")
        return ToolResult(success=True, output="\n".join(lines))
    except ImportError:
        return ToolResult(
            success=False,
            output="",
            error="Web search is not configured. Install the search extra: pip install 'agent-bridge[search]'",
        )
    except Exception as e:
        logger.exception("web_search failed")
        return ToolResult(success=False, output="", error=str(e))


async def web_search(args: WebSearchArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    max_results = max(1, min(10, args.max_results))
    return await asyncio.to_thread(_web_search_sync, args.search_term.strip(), max_results)


async def create_diagram(args: CreateDiagramArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    content = args.content.strip()
    return ToolResult(success=True, output=content, payload={"mermaid": content})


_VALID_TODO_STATUSES = {"pending", "in_progress", "completed", "cancelled"}


async def todo_write(args: TodoWriteArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    """Create or update the task checklist for this workspace."""
    for i, todo in enumerate(args.todos):
        if "content" not in todo or "status" not in todo:
            return ToolResult(success=False, output="", error=f"todo[{i}] missing required fields: content, status")
        if todo["status"] not in _VALID_TODO_STATUSES:
            return ToolResult(success=False, output="", error=f"todo[{i}] invalid status: {todo['status']}")

    todos: List[Dict[str, Any]] = args.todos
    if args.merge:
        merged = {str(t.get("id", i)): t for i, t in enumerate(ctx.todos.get(workspace_id))}
        for i, todo in enumerate(args.todos):
            key = str(todo.get("id", f"new-{i}"))
            merged[key] = {**merged.get(key, {}), **todo}
        todos = list(merged.values())
    ctx.todos.set(workspace_id, todos)
    return ToolResult(
        success=True,
        output=f"Updated task checklist with {len(todos)} items",
        payload={"todos": todos},
    )


async def todo_read(args: TodoReadArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    todos = ctx.todos.get(workspace_id)
    if not todos:
        return ToolResult(success=True, output="No active task checklist found.")
    return ToolResult(success=True, output=json.dumps(todos, indent=2), payload={"todos": todos})
