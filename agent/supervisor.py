"""
Agent process supervision: spawn the agent CLI for one run, stream its merged
output, and report exactly one exit code.

Agent CLIs buffer or reformat their output when stdout is not a terminal, so
the child is attached to a pseudo-terminal by default. A plain subprocess
with stderr merged into stdout is the fallback when the pseudo-terminal
cannot be created, and the default on platforms without one.
"""

import asyncio
import logging
import os
import shlex
import shutil
import signal
import struct
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from backend import ensure_workspace
from config import AppConfig, app_config
from tools._common import SettleOnce

from .prompts import write_config_bundle

logger = logging.getLogger(__name__)

SIGNAL_EXIT_CODE = 130
AGENT_NOT_FOUND = "Agent CLI not found. Install: npm install -g opencode-ai"
NPX_AGENT = ["npx", "-y", "opencode-ai"]
READ_SIZE = 4096
# How long the waiter lets the reader drain after the child exits
READER_DRAIN_TIMEOUT = 2.0
EXIT_LOG_TAIL = 3000


class AgentSpawnError(RuntimeError):
    """The agent executable could not be found or started."""


@dataclass
class RunCallbacks:
    on_data: Callable[[bytes], None]
    on_end: Callable[[int], None]


def _exit_code(returncode: Optional[int]) -> int:
    if returncode is None or returncode < 0:
        return SIGNAL_EXIT_CODE
    return returncode


class ProcessHandle:
    """A running agent process. ``on_end`` fires once, whichever path observes the exit first."""

    def __init__(self, pid: int, mode: str, callbacks: RunCallbacks,
                 trailing_limit: int = 4000, cleanup_dir: Optional[str] = None):
        self.pid = pid
        self.mode = mode  # "pty" or "subprocess"
        self.exit_code: Optional[int] = None
        self._callbacks = callbacks
        self._trailing_limit = trailing_limit
        self._tail = ""
        self._cleanup_dir = cleanup_dir
        self._ended: SettleOnce[int] = SettleOnce()
        self._proc = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return not self._ended.settled

    @property
    def trailing_output(self) -> str:
        return self._tail

    async def wait(self) -> int:
        return await self._ended

    def _on_output(self, data: bytes) -> None:
        if self._ended.settled:
            return
        self._tail = (self._tail + data.decode("utf-8", errors="replace"))[-self._trailing_limit:]
        try:
            self._callbacks.on_data(data)
        except Exception:
            logger.exception(f"Agent output callback failed (pid {self.pid})")

    def _on_exit(self, returncode: Optional[int]) -> None:
        code = _exit_code(returncode)
        if not self._ended.settle(code):
            return
        self.exit_code = code
        logger.info(f"Agent process {self.pid} ended, code: {code}")
        if code != 0:
            tail = self._tail
            if len(tail) > EXIT_LOG_TAIL:
                tail = "... (truncated)\n" + tail[-EXIT_LOG_TAIL:]
            logger.error(f"Agent exited with code {code}. Last output:\n{tail}")
        if self._cleanup_dir:
            shutil.rmtree(self._cleanup_dir, ignore_errors=True)
        try:
            self._callbacks.on_end(code)
        except Exception:
            logger.exception(f"Agent end callback failed (pid {self.pid})")

    def send_signal(self, sig: int) -> None:
        """Signal the agent's whole process group (it runs in its own session)."""
        if hasattr(os, "killpg"):
            os.killpg(os.getpgid(self.pid), sig)
        elif self._proc is not None:
            self._proc.send_signal(sig)
        else:
            os.kill(self.pid, sig)


def abort(handle: ProcessHandle) -> None:
    """Terminate the agent gracefully; escalate to a forceful kill if that raises."""
    try:
        handle.send_signal(signal.SIGTERM)
    except OSError as e:
        logger.debug(f"SIGTERM to agent {handle.pid} failed ({e}); escalating")
        try:
            handle.send_signal(getattr(signal, "SIGKILL", signal.SIGTERM))
        except OSError as e2:
            logger.debug(f"SIGKILL to agent {handle.pid} failed: {e2}")


# ------------------------------------------------------------------
# Command line and environment
# ------------------------------------------------------------------

def build_command(settings: AppConfig, message: str, model: Optional[str] = None,
                  continuation_id: Optional[str] = None) -> List[str]:
    agent = shlex.split(settings.agent_path) or ["opencode"]
    if agent == ["opencode"] and shutil.which("opencode") is None:
        logger.info("opencode not on PATH; using npx opencode-ai")
        agent = list(NPX_AGENT)
    argv = agent + ["run"]
    if settings.use_json:
        argv += ["--format", "json"]
    if continuation_id:
        argv += ["-s", continuation_id]
    argv += ["-m", model or settings.default_model, message]
    return argv


def build_env(settings: AppConfig, workspace_id: str, chat_session_id: Optional[str],
              config_path: str) -> Dict[str, str]:
    env = dict(os.environ)
    env.update({
        "OPENCODE_CONFIG": config_path,
        "OPENCODE_WORKSPACE_ID": workspace_id,
        "OPENCODE_CHAT_SESSION_ID": chat_session_id or "",
        "OPENCODE_BACKEND_URL": settings.backend_url,
        "TERM": "dumb",
    })
    if settings.tools_config_dir:
        env["OPENCODE_CONFIG_DIR"] = os.path.abspath(settings.tools_config_dir)
    return env


# ------------------------------------------------------------------
# Pseudo-terminal strategy
# ------------------------------------------------------------------

def _set_winsize(fd: int, rows: int, cols: int) -> None:
    import fcntl
    import termios
    if hasattr(termios, "tcsetwinsize"):
        termios.tcsetwinsize(fd, (rows, cols))
    else:
        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _post(loop: asyncio.AbstractEventLoop, fn: Callable, *args) -> None:
    try:
        loop.call_soon_threadsafe(fn, *args)
    except RuntimeError:
        logger.debug("Event loop closed; dropping agent process event")


def _pty_read_loop(master_fd: int, handle: ProcessHandle, loop: asyncio.AbstractEventLoop) -> None:
    """Thread: read the PTY master until EOF/EIO and hand each read to the loop."""
    try:
        while True:
            try:
                data = os.read(master_fd, READ_SIZE)
            except OSError:
                break  # EIO once the slave side is closed
            if not data:
                break
            _post(loop, handle._on_output, data)
    finally:
        try:
            os.close(master_fd)
        except OSError:
            pass


def _pty_wait(proc: subprocess.Popen, reader: threading.Thread, handle: ProcessHandle,
              loop: asyncio.AbstractEventLoop) -> None:
    """Thread: wait for the child, let the reader drain, then report the exit."""
    returncode = proc.wait()
    reader.join(timeout=READER_DRAIN_TIMEOUT)
    _post(loop, handle._on_exit, returncode)


def _spawn_pty(argv: List[str], cwd: str, env: Dict[str, str], callbacks: RunCallbacks,
               settings: AppConfig, cleanup_dir: str) -> ProcessHandle:
    loop = asyncio.get_running_loop()
    master_fd, slave_fd = os.openpty()
    try:
        _set_winsize(master_fd, settings.pty_rows, settings.pty_cols)
        proc = subprocess.Popen(
            argv, cwd=cwd, env=env,
            stdin=slave_fd, stdout=slave_fd, stderr=slave_fd,
            start_new_session=True, close_fds=True,
        )
    except BaseException:
        os.close(master_fd)
        raise
    finally:
        os.close(slave_fd)

    handle = ProcessHandle(proc.pid, "pty", callbacks, settings.trailing_buffer_chars, cleanup_dir)
    handle._proc = proc
    reader = threading.Thread(target=_pty_read_loop, args=(master_fd, handle, loop),
                              name=f"agent-pty-{proc.pid}", daemon=True)
    waiter = threading.Thread(target=_pty_wait, args=(proc, reader, handle, loop),
                              name=f"agent-wait-{proc.pid}", daemon=True)
    reader.start()
    waiter.start()
    return handle


# ------------------------------------------------------------------
# Plain subprocess strategy
# ------------------------------------------------------------------

async def _pump_subprocess(proc: asyncio.subprocess.Process, handle: ProcessHandle) -> None:
    assert proc.stdout is not None
    while True:
        data = await proc.stdout.read(READ_SIZE)
        if not data:
            break
        handle._on_output(data)
    handle._on_exit(await proc.wait())


async def _spawn_subprocess(argv: List[str], cwd: str, env: Dict[str, str], callbacks: RunCallbacks,
                            settings: AppConfig, cleanup_dir: str) -> ProcessHandle:
    proc = await asyncio.create_subprocess_exec(
        *argv, cwd=cwd, env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        start_new_session=True,
    )
    handle = ProcessHandle(proc.pid, "subprocess", callbacks, settings.trailing_buffer_chars, cleanup_dir)
    handle._proc = proc
    handle._task = asyncio.create_task(_pump_subprocess(proc, handle))
    return handle


# ------------------------------------------------------------------
# Entry point
# ------------------------------------------------------------------

async def start_run(
    workspace_id: str,
    message: str,
    callbacks: RunCallbacks,
    model: Optional[str] = None,
    continuation_id: Optional[str] = None,
    chat_session_id: Optional[str] = None,
    *,
    settings: AppConfig = app_config,
) -> ProcessHandle:
    """Spawn the agent for one run. Raises AgentSpawnError if the executable is missing or cannot run."""
    cwd = await asyncio.to_thread(ensure_workspace, settings.workspace_root, workspace_id)
    config_path = await asyncio.to_thread(write_config_bundle, cwd, settings.reserved_ports)
    cleanup_dir = os.path.dirname(config_path)
    argv = build_command(settings, message, model, continuation_id)
    env = build_env(settings, workspace_id, chat_session_id, config_path)
    if continuation_id:
        logger.info(f"Continuing agent session {continuation_id}")

    try:
        if settings.use_pty and os.name == "posix":
            try:
                handle = _spawn_pty(argv, cwd, env, callbacks, settings, cleanup_dir)
            except (FileNotFoundError, PermissionError):
                raise
            except OSError as e:
                logger.warning(f"PTY spawn failed ({e}); falling back to subprocess")
            else:
                logger.info(f"Agent started (pty), pid {handle.pid}, cwd: {cwd}")
                return handle
        handle = await _spawn_subprocess(argv, cwd, env, callbacks, settings, cleanup_dir)
    except (FileNotFoundError, PermissionError) as e:
        shutil.rmtree(cleanup_dir, ignore_errors=True)
        logger.error(f"Agent spawn failed: {argv[0]}: {e}")
        raise AgentSpawnError(AGENT_NOT_FOUND) from e
    except OSError as e:
        # e.g. ENOEXEC for a script without an interpreter line
        shutil.rmtree(cleanup_dir, ignore_errors=True)
        logger.error(f"Agent spawn failed: {argv[0]}: {e}")
        raise AgentSpawnError(f"Failed to start agent: {e}") from e
    logger.info(f"Agent started (subprocess), pid {handle.pid}, cwd: {cwd}")
    return handle
