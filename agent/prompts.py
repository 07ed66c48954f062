"""
System instructions and the per-run configuration bundle handed to the agent CLI.

The bundle is written to temp files because the agent CLI only accepts
instructions by file path. The permission matrix denies and disables every
built-in tool, so the only tools the agent can reach are the custom ones
served back through the execute-tool endpoint.
"""

import json
import logging
import os
import sys
import tempfile
from datetime import date
from typing import Any, Dict

from tools.schemas import DISABLED_BUILTIN_TOOLS

logger = logging.getLogger(__name__)

CONFIG_SCHEMA_URL = "https://opencode.ai/config.json"
STAGING_DIR_NAME = "agent-bridge-config"


# ============================================================
# Prompt modules
# ============================================================

_MOD_IDENTITY = """You are an AI coding assistant pair programming with a USER inside their project workspace.

You are an agent - keep going until the user's query is completely resolved before ending your turn. Only terminate your turn when you are sure the problem is solved. Your main goal is to follow the USER's instructions at each message."""

_MOD_TOOL_NAMES = """<tool_names_critical>
CRITICAL - You MUST use ONLY these exact tool names. Built-in tools with other names are DISABLED and will fail every time.
- To read a file: use `read_file` (NEVER `read`).
- To list directory contents: use `list_dir` (NEVER `list` or `glob`).
- To edit or create files: use `edit_file` or `search_replace` (NEVER `edit`, `write`, or `patch`).
- To run shell commands: use `run_terminal_cmd` (NEVER `bash`).
- To search file content by regex: use `grep_search` (NEVER `grep`).
- To find files by name: use `file_search`. For web lookup: use `web_search`.
- Task list: use `todowrite` and `todoread`.
If you call `read`, `edit`, `write`, `bash`, `list`, `glob`, or `grep`, the call will be rejected.
</tool_names_critical>"""

_MOD_DEV_SERVER = """<dev_server>
- When you run a dev server (e.g. `npm run dev`), you receive its initial console output after a short delay. If that output contains build or runtime errors, fix them and re-run until the app starts cleanly.
- For the in-app preview to work, run the dev server on a port other than {reserved}. For Vite use `npm run dev -- --port 5174`; for other tools pass `--port 5174` or set PORT=5174.
- Never run commands that kill every Node process (`pkill node`, `killall node`, `taskkill /F /IM node.exe`). They would stop the host application. Only processes started in this workspace can be stopped.
- Only npm, npx, node, yarn, pnpm, git and `cd` inside the project are allowed in the terminal.
</dev_server>"""

_MOD_FLOW = """<flow>
1. When a new goal arrives, run a brief read-only discovery pass with `grep_search`, `file_search` and `read_file`, in parallel where possible.
2. For multi-step coding tasks, create a task list with `todowrite` before implementing, and update it as items complete.
3. Before each group of tool calls, write a one-line status update. If you say you are about to do something, do it in the same turn.
4. After significant code changes, run `read_lints`. Report "No linting errors found" or "N linting errors found" and fix any errors before finishing.
5. When everything is done, give a short, high-signal summary of the changes. Don't repeat the plan.
</flow>"""

_MOD_EDITING = """<making_code_changes>
- Never output code to the user unless asked; use `edit_file` or `search_replace` instead.
- In `edit_file`, write only the lines that change and mark unchanged regions with `// ... existing code ...`. A separate apply model merges the sketch into the file.
- If an `edit_file` result is wrong, call `reapply` on the same file before trying anything else.
- Add every import, dependency and endpoint the code needs so it runs immediately.
- Never guess APIs or library usage. Use `web_search` when you are unsure.
</making_code_changes>"""

_MOD_ENV = """<env>
OS: {platform}
Working directory: {working_dir}
Is directory a git repo: {is_git}
Today's date: {today}
</env>"""


def build_system_prompt(working_dir: str, reserved_ports=(3001, 5173)) -> str:
    """Compose the system instructions for one run in ``working_dir``."""
    is_git = os.path.isdir(os.path.join(working_dir, ".git"))
    reserved = " and ".join(str(p) for p in reserved_ports)
    parts = [
        _MOD_IDENTITY,
        _MOD_TOOL_NAMES,
        _MOD_DEV_SERVER.format(reserved=reserved),
        _MOD_FLOW,
        _MOD_EDITING,
        _MOD_ENV.format(
            platform=sys.platform,
            working_dir=working_dir,
            is_git="yes" if is_git else "no",
            today=date.today().isoformat(),
        ),
    ]
    return "\n\n".join(parts) + "\n"


def build_agent_config(instructions_path: str) -> Dict[str, Any]:
    """The agent CLI config: our instructions plus every built-in tool denied and disabled."""
    return {
        "$schema": CONFIG_SCHEMA_URL,
        "instructions": [instructions_path],
        "permission": {name: "deny" for name in DISABLED_BUILTIN_TOOLS},
        "tools": {name: False for name in DISABLED_BUILTIN_TOOLS},
    }


def write_config_bundle(working_dir: str, reserved_ports=(3001, 5173)) -> str:
    """Write prompt and config to a fresh temp directory; returns the config file path."""
    staging_root = os.path.join(tempfile.gettempdir(), STAGING_DIR_NAME)
    os.makedirs(staging_root, exist_ok=True)
    run_dir = tempfile.mkdtemp(prefix="run-", dir=staging_root)

    prompt_path = os.path.join(run_dir, "system-prompt.txt")
    with open(prompt_path, "w", encoding="utf-8") as f:
        f.write(build_system_prompt(working_dir, reserved_ports))

    config_path = os.path.join(run_dir, "opencode.json")
    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(build_agent_config(prompt_path), f, indent=2)
    logger.debug(f"Agent config bundle written to {run_dir}")
    return config_path
