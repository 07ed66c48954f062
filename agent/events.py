"""
Decoded agent events and the normalization from raw event objects into them.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from collaborators import strip_code_fences
from tools.schemas import (
    ALLOWED_BUILTIN_TOOLS,
    COMMAND_KEYS,
    CUSTOM_TOOL_NAMES,
    DISPLAY_NAMES,
    END_LINE_KEYS,
    PATH_KEYS,
    START_LINE_KEYS,
    pick,
)


@dataclass
class TextEvent:
    """Narrative text from the agent"""
    content: str


@dataclass
class ToolEvent:
    """One state of a tool call; later states for the same call_id merge into earlier ones"""
    call_id: str
    tool: str  # name shown to the client
    raw_tool: str
    pending: bool
    input: Dict[str, Any] = field(default_factory=dict)
    output: Optional[str] = None
    exit_code: Optional[int] = None
    path: Optional[str] = None
    command: Optional[str] = None
    content: Optional[str] = None
    failed: Optional[bool] = None
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    todos: Optional[List[Any]] = None
    recovered: bool = False

    @property
    def is_custom(self) -> bool:
        return self.raw_tool in CUSTOM_TOOL_NAMES

    @property
    def is_disabled_builtin(self) -> bool:
        return not self.is_custom and self.raw_tool not in ALLOWED_BUILTIN_TOOLS

    def to_message(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {"type": "tool_call", "callId": self.call_id, "tool": self.tool, "pending": self.pending}
        if self.path is not None:
            msg["path"] = self.path
        if self.command is not None:
            msg["command"] = self.command
        if self.content is not None:
            msg["content"] = self.content
        if self.failed is not None:
            msg["failed"] = self.failed
        if self.start_line is not None and self.end_line is not None:
            msg["startLine"] = self.start_line
            msg["endLine"] = self.end_line
        if self.todos is not None:
            msg["todos"] = self.todos
        return msg


@dataclass
class SessionEvent:
    """The agent's own session id, used to continue the conversation next run"""
    session_id: str


@dataclass
class ErrorEvent:
    message: str


AgentEvent = Union[TextEvent, ToolEvent, SessionEvent, ErrorEvent]


_ECHO_ENVELOPE_RE = re.compile(
    r"<path>[\s\S]*?</path>\s*<type>[\s\S]*?</type>\s*<content>[\s\S]*?</content>", re.IGNORECASE)
_ECHO_TAIL_RE = re.compile(r"</content>\s*read\s*", re.IGNORECASE)
_ECHO_TAG_RE = re.compile(
    r"<path>[\s\S]*?</path>|<type>[\s\S]*?</type>|<content>[\s\S]*?</content>", re.IGNORECASE)
_READ_CONTENT_RE = re.compile(r"<content>([\s\S]*?)</content>", re.IGNORECASE)
_READ_PATH_RE = re.compile(r"<path>([\s\S]*?)</path>", re.IGNORECASE)
_LINE_NUMBER_RE = re.compile(r"^\s*(\d+):", re.MULTILINE)
_PATH_PREFIX_RE = re.compile(r"^<path>\s*", re.IGNORECASE)
_TITLE_VERB_RE = re.compile(r"^(?:write|edit)\s+", re.IGNORECASE)
_CREATED_PATH_RE = re.compile(r"(?:created|wrote|written)\s+([^\s,\n]+?)(?:\s|$|,|\.)", re.IGNORECASE)
_SUCCESS_ONLY_RE = re.compile(r"success|wrote|written|done|ok|applied", re.IGNORECASE)

_EDIT_TOOLS = ("write_file", "edit_file", "search_replace")
_INPUT_CONTENT_KEYS = ("content", "contents", "code_edit", "codeEdit", "instructions")
_EXTRA_PATH_KEYS = ("targetFile", "file", "destination", "targetPath", "output_path", "outputPath", "relative_path")
# Keys of a tool part itself; anything else on a flat part is an argument
_PART_META_KEYS = frozenset({"id", "callID", "tool", "type", "state", "sessionID", "sessionId", "messageID", "time"})


def strip_read_echo(text: str) -> str:
    """Remove a read tool result the model echoed back into its narrative."""
    out = _ECHO_ENVELOPE_RE.sub("", text)
    out = _ECHO_TAIL_RE.sub("", out)
    out = _ECHO_TAG_RE.sub("", out)
    return out.strip()


def read_output_range(output: str) -> Dict[str, Any]:
    """Path and line range from a read result in ``<path>``/``<content>`` form."""
    result: Dict[str, Any] = {}
    m = _READ_PATH_RE.search(output)
    if m and m.group(1).strip():
        result["path"] = _PATH_PREFIX_RE.sub("", m.group(1)).strip()
    m = _READ_CONTENT_RE.search(output)
    if m:
        nums = [int(n) for n in _LINE_NUMBER_RE.findall(m.group(1))]
        if nums:
            result["start_line"] = min(nums)
            result["end_line"] = max(nums)
    return result


def _read_body(raw: str) -> str:
    m = _READ_CONTENT_RE.search(raw)
    return m.group(1).strip() if m else raw


def _diff_lines(old: str, new: str) -> Optional[str]:
    if not old and not new:
        return None
    removed = ["-" + line for line in re.split(r"\r?\n", old)]
    added = ["+" + line for line in re.split(r"\r?\n", new)]
    return "\n".join(removed + added)


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _find_parts(obj: Dict[str, Any]) -> List[Any]:
    props = obj.get("properties") if isinstance(obj.get("properties"), dict) else {}
    parts = obj.get("parts") or props.get("parts")
    if isinstance(parts, list) and parts:
        return parts
    single = obj.get("part") or props.get("part")
    if isinstance(single, list):
        return single
    if single is not None:
        return [single]
    # flat form: the object is itself the tool part
    return [obj] if isinstance(obj.get("tool"), str) else []


def _session_id(obj: Dict[str, Any]) -> Optional[str]:
    part = obj.get("part") if isinstance(obj.get("part"), dict) else {}
    for value in (obj.get("sessionID"), obj.get("sessionId"), part.get("sessionID"), part.get("sessionId")):
        if isinstance(value, str) and value:
            return value
    return None


def _error_message(obj: Dict[str, Any]) -> Optional[str]:
    if obj.get("type") != "error" or not obj.get("error"):
        return None
    err = obj["error"]
    if isinstance(err, str):
        return err
    if isinstance(err, dict):
        data = err.get("data") if isinstance(err.get("data"), dict) else {}
        return data.get("message") or err.get("name") or "Unknown error"
    return "Unknown error"


def _tool_path(raw_tool: str, inp: Dict[str, Any], args: Dict[str, Any]) -> Optional[str]:
    if raw_tool == "file_search":
        value = pick(inp, ("query", "path")) or pick(args, ("query", "path"))
    elif raw_tool in ("websearch", "web_search"):
        value = pick(inp, ("search_term", "query")) or pick(args, ("search_term", "query")) or inp.get("path")
    elif raw_tool == "glob":
        value = inp.get("pattern") or pick(inp, PATH_KEYS)
    else:
        value = pick(inp, PATH_KEYS + _EXTRA_PATH_KEYS) or pick(args, PATH_KEYS)
    if isinstance(value, str) and value.strip():
        return _PATH_PREFIX_RE.sub("", value).strip()
    return None


def _tool_event(part: Dict[str, Any], next_index: Callable[[], int]) -> Optional[ToolEvent]:
    state = part.get("state") if isinstance(part.get("state"), dict) else {}
    status = state.get("status")
    inp = state.get("input")
    if inp is None:
        inp = part.get("input")
    if inp is None:
        inp = part.get("args")
    if inp is None and not state:
        inp = {k: v for k, v in part.items() if k not in _PART_META_KEYS}
    inp = inp if isinstance(inp, dict) else {}
    args = inp["arguments"] if isinstance(inp.get("arguments"), dict) else inp

    output = state.get("output")
    if output is None and isinstance(state.get("metadata"), dict):
        output = state["metadata"].get("output")
    if output is not None and not isinstance(output, str):
        output = str(output)
    pending = status in ("pending", "running") and output is None

    raw_tool = part.get("tool") or "unknown"
    display = DISPLAY_NAMES.get(raw_tool, raw_tool)
    base_id = part.get("callID") or part.get("id") or f"tool-{next_index()}"
    if raw_tool in CUSTOM_TOOL_NAMES or raw_tool in ALLOWED_BUILTIN_TOOLS or display == "bash":
        call_id = base_id
    else:
        # repeated calls to a disabled built-in must stay distinct
        call_id = f"{base_id}-{next_index()}"

    is_edit = display in ("write", "edit") or raw_tool in _EDIT_TOOLS
    is_read = display == "read"
    path = _tool_path(raw_tool, inp, args)
    if not path and is_edit:
        title = state.get("title")
        if isinstance(title, str) and title.strip():
            words = _TITLE_VERB_RE.sub("", title.strip()).split()
            path = words[0] if words else None
        metadata = state.get("metadata") if isinstance(state.get("metadata"), dict) else {}
        if not path and isinstance(metadata.get("path"), str):
            path = metadata["path"].strip() or None
        if not path and output and output.strip():
            m = _CREATED_PATH_RE.search(output)
            if m:
                path = m.group(1).strip()

    command = None
    if display == "bash":
        value = pick(args, COMMAND_KEYS) or pick(inp, COMMAND_KEYS)
        command = value.strip() if isinstance(value, str) else None

    input_content = next((inp[k] for k in _INPUT_CONTENT_KEYS if isinstance(inp.get(k), str)), None)
    if input_content is None and raw_tool in ("search_replace", "edit_file") and (
            isinstance(inp.get("old_string"), str) or isinstance(inp.get("new_string"), str)):
        old, new = inp.get("old_string"), inp.get("new_string")
        input_content = _diff_lines(old if isinstance(old, str) else "", new if isinstance(new, str) else "")

    success_only = output is not None and (len(output) < 100 or bool(_SUCCESS_ONLY_RE.search(output)))
    content: Optional[str]
    if is_edit and (not output or success_only) and input_content is not None:
        content = strip_code_fences(input_content)
    elif output is None:
        content = None
    elif is_read:
        content = _read_body(output)
    elif is_edit and success_only:
        content = None
    else:
        content = strip_code_fences(output) if is_edit else output

    start_line = end_line = None
    if is_read:
        start_line = _as_int(pick(inp, START_LINE_KEYS))
        end_line = _as_int(pick(inp, END_LINE_KEYS))
        if output:
            found = read_output_range(output)
            path = path or found.get("path")
            start_line = start_line if start_line is not None else found.get("start_line")
            end_line = end_line if end_line is not None else found.get("end_line")

    exit_code = _as_int(state.get("exit_code"))
    if exit_code is None:
        exit_code = _as_int(state.get("exitCode"))
    failed: Optional[bool] = None
    if status == "error":
        failed = True
    elif display == "bash":
        if exit_code is not None:
            failed = exit_code != 0
        elif isinstance(state.get("is_error"), bool):
            failed = state["is_error"]

    todos = inp.get("todos") if raw_tool in ("todowrite", "todoread") and isinstance(inp.get("todos"), list) else None

    if (raw_tool in CUSTOM_TOOL_NAMES or raw_tool in ALLOWED_BUILTIN_TOOLS) and not inp:
        return None
    if is_edit and not path and not pending:
        return None
    if raw_tool == "list_dir" and not path:
        path = "."

    return ToolEvent(
        call_id=call_id,
        tool=raw_tool if raw_tool in CUSTOM_TOOL_NAMES else display,
        raw_tool=raw_tool,
        pending=pending,
        input=inp,
        output=output,
        exit_code=exit_code,
        path=path,
        command=command,
        content=content,
        failed=failed,
        start_line=start_line,
        end_line=end_line,
        todos=todos,
    )


def normalize_event(obj: Dict[str, Any], next_index: Callable[[], int]) -> List[AgentEvent]:
    """Turn one parsed event object into zero or more events, in part order.

    ``next_index`` hands out the per-run counter used for synthetic call ids.
    """
    events: List[AgentEvent] = []
    session_id = _session_id(obj)
    if session_id:
        events.append(SessionEvent(session_id=session_id))

    for part in _find_parts(obj):
        if not isinstance(part, dict):
            continue
        text = part.get("text")
        if isinstance(text, str) and text:
            cleaned = strip_read_echo(text)
            if cleaned:
                events.append(TextEvent(content=cleaned))
            continue
        if part.get("type") != "tool" and not part.get("tool"):
            continue
        event = _tool_event(part, next_index)
        if event is not None:
            events.append(event)

    message = _error_message(obj)
    if message:
        events.append(ErrorEvent(message=message))
    return events
