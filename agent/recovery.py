"""
Best-effort recovery for event objects that no repair step could parse.

Nothing here needs valid JSON: tool name, call id, target path and content
are pulled out of the raw text by direct pattern search, so an edit whose
payload broke the parser still shows up as a tool call, and narrative text
inside a broken object is not lost.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from collaborators import strip_code_fences
from tools.schemas import CUSTOM_TOOL_NAMES, DISPLAY_NAMES

from .events import TextEvent, ToolEvent

logger = logging.getLogger(__name__)

HEAD_WINDOW = 4000
EDIT_HEAD_WINDOW = 8000
MAX_RECOVERED_CONTENT = 12000

_STRING_VALUE = r'"((?:[^"\\]|\\.)*)"'
_TOOL_RE = re.compile(r'"tool"\s*:\s*"([^"]+)"')
_CALL_ID_RE = re.compile(r'"callID"\s*:\s*"([^"]+)"')
_TEXT_RE = re.compile(r'"text"\s*:\s*' + _STRING_VALUE)
_TITLE_VERB_RE = re.compile(r"^(?:write|edit)\s+", re.IGNORECASE)

_PATH_FIELDS = ("filePath", "path", "target_file", "file_path")
_EDIT_PATH_FIELDS = ("target_file", "path", "file_path")
_CONTENT_FIELDS = ("code_edit", "content", "codeEdit", "instructions")
_EDIT_TOOLS = ("edit_file", "write_file")

_UNESCAPES = {"n": "\n", "r": "\r", "t": "\t", '"': '"', "\\": "\\"}


@dataclass
class RecoveredCall:
    raw_tool: str
    call_id: Optional[str]
    path: Optional[str] = None
    content: Optional[str] = None


def _field(text: str, key: str) -> Optional[str]:
    m = re.search(r'"' + re.escape(key) + r'"\s*:\s*' + _STRING_VALUE, text)
    if not m:
        return None
    value = m.group(1).replace("\\\\", "\\").strip()
    return value or None


def _string_after_key(text: str, key: str) -> Optional[str]:
    """Unescaped string value following ``"key":``, read up to the closing quote."""
    idx = text.find(f'"{key}"')
    if idx == -1:
        return None
    i = idx + len(key) + 2
    while i < len(text) and text[i] in " \t\r\n:":
        i += 1
    if i >= len(text) or text[i] != '"':
        return None
    i += 1
    out: List[str] = []
    while i < len(text) and len(out) < MAX_RECOVERED_CONTENT:
        c = text[i]
        if c == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            out.append(_UNESCAPES.get(nxt, nxt))
            i += 2
            continue
        if c == '"':
            break
        out.append(c)
        i += 1
    return "".join(out) or None


def _diff_lines(old: str, new: str) -> str:
    removed = ["-" + line for line in re.split(r"\r?\n", old)]
    added = ["+" + line for line in re.split(r"\r?\n", new)]
    return "\n".join(removed + added)


def extract_tool_call(text: str) -> Optional[RecoveredCall]:
    """Pull a degraded tool call out of a broken ``tool_use`` line."""
    if "tool_use" not in text or '"tool":' not in text:
        return None
    head = text[:HEAD_WINDOW]
    m = _TOOL_RE.search(head)
    if not m:
        return None
    raw_tool = m.group(1).strip()
    m = _CALL_ID_RE.search(head)
    call_id = m.group(1).strip() if m else None

    path = None
    for key in _PATH_FIELDS:
        path = _field(head, key)
        if path:
            break
    if not path and '"title":' in head:
        title = _field(head, "title")
        if title:
            words = _TITLE_VERB_RE.sub("", title).split()
            path = words[0] if words else None
    if not path and raw_tool in _EDIT_TOOLS and len(text) > HEAD_WINDOW:
        # the path can land after a large payload
        long_head = text[:EDIT_HEAD_WINDOW]
        for key in _EDIT_PATH_FIELDS:
            path = _field(long_head, key)
            if path:
                break

    content = None
    for key in _CONTENT_FIELDS:
        content = _string_after_key(text, key)
        if content:
            break
    if not content:
        old = _string_after_key(text, "old_string")
        new = _string_after_key(text, "new_string")
        if old is not None and new is not None:
            content = _diff_lines(old, new)

    return RecoveredCall(raw_tool=raw_tool, call_id=call_id, path=path, content=content)


def extract_text(text: str) -> Optional[str]:
    """A bare ``"text": "..."`` value from a broken object, unescaped."""
    m = _TEXT_RE.search(text)
    if not m:
        return None
    value = re.sub(r"\\(.)", lambda e: _UNESCAPES.get(e.group(1), "\\" + e.group(1)), m.group(1))
    return value.strip() or None


def recover_events(text: str, next_index: Callable[[], int]) -> List[Union[TextEvent, ToolEvent]]:
    """Events salvaged from an unparseable object; empty when nothing is usable."""
    events: List[Union[TextEvent, ToolEvent]] = []
    call = extract_tool_call(text)
    if call is not None:
        custom = call.raw_tool in CUSTOM_TOOL_NAMES
        tool = call.raw_tool if custom else DISPLAY_NAMES.get(call.raw_tool, call.raw_tool)
        path = re.sub(r"^<path>\s*", "", call.path, flags=re.IGNORECASE).strip() if call.path else None
        is_edit = tool in ("write", "edit")
        if custom or (tool in ("read", "write", "edit") and path):
            content = call.content
            if content and (is_edit or call.raw_tool in ("edit_file", "write_file")):
                content = strip_code_fences(content)
            events.append(ToolEvent(
                call_id=call.call_id or f"recovered-{next_index()}",
                tool=tool,
                raw_tool=call.raw_tool,
                pending=custom,
                path=path,
                content=content,
                recovered=True,
            ))
            logger.info("tool_call recovered from broken JSON: %s %s", tool, path or "(no path)")
    narrative = extract_text(text)
    if narrative:
        events.append(TextEvent(content=narrative))
    return events
