"""
JSON repair chain for agent event lines that arrive through a terminal.

A pseudo-terminal wraps long lines, injects cursor/erase sequences, and the
upstream agent itself occasionally emits objects with a bare array member or
two string literals with no separator. Everything in this module is a
compatibility shim pinned to that observed output; if the upstream format
stabilizes, ``repair_json`` can collapse to a plain ``json.loads``.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

import json_repair

logger = logging.getLogger(__name__)


class RepairError(ValueError):
    """A candidate object could not be parsed by any step of the chain.

    ``incomplete`` is set when the strict parser ran off the end of the text,
    which means the object most likely continues in a later chunk.
    """

    def __init__(self, message: str, incomplete: bool = False):
        super().__init__(message)
        self.incomplete = incomplete


_ESC_SEQUENCE_RE = re.compile(
    r"\x1b\[[?0-9;]*[A-Za-z]"          # CSI: cursor, erase, mode switches
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC: window title etc.
    r"|\x1b[()][A-Za-z0-9]"
    r"|\x1b[=>]"
)
_WRAPPED_WORD_RE = re.compile(r"(?<=[A-Za-z0-9_])\n(?=[A-Za-z0-9_])")
_WRAPPED_QUOTE_RE = re.compile(r'"[ \t]*\n\s*([:,}\]])')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f\u2028\u2029]")


def strip_control_sequences(text: str) -> str:
    """Remove terminal escape sequences and undo line wrapping inside JSON.

    Raw newlines never appear inside well-formed JSON strings, so a newline
    between two word characters, or between a closing quote and the next
    delimiter, was injected by the terminal and is dropped.
    """
    out = text.replace("\r\n", "\n").replace("\r", "")
    out = _ESC_SEQUENCE_RE.sub("", out)
    out = _WRAPPED_WORD_RE.sub("", out)
    out = _WRAPPED_QUOTE_RE.sub(r'"\1', out)
    return out.lstrip("\ufeff")


def _skip_ws(s: str, i: int) -> int:
    while i < len(s) and s[i].isspace():
        i += 1
    return i


def _string_end(s: str, i: int) -> int:
    """Index just past the string literal opening at ``s[i]`` (or len(s))."""
    quote = s[i]
    i += 1
    while i < len(s):
        if s[i] == "\\":
            i += 2
            continue
        if s[i] == quote:
            return i + 1
        i += 1
    return len(s)


def fix_shape(s: str) -> str:
    """Repair the structural defects seen in upstream output.

    - an array appearing as an object member with no key gets a synthetic
      ``"_"`` key;
    - two adjacent string literals get a comma between them when the second
      one is a key (or they sit in an array), and are joined otherwise,
      since that case is a single value broken by line wrapping.
    """
    out: List[str] = []
    stack: List[str] = []
    quote: Optional[str] = None
    i, n = 0, len(s)
    while i < n:
        c = s[i]
        if quote is not None:
            if c == "\\" and i + 1 < n:
                out.append(s[i:i + 2])
                i += 2
                continue
            out.append(c)
            i += 1
            if c != quote:
                continue
            quote = None
            j = _skip_ws(s, i)
            if j >= n:
                continue
            in_object = bool(stack) and stack[-1] == "{"
            if in_object and s[j] == "[":
                out.append(', "_": ')
                i = j
            elif s[j] in "\"'":
                after = _skip_ws(s, _string_end(s, j))
                is_key = after < n and s[after] == ":"
                if is_key or not in_object or s[j] != c:
                    out.append(", ")
                    i = j
                else:
                    # One value split in two: drop the closing and opening quotes
                    out.pop()
                    quote = c
                    i = j + 1
            continue

        if c in "\"'":
            quote = c
        elif c == "{" or (c == "," and stack and stack[-1] == "{"):
            if c == "{":
                stack.append(c)
            j = _skip_ws(s, i + 1)
            if j < n and s[j] == "[":
                out.append(s[i:j] + '"_": ')
                i = j
                continue
        elif c == "[":
            stack.append(c)
        elif c in "}]":
            if stack:
                stack.pop()
        out.append(c)
        i += 1
    return "".join(out)


def _escape_control(c: str) -> str:
    if c == "\n":
        return "\\n"
    if c == "\r":
        return "\\r"
    if c == "\t":
        return "\\t"
    return " "


def sanitize(s: str) -> str:
    """Last-resort cleanup before a final repair pass.

    Converts single-quoted strings to double-quoted, escapes raw control
    bytes inside strings, doubles invalid escapes, blanks stray backslashes
    and control bytes outside strings, drops trailing commas and inserts the
    comma missing between adjacent strings.
    """
    out: List[str] = []
    quote: Optional[str] = None
    i, n = 0, len(s)
    while i < n:
        c = s[i]
        if quote is not None:
            if c == "\\":
                if i + 1 >= n:
                    out.append("\\\\")
                    i += 1
                    continue
                nxt = s[i + 1]
                if nxt == "u" and re.fullmatch(r"[0-9a-fA-F]{4}", s[i + 2:i + 6]):
                    out.append(s[i:i + 6])
                    i += 6
                    continue
                if nxt == "'" and quote == "'":
                    out.append("'")
                elif nxt in "\"\\/bfnrt":
                    out.append(c + nxt)
                elif ord(nxt) < 32:
                    out.append(_escape_control(nxt))
                else:
                    out.append("\\\\" + nxt)
                i += 2
                continue
            if c == quote:
                quote = None
                out.append('"')
            elif c == '"':
                out.append('\\"')
            elif ord(c) < 32:
                out.append(_escape_control(c))
            else:
                out.append(c)
            i += 1
            continue

        if c in "\"'":
            quote = c
            out.append('"')
        elif c == "\\" or ord(c) < 32:
            out.append(" ")
        else:
            out.append(c)
        i += 1

    result = _TRAILING_COMMA_RE.sub(r"\1", "".join(out))
    result = _insert_missing_commas(result)
    return _CONTROL_RE.sub(" ", result)


def _insert_missing_commas(s: str) -> str:
    out: List[str] = []
    in_string = False
    i, n = 0, len(s)
    while i < n:
        c = s[i]
        if in_string:
            out.append(c)
            if c == "\\" and i + 1 < n:
                out.append(s[i + 1])
                i += 2
                continue
            if c == '"':
                in_string = False
                j = _skip_ws(s, i + 1)
                if j < n and s[j] == '"':
                    out.append(",")
            i += 1
            continue
        if c == '"':
            in_string = True
        out.append(c)
        i += 1
    return "".join(out)


def _is_truncation(err: json.JSONDecodeError) -> bool:
    if err.msg.startswith("Unterminated string"):
        return True
    return err.pos >= len(err.doc.rstrip())


def _tolerant(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json_repair.loads(text)
    except (ValueError, TypeError, RecursionError) as e:
        logger.debug(f"json_repair failed: {e}")
        return None
    if isinstance(value, dict) and value:
        return value
    return None


def _strict(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def repair_json(candidate: str, defer_incomplete: bool = False) -> Dict[str, Any]:
    """Parse one candidate object, trying each repair step in turn.

    With ``defer_incomplete``, a strict-parse failure at end of input raises
    ``RepairError(incomplete=True)`` straight away instead of letting the
    tolerant parser guess at the missing tail.
    """
    cleaned = strip_control_sequences(candidate).strip()
    try:
        value = json.loads(cleaned)
        if isinstance(value, dict):
            return value
    except json.JSONDecodeError as e:
        if defer_incomplete and _is_truncation(e):
            raise RepairError(f"Incomplete object: {e.msg}", incomplete=True)

    shaped = fix_shape(cleaned)
    value = _strict(shaped)
    if value is not None:
        return value
    value = _tolerant(shaped)
    if value is not None:
        return value

    sanitized = sanitize(shaped)
    value = _strict(sanitized)
    if value is not None:
        return value
    value = _tolerant(sanitized)
    if value is not None:
        return value
    raise RepairError(f"Could not parse object ({len(candidate)} chars)")
