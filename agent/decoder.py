"""
Incremental decoder for the agent's JSON event stream.

The agent writes one JSON object per line, but through a pseudo-terminal the
lines arrive split at arbitrary byte offsets, wrapped, and mixed with escape
sequences and plain narrative. ``StreamDecoder`` keeps the unconsumed tail
between chunks so an object split across ``feed`` calls is decoded exactly
once, and emits events strictly in the order they appear in the stream.
"""

import codecs
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from .events import AgentEvent, SessionEvent, TextEvent, ToolEvent, normalize_event
from .recovery import recover_events
from .repair import RepairError, repair_json

logger = logging.getLogger(__name__)

_CSI = r"\x1b\[[?0-9;]*[A-Za-z]"
_STREAM_START_RE = re.compile(r"^(?:\s|" + _CSI + r")+")
_CHUNK_START_RE = re.compile(r"^(?:" + _CSI + r")+")
_LINE_LEAD_RE = re.compile(r"^(?:[ \t\r]|" + _CSI + r")*")
_NARRATIVE_CONTROL_RE = re.compile(
    _CSI + r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[()][A-Za-z0-9]|\x1b[=>]|\[[0-9;]+[A-Za-z]")

Segment = Tuple[str, str]  # ("text" | "object", raw text)


@dataclass
class DecodeResult:
    events: List[AgentEvent] = field(default_factory=list)
    # True once per run, for the first chunk that produced nothing to show
    placeholder: bool = False

    @property
    def narrative(self) -> str:
        return "".join(e.content for e in self.events if isinstance(e, TextEvent))


def _span_end(text: str, start: int) -> Optional[int]:
    """Index just past the object opening at ``text[start]``, or None if unterminated.

    Braces inside single- or double-quoted strings never change the depth.
    """
    depth = 0
    quote: Optional[str] = None
    i, n = start, len(text)
    while i < n:
        c = text[i]
        if quote is not None:
            if c == "\\":
                i += 2
                continue
            if c == quote:
                quote = None
        elif c == '"' or c == "'":
            quote = c
        elif c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return None


def _after_object(buffer: str, end: int) -> int:
    """Skip trailing blanks on the object's line, and the newline that ends it."""
    m = _LINE_LEAD_RE.match(buffer, end)
    pos = m.end() if m else end
    if pos < len(buffer) and buffer[pos] == "\n":
        pos += 1
    return pos


def clean_narrative(text: str) -> str:
    return _NARRATIVE_CONTROL_RE.sub("", text).replace("\r", "")


class StreamDecoder:
    """Per-run decoder state: pending buffer, recovery counter, placeholder flag and call states."""

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.pending_buffer = ""
        self.recovery_index = 0
        self.placeholder_sent = False
        self.session_id: Optional[str] = None
        self._started = False
        self._held: Optional[str] = None
        self._calls: Dict[str, ToolEvent] = {}

    def _next_index(self) -> int:
        self.recovery_index += 1
        return self.recovery_index

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, chunk: Union[bytes, str]) -> DecodeResult:
        text = self._utf8.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not self._started:
            text = _STREAM_START_RE.sub("", text)
            self._started = bool(text)
        else:
            text = _CHUNK_START_RE.sub("", text)

        events = self._process(self.pending_buffer + text, final=False)
        result = DecodeResult(events=events)
        meaningful = any(isinstance(e, (TextEvent, ToolEvent)) for e in events)
        if not meaningful and not self.placeholder_sent:
            self.placeholder_sent = True
            result.placeholder = True
        return result

    def finish(self) -> DecodeResult:
        """Drain the buffer at end of stream: partial lines and unterminated objects included."""
        tail = self._utf8.decode(b"", final=True)
        buffer = self.pending_buffer + tail
        if not buffer.strip():
            self.pending_buffer = ""
            return DecodeResult()
        return DecodeResult(events=self._process(buffer, final=True))

    # ------------------------------------------------------------------
    # Segmentation
    # ------------------------------------------------------------------

    def _split(self, buffer: str, final: bool) -> Tuple[List[Segment], str]:
        """Cut the buffer into narrative lines and candidate objects.

        An object may only start at the beginning of a line (after blanks and
        escape sequences) or right after a previous object. Whatever cannot
        be completed yet is returned as the new pending buffer.
        """
        segments: List[Segment] = []
        pos, n = 0, len(buffer)
        while pos < n:
            nl = buffer.find("\n", pos)
            line_end = n if nl == -1 else nl
            line = buffer[pos:line_end]
            lead = _LINE_LEAD_RE.match(line).end()

            if lead < len(line) and line[lead] == "{":
                start = pos + lead
                body = line[lead:].rstrip()
                if body.endswith("}") and _span_end(body, 0) == len(body):
                    # fast path: the whole line is one object
                    segments.append(("object", body))
                    end = start + len(body)
                else:
                    end = _span_end(buffer, start)
                    if end is None:
                        if final:
                            segments.append(("object", buffer[start:]))
                            return segments, ""
                        return segments, buffer[pos:]
                    segments.append(("object", buffer[start:end]))
                pos = _after_object(buffer, end)
                continue

            if nl == -1 and not final:
                # partial line: may still turn out to be the start of an object
                return segments, buffer[pos:]
            segments.append(("text", buffer[pos:line_end + 1]))
            pos = line_end + 1
        return segments, ""

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _process(self, buffer: str, final: bool) -> List[AgentEvent]:
        segments, rest = self._split(buffer, final)
        events: List[AgentEvent] = []
        for idx, (kind, value) in enumerate(segments):
            if kind == "text":
                cleaned = clean_narrative(value)
                if not cleaned.strip():
                    continue
                if events and isinstance(events[-1], TextEvent):
                    events[-1].content += cleaned
                else:
                    events.append(TextEvent(content=cleaned))
                continue

            defer = not final and idx == len(segments) - 1 and value != self._held
            try:
                obj = repair_json(value, defer_incomplete=defer)
            except RepairError as e:
                if e.incomplete:
                    # wait for the next chunk once before giving up on it
                    self._held = value
                    rest = value + ("\n" + rest if rest else "")
                    break
                parsed = recover_events(value, self._next_index)
                if not parsed:
                    snippet = re.sub(r"\s", " ", value[:120])
                    logger.debug(f"Dropping unparseable event object ({len(value)} chars): {snippet}")
            else:
                parsed = normalize_event(obj, self._next_index)
            events.extend(self._accept(parsed))

        self.pending_buffer = rest
        return events

    def _accept(self, parsed: List[AgentEvent]) -> List[AgentEvent]:
        accepted: List[AgentEvent] = []
        for event in parsed:
            if isinstance(event, SessionEvent):
                if event.session_id == self.session_id:
                    continue
                self.session_id = event.session_id
            elif isinstance(event, ToolEvent):
                event = self._merge(event)
                if event is None:
                    continue
            accepted.append(event)
        return accepted

    def _merge(self, event: ToolEvent) -> Optional[ToolEvent]:
        """Fold a new state into what is known for its call_id; None if it must be suppressed."""
        prev = self._calls.get(event.call_id)
        if prev is not None:
            if not prev.pending and event.pending:
                logger.debug(f"Ignoring pending update for completed call {event.call_id}")
                return None
            for name in ("command", "path", "start_line", "end_line", "todos", "exit_code"):
                if getattr(event, name) is None:
                    setattr(event, name, getattr(prev, name))
            if not event.input:
                event.input = prev.input
        self._calls[event.call_id] = event
        return event
