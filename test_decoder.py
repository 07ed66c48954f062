"""Stream decoder: chunking, ordering, merging and recovery."""

import json

from agent.decoder import StreamDecoder
from agent.events import ErrorEvent, SessionEvent, TextEvent, ToolEvent


def line(obj):
    return json.dumps(obj) + "\n"


def text_part(text, session="ses_1"):
    return line({"type": "text", "sessionID": session, "part": {"type": "text", "text": text}})


def tool_part(call_id, tool, status, inp=None, output=None, session="ses_1"):
    state = {"status": status}
    if inp is not None:
        state["input"] = inp
    if output is not None:
        state["output"] = output
    return line({"type": "tool_use", "sessionID": session,
                 "part": {"type": "tool", "tool": tool, "callID": call_id, "state": state}})


STREAM = (
    text_part("Looking at the project.")
    + "Plain narrative line with café ✓\n"
    + tool_part("call_1", "run_terminal_cmd", "running", {"command": "npm install"})
    + tool_part("call_1", "run_terminal_cmd", "completed", {"is_background": False}, output="added 1 package")
    + tool_part("call_2", "read_file", "completed", {"target_file": "src/a.ts"}, output="export {}")
    + text_part("All done.")
).encode("utf-8")


def decode(chunks):
    dec = StreamDecoder()
    events = []
    for chunk in chunks:
        events.extend(dec.feed(chunk).events)
    events.extend(dec.finish().events)
    return events


def summary(events):
    narrative = "".join(e.content for e in events if isinstance(e, TextEvent))
    tools = [(e.call_id, e.pending, e.command) for e in events if isinstance(e, ToolEvent)]
    sessions = [e.session_id for e in events if isinstance(e, SessionEvent)]
    return narrative, tools, sessions


def test_whole_stream():
    narrative, tools, sessions = summary(decode([STREAM]))
    assert narrative == "Looking at the project.Plain narrative line with café ✓\nAll done."
    assert tools == [
        ("call_1", True, "npm install"),
        ("call_1", False, "npm install"),
        ("call_2", False, None),
    ]
    assert sessions == ["ses_1"]


def test_chunk_boundary_independence():
    expected = summary(decode([STREAM]))
    for cut in range(1, len(STREAM)):
        assert summary(decode([STREAM[:cut], STREAM[cut:]])) == expected, f"split at byte {cut}"


def test_byte_at_a_time():
    expected = summary(decode([STREAM]))
    assert summary(decode([STREAM[i:i + 1] for i in range(len(STREAM))])) == expected


def test_leading_terminal_setup_is_stripped():
    expected = summary(decode([STREAM]))
    assert summary(decode([b"\x1b[?25l\x1b[2J\x1b[H  \r\n" + STREAM])) == expected


def test_truncated_object_completed_later_yields_one_event():
    dec = StreamDecoder()
    first = dec.feed('{"tool":"edit_file","callID":"x", "target_file":"a.ts"')
    assert first.events == []
    second = dec.feed(', "code_edit":"const a = 1;"}\n')
    tools = [e for e in second.events if isinstance(e, ToolEvent)]
    assert len(tools) == 1
    assert tools[0].call_id == "x"
    assert tools[0].path == "a.ts"
    assert tools[0].content == "const a = 1;"
    assert dec.finish().events == []


def test_object_split_inside_string_with_braces():
    obj = text_part("a {brace} and a 'quote' }")
    dec = StreamDecoder()
    mid = obj.index("brace")
    events = dec.feed(obj[:mid]).events + dec.feed(obj[mid:]).events
    texts = [e.content for e in events if isinstance(e, TextEvent)]
    assert texts == ["a {brace} and a 'quote' }"]


def test_pending_never_follows_completion():
    events = decode([
        tool_part("r1", "read_file", "completed", {"target_file": "a.txt"}, output="hello"),
        tool_part("r1", "read_file", "pending", {"target_file": "a.txt"}),
    ])
    tools = [e for e in events if isinstance(e, ToolEvent)]
    assert [(t.call_id, t.pending) for t in tools] == [("r1", False)]


def test_completed_update_inherits_fields():
    events = decode([
        tool_part("r1", "read_file", "running", {"target_file": "a.txt", "start_line_one_indexed": 3,
                                                 "end_line_one_indexed_inclusive": 9}),
        tool_part("r1", "read_file", "completed", {"should_read_entire_file": False}, output="line"),
    ])
    done = [e for e in events if isinstance(e, ToolEvent)][-1]
    assert done.pending is False
    assert done.path == "a.txt"
    assert (done.start_line, done.end_line) == (3, 9)
    assert done.to_message()["startLine"] == 3


def test_wrapped_line_inside_object():
    raw = '{"type":"text","part":{"type":"text","text":"hello wor\nld"}}\n'
    texts = [e.content for e in decode([raw]) if isinstance(e, TextEvent)]
    assert texts == ["hello world"]


def test_control_sequence_inside_object():
    raw = '{"type":"text","part":{"type":"text","text":"hi\x1b[0m there"}}\n'
    assert [e.content for e in decode([raw])] == ["hi there"]


def test_repairs_bare_array_member():
    raw = '{"type":"text","part":{"type":"text","text":"ok"},["stray"]}\n'
    assert [e.content for e in decode([raw]) if isinstance(e, TextEvent)] == ["ok"]


def test_garbled_tail_still_yields_tool_call():
    raw = ('{"type":"tool_use","part":{"tool":"edit_file","callID":"e1","state":{"input":'
           '{"target_file":"b.ts","code_edit":"x = 1"}}} }} ]] "oops" :: }\n')
    events = decode([raw, "after\n"])
    tools = [e for e in events if isinstance(e, ToolEvent)]
    assert [t.call_id for t in tools] == ["e1"]
    assert tools[0].path == "b.ts"


def test_malformed_object_does_not_stop_the_stream():
    events = decode(["{\x00\x01}\n", text_part("still here")])
    assert [e.content for e in events if isinstance(e, TextEvent)] == ["still here"]


def test_error_event():
    raw = line({"type": "error", "error": {"name": "APIError", "data": {"message": "rate limited"}}})
    events = decode([raw])
    assert [e.message for e in events if isinstance(e, ErrorEvent)] == ["rate limited"]


def test_placeholder_raised_once():
    dec = StreamDecoder()
    assert dec.feed(b"\x1b[?25l").placeholder is True
    assert dec.feed(b"\x1b[2K").placeholder is False
    assert dec.feed(text_part("hi")).placeholder is False


def test_no_placeholder_when_first_chunk_has_content():
    dec = StreamDecoder()
    assert dec.feed(text_part("hi")).placeholder is False
    assert dec.placeholder_sent is False


def test_session_id_reported_once():
    events = decode([text_part("a"), text_part("b"), text_part("c", session="ses_2")])
    assert [e.session_id for e in events if isinstance(e, SessionEvent)] == ["ses_1", "ses_2"]


def test_partial_narrative_held_until_newline():
    dec = StreamDecoder()
    assert dec.feed("Installing depend").events == []
    events = dec.feed("encies...\nnext").events
    assert [e.content for e in events] == ["Installing dependencies...\n"]
    assert [e.content for e in dec.finish().events] == ["next"]


def test_disabled_builtin_gets_distinct_ids():
    events = decode([
        line({"type": "tool_use", "part": {"tool": "glob", "callID": "g", "state": {
            "status": "completed", "input": {"pattern": "*.ts"}, "output": "a.ts"}}}),
        line({"type": "tool_use", "part": {"tool": "glob", "callID": "g", "state": {
            "status": "completed", "input": {"pattern": "*.js"}, "output": "b.js"}}}),
    ])
    tools = [e for e in events if isinstance(e, ToolEvent)]
    assert len(tools) == 2
    assert tools[0].call_id != tools[1].call_id
    assert all(t.is_disabled_builtin for t in tools)


def test_custom_tool_without_input_is_skipped():
    events = decode([tool_part("c1", "read_file", "pending", {})])
    assert [e for e in events if isinstance(e, ToolEvent)] == []
