"""JSON repair chain and pattern recovery for terminal-mangled event lines."""

import pytest

from agent.recovery import extract_text, extract_tool_call, recover_events
from agent.repair import RepairError, fix_shape, repair_json, sanitize, strip_control_sequences


def counter():
    n = [0]

    def next_index():
        n[0] += 1
        return n[0]

    return next_index


def test_strict_json_passes_through():
    assert repair_json('{"type": "text", "n": 1}') == {"type": "text", "n": 1}


def test_escape_sequences_removed():
    raw = '\x1b[2K\x1b[1G{"type":"text","part":{"text":"hi\x1b[0m there"}}'
    assert repair_json(raw)["part"]["text"] == "hi there"


def test_wrapped_line_inside_word():
    assert strip_control_sequences('{"type":"te\r\nxt"}') == '{"type":"text"}'
    assert repair_json('{"tool":"read_fi\nle","n":12\n34}') == {"tool": "read_file", "n": 1234}


def test_wrapped_line_before_delimiter():
    assert repair_json('{"a":"b"\n,"c":1}') == {"a": "b", "c": 1}


def test_bare_array_gets_synthetic_key():
    assert fix_shape('{"type":"x",["a","b"]}') == '{"type":"x","_": ["a","b"]}'
    assert repair_json('{"type":"x",["a","b"]}') == {"type": "x", "_": ["a", "b"]}
    assert repair_json('{"type":"x" ["a"]}') == {"type": "x", "_": ["a"]}


def test_adjacent_strings_before_key_get_comma():
    assert repair_json('{"a":"1" "b":"2"}') == {"a": "1", "b": "2"}


def test_adjacent_strings_in_value_are_joined():
    assert repair_json('{"a":"hel" "lo"}') == {"a": "hello"}


def test_adjacent_strings_in_array_get_comma():
    assert repair_json('{"a":["x" "y"]}') == {"a": ["x", "y"]}


def test_single_quotes_and_control_bytes():
    assert repair_json("{'a': 'b'}") == {"a": "b"}
    assert repair_json('{"a":"x\ty"}') == {"a": "x\ty"}
    assert sanitize("{'a': 'it\\'s'}") == '{"a": "it\'s"}'


def test_trailing_comma():
    assert repair_json('{"a":1,}') == {"a": 1}
    assert sanitize('{"a":[1,2,],}') == '{"a":[1,2]}'


def test_incomplete_object_is_deferred():
    with pytest.raises(RepairError) as exc:
        repair_json('{"tool":"edit_file","code_edit":"const a', defer_incomplete=True)
    assert exc.value.incomplete


def test_unparseable_text_raises():
    with pytest.raises(RepairError) as exc:
        repair_json("not json at all")
    assert not exc.value.incomplete


def test_extract_tool_call_from_broken_line():
    raw = ('{"type":"tool_use","part":{"tool":"edit_file","callID":"c9",'
           '"state":{"input":{"target_file":"src/a.ts","code_edit":"line1\\nline2"}}'
           ' @@ garbage')
    call = extract_tool_call(raw)
    assert call.raw_tool == "edit_file"
    assert call.call_id == "c9"
    assert call.path == "src/a.ts"
    assert call.content == "line1\nline2"


def test_extract_tool_call_old_new_strings():
    raw = ('{"type":"tool_use","tool":"search_replace","file_path":"a.js",'
           '"old_string":"let a","new_string":"const a" ###')
    call = extract_tool_call(raw)
    assert call.path == "a.js"
    assert call.content == "-let a\n+const a"


def test_extract_tool_call_needs_tool_use():
    assert extract_tool_call('{"tool":"edit_file"}') is None


def test_extract_text():
    assert extract_text('{"type":"text","text": "Hello \\"world\\"\\nbye" ,,,') == 'Hello "world"\nbye'
    assert extract_text('{"type":"text"}') is None


def test_recover_events_custom_tool_is_pending():
    raw = '{"type":"tool_use","part":{"tool":"edit_file","callID":"c9","target_file":"a.ts","code_edit":"x = 1"'
    events = recover_events(raw, counter())
    assert len(events) == 1
    ev = events[0]
    assert ev.call_id == "c9"
    assert ev.tool == "edit_file"
    assert ev.pending is True
    assert ev.recovered is True
    assert ev.path == "a.ts"
    assert ev.content == "x = 1"


def test_recover_events_builtin_needs_path():
    next_index = counter()
    assert recover_events('{"type":"tool_use","tool":"bash","command":"ls"', next_index) == []
    events = recover_events('{"type":"tool_use","tool":"write","filePath":"b.ts","content":"y"', next_index)
    assert events[0].tool == "write"
    assert events[0].pending is False
    assert events[0].call_id == "recovered-1"


def test_recover_events_keeps_narrative():
    events = recover_events('{"type":"text","part":{"text":"Done with the edits."', counter())
    assert [e.content for e in events] == ["Done with the edits."]
