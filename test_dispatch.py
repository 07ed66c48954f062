"""Tool dispatch against a real workspace directory."""

import asyncio
import json
import os
import shutil
import time

import pytest

from tools import ToolCall, ToolContext, ToolHooks, execute_batch, execute_tool
from tools.external_ops import (
    DEV_SERVER_PLACEHOLDER, KILL_ALL_ERROR, KILL_GRACE, NOT_ALLOWED_ERROR, TIMEOUT_EXIT_CODE, TIMEOUT_NOTICE,
    parse_lint_error_count, run_shell,
)


@pytest.fixture
def ctx(settings, fake_synthesis, workspace):
    return ToolContext(settings=settings, synthesis=fake_synthesis)


def write(workspace, rel, content):
    path = os.path.join(workspace, rel)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(content)


def read(workspace, rel):
    with open(os.path.join(workspace, rel)) as f:
        return f.read()


def run(ctx, name, args=None, call_id="c1", hooks=None):
    return asyncio.run(execute_tool("ws1", ToolCall(call_id=call_id, raw_name=name, arguments=args or {}), ctx, hooks))


def test_read_file_whole_and_range(ctx, workspace):
    write(workspace, "a.txt", "l1\nl2\nl3\nl4\n")
    res = run(ctx, "read_file", {"target_file": "a.txt"})
    assert res.success
    assert res.output == "l1\nl2\nl3\nl4\n"
    assert res.start_line == 1

    res = run(ctx, "read", {"path": "a.txt", "startLine": 2, "endLine": 3})
    assert res.output == "l2\nl3"
    assert (res.start_line, res.end_line) == (2, 3)

    res = run(ctx, "read_file", {"target_file": "a.txt", "start_line_one_indexed": 3})
    assert res.output.startswith("l3\nl4")
    assert res.start_line == 3


def test_read_file_range_outside_file(ctx, workspace):
    write(workspace, "a.txt", "l1\nl2\n")
    res = run(ctx, "read_file", {"target_file": "a.txt", "start_line_one_indexed": 10})
    assert not res.success
    assert res.error == "start_line 10 is past the end of a.txt (3 lines)"
    res = run(ctx, "read_file", {"target_file": "a.txt", "startLine": 2, "endLine": 1})
    assert res.error == "end_line 1 is before start_line 2"


def test_read_file_errors(ctx, workspace):
    assert run(ctx, "read_file", {}).error == "Missing target_file"
    assert run(ctx, "read_file", {"target_file": "nope.txt"}).error == "File not found: nope.txt"
    res = run(ctx, "read_file", {"target_file": "../../etc/passwd"})
    assert not res.success
    assert "escapes" in res.error
    assert "escapes" in run(ctx, "read_file", {"target_file": "/etc/passwd"}).error


def test_unknown_tool(ctx):
    res = run(ctx, "frobnicate", {"x": 1})
    assert not res.success
    assert res.error == "Tool not implemented: frobnicate"
    assert res.to_dict() == {"success": False, "error": "Tool not implemented: frobnicate", "output": ""}


def test_invalid_workspace_id(ctx):
    call = ToolCall(call_id="c1", raw_name="read_file", arguments={"target_file": "a.txt"})
    res = asyncio.run(execute_tool("../ws1", call, ctx))
    assert not res.success


def test_search_replace(ctx, workspace):
    write(workspace, "src/a.ts", "const a = 1;\nconst b = 1;\n")
    res = run(ctx, "search_replace", {"file_path": "src/a.ts", "old_string": "= 1", "new_string": "= 2"})
    assert res.success
    assert read(workspace, "src/a.ts") == "const a = 2;\nconst b = 1;\n"

    res = run(ctx, "search_replace", {"file_path": "src/a.ts", "old_string": "missing", "new_string": "x"})
    assert res.error == "old_string not found in file"
    assert run(ctx, "search_replace", {"file_path": "src/a.ts", "old_string": "x"}).error == "Missing new_string"


def test_delete_file(ctx, workspace):
    write(workspace, "old.txt", "bye")
    assert run(ctx, "delete_file", {"path": "old.txt"}).success
    assert not os.path.exists(os.path.join(workspace, "old.txt"))
    assert run(ctx, "delete_file", {"path": "old.txt"}).error == "File not found: old.txt"
    assert not run(ctx, "delete_file", {"path": "."}).success
    assert os.path.isdir(workspace)


def test_list_dir(ctx, workspace):
    write(workspace, "a.txt", "")
    write(workspace, "src/b.ts", "")
    write(workspace, "opencode.json", "{}")
    res = run(ctx, "list_dir", {})
    assert res.output.splitlines() == ["d src", "f a.txt"]
    assert run(ctx, "list", {"path": "src"}).output == "f src/b.ts"
    assert run(ctx, "list_dir", {"relative_workspace_path": "missing"}).error == "Directory not found: missing"


def test_grep_search(ctx, workspace):
    write(workspace, "src/a.ts", "export const Foo = 1\n")
    write(workspace, "b.txt", "foo bar\n")
    write(workspace, "node_modules/x/index.js", "foo\n")
    res = run(ctx, "grep_search", {"query": "foo"})
    assert sorted(res.output.splitlines()) == ["b.txt:1:foo bar", "src/a.ts:1:export const Foo = 1"]

    res = run(ctx, "grep", {"pattern": "foo", "include_pattern": "*.ts"})
    assert res.output == "src/a.ts:1:export const Foo = 1"

    res = run(ctx, "grep_search", {"query": "foo", "case_sensitive": True})
    assert res.output == "b.txt:1:foo bar"

    assert run(ctx, "grep_search", {"query": "nothing-like-this"}).output == "No matches"
    assert run(ctx, "grep_search", {"query": "("}).error.startswith("Invalid regex")


def test_file_search_respects_gitignore(ctx, workspace):
    write(workspace, ".gitignore", "dist/\n")
    write(workspace, "src/App.tsx", "")
    write(workspace, "dist/app.js", "")
    res = run(ctx, "file_search", {"query": "APP"})
    assert res.output == "src/App.tsx"


def test_codebase_search_keyword_fallback(ctx, workspace):
    write(workspace, "src/a.ts", "function addTodo() {}\n")
    write(workspace, "lib/b.ts", "addTodo()\n")
    res = run(ctx, "codebase_search", {"query": "addtodo", "target_directories": ["src/"]})
    assert res.output == "src/a.ts:1: function addTodo() {}"
    res = run(ctx, "codebase_search", {"query": "zzz"})
    assert res.output == 'No keyword matches for "zzz" in codebase.'


def test_edit_file_and_reapply(ctx, workspace, fake_synthesis):
    res = run(ctx, "edit_file", {
        "target_file": "src/new.ts",
        "instructions": "add x",
        "code_edit": "```ts\nconst x = 1;\n```",
    })
    assert res.success
    assert read(workspace, "src/new.ts") == "const x = 1;"
    assert fake_synthesis.calls[-1] == ("apply", "src/new.ts", "add x", "const x = 1;")

    res = run(ctx, "reapply", {"target_file": "src/new.ts"})
    assert res.success
    assert read(workspace, "src/new.ts") == "// reapplied\nconst x = 1;"
    assert fake_synthesis.calls[-1] == ("reapply", "src/new.ts", "add x", "const x = 1;")


def test_write_alias_maps_to_edit_file(ctx, workspace):
    res = run(ctx, "write", {"filePath": "b.ts", "content": "let y = 2;"})
    assert res.success
    assert read(workspace, "b.ts") == "let y = 2;"


def test_reapply_without_previous_edit(ctx):
    res = run(ctx, "reapply", {"target_file": "a.ts"})
    assert not res.success
    assert res.error.startswith("No previous edit_file to reapply")


def test_edit_notebook(ctx, workspace):
    res = run(ctx, "edit_notebook", {
        "target_notebook": "nb.ipynb", "cell_idx": 0, "is_new_cell": True,
        "cell_language": "python", "old_string": "", "new_string": "print(1)\n",
    })
    assert res.success
    res = run(ctx, "edit_notebook", {
        "target_notebook": "nb.ipynb", "cell_idx": 0, "is_new_cell": False,
        "old_string": "1", "new_string": "2",
    })
    assert res.success
    nb = json.loads(read(workspace, "nb.ipynb"))
    assert nb["cells"][0]["source"] == ["print(2)\n"]
    assert run(ctx, "edit_notebook", {"target_notebook": "nb.ipynb", "cell_idx": 5,
                                      "old_string": "a", "new_string": "b"}).error == "No cell at index 5"


def test_todos(ctx):
    todos = [{"id": "1", "content": "Set up project", "status": "pending"}]
    res = run(ctx, "todowrite", {"todos": todos})
    assert res.success
    assert res.payload == {"todos": todos}

    res = run(ctx, "todowrite", {"todos": [{"id": "1", "status": "completed"}], "merge": True})
    assert not res.success

    res = run(ctx, "todowrite", {"todos": [{"id": "1", "content": "Set up project", "status": "completed"}],
                                 "merge": True})
    assert res.payload["todos"][0]["status"] == "completed"

    res = run(ctx, "todoread")
    assert json.loads(res.output)[0]["status"] == "completed"


def test_create_diagram(ctx):
    res = run(ctx, "create_diagram", {"content": "  graph TD; A-->B  "})
    assert res.output == "graph TD; A-->B"
    assert res.payload == {"mermaid": "graph TD; A-->B"}


def test_parse_lint_error_count():
    assert parse_lint_error_count("✖ 3 problems (2 errors, 1 warning)") == 2
    assert parse_lint_error_count("Found 4 errors in 2 files.") == 4
    assert parse_lint_error_count("All files pass linting.") == 0
    assert parse_lint_error_count("") == 0


def test_blocked_commands(ctx):
    assert run(ctx, "run_terminal_cmd", {"command": "pkill node"}).error == KILL_ALL_ERROR
    assert run(ctx, "bash", {"command": "rm -rf /"}).error == NOT_ALLOWED_ERROR
    assert not run(ctx, "run_terminal_cmd", {"command": "git status && cd ../../etc"}).success
    assert run(ctx, "run_terminal_cmd", {}).error == "Missing command"


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_allowed_command_runs_in_workspace(ctx):
    streamed = []
    ended = []
    hooks = ToolHooks(on_stream=lambda cid, chunk: streamed.append(chunk),
                      on_stream_end=lambda cid, code: ended.append((cid, code)))
    res = run(ctx, "run_terminal_cmd", {"command": "git --version"}, call_id="g1", hooks=hooks)
    assert res.success
    assert res.exit_code == 0
    assert res.output.startswith("git version")
    assert "".join(streamed) == res.output
    assert ended == [("g1", 0)]


def test_run_shell_exit_codes(ctx, workspace):
    async def go():
        ok = await run_shell("echo hi", workspace, call_id="e1", ctx=ctx, workspace_id="ws1")
        bad = await run_shell("echo oops; exit 3", workspace, call_id="e2", ctx=ctx, workspace_id="ws1")
        return ok, bad

    ok, bad = asyncio.run(go())
    assert (ok.success, ok.output, ok.exit_code) == (True, "hi\n", 0)
    assert (bad.success, bad.exit_code) == (False, 3)
    assert bad.error == "Command exited with code 3"
    assert bad.output == "oops\n"


def test_run_shell_timeout(ctx, workspace):
    ended = []
    hooks = ToolHooks(on_stream_end=lambda cid, code: ended.append(code))
    res = asyncio.run(run_shell("sleep 10", workspace, call_id="t1", ctx=ctx, workspace_id="ws1",
                                hooks=hooks, timeout=0.3))
    assert not res.success
    assert res.exit_code == TIMEOUT_EXIT_CODE
    assert TIMEOUT_NOTICE in res.output
    assert ended == [TIMEOUT_EXIT_CODE]


def test_run_shell_timeout_settles_when_child_ignores_term(ctx, workspace):
    async def go():
        started = time.monotonic()
        res = await run_shell("trap '' TERM; sleep 6", workspace, call_id="t2", ctx=ctx,
                              workspace_id="ws1", timeout=0.3)
        elapsed = time.monotonic() - started
        # The SIGKILL escalation ends the reader once the group is gone.
        await asyncio.wait_for(asyncio.gather(*list(ctx.background)), KILL_GRACE + 3)
        return res, elapsed

    res, elapsed = asyncio.run(go())
    assert elapsed < 2
    assert res.exit_code == TIMEOUT_EXIT_CODE
    assert res.error == "Command timed out after 0.3s"
    assert not ctx.background


def test_run_shell_kill_from_spawn_hook(ctx, workspace):
    async def go():
        kills = {}
        hooks = ToolHooks(on_spawn=lambda cid, kill: kills.setdefault(cid, kill))
        task = asyncio.create_task(run_shell("sleep 10", workspace, call_id="k1", ctx=ctx,
                                             workspace_id="ws1", hooks=hooks, timeout=30))
        while "k1" not in kills:
            await asyncio.sleep(0.01)
        kills["k1"]()
        return await asyncio.wait_for(task, 5)

    res = asyncio.run(go())
    assert res.exit_code == 130
    assert not res.success


def test_dev_server_settles_after_grace(ctx, workspace):
    async def go():
        res = await asyncio.wait_for(
            run_shell("sleep 10", workspace, call_id="d1", ctx=ctx, workspace_id="ws1", dev_server=True),
            5,
        )
        registered = ctx.dev_servers.get("ws1") is not None
        killed = ctx.dev_servers.kill_existing("ws1")
        await asyncio.wait_for(asyncio.gather(*list(ctx.background)), 5)
        return res, registered, killed

    res, registered, killed = asyncio.run(go())
    assert res.success
    assert res.output == DEV_SERVER_PLACEHOLDER
    assert registered and killed
    assert ctx.dev_servers.get("ws1") is None


def test_batch_results_are_independent(ctx, workspace):
    write(workspace, "a.txt", "hello")
    calls = [
        ToolCall(call_id="1", raw_name="read_file", arguments={"target_file": "a.txt"}),
        ToolCall(call_id="2", raw_name="read_file", arguments={"target_file": "missing.txt"}),
        ToolCall(call_id="3", raw_name="mystery_tool"),
        ToolCall(call_id="4", raw_name="list_dir"),
    ]
    outcomes = asyncio.run(execute_batch("ws1", calls, ctx))
    assert [o.call.call_id for o in outcomes] == ["1", "2", "3", "4"]
    assert [o.result.success for o in outcomes] == [True, False, False, True]
    assert outcomes[0].result.output == "hello"


def test_echo_and_false_through_sandbox(ctx):
    res = run(ctx, "run_terminal_cmd", {"command": "echo hi"})
    assert (res.success, res.output, res.exit_code) == (True, "hi\n", 0)
    res = run(ctx, "bash", {"cmd": "false"})
    assert (res.success, res.exit_code) == (False, 1)


def test_multiline_command_rejected_before_running(ctx, workspace):
    res = run(ctx, "run_terminal_cmd", {"command": "echo hi\ntouch pwned"})
    assert not res.success
    assert res.error == NOT_ALLOWED_ERROR
    assert not os.path.exists(os.path.join(workspace, "pwned"))
