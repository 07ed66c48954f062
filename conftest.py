import dataclasses
import os
import stat

import pytest

from collaborators import TextSynthesis
from config import app_config


class FakeSynthesis(TextSynthesis):
    """Deterministic stand-in for the apply/summarize models."""

    def __init__(self, summary="The user is building a todo app."):
        self.summary = summary
        self.calls = []

    def apply_edit(self, current_content, target_file, instructions, edit_sketch):
        self.calls.append(("apply", target_file, instructions, edit_sketch))
        return f"```ts\n{current_content}{edit_sketch}\n```"

    def reapply_edit(self, current_content, target_file, instructions, edit_sketch):
        self.calls.append(("reapply", target_file, instructions, edit_sketch))
        return f"// reapplied\n{edit_sketch}"

    def summarize(self, messages):
        self.calls.append(("summarize", len(messages)))
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary


@pytest.fixture
def fake_synthesis():
    return FakeSynthesis()


@pytest.fixture
def settings(tmp_path):
    root = tmp_path / "workspaces"
    root.mkdir()
    return dataclasses.replace(
        app_config,
        workspace_root=str(root),
        use_pty=False,
        dev_server_grace=0.5,
        command_timeout=30.0,
        preview_probe_timeout=0.5,
    )


@pytest.fixture
def workspace(settings):
    path = os.path.join(settings.workspace_root, "ws1")
    os.makedirs(path)
    return path


@pytest.fixture
def make_agent(tmp_path):
    """Write an executable /bin/sh script standing in for the agent CLI."""

    def _make(body, name="fake-agent"):
        script = tmp_path / name
        script.write_text("#!/bin/sh\n" + body)
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(script)

    return _make
