"""File operation tools: read, edit (via the apply model), search_replace, delete, reapply, notebooks."""

import asyncio
import json
import logging
import re
from typing import Any, Optional

from backend import Backend
from collaborators import CollaboratorError, strip_code_fences
from tools._common import LastEdit, ToolContext, ToolResult
from tools.schemas import (
    DeleteFileArgs, EditFileArgs, EditNotebookArgs, ReadFileArgs, ReapplyArgs, SearchReplaceArgs,
)

logger = logging.getLogger(__name__)

DEFAULT_READ_WINDOW = 250
MAX_EDIT_OUTPUT_CHARS = 120_000

_LINE_SPLIT_RE = re.compile(r"\r?\n")


def _failure(error: str) -> ToolResult:
    return ToolResult(success=False, output="", error=error)


def _cap_output(content: str) -> str:
    if len(content) <= MAX_EDIT_OUTPUT_CHARS:
        return content
    return content[:MAX_EDIT_OUTPUT_CHARS] + "\n\n... (truncated for display)"


def _read_or_empty(b: Backend, path: str) -> str:
    """Current file content, or "" for a file that does not exist yet."""
    try:
        return b.read_file(path)
    except FileNotFoundError:
        return ""


async def read_file(args: ReadFileArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    """Read a file, optionally a 1-based inclusive line window."""
    b = ctx.backend(workspace_id)
    try:
        content = await asyncio.to_thread(b.read_file, args.target_file)
    except FileNotFoundError:
        return _failure(f"File not found: {args.target_file}")
    except IsADirectoryError:
        return _failure(f"Not a file: {args.target_file}")
    except (OSError, ValueError) as e:
        return _failure(str(e))

    lines = _LINE_SPLIT_RE.split(content)
    if args.read_entire or (args.start_line is None and args.end_line is None):
        return ToolResult(success=True, output=content, start_line=1, end_line=len(lines))

    start = max(1, args.start_line or 1)
    if args.end_line is not None:
        end = min(args.end_line, len(lines))
    else:
        end = min(start + DEFAULT_READ_WINDOW - 1, len(lines))
    if start > len(lines):
        return _failure(f"start_line {start} is past the end of {args.target_file} ({len(lines)} lines)")
    if end < start:
        return _failure(f"end_line {end} is before start_line {start}")
    return ToolResult(success=True, output="\n".join(lines[start - 1:end]), start_line=start, end_line=end)


async def edit_file(args: EditFileArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    """Apply an edit sketch through the apply model and write the full result."""
    if ctx.synthesis is None:
        return _failure("No apply model configured for edit_file.")
    b = ctx.backend(workspace_id)
    sketch = strip_code_fences(args.code_edit)
    try:
        current = await asyncio.to_thread(_read_or_empty, b, args.target_file)
        applied = await asyncio.to_thread(
            ctx.synthesis.apply_edit, current, args.target_file, args.instructions, sketch)
        new_content = strip_code_fences(applied)
        await asyncio.to_thread(b.write_file, args.target_file, new_content)
    except (OSError, ValueError, CollaboratorError) as e:
        return _failure(str(e))

    ctx.last_edits.set(workspace_id, LastEdit(
        target_file=args.target_file, instructions=args.instructions, edit_sketch=sketch))
    logger.info("edit_file applied to %s in %s", args.target_file, workspace_id)
    return ToolResult(success=True, output=_cap_output(new_content))


async def search_replace(args: SearchReplaceArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    """Replace the first exact occurrence of old_string."""
    b = ctx.backend(workspace_id)
    try:
        content = await asyncio.to_thread(b.read_file, args.file_path)
        idx = content.find(args.old_string)
        if idx == -1:
            return _failure("old_string not found in file")
        updated = content[:idx] + args.new_string + content[idx + len(args.old_string):]
        await asyncio.to_thread(b.write_file, args.file_path, updated)
    except FileNotFoundError:
        return _failure(f"File not found: {args.file_path}")
    except (OSError, ValueError) as e:
        return _failure(str(e))
    return ToolResult(success=True, output=_cap_output(updated))


async def delete_file(args: DeleteFileArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    b = ctx.backend(workspace_id)
    try:
        await asyncio.to_thread(b.remove_path, args.path)
    except FileNotFoundError:
        return _failure(f"File not found: {args.path}")
    except (OSError, ValueError) as e:
        return _failure(str(e))
    return ToolResult(success=True, output="Deleted.")


async def reapply(args: ReapplyArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    """Re-run the workspace's last edit through the stronger model against the current file."""
    last: Optional[LastEdit] = ctx.last_edits.get(workspace_id)
    if last is None:
        return _failure(
            "No previous edit_file to reapply. Use edit_file first, then reapply if the result was wrong.")
    if ctx.synthesis is None:
        return _failure("No apply model configured for reapply.")
    b = ctx.backend(workspace_id)
    try:
        current = await asyncio.to_thread(_read_or_empty, b, args.target_file)
        result = await asyncio.to_thread(
            ctx.synthesis.reapply_edit, current, args.target_file, last.instructions, last.edit_sketch)
        await asyncio.to_thread(b.write_file, args.target_file, strip_code_fences(result))
    except (OSError, ValueError, CollaboratorError) as e:
        return _failure(str(e))
    return ToolResult(success=True, output="Reapply completed. The smarter model has applied the edit.")


def _notebook_edit(raw: str, args: EditNotebookArgs) -> str:
    nb = json.loads(raw) if raw.strip() else {"cells": [], "metadata": {}, "nbformat": 4, "nbformat_minor": 5}
    cells = nb.setdefault("cells", [])
    if args.is_new_cell:
        cell_type = "markdown" if args.cell_language in ("markdown", "raw") else "code"
        cell = {"cell_type": cell_type, "metadata": {}, "source": args.new_string.splitlines(keepends=True)}
        if cell_type == "code":
            cell.update({"execution_count": None, "outputs": []})
        cells.insert(min(args.cell_idx, len(cells)), cell)
    else:
        if args.cell_idx >= len(cells):
            raise IndexError(f"No cell at index {args.cell_idx}")
        cell = cells[args.cell_idx]
        source = cell.get("source", "")
        src = "".join(source) if isinstance(source, list) else str(source)
        idx = src.find(args.old_string)
        if idx == -1:
            raise KeyError("old_string not found in cell")
        updated = src[:idx] + args.new_string + src[idx + len(args.old_string):]
        cell["source"] = updated.splitlines(keepends=True)
    return json.dumps(nb, indent=1)


async def edit_notebook(args: EditNotebookArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    b = ctx.backend(workspace_id)
    try:
        raw = await asyncio.to_thread(_read_or_empty, b, args.target_notebook)
        updated = _notebook_edit(raw, args)
        await asyncio.to_thread(b.write_file, args.target_notebook, updated)
    except json.JSONDecodeError:
        return _failure("Invalid notebook JSON")
    except (IndexError, KeyError) as e:
        return _failure(e.args[0] if e.args else str(e))
    except (OSError, ValueError) as e:
        return _failure(str(e))
    return ToolResult(success=True, output="Notebook cell updated.")
