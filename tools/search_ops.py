"""Search and listing tools: list_dir, grep_search, file_search, codebase_search."""

import asyncio
import fnmatch
import logging
import re
from typing import Any, List

from backend import LocalBackend
from tools._common import ToolContext, ToolResult
from tools.gitignore import iter_workspace_files
from tools.schemas import CodebaseSearchArgs, FileSearchArgs, GrepArgs, ListDirArgs

logger = logging.getLogger(__name__)

MAX_GREP_MATCHES = 50
MAX_FILE_MATCHES = 10
MAX_KEYWORD_MATCHES = 20
_MAX_SEARCH_FILE_BYTES = 2 * 1024 * 1024

_LINE_SPLIT_RE = re.compile(r"\r?\n")


def _read_text(b: LocalBackend, rel: str) -> str:
    full = b.resolve_path(rel)
    with open(full, "rb") as f:
        data = f.read(_MAX_SEARCH_FILE_BYTES + 1)
    if len(data) > _MAX_SEARCH_FILE_BYTES or b"\x00" in data[:8192]:
        raise ValueError("binary or oversized file")
    return data.decode("utf-8", errors="replace")


def _matches_include(rel: str, pattern: str) -> bool:
    if not pattern or pattern == "*":
        return True
    name = rel.rsplit("/", 1)[-1]
    return fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(name, pattern)


async def list_dir(args: ListDirArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    """One entry per line: `d path` for directories, `f path` for files."""
    b = ctx.backend(workspace_id)
    try:
        entries = await asyncio.to_thread(b.list_dir, args.path)
    except FileNotFoundError:
        return ToolResult(success=False, output="", error=f"Directory not found: {args.path}")
    except (OSError, ValueError) as e:
        return ToolResult(success=False, output="", error=str(e))
    lines = [f"{'d' if e['kind'] == 'directory' else 'f'} {e['path']}" for e in entries]
    return ToolResult(success=True, output="\n".join(lines))


def _grep_sync(b: LocalBackend, regex: "re.Pattern", include: str) -> List[str]:
    matches: List[str] = []
    for rel in iter_workspace_files(b.working_directory):
        if len(matches) >= MAX_GREP_MATCHES:
            break
        if not _matches_include(rel, include):
            continue
        try:
            content = _read_text(b, rel)
        except (OSError, ValueError):
            continue
        for i, line in enumerate(_LINE_SPLIT_RE.split(content), 1):
            if regex.search(line):
                matches.append(f"{rel}:{i}:{line}")
                if len(matches) >= MAX_GREP_MATCHES:
                    break
    return matches


async def grep_search(args: GrepArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    """Regex search over workspace files, capped at 50 matching lines."""
    try:
        regex = re.compile(args.query, 0 if args.case_sensitive else re.IGNORECASE)
    except re.error as e:
        return ToolResult(success=False, output="", error=f"Invalid regex: {e}")
    b = ctx.backend(workspace_id)
    matches = await asyncio.to_thread(_grep_sync, b, regex, args.include_pattern)
    return ToolResult(success=True, output="\n".join(matches) or "No matches")


async def file_search(args: FileSearchArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    """Case-insensitive substring match on relative paths, capped at 10."""
    b = ctx.backend(workspace_id)
    q = args.query.lower()

    def _search() -> List[str]:
        found: List[str] = []
        for rel in iter_workspace_files(b.working_directory):
            if q in rel.lower():
                found.append(rel)
                if len(found) >= MAX_FILE_MATCHES:
                    break
        return found

    found = await asyncio.to_thread(_search)
    return ToolResult(success=True, output="\n".join(found) or "No matches")


def _keyword_sync(b: LocalBackend, query: str, dirs: List[str]) -> List[str]:
    q = query.lower()
    matches: List[str] = []
    for rel in iter_workspace_files(b.working_directory):
        if len(matches) >= MAX_KEYWORD_MATCHES:
            break
        if dirs and not any(rel == d or rel.startswith(d + "/") for d in dirs):
            continue
        try:
            content = _read_text(b, rel)
        except (OSError, ValueError):
            continue
        if q not in content.lower():
            continue
        for i, line in enumerate(_LINE_SPLIT_RE.split(content), 1):
            if q in line.lower():
                matches.append(f"{rel}:{i}: {line.strip()[:120]}")
                if len(matches) >= MAX_KEYWORD_MATCHES:
                    break
    return matches


async def codebase_search(args: CodebaseSearchArgs, ctx: ToolContext, workspace_id: str, **kw: Any) -> ToolResult:
    """Keyword fallback for semantic search, capped at 20 lines."""
    b = ctx.backend(workspace_id)
    matches = await asyncio.to_thread(_keyword_sync, b, args.query.strip(), args.target_directories)
    if not matches:
        return ToolResult(success=True, output=f'No keyword matches for "{args.query}" in codebase.')
    return ToolResult(success=True, output="\n".join(matches))
