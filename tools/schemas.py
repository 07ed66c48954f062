"""Canonical tool kinds, their typed arguments, and the name/field aliases that map onto them.

The agent CLI and its custom tools are not consistent about names: the same
operation shows up as ``bash`` or ``run_terminal_cmd``, and a path may arrive
as ``target_file``, ``path`` or ``filePath``. Everything is normalized here
once so the rest of the router only sees ``ToolKind`` plus a typed dataclass.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple


class ToolArgumentError(ValueError):
    """A required tool argument is missing or has the wrong type."""


class ToolKind(str, Enum):
    RUN_TERMINAL_CMD = "run_terminal_cmd"
    READ_FILE = "read_file"
    LIST_DIR = "list_dir"
    GREP_SEARCH = "grep_search"
    FILE_SEARCH = "file_search"
    CODEBASE_SEARCH = "codebase_search"
    EDIT_FILE = "edit_file"
    SEARCH_REPLACE = "search_replace"
    DELETE_FILE = "delete_file"
    REAPPLY = "reapply"
    READ_LINTS = "read_lints"
    WEB_SEARCH = "web_search"
    CREATE_DIAGRAM = "create_diagram"
    EDIT_NOTEBOOK = "edit_notebook"
    TODO_WRITE = "todowrite"
    TODO_READ = "todoread"


# Historical and built-in names -> canonical kind
TOOL_NAME_NORMALIZE: Dict[str, ToolKind] = {
    "bash": ToolKind.RUN_TERMINAL_CMD,
    "shell": ToolKind.RUN_TERMINAL_CMD,
    "read": ToolKind.READ_FILE,
    "list": ToolKind.LIST_DIR,
    "grep": ToolKind.GREP_SEARCH,
    "glob": ToolKind.FILE_SEARCH,
    "write": ToolKind.EDIT_FILE,
    "write_file": ToolKind.EDIT_FILE,
    "edit": ToolKind.EDIT_FILE,
    "websearch": ToolKind.WEB_SEARCH,
    "todo_write": ToolKind.TODO_WRITE,
    "todo_read": ToolKind.TODO_READ,
}
TOOL_NAME_NORMALIZE.update({k.value: k for k in ToolKind})

# Tools served by this host through the callback endpoint
CUSTOM_TOOL_NAMES = frozenset(k.value for k in ToolKind)

# Agent built-ins that stay enabled; everything else built in is denied
ALLOWED_BUILTIN_TOOLS = frozenset({"websearch", "webfetch", "todowrite", "todoread"})

# Built-ins the agent must not use (mirrored into the permission matrix)
DISABLED_BUILTIN_TOOLS = ("edit", "bash", "read", "write", "grep", "glob", "list", "patch", "webfetch")

SHELL_TOOL_NAMES = frozenset({"bash", "run_terminal_cmd"})

# Short names shown in the client for built-in style tools
DISPLAY_NAMES: Dict[str, str] = {
    "write_file": "write",
    "edit_file": "edit",
    "search_replace": "edit",
    "run_terminal_cmd": "bash",
    "read_file": "read",
}

# Field aliases, in lookup order
PATH_KEYS = ("target_file", "file_path", "filePath", "path", "relative_workspace_path",
             "target_notebook", "dir", "filename")
COMMAND_KEYS = ("command", "cmd")
START_LINE_KEYS = ("start_line_one_indexed", "startLine", "start_line", "offset")
END_LINE_KEYS = ("end_line_one_indexed_inclusive", "endLine", "end_line")


def canonical_kind(name: str) -> Optional[ToolKind]:
    return TOOL_NAME_NORMALIZE.get((name or "").strip().lower())


def pick(args: Dict[str, Any], keys: Sequence[str]) -> Any:
    """First value present (not None) under any of ``keys``."""
    for key in keys:
        value = args.get(key)
        if value is not None:
            return value
    return None


def _require_str(args: Dict[str, Any], keys: Sequence[str], label: str) -> str:
    value = pick(args, keys)
    if not isinstance(value, str) or not value.strip():
        raise ToolArgumentError(f"Missing {label}")
    return value.strip()


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _flag(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


# ---------------------------------------------------------------------------
# Typed arguments
# ---------------------------------------------------------------------------

@dataclass
class ShellArgs:
    command: str


@dataclass
class ReadFileArgs:
    target_file: str
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    read_entire: bool = True


@dataclass
class ListDirArgs:
    path: str = "."


@dataclass
class GrepArgs:
    query: str
    include_pattern: str = "*"
    case_sensitive: bool = False


@dataclass
class FileSearchArgs:
    query: str


@dataclass
class CodebaseSearchArgs:
    query: str
    target_directories: List[str] = field(default_factory=list)


@dataclass
class EditFileArgs:
    target_file: str
    code_edit: str
    instructions: str = ""


@dataclass
class SearchReplaceArgs:
    file_path: str
    old_string: str
    new_string: str


@dataclass
class DeleteFileArgs:
    path: str


@dataclass
class ReapplyArgs:
    target_file: str


@dataclass
class ReadLintsArgs:
    paths: List[str] = field(default_factory=list)


@dataclass
class WebSearchArgs:
    search_term: str
    max_results: int = 5


@dataclass
class CreateDiagramArgs:
    content: str


@dataclass
class EditNotebookArgs:
    target_notebook: str
    cell_idx: int
    is_new_cell: bool = False
    cell_language: str = "python"
    old_string: str = ""
    new_string: str = ""


@dataclass
class TodoWriteArgs:
    todos: List[Dict[str, Any]]
    merge: bool = False


@dataclass
class TodoReadArgs:
    pass


def parse_arguments(kind: ToolKind, args: Optional[Dict[str, Any]]) -> Any:
    """Map a loose argument bag onto the typed arguments for ``kind``."""
    args = args if isinstance(args, dict) else {}

    if kind == ToolKind.RUN_TERMINAL_CMD:
        return ShellArgs(command=_require_str(args, COMMAND_KEYS, "command"))

    if kind == ToolKind.READ_FILE:
        start = _optional_int(pick(args, START_LINE_KEYS))
        end = _optional_int(pick(args, END_LINE_KEYS))
        entire = args.get("should_read_entire_file")
        return ReadFileArgs(
            target_file=_require_str(args, ("target_file", "path", "file_path", "filePath"), "target_file"),
            start_line=start,
            end_line=end,
            read_entire=_flag(entire, default=start is None and end is None),
        )

    if kind == ToolKind.LIST_DIR:
        value = pick(args, ("relative_workspace_path", "path", "dir"))
        return ListDirArgs(path=value.strip() if isinstance(value, str) and value.strip() else ".")

    if kind == ToolKind.GREP_SEARCH:
        include = args.get("include_pattern")
        return GrepArgs(
            query=_require_str(args, ("query", "pattern", "regex"), "query"),
            include_pattern=include.strip() if isinstance(include, str) and include.strip() else "*",
            case_sensitive=_flag(args.get("case_sensitive"), default=False),
        )

    if kind == ToolKind.FILE_SEARCH:
        return FileSearchArgs(query=_require_str(args, ("query", "pattern"), "query"))

    if kind == ToolKind.CODEBASE_SEARCH:
        dirs = args.get("target_directories") or []
        if isinstance(dirs, str):
            dirs = [dirs]
        return CodebaseSearchArgs(
            query=_require_str(args, ("query",), "query"),
            target_directories=[d.strip().strip("/") for d in dirs if isinstance(d, str) and d.strip()],
        )

    if kind == ToolKind.EDIT_FILE:
        code_edit = pick(args, ("code_edit", "content", "contents", "codeEdit"))
        if not isinstance(code_edit, str):
            raise ToolArgumentError("Missing code_edit/content")
        instructions = args.get("instructions")
        return EditFileArgs(
            target_file=_require_str(args, ("target_file", "path", "file_path", "filePath"), "target_file"),
            code_edit=code_edit,
            instructions=instructions if isinstance(instructions, str) else "",
        )

    if kind == ToolKind.SEARCH_REPLACE:
        old, new = args.get("old_string"), args.get("new_string")
        path = _require_str(args, ("file_path", "path", "target_file", "filePath"), "file_path")
        if not isinstance(old, str):
            raise ToolArgumentError("Missing old_string")
        if not isinstance(new, str):
            raise ToolArgumentError("Missing new_string")
        return SearchReplaceArgs(file_path=path, old_string=old, new_string=new)

    if kind == ToolKind.DELETE_FILE:
        return DeleteFileArgs(path=_require_str(args, ("path", "file_path", "target_file"), "path"))

    if kind == ToolKind.REAPPLY:
        return ReapplyArgs(target_file=_require_str(args, ("target_file", "path", "file_path"), "target_file"))

    if kind == ToolKind.READ_LINTS:
        paths = args.get("paths") or []
        return ReadLintsArgs(paths=[p for p in paths if isinstance(p, str)] if isinstance(paths, list) else [])

    if kind == ToolKind.WEB_SEARCH:
        return WebSearchArgs(
            search_term=_require_str(args, ("search_term", "query"), "search_term"),
            max_results=_optional_int(args.get("max_results")) or 5,
        )

    if kind == ToolKind.CREATE_DIAGRAM:
        return CreateDiagramArgs(content=_require_str(args, ("content", "mermaid"), "content"))

    if kind == ToolKind.EDIT_NOTEBOOK:
        idx = _optional_int(pick(args, ("cell_idx", "cellIdx")))
        if idx is None or idx < 0:
            raise ToolArgumentError("Missing cell_idx")
        new = pick(args, ("new_string", "newString"))
        old = args.get("old_string")
        return EditNotebookArgs(
            target_notebook=_require_str(args, ("target_notebook", "path", "file_path"), "target_notebook"),
            cell_idx=idx,
            is_new_cell=_flag(pick(args, ("is_new_cell", "isNewCell"))),
            cell_language=pick(args, ("cell_language", "cellLanguage")) or "python",
            old_string=old if isinstance(old, str) else "",
            new_string=new if isinstance(new, str) else "",
        )

    if kind == ToolKind.TODO_WRITE:
        todos = args.get("todos")
        if not isinstance(todos, list):
            raise ToolArgumentError("Missing todos")
        return TodoWriteArgs(todos=[t for t in todos if isinstance(t, dict)], merge=_flag(args.get("merge")))

    if kind == ToolKind.TODO_READ:
        return TodoReadArgs()

    raise ToolArgumentError(f"Unsupported tool kind: {kind}")


@dataclass
class ToolCall:
    """A tool invocation as the router receives it."""
    call_id: str
    raw_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> Optional[ToolKind]:
        return canonical_kind(self.raw_name)


def normalize_call(raw_name: str, arguments: Optional[Dict[str, Any]]) -> Tuple[ToolKind, Any]:
    """Resolve a raw tool name and its argument bag. Raises ToolArgumentError."""
    kind = canonical_kind(raw_name)
    if kind is None:
        raise ToolArgumentError(f"Tool not implemented: {raw_name}")
    return kind, parse_arguments(kind, arguments)
