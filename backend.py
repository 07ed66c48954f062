"""
Backend abstraction for workspace file operations.
Every workspace is a directory under the configured workspace root; all paths
handed to a backend are resolved against that directory and must stay inside it.
"""

import logging
import os
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import List, Dict, Any

logger = logging.getLogger(__name__)

_WORKSPACE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

# Agent config files that may land in a workspace root; hidden from listings
_HIDDEN_ROOT_FILES = {"system-prompt.txt", "tools.json", "opencode.json"}


class Backend(ABC):
    """Abstract backend for workspace file system operations."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Return the working directory path."""

    @abstractmethod
    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        """List entries in a directory. Returns list of {name, path, kind}."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Read file content as text."""

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """Write content to a file (create dirs as needed)."""

    @abstractmethod
    def remove_path(self, path: str) -> None:
        """Delete a file or a directory tree."""

    def resolve_path(self, path: str) -> str:
        """Resolve a path relative to the working directory."""
        if os.path.isabs(path):
            return os.path.normpath(path)
        return os.path.normpath(os.path.join(self.working_directory, path))

    def _ensure_under_working(self, resolved: str) -> None:
        """Raise ValueError if resolved path escapes the working directory. Overridden by backends."""
        pass  # Base: no check; LocalBackend implements


# ============================================================
# Local Backend
# ============================================================

class LocalBackend(Backend):
    """Backend that operates on the local filesystem."""

    def __init__(self, working_directory: str = "."):
        self._working_directory = os.path.abspath(working_directory)

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def _ensure_under_working(self, resolved: str) -> None:
        real = os.path.abspath(resolved)
        wd = os.path.abspath(self._working_directory)
        if real != wd and not real.startswith(wd + os.sep):
            raise ValueError(f"Path escapes working directory: {resolved!r}")

    def _full(self, path: str) -> str:
        full = self.resolve_path((path or ".").strip())
        self._ensure_under_working(full)
        return full

    def relative(self, full: str) -> str:
        rel = os.path.relpath(full, self._working_directory)
        return rel.replace(os.sep, "/")

    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        full = self._full(path)
        at_root = full == self._working_directory
        entries = []
        for name in os.listdir(full):
            if at_root and name in _HIDDEN_ROOT_FILES:
                continue
            child = os.path.join(full, name)
            entries.append({
                "name": name,
                "path": self.relative(child),
                "kind": "directory" if os.path.isdir(child) else "file",
            })
        entries.sort(key=lambda e: (e["kind"] != "directory", e["name"].lower()))
        return entries

    def read_file(self, path: str) -> str:
        full = self._full(path)
        with open(full, "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    def write_file(self, path: str, content: str) -> None:
        full = self._full(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(content)

    def remove_path(self, path: str) -> None:
        full = self._full(path)
        if full == self._working_directory:
            raise ValueError("Refusing to delete the workspace root")
        if os.path.isdir(full) and not os.path.islink(full):
            shutil.rmtree(full)
        else:
            os.remove(full)


# ============================================================
# Workspace helpers
# ============================================================

def validate_workspace_id(workspace_id: str) -> str:
    """Return the id unchanged, or raise ValueError if it cannot name a single directory."""
    wid = (workspace_id or "").strip()
    if not _WORKSPACE_ID_RE.match(wid) or wid in (".", ".."):
        raise ValueError(f"Invalid workspace id: {workspace_id!r}")
    return wid


def workspace_path(workspace_root: str, workspace_id: str) -> str:
    return os.path.join(os.path.abspath(workspace_root), validate_workspace_id(workspace_id))


def workspace_backend(workspace_root: str, workspace_id: str) -> LocalBackend:
    return LocalBackend(workspace_path(workspace_root, workspace_id))


def ensure_workspace(workspace_root: str, workspace_id: str) -> str:
    """Create the workspace directory and a git repo in it so later diffs work."""
    path = workspace_path(workspace_root, workspace_id)
    os.makedirs(path, exist_ok=True)
    if not os.path.isdir(os.path.join(path, ".git")):
        try:
            subprocess.run(
                ["git", "init", "-b", "main"], cwd=path,
                capture_output=True, text=True, timeout=30, check=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("git init failed for workspace %s: %s", workspace_id, e)
    return path


def find_project_root(workspace_dir: str) -> str:
    """Directory holding package.json: the workspace itself or one of its direct children.

    Falls back to the workspace directory when no package.json is found.
    """
    if os.path.isfile(os.path.join(workspace_dir, "package.json")):
        return workspace_dir
    try:
        names = sorted(os.listdir(workspace_dir))
    except OSError:
        return workspace_dir
    for name in names:
        candidate = os.path.join(workspace_dir, name)
        if os.path.isdir(candidate) and os.path.isfile(os.path.join(candidate, "package.json")):
            return candidate
    return workspace_dir
