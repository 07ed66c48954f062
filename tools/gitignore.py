""".gitignore-aware enumeration of workspace files."""

import os
import logging
from typing import Dict, Iterator, Optional, Set, Tuple

import pathspec

logger = logging.getLogger(__name__)

_ALWAYS_SKIP_DIRS: Set[str] = {
    ".git", "node_modules", "__pycache__", ".venv", "venv",
    ".mypy_cache", ".pytest_cache", ".tox", ".eggs",
    ".next", ".nuxt", ".cache", ".svn", ".hg",
    "coverage", "htmlcov",
}

_ALWAYS_SKIP_EXTENSIONS: Set[str] = {
    ".pyc", ".pyo", ".so", ".dylib", ".o", ".a", ".class",
}

# root -> (.gitignore mtime, spec)
_gitignore_cache: Dict[str, Tuple[float, Optional[pathspec.PathSpec]]] = {}


def _load_gitignore(root: str) -> Optional[pathspec.PathSpec]:
    """Load .gitignore patterns for a workspace root, re-reading when the file changes.

    Returns a PathSpec matcher or None if no .gitignore exists.
    """
    gitignore_path = os.path.join(root, ".gitignore")
    try:
        mtime = os.path.getmtime(gitignore_path)
    except OSError:
        _gitignore_cache.pop(root, None)
        return None

    cached = _gitignore_cache.get(root)
    if cached and cached[0] == mtime:
        return cached[1]

    spec = None
    try:
        with open(gitignore_path, "r", encoding="utf-8", errors="replace") as f:
            spec = pathspec.PathSpec.from_lines("gitwildmatch", f)
    except (OSError, ValueError) as e:
        logger.debug(f"Failed to parse .gitignore: {e}")

    _gitignore_cache[root] = (mtime, spec)
    return spec


def _is_ignored(rel_path: str, name: str, is_dir: bool,
                gitignore_spec: Optional[pathspec.PathSpec]) -> bool:
    """Check if a path should be ignored based on .gitignore + hardcoded skips."""
    if name in _ALWAYS_SKIP_DIRS and is_dir:
        return True
    if not is_dir:
        _, ext = os.path.splitext(name)
        if ext in _ALWAYS_SKIP_EXTENSIONS:
            return True
    if gitignore_spec:
        check_path = rel_path + "/" if is_dir else rel_path
        if gitignore_spec.match_file(check_path):
            return True
    return False


def iter_workspace_files(root: str) -> Iterator[str]:
    """Yield workspace-relative, slash-separated file paths in a stable order."""
    spec = _load_gitignore(root)
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = os.path.relpath(dirpath, root)
        rel_dir = "" if rel_dir == "." else rel_dir.replace(os.sep, "/")
        dirnames[:] = sorted(
            d for d in dirnames
            if not _is_ignored(f"{rel_dir}/{d}" if rel_dir else d, d, True, spec)
        )
        for name in sorted(filenames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if not _is_ignored(rel, name, False, spec):
                yield rel
