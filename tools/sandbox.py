"""Shell command sandbox: executable allowlist, cd-escape check and kill-all blocking.

These are syntactic checks only. They keep the agent inside its project
directory and away from the host process; they are not a container boundary.
"""

import os
import re
from typing import List

ALLOWED_EXECUTABLES = frozenset({
    "npm", "npx", "node", "yarn", "pnpm", "git", "cmd", "echo", "true", "false",
})

# Splits on newlines, ; && || | and a bare & (but not the & of 2>&1 or &> redirects)
_SEGMENT_SPLIT_RE = re.compile(r"\s*(?:&&|\|\||;|\||[\r\n]|(?<![<>0-9])&(?!>))\s*")
_DRIVE_RE = re.compile(r"^[a-z]:", re.IGNORECASE)

_KILL_ALL_PATTERNS = [
    re.compile(r"taskkill\s+[/-]f\s+[/-]im\s+node(\s|\.exe|$)"),
    re.compile(r"taskkill\s+[/-]im\s+node(\s|\.exe|$).*[/-]f\b"),
    re.compile(r"\bpkill\s+(-9\s+)?(-f\s+)?node(\s|$)"),
    re.compile(r"\bkillall\s+(-9\s+)?node(\s|$)"),
]

_CD_PREFIX_RES = [
    re.compile(r'^cd\s+"([^"]+)"\s*(&&|;)?\s*'),
    re.compile(r"^cd\s+'([^']+)'\s*(&&|;)?\s*"),
    re.compile(r"^cd\s+(\S+)\s*(&&|;)?\s*"),
]


def split_segments(command: str) -> List[str]:
    return [s.strip() for s in _SEGMENT_SPLIT_RE.split(command or "") if s.strip()]


def _first_token(segment: str) -> str:
    parts = segment.split(None, 1)
    if not parts:
        return ""
    token = parts[0].lower()
    for suffix in (".cmd", ".exe"):
        if token.endswith(suffix):
            token = token[: -len(suffix)]
    return token


def _cd_target(segment: str) -> str:
    rest = segment[2:].strip()
    return rest.strip("\"'").strip()


def is_allowed(command: str) -> bool:
    """True if every segment starts with an allowlisted executable or a workspace-relative cd."""
    for seg in split_segments(command):
        token = _first_token(seg)
        if not token or token in ALLOWED_EXECUTABLES:
            continue
        if token == "cd":
            target = _cd_target(seg)
            if not target:
                return False  # bare cd goes to $HOME
            if target == ".":
                continue
            if target.startswith("..") or "/.." in target or "\\.." in target:
                return False
            if _DRIVE_RE.match(target) or target.startswith(("/", "\\", "~")):
                return False
            continue
        return False
    return True


def attempts_escape(command: str, project_root: str) -> bool:
    """True if any cd segment would leave project_root once resolved."""
    root = os.path.normpath(os.path.abspath(project_root))
    for seg in split_segments(command):
        if _first_token(seg) != "cd":
            continue
        target = _cd_target(seg).split(None, 1)
        target = target[0] if target else ""
        if not target or target == ".":
            continue
        if ".." in target or os.path.isabs(target) or _DRIVE_RE.match(target):
            return True
        resolved = os.path.normpath(os.path.join(root, target))
        if resolved != root and not resolved.startswith(root + os.sep):
            return True
    return False


def is_kill_all(command: str) -> bool:
    """Commands that would kill every node process on the machine, the host included."""
    c = re.sub(r"\s+", " ", (command or "").strip().lower())
    return any(p.search(c) for p in _KILL_ALL_PATTERNS)


def strip_redundant_cd(command: str, project_root: str) -> str:
    """Drop a leading `cd <project_root>` since commands already run there."""
    trimmed = (command or "").strip()
    root = os.path.normpath(project_root)
    for pattern in _CD_PREFIX_RES:
        m = pattern.match(trimmed)
        if not m:
            continue
        if os.path.normpath(m.group(1).strip()) != root:
            continue
        rest = trimmed[m.end():].strip()
        return rest or "true"
    return trimmed
