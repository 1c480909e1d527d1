"""Changed-file counting across one agent invocation."""

from __future__ import annotations

import hashlib
import os
import subprocess
from pathlib import Path
from typing import Any

from agentloop.constants import LOOP_DIR_NAME

_SKIPPED_DIR_NAMES = frozenset({"__pycache__", "node_modules"})


def _git(repo_root: Path, *args: str) -> tuple[int, str]:
    try:
        completed = subprocess.run(
            ["git", "-C", str(repo_root), *args],
            text=True,
            capture_output=True,
            check=False,
        )
    except OSError:
        return (127, "")
    return (completed.returncode, completed.stdout)


def _is_git_worktree(repo_root: Path) -> bool:
    code, out = _git(repo_root, "rev-parse", "--is-inside-work-tree")
    return code == 0 and out.strip() == "true"


def _git_head(repo_root: Path) -> str:
    code, out = _git(repo_root, "rev-parse", "HEAD")
    return out.strip() if code == 0 else ""


def _is_loop_internal(relative_path: str) -> bool:
    return relative_path.replace("\\", "/").split("/", 1)[0] == LOOP_DIR_NAME


def _content_digest(path: Path) -> str:
    if path.is_dir():
        return "dir"
    try:
        return hashlib.sha1(path.read_bytes()).hexdigest()
    except FileNotFoundError:
        return "missing"
    except OSError:
        return "unreadable"


def _git_dirty_paths(repo_root: Path) -> dict[str, str]:
    """Map every modified or untracked path to ``<porcelain code>:<content digest>``."""
    code, out = _git(repo_root, "status", "--porcelain", "-z", "--untracked-files=all")
    if code != 0:
        return {}
    dirty: dict[str, str] = {}
    entries = iter(out.split("\0"))
    for entry in entries:
        if len(entry) < 4:
            continue
        status, target = entry[:2], entry[3:]
        if "R" in status or "C" in status:
            # Renames and copies are followed by their source path.
            next(entries, None)
        if not _is_loop_internal(target):
            dirty[target] = f"{status}:{_content_digest(repo_root / target)}"
    return dirty


def _git_committed_paths(repo_root: Path, since: str) -> set[str]:
    head = _git_head(repo_root)
    if not since or not head or head == since:
        return set()
    code, out = _git(repo_root, "diff", "--name-only", "-z", since, head)
    if code != 0:
        return set()
    return {name for name in out.split("\0") if name and not _is_loop_internal(name)}


def _file_stats(repo_root: Path) -> dict[str, tuple[float, int]]:
    """Stat every file below ``repo_root``; hidden directories and caches are pruned."""
    root = repo_root.resolve()
    stats: dict[str, tuple[float, int]] = {}
    pending = [root]
    while pending:
        directory = pending.pop()
        try:
            entries = list(os.scandir(directory))
        except OSError:
            continue
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                if not entry.name.startswith(".") and entry.name not in _SKIPPED_DIR_NAMES:
                    pending.append(Path(entry.path))
                continue
            try:
                info = entry.stat()
            except OSError:
                continue
            stats[Path(entry.path).relative_to(root).as_posix()] = (info.st_mtime, info.st_size)
    return stats


def _changed_keys(before: dict[str, Any], after: dict[str, Any]) -> set[str]:
    return {key for key in set(before) | set(after) if before.get(key) != after.get(key)}


class ChangeTracker:
    """Counts files changed since ``capture()``: git status when available, else file stats."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root
        self._use_git = _is_git_worktree(repo_root)
        self._baseline: dict[str, Any] = {}
        self._head = ""

    def _snapshot(self) -> dict[str, Any]:
        if self._use_git:
            return _git_dirty_paths(self.repo_root)
        return _file_stats(self.repo_root)

    def capture(self) -> None:
        self._baseline = self._snapshot()
        self._head = _git_head(self.repo_root) if self._use_git else ""

    def changed_paths(self) -> list[str]:
        changed = _changed_keys(self._baseline, self._snapshot())
        if self._use_git:
            # Paths committed during the invocation leave the status listing.
            changed |= _git_committed_paths(self.repo_root, self._head)
        return sorted(changed)

    def changed_file_count(self) -> int:
        return len(self.changed_paths())
