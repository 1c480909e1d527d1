from __future__ import annotations

import os
from pathlib import Path

import pytest

import agentloop.progress as progress
from agentloop.progress import ChangeTracker


@pytest.fixture()
def tracker(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> ChangeTracker:
    monkeypatch.setattr(progress, "_is_git_worktree", lambda _repo_root: False)
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "kept.py").write_text("A = 1\n", encoding="utf-8")
    (tmp_path / "src" / "edited.py").write_text("B = 1\n", encoding="utf-8")
    (tmp_path / "src" / "removed.py").write_text("C = 1\n", encoding="utf-8")
    return ChangeTracker(tmp_path)


def test_filesystem_snapshot_counts_added_edited_and_removed(tracker: ChangeTracker, tmp_path: Path) -> None:
    tracker.capture()

    (tmp_path / "src" / "added.py").write_text("D = 1\n", encoding="utf-8")
    edited = tmp_path / "src" / "edited.py"
    edited.write_text("B = 2  # longer\n", encoding="utf-8")
    (tmp_path / "src" / "removed.py").unlink()

    assert tracker.changed_paths() == ["src/added.py", "src/edited.py", "src/removed.py"]
    assert tracker.changed_file_count() == 3


def test_hidden_and_cache_directories_are_ignored(tracker: ChangeTracker, tmp_path: Path) -> None:
    tracker.capture()

    for directory in (".agentloop", ".git", "__pycache__", "node_modules"):
        target = tmp_path / directory
        target.mkdir(exist_ok=True)
        (target / "noise.txt").write_text("x\n", encoding="utf-8")

    assert tracker.changed_file_count() == 0


def test_unchanged_tree_reports_nothing(tracker: ChangeTracker, tmp_path: Path) -> None:
    tracker.capture()
    kept = tmp_path / "src" / "kept.py"
    os.utime(kept, (kept.stat().st_atime, kept.stat().st_mtime))

    assert tracker.changed_paths() == []


def test_loop_internal_paths_are_recognized() -> None:
    assert progress._is_loop_internal(".agentloop/status.json") is True
    assert progress._is_loop_internal(".agentloop") is True
    assert progress._is_loop_internal("src/.agentloop_notes.md") is False


def test_git_status_paths_with_spaces_are_digested(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a b.txt").write_text("spaced\n", encoding="utf-8")
    (tmp_path / "src" / "new name.py").write_text("X = 1\n", encoding="utf-8")
    porcelain = " M src/a b.txt\0R  src/new name.py\0src/old name.py\0?? .agentloop/status.json\0"
    monkeypatch.setattr(progress, "_git", lambda _repo_root, *_args: (0, porcelain))

    dirty = progress._git_dirty_paths(tmp_path)

    assert sorted(dirty) == ["src/a b.txt", "src/new name.py"]
    assert dirty["src/a b.txt"].startswith(" M:")
    assert not dirty["src/a b.txt"].endswith(":missing")
    assert dirty["src/new name.py"].startswith("R :")


def test_git_committed_paths_split_on_nul(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    outputs = {"rev-parse": (0, "def456\n"), "diff": (0, "docs/read me.md\0.agentloop/status.json\0")}
    monkeypatch.setattr(progress, "_git", lambda _repo_root, command, *_args: outputs[command])

    assert progress._git_committed_paths(tmp_path, "abc123") == {"docs/read me.md"}
