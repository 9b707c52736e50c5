"""Tests for WorkspaceManager and the atomic write helpers."""

import os
from pathlib import Path

import pytest

from taskloop.models import TaskState
from taskloop.workspace import WorkspaceManager, create_exclusive, write_text_atomic


class TestWorkspaceManager:
    """Tests for WorkspaceManager."""

    def test_ensure_structure_creates_directories(self, tmp_path: Path):
        """Test that ensure_structure creates the .taskloop/ directory structure."""
        workspace = WorkspaceManager(tmp_path)
        workspace.ensure_structure()

        assert workspace.root == tmp_path.resolve() / ".taskloop"
        for state in TaskState:
            assert workspace.state_path(state).is_dir()
        assert workspace.locks_dir.exists()
        assert workspace.checkpoint_archive_dir.exists()
        assert workspace.logs_dir.exists()

    def test_state_folders_sort_in_lifecycle_order(self, tmp_path: Path):
        workspace = WorkspaceManager(tmp_path)
        workspace.ensure_structure()
        assert sorted(p.name for p in workspace.tasks_dir.iterdir()) == [
            "1.blocked", "2.todo", "3.doing", "4.done",
        ]

    def test_exists_returns_false_for_new_project(self, tmp_path: Path):
        assert not WorkspaceManager(tmp_path).exists()

    def test_exists_returns_true_after_ensure_structure(self, tmp_path: Path):
        workspace = WorkspaceManager(tmp_path)
        workspace.ensure_structure()
        assert workspace.exists()

    def test_root_override(self, tmp_path: Path):
        workspace = WorkspaceManager(tmp_path / "project", root=tmp_path / "shared")
        assert workspace.locks_dir == (tmp_path / "shared").resolve() / "locks"

    def test_phase_log_path(self, tmp_path: Path):
        workspace = WorkspaceManager(tmp_path)
        path = workspace.phase_log_path("run-1", "002-001-x", "plan", 2)
        assert path.name == "plan-2.log"
        assert path.parent.is_dir()

    def test_update_gitignore(self, tmp_path: Path):
        """Test that runtime state is ignored and task records are not."""
        workspace = WorkspaceManager(tmp_path)
        assert workspace.update_gitignore()

        content = (tmp_path / ".gitignore").read_text()
        assert ".taskloop/locks/" in content
        assert ".taskloop/state/" in content
        assert ".taskloop/tasks" not in content

    def test_update_gitignore_appends_to_existing(self, tmp_path: Path):
        gitignore = tmp_path / ".gitignore"
        gitignore.write_text("*.pyc")

        workspace = WorkspaceManager(tmp_path)
        assert workspace.update_gitignore()
        assert not workspace.update_gitignore()

        lines = gitignore.read_text().splitlines()
        assert lines[0] == "*.pyc"
        assert lines.count(".taskloop/logs/") == 1


class TestAtomicWrites:
    """Tests for write_text_atomic() and create_exclusive()."""

    def test_write_text_atomic_replaces(self, tmp_path: Path):
        path = tmp_path / "file.md"
        path.write_text("old")
        write_text_atomic(path, "new")

        assert path.read_text() == "new"
        assert os.listdir(tmp_path) == ["file.md"]

    def test_create_exclusive(self, tmp_path: Path):
        path = tmp_path / "a.lock"
        create_exclusive(path, "owner")
        assert path.read_text() == "owner"

    def test_create_exclusive_refuses_existing(self, tmp_path: Path):
        path = tmp_path / "a.lock"
        path.write_text("first")

        with pytest.raises(FileExistsError):
            create_exclusive(path, "second")
        assert path.read_text() == "first"
        assert os.listdir(tmp_path) == ["a.lock"]
