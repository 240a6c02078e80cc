"""Tests for WorktreeManager against a real git repository."""

from pathlib import Path

import git as gitpython_module
import pytest

from agentcore.git.worktree_manager import WorktreeError, WorktreeManager


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Git repository with one commit containing README.md and .gitignore."""
    project_path = tmp_path / "project"
    project_path.mkdir()
    repo = gitpython_module.Repo.init(project_path)

    (project_path / "README.md").write_text("# Test Project\n")
    (project_path / ".gitignore").write_text("*.pyc\n")
    repo.index.add(["README.md", ".gitignore"])
    repo.index.commit("Initial commit")
    return project_path


def test_create_workspace(project):
    manager = WorktreeManager()
    repo = gitpython_module.Repo(project)

    handle = manager.create_workspace(str(project), "codex-agent-1234")

    path = Path(handle.path)
    assert path == project.resolve() / ".codex" / "worktrees" / "codex-agent-1234"
    assert (path / "README.md").read_text() == "# Test Project\n"
    assert handle.branch == "codex/codex-agent-1234"
    assert handle.commit == repo.head.commit.hexsha
    assert "codex/codex-agent-1234" in [head.name for head in repo.heads]


def test_worktree_directory_is_ignored(project):
    manager = WorktreeManager()
    manager.create_workspace(str(project), "codex-agent-1234")
    manager.create_workspace(str(project), "codex-agent-5678")

    content = (project / ".gitignore").read_text()
    assert content.count(".codex/worktrees/") == 1


def test_list_workspaces(project):
    manager = WorktreeManager()
    first = manager.create_workspace(str(project), "codex-agent-aaaa")
    second = manager.create_workspace(str(project), "codex-agent-bbbb")

    workspaces = manager.list_workspaces(str(project))

    assert sorted(w.name for w in workspaces) == ["codex-agent-aaaa", "codex-agent-bbbb"]
    by_name = {w.name: w for w in workspaces}
    assert by_name["codex-agent-aaaa"].branch == first.branch
    assert by_name["codex-agent-bbbb"].commit == second.commit


def test_remove_workspace_deletes_branch(project):
    manager = WorktreeManager()
    repo = gitpython_module.Repo(project)
    handle = manager.create_workspace(str(project), "codex-agent-1234")
    (Path(handle.path) / "scratch.txt").write_text("uncommitted work\n")

    manager.remove_workspace(str(project), "codex-agent-1234")

    assert not Path(handle.path).exists()
    assert handle.branch not in [head.name for head in repo.heads]
    assert manager.list_workspaces(str(project)) == []


def test_remove_missing_workspace(project):
    manager = WorktreeManager()
    # nothing to remove; must not raise
    manager.remove_workspace(str(project), "codex-agent-none")


def test_recreate_replaces_stale_workspace(project):
    manager = WorktreeManager()
    handle = manager.create_workspace(str(project), "codex-agent-1234")
    (Path(handle.path) / "stale.txt").write_text("left over\n")

    again = manager.create_workspace(str(project), "codex-agent-1234")

    assert again.path == handle.path
    assert not (Path(again.path) / "stale.txt").exists()


def test_custom_layout(project):
    manager = WorktreeManager(worktrees_subdir="agents", branch_prefix="agent/")

    handle = manager.create_workspace(str(project), "alpha")

    assert Path(handle.path) == project.resolve() / "agents" / "alpha"
    assert handle.branch == "agent/alpha"


def test_not_a_repository(tmp_path):
    manager = WorktreeManager()
    plain = tmp_path / "plain"
    plain.mkdir()

    with pytest.raises(WorktreeError):
        manager.create_workspace(str(plain), "codex-agent-1234")
