"""Git worktree manager for agent workspace isolation."""

import logging
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from git import Repo
import git as gitpython
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class WorkspaceHandle(BaseModel):
    """An allocated agent workspace."""
    name: str
    path: str
    branch: str
    commit: Optional[str] = None


@runtime_checkable
class WorkspaceProvider(Protocol):
    """Allocates and reclaims one isolated working directory per agent."""

    def create_workspace(self, project: str, name: str) -> WorkspaceHandle:
        ...

    def remove_workspace(self, project: str, name: str) -> None:
        ...


class WorktreeManager:
    """
    Workspace provider backed by git worktrees.

    Each agent gets <project>/.codex/worktrees/<name> checked out on its own
    branch codex/<name>, created from the project's current HEAD. Calls block
    on git; async callers run them in a worker thread.
    """

    def __init__(
        self,
        worktrees_subdir: str = ".codex/worktrees",
        branch_prefix: str = "codex/"
    ):
        """
        Initialize worktree manager.

        Args:
            worktrees_subdir: Worktree directory relative to each project root
            branch_prefix: Prefix of the per-agent branch names
        """
        self.worktrees_subdir = worktrees_subdir
        self.branch_prefix = branch_prefix
        self._repos: dict[str, Repo] = {}

    def _repo(self, project: str) -> Repo:
        """
        Open (and cache) the repository at project.

        Raises:
            WorktreeError: If project is not a git repository
        """
        key = str(Path(project).resolve())
        if key not in self._repos:
            try:
                self._repos[key] = Repo(key)
            except (gitpython.InvalidGitRepositoryError, gitpython.NoSuchPathError) as e:
                raise WorktreeError(f"{project} is not a git repository") from e
            self._ignore_worktrees(Path(key))
        return self._repos[key]

    def _ignore_worktrees(self, project_root: Path) -> None:
        # Add the worktree directory to .gitignore if not already there
        entry = f"{self.worktrees_subdir.strip('/')}/"
        gitignore_path = project_root / ".gitignore"
        if gitignore_path.exists():
            content = gitignore_path.read_text()
            if entry not in content:
                with gitignore_path.open("a") as f:
                    f.write(f"\n# Agent worktrees\n{entry}\n")

    def worktree_path(self, project: str, name: str) -> Path:
        return Path(project).resolve() / self.worktrees_subdir / name

    def branch_name(self, name: str) -> str:
        return f"{self.branch_prefix}{name}"

    def create_workspace(self, project: str, name: str) -> WorkspaceHandle:
        """
        Create a worktree on a fresh branch for an agent.

        An existing branch of the same name is replaced, and a stale worktree
        directory is removed first.

        Args:
            project: Path to the project's git repository
            name: Workspace name (unique per project)

        Returns:
            WorkspaceHandle describing the new worktree

        Raises:
            WorktreeError: If the project is not a repository or git fails
        """
        repo = self._repo(project)
        path = self.worktree_path(project, name)
        branch = self.branch_name(name)

        if path.exists():
            logger.warning(f"Worktree {path} already exists, removing it")
            self.remove_workspace(project, name)

        try:
            if branch in [head.name for head in repo.heads]:
                repo.delete_head(branch, force=True)
            path.parent.mkdir(parents=True, exist_ok=True)
            repo.git.worktree("add", "-b", branch, str(path), "HEAD")
        except gitpython.GitCommandError as e:
            logger.error(f"Failed to create worktree {name}: {e}")
            raise WorktreeError(f"Failed to create worktree {name}: {e}") from e

        commit = Repo(path).head.commit.hexsha
        logger.info(f"Created worktree: {path} on {branch} at {commit[:8]}")
        return WorkspaceHandle(name=name, path=str(path), branch=branch, commit=commit)

    def remove_workspace(self, project: str, name: str) -> None:
        """
        Remove an agent's worktree and delete its branch.

        A missing worktree is not an error; a branch that cannot be deleted is
        logged and left behind.

        Raises:
            WorktreeError: If git refuses to remove the worktree
        """
        repo = self._repo(project)
        path = self.worktree_path(project, name)
        branch = self.branch_name(name)

        if path.exists():
            try:
                repo.git.worktree("remove", str(path), "--force")
                logger.info(f"Removed worktree: {path}")
            except gitpython.GitCommandError as e:
                logger.error(f"Failed to remove worktree {path}: {e}")
                raise WorktreeError(f"Failed to remove worktree {name}: {e}") from e
        else:
            logger.warning(f"Worktree {path} does not exist")
            repo.git.worktree("prune")

        if branch in [head.name for head in repo.heads]:
            try:
                repo.delete_head(branch, force=True)
                logger.info(f"Deleted branch: {branch}")
            except gitpython.GitCommandError as e:
                logger.warning(f"Failed to delete branch {branch}: {e}")

    def list_workspaces(self, project: str) -> list[WorkspaceHandle]:
        """
        List the agent worktrees of a project.

        Returns:
            Handles for worktrees under the managed directory (the main
            checkout is excluded)
        """
        repo = self._repo(project)
        root = Path(project).resolve() / self.worktrees_subdir
        output = repo.git.worktree("list", "--porcelain")

        workspaces = []
        current: dict[str, str] = {}
        for line in output.split("\n") + [""]:
            if line.startswith("worktree "):
                current["path"] = line.split(" ", 1)[1]
            elif line.startswith("HEAD "):
                current["commit"] = line.split(" ", 1)[1]
            elif line.startswith("branch "):
                current["branch"] = line.split(" ", 1)[1].replace("refs/heads/", "")
            elif not line and current:
                path = Path(current["path"]).resolve()
                if path.parent == root:
                    workspaces.append(WorkspaceHandle(
                        name=path.name,
                        path=str(path),
                        branch=current.get("branch", ""),
                        commit=current.get("commit")
                    ))
                current = {}

        return workspaces


class WorktreeError(Exception):
    """Raised when a git worktree operation fails."""
    pass
