"""Sandboxed file and process tools bound to one agent workspace."""

import asyncio
import logging
import os
import re
import shlex
import signal
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel

from agentcore.orchestrator.cancellation import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_VIEW_LIMIT = 200
DEFAULT_BASH_TIMEOUT = 120.0  # seconds
EXCLUDED_DIRS = {"node_modules", "dist", "build", "__pycache__", "venv"}


class ToolResult(BaseModel):
    """Outcome of one tool invocation."""
    success: bool
    output: str = ""
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str, output: str = "") -> "ToolResult":
        return cls(success=False, output=output, error=error)


TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "view",
        "description": "View the contents of a file. Use offset and limit for large files.",
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path to the file"},
                "offset": {"type": "integer", "description": "Start line number (1-based)"},
                "limit": {"type": "integer", "description": "Number of lines to show (default 200)"},
            },
            "required": ["file_path"],
        },
    },
    {
        "name": "edit",
        "description": (
            "Edit a file by replacing a specific string. "
            "The old_string must match exactly and uniquely."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path to the file"},
                "old_string": {"type": "string", "description": "Exact string to replace"},
                "new_string": {"type": "string", "description": "Replacement string"},
            },
            "required": ["file_path", "old_string", "new_string"],
        },
    },
    {
        "name": "bash",
        "description": (
            "Execute a shell command in the workspace. "
            "Use for running tests, builds, git commands, etc."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Command to execute"},
                "timeout": {"type": "number", "description": "Timeout in seconds (default 120)"},
                "cwd": {"type": "string", "description": "Working directory inside the workspace"},
            },
            "required": ["command"],
        },
    },
    {
        "name": "glob",
        "description": 'Find files matching a glob pattern (e.g., "**/*.py").',
        "parameters": {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Glob pattern"},
                "path": {"type": "string", "description": "Directory to search in"},
            },
            "required": ["pattern"],
        },
    },
    {
        "name": "grep",
        "description": "Search for a pattern in file contents using grep.",
        "parameters": {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Search pattern"},
                "path": {"type": "string", "description": "Directory to search in"},
                "include": {"type": "string", "description": 'File pattern to include (e.g., "*.py")'},
            },
            "required": ["pattern"],
        },
    },
    {
        "name": "ls",
        "description": "List the contents of a directory.",
        "parameters": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path"},
            },
            "required": ["path"],
        },
    },
]

class Sandbox:
    """
    Fixed tool set confined to one workspace root.

    Every path argument is resolved against the root and rejected if it
    escapes it, before any I/O happens. Validation problems come back as
    failed ToolResults so the model can adapt; nothing is raised to the caller.
    """

    def __init__(self, root: Path, default_bash_timeout: float = DEFAULT_BASH_TIMEOUT):
        """
        Initialize sandbox.

        Args:
            root: Workspace root directory
            default_bash_timeout: Seconds before a bash command is killed
        """
        self.root = Path(root).resolve()
        self.default_bash_timeout = default_bash_timeout

    def resolve_path(self, file_path: str) -> Path:
        """
        Resolve a path inside the workspace.

        Args:
            file_path: Relative (or absolute) path supplied by the model

        Returns:
            Canonical absolute path inside the root

        Raises:
            PathTraversalError: If the path resolves outside the root
        """
        resolved = (self.root / file_path).resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise PathTraversalError(f"Path traversal detected: {file_path}")
        return resolved

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    @staticmethod
    def tool_definitions() -> list[dict[str, Any]]:
        return [dict(definition) for definition in TOOL_DEFINITIONS]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        token: Optional[CancellationToken] = None
    ) -> ToolResult:
        """
        Dispatch a tool by name.

        Unknown tools and bad arguments come back as failed results.
        """
        handlers = {
            "view": self.view,
            "edit": self.edit,
            "glob": self.glob,
            "grep": self.grep,
            "ls": self.ls,
        }
        try:
            if name == "bash":
                return await self.bash(token=token, **arguments)
            handler = handlers.get(name)
            if handler is None:
                return ToolResult.failure(f"Unknown tool: {name}")
            return await handler(**arguments)
        except TypeError as e:
            return ToolResult.failure(f"Invalid arguments for {name}: {e}")

    async def view(
        self,
        file_path: str,
        offset: Optional[int] = None,
        limit: Optional[int] = None
    ) -> ToolResult:
        try:
            full_path = self.resolve_path(file_path)
            content = await asyncio.to_thread(full_path.read_text, encoding="utf-8")
        except (PathTraversalError, OSError, UnicodeDecodeError) as e:
            return ToolResult.failure(str(e))

        lines = content.split("\n")
        start = max(0, (offset or 1) - 1)
        end = min(len(lines), start + (limit or DEFAULT_VIEW_LIMIT))

        numbered = [
            f"{number:<6}|{line}"
            for number, line in enumerate(lines[start:end], start=start + 1)
        ]
        output = "\n".join(numbered)
        if end < len(lines):
            output += "\n... (truncated)"
        return ToolResult(success=True, output=output)

    async def edit(self, file_path: str, old_string: str, new_string: str) -> ToolResult:
        try:
            full_path = self.resolve_path(file_path)
            content = await asyncio.to_thread(full_path.read_text, encoding="utf-8")
        except (PathTraversalError, OSError, UnicodeDecodeError) as e:
            return ToolResult.failure(str(e))

        if not old_string:
            return ToolResult.failure("old_string must not be empty")

        occurrences = content.count(old_string)
        if occurrences == 0:
            return ToolResult.failure(f'String not found in file: "{old_string[:50]}..."')
        if occurrences > 1:
            return ToolResult.failure(
                f"Multiple occurrences found ({occurrences}). Be more specific."
            )

        try:
            await asyncio.to_thread(
                full_path.write_text, content.replace(old_string, new_string, 1), encoding="utf-8"
            )
        except OSError as e:
            return ToolResult.failure(str(e))

        return ToolResult(success=True, output=f"File edited successfully: {file_path}")

    async def bash(
        self,
        command: str,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        token: Optional[CancellationToken] = None
    ) -> ToolResult:
        """
        Run a shell command inside the workspace.

        The command runs in its own process group; on timeout or cancellation
        the whole group is killed.

        Args:
            command: Shell command line
            timeout: Seconds before the command is killed (default 120)
            cwd: Working directory relative to the workspace root
            token: Cancellation token of the calling task

        Returns:
            ToolResult with stdout (or stderr) and the exit status
        """
        try:
            workdir = self.resolve_path(cwd) if cwd else self.root
        except PathTraversalError as e:
            return ToolResult.failure(str(e))

        timeout = timeout or self.default_bash_timeout
        if token is not None and token.cancelled:
            return ToolResult.failure(f"Command cancelled: {token.reason}")

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(workdir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, "FORCE_COLOR": "0"},
                start_new_session=True
            )
        except OSError as e:
            return ToolResult.failure(str(e))

        communicate = asyncio.ensure_future(process.communicate())
        waiters = {communicate}
        cancel_waiter = None
        if token is not None:
            cancel_waiter = asyncio.ensure_future(token.wait())
            waiters.add(cancel_waiter)

        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._kill(process)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if not communicate.done():
            self._kill(process)
            stdout, _ = await communicate
            partial = stdout.decode(errors="replace") if stdout else ""
            if token is not None and token.cancelled:
                logger.info(f"Killed command on cancellation: {command}")
                return ToolResult.failure(f"Command cancelled: {token.reason}", output=partial)
            logger.warning(f"Command timed out after {timeout}s: {command}")
            return ToolResult.failure(f"Command timed out after {timeout}s", output=partial)

        stdout_bytes, stderr_bytes = communicate.result()
        stdout = stdout_bytes.decode(errors="replace")
        stderr = stderr_bytes.decode(errors="replace")
        code = process.returncode

        if code != 0:
            return ToolResult(
                success=False,
                output=stdout or stderr,
                error=f"Exit code {code}" + (f": {stderr}" if stderr else "")
            )
        return ToolResult(success=True, output=stdout or stderr)

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError:
            process.kill()

    async def glob(self, pattern: str, path: Optional[str] = None) -> ToolResult:
        try:
            search_root = self.resolve_path(path) if path else self.root
        except PathTraversalError as e:
            return ToolResult.failure(str(e))

        try:
            files = await asyncio.to_thread(self._walk_matches, search_root, pattern)
        except OSError as e:
            return ToolResult.failure(str(e))

        return ToolResult(success=True, output="\n".join(files) or "No files found")

    def _walk_matches(self, search_root: Path, pattern: str) -> list[str]:
        matcher = _glob_to_regex(pattern) if "*" in pattern else None
        matches = []

        for dirpath, dirnames, filenames in os.walk(search_root):
            dirnames[:] = sorted(
                d for d in dirnames if not d.startswith(".") and d not in EXCLUDED_DIRS
            )
            for filename in sorted(filenames):
                if filename.startswith("."):
                    continue
                relative_path = (Path(dirpath) / filename).relative_to(search_root).as_posix()
                if matcher is not None:
                    if matcher.match(relative_path):
                        matches.append(relative_path)
                elif pattern in relative_path:
                    matches.append(relative_path)

        return matches

    async def grep(
        self,
        pattern: str,
        path: Optional[str] = None,
        include: Optional[str] = None
    ) -> ToolResult:
        try:
            search_root = self.resolve_path(path) if path else self.root
        except PathTraversalError as e:
            return ToolResult.failure(str(e))

        include_arg = f"--include={shlex.quote(include)} " if include else ""
        result = await self.bash(
            command=f"grep -r -n {include_arg}-e {shlex.quote(pattern)} .",
            cwd=self.relative(search_root) if search_root != self.root else None
        )

        # grep exits 1 when nothing matched
        if not result.success and not result.output and result.error == "Exit code 1":
            return ToolResult(success=True, output="No matches found")
        return result

    async def ls(self, path: str = ".") -> ToolResult:
        try:
            full_path = self.resolve_path(path)
            entries = await asyncio.to_thread(lambda: sorted(full_path.iterdir()))
        except (PathTraversalError, OSError) as e:
            return ToolResult.failure(str(e))

        lines = []
        for entry in entries:
            kind = "d" if entry.is_dir() else "f" if entry.is_file() else "?"
            lines.append(f"{kind} {entry.name}")

        return ToolResult(success=True, output="\n".join(lines) or "(empty directory)")


def _glob_to_regex(pattern: str) -> re.Pattern:
    """Translate a glob with * and ** into a regex over posix relative paths."""
    parts = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$")


class PathTraversalError(ValueError):
    """Raised when a path escapes the workspace root."""
    pass
