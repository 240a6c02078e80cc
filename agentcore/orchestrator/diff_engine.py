"""Best-effort application of git-style diffs found in model output."""

import asyncio
import logging
import re
import uuid
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from agentcore.app.models.change import CodeChange
from agentcore.orchestrator.cancellation import CancellationToken
from agentcore.orchestrator.events import EventBus, EventType
from agentcore.sandbox.tools import PathTraversalError, Sandbox
from agentcore.storage.base import AgentStore

logger = logging.getLogger(__name__)

DIFF_BLOCK_PATTERN = re.compile(r"diff --git a/(\S+) b/(\S+)[^\n]*\n(.*?)(?=diff --git |\Z)", re.S)
HUNK_HEADER_PATTERN = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
FILE_HEADER_PREFIXES = (
    "new file mode",
    "deleted file mode",
    "index ",
    "similarity index",
    "rename from",
    "rename to",
    "--- ",
    "+++ ",
)


class DiffBlock(BaseModel):
    """One `diff --git` section of a response."""
    old_path: str
    new_path: str
    body: str
    text: str  # full block including the header line


class Hunk(BaseModel):
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[str] = []  # resulting lines, markers stripped

    @property
    def base(self) -> int:
        """Zero-based index of the first original line the hunk replaces."""
        if self.old_count == 0:
            return self.old_start
        return max(self.old_start - 1, 0)


def parse_diff_blocks(content: str) -> list[DiffBlock]:
    """
    Find every git-style diff block in free-form text.

    A block runs from its `diff --git a/X b/Y` header to the next header or
    the end of the text. Prose and code fences around the blocks are ignored.
    """
    return [
        DiffBlock(
            old_path=match.group(1),
            new_path=match.group(2),
            body=match.group(3),
            text=match.group(0)
        )
        for match in DIFF_BLOCK_PATTERN.finditer(content)
    ]


def parse_hunks(body: str) -> list[Hunk]:
    """
    Parse the hunks of one diff block.

    Added lines and context lines are kept with their marker stripped, removed
    lines are dropped. Unprefixed lines are kept as-is. A hunk ends at the next
    `@@` header, a closing code fence, or the end of the block.
    """
    hunks: list[Hunk] = []
    current: Optional[Hunk] = None

    lines = body.split("\n")
    if body.endswith("\n"):
        lines.pop()  # split artifact, not an empty line of the diff

    for line in lines:
        header = HUNK_HEADER_PATTERN.match(line)
        if header:
            current = Hunk(
                old_start=int(header.group(1)),
                old_count=int(header.group(2)) if header.group(2) is not None else 1,
                new_start=int(header.group(3)),
                new_count=int(header.group(4)) if header.group(4) is not None else 1
            )
            hunks.append(current)
            continue

        if current is None:
            continue
        if line.startswith("```"):
            current = None
            continue
        if line.startswith("\\"):
            continue  # "\ No newline at end of file"
        if line.startswith("+") or line.startswith(" "):
            current.lines.append(line[1:])
        elif line.startswith("-"):
            continue
        else:
            current.lines.append(line)

    return hunks


def _new_file_lines(body: str) -> list[str]:
    lines = []
    for line in body.split("\n"):
        if line.startswith(FILE_HEADER_PREFIXES) or line.startswith("```") or line.startswith("\\"):
            continue
        if line.startswith("+") or line.startswith(" "):
            lines.append(line[1:])
        elif not line.startswith("-"):
            lines.append(line)

    while lines and lines[-1] == "":
        lines.pop()
    return lines


def apply_diff_block(original: str, body: str) -> Optional[str]:
    """
    Apply one diff block to a file's content.

    Each hunk replaces old_count lines starting at its old-file position with
    its context and added lines. Hunks are applied independently against the
    original, last position first. Context lines are not checked against the
    file, so a stale diff applies at its stated position.

    Args:
        original: Current file content ("" for a missing file)
        body: Block body following the `diff --git` header line

    Returns:
        New file content, or None when the block carries no usable hunk
    """
    hunks = parse_hunks(body)

    if not hunks:
        if "new file" not in body:
            return None
        lines = _new_file_lines(body)
        return "\n".join(lines) + "\n" if lines else ""

    had_trailing_newline = original == "" or original.endswith("\n")
    lines = original.split("\n")
    if original.endswith("\n") or original == "":
        lines.pop()

    for hunk in sorted(hunks, key=lambda h: h.base, reverse=True):
        base = min(hunk.base, len(lines))
        lines[base:base + hunk.old_count] = hunk.lines

    if not lines:
        return ""
    result = "\n".join(lines)
    return result + "\n" if had_trailing_newline else result


class DiffEngine:
    """
    Turns diff blocks in an AI response into file writes and CodeChange records.

    Each file is handled on its own: a bad path, unreadable original or failed
    write is logged and skipped without affecting the remaining files.
    """

    def __init__(self, store: AgentStore, events: Optional[EventBus] = None):
        """
        Initialize diff engine.

        Args:
            store: Persistence for CodeChange records
            events: Event bus for change.created notifications
        """
        self.store = store
        self.events = events or EventBus()

    async def apply_response(
        self,
        content: str,
        sandbox: Sandbox,
        agent_id: str,
        task_id: str,
        token: Optional[CancellationToken] = None
    ) -> list[CodeChange]:
        """
        Apply every diff block in content inside the sandbox root.

        Args:
            content: Model response text
            sandbox: Sandbox of the agent's workspace
            agent_id: Owning agent
            task_id: Task that produced the response
            token: Cancellation token checked before each file

        Returns:
            CodeChange records for the files that were processed

        Raises:
            TaskCancelledError: If the token is cancelled between files
        """
        changes: list[CodeChange] = []
        blocks = parse_diff_blocks(content)
        if not blocks:
            logger.debug(f"No diff blocks in response for task {task_id}")
            return changes

        for block in blocks:
            if token is not None:
                token.raise_if_cancelled()

            try:
                target = sandbox.resolve_path(block.new_path)
            except PathTraversalError as e:
                logger.warning(f"Skipping diff block for task {task_id}: {e}")
                continue

            try:
                original = await asyncio.to_thread(_read_text, target)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping {block.new_path}: cannot read original ({e})")
                continue

            new_content = apply_diff_block(original, block.body)
            if new_content is None:
                logger.warning(f"Skipping {block.new_path}: diff block has no hunks")
                continue

            change = CodeChange(
                id=str(uuid.uuid4()),
                file_path=sandbox.relative(target),
                original_content=original,
                new_content=new_content,
                diff=block.text,
                agent_id=agent_id,
                task_id=task_id
            )
            await self.store.create_code_change(change)
            changes.append(change)
            self.events.emit(EventType.CHANGE_CREATED, agent_id, change=change)

            try:
                await asyncio.to_thread(_write_text, target, new_content)
                logger.info(f"Applied diff to {change.file_path} for task {task_id}")
            except OSError as e:
                logger.error(f"Failed to write {change.file_path}: {e}")

        return changes


def _read_text(path: Path) -> str:
    if not path.is_file():
        return ""
    return path.read_text(encoding="utf-8")


def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
