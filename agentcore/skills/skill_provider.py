"""Skill lookup for agent instruction injection."""

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel

logger = logging.getLogger(__name__)

HEADING_PATTERN = re.compile(r"^#\s+(.+)$", re.M)
SKILL_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class SkillFile(BaseModel):
    name: str
    content: str


class Skill(BaseModel):
    """A named bundle of instruction text for agents."""
    id: str
    name: str
    instruction_files: list[SkillFile] = []


@runtime_checkable
class SkillProvider(Protocol):
    async def get_skill(self, skill_id: str) -> Optional[Skill]:
        ...


class DirectorySkillProvider:
    """
    Skills stored as directories of markdown files.

    Layout: <root>/<skill_id>/*.md. Every markdown file is an instruction
    file, read in name order. The skill name is the first `# heading` of
    SKILL.md when present, otherwise the directory name.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    async def get_skill(self, skill_id: str) -> Optional[Skill]:
        """
        Load a skill by id.

        Returns:
            The skill, or None if the id is invalid or no such directory exists
        """
        return await asyncio.to_thread(self._load, skill_id)

    def _load(self, skill_id: str) -> Optional[Skill]:
        if not SKILL_ID_PATTERN.match(skill_id) or skill_id in (".", ".."):
            logger.warning(f"Invalid skill id: {skill_id}")
            return None

        skill_dir = self.root / skill_id
        if not skill_dir.is_dir():
            logger.warning(f"Skill {skill_id} not found in {self.root}")
            return None

        files = [
            SkillFile(name=path.name, content=path.read_text(encoding="utf-8"))
            for path in sorted(skill_dir.glob("*.md"))
        ]

        name = skill_id
        for skill_file in files:
            if skill_file.name == "SKILL.md":
                heading = HEADING_PATTERN.search(skill_file.content)
                if heading:
                    name = heading.group(1).strip()

        return Skill(id=skill_id, name=name, instruction_files=files)
