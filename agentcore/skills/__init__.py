"""Skill instruction sources for agents."""

from agentcore.skills.skill_provider import DirectorySkillProvider, Skill, SkillFile, SkillProvider

__all__ = ["DirectorySkillProvider", "Skill", "SkillFile", "SkillProvider"]
