"""Skill table models and loader exports."""

from .loader import SkillTableError, load_skill_table
from .models import PhaseSkills, SkillTable

__all__ = [
    "PhaseSkills",
    "SkillTable",
    "SkillTableError",
    "load_skill_table",
]
