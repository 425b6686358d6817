"""Skill table loading utilities."""

from __future__ import annotations

from importlib import resources
from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import SkillTable

DEFAULT_TABLE = "default_skills.yaml"


class SkillTableError(RuntimeError):
    """Raised when the skill table cannot be parsed or does not cover every phase."""


def _parse(text: str, source: str) -> SkillTable:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise SkillTableError(f"Failed to parse YAML in {source}: {exc}") from exc

    if not isinstance(document, dict):
        raise SkillTableError(f"Skill table in {source} must be a mapping")

    try:
        return SkillTable.model_validate(document)
    except ValidationError as exc:
        raise SkillTableError(f"Skill table validation error in {source}: {exc}") from exc


def load_skill_table(path: Path | None = None) -> SkillTable:
    """Load a skill table from ``path`` or the packaged default table."""

    if path is None:
        text = resources.files(__package__).joinpath(DEFAULT_TABLE).read_text(encoding="utf-8")
        return _parse(text, DEFAULT_TABLE)

    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SkillTableError(f"Cannot read skill table {path}: {exc}") from exc
    return _parse(text, str(path))


__all__ = ["SkillTableError", "load_skill_table"]
