"""Skill table models mapping (phase, work type) to mandatory skills."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from ..storage.models import Phase, WorkType


class PhaseSkills(BaseModel):
    """Skills required during one phase, with optional per-work-type variants."""

    default: list[str] = Field(
        default_factory=list,
        description="Ordered skill ids used when no work-type variant applies.",
    )
    work_types: dict[WorkType, list[str]] = Field(
        default_factory=dict,
        description="Ordered skill ids keyed by work type, overriding the default.",
    )

    @field_validator("default", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError("Skill lists must be sequences of strings")

    @field_validator("work_types", mode="before")
    @classmethod
    def _normalize_variants(cls, value: Any):  # type: ignore[override]
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise TypeError("work_types must map work type names to skill lists")
        return {
            str(key).strip().upper(): list(skills or []) for key, skills in value.items()
        }

    @field_validator("default")
    @classmethod
    def _validate_skill_ids(cls, value: list[str]) -> list[str]:
        return _clean_skill_ids(value)

    @model_validator(mode="after")
    def _validate_variant_ids(self) -> "PhaseSkills":
        self.work_types = {key: _clean_skill_ids(ids) for key, ids in self.work_types.items()}
        return self

    def resolve(self, work_type: WorkType | None) -> list[str]:
        if work_type is not None and work_type in self.work_types:
            return list(self.work_types[work_type])
        return list(self.default)


class SkillTable(BaseModel):
    """Complete skill table. Every phase must have an entry."""

    version: int = 1
    phases: dict[Phase, PhaseSkills]

    @field_validator("phases", mode="before")
    @classmethod
    def _normalize_phase_keys(cls, value: Any):  # type: ignore[override]
        if not isinstance(value, dict):
            raise TypeError("phases must map phase names to skill definitions")
        return {
            str(key).strip().upper(): (entry if entry is not None else {})
            for key, entry in value.items()
        }

    @model_validator(mode="after")
    def _validate_total_coverage(self) -> "SkillTable":
        missing = [phase.value for phase in Phase if phase not in self.phases]
        if missing:
            raise ValueError(f"Skill table is missing phases: {', '.join(missing)}")
        return self

    def resolve(self, phase: Phase, work_type: WorkType | None) -> list[str]:
        return self.phases[phase].resolve(work_type)


def _clean_skill_ids(values: list[str]) -> list[str]:
    cleaned: list[str] = []
    for value in values:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("Skill ids must not be empty")
        cleaned.append(normalized)
    return cleaned


__all__ = ["PhaseSkills", "SkillTable"]
