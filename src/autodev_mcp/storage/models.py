"""Schemas for the persisted pool and workflow documents."""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_SLOT_ID = re.compile(r"^wt-(\d+)$")


class Phase(str, Enum):
    """Workflow phases in the order a typical task visits them."""

    IDLE = "IDLE"
    DETECT = "DETECT"
    CLASSIFY = "CLASSIFY"
    PLAN = "PLAN"
    EXECUTE = "EXECUTE"
    INTEGRATE = "INTEGRATE"
    REVIEW = "REVIEW"
    COMPLETE = "COMPLETE"
    RESEARCH = "RESEARCH"


class WorkType(str, Enum):
    FRONTEND = "FRONTEND"
    BACKEND = "BACKEND"
    FULLSTACK = "FULLSTACK"
    DOCUMENTATION = "DOCUMENTATION"
    DOCUMENTS = "DOCUMENTS"
    INTEGRATION = "INTEGRATION"
    TESTING = "TESTING"
    CREATIVE = "CREATIVE"
    RESEARCH = "RESEARCH"


class SlotStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"


def slot_index(slot_id: str) -> int:
    """Return the numeric part of a slot id; ordering is always by this value."""

    match = _SLOT_ID.match(slot_id)
    if match is None:
        raise ValueError(f"Slot id '{slot_id}' does not match 'wt-<n>'")
    return int(match.group(1))


class PoolSlot(BaseModel):
    """A reusable allocation unit backed by one worktree and one branch."""

    model_config = ConfigDict(extra="forbid")

    id: str
    status: SlotStatus = SlotStatus.IDLE
    task_id: str | None = None
    path: str
    branch: str | None = None
    acquired_at: datetime | None = None

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        slot_index(value)
        return value

    @model_validator(mode="after")
    def _branch_iff_busy(self) -> "PoolSlot":
        busy = self.status is SlotStatus.BUSY
        if busy != (self.branch is not None):
            raise ValueError(f"Slot {self.id}: branch must be set if and only if status is busy")
        if busy and not self.task_id:
            raise ValueError(f"Slot {self.id}: busy slot requires a task_id")
        return self

    @property
    def index(self) -> int:
        return slot_index(self.id)


class PoolState(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: str = "1.0"
    pool_size: int = Field(..., ge=1)
    created_at: datetime
    slots: list[PoolSlot]

    @model_validator(mode="after")
    def _validate_slots(self) -> "PoolState":
        if len(self.slots) != self.pool_size:
            raise ValueError(
                f"pool_size is {self.pool_size} but {len(self.slots)} slots are recorded"
            )
        ids = [slot.id for slot in self.slots]
        if len(set(ids)) != len(ids):
            raise ValueError("Slot ids must be unique")
        return self

    def ordered_slots(self) -> list[PoolSlot]:
        return sorted(self.slots, key=lambda slot: slot.index)

    def find(self, slot_id: str) -> PoolSlot | None:
        for slot in self.slots:
            if slot.id == slot_id:
                return slot
        return None


class TokenUsage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    estimated: int = Field(default=0, ge=0)
    budget: int = Field(default=200_000, ge=1)
    warning_threshold: float = 0.80
    checkpoint_threshold: float = 0.95
    phase_usage: dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "TokenUsage":
        if not 0 < self.warning_threshold < self.checkpoint_threshold <= 1:
            raise ValueError(
                "token_usage thresholds must satisfy 0 < warning < checkpoint <= 1"
            )
        return self

    @property
    def fraction(self) -> float:
        return self.estimated / self.budget


class TransitionRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    from_state: Phase
    to_state: Phase
    outcome: str = "completed"
    at: datetime

    @field_validator("outcome")
    @classmethod
    def _validate_outcome(cls, value: str) -> str:
        if value not in {"completed", "abandoned"}:
            raise ValueError("outcome must be 'completed' or 'abandoned'")
        return value


class WorkflowState(BaseModel):
    """Persisted state machine record for one session."""

    model_config = ConfigDict(extra="forbid")

    version: str = "3.0"
    current_state: Phase = Phase.IDLE
    previous_state: Phase | None = None
    work_type: WorkType | None = None
    classification_confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    focus: list[str] = Field(default_factory=list)
    mandatory_skills: list[str] = Field(default_factory=list)
    completed_phases: list[Phase] = Field(default_factory=list)
    abandoned_phases: list[Phase] = Field(default_factory=list)
    history: list[TransitionRecord] = Field(default_factory=list)
    checkpoint_files: list[str] = Field(default_factory=list)
    session_id: str
    started_at: datetime
    last_transition: datetime | None = None
    last_checkpoint: datetime | None = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)

    @field_validator("previous_state", "work_type", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("session_id")
    @classmethod
    def _validate_session_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("session_id must not be empty")
        return normalized


__all__ = [
    "Phase",
    "PoolSlot",
    "PoolState",
    "SlotStatus",
    "TokenUsage",
    "TransitionRecord",
    "WorkType",
    "WorkflowState",
    "slot_index",
]
