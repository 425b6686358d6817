"""Storage abstractions for Autodev MCP."""

from .models import (
    Phase,
    PoolSlot,
    PoolState,
    SlotStatus,
    TokenUsage,
    TransitionRecord,
    WorkflowState,
    WorkType,
    slot_index,
)
from .store import ResourceStore

__all__ = [
    "Phase",
    "PoolSlot",
    "PoolState",
    "ResourceStore",
    "SlotStatus",
    "TokenUsage",
    "TransitionRecord",
    "WorkType",
    "WorkflowState",
    "slot_index",
]
