"""Tool registration for Autodev MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from ..budget import TokenBudgetController
from ..checkpoints import CheckpointWriter
from ..config import AutodevSettings
from ..pool import WorktreePool
from ..workflow import PhaseStateMachine

if TYPE_CHECKING:
    from fastmcp import FastMCP

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    """Plain callables behind every registered tool, keyed by tool name."""

    functions: dict[str, Callable[..., Any]] = field(default_factory=dict)

    def __getitem__(self, name: str) -> Callable[..., Any]:
        return self.functions[name]

    @property
    def names(self) -> list[str]:
        return sorted(self.functions)


def register_tools(
    server: "FastMCP",
    *,
    settings: AutodevSettings,
    pool: WorktreePool,
    machine: PhaseStateMachine,
    checkpoints: CheckpointWriter,
    budget: TokenBudgetController,
) -> ToolHandles:
    """Register Autodev's MCP tools on the server."""

    handles = ToolHandles()

    def _register(name: str, description: str, fn: Callable[..., Any]) -> None:
        server.tool(name=name, description=description)(fn)
        handles.functions[name] = fn

    # Pool

    def _pool_init(size: int | None = None) -> dict[str, Any]:
        """Destroy any existing slots and create ``size`` idle ones."""

        state = pool.init(size)
        _emit_log("info", "Pool initialized via tool", extra={"pool_size": state.pool_size})
        return pool.status().as_dict()

    def _pool_acquire(task_id: str, base_ref: str | None = None) -> dict[str, Any]:
        """Allocate the lowest idle slot to a task and create its worktree and branch."""

        allocation = pool.acquire(task_id, base_ref)
        _emit_log(
            "info",
            "Slot acquired via tool",
            extra={"slot_id": allocation.slot_id, "task_id": allocation.task_id},
        )
        return allocation.as_dict()

    def _pool_release(slot_id: str) -> dict[str, Any]:
        result = pool.release(slot_id)
        if result.destroy.degraded:
            _emit_log(
                "warning",
                "Slot released with forced workspace removal",
                extra={"slot_id": slot_id},
            )
        return result.as_dict()

    def _pool_status() -> dict[str, Any]:
        return pool.status().as_dict()

    def _pool_health() -> dict[str, Any]:
        return pool.health_check().as_dict()

    def _pool_merge(target_ref: str | None = None) -> dict[str, Any]:
        """Merge every busy slot's branch in slot order, reporting per-branch conflicts."""

        report = pool.merge_all(target_ref)
        _emit_log(
            "info" if report.ok else "warning",
            "Pool merge finished",
            extra={"merged": len(report.merged), "failed": len(report.failed)},
        )
        return report.as_dict()

    def _pool_cleanup() -> dict[str, Any]:
        pool.cleanup()
        return {"status": "cleaned", "pool_dir": str(pool.pool_dir)}

    def _pool_reset(size: int | None = None) -> dict[str, Any]:
        pool.reset(size)
        return pool.status().as_dict()

    _register("pool_init", "Initialize the worktree pool with a fixed number of idle slots.", _pool_init)
    _register(
        "pool_acquire",
        "Allocate an isolated git worktree and branch for a task. Fails immediately when the pool is exhausted.",
        _pool_acquire,
    )
    _register("pool_release", "Destroy a slot's worktree and branch and mark it idle.", _pool_release)
    _register("pool_status", "Report pool size and per-slot status.", _pool_status)
    _register(
        "pool_health",
        "Report drift between recorded slot state and the filesystem without repairing it.",
        _pool_health,
    )
    _register("pool_merge", "Merge all busy slot branches into a target ref.", _pool_merge)
    _register("pool_cleanup", "Remove every pool worktree, branch and the pool state.", _pool_cleanup)
    _register("pool_reset", "Clean up and re-initialize the pool.", _pool_reset)

    # Workflow state

    def _state_init(initial: str = "IDLE") -> dict[str, Any]:
        state = machine.init(initial)
        return state.model_dump(mode="json")

    def _state_get() -> dict[str, Any]:
        state = machine.load()
        if state is None:
            return {"current_state": "IDLE", "initialized": False}
        return {**state.model_dump(mode="json"), "initialized": True}

    def _state_transition(new_state: str, success: bool = True) -> dict[str, Any]:
        """Move the workflow to a new phase and return its mandatory skills."""

        result = machine.transition(new_state, success=success)
        _emit_log(
            "info",
            "Transitioned via tool",
            extra={"to": result.current_state.value, "outcome": result.outcome},
        )
        return result.as_dict()

    def _state_set_work_type(
        work_type: str,
        focus: list[str] | None = None,
        confidence: float = 1.0,
    ) -> dict[str, Any]:
        state = machine.set_work_type(work_type, focus, confidence)
        return {
            "work_type": state.work_type.value if state.work_type else None,
            "focus": state.focus,
            "classification_confidence": state.classification_confidence,
            "mandatory_skills": state.mandatory_skills,
        }

    def _state_add_checkpoint(checkpoint_file: str, description: str = "") -> dict[str, Any]:
        note = checkpoints.append_checkpoint_note(checkpoint_file, description)
        return {"checkpoint_file": checkpoint_file, "note": str(note)}

    def _state_resume() -> dict[str, Any]:
        return machine.resume_info().as_dict()

    def _state_skills(phase: str | None = None, work_type: str | None = None) -> list[str]:
        if phase is None:
            state = machine.load()
            if state is None:
                return machine.resolve_skills("IDLE", work_type)
            return machine.resolve_skills(state.current_state, work_type or state.work_type)
        return machine.resolve_skills(phase, work_type)

    def _state_archive() -> dict[str, Any]:
        target = machine.archive()
        return {"archived": str(target) if target else None}

    _register("state_init", "Start a new workflow session at the given phase.", _state_init)
    _register("state_get", "Return the full workflow record.", _state_get)
    _register(
        "state_transition",
        "Transition to a new phase. Set success=false to mark the departed phase abandoned.",
        _state_transition,
    )
    _register(
        "state_set_work_type",
        "Record the classified work type and focus and recompute mandatory skills.",
        _state_set_work_type,
    )
    _register(
        "state_add_checkpoint",
        "Register a checkpoint file and append a note to the current phase's checkpoint log.",
        _state_add_checkpoint,
    )
    _register("state_resume", "Return the minimal bundle needed to resume the session.", _state_resume)
    _register("state_skills", "Resolve mandatory skills for a phase and work type.", _state_skills)
    _register("state_archive", "Archive the finished workflow record.", _state_archive)

    # Checkpoints

    def _checkpoint_write(phase: str, summary: str) -> dict[str, Any]:
        return checkpoints.write_phase_checkpoint(phase, summary).as_dict()

    def _checkpoint_task(task_id: str, learning: str) -> dict[str, Any]:
        return checkpoints.write_task_learning(task_id, learning).as_dict()

    def _checkpoint_group(group: int, stage: str, note: str = "") -> dict[str, Any]:
        return checkpoints.write_group_checkpoint(group, stage, note).as_dict()

    def _checkpoint_context() -> dict[str, Any]:
        return {"path": str(checkpoints.write_context_summary())}

    def _checkpoint_read() -> dict[str, Any]:
        context = checkpoints.read_resume_context()
        if context is None:
            return {"found": False}
        return {"found": True, **context.as_dict()}

    def _checkpoint_handoff(reason: str = "token_limit") -> dict[str, Any]:
        handoff = checkpoints.prepare_handoff(reason)
        _emit_log("warning", "Handoff prepared via tool", extra={"reason": handoff.reason})
        return handoff.as_dict()

    def _checkpoint_archive() -> dict[str, Any]:
        target = checkpoints.archive()
        return {"archived": str(target) if target else None}

    _register("checkpoint_write", "Write an immutable phase checkpoint and refresh the context summary.", _checkpoint_write)
    _register("checkpoint_task", "Record learnings for a task.", _checkpoint_task)
    _register(
        "checkpoint_group",
        "Snapshot busy pool slots before, after, or on failure of a parallel group.",
        _checkpoint_group,
    )
    _register("checkpoint_context", "Regenerate the context summary used for resume.", _checkpoint_context)
    _register("checkpoint_read", "Read the context summary and list memory files.", _checkpoint_read)
    _register(
        "checkpoint_handoff",
        "Write the context summary, next actions, and the handoff signal file.",
        _checkpoint_handoff,
    )
    _register("checkpoint_archive", "Move memory files into a timestamped archive folder.", _checkpoint_archive)

    # Budget

    def _budget_init(
        total: int | None = None,
        warning: float | None = None,
        checkpoint: float | None = None,
    ) -> dict[str, Any]:
        return budget.init(total, warning, checkpoint).model_dump(mode="json")

    def _budget_add(tokens: int, phase: str | None = None) -> dict[str, Any]:
        """Record estimated tokens and return the resulting usage band."""

        report = budget.add(tokens, phase)
        return {**report.as_dict(), "message": report.message()}

    def _budget_estimate(operation: str, size: str = "medium") -> dict[str, Any]:
        return {"operation": operation, "size": size, "tokens": budget.estimate(operation, size)}

    def _budget_status() -> dict[str, Any]:
        return budget.status().as_dict()

    def _budget_check_phase(phase: str) -> dict[str, Any]:
        return budget.check_phase_budget(phase).as_dict()

    _register("budget_init", "Reset token usage and set the budget and thresholds.", _budget_init)
    _register("budget_add", "Add estimated token usage, optionally attributed to a phase.", _budget_add)
    _register("budget_estimate", "Estimate the token cost of a tool operation.", _budget_estimate)
    _register("budget_status", "Report usage, remaining budget and per-phase breakdown.", _budget_status)
    _register(
        "budget_check_phase",
        "Compare one phase's usage against its fixed allotment.",
        _budget_check_phase,
    )

    logger.debug(
        "Registered tools",
        extra={"count": len(handles.functions), "state_dir": str(settings.resolved_state_dir)},
    )
    return handles


def _emit_log(
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    log_method = getattr(logger, level, logger.info)
    log_method(message, extra=extra or {})


__all__ = ["register_tools", "ToolHandles"]
