"""Memory files that let a later session resume without replaying history.

Checkpoints are write-once markdown documents in the memory directory. The
single mutable document is ``context-summary.md``, regenerated on demand.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import yaml

from .config import AutodevSettings
from .errors import InvalidInputError, PoolNotInitializedError
from .git import GitRunner
from .pool import WorktreePool, validate_task_id
from .storage import Phase, SlotStatus, WorkflowState
from .workflow import PhaseStateMachine, parse_phase

logger = logging.getLogger(__name__)

CONTEXT_SUMMARY = "context-summary.md"
NEXT_ACTIONS = "next-actions.md"
GROUP_STAGES = ("pre", "post", "failed")

PLAN_HEAD_LINES = 50
PROGRESS_TAIL_LINES = 20


@dataclass(slots=True)
class Checkpoint:
    kind: str
    path: Path
    created_at: datetime
    summary: str
    phase: Phase | None = None
    task_id: str | None = None
    referenced_files: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "path": str(self.path),
            "created_at": self.created_at.isoformat(),
            "summary": self.summary,
            "phase": self.phase.value if self.phase else None,
            "task_id": self.task_id,
            "referenced_files": list(self.referenced_files),
        }


@dataclass(slots=True)
class Handoff:
    context_summary: Path
    next_actions: Path
    signal: Path
    reason: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "context_summary": str(self.context_summary),
            "next_actions": str(self.next_actions),
            "signal": str(self.signal),
            "reason": self.reason,
        }


@dataclass(slots=True)
class ResumeContext:
    summary: str | None
    memory_files: list[Path] = field(default_factory=list)

    def render(self) -> str:
        lines = ["=== RESUME CONTEXT ===", ""]
        if self.summary is not None:
            lines += ["### Context Summary ###", self.summary.rstrip(), ""]
        lines.append("### Available Memory Files ###")
        lines += [f"- {path}" for path in self.memory_files]
        lines += ["", "=== END RESUME CONTEXT ==="]
        return "\n".join(lines)

    def as_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "memory_files": [str(path) for path in self.memory_files],
        }


class CheckpointWriter:
    def __init__(
        self,
        machine: PhaseStateMachine,
        git: GitRunner,
        *,
        memory_dir: Path,
        progress_file: Path,
        plans_dir: Path,
        handoff_signal: Path,
        pool: WorktreePool | None = None,
        pid: Callable[[], int] = os.getpid,
    ) -> None:
        self._machine = machine
        self._store = machine.store
        self._git = git
        self._memory_dir = Path(memory_dir)
        self._progress_file = Path(progress_file)
        self._plans_dir = Path(plans_dir)
        self._handoff_signal = Path(handoff_signal)
        self._pool = pool
        self._pid = pid

    @classmethod
    def from_settings(
        cls,
        settings: AutodevSettings,
        machine: PhaseStateMachine,
        git: GitRunner,
        pool: WorktreePool | None = None,
    ) -> "CheckpointWriter":
        return cls(
            machine,
            git,
            memory_dir=settings.memory_dir,
            progress_file=settings.progress_file,
            plans_dir=settings.plans_dir,
            handoff_signal=settings.resolved_state_dir / ".handoff-requested",
            pool=pool,
        )

    @property
    def memory_dir(self) -> Path:
        return self._memory_dir

    @property
    def context_summary_path(self) -> Path:
        return self._memory_dir / CONTEXT_SUMMARY

    @property
    def handoff_signal(self) -> Path:
        return self._handoff_signal

    def write_phase_checkpoint(self, phase: Phase | str, summary: str) -> Checkpoint:
        """Write a phase summary, register it, and refresh the context summary."""

        parsed = parse_phase(phase)
        summary = _require_text(summary, "Checkpoint summary")
        now = self._machine.now()
        changed = self._git.changed_files()
        files_section = "\n".join(f"- {name}" for name in changed) if changed else "- No git changes tracked"
        body = (
            f"# Phase {parsed.value} Summary\n"
            f"Generated: {_stamp_iso(now)}\n\n"
            f"## Key Decisions\n{summary}\n\n"
            f"## Files Created/Modified\n{files_section}\n\n---\n"
        )

        with self._store.locked():
            path = self._create_exclusive(f"phase-{parsed.value.lower()}", now, body)
            self._register(path)
            self.write_context_summary()

        logger.info("Phase checkpoint written", extra={"phase": parsed.value, "path": str(path)})
        return Checkpoint(
            kind="phase",
            path=path,
            created_at=now,
            summary=summary,
            phase=parsed,
            referenced_files=list(changed or []),
        )

    def write_task_learning(self, task_id: str, learning: str) -> Checkpoint:
        task_id = validate_task_id(task_id)
        learning = _require_text(learning, "Learning")
        now = self._machine.now()
        test_result, iterations = self._task_counters(task_id)
        body = (
            f"# Task {task_id} Learnings\n"
            f"Generated: {_stamp_iso(now)}\n\n"
            f"## What Was Done\n{learning}\n\n"
            "## Verification Results\n"
            f"- Tests: {test_result}\n"
            f"- Iterations: {iterations}\n\n---\n"
        )

        with self._store.locked():
            path = self._create_exclusive(f"task-{task_id}-learnings", now, body)
            self._register(path)

        logger.info("Task learning written", extra={"task_id": task_id, "path": str(path)})
        return Checkpoint(kind="task", path=path, created_at=now, summary=learning, task_id=task_id)

    def write_group_checkpoint(self, group: int, stage: str, note: str = "") -> Checkpoint:
        """Snapshot busy pool slots before, after, or on failure of a parallel group."""

        if group < 1:
            raise InvalidInputError(f"Group number must be positive, got {group}")
        stage = (stage or "").strip().lower()
        if stage not in GROUP_STAGES:
            raise InvalidInputError(
                f"Invalid group stage '{stage}'. Valid stages: {', '.join(GROUP_STAGES)}"
            )

        now = self._machine.now()
        slot_lines = self._busy_slot_lines()
        body = (
            f"# Group {group} Checkpoint ({stage})\n"
            f"Generated: {_stamp_iso(now)}\n\n"
            f"## Note\n{note.strip() or '-'}\n\n"
            "## Active Slots\n" + "\n".join(slot_lines) + "\n\n---\n"
        )

        with self._store.locked():
            path = self._create_exclusive(f"group-{group}-{stage}", now, body)
            self._register(path)

        logger.info(
            "Group checkpoint written",
            extra={"group": group, "stage": stage, "path": str(path)},
        )
        return Checkpoint(kind="group", path=path, created_at=now, summary=note.strip())

    def write_context_summary(self) -> Path:
        """Overwrite the resume document from the current workflow, plan and progress."""

        with self._store.locked():
            state = self._machine.load()
            now = self._machine.now()
            self._memory_dir.mkdir(parents=True, exist_ok=True)
            text = self._render_context_summary(state, now)
            path = self._store.write_text(self.context_summary_path, text)
        logger.debug("Context summary refreshed", extra={"path": str(path)})
        return path

    def prepare_handoff(self, reason: str = "token_limit") -> Handoff:
        reason = (reason or "").strip() or "token_limit"
        with self._store.locked():
            summary_path = self.write_context_summary()
            now = self._machine.now()
            phase = self._machine.current_state()
            next_actions = self._store.write_text(
                self._memory_dir / NEXT_ACTIONS, self._render_next_actions(phase, now)
            )
            signal = self._store.write_text(
                self._handoff_signal,
                yaml.safe_dump(
                    {"timestamp": _stamp_iso(now), "reason": reason, "pid": self._pid()},
                    sort_keys=False,
                ),
            )

        logger.warning("Handoff requested", extra={"reason": reason, "phase": phase.value})
        return Handoff(
            context_summary=summary_path, next_actions=next_actions, signal=signal, reason=reason
        )

    def read_resume_context(self) -> ResumeContext | None:
        if not self._memory_dir.is_dir():
            return None
        summary_path = self.context_summary_path
        summary = summary_path.read_text(encoding="utf-8") if summary_path.is_file() else None
        others = self._memory_files()
        if summary is None and not others:
            return None
        return ResumeContext(summary=summary, memory_files=others)

    def append_checkpoint_note(self, checkpoint_file: str | Path, description: str = "") -> Path:
        """Register ``checkpoint_file`` and append a note to the current phase's log."""

        with self._store.locked():
            state = self._machine.add_checkpoint(checkpoint_file)
            now = self._machine.now()
            note_path = self._memory_dir / f"{state.current_state.value.lower()}-checkpoint.md"
            self._memory_dir.mkdir(parents=True, exist_ok=True)
            lines = [f"## Checkpoint: {checkpoint_file}", f"- Time: {_stamp_iso(now)}"]
            if description.strip():
                lines.append(f"- Description: {description.strip()}")
            with note_path.open("a", encoding="utf-8") as handle:
                handle.write("\n".join(lines) + "\n\n")
        return note_path

    def archive(self) -> Path | None:
        """Move every markdown memory file into a new ``archive-<stamp>`` folder."""

        with self._store.locked():
            files = sorted(self._memory_dir.glob("*.md")) if self._memory_dir.is_dir() else []
            if not files:
                return None
            now = self._machine.now()
            target = self._memory_dir / f"archive-{now.strftime('%Y%m%d-%H%M%S')}"
            suffix = 1
            while target.exists():
                suffix += 1
                target = self._memory_dir / f"archive-{now.strftime('%Y%m%d-%H%M%S')}-{suffix}"
            target.mkdir(parents=True)
            for path in files:
                shutil.move(str(path), str(target / path.name))

        logger.info("Memory archived", extra={"path": str(target), "files": len(files)})
        return target

    def _create_exclusive(self, prefix: str, now: datetime, body: str) -> Path:
        self._memory_dir.mkdir(parents=True, exist_ok=True)
        base = f"{prefix}-{now.strftime('%Y%m%d-%H%M%S')}"
        attempt = 1
        while True:
            name = f"{base}.md" if attempt == 1 else f"{base}-{attempt}.md"
            path = self._memory_dir / name
            try:
                with path.open("x", encoding="utf-8") as handle:
                    handle.write(body)
            except FileExistsError:
                attempt += 1
                continue
            return path

    def _register(self, path: Path) -> None:
        if self._machine.load() is None:
            logger.info("No workflow session; checkpoint not registered", extra={"path": str(path)})
            return
        self._machine.add_checkpoint(self._display(path))

    def _display(self, path: Path) -> str:
        try:
            return str(path.resolve().relative_to(self._git.repo_root.resolve()))
        except ValueError:
            return str(path)

    def _memory_files(self) -> list[Path]:
        return sorted(
            path for path in self._memory_dir.glob("*.md") if path.name != CONTEXT_SUMMARY
        )

    def _task_counters(self, task_id: str) -> tuple[str, int]:
        if not self._progress_file.is_file():
            return "unknown", 0
        try:
            text = self._progress_file.read_text(encoding="utf-8", errors="replace")
            document = yaml.safe_load(text) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning(
                "Progress file unreadable; using default counters",
                extra={"path": str(self._progress_file), "error": str(exc)},
            )
            return "unknown", 0

        tasks = document.get("tasks") if isinstance(document, dict) else None
        entry = tasks.get(task_id) if isinstance(tasks, dict) else None
        if not isinstance(entry, dict):
            return "unknown", 0
        test_result = entry.get("test_result")
        iterations = entry.get("iterations")
        return (
            str(test_result) if test_result is not None else "unknown",
            iterations if isinstance(iterations, int) else 0,
        )

    def _busy_slot_lines(self) -> list[str]:
        if self._pool is None:
            return ["- Pool not configured"]
        try:
            status = self._pool.status()
        except PoolNotInitializedError:
            return ["- Pool not initialized"]
        busy = [slot for slot in status.slots if slot.status is SlotStatus.BUSY]
        if not busy:
            return ["- No busy slots"]
        return [f"- {slot.id}: {slot.task_id} ({slot.branch}) at {slot.path}" for slot in busy]

    def _latest_plan(self) -> Path | None:
        if not self._plans_dir.is_dir():
            return None
        plans = list(self._plans_dir.glob("auto-*.md"))
        if not plans:
            return None
        return max(plans, key=lambda path: (path.stat().st_mtime, path.name))

    def _render_context_summary(self, state: WorkflowState | None, now: datetime) -> str:
        if state is None:
            phase, work_type, session_id, focus, completed = "IDLE", "", "", "", ""
        else:
            phase = state.current_state.value
            work_type = state.work_type.value if state.work_type else ""
            session_id = state.session_id
            focus = ", ".join(state.focus)
            completed = ", ".join(item.value for item in state.completed_phases)

        plan = self._latest_plan()
        if plan is not None:
            plan_summary = "\n".join(
                plan.read_text(encoding="utf-8", errors="replace").splitlines()[:PLAN_HEAD_LINES]
            )
        else:
            plan_summary = "No plan file found"

        if self._progress_file.is_file():
            progress_text = self._progress_file.read_text(encoding="utf-8", errors="replace")
            progress = "\n".join(progress_text.splitlines()[-PROGRESS_TAIL_LINES:])
        else:
            progress = "No progress file"

        memory = "\n".join(path.name for path in self._memory_files()) or "None"

        return (
            "# Context Summary for Resume\n"
            f"Generated: {_stamp_iso(now)}\n"
            f"Session: {session_id}\n\n"
            "## Current State\n"
            f"- **Phase:** {phase}\n"
            f"- **Work Type:** {work_type}\n"
            f"- **Focus:** {focus}\n"
            f"- **Completed Phases:** {completed}\n\n"
            "## Plan Summary\n"
            f"```\n{plan_summary}\n```\n\n"
            "## Recent Progress\n"
            f"{progress}\n\n"
            "## Memory Files Available\n"
            f"{memory}\n\n"
            "## Next Actions\n"
            "Read the plan file and continue from current phase.\n"
            "If EXECUTE phase: Check which tasks are pending in auto-progress.yaml\n"
            "If REVIEW phase: Run fresh verification\n\n---\n"
        )

    def _render_next_actions(self, phase: Phase, now: datetime) -> str:
        return (
            "# Next Actions for Resume\n"
            f"Generated: {_stamp_iso(now)}\n\n"
            "## Immediate Actions\n"
            "1. Resume the session from the persisted state\n"
            f"2. Read {CONTEXT_SUMMARY} for current state\n"
            f"3. Continue from phase: {phase.value}\n\n"
            "## Do NOT\n"
            "- Do not re-run planning phase (already complete)\n"
            "- Do not re-detect project (profile exists)\n"
            "- Do not re-classify work type (already set)\n\n"
            "## Files to Read\n"
            f"1. {self._display(self._machine.path)} - Current state\n"
            f"2. {self._display(self.context_summary_path)} - Full context\n"
            f"3. {self._display(self._plans_dir / 'auto-*.md')} - Execution plan\n\n---\n"
        )


def _require_text(value: str, label: str) -> str:
    value = (value or "").strip()
    if not value:
        raise InvalidInputError(f"{label} must not be empty")
    return value


def _stamp_iso(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


__all__ = [
    "Checkpoint",
    "CheckpointWriter",
    "GROUP_STAGES",
    "Handoff",
    "ResumeContext",
]
