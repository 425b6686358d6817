"""Phase state machine persisted as a YAML record."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable
from uuid import uuid4

from .config import AutodevSettings
from .errors import InvalidInputError, InvalidStateError, WorkflowNotInitializedError
from .skills import SkillTable
from .storage import Phase, ResourceStore, TokenUsage, TransitionRecord, WorkflowState, WorkType

logger = logging.getLogger(__name__)


def parse_phase(value: Phase | str) -> Phase:
    if isinstance(value, Phase):
        return value
    normalized = str(value).strip().upper()
    try:
        return Phase(normalized)
    except ValueError:
        valid = ", ".join(phase.value for phase in Phase)
        raise InvalidStateError(f"Invalid state '{value}'. Valid states: {valid}") from None


def parse_work_type(value: WorkType | str | None) -> WorkType | None:
    if value is None or isinstance(value, WorkType):
        return value
    normalized = str(value).strip().upper()
    if not normalized:
        return None
    try:
        return WorkType(normalized)
    except ValueError:
        valid = ", ".join(work_type.value for work_type in WorkType)
        raise InvalidStateError(
            f"Invalid work type '{value}'. Valid work types: {valid}"
        ) from None


@dataclass(slots=True)
class TransitionResult:
    previous_state: Phase | None
    current_state: Phase
    mandatory_skills: list[str]
    outcome: str | None
    initialized: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "previous_state": self.previous_state.value if self.previous_state else None,
            "current_state": self.current_state.value,
            "mandatory_skills": list(self.mandatory_skills),
            "outcome": self.outcome,
            "initialized": self.initialized,
        }


@dataclass(slots=True)
class ResumeInfo:
    """The minimal bundle a new session needs to continue."""

    session_id: str
    current_state: Phase
    work_type: WorkType | None
    completed_phases: list[Phase] = field(default_factory=list)
    checkpoint_files: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "current_state": self.current_state.value,
            "work_type": self.work_type.value if self.work_type else None,
            "completed_phases": [phase.value for phase in self.completed_phases],
            "checkpoint_files": list(self.checkpoint_files),
        }


class PhaseStateMachine:
    """Owns the workflow record: phase, work type, mandatory skills and history."""

    def __init__(
        self,
        store: ResourceStore,
        path: Path,
        *,
        skills: SkillTable,
        usage_defaults: Callable[[], TokenUsage] | None = None,
        archive_dir: Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._path = Path(path)
        self._skills = skills
        self._usage_defaults = usage_defaults or TokenUsage
        self._archive_dir = Path(archive_dir) if archive_dir else self._path.parent / "archive"
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(
        cls,
        settings: AutodevSettings,
        store: ResourceStore,
        skills: SkillTable,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> "PhaseStateMachine":
        def usage_defaults() -> TokenUsage:
            return TokenUsage(
                budget=settings.token_budget,
                warning_threshold=settings.warning_threshold,
                checkpoint_threshold=settings.checkpoint_threshold,
            )

        return cls(
            store,
            settings.workflow_file,
            skills=skills,
            usage_defaults=usage_defaults,
            clock=clock,
        )

    @property
    def path(self) -> Path:
        return self._path

    @property
    def store(self) -> ResourceStore:
        return self._store

    @property
    def skills(self) -> SkillTable:
        return self._skills

    def now(self) -> datetime:
        return self._clock()

    def load(self) -> WorkflowState | None:
        return self._store.load(self._path, WorkflowState)

    def require(self) -> WorkflowState:
        state = self.load()
        if state is None:
            raise WorkflowNotInitializedError(
                f"No workflow session found at {self._path}; run 'state init' first"
            )
        return state

    def _new_state(self, initial: Phase) -> WorkflowState:
        started = self._clock()
        session_id = f"auto-{started.strftime('%Y%m%d-%H%M%S')}-{uuid4().hex[:6]}"
        return WorkflowState(
            current_state=initial,
            mandatory_skills=self._skills.resolve(initial, None),
            session_id=session_id,
            started_at=started,
            token_usage=self._usage_defaults(),
        )

    def init(self, initial: Phase | str = Phase.IDLE) -> WorkflowState:
        """Create a fresh record, discarding any previous session."""

        phase = parse_phase(initial)
        with self._store.locked():
            state = self._new_state(phase)
            self._store.save(self._path, state)
        logger.info(
            "Workflow initialized",
            extra={"session_id": state.session_id, "state": phase.value},
        )
        return state

    def update(self, mutate: Callable[[WorkflowState], None]) -> WorkflowState:
        """Apply ``mutate`` under the lock, creating the record if it is missing."""

        with self._store.locked():
            state = self.load()
            if state is None:
                state = self._new_state(Phase.IDLE)
                logger.info(
                    "Workflow record missing; initialized a new session",
                    extra={"session_id": state.session_id},
                )
            mutate(state)
            self._store.save(self._path, state)
        return state

    def current_state(self) -> Phase:
        state = self.load()
        return state.current_state if state else Phase.IDLE

    def work_type(self) -> WorkType | None:
        state = self.load()
        return state.work_type if state else None

    def resolve_skills(
        self, phase: Phase | str, work_type: WorkType | str | None = None
    ) -> list[str]:
        return self._skills.resolve(parse_phase(phase), parse_work_type(work_type))

    def transition(self, new_state: Phase | str, *, success: bool = True) -> TransitionResult:
        """Move to ``new_state``.

        The departed phase is recorded as completed when ``success`` is true and as
        abandoned otherwise. A missing record is treated as ``init(new_state)``.
        """

        target = parse_phase(new_state)
        with self._store.locked():
            state = self.load()
            if state is None:
                state = self.init(target)
                return TransitionResult(
                    previous_state=None,
                    current_state=target,
                    mandatory_skills=list(state.mandatory_skills),
                    outcome=None,
                    initialized=True,
                )

            departed = state.current_state
            outcome = "completed" if success else "abandoned"
            now = self._clock()
            state.previous_state = departed
            if success:
                state.completed_phases.append(departed)
            else:
                state.abandoned_phases.append(departed)
            state.history.append(
                TransitionRecord(from_state=departed, to_state=target, outcome=outcome, at=now)
            )
            state.current_state = target
            state.last_transition = now
            state.mandatory_skills = self._skills.resolve(target, state.work_type)
            self._store.save(self._path, state)

        logger.info(
            "Transitioned",
            extra={
                "session_id": state.session_id,
                "from": departed.value,
                "to": target.value,
                "outcome": outcome,
                "mandatory_skills": state.mandatory_skills,
            },
        )
        return TransitionResult(
            previous_state=departed,
            current_state=target,
            mandatory_skills=list(state.mandatory_skills),
            outcome=outcome,
        )

    def set_work_type(
        self,
        work_type: WorkType | str,
        focus: Iterable[str] | str | None = None,
        confidence: float = 1.0,
    ) -> WorkflowState:
        """Set the work type and recompute the current phase's mandatory skills."""

        parsed = parse_work_type(work_type)
        if parsed is None:
            raise InvalidStateError("Work type must not be empty")
        if not 0.0 <= confidence <= 1.0:
            raise InvalidInputError("Confidence must be between 0.0 and 1.0")
        focus_items = _split_focus(focus)

        def mutate(state: WorkflowState) -> None:
            state.work_type = parsed
            state.classification_confidence = confidence
            if focus_items:
                state.focus = focus_items
            state.mandatory_skills = self._skills.resolve(state.current_state, parsed)

        state = self.update(mutate)
        logger.info(
            "Work type set",
            extra={
                "session_id": state.session_id,
                "work_type": parsed.value,
                "confidence": confidence,
            },
        )
        return state

    def add_checkpoint(self, checkpoint_file: str | Path) -> WorkflowState:
        path = str(checkpoint_file)
        if not path.strip():
            raise InvalidInputError("Checkpoint file path must not be empty")

        with self._store.locked():
            state = self.require()
            if path not in state.checkpoint_files:
                state.checkpoint_files.append(path)
            state.last_checkpoint = self._clock()
            self._store.save(self._path, state)
        return state

    def resume_info(self) -> ResumeInfo:
        state = self.require()
        return ResumeInfo(
            session_id=state.session_id,
            current_state=state.current_state,
            work_type=state.work_type,
            completed_phases=list(state.completed_phases),
            checkpoint_files=list(state.checkpoint_files),
        )

    def archive(self) -> Path | None:
        """Move the workflow record out of the way once the session is finished."""

        with self._store.locked():
            state = self.load()
            if state is None:
                return None
            self._archive_dir.mkdir(parents=True, exist_ok=True)
            target = self._archive_dir / f"state-{state.session_id}.yaml"
            if target.exists():
                target = self._archive_dir / (
                    f"state-{state.session_id}-{self._clock().strftime('%Y%m%d%H%M%S%f')}.yaml"
                )
            self._path.replace(target)
        logger.info("Workflow archived", extra={"session_id": state.session_id, "path": str(target)})
        return target


def _split_focus(focus: Iterable[str] | str | None) -> list[str]:
    if focus is None:
        return []
    items = focus.split(",") if isinstance(focus, str) else list(focus)
    return [item.strip() for item in items if item and item.strip()]


__all__ = [
    "PhaseStateMachine",
    "ResumeInfo",
    "TransitionResult",
    "parse_phase",
    "parse_work_type",
]
