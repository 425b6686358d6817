from __future__ import annotations

import pytest
import yaml

from autodev_mcp.errors import (
    InvalidInputError,
    InvalidStateError,
    StateCorruptedError,
    WorkflowNotInitializedError,
)
from autodev_mcp.storage import Phase, WorkType
from autodev_mcp.workflow import PhaseStateMachine


def test_init_creates_session(machine: PhaseStateMachine) -> None:
    state = machine.init()

    assert state.current_state is Phase.IDLE
    assert state.session_id.startswith("auto-20240501-120000-")
    assert state.token_usage.budget == 200_000
    assert machine.path.name == "auto-state-machine.yaml"
    persisted = yaml.safe_load(machine.path.read_text(encoding="utf-8"))
    assert persisted["current_state"] == "IDLE"
    assert persisted["version"] == "3.0"


def test_transition_records_completed_phase_and_skills(machine: PhaseStateMachine) -> None:
    machine.init("DETECT")

    result = machine.transition("plan")

    assert result.previous_state is Phase.DETECT
    assert result.current_state is Phase.PLAN
    assert result.outcome == "completed"
    assert result.mandatory_skills == ["superpowers:brainstorming", "superpowers:writing-plans"]
    state = machine.require()
    assert state.completed_phases == [Phase.DETECT]
    assert state.previous_state is Phase.DETECT
    assert len(state.history) == 1
    assert state.history[0].to_state is Phase.PLAN


def test_failed_transition_marks_phase_abandoned(machine: PhaseStateMachine) -> None:
    machine.init("EXECUTE")

    result = machine.transition("REVIEW", success=False)

    state = machine.require()
    assert result.outcome == "abandoned"
    assert state.completed_phases == []
    assert state.abandoned_phases == [Phase.EXECUTE]
    assert state.history[-1].outcome == "abandoned"


def test_transition_without_record_initializes(machine: PhaseStateMachine) -> None:
    result = machine.transition("DETECT")

    assert result.initialized
    assert result.previous_state is None
    assert machine.current_state() is Phase.DETECT
    assert machine.require().completed_phases == []


def test_invalid_phase_leaves_state_unchanged(machine: PhaseStateMachine) -> None:
    machine.init("PLAN")
    before = machine.path.read_text(encoding="utf-8")

    with pytest.raises(InvalidStateError, match="Valid states"):
        machine.transition("DEPLOY")

    assert machine.path.read_text(encoding="utf-8") == before


def test_set_work_type_recomputes_current_phase_skills(machine: PhaseStateMachine) -> None:
    machine.init("PLAN")

    state = machine.set_work_type("frontend", "ui, forms", 0.7)

    assert state.work_type is WorkType.FRONTEND
    assert state.focus == ["ui", "forms"]
    assert state.classification_confidence == 0.7
    assert state.mandatory_skills[-1] == "frontend-design"


def test_set_work_type_keeps_focus_when_none_given(machine: PhaseStateMachine) -> None:
    machine.init("PLAN")
    machine.set_work_type("BACKEND", ["api"])

    state = machine.set_work_type("FULLSTACK")

    assert state.focus == ["api"]
    assert "architecture-patterns" in state.mandatory_skills


def test_set_work_type_validates_input(machine: PhaseStateMachine) -> None:
    with pytest.raises(InvalidStateError):
        machine.set_work_type("MOBILE")
    with pytest.raises(InvalidInputError):
        machine.set_work_type("BACKEND", confidence=1.5)


def test_set_work_type_without_record_initializes(machine: PhaseStateMachine) -> None:
    state = machine.set_work_type("RESEARCH")

    assert state.current_state is Phase.IDLE
    assert machine.work_type() is WorkType.RESEARCH


def test_mandatory_skills_follow_work_type_across_transitions(machine: PhaseStateMachine) -> None:
    machine.init("PLAN")
    machine.set_work_type("RESEARCH")

    result = machine.transition("EXECUTE")

    assert result.mandatory_skills == []
    assert machine.resolve_skills("EXECUTE", "FRONTEND") == [
        "superpowers:test-driven-development",
        "frontend-design",
    ]


def test_resume_info_requires_session(machine: PhaseStateMachine) -> None:
    with pytest.raises(WorkflowNotInitializedError):
        machine.resume_info()

    machine.init("DETECT")
    machine.transition("CLASSIFY")
    machine.add_checkpoint(".claude/auto-memory/phase-detect.md")
    info = machine.resume_info()

    assert info.current_state is Phase.CLASSIFY
    assert info.completed_phases == [Phase.DETECT]
    assert info.checkpoint_files == [".claude/auto-memory/phase-detect.md"]
    assert info.as_dict()["current_state"] == "CLASSIFY"


def test_add_checkpoint_deduplicates(machine: PhaseStateMachine) -> None:
    machine.init()

    machine.add_checkpoint("a.md")
    state = machine.add_checkpoint("a.md")

    assert state.checkpoint_files == ["a.md"]
    assert state.last_checkpoint is not None


def test_add_checkpoint_requires_session(machine: PhaseStateMachine) -> None:
    with pytest.raises(WorkflowNotInitializedError):
        machine.add_checkpoint("a.md")


def test_corrupted_record_is_fatal(machine: PhaseStateMachine) -> None:
    machine.path.parent.mkdir(parents=True, exist_ok=True)
    machine.path.write_text("current_state: DEPLOY\nsession_id: x\n", encoding="utf-8")

    with pytest.raises(StateCorruptedError):
        machine.transition("PLAN")


def test_archive_moves_record(machine: PhaseStateMachine) -> None:
    state = machine.init()

    target = machine.archive()

    assert target is not None
    assert target.name == f"state-{state.session_id}.yaml"
    assert not machine.path.exists()
    assert machine.load() is None
    assert machine.archive() is None


def test_missing_state_defaults_to_idle(machine: PhaseStateMachine) -> None:
    assert machine.current_state() is Phase.IDLE
    assert machine.work_type() is None
