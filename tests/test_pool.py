from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from autodev_mcp.config import AutodevSettings
from autodev_mcp.errors import (
    DriftError,
    InvalidInputError,
    MergeConflictError,
    PoolExhaustedError,
    PoolInitError,
    PoolNotInitializedError,
    SlotNotFoundError,
    TaskAlreadyAllocatedError,
    WorktreeCreateError,
)
from autodev_mcp.git import GitExecutionResult, GitRunner
from autodev_mcp.pool import WorktreePool
from autodev_mcp.storage import ResourceStore, SlotStatus

from conftest import commit_file, git


def test_init_creates_idle_slots(pool: WorktreePool, settings: AutodevSettings) -> None:
    state = pool.init()

    assert state.pool_size == 3
    assert [slot.id for slot in state.slots] == ["wt-1", "wt-2", "wt-3"]
    assert all(slot.status is SlotStatus.IDLE for slot in state.slots)
    persisted = json.loads(settings.pool_state_file.read_text(encoding="utf-8"))
    assert persisted["pool_size"] == 3
    assert persisted["slots"][0]["path"].endswith("worktree-pool/wt-1")


def test_init_rejects_non_positive_size(pool: WorktreePool) -> None:
    with pytest.raises(PoolInitError):
        pool.init(0)


def test_init_outside_repository_fails(tmp_path: Path, runner: GitRunner) -> None:
    outside = tmp_path / "not-a-repo"
    outside.mkdir()
    store = ResourceStore(outside / ".claude")
    pool = WorktreePool(
        store,
        GitRunner(outside, runner.executable),
        state_file=outside / ".claude" / "pool-state.json",
        pool_dir=outside / ".claude" / "worktree-pool",
    )

    with pytest.raises(PoolInitError):
        pool.init(2)


def test_operations_require_initialized_pool(pool: WorktreePool) -> None:
    with pytest.raises(PoolNotInitializedError):
        pool.acquire("t1")
    with pytest.raises(PoolNotInitializedError):
        pool.status()


def test_acquire_allocates_lowest_idle_slot(pool: WorktreePool, git_repo: Path) -> None:
    pool.init(2)

    first = pool.acquire("t1")
    second = pool.acquire("t2")

    assert (first.slot_id, second.slot_id) == ("wt-1", "wt-2")
    assert first.branch_name == "auto/t1"
    assert (first.workspace_path / "README.md").is_file()
    assert "auto/t1" in git(git_repo, "branch", "--list", "auto/t1")
    status = pool.status()
    assert status.busy == 2
    assert status.idle == 0


def test_acquire_on_exhausted_pool_leaves_state_unchanged(
    pool: WorktreePool, settings: AutodevSettings
) -> None:
    pool.init(2)
    pool.acquire("t1")
    pool.acquire("t2")
    before = settings.pool_state_file.read_text(encoding="utf-8")

    with pytest.raises(PoolExhaustedError):
        pool.acquire("t3")

    assert settings.pool_state_file.read_text(encoding="utf-8") == before


def test_release_then_reacquire_reuses_slot(pool: WorktreePool, git_repo: Path) -> None:
    pool.init(2)
    pool.acquire("t1")
    pool.acquire("t2")

    result = pool.release("wt-1")
    again = pool.acquire("t3")

    assert result.task_id == "t1"
    assert result.destroy.method == "structured"
    assert not result.destroy.degraded
    assert again.slot_id == "wt-1"
    assert git(git_repo, "branch", "--list", "auto/t1").strip() == ""


def test_release_idle_slot_is_idempotent(pool: WorktreePool) -> None:
    pool.init(1)

    result = pool.release("wt-1")

    assert result.was_idle
    assert result.destroy.method == "absent"
    assert pool.status().idle == 1


def test_release_unknown_slot(pool: WorktreePool) -> None:
    pool.init(1)

    with pytest.raises(SlotNotFoundError):
        pool.release("wt-9")


def test_same_task_cannot_hold_two_slots(pool: WorktreePool) -> None:
    pool.init(2)
    pool.acquire("t1")

    with pytest.raises(TaskAlreadyAllocatedError):
        pool.acquire("t1")


@pytest.mark.parametrize("task_id", ["", "bad name", "../escape", "-flag", "x.lock"])
def test_acquire_rejects_unsafe_task_ids(pool: WorktreePool, task_id: str) -> None:
    pool.init(1)

    with pytest.raises(InvalidInputError):
        pool.acquire(task_id)


def test_acquire_failure_rolls_back(pool: WorktreePool, settings: AutodevSettings) -> None:
    pool.init(1)

    with pytest.raises(WorktreeCreateError):
        pool.acquire("t1", base_ref="no-such-ref")

    status = pool.status()
    assert status.idle == 1
    assert not (settings.pool_dir / "wt-1").exists()


def test_acquire_replaces_stale_branch(pool: WorktreePool, git_repo: Path) -> None:
    git(git_repo, "branch", "auto/t1")
    pool.init(1)

    allocation = pool.acquire("t1")

    assert allocation.workspace_path.is_dir()


def test_acquire_copies_project_profile(pool: WorktreePool, settings: AutodevSettings) -> None:
    settings.resolved_state_dir.mkdir(parents=True, exist_ok=True)
    settings.project_profile.write_text("language: python\n", encoding="utf-8")
    pool.init(1)

    allocation = pool.acquire("t1")

    copied = allocation.workspace_path / ".claude" / "project-profile.yaml"
    assert copied.read_text(encoding="utf-8") == "language: python\n"


def test_slot_order_is_numeric(pool: WorktreePool) -> None:
    pool.init(11)
    for index in range(1, 10):
        pool.acquire(f"t{index}")

    allocation = pool.acquire("t10")

    assert allocation.slot_id == "wt-10"
    assert [slot.id for slot in pool.status().slots][-2:] == ["wt-10", "wt-11"]


def test_health_reports_missing_workspace_without_repair(pool: WorktreePool) -> None:
    pool.init(2)
    allocation = pool.acquire("t1")
    shutil.rmtree(allocation.workspace_path)

    report = pool.health_check()

    assert not report.ok
    assert [(issue.slot_id, issue.kind) for issue in report.issues] == [("wt-1", "missing_workspace")]
    assert pool.status().busy == 1
    with pytest.raises(DriftError) as excinfo:
        report.raise_for_drift()
    assert len(excinfo.value.issues) == 1


def test_health_reports_orphan_directory(pool: WorktreePool, settings: AutodevSettings) -> None:
    pool.init(2)
    (settings.pool_dir / "wt-2").mkdir(parents=True)

    report = pool.health_check()

    assert [(issue.slot_id, issue.kind) for issue in report.issues] == [("wt-2", "orphan_workspace")]


def test_health_is_clean_after_normal_use(pool: WorktreePool) -> None:
    pool.init(2)
    pool.acquire("t1")

    report = pool.health_check()

    assert report.ok
    assert report.registered_worktrees == 1


def test_health_without_state(pool: WorktreePool) -> None:
    report = pool.health_check()

    assert [issue.kind for issue in report.issues] == ["state_missing"]


def test_release_falls_back_to_forced_delete(
    pool: WorktreePool, runner: GitRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    pool.init(1)
    allocation = pool.acquire("t1")

    def failing_remove(path: Path) -> GitExecutionResult:
        return GitExecutionResult(
            args=("git", "worktree", "remove"), returncode=128, stdout="", stderr="locked"
        )

    monkeypatch.setattr(runner, "worktree_remove", failing_remove)

    result = pool.release(allocation.slot_id)

    assert result.destroy.method == "forced"
    assert result.destroy.degraded
    assert not allocation.workspace_path.exists()
    assert pool.status().idle == 1


def test_merge_all_reports_conflicts_per_branch(pool: WorktreePool, git_repo: Path) -> None:
    pool.init(3)
    first = pool.acquire("t1")
    second = pool.acquire("t2")
    third = pool.acquire("t3")

    commit_file(first.workspace_path, "shared.txt", "from t1\n", "t1 change")
    commit_file(second.workspace_path, "shared.txt", "from t2\n", "t2 change")
    commit_file(third.workspace_path, "other.txt", "from t3\n", "t3 change")

    report = pool.merge_all()

    assert report.target_ref == "main"
    assert [outcome.branch for outcome in report.merged] == ["auto/t1", "auto/t3"]
    assert [outcome.branch for outcome in report.failed] == ["auto/t2"]
    assert report.failed[0].conflicts == ["shared.txt"]
    assert (git_repo / "shared.txt").read_text(encoding="utf-8") == "from t1\n"
    assert (git_repo / "other.txt").is_file()
    assert git(git_repo, "status", "--porcelain", "--untracked-files=no").strip() == ""
    log = git(git_repo, "log", "--format=%s", "-n", "5")
    assert "Merge auto/t1 (Agent Pool)" in log

    with pytest.raises(MergeConflictError) as excinfo:
        report.raise_for_failures()
    assert excinfo.value.failed[0].task_id == "t2"


def test_merge_with_no_busy_slots(pool: WorktreePool) -> None:
    pool.init(2)

    report = pool.merge_all()

    assert report.ok
    assert report.merged == []


def test_cleanup_removes_everything(
    pool: WorktreePool, settings: AutodevSettings, git_repo: Path
) -> None:
    pool.init(2)
    pool.acquire("t1")
    pool.acquire("t2")

    pool.cleanup()

    assert not settings.pool_state_file.exists()
    assert list(settings.pool_dir.glob("wt-*")) == []
    assert git(git_repo, "branch", "--list", "auto/*").strip() == ""
    assert "worktree-pool" not in git(git_repo, "worktree", "list")


def test_reset_reuses_previous_size(pool: WorktreePool) -> None:
    pool.init(2)
    pool.acquire("t1")

    state = pool.reset()

    assert state.pool_size == 2
    assert pool.status().idle == 2


def test_reinit_destroys_existing_slots(pool: WorktreePool, git_repo: Path) -> None:
    pool.init(2)
    allocation = pool.acquire("t1")

    pool.init(3)

    assert not allocation.workspace_path.exists()
    assert pool.status().pool_size == 3
    assert git(git_repo, "branch", "--list", "auto/t1").strip() == ""


def test_status_render(pool: WorktreePool) -> None:
    pool.init(2)
    pool.acquire("t1")

    text = pool.status().render()

    assert "Pool Size: 2 | Busy: 1 | Idle: 1 | Error: 0" in text
    assert "wt-1" in text and "t1" in text


def test_acquire_on_detached_head_without_main(pool: WorktreePool, git_repo: Path) -> None:
    git(git_repo, "branch", "-m", "main", "master")
    git(git_repo, "checkout", "-q", "--detach")
    pool.init(1)

    allocation = pool.acquire("t1")

    assert (allocation.workspace_path / "README.md").is_file()
    assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD").strip() == "HEAD"


def test_merge_on_detached_head_keeps_head_detached(pool: WorktreePool, git_repo: Path) -> None:
    git(git_repo, "branch", "-m", "main", "master")
    git(git_repo, "checkout", "-q", "--detach")
    pool.init(1)
    allocation = pool.acquire("t1")
    commit_file(allocation.workspace_path, "feature.txt", "done\n", "t1 change")

    report = pool.merge_all()

    assert report.target_ref == "HEAD"
    assert [outcome.branch for outcome in report.merged] == ["auto/t1"]
    assert (git_repo / "feature.txt").is_file()
    assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD").strip() == "HEAD"


def test_profile_copy_failure_rolls_back(
    pool: WorktreePool,
    settings: AutodevSettings,
    git_repo: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    settings.resolved_state_dir.mkdir(parents=True, exist_ok=True)
    settings.project_profile.write_text("language: python\n", encoding="utf-8")
    pool.init(1)

    def failing_copy(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr("autodev_mcp.pool.shutil.copy2", failing_copy)

    with pytest.raises(WorktreeCreateError, match="disk full"):
        pool.acquire("t1")

    assert pool.status().idle == 1
    assert not (settings.pool_dir / "wt-1").exists()
    assert git(git_repo, "branch", "--list", "auto/t1").strip() == ""
