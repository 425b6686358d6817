"""Fixed-size pool of git worktrees handed out to independent tasks."""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from .config import AutodevSettings
from .errors import (
    DriftError,
    InvalidInputError,
    MergeConflictError,
    PoolExhaustedError,
    PoolInitError,
    PoolNotInitializedError,
    SlotNotFoundError,
    StateCorruptedError,
    TaskAlreadyAllocatedError,
    WorktreeCreateError,
)
from .git import GitRunner
from .git.runner import serialize_result
from .storage import PoolSlot, PoolState, ResourceStore, SlotStatus, slot_index

logger = logging.getLogger(__name__)

_TASK_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_task_id(task_id: str) -> str:
    """Return the stripped task id or raise when it cannot be a branch component."""

    task_id = (task_id or "").strip()
    if not _TASK_ID.match(task_id) or ".." in task_id or task_id.endswith(".lock"):
        raise InvalidInputError(f"Task id '{task_id}' is not usable as a branch name")
    return task_id


@dataclass(slots=True)
class Allocation:
    slot_id: str
    workspace_path: Path
    branch_name: str
    task_id: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "workspace_path": str(self.workspace_path),
            "branch_name": self.branch_name,
            "task_id": self.task_id,
        }


@dataclass(slots=True)
class DestroyOutcome:
    """Which path a workspace teardown took.

    ``structured`` means ``git worktree remove`` succeeded, ``forced`` means it
    failed and the directory was deleted recursively, ``absent`` means there was
    nothing on disk.
    """

    path: Path
    method: str

    @property
    def degraded(self) -> bool:
        return self.method == "forced"

    def as_dict(self) -> dict[str, Any]:
        return {"path": str(self.path), "method": self.method, "degraded": self.degraded}


@dataclass(slots=True)
class ReleaseResult:
    slot_id: str
    task_id: str | None
    branch: str | None
    destroy: DestroyOutcome
    was_idle: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "task_id": self.task_id,
            "branch": self.branch,
            "destroy": self.destroy.as_dict(),
            "was_idle": self.was_idle,
        }


@dataclass(slots=True)
class PoolStatus:
    pool_size: int
    created_at: datetime
    slots: list[PoolSlot]

    def _count(self, status: SlotStatus) -> int:
        return sum(1 for slot in self.slots if slot.status is status)

    @property
    def idle(self) -> int:
        return self._count(SlotStatus.IDLE)

    @property
    def busy(self) -> int:
        return self._count(SlotStatus.BUSY)

    @property
    def error(self) -> int:
        return self._count(SlotStatus.ERROR)

    def as_dict(self) -> dict[str, Any]:
        return {
            "pool_size": self.pool_size,
            "created_at": self.created_at.isoformat(),
            "idle": self.idle,
            "busy": self.busy,
            "error": self.error,
            "slots": [slot.model_dump(mode="json") for slot in self.slots],
        }

    def render(self) -> str:
        lines = [
            f"Pool Size: {self.pool_size} | Busy: {self.busy} | Idle: {self.idle} | Error: {self.error}",
            "",
            f"{'ID':<8}{'STATUS':<8}TASK",
        ]
        for slot in self.slots:
            lines.append(f"{slot.id:<8}{slot.status.value:<8}{slot.task_id or '-'}")
        return "\n".join(lines)


@dataclass(slots=True)
class DriftIssue:
    slot_id: str | None
    kind: str
    path: str
    detail: str

    def as_dict(self) -> dict[str, Any]:
        return {"slot_id": self.slot_id, "kind": self.kind, "path": self.path, "detail": self.detail}


@dataclass(slots=True)
class HealthReport:
    issues: list[DriftIssue] = field(default_factory=list)
    registered_worktrees: int = 0

    @property
    def ok(self) -> bool:
        return not self.issues

    def raise_for_drift(self) -> None:
        if self.issues:
            raise DriftError(f"Pool health: {len(self.issues)} issues found", self.issues)

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "registered_worktrees": self.registered_worktrees,
            "issues": [issue.as_dict() for issue in self.issues],
        }


@dataclass(slots=True)
class MergeOutcome:
    slot_id: str
    task_id: str | None
    branch: str
    conflicts: list[str] = field(default_factory=list)
    detail: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "task_id": self.task_id,
            "branch": self.branch,
            "conflicts": list(self.conflicts),
            "detail": self.detail,
        }


@dataclass(slots=True)
class MergeReport:
    """Per-branch merge results. Partial success is a normal outcome."""

    target_ref: str
    merged: list[MergeOutcome] = field(default_factory=list)
    failed: list[MergeOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        if self.failed:
            branches = ", ".join(outcome.branch for outcome in self.failed)
            raise MergeConflictError(
                f"Failed to merge into {self.target_ref}: {branches}", self.failed
            )

    def as_dict(self) -> dict[str, Any]:
        return {
            "target_ref": self.target_ref,
            "merged": [outcome.as_dict() for outcome in self.merged],
            "failed": [outcome.as_dict() for outcome in self.failed],
        }


class WorktreePool:
    """Manage N slots, each an isolated worktree plus branch.

    All state mutations run under the store lock so concurrent CLI invocations
    cannot hand out the same slot twice.
    """

    def __init__(
        self,
        store: ResourceStore,
        git: GitRunner,
        *,
        state_file: Path,
        pool_dir: Path,
        branch_prefix: str = "auto/",
        default_size: int = 8,
        project_profile: Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._git = git
        self._state_file = Path(state_file)
        self._pool_dir = Path(pool_dir)
        self._branch_prefix = branch_prefix
        self._default_size = default_size
        self._project_profile = project_profile
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(
        cls, settings: AutodevSettings, store: ResourceStore, git: GitRunner
    ) -> "WorktreePool":
        return cls(
            store,
            git,
            state_file=settings.pool_state_file,
            pool_dir=settings.pool_dir,
            branch_prefix=settings.branch_prefix,
            default_size=settings.pool_size,
            project_profile=settings.project_profile,
        )

    @property
    def pool_dir(self) -> Path:
        return self._pool_dir

    @property
    def state_file(self) -> Path:
        return self._state_file

    def branch_for(self, task_id: str) -> str:
        return f"{self._branch_prefix}{task_id}"

    def load(self) -> PoolState | None:
        return self._store.load(self._state_file, PoolState)

    def _require(self) -> PoolState:
        state = self.load()
        if state is None:
            raise PoolNotInitializedError(
                f"Pool not initialized ({self._state_file} missing); run 'pool init'"
            )
        return state

    def _check_git(self) -> None:
        if not self._git.is_repository():
            raise PoolInitError(f"{self._git.repo_root} is not a git repository")

    def init(self, size: int | None = None) -> PoolState:
        """Destroy existing slots and create ``size`` idle ones."""

        size = self._default_size if size is None else size
        if size <= 0:
            raise PoolInitError(f"Pool size must be positive, got {size}")
        self._check_git()

        with self._store.locked():
            self._teardown_workspaces(self._load_for_teardown())
            state = PoolState(
                pool_size=size,
                created_at=self._clock(),
                slots=[
                    PoolSlot(id=f"wt-{index}", path=str(self._pool_dir / f"wt-{index}"))
                    for index in range(1, size + 1)
                ],
            )
            self._pool_dir.mkdir(parents=True, exist_ok=True)
            self._store.save(self._state_file, state)

        logger.info("Pool initialized", extra={"pool_size": size, "pool_dir": str(self._pool_dir)})
        return state

    def acquire(self, task_id: str, base_ref: str | None = None) -> Allocation:
        """Allocate the lowest-id idle slot to ``task_id``.

        Raises :class:`PoolExhaustedError` immediately when no slot is idle.
        """

        task_id = validate_task_id(task_id)

        with self._store.locked():
            state = self._require()
            for slot in state.slots:
                if slot.status is SlotStatus.BUSY and slot.task_id == task_id:
                    raise TaskAlreadyAllocatedError(
                        f"Task '{task_id}' already holds slot {slot.id}"
                    )

            slot = next(
                (s for s in state.ordered_slots() if s.status is SlotStatus.IDLE),
                None,
            )
            if slot is None:
                logger.error(
                    "No available worktrees in pool",
                    extra={"task_id": task_id, "pool_size": state.pool_size},
                )
                raise PoolExhaustedError(
                    f"No idle slot available for task '{task_id}' (pool size {state.pool_size})"
                )

            base = base_ref or self._git.current_branch()
            branch = self.branch_for(task_id)
            workspace = Path(slot.path)
            self._create_workspace(workspace, branch, base)
            try:
                self._copy_project_profile(workspace)
            except OSError as exc:
                self._rollback_workspace(workspace, branch)
                raise WorktreeCreateError(
                    f"Failed to copy project profile into {workspace}: {exc}"
                ) from exc

            slot.status = SlotStatus.BUSY
            slot.task_id = task_id
            slot.branch = branch
            slot.acquired_at = self._clock()
            self._store.save(self._state_file, state)

        logger.info(
            "Worktree acquired",
            extra={"slot_id": slot.id, "task_id": task_id, "branch": branch, "base_ref": base},
        )
        return Allocation(slot_id=slot.id, workspace_path=workspace, branch_name=branch, task_id=task_id)

    def release(self, slot_id: str) -> ReleaseResult:
        """Destroy the slot's worktree and branch and mark it idle."""

        with self._store.locked():
            state = self._require()
            slot = state.find(slot_id)
            if slot is None:
                raise SlotNotFoundError(f"Unknown slot '{slot_id}'")

            was_idle = slot.status is SlotStatus.IDLE
            task_id, branch = slot.task_id, slot.branch
            outcome = self._destroy_workspace(Path(slot.path))
            if branch and self._git.branch_exists(branch):
                self._git.delete_branch(branch)

            slot.status = SlotStatus.IDLE
            slot.task_id = None
            slot.branch = None
            slot.acquired_at = None
            self._store.save(self._state_file, state)

        logger.info(
            "Worktree released",
            extra={"slot_id": slot_id, "task_id": task_id, "destroy_method": outcome.method},
        )
        return ReleaseResult(
            slot_id=slot_id, task_id=task_id, branch=branch, destroy=outcome, was_idle=was_idle
        )

    def status(self) -> PoolStatus:
        state = self._require()
        return PoolStatus(
            pool_size=state.pool_size,
            created_at=state.created_at,
            slots=state.ordered_slots(),
        )

    def health_check(self) -> HealthReport:
        """Report drift between recorded slot state and the filesystem. Never repairs."""

        report = HealthReport()
        if not self._store.exists(self._state_file):
            report.issues.append(
                DriftIssue(
                    slot_id=None,
                    kind="state_missing",
                    path=str(self._state_file),
                    detail="Pool state file missing",
                )
            )
            return report

        state = self._require()
        registered = {path.resolve() for path in self._git.worktree_paths()}
        report.registered_worktrees = sum(
            1 for path in registered if _is_within(path, self._pool_dir.resolve())
        )

        for slot in state.ordered_slots():
            path = Path(slot.path)
            if slot.status is SlotStatus.BUSY and not path.exists():
                report.issues.append(
                    DriftIssue(
                        slot_id=slot.id,
                        kind="missing_workspace",
                        path=slot.path,
                        detail=f"Slot marked busy for task '{slot.task_id}' but path does not exist",
                    )
                )
            elif slot.status is SlotStatus.IDLE and path.exists():
                report.issues.append(
                    DriftIssue(
                        slot_id=slot.id,
                        kind="orphan_workspace",
                        path=slot.path,
                        detail="Slot marked idle but a workspace directory exists",
                    )
                )
            elif slot.status is SlotStatus.ERROR:
                report.issues.append(
                    DriftIssue(
                        slot_id=slot.id,
                        kind="slot_error",
                        path=slot.path,
                        detail="Slot is in error state",
                    )
                )

        for issue in report.issues:
            logger.warning(
                "Pool drift detected",
                extra={"slot_id": issue.slot_id, "kind": issue.kind, "path": issue.path},
            )
        return report

    def merge_all(self, target_ref: str | None = None) -> MergeReport:
        """Merge each busy slot's branch into ``target_ref`` in ascending slot order.

        A conflicting branch is aborted and reported; later branches still merge
        on top of whatever the earlier ones left behind.
        """

        with self._store.locked():
            state = self._require()
            current = self._git.current_branch()
            target = target_ref or current
            if target != current:
                checkout = self._git.checkout(target)
                if not checkout.ok:
                    raise InvalidInputError(
                        f"Cannot check out merge target '{target}': {checkout.stderr.strip()}"
                    )

            report = MergeReport(target_ref=target)
            for slot in state.ordered_slots():
                if slot.status is not SlotStatus.BUSY or not slot.branch:
                    continue
                result = self._git.merge_no_ff(slot.branch, f"Merge {slot.branch} (Agent Pool)")
                if result.ok:
                    report.merged.append(
                        MergeOutcome(slot_id=slot.id, task_id=slot.task_id, branch=slot.branch)
                    )
                    logger.info("Merged branch", extra={"slot_id": slot.id, "branch": slot.branch})
                    continue

                conflicts = self._git.conflicted_files()
                self._git.merge_abort()
                report.failed.append(
                    MergeOutcome(
                        slot_id=slot.id,
                        task_id=slot.task_id,
                        branch=slot.branch,
                        conflicts=conflicts,
                        detail=(result.stdout + result.stderr).strip()[:2000],
                    )
                )
                logger.error(
                    "Merge conflict",
                    extra={"slot_id": slot.id, "branch": slot.branch, "conflicts": conflicts},
                )
        return report

    def cleanup(self) -> None:
        """Remove every pool workspace and branch and forget the pool state."""

        with self._store.locked():
            self._teardown_workspaces(self._load_for_teardown())
            for branch in self._git.list_branches(self._branch_prefix):
                logger.info("Deleting branch", extra={"branch": branch})
                self._git.delete_branch(branch)
            self._git.worktree_prune()
            self._store.delete(self._state_file)
        logger.info("Pool cleanup complete", extra={"pool_dir": str(self._pool_dir)})

    def reset(self, size: int | None = None) -> PoolState:
        with self._store.locked():
            if size is None:
                previous = self._load_for_teardown()
                size = previous.pool_size if previous else self._default_size
            self.cleanup()
            return self.init(size)

    def _load_for_teardown(self) -> PoolState | None:
        try:
            return self.load()
        except StateCorruptedError:
            logger.warning("Pool state unreadable; tearing down from the filesystem", exc_info=True)
            return None

    def _teardown_workspaces(self, state: PoolState | None) -> None:
        paths: dict[str, Path] = {}
        branches: list[str] = []
        if state is not None:
            for slot in state.slots:
                paths[slot.path] = Path(slot.path)
                if slot.branch:
                    branches.append(slot.branch)
        if self._pool_dir.is_dir():
            for candidate in self._pool_dir.glob("wt-*"):
                if candidate.is_dir():
                    paths.setdefault(str(candidate), candidate)

        def order(path: Path) -> tuple[int, str]:
            try:
                return slot_index(path.name), str(path)
            except ValueError:
                return 0, str(path)

        for path in sorted(paths.values(), key=order):
            self._destroy_workspace(path)
        self._git.worktree_prune()
        # Branches can only be deleted once no worktree has them checked out.
        for branch in branches:
            if self._git.branch_exists(branch):
                self._git.delete_branch(branch)

    def _destroy_workspace(self, path: Path) -> DestroyOutcome:
        if not path.exists():
            self._git.worktree_prune()
            return DestroyOutcome(path=path, method="absent")

        result = self._git.worktree_remove(path)
        if result.ok and not path.exists():
            return DestroyOutcome(path=path, method="structured")

        logger.warning(
            "Structured worktree removal failed; falling back to forced delete",
            extra={"path": str(path), "git_result": serialize_result(result)},
        )
        shutil.rmtree(path, ignore_errors=True)
        self._git.worktree_prune()
        return DestroyOutcome(path=path, method="forced")

    def _create_workspace(self, workspace: Path, branch: str, base_ref: str) -> None:
        self._destroy_workspace(workspace)
        if self._git.branch_exists(branch):
            logger.info("Deleting stale branch", extra={"branch": branch})
            self._git.delete_branch(branch)

        workspace.parent.mkdir(parents=True, exist_ok=True)
        result = self._git.worktree_add(workspace, branch, base_ref)
        if result.ok:
            return

        # Roll back whichever half git managed to create.
        self._rollback_workspace(workspace, branch)
        raise WorktreeCreateError(
            f"Failed to create worktree {workspace} on {branch} from {base_ref}: "
            f"{result.stderr.strip()}"
        )

    def _rollback_workspace(self, workspace: Path, branch: str) -> None:
        self._destroy_workspace(workspace)
        if self._git.branch_exists(branch):
            self._git.delete_branch(branch)

    def _copy_project_profile(self, workspace: Path) -> None:
        if self._project_profile is None or not self._project_profile.is_file():
            return
        target_dir = workspace / ".claude"
        target_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(self._project_profile, target_dir / self._project_profile.name)


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
    except ValueError:
        return False
    return True


__all__ = [
    "Allocation",
    "DestroyOutcome",
    "DriftIssue",
    "HealthReport",
    "MergeOutcome",
    "MergeReport",
    "PoolStatus",
    "ReleaseResult",
    "WorktreePool",
    "validate_task_id",
]
