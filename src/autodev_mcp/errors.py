"""Exception hierarchy shared by the pool, workflow, checkpoint and budget components."""

from __future__ import annotations


class AutodevError(RuntimeError):
    """Base class for Autodev errors."""


class InvalidInputError(AutodevError, ValueError):
    """Raised when a caller supplies a value that fails validation. Never retried."""


class InvalidStateError(InvalidInputError):
    """Raised when a phase or work type is not part of the fixed enumeration."""


class PoolInitError(InvalidInputError):
    """Raised when the pool cannot be initialized (bad size or git unavailable)."""


class SlotNotFoundError(InvalidInputError):
    """Raised when a slot id does not exist in the pool."""


class TaskAlreadyAllocatedError(InvalidInputError):
    """Raised when a task already holds a busy slot."""


class PoolExhaustedError(AutodevError):
    """Raised synchronously when no idle slot is available."""


class PoolNotInitializedError(AutodevError):
    """Raised when pool state is requested before ``init`` has run."""


class WorktreeCreateError(AutodevError):
    """Raised when git fails to create the worktree and branch for a slot."""


class DriftError(AutodevError):
    """Raised when persisted slot state disagrees with the filesystem."""

    def __init__(self, message: str, issues: list | None = None) -> None:
        super().__init__(message)
        self.issues = list(issues or [])


class MergeConflictError(AutodevError):
    """Raised when one or more branches could not be merged."""

    def __init__(self, message: str, failed: list | None = None) -> None:
        super().__init__(message)
        self.failed = list(failed or [])


class WorkflowNotInitializedError(AutodevError):
    """Raised when an operation requires a workflow session that does not exist."""


class StateCorruptedError(AutodevError):
    """Raised when a persisted document cannot be parsed or fails schema validation."""


class StateLockTimeout(AutodevError):
    """Raised when the state lock cannot be acquired before the timeout elapses."""


__all__ = [
    "AutodevError",
    "DriftError",
    "InvalidInputError",
    "InvalidStateError",
    "MergeConflictError",
    "PoolExhaustedError",
    "PoolInitError",
    "PoolNotInitializedError",
    "SlotNotFoundError",
    "StateCorruptedError",
    "StateLockTimeout",
    "TaskAlreadyAllocatedError",
    "WorkflowNotInitializedError",
    "WorktreeCreateError",
]
