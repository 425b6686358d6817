"""Git CLI orchestration utilities."""

from .runner import GitExecutionResult, GitNotFoundError, GitRunner, GitRunnerError

__all__ = [
    "GitRunner",
    "GitExecutionResult",
    "GitRunnerError",
    "GitNotFoundError",
]
