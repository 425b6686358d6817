"""Worktree pool, workflow state and token budget coordination for autonomous agents."""

__version__ = "0.3.0"

__all__ = ["__version__"]
