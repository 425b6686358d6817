"""Utility helpers for the git runner."""

from __future__ import annotations

import os
from typing import Mapping

# Set by git hooks; they would redirect commands away from the target repository.
_SANITIZED_VARS = {
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
    "GIT_OBJECT_DIRECTORY",
    "GIT_COMMON_DIR",
    "GIT_PREFIX",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for git subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    if additional:
        env.update(additional)
    return env
