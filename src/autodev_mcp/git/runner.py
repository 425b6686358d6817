"""Synchronous runner for the git CLI."""

from __future__ import annotations

import json
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .utils import sanitize_environment


class GitRunnerError(RuntimeError):
    """Base class for git runner errors."""

    def __init__(self, message: str, result: "GitExecutionResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


class GitNotFoundError(GitRunnerError):
    """Raised when the git executable cannot be located."""


@dataclass(slots=True)
class GitExecutionResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def lines(self) -> list[str]:
        return [line.strip() for line in self.stdout.splitlines() if line.strip()]


class GitRunner:
    """Execute git commands against a single repository."""

    def __init__(self, repo_root: Path, executable: Path | None = None) -> None:
        self._repo_root = Path(repo_root)
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    @property
    def repo_root(self) -> Path:
        return self._repo_root

    def run(self, *args: str, check: bool = False) -> GitExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = subprocess.run(
            cmd,
            cwd=str(self._repo_root),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=sanitize_environment(),
        )
        result = GitExecutionResult(
            args=tuple(cmd),
            returncode=process.returncode,
            stdout=process.stdout,
            stderr=process.stderr,
        )
        if check and not result.ok:
            raise GitRunnerError(
                f"git {' '.join(args)} failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}",
                result,
            )
        return result

    def version(self) -> GitExecutionResult:
        return self.run("--version")

    def is_repository(self) -> bool:
        if not self._repo_root.is_dir():
            return False
        return self.run("rev-parse", "--git-dir").ok

    def current_branch(self, default: str = "main") -> str:
        """Return the checked-out branch, ``HEAD`` when detached, or ``default`` if git cannot tell."""

        result = self.run("rev-parse", "--abbrev-ref", "HEAD")
        branch = result.stdout.strip()
        return branch if result.ok and branch else default

    def branch_exists(self, branch: str) -> bool:
        return self.run("show-ref", "--verify", "--quiet", f"refs/heads/{branch}").ok

    def delete_branch(self, branch: str) -> bool:
        return self.run("branch", "-D", branch).ok

    def list_branches(self, prefix: str) -> list[str]:
        ref = "refs/heads/" + prefix.rstrip("/")
        result = self.run("for-each-ref", "--format=%(refname:short)", ref)
        return sorted(result.lines()) if result.ok else []

    def worktree_add(self, path: Path, branch: str, base_ref: str) -> GitExecutionResult:
        return self.run("worktree", "add", str(path), "-b", branch, base_ref)

    def worktree_remove(self, path: Path) -> GitExecutionResult:
        return self.run("worktree", "remove", "-f", str(path))

    def worktree_prune(self) -> GitExecutionResult:
        return self.run("worktree", "prune")

    def worktree_paths(self) -> list[Path]:
        result = self.run("worktree", "list", "--porcelain")
        if not result.ok:
            return []
        return [
            Path(line[len("worktree ") :])
            for line in result.lines()
            if line.startswith("worktree ")
        ]

    def checkout(self, ref: str) -> GitExecutionResult:
        return self.run("checkout", ref)

    def merge_no_ff(self, branch: str, message: str) -> GitExecutionResult:
        return self.run("merge", "--no-ff", branch, "-m", message)

    def merge_abort(self) -> GitExecutionResult:
        return self.run("merge", "--abort")

    def conflicted_files(self) -> list[str]:
        result = self.run("diff", "--name-only", "--diff-filter=U")
        return result.lines() if result.ok else []

    def changed_files(self, since: str = "HEAD~1") -> list[str] | None:
        """Return files changed since ``since``, or None when git cannot tell."""

        result = self.run("diff", "--name-only", since)
        return result.lines() if result.ok else None


def serialize_result(result: GitExecutionResult) -> str:
    """Serialize a command result for structured log payloads."""

    return json.dumps(
        {
            "args": list(result.args),
            "returncode": result.returncode,
            "stdout": result.stdout,
            "stderr": result.stderr,
        }
    )
