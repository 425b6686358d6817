from __future__ import annotations

import shutil
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from autodev_mcp.config import AutodevSettings
from autodev_mcp.git import GitRunner
from autodev_mcp.pool import WorktreePool
from autodev_mcp.skills import load_skill_table
from autodev_mcp.storage import ResourceStore
from autodev_mcp.workflow import PhaseStateMachine


def git(repo: Path, *args: str) -> str:
    process = subprocess.run(
        ["git", *args], cwd=str(repo), capture_output=True, text=True, check=True
    )
    return process.stdout


def commit_file(repo: Path, name: str, content: str, message: str) -> None:
    path = repo / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message)


class StepClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        value = self.current
        self.current = value + timedelta(seconds=1)
        return value


@pytest.fixture
def repo_dir(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    return repo


@pytest.fixture
def git_repo(repo_dir: Path) -> Path:
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    repo = repo_dir
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "dev@example.com")
    git(repo, "config", "user.name", "Autodev Tests")
    git(repo, "config", "commit.gpgsign", "false")
    commit_file(repo, ".gitignore", ".claude/\n", "ignore state")
    commit_file(repo, "README.md", "# sample\n", "initial commit")
    return repo


@pytest.fixture
def settings(repo_dir: Path) -> AutodevSettings:
    return AutodevSettings(repo_root=repo_dir, pool_size=3, log_level="DEBUG")


@pytest.fixture
def store(settings: AutodevSettings) -> ResourceStore:
    return ResourceStore(settings.resolved_state_dir, lock_timeout=2.0)


@pytest.fixture
def runner(git_repo: Path) -> GitRunner:
    return GitRunner(git_repo)


@pytest.fixture
def pool(settings: AutodevSettings, store: ResourceStore, runner: GitRunner) -> WorktreePool:
    return WorktreePool.from_settings(settings, store, runner)


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def machine(settings: AutodevSettings, store: ResourceStore, clock: StepClock) -> PhaseStateMachine:
    return PhaseStateMachine.from_settings(settings, store, load_skill_table(), clock=clock)
