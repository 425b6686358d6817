from __future__ import annotations

import json
from pathlib import Path

import pytest

from autodev_mcp.git import GitExecutionResult, GitNotFoundError, GitRunner, GitRunnerError
from autodev_mcp.git.runner import serialize_result
from autodev_mcp.git.utils import sanitize_environment

from conftest import git


def test_sanitize_environment_drops_hook_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GIT_DIR", "/elsewhere/.git")
    monkeypatch.setenv("GIT_INDEX_FILE", "/elsewhere/index")
    monkeypatch.delenv("GIT_TERMINAL_PROMPT", raising=False)

    env = sanitize_environment({"EXTRA": "1"})

    assert "GIT_DIR" not in env
    assert "GIT_INDEX_FILE" not in env
    assert env["GIT_TERMINAL_PROMPT"] == "0"
    assert env["EXTRA"] == "1"


def test_explicit_missing_executable(tmp_path: Path) -> None:
    with pytest.raises(GitNotFoundError):
        GitRunner(tmp_path, tmp_path / "no-git")


def test_missing_git_on_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("autodev_mcp.git.runner.shutil.which", lambda _: None)

    with pytest.raises(GitNotFoundError):
        GitRunner(tmp_path)


def test_repository_queries(runner: GitRunner, git_repo: Path) -> None:
    git(git_repo, "branch", "auto/a")
    git(git_repo, "branch", "auto/b")

    assert runner.is_repository()
    assert runner.current_branch() == "main"
    assert runner.branch_exists("auto/a")
    assert runner.list_branches("auto/") == ["auto/a", "auto/b"]
    assert runner.delete_branch("auto/a")
    assert not runner.branch_exists("auto/a")
    assert runner.changed_files() == ["README.md"]


def test_worktree_paths_lists_main_checkout(runner: GitRunner, git_repo: Path, tmp_path: Path) -> None:
    extra = tmp_path / "extra"
    assert runner.worktree_add(extra, "auto/extra", "HEAD").ok

    paths = [path.resolve() for path in runner.worktree_paths()]

    assert git_repo.resolve() in paths
    assert extra.resolve() in paths
    assert runner.worktree_remove(extra).ok


def test_outside_repository(runner: GitRunner, tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    outside = GitRunner(plain, runner.executable)

    assert not outside.is_repository()
    assert outside.changed_files() is None
    assert outside.current_branch(default="trunk") == "trunk"
    with pytest.raises(GitRunnerError) as excinfo:
        outside.run("status", check=True)
    assert excinfo.value.result is not None
    assert not excinfo.value.result.ok


def test_serialize_result() -> None:
    result = GitExecutionResult(args=("git", "status"), returncode=1, stdout="", stderr="boom")

    payload = json.loads(serialize_result(result))

    assert payload == {"args": ["git", "status"], "returncode": 1, "stdout": "", "stderr": "boom"}
    assert result.lines() == []


def test_current_branch_on_detached_head(runner: GitRunner, git_repo: Path) -> None:
    git(git_repo, "checkout", "-q", "--detach")

    assert runner.current_branch(default="trunk") == "HEAD"
