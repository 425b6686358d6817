"""FastMCP server bootstrap for Autodev."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastmcp import FastMCP

from . import __version__
from .budget import TokenBudgetController
from .checkpoints import CheckpointWriter
from .config import AutodevSettings, get_settings
from .errors import AutodevError
from .git import GitNotFoundError, GitRunner
from .pool import WorktreePool
from .skills import load_skill_table
from .storage import ResourceStore
from .tools import register_tools
from .workflow import PhaseStateMachine


def configure_logging(level: str) -> None:
    """Configure root logging for the Autodev server and CLI."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


class Components:
    """The four core components wired to one store and one git runner."""

    def __init__(self, settings: AutodevSettings, git_runner: GitRunner | None = None) -> None:
        self.settings = settings
        self.store = ResourceStore(
            settings.resolved_state_dir, lock_timeout=settings.lock_timeout
        )
        self.git = git_runner or GitRunner(
            settings.repo_root, Path(settings.git_path) if settings.git_path else None
        )
        self.skills = load_skill_table(settings.skill_table_path)
        self.pool = WorktreePool.from_settings(settings, self.store, self.git)
        self.machine = PhaseStateMachine.from_settings(settings, self.store, self.skills)
        self.checkpoints = CheckpointWriter.from_settings(
            settings, self.machine, self.git, pool=self.pool
        )
        self.budget = TokenBudgetController.from_settings(settings, self.machine)


def create_server(
    settings: Optional[AutodevSettings] = None,
    git_runner: GitRunner | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the Autodev tools and status resource."""

    settings = settings or get_settings()
    components = Components(settings, git_runner)

    git_metadata: dict[str, Any] = {
        "path": str(components.git.executable),
        "version": None,
        "repository": components.git.is_repository(),
    }
    version_result = components.git.version()
    if version_result.ok:
        git_metadata["version"] = version_result.stdout.strip()

    server = FastMCP(
        name="Autodev MCP",
        instructions=(
            "Autodev coordinates autonomous coding tasks: allocate isolated git "
            "worktrees from a fixed pool, move the workflow through its phases, "
            "write resumable checkpoints, and track estimated token usage. "
            "On a WARNING or CHECKPOINT usage band, summarize or hand off."
        ),
    )

    handles = register_tools(
        server,
        settings=settings,
        pool=components.pool,
        machine=components.machine,
        checkpoints=components.checkpoints,
        budget=components.budget,
    )

    def status_resource() -> str:
        """Return a JSON string summarizing pool, workflow and budget state."""

        errors: dict[str, str] = {}

        pool_summary: dict[str, Any] | None = None
        try:
            status = components.pool.status()
            pool_summary = {
                "pool_size": status.pool_size,
                "idle": status.idle,
                "busy": status.busy,
                "error": status.error,
            }
        except AutodevError as exc:
            errors["pool"] = str(exc)

        workflow_summary: dict[str, Any] | None = None
        try:
            state = components.machine.load()
            if state is not None:
                workflow_summary = {
                    "session_id": state.session_id,
                    "current_state": state.current_state.value,
                    "work_type": state.work_type.value if state.work_type else None,
                    "mandatory_skills": state.mandatory_skills,
                }
        except AutodevError as exc:
            errors["workflow"] = str(exc)

        budget_summary: dict[str, Any] | None = None
        try:
            budget_status = components.budget.status()
            budget_summary = {
                "band": budget_status.band.value,
                "estimated": budget_status.usage.estimated,
                "budget": budget_status.usage.budget,
                "remaining": budget_status.remaining,
            }
        except AutodevError as exc:
            errors["budget"] = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "state_dir": str(settings.resolved_state_dir),
            "git": git_metadata,
            "pool": pool_summary,
            "workflow": workflow_summary,
            "budget": budget_summary,
            "handoff_requested": components.checkpoints.handoff_signal.exists(),
            "tools": handles.names,
            "errors": errors,
        }
        return json.dumps(payload)

    server.resource(
        "resource://autodev/status",
        name="autodev_status",
        description="Provides the current pool, workflow and budget status.",
        mime_type="application/json",
        tags={"status", "health"},
    )(status_resource)

    setattr(server, "components", components)
    setattr(server, "git_metadata", git_metadata)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_snapshot", status_resource)
    return server


def main() -> None:
    """Entry point for running the Autodev MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        server = create_server(settings)
    except GitNotFoundError as exc:
        logging.getLogger(__name__).error("Cannot start server", extra={"error": str(exc)})
        raise SystemExit(1) from exc

    logging.getLogger(__name__).info(
        "Launching Autodev MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "state_dir": str(settings.resolved_state_dir),
            "git_version": getattr(server, "git_metadata", {}).get("version"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
