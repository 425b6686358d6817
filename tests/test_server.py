from __future__ import annotations

import json

from autodev_mcp import __version__
from autodev_mcp.config import AutodevSettings
from autodev_mcp.git import GitRunner
from autodev_mcp.server import create_server


def test_status_snapshot_before_anything_is_initialized(
    settings: AutodevSettings, runner: GitRunner
) -> None:
    server = create_server(settings, runner)

    payload = json.loads(server.status_snapshot())

    assert payload["server_version"] == __version__
    assert payload["git"]["repository"] is True
    assert payload["pool"] is None
    assert "pool" in payload["errors"]
    assert payload["workflow"] is None
    assert payload["budget"]["band"] == "NORMAL"
    assert payload["handoff_requested"] is False
    assert "pool_acquire" in payload["tools"]


def test_status_snapshot_reflects_components(settings: AutodevSettings, runner: GitRunner) -> None:
    server = create_server(settings, runner)
    handles = server.tool_handles

    handles["pool_init"](size=2)
    handles["pool_acquire"](task_id="t1")
    handles["state_init"](initial="EXECUTE")
    handles["budget_init"](total=1_000)
    handles["budget_add"](tokens=850)
    handles["checkpoint_handoff"]()

    payload = json.loads(server.status_snapshot())

    assert payload["pool"] == {"pool_size": 2, "idle": 1, "busy": 1, "error": 0}
    assert payload["workflow"]["current_state"] == "EXECUTE"
    assert payload["budget"]["band"] == "WARNING"
    assert payload["budget"]["remaining"] == 150
    assert payload["handoff_requested"] is True
    assert payload["errors"] == {}
