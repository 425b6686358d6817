from __future__ import annotations

import fcntl
import json
import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from autodev_mcp.errors import StateCorruptedError, StateLockTimeout
from autodev_mcp.storage import PoolSlot, PoolState, ResourceStore, WorkflowState


def _pool_state(size: int = 2) -> PoolState:
    return PoolState(
        pool_size=size,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        slots=[PoolSlot(id=f"wt-{i}", path=f"/tmp/wt-{i}") for i in range(1, size + 1)],
    )


def test_save_and_load_json_document(tmp_path: Path) -> None:
    store = ResourceStore(tmp_path)
    path = tmp_path / "pool-state.json"

    store.save(path, _pool_state())
    loaded = store.load(path, PoolState)

    assert loaded is not None
    assert loaded.pool_size == 2
    assert [slot.id for slot in loaded.slots] == ["wt-1", "wt-2"]
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == "1.0"


def test_load_missing_returns_none(tmp_path: Path) -> None:
    store = ResourceStore(tmp_path)
    assert store.load(tmp_path / "absent.yaml", WorkflowState) is None


def test_load_rejects_unparseable_yaml(tmp_path: Path) -> None:
    store = ResourceStore(tmp_path)
    path = tmp_path / "auto-state-machine.yaml"
    path.write_text("current_state: [unterminated\n", encoding="utf-8")

    with pytest.raises(StateCorruptedError):
        store.load(path, WorkflowState)


def test_load_rejects_schema_violation(tmp_path: Path) -> None:
    store = ResourceStore(tmp_path)
    path = tmp_path / "pool-state.json"
    payload = _pool_state().model_dump(mode="json")
    payload["pool_size"] = 5
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(StateCorruptedError, match="Schema validation"):
        store.load(path, PoolState)


def test_busy_slot_without_branch_is_rejected(tmp_path: Path) -> None:
    store = ResourceStore(tmp_path)
    path = tmp_path / "pool-state.json"
    payload = _pool_state().model_dump(mode="json")
    payload["slots"][0].update({"status": "busy", "task_id": "t1", "branch": None})
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(StateCorruptedError):
        store.load(path, PoolState)


def test_write_is_atomic_and_leaves_no_temp_files(tmp_path: Path) -> None:
    store = ResourceStore(tmp_path)
    target = tmp_path / "nested" / "doc.md"

    store.write_text(target, "first")
    store.write_text(target, "second")

    assert target.read_text(encoding="utf-8") == "second"
    assert sorted(p.name for p in target.parent.iterdir()) == ["doc.md"]


def test_locked_is_reentrant(tmp_path: Path) -> None:
    store = ResourceStore(tmp_path)

    with store.locked():
        with store.locked():
            assert store.is_locked
        assert store.is_locked
    assert not store.is_locked


def test_lock_times_out_when_held_elsewhere(tmp_path: Path) -> None:
    ticks = iter(float(n) for n in range(100))
    sleeps: list[float] = []
    store = ResourceStore(
        tmp_path,
        lock_timeout=4.0,
        initial_backoff=0.5,
        max_backoff=1.0,
        sleep=sleeps.append,
        monotonic=lambda: next(ticks),
    )
    store.root.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(store.lock_file), os.O_CREAT | os.O_RDWR, 0o644)
    fcntl.flock(fd, fcntl.LOCK_EX)
    try:
        with pytest.raises(StateLockTimeout):
            with store.locked():
                pass
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)

    assert sleeps == [0.5, 1.0, 1.0]
    assert not store.is_locked


def test_delete_reports_whether_file_existed(tmp_path: Path) -> None:
    store = ResourceStore(tmp_path)
    path = tmp_path / "doc.txt"
    path.write_text("x", encoding="utf-8")

    assert store.delete(path) is True
    assert store.delete(path) is False
