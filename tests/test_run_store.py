from __future__ import annotations

import json

import pytest

from chat_oracle.errors import INTERNAL, NOT_FOUND, OracleError
from chat_oracle.runs.models import RunOptions, RunRecord, new_run_id
from chat_oracle.runs.store import FileRunStore, MemoryRunStore


def test_file_store_persists_status_json(tmp_path) -> None:  # noqa: ANN001
    store = FileRunStore(tmp_path)
    record = RunRecord(run_id=new_run_id(), prompt="Hello", follow_ups=["Hello"])
    store.put(record)

    raw = json.loads((tmp_path / record.run_id / "status.json").read_text(encoding="utf-8"))
    assert raw["state"] == "pending"
    assert raw["prompt"] == "Hello"

    loaded = store.get(record.run_id)
    assert loaded is not None
    assert loaded.follow_ups == ["Hello"]
    assert loaded.updated_at == record.updated_at
    # No temp files left behind by the atomic writer.
    assert sorted(p.name for p in (tmp_path / record.run_id).iterdir()) == ["status.json"]


def test_file_store_rejects_path_like_ids(tmp_path) -> None:  # noqa: ANN001
    store = FileRunStore(tmp_path)
    assert store.get("../escape") is None
    with pytest.raises(OracleError) as exc_info:
        store.run_path("../escape")
    assert exc_info.value.kind == NOT_FOUND


def test_file_store_ignores_corrupt_status(tmp_path) -> None:  # noqa: ANN001
    (tmp_path / "r1").mkdir()
    (tmp_path / "r1" / "status.json").write_text("{not json", encoding="utf-8")
    store = FileRunStore(tmp_path)
    assert store.get("r1") is None
    assert store.list() == []


def test_file_store_list_and_delete(tmp_path) -> None:  # noqa: ANN001
    store = FileRunStore(tmp_path)
    store.put(RunRecord(run_id="a1", prompt="one"))
    store.put(RunRecord(run_id="b2", prompt="two"))
    (tmp_path / "stray-dir").mkdir()

    assert [r.run_id for r in store.list()] == ["a1", "b2"]
    assert store.delete("a1") is True
    assert store.delete("a1") is False
    assert [r.run_id for r in store.list()] == ["b2"]


def test_file_store_options_and_markers(tmp_path) -> None:  # noqa: ANN001
    store = FileRunStore(tmp_path)
    store.put(RunRecord(run_id="r1", prompt="p"))

    with pytest.raises(OracleError) as exc_info:
        store.load_options("r1")
    assert exc_info.value.kind == NOT_FOUND

    store.save_options("r1", RunOptions(base_url="https://chat.example/", attachments=["/tmp/a.txt"]))
    options = store.load_options("r1")
    assert options.base_url == "https://chat.example/"
    assert options.attachments == ["/tmp/a.txt"]
    assert options.baseline_assistant_count is None

    assert store.cancel_requested("r1") is False
    store.request_cancel("r1")
    assert store.cancel_requested("r1") is True
    store.clear_cancel("r1")
    assert store.cancel_requested("r1") is False

    assert store.read_result("r1") is None
    store.write_result("r1", "Echo: Hello")
    assert store.read_result("r1") == "Echo: Hello"
    assert (tmp_path / "r1" / "result.md").read_text(encoding="utf-8") == "Echo: Hello"


def test_memory_store_returns_copies() -> None:
    store = MemoryRunStore()
    record = RunRecord(run_id="r1", prompt="p")
    store.put(record)

    loaded = store.get("r1")
    assert loaded is not None
    loaded.state = "completed"
    assert store.get("r1").state == "pending"
    assert store.delete("r1") is True
    assert store.get("r1") is None


def test_run_ids_are_unique_and_path_safe() -> None:
    ids = {new_run_id() for _ in range(200)}
    assert len(ids) == 200
    for run_id in ids:
        assert "/" not in run_id
        assert len(run_id.split("-")[-1]) == 8


def test_status_lock_serializes_writers_and_breaks_dead_owners(tmp_path, monkeypatch) -> None:  # noqa: ANN001
    from chat_oracle.runs import store as store_module
    from chat_oracle.runs.state_machine import RunStateMachine

    monkeypatch.setattr(store_module, "STATUS_LOCK_WAIT", 0.1)
    store = FileRunStore(tmp_path)
    store.put(RunRecord(run_id="r1", prompt="p"))
    machine = RunStateMachine(store)
    lock_path = tmp_path / "r1" / "status.lock"

    with store.locked("r1"):
        assert lock_path.is_file()
        with pytest.raises(OracleError) as exc_info:
            machine.update("r1", message="from another writer")
        assert exc_info.value.kind == INTERNAL
    assert not lock_path.exists()

    lock_path.write_text(json.dumps({"pid": 2**22 + 17, "created_at": 0}), encoding="utf-8")
    assert machine.update("r1", message="after crash").message == "after crash"
    assert not lock_path.exists()


def test_locking_a_run_without_a_directory_creates_nothing(tmp_path) -> None:  # noqa: ANN001
    store = FileRunStore(tmp_path)
    with store.locked("ghost"):
        pass
    assert not (tmp_path / "ghost").exists()
