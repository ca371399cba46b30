import datetime as dt
import json

import pytest

import hourglass as hg


def test_load_creates_missing_file_empty(task_path):
    s = hg.TaskStore(task_path)
    assert s.load() == []
    assert task_path.exists()
    assert json.loads(task_path.read_text(encoding="utf-8")) == []


def test_load_treats_blank_file_as_no_tasks(task_path):
    task_path.write_text("", encoding="utf-8")
    s = hg.TaskStore(task_path)
    assert s.load() == []


@pytest.mark.parametrize("content", [
    "{not json",
    '{"id": 1}',
    '[{"id": 1, "description": "x"}]',
    '[{"id": "one", "description": "x", "completed": false, '
    '"created_at": "2024-01-01T00:00:00+00:00", "modified_at": "2024-01-01T00:00:00+00:00"}]',
])
def test_load_unparseable_file_raises_storage_error(task_path, content):
    task_path.write_text(content, encoding="utf-8")
    with pytest.raises(hg.StorageError):
        hg.TaskStore(task_path).load()


@pytest.mark.parametrize("completed", ["false", 0, None, "missing"])
def test_load_requires_boolean_completed(task_path, completed):
    rec = {
        "id": 1, "description": "x", "completed": completed,
        "created_at": "2024-01-01T00:00:00Z", "modified_at": "2024-01-01T00:00:00Z",
    }
    if completed == "missing":
        del rec["completed"]
    task_path.write_text(json.dumps([rec]), encoding="utf-8")
    with pytest.raises(hg.StorageError):
        hg.TaskStore(task_path).load()


def test_load_rejects_duplicate_ids(task_path):
    rec = {
        "id": 3, "description": "dup", "completed": False,
        "created_at": "2024-01-01T00:00:00Z", "modified_at": "2024-01-01T00:00:00Z",
    }
    task_path.write_text(json.dumps([rec, rec]), encoding="utf-8")
    with pytest.raises(hg.StorageError):
        hg.TaskStore(task_path).load()


def test_add_assigns_first_id_and_persists(store, task_path):
    task = store.add("buy milk")
    assert task.id == 1
    assert task.completed is False
    assert task.created_at == task.modified_at
    saved = json.loads(task_path.read_text(encoding="utf-8"))
    assert [(r["id"], r["description"], r["completed"]) for r in saved] == [(1, "buy milk", False)]


def test_reload_round_trips_tasks_and_continues_ids(store, task_path):
    store.add("one")
    store.add("two")
    store.toggle(1)

    again = hg.TaskStore(task_path)
    tasks = again.load()
    assert [(t.id, t.description, t.completed) for t in tasks] == [(1, "one", False), (2, "two", True)]
    assert tasks[0].created_at.tzinfo is not None
    assert again.add("three").id == 3


def test_ids_are_never_reused_within_a_session(store):
    seen = set()
    for i in range(5):
        seen.add(store.add(f"task {i}").id)
    store.remove(4)  # highest id
    store.remove(0)
    store.update(0, "renamed")
    for i in range(3):
        task = store.add(f"more {i}")
        assert task.id not in seen
        seen.add(task.id)
    ids = [t.id for t in store.tasks]
    assert len(ids) == len(set(ids))


def test_double_toggle_restores_completed(store):
    store.add("buy milk")
    store.toggle(0)
    assert store.tasks[0].completed is True
    store.toggle(0)
    assert store.tasks[0].completed is False


def test_toggle_out_of_range_is_ignored(store):
    store.toggle(0)
    store.add("x")
    store.toggle(5)
    store.toggle(-1)
    assert store.tasks[0].completed is False


def test_update_rewrites_description_and_modified_at(store, monkeypatch):
    store.add("old")
    later = dt.datetime(2030, 1, 1, tzinfo=dt.timezone.utc)
    monkeypatch.setattr(hg, "utc_now", lambda: later)
    task = store.update(0, "new")
    assert task.description == "new"
    assert task.modified_at == later
    assert task.created_at != later


def test_update_and_remove_out_of_range_raise(store):
    with pytest.raises(hg.TaskNotFound):
        store.update(0, "nope")
    with pytest.raises(hg.TaskNotFound):
        store.remove(0)
    store.add("x")
    with pytest.raises(LookupError):
        store.remove(-1)


def test_remove_keeps_remaining_ids(store, task_path):
    store.add("first")
    second = store.add("second")
    removed = store.remove(0)
    assert removed.description == "first"
    assert [t.id for t in store.tasks] == [second.id]
    saved = json.loads(task_path.read_text(encoding="utf-8"))
    assert [r["id"] for r in saved] == [2]


def test_find_task_file_prefers_existing_hourglass_file(tmp_path):
    assert hg.find_task_file(tmp_path) == tmp_path / hg.DEFAULT_TASK_FILE
    (tmp_path / "work.hourglass").write_text("[]", encoding="utf-8")
    assert hg.find_task_file(tmp_path) == tmp_path / "work.hourglass"
