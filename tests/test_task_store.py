import datetime
import json
import threading

import pytest

from errors import NotFound, PersistenceBlocked, TaskNotFound, ValidationError
from task_store import TaskStore, build_task_patch, generate_id


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class BlockingWriter:
    def write(self, doc, reason="", allow_shrink=False):
        return {"success": False, "blocked": True, "error": "refusing to shrink tasks"}


def _store(tmp_path, **kwargs):
    return TaskStore(
        str(tmp_path / "tasks.json"),
        archive_dir=str(tmp_path / "archive"),
        backup_dir=str(tmp_path / "backups"),
        **kwargs
    )


def _write_doc(tmp_path, doc):
    (tmp_path / "tasks.json").write_text(json.dumps(doc), encoding="utf-8")


def _iso(dt):
    return dt.isoformat().replace("+00:00", "Z")


def test_generate_id_shape():
    assert generate_id("task").startswith("task-")
    parts = generate_id("act").split("-")
    assert len(parts) == 3
    assert parts[1].isdigit()
    assert len(parts[2]) == 9


def test_missing_file_loads_default_document(tmp_path):
    doc = _store(tmp_path).load()
    assert doc["tasks"] == []
    assert doc["activity"] == []
    assert doc["columns"] == ["inbox", "assigned", "in_progress", "review", "done"]
    assert "data" in doc["agents"]


def test_create_without_assignee_lands_in_inbox(tmp_path):
    store = _store(tmp_path)
    task = store.create("Fix warp core")
    assert task["status"] == "inbox"
    assert task["assignee"] is None
    assert task["comments"] == [] and task["logs"] == []

    doc = store.load()
    assert [t["id"] for t in doc["tasks"]] == [task["id"]]
    assert [a["action"] for a in doc["activity"]] == ["created"]


def test_create_with_assignee_records_assignment(tmp_path):
    store = _store(tmp_path)
    task = store.create("Scan sector", assignee="spock", priority="high", agent="seven")
    assert task["status"] == "assigned"
    activity = store.load()["activity"]
    assert [a["action"] for a in activity] == ["created", "assigned"]
    assert activity[1]["target"] == "spock"
    assert activity[0]["agent"] == "seven"


def test_create_requires_title(tmp_path):
    store = _store(tmp_path)
    with pytest.raises(ValidationError) as exc:
        store.create("   ")
    assert exc.value.code == "MISSING_REQUIRED_FIELD"
    assert not (tmp_path / "tasks.json").exists()


def test_status_moves_are_recorded_with_from_and_to(tmp_path):
    store = _store(tmp_path)
    task = store.create("Calibrate sensors")
    store.update(task["id"], {"status": "done"})
    store.update(task["id"], {"status": "inbox"})
    store.update(task["id"], {"description": "no status change"})

    moves = [a for a in store.load()["activity"] if a["action"] == "moved"]
    assert [(m["from"], m["to"]) for m in moves] == [("inbox", "done"), ("done", "inbox")]
    assert store.get(task["id"])["status"] == "inbox"


def test_update_only_applies_allowed_fields(tmp_path):
    store = _store(tmp_path)
    task = store.create("Original")
    updated = store.update(task["id"], {"title": "Renamed", "id": "hijack", "createdAt": "never", "agent": "data"})
    assert updated["id"] == task["id"]
    assert updated["title"] == "Renamed"
    assert updated["createdAt"] == task["createdAt"]
    assert "agent" not in updated


def test_build_task_patch_rejects_unknown_status():
    with pytest.raises(ValidationError):
        build_task_patch({"status": "warp"})
    with pytest.raises(ValidationError):
        build_task_patch({"assignee": 7})
    assert build_task_patch({"assignee": ""}) == {"assignee": None}


def test_missing_task_leaves_file_untouched(tmp_path):
    store = _store(tmp_path)
    store.create("Only task")
    before = (tmp_path / "tasks.json").read_bytes()

    with pytest.raises(TaskNotFound) as exc:
        store.update("task-missing", {"status": "done"})
    assert exc.value.status_code == 404
    assert exc.value.to_dict()["code"] == "TASK_NOT_FOUND"
    with pytest.raises(TaskNotFound):
        store.delete("task-missing")
    with pytest.raises(TaskNotFound):
        store.add_comment("task-missing", "seven", "hello")
    with pytest.raises(TaskNotFound):
        store.add_log("task-missing", "progress")

    assert (tmp_path / "tasks.json").read_bytes() == before


def test_comments_and_logs(tmp_path):
    store = _store(tmp_path)
    task = store.create("Log me")
    comment = store.add_comment(task["id"], "geordi", "Looks good")
    entry = store.add_log(task["id"], "Halfway there", "progress", "geordi")

    stored = store.get(task["id"])
    assert stored["comments"] == [comment]
    assert store.get_logs(task["id"]) == [entry]
    assert entry["type"] == "progress"
    logged = store.load()["activity"][-1]
    assert logged["action"] == "logged"
    assert logged["logType"] == "progress"
    assert logged["message"] == "Halfway there"

    store.delete_log(task["id"], entry["id"])
    assert store.get_logs(task["id"]) == []
    with pytest.raises(NotFound):
        store.delete_log(task["id"], entry["id"])


def test_delete_removes_task_and_records_activity(tmp_path):
    store = _store(tmp_path)
    task = store.create("Temporary")
    store.delete(task["id"])
    doc = store.load()
    assert doc["tasks"] == []
    assert doc["activity"][-1]["action"] == "deleted"


def test_activity_is_capped_on_every_save(tmp_path):
    store = _store(tmp_path, max_activity=5)
    task = store.create("Busy")
    for i in range(10):
        store.add_comment(task["id"], "seven", f"note {i}")
    activity = store.load()["activity"]
    assert len(activity) == 5
    assert activity[-1]["action"] == "added"


def test_prune_keeps_newest_entries_in_order(tmp_path):
    activity = [{"id": f"act-{i}", "action": "added"} for i in range(600)]
    logs = [{"id": f"log-{i}", "message": str(i)} for i in range(150)]
    _write_doc(tmp_path, {"tasks": [{"id": "task-1", "status": "inbox", "logs": logs}], "activity": activity})
    store = _store(tmp_path)

    removed = store.prune(max_activity=500, max_logs_per_task=100)
    assert removed == {"activityRemoved": 100, "logsRemoved": 50}

    doc = store.load()
    assert [a["id"] for a in doc["activity"]] == [f"act-{i}" for i in range(100, 600)]
    assert [entry["id"] for entry in doc["tasks"][0]["logs"]] == [f"log-{i}" for i in range(50, 150)]


def test_prune_reports_entries_dropped_by_the_store_cap(tmp_path):
    activity = [{"id": f"act-{i}", "action": "added"} for i in range(800)]
    _write_doc(tmp_path, {"tasks": [], "activity": activity})
    store = _store(tmp_path)

    removed = store.prune(max_activity=1000)
    assert removed["activityRemoved"] == 300
    assert len(store.load()["activity"]) == 500


def test_archive_moves_stale_done_tasks_once(tmp_path):
    now = datetime.datetime(2026, 3, 10, 12, 0, tzinfo=datetime.timezone.utc)
    old = _iso(now - datetime.timedelta(days=10))
    recent = _iso(now - datetime.timedelta(days=1))
    _write_doc(tmp_path, {
        "tasks": [
            {"id": "task-old", "status": "done", "updatedAt": old},
            {"id": "task-recent", "status": "done", "updatedAt": recent},
            {"id": "task-open", "status": "in_progress", "updatedAt": old},
        ],
        "activity": [],
    })
    store = _store(tmp_path)

    assert store.archive(7, now=now) == 1
    archive_file = tmp_path / "archive" / "tasks-2026-03-10.json"
    archived = json.loads(archive_file.read_text(encoding="utf-8"))
    assert [t["id"] for t in archived] == ["task-old"]
    assert [t["id"] for t in store.load()["tasks"]] == ["task-recent", "task-open"]

    assert store.archive(7, now=now) == 0
    assert len(json.loads(archive_file.read_text(encoding="utf-8"))) == 1


def test_archive_appends_and_bypasses_shrink_guard(tmp_path):
    now = datetime.datetime(2026, 3, 10, 12, 0, tzinfo=datetime.timezone.utc)
    old = _iso(now - datetime.timedelta(days=30))
    archive_file = tmp_path / "archive" / "tasks-2026-03-10.json"
    archive_file.parent.mkdir()
    archive_file.write_text(json.dumps([{"id": "task-earlier"}]), encoding="utf-8")
    tasks = [{"id": f"task-{i}", "status": "done", "updatedAt": old} for i in range(6)]
    tasks.append({"id": "task-live", "status": "inbox", "updatedAt": old})
    _write_doc(tmp_path, {"tasks": tasks, "activity": []})
    store = _store(tmp_path)

    assert store.archive(7, now=now) == 6
    assert [t["id"] for t in store.load()["tasks"]] == ["task-live"]
    archived = json.loads(archive_file.read_text(encoding="utf-8"))
    assert archived[0]["id"] == "task-earlier"
    assert len(archived) == 7


def test_list_tasks_filters_paginates_and_compacts(tmp_path):
    store = _store(tmp_path)
    for i in range(5):
        store.create(f"Task {i}", description="x" * 300, assignee="geordi" if i % 2 else None)
    first = store.load()["tasks"][0]["id"]
    store.add_comment(first, "seven", "ping")
    store.update(first, {"status": "done"})

    page = store.list_tasks(limit=2, offset=1, compact=True)
    assert page["pagination"] == {"total": 5, "limit": 2, "offset": 1, "returned": 2, "hasMore": True}
    assert "comments" not in page["tasks"][0]
    assert page["tasks"][0]["description"].endswith("...")
    assert len(page["tasks"][0]["description"]) == 203

    full = store.list_tasks(exclude_done=True)
    assert first not in [t["id"] for t in full["tasks"]]
    assert full["pagination"]["hasMore"] is False

    compact_first = store.list_tasks(status="done", compact=True)["tasks"][0]
    assert compact_first["commentCount"] == 1
    assert compact_first["logCount"] == 0
    assert len(store.list_tasks(assignee="geordi")["tasks"]) == 2


def test_stats_tallies_fields(tmp_path):
    store = _store(tmp_path)
    store.create("A", assignee="data", priority="high")
    store.create("B", category="research")
    stats = store.stats()
    assert stats["total"] == 2
    assert stats["byStatus"]["assigned"] == 1
    assert stats["byStatus"]["inbox"] == 1
    assert stats["byStatus"]["done"] == 0
    assert stats["byAssignee"] == {"data": 1, "unassigned": 1}
    assert stats["byPriority"] == {"high": 1, "medium": 1}
    assert stats["byCategory"] == {"general": 1, "research": 1}
    assert stats["activityCount"] == 3


def test_read_cache_serves_recent_reads_and_drops_on_own_write(tmp_path):
    clock = FakeClock()
    store = _store(tmp_path, clock=clock)
    store.create("First")
    assert len(store.load()["tasks"]) == 1

    _write_doc(tmp_path, {"tasks": [], "activity": []})
    assert len(store.load()["tasks"]) == 1
    clock.now += 2
    assert store.load()["tasks"] == []

    store.create("Second")
    assert [t["title"] for t in store.load()["tasks"]] == ["Second"]


def test_load_returns_a_copy(tmp_path):
    store = _store(tmp_path)
    store.create("Immutable")
    doc = store.load()
    doc["tasks"].clear()
    assert len(store.load()["tasks"]) == 1


def test_blocked_write_raises_and_keeps_document(tmp_path):
    _write_doc(tmp_path, {"tasks": [{"id": "task-1", "status": "inbox"}], "activity": []})
    store = TaskStore(str(tmp_path / "tasks.json"), archive_dir=str(tmp_path / "archive"), writer=BlockingWriter())
    with pytest.raises(PersistenceBlocked) as exc:
        store.create("Never saved")
    assert exc.value.status_code == 409
    assert [t["id"] for t in store.load()["tasks"]] == ["task-1"]


def test_unreadable_document_blocks_mutation_and_is_kept(tmp_path):
    tasks = [{"id": f"task-{i}", "status": "inbox", "title": f"Task {i}"} for i in range(20)]
    text = json.dumps({"tasks": tasks, "activity": []})
    truncated = text[: len(text) // 2]
    (tmp_path / "tasks.json").write_text(truncated, encoding="utf-8")
    store = _store(tmp_path)

    with pytest.raises(PersistenceBlocked):
        store.create("New task")
    with pytest.raises(PersistenceBlocked):
        store.archive(cutoff_days=0)

    assert (tmp_path / "tasks.json").read_text(encoding="utf-8") == truncated
    assert store.load()["tasks"] == []


def test_concurrent_creates_are_all_kept(tmp_path):
    store = _store(tmp_path)
    threads = [threading.Thread(target=store.create, args=(f"Task {i}",)) for i in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(store.load()["tasks"]) == 20
