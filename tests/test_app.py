import time

import pytest

import app as dashboard_app
import collectors
import config
from bridge import create_bridge
from errors import CollaboratorUnavailable


class FakeAggregator:
    def gather(self):
        return {"stardate": "48500.0", "system": {"uptime": "1 day"}, "crew": {}, "sessions": []}

    def sessions(self):
        return [{"key": "agent:main:subagent:spock-direct", "model": "sonnet"}]

    def weather(self, refresh=False):
        return {"status": "ONLINE", "refreshed": refresh}

    def invalidate_portfolio(self):
        pass

    def shutdown(self):
        pass


@pytest.fixture
def bridge(tmp_path, monkeypatch):
    test_bridge = create_bridge(
        dashboard_app.socketio.emit,
        tasks_file=str(tmp_path / "tasks.json"),
        messages_file=str(tmp_path / "messages.json"),
        archive_dir=str(tmp_path / "archive"),
        backup_dir=str(tmp_path / "backups"),
        portfolio_path=str(tmp_path / "portfolio.json"),
        aggregator=FakeAggregator(),
        debounce=0.25,
    )
    monkeypatch.setattr(dashboard_app, "bridge", test_bridge)
    yield test_bridge
    test_bridge.hub.close()
    test_bridge.cache.shutdown()


@pytest.fixture
def client(bridge):
    return dashboard_app.app.test_client()


def _unavailable(*args, **kwargs):
    raise CollaboratorUnavailable("node unavailable: not found")


def _payload(item):
    args = item["args"]
    return args[0] if isinstance(args, list) else args


def _received(socket_client):
    return [_payload(item) for item in socket_client.get_received() if item["name"] == "message"]


def test_health_reports_clients_and_cors_headers(client):
    response = client.get("/health")
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "healthy"
    assert payload["clients"] == 0
    assert response.headers["Access-Control-Allow-Origin"] == "*"


def test_preflight_is_answered_with_204(client):
    response = client.open("/api/tasks/anything", method="OPTIONS")
    assert response.status_code == 204
    assert "PATCH" in response.headers["Access-Control-Allow-Methods"]


def test_index_serves_front_end_when_installed(client, tmp_path, monkeypatch):
    assert client.get("/").status_code == 404
    static = tmp_path / "static"
    static.mkdir()
    (static / "index.html").write_text("<html>LCARS</html>", encoding="utf-8")
    monkeypatch.setattr(config, "STATIC_DIR", str(static))
    response = client.get("/")
    assert response.status_code == 200
    assert b"LCARS" in response.data


def test_snapshot_and_weather_endpoints(client):
    assert client.get("/api/data").get_json()["stardate"] == "48500.0"
    assert client.get("/api/weather?refresh=true").get_json() == {"status": "ONLINE", "refreshed": True}


def test_invalid_json_body_is_rejected(client):
    response = client.post("/api/tasks", data="{bad", content_type="application/json")
    assert response.status_code == 400
    assert response.get_json() == {"error": "Invalid JSON", "code": "INVALID_JSON"}


def test_task_crud_over_rest(client):
    response = client.post("/api/tasks", json={"title": "Recalibrate deflector", "assignee": "geordi"})
    assert response.status_code == 201
    task = response.get_json()
    assert task["status"] == "assigned"

    response = client.patch(f"/api/tasks/{task['id']}", json={"status": "in_progress", "agent": "geordi"})
    assert response.status_code == 200
    assert response.get_json()["status"] == "in_progress"

    assert client.get(f"/api/tasks/{task['id']}").get_json()["title"] == "Recalibrate deflector"

    response = client.post(f"/api/tasks/{task['id']}/comments", json={"author": "data", "text": "Verified"})
    assert response.status_code == 201

    response = client.delete(f"/api/tasks/{task['id']}")
    assert response.get_json()["success"] is True
    assert client.get(f"/api/tasks/{task['id']}").status_code == 404


def test_task_validation_and_not_found(client):
    response = client.post("/api/tasks", json={"description": "no title"})
    assert response.status_code == 400
    assert response.get_json()["code"] == "MISSING_REQUIRED_FIELD"

    response = client.patch("/api/tasks/task-missing", json={"status": "done"})
    assert response.status_code == 404
    assert response.get_json() == {"error": "Task not found", "code": "TASK_NOT_FOUND", "taskId": "task-missing"}

    task = client.post("/api/tasks", json={"title": "Valid"}).get_json()
    response = client.patch(f"/api/tasks/{task['id']}", json={"status": "warp"})
    assert response.status_code == 400
    assert "validStatuses" in response.get_json()

    assert client.get("/api/tasks?limit=many").status_code == 400
    response = client.get("/api/tasks?limit=-1")
    assert response.status_code == 400
    assert response.get_json()["code"] == "INVALID_INPUT"
    assert client.get("/api/tasks?offset=-2").status_code == 400
    assert client.post("/api/tasks/archive", json={"cutoffDays": "soon"}).status_code == 400


def test_task_listing_pagination_and_stats(client):
    for i in range(3):
        client.post("/api/tasks", json={"title": f"Task {i}"})
    payload = client.get("/api/tasks?limit=2&compact=true").get_json()
    assert payload["pagination"]["total"] == 3
    assert payload["pagination"]["hasMore"] is True
    assert "commentCount" in payload["tasks"][0]

    stats = client.get("/api/tasks/stats").get_json()
    assert stats["total"] == 3
    assert stats["byStatus"]["inbox"] == 3

    assert client.post("/api/tasks/archive", json={}).get_json() == {"success": True, "archived": 0}
    pruned = client.post("/api/tasks/prune", json={"maxActivity": 1}).get_json()
    assert pruned == {"activityRemoved": 2, "logsRemoved": 0, "success": True}


def test_task_logs_endpoints(client):
    task = client.post("/api/tasks", json={"title": "Logged"}).get_json()
    response = client.post(f"/api/tasks/{task['id']}/logs", json={"message": "started", "type": "progress"})
    assert response.status_code == 201
    entry = response.get_json()
    assert entry["agent"] == "seven"

    logs = client.get(f"/api/tasks/{task['id']}/logs").get_json()
    assert logs["count"] == 1
    assert logs["logs"][0]["type"] == "progress"

    assert client.delete(f"/api/tasks/{task['id']}/logs/{entry['id']}").status_code == 200
    assert client.delete(f"/api/tasks/{task['id']}/logs/{entry['id']}").status_code == 404
    assert client.post(f"/api/tasks/{task['id']}/logs", json={}).status_code == 400


def test_messages_endpoints(client):
    response = client.post("/api/messages", json={"from": "seven", "to": "Uhura", "subject": "Hail them"})
    assert response.status_code == 201
    message = response.get_json()
    assert client.post("/api/messages", json={"to": "uhura"}).status_code == 400

    listing = client.get("/api/messages?agent=uhura").get_json()
    assert [m["id"] for m in listing["messages"]] == [message["id"]]
    assert listing["counts"]["byAgent"]["uhura"]["unread"] == 1

    response = client.post(f"/api/messages/{message['id']}/reply", json={"from": "uhura", "text": "Channel open"})
    assert response.status_code == 201
    assert client.get("/api/messages/counts").get_json()["pending"] == 0

    response = client.patch(f"/api/messages/{message['id']}", json={"read": True})
    assert response.get_json()["read"] is True

    result = client.post(f"/api/messages/{message['id']}/create-task").get_json()
    assert result["linked"] is True
    assert result["task"]["assignee"] == "uhura"
    assert result["message"]["taskId"] == result["task"]["id"]

    assert client.delete(f"/api/messages/{message['id']}").get_json()["success"] is True
    response = client.post("/api/messages/msg-missing/create-task")
    assert response.status_code == 404
    assert response.get_json()["code"] == "MESSAGE_NOT_FOUND"


def test_read_only_proxies_degrade_with_error(client, monkeypatch):
    monkeypatch.setattr(collectors, "run_command", _unavailable)

    response = client.get("/api/work-loop")
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "stopped"
    assert "unavailable" in payload["error"]

    assert client.get("/api/git-locks").get_json()["totalLocks"] == 0
    assert client.get("/api/inbox/counts").get_json()["totalUnread"] == 0
    assert client.get("/api/checkpoints").get_json()["checkpoints"] == []
    assert client.get("/api/git-locks/files/task-1").get_json()["count"] == 0
    assert client.get("/api/checkpoints/status").status_code == 500

    response = client.get("/api/meta-learning/lessons")
    assert response.status_code == 200
    assert response.mimetype == "text/plain"
    assert response.get_data(as_text=True) == "No lessons available"
    assert client.get("/api/meta-learning/secrets").status_code == 404


def test_actions_report_failure_as_500(client, monkeypatch):
    monkeypatch.setattr(collectors, "run_command", _unavailable)
    response = client.post("/api/work-loop/start")
    assert response.status_code == 500
    assert response.get_json()["success"] is False
    assert client.post("/api/stall/reset").status_code == 500
    assert client.post("/api/work-loop/explode").status_code == 400


def test_actions_succeed(client, monkeypatch):
    monkeypatch.setattr(collectors, "run_command", lambda cmd, timeout=5, cwd=None, env=None: "ok\n")
    assert client.post("/api/work-loop/stop").get_json() == {"success": True, "message": "ok"}
    assert client.post("/api/git-locks/refresh").get_json()["success"] is True
    assert client.post("/api/meta-learning/mark-implemented/imp-1").get_json()["success"] is True
    assert client.post("/api/work-loop/priority/task-1").get_json()["success"] is True
    assert client.post("/api/stall/check").get_json() == {"success": True, "output": "ok\n"}


def test_mention_endpoints(client, monkeypatch):
    roster = client.get("/api/mention/roster").get_json()
    assert roster["count"] == 13

    parsed = client.post("/api/mention/parse", json={"message": "@quark @spock report"}).get_json()
    assert [m["agent"] for m in parsed["mentions"]] == ["quark", "spock"]

    response = client.post("/api/mention/route", json={"message": "nobody here"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "No valid @mentions found"

    monkeypatch.setattr(collectors, "run_command", _unavailable)
    response = client.post("/api/mention/route", json={"message": "@tuvok secure the deck"})
    assert response.status_code == 500
    assert response.get_json()["agent"] == "tuvok"

    sessions = client.get("/api/mention/sessions").get_json()
    assert sessions["sessions"][0]["agent"] == "spock"


def test_socket_client_receives_initial_state_and_debounced_updates(bridge, client):
    task = bridge.tasks.create("Engage")
    socket_client = dashboard_app.socketio.test_client(dashboard_app.app)
    try:
        assert socket_client.is_connected()
        initial = _received(socket_client)
        assert [frame["type"] for frame in initial] == ["init", "tasks", "messages"]
        assert initial[1]["data"]["tasks"][0]["id"] == task["id"]
        assert client.get("/health").get_json()["clients"] == 1

        for status in ("assigned", "in_progress", "review"):
            client.patch(f"/api/tasks/{task['id']}", json={"status": status})
        time.sleep(0.75)
        updates = [frame for frame in _received(socket_client) if frame["type"] == "tasks_update"]
        assert len(updates) == 1
        assert updates[0]["data"]["tasks"][0]["status"] == "review"

        socket_client.send({"type": "ping"})
        assert [frame["type"] for frame in _received(socket_client)] == ["pong"]
    finally:
        socket_client.disconnect()
    assert bridge.health()["clients"] == 0
