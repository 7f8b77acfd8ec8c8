import json

import pytest

import collectors
import crew_tools
from errors import CollaboratorUnavailable, ValidationError


def _unavailable(*args, **kwargs):
    raise CollaboratorUnavailable("node unavailable: not found")


def test_fmt_duration_and_age():
    assert crew_tools.fmt_duration(None) == "--"
    assert crew_tools.fmt_duration(-5) == "--"
    assert crew_tools.fmt_duration(45000) == "45s"
    assert crew_tools.fmt_duration(300000) == "5m"
    assert crew_tools.fmt_duration(3900000) == "1h 5m"
    assert crew_tools.fmt_age(0) == "--"
    assert crew_tools.fmt_age(59000) == "59s"
    assert crew_tools.fmt_age(7200000) == "2h"
    assert crew_tools.fmt_age(3 * 86400000) == "3d"


def test_cron_jobs_formats_openclaw_listing(monkeypatch):
    now = 1_000_000_000
    payload = {"jobs": [
        {"id": "j1", "name": "heartbeat", "enabled": True,
         "state": {"nextRunAtMs": now + 120000, "lastRunAtMs": now - 30000, "lastStatus": "ok", "runCount": 4}},
        {"id": "j2", "enabled": False},
    ]}
    monkeypatch.setattr(collectors, "run_openclaw_json", lambda args, timeout=8: payload)

    result = crew_tools.cron_jobs(now_ms=now)
    assert result["total"] == 2
    assert result["enabled"] == 1
    assert result["disabled"] == 1
    first, second = result["jobs"]
    assert first["nextRunIn"] == "2m"
    assert first["lastRunAgo"] == "30s"
    assert first["lastStatus"] == "ok"
    assert second["name"] == "unnamed"
    assert second["nextRunIn"] == "--"
    assert second["lastStatus"] == "unknown"


def test_cron_jobs_fallback(monkeypatch):
    monkeypatch.setattr(collectors, "run_openclaw_json", lambda args, timeout=8: None)
    result = crew_tools.cron_jobs()
    assert result["total"] == 0
    assert result["jobs"] == []
    assert result["error"]


def test_sessions_overview_groups_subagents_and_crons():
    ps_output = (
        'user 1 0.0 openclaw agent --session-id "workloop-geordi-task-1769858" --message go\n'
        "user 2 0.0 bash\n"
    )
    mapping = crew_tools.workloop_crew_map(ps_output)
    assert mapping == {"1769858": "geordi"}

    payload = {
        "count": 4,
        "sessions": [
            {"key": "agent:main:subagent:abcdef123456", "sessionId": "workloop-geordi-task-1769858", "ageMs": 65000},
            {"key": "agent:main:subagent:99998888", "model": "opus"},
            {"key": "agent:main:cron:cafebabe1234", "ageMs": 5000},
            {"key": "agent:other:thing"},
        ],
    }
    overview = crew_tools.sessions_overview(payload, mapping)
    assert overview["total"] == 4
    assert overview["activeSubagents"] == 2
    assert overview["runningCrons"] == 1
    assert overview["subagents"][0]["crew"] == "geordi"
    assert overview["subagents"][0]["age"] == "1m"
    assert overview["subagents"][1]["label"] == "99998888"
    assert overview["subagents"][1]["model"] == "opus"
    assert overview["crons"][0]["label"] == "cafebabe"


def test_read_only_proxies_fall_back_with_error(monkeypatch):
    monkeypatch.setattr(collectors, "run_command", _unavailable)

    payload, error = crew_tools.work_loop_status()
    assert payload == crew_tools.default_work_loop()
    assert "unavailable" in error

    payload, error = crew_tools.git_locks_status()
    assert payload["totalLocks"] == 0
    assert error

    payload, error = crew_tools.stall_status()
    assert payload["recoveries_today"] == 0

    assert crew_tools.meta_learning_text("lessons") == "No lessons available"
    assert crew_tools.git_lock_files("task-1") == {"taskId": "task-1", "files": [], "count": 0}


def test_read_only_proxy_parses_banner_prefixed_json(monkeypatch):
    monkeypatch.setattr(
        collectors, "run_command",
        lambda cmd, timeout=5, cwd=None, env=None: '[plugins] loaded\n{"status": "running", "uptime": 12}',
    )
    payload, error = crew_tools.work_loop_status()
    assert payload == {"status": "running", "uptime": 12}
    assert error is None


def test_actions_raise_on_failure_and_validate_commands(monkeypatch):
    monkeypatch.setattr(collectors, "run_command", _unavailable)
    with pytest.raises(CollaboratorUnavailable):
        crew_tools.work_loop_command("start")
    with pytest.raises(ValidationError):
        crew_tools.work_loop_command("explode")
    with pytest.raises(ValidationError):
        crew_tools.meta_learning_text("secrets")


def test_work_loop_command_runs_script(monkeypatch):
    seen = []

    def fake_run(cmd, timeout=5, cwd=None, env=None):
        seen.append((cmd, timeout))
        return "Work loop started\n"

    monkeypatch.setattr(collectors, "run_command", fake_run)
    assert crew_tools.work_loop_command("next") == {"success": True, "message": "Work loop started"}
    assert seen[0][0][-1] == "next"
    assert seen[0][1] == 30


def test_parse_lock_files_and_conflicts(tmp_path):
    text = "Files for task-1:\n  - src/app.py\n  - tests/test_app.py\nnone else"
    assert crew_tools.parse_lock_files(text) == ["src/app.py", "tests/test_app.py"]

    state = tmp_path / "git-locks-state.json"
    assert crew_tools.git_lock_conflicts(str(state)) == {"conflicts": [], "count": 0}
    state.write_text(json.dumps({"conflicts": [{"id": 1, "resolved": True}, {"id": 2}]}), encoding="utf-8")
    assert crew_tools.git_lock_conflicts(str(state)) == {"conflicts": [{"id": 2}], "count": 1}
    state.write_text("{broken", encoding="utf-8")
    assert "error" in crew_tools.git_lock_conflicts(str(state))


def test_parse_mentions_keeps_known_agents_in_order():
    mentions = crew_tools.parse_mentions("@Spock and @nobody, ask @data")
    assert [m["agent"] for m in mentions] == ["spock", "data"]
    assert mentions[0]["raw"] == "@Spock"
    assert mentions[0]["position"] == 0
    assert mentions[1]["config"]["sessionLabel"] == "data-direct"


def test_resolve_mention_picks_first_and_strips_it():
    assert crew_tools.resolve_mention("@geordi: fix the warp core") == ("geordi", "fix the warp core")
    assert crew_tools.resolve_mention("status report", agent="Uhura") == ("uhura", "status report")

    with pytest.raises(ValidationError) as exc:
        crew_tools.resolve_mention("")
    assert exc.value.message == "Message required"
    with pytest.raises(ValidationError) as exc:
        crew_tools.resolve_mention("hello there")
    assert exc.value.message == "No valid @mentions found"
    assert "spock" in exc.value.details["validAgents"]
    with pytest.raises(ValidationError) as exc:
        crew_tools.resolve_mention("hi", agent="q")
    assert exc.value.message == "Unknown agent: q"


def test_route_mention_success_and_failure(monkeypatch):
    calls = []

    def fake_run(cmd, timeout=5, cwd=None, env=None):
        calls.append(cmd)
        return '{"reply": "Fascinating."}'

    monkeypatch.setattr(collectors, "run_command", fake_run)
    body, ok = crew_tools.route_mention("@spock analyse the anomaly")
    assert ok is True
    assert body["agent"] == "spock"
    assert body["sessionKey"] == "agent:main:subagent:spock-direct"
    assert body["response"] == {"reply": "Fascinating."}
    assert body["message"] == "analyse the anomaly"
    prompt = calls[0][calls[0].index("--message") + 1]
    assert "You are Spock, Science Officer" in prompt
    assert "analyse the anomaly" in prompt

    monkeypatch.setattr(collectors, "run_command", _unavailable)
    body, ok = crew_tools.route_mention("@data review")
    assert ok is False
    assert body["success"] is False
    assert body["sessionKey"] == "agent:main:subagent:data-direct"


def test_mention_roster_and_sessions():
    roster = crew_tools.mention_roster()
    assert roster["count"] == 13
    assert roster["roster"][0]["sessionKey"].startswith("agent:main:subagent:")

    sessions = [
        {"key": "agent:main:subagent:quark-direct", "model": "sonnet", "totalTokens": 10},
        {"key": "agent:main:main"},
        "junk",
    ]
    result = crew_tools.mention_sessions(sessions)
    assert result["count"] == 1
    assert result["sessions"][0]["agent"] == "quark"
    assert result["sessions"][0]["status"] == "idle"
