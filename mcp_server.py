"""MCP server for the LCARS bridge dashboard.

Exposes dashboard REST endpoints as MCP tools so AI clients can read the
bridge snapshot, the task board and crew messages, and post tasks, logs and
messages through a standard MCP interface.
"""

from __future__ import annotations

import json
import os
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from mcp.server.fastmcp import FastMCP

BASE_URL = os.environ.get("LCARS_DASHBOARD_BASE_URL", "http://127.0.0.1:4242").rstrip("/")
REQUEST_TIMEOUT_SEC = float(os.environ.get("LCARS_MCP_TIMEOUT_SEC", "10"))

mcp = FastMCP("lcars-bridge")


def _build_url(path: str, params: dict[str, Any] | None = None) -> str:
    clean = {key: value for key, value in (params or {}).items() if value is not None}
    query = urlencode(clean, doseq=True)
    return f"{BASE_URL}{path}{'?' + query if query else ''}"


def _http_request(
    method: str,
    path: str,
    params: dict[str, Any] | None = None,
    body: dict[str, Any] | None = None,
) -> dict[str, Any]:
    url = _build_url(path, params)
    data = json.dumps(body).encode("utf-8") if body is not None else None
    headers = {"Content-Type": "application/json"} if data is not None else {}
    request = Request(url=url, method=method, data=data, headers=headers)

    try:
        with urlopen(request, timeout=REQUEST_TIMEOUT_SEC) as response:
            charset = response.headers.get_content_charset() or "utf-8"
            text = response.read().decode(charset)
            content_type = response.headers.get_content_type()
            return {
                "ok": True,
                "base_url": BASE_URL,
                "status_code": int(response.status),
                "data": (json.loads(text) if text else {}) if content_type == "application/json" else text,
            }
    except HTTPError as exc:
        details = ""
        try:
            details = exc.read().decode("utf-8", errors="replace")
        except Exception:
            details = ""
        return {
            "ok": False,
            "base_url": BASE_URL,
            "status_code": int(exc.code),
            "error": f"HTTP error {exc.code}",
            "details": details,
        }
    except URLError as exc:
        return {
            "ok": False,
            "base_url": BASE_URL,
            "error": "Connection error",
            "details": str(exc.reason),
        }
    except json.JSONDecodeError as exc:
        return {
            "ok": False,
            "base_url": BASE_URL,
            "error": "Invalid JSON response",
            "details": str(exc),
        }
    except Exception as exc:
        return {
            "ok": False,
            "base_url": BASE_URL,
            "error": "Unexpected error",
            "details": str(exc),
        }


def _http_get(path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    return _http_request("GET", path, params=params)


def _http_post(path: str, body: dict[str, Any]) -> dict[str, Any]:
    return _http_request("POST", path, body=body)


@mcp.tool()
def dashboard_health() -> dict[str, Any]:
    """Return server liveness and connected client count from /health."""
    return _http_get("/health")


@mcp.tool()
def bridge_snapshot(include_sessions: bool = False) -> dict[str, Any]:
    """Return the current bridge snapshot from /api/data, raw sessions trimmed by default."""
    payload = _http_get("/api/data")
    if not payload.get("ok"):
        return payload

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    if not include_sessions:
        data.pop("sessions", None)

    payload["data"] = data
    return payload


@mcp.tool()
def list_tasks(
    status: str | None = None,
    assignee: str | None = None,
    exclude_done: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> dict[str, Any]:
    """Return a compact page of the task board from /api/tasks."""
    return _http_get(
        "/api/tasks",
        {
            "status": status,
            "assignee": assignee,
            "excludeDone": "true" if exclude_done else None,
            "limit": limit,
            "offset": offset,
            "compact": "true",
        },
    )


@mcp.tool()
def task_details(task_id: str) -> dict[str, Any]:
    """Return one task with comments and logs using /api/tasks/<id>."""
    return _http_get(f"/api/tasks/{quote(task_id, safe='')}")


@mcp.tool()
def task_stats() -> dict[str, Any]:
    """Return task counts by status, assignee, priority and category."""
    return _http_get("/api/tasks/stats")


@mcp.tool()
def create_task(
    title: str,
    description: str = "",
    assignee: str | None = None,
    category: str = "general",
    priority: str = "medium",
) -> dict[str, Any]:
    """Create a task through POST /api/tasks."""
    body: dict[str, Any] = {
        "title": title,
        "description": description,
        "category": category,
        "priority": priority,
    }
    if assignee:
        body["assignee"] = assignee
    return _http_post("/api/tasks", body)


@mcp.tool()
def add_task_log(task_id: str, message: str, log_type: str = "update", agent: str = "seven") -> dict[str, Any]:
    """Append a progress log line to a task."""
    return _http_post(
        f"/api/tasks/{quote(task_id, safe='')}/logs",
        {"message": message, "type": log_type, "agent": agent},
    )


@mcp.tool()
def list_messages(agent: str | None = None, unread_only: bool = False) -> dict[str, Any]:
    """Return crew messages, newest first, from /api/messages."""
    return _http_get("/api/messages", {"agent": agent, "unread": "true" if unread_only else None})


@mcp.tool()
def send_message(to: str, subject: str, content: str = "", sender: str = "seven") -> dict[str, Any]:
    """Send a crew message through POST /api/messages."""
    return _http_post("/api/messages", {"from": sender, "to": to, "subject": subject, "content": content})


@mcp.tool()
def crew_roster() -> dict[str, Any]:
    """Return the @mention roster with session keys."""
    return _http_get("/api/mention/roster")


@mcp.tool()
def work_loop_status() -> dict[str, Any]:
    """Return the autonomous work loop state from /api/work-loop."""
    return _http_get("/api/work-loop")


if __name__ == "__main__":
    mcp.run()
