from __future__ import annotations

import uuid
from typing import Any


def test_workspace_task_lifecycle_against_postgres(api_base_url: str, call_json: Any) -> None:
    owner = f"owner-{uuid.uuid4().hex[:8]}"
    member = f"member-{uuid.uuid4().hex[:8]}"

    status, _ = call_json(
        api_base_url,
        "POST",
        "/users/sync",
        user=member,
        payload={"email": f"{member}@example.com", "display_name": "Casey"},
    )
    assert status == 200

    status, workspace = call_json(
        api_base_url, "POST", "/workspaces", user=owner, payload={"name": "Atlas"}
    )
    assert status == 201
    workspace_id = workspace["workspace_id"]

    status, _ = call_json(
        api_base_url,
        "POST",
        "/workspaces/join",
        user=member,
        payload={"invite_code": workspace["invite_code"]},
    )
    assert status == 200

    status, workflow = call_json(
        api_base_url,
        "POST",
        "/workflows",
        user=owner,
        payload={
            "workspace_id": workspace_id,
            "name": "Auto-assign new work",
            "trigger": {"type": "task-event", "config": {"task_status": "created"}},
            "action": {"type": "assign-task", "config": {"assignmentStrategy": "least-busy"}},
        },
    )
    assert status == 201

    status, project = call_json(
        api_base_url,
        "POST",
        f"/workspaces/{workspace_id}/projects",
        user=owner,
        payload={"name": "Checkout migration"},
    )
    assert status == 201

    status, task = call_json(
        api_base_url,
        "POST",
        f"/projects/{project['project_id']}/tasks",
        user=member,
        payload={"title": "Draft rollback plan"},
    )
    assert status == 201
    task_id = task["task_id"]

    status, stored = call_json(api_base_url, "GET", f"/tasks/{task_id}", user=member)
    assert status == 200
    assert stored["assigned_by"] == "workflow"

    for path in (f"/tasks/{task_id}/claim", f"/tasks/{task_id}/complete"):
        status, _ = call_json(api_base_url, "POST", path, user=member)
        assert status == 200

    status, verified = call_json(
        api_base_url,
        "PATCH",
        f"/tasks/{task_id}/verify",
        user=owner,
        payload={"approved": True},
    )
    assert status == 200
    assert verified["status"] == "completed"
    assert verified["verified_by"] == owner

    status, workflows = call_json(
        api_base_url, "GET", f"/workspaces/{workspace_id}/workflows", user=owner
    )
    assert status == 200
    assert workflows[0]["workflow_id"] == workflow["workflow_id"]
    assert workflows[0]["runs"] == 1


def test_unknown_task_returns_404(api_base_url: str, call_json: Any) -> None:
    status, body = call_json(api_base_url, "GET", "/tasks/does-not-exist", user="someone")
    assert status == 404
    assert body["detail"] == "Task not found"


def test_workspace_and_project_management_against_postgres(
    api_base_url: str, call_json: Any
) -> None:
    owner = f"owner-{uuid.uuid4().hex[:8]}"
    member = f"member-{uuid.uuid4().hex[:8]}"

    _, workspace = call_json(
        api_base_url, "POST", "/workspaces", user=owner, payload={"name": "Atlas"}
    )
    workspace_id = workspace["workspace_id"]
    status, _ = call_json(
        api_base_url,
        "POST",
        "/workspaces/join",
        user=member,
        payload={"invite_code": workspace["invite_code"]},
    )
    assert status == 200

    status, renamed = call_json(
        api_base_url,
        "PATCH",
        f"/workspaces/{workspace_id}",
        user=owner,
        payload={"name": "Atlas Platform"},
    )
    assert status == 200
    assert renamed["name"] == "Atlas Platform"
    assert [m["user_id"] for m in renamed["members"]] == [owner, member]

    _, project = call_json(
        api_base_url,
        "POST",
        f"/workspaces/{workspace_id}/projects",
        user=owner,
        payload={"name": "Checkout migration"},
    )
    call_json(
        api_base_url,
        "POST",
        f"/projects/{project['project_id']}/tasks",
        user=member,
        payload={"title": "Draft rollback plan"},
    )

    status, analytics = call_json(
        api_base_url, "GET", f"/workspaces/{workspace_id}/analytics", user=member
    )
    assert status == 200
    assert analytics["total_tasks"] == 1

    status, _ = call_json(api_base_url, "DELETE", f"/projects/{project['project_id']}", user=owner)
    assert status == 200
    _, stored = call_json(api_base_url, "GET", f"/workspaces/{workspace_id}", user=owner)
    assert stored["project_count"] == 0

    status, _ = call_json(api_base_url, "DELETE", f"/workspaces/{workspace_id}", user=owner)
    assert status == 200
    status, _ = call_json(api_base_url, "GET", f"/workspaces/{workspace_id}", user=owner)
    assert status == 404
