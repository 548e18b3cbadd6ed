"""Fakes and record builders shared by the unit tests."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from taskflow_api.app.models import (
    Project,
    Task,
    UserProfile,
    Workflow,
    WorkflowAction,
    WorkflowTrigger,
    Workspace,
    WorkspaceMember,
)
from taskflow_api.app.notifications import HttpResponse, ReminderEmail
from taskflow_api.app.storage import StoreHandle

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeEmailSender:
    """Records reminders instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[ReminderEmail] = []
        self.fail_for: set[str] = set()

    def send_reminder(self, email: ReminderEmail) -> bool:
        if email.to in self.fail_for:
            return False
        self.sent.append(email)
        return True


class FakeHttpClient:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.response = HttpResponse(ok=True, status=200, reason="OK")
        self.error: Exception | None = None

    def call(
        self,
        url: str,
        method: str,
        body: dict[str, Any],
        *,
        timeout_s: float,
    ) -> HttpResponse:
        self.calls.append({"url": url, "method": method, "body": body, "timeout_s": timeout_s})
        if self.error is not None:
            raise self.error
        return self.response


class FakeLLMAdapter:
    def __init__(self, text: str = "LLM says hello") -> None:
        self.text = text
        self.prompts: list[dict[str, Any]] = []
        self.error: Exception | None = None

    def generate_text(self, *, system_prompt: str, user_prompt: str, timeout_s: float) -> str:
        self.prompts.append(
            {"system_prompt": system_prompt, "user_prompt": user_prompt, "timeout_s": timeout_s}
        )
        if self.error is not None:
            raise self.error
        return self.text


class Clock:
    """Manually advanced clock shared by services under test."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def tick(self, minutes: int = 1) -> datetime:
        self.now = self.now + timedelta(minutes=minutes)
        return self.now


class Seed:
    """Writes fixture records straight into the stores."""

    def __init__(self, stores: StoreHandle) -> None:
        self.stores = stores

    def user(
        self, user_id: str, *, email: str | None = None, name: str | None = None
    ) -> UserProfile:
        profile = UserProfile(
            user_id=user_id,
            email=email if email is not None else f"{user_id}@example.com",
            display_name=name if name is not None else user_id.title(),
            created_at=T0,
            last_login_at=T0,
        )
        return self.stores.records.upsert_user(profile)

    def workspace(
        self,
        *,
        owner: str = "owner",
        admins: tuple[str, ...] = (),
        members: tuple[str, ...] = (),
        name: str = "Acme",
        invite_code: str | None = None,
    ) -> Workspace:
        roster = [WorkspaceMember(user_id=owner, role="owner", joined_at=T0)]
        roster += [WorkspaceMember(user_id=uid, role="admin", joined_at=T0) for uid in admins]
        roster += [WorkspaceMember(user_id=uid, role="member", joined_at=T0) for uid in members]
        workspace = Workspace(
            workspace_id=str(uuid.uuid4()),
            name=name,
            owner_id=owner,
            members=roster,
            invite_code=invite_code or uuid.uuid4().hex[:6].upper(),
            created_at=T0,
            updated_at=T0,
        )
        self.stores.records.insert_workspace(workspace)
        return workspace

    def project(
        self, workspace: Workspace, *, name: str = "Launch", created_by: str = "owner"
    ) -> Project:
        project = Project(
            project_id=str(uuid.uuid4()),
            workspace_id=workspace.workspace_id,
            name=name,
            created_by=created_by,
            created_at=T0,
        )
        self.stores.records.insert_project(project)
        return project

    def task(self, project: Project, *, title: str = "Write docs", **fields: Any) -> Task:
        values: dict[str, Any] = {
            "task_id": str(uuid.uuid4()),
            "project_id": project.project_id,
            "workspace_id": project.workspace_id,
            "title": title,
            "created_by": "owner",
            "created_at": T0,
            "updated_at": T0,
        }
        values.update(fields)
        task = Task(**values)
        self.stores.records.insert_task(task)
        return task

    def workflow(
        self,
        workspace: Workspace,
        *,
        action_type: str = "create-task",
        config: dict[str, Any] | None = None,
        task_status: str | None = "created",
        is_active: bool = True,
        name: str = "Auto",
        created_at: datetime = T0,
    ) -> Workflow:
        workflow = Workflow(
            workflow_id=str(uuid.uuid4()),
            workspace_id=workspace.workspace_id,
            name=name,
            trigger=WorkflowTrigger.model_validate(
                {"type": "task-event", "config": {"task_status": task_status}}
            ),
            action=WorkflowAction(type=action_type, config=config or {}),
            is_active=is_active,
            created_by=workspace.owner_id,
            created_at=created_at,
            updated_at=created_at,
        )
        self.stores.automation.insert_workflow(workflow)
        return workflow

