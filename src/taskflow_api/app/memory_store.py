"""In-memory store backends for tests and local runs."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any

from .models import AITask, Project, Remark, Task, UserProfile, Workflow, Workspace
from .storage import TERMINAL_AI_TASK_STATUSES, StoreHandle


class InMemoryRecordStore:
    """Dict-backed implementation of RecordStore. Returns copies, never live objects."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: dict[str, UserProfile] = {}
        self._workspaces: dict[str, Workspace] = {}
        self._projects: dict[str, Project] = {}
        self._tasks: dict[str, Task] = {}

    def open(self) -> None:
        return None

    def close(self) -> None:
        return None

    def get_user(self, user_id: str) -> UserProfile | None:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    def upsert_user(self, profile: UserProfile) -> UserProfile:
        with self._lock:
            self._users[profile.user_id] = profile.model_copy(deep=True)
        return profile

    def insert_workspace(self, workspace: Workspace) -> str:
        with self._lock:
            self._workspaces[workspace.workspace_id] = workspace.model_copy(deep=True)
        return workspace.workspace_id

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        workspace = self._workspaces.get(workspace_id)
        return workspace.model_copy(deep=True) if workspace else None

    def find_workspace_by_invite_code(self, invite_code: str) -> Workspace | None:
        for workspace in self._workspaces.values():
            if workspace.invite_code == invite_code:
                return workspace.model_copy(deep=True)
        return None

    def list_workspaces_for_user(self, user_id: str) -> list[Workspace]:
        return [
            workspace.model_copy(deep=True)
            for workspace in sorted(self._workspaces.values(), key=lambda item: item.created_at)
            if user_id in workspace.member_ids()
        ]

    def update_workspace(
        self,
        workspace_id: str,
        patch: dict[str, Any],
        *,
        expected_updated_at: datetime,
    ) -> bool:
        with self._lock:
            current = self._workspaces.get(workspace_id)
            if current is None or current.updated_at != expected_updated_at:
                return False
            self._workspaces[workspace_id] = current.model_copy(update=patch, deep=True)
            return True

    def delete_workspace(self, workspace_id: str) -> bool:
        with self._lock:
            if self._workspaces.pop(workspace_id, None) is None:
                return False
            self._projects = {
                key: project
                for key, project in self._projects.items()
                if project.workspace_id != workspace_id
            }
            self._tasks = {
                key: task for key, task in self._tasks.items() if task.workspace_id != workspace_id
            }
            return True

    def increment_project_count(self, workspace_id: str, delta: int = 1) -> None:
        with self._lock:
            workspace = self._workspaces.get(workspace_id)
            if workspace is not None:
                workspace.project_count = max(workspace.project_count + delta, 0)

    def insert_project(self, project: Project) -> str:
        with self._lock:
            self._projects[project.project_id] = project.model_copy(deep=True)
        return project.project_id

    def get_project(self, project_id: str) -> Project | None:
        project = self._projects.get(project_id)
        return project.model_copy(deep=True) if project else None

    def list_projects(self, workspace_id: str) -> list[Project]:
        return [
            project.model_copy(deep=True)
            for project in sorted(self._projects.values(), key=lambda item: item.created_at)
            if project.workspace_id == workspace_id
        ]

    def first_project(self, workspace_id: str) -> Project | None:
        projects = self.list_projects(workspace_id)
        return projects[0] if projects else None

    def update_project(self, project_id: str, patch: dict[str, Any]) -> bool:
        with self._lock:
            current = self._projects.get(project_id)
            if current is None:
                return False
            self._projects[project_id] = current.model_copy(
                update={**patch, "updated_at": datetime.now(tz=UTC)}, deep=True
            )
            return True

    def delete_project(self, project_id: str) -> bool:
        with self._lock:
            if self._projects.pop(project_id, None) is None:
                return False
            self._tasks = {
                key: task for key, task in self._tasks.items() if task.project_id != project_id
            }
            return True


    def insert_task(self, task: Task) -> str:
        with self._lock:
            self._tasks[task.task_id] = task.model_copy(deep=True)
        return task.task_id

    def get_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    def list_tasks(self, workspace_id: str, *, open_only: bool = False) -> list[Task]:
        return [
            task.model_copy(deep=True)
            for task in self._tasks.values()
            if task.workspace_id == workspace_id and (task.is_open or not open_only)
        ]

    def list_project_tasks(self, project_id: str) -> list[Task]:
        return [
            task.model_copy(deep=True)
            for task in self._tasks.values()
            if task.project_id == project_id
        ]

    def list_open_assigned_tasks_due(self, start: datetime, end: datetime) -> list[Task]:
        due = [
            task
            for task in self._tasks.values()
            if task.is_open
            and task.assigned_to is not None
            and task.due_date is not None
            and start <= task.due_date < end
        ]
        return [task.model_copy(deep=True) for task in sorted(due, key=lambda item: item.due_date)]

    def update_task(
        self,
        task_id: str,
        patch: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> bool:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return False
            if expected_status is not None and current.status != expected_status:
                return False
            self._tasks[task_id] = current.model_copy(
                update={**patch, "updated_at": datetime.now(tz=UTC)}, deep=True
            )
            return True

    def push_remark(self, task_id: str, remark: Remark) -> bool:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return False
            current.remarks.append(remark.model_copy(deep=True))
            current.updated_at = datetime.now(tz=UTC)
            return True

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            return self._tasks.pop(task_id, None) is not None


class InMemoryAutomationStore:
    """Dict-backed implementation of AutomationStore."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._workflows: dict[str, Workflow] = {}
        self._ai_tasks: dict[str, AITask] = {}

    def open(self) -> None:
        return None

    def close(self) -> None:
        return None

    def list_workflows(self, workspace_id: str) -> list[Workflow]:
        workflows = [
            workflow for workflow in self._workflows.values()
            if workflow.workspace_id == workspace_id
        ]
        workflows.sort(key=lambda item: item.created_at, reverse=True)
        return [workflow.model_copy(deep=True) for workflow in workflows]

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    def insert_workflow(self, workflow: Workflow) -> str:
        with self._lock:
            self._workflows[workflow.workflow_id] = workflow.model_copy(deep=True)
        return workflow.workflow_id

    def update_workflow(self, workflow_id: str, patch: dict[str, Any]) -> bool:
        with self._lock:
            current = self._workflows.get(workflow_id)
            if current is None:
                return False
            updated = current.model_copy(update={**patch, "updated_at": datetime.now(tz=UTC)})
            # Re-validate so nested dict patches (trigger/action) become models.
            self._workflows[workflow_id] = Workflow.model_validate(updated.model_dump())
            return True

    def delete_workflow(self, workflow_id: str) -> bool:
        with self._lock:
            return self._workflows.pop(workflow_id, None) is not None

    def increment_workflow_runs(self, workflow_id: str) -> None:
        with self._lock:
            current = self._workflows.get(workflow_id)
            if current is None:
                return
            now = datetime.now(tz=UTC)
            current.runs += 1
            current.last_run_at = now
            current.updated_at = now

    def list_ai_tasks(self, workspace_id: str, status: str | None = None) -> list[AITask]:
        ai_tasks = [
            ai_task for ai_task in self._ai_tasks.values()
            if ai_task.workspace_id == workspace_id and (status is None or ai_task.status == status)
        ]
        ai_tasks.sort(key=lambda item: item.started_at, reverse=True)
        return [ai_task.model_copy(deep=True) for ai_task in ai_tasks]

    def get_ai_task(self, ai_task_id: str) -> AITask | None:
        ai_task = self._ai_tasks.get(ai_task_id)
        return ai_task.model_copy(deep=True) if ai_task else None

    def insert_ai_task(self, ai_task: AITask) -> str:
        with self._lock:
            self._ai_tasks[ai_task.ai_task_id] = ai_task.model_copy(deep=True)
        return ai_task.ai_task_id

    def update_ai_task(self, ai_task_id: str, patch: dict[str, Any]) -> bool:
        with self._lock:
            current = self._ai_tasks.get(ai_task_id)
            if current is None:
                return False
            update = dict(patch)
            if update.get("status") in TERMINAL_AI_TASK_STATUSES:
                update["completed_at"] = datetime.now(tz=UTC)
            self._ai_tasks[ai_task_id] = current.model_copy(update=update)
            return True


def build_memory_stores() -> StoreHandle:
    return StoreHandle(records=InMemoryRecordStore(), automation=InMemoryAutomationStore())
