"""Task CRUD, manual assignment, and remarks around the state machine.

Status changes always go through `TaskStateMachine`; this module adds the
project/workspace lookups, permission checks for non-status operations, and
the workflow events fired after a task is created or approved.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from . import membership
from .automation import AutomationService
from .errors import Forbidden, NotFound, ValidationError
from .models import (
    AddRemarkRequest,
    CreateTaskRequest,
    ExecutionContext,
    Project,
    Remark,
    Task,
    UpdateTaskRequest,
    Workspace,
)
from .state_machine import TaskStateMachine
from .storage import RecordStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class TaskService:
    def __init__(
        self,
        records: RecordStore,
        state_machine: TaskStateMachine,
        automation: AutomationService | None = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.records = records
        self.state_machine = state_machine
        self.automation = automation
        self.clock = clock

    def create_task(self, project_id: str, user_id: str, payload: CreateTaskRequest) -> Task:
        project = self._require_project(project_id)
        self._require_member(project.workspace_id, user_id)
        title = payload.title.strip()
        if not title:
            raise ValidationError("Task title is required")
        now = self.clock()
        task = Task(
            task_id=str(uuid.uuid4()),
            project_id=project.project_id,
            workspace_id=project.workspace_id,
            title=title,
            description=payload.description.strip(),
            status="todo",
            priority=payload.priority,
            due_date=payload.due_date,
            created_by=user_id,
            created_at=now,
            updated_at=now,
        )
        self.records.insert_task(task)
        logger.info(
            "task event=created task_id=%s project_id=%s workspace_id=%s user_id=%s",
            task.task_id,
            task.project_id,
            task.workspace_id,
            user_id,
        )
        self._emit("task-created", task, user_id)
        return task

    def get_task(self, task_id: str, user_id: str) -> Task:
        task = self._require_task(task_id)
        self._require_member(task.workspace_id, user_id)
        return task

    def list_project_tasks(self, project_id: str, user_id: str) -> list[Task]:
        project = self._require_project(project_id)
        self._require_member(project.workspace_id, user_id)
        return self.records.list_project_tasks(project_id)

    def update_task(self, task_id: str, user_id: str, payload: UpdateTaskRequest) -> Task:
        """Apply field edits and an optional status move as one write.

        Every permission and transition check runs before anything is stored,
        so a refused move leaves the field edits unapplied too.
        """
        changes = payload.model_dump(exclude_unset=True)
        target_status = changes.pop("status", None)
        if target_status is None:
            return self.state_machine.update_fields(task_id, user_id, changes)
        previous = self._require_task(task_id).status
        task = self.state_machine.change_status(task_id, user_id, target_status, changes=changes)
        if previous == "pending-verification" and task.status == "completed":
            self._emit("task-completed", task, user_id)
        return task

    def claim(self, task_id: str, user_id: str) -> Task:
        return self.state_machine.claim(task_id, user_id)

    def mark_complete(self, task_id: str, user_id: str) -> Task:
        return self.state_machine.mark_complete(task_id, user_id)

    def release(self, task_id: str, user_id: str) -> Task:
        return self.state_machine.release(task_id, user_id)

    def verify(self, task_id: str, user_id: str, *, approved: bool) -> Task:
        task = self.state_machine.verify(task_id, user_id, approved=approved)
        if approved:
            self._emit("task-completed", task, user_id)
        return task

    def delete_task(self, task_id: str, user_id: str) -> None:
        task = self._require_task(task_id)
        workspace = self._require_member(task.workspace_id, user_id)
        if task.created_by != user_id and not membership.is_admin(workspace, user_id):
            raise Forbidden("Only the creator or an admin can delete this task")
        if not self.records.delete_task(task_id):
            raise NotFound("Task not found")
        logger.info("task event=deleted task_id=%s user_id=%s", task_id, user_id)

    def assign(self, task_id: str, user_id: str, assigned_to: str | None) -> Task:
        """Admin sets or clears the assignee. The assignee must be a member."""
        task = self._require_task(task_id)
        workspace = self._require_workspace(task.workspace_id)
        if not membership.is_admin(workspace, user_id):
            raise Forbidden("Only admins can assign tasks")
        if assigned_to is not None and not membership.is_member(workspace, assigned_to):
            raise ValidationError("Assignee must be a member of the workspace")
        patch = {
            "assigned_to": assigned_to,
            "assigned_by": user_id if assigned_to is not None else None,
        }
        if not self.records.update_task(task_id, patch):
            raise NotFound("Task not found")
        logger.info(
            "task event=assigned task_id=%s assigned_to=%s by=%s",
            task_id,
            assigned_to,
            user_id,
        )
        return self._require_task(task_id)

    def add_remark(self, task_id: str, user_id: str, payload: AddRemarkRequest) -> Remark:
        message = payload.message.strip()
        if not message:
            raise ValidationError("Message is required")
        task = self._require_task(task_id)
        workspace = self._require_workspace(task.workspace_id)
        allowed = (
            user_id in (task.claimed_by, task.assigned_to)
            or membership.is_admin(workspace, user_id)
        )
        if not allowed:
            raise Forbidden("Only the claimant, the assignee, or an admin can add remarks")
        profile = self.records.get_user(user_id)
        if profile is None:
            raise NotFound("User not found")
        link = (payload.link or "").strip() or None
        remark = Remark(
            remark_id=str(uuid.uuid4()),
            user_id=user_id,
            user_name=profile.display_name or "Unknown User",
            message=message,
            link=link,
            created_at=self.clock(),
        )
        if not self.records.push_remark(task_id, remark):
            raise NotFound("Task not found")
        return remark

    def list_remarks(self, task_id: str, user_id: str) -> list[Remark]:
        return self.get_task(task_id, user_id).remarks

    def _emit(self, event_type: str, task: Task, user_id: str) -> None:
        if self.automation is None:
            return
        self.automation.emit(
            event_type,
            ExecutionContext(
                workspace_id=task.workspace_id,
                triggered_by=user_id,
                task_id=task.task_id,
                project_id=task.project_id,
            ),
        )

    def _require_task(self, task_id: str) -> Task:
        task = self.records.get_task(task_id)
        if task is None:
            raise NotFound("Task not found")
        return task

    def _require_project(self, project_id: str) -> Project:
        project = self.records.get_project(project_id)
        if project is None:
            raise NotFound("Project not found")
        return project

    def _require_workspace(self, workspace_id: str) -> Workspace:
        workspace = self.records.get_workspace(workspace_id)
        if workspace is None:
            raise NotFound("Workspace not found")
        return workspace

    def _require_member(self, workspace_id: str, user_id: str) -> Workspace:
        workspace = self._require_workspace(workspace_id)
        if not membership.is_member(workspace, user_id):
            raise Forbidden("Access denied")
        return workspace
