"""Pydantic models shared across API, services, executor, and storage.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Literal: restricts a field to a fixed set of allowed string values.
- Field(default_factory=...): creates a fresh default object per instance.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# Task lifecycle states driven by the task state machine.
TaskStatus = Literal["todo", "in-progress", "pending-verification", "completed"]
TaskPriority = Literal["low", "medium", "high"]
MemberRole = Literal["owner", "admin", "member"]

TriggerType = Literal["schedule", "task-event", "team-event", "comment-added"]
ActionType = Literal["send-email", "send-slack", "assign-task", "create-task", "webhook"]

AITaskType = Literal["auto-assign", "summarize", "create-tasks", "analyze-metrics", "chat"]
AITaskStatus = Literal["pending", "in-progress", "completed", "failed", "cancelled"]
AIActionType = Literal["summarize", "create_tasks", "analyze_metrics", "assign_tasks"]

# Sentinels written to `assigned_by` / `created_by` when no human did the work.
AI_ACTOR = "ai"
WORKFLOW_ACTOR = "workflow"

OPEN_TASK_STATUSES: tuple[str, ...] = ("todo", "in-progress", "pending-verification")


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class UserProfile(BaseModel):
    """Profile synced from the identity provider."""

    user_id: str
    email: str | None = None
    display_name: str | None = None
    created_at: datetime
    last_login_at: datetime

    def label(self) -> str:
        """Best human-readable name for messages."""
        return self.display_name or self.email or self.user_id


class WorkspaceMember(BaseModel):
    user_id: str
    role: MemberRole = "member"
    joined_at: datetime


class Workspace(BaseModel):
    """Tenant boundary. Exactly one member carries the owner role."""

    workspace_id: str
    name: str
    description: str = ""
    owner_id: str
    # Ordered by join time; the creator is always first.
    members: list[WorkspaceMember] = Field(default_factory=list)
    invite_code: str
    project_count: int = 0
    created_at: datetime
    updated_at: datetime

    def member_ids(self) -> list[str]:
        return [member.user_id for member in self.members]


class Project(BaseModel):
    project_id: str
    workspace_id: str
    name: str
    description: str = ""
    status: str = "active"
    priority: TaskPriority = "medium"
    deadline: datetime | None = None
    created_by: str
    created_at: datetime
    updated_at: datetime | None = None


class Remark(BaseModel):
    """One append-only note on a task."""

    remark_id: str
    user_id: str
    user_name: str
    message: str
    link: str | None = None
    created_at: datetime


class Task(BaseModel):
    """Canonical task record shape returned by API/storage."""

    task_id: str
    project_id: str
    workspace_id: str
    title: str
    description: str = ""
    status: TaskStatus = "todo"
    priority: TaskPriority = "medium"
    assigned_to: str | None = None
    # Member id, or the "ai" / "workflow" sentinel.
    assigned_by: str | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    pending_verification_at: datetime | None = None
    completed_at: datetime | None = None
    verified_by: str | None = None
    verified_at: datetime | None = None
    due_date: datetime | None = None
    remarks: list[Remark] = Field(default_factory=list)
    created_by: str
    created_at: datetime
    updated_at: datetime

    @property
    def is_open(self) -> bool:
        return self.status != "completed"


class TriggerConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # For schedule triggers (cron expression or readable format).
    schedule: str | None = None
    # For task-event triggers.
    task_status: Literal["created", "completed", "overdue", "status-changed"] | None = None
    # For team-event triggers.
    team_event: Literal["member-joined", "member-left"] | None = None


class WorkflowTrigger(BaseModel):
    type: TriggerType
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class WorkflowAction(BaseModel):
    # Kept as free text so records written by older clients still load; the
    # executor reports unknown types as handled failures.
    type: str
    # Validated per action type by the executor before dispatch.
    config: dict[str, Any] = Field(default_factory=dict)


class Workflow(BaseModel):
    """Stored (trigger, action) automation rule scoped to a workspace."""

    workflow_id: str
    workspace_id: str
    name: str
    description: str = ""
    trigger: WorkflowTrigger
    action: WorkflowAction
    is_active: bool = True
    # Incremented once per dispatched execution, never decremented.
    runs: int = 0
    last_run_at: datetime | None = None
    created_by: str
    created_at: datetime
    updated_at: datetime


class AITask(BaseModel):
    """Progress record for one AI-driven operation."""

    ai_task_id: str
    workspace_id: str
    name: str
    description: str = ""
    type: AITaskType
    status: AITaskStatus = "pending"
    progress: int = Field(default=0, ge=0, le=100)
    result: str | None = None
    error: str | None = None
    started_by: str
    started_at: datetime
    completed_at: datetime | None = None
    cancellable: bool = True


class ExecutionContext(BaseModel):
    """What a workflow execution is about."""

    workspace_id: str
    triggered_by: str | None = None
    task_id: str | None = None
    project_id: str | None = None


class ActionResult(BaseModel):
    """Uniform outcome of one workflow action dispatch."""

    success: bool
    message: str


class WorkflowRunResult(BaseModel):
    workflow_id: str
    workflow_name: str
    result: ActionResult


# ---------------------------------------------------------------------------
# Request / response bodies
# ---------------------------------------------------------------------------


class SyncUserRequest(StrictModel):
    email: str | None = None
    display_name: str | None = None


class CreateWorkspaceRequest(StrictModel):
    name: str = Field(min_length=1)
    description: str = ""


class UpdateWorkspaceRequest(StrictModel):
    name: str | None = None
    description: str | None = None


class JoinWorkspaceRequest(StrictModel):
    invite_code: str = Field(min_length=1)


class UpdateMemberRoleRequest(StrictModel):
    role: Literal["admin", "member"]


class RoleResponse(BaseModel):
    workspace_id: str
    user_id: str
    role: MemberRole | None
    is_admin: bool


class CreateProjectRequest(StrictModel):
    name: str = Field(min_length=1)
    description: str = ""
    priority: TaskPriority = "medium"
    deadline: datetime | None = None


class UpdateProjectRequest(StrictModel):
    name: str | None = None
    description: str | None = None
    priority: TaskPriority | None = None
    status: str | None = Field(default=None, min_length=1)
    deadline: datetime | None = None


class CreateTaskRequest(StrictModel):
    # min_length enforces non-empty title at API boundary; whitespace is
    # rejected by the service after trimming.
    title: str = Field(min_length=1)
    description: str = ""
    priority: TaskPriority = "medium"
    due_date: datetime | None = None


class UpdateTaskRequest(StrictModel):
    """Partial update. Unset fields are left untouched."""

    title: str | None = None
    description: str | None = None
    priority: TaskPriority | None = None
    due_date: datetime | None = None
    status: TaskStatus | None = None


class VerifyTaskRequest(StrictModel):
    approved: bool


class AssignTaskRequest(StrictModel):
    # None unassigns.
    assigned_to: str | None = None


class AddRemarkRequest(StrictModel):
    message: str
    link: str | None = None


class WorkflowActionInput(StrictModel):
    type: ActionType
    config: dict[str, Any] = Field(default_factory=dict)


class CreateWorkflowRequest(StrictModel):
    workspace_id: str
    name: str = Field(min_length=1)
    description: str = ""
    trigger: WorkflowTrigger
    action: WorkflowActionInput


class UpdateWorkflowRequest(StrictModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    trigger: WorkflowTrigger | None = None
    action: WorkflowActionInput | None = None
    is_active: bool | None = None


class ExecuteWorkflowRequest(StrictModel):
    triggered_by: str | None = None
    task_id: str | None = None
    project_id: str | None = None


class AIActionRequest(StrictModel):
    workspace_id: str
    action_type: AIActionType


class AIActionResponse(BaseModel):
    ai_task: AITask
    response: str


class ReminderReport(BaseModel):
    sent: int
    failed: int
    total_tasks: int



class MemberContribution(BaseModel):
    """Task counts over everything a member is assigned to or has claimed."""

    user_id: str
    name: str
    email: str
    role: MemberRole
    tasks_total: int
    tasks_completed: int
    tasks_in_progress: int
    tasks_todo: int
    # Whole percent, 0 when the member has no tasks.
    completion_rate: int


class WeeklyCompletion(BaseModel):
    week: str
    tasks: int


class WorkspaceAnalytics(BaseModel):
    member_stats: list[MemberContribution]
    weekly_data: list[WeeklyCompletion]
    total_tasks: int
    completed_tasks: int
    in_progress_tasks: int
