"""Workflow action handlers, each returning a uniform success/message result."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as ConfigValidationError

from .assignment import open_task_counts, select_assignee
from .errors import DomainError, NotFound, Unavailable, ValidationError
from .models import (
    WORKFLOW_ACTOR,
    ActionResult,
    ExecutionContext,
    Task,
    Workflow,
    Workspace,
)
from .notifications import EmailSender, HttpClient, ReminderEmail
from .storage import StoreHandle

logger = logging.getLogger(__name__)


class ActionConfig(BaseModel):
    # Configs come from stored documents written by several clients; unknown
    # keys are ignored and camelCase spellings are accepted.
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class SendEmailConfig(ActionConfig):
    email_template: str | None = Field(
        default=None, validation_alias=AliasChoices("email_template", "emailTemplate")
    )
    email_recipients: Literal["assigned", "all-members", "specific"] | None = Field(
        default=None, validation_alias=AliasChoices("email_recipients", "emailRecipients")
    )


class AssignTaskConfig(ActionConfig):
    assignment_strategy: Literal["least-busy"] = Field(
        default="least-busy",
        validation_alias=AliasChoices("assignment_strategy", "assignmentStrategy"),
    )


class CreateTaskConfig(ActionConfig):
    pass


class WebhookConfig(ActionConfig):
    webhook_url: str = Field(
        min_length=1, validation_alias=AliasChoices("webhook_url", "webhookUrl")
    )
    webhook_method: Literal["GET", "POST"] = Field(
        default="POST", validation_alias=AliasChoices("webhook_method", "webhookMethod")
    )


ActionHandler = Callable[[Workflow, Any, ExecutionContext], ActionResult]


@dataclass(frozen=True)
class ActionSpec:
    config_model: type[ActionConfig]
    handler: ActionHandler
    # When set, a context without task_id is rejected before dispatch.
    missing_task_message: str | None = None


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class WorkflowExecutor:
    """Dispatch a workflow's action and report a uniform {success, message}.

    Business failures (missing task, no assignee, no project) are reported as
    `success=False`, never raised. The only exception raised to callers is
    `ValidationError` for an inactive workflow or a context that belongs to a
    different workspace.

    The workflow's `runs` counter is bumped once whenever a registered handler
    was reached, whatever its outcome. Rejections before dispatch (unknown or
    unimplemented action type, invalid config, missing task) and collaborator
    faults do not count as runs.
    """

    def __init__(
        self,
        *,
        stores: StoreHandle,
        email_sender: EmailSender,
        http_client: HttpClient,
        app_base_url: str = "",
        webhook_timeout_s: float = 10.0,
        registry: dict[str, ActionSpec] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.stores = stores
        self.email_sender = email_sender
        self.http_client = http_client
        self.app_base_url = app_base_url.rstrip("/")
        self.webhook_timeout_s = webhook_timeout_s
        self.clock = clock
        self.registry = registry or self.build_registry()

    def build_registry(self) -> dict[str, ActionSpec]:
        return {
            "send-email": ActionSpec(
                config_model=SendEmailConfig,
                handler=self._send_email,
            ),
            "assign-task": ActionSpec(
                config_model=AssignTaskConfig,
                handler=self._assign_task,
                missing_task_message="No task to assign",
            ),
            "create-task": ActionSpec(
                config_model=CreateTaskConfig,
                handler=self._create_task,
            ),
            "webhook": ActionSpec(
                config_model=WebhookConfig,
                handler=self._call_webhook,
            ),
        }

    def execute(self, workflow: Workflow, context: ExecutionContext) -> ActionResult:
        if not workflow.is_active:
            raise ValidationError("Workflow is not active")
        if context.workspace_id != workflow.workspace_id:
            raise ValidationError("Execution context belongs to a different workspace")

        action_type = workflow.action.type
        if action_type == "send-slack":
            return ActionResult(success=False, message="Slack integration not yet implemented")
        spec = self.registry.get(action_type)
        if spec is None:
            return ActionResult(success=False, message=f"Unknown action type: {action_type}")
        try:
            config = spec.config_model.model_validate(workflow.action.config)
        except ConfigValidationError as exc:
            fields = ", ".join(
                ".".join(str(part) for part in item["loc"]) or "config" for item in exc.errors()
            )
            return ActionResult(
                success=False,
                message=f"Invalid {action_type} configuration: {fields}",
            )
        if spec.missing_task_message and not context.task_id:
            return ActionResult(success=False, message=spec.missing_task_message)

        logger.info(
            "workflow_run event=dispatch workflow_id=%s workspace_id=%s action_type=%s task_id=%s",
            workflow.workflow_id,
            workflow.workspace_id,
            action_type,
            context.task_id,
        )
        try:
            result = spec.handler(workflow, config, context)
        except Unavailable:
            logger.exception(
                "workflow_run event=fault workflow_id=%s workspace_id=%s action_type=%s",
                workflow.workflow_id,
                workflow.workspace_id,
                action_type,
            )
            return ActionResult(success=False, message=f"Failed to execute {action_type} action")
        except DomainError as exc:
            result = ActionResult(success=False, message=exc.message)
        except Exception:  # noqa: BLE001
            logger.exception(
                "workflow_run event=fault workflow_id=%s workspace_id=%s action_type=%s",
                workflow.workflow_id,
                workflow.workspace_id,
                action_type,
            )
            return ActionResult(success=False, message=f"Failed to execute {action_type} action")

        self._record_run(workflow)
        logger.info(
            "workflow_run event=completed workflow_id=%s workspace_id=%s action_type=%s "
            "success=%s message=%r",
            workflow.workflow_id,
            workflow.workspace_id,
            action_type,
            result.success,
            result.message,
        )
        return result

    def _record_run(self, workflow: Workflow) -> None:
        try:
            self.stores.automation.increment_workflow_runs(workflow.workflow_id)
        except Unavailable:
            logger.exception(
                "workflow_run event=increment_failed workflow_id=%s workspace_id=%s",
                workflow.workflow_id,
                workflow.workspace_id,
            )

    def _workspace(self, workspace_id: str) -> Workspace:
        workspace = self.stores.records.get_workspace(workspace_id)
        if workspace is None:
            raise NotFound("Workspace not found")
        return workspace

    def _task_in_workspace(self, task_id: str, workspace_id: str) -> Task:
        task = self.stores.records.get_task(task_id)
        if task is None or task.workspace_id != workspace_id:
            raise NotFound("Task not found")
        return task

    def _send_email(
        self,
        workflow: Workflow,
        config: SendEmailConfig,
        context: ExecutionContext,
    ) -> ActionResult:
        records = self.stores.records
        workspace = self._workspace(context.workspace_id)

        if context.task_id:
            task = self._task_in_workspace(context.task_id, workspace.workspace_id)
            if not task.assigned_to:
                raise NotFound("Task has no assignee")
            user = records.get_user(task.assigned_to)
            if user is None or not user.email:
                raise NotFound("Assignee email not found")
            delivered = self.email_sender.send_reminder(
                ReminderEmail(
                    to=user.email,
                    assignee_name=user.display_name or user.email.split("@")[0],
                    task_title=task.title,
                    task_description=task.description,
                    due_date=task.due_date,
                    workspace_name=workspace.name,
                    task_url=self._workspace_url(workspace.workspace_id),
                )
            )
            if not delivered:
                return ActionResult(success=False, message=f"Failed to send email to {user.email}")
            return ActionResult(success=True, message=f"Email sent to {user.email}")

        # Broadcast has no content template yet: count reachable members only.
        reachable = 0
        for member_id in workspace.member_ids():
            user = records.get_user(member_id)
            if user is not None and user.email:
                reachable += 1
        logger.warning(
            "workflow_run event=broadcast_stub workflow_id=%s workspace_id=%s reachable=%d",
            workflow.workflow_id,
            workspace.workspace_id,
            reachable,
        )
        return ActionResult(
            success=True,
            message=f"Broadcast email prepared for {reachable} members (delivery not implemented)",
        )

    def _assign_task(
        self,
        workflow: Workflow,
        config: AssignTaskConfig,
        context: ExecutionContext,
    ) -> ActionResult:
        records = self.stores.records
        workspace = self._workspace(context.workspace_id)
        candidates = workspace.member_ids()
        if not candidates:
            raise NotFound("No workspace members found")
        task = self._task_in_workspace(context.task_id or "", workspace.workspace_id)

        open_tasks = records.list_tasks(workspace.workspace_id, open_only=True)
        counts = open_task_counts(candidates, open_tasks)
        member_id = select_assignee(candidates, counts)
        if not records.update_task(
            task.task_id,
            {"assigned_to": member_id, "assigned_by": WORKFLOW_ACTOR},
        ):
            raise NotFound("Task not found")

        user = records.get_user(member_id)
        label = user.label() if user else member_id
        return ActionResult(success=True, message=f"Task assigned to {label}")

    def _create_task(
        self,
        workflow: Workflow,
        config: CreateTaskConfig,
        context: ExecutionContext,
    ) -> ActionResult:
        records = self.stores.records
        project = None
        if context.project_id:
            project = records.get_project(context.project_id)
            if project is not None and project.workspace_id != context.workspace_id:
                project = None
        if project is None:
            project = records.first_project(context.workspace_id)
        if project is None:
            raise NotFound("No project found to create task in")

        now = self.clock()
        task = Task(
            task_id=str(uuid.uuid4()),
            project_id=project.project_id,
            workspace_id=context.workspace_id,
            title=f"Automated Task - {workflow.name}",
            description=f"This task was created automatically by the workflow: {workflow.name}",
            status="todo",
            priority="medium",
            created_by=WORKFLOW_ACTOR,
            created_at=now,
            updated_at=now,
        )
        records.insert_task(task)
        return ActionResult(success=True, message=f"Task created in project {project.name}")

    def _call_webhook(
        self,
        workflow: Workflow,
        config: WebhookConfig,
        context: ExecutionContext,
    ) -> ActionResult:
        body = {
            "workflow": workflow.name,
            "workspace_id": context.workspace_id,
            "timestamp": self.clock().isoformat(),
            "context": context.model_dump(mode="json"),
        }
        response = self.http_client.call(
            config.webhook_url,
            config.webhook_method,
            body,
            timeout_s=self.webhook_timeout_s,
        )
        if response.ok:
            return ActionResult(success=True, message="Webhook executed successfully")
        detail = f"{response.status} {response.reason}".strip()
        return ActionResult(success=False, message=f"Webhook failed: {detail}")

    def _workspace_url(self, workspace_id: str) -> str | None:
        if not self.app_base_url:
            return None
        return f"{self.app_base_url}/workplace/{workspace_id}"
