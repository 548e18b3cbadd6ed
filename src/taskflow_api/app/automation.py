"""Workflow CRUD, manual execution, and event dispatch."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from . import membership
from .errors import Forbidden, NotFound, Unavailable
from .executor import WorkflowExecutor
from .models import (
    ActionResult,
    CreateWorkflowRequest,
    ExecuteWorkflowRequest,
    ExecutionContext,
    UpdateWorkflowRequest,
    Workflow,
    WorkflowAction,
    WorkflowRunResult,
    Workspace,
)
from .storage import StoreHandle
from .triggers import matching_workflows

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class AutomationService:
    def __init__(
        self,
        stores: StoreHandle,
        executor: WorkflowExecutor,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.stores = stores
        self.executor = executor
        self.clock = clock

    def list_workflows(self, workspace_id: str, user_id: str) -> list[Workflow]:
        self._require_admin(workspace_id, user_id)
        return self.stores.automation.list_workflows(workspace_id)

    def create_workflow(self, user_id: str, payload: CreateWorkflowRequest) -> Workflow:
        self._require_admin(payload.workspace_id, user_id)
        now = self.clock()
        workflow = Workflow(
            workflow_id=str(uuid.uuid4()),
            workspace_id=payload.workspace_id,
            name=payload.name.strip(),
            description=payload.description.strip(),
            trigger=payload.trigger,
            action=WorkflowAction(type=payload.action.type, config=payload.action.config),
            is_active=True,
            runs=0,
            created_by=user_id,
            created_at=now,
            updated_at=now,
        )
        self.stores.automation.insert_workflow(workflow)
        logger.info(
            "workflow event=created workflow_id=%s workspace_id=%s trigger=%s action_type=%s",
            workflow.workflow_id,
            workflow.workspace_id,
            workflow.trigger.type,
            workflow.action.type,
        )
        return workflow

    def update_workflow(
        self,
        workflow_id: str,
        user_id: str,
        payload: UpdateWorkflowRequest,
    ) -> Workflow:
        workflow = self._require_workflow(workflow_id)
        self._require_admin(workflow.workspace_id, user_id)
        patch: dict[str, Any] = payload.model_dump(mode="json", exclude_unset=True)
        if "name" in patch:
            patch["name"] = patch["name"].strip()
        if not patch:
            return workflow
        patch["updated_at"] = self.clock()
        if not self.stores.automation.update_workflow(workflow_id, patch):
            raise NotFound("Workflow not found")
        logger.info(
            "workflow event=updated workflow_id=%s fields=%s",
            workflow_id,
            ",".join(sorted(key for key in patch if key != "updated_at")),
        )
        return self._require_workflow(workflow_id)

    def delete_workflow(self, workflow_id: str, user_id: str) -> None:
        workflow = self._require_workflow(workflow_id)
        self._require_admin(workflow.workspace_id, user_id)
        if not self.stores.automation.delete_workflow(workflow_id):
            raise NotFound("Workflow not found")
        logger.info("workflow event=deleted workflow_id=%s", workflow_id)

    def execute_workflow(
        self,
        workflow_id: str,
        user_id: str,
        payload: ExecuteWorkflowRequest,
    ) -> ActionResult:
        """Run one workflow on demand. Inactive workflows raise ValidationError."""
        workflow = self._require_workflow(workflow_id)
        self._require_admin(workflow.workspace_id, user_id)
        context = ExecutionContext(
            workspace_id=workflow.workspace_id,
            triggered_by=payload.triggered_by or user_id,
            task_id=payload.task_id,
            project_id=payload.project_id,
        )
        return self.executor.execute(workflow, context)

    def dispatch_event(
        self,
        workspace_id: str,
        event_type: str,
        context: ExecutionContext,
    ) -> list[WorkflowRunResult]:
        """Execute every active workflow in the workspace whose trigger matches.

        One workflow failing never stops the rest; its failure is reported in
        its own result entry.
        """
        workflows = matching_workflows(
            self.stores.automation.list_workflows(workspace_id), event_type
        )
        results: list[WorkflowRunResult] = []
        for workflow in workflows:
            try:
                result = self.executor.execute(workflow, context)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "workflow_event event=fault workflow_id=%s workspace_id=%s event_type=%s",
                    workflow.workflow_id,
                    workspace_id,
                    event_type,
                )
                result = ActionResult(success=False, message=getattr(exc, "message", str(exc)))
            results.append(
                WorkflowRunResult(
                    workflow_id=workflow.workflow_id,
                    workflow_name=workflow.name,
                    result=result,
                )
            )
        logger.info(
            "workflow_event event=dispatched workspace_id=%s event_type=%s matched=%d",
            workspace_id,
            event_type,
            len(results),
        )
        return results

    def emit(self, event_type: str, context: ExecutionContext) -> list[WorkflowRunResult]:
        """Fire-and-forget wrapper used by request handlers after a task change."""
        try:
            return self.dispatch_event(context.workspace_id, event_type, context)
        except Unavailable:
            logger.exception(
                "workflow_event event=dispatch_failed workspace_id=%s event_type=%s",
                context.workspace_id,
                event_type,
            )
            return []

    def _require_workflow(self, workflow_id: str) -> Workflow:
        workflow = self.stores.automation.get_workflow(workflow_id)
        if workflow is None:
            raise NotFound("Workflow not found")
        return workflow

    def _require_admin(self, workspace_id: str, user_id: str) -> Workspace:
        workspace = self.stores.records.get_workspace(workspace_id)
        if workspace is None:
            raise NotFound("Workspace not found")
        if not membership.is_admin(workspace, user_id):
            raise Forbidden("Access denied. Admin privileges required.")
        return workspace
