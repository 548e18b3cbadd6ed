from __future__ import annotations

import argparse
import json
import logging

from taskflow_api.app.errors import DomainError
from taskflow_api.app.executor import WorkflowExecutor
from taskflow_api.app.models import ExecutionContext
from taskflow_api.app.notifications import UrllibHttpClient, build_email_sender
from taskflow_api.app.settings import get_settings
from taskflow_api.app.storage import build_postgres_stores


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Execute one stored workflow against the PostgreSQL stores."
    )
    parser.add_argument("workflow_id", help="Id of the workflow to execute.")
    parser.add_argument(
        "--database-url",
        type=str,
        default="",
        help="PostgreSQL connection URL (default: TASKFLOW_DATABASE_URL / DATABASE_URL).",
    )
    parser.add_argument("--task-id", type=str, default=None, help="Task the run is about.")
    parser.add_argument("--project-id", type=str, default=None, help="Project for create-task.")
    parser.add_argument(
        "--triggered-by",
        type=str,
        default="operator",
        help="Value recorded as the execution's trigger source (default: operator).",
    )
    return parser.parse_args()


def execute(
    *,
    database_url: str,
    workflow_id: str,
    task_id: str | None,
    project_id: str | None,
    triggered_by: str,
) -> dict[str, object]:
    settings = get_settings()
    stores = build_postgres_stores(database_url or settings.resolved_database_url())
    stores.open()
    try:
        workflow = stores.automation.get_workflow(workflow_id)
        if workflow is None:
            return {"success": False, "message": f"Workflow not found: {workflow_id}"}
        executor = WorkflowExecutor(
            stores=stores,
            email_sender=build_email_sender(settings),
            http_client=UrllibHttpClient(),
            app_base_url=settings.app_base_url,
            webhook_timeout_s=settings.webhook_timeout_s,
        )
        context = ExecutionContext(
            workspace_id=workflow.workspace_id,
            triggered_by=triggered_by,
            task_id=task_id,
            project_id=project_id,
        )
        try:
            result = executor.execute(workflow, context)
        except DomainError as exc:
            return {"success": False, "message": exc.message}
        return result.model_dump()
    finally:
        stores.close()


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    args = _parse_args()
    outcome = execute(
        database_url=args.database_url,
        workflow_id=args.workflow_id,
        task_id=args.task_id,
        project_id=args.project_id,
        triggered_by=args.triggered_by,
    )
    print(json.dumps(outcome, indent=2))
    raise SystemExit(0 if outcome["success"] else 1)


if __name__ == "__main__":
    main()
