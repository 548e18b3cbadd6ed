"""FastAPI application wiring for the task and workflow service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Lifespan: code that runs once at startup (open stores) and once at shutdown (close them).
- app.state: a place to store shared runtime objects (stores, services).
- Dependency: a function FastAPI calls per request, here to read the acting user id.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .app.ai_actions import AIActionService
from .app.automation import AutomationService
from .app.errors import DomainError
from .app.executor import WorkflowExecutor
from .app.llm import LLMAdapter, build_llm_adapter
from .app.models import (
    ActionResult,
    AddRemarkRequest,
    AIActionRequest,
    AIActionResponse,
    AITask,
    AssignTaskRequest,
    CreateProjectRequest,
    CreateTaskRequest,
    CreateWorkflowRequest,
    CreateWorkspaceRequest,
    ExecuteWorkflowRequest,
    JoinWorkspaceRequest,
    Project,
    Remark,
    ReminderReport,
    RoleResponse,
    SyncUserRequest,
    Task,
    UpdateMemberRoleRequest,
    UpdateProjectRequest,
    UpdateTaskRequest,
    UpdateWorkflowRequest,
    UpdateWorkspaceRequest,
    UserProfile,
    VerifyTaskRequest,
    Workflow,
    Workspace,
    WorkspaceAnalytics,
    WorkspaceMember,
)
from .app.notifications import EmailSender, HttpClient, UrllibHttpClient, build_email_sender
from .app.reminders import ReminderService
from .app.settings import Settings, get_settings
from .app.state_machine import TaskStateMachine
from .app.storage import StoreHandle, build_postgres_stores
from .app.tasks import TaskService
from .app.workspaces import WorkspaceService

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything a request handler needs, built once per app."""

    settings: Settings
    stores: StoreHandle
    workspaces: WorkspaceService
    tasks: TaskService
    automation: AutomationService
    ai_actions: AIActionService
    reminders: ReminderService


def build_runtime(
    *,
    settings: Settings,
    stores: StoreHandle,
    email_sender: EmailSender,
    http_client: HttpClient,
    llm_adapter: LLMAdapter | None,
) -> Runtime:
    executor = WorkflowExecutor(
        stores=stores,
        email_sender=email_sender,
        http_client=http_client,
        app_base_url=settings.app_base_url,
        webhook_timeout_s=settings.webhook_timeout_s,
    )
    automation = AutomationService(stores, executor)
    return Runtime(
        settings=settings,
        stores=stores,
        workspaces=WorkspaceService(stores.records),
        tasks=TaskService(stores.records, TaskStateMachine(stores.records), automation),
        automation=automation,
        ai_actions=AIActionService(
            stores,
            llm_adapter,
            assign_cap=settings.ai_assign_cap,
            llm_timeout_s=settings.llm_timeout_s,
        ),
        reminders=ReminderService(
            stores.records,
            email_sender,
            lead_days=settings.reminder_lead_days,
            app_base_url=settings.app_base_url,
        ),
    )


def current_user(x_user_id: str | None = Header(default=None)) -> str:
    """Acting user id from the X-User-Id header set by the auth proxy."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()


def create_app(
    *,
    stores: StoreHandle | None = None,
    settings_override: Settings | None = None,
    email_sender: EmailSender | None = None,
    http_client: HttpClient | None = None,
    llm_adapter: LLMAdapter | None = None,
) -> FastAPI:
    """Application factory.

    Collaborators passed in are used as-is; anything omitted is built from
    settings. Without a `stores` override the PostgreSQL stores are opened at
    startup, and a missing database URL fails fast with RuntimeError.
    """
    settings = settings_override or get_settings()

    def _ensure_runtime(app: FastAPI) -> Runtime:
        if not hasattr(app.state, "runtime"):
            handle = stores
            if handle is None:
                database_url = settings.resolved_database_url()
                if not database_url:
                    raise RuntimeError(
                        "Missing database URL. Set TASKFLOW_DATABASE_URL "
                        "or DATABASE_URL before starting the app."
                    )
                handle = build_postgres_stores(database_url)
            handle.open()
            app.state.runtime = build_runtime(
                settings=settings,
                stores=handle,
                email_sender=email_sender or build_email_sender(settings),
                http_client=http_client or UrllibHttpClient(),
                llm_adapter=llm_adapter or build_llm_adapter(settings),
            )
            logger.info(
                "app event=runtime_ready app_env=%s store=%s",
                settings.app_env,
                type(handle.records).__name__,
            )
        return app.state.runtime

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = _ensure_runtime(app)
        try:
            yield
        finally:
            runtime.stores.close()
            del app.state.runtime

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

    def get_runtime(request: Request) -> Runtime:
        return _ensure_runtime(request.app)

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.get("/health")
    @app.get("/healthz")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    # -- users -------------------------------------------------------------

    @app.post("/users/sync", response_model=UserProfile)
    def sync_user(
        payload: SyncUserRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> UserProfile:
        return runtime.workspaces.sync_user(
            user_id, email=payload.email, display_name=payload.display_name
        )

    @app.get("/users/me", response_model=UserProfile)
    def get_me(
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> UserProfile:
        return runtime.workspaces.get_user(user_id)

    # -- workspaces --------------------------------------------------------

    @app.get("/workspaces", response_model=list[Workspace])
    def list_workspaces(
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> list[Workspace]:
        return runtime.workspaces.list_workspaces(user_id)

    @app.post("/workspaces", response_model=Workspace, status_code=201)
    def create_workspace(
        payload: CreateWorkspaceRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Workspace:
        return runtime.workspaces.create_workspace(
            user_id, name=payload.name, description=payload.description
        )

    @app.post("/workspaces/join", response_model=Workspace)
    def join_workspace(
        payload: JoinWorkspaceRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Workspace:
        return runtime.workspaces.join_workspace(user_id, payload.invite_code)

    @app.get("/workspaces/{workspace_id}", response_model=Workspace)
    def get_workspace(
        workspace_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Workspace:
        return runtime.workspaces.get_workspace(workspace_id, user_id)

    @app.patch("/workspaces/{workspace_id}", response_model=Workspace)
    def update_workspace(
        workspace_id: str,
        payload: UpdateWorkspaceRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Workspace:
        return runtime.workspaces.update_workspace(workspace_id, user_id, payload)

    @app.delete("/workspaces/{workspace_id}")
    def delete_workspace(
        workspace_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> dict[str, bool]:
        runtime.workspaces.delete_workspace(workspace_id, user_id)
        return {"success": True}

    @app.get("/workspaces/{workspace_id}/analytics", response_model=WorkspaceAnalytics)
    def workspace_analytics(
        workspace_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> WorkspaceAnalytics:
        return runtime.workspaces.analytics(workspace_id, user_id)

    @app.get("/workspaces/{workspace_id}/role", response_model=RoleResponse)

    def get_role(
        workspace_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> RoleResponse:
        return runtime.workspaces.role(workspace_id, user_id)

    @app.get("/workspaces/{workspace_id}/members", response_model=list[WorkspaceMember])
    def list_members(
        workspace_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> list[WorkspaceMember]:
        return runtime.workspaces.list_members(workspace_id, user_id)

    @app.patch("/workspaces/{workspace_id}/members/{member_id}", response_model=WorkspaceMember)
    def update_member_role(
        workspace_id: str,
        member_id: str,
        payload: UpdateMemberRoleRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> WorkspaceMember:
        return runtime.workspaces.update_member_role(
            workspace_id, user_id, member_id, payload.role
        )

    @app.delete("/workspaces/{workspace_id}/members/{member_id}")
    def remove_member(
        workspace_id: str,
        member_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> dict[str, bool]:
        runtime.workspaces.remove_member(workspace_id, user_id, member_id)
        return {"success": True}

    # -- projects ----------------------------------------------------------

    @app.post("/workspaces/{workspace_id}/projects", response_model=Project, status_code=201)
    def create_project(
        workspace_id: str,
        payload: CreateProjectRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Project:
        return runtime.workspaces.create_project(workspace_id, user_id, payload)

    @app.get("/workspaces/{workspace_id}/projects", response_model=list[Project])
    def list_projects(
        workspace_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> list[Project]:
        return runtime.workspaces.list_projects(workspace_id, user_id)

    @app.get("/projects/{project_id}", response_model=Project)
    def get_project(
        project_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Project:
        return runtime.workspaces.get_project(project_id, user_id)

    @app.patch("/projects/{project_id}", response_model=Project)
    def update_project(
        project_id: str,
        payload: UpdateProjectRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Project:
        return runtime.workspaces.update_project(project_id, user_id, payload)

    @app.delete("/projects/{project_id}")
    def delete_project(
        project_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> dict[str, bool]:
        runtime.workspaces.delete_project(project_id, user_id)
        return {"success": True}


    # -- tasks -------------------------------------------------------------

    @app.post("/projects/{project_id}/tasks", response_model=Task, status_code=201)
    def create_task(
        project_id: str,
        payload: CreateTaskRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Task:
        return runtime.tasks.create_task(project_id, user_id, payload)

    @app.get("/projects/{project_id}/tasks", response_model=list[Task])
    def list_project_tasks(
        project_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> list[Task]:
        return runtime.tasks.list_project_tasks(project_id, user_id)

    @app.get("/tasks/{task_id}", response_model=Task)
    def get_task(
        task_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Task:
        return runtime.tasks.get_task(task_id, user_id)

    @app.patch("/tasks/{task_id}", response_model=Task)
    def update_task(
        task_id: str,
        payload: UpdateTaskRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Task:
        return runtime.tasks.update_task(task_id, user_id, payload)

    @app.delete("/tasks/{task_id}")
    def delete_task(
        task_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> dict[str, bool]:
        runtime.tasks.delete_task(task_id, user_id)
        return {"success": True}

    @app.post("/tasks/{task_id}/claim", response_model=Task)
    def claim_task(
        task_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Task:
        return runtime.tasks.claim(task_id, user_id)

    @app.post("/tasks/{task_id}/complete", response_model=Task)
    def complete_task(
        task_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Task:
        return runtime.tasks.mark_complete(task_id, user_id)

    @app.post("/tasks/{task_id}/release", response_model=Task)
    def release_task(
        task_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Task:
        return runtime.tasks.release(task_id, user_id)

    @app.patch("/tasks/{task_id}/verify", response_model=Task)
    def verify_task(
        task_id: str,
        payload: VerifyTaskRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Task:
        return runtime.tasks.verify(task_id, user_id, approved=payload.approved)

    @app.patch("/tasks/{task_id}/assign", response_model=Task)
    def assign_task(
        task_id: str,
        payload: AssignTaskRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Task:
        return runtime.tasks.assign(task_id, user_id, payload.assigned_to)

    @app.post("/tasks/{task_id}/remarks", response_model=Remark, status_code=201)
    def add_remark(
        task_id: str,
        payload: AddRemarkRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Remark:
        return runtime.tasks.add_remark(task_id, user_id, payload)

    @app.get("/tasks/{task_id}/remarks", response_model=list[Remark])
    def list_remarks(
        task_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> list[Remark]:
        return runtime.tasks.list_remarks(task_id, user_id)

    # -- workflows ---------------------------------------------------------

    @app.get("/workspaces/{workspace_id}/workflows", response_model=list[Workflow])
    def list_workflows(
        workspace_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> list[Workflow]:
        return runtime.automation.list_workflows(workspace_id, user_id)

    @app.post("/workflows", response_model=Workflow, status_code=201)
    def create_workflow(
        payload: CreateWorkflowRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Workflow:
        return runtime.automation.create_workflow(user_id, payload)

    @app.put("/workflows/{workflow_id}", response_model=Workflow)
    def update_workflow(
        workflow_id: str,
        payload: UpdateWorkflowRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> Workflow:
        return runtime.automation.update_workflow(workflow_id, user_id, payload)

    @app.delete("/workflows/{workflow_id}")
    def delete_workflow(
        workflow_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> dict[str, bool]:
        runtime.automation.delete_workflow(workflow_id, user_id)
        return {"success": True}

    @app.post("/workflows/{workflow_id}/execute", response_model=ActionResult)
    def execute_workflow(
        workflow_id: str,
        payload: ExecuteWorkflowRequest | None = None,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> ActionResult:
        return runtime.automation.execute_workflow(
            workflow_id, user_id, payload or ExecuteWorkflowRequest()
        )

    # -- AI ----------------------------------------------------------------

    @app.post("/ai/actions", response_model=AIActionResponse)
    def run_ai_action(
        payload: AIActionRequest,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> AIActionResponse:
        return runtime.ai_actions.run_action(payload.workspace_id, user_id, payload.action_type)

    @app.get("/workspaces/{workspace_id}/ai-tasks", response_model=list[AITask])
    def list_ai_tasks(
        workspace_id: str,
        status: str | None = None,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> list[AITask]:
        return runtime.ai_actions.list_ai_tasks(workspace_id, user_id, status)

    @app.post("/ai-tasks/{ai_task_id}/cancel", response_model=AITask)
    def cancel_ai_task(
        ai_task_id: str,
        user_id: str = Depends(current_user),
        runtime: Runtime = Depends(get_runtime),
    ) -> AITask:
        return runtime.ai_actions.cancel(ai_task_id, user_id)

    # -- cron --------------------------------------------------------------

    @app.get("/cron/task-reminders", response_model=ReminderReport)
    @app.post("/cron/task-reminders", response_model=ReminderReport)
    def send_task_reminders(
        authorization: str | None = Header(default=None),
        runtime: Runtime = Depends(get_runtime),
    ) -> ReminderReport:
        secret = runtime.settings.cron_secret
        if secret and authorization != f"Bearer {secret}":
            raise HTTPException(status_code=401, detail="Unauthorized")
        return runtime.reminders.send_due_reminders(datetime.now(tz=UTC))

    return app


# Module-level app for `uvicorn taskflow_api.main:app`. Stores open at startup.
app = create_app()
