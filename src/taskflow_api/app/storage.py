"""Store interfaces and the PostgreSQL document backend.

Beginner terms:
- Protocol: a structural interface; any class with these methods fits.
- JSONB: PostgreSQL JSON type used to keep each record as one document.
- Conditional update: an UPDATE that only applies when the stored status (tasks)
  or updated_at (workspaces) still matches what the caller read (optimistic
  concurrency).
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import partial
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel

from .errors import Unavailable
from .models import AITask, Project, Remark, Task, UserProfile, Workflow, Workspace

logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=BaseModel)

TERMINAL_AI_TASK_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})


class RecordStore(Protocol):
    """Durable records: users, workspaces, projects, tasks."""

    def open(self) -> None: ...

    def close(self) -> None: ...

    def get_user(self, user_id: str) -> UserProfile | None: ...

    def upsert_user(self, profile: UserProfile) -> UserProfile: ...

    def insert_workspace(self, workspace: Workspace) -> str: ...

    def get_workspace(self, workspace_id: str) -> Workspace | None: ...

    def find_workspace_by_invite_code(self, invite_code: str) -> Workspace | None: ...

    def list_workspaces_for_user(self, user_id: str) -> list[Workspace]: ...

    def update_workspace(
        self,
        workspace_id: str,
        patch: dict[str, Any],
        *,
        expected_updated_at: datetime,
    ) -> bool: ...

    def delete_workspace(self, workspace_id: str) -> bool: ...

    def increment_project_count(self, workspace_id: str, delta: int = 1) -> None: ...

    def insert_project(self, project: Project) -> str: ...

    def get_project(self, project_id: str) -> Project | None: ...

    def list_projects(self, workspace_id: str) -> list[Project]: ...

    def first_project(self, workspace_id: str) -> Project | None: ...

    def update_project(self, project_id: str, patch: dict[str, Any]) -> bool: ...

    def delete_project(self, project_id: str) -> bool: ...

    def insert_task(self, task: Task) -> str: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(self, workspace_id: str, *, open_only: bool = False) -> list[Task]: ...

    def list_project_tasks(self, project_id: str) -> list[Task]: ...

    def list_open_assigned_tasks_due(self, start: datetime, end: datetime) -> list[Task]: ...

    def update_task(
        self,
        task_id: str,
        patch: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> bool: ...

    def push_remark(self, task_id: str, remark: Remark) -> bool: ...

    def delete_task(self, task_id: str) -> bool: ...


class AutomationStore(Protocol):
    """Realtime records: workflow definitions and AI task progress."""

    def open(self) -> None: ...

    def close(self) -> None: ...

    def list_workflows(self, workspace_id: str) -> list[Workflow]: ...

    def get_workflow(self, workflow_id: str) -> Workflow | None: ...

    def insert_workflow(self, workflow: Workflow) -> str: ...

    def update_workflow(self, workflow_id: str, patch: dict[str, Any]) -> bool: ...

    def delete_workflow(self, workflow_id: str) -> bool: ...

    def increment_workflow_runs(self, workflow_id: str) -> None: ...

    def list_ai_tasks(self, workspace_id: str, status: str | None = None) -> list[AITask]: ...

    def get_ai_task(self, ai_task_id: str) -> AITask | None: ...

    def insert_ai_task(self, ai_task: AITask) -> str: ...

    def update_ai_task(self, ai_task_id: str, patch: dict[str, Any]) -> bool: ...


@dataclass
class StoreHandle:
    """Explicitly constructed store bundle passed into every service."""

    records: RecordStore
    automation: AutomationStore

    def open(self) -> None:
        self.records.open()
        self.automation.open()

    def close(self) -> None:
        self.records.close()
        self.automation.close()


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    raise TypeError(f"Unsupported JSON value: {type(value)!r}")


_dumps = partial(json.dumps, default=_json_default)


class _PostgresDocumentStore:
    """Thread-safe JSONB document table shared by both Postgres stores.

    One connection is opened in `open()` and released in `close()`. Every
    statement runs under the instance lock and commits immediately, so each
    call is a single-document atomic write.
    """

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._conn: Any = None
        # Lazy import helper keeps error message clear if psycopg is missing.
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def open(self) -> None:
        if self._conn is not None:
            return
        try:
            self._conn = self._psycopg.connect(self.database_url, row_factory=self._dict_row)
        except self._psycopg.Error as exc:
            raise Unavailable(f"Database connection failed: {exc}") from exc
        self.migrate()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def migrate(self) -> None:
        """Create the document table and indexes if they do not already exist."""
        with self._cursor() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    body JSONB NOT NULL,
                    PRIMARY KEY (collection, doc_id)
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_documents_workspace
                ON documents (collection, (body->>'workspace_id'))
                """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_workspaces_invite_code
                ON documents ((body->>'invite_code'))
                WHERE collection = 'workspaces'
                """)

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        with self._lock:
            if self._conn is None:
                raise Unavailable("Store is not open")
            try:
                yield self._conn
                self._conn.commit()
            except self._psycopg.Error as exc:
                self._conn.rollback()
                logger.exception("store event=query_failed reason=%s", exc)
                raise Unavailable(f"Database operation failed: {exc}") from exc

    def _insert(self, collection: str, doc_id: str, record: BaseModel) -> str:
        with self._cursor() as conn:
            conn.execute(
                "INSERT INTO documents (collection, doc_id, body) VALUES (%s, %s, %s)",
                (collection, doc_id, self._json_wrapper(record.model_dump(mode="json"))),
            )
        return doc_id

    def _replace(self, collection: str, doc_id: str, record: BaseModel) -> None:
        with self._cursor() as conn:
            conn.execute(
                """
                INSERT INTO documents (collection, doc_id, body) VALUES (%s, %s, %s)
                ON CONFLICT (collection, doc_id) DO UPDATE SET body = EXCLUDED.body
                """,
                (collection, doc_id, self._json_wrapper(record.model_dump(mode="json"))),
            )

    def _get(self, collection: str, doc_id: str, model: type[TModel]) -> TModel | None:
        with self._cursor() as conn:
            row = conn.execute(
                "SELECT body FROM documents WHERE collection = %s AND doc_id = %s",
                (collection, doc_id),
            ).fetchone()
        if row is None:
            return None
        return model.model_validate(self._parse_body(row["body"]))

    def _select(
        self,
        model: type[TModel],
        sql: str,
        params: tuple[Any, ...],
    ) -> list[TModel]:
        with self._cursor() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [model.model_validate(self._parse_body(row["body"])) for row in rows]

    def _patch(
        self,
        collection: str,
        doc_id: str,
        patch: dict[str, Any],
        *,
        expected_status: str | None = None,
        expected_updated_at: datetime | None = None,
    ) -> bool:
        sql = """
            UPDATE documents SET body = body || %s::jsonb
            WHERE collection = %s AND doc_id = %s
            """
        params: tuple[Any, ...] = (self._json_wrapper(patch, dumps=_dumps), collection, doc_id)
        if expected_status is not None:
            sql += " AND body->>'status' = %s"
            params = (*params, expected_status)
        if expected_updated_at is not None:
            sql += " AND (body->>'updated_at')::timestamptz = %s"
            params = (*params, expected_updated_at)
        with self._cursor() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount == 1

    def _delete(self, collection: str, doc_id: str) -> bool:
        with self._cursor() as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = %s AND doc_id = %s",
                (collection, doc_id),
            )
            return cursor.rowcount == 1

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_body(raw: Any) -> dict[str, Any]:
        if isinstance(raw, str):
            parsed = json.loads(raw)
        else:
            parsed = raw
        if isinstance(parsed, dict):
            return parsed
        raise TypeError(f"Unsupported document body: {type(parsed)!r}")


class PostgresRecordStore(_PostgresDocumentStore):
    """PostgreSQL-backed persistent store."""

    def get_user(self, user_id: str) -> UserProfile | None:
        return self._get("users", user_id, UserProfile)

    def upsert_user(self, profile: UserProfile) -> UserProfile:
        self._replace("users", profile.user_id, profile)
        return profile

    def insert_workspace(self, workspace: Workspace) -> str:
        return self._insert("workspaces", workspace.workspace_id, workspace)

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        return self._get("workspaces", workspace_id, Workspace)

    def find_workspace_by_invite_code(self, invite_code: str) -> Workspace | None:
        found = self._select(
            Workspace,
            """
            SELECT body FROM documents
            WHERE collection = 'workspaces' AND body->>'invite_code' = %s
            """,
            (invite_code,),
        )
        return found[0] if found else None

    def list_workspaces_for_user(self, user_id: str) -> list[Workspace]:
        return self._select(
            Workspace,
            """
            SELECT body FROM documents
            WHERE collection = 'workspaces'
              AND body->'members' @> %s::jsonb
            ORDER BY body->>'created_at'
            """,
            (self._json_wrapper([{"user_id": user_id}]),),
        )

    def update_workspace(
        self,
        workspace_id: str,
        patch: dict[str, Any],
        *,
        expected_updated_at: datetime,
    ) -> bool:
        """Merge `patch` only if nobody wrote the workspace since it was read.

        Keys absent from the patch, project_count included, keep their stored value.
        """
        return self._patch(
            "workspaces", workspace_id, patch, expected_updated_at=expected_updated_at
        )

    def delete_workspace(self, workspace_id: str) -> bool:
        """Drop the workspace with its projects and tasks in one transaction."""
        with self._cursor() as conn:
            conn.execute(
                """
                DELETE FROM documents
                WHERE collection IN ('projects', 'tasks') AND body->>'workspace_id' = %s
                """,
                (workspace_id,),
            )
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = 'workspaces' AND doc_id = %s",
                (workspace_id,),
            )
            return cursor.rowcount == 1

    def increment_project_count(self, workspace_id: str, delta: int = 1) -> None:
        with self._cursor() as conn:
            conn.execute(
                """
                UPDATE documents
                SET body = jsonb_set(
                    body,
                    '{project_count}',
                    to_jsonb(GREATEST(COALESCE((body->>'project_count')::int, 0) + %s, 0))
                )
                WHERE collection = 'workspaces' AND doc_id = %s
                """,
                (delta, workspace_id),
            )

    def insert_project(self, project: Project) -> str:
        return self._insert("projects", project.project_id, project)

    def get_project(self, project_id: str) -> Project | None:
        return self._get("projects", project_id, Project)

    def list_projects(self, workspace_id: str) -> list[Project]:
        return self._select(
            Project,
            """
            SELECT body FROM documents
            WHERE collection = 'projects' AND body->>'workspace_id' = %s
            ORDER BY body->>'created_at'
            """,
            (workspace_id,),
        )

    def first_project(self, workspace_id: str) -> Project | None:
        projects = self.list_projects(workspace_id)
        return projects[0] if projects else None

    def update_project(self, project_id: str, patch: dict[str, Any]) -> bool:
        stamped = {**patch, "updated_at": datetime.now(tz=UTC)}
        return self._patch("projects", project_id, stamped)

    def delete_project(self, project_id: str) -> bool:
        """Drop the project and its tasks in one transaction."""
        with self._cursor() as conn:
            conn.execute(
                "DELETE FROM documents WHERE collection = 'tasks' AND body->>'project_id' = %s",
                (project_id,),
            )
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = 'projects' AND doc_id = %s",
                (project_id,),
            )
            return cursor.rowcount == 1


    def insert_task(self, task: Task) -> str:
        return self._insert("tasks", task.task_id, task)

    def get_task(self, task_id: str) -> Task | None:
        return self._get("tasks", task_id, Task)

    def list_tasks(self, workspace_id: str, *, open_only: bool = False) -> list[Task]:
        sql = """
            SELECT body FROM documents
            WHERE collection = 'tasks' AND body->>'workspace_id' = %s
            """
        if open_only:
            sql += " AND body->>'status' <> 'completed'"
        sql += " ORDER BY body->>'created_at'"
        return self._select(Task, sql, (workspace_id,))

    def list_project_tasks(self, project_id: str) -> list[Task]:
        return self._select(
            Task,
            """
            SELECT body FROM documents
            WHERE collection = 'tasks' AND body->>'project_id' = %s
            ORDER BY body->>'created_at'
            """,
            (project_id,),
        )

    def list_open_assigned_tasks_due(self, start: datetime, end: datetime) -> list[Task]:
        return self._select(
            Task,
            """
            SELECT body FROM documents
            WHERE collection = 'tasks'
              AND body->>'status' <> 'completed'
              AND body->>'assigned_to' IS NOT NULL
              AND body->>'due_date' IS NOT NULL
              AND (body->>'due_date')::timestamptz >= %s
              AND (body->>'due_date')::timestamptz < %s
            ORDER BY body->>'due_date'
            """,
            (start, end),
        )

    def update_task(
        self,
        task_id: str,
        patch: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> bool:
        stamped = {**patch, "updated_at": datetime.now(tz=UTC)}
        return self._patch("tasks", task_id, stamped, expected_status=expected_status)

    def push_remark(self, task_id: str, remark: Remark) -> bool:
        with self._cursor() as conn:
            cursor = conn.execute(
                """
                UPDATE documents
                SET body = jsonb_set(
                    jsonb_set(
                        body,
                        '{remarks}',
                        COALESCE(body->'remarks', '[]'::jsonb) || %s::jsonb
                    ),
                    '{updated_at}',
                    to_jsonb(%s::text)
                )
                WHERE collection = 'tasks' AND doc_id = %s
                """,
                (
                    self._json_wrapper([remark.model_dump(mode="json")]),
                    datetime.now(tz=UTC).isoformat(),
                    task_id,
                ),
            )
            return cursor.rowcount == 1

    def delete_task(self, task_id: str) -> bool:
        return self._delete("tasks", task_id)


class PostgresAutomationStore(_PostgresDocumentStore):
    """PostgreSQL-backed store for workflows and AI task progress."""

    def list_workflows(self, workspace_id: str) -> list[Workflow]:
        return self._select(
            Workflow,
            """
            SELECT body FROM documents
            WHERE collection = 'workflows' AND body->>'workspace_id' = %s
            ORDER BY body->>'created_at' DESC
            """,
            (workspace_id,),
        )

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        return self._get("workflows", workflow_id, Workflow)

    def insert_workflow(self, workflow: Workflow) -> str:
        return self._insert("workflows", workflow.workflow_id, workflow)

    def update_workflow(self, workflow_id: str, patch: dict[str, Any]) -> bool:
        stamped = {**patch, "updated_at": datetime.now(tz=UTC)}
        return self._patch("workflows", workflow_id, stamped)

    def delete_workflow(self, workflow_id: str) -> bool:
        return self._delete("workflows", workflow_id)

    def increment_workflow_runs(self, workflow_id: str) -> None:
        """Atomic server-side increment; never read-modify-write."""
        now = datetime.now(tz=UTC).isoformat()
        with self._cursor() as conn:
            conn.execute(
                """
                UPDATE documents
                SET body = body || jsonb_build_object(
                    'runs', COALESCE((body->>'runs')::int, 0) + 1,
                    'last_run_at', %s::text,
                    'updated_at', %s::text
                )
                WHERE collection = 'workflows' AND doc_id = %s
                """,
                (now, now, workflow_id),
            )

    def list_ai_tasks(self, workspace_id: str, status: str | None = None) -> list[AITask]:
        sql = """
            SELECT body FROM documents
            WHERE collection = 'ai_tasks' AND body->>'workspace_id' = %s
            """
        params: tuple[Any, ...] = (workspace_id,)
        if status is not None:
            sql += " AND body->>'status' = %s"
            params = (*params, status)
        sql += " ORDER BY body->>'started_at' DESC"
        return self._select(AITask, sql, params)

    def get_ai_task(self, ai_task_id: str) -> AITask | None:
        return self._get("ai_tasks", ai_task_id, AITask)

    def insert_ai_task(self, ai_task: AITask) -> str:
        return self._insert("ai_tasks", ai_task.ai_task_id, ai_task)

    def update_ai_task(self, ai_task_id: str, patch: dict[str, Any]) -> bool:
        stamped = dict(patch)
        if stamped.get("status") in TERMINAL_AI_TASK_STATUSES:
            stamped["completed_at"] = datetime.now(tz=UTC)
        return self._patch("ai_tasks", ai_task_id, stamped)


def build_postgres_stores(database_url: str) -> StoreHandle:
    return StoreHandle(
        records=PostgresRecordStore(database_url),
        automation=PostgresAutomationStore(database_url),
    )
