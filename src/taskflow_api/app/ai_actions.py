"""AI-assisted workspace actions and their progress records.

Beginner terms used in this file:
- Snapshot: the projects, tasks, and members of one workspace, read once per action.
- AI task: a stored progress record (status, progress, result/error) for one run.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from . import membership
from .assignment import open_task_counts, plan_batch
from .errors import DomainError, Forbidden, NotFound, Unavailable, ValidationError
from .llm import LLMAdapter
from .models import (
    AI_ACTOR,
    AIActionResponse,
    AIActionType,
    AITask,
    AITaskType,
    Project,
    Task,
    Workspace,
)
from .storage import TERMINAL_AI_TASK_STATUSES, StoreHandle

logger = logging.getLogger(__name__)

AI_TASK_TYPES: dict[str, AITaskType] = {
    "summarize": "summarize",
    "create_tasks": "create-tasks",
    "analyze_metrics": "analyze-metrics",
    "assign_tasks": "auto-assign",
}

AI_TASK_NAMES: dict[str, str] = {
    "summarize": "Workspace summary",
    "create_tasks": "Task suggestions",
    "analyze_metrics": "Metrics analysis",
    "assign_tasks": "Auto-assign tasks",
}

SYSTEM_PROMPT = (
    "You are a project management assistant for a team workspace. "
    "Be helpful, concise, and actionable. Use markdown formatting."
)


@dataclass(frozen=True)
class WorkspaceSnapshot:
    workspace: Workspace
    projects: list[Project]
    tasks: list[Task]
    # member id -> display label
    members: dict[str, str]

    def count(self, status: str) -> int:
        return sum(1 for task in self.tasks if task.status == status)


def build_prompt(action_type: str, snapshot: WorkspaceSnapshot) -> str:
    tasks = snapshot.tasks
    if action_type == "summarize":
        return (
            "Based on this workspace data:\n"
            f"- {len(snapshot.projects)} projects\n"
            f"- {len(tasks)} tasks ({snapshot.count('todo')} todo, "
            f"{snapshot.count('in-progress')} in progress, "
            f"{snapshot.count('pending-verification')} pending verification, "
            f"{snapshot.count('completed')} completed)\n"
            f"- {len(snapshot.members)} team members\n\n"
            "Provide a concise executive summary of the current project status, highlighting:\n"
            "1. Overall progress\n"
            "2. Key priorities\n"
            "3. Potential bottlenecks or risks\n"
            "4. Recommendations"
        )
    if action_type == "create_tasks":
        projects = "\n".join(f"- {p.name}: {p.description}" for p in snapshot.projects) or "- none"
        existing = "\n".join(f"- {t.title} ({t.status})" for t in tasks[:50]) or "- none"
        return (
            f"Projects:\n{projects}\n\nExisting tasks:\n{existing}\n\n"
            "Suggest 5-7 new tasks that would be valuable to add. Consider incomplete work, "
            "project requirements, and team capacity.\n"
            "Format as a numbered list with task title and brief description."
        )
    if action_type == "analyze_metrics":
        completion = (snapshot.count("completed") / len(tasks) * 100) if tasks else 0.0
        active_projects = sum(1 for p in snapshot.projects if p.status != "completed")
        distribution = "\n".join(
            f"- {label}: {sum(1 for t in tasks if t.assigned_to == member_id)} tasks"
            for member_id, label in snapshot.members.items()
        )
        return (
            "Analyze these workspace metrics:\n"
            f"- Completion Rate: {completion:.1f}%\n"
            f"- Total Tasks: {len(tasks)}\n"
            f"- Active Projects: {active_projects}\n"
            f"- Team Size: {len(snapshot.members)}\n\n"
            f"Task Distribution:\n{distribution}\n\n"
            "Provide insights on:\n"
            "1. Team performance and workload balance\n"
            "2. Project health indicators\n"
            "3. Productivity trends\n"
            "4. Actionable recommendations"
        )
    raise ValidationError(f"Unsupported AI action: {action_type}")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class AIActionService:
    def __init__(
        self,
        stores: StoreHandle,
        llm_adapter: LLMAdapter | None = None,
        *,
        assign_cap: int = 5,
        llm_timeout_s: float = 20.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.stores = stores
        self.llm_adapter = llm_adapter
        self.assign_cap = assign_cap
        self.llm_timeout_s = llm_timeout_s
        self.clock = clock

    def run_action(
        self,
        workspace_id: str,
        user_id: str,
        action_type: AIActionType,
    ) -> AIActionResponse:
        """Run one AI action and track it as an AI task record.

        The record starts `in-progress` and ends `completed` with the response
        text or `failed` with the error. A record cancelled while the action
        ran keeps its `cancelled` status.
        """
        workspace = self._require_member(workspace_id, user_id)
        if action_type != "assign_tasks" and self.llm_adapter is None:
            raise Unavailable("AI backend is not configured")

        ai_task = AITask(
            ai_task_id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            name=AI_TASK_NAMES[action_type],
            type=AI_TASK_TYPES[action_type],
            status="in-progress",
            progress=0,
            started_by=user_id,
            started_at=self.clock(),
            cancellable=True,
        )
        self.stores.automation.insert_ai_task(ai_task)
        logger.info(
            "ai_action event=started ai_task_id=%s workspace_id=%s action_type=%s",
            ai_task.ai_task_id,
            workspace_id,
            action_type,
        )

        try:
            snapshot = self.snapshot(workspace)
            if action_type == "assign_tasks":
                response = self.auto_assign(snapshot, ai_task.ai_task_id)
            else:
                response = self._generate(action_type, snapshot)
        except DomainError as exc:
            self._finish(ai_task.ai_task_id, {"status": "failed", "error": exc.message})
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "ai_action event=fault ai_task_id=%s workspace_id=%s action_type=%s",
                ai_task.ai_task_id,
                workspace_id,
                action_type,
            )
            self._finish(ai_task.ai_task_id, {"status": "failed", "error": str(exc)})
            raise Unavailable("Failed to execute AI action") from exc

        self._finish(
            ai_task.ai_task_id,
            {"status": "completed", "progress": 100, "result": response},
        )
        final = self.stores.automation.get_ai_task(ai_task.ai_task_id) or ai_task
        return AIActionResponse(ai_task=final, response=response)

    def snapshot(self, workspace: Workspace) -> WorkspaceSnapshot:
        records = self.stores.records
        members: dict[str, str] = {}
        for member_id in workspace.member_ids():
            profile = records.get_user(member_id)
            members[member_id] = profile.label() if profile else member_id
        return WorkspaceSnapshot(
            workspace=workspace,
            projects=records.list_projects(workspace.workspace_id),
            tasks=records.list_tasks(workspace.workspace_id),
            members=members,
        )

    def auto_assign(self, snapshot: WorkspaceSnapshot, ai_task_id: str | None = None) -> str:
        """Least-busy assignment of up to `assign_cap` unassigned todo tasks."""
        unassigned = [t for t in snapshot.tasks if t.assigned_to is None and t.status == "todo"]
        if not unassigned:
            return "All tasks are already assigned! No action needed."
        candidates = list(snapshot.members)
        counts = open_task_counts(candidates, snapshot.tasks)
        plan = plan_batch(unassigned, candidates, counts, cap=self.assign_cap)

        lines: list[str] = []
        for index, assignment in enumerate(plan, start=1):
            if ai_task_id and self._is_cancelled(ai_task_id):
                logger.info(
                    "ai_action event=assign_cancelled ai_task_id=%s assigned=%d",
                    ai_task_id,
                    len(lines),
                )
                break
            # The task may have been claimed or assigned since the snapshot.
            applied = self.stores.records.update_task(
                assignment.task.task_id,
                {"assigned_to": assignment.member_id, "assigned_by": AI_ACTOR},
                expected_status="todo",
            )
            if applied:
                label = snapshot.members.get(assignment.member_id, assignment.member_id)
                lines.append(f"- **{assignment.task.title}** -> {label}")
            if ai_task_id:
                self.stores.automation.update_ai_task(
                    ai_task_id, {"progress": int(index * 100 / len(plan))}
                )

        if not lines:
            return "No suitable assignments could be made at this time."
        return (
            f"**Auto-assigned {len(lines)} tasks:**\n\n"
            + "\n".join(lines)
            + "\n\nTasks were distributed based on current workload."
        )

    def list_ai_tasks(
        self,
        workspace_id: str,
        user_id: str,
        status: str | None = None,
    ) -> list[AITask]:
        self._require_member(workspace_id, user_id)
        return self.stores.automation.list_ai_tasks(workspace_id, status)

    def cancel(self, ai_task_id: str, user_id: str) -> AITask:
        ai_task = self.stores.automation.get_ai_task(ai_task_id)
        if ai_task is None:
            raise NotFound("AI task not found")
        workspace = self._require_workspace(ai_task.workspace_id)
        if not membership.is_admin(workspace, user_id):
            raise Forbidden("Access denied. Admin privileges required.")
        if not ai_task.cancellable:
            raise ValidationError("AI task cannot be cancelled")
        if ai_task.status in TERMINAL_AI_TASK_STATUSES:
            raise ValidationError(f"AI task already {ai_task.status}")
        self.stores.automation.update_ai_task(ai_task_id, {"status": "cancelled"})
        logger.info("ai_action event=cancelled ai_task_id=%s by=%s", ai_task_id, user_id)
        return self.stores.automation.get_ai_task(ai_task_id) or ai_task

    def _generate(self, action_type: str, snapshot: WorkspaceSnapshot) -> str:
        if self.llm_adapter is None:
            raise Unavailable("AI backend is not configured")
        return self.llm_adapter.generate_text(
            system_prompt=SYSTEM_PROMPT,
            user_prompt=build_prompt(action_type, snapshot),
            timeout_s=self.llm_timeout_s,
        )

    def _finish(self, ai_task_id: str, patch: dict[str, object]) -> None:
        if self._is_cancelled(ai_task_id):
            return
        self.stores.automation.update_ai_task(ai_task_id, patch)

    def _is_cancelled(self, ai_task_id: str) -> bool:
        current = self.stores.automation.get_ai_task(ai_task_id)
        return current is not None and current.status == "cancelled"

    def _require_workspace(self, workspace_id: str) -> Workspace:
        workspace = self.stores.records.get_workspace(workspace_id)
        if workspace is None:
            raise NotFound("Workspace not found")
        return workspace

    def _require_member(self, workspace_id: str, user_id: str) -> Workspace:
        workspace = self._require_workspace(workspace_id)
        if not membership.is_member(workspace, user_id):
            raise Forbidden("Access denied")
        return workspace
