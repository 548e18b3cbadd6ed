"""Task status state machine with claim/verify semantics.

States and legal moves:

    todo ──claim──▶ in-progress ──mark complete──▶ pending-verification ──approve──▶ completed
                        ▲                                   │
                        └─────────────── reject ────────────┘
    in-progress / pending-verification / completed ──release──▶ todo

Every move is written with a conditional update on the status that was read,
so a concurrent move on the same task surfaces as `Conflict` instead of being
silently overwritten.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from . import membership
from .errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationError
from .models import Task, TaskStatus, Workspace
from .storage import RecordStore

logger = logging.getLogger(__name__)

# (from, to) -> transition name. Anything absent is an InvalidTransition.
TRANSITIONS: dict[tuple[str, str], str] = {
    ("todo", "in-progress"): "claim",
    ("in-progress", "pending-verification"): "mark_complete",
    ("pending-verification", "completed"): "approve",
    ("pending-verification", "in-progress"): "reject",
    ("in-progress", "todo"): "release",
    ("pending-verification", "todo"): "release",
    ("completed", "todo"): "release",
}

TRANSITION_TARGETS: dict[str, TaskStatus] = {
    "claim": "in-progress",
    "mark_complete": "pending-verification",
    "approve": "completed",
    "reject": "in-progress",
    "release": "todo",
}

EDITABLE_FIELDS: frozenset[str] = frozenset({"title", "description", "priority", "due_date"})

# Cleared together on release; never partially.
RELEASE_CLEARED_FIELDS: tuple[str, ...] = (
    "claimed_by",
    "claimed_at",
    "completed_at",
    "pending_verification_at",
    "verified_by",
    "verified_at",
)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class TaskStateMachine:
    def __init__(
        self,
        records: RecordStore,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.records = records
        self.clock = clock

    def change_status(
        self,
        task_id: str,
        user_id: str,
        target: TaskStatus,
        *,
        changes: dict[str, Any] | None = None,
    ) -> Task:
        """Route a requested target status to the matching transition.

        Field `changes` ride along in the same conditional write, so they are
        stored only if the move itself is allowed.
        """
        task = self._load(task_id)
        workspace = self._workspace(task)
        if not membership.is_member(workspace, user_id):
            raise Forbidden("Only workspace members can update tasks")
        patch = self._field_patch(task, workspace, user_id, changes) if changes else {}
        if task.status == target:
            if not patch:
                return task
            return self._write(task, patch, transition="edit", user_id=user_id)
        transition = TRANSITIONS.get((task.status, target))
        if transition is None:
            raise InvalidTransition(f"Cannot move task from '{task.status}' to '{target}'")
        patch.update(self._transition_patch(task, workspace, user_id, transition))
        return self._write(task, patch, transition=transition, user_id=user_id)

    def claim(self, task_id: str, user_id: str) -> Task:
        """todo -> in-progress. Any workspace member; they become the claimant."""
        return self._move(task_id, user_id, "claim")

    def mark_complete(self, task_id: str, user_id: str) -> Task:
        """in-progress -> pending-verification. Only the claimant, whatever their role."""
        return self._move(task_id, user_id, "mark_complete")

    def verify(self, task_id: str, user_id: str, *, approved: bool) -> Task:
        """pending-verification -> completed (approve) or in-progress (reject). Admins only."""
        return self._move(task_id, user_id, "approve" if approved else "reject")

    def release(self, task_id: str, user_id: str) -> Task:
        """Any non-todo state -> todo, dropping the claim.

        The claimant may release their own in-flight work; anyone else needs
        admin/owner. Reopening a completed task is admin/owner only.
        """
        return self._move(task_id, user_id, "release")

    def update_fields(self, task_id: str, user_id: str, changes: dict[str, Any]) -> Task:
        """Edit title/description/priority/due_date without touching status or claim."""
        task = self._load(task_id)
        workspace = self._workspace(task)
        if not membership.is_member(workspace, user_id):
            raise Forbidden("Only workspace members can edit tasks")
        patch = self._field_patch(task, workspace, user_id, changes)
        if not patch:
            return task
        return self._write(task, patch, transition="edit", user_id=user_id)

    def _move(self, task_id: str, user_id: str, transition: str) -> Task:
        task = self._load(task_id)
        target = TRANSITION_TARGETS[transition]
        if TRANSITIONS.get((task.status, target)) != transition:
            raise InvalidTransition(f"Cannot move task from '{task.status}' to '{target}'")
        workspace = self._workspace(task)
        patch = self._transition_patch(task, workspace, user_id, transition)
        return self._write(task, patch, transition=transition, user_id=user_id)

    def _transition_patch(
        self, task: Task, workspace: Workspace, user_id: str, transition: str
    ) -> dict[str, Any]:
        """Check who may run `transition` on `task` and build its patch. Writes nothing."""
        now = self.clock()
        if transition == "claim":
            if not membership.is_member(workspace, user_id):
                raise Forbidden("Only workspace members can claim tasks")
            return {"status": "in-progress", "claimed_by": user_id, "claimed_at": now}

        if transition == "mark_complete":
            if task.claimed_by != user_id:
                raise Forbidden("Only the member who claimed this task can mark it complete")
            return {"status": "pending-verification", "pending_verification_at": now}

        if transition in ("approve", "reject"):
            if not membership.is_admin(workspace, user_id):
                raise Forbidden("Only admins can verify task completion")
            if transition == "approve":
                return {
                    "status": "completed",
                    "completed_at": now,
                    "verified_by": user_id,
                    "verified_at": now,
                }
            return {
                "status": "in-progress",
                "pending_verification_at": None,
                "verified_by": None,
                "verified_at": None,
            }

        if not membership.is_member(workspace, user_id):
            raise Forbidden("Only workspace members can release tasks")
        admin = membership.is_admin(workspace, user_id)
        if task.status == "completed" and not admin:
            raise Forbidden("Only admins can reopen completed tasks")
        if task.claimed_by not in (None, user_id) and not admin:
            raise Forbidden("Task is claimed by another member")
        patch: dict[str, Any] = {"status": "todo"}
        patch.update({field: None for field in RELEASE_CLEARED_FIELDS})
        return patch

    @staticmethod
    def _field_patch(
        task: Task, workspace: Workspace, user_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be edited directly: {', '.join(sorted(unknown))}")
        if (
            task.claimed_by is not None
            and task.claimed_by != user_id
            and not membership.is_admin(workspace, user_id)
        ):
            raise Forbidden("Task is claimed by another member")
        patch = dict(changes)
        if "title" in patch:
            title = (patch["title"] or "").strip()
            if not title:
                raise ValidationError("Task title is required")
            patch["title"] = title
        if "description" in patch:
            patch["description"] = (patch["description"] or "").strip()
        return patch

    def _load(self, task_id: str) -> Task:
        task = self.records.get_task(task_id)
        if task is None:
            raise NotFound("Task not found")
        return task

    def _workspace(self, task: Task) -> Workspace:
        workspace = self.records.get_workspace(task.workspace_id)
        if workspace is None:
            raise NotFound("Workspace not found")
        return workspace

    def _write(self, task: Task, patch: dict[str, Any], *, transition: str, user_id: str) -> Task:
        applied = self.records.update_task(task.task_id, patch, expected_status=task.status)
        if not applied:
            if self.records.get_task(task.task_id) is None:
                raise NotFound("Task not found")
            raise Conflict("Task changed while the request was processed; reload and retry")
        logger.info(
            "task_transition event=%s task_id=%s workspace_id=%s user_id=%s from=%s to=%s",
            transition,
            task.task_id,
            task.workspace_id,
            user_id,
            task.status,
            patch.get("status", task.status),
        )
        return self._load(task.task_id)
