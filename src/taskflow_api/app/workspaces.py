"""Users, workspaces, membership administration, and projects."""

from __future__ import annotations

import logging
import re
import secrets
import string
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from . import membership
from .errors import Conflict, Forbidden, NotFound, ValidationError
from .models import (
    CreateProjectRequest,
    MemberContribution,
    Project,
    RoleResponse,
    UpdateProjectRequest,
    UpdateWorkspaceRequest,
    UserProfile,
    WeeklyCompletion,
    Workspace,
    WorkspaceAnalytics,
    WorkspaceMember,
)
from .storage import RecordStore

logger = logging.getLogger(__name__)

INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits
INVITE_CODE_LENGTH = 6
INVITE_CODE_PATTERN = re.compile(r"^[A-Z0-9]{6}$")
ANALYTICS_WEEKS = 4


def generate_invite_code() -> str:
    return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


def validate_invite_code(code: str) -> bool:
    return bool(INVITE_CODE_PATTERN.match(code))


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class WorkspaceService:
    def __init__(
        self,
        records: RecordStore,
        *,
        clock: Callable[[], datetime] = _utc_now,
        code_generator: Callable[[], str] = generate_invite_code,
        max_code_attempts: int = 20,
    ) -> None:
        self.records = records
        self.clock = clock
        self.code_generator = code_generator
        self.max_code_attempts = max_code_attempts

    # -- users -------------------------------------------------------------

    def sync_user(
        self, user_id: str, *, email: str | None, display_name: str | None
    ) -> UserProfile:
        """Create or refresh the caller's profile, keeping the original created_at."""
        now = self.clock()
        existing = self.records.get_user(user_id)
        profile = UserProfile(
            user_id=user_id,
            email=email if email is not None else (existing.email if existing else None),
            display_name=(
                display_name
                if display_name is not None
                else (existing.display_name if existing else None)
            ),
            created_at=existing.created_at if existing else now,
            last_login_at=now,
        )
        return self.records.upsert_user(profile)

    def get_user(self, user_id: str) -> UserProfile:
        profile = self.records.get_user(user_id)
        if profile is None:
            raise NotFound("User not found")
        return profile

    # -- workspaces --------------------------------------------------------

    def create_workspace(self, user_id: str, *, name: str, description: str = "") -> Workspace:
        name = name.strip()
        if not name:
            raise ValidationError("Workspace name is required")
        now = self.clock()
        workspace = Workspace(
            workspace_id=str(uuid.uuid4()),
            name=name,
            description=description.strip(),
            owner_id=user_id,
            members=[WorkspaceMember(user_id=user_id, role="owner", joined_at=now)],
            invite_code=self._allocate_invite_code(),
            created_at=now,
            updated_at=now,
        )
        self.records.insert_workspace(workspace)
        logger.info(
            "workspace event=created workspace_id=%s owner_id=%s",
            workspace.workspace_id,
            user_id,
        )
        return workspace

    def join_workspace(self, user_id: str, invite_code: str) -> Workspace:
        code = invite_code.strip().upper()
        if not validate_invite_code(code):
            raise ValidationError("Invalid invite code format")
        workspace = self.records.find_workspace_by_invite_code(code)
        if workspace is None:
            raise NotFound("Invalid invite code")
        if membership.is_member(workspace, user_id):
            raise Conflict("You are already a member of this workspace")
        joined = WorkspaceMember(user_id=user_id, role="member", joined_at=self.clock())
        workspace = self._save(workspace, {"members": [*workspace.members, joined]})
        logger.info(
            "workspace event=member_joined workspace_id=%s user_id=%s",
            workspace.workspace_id,
            user_id,
        )
        return workspace

    def require_workspace(self, workspace_id: str) -> Workspace:
        workspace = self.records.get_workspace(workspace_id)
        if workspace is None:
            raise NotFound("Workspace not found")
        return workspace

    def require_member(self, workspace_id: str, user_id: str) -> Workspace:
        workspace = self.require_workspace(workspace_id)
        if not membership.is_member(workspace, user_id):
            raise Forbidden("Access denied")
        return workspace

    def require_admin(self, workspace_id: str, user_id: str) -> Workspace:
        workspace = self.require_workspace(workspace_id)
        if not membership.is_admin(workspace, user_id):
            raise Forbidden("Access denied. Admin privileges required.")
        return workspace

    def get_workspace(self, workspace_id: str, user_id: str) -> Workspace:
        """Members see the workspace; only admins see the invite code."""
        workspace = self.require_member(workspace_id, user_id)
        if not membership.is_admin(workspace, user_id):
            workspace.invite_code = ""
        return workspace

    def list_workspaces(self, user_id: str) -> list[Workspace]:
        workspaces = self.records.list_workspaces_for_user(user_id)
        for workspace in workspaces:
            if not membership.is_admin(workspace, user_id):
                workspace.invite_code = ""
        return workspaces

    def role(self, workspace_id: str, user_id: str) -> RoleResponse:
        workspace = self.require_workspace(workspace_id)
        return RoleResponse(
            workspace_id=workspace_id,
            user_id=user_id,
            role=membership.role_of(workspace, user_id),
            is_admin=membership.is_admin(workspace, user_id),
        )

    def list_members(self, workspace_id: str, user_id: str) -> list[WorkspaceMember]:
        return self.require_member(workspace_id, user_id).members

    def update_member_role(
        self,
        workspace_id: str,
        user_id: str,
        target_user_id: str,
        role: str,
    ) -> WorkspaceMember:
        workspace = self.require_workspace(workspace_id)
        if membership.role_of(workspace, user_id) != "owner":
            raise Forbidden("Only the workspace owner can change roles")
        if role == "owner":
            raise ValidationError("Ownership cannot be granted")
        target = membership.find_member(workspace, target_user_id)
        if target is None:
            raise NotFound("Member not found")
        if target.role == "owner" or target_user_id == workspace.owner_id:
            raise Forbidden("The owner's role cannot be changed")
        updated = target.model_copy(update={"role": role})
        members = [updated if m.user_id == target_user_id else m for m in workspace.members]
        self._save(workspace, {"members": members})
        return updated

    def remove_member(self, workspace_id: str, user_id: str, target_user_id: str) -> None:
        """Admins remove members; any non-owner member may remove themselves."""
        workspace = self.require_workspace(workspace_id)
        if target_user_id == workspace.owner_id:
            raise Forbidden("The workspace owner cannot be removed")
        if user_id != target_user_id and not membership.is_admin(workspace, user_id):
            raise Forbidden("Only admins can remove members")
        target = membership.find_member(workspace, target_user_id)
        if target is None:
            raise NotFound("Member not found")
        if (
            target.role == "admin"
            and user_id != target_user_id
            and membership.role_of(workspace, user_id) != "owner"
        ):
            raise Forbidden("Only the owner can remove an admin")
        members = [m for m in workspace.members if m.user_id != target_user_id]
        self._save(workspace, {"members": members})
        logger.info(
            "workspace event=member_removed workspace_id=%s user_id=%s by=%s",
            workspace_id,
            target_user_id,
            user_id,
        )

    def update_workspace(
        self, workspace_id: str, user_id: str, payload: UpdateWorkspaceRequest
    ) -> Workspace:
        workspace = self.require_workspace(workspace_id)
        if not membership.is_admin(workspace, user_id):
            raise Forbidden("Only workspace owners and admins can update workspace details")
        patch: dict[str, Any] = {}
        if payload.name is not None:
            name = payload.name.strip()
            if not name:
                raise ValidationError("Workspace name is required")
            patch["name"] = name
        if payload.description is not None:
            patch["description"] = payload.description.strip()
        if not patch:
            return workspace
        return self._save(workspace, patch)

    def delete_workspace(self, workspace_id: str, user_id: str) -> None:
        """Owner only. Projects and tasks go with it."""
        workspace = self.require_workspace(workspace_id)
        if workspace.owner_id != user_id:
            raise Forbidden("Only the workspace owner can delete the workspace")
        if not self.records.delete_workspace(workspace_id):
            raise NotFound("Workspace not found")
        logger.info("workspace event=deleted workspace_id=%s user_id=%s", workspace_id, user_id)

    def analytics(self, workspace_id: str, user_id: str) -> WorkspaceAnalytics:
        """Per-member contribution plus completions over the last four weeks."""
        workspace = self.require_member(workspace_id, user_id)
        tasks = self.records.list_tasks(workspace_id)
        stats: list[MemberContribution] = []
        for member in workspace.members:
            owned = [
                task
                for task in tasks
                if member.user_id in (task.assigned_to, task.claimed_by)
            ]
            completed = sum(1 for task in owned if task.status == "completed")
            profile = self.records.get_user(member.user_id)
            email = profile.email if profile and profile.email else ""
            stats.append(
                MemberContribution(
                    user_id=member.user_id,
                    name=(profile.display_name if profile else None) or email or "Unknown",
                    email=email,
                    role=member.role,
                    tasks_total=len(owned),
                    tasks_completed=completed,
                    tasks_in_progress=sum(1 for task in owned if task.status == "in-progress"),
                    tasks_todo=sum(1 for task in owned if task.status == "todo"),
                    completion_rate=round(completed * 100 / len(owned)) if owned else 0,
                )
            )
        stats.sort(key=lambda item: item.tasks_completed, reverse=True)

        now = self.clock()
        finished = [t.completed_at for t in tasks if t.status == "completed" and t.completed_at]
        weekly: list[WeeklyCompletion] = []
        for weeks_back in range(ANALYTICS_WEEKS - 1, -1, -1):
            end = now - timedelta(days=7 * weeks_back)
            start = end - timedelta(days=7)
            weekly.append(
                WeeklyCompletion(
                    week=f"Week {ANALYTICS_WEEKS - weeks_back}",
                    tasks=sum(1 for done_at in finished if start <= done_at < end),
                )
            )
        return WorkspaceAnalytics(
            member_stats=stats,
            weekly_data=weekly,
            total_tasks=len(tasks),
            completed_tasks=sum(1 for task in tasks if task.status == "completed"),
            in_progress_tasks=sum(1 for task in tasks if task.status == "in-progress"),
        )

    # -- projects ----------------------------------------------------------


    def create_project(
        self,
        workspace_id: str,
        user_id: str,
        payload: CreateProjectRequest,
    ) -> Project:
        self.require_member(workspace_id, user_id)
        name = payload.name.strip()
        if not name:
            raise ValidationError("Project name is required")
        now = self.clock()
        project = Project(
            project_id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            name=name,
            description=payload.description.strip(),
            priority=payload.priority,
            deadline=payload.deadline,
            created_by=user_id,
            created_at=now,
            updated_at=now,
        )
        self.records.insert_project(project)
        self.records.increment_project_count(workspace_id)
        return project

    def list_projects(self, workspace_id: str, user_id: str) -> list[Project]:
        self.require_member(workspace_id, user_id)
        return self.records.list_projects(workspace_id)

    def get_project(self, project_id: str, user_id: str) -> Project:
        project = self._require_project(project_id)
        self.require_member(project.workspace_id, user_id)
        return project

    def update_project(
        self, project_id: str, user_id: str, payload: UpdateProjectRequest
    ) -> Project:
        project = self._require_project(project_id)
        workspace = self.require_workspace(project.workspace_id)
        if not membership.is_admin(workspace, user_id):
            raise Forbidden("Only admins can update projects")
        patch = payload.model_dump(exclude_unset=True)
        if "name" in patch:
            name = (patch["name"] or "").strip()
            if not name:
                raise ValidationError("Project name is required")
            patch["name"] = name
        if "description" in patch:
            patch["description"] = (patch["description"] or "").strip()
        for field in ("priority", "status"):
            if field in patch and patch[field] is None:
                del patch[field]
        if not patch:
            return project
        if not self.records.update_project(project_id, patch):
            raise NotFound("Project not found")
        return self._require_project(project_id)

    def delete_project(self, project_id: str, user_id: str) -> None:
        """Admins only. The project's tasks are deleted with it."""
        project = self._require_project(project_id)
        workspace = self.require_workspace(project.workspace_id)
        if not membership.is_admin(workspace, user_id):
            raise Forbidden("Only admins can delete projects")
        if not self.records.delete_project(project_id):
            raise NotFound("Project not found")
        self.records.increment_project_count(project.workspace_id, -1)
        logger.info(
            "project event=deleted project_id=%s workspace_id=%s user_id=%s",
            project_id,
            project.workspace_id,
            user_id,
        )

    def _require_project(self, project_id: str) -> Project:
        project = self.records.get_project(project_id)
        if project is None:
            raise NotFound("Project not found")
        return project

    def _save(self, workspace: Workspace, patch: dict[str, Any]) -> Workspace:
        """Conditional write keyed on the updated_at this request read.

        A concurrent writer surfaces as Conflict rather than a lost update.
        """
        # Strictly later than the read, so two writes never share a version.
        stamp = max(self.clock(), workspace.updated_at + timedelta(microseconds=1))
        applied = self.records.update_workspace(
            workspace.workspace_id,
            {**patch, "updated_at": stamp},
            expected_updated_at=workspace.updated_at,
        )
        if not applied:
            if self.records.get_workspace(workspace.workspace_id) is None:
                raise NotFound("Workspace not found")
            raise Conflict("Workspace changed while the request was processed; reload and retry")
        return self.require_workspace(workspace.workspace_id)

    def _allocate_invite_code(self) -> str:

        for _ in range(self.max_code_attempts):
            code = self.code_generator()
            if self.records.find_workspace_by_invite_code(code) is None:
                return code
        raise Conflict("Could not allocate a unique invite code; try again")
