"""Workspace membership and role lookup used by every permission check."""

from __future__ import annotations

from .models import MemberRole, Workspace, WorkspaceMember

ADMIN_ROLES: frozenset[str] = frozenset({"owner", "admin"})


def find_member(workspace: Workspace, user_id: str) -> WorkspaceMember | None:
    for member in workspace.members:
        if member.user_id == user_id:
            return member
    return None


def role_of(workspace: Workspace, user_id: str) -> MemberRole | None:
    """Return the user's role in the workspace, or None for non-members.

    The workspace owner id always resolves to "owner", even if the members
    list was written without the owner entry.
    """
    if workspace.owner_id == user_id:
        return "owner"
    member = find_member(workspace, user_id)
    return member.role if member else None


def is_member(workspace: Workspace, user_id: str) -> bool:
    return role_of(workspace, user_id) is not None


def is_admin(workspace: Workspace, user_id: str) -> bool:
    return role_of(workspace, user_id) in ADMIN_ROLES
