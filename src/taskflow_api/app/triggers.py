"""Decide whether a workflow's trigger fires for an incoming event."""

from __future__ import annotations

from collections.abc import Iterable

from .models import Workflow

# Closed set: event type -> (trigger type, trigger.config.task_status).
# New event kinds need a new entry here; there is no generic fallback rule.
# Schedule and team-event triggers have no event path (they need an external
# timer / membership hook), so no event ever matches them.
EVENT_TRIGGERS: dict[str, tuple[str, str]] = {
    "task-created": ("task-event", "created"),
    "task-completed": ("task-event", "completed"),
    "task-overdue": ("task-event", "overdue"),
}


def matches(workflow: Workflow, event_type: str) -> bool:
    expected = EVENT_TRIGGERS.get(event_type)
    if expected is None:
        return False
    trigger_type, task_status = expected
    return (
        workflow.trigger.type == trigger_type
        and workflow.trigger.config.task_status == task_status
    )


def matching_workflows(workflows: Iterable[Workflow], event_type: str) -> list[Workflow]:
    """Active workflows whose trigger fires for `event_type`, input order kept."""
    return [
        workflow for workflow in workflows if workflow.is_active and matches(workflow, event_type)
    ]
