"""Least-busy assignment shared by the workflow and AI auto-assign paths."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from .models import Task


@dataclass(frozen=True)
class Assignment:
    task: Task
    member_id: str


def select_assignee(candidates: Sequence[str], open_task_counts: dict[str, int]) -> str:
    """Return the candidate with the fewest open tasks.

    Ties go to the earliest candidate in input order. Members missing from
    `open_task_counts` count as zero. `candidates` must be non-empty.
    """
    if not candidates:
        raise ValueError("select_assignee requires at least one candidate")
    selected = candidates[0]
    min_count = open_task_counts.get(selected, 0)
    for member_id in candidates[1:]:
        count = open_task_counts.get(member_id, 0)
        if count < min_count:
            min_count = count
            selected = member_id
    return selected


def open_task_counts(candidates: Iterable[str], tasks: Iterable[Task]) -> dict[str, int]:
    """Count non-completed tasks assigned to each candidate."""
    counts = {member_id: 0 for member_id in candidates}
    for task in tasks:
        if task.is_open and task.assigned_to in counts:
            counts[task.assigned_to] += 1
    return counts


def plan_batch(
    tasks: Sequence[Task],
    candidates: Sequence[str],
    counts: dict[str, int],
    *,
    cap: int,
) -> list[Assignment]:
    """Assign up to `cap` tasks, bumping the winner's count after each pick.

    `counts` is the caller's working map and is updated in place so later
    picks in the batch see earlier ones.
    """
    if not candidates:
        return []
    assignments: list[Assignment] = []
    for task in tasks[: max(cap, 0)]:
        member_id = select_assignee(candidates, counts)
        assignments.append(Assignment(task=task, member_id=member_id))
        counts[member_id] = counts.get(member_id, 0) + 1
    return assignments
