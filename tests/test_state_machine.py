from __future__ import annotations

import pytest
from support import Clock, Seed

from taskflow_api.app.errors import (
    Conflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from taskflow_api.app.state_machine import RELEASE_CLEARED_FIELDS, TaskStateMachine
from taskflow_api.app.storage import StoreHandle


@pytest.fixture
def machine(stores: StoreHandle, clock: Clock) -> TaskStateMachine:
    return TaskStateMachine(stores.records, clock=clock)


@pytest.fixture
def board(seed: Seed) -> dict:
    workspace = seed.workspace(owner="owner", admins=("admin",), members=("alice", "bob"))
    project = seed.project(workspace)
    task = seed.task(project)
    return {"workspace": workspace, "project": project, "task": task}


def test_claim_complete_reject_approve_scenario(
    machine: TaskStateMachine, clock: Clock, board: dict
) -> None:
    task_id = board["task"].task_id

    t1 = clock.tick()
    claimed = machine.claim(task_id, "alice")
    assert claimed.status == "in-progress"
    assert claimed.claimed_by == "alice"
    assert claimed.claimed_at == t1

    with pytest.raises(Forbidden):
        machine.mark_complete(task_id, "bob")

    t2 = clock.tick()
    pending = machine.mark_complete(task_id, "alice")
    assert pending.status == "pending-verification"
    assert pending.pending_verification_at == t2

    rejected = machine.verify(task_id, "admin", approved=False)
    assert rejected.status == "in-progress"
    assert rejected.pending_verification_at is None
    assert rejected.claimed_by == "alice"

    machine.mark_complete(task_id, "alice")
    t3 = clock.tick()
    approved = machine.verify(task_id, "admin", approved=True)
    assert approved.status == "completed"
    assert approved.completed_at == t3
    assert approved.verified_by == "admin"
    assert approved.verified_at == t3


def test_admin_cannot_mark_complete_someone_elses_claim(
    machine: TaskStateMachine, board: dict
) -> None:
    task_id = board["task"].task_id
    machine.claim(task_id, "alice")
    for user_id in ("admin", "owner"):
        with pytest.raises(Forbidden):
            machine.mark_complete(task_id, user_id)


def test_non_member_cannot_claim(machine: TaskStateMachine, board: dict) -> None:
    with pytest.raises(Forbidden):
        machine.claim(board["task"].task_id, "stranger")


def test_only_admins_verify(machine: TaskStateMachine, board: dict) -> None:
    task_id = board["task"].task_id
    machine.claim(task_id, "alice")
    machine.mark_complete(task_id, "alice")
    with pytest.raises(Forbidden):
        machine.verify(task_id, "alice", approved=True)
    with pytest.raises(Forbidden):
        machine.verify(task_id, "bob", approved=False)


def test_missing_task_is_not_found(machine: TaskStateMachine, board: dict) -> None:
    with pytest.raises(NotFound):
        machine.claim("missing", "alice")
    with pytest.raises(NotFound):
        machine.change_status("missing", "alice", "in-progress")


def test_transitions_outside_table_are_rejected(machine: TaskStateMachine, board: dict) -> None:
    task_id = board["task"].task_id
    with pytest.raises(InvalidTransition):
        machine.change_status(task_id, "owner", "completed")
    with pytest.raises(InvalidTransition):
        machine.mark_complete(task_id, "alice")
    with pytest.raises(ValidationError):
        machine.release(task_id, "owner")


def test_change_status_to_current_status_is_noop(machine: TaskStateMachine, board: dict) -> None:
    task = machine.change_status(board["task"].task_id, "alice", "todo")
    assert task.status == "todo"
    assert task.claimed_by is None


def test_change_status_routes_to_transitions(machine: TaskStateMachine, board: dict) -> None:
    task_id = board["task"].task_id
    assert machine.change_status(task_id, "alice", "in-progress").claimed_by == "alice"
    assert machine.change_status(task_id, "alice", "pending-verification").status == (
        "pending-verification"
    )
    assert machine.change_status(task_id, "admin", "in-progress").status == "in-progress"
    machine.change_status(task_id, "alice", "pending-verification")
    done = machine.change_status(task_id, "owner", "completed")
    assert done.verified_by == "owner"
    assert done.completed_at is not None


@pytest.mark.parametrize("stage", ["in-progress", "pending-verification", "completed"])
def test_release_clears_claim_fields_together(
    machine: TaskStateMachine, board: dict, stage: str
) -> None:
    task_id = board["task"].task_id
    machine.claim(task_id, "alice")
    if stage in ("pending-verification", "completed"):
        machine.mark_complete(task_id, "alice")
    if stage == "completed":
        machine.verify(task_id, "admin", approved=True)

    released = machine.release(task_id, "admin")
    assert released.status == "todo"
    for field in RELEASE_CLEARED_FIELDS:
        assert getattr(released, field) is None


def test_claimant_releases_own_work_but_not_others(machine: TaskStateMachine, board: dict) -> None:
    task_id = board["task"].task_id
    machine.claim(task_id, "alice")
    with pytest.raises(Forbidden):
        machine.release(task_id, "bob")
    assert machine.release(task_id, "alice").status == "todo"


def test_reopening_completed_task_requires_admin(machine: TaskStateMachine, board: dict) -> None:
    task_id = board["task"].task_id
    machine.claim(task_id, "alice")
    machine.mark_complete(task_id, "alice")
    machine.verify(task_id, "owner", approved=True)
    with pytest.raises(Forbidden):
        machine.release(task_id, "alice")


def test_field_edits_on_claimed_task(machine: TaskStateMachine, board: dict) -> None:
    task_id = board["task"].task_id
    machine.claim(task_id, "alice")

    with pytest.raises(Forbidden):
        machine.update_fields(task_id, "bob", {"title": "Hijack"})

    edited = machine.update_fields(
        task_id, "alice", {"title": "  Better docs  ", "priority": "high"}
    )
    assert edited.title == "Better docs"
    assert edited.priority == "high"
    assert edited.status == "in-progress"
    assert edited.claimed_by == "alice"

    by_admin = machine.update_fields(task_id, "admin", {"description": "Scope it down"})
    assert by_admin.description == "Scope it down"
    assert by_admin.claimed_by == "alice"


def test_field_edits_reject_status_and_blank_title(machine: TaskStateMachine, board: dict) -> None:
    task_id = board["task"].task_id
    with pytest.raises(ValidationError):
        machine.update_fields(task_id, "alice", {"status": "completed"})
    with pytest.raises(ValidationError):
        machine.update_fields(task_id, "alice", {"title": "   "})
    with pytest.raises(Forbidden):
        machine.update_fields(task_id, "stranger", {"title": "x"})


def test_concurrent_move_surfaces_as_conflict(
    machine: TaskStateMachine, stores: StoreHandle, board: dict
) -> None:
    task_id = board["task"].task_id
    stale = stores.records.get_task(task_id)
    machine.claim(task_id, "alice")

    # Replay a write computed from the stale read.
    with pytest.raises(Conflict):
        machine._write(
            stale,
            {"status": "in-progress", "claimed_by": "bob"},
            transition="claim",
            user_id="bob",
        )
    assert stores.records.get_task(task_id).claimed_by == "alice"


def test_status_change_with_field_edits_checks_before_writing(
    machine: TaskStateMachine, stores: StoreHandle, board: dict
) -> None:
    task_id = board["task"].task_id
    machine.claim(task_id, "alice")

    with pytest.raises(Forbidden):
        machine.change_status(
            task_id, "admin", "pending-verification", changes={"title": "Renamed"}
        )
    with pytest.raises(InvalidTransition):
        machine.change_status(task_id, "alice", "completed", changes={"priority": "high"})
    stored = stores.records.get_task(task_id)
    assert stored.title == board["task"].title
    assert stored.priority == board["task"].priority

    moved = machine.change_status(
        task_id, "alice", "pending-verification", changes={"priority": "high"}
    )
    assert moved.status == "pending-verification"
    assert moved.priority == "high"


def test_claim_is_not_a_shortcut_for_reject(machine: TaskStateMachine, board: dict) -> None:
    task_id = board["task"].task_id
    machine.claim(task_id, "alice")
    machine.mark_complete(task_id, "alice")
    with pytest.raises(InvalidTransition):
        machine.claim(task_id, "bob")
