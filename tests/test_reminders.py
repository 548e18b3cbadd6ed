from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from support import T0, FakeEmailSender, Seed

from taskflow_api.app.reminders import ReminderService
from taskflow_api.app.settings import Settings
from taskflow_api.app.storage import StoreHandle
from taskflow_api.main import create_app

DUE = datetime(2026, 3, 9, 15, 30, tzinfo=UTC)


@pytest.fixture
def service(stores: StoreHandle, email_sender: FakeEmailSender) -> ReminderService:
    return ReminderService(
        stores.records,
        email_sender,
        lead_days=7,
        app_base_url="https://app.example.com/",
    )


def test_due_window_is_whole_day_ahead(service: ReminderService) -> None:
    start, end = service.due_window(T0)
    assert start == datetime(2026, 3, 9, tzinfo=UTC)
    assert end == datetime(2026, 3, 10, tzinfo=UTC)


def test_sends_one_reminder_per_due_assigned_task(
    service: ReminderService, email_sender: FakeEmailSender, seed: Seed
) -> None:
    workspace = seed.workspace(owner="ann", members=("ben",))
    seed.user("ann", name="Ann")
    seed.user("ben", name="")
    project = seed.project(workspace)
    seed.task(project, title="Due soon", assigned_to="ann", due_date=DUE)
    seed.task(project, title="Also due", assigned_to="ben", due_date=DUE)
    seed.task(project, title="Done", assigned_to="ann", due_date=DUE, status="completed")
    seed.task(project, title="Unassigned", due_date=DUE)
    seed.task(project, title="Too late", assigned_to="ann", due_date=DUE + timedelta(days=1))

    report = service.send_due_reminders(T0)

    assert report.sent == 2
    assert report.failed == 0
    assert report.total_tasks == 2
    by_title = {email.task_title: email for email in email_sender.sent}
    assert by_title["Due soon"].to == "ann@example.com"
    assert by_title["Due soon"].assignee_name == "Ann"
    assert by_title["Due soon"].workspace_name == "Acme"
    assert by_title["Due soon"].task_url == (
        f"https://app.example.com/workplace/{workspace.workspace_id}"
    )
    assert by_title["Also due"].assignee_name == "ben"


def test_failed_and_skipped_reminders(
    service: ReminderService, email_sender: FakeEmailSender, seed: Seed
) -> None:
    workspace = seed.workspace(owner="ann", members=("ben", "cat"))
    seed.user("ann")
    seed.user("ben", email="")
    project = seed.project(workspace)
    seed.task(project, assigned_to="ann", due_date=DUE)
    seed.task(project, assigned_to="ben", due_date=DUE)
    seed.task(project, assigned_to="cat", due_date=DUE)
    email_sender.fail_for.add("ann@example.com")

    report = service.send_due_reminders(T0)

    assert report.sent == 0
    assert report.failed == 1
    assert report.total_tasks == 3


def test_without_base_url_the_link_is_omitted(
    stores: StoreHandle, email_sender: FakeEmailSender, seed: Seed
) -> None:
    workspace = seed.workspace()
    seed.user("owner")
    seed.task(seed.project(workspace), assigned_to="owner", due_date=DUE)

    ReminderService(stores.records, email_sender).send_due_reminders(T0)

    assert email_sender.sent[0].task_url is None


def _cron_client(
    stores: StoreHandle, email_sender: FakeEmailSender, cron_secret: str
) -> TestClient:
    settings = Settings(_env_file=None, database_url="", cron_secret=cron_secret)
    return TestClient(
        create_app(stores=stores, settings_override=settings, email_sender=email_sender)
    )


def test_cron_route_requires_bearer_secret(
    stores: StoreHandle, email_sender: FakeEmailSender, seed: Seed
) -> None:
    workspace = seed.workspace()
    seed.user("owner")
    today = datetime.now(tz=UTC).replace(hour=12, minute=0, second=0, microsecond=0)
    seed.task(seed.project(workspace), assigned_to="owner", due_date=today + timedelta(days=7))

    with _cron_client(stores, email_sender, "s3cret") as client:
        assert client.get("/cron/task-reminders").status_code == 401
        wrong = client.get("/cron/task-reminders", headers={"Authorization": "Bearer nope"})
        assert wrong.status_code == 401

        response = client.post(
            "/cron/task-reminders", headers={"Authorization": "Bearer s3cret"}
        )

    assert response.status_code == 200
    assert response.json() == {"sent": 1, "failed": 0, "total_tasks": 1}


def test_cron_route_is_open_without_secret(client: TestClient) -> None:
    response = client.get("/cron/task-reminders")
    assert response.status_code == 200
    assert response.json()["total_tasks"] == 0
