"""Daily due-date reminders for assigned, open tasks."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from .models import ReminderReport, Workspace
from .notifications import EmailSender, ReminderEmail
from .storage import RecordStore

logger = logging.getLogger(__name__)


class ReminderService:
    def __init__(
        self,
        records: RecordStore,
        email_sender: EmailSender,
        *,
        lead_days: int = 7,
        app_base_url: str = "",
    ) -> None:
        self.records = records
        self.email_sender = email_sender
        self.lead_days = lead_days
        self.app_base_url = app_base_url.rstrip("/")

    def due_window(self, now: datetime) -> tuple[datetime, datetime]:
        """The whole calendar day `lead_days` after `now`, in now's timezone."""
        start = (now + timedelta(days=self.lead_days)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        return start, start + timedelta(days=1)

    def send_due_reminders(self, now: datetime) -> ReminderReport:
        """Send one reminder per open, assigned task due in the window.

        Tasks whose assignee has no email on file, or whose workspace is gone,
        are skipped and counted in neither `sent` nor `failed`.
        """
        start, end = self.due_window(now)
        tasks = self.records.list_open_assigned_tasks_due(start, end)
        sent = failed = 0
        workspaces: dict[str, Workspace | None] = {}
        for task in tasks:
            user = self.records.get_user(task.assigned_to or "")
            if task.workspace_id not in workspaces:
                workspaces[task.workspace_id] = self.records.get_workspace(task.workspace_id)
            workspace = workspaces[task.workspace_id]
            if user is None or not user.email or workspace is None:
                logger.info("reminder event=skipped task_id=%s", task.task_id)
                continue
            delivered = self.email_sender.send_reminder(
                ReminderEmail(
                    to=user.email,
                    assignee_name=user.display_name or user.email.split("@")[0],
                    task_title=task.title,
                    task_description=task.description,
                    due_date=task.due_date,
                    workspace_name=workspace.name,
                    task_url=(
                        f"{self.app_base_url}/workplace/{task.workspace_id}"
                        if self.app_base_url
                        else None
                    ),
                )
            )
            if delivered:
                sent += 1
            else:
                failed += 1
        logger.info(
            "reminder event=batch window_start=%s sent=%d failed=%d total_tasks=%d",
            start.isoformat(),
            sent,
            failed,
            len(tasks),
        )
        return ReminderReport(sent=sent, failed=failed, total_tasks=len(tasks))
