"""Outbound collaborators: reminder email and webhook HTTP calls.

Both are fire-and-forget: one attempt, the outcome is reported to the caller,
nothing is retried or queued.
"""

from __future__ import annotations

import json
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Any, Protocol
from urllib import error, request

from pydantic import BaseModel

from .errors import Unavailable
from .settings import Settings

logger = logging.getLogger(__name__)


class ReminderEmail(BaseModel):
    to: str
    assignee_name: str
    task_title: str
    task_description: str = ""
    due_date: datetime | None = None
    workspace_name: str
    task_url: str | None = None


class EmailSender(Protocol):
    def send_reminder(self, email: ReminderEmail) -> bool: ...


@dataclass(frozen=True)
class HttpResponse:
    ok: bool
    status: int
    reason: str = ""


class HttpClient(Protocol):
    def call(
        self,
        url: str,
        method: str,
        body: dict[str, Any],
        *,
        timeout_s: float,
    ) -> HttpResponse: ...


def render_reminder_text(email: ReminderEmail) -> str:
    due = email.due_date.strftime("%A, %B %d, %Y") if email.due_date else "no due date"
    lines = [
        f"Hi {email.assignee_name},",
        "",
        "This is a reminder about your task.",
        "",
        f"Task: {email.task_title}",
    ]
    if email.task_description:
        lines.append(f"Details: {email.task_description}")
    lines.extend([f"Due: {due}", f"Workspace: {email.workspace_name}"])
    if email.task_url:
        lines.extend(["", f"Open the task: {email.task_url}"])
    return "\n".join(lines)


class SmtpEmailSender:
    """Send reminders through an SMTP relay."""

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str,
        use_tls: bool = True,
        timeout_s: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout_s = timeout_s

    def send_reminder(self, email: ReminderEmail) -> bool:
        message = EmailMessage()
        message["Subject"] = f"Reminder: {email.task_title}"
        message["From"] = self.sender
        message["To"] = email.to
        message.set_content(render_reminder_text(email))
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout_s) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("email event=send_failed to=%s reason=%s", email.to, exc)
            return False
        logger.info("email event=sent to=%s subject=%r", email.to, message["Subject"])
        return True


class DisabledEmailSender:
    """Used when no SMTP host is configured; every send reports failure."""

    def send_reminder(self, email: ReminderEmail) -> bool:
        logger.warning("email event=skipped to=%s reason=smtp_not_configured", email.to)
        return False


class UrllibHttpClient:
    """JSON webhook caller on top of urllib."""

    def call(
        self,
        url: str,
        method: str,
        body: dict[str, Any],
        *,
        timeout_s: float,
    ) -> HttpResponse:
        method = method.upper()
        # GET requests carry no body; urllib would otherwise send one anyway.
        data = None if method == "GET" else json.dumps(body).encode("utf-8")
        req = request.Request(
            url=url,
            data=data,
            method=method,
            headers={"Content-Type": "application/json"},
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                status = int(response.status)
                return HttpResponse(ok=200 <= status < 300, status=status, reason=response.reason)
        except error.HTTPError as exc:
            return HttpResponse(ok=False, status=exc.code, reason=str(exc.reason))
        except (error.URLError, TimeoutError) as exc:
            reason = getattr(exc, "reason", exc)
            raise Unavailable(f"Webhook request failed: {reason}") from exc


def build_email_sender(settings: Settings) -> EmailSender:
    if not settings.smtp_host:
        return DisabledEmailSender()
    return SmtpEmailSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        sender=settings.smtp_sender,
        use_tls=settings.smtp_use_tls,
        timeout_s=settings.smtp_timeout_s,
    )
