"""
Transactional email: template rendering plus SMTP delivery.

Every public send path swallows and logs its own failures; callers never see an
exception from here.
"""
import smtplib
from concurrent.futures import ThreadPoolExecutor
from email.message import EmailMessage
from functools import lru_cache
from typing import Any, Callable, Dict, Tuple

import structlog

from ..config import settings


log = structlog.get_logger(__name__)

Payload = Dict[str, Any]


def request_url(payload: Payload) -> str:
    user_type = payload.get("user_type")
    prefix = f"/{user_type}" if user_type else ""
    return f"{settings.public_base_url}{prefix}/requests/{payload.get('request_id')}"


def _request_header(p: Payload) -> str:
    return (
        f"Request ID: {p.get('service_queue_id')}\n"
        f"Client: {p.get('client_name')}\n"
        f"Request: {p.get('request_title')}\n"
    )


def _new_request(p: Payload) -> Tuple[str, str]:
    subject = f"New Service Request - {p['service_queue_id']}"
    body = (
        "A new service request has been submitted.\n\n"
        + _request_header(p)
        + f"Category: {p.get('category')}\n"
        f"Submitted by: {p.get('assigned_by')}\n"
        f"Priority: {p.get('priority', 'normal')}\n\n"
        f"View request: {request_url(p)}\n"
    )
    return subject, body


def _status_update(p: Payload) -> Tuple[str, str]:
    subject = f"Status Update - {p['service_queue_id']}"
    body = (
        "Service request status updated.\n\n"
        + _request_header(p)
        + f"Status changed from: {p.get('old_status')} to {p.get('new_status')}\n"
        f"Updated by: {p.get('updated_by')}\n\n"
        f"View request: {request_url(p)}\n"
    )
    return subject, body


def _request_assigned(p: Payload) -> Tuple[str, str]:
    subject = f"New Assignment - {p['service_queue_id']}"
    body = (
        "A service request has been assigned to you.\n\n"
        + _request_header(p)
        + f"Assigned by: {p.get('assigned_by')}\n"
    )
    if p.get("due_date"):
        body += f"Due date: {p['due_date']}\n"
    body += f"\nView request: {request_url(p)}\n"
    return subject, body


def _note_added(p: Payload) -> Tuple[str, str]:
    subject = f"New Note Added - {p['service_queue_id']}"
    body = (
        "A new note was added to a service request.\n\n"
        + _request_header(p)
        + f"Note by: {p.get('author_name')}\n\n"
        f"{p.get('note_content')}\n\n"
        f"View request: {request_url(p)}\n"
    )
    return subject, body


def _assignment_change_request(p: Payload) -> Tuple[str, str]:
    subject = f"Assignment Change Request - {p['service_queue_id']}"
    body = (
        "Dear Agent Manager,\n\n"
        "A new assignment change request has been submitted and requires your review.\n\n"
        + _request_header(p)
        + f"Requested by: {p.get('requested_by')}\n"
        f"Current assignee: {p.get('current_assignee') or 'Unassigned'}\n"
        f"Requested assignee: {p.get('requested_assignee') or 'Unassign'}\n"
        f"Reason: {p.get('reason')}\n\n"
        f"Review request: {request_url(p)}\n"
    )
    return subject, body


def _assignment_change_reviewed(p: Payload) -> Tuple[str, str]:
    action_text = "Approved" if p.get("action") == "approved" else "Rejected"
    subject = f"Assignment Change {action_text} - {p['service_queue_id']}"
    body = (
        f"Your assignment change request has been reviewed and {p.get('action')} by {p.get('reviewed_by')}.\n\n"
        + _request_header(p)
    )
    if p.get("new_assignee"):
        body += f"New assignee: {p['new_assignee']}\n"
    if p.get("comment"):
        body += f"Comment: {p['comment']}\n"
    body += f"\nView request: {request_url(p)}\n"
    return subject, body


def urgency_label(days_until_due: int) -> str:
    if days_until_due <= 0:
        return "OVERDUE"
    if days_until_due == 1:
        return "DUE TOMORROW"
    return f"DUE IN {days_until_due} DAYS"


def _due_date_reminder(p: Payload) -> Tuple[str, str]:
    urgency = urgency_label(int(p.get("days_until_due", 0)))
    subject = f"{urgency} - {p['service_queue_id']}"
    body = (
        "Service request due date reminder.\n\n"
        + _request_header(p)
        + f"Assigned to: {p.get('assigned_to')}\n"
        f"Due date: {p.get('due_date')}\n"
        f"Status: {urgency}\n\n"
        f"View request: {request_url(p)}\n"
    )
    return subject, body


TEMPLATES: Dict[str, Callable[[Payload], Tuple[str, str]]] = {
    "new_request": _new_request,
    "status_update": _status_update,
    "request_assigned": _request_assigned,
    "note_added": _note_added,
    "assignment_change_request": _assignment_change_request,
    "assignment_change_reviewed": _assignment_change_reviewed,
    "due_date_reminder": _due_date_reminder,
}


def render(template: str, payload: Payload) -> Tuple[str, str]:
    try:
        renderer = TEMPLATES[template]
    except KeyError:
        raise ValueError(f"Unknown email template: {template}")
    return renderer(payload)


class Mailer:
    def send(self, template: str, to: str, payload: Payload) -> None:
        raise NotImplementedError


class SmtpMailer(Mailer):
    def _deliver(self, to: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = settings.mail_from
        msg["To"] = to
        msg.set_content(body)
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as s:
            if settings.smtp_tls:
                s.starttls()
            if settings.smtp_username and settings.smtp_password:
                s.login(settings.smtp_username, settings.smtp_password)
            s.send_message(msg)

    def send(self, template: str, to: str, payload: Payload) -> None:
        if not (settings.enable_email and settings.smtp_host and settings.mail_from):
            log.info("email_skipped", template=template, to=to, reason="smtp_not_configured")
            return
        try:
            subject, body = render(template, payload)
            self._deliver(to, subject, body)
            log.info("email_sent", template=template, to=to)
        except Exception as e:
            log.warning("email_send_failed", template=template, to=to, error=str(e))


class BackgroundMailer(Mailer):
    """Hands sends to a small thread pool so SMTP latency never reaches the caller."""

    def __init__(self, inner: Mailer, workers: int = 4):
        self._inner = inner
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mailer")

    def send(self, template: str, to: str, payload: Payload) -> None:
        future = self._pool.submit(self._inner.send, template, to, dict(payload))
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future) -> None:
        exc = future.exception()
        if exc is not None:
            log.warning("email_background_failed", error=str(exc))

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


@lru_cache(maxsize=1)
def get_mailer() -> Mailer:
    smtp = SmtpMailer()
    if settings.email_dispatch == "background":
        return BackgroundMailer(smtp, workers=settings.email_workers)
    return smtp
