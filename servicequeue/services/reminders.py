from datetime import datetime, time, timezone
from typing import Optional

import pytz
import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import ServiceRequest, TaskStatus
from .notifications import NotificationService


log = structlog.get_logger(__name__)


def due_moment(request: ServiceRequest, tz_name: str) -> datetime:
    """Due date plus due time (end of day when no time) in local time, as naive UTC."""
    tz = pytz.timezone(tz_name)
    if request.due_time:
        hh, mm = (int(part) for part in request.due_time.split(":"))
        at = time(hh, mm)
    else:
        at = time(23, 59)
    local = tz.localize(datetime.combine(request.due_date.date(), at))
    return local.astimezone(pytz.utc).replace(tzinfo=None)


def send_due_date_reminders(
    db: Session,
    notifier: NotificationService,
    now: Optional[datetime] = None,
    window_days: Optional[int] = None,
    tz_name: Optional[str] = None,
) -> int:
    """Remind on every open request that is overdue or due within the window. Returns how many."""
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    window_days = settings.due_soon_days if window_days is None else window_days
    tz_name = tz_name or settings.tz_default
    today = pytz.utc.localize(now).astimezone(pytz.timezone(tz_name)).date()

    candidates = (
        db.query(ServiceRequest)
        .filter(ServiceRequest.task_status != TaskStatus.CLOSED, ServiceRequest.due_date.isnot(None))
        .order_by(ServiceRequest.due_date.asc())
        .all()
    )
    reminded = 0
    for request in candidates:
        days_until_due = (request.due_date.date() - today).days
        is_overdue = due_moment(request, tz_name) < now
        if not is_overdue and days_until_due > window_days:
            continue
        notifier.notify_due_date_reminder(request, days_until_due, is_overdue)
        reminded += 1
    log.info("due_date_reminders_sent", reminded=reminded, scanned=len(candidates))
    return reminded
