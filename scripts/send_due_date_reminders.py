#!/usr/bin/env python3
"""
Send in-app and email reminders for open requests that are overdue or due soon.
Run from project root: python scripts/send_due_date_reminders.py [--days N]
Meant for cron; emails are sent inline so the process can exit cleanly.
"""
import argparse
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from servicequeue.config import settings
from servicequeue.db import SessionLocal
from servicequeue.logging import setup_logging
from servicequeue.services.email import SmtpMailer
from servicequeue.services.notifications import NotificationService
from servicequeue.services.reminders import send_due_date_reminders


def main():
    parser = argparse.ArgumentParser(description="Send due date reminders")
    parser.add_argument("--days", type=int, default=settings.due_soon_days, help="Remind when due within N days")
    parser.add_argument("--tz", default=settings.tz_default, help="Timezone used to decide what 'today' is")
    args = parser.parse_args()

    setup_logging()
    db = SessionLocal()
    try:
        count = send_due_date_reminders(db, NotificationService(db, SmtpMailer()), window_days=args.days, tz_name=args.tz)
    finally:
        db.close()
    print(f"Reminded on {count} request(s).")


if __name__ == "__main__":
    main()
