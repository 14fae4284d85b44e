from fastapi import Depends, Request, UploadFile
from sqlalchemy.orm import Session

from ..db import get_db
from ..services.email import Mailer, get_mailer
from ..services.notifications import NotificationService
from ..storage.provider import IncomingFile


def get_notifier(db: Session = Depends(get_db), mailer: Mailer = Depends(get_mailer)) -> NotificationService:
    return NotificationService(db, mailer)


def to_incoming(files: list[UploadFile] | None) -> list[IncomingFile]:
    out = []
    for f in files or []:
        if not f.filename:
            continue
        out.append(IncomingFile(file_name=f.filename, content=f.file.read(), content_type=f.content_type))
    return out


async def sent_form_fields(request: Request) -> frozenset:
    """Names of the form fields the client actually sent, blank ones included."""
    form = await request.form()
    return frozenset(form.keys())


def blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value
