import time
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from datetime import datetime
from typing import Iterable, List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth.security import ActorContext
from ..config import settings
from ..models.models import (
    RequestAttachment,
    RequestNote,
    ServiceRequest,
    TaskStatus,
    User,
    UserRole,
    utcnow,
)
from ..schemas.requests import ServiceRequestCreate, ServiceRequestUpdate
from ..storage.provider import IncomingFile, StorageProvider
from .audit import compute_diff, to_jsonable
from .errors import ConflictError, NotFoundError, PreconditionError, ValidationError
from .notifications import NotificationService


log = structlog.get_logger(__name__)

# Only managers may touch these; anyone else's values are dropped
MANAGER_ONLY_FIELDS = ("assigned_to_id", "due_date", "due_time", "closed_at")

TRACKED_FIELDS = (
    "insured",
    "service_request_narrative",
    "service_queue_category",
    "assigned_by_id",
    "assigned_to_id",
    "task_status",
    "due_date",
    "due_time",
    "closed_at",
    "time_spent",
)

MSG_CLOSE_NEEDS_NOTE = "Cannot close task without adding at least one note documenting the work completed"
MSG_CLOSE_NEEDS_START = (
    'Cannot close task that has not been started. Please mark the task as "in progress" first to begin work.'
)
MSG_CLOSE_NEEDS_ASSIGNEE = (
    "Cannot close task without assigning it to someone first. Please assign the task to an agent before closing."
)
MSG_CLOSED_KEEPS_ASSIGNEE = "Cannot remove the assignee from a closed task. Reopen the task first."

# Roles that see every company's requests; the rest are limited to their own company
_SEES_ALL_COMPANIES = {
    UserRole.CUSTOMER: False,
    UserRole.CUSTOMER_ADMIN: False,
    UserRole.AGENT: True,
    UserRole.AGENT_MANAGER: True,
    UserRole.SUPER_ADMIN: True,
}

_upload_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="upload")


def generate_service_queue_id() -> str:
    return f"ServQUE-{int(time.time() * 1000)}"


def _snapshot(request: ServiceRequest) -> dict:
    return {name: to_jsonable(getattr(request, name)) for name in TRACKED_FIELDS}


def _get_user(db: Session, user_id: Optional[uuid.UUID]) -> Optional[User]:
    if not user_id:
        return None
    return db.query(User).filter(User.id == user_id).first()


def _company_of_assigner(db: Session, assigned_by_id: uuid.UUID) -> uuid.UUID:
    assigned_by = _get_user(db, assigned_by_id)
    if not assigned_by:
        raise ValidationError("Assigned by user not found", field="assigned_by_id")
    if not assigned_by.company_id:
        if UserRole(assigned_by.role) in (UserRole.SUPER_ADMIN, UserRole.AGENT):
            raise ValidationError(
                "Super admin and agent users must select a customer with a company to assign requests",
                field="assigned_by_id",
            )
        raise ValidationError("User must be associated with a company", field="assigned_by_id")
    return assigned_by.company_id


def _check_assignee(db: Session, assigned_to_id: Optional[uuid.UUID]) -> None:
    if assigned_to_id and not _get_user(db, assigned_to_id):
        raise ValidationError("Assigned to user not found", field="assigned_to_id")


def _check_can_close(db: Session, request: ServiceRequest, assigned_to_id: Optional[uuid.UUID]) -> None:
    """Closure preconditions, in order: a note, a start, an assignee."""
    note_count = db.query(func.count(RequestNote.id)).filter(RequestNote.request_id == request.id).scalar()
    if not note_count:
        raise PreconditionError(MSG_CLOSE_NEEDS_NOTE, field="task_status")
    if request.in_progress_at is None:
        raise PreconditionError(MSG_CLOSE_NEEDS_START, field="task_status")
    if assigned_to_id is None:
        raise PreconditionError(MSG_CLOSE_NEEDS_ASSIGNEE, field="assigned_to_id")


def store_attachments(
    db: Session,
    request: ServiceRequest,
    files: Iterable[IncomingFile],
    actor: ActorContext,
    storage: StorageProvider,
    notifier: NotificationService,
) -> List[RequestAttachment]:
    """Upload each file with a bounded wait. A failed or slow file is logged and skipped."""
    stored = []
    timeout = settings.blob_upload_timeout_s
    for f in files:
        if not f or f.size == 0:
            continue
        future = _upload_pool.submit(storage.upload, request.id, f, actor.user_id)
        try:
            result = future.result(timeout=timeout)
        except FuturesTimeout:
            # The worker keeps running; its result is discarded
            log.warning(
                "attachment_upload_failed",
                request_id=str(request.id),
                file_name=f.file_name,
                error=f"Upload timeout after {timeout:g} seconds",
            )
            continue
        except Exception as e:
            log.warning("attachment_upload_failed", request_id=str(request.id), file_name=f.file_name, error=str(e))
            continue

        try:
            attachment = RequestAttachment(
                request_id=request.id,
                file_name=f.file_name,
                file_path=result.url,
                file_size=result.file_size,
                mime_type=result.mime_type,
                uploaded_by_id=actor.user_id,
            )
            db.add(attachment)
            db.commit()
        except Exception as e:
            db.rollback()
            log.warning("attachment_record_failed", request_id=str(request.id), file_name=f.file_name, error=str(e))
            continue

        stored.append(attachment)
        notifier.notify_attachment_uploaded(request, attachment)
    return stored


def create_request(
    db: Session,
    data: ServiceRequestCreate,
    actor: ActorContext,
    files: Iterable[IncomingFile] = (),
    *,
    storage: StorageProvider,
    notifier: NotificationService,
) -> ServiceRequest:
    assigned_by_id, assigned_to_id = data.assigned_by_id, data.assigned_to_id
    if not _SEES_ALL_COMPANIES[actor.role]:
        # Customers always raise requests for themselves and leave assignment to the agency
        if assigned_by_id != actor.user_id or assigned_to_id is not None:
            log.info(
                "customer_assignment_ignored",
                user_id=str(actor.user_id),
                assigned_by_id=str(assigned_by_id),
                assigned_to_id=str(assigned_to_id) if assigned_to_id else None,
            )
        assigned_by_id, assigned_to_id = actor.user_id, None

    company_id = _company_of_assigner(db, assigned_by_id)
    _check_assignee(db, assigned_to_id)

    request = ServiceRequest(
        service_queue_id=generate_service_queue_id(),
        insured=data.insured,
        service_request_narrative=data.service_request_narrative,
        service_queue_category=data.service_queue_category,
        company_id=company_id,
        assigned_by_id=assigned_by_id,
        assigned_to_id=assigned_to_id,
        due_date=data.due_date,
        due_time=data.due_time,
        task_status=TaskStatus.NEW,
        modified_by_id=actor.user_id,
    )
    db.add(request)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        log.warning("service_request_conflict", service_queue_id=request.service_queue_id, error=str(e.orig))
        raise ConflictError("A service request with this ID already exists", field="service_queue_id")
    db.refresh(request)
    log.info("service_request_created", request_id=str(request.id), service_queue_id=request.service_queue_id)

    store_attachments(db, request, files, actor, storage, notifier)

    notifier.notify_request_created(request, actor.user_id)
    if request.assigned_to_id:
        notifier.notify_request_assigned(request, actor.user_id, request.assigned_to_id)
    return request


def update_request(
    db: Session,
    request_id: uuid.UUID,
    data: ServiceRequestUpdate,
    actor: ActorContext,
    files: Iterable[IncomingFile] = (),
    *,
    storage: StorageProvider,
    notifier: NotificationService,
) -> tuple[ServiceRequest, List[RequestAttachment]]:
    request = get_request(db, request_id, actor)

    fields = data.model_dump(exclude_unset=True)
    if not actor.is_manager:
        dropped = [name for name in MANAGER_ONLY_FIELDS if name in fields]
        for name in dropped:
            fields.pop(name)
        if dropped:
            log.info("restricted_fields_ignored", request_id=str(request.id), role=actor.role.value, fields=dropped)

    # Required columns can't be blanked by sending null
    for name in ("insured", "service_request_narrative", "service_queue_category", "assigned_by_id", "task_status"):
        if name in fields and fields[name] is None:
            fields.pop(name)

    if "assigned_by_id" in fields and fields["assigned_by_id"] != request.assigned_by_id:
        company_id = _company_of_assigner(db, fields["assigned_by_id"])
        if not _SEES_ALL_COMPANIES[actor.role] and company_id != actor.company_id:
            raise ValidationError("Assigned by user not found in your company", field="assigned_by_id")
        fields["company_id"] = company_id
    if "assigned_to_id" in fields:
        _check_assignee(db, fields["assigned_to_id"])

    before = _snapshot(request)
    old_status = TaskStatus(request.task_status)
    new_status = TaskStatus(fields.get("task_status", old_status))
    status_changed = new_status != old_status
    assigned_to_id = fields.get("assigned_to_id", request.assigned_to_id)
    requested_closed_at: Optional[datetime] = fields.pop("closed_at", None)
    now = utcnow()

    if requested_closed_at is not None and new_status != TaskStatus.CLOSED:
        raise ValidationError("A close date can only be set on a closed request", field="closed_at")

    entering_closed = new_status == TaskStatus.CLOSED and old_status != TaskStatus.CLOSED
    if entering_closed or requested_closed_at is not None:
        _check_can_close(db, request, assigned_to_id)
    elif new_status == TaskStatus.CLOSED and assigned_to_id is None:
        raise PreconditionError(MSG_CLOSED_KEEPS_ASSIGNEE, field="assigned_to_id")

    for name, value in fields.items():
        setattr(request, name, value)

    if status_changed and new_status == TaskStatus.IN_PROGRESS and request.in_progress_at is None:
        request.in_progress_at = now
    if old_status == TaskStatus.CLOSED and new_status != TaskStatus.CLOSED:
        request.closed_at = None
    if entering_closed:
        request.closed_at = requested_closed_at or now
    elif requested_closed_at is not None:
        request.closed_at = requested_closed_at

    request.modified_by_id = actor.user_id
    request.updated_at = now
    db.commit()
    db.refresh(request)

    changes = compute_diff(before, _snapshot(request))
    log.info(
        "service_request_updated",
        request_id=str(request.id),
        changed=sorted(changes),
        old_status=old_status.value if status_changed else None,
        new_status=new_status.value if status_changed else None,
    )

    notifier.notify_request_updated(
        request,
        actor.user_id,
        changes,
        old_status=old_status.value if status_changed else None,
        new_status=new_status.value if status_changed else None,
    )
    stored = store_attachments(db, request, files, actor, storage, notifier)
    return request, stored


def add_note(
    db: Session,
    request_id: uuid.UUID,
    content: str,
    actor: ActorContext,
    is_internal: bool = False,
    recipient_email: Optional[str] = None,
    *,
    notifier: NotificationService,
) -> RequestNote:
    request = get_request(db, request_id, actor)
    content = (content or "").strip()
    if not content:
        raise ValidationError("Note content is required", field="note_content")
    # Customers can't write agency-internal notes
    if is_internal and not actor.role.is_agent and actor.role != UserRole.SUPER_ADMIN:
        is_internal = False

    note = RequestNote(request_id=request.id, author_id=actor.user_id, note_content=content, is_internal=is_internal)
    db.add(note)
    db.commit()
    db.refresh(note)

    notifier.notify_note_added(request, note, recipient_email=recipient_email)
    return note


def upload_attachments(
    db: Session,
    request_id: uuid.UUID,
    files: Iterable[IncomingFile],
    actor: ActorContext,
    *,
    storage: StorageProvider,
    notifier: NotificationService,
) -> List[RequestAttachment]:
    request = get_request(db, request_id, actor)
    files = [f for f in files if f and f.size > 0]
    if not files:
        raise ValidationError("No files provided", field="files")
    return store_attachments(db, request, files, actor, storage, notifier)


def get_request(db: Session, request_id: uuid.UUID, actor: Optional[ActorContext] = None) -> ServiceRequest:
    request = db.query(ServiceRequest).filter(ServiceRequest.id == request_id).first()
    if not request:
        raise NotFoundError("Request not found")
    # Another tenant's request looks exactly like a missing one
    if actor is not None and not _SEES_ALL_COMPANIES[actor.role] and request.company_id != actor.company_id:
        raise NotFoundError("Request not found")
    return request


def list_requests(
    db: Session,
    actor: ActorContext,
    status: Optional[TaskStatus] = None,
    assigned_to_me: bool = False,
    limit: int = 100,
    offset: int = 0,
) -> List[ServiceRequest]:
    query = db.query(ServiceRequest)
    if not _SEES_ALL_COMPANIES[actor.role]:
        query = query.filter(ServiceRequest.company_id == actor.company_id)
    if status:
        query = query.filter(ServiceRequest.task_status == status)
    if assigned_to_me:
        query = query.filter(ServiceRequest.assigned_to_id == actor.user_id)
    return query.order_by(ServiceRequest.created_at.desc()).limit(limit).offset(offset).all()
