import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from ..auth.security import ActorContext, get_current_actor
from ..db import get_db
from ..models.models import TaskStatus, UserRole
from ..schemas.notifications import ActivityLogResponse
from ..schemas.requests import (
    AttachmentResponse,
    NoteCreate,
    NoteResponse,
    ServiceRequestCreate,
    ServiceRequestDetail,
    ServiceRequestResponse,
    ServiceRequestUpdate,
    UpdateResult,
)
from ..services import requests as request_service
from ..services.audit import get_activity_logs
from ..services.errors import validation_error_from
from ..services.notifications import NotificationService
from ..storage.factory import get_storage
from ..storage.provider import StorageProvider
from .deps import blank_to_none, get_notifier, sent_form_fields, to_incoming


router = APIRouter(prefix="/requests", tags=["requests"])


@router.post("", response_model=ServiceRequestResponse, status_code=201)
def create_request(
    insured: str = Form(...),
    service_request_narrative: str = Form(...),
    service_queue_category: str = Form(...),
    assigned_by_id: Optional[str] = Form(None),
    assigned_to_id: Optional[str] = Form(None),
    due_date: Optional[str] = Form(None),
    due_time: Optional[str] = Form(None),
    files: List[UploadFile] = File(default=[]),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    storage: StorageProvider = Depends(get_storage),
    notifier: NotificationService = Depends(get_notifier),
):
    try:
        data = ServiceRequestCreate(
            insured=insured,
            service_request_narrative=service_request_narrative,
            service_queue_category=service_queue_category,
            # Customers always raise requests on their own behalf
            assigned_by_id=blank_to_none(assigned_by_id) or actor.user_id,
            assigned_to_id=blank_to_none(assigned_to_id),
            due_date=blank_to_none(due_date),
            due_time=blank_to_none(due_time),
        )
    except PydanticValidationError as e:
        raise validation_error_from(e)
    return request_service.create_request(
        db, data, actor, to_incoming(files), storage=storage, notifier=notifier
    )


@router.get("", response_model=List[ServiceRequestResponse])
def list_requests(
    status: Optional[TaskStatus] = None,
    assigned_to_me: bool = False,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    return request_service.list_requests(
        db, actor, status=status, assigned_to_me=assigned_to_me, limit=min(limit, 500), offset=offset
    )


@router.get("/{request_id}", response_model=ServiceRequestDetail)
def get_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    request = request_service.get_request(db, request_id, actor)
    detail = ServiceRequestDetail.model_validate(request)
    if not (actor.role.is_agent or actor.role == UserRole.SUPER_ADMIN):
        detail.notes = [n for n in detail.notes if not n.is_internal]
    return detail


@router.put("/{request_id}", response_model=UpdateResult)
def update_request(
    request_id: uuid.UUID,
    insured: Optional[str] = Form(None),
    service_request_narrative: Optional[str] = Form(None),
    service_queue_category: Optional[str] = Form(None),
    assigned_by_id: Optional[str] = Form(None),
    assigned_to_id: Optional[str] = Form(None),
    task_status: Optional[str] = Form(None),
    due_date: Optional[str] = Form(None),
    due_time: Optional[str] = Form(None),
    closed_at: Optional[str] = Form(None),
    time_spent: Optional[str] = Form(None),
    files: List[UploadFile] = File(default=[]),
    db: Session = Depends(get_db),
    form_fields: frozenset = Depends(sent_form_fields),
    actor: ActorContext = Depends(get_current_actor),
    storage: StorageProvider = Depends(get_storage),
    notifier: NotificationService = Depends(get_notifier),
):
    sent = {
        "insured": insured,
        "service_request_narrative": service_request_narrative,
        "service_queue_category": service_queue_category,
        "assigned_by_id": assigned_by_id,
        "assigned_to_id": assigned_to_id,
        "task_status": task_status,
        "due_date": due_date,
        "due_time": due_time,
        "closed_at": closed_at,
        "time_spent": time_spent,
    }
    # Absent form fields stay unset; an empty string clears a nullable field
    raw = {k: blank_to_none(v) for k, v in sent.items() if k in form_fields}
    try:
        data = ServiceRequestUpdate(**raw)
    except PydanticValidationError as e:
        raise validation_error_from(e)
    request, stored = request_service.update_request(
        db, request_id, data, actor, to_incoming(files), storage=storage, notifier=notifier
    )
    return UpdateResult(request=ServiceRequestResponse.model_validate(request), uploaded_files=len(stored))


@router.post("/{request_id}/notes", response_model=NoteResponse, status_code=201)
def add_note(
    request_id: uuid.UUID,
    body: NoteCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    notifier: NotificationService = Depends(get_notifier),
):
    return request_service.add_note(
        db,
        request_id,
        body.note_content,
        actor,
        is_internal=body.is_internal,
        recipient_email=body.recipient_email,
        notifier=notifier,
    )


@router.post("/{request_id}/attachments", response_model=List[AttachmentResponse], status_code=201)
def upload_attachments(
    request_id: uuid.UUID,
    files: List[UploadFile] = File(...),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    storage: StorageProvider = Depends(get_storage),
    notifier: NotificationService = Depends(get_notifier),
):
    return request_service.upload_attachments(
        db, request_id, to_incoming(files), actor, storage=storage, notifier=notifier
    )


@router.get("/{request_id}/activity", response_model=List[ActivityLogResponse])
def request_activity(
    request_id: uuid.UUID,
    limit: int = 100,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    request = request_service.get_request(db, request_id, actor)
    return get_activity_logs(db, request_id=request.id, limit=min(limit, 500))
