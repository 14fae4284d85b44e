import re
import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, field_validator

from ..models.models import ServiceQueueCategory, TaskStatus


_DUE_TIME = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _required_text(v):
    v = "" if v is None else str(v).strip()
    if not v:
        raise ValueError("must not be empty")
    return v


def _due_time(v):
    if v is None:
        return None
    v = str(v).strip()
    if not v:
        return None
    if not _DUE_TIME.match(v):
        raise ValueError("must be HH:MM")
    return v


class ServiceRequestCreate(BaseModel):
    insured: str
    service_request_narrative: str
    service_queue_category: ServiceQueueCategory
    assigned_by_id: uuid.UUID
    assigned_to_id: Optional[uuid.UUID] = None
    due_date: Optional[datetime] = None
    due_time: Optional[str] = None

    @field_validator("insured", "service_request_narrative", mode="before")
    @classmethod
    def not_blank(cls, v):
        return _required_text(v)

    @field_validator("due_time", mode="before")
    @classmethod
    def check_due_time(cls, v):
        return _due_time(v)


class ServiceRequestUpdate(BaseModel):
    # Only fields the caller actually sent are applied (exclude_unset)
    insured: Optional[str] = None
    service_request_narrative: Optional[str] = None
    service_queue_category: Optional[ServiceQueueCategory] = None
    assigned_by_id: Optional[uuid.UUID] = None
    assigned_to_id: Optional[uuid.UUID] = None
    task_status: Optional[TaskStatus] = None
    due_date: Optional[datetime] = None
    due_time: Optional[str] = None
    closed_at: Optional[datetime] = None
    time_spent: Optional[int] = None

    @field_validator("insured", "service_request_narrative", mode="before")
    @classmethod
    def not_blank(cls, v):
        if v is None:
            return None
        return _required_text(v)

    @field_validator("due_time", mode="before")
    @classmethod
    def check_due_time(cls, v):
        return _due_time(v)

    @field_validator("time_spent")
    @classmethod
    def non_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError("must be zero or more minutes")
        return v


class UserSummary(BaseModel):
    id: uuid.UUID
    first_name: str
    last_name: str
    email: str

    class Config:
        from_attributes = True


class NoteCreate(BaseModel):
    note_content: str
    is_internal: bool = False
    recipient_email: Optional[str] = None

    @field_validator("note_content", mode="before")
    @classmethod
    def not_blank(cls, v):
        return _required_text(v)


class NoteResponse(BaseModel):
    id: uuid.UUID
    request_id: uuid.UUID
    author_id: uuid.UUID
    note_content: str
    is_internal: bool
    created_at: datetime

    class Config:
        from_attributes = True


class AttachmentResponse(BaseModel):
    id: uuid.UUID
    request_id: uuid.UUID
    file_name: str
    file_path: str
    file_size: int
    mime_type: str
    uploaded_by_id: uuid.UUID
    created_at: datetime

    class Config:
        from_attributes = True


class ServiceRequestResponse(BaseModel):
    id: uuid.UUID
    service_queue_id: str
    insured: str
    company_id: uuid.UUID
    task_status: TaskStatus
    service_request_narrative: str
    service_queue_category: ServiceQueueCategory
    assigned_to_id: Optional[uuid.UUID] = None
    assigned_by_id: uuid.UUID
    due_date: Optional[datetime] = None
    due_time: Optional[str] = None
    in_progress_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    time_spent: Optional[int] = None
    modified_by_id: Optional[uuid.UUID] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ServiceRequestDetail(ServiceRequestResponse):
    assigned_to: Optional[UserSummary] = None
    assigned_by: Optional[UserSummary] = None
    notes: List[NoteResponse] = []
    attachments: List[AttachmentResponse] = []


class UpdateResult(BaseModel):
    request: ServiceRequestResponse
    uploaded_files: int
