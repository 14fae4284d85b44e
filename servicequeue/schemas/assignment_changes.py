import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, field_validator

from ..models.models import AssignmentChangeStatus


class AssignmentChangeCreate(BaseModel):
    request_id: uuid.UUID
    requested_assignee_id: Optional[uuid.UUID] = None  # None = unassign
    reason: str

    @field_validator("reason", mode="before")
    @classmethod
    def reason_required(cls, v):
        v = "" if v is None else str(v).strip()
        if not v:
            raise ValueError("Reason is required")
        return v


class AssignmentChangeReview(BaseModel):
    action: Literal["approved", "rejected"]
    comment: Optional[str] = None


class AssignmentChangeResponse(BaseModel):
    id: uuid.UUID
    request_id: uuid.UUID
    requested_by_id: uuid.UUID
    current_assignee_id: Optional[uuid.UUID] = None
    requested_assignee_id: Optional[uuid.UUID] = None
    reason: str
    status: AssignmentChangeStatus
    reviewed_by_id: Optional[uuid.UUID] = None
    review_comment: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
