import uuid
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from ..models.models import ActivityType, NotificationType


class NotificationResponse(BaseModel):
    id: uuid.UUID
    type: NotificationType
    title: str
    message: str
    metadata: Optional[Any] = Field(default=None, validation_alias="metadata_json")
    read: bool
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationInbox(BaseModel):
    notifications: List[NotificationResponse]
    unread_count: int


class ActivityLogResponse(BaseModel):
    id: uuid.UUID
    type: ActivityType
    description: str
    user_id: uuid.UUID
    company_id: Optional[uuid.UUID] = None
    request_id: Optional[uuid.UUID] = None
    metadata: Optional[Any] = Field(default=None, validation_alias="metadata_json")
    created_at: datetime

    class Config:
        from_attributes = True
