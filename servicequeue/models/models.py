import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Integer,
    JSON,
    Text,
    Index,
    Enum,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def utcnow() -> datetime:
    # Stored as naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_column(enum_cls, name: str, **kw):
    return mapped_column(
        Enum(enum_cls, name=name, native_enum=False, length=64, values_callable=lambda e: [m.value for m in e]),
        **kw,
    )


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    CUSTOMER_ADMIN = "customer_admin"
    AGENT = "agent"
    AGENT_MANAGER = "agent_manager"
    SUPER_ADMIN = "super_admin"

    @property
    def is_manager(self) -> bool:
        """Managers may reassign, reschedule and close-date requests."""
        return _ROLE_IS_MANAGER[self]

    @property
    def is_agent(self) -> bool:
        return _ROLE_IS_AGENT[self]

    @property
    def email_user_type(self) -> str:
        return _ROLE_USER_TYPE[self]


_ROLE_IS_MANAGER = {
    UserRole.CUSTOMER: False,
    UserRole.CUSTOMER_ADMIN: False,
    UserRole.AGENT: False,
    UserRole.AGENT_MANAGER: True,
    UserRole.SUPER_ADMIN: True,
}

_ROLE_IS_AGENT = {
    UserRole.CUSTOMER: False,
    UserRole.CUSTOMER_ADMIN: False,
    UserRole.AGENT: True,
    UserRole.AGENT_MANAGER: True,
    UserRole.SUPER_ADMIN: False,
}

_ROLE_USER_TYPE = {
    UserRole.CUSTOMER: "customer",
    UserRole.CUSTOMER_ADMIN: "customer",
    UserRole.AGENT: "agent",
    UserRole.AGENT_MANAGER: "agent",
    UserRole.SUPER_ADMIN: "admin",
}


class TaskStatus(str, enum.Enum):
    NEW = "new"
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


class ServiceQueueCategory(str, enum.Enum):
    POLICY_INQUIRY = "policy_inquiry"
    CLAIMS_PROCESSING = "claims_processing"
    ACCOUNT_UPDATE = "account_update"
    TECHNICAL_SUPPORT = "technical_support"
    BILLING_INQUIRY = "billing_inquiry"
    INSURED_SERVICE_CANCEL_NON_RENEWAL = "insured_service_cancel_non_renewal"
    OTHER = "other"


class AssignmentChangeStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class NotificationType(str, enum.Enum):
    REQUEST_CREATED = "request_created"
    REQUEST_UPDATED = "request_updated"
    REQUEST_ASSIGNED = "request_assigned"
    NOTE_ADDED = "note_added"
    STATUS_CHANGED = "status_changed"
    DUE_DATE_REMINDER = "due_date_reminder"
    USER_CREATED = "user_created"
    COMPANY_CREATED = "company_created"
    ATTACHMENT_UPLOADED = "attachment_uploaded"
    ASSIGNMENT_CHANGE_REQUESTED = "assignment_change_requested"
    ASSIGNMENT_CHANGE_APPROVED = "assignment_change_approved"
    ASSIGNMENT_CHANGE_REJECTED = "assignment_change_rejected"
    USER_PROMOTED = "user_promoted"
    USER_DEMOTED = "user_demoted"
    LOGIN_CODE_RESET = "login_code_reset"
    COMPANY_CODE_RESET = "company_code_reset"
    PASSWORD_RESET = "password_reset"
    REQUEST_OVERDUE = "request_overdue"
    REQUEST_DUE_SOON = "request_due_soon"
    SUBTASK_ASSIGNED = "subtask_assigned"
    SUBTASK_COMPLETED = "subtask_completed"


class ActivityType(str, enum.Enum):
    REQUEST_CREATED = "request_created"
    REQUEST_UPDATED = "request_updated"
    REQUEST_ASSIGNED = "request_assigned"
    NOTE_ADDED = "note_added"
    ATTACHMENT_UPLOADED = "attachment_uploaded"
    STATUS_CHANGED = "status_changed"
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    COMPANY_UPDATED = "company_updated"
    ASSIGNMENT_CHANGE_REQUESTED = "assignment_change_requested"
    ASSIGNMENT_CHANGE_APPROVED = "assignment_change_approved"
    ASSIGNMENT_CHANGE_REJECTED = "assignment_change_rejected"


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = uuid_pk()
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    company_code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    primary_contact: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    users = relationship("User", back_populates="company")
    service_requests = relationship("ServiceRequest", back_populates="company")


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    login_code: Mapped[Optional[str]] = mapped_column(String(32), unique=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[UserRole] = _enum_column(UserRole, "user_role", nullable=False)
    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id"), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), default="America/New_York")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    company = relationship("Company", back_populates="users")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Agent(Base):
    __tablename__ = "agents"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), unique=True, nullable=False)
    assigned_company_ids: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User")


class ServiceRequest(Base):
    __tablename__ = "service_requests"

    id: Mapped[uuid.UUID] = uuid_pk()
    service_queue_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    insured: Mapped[str] = mapped_column(String(255), nullable=False)
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False, index=True)
    task_status: Mapped[TaskStatus] = _enum_column(TaskStatus, "task_status", default=TaskStatus.NEW, nullable=False)
    service_request_narrative: Mapped[str] = mapped_column(Text, nullable=False)
    service_queue_category: Mapped[ServiceQueueCategory] = _enum_column(
        ServiceQueueCategory, "service_queue_category", nullable=False
    )
    assigned_to_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), index=True)
    assigned_by_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    due_time: Mapped[Optional[str]] = mapped_column(String(5))  # HH:MM
    in_progress_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    time_spent: Mapped[Optional[int]] = mapped_column(Integer)  # minutes, entered by agents
    modified_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    company = relationship("Company", back_populates="service_requests")
    assigned_to = relationship("User", foreign_keys=[assigned_to_id])
    assigned_by = relationship("User", foreign_keys=[assigned_by_id])
    modified_by = relationship("User", foreign_keys=[modified_by_id])
    notes = relationship("RequestNote", back_populates="request", order_by="RequestNote.created_at.desc()")
    attachments = relationship(
        "RequestAttachment", back_populates="request", order_by="RequestAttachment.created_at.desc()"
    )


class RequestNote(Base):
    __tablename__ = "request_notes"

    id: Mapped[uuid.UUID] = uuid_pk()
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("service_requests.id"), nullable=False, index=True
    )
    author_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    note_content: Mapped[str] = mapped_column(Text, nullable=False)
    is_internal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    request = relationship("ServiceRequest", back_populates="notes")
    author = relationship("User")


class RequestAttachment(Base):
    __tablename__ = "request_attachments"

    id: Mapped[uuid.UUID] = uuid_pk()
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("service_requests.id"), nullable=False, index=True
    )
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)  # public URL
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    uploaded_by_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    request = relationship("ServiceRequest", back_populates="attachments")
    uploaded_by = relationship("User")


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    type: Mapped[NotificationType] = _enum_column(NotificationType, "notification_type", nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_notifications_user_created", "user_id", "created_at"),
    )


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    type: Mapped[ActivityType] = _enum_column(ActivityType, "activity_type", nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id"))
    request_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("service_requests.id"))
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user = relationship("User")

    __table_args__ = (
        Index("idx_activity_logs_company_created", "company_id", "created_at"),
        Index("idx_activity_logs_request", "request_id"),
    )


class AssignmentChangeRequest(Base):
    __tablename__ = "assignment_change_requests"

    id: Mapped[uuid.UUID] = uuid_pk()
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("service_requests.id"), nullable=False, index=True
    )
    requested_by_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    current_assignee_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    requested_assignee_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))  # None = unassign
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[AssignmentChangeStatus] = _enum_column(
        AssignmentChangeStatus, "assignment_change_status", default=AssignmentChangeStatus.PENDING, nullable=False
    )
    reviewed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    review_comment: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    request = relationship("ServiceRequest")
    requested_by = relationship("User", foreign_keys=[requested_by_id])
    current_assignee = relationship("User", foreign_keys=[current_assignee_id])
    requested_assignee = relationship("User", foreign_keys=[requested_assignee_id])
    reviewed_by = relationship("User", foreign_keys=[reviewed_by_id])
