"""
Notification and activity fan-out.

Each notifier turns one domain event into in-app Notification rows, one
ActivityLog row for the acting user, and best-effort emails. Nothing in here
raises to the caller: failures are logged and the primary operation stands.
"""
import uuid
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Iterable, List

import structlog
from sqlalchemy.orm import Session

from ..models.models import (
    ActivityType,
    AssignmentChangeRequest,
    AssignmentChangeStatus,
    Company,
    Notification,
    NotificationType,
    RequestAttachment,
    RequestNote,
    ServiceRequest,
    User,
    UserRole,
)
from .audit import create_activity_log, to_jsonable
from .email import Mailer


log = structlog.get_logger(__name__)


@dataclass
class NotificationRecipients:
    assigned_to: Optional[uuid.UUID] = None
    assigned_by: Optional[uuid.UUID] = None
    request_creator: Optional[uuid.UUID] = None
    company_admins: List[uuid.UUID] = field(default_factory=list)
    agent_managers: List[uuid.UUID] = field(default_factory=list)
    all_agents: List[uuid.UUID] = field(default_factory=list)


def unique_ids(ids: Iterable[Optional[uuid.UUID]], exclude: Optional[uuid.UUID] = None) -> List[uuid.UUID]:
    """Drop None, the excluded id and duplicates, keeping first-seen order."""
    seen = []
    for uid in ids:
        if uid is None or uid == exclude or uid in seen:
            continue
        seen.append(uid)
    return seen


def _preview(content: str, limit: int = 100) -> str:
    return content[:limit] + ("..." if len(content) > limit else "")


class NotificationService:
    def __init__(self, db: Session, mailer: Mailer):
        self.db = db
        self.mailer = mailer

    # ----- primitives -----

    def create_notification(
        self,
        user_id: uuid.UUID,
        type: NotificationType,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Notification]:
        try:
            notification = Notification(
                user_id=user_id,
                type=type,
                title=title,
                message=message,
                metadata_json=to_jsonable(metadata) if metadata else None,
                read=False,
            )
            self.db.add(notification)
            self.db.commit()
            return notification
        except Exception as e:
            self.db.rollback()
            log.warning("notification_create_failed", user_id=str(user_id), type=type.value, error=str(e))
            return None

    def notify_multiple_users(
        self,
        user_ids: Iterable[uuid.UUID],
        type: NotificationType,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        ids = unique_ids(user_ids)
        if not ids:
            return 0
        payload = to_jsonable(metadata) if metadata else None
        try:
            self.db.add_all(
                [
                    Notification(user_id=uid, type=type, title=title, message=message, metadata_json=payload, read=False)
                    for uid in ids
                ]
            )
            self.db.commit()
            return len(ids)
        except Exception as e:
            self.db.rollback()
            log.warning("notification_bulk_create_failed", count=len(ids), type=type.value, error=str(e))
            return 0

    def log_activity(
        self,
        type: ActivityType,
        description: str,
        user_id: uuid.UUID,
        company_id: Optional[uuid.UUID] = None,
        request_id: Optional[uuid.UUID] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            create_activity_log(
                self.db,
                type=type,
                description=description,
                user_id=user_id,
                company_id=company_id,
                request_id=request_id,
                metadata=metadata,
            )
        except Exception as e:
            self.db.rollback()
            log.warning("activity_log_failed", type=type.value, user_id=str(user_id), error=str(e))

    def send_email(self, template: str, to: Optional[str], payload: Dict[str, Any]) -> None:
        if not to:
            return
        try:
            self.mailer.send(template, to, to_jsonable(payload))
        except Exception as e:
            log.warning("email_dispatch_failed", template=template, to=to, error=str(e))

    def _user(self, user_id: Optional[uuid.UUID]) -> Optional[User]:
        if user_id is None:
            return None
        return self.db.query(User).filter(User.id == user_id).first()

    def _name(self, user_id: Optional[uuid.UUID], default: str = "Unknown") -> str:
        user = self._user(user_id)
        return user.full_name if user else default

    def get_notification_recipients(
        self, request_id: Optional[uuid.UUID] = None, company_id: Optional[uuid.UUID] = None
    ) -> NotificationRecipients:
        """Resolve direct and company-wide audiences, fresh on every call."""
        recipients = NotificationRecipients()
        try:
            if request_id:
                request = self.db.query(ServiceRequest).filter(ServiceRequest.id == request_id).first()
                if request:
                    recipients.assigned_to = request.assigned_to_id
                    recipients.assigned_by = request.assigned_by_id
                    recipients.request_creator = request.assigned_by_id
                    company_id = company_id or request.company_id

            if company_id:
                company_users = self.db.query(User).filter(User.company_id == company_id).all()
                for user in company_users:
                    role = UserRole(user.role)
                    if role == UserRole.CUSTOMER_ADMIN:
                        recipients.company_admins.append(user.id)
                    if role == UserRole.AGENT_MANAGER:
                        recipients.agent_managers.append(user.id)
                    if role.is_agent:
                        recipients.all_agents.append(user.id)
        except Exception as e:
            self.db.rollback()
            log.warning("notification_recipients_failed", request_id=str(request_id), error=str(e))
        return recipients

    # ----- request events -----

    def notify_request_created(self, request: ServiceRequest, creator_id: uuid.UUID) -> None:
        recipients = self.get_notification_recipients(request.id, request.company_id)
        base = {"request_id": request.id, "service_queue_id": request.service_queue_id, "insured": request.insured}

        if request.assigned_to_id:
            self.create_notification(
                request.assigned_to_id,
                NotificationType.REQUEST_CREATED,
                "New Request Assigned",
                f"New service request {request.service_queue_id} has been assigned to you",
                base,
            )

        self.notify_multiple_users(
            recipients.agent_managers,
            NotificationType.REQUEST_CREATED,
            "New Service Request",
            f"New service request {request.service_queue_id} created for {request.insured}",
            {**base, "category": request.service_queue_category},
        )

        self.log_activity(
            ActivityType.REQUEST_CREATED,
            f"Created new service request {request.service_queue_id} for {request.insured}",
            user_id=creator_id,
            company_id=request.company_id,
            request_id=request.id,
            metadata={
                "insured": request.insured,
                "category": request.service_queue_category,
                "assigned_to_id": request.assigned_to_id,
            },
        )

        try:
            assignee = self._user(request.assigned_to_id)
            if assignee:
                self.send_email(
                    "new_request",
                    assignee.email,
                    {
                        "request_id": request.id,
                        "service_queue_id": request.service_queue_id,
                        "client_name": request.insured,
                        "request_title": request.service_request_narrative,
                        "category": request.service_queue_category,
                        "priority": "high" if request.due_date else "normal",
                        "assigned_by": self._name(creator_id),
                        "user_type": "agent",
                    },
                )
        except Exception as e:
            log.warning("request_created_email_failed", request_id=str(request.id), error=str(e))

    def notify_request_updated(
        self,
        request: ServiceRequest,
        updater_id: uuid.UUID,
        changes: Dict[str, Any],
        old_status: Optional[str] = None,
        new_status: Optional[str] = None,
    ) -> None:
        recipients = self.get_notification_recipients(request.id, request.company_id)
        targets = unique_ids([recipients.assigned_to, recipients.assigned_by], exclude=updater_id)
        sqid = request.service_queue_id

        if new_status:
            type = NotificationType.STATUS_CHANGED
            title = "Request Status Updated"
            message = f"Request {sqid} status changed to {new_status}"
            description = f'Changed status from "{old_status}" to "{new_status}" for request {sqid}'
        else:
            type = NotificationType.REQUEST_UPDATED
            title = "Request Updated"
            message = f"Request {sqid} has been updated"
            description = f"Updated request {sqid}"

        self.notify_multiple_users(
            targets,
            type,
            title,
            message,
            {
                "request_id": request.id,
                "service_queue_id": sqid,
                "old_status": old_status,
                "new_status": new_status,
                "changes": changes,
            },
        )

        self.log_activity(
            ActivityType.STATUS_CHANGED if new_status else ActivityType.REQUEST_UPDATED,
            description,
            user_id=updater_id,
            company_id=request.company_id,
            request_id=request.id,
            metadata=changes,
        )

        if not (new_status and old_status):
            return
        try:
            payload = {
                "request_id": request.id,
                "service_queue_id": sqid,
                "old_status": old_status,
                "new_status": new_status,
                "updated_by": self._name(updater_id),
                "client_name": request.insured,
                "request_title": request.service_request_narrative,
            }
            if recipients.assigned_to in targets:
                assignee = self._user(recipients.assigned_to)
                if assignee:
                    self.send_email("status_update", assignee.email, {**payload, "user_type": "agent"})
            if recipients.assigned_by in targets:
                creator = self._user(recipients.assigned_by)
                if creator:
                    self.send_email(
                        "status_update", creator.email, {**payload, "user_type": UserRole(creator.role).email_user_type}
                    )
        except Exception as e:
            log.warning("status_update_email_failed", request_id=str(request.id), error=str(e))

    def notify_request_assigned(
        self, request: ServiceRequest, assigner_id: uuid.UUID, assigned_to_id: uuid.UUID
    ) -> None:
        self.create_notification(
            assigned_to_id,
            NotificationType.REQUEST_ASSIGNED,
            "New Request Assignment",
            f"Request {request.service_queue_id} has been assigned to you",
            {
                "request_id": request.id,
                "service_queue_id": request.service_queue_id,
                "insured": request.insured,
                "due_date": request.due_date,
            },
        )

        self.log_activity(
            ActivityType.REQUEST_ASSIGNED,
            f"Assigned request {request.service_queue_id} to agent",
            user_id=assigner_id,
            company_id=request.company_id,
            request_id=request.id,
            metadata={"assigned_to_id": assigned_to_id, "insured": request.insured},
        )

        try:
            assigner = self._user(assigner_id)
            assignee = self._user(assigned_to_id)
            if assigner and assignee:
                self.send_email(
                    "request_assigned",
                    assignee.email,
                    {
                        "request_id": request.id,
                        "service_queue_id": request.service_queue_id,
                        "assigned_to": assignee.full_name,
                        "assigned_by": assigner.full_name,
                        "client_name": request.insured,
                        "request_title": request.service_request_narrative,
                        "due_date": request.due_date.date() if request.due_date else None,
                        "user_type": "agent",
                    },
                )
        except Exception as e:
            log.warning("assignment_email_failed", request_id=str(request.id), error=str(e))

    def notify_note_added(
        self, request: ServiceRequest, note: RequestNote, recipient_email: Optional[str] = None
    ) -> None:
        recipients = self.get_notification_recipients(request.id, request.company_id)
        author_id = note.author_id
        content = note.note_content

        if note.is_internal:
            targets = unique_ids(recipients.all_agents + recipients.agent_managers, exclude=author_id)
        else:
            targets = unique_ids([recipients.assigned_to, recipients.assigned_by], exclude=author_id)

        self.notify_multiple_users(
            targets,
            NotificationType.NOTE_ADDED,
            "New Note Added",
            f"New note added to request {request.service_queue_id}",
            {
                "request_id": request.id,
                "service_queue_id": request.service_queue_id,
                "is_internal": note.is_internal,
                "content": content[:100],
            },
        )

        author_name = self._name(author_id)
        self.log_activity(
            ActivityType.NOTE_ADDED,
            f"Added note to request {request.service_queue_id}: {_preview(content)}",
            user_id=author_id,
            company_id=request.company_id,
            request_id=request.id,
            metadata={"is_internal": note.is_internal, "author_name": author_name},
        )

        # Internal notes stay with the agency; only external ones reach the customer's inbox
        if note.is_internal:
            return
        try:
            to, user_type = recipient_email, "customer"
            if not to and recipients.assigned_by and recipients.assigned_by != author_id:
                creator = self._user(recipients.assigned_by)
                if creator:
                    to, user_type = creator.email, UserRole(creator.role).email_user_type
            self.send_email(
                "note_added",
                to,
                {
                    "request_id": request.id,
                    "service_queue_id": request.service_queue_id,
                    "note_content": content,
                    "author_name": author_name,
                    "client_name": request.insured,
                    "request_title": request.service_request_narrative,
                    "user_type": user_type,
                },
            )
        except Exception as e:
            log.warning("note_email_failed", request_id=str(request.id), error=str(e))

    def notify_attachment_uploaded(self, request: ServiceRequest, attachment: RequestAttachment) -> None:
        recipients = self.get_notification_recipients(request.id, request.company_id)
        uploader_id = attachment.uploaded_by_id
        targets = unique_ids([recipients.assigned_to, recipients.assigned_by], exclude=uploader_id)

        self.notify_multiple_users(
            targets,
            NotificationType.ATTACHMENT_UPLOADED,
            "File Uploaded",
            f'File "{attachment.file_name}" uploaded to request {request.service_queue_id}',
            {
                "request_id": request.id,
                "service_queue_id": request.service_queue_id,
                "file_name": attachment.file_name,
                "attachment_id": attachment.id,
            },
        )

        self.log_activity(
            ActivityType.ATTACHMENT_UPLOADED,
            f'Uploaded file "{attachment.file_name}" to request {request.service_queue_id}',
            user_id=uploader_id,
            company_id=request.company_id,
            request_id=request.id,
            metadata={
                "file_name": attachment.file_name,
                "file_size": attachment.file_size,
                "mime_type": attachment.mime_type,
            },
        )

    # ----- assignment change events -----

    def notify_assignment_change_requested(self, request: ServiceRequest, change: AssignmentChangeRequest) -> None:
        recipients = self.get_notification_recipients(request.id, request.company_id)
        metadata = {
            "request_id": request.id,
            "service_queue_id": request.service_queue_id,
            "reason": change.reason,
            "current_assignee_id": change.current_assignee_id,
            "requested_assignee_id": change.requested_assignee_id,
            "change_request_id": change.id,
        }

        self.notify_multiple_users(
            recipients.agent_managers,
            NotificationType.ASSIGNMENT_CHANGE_REQUESTED,
            "Assignment Change Requested",
            f"Assignment change requested for request {request.service_queue_id}",
            metadata,
        )

        try:
            requester = self._user(change.requested_by_id)
            if requester:
                payload = {
                    "request_id": request.id,
                    "service_queue_id": request.service_queue_id,
                    "client_name": request.insured,
                    "request_title": request.service_request_narrative,
                    "requested_by": requester.full_name,
                    "current_assignee": self._name(change.current_assignee_id, default="Unassigned"),
                    "requested_assignee": self._name(change.requested_assignee_id, default="Unassign"),
                    "reason": change.reason,
                    "change_request_id": change.id,
                    "user_type": "agent",
                }
                # Email goes to every agent manager, not only the company's
                managers = self.db.query(User).filter(User.role == UserRole.AGENT_MANAGER).all()
                for manager in managers:
                    self.send_email("assignment_change_request", manager.email, payload)
        except Exception as e:
            log.warning("assignment_change_request_email_failed", request_id=str(request.id), error=str(e))

        self.log_activity(
            ActivityType.ASSIGNMENT_CHANGE_REQUESTED,
            f"Requested assignment change for request {request.service_queue_id}: {change.reason}",
            user_id=change.requested_by_id,
            company_id=request.company_id,
            request_id=request.id,
            metadata={k: v for k, v in metadata.items() if k not in ("request_id", "service_queue_id")},
        )

    def notify_assignment_change_reviewed(self, request: ServiceRequest, change: AssignmentChangeRequest) -> None:
        approved = change.status == AssignmentChangeStatus.APPROVED
        action = change.status.value
        action_text = "Approved" if approved else "Rejected"
        new_assignee_id = change.requested_assignee_id if approved else None

        self.create_notification(
            change.requested_by_id,
            NotificationType.ASSIGNMENT_CHANGE_APPROVED if approved else NotificationType.ASSIGNMENT_CHANGE_REJECTED,
            f"Assignment Change {action_text}",
            f"Your assignment change request for {request.service_queue_id} has been {action}",
            {
                "request_id": request.id,
                "service_queue_id": request.service_queue_id,
                "action": action,
                "comment": change.review_comment,
                "new_assignee_id": new_assignee_id,
            },
        )

        if new_assignee_id:
            self.create_notification(
                new_assignee_id,
                NotificationType.REQUEST_ASSIGNED,
                "Request Reassigned",
                f"Request {request.service_queue_id} has been reassigned to you",
                {
                    "request_id": request.id,
                    "service_queue_id": request.service_queue_id,
                    "reason": "Assignment change approved",
                },
            )

        try:
            reviewer = self._user(change.reviewed_by_id)
            requester = self._user(change.requested_by_id)
            new_assignee = self._user(new_assignee_id)
            if reviewer and requester:
                base = {
                    "request_id": request.id,
                    "service_queue_id": request.service_queue_id,
                    "client_name": request.insured,
                    "request_title": request.service_request_narrative,
                    "user_type": "agent",
                }
                self.send_email(
                    "assignment_change_reviewed",
                    requester.email,
                    {
                        **base,
                        "reviewed_by": reviewer.full_name,
                        "action": action,
                        "comment": change.review_comment,
                        "new_assignee": new_assignee.full_name if new_assignee else None,
                    },
                )
                if new_assignee:
                    self.send_email(
                        "request_assigned",
                        new_assignee.email,
                        {**base, "assigned_to": new_assignee.full_name, "assigned_by": reviewer.full_name},
                    )
        except Exception as e:
            log.warning("assignment_change_review_email_failed", request_id=str(request.id), error=str(e))

        self.log_activity(
            ActivityType.ASSIGNMENT_CHANGE_APPROVED if approved else ActivityType.ASSIGNMENT_CHANGE_REJECTED,
            f"{action_text} assignment change request for {request.service_queue_id}",
            user_id=change.reviewed_by_id,
            company_id=request.company_id,
            request_id=request.id,
            metadata={
                "action": action,
                "comment": change.review_comment,
                "requester_id": change.requested_by_id,
                "new_assignee_id": new_assignee_id,
            },
        )

    # ----- administrative events -----

    def notify_user_created(self, admin_id: uuid.UUID, new_user: User) -> None:
        role = UserRole(new_user.role).value
        self.create_notification(
            admin_id,
            NotificationType.USER_CREATED,
            "New User Created",
            f"User {new_user.full_name} ({role}) has been created successfully",
            {"user_id": new_user.id, "email": new_user.email, "role": role},
        )
        self.log_activity(
            ActivityType.USER_CREATED,
            f"Created new user: {new_user.full_name} ({new_user.email}) with role {role}",
            user_id=admin_id,
            company_id=new_user.company_id,
            metadata={"user_id": new_user.id, "role": role},
        )

    def notify_user_role_changed(
        self, admin_id: uuid.UUID, target: User, old_role: UserRole, new_role: UserRole
    ) -> None:
        is_promotion = old_role == UserRole.AGENT and new_role == UserRole.AGENT_MANAGER
        is_demotion = old_role == UserRole.AGENT_MANAGER and new_role == UserRole.AGENT
        if is_promotion:
            type, title = NotificationType.USER_PROMOTED, "Promoted to Agent Manager"
            message = "Congratulations! You have been promoted to Agent Manager"
        elif is_demotion:
            type, title = NotificationType.USER_DEMOTED, "Role Changed"
            message = f"Your role has been changed from {old_role.value} to {new_role.value}"
        else:
            type, title = NotificationType.USER_CREATED, "Role Updated"
            message = f"Your role has been changed from {old_role.value} to {new_role.value}"

        roles = {"old_role": old_role, "new_role": new_role}
        self.create_notification(target.id, type, title, message, roles)
        self.create_notification(
            admin_id,
            type,
            "User Role Updated",
            f"{target.full_name} role changed from {old_role.value} to {new_role.value}",
            {"target_user_id": target.id, **roles},
        )
        self.log_activity(
            ActivityType.USER_UPDATED,
            f"Changed {target.full_name} role from {old_role.value} to {new_role.value}",
            user_id=admin_id,
            company_id=target.company_id,
            metadata={"target_user_id": target.id, **roles, "is_promotion": is_promotion, "is_demotion": is_demotion},
        )

    def notify_login_code_reset(self, user: User, old_code: Optional[str], new_code: str) -> None:
        self.create_notification(
            user.id,
            NotificationType.LOGIN_CODE_RESET,
            "Login Code Reset",
            "Your login code has been reset",
            {"old_code": old_code, "new_code": new_code},
        )

    def notify_customer_details_updated(self, admin_id: uuid.UUID, company: Company) -> None:
        self.create_notification(
            admin_id,
            NotificationType.COMPANY_CREATED,
            "Customer Details Updated",
            f"Customer details for {company.company_name} have been updated successfully",
            {"company_id": company.id, "entity_type": "company"},
        )
        self.log_activity(
            ActivityType.COMPANY_UPDATED,
            f"Updated customer details for: {company.company_name}",
            user_id=admin_id,
            company_id=company.id,
            metadata={"company_id": company.id},
        )

    def notify_company_code_reset(self, admin_id: uuid.UUID, company: Company, old_code: str, new_code: str) -> None:
        codes = {"old_code": old_code, "new_code": new_code}
        self.create_notification(
            admin_id,
            NotificationType.COMPANY_CODE_RESET,
            "Company Code Reset",
            f"Company code for {company.company_name} has been reset",
            {"company_id": company.id, **codes},
        )
        self.log_activity(
            ActivityType.COMPANY_UPDATED,
            f"Reset company code for {company.company_name}",
            user_id=admin_id,
            company_id=company.id,
            metadata=codes,
        )

    def notify_due_date_reminder(self, request: ServiceRequest, days_until_due: int, is_overdue: bool) -> int:
        """In-app plus email reminder. Returns the number of inbox rows written."""
        recipients = self.get_notification_recipients(request.id, request.company_id)
        targets = unique_ids([request.assigned_to_id, recipients.assigned_by, *recipients.agent_managers])
        sqid = request.service_queue_id

        if is_overdue:
            message = f"Request {sqid} is overdue"
        elif days_until_due == 0:
            message = f"Request {sqid} is due today"
        elif days_until_due == 1:
            message = f"Request {sqid} is due tomorrow"
        else:
            message = f"Request {sqid} is due in {days_until_due} days"

        written = self.notify_multiple_users(
            targets,
            NotificationType.REQUEST_OVERDUE if is_overdue else NotificationType.DUE_DATE_REMINDER,
            "Request Overdue" if is_overdue else "Due Date Reminder",
            message,
            {
                "request_id": request.id,
                "service_queue_id": sqid,
                "insured": request.insured,
                "due_date": request.due_date,
                "days_until_due": days_until_due,
                "is_overdue": is_overdue,
            },
        )

        try:
            assignee = self._user(request.assigned_to_id)
            payload = {
                "request_id": request.id,
                "service_queue_id": sqid,
                "client_name": request.insured,
                "request_title": request.service_request_narrative,
                "due_date": request.due_date.date() if request.due_date else None,
                "assigned_to": assignee.full_name if assignee else "Unassigned",
                "days_until_due": min(days_until_due, 0) if is_overdue else days_until_due,
            }
            if assignee:
                self.send_email("due_date_reminder", assignee.email, {**payload, "user_type": "agent"})
            if request.assigned_by_id != request.assigned_to_id:
                creator = self._user(request.assigned_by_id)
                if creator:
                    self.send_email(
                        "due_date_reminder", creator.email, {**payload, "user_type": UserRole(creator.role).email_user_type}
                    )
        except Exception as e:
            log.warning("due_date_reminder_email_failed", request_id=str(request.id), error=str(e))
        return written
