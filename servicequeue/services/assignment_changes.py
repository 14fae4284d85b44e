import uuid
from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

from ..auth.security import ActorContext
from ..models.models import (
    AssignmentChangeRequest,
    AssignmentChangeStatus,
    ServiceRequest,
    TaskStatus,
    User,
    UserRole,
)
from .errors import AuthorizationError, NotFoundError, PreconditionError, ValidationError
from .notifications import NotificationService


log = structlog.get_logger(__name__)

_REVIEW_ACTIONS = {
    "approved": AssignmentChangeStatus.APPROVED,
    "rejected": AssignmentChangeStatus.REJECTED,
}


def request_assignment_change(
    db: Session,
    request_id: uuid.UUID,
    requested_assignee_id: Optional[uuid.UUID],
    reason: str,
    actor: ActorContext,
    *,
    notifier: NotificationService,
) -> AssignmentChangeRequest:
    if not actor.role.is_agent:
        raise AuthorizationError("Only agents can request assignment changes")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Reason is required", field="reason")

    request = db.query(ServiceRequest).filter(ServiceRequest.id == request_id).first()
    if not request:
        raise NotFoundError("Request not found")
    if request.task_status == TaskStatus.CLOSED:
        raise PreconditionError("Cannot request an assignment change on a closed request")

    # Read-then-insert; two concurrent callers can still both pass this check
    pending = (
        db.query(AssignmentChangeRequest)
        .filter(
            AssignmentChangeRequest.request_id == request.id,
            AssignmentChangeRequest.status == AssignmentChangeStatus.PENDING,
        )
        .first()
    )
    if pending:
        raise PreconditionError("There is already a pending assignment change request for this task")

    if requested_assignee_id:
        assignee = db.query(User).filter(User.id == requested_assignee_id).first()
        if not assignee:
            raise ValidationError("Requested assignee not found", field="requested_assignee_id")
        if not UserRole(assignee.role).is_agent:
            raise ValidationError(
                "Requested assignee must be an agent or agent manager", field="requested_assignee_id"
            )

    change = AssignmentChangeRequest(
        request_id=request.id,
        requested_by_id=actor.user_id,
        current_assignee_id=request.assigned_to_id,
        requested_assignee_id=requested_assignee_id,
        reason=reason,
        status=AssignmentChangeStatus.PENDING,
    )
    db.add(change)
    db.commit()
    db.refresh(change)
    log.info("assignment_change_requested", change_id=str(change.id), request_id=str(request.id))

    notifier.notify_assignment_change_requested(request, change)
    return change


def review_assignment_change(
    db: Session,
    change_request_id: uuid.UUID,
    action: str,
    actor: ActorContext,
    comment: Optional[str] = None,
    *,
    notifier: NotificationService,
) -> AssignmentChangeRequest:
    if not actor.is_manager:
        raise AuthorizationError("Only agent managers can review assignment change requests")
    try:
        status = _REVIEW_ACTIONS[action]
    except KeyError:
        raise ValidationError("Action must be approved or rejected", field="action")

    change = db.query(AssignmentChangeRequest).filter(AssignmentChangeRequest.id == change_request_id).first()
    if not change:
        raise NotFoundError("Assignment change request not found")
    if change.status != AssignmentChangeStatus.PENDING:
        raise PreconditionError("This assignment change request has already been reviewed")

    request = db.query(ServiceRequest).filter(ServiceRequest.id == change.request_id).first()
    if not request:
        raise NotFoundError("Request not found")
    if (
        status == AssignmentChangeStatus.APPROVED
        and change.requested_assignee_id is None
        and request.task_status == TaskStatus.CLOSED
    ):
        raise PreconditionError("Cannot unassign a closed request. Reopen it or reject this change.")

    change.status = status
    change.reviewed_by_id = actor.user_id
    change.review_comment = (comment or "").strip() or None
    if status == AssignmentChangeStatus.APPROVED:
        # May be None, which unassigns the request
        request.assigned_to_id = change.requested_assignee_id
        request.modified_by_id = actor.user_id
    db.commit()
    db.refresh(change)
    log.info("assignment_change_reviewed", change_id=str(change.id), action=status.value)

    notifier.notify_assignment_change_reviewed(request, change)
    return change


def list_assignment_changes(
    db: Session, actor: ActorContext, request_id: Optional[uuid.UUID] = None
) -> List[AssignmentChangeRequest]:
    query = db.query(AssignmentChangeRequest)
    if request_id:
        query = query.filter(AssignmentChangeRequest.request_id == request_id)
    elif actor.is_manager:
        query = query.filter(AssignmentChangeRequest.status == AssignmentChangeStatus.PENDING)
    else:
        query = query.filter(AssignmentChangeRequest.requested_by_id == actor.user_id)
    return query.order_by(AssignmentChangeRequest.created_at.desc()).all()
