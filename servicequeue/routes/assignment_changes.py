import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import ActorContext, get_current_actor, require_roles
from ..db import get_db
from ..models.models import UserRole
from ..schemas.assignment_changes import (
    AssignmentChangeCreate,
    AssignmentChangeResponse,
    AssignmentChangeReview,
)
from ..services import assignment_changes as change_service
from ..services.notifications import NotificationService
from .deps import get_notifier


router = APIRouter(prefix="/assignment-changes", tags=["assignment-changes"])


@router.post("", response_model=AssignmentChangeResponse, status_code=201)
def request_assignment_change(
    body: AssignmentChangeCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(require_roles(UserRole.AGENT, UserRole.AGENT_MANAGER)),
    notifier: NotificationService = Depends(get_notifier),
):
    return change_service.request_assignment_change(
        db, body.request_id, body.requested_assignee_id, body.reason, actor, notifier=notifier
    )


@router.get("", response_model=List[AssignmentChangeResponse])
def list_assignment_changes(
    request_id: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(require_roles(UserRole.AGENT, UserRole.AGENT_MANAGER, UserRole.SUPER_ADMIN)),
):
    return change_service.list_assignment_changes(db, actor, request_id=request_id)


@router.post("/{change_id}/review", response_model=AssignmentChangeResponse)
def review_assignment_change(
    change_id: uuid.UUID,
    body: AssignmentChangeReview,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(require_roles(UserRole.AGENT_MANAGER, UserRole.SUPER_ADMIN)),
    notifier: NotificationService = Depends(get_notifier),
):
    return change_service.review_assignment_change(
        db, change_id, body.action, actor, comment=body.comment, notifier=notifier
    )
