import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import ActorContext, get_current_actor
from ..db import get_db
from ..models.models import Notification
from ..schemas.notifications import NotificationInbox, NotificationResponse

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationInbox)
def list_notifications(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    """The 50 most recent notifications plus the total unread count."""
    notifications = (
        db.query(Notification)
        .filter(Notification.user_id == actor.user_id)
        .order_by(Notification.created_at.desc())
        .limit(50)
        .all()
    )
    unread = (
        db.query(Notification)
        .filter(Notification.user_id == actor.user_id, Notification.read.is_(False))
        .count()
    )
    return NotificationInbox(
        notifications=[NotificationResponse.model_validate(n) for n in notifications],
        unread_count=unread,
    )


@router.post("/read-all")
def mark_all_read(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    updated = (
        db.query(Notification)
        .filter(Notification.user_id == actor.user_id, Notification.read.is_(False))
        .update({Notification.read: True}, synchronize_session=False)
    )
    db.commit()
    return {"ok": True, "updated": updated}


@router.post("/{notification_id}/read", response_model=NotificationResponse)
def mark_read(
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    # Scoped by owner so one user can't flip another's inbox
    notification = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == actor.user_id)
        .first()
    )
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    notification.read = True
    db.commit()
    db.refresh(notification)
    return notification
