import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import ActorContext, get_current_actor
from ..db import get_db
from ..models.models import UserRole
from ..schemas.notifications import ActivityLogResponse
from ..services.audit import get_activity_logs

router = APIRouter(prefix="/activity", tags=["activity"])

# Roles whose feed spans every company
_GLOBAL_FEED = {UserRole.AGENT, UserRole.AGENT_MANAGER, UserRole.SUPER_ADMIN}


@router.get("", response_model=List[ActivityLogResponse])
def activity_feed(
    company_id: Optional[uuid.UUID] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    if actor.role not in _GLOBAL_FEED:
        if actor.company_id is None:
            raise HTTPException(status_code=403, detail="Forbidden")
        if company_id and company_id != actor.company_id:
            raise HTTPException(status_code=403, detail="Forbidden")
        company_id = actor.company_id
    return get_activity_logs(db, company_id=company_id, limit=min(limit, 500), offset=offset)
