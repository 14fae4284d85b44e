"""
Activity log service.
Append-only trail of who did what, shown in the activity feeds.
"""
import enum
import uuid
from datetime import date, datetime
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from ..models.models import ActivityLog, ActivityType


def create_activity_log(
    db: Session,
    type: ActivityType,
    description: str,
    user_id: uuid.UUID,
    company_id: Optional[uuid.UUID] = None,
    request_id: Optional[uuid.UUID] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> ActivityLog:
    """
    Append one activity row and commit it.

    Args:
        db: Database session
        type: Activity type
        description: Human-readable sentence shown in the feed
        user_id: The acting user
        company_id: Tenant the action belongs to, if any
        request_id: Service request the action concerns, if any
        metadata: JSON-serialisable context, parsed by consumers per type

    Returns:
        Created ActivityLog object
    """
    entry = ActivityLog(
        type=type,
        description=description,
        user_id=user_id,
        company_id=company_id,
        request_id=request_id,
        metadata_json=to_jsonable(metadata) if metadata else None,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def get_activity_logs(
    db: Session,
    company_id: Optional[uuid.UUID] = None,
    request_id: Optional[uuid.UUID] = None,
    limit: int = 100,
    offset: int = 0,
) -> list:
    query = db.query(ActivityLog)

    if company_id:
        query = query.filter(ActivityLog.company_id == company_id)

    if request_id:
        query = query.filter(ActivityLog.request_id == request_id)

    query = query.order_by(ActivityLog.created_at.desc())
    query = query.limit(limit).offset(offset)

    return query.all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    all_keys = set(before.keys()) | set(after.keys())

    for key in all_keys:
        before_val = before.get(key)
        after_val = after.get(key)

        if before_val != after_val:
            diff[key] = {
                "before": before_val,
                "after": after_val,
            }

    return diff


def to_jsonable(value: Any) -> Any:
    """UUIDs, enums and datetimes become strings so the JSON column accepts them."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)
