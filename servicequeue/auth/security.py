import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import User, UserRole


http_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class ActorContext:
    """Who is acting. Passed explicitly into every service call."""

    user_id: uuid.UUID
    role: UserRole
    company_id: Optional[uuid.UUID] = None

    @property
    def is_manager(self) -> bool:
        return self.role.is_manager

    @classmethod
    def for_user(cls, user: User) -> "ActorContext":
        return cls(user_id=user.id, role=UserRole(user.role), company_id=user.company_id)


def create_access_token(user: User, ttl_seconds: Optional[int] = None) -> str:
    # Login lives elsewhere; this exists for scripts and tests.
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": str(user.id),
        "role": UserRole(user.role).value,
        "company_id": str(user.company_id) if user.company_id else None,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds or settings.jwt_ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_actor(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> ActorContext:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    try:
        user_uuid = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    user = db.query(User).filter(User.id == user_uuid).first()
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not active")
    # Role and company come from the row, not the claims, so demotions take effect immediately
    return ActorContext.for_user(user)


def require_roles(*allowed: UserRole):
    def _dep(actor: ActorContext = Depends(get_current_actor)) -> ActorContext:
        if actor.role not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden")
        return actor

    return _dep
