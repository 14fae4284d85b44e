import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import ActorContext, require_roles
from ..db import get_db
from ..models.models import UserRole
from ..schemas.admin import (
    CodeReset,
    CompanyResponse,
    CustomerDetailsResult,
    CustomerDetailsUpdate,
    RoleChange,
    UserCreate,
    UserResponse,
)
from ..services import admin as admin_service
from ..services.notifications import NotificationService
from .deps import get_notifier


router = APIRouter(prefix="/admin", tags=["admin"])

_super_admin = require_roles(UserRole.SUPER_ADMIN)


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    body: UserCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(_super_admin),
    notifier: NotificationService = Depends(get_notifier),
):
    return admin_service.create_user(db, body, actor, notifier=notifier)


@router.post("/agents/{user_id}/role", response_model=UserResponse)
def change_agent_role(
    user_id: uuid.UUID,
    body: RoleChange,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(_super_admin),
    notifier: NotificationService = Depends(get_notifier),
):
    return admin_service.change_agent_role(db, user_id, body.role, actor, notifier=notifier)


@router.post("/users/{user_id}/reset-code", response_model=CodeReset)
def reset_login_code(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(_super_admin),
    notifier: NotificationService = Depends(get_notifier),
):
    user, old_code = admin_service.reset_login_code(db, user_id, actor, notifier=notifier)
    return CodeReset(old_code=old_code, new_code=user.login_code)


@router.post("/companies/{company_id}/reset-code", response_model=CodeReset)
def reset_company_code(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(_super_admin),
    notifier: NotificationService = Depends(get_notifier),
):
    company, old_code = admin_service.reset_company_code(db, company_id, actor, notifier=notifier)
    return CodeReset(old_code=old_code, new_code=company.company_code)


@router.put("/companies/{company_id}/details", response_model=CustomerDetailsResult)
def update_customer_details(
    company_id: uuid.UUID,
    body: CustomerDetailsUpdate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(_super_admin),
    notifier: NotificationService = Depends(get_notifier),
):
    company, user, created = admin_service.update_customer_details(db, company_id, body, actor, notifier=notifier)
    return CustomerDetailsResult(
        company=CompanyResponse.model_validate(company),
        user=UserResponse.model_validate(user),
        user_created=created,
    )
