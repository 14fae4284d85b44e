import secrets
import string
import uuid
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth.security import ActorContext
from ..db import transaction
from ..models.models import Agent, Company, User, UserRole
from ..schemas.admin import CustomerDetailsUpdate, UserCreate
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .notifications import NotificationService


log = structlog.get_logger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 7
MAX_CODE_ATTEMPTS = 10

_AGENT_ROLES = (UserRole.AGENT, UserRole.AGENT_MANAGER)
_CUSTOMER_ROLES = (UserRole.CUSTOMER, UserRole.CUSTOMER_ADMIN)


def generate_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def _unique_code(db: Session, column, kind: str) -> str:
    """Draw codes until one is unused in `column`."""
    for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
        code = generate_code()
        if not db.query(column).filter(column == code).first():
            return code
        log.info("code_collision", kind=kind, attempt=attempt)
    raise ConflictError(f"Unable to generate unique {kind}. Please try again.")


def _require_super_admin(actor: ActorContext) -> None:
    if actor.role != UserRole.SUPER_ADMIN:
        raise AuthorizationError("Only super admins can manage users and companies")


def _get_company(db: Session, company_id: uuid.UUID) -> Company:
    company = db.query(Company).filter(Company.id == company_id).first()
    if not company:
        raise NotFoundError("Customer not found", field="company_id")
    return company


def _taken(db: Session, column, value: str, except_user_id: Optional[uuid.UUID] = None) -> bool:
    query = db.query(User.id).filter(column == value)
    if except_user_id:
        query = query.filter(User.id != except_user_id)
    return query.first() is not None


def create_user(db: Session, data: UserCreate, actor: ActorContext, *, notifier: NotificationService) -> User:
    _require_super_admin(actor)
    if data.role in _CUSTOMER_ROLES and not data.company_id:
        raise ValidationError("Customer users must belong to a company", field="company_id")
    if data.company_id:
        _get_company(db, data.company_id)
    if _taken(db, User.email, data.email):
        raise ConflictError("Email already exists", field="email")

    user = User(
        first_name=data.first_name,
        last_name=data.last_name,
        email=data.email,
        login_code=_unique_code(db, User.login_code, "login code"),
        role=data.role,
        company_id=data.company_id,
        is_active=True,
    )
    try:
        with transaction(db):
            db.add(user)
            if data.role in _AGENT_ROLES:
                db.flush()
                db.add(Agent(user_id=user.id, assigned_company_ids=[str(data.company_id)] if data.company_id else []))
    except IntegrityError as e:
        log.warning("user_create_conflict", email=data.email, error=str(e.orig))
        raise ConflictError("Email already exists", field="email")
    db.refresh(user)
    log.info("user_created", user_id=str(user.id), role=data.role.value)

    notifier.notify_user_created(actor.user_id, user)
    return user


def change_agent_role(
    db: Session, user_id: uuid.UUID, role: UserRole, actor: ActorContext, *, notifier: NotificationService
) -> User:
    """Promote an agent to agent manager or demote one back."""
    _require_super_admin(actor)
    if role not in _AGENT_ROLES:
        raise ValidationError('Invalid role. Must be "agent" or "agent_manager"', field="role")
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError("Agent not found")
    old_role = UserRole(user.role)
    if old_role not in _AGENT_ROLES:
        raise ValidationError("Can only promote/demote agent roles", field="role")
    if old_role == role:
        return user

    user.role = role
    db.commit()
    db.refresh(user)
    log.info("user_role_changed", user_id=str(user.id), old_role=old_role.value, new_role=role.value)

    notifier.notify_user_role_changed(actor.user_id, user, old_role, role)
    return user


def reset_login_code(
    db: Session, user_id: uuid.UUID, actor: ActorContext, *, notifier: NotificationService
) -> tuple[User, Optional[str]]:
    _require_super_admin(actor)
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError("User not found")

    old_code = user.login_code
    user.login_code = _unique_code(db, User.login_code, "login code")
    db.commit()
    db.refresh(user)
    log.info("login_code_reset", user_id=str(user.id))

    notifier.notify_login_code_reset(user, old_code, user.login_code)
    return user, old_code


def reset_company_code(
    db: Session, company_id: uuid.UUID, actor: ActorContext, *, notifier: NotificationService
) -> tuple[Company, str]:
    _require_super_admin(actor)
    company = _get_company(db, company_id)

    old_code = company.company_code
    company.company_code = _unique_code(db, Company.company_code, "company code")
    db.commit()
    db.refresh(company)
    log.info("company_code_reset", company_id=str(company.id))

    notifier.notify_company_code_reset(actor.user_id, company, old_code, company.company_code)
    return company, old_code


def update_customer_details(
    db: Session,
    company_id: uuid.UUID,
    data: CustomerDetailsUpdate,
    actor: ActorContext,
    *,
    notifier: NotificationService,
) -> tuple[Company, User, bool]:
    """Rename the company and update its contact user in one transaction.

    Returns (company, user, created) where created tells whether the contact user is new.
    """
    _require_super_admin(actor)
    company = _get_company(db, company_id)

    if data.user_id:
        user = db.query(User).filter(User.id == data.user_id, User.company_id == company.id).first()
        if not user:
            raise NotFoundError("User not found in this company", field="user_id")
    else:
        user = db.query(User).filter(User.company_id == company.id).order_by(User.created_at).first()

    existing_id = user.id if user else None
    if _taken(db, User.email, data.email, existing_id):
        raise ConflictError(f"Email {data.email} is already in use by another user", field="email")
    if _taken(db, User.login_code, data.login_code, existing_id):
        raise ConflictError("Login code is already in use by another user", field="login_code")

    created = user is None
    try:
        with transaction(db):
            company.company_name = data.company_name
            company.primary_contact = f"{data.first_name} {data.last_name}"
            if created:
                user = User(company_id=company.id, is_active=True)
                db.add(user)
            user.first_name = data.first_name
            user.last_name = data.last_name
            user.email = data.email
            user.login_code = data.login_code
            user.role = data.role
    except IntegrityError as e:
        log.warning("customer_details_conflict", company_id=str(company_id), error=str(e.orig))
        raise ConflictError("Email or login code is already in use by another user")
    db.refresh(company)
    db.refresh(user)
    log.info("customer_details_updated", company_id=str(company.id), user_id=str(user.id), user_created=created)

    notifier.notify_customer_details_updated(actor.user_id, company)
    if created:
        notifier.notify_user_created(actor.user_id, user)
    return company, user, created
