import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from ..models.models import UserRole
from .requests import _required_text


def _email(v):
    v = _required_text(v).lower()
    if "@" not in v or v.startswith("@") or v.endswith("@"):
        raise ValueError("Invalid email address")
    return v


class UserCreate(BaseModel):
    first_name: str
    last_name: str
    email: str
    role: UserRole
    company_id: Optional[uuid.UUID] = None

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def not_blank(cls, v):
        return _required_text(v)

    @field_validator("email", mode="before")
    @classmethod
    def check_email(cls, v):
        return _email(v)


class RoleChange(BaseModel):
    role: UserRole


class CustomerDetailsUpdate(BaseModel):
    # Without user_id the company's earliest user is updated, or one is created
    user_id: Optional[uuid.UUID] = None
    company_name: str
    first_name: str
    last_name: str
    email: str
    login_code: str
    role: UserRole = UserRole.CUSTOMER_ADMIN

    @field_validator("company_name", "first_name", "last_name", mode="before")
    @classmethod
    def not_blank(cls, v):
        return _required_text(v)

    @field_validator("email", mode="before")
    @classmethod
    def check_email(cls, v):
        return _email(v)

    @field_validator("login_code", mode="before")
    @classmethod
    def check_login_code(cls, v):
        v = _required_text(v)
        if len(v) < 7:
            raise ValueError("Login code must be at least 7 characters")
        return v

    @field_validator("role")
    @classmethod
    def customer_role(cls, v):
        if v not in (UserRole.CUSTOMER, UserRole.CUSTOMER_ADMIN):
            raise ValueError("Role must be customer or customer_admin")
        return v


class UserResponse(BaseModel):
    id: uuid.UUID
    first_name: str
    last_name: str
    email: str
    role: UserRole
    company_id: Optional[uuid.UUID] = None
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class CompanyResponse(BaseModel):
    id: uuid.UUID
    company_name: str
    company_code: str
    primary_contact: str
    email: str

    class Config:
        from_attributes = True


class CodeReset(BaseModel):
    old_code: Optional[str] = None
    new_code: str


class CustomerDetailsResult(BaseModel):
    company: CompanyResponse
    user: UserResponse
    user_created: bool
