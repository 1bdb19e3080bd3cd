from __future__ import annotations

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from portal_crm.tenancy.permissions import CollaboratorRole


PlanType = Literal["basic", "professional", "enterprise"]
ClientStatus = Literal["active", "inactive"]
LicenseStatus = Literal["active", "suspended", "expired"]
InviteStatus = Literal["not_requested", "sent", "failed"]


class ClientCreate(BaseModel):
    name: str = Field(min_length=1)
    company_name: str = Field(min_length=1)
    email: EmailStr
    tax_id: str = Field(min_length=1, max_length=32)
    phone: str | None = None
    plan: PlanType = "basic"
    status: ClientStatus = "active"


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    company_name: str
    email: str
    tax_id: str
    phone: str | None
    plan: PlanType
    status: ClientStatus
    created_at: datetime
    updated_at: datetime


class LicenseCreate(BaseModel):
    type: PlanType | None = None
    user_limit: int | None = Field(default=None, ge=1)
    start_date: date | None = None
    expiration_date: date | None = None


class LicenseUserLimitUpdate(BaseModel):
    user_limit: int = Field(ge=1)


class LicenseRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    type: PlanType
    status: LicenseStatus
    start_date: date
    expiration_date: date
    user_limit: int
    created_at: datetime
    updated_at: datetime


class LicenseUsageRead(BaseModel):
    license: LicenseRead
    collaborator_count: int
    seats_available: int


class CollaboratorCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    role: CollaboratorRole = "closer"
    send_invite: bool = True


class CollaboratorRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    license_id: UUID
    auth_user_id: str | None
    name: str
    email: str
    role: CollaboratorRole
    permissions: list[str]
    last_login_at: datetime | None
    created_at: datetime
    updated_at: datetime


class CollaboratorCreateResult(BaseModel):
    collaborator: CollaboratorRead
    invite_status: InviteStatus
    invite_error: str | None = None


class InviteAcceptRequest(BaseModel):
    token: str = Field(min_length=1)


class ActorRead(BaseModel):
    user_id: str
    client_id: UUID | None
    collaborator_id: UUID | None
    role: str | None
    permissions: list[str]
    is_platform_admin: bool
