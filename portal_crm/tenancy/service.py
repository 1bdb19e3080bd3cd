from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portal_crm import audit, events
from portal_crm.core.auth import AuthUser
from portal_crm.context import get_correlation_id
from portal_crm.core.config import get_settings
from portal_crm.metrics import observe_invite, observe_user_limit_rejection
from portal_crm.platform.security.context import AuthContext
from portal_crm.tenancy.invites import InviteDeliveryError, InviteRequest, build_invite_url, get_invite_client
from portal_crm.tenancy.models import Client, Collaborator, CollaboratorInvite, License
from portal_crm.tenancy.permissions import PLATFORM_ADMIN_ROLE, has_permission, permissions_for_role
from portal_crm.tenancy.schemas import (
    ClientCreate,
    ClientRead,
    CollaboratorCreate,
    CollaboratorCreateResult,
    CollaboratorRead,
    InviteAcceptRequest,
    LicenseCreate,
    LicenseRead,
    LicenseUsageRead,
    LicenseUserLimitUpdate,
)


logger = logging.getLogger("portal_crm.tenancy")
tracer = trace.get_tracer("portal_crm.tenancy")

TENANT_NOT_RESOLVED = "collaborator not found for authenticated user"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class ActorUser:
    user_id: str
    client_id: uuid.UUID | None
    permissions: set[str]
    collaborator_id: uuid.UUID | None = None
    role: str | None = None
    is_platform_admin: bool = False
    correlation_id: str | None = None
    _auth_context: AuthContext | None = field(default=None, repr=False, compare=False)

    def has(self, permission: str) -> bool:
        return self.is_platform_admin or has_permission(self.permissions, permission)


def to_auth_context(actor_user: ActorUser) -> AuthContext:
    if actor_user._auth_context is None:
        actor_user._auth_context = AuthContext(
            user_id=actor_user.user_id,
            client_id=str(actor_user.client_id) if actor_user.client_id is not None else None,
            correlation_id=actor_user.correlation_id,
            is_platform_admin=actor_user.is_platform_admin,
            role=actor_user.role,
            permissions=sorted(actor_user.permissions),
        )
    return actor_user._auth_context


def resolve_actor(session: Session, auth_user: AuthUser, correlation_id: str | None = None) -> ActorUser:
    """Map an authenticated identity onto its collaborator row and tenant."""

    is_platform_admin = PLATFORM_ADMIN_ROLE in {role.lower() for role in auth_user.roles}
    collaborator = session.scalar(select(Collaborator).where(Collaborator.auth_user_id == auth_user.sub))

    if collaborator is None:
        if not is_platform_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=TENANT_NOT_RESOLVED)
        return ActorUser(
            user_id=auth_user.sub,
            client_id=None,
            permissions=set(),
            is_platform_admin=True,
            correlation_id=correlation_id,
        )

    permissions = permissions_for_role(collaborator.role) | set(collaborator.permissions or [])
    return ActorUser(
        user_id=auth_user.sub,
        client_id=collaborator.client_id,
        permissions=permissions,
        collaborator_id=collaborator.id,
        role=collaborator.role,
        is_platform_admin=is_platform_admin,
        correlation_id=correlation_id,
    )


def _require_platform_admin(actor_user: ActorUser) -> None:
    if not actor_user.is_platform_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing role: platform.admin")


def _require_client_access(actor_user: ActorUser, client_id: uuid.UUID) -> None:
    if actor_user.is_platform_admin:
        return
    if actor_user.client_id != client_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="client not found")


class ClientService:
    def create_client(self, session: Session, dto: ClientCreate, actor_user: ActorUser) -> ClientRead:
        _require_platform_admin(actor_user)
        client = Client(
            name=dto.name.strip(),
            company_name=dto.company_name.strip(),
            email=str(dto.email),
            tax_id=dto.tax_id.strip(),
            phone=dto.phone,
            plan=dto.plan,
            status=dto.status,
        )
        session.add(client)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="client with this tax_id already exists")
        session.refresh(client)

        read_model = ClientRead.model_validate(client)
        audit.record(
            actor_user.user_id,
            str(client.id),
            "client",
            str(client.id),
            "create",
            None,
            read_model.model_dump(mode="json"),
        )
        events.publish(events.build_envelope("tenancy.client.created", client.id, {"client_id": str(client.id)}))
        return read_model

    def list_clients(self, session: Session, actor_user: ActorUser) -> list[ClientRead]:
        stmt = select(Client).order_by(Client.name.asc())
        if not actor_user.is_platform_admin:
            stmt = stmt.where(Client.id == actor_user.client_id)
        return [ClientRead.model_validate(row) for row in session.scalars(stmt).all()]

    def get_client(self, session: Session, client_id: uuid.UUID, actor_user: ActorUser) -> ClientRead:
        _require_client_access(actor_user, client_id)
        client = session.get(Client, client_id)
        if client is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="client not found")
        return ClientRead.model_validate(client)


class LicenseService:
    def create_license(
        self,
        session: Session,
        client_id: uuid.UUID,
        dto: LicenseCreate,
        actor_user: ActorUser,
    ) -> LicenseRead:
        """Create the client's license together with its administrator collaborator."""

        _require_platform_admin(actor_user)
        settings = get_settings()
        client = session.get(Client, client_id)
        if client is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="client not found")

        existing = session.scalar(select(License).where(License.client_id == client_id))
        if existing is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="client already has a license")

        start_date = dto.start_date or date.today()
        license_row = License(
            client_id=client_id,
            type=dto.type or client.plan,
            status="active",
            start_date=start_date,
            expiration_date=dto.expiration_date or start_date + timedelta(days=settings.license_default_days),
            user_limit=dto.user_limit or settings.default_user_limit,
        )
        session.add(license_row)
        session.flush()

        administrator = Collaborator(
            client_id=client_id,
            license_id=license_row.id,
            name=client.name,
            email=client.email,
            role="administrator",
            permissions=sorted(permissions_for_role("administrator")),
        )
        session.add(administrator)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="client already has a license")
        session.refresh(license_row)

        read_model = LicenseRead.model_validate(license_row)
        audit.record(
            actor_user.user_id,
            str(client_id),
            "license",
            str(license_row.id),
            "create",
            None,
            read_model.model_dump(mode="json"),
        )
        events.publish(
            events.build_envelope(
                "tenancy.license.created",
                client_id,
                {"license_id": str(license_row.id), "administrator_id": str(administrator.id)},
            )
        )
        return read_model

    def get_license_usage(self, session: Session, client_id: uuid.UUID, actor_user: ActorUser) -> LicenseUsageRead:
        _require_client_access(actor_user, client_id)
        license_row = session.scalar(select(License).where(License.client_id == client_id))
        if license_row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="license not found")
        count = _count_collaborators(session, license_row.id)
        return LicenseUsageRead(
            license=LicenseRead.model_validate(license_row),
            collaborator_count=count,
            seats_available=max(0, license_row.user_limit - count),
        )

    def update_user_limit(
        self,
        session: Session,
        license_id: uuid.UUID,
        dto: LicenseUserLimitUpdate,
        actor_user: ActorUser,
    ) -> LicenseRead:
        _require_platform_admin(actor_user)
        license_row = session.scalar(select(License).where(License.id == license_id).with_for_update())
        if license_row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="license not found")

        count = _count_collaborators(session, license_row.id)
        if dto.user_limit < count:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"user_limit cannot be lower than the current collaborator count ({count})",
            )

        before = LicenseRead.model_validate(license_row).model_dump(mode="json")
        license_row.user_limit = dto.user_limit
        license_row.updated_at = utcnow()
        session.commit()
        session.refresh(license_row)
        read_model = LicenseRead.model_validate(license_row)
        audit.record(
            actor_user.user_id,
            str(license_row.client_id),
            "license",
            str(license_row.id),
            "update_user_limit",
            before,
            read_model.model_dump(mode="json"),
        )
        return read_model


def _count_collaborators(session: Session, license_id: uuid.UUID) -> int:
    return int(
        session.scalar(select(func.count()).select_from(Collaborator).where(Collaborator.license_id == license_id)) or 0
    )


def check_user_limit(existing_count: int, user_limit: int) -> None:
    if existing_count >= user_limit:
        observe_user_limit_rejection()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"user limit reached ({existing_count}/{user_limit})",
        )


class CollaboratorService:
    def list_collaborators(self, session: Session, client_id: uuid.UUID, actor_user: ActorUser) -> list[CollaboratorRead]:
        _require_client_access(actor_user, client_id)
        rows = session.scalars(
            select(Collaborator).where(Collaborator.client_id == client_id).order_by(Collaborator.created_at.asc())
        ).all()
        return [CollaboratorRead.model_validate(row) for row in rows]

    def create_collaborator(
        self,
        session: Session,
        client_id: uuid.UUID,
        dto: CollaboratorCreate,
        actor_user: ActorUser,
    ) -> CollaboratorCreateResult:
        _require_client_access(actor_user, client_id)
        if not actor_user.has("manage_collaborators"):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: manage_collaborators")

        license_row = session.scalar(select(License).where(License.client_id == client_id).with_for_update())
        if license_row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="license not found")
        if license_row.status != "active" or license_row.expiration_date < date.today():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="license is not active")

        check_user_limit(_count_collaborators(session, license_row.id), license_row.user_limit)

        email = str(dto.email).lower()
        duplicate = session.scalar(
            select(Collaborator.id).where(Collaborator.client_id == client_id, func.lower(Collaborator.email) == email)
        )
        if duplicate is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="collaborator email already registered")

        collaborator = Collaborator(
            client_id=client_id,
            license_id=license_row.id,
            name=dto.name.strip(),
            email=email,
            role=dto.role,
            permissions=sorted(permissions_for_role(dto.role)),
        )
        session.add(collaborator)
        session.flush()

        invite: CollaboratorInvite | None = None
        if dto.send_invite:
            invite = self._new_invite(collaborator.id)
            session.add(invite)

        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="collaborator email already registered")
        session.refresh(collaborator)

        read_model = CollaboratorRead.model_validate(collaborator)
        audit.record(
            actor_user.user_id,
            str(client_id),
            "collaborator",
            str(collaborator.id),
            "create",
            None,
            read_model.model_dump(mode="json"),
        )
        events.publish(
            events.build_envelope(
                "tenancy.collaborator.created",
                client_id,
                {"collaborator_id": str(collaborator.id), "role": collaborator.role},
            )
        )

        if invite is None:
            return CollaboratorCreateResult(collaborator=read_model, invite_status="not_requested")
        invite_status, invite_error = self._deliver(collaborator, invite)
        return CollaboratorCreateResult(collaborator=read_model, invite_status=invite_status, invite_error=invite_error)

    def resend_invite(
        self,
        session: Session,
        collaborator_id: uuid.UUID,
        actor_user: ActorUser,
    ) -> CollaboratorCreateResult:
        collaborator = session.get(Collaborator, collaborator_id)
        if collaborator is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="collaborator not found")
        _require_client_access(actor_user, collaborator.client_id)
        if not actor_user.has("manage_collaborators"):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: manage_collaborators")
        if collaborator.auth_user_id is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="collaborator already accepted an invite")

        # Only the newest token stays redeemable.
        for stale in session.scalars(
            select(CollaboratorInvite).where(
                CollaboratorInvite.collaborator_id == collaborator.id,
                CollaboratorInvite.used_at.is_(None),
            )
        ):
            stale.used_at = utcnow()
        invite = self._new_invite(collaborator.id)
        session.add(invite)
        session.commit()
        session.refresh(collaborator)

        invite_status, invite_error = self._deliver(collaborator, invite)
        return CollaboratorCreateResult(
            collaborator=CollaboratorRead.model_validate(collaborator),
            invite_status=invite_status,
            invite_error=invite_error,
        )

    def accept_invite(self, session: Session, dto: InviteAcceptRequest, auth_user_id: str) -> CollaboratorRead:
        invite = session.scalar(select(CollaboratorInvite).where(CollaboratorInvite.token == dto.token))
        if invite is None or invite.used_at is not None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="invalid or already used invite")
        if _as_utc(invite.expires_at) < utcnow():
            raise HTTPException(status_code=status.HTTP_410_GONE, detail="invite has expired")

        bound = session.scalar(select(Collaborator.id).where(Collaborator.auth_user_id == auth_user_id))
        if bound is not None and bound != invite.collaborator_id:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="auth user already bound to a collaborator")

        collaborator = invite.collaborator
        collaborator.auth_user_id = auth_user_id
        collaborator.last_login_at = utcnow()
        invite.used_at = utcnow()
        session.commit()
        session.refresh(collaborator)

        events.publish(
            events.build_envelope(
                "tenancy.invite.accepted",
                collaborator.client_id,
                {"collaborator_id": str(collaborator.id)},
            )
        )
        return CollaboratorRead.model_validate(collaborator)

    def _new_invite(self, collaborator_id: uuid.UUID) -> CollaboratorInvite:
        settings = get_settings()
        return CollaboratorInvite(
            collaborator_id=collaborator_id,
            token=secrets.token_urlsafe(32),
            expires_at=utcnow() + timedelta(hours=settings.invite_expiry_hours),
        )

    def _deliver(self, collaborator: Collaborator, invite: CollaboratorInvite) -> tuple[Any, str | None]:
        # A failed delivery leaves the collaborator in place; the invite can be resent.
        request = InviteRequest(
            collaborator_id=str(collaborator.id),
            name=collaborator.name,
            email=collaborator.email,
            invite_url=build_invite_url(invite.token),
        )
        with tracer.start_as_current_span("invites.deliver") as span:
            span.set_attribute("collaborator_id", request.collaborator_id)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                get_invite_client().send(request)
            except InviteDeliveryError as exc:
                span.set_attribute("invite.status", "failed")
                observe_invite("failed")
                logger.warning(
                    "collaborator_invite_failed",
                    extra={"collaborator_id": str(collaborator.id), "client_id": str(collaborator.client_id), "error": str(exc)},
                )
                return "failed", str(exc)

            span.set_attribute("invite.status", "sent")
        observe_invite("sent")
        logger.info(
            "collaborator_invite_sent",
            extra={"collaborator_id": str(collaborator.id), "client_id": str(collaborator.client_id)},
        )
        return "sent", None


client_service = ClientService()
license_service = LicenseService()
collaborator_service = CollaboratorService()
