from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from portal_crm.api.errors import ActorResolutionError, http_error_response
from portal_crm.context import get_correlation_id
from portal_crm.core.auth import ANONYMOUS_SUBJECT, AuthUser, get_current_user as get_auth_user
from portal_crm.core.database import get_db
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
from portal_crm.tenancy.service import (
    ActorUser,
    client_service,
    collaborator_service,
    license_service,
    resolve_actor,
)


logger = logging.getLogger("portal_crm.tenancy")

router = APIRouter(prefix="/api/tenancy", tags=["tenancy"])


def get_current_user(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    db: Session = Depends(get_db),
) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    if auth_user.sub == ANONYMOUS_SUBJECT:
        raise ActorResolutionError(status.HTTP_401_UNAUTHORIZED, "not_authenticated", "authentication required")
    try:
        return resolve_actor(db, auth_user, correlation_id=correlation_id)
    except HTTPException as exc:
        logger.warning("tenant_not_resolved", extra={"error": str(exc.detail)})
        raise ActorResolutionError(exc.status_code, "tenant_not_resolved", str(exc.detail)) from exc


@router.post("/clients", response_model=ClientRead, status_code=status.HTTP_201_CREATED)
def create_client(
    request: Request,
    dto: ClientCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.create_client(db, dto, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "tenancy_client_create_failed")


@router.get("/clients", response_model=list[ClientRead])
def list_clients(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ClientRead] | JSONResponse:
    try:
        return client_service.list_clients(db, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "tenancy_client_list_failed")


@router.get("/clients/{client_id}", response_model=ClientRead)
def get_client(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.get_client(db, client_id, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "tenancy_client_get_failed")


@router.post("/clients/{client_id}/license", response_model=LicenseRead, status_code=status.HTTP_201_CREATED)
def create_license(
    request: Request,
    client_id: uuid.UUID,
    dto: LicenseCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LicenseRead | JSONResponse:
    try:
        return license_service.create_license(db, client_id, dto, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "tenancy_license_create_failed")


@router.get("/clients/{client_id}/license", response_model=LicenseUsageRead)
def get_license_usage(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LicenseUsageRead | JSONResponse:
    try:
        return license_service.get_license_usage(db, client_id, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "tenancy_license_get_failed")


@router.patch("/licenses/{license_id}/user-limit", response_model=LicenseRead)
def update_user_limit(
    request: Request,
    license_id: uuid.UUID,
    dto: LicenseUserLimitUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LicenseRead | JSONResponse:
    try:
        return license_service.update_user_limit(db, license_id, dto, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "tenancy_license_update_failed")


@router.get("/clients/{client_id}/collaborators", response_model=list[CollaboratorRead])
def list_collaborators(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CollaboratorRead] | JSONResponse:
    try:
        return collaborator_service.list_collaborators(db, client_id, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "tenancy_collaborator_list_failed")


@router.post(
    "/clients/{client_id}/collaborators",
    response_model=CollaboratorCreateResult,
    status_code=status.HTTP_201_CREATED,
)
def create_collaborator(
    request: Request,
    client_id: uuid.UUID,
    dto: CollaboratorCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CollaboratorCreateResult | JSONResponse:
    try:
        return collaborator_service.create_collaborator(db, client_id, dto, user)
    except HTTPException as exc:
        code = "user_limit_reached" if str(exc.detail).startswith("user limit reached") else "tenancy_collaborator_create_failed"
        return http_error_response(request, exc, code)


@router.post("/collaborators/{collaborator_id}/invite", response_model=CollaboratorCreateResult)
def resend_invite(
    request: Request,
    collaborator_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CollaboratorCreateResult | JSONResponse:
    try:
        return collaborator_service.resend_invite(db, collaborator_id, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "tenancy_invite_send_failed")


@router.post("/invites/accept", response_model=CollaboratorRead)
def accept_invite(
    request: Request,
    dto: InviteAcceptRequest,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_auth_user),
) -> CollaboratorRead | JSONResponse:
    if auth_user.sub == ANONYMOUS_SUBJECT:
        raise ActorResolutionError(status.HTTP_401_UNAUTHORIZED, "not_authenticated", "authentication required")
    try:
        return collaborator_service.accept_invite(db, dto, auth_user.sub)
    except HTTPException as exc:
        return http_error_response(request, exc, "tenancy_invite_accept_failed")
