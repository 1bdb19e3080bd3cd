from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from portal_crm.core.auth import AuthUser, get_current_user as get_auth_user
from portal_crm.core.config import get_settings
from portal_crm.crm.api import custom_fields_router, opportunities_router, records_router
from portal_crm.metrics import generate_metrics_payload, metrics_content_type
from portal_crm.tenancy.api import get_current_user, router as tenancy_router
from portal_crm.tenancy.permissions import PLATFORM_ADMIN_ROLE
from portal_crm.tenancy.schemas import ActorRead
from portal_crm.tenancy.service import ActorUser

router = APIRouter()
router.include_router(tenancy_router)
router.include_router(custom_fields_router)
router.include_router(records_router)
router.include_router(opportunities_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", response_model=ActorRead, tags=["auth"])
def me(user: ActorUser = Depends(get_current_user)) -> ActorRead:
    return ActorRead(
        user_id=user.user_id,
        client_id=user.client_id,
        collaborator_id=user.collaborator_id,
        role=user.role,
        permissions=sorted(user.permissions),
        is_platform_admin=user.is_platform_admin,
    )


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_auth_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if PLATFORM_ADMIN_ROLE not in {role.lower() for role in user.roles}:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing role: {PLATFORM_ADMIN_ROLE}")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
