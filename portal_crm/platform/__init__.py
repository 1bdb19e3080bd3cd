from portal_crm.platform.security import (
    AuthContext,
    AuthorizationError,
    BaseRepository,
    TenantScopeError,
    apply_tenant_filter,
    validate_tenant_write,
)

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "BaseRepository",
    "TenantScopeError",
    "apply_tenant_filter",
    "validate_tenant_write",
]
