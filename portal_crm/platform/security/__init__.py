from portal_crm.platform.security.context import AuthContext
from portal_crm.platform.security.errors import AuthorizationError, TenantScopeError
from portal_crm.platform.security.repository import BaseRepository
from portal_crm.platform.security.rls import apply_tenant_filter, is_admin_bypass, validate_tenant_write

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "TenantScopeError",
    "BaseRepository",
    "apply_tenant_filter",
    "is_admin_bypass",
    "validate_tenant_write",
]
