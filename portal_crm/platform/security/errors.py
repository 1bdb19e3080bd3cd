from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for tenant scoping failures."""


class TenantScopeError(AuthorizationError):
    """Raised when a write targets a row owned by another tenant."""

    def __init__(self, resource: str, client_id: str | None) -> None:
        self.resource = resource
        self.client_id = client_id
        super().__init__(f"Out-of-scope client_id for resource '{resource}'")
