from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class AuthContext:
    """Authorization context used by the tenant row filter."""

    user_id: str
    client_id: str | None = None
    correlation_id: str | None = None
    is_platform_admin: bool = False
    role: str | None = None
    permissions: list[str] = field(default_factory=list)
