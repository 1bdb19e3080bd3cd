from __future__ import annotations

from typing import Literal

CollaboratorRole = Literal["administrator", "closer", "partnership_director", "partner"]

WILDCARD = "*"
PLATFORM_ADMIN_ROLE = "platform.admin"

_CLOSER_PERMISSIONS = [
    "read_companies",
    "write_companies",
    "read_people",
    "write_people",
    "read_deals",
    "write_deals",
    "read_tasks",
    "write_tasks",
    "read_custom_fields",
]

ROLE_PERMISSIONS: dict[str, list[str]] = {
    "administrator": [WILDCARD],
    "closer": _CLOSER_PERMISSIONS,
    "partnership_director": [*_CLOSER_PERMISSIONS, "manage_partners", "manage_custom_fields"],
    "partner": [
        "read_companies",
        "read_people",
        "read_deals",
        "read_tasks",
        "read_custom_fields",
    ],
}

ENTITY_READ_PERMISSIONS = {
    "companies": "read_companies",
    "people": "read_people",
    "partners": "read_companies",
}

ENTITY_WRITE_PERMISSIONS = {
    "companies": "write_companies",
    "people": "write_people",
    "partners": "manage_partners",
}


def permissions_for_role(role: str) -> set[str]:
    return set(ROLE_PERMISSIONS.get(role, []))


def has_permission(granted: set[str], permission: str) -> bool:
    return WILDCARD in granted or permission in granted
