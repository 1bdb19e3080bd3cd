from portal_crm.tenancy.api import router
from portal_crm.tenancy.models import Client, Collaborator, CollaboratorInvite, License
from portal_crm.tenancy.service import ActorUser, check_user_limit

__all__ = [
    "router",
    "Client",
    "License",
    "Collaborator",
    "CollaboratorInvite",
    "ActorUser",
    "check_user_limit",
]
