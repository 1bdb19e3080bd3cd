from portal_crm.crm.models import (
    CRMCompany,
    CRMEntityRelationship,
    CRMFieldDefinition,
    CRMFieldValue,
    CRMOpportunity,
    CRMPartner,
    CRMPerson,
)
from portal_crm.tenancy.models import Client, Collaborator, CollaboratorInvite, License

__all__ = [
    "Client",
    "License",
    "Collaborator",
    "CollaboratorInvite",
    "CRMCompany",
    "CRMPerson",
    "CRMPartner",
    "CRMOpportunity",
    "CRMFieldDefinition",
    "CRMFieldValue",
    "CRMEntityRelationship",
]
