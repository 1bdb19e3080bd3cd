from portal_crm.crm.api import custom_fields_router, opportunities_router, records_router
from portal_crm.crm.cache import QueryCache, query_cache
from portal_crm.crm.forms import UnsupportedFieldTypeError, build_form, coerce_submission, control_for
from portal_crm.crm.models import (
    CRMCompany,
    CRMEntityRelationship,
    CRMFieldDefinition,
    CRMFieldValue,
    CRMOpportunity,
    CRMPartner,
    CRMPerson,
)

__all__ = [
    "custom_fields_router",
    "records_router",
    "opportunities_router",
    "QueryCache",
    "query_cache",
    "UnsupportedFieldTypeError",
    "build_form",
    "coerce_submission",
    "control_for",
    "CRMCompany",
    "CRMPerson",
    "CRMPartner",
    "CRMOpportunity",
    "CRMFieldDefinition",
    "CRMFieldValue",
    "CRMEntityRelationship",
]
