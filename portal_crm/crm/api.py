from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from portal_crm.api.errors import error_response, http_error_response
from portal_crm.core.database import get_db
from portal_crm.crm.forms import FormValidationError
from portal_crm.crm.schemas import (
    FieldDefinitionCreate,
    FieldDefinitionRead,
    FieldDefinitionUpdate,
    FieldReorderRequest,
    FieldValueRead,
    FieldValuesRead,
    FieldValuesWrite,
    FieldValueWrite,
    FormRead,
    FormSubmission,
    OpportunityCreate,
    OpportunityRead,
    RecordCreate,
    RecordRead,
    RelationshipCreate,
    RelationshipRead,
)
from portal_crm.crm.service import (
    field_definition_service,
    field_value_service,
    form_service,
    opportunity_service,
    record_service,
    relationship_service,
)
from portal_crm.tenancy.api import get_current_user
from portal_crm.tenancy.service import ActorUser


custom_fields_router = APIRouter(prefix="/api/crm", tags=["crm.custom_fields"])
records_router = APIRouter(prefix="/api/crm", tags=["crm.records"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])


@custom_fields_router.get("/custom-fields/{entity_type}", response_model=list[FieldDefinitionRead])
def list_custom_fields(
    request: Request,
    entity_type: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        return field_definition_service.list_definitions(db, entity_type, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_custom_fields_list_failed")


@custom_fields_router.post(
    "/custom-fields/{entity_type}",
    response_model=FieldDefinitionRead,
    status_code=status.HTTP_201_CREATED,
)
def create_custom_field(
    request: Request,
    entity_type: str,
    dto: FieldDefinitionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        return field_definition_service.create_definition(db, entity_type, dto, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_custom_fields_create_failed")


@custom_fields_router.put("/custom-fields/{entity_type}/order", response_model=list[FieldDefinitionRead])
def reorder_custom_fields(
    request: Request,
    entity_type: str,
    dto: FieldReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        return field_definition_service.reorder(db, entity_type, dto.field_ids, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_custom_fields_reorder_failed")


@custom_fields_router.patch("/custom-fields/definitions/{field_id}", response_model=FieldDefinitionRead)
def update_custom_field(
    request: Request,
    field_id: uuid.UUID,
    dto: FieldDefinitionUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        return field_definition_service.update_definition(db, field_id, dto, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_custom_fields_update_failed")


@custom_fields_router.delete("/custom-fields/definitions/{field_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_custom_field(
    request: Request,
    field_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        field_definition_service.delete_definition(db, field_id, user)
        return {"status": "deleted"}
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_custom_fields_delete_failed")


@custom_fields_router.get(
    "/custom-fields/{entity_type}/records/{entity_id}/values",
    response_model=FieldValuesRead,
)
def get_custom_field_values(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldValuesRead | JSONResponse:
    try:
        values = field_value_service.get_values(db, entity_type, entity_id, user)
        return FieldValuesRead(entity_type=entity_type, entity_id=entity_id, values=values)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_custom_field_values_get_failed")


@custom_fields_router.put(
    "/custom-fields/{entity_type}/records/{entity_id}/values",
    response_model=FieldValuesRead,
)
def set_custom_field_values(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    dto: FieldValuesWrite,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldValuesRead | JSONResponse:
    try:
        values = field_value_service.set_values(db, entity_type, entity_id, dto.values, user)
        return FieldValuesRead(entity_type=entity_type, entity_id=entity_id, values=values)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_custom_field_values_set_failed")


@custom_fields_router.put(
    "/custom-fields/{entity_type}/records/{entity_id}/values/{field_id}",
    response_model=FieldValueRead,
)
def set_custom_field_value(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    field_id: uuid.UUID,
    dto: FieldValueWrite,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldValueRead | JSONResponse:
    try:
        return field_value_service.set_value(db, entity_type, entity_id, field_id, dto.value, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_custom_field_value_set_failed")


@custom_fields_router.get("/custom-fields/{entity_type}/records/{entity_id}/form", response_model=FormRead)
def render_custom_field_form(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FormRead | JSONResponse:
    try:
        return form_service.render_form(db, entity_type, entity_id, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_custom_fields_form_failed")


@custom_fields_router.post("/custom-fields/{entity_type}/records/{entity_id}/form", response_model=FormRead)
def submit_custom_field_form(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    dto: FormSubmission,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FormRead | JSONResponse:
    try:
        return form_service.submit_form(db, entity_type, entity_id, dto.values, user)
    except FormValidationError as exc:
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="crm_custom_fields_form_invalid",
            message=str(exc),
            details={"fields": exc.errors},
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_custom_fields_form_failed")


@records_router.get("/records/{entity_type}", response_model=list[RecordRead])
def list_records(
    request: Request,
    entity_type: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[RecordRead] | JSONResponse:
    try:
        return record_service.list_records(db, entity_type, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_record_list_failed")


@records_router.post("/records/{entity_type}", response_model=RecordRead, status_code=status.HTTP_201_CREATED)
def create_record(
    request: Request,
    entity_type: str,
    dto: RecordCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RecordRead | JSONResponse:
    try:
        return record_service.create_record(db, entity_type, dto, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_record_create_failed")


@records_router.get("/records/{entity_type}/{record_id}", response_model=RecordRead)
def get_record(
    request: Request,
    entity_type: str,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RecordRead | JSONResponse:
    try:
        return record_service.get_record(db, entity_type, record_id, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_record_get_failed")


@records_router.delete("/records/{entity_type}/{record_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_record(
    request: Request,
    entity_type: str,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        record_service.delete_record(db, entity_type, record_id, user)
        return {"status": "deleted"}
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_record_delete_failed")


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        return opportunity_service.list_opportunities(db, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_opportunity_list_failed")


@opportunities_router.post("/opportunities", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.create_opportunity(db, dto, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_opportunity_create_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.get_opportunity(db, opportunity_id, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_opportunity_get_failed")


@opportunities_router.delete("/opportunities/{opportunity_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        opportunity_service.delete_opportunity(db, opportunity_id, user)
        return {"status": "deleted"}
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_opportunity_delete_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/relationships", response_model=list[RelationshipRead])
def list_relationships(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[RelationshipRead] | JSONResponse:
    try:
        return relationship_service.list_relationships(db, opportunity_id, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_relationship_list_failed")


@opportunities_router.post(
    "/opportunities/{opportunity_id}/relationships",
    response_model=RelationshipRead,
    status_code=status.HTTP_201_CREATED,
)
def add_relationship(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: RelationshipCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RelationshipRead | JSONResponse:
    try:
        return relationship_service.add_relationship(db, opportunity_id, dto, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_relationship_create_failed")


@opportunities_router.delete("/relationships/{relationship_id}", response_model=None, status_code=status.HTTP_200_OK)
def remove_relationship(
    request: Request,
    relationship_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        relationship_service.remove_relationship(db, relationship_id, user)
        return {"status": "deleted"}
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_relationship_delete_failed")
