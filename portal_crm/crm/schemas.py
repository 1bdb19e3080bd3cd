from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


EntityType = Literal["companies", "people", "partners"]
FieldType = Literal["text", "textarea", "number", "boolean", "select"]
ValueKind = Literal["text", "number", "boolean", "select"]
FormControlKind = Literal["input", "textarea", "number", "switch", "select"]

ENTITY_TYPES: tuple[str, ...] = ("companies", "people", "partners")

# Types the portal layout declares; only FieldType has storage and a form control.
DECLARED_FIELD_TYPES: tuple[str, ...] = (
    "text",
    "textarea",
    "number",
    "boolean",
    "select",
    "multiselect",
    "date",
    "datetime",
    "file",
)

VALUE_KIND_BY_FIELD_TYPE: dict[str, str] = {
    "text": "text",
    "textarea": "text",
    "number": "number",
    "boolean": "boolean",
    "select": "select",
}


class TextValue(BaseModel):
    kind: Literal["text"] = "text"
    value: str


class NumberValue(BaseModel):
    kind: Literal["number"] = "number"
    value: float


class BooleanValue(BaseModel):
    kind: Literal["boolean"] = "boolean"
    value: bool


class SelectValue(BaseModel):
    kind: Literal["select"] = "select"
    value: str


FieldValue = Annotated[
    TextValue | NumberValue | BooleanValue | SelectValue,
    Field(discriminator="kind"),
]

field_value_adapter = TypeAdapter(FieldValue)


class FieldDefinitionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str | None = None
    field_type: FieldType
    is_required: bool = False
    is_unique: bool = False
    options: list[str] | None = None


class FieldDefinitionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    field_type: FieldType | None = None
    is_required: bool | None = None
    is_unique: bool | None = None
    options: list[str] | None = None


class FieldDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    entity_type: EntityType
    name: str
    description: str | None
    field_type: FieldType
    is_required: bool
    is_unique: bool
    options: list[str] | None
    order_index: int
    created_at: datetime
    updated_at: datetime


class FieldReorderRequest(BaseModel):
    field_ids: list[UUID]


class FieldValueWrite(BaseModel):
    value: Any = None


class FieldValuesWrite(BaseModel):
    values: dict[UUID, Any]


class FieldValuesRead(BaseModel):
    entity_type: EntityType
    entity_id: UUID
    values: dict[UUID, FieldValue]


class FieldValueRead(BaseModel):
    entity_type: EntityType
    entity_id: UUID
    field_id: UUID
    value: FieldValue | None


class FormControl(BaseModel):
    field_id: UUID
    name: str
    description: str | None
    control: FormControlKind
    required: bool
    options: list[str] | None
    value: Any = None


class FormRead(BaseModel):
    entity_type: EntityType
    entity_id: UUID
    controls: list[FormControl]


class FormSubmission(BaseModel):
    values: dict[UUID, Any]


class RecordCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str | None = None
    phone: str | None = None


class RecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    name: str
    email: str | None
    phone: str | None
    created_at: datetime
    updated_at: datetime


class OpportunityCreate(BaseModel):
    title: str = Field(min_length=1)
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    stage: str = Field(default="prospecting", min_length=1, max_length=32)


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    title: str
    amount: Decimal
    stage: str
    created_at: datetime
    updated_at: datetime


class RelationshipCreate(BaseModel):
    entity_type: EntityType
    entity_id: UUID


class RelationshipRead(BaseModel):
    id: UUID
    opportunity_id: UUID
    entity_type: EntityType
    entity_id: UUID
    entity_name: str | None
    created_at: datetime
