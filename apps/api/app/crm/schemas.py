from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.crm.formatter import DeclaredType


EntityKind = Literal["contact", "company", "opportunity"]
QualificationOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "greater_or_equal",
    "less_or_equal",
    "is_empty",
    "is_not_empty",
]
QualificationOutcomeName = Literal["QUALIFIED", "NOT_QUALIFIED", "NOT_APPLICABLE"]


class FieldDefinitionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    declared_type: DeclaredType
    required: bool = False
    default_value: str | None = None
    placeholder: str | None = None
    options: list[str] | None = None
    validation_rules: dict[str, Any] | None = None
    active: bool = True
    display_order: int | None = None


class FieldDefinitionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    required: bool | None = None
    default_value: str | None = None
    placeholder: str | None = None
    options: list[str] | None = None
    validation_rules: dict[str, Any] | None = None
    active: bool | None = None
    display_order: int | None = None
    # Accepted only so the service can reject them explicitly.
    declared_type: str | None = None
    slug: str | None = None


class FieldDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    entity_kind: str
    slug: str
    field_key: str
    name: str
    description: str | None
    declared_type: str
    required: bool
    default_value: str | None
    placeholder: str | None
    options: list[str] | None
    display_order: int
    is_system: bool
    active: bool
    validation_rules: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None


class ReorderItem(BaseModel):
    id: UUID
    display_order: int = Field(ge=0)


class ReorderRequest(BaseModel):
    items: list[ReorderItem] = Field(min_length=1)


class FieldResolutionRead(BaseModel):
    key: str
    label: str
    placeholder: str
    required: bool
    declared_type: str | None
    is_system: bool
    definition_id: UUID | None


class CustomValuesWrite(BaseModel):
    values: dict[str, Any]


class CustomValuesRead(BaseModel):
    entity_kind: str
    entity_id: UUID
    values: dict[str, Any]
    qualification: QualificationResultRead | None = None


class CustomValuesDisplayRead(BaseModel):
    entity_kind: str
    entity_id: UUID
    locale: str
    values: dict[str, str]
    labels: dict[str, str]


class QualificationRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    field_definition_id: UUID | None = None
    system_field_key: str | None = None
    operator: QualificationOperator
    comparison_value: str | None = None
    comparison_values: list[str] | None = None
    active: bool = True
    display_order: int | None = None


class QualificationRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    field_definition_id: UUID | None = None
    system_field_key: str | None = None
    operator: QualificationOperator | None = None
    comparison_value: str | None = None
    comparison_values: list[str] | None = None
    active: bool | None = None
    display_order: int | None = None


class QualificationRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    description: str | None
    field_definition_id: UUID | None
    system_field_key: str | None
    operator: str
    comparison_value: str | None
    comparison_values: list[str] | None
    active: bool
    display_order: int
    created_at: datetime
    updated_at: datetime


class RuleToggleRequest(BaseModel):
    active: bool | None = None


class RuleResultRead(BaseModel):
    rule_id: UUID
    name: str
    operator: str
    field_key: str | None
    operand: Any
    passed: bool
    reason: str | None = None


class QualificationResultRead(BaseModel):
    contact_id: UUID
    outcome: QualificationOutcomeName
    qualified_mql: bool
    qualified_mql_at: datetime | None
    transitioned: bool = False
    rules: list[RuleResultRead] = Field(default_factory=list)


class IntegrityIssueRead(BaseModel):
    rule_id: UUID | None
    rule_name: str | None
    field_definition_id: UUID
    reason: str


CustomValuesRead.model_rebuild()
