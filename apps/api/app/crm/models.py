from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.crm.formatter import NUMBER_PRECISION, NUMBER_SCALE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CRMContact(Base):
    __tablename__ = "crm_contact"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    linkedin_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    lifecycle_status: Mapped[str] = mapped_column(String(32), nullable=False, default="lead", server_default="lead")
    qualified_mql: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    qualified_mql_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CRMFieldDefinition(Base):
    __tablename__ = "crm_field_definition"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    declared_type: Mapped[str] = mapped_column(String(32), nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    default_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    placeholder: Mapped[str | None] = mapped_column(Text, nullable=True)
    options: Mapped[list[str] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    validation_rules: Mapped[dict[str, object] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def field_key(self) -> str:
        if self.is_system:
            return self.slug
        return f"custom_{self.slug}"


class CRMFieldValue(Base):
    __tablename__ = "crm_field_value"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    field_definition_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_field_definition.id", ondelete="RESTRICT"),
        nullable=False,
    )
    entity_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    text_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    number_value: Mapped[Decimal | None] = mapped_column(Numeric(NUMBER_PRECISION, NUMBER_SCALE), nullable=True)
    date_value: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    boolean_value: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    json_value: Mapped[list[str] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        UniqueConstraint(
            "field_definition_id",
            "entity_kind",
            "entity_id",
            name="uq_crm_field_value_definition_entity",
        ),
        CheckConstraint(
            "(CASE WHEN text_value IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN number_value IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN date_value IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN boolean_value IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN json_value IS NULL THEN 0 ELSE 1 END) <= 1",
            name="ck_crm_field_value_single_slot",
        ),
    )


class CRMQualificationRule(Base):
    __tablename__ = "crm_qualification_rule"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Not a foreign key: a rule may outlive the definition it points at.
    field_definition_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    system_field_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    operator: Mapped[str] = mapped_column(String(32), nullable=False)
    comparison_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    comparison_values: Mapped[list[str] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


Index("ix_crm_contact_tenant_id", CRMContact.tenant_id)
Index("ix_crm_contact_email", CRMContact.email)
Index(
    "ix_crm_field_definition_tenant_entity_order",
    CRMFieldDefinition.tenant_id,
    CRMFieldDefinition.entity_kind,
    CRMFieldDefinition.display_order,
)
Index(
    "uq_crm_field_definition_active_slug",
    CRMFieldDefinition.tenant_id,
    CRMFieldDefinition.entity_kind,
    CRMFieldDefinition.slug,
    unique=True,
    postgresql_where=CRMFieldDefinition.deleted_at.is_(None),
    sqlite_where=CRMFieldDefinition.deleted_at.is_(None),
)
Index("ix_crm_field_value_entity", CRMFieldValue.entity_kind, CRMFieldValue.entity_id)
Index(
    "ix_crm_qualification_rule_tenant_active_order",
    CRMQualificationRule.tenant_id,
    CRMQualificationRule.active,
    CRMQualificationRule.display_order,
)
