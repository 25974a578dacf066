"""create crm custom attributes and qualification rules

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_field_definition",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("entity_kind", sa.String(length=32), nullable=False),
        sa.Column("slug", sa.String(length=128), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("declared_type", sa.String(length=32), nullable=False),
        sa.Column("required", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("default_value", sa.Text(), nullable=True),
        sa.Column("placeholder", sa.Text(), nullable=True),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("display_order", sa.Integer(), server_default="0", nullable=False),
        sa.Column("is_system", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("validation_rules", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_field_definition_tenant_entity_order",
        "crm_field_definition",
        ["tenant_id", "entity_kind", "display_order"],
        unique=False,
    )
    op.create_index(
        "uq_crm_field_definition_active_slug",
        "crm_field_definition",
        ["tenant_id", "entity_kind", "slug"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL"),
        sqlite_where=sa.text("deleted_at IS NULL"),
    )

    op.create_table(
        "crm_field_value",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("field_definition_id", sa.Uuid(), nullable=False),
        sa.Column("entity_kind", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("text_value", sa.Text(), nullable=True),
        sa.Column("number_value", sa.Numeric(precision=24, scale=8), nullable=True),
        sa.Column("date_value", sa.DateTime(timezone=True), nullable=True),
        sa.Column("boolean_value", sa.Boolean(), nullable=True),
        sa.Column("json_value", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["field_definition_id"], ["crm_field_definition.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "field_definition_id",
            "entity_kind",
            "entity_id",
            name="uq_crm_field_value_definition_entity",
        ),
        sa.CheckConstraint(
            "(CASE WHEN text_value IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN number_value IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN date_value IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN boolean_value IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN json_value IS NULL THEN 0 ELSE 1 END) <= 1",
            name="ck_crm_field_value_single_slot",
        ),
    )
    op.create_index("ix_crm_field_value_entity", "crm_field_value", ["entity_kind", "entity_id"], unique=False)

    op.create_table(
        "crm_qualification_rule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("field_definition_id", sa.Uuid(), nullable=True),
        sa.Column("system_field_key", sa.String(length=64), nullable=True),
        sa.Column("operator", sa.String(length=32), nullable=False),
        sa.Column("comparison_value", sa.Text(), nullable=True),
        sa.Column("comparison_values", sa.JSON(), nullable=True),
        sa.Column("active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("display_order", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_qualification_rule_tenant_active_order",
        "crm_qualification_rule",
        ["tenant_id", "active", "display_order"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_qualification_rule_tenant_active_order", table_name="crm_qualification_rule")
    op.drop_table("crm_qualification_rule")

    op.drop_index("ix_crm_field_value_entity", table_name="crm_field_value")
    op.drop_table("crm_field_value")

    op.drop_index("uq_crm_field_definition_active_slug", table_name="crm_field_definition")
    op.drop_index("ix_crm_field_definition_tenant_entity_order", table_name="crm_field_definition")
    op.drop_table("crm_field_definition")
