"""create crm records, custom fields and relationships

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010002"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

_RECORD_TABLES = ("crm_company", "crm_person", "crm_partner")


def upgrade() -> None:
    for table_name in _RECORD_TABLES:
        op.create_table(
            table_name,
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("client_id", sa.Uuid(), nullable=False),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("email", sa.String(length=320), nullable=True),
            sa.Column("phone", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["client_id"], ["core_client.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(f"ix_{table_name}_client_id", table_name, ["client_id"], unique=False)

    op.create_table(
        "crm_opportunity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="prospecting"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["core_client.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_opportunity_client_id", "crm_opportunity", ["client_id"], unique=False)

    op.create_table(
        "crm_field_definition",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("field_type", sa.String(length=32), nullable=False),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_unique", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["core_client.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("client_id", "entity_type", "name", name="uq_crm_field_definition_name"),
    )
    op.create_index(
        "ix_crm_field_definition_scope",
        "crm_field_definition",
        ["client_id", "entity_type", "order_index"],
        unique=False,
    )

    op.create_table(
        "crm_field_value",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("field_id", sa.Uuid(), nullable=False),
        sa.Column("value_kind", sa.String(length=16), nullable=False),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["core_client.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["field_id"], ["crm_field_definition.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "client_id",
            "entity_type",
            "entity_id",
            "field_id",
            name="uq_crm_field_value_entity_field",
        ),
    )
    op.create_index("ix_crm_field_value_entity", "crm_field_value", ["entity_type", "entity_id"], unique=False)
    op.create_index("ix_crm_field_value_field_id", "crm_field_value", ["field_id"], unique=False)

    op.create_table(
        "crm_entity_relationship",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["core_client.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["opportunity_id"], ["crm_opportunity.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_entity_relationship_opportunity",
        "crm_entity_relationship",
        ["opportunity_id"],
        unique=False,
    )
    op.create_index(
        "ix_crm_entity_relationship_entity",
        "crm_entity_relationship",
        ["entity_type", "entity_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_entity_relationship_entity", table_name="crm_entity_relationship")
    op.drop_index("ix_crm_entity_relationship_opportunity", table_name="crm_entity_relationship")
    op.drop_table("crm_entity_relationship")

    op.drop_index("ix_crm_field_value_field_id", table_name="crm_field_value")
    op.drop_index("ix_crm_field_value_entity", table_name="crm_field_value")
    op.drop_table("crm_field_value")

    op.drop_index("ix_crm_field_definition_scope", table_name="crm_field_definition")
    op.drop_table("crm_field_definition")

    op.drop_index("ix_crm_opportunity_client_id", table_name="crm_opportunity")
    op.drop_table("crm_opportunity")

    for table_name in reversed(_RECORD_TABLES):
        op.drop_index(f"ix_{table_name}_client_id", table_name=table_name)
        op.drop_table(table_name)
