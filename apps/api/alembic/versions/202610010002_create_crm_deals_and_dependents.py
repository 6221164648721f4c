"""create crm deals and deal dependents

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


def upgrade() -> None:
    op.create_table(
        "crm_deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("value", sa.Numeric(precision=18, scale=2), nullable=False, server_default="0"),
        sa.Column("quote_value", sa.Numeric(precision=18, scale=2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="in_progress"),
        sa.Column("sale_status", sa.String(length=32), nullable=False, server_default="negotiation"),
        sa.Column("sale_performance", sa.String(length=64), nullable=True),
        sa.Column("lost_reason", sa.Text(), nullable=True),
        sa.Column("lost_notes", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("external_conversation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"]),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_pipeline.id"]),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_pipeline_stage.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_deal_lead_id", "crm_deal", ["lead_id"], unique=False)
    op.create_index("ix_crm_deal_pipeline_stage", "crm_deal", ["pipeline_id", "stage_id"], unique=False)
    op.create_index("ix_crm_deal_sale_status", "crm_deal", ["sale_status"], unique=False)

    # no ON DELETE CASCADE: deal removal goes through the cascade coordinator
    op.create_table(
        "crm_quote_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_quote_item_deal_id", "crm_quote_item", ["deal_id"], unique=False)

    op.create_table(
        "crm_stage_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("left_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"]),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_pipeline_stage.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_stage_history_deal_id", "crm_stage_history", ["deal_id", "left_at"], unique=False)

    op.create_table(
        "crm_client_machine",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("brand", sa.Text(), nullable=True),
        sa.Column("model", sa.Text(), nullable=True),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_client_machine_deal_id", "crm_client_machine", ["deal_id"], unique=False)

    op.create_table(
        "crm_lead_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("activity_type", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("created_by", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_lead_activity_deal_created",
        "crm_lead_activity",
        ["deal_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_lead_activity_deal_created", table_name="crm_lead_activity")
    op.drop_table("crm_lead_activity")
    op.drop_index("ix_crm_client_machine_deal_id", table_name="crm_client_machine")
    op.drop_table("crm_client_machine")
    op.drop_index("ix_crm_stage_history_deal_id", table_name="crm_stage_history")
    op.drop_table("crm_stage_history")
    op.drop_index("ix_crm_quote_item_deal_id", table_name="crm_quote_item")
    op.drop_table("crm_quote_item")

    op.drop_index("ix_crm_deal_sale_status", table_name="crm_deal")
    op.drop_index("ix_crm_deal_pipeline_stage", table_name="crm_deal")
    op.drop_index("ix_crm_deal_lead_id", table_name="crm_deal")
    op.drop_table("crm_deal")
