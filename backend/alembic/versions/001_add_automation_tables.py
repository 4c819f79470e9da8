"""Add automation rule, log, throttle and budget override tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

raw_stream_events and sponsored_products_search_term_report are owned by
the ingestion jobs; they are only created here when missing.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    existing = set(sa.inspect(conn).get_table_names())

    if "automation_rules" not in existing:
        op.create_table(
            "automation_rules",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("profile_id", sa.String(255), nullable=False),
            sa.Column("ad_type", sa.String(10), nullable=True, server_default="SP"),
            sa.Column("rule_type", sa.String(50), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.text("true")),
            sa.Column("scope", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("config", postgresql.JSON(astext_type=sa.Text()), nullable=False),
            sa.Column("last_run_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_automation_rules_is_active", "automation_rules", ["is_active"], unique=False)
        op.create_index("ix_automation_rules_rule_type", "automation_rules", ["rule_type"], unique=False)

    if "automation_logs" not in existing:
        op.create_table(
            "automation_logs",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("rule_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("status", sa.String(20), nullable=False),
            sa.Column("summary", sa.Text(), nullable=True),
            sa.Column("details", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("run_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_automation_logs_rule_id", "automation_logs", ["rule_id"], unique=False)
        op.create_index("ix_automation_logs_status", "automation_logs", ["status"], unique=False)
        op.create_index("ix_automation_logs_run_at", "automation_logs", ["run_at"], unique=False)

    if "automation_action_throttle" not in existing:
        op.create_table(
            "automation_action_throttle",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("rule_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("entity_id", sa.Text(), nullable=False),
            sa.Column("throttle_until", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("rule_id", "entity_id", name="uq_throttle_rule_entity"),
        )
        op.create_index("ix_throttle_rule_until", "automation_action_throttle", ["rule_id", "throttle_until"], unique=False)

    if "daily_budget_overrides" not in existing:
        op.create_table(
            "daily_budget_overrides",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("campaign_id", sa.String(255), nullable=False),
            sa.Column("profile_id", sa.String(255), nullable=True),
            sa.Column("rule_id", postgresql.UUID(as_uuid=True), nullable=True),
            sa.Column("original_budget", sa.Float(), nullable=False),
            sa.Column("override_date", sa.Date(), nullable=False),
            sa.Column("reverted_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("campaign_id", "override_date", name="uq_budget_override_campaign_date"),
        )
        op.create_index("ix_budget_overrides_date", "daily_budget_overrides", ["override_date"], unique=False)

    if "raw_stream_events" not in existing:
        op.create_table(
            "raw_stream_events",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("event_type", sa.String(50), nullable=False),
            sa.Column("event_data", postgresql.JSON(astext_type=sa.Text()), nullable=False),
            sa.Column("received_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_raw_stream_events_type", "raw_stream_events", ["event_type"], unique=False)
        op.create_index("ix_raw_stream_events_received_at", "raw_stream_events", ["received_at"], unique=False)

    if "sponsored_products_search_term_report" not in existing:
        op.create_table(
            "sponsored_products_search_term_report",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("report_date", sa.Date(), nullable=False),
            sa.Column("campaign_id", sa.BigInteger(), nullable=False),
            sa.Column("campaign_name", sa.Text(), nullable=True),
            sa.Column("ad_group_id", sa.BigInteger(), nullable=True),
            sa.Column("ad_group_name", sa.Text(), nullable=True),
            sa.Column("keyword_id", sa.BigInteger(), nullable=True),
            sa.Column("keyword_text", sa.Text(), nullable=True),
            sa.Column("targeting", sa.Text(), nullable=True),
            sa.Column("match_type", sa.String(50), nullable=True),
            sa.Column("customer_search_term", sa.Text(), nullable=True),
            sa.Column("impressions", sa.BigInteger(), nullable=True),
            sa.Column("clicks", sa.BigInteger(), nullable=True),
            sa.Column("cost", sa.Float(), nullable=True),
            sa.Column("sales_1d", sa.Float(), nullable=True),
            sa.Column("purchases_1d", sa.BigInteger(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "report_date", "campaign_id", "ad_group_id", "keyword_id",
                "customer_search_term", "targeting",
                name="uq_sp_search_term_report_row",
            ),
        )
        op.create_index("ix_sp_str_report_date", "sponsored_products_search_term_report", ["report_date"], unique=False)
        op.create_index("ix_sp_str_campaign_id", "sponsored_products_search_term_report", ["campaign_id"], unique=False)
        op.create_index("ix_sp_str_keyword_id", "sponsored_products_search_term_report", ["keyword_id"], unique=False)


def downgrade() -> None:
    # Ingestion-owned tables are left in place
    op.drop_index("ix_budget_overrides_date", table_name="daily_budget_overrides")
    op.drop_table("daily_budget_overrides")
    op.drop_index("ix_throttle_rule_until", table_name="automation_action_throttle")
    op.drop_table("automation_action_throttle")
    op.drop_index("ix_automation_logs_run_at", table_name="automation_logs")
    op.drop_index("ix_automation_logs_status", table_name="automation_logs")
    op.drop_index("ix_automation_logs_rule_id", table_name="automation_logs")
    op.drop_table("automation_logs")
    op.drop_index("ix_automation_rules_rule_type", table_name="automation_rules")
    op.drop_index("ix_automation_rules_is_active", table_name="automation_rules")
    op.drop_table("automation_rules")
