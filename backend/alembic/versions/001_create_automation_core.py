"""Create automation core tables: credentials, guardrails, rules, alerts,
action queue, playbooks, performance read model and activity log.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_STATUS_CLAUSE = sa.text("status IN ('pending_approval', 'queued', 'executing', 'applied')")


def _uuid_pk() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False)


def _timestamps(updated: bool = True) -> list[sa.Column]:
    cols = [sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("CURRENT_TIMESTAMP"))]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("CURRENT_TIMESTAMP")))
    return cols


def upgrade() -> None:
    conn = op.get_bind()
    existing = set(sa.inspect(conn).get_table_names())

    if "credentials" not in existing:
        op.create_table(
            "credentials",
            _uuid_pk(),
            sa.Column("profile_id", sa.String(255), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("client_id", sa.String(512), nullable=False),
            sa.Column("client_secret", sa.Text(), nullable=True),
            sa.Column("access_token", sa.Text(), nullable=False),
            sa.Column("refresh_token", sa.Text(), nullable=True),
            sa.Column("token_expires_at", sa.DateTime(), nullable=True),
            sa.Column("region", sa.String(10), nullable=True, server_default="na"),
            sa.Column("status", sa.String(20), nullable=True, server_default="active"),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("profile_id"),
        )

    if "guardrail_settings" not in existing:
        op.create_table(
            "guardrail_settings",
            _uuid_pk(),
            sa.Column("profile_id", sa.String(255), nullable=False),
            sa.Column("automation_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("paused_reason", sa.Text(), nullable=True),
            sa.Column("paused_at", sa.DateTime(), nullable=True),
            sa.Column("min_bid_micros", sa.BigInteger(), nullable=False, server_default="100000"),
            sa.Column("max_bid_micros", sa.BigInteger(), nullable=False, server_default="10000000"),
            sa.Column("max_bid_change_percent", sa.Float(), nullable=True),
            sa.Column("require_approval_above_micros", sa.BigInteger(), nullable=True, server_default="1000000"),
            sa.Column("max_actions_per_day", sa.Integer(), nullable=True, server_default="100"),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("profile_id"),
        )

    if "protected_entities" not in existing:
        op.create_table(
            "protected_entities",
            _uuid_pk(),
            sa.Column("profile_id", sa.String(255), nullable=False),
            sa.Column("entity_type", sa.String(50), nullable=False),
            sa.Column("entity_id", sa.String(255), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            *_timestamps(updated=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("profile_id", "entity_type", "entity_id", name="uq_protected_entity"),
        )
        op.create_index("ix_protected_entities_profile_id", "protected_entities", ["profile_id"])

    if "automation_rules" not in existing:
        op.create_table(
            "automation_rules",
            _uuid_pk(),
            sa.Column("profile_id", sa.String(255), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("rule_type", sa.String(50), nullable=False),
            sa.Column("mode", sa.String(20), nullable=False, server_default="dry_run"),
            sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("severity", sa.String(20), nullable=True, server_default="warn"),
            sa.Column("params", sa.JSON(), nullable=True),
            sa.Column("action", sa.JSON(), nullable=True),
            sa.Column("throttle", sa.JSON(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("profile_id", "name", name="uq_automation_rule_name"),
        )
        op.create_index("ix_automation_rules_profile_id", "automation_rules", ["profile_id"])
        op.create_index("ix_automation_rules_enabled", "automation_rules", ["enabled"])

    if "automation_rule_runs" not in existing:
        op.create_table(
            "automation_rule_runs",
            _uuid_pk(),
            sa.Column("rule_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("profile_id", sa.String(255), nullable=False),
            sa.Column("trigger", sa.String(20), nullable=True, server_default="manual"),
            sa.Column("mode", sa.String(20), nullable=False),
            sa.Column("status", sa.String(20), nullable=True, server_default="running"),
            sa.Column("alerts_created", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("actions_enqueued", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("actions_deferred", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("actions_dropped", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("duplicates_ignored", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("summary", sa.JSON(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("started_at", sa.DateTime(), nullable=True, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("finished_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_rule_runs_rule_id", "automation_rule_runs", ["rule_id"])
        op.create_index("ix_rule_runs_started_at", "automation_rule_runs", ["started_at"])

    if "alerts" not in existing:
        op.create_table(
            "alerts",
            _uuid_pk(),
            sa.Column("rule_id", postgresql.UUID(as_uuid=True), nullable=True),
            sa.Column("profile_id", sa.String(255), nullable=False),
            sa.Column("entity_type", sa.String(50), nullable=True),
            sa.Column("entity_id", sa.String(255), nullable=True),
            sa.Column("severity", sa.String(20), nullable=True, server_default="info"),
            sa.Column("title", sa.String(512), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("data", sa.JSON(), nullable=True),
            sa.Column("state", sa.String(20), nullable=True, server_default="new"),
            sa.Column("acknowledged_at", sa.DateTime(), nullable=True),
            *_timestamps(updated=False),
            sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_alerts_profile_state", "alerts", ["profile_id", "state"])
        op.create_index("ix_alerts_rule_id", "alerts", ["rule_id"])
        op.create_index("ix_alerts_created_at", "alerts", ["created_at"])

    if "playbook_definitions" not in existing:
        op.create_table(
            "playbook_definitions",
            _uuid_pk(),
            sa.Column("profile_id", sa.String(255), nullable=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("template_key", sa.String(50), nullable=False),
            sa.Column("params", sa.JSON(), nullable=True),
            sa.Column("mode", sa.String(20), nullable=True, server_default="dry_run"),
            sa.Column("enabled", sa.Boolean(), nullable=True, server_default=sa.true()),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_playbook_definitions_profile_id", "playbook_definitions", ["profile_id"])

    if "playbook_runs" not in existing:
        op.create_table(
            "playbook_runs",
            _uuid_pk(),
            sa.Column("playbook_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("profile_id", sa.String(255), nullable=False),
            sa.Column("mode", sa.String(20), nullable=False),
            sa.Column("status", sa.String(20), nullable=True, server_default="running"),
            sa.Column("actions_enqueued", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("alerts_created", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("steps", sa.JSON(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("started_at", sa.DateTime(), nullable=True, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("finished_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["playbook_id"], ["playbook_definitions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_playbook_runs_playbook_id", "playbook_runs", ["playbook_id"])
        op.create_index("ix_playbook_runs_started_at", "playbook_runs", ["started_at"])

    if "action_queue" not in existing:
        op.create_table(
            "action_queue",
            _uuid_pk(),
            sa.Column("profile_id", sa.String(255), nullable=False),
            sa.Column("action_type", sa.String(50), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("idempotency_key", sa.String(128), nullable=False),
            sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
            sa.Column("entity_type", sa.String(50), nullable=True),
            sa.Column("entity_id", sa.String(255), nullable=True),
            sa.Column("source", sa.String(20), nullable=True, server_default="rule"),
            sa.Column("rule_id", postgresql.UUID(as_uuid=True), nullable=True),
            sa.Column("playbook_run_id", postgresql.UUID(as_uuid=True), nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("status_reason", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("deliveries", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("claimed_by", sa.String(255), nullable=True),
            sa.Column("claimed_at", sa.DateTime(), nullable=True),
            sa.Column("amazon_request_id", sa.String(255), nullable=True),
            sa.Column("amazon_api_response", sa.JSON(), nullable=True),
            sa.Column("applied_at", sa.DateTime(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["playbook_run_id"], ["playbook_runs.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "uq_action_queue_live_idempotency_key", "action_queue", ["idempotency_key"],
            unique=True, postgresql_where=LIVE_STATUS_CLAUSE, sqlite_where=LIVE_STATUS_CLAUSE,
        )
        op.create_index("ix_action_queue_status_created", "action_queue", ["status", "created_at"])
        op.create_index("ix_action_queue_profile_status", "action_queue", ["profile_id", "status"])
        op.create_index("ix_action_queue_rule_created", "action_queue", ["rule_id", "created_at"])
        op.create_index("ix_action_queue_entity", "action_queue", ["entity_type", "entity_id"])

    if "performance_daily" not in existing:
        op.create_table(
            "performance_daily",
            _uuid_pk(),
            sa.Column("profile_id", sa.String(255), nullable=False),
            sa.Column("entity_type", sa.String(50), nullable=False),
            sa.Column("entity_id", sa.String(255), nullable=False),
            sa.Column("date", sa.String(10), nullable=False),
            sa.Column("campaign_id", sa.String(255), nullable=True),
            sa.Column("ad_group_id", sa.String(255), nullable=True),
            sa.Column("entity_name", sa.String(512), nullable=True),
            sa.Column("match_type", sa.String(50), nullable=True),
            sa.Column("bid_micros", sa.BigInteger(), nullable=True),
            sa.Column("daily_budget_micros", sa.BigInteger(), nullable=True),
            sa.Column("spend", sa.Float(), nullable=True),
            sa.Column("sales", sa.Float(), nullable=True),
            sa.Column("clicks", sa.Integer(), nullable=True),
            sa.Column("impressions", sa.BigInteger(), nullable=True),
            sa.Column("conversions", sa.Integer(), nullable=True),
            sa.Column("budget_utilization", sa.Float(), nullable=True),
            sa.Column("synced_at", sa.DateTime(), nullable=True, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("profile_id", "entity_type", "entity_id", "date", name="uq_performance_daily"),
        )
        op.create_index("ix_perf_daily_profile_scope_date", "performance_daily", ["profile_id", "entity_type", "date"])

    if "activity_log" not in existing:
        op.create_table(
            "activity_log",
            _uuid_pk(),
            sa.Column("profile_id", sa.String(255), nullable=True),
            sa.Column("action", sa.String(100), nullable=False),
            sa.Column("category", sa.String(50), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("entity_type", sa.String(50), nullable=True),
            sa.Column("entity_id", sa.String(255), nullable=True),
            sa.Column("status", sa.String(20), nullable=True, server_default="success"),
            *_timestamps(updated=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_activity_log_profile_id", "activity_log", ["profile_id"])
        op.create_index("ix_activity_log_category", "activity_log", ["category"])
        op.create_index("ix_activity_log_created_at", "activity_log", ["created_at"])
        op.create_index("ix_activity_log_entity", "activity_log", ["entity_type", "entity_id"])


def downgrade() -> None:
    for table in (
        "activity_log", "performance_daily", "action_queue", "playbook_runs", "playbook_definitions",
        "alerts", "automation_rule_runs", "automation_rules", "protected_entities",
        "guardrail_settings", "credentials",
    ):
        op.drop_table(table)
