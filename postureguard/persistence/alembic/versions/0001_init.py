"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True, default_now: bool = False) -> sa.Column:
    if default_now:
        return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=nullable)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("settings_json", postgresql.JSONB(), nullable=False),
        _ts("last_sync_at"),
        _ts("last_evaluated_at"),
        _ts("created_at", nullable=False, default_now=True),
    )

    op.create_table(
        "resources",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("label", sa.String(), nullable=False),
        sa.Column("region", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("plan_type", sa.String(), nullable=True),
        sa.Column("monthly_cost", sa.Float(), nullable=True),
        sa.Column("specs", postgresql.JSONB(), nullable=False),
        _ts("resource_created_at"),
        _ts("last_synced_at"),
        _ts("created_at", nullable=False, default_now=True),
        sa.UniqueConstraint("account_id", "resource_type", "resource_id", name="uq_resources_account_type_external"),
    )
    op.create_index("ix_resources_account_id", "resources", ["account_id"])
    op.create_index("ix_resources_account_type", "resources", ["account_id", "resource_type"])

    op.create_table(
        "compliance_rules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("resource_types", postgresql.JSONB(), nullable=False),
        sa.Column("condition_type", sa.String(), nullable=False),
        sa.Column("condition_config", postgresql.JSONB(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_builtin", sa.Boolean(), nullable=False),
        _ts("created_at", nullable=False, default_now=True),
        _ts("updated_at", nullable=False, default_now=True),
    )
    op.create_index(
        "ix_compliance_rules_account_condition", "compliance_rules", ["account_id", "condition_type"]
    )

    op.create_table(
        "rule_overrides",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "rule_id", sa.String(), sa.ForeignKey("compliance_rules.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("applied_by_profile_id", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        _ts("updated_at", nullable=False, default_now=True),
        sa.UniqueConstraint("account_id", "rule_id", name="uq_rule_overrides_account_rule"),
    )
    op.create_index("ix_rule_overrides_account_id", "rule_overrides", ["account_id"])
    op.create_index("ix_rule_overrides_rule_id", "rule_overrides", ["rule_id"])

    op.create_table(
        "compliance_profiles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("slug", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("rule_condition_types", postgresql.JSONB(), nullable=False),
        sa.Column("is_builtin", sa.Boolean(), nullable=False),
        _ts("created_at", nullable=False, default_now=True),
    )

    op.create_table(
        "account_profiles",
        sa.Column(
            "account_id", sa.String(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column(
            "profile_id",
            sa.String(),
            sa.ForeignKey("compliance_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("activated_by", sa.String(), nullable=True),
        _ts("activated_at", nullable=False, default_now=True),
    )

    op.create_table(
        "evaluation_results",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "rule_id", sa.String(), sa.ForeignKey("compliance_rules.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("resource_id", sa.String(), sa.ForeignKey("resources.id", ondelete="CASCADE"), nullable=True),
        sa.Column("resource_key", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("acknowledged", sa.Boolean(), nullable=False),
        _ts("acknowledged_at"),
        sa.Column("acknowledged_by", sa.String(), nullable=True),
        sa.Column("acknowledged_note", sa.Text(), nullable=True),
        sa.Column("run_id", sa.String(), nullable=True),
        _ts("evaluated_at", nullable=False, default_now=True),
        sa.UniqueConstraint("account_id", "rule_id", "resource_key", name="uq_evaluation_results_pair"),
    )
    op.create_index("ix_evaluation_results_account_id", "evaluation_results", ["account_id"])
    op.create_index("ix_evaluation_results_rule_id", "evaluation_results", ["rule_id"])
    op.create_index("ix_evaluation_results_resource_id", "evaluation_results", ["resource_id"])
    op.create_index("ix_evaluation_results_account_status", "evaluation_results", ["account_id", "status"])

    op.create_table(
        "result_notes",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "result_id",
            sa.String(),
            sa.ForeignKey("evaluation_results.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("note", sa.Text(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        _ts("created_at", nullable=False, default_now=True),
    )
    op.create_index("ix_result_notes_result_id", "result_notes", ["result_id"])
    op.create_index("ix_result_notes_account_id", "result_notes", ["account_id"])

    op.create_table(
        "resource_snapshots",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("resource_id", sa.String(), sa.ForeignKey("resources.id", ondelete="CASCADE"), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("label", sa.String(), nullable=False),
        sa.Column("region", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("plan_type", sa.String(), nullable=True),
        sa.Column("monthly_cost", sa.Float(), nullable=True),
        sa.Column("specs", postgresql.JSONB(), nullable=False),
        sa.Column("diff", postgresql.JSONB(), nullable=True),
        _ts("synced_at", nullable=False, default_now=True),
    )
    op.create_index(
        "ix_resource_snapshots_resource_synced",
        "resource_snapshots",
        ["resource_id", sa.text("synced_at DESC")],
    )
    op.create_index(
        "ix_resource_snapshots_account_synced",
        "resource_snapshots",
        ["account_id", sa.text("synced_at DESC")],
    )

    op.create_table(
        "evaluation_runs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("trigger", sa.String(), nullable=False),
        _ts("started_at", nullable=False, default_now=True),
        _ts("completed_at"),
        sa.Column("summary_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index("ix_evaluation_runs_status", "evaluation_runs", ["status"])
    op.create_index(
        "ix_evaluation_runs_account_started",
        "evaluation_runs",
        ["account_id", sa.text("started_at DESC")],
    )

    op.create_table(
        "resource_compliance_history",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("resource_id", sa.String(), sa.ForeignKey("resources.id", ondelete="CASCADE"), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        _ts("evaluated_at", nullable=False),
        sa.Column("results", postgresql.JSONB(), nullable=False),
    )
    op.create_index("ix_resource_compliance_history_account_id", "resource_compliance_history", ["account_id"])
    op.create_index("ix_resource_compliance_history_run_id", "resource_compliance_history", ["run_id"])
    op.create_index(
        "ix_resource_compliance_history_resource_eval",
        "resource_compliance_history",
        ["resource_id", sa.text("evaluated_at DESC")],
    )

    op.create_table(
        "compliance_score_history",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        _ts("evaluated_at", nullable=False),
        sa.Column("total_results", sa.Integer(), nullable=False),
        sa.Column("compliant_count", sa.Integer(), nullable=False),
        sa.Column("non_compliant_count", sa.Integer(), nullable=False),
        sa.Column("not_applicable_count", sa.Integer(), nullable=False),
        sa.Column("acknowledged_count", sa.Integer(), nullable=False),
        sa.Column("compliance_score", sa.Integer(), nullable=True),
        sa.Column("total_rules_evaluated", sa.Integer(), nullable=False),
        sa.Column("rule_breakdown", postgresql.JSONB(), nullable=False),
    )
    op.create_index("ix_compliance_score_history_run_id", "compliance_score_history", ["run_id"])
    op.create_index(
        "ix_compliance_score_history_account_eval",
        "compliance_score_history",
        ["account_id", sa.text("evaluated_at DESC")],
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _ts("occurred_at", nullable=False),
        sa.Column("account_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        _ts("created_at", nullable=False, default_now=True),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_account_id", "audit_events", ["account_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("compliance_score_history")
    op.drop_table("resource_compliance_history")
    op.drop_table("evaluation_runs")
    op.drop_table("resource_snapshots")
    op.drop_table("result_notes")
    op.drop_table("evaluation_results")
    op.drop_table("account_profiles")
    op.drop_table("compliance_profiles")
    op.drop_table("rule_overrides")
    op.drop_table("compliance_rules")
    op.drop_table("resources")
    op.drop_table("accounts")
