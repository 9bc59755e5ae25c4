from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB in Postgres, plain JSON elsewhere so the schema also runs on SQLite.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# Python None stored as SQL NULL, so "IS NULL" filters work.
NullableJsonType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Account metadata consumed by account-wide rules (users, logins).
    settings_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_evaluated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Resource(Base):
    __tablename__ = "resources"
    __table_args__ = (
        UniqueConstraint("account_id", "resource_type", "resource_id", name="uq_resources_account_type_external"),
        Index("ix_resources_account_type", "account_id", "resource_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    # Provider-side identifier; unique per account and type only.
    resource_id: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str] = mapped_column(String)
    label: Mapped[str] = mapped_column(String, default="")
    region: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    plan_type: Mapped[str | None] = mapped_column(String, nullable=True)
    monthly_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    # Provider-specific attributes; tags live under specs["tags"].
    specs: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    resource_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ComplianceRule(Base):
    __tablename__ = "compliance_rules"
    __table_args__ = (
        Index("ix_compliance_rules_account_condition", "account_id", "condition_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Null account scope marks a global rule (built-ins).
    account_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=True
    )
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="")
    # Empty list means the rule is account-wide.
    resource_types: Mapped[list[str]] = mapped_column(JsonType, default=list)
    condition_type: Mapped[str] = mapped_column(String)
    condition_config: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    severity: Mapped[str] = mapped_column(String, default="warning")
    # Default activation before profile and override resolution.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_builtin: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class RuleOverride(Base):
    __tablename__ = "rule_overrides"
    __table_args__ = (
        UniqueConstraint("account_id", "rule_id", name="uq_rule_overrides_account_rule"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    rule_id: Mapped[str] = mapped_column(String, ForeignKey("compliance_rules.id", ondelete="CASCADE"), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean)
    # Profile that was active when the operator set this override, for display only.
    applied_by_profile_id: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ComplianceProfile(Base):
    __tablename__ = "compliance_profiles"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    slug: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="")
    # foundation | standard | strict
    tier: Mapped[str] = mapped_column(String, default="standard")
    version: Mapped[int] = mapped_column(Integer, default=1)
    rule_condition_types: Mapped[list[str]] = mapped_column(JsonType, default=list)
    is_builtin: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AccountProfile(Base):
    __tablename__ = "account_profiles"

    # One active profile per account; the rule set is always recomputed from it.
    account_id: Mapped[str] = mapped_column(
        String, ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )
    profile_id: Mapped[str] = mapped_column(String, ForeignKey("compliance_profiles.id", ondelete="CASCADE"))
    activated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    activated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class EvaluationResult(Base):
    __tablename__ = "evaluation_results"
    __table_args__ = (
        UniqueConstraint("account_id", "rule_id", "resource_key", name="uq_evaluation_results_pair"),
        Index("ix_evaluation_results_account_status", "account_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    rule_id: Mapped[str] = mapped_column(String, ForeignKey("compliance_rules.id", ondelete="CASCADE"), index=True)
    # Null for account-level results.
    resource_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("resources.id", ondelete="CASCADE"), nullable=True, index=True
    )
    # resource_id or "" so the uniqueness key never contains NULL.
    resource_key: Mapped[str] = mapped_column(String, default="")
    status: Mapped[str] = mapped_column(String)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[str | None] = mapped_column(String, nullable=True)
    acknowledged_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_id: Mapped[str | None] = mapped_column(String, nullable=True)
    evaluated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ResultNote(Base):
    __tablename__ = "result_notes"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    result_id: Mapped[str] = mapped_column(
        String, ForeignKey("evaluation_results.id", ondelete="CASCADE"), index=True
    )
    account_id: Mapped[str] = mapped_column(String, index=True)
    note: Mapped[str] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ResourceSnapshot(Base):
    __tablename__ = "resource_snapshots"
    __table_args__ = (
        Index("ix_resource_snapshots_resource_synced", "resource_id", text("synced_at DESC")),
        Index("ix_resource_snapshots_account_synced", "account_id", text("synced_at DESC")),
    )

    # Immutable observation of a resource at sync time.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id", ondelete="CASCADE"))
    resource_id: Mapped[str] = mapped_column(String, ForeignKey("resources.id", ondelete="CASCADE"))
    resource_type: Mapped[str] = mapped_column(String)
    label: Mapped[str] = mapped_column(String, default="")
    region: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    plan_type: Mapped[str | None] = mapped_column(String, nullable=True)
    monthly_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    specs: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    # Null on first observation; otherwise {field: {from, to}}.
    diff: Mapped[dict[str, Any] | None] = mapped_column(NullableJsonType, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class EvaluationRun(Base):
    __tablename__ = "evaluation_runs"
    __table_args__ = (
        Index("ix_evaluation_runs_account_started", "account_id", text("started_at DESC")),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id", ondelete="CASCADE"))
    # running | succeeded | failed
    status: Mapped[str] = mapped_column(String, index=True)
    # manual | sync | schedule
    trigger: Mapped[str] = mapped_column(String, default="manual")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    summary_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class ResourceComplianceHistory(Base):
    __tablename__ = "resource_compliance_history"
    __table_args__ = (
        Index("ix_resource_compliance_history_resource_eval", "resource_id", text("evaluated_at DESC")),
    )

    # Append-only: one row per evaluated resource per run.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    resource_id: Mapped[str] = mapped_column(String, ForeignKey("resources.id", ondelete="CASCADE"))
    run_id: Mapped[str] = mapped_column(String, index=True)
    evaluated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    results: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)


class ComplianceScoreHistory(Base):
    __tablename__ = "compliance_score_history"
    __table_args__ = (
        Index("ix_compliance_score_history_account_eval", "account_id", text("evaluated_at DESC")),
    )

    # Append-only: one account rollup per run.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id", ondelete="CASCADE"))
    run_id: Mapped[str] = mapped_column(String, index=True)
    evaluated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    total_results: Mapped[int] = mapped_column(Integer, default=0)
    compliant_count: Mapped[int] = mapped_column(Integer, default=0)
    non_compliant_count: Mapped[int] = mapped_column(Integer, default=0)
    not_applicable_count: Mapped[int] = mapped_column(Integer, default=0)
    acknowledged_count: Mapped[int] = mapped_column(Integer, default=0)
    compliance_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_rules_evaluated: Mapped[int] = mapped_column(Integer, default=0)
    rule_breakdown: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Null account_id for global events such as built-in catalog edits.
    account_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
