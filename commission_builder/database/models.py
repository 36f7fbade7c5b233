"""SQLAlchemy models for all database tables."""

from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Date,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from commission_builder.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


PERCENT = Numeric(9, 4)


# ---------------------------------------------------------------------------
# Input boundary
# ---------------------------------------------------------------------------


class InputCertificate(Base):
    """Certificate split/tier rows loaded by the ingestion process."""

    __tablename__ = "input_certificates"
    __table_args__ = (
        Index("ix_input_certificates_scope", "group_id", "effective_from", "certificate_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    certificate_id: Mapped[str] = mapped_column(String, nullable=False)
    group_id: Mapped[str | None] = mapped_column(String, nullable=True)
    product_code: Mapped[str | None] = mapped_column(String, nullable=True)
    plan_code: Mapped[str | None] = mapped_column(String, nullable=True)
    split_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    split_percent: Mapped[Decimal | None] = mapped_column(PERCENT, nullable=True)
    writing_broker_id: Mapped[str | None] = mapped_column(String, nullable=True)
    split_broker_id: Mapped[str | None] = mapped_column(String, nullable=True)
    tier_level: Mapped[int] = mapped_column(Integer, nullable=False)
    tier_percent: Mapped[Decimal | None] = mapped_column(PERCENT, nullable=True)
    schedule_code: Mapped[str | None] = mapped_column(String, nullable=True)
    situs_state: Mapped[str | None] = mapped_column(String, nullable=True)
    effective_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="A")


class CommissionSchedule(Base):
    """Known commission schedules, used to resolve tier schedule codes."""

    __tablename__ = "commission_schedules"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    code: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------


class PipelineRun(Base):
    """One execution of the commission structure pipeline."""

    __tablename__ = "pipeline_runs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending"
    )  # pending | running | completed | failed
    start_time: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_class: Mapped[str | None] = mapped_column(String, nullable=True)
    can_resume: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    config_snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Relationships
    steps: Mapped[list["PipelineStep"]] = relationship(
        "PipelineStep",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="PipelineStep.step_number",
    )


class PipelineStep(Base):
    """State of one step within a pipeline run."""

    __tablename__ = "pipeline_steps"
    __table_args__ = (UniqueConstraint("run_id", "step_number", name="uq_pipeline_steps_run_step"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String, ForeignKey("pipeline_runs.id"), nullable=False)
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending"
    )  # pending | running | completed | failed | skipped
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_class: Mapped[str | None] = mapped_column(String, nullable=True)
    start_time: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    output: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Relationships
    run: Mapped["PipelineRun"] = relationship("PipelineRun", back_populates="steps")


# ---------------------------------------------------------------------------
# Staging output
# ---------------------------------------------------------------------------


class StagedProposal(Base):
    __tablename__ = "stg_proposals"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    group_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date] = mapped_column(Date, nullable=False)
    config_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    product_codes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    plan_codes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    situs_states: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    certificate_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class StagedSplitParticipant(Base):
    __tablename__ = "stg_split_participants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    proposal_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    split_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    broker_id: Mapped[str] = mapped_column(String, nullable=False)
    split_percent: Mapped[Decimal] = mapped_column(PERCENT, nullable=False)
    hierarchy_id: Mapped[str] = mapped_column(String, nullable=False)


class StagedHierarchy(Base):
    __tablename__ = "stg_hierarchies"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    group_id: Mapped[str | None] = mapped_column(String, nullable=True)
    writing_broker_id: Mapped[str] = mapped_column(String, nullable=False)
    split_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    current_version_id: Mapped[str] = mapped_column(String, nullable=False)
    proposal_id: Mapped[str | None] = mapped_column(String, nullable=True)
    is_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    policy_id: Mapped[str | None] = mapped_column(String, nullable=True)


class StagedHierarchyVersion(Base):
    __tablename__ = "stg_hierarchy_versions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    hierarchy_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date] = mapped_column(Date, nullable=False)
    chain_hash: Mapped[str] = mapped_column(String(64), nullable=False)


class StagedHierarchyParticipant(Base):
    __tablename__ = "stg_hierarchy_participants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    hierarchy_version_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    broker_id: Mapped[str] = mapped_column(String, nullable=False)
    split_percent: Mapped[Decimal] = mapped_column(PERCENT, nullable=False)
    schedule_code: Mapped[str | None] = mapped_column(String, nullable=True)
    schedule_id: Mapped[str | None] = mapped_column(String, nullable=True)


class StagedStateRule(Base):
    __tablename__ = "stg_state_rules"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    hierarchy_version_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    short_name: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    states: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    product_codes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class StagedPolicyHierarchyAssignment(Base):
    __tablename__ = "stg_policy_hierarchy_assignments"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    policy_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    group_id: Mapped[str | None] = mapped_column(String, nullable=True)
    hierarchy_id: Mapped[str] = mapped_column(String, nullable=False)
    writing_broker_id: Mapped[str] = mapped_column(String, nullable=False)
    split_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    split_percent: Mapped[Decimal] = mapped_column(PERCENT, nullable=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[str] = mapped_column(String, nullable=False)


class StagedUnresolvedCertificate(Base):
    __tablename__ = "stg_unresolved_certificates"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    certificate_id: Mapped[str] = mapped_column(String, nullable=False)
    group_id: Mapped[str] = mapped_column(String, nullable=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    config_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
