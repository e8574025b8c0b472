"""
Persistent tables of the state engine.

  compliance_state_rules     versioned rule catalog (append-only rows)
  compliance_states          current state, one row per entity
  compliance_state_history   append-only snapshots
  compliance_alerts          alert lifecycle (active → acknowledged / resolved)
  state_calculation_log      append-only per-run diagnostics
"""
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from compliance_engine.models.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ComplianceStateRule(Base):
    __tablename__ = "compliance_state_rules"
    __table_args__ = (
        UniqueConstraint("rule_id", "rule_version", name="uq_rule_id_version"),
        UniqueConstraint("catalog_version", name="uq_rule_catalog_version"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(String(64), nullable=False, index=True)
    rule_version = Column(Integer, nullable=False)
    catalog_version = Column(Integer, nullable=False)  # one catalog version per write

    rule_name = Column(String(200), nullable=False)
    domain = Column(String(20), nullable=False)
    description = Column(Text, nullable=True)
    help_text = Column(Text, nullable=True)

    # ── Applicability ──
    applicable_entity_types = Column(JSON, nullable=False, default=list)
    turnover_min = Column(Numeric(16, 2), nullable=True)
    turnover_max = Column(Numeric(16, 2), nullable=True)
    employee_count_min = Column(Integer, nullable=True)
    requires_gst = Column(Boolean, nullable=False, default=False)
    requires_pf = Column(Boolean, nullable=False, default=False)
    requires_esi = Column(Boolean, nullable=False, default=False)
    requires_foreign_transactions = Column(Boolean, nullable=False, default=False)
    state_specific = Column(Boolean, nullable=False, default=False)
    applicable_states = Column(JSON, nullable=False, default=list)

    # ── Timing ──
    frequency = Column(String(20), nullable=False)
    due_date_logic = Column(JSON, nullable=False)   # {"strategy": ..., "offset_days": ..., ...}
    grace_days = Column(Integer, nullable=False, default=0)
    filing_key = Column(String(64), nullable=True)

    # ── Risk ──
    penalty_per_day = Column(Numeric(14, 2), nullable=False, default=0)
    max_penalty = Column(Numeric(14, 2), nullable=True)
    criticality_score = Column(Integer, nullable=False, default=5)
    amber_threshold_days = Column(Integer, nullable=False, default=7)
    red_triggers = Column(JSON, nullable=False, default=dict)
    required_documents = Column(JSON, nullable=False, default=list)
    depends_on_rules = Column(JSON, nullable=False, default=list)

    # ── Lifecycle ──
    effective_from = Column(Date, nullable=True)
    effective_until = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_by = Column(String(100), nullable=False, default="system")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self):
        return f"<ComplianceStateRule {self.rule_id} v{self.rule_version} catalog={self.catalog_version}>"


class ComplianceStateRecord(Base):
    __tablename__ = "compliance_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(Integer, nullable=False, unique=True)

    overall_state = Column(String(10), nullable=False, index=True)
    overall_risk_score = Column(Numeric(5, 2), nullable=False)
    total_penalty_exposure = Column(Numeric(14, 2), nullable=False)
    total_overdue_items = Column(Integer, nullable=False)
    total_upcoming_items = Column(Integer, nullable=False)
    next_critical_deadline = Column(Date, nullable=True)
    next_critical_action = Column(Text, nullable=True)
    days_until_next_deadline = Column(Integer, nullable=True)
    data_completeness_score = Column(Numeric(5, 2), nullable=False)

    # ── Full state, schema-versioned ──
    schema_version = Column(Integer, nullable=False)
    snapshot = Column(JSON, nullable=False)

    calculated_at = Column(DateTime(timezone=True), nullable=False)
    calculation_version = Column(Integer, nullable=False)
    engine_version = Column(String(20), nullable=False)
    input_hash = Column(String(64), nullable=False)

    row_version = Column(Integer, nullable=False, default=1)  # optimistic concurrency
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self):
        return f"<ComplianceStateRecord entity={self.entity_id} state={self.overall_state} v{self.row_version}>"


class ComplianceStateHistory(Base):
    __tablename__ = "compliance_state_history"
    __table_args__ = (
        UniqueConstraint("entity_id", "recorded_at", name="uq_history_entity_recorded_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(Integer, nullable=False, index=True)
    recorded_at = Column(DateTime(timezone=True), nullable=False)

    state = Column(String(10), nullable=False)
    risk_score = Column(Numeric(5, 2), nullable=False)
    penalty_exposure = Column(Numeric(14, 2), nullable=False)
    overdue_items = Column(Integer, nullable=False)
    upcoming_items = Column(Integer, nullable=False)
    calculation_version = Column(Integer, nullable=False)

    schema_version = Column(Integer, nullable=False)
    snapshot = Column(JSON, nullable=False)


class ComplianceAlert(Base):
    __tablename__ = "compliance_alerts"
    __table_args__ = (
        Index("ix_alert_entity_rule_type_active", "entity_id", "rule_id", "alert_type", "is_active"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(Integer, nullable=False, index=True)
    rule_id = Column(String(64), nullable=False)
    alert_type = Column(String(20), nullable=False)
    severity = Column(String(10), nullable=False)
    title = Column(String(300), nullable=False)
    message = Column(Text, nullable=False)
    action_required = Column(Text, nullable=True)

    triggered_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(Date, nullable=True)
    trigger_count = Column(Integer, nullable=False, default=1)

    is_active = Column(Boolean, nullable=False, default=True)
    is_acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_by = Column(String(100), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)


class StateCalculationLog(Base):
    __tablename__ = "state_calculation_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(Integer, nullable=False, index=True)
    status = Column(String(10), nullable=False)  # SUCCESS | SKIPPED | FAILED

    previous_state = Column(String(10), nullable=True)
    new_state = Column(String(10), nullable=True)
    state_changed = Column(Boolean, nullable=False, default=False)

    rules_applied = Column(Integer, nullable=False, default=0)
    errors_count = Column(Integer, nullable=False, default=0)
    warnings_count = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=False, default=list)
    warnings = Column(JSON, nullable=False, default=list)

    calculation_time_ms = Column(Integer, nullable=False, default=0)
    triggered_by = Column(String(10), nullable=False)
    input_hash = Column(String(64), nullable=True)
    catalog_version = Column(Integer, nullable=True)
    calculated_at = Column(DateTime(timezone=True), nullable=False, index=True)
