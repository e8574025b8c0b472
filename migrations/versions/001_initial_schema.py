"""
001 — Initial schema: rule catalog, current state, history, alerts, calculation log

Revision ID: 001
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── Rule catalog (append-only, versioned) ──
    op.create_table(
        "compliance_state_rules",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("rule_id", sa.String(64), nullable=False),
        sa.Column("rule_version", sa.Integer, nullable=False),
        sa.Column("catalog_version", sa.Integer, nullable=False),

        sa.Column("rule_name", sa.String(200), nullable=False),
        sa.Column("domain", sa.String(20), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("help_text", sa.Text, nullable=True),

        sa.Column("applicable_entity_types", sa.JSON, nullable=False),
        sa.Column("turnover_min", sa.Numeric(16, 2), nullable=True),
        sa.Column("turnover_max", sa.Numeric(16, 2), nullable=True),
        sa.Column("employee_count_min", sa.Integer, nullable=True),
        sa.Column("requires_gst", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("requires_pf", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("requires_esi", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("requires_foreign_transactions", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("state_specific", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("applicable_states", sa.JSON, nullable=False),

        sa.Column("frequency", sa.String(20), nullable=False),
        sa.Column("due_date_logic", sa.JSON, nullable=False),
        sa.Column("grace_days", sa.Integer, nullable=False, server_default="0"),
        sa.Column("filing_key", sa.String(64), nullable=True),

        sa.Column("penalty_per_day", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("max_penalty", sa.Numeric(14, 2), nullable=True),
        sa.Column("criticality_score", sa.Integer, nullable=False, server_default="5"),
        sa.Column("amber_threshold_days", sa.Integer, nullable=False, server_default="7"),
        sa.Column("red_triggers", sa.JSON, nullable=False),
        sa.Column("required_documents", sa.JSON, nullable=False),
        sa.Column("depends_on_rules", sa.JSON, nullable=False),

        sa.Column("effective_from", sa.Date, nullable=True),
        sa.Column("effective_until", sa.Date, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),

        sa.Column("created_by", sa.String(100), nullable=False, server_default="system"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.UniqueConstraint("rule_id", "rule_version", name="uq_rule_id_version"),
        sa.UniqueConstraint("catalog_version", name="uq_rule_catalog_version"),
    )
    op.create_index("ix_compliance_state_rules_rule_id", "compliance_state_rules", ["rule_id"])

    # ── Current state (one row per entity) ──
    op.create_table(
        "compliance_states",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("entity_id", sa.Integer, nullable=False, unique=True),

        sa.Column("overall_state", sa.String(10), nullable=False),
        sa.Column("overall_risk_score", sa.Numeric(5, 2), nullable=False),
        sa.Column("total_penalty_exposure", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_overdue_items", sa.Integer, nullable=False),
        sa.Column("total_upcoming_items", sa.Integer, nullable=False),
        sa.Column("next_critical_deadline", sa.Date, nullable=True),
        sa.Column("next_critical_action", sa.Text, nullable=True),
        sa.Column("days_until_next_deadline", sa.Integer, nullable=True),
        sa.Column("data_completeness_score", sa.Numeric(5, 2), nullable=False),

        sa.Column("schema_version", sa.Integer, nullable=False),
        sa.Column("snapshot", sa.JSON, nullable=False),

        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("calculation_version", sa.Integer, nullable=False),
        sa.Column("engine_version", sa.String(20), nullable=False),
        sa.Column("input_hash", sa.String(64), nullable=False),

        sa.Column("row_version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_compliance_states_overall_state", "compliance_states", ["overall_state"])

    # ── History (append-only) ──
    op.create_table(
        "compliance_state_history",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("entity_id", sa.Integer, nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),

        sa.Column("state", sa.String(10), nullable=False),
        sa.Column("risk_score", sa.Numeric(5, 2), nullable=False),
        sa.Column("penalty_exposure", sa.Numeric(14, 2), nullable=False),
        sa.Column("overdue_items", sa.Integer, nullable=False),
        sa.Column("upcoming_items", sa.Integer, nullable=False),
        sa.Column("calculation_version", sa.Integer, nullable=False),

        sa.Column("schema_version", sa.Integer, nullable=False),
        sa.Column("snapshot", sa.JSON, nullable=False),

        sa.UniqueConstraint("entity_id", "recorded_at", name="uq_history_entity_recorded_at"),
    )
    op.create_index("ix_compliance_state_history_entity_id", "compliance_state_history", ["entity_id"])

    # ── Alerts ──
    op.create_table(
        "compliance_alerts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("entity_id", sa.Integer, nullable=False),
        sa.Column("rule_id", sa.String(64), nullable=False),
        sa.Column("alert_type", sa.String(20), nullable=False),
        sa.Column("severity", sa.String(10), nullable=False),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("action_required", sa.Text, nullable=True),

        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.Date, nullable=True),
        sa.Column("trigger_count", sa.Integer, nullable=False, server_default="1"),

        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_acknowledged", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by", sa.String(100), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_compliance_alerts_entity_id", "compliance_alerts", ["entity_id"])
    op.create_index(
        "ix_alert_entity_rule_type_active",
        "compliance_alerts",
        ["entity_id", "rule_id", "alert_type", "is_active"],
    )

    # ── Calculation log (append-only) ──
    op.create_table(
        "state_calculation_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("entity_id", sa.Integer, nullable=False),
        sa.Column("status", sa.String(10), nullable=False),

        sa.Column("previous_state", sa.String(10), nullable=True),
        sa.Column("new_state", sa.String(10), nullable=True),
        sa.Column("state_changed", sa.Boolean, nullable=False, server_default=sa.false()),

        sa.Column("rules_applied", sa.Integer, nullable=False, server_default="0"),
        sa.Column("errors_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("warnings_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("errors", sa.JSON, nullable=False),
        sa.Column("warnings", sa.JSON, nullable=False),

        sa.Column("calculation_time_ms", sa.Integer, nullable=False, server_default="0"),
        sa.Column("triggered_by", sa.String(10), nullable=False),
        sa.Column("input_hash", sa.String(64), nullable=True),
        sa.Column("catalog_version", sa.Integer, nullable=True),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_state_calculation_log_entity_id", "state_calculation_log", ["entity_id"])
    op.create_index("ix_state_calculation_log_calculated_at", "state_calculation_log", ["calculated_at"])


def downgrade() -> None:
    op.drop_table("state_calculation_log")
    op.drop_table("compliance_alerts")
    op.drop_table("compliance_state_history")
    op.drop_table("compliance_states")
    op.drop_table("compliance_state_rules")
