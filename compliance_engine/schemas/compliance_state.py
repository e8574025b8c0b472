"""
Engine outputs: requirement → domain → entity state, alerts, calculation
log, plus the API envelopes built from them.

Snapshots are persisted as schema-versioned JSON of EntityComplianceState
(SCHEMA_VERSION); readers reject versions they do not understand.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from compliance_engine.schemas.rules import ComplianceDomain, ComplianceState

SCHEMA_VERSION = 1


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TriggerSource(str, Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"
    WEBHOOK = "WEBHOOK"


class AlertType(str, Enum):
    UPCOMING = "UPCOMING"
    OVERDUE = "OVERDUE"
    PENALTY_RISK = "PENALTY_RISK"
    STATE_CHANGE = "STATE_CHANGE"


class AlertSeverity(str, Enum):
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    INFO = "INFO"


class CalculationStatus(str, Enum):
    SUCCESS = "SUCCESS"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class ComplianceRequirementStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    requirement_id: str
    rule_version: int
    name: str
    domain: ComplianceDomain
    state: ComplianceState
    criticality_score: int
    due_date: Optional[date] = None
    days_until_due: Optional[int] = None
    days_overdue: Optional[int] = None
    penalty_exposure: Decimal = Decimal("0.00")
    projected_penalty: Decimal = Decimal("0.00")
    priority: Priority
    is_recurring: bool
    period_end: Optional[date] = None
    last_filed: Optional[date] = None
    blockers: tuple[str, ...] = ()
    red_reasons: tuple[str, ...] = ()
    action_required: str


class DomainComplianceState(BaseModel):
    model_config = ConfigDict(frozen=True)

    domain: ComplianceDomain
    state: ComplianceState
    risk_score: Decimal
    active_requirements: int
    overdue_requirements: int
    upcoming_deadlines: int
    total_penalty_exposure: Decimal
    requirements: tuple[ComplianceRequirementStatus, ...] = ()


class UnevaluatedRequirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    requirement_id: str
    reason: str


class EntityComplianceState(BaseModel):
    model_config = ConfigDict(frozen=True)

    schema_version: int = SCHEMA_VERSION
    entity_id: int
    entity_name: Optional[str] = None
    entity_type: Optional[str] = None
    overall_state: ComplianceState
    overall_risk_score: Decimal
    total_penalty_exposure: Decimal
    total_overdue_items: int
    total_upcoming_items: int
    next_critical_deadline: Optional[date] = None
    next_critical_action: Optional[str] = None
    next_critical_requirement_id: Optional[str] = None
    days_until_next_deadline: Optional[int] = None
    data_completeness_score: Decimal
    domains: tuple[DomainComplianceState, ...]
    unevaluated_requirements: tuple[UnevaluatedRequirement, ...] = ()
    calculated_at: datetime
    calculation_version: int = Field(description="Rule catalog version the state was computed against")
    engine_version: str
    input_hash: str

    def requirements(self) -> list[ComplianceRequirementStatus]:
        return [r for d in self.domains for r in d.requirements]

    def requirement_map(self) -> dict[str, ComplianceRequirementStatus]:
        return {r.requirement_id: r for r in self.requirements()}


class AlertDraft(BaseModel):
    """Alert emitted by the differ, before persistence."""
    model_config = ConfigDict(frozen=True)

    rule_id: str
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    action_required: Optional[str] = None
    expires_at: Optional[date] = None


class ComplianceAlertResponse(BaseModel):
    id: int
    entity_id: int
    rule_id: str
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    action_required: Optional[str] = None
    triggered_at: datetime
    expires_at: Optional[date] = None
    is_active: bool
    is_acknowledged: bool
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    trigger_count: int

    model_config = ConfigDict(from_attributes=True)


class HistoryEntryResponse(BaseModel):
    recorded_at: datetime
    state: ComplianceState
    risk_score: Decimal
    penalty_exposure: Decimal
    overdue_items: int
    calculation_version: int

    model_config = ConfigDict(from_attributes=True)


class CalculationLogResponse(BaseModel):
    id: int
    entity_id: int
    status: CalculationStatus
    previous_state: Optional[ComplianceState] = None
    new_state: Optional[ComplianceState] = None
    state_changed: bool
    rules_applied: int
    errors_count: int
    warnings_count: int
    errors: list[str]
    warnings: list[str]
    calculation_time_ms: int
    triggered_by: TriggerSource
    input_hash: Optional[str] = None
    catalog_version: Optional[int] = None
    calculated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CalculationResult(BaseModel):
    """What the compute entry point returns: a full state or an explicit failure."""
    success: bool
    entity_id: int
    status: CalculationStatus
    entity_state: Optional[EntityComplianceState] = None
    alerts: list[AlertDraft] = []
    errors: list[str] = []
    warnings: list[str] = []
    failure_reason: Optional[str] = None
    calculation_time_ms: int = 0


class DomainSummary(BaseModel):
    domain: ComplianceDomain
    state: ComplianceState
    risk_score: Decimal
    overdue_requirements: int


class StateSummaryResponse(BaseModel):
    entity_id: int
    overall_state: ComplianceState
    overall_risk_score: Decimal
    next_critical_action: Optional[str] = None
    next_critical_deadline: Optional[date] = None
    days_until_next_deadline: Optional[int] = None
    total_penalty_exposure: Decimal
    total_overdue_items: int
    total_upcoming_items: int
    data_completeness_score: Decimal
    domains: list[DomainSummary]
    calculated_at: datetime

    @classmethod
    def from_state(cls, state: EntityComplianceState) -> "StateSummaryResponse":
        return cls(
            entity_id=state.entity_id,
            overall_state=state.overall_state,
            overall_risk_score=state.overall_risk_score,
            next_critical_action=state.next_critical_action,
            next_critical_deadline=state.next_critical_deadline,
            days_until_next_deadline=state.days_until_next_deadline,
            total_penalty_exposure=state.total_penalty_exposure,
            total_overdue_items=state.total_overdue_items,
            total_upcoming_items=state.total_upcoming_items,
            data_completeness_score=state.data_completeness_score,
            domains=[
                DomainSummary(
                    domain=d.domain,
                    state=d.state,
                    risk_score=d.risk_score,
                    overdue_requirements=d.overdue_requirements,
                )
                for d in state.domains
                if d.active_requirements > 0
            ],
            calculated_at=state.calculated_at,
        )


class ScoreCategory(BaseModel):
    domain: ComplianceDomain
    name: str
    score: int
    max_score: int = 100
    status: str
    weight: int


class RiskFactor(BaseModel):
    title: str
    impact: str
    count: int


class ScoreTimelinePoint(BaseModel):
    recorded_at: datetime
    score: int


class ComplianceScoreResponse(BaseModel):
    """Compliance score for the dashboard: 100 minus risk, graded and trended."""
    entity_id: int
    overall_score: int
    previous_score: Optional[int] = None
    score_change: Optional[int] = None
    grade: str
    rank: str
    overall_state: ComplianceState
    categories: list[ScoreCategory]
    risk_factors: list[RiskFactor]
    next_critical_action: Optional[str] = None
    timeline: list[ScoreTimelinePoint]
    calculated_at: datetime
