"""
Rule catalog records.

A ComplianceRule is an immutable, versioned definition of one obligation:
who it applies to, when it falls due and how lateness is classified.
Due-date logic is a closed set of named strategies with parameters —
never a free-text expression.
"""
from __future__ import annotations

import re
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ComplianceState(str, Enum):
    GREEN = "GREEN"
    AMBER = "AMBER"
    RED = "RED"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    ComplianceState.GREEN: 0,
    ComplianceState.AMBER: 1,
    ComplianceState.RED: 2,
}


def worst_state(states) -> ComplianceState:
    """RED > AMBER > GREEN; an empty collection is GREEN."""
    return max(states, key=lambda s: s.severity, default=ComplianceState.GREEN)


class ComplianceDomain(str, Enum):
    CORPORATE = "CORPORATE"
    TAX_GST = "TAX_GST"
    TAX_INCOME = "TAX_INCOME"
    LABOUR = "LABOUR"
    FEMA = "FEMA"
    LICENSES = "LICENSES"
    STATUTORY = "STATUTORY"


class Frequency(str, Enum):
    ONE_TIME = "ONE_TIME"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    HALF_YEARLY = "HALF_YEARLY"
    ANNUAL = "ANNUAL"
    EVENT_BASED = "EVENT_BASED"


class DueDateStrategy(str, Enum):
    DAYS_AFTER_PERIOD_END = "DAYS_AFTER_PERIOD_END"                    # period end + N days
    DAY_OF_MONTH_AFTER_PERIOD_END = "DAY_OF_MONTH_AFTER_PERIOD_END"    # e.g. 20th of next month
    FIXED_CALENDAR_DATE = "FIXED_CALENDAR_DATE"                        # e.g. 15 October
    DAYS_AFTER_INCORPORATION = "DAYS_AFTER_INCORPORATION"              # one-time, from incorporation


class DueDateLogic(BaseModel):
    """
    Strategy + parameters. Cross-field consistency is checked by
    evaluation.due_dates.validate_due_date_logic, so a bad row already in
    the catalog is reported per rule instead of breaking the whole load.
    """
    model_config = ConfigDict(frozen=True)

    strategy: DueDateStrategy
    offset_days: int = Field(0, ge=0, le=3660)
    day: Optional[int] = Field(None, ge=1, le=31)
    month: Optional[int] = Field(None, ge=1, le=12)
    months_after: int = Field(1, ge=0, le=24)


class RedTriggers(BaseModel):
    model_config = ConfigDict(frozen=True)

    days_overdue: int = Field(0, ge=0)
    missing_documents: tuple[str, ...] = ()
    dependencies_not_met: tuple[str, ...] = ()


class ComplianceRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    rule_version: int = 1
    rule_name: str
    domain: ComplianceDomain
    description: Optional[str] = None
    help_text: Optional[str] = None

    # ── Applicability ──
    applicable_entity_types: tuple[str, ...] = ()
    turnover_min: Optional[Decimal] = None
    turnover_max: Optional[Decimal] = None
    employee_count_min: Optional[int] = None
    requires_gst: bool = False
    requires_pf: bool = False
    requires_esi: bool = False
    requires_foreign_transactions: bool = False
    state_specific: bool = False
    applicable_states: tuple[str, ...] = ()

    # ── Timing ──
    frequency: Frequency
    due_date_logic: DueDateLogic
    grace_days: int = Field(0, ge=0)
    filing_key: Optional[str] = Field(None, description="Filing/service key satisfying this rule; defaults to rule_id")

    # ── Risk ──
    penalty_per_day: Decimal = Decimal("0")
    max_penalty: Optional[Decimal] = None
    criticality_score: int = Field(5, ge=1, le=10)
    amber_threshold_days: int = Field(7, ge=0)
    red_triggers: RedTriggers = RedTriggers()
    required_documents: tuple[str, ...] = ()
    depends_on_rules: tuple[str, ...] = ()

    # ── Lifecycle ──
    effective_from: Optional[date] = None
    effective_until: Optional[date] = None
    is_active: bool = True

    @property
    def effective_filing_key(self) -> str:
        return self.filing_key or self.rule_id

    @property
    def dependencies(self) -> set[str]:
        return set(self.depends_on_rules) | set(self.red_triggers.dependencies_not_met)

    @property
    def is_critical(self) -> bool:
        return self.criticality_score >= 8


def normalize_entity_type(entity_type: Optional[str]) -> str:
    """Collapse spelling variants ("Private Limited", "pvt ltd") to catalog keys."""
    if not entity_type:
        return ""
    squashed = re.sub(r"[^a-z]", "", entity_type.lower())
    aliases = {
        "privatelimited": "pvt_ltd",
        "privateltd": "pvt_ltd",
        "pvtlimited": "pvt_ltd",
        "pvtltd": "pvt_ltd",
        "pvtltdcompany": "pvt_ltd",
        "publiclimited": "public_limited",
        "publicltd": "public_limited",
        "opc": "opc",
        "onepersoncompany": "opc",
        "llp": "llp",
        "proprietorship": "proprietorship",
        "soleproprietorship": "proprietorship",
        "soleprop": "proprietorship",
        "partnership": "partnership",
    }
    return aliases.get(squashed, entity_type.strip().lower())


# ── Admin write payloads ──

class ComplianceRuleWrite(BaseModel):
    """Body of POST /v1/admin/rules and PUT /v1/admin/rules/{rule_id}."""
    rule_name: str
    domain: ComplianceDomain
    description: Optional[str] = None
    help_text: Optional[str] = None
    applicable_entity_types: list[str] = []
    turnover_min: Optional[Decimal] = Field(None, ge=0)
    turnover_max: Optional[Decimal] = Field(None, ge=0)
    employee_count_min: Optional[int] = Field(None, ge=0)
    requires_gst: bool = False
    requires_pf: bool = False
    requires_esi: bool = False
    requires_foreign_transactions: bool = False
    state_specific: bool = False
    applicable_states: list[str] = []
    frequency: Frequency
    due_date_logic: DueDateLogic
    grace_days: int = Field(0, ge=0)
    filing_key: Optional[str] = None
    penalty_per_day: Decimal = Field(Decimal("0"), ge=0)
    max_penalty: Optional[Decimal] = Field(None, ge=0)
    criticality_score: int = Field(5, ge=1, le=10)
    amber_threshold_days: int = Field(7, ge=0)
    red_triggers: RedTriggers = RedTriggers()
    required_documents: list[str] = []
    depends_on_rules: list[str] = []
    effective_from: Optional[date] = None
    effective_until: Optional[date] = None
    is_active: bool = True

    @field_validator("applicable_entity_types")
    @classmethod
    def normalize_types(cls, v: list[str]) -> list[str]:
        return [normalize_entity_type(t) for t in v if t]


class ComplianceRuleCreate(ComplianceRuleWrite):
    rule_id: str = Field(pattern=r"^[A-Z0-9_]{3,64}$")


class CatalogVersionResponse(BaseModel):
    catalog_version: int
    active_rules: int
    invalid_rules: dict[str, str] = {}
