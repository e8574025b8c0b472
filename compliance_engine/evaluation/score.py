"""
Compliance score — the dashboard view of a stored state.

  score     = 100 − risk score, clamped to 0..100, whole points
  category  = one per domain with requirements, weighted by requirement share
  previous  = score of the history row before the current one
  timeline  = recent history, oldest first
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

from compliance_engine.schemas.compliance_state import (
    ComplianceScoreResponse,
    EntityComplianceState,
    HistoryEntryResponse,
    RiskFactor,
    ScoreCategory,
    ScoreTimelinePoint,
)
from compliance_engine.schemas.rules import ComplianceDomain

# (minimum score, grade, rank)
GRADE_BANDS = [
    (90, "A", "Excellent"),
    (80, "B", "Very Good"),
    (70, "C", "Good"),
    (60, "D", "Fair"),
    (0,  "F", "Needs Improvement"),
]

# (minimum score, category status)
CATEGORY_BANDS = [
    (85, "excellent"),
    (70, "good"),
    (50, "fair"),
    (0,  "poor"),
]

DOMAIN_LABELS: dict[ComplianceDomain, str] = {
    ComplianceDomain.CORPORATE: "ROC Filings",
    ComplianceDomain.TAX_GST: "GST Compliance",
    ComplianceDomain.TAX_INCOME: "Income Tax & TDS",
    ComplianceDomain.LABOUR: "PF/ESI & Labour Laws",
    ComplianceDomain.FEMA: "FEMA",
    ComplianceDomain.LICENSES: "Licenses & Registrations",
    ComplianceDomain.STATUTORY: "Statutory Registers",
}


def score_from_risk(risk_score: Decimal) -> int:
    score = max(Decimal("0"), min(Decimal("100"), Decimal("100") - risk_score))
    return int(score.quantize(Decimal("1"), ROUND_HALF_UP))


def grade_for(score: int) -> tuple[str, str]:
    for threshold, grade, rank in GRADE_BANDS:
        if score >= threshold:
            return grade, rank
    return "F", "Needs Improvement"


def category_status(score: int) -> str:
    for threshold, status in CATEGORY_BANDS:
        if score >= threshold:
            return status
    return "poor"


def _risk_factors(state: EntityComplianceState) -> list[RiskFactor]:
    factors = []
    if state.total_overdue_items:
        factors.append(RiskFactor(title="Overdue compliance items", impact="High", count=state.total_overdue_items))
    if state.total_upcoming_items:
        factors.append(RiskFactor(title="Deadlines due soon", impact="Medium", count=state.total_upcoming_items))
    if state.unevaluated_requirements:
        factors.append(RiskFactor(
            title="Requirements not evaluated (missing data)",
            impact="Low",
            count=len(state.unevaluated_requirements),
        ))
    return factors


def compliance_score(
    state: EntityComplianceState,
    history: Sequence[HistoryEntryResponse],
) -> ComplianceScoreResponse:
    """history is newest first; its first row is the stored state's own calculation."""
    overall = score_from_risk(state.overall_risk_score)
    previous = score_from_risk(history[1].risk_score) if len(history) > 1 else None
    grade, rank = grade_for(overall)

    scored = [d for d in state.domains if d.active_requirements > 0]
    total = sum(d.active_requirements for d in scored)
    categories = []
    for d in scored:
        score = score_from_risk(d.risk_score)
        categories.append(ScoreCategory(
            domain=d.domain,
            name=DOMAIN_LABELS[d.domain],
            score=score,
            status=category_status(score),
            weight=round(100 * d.active_requirements / total),
        ))

    return ComplianceScoreResponse(
        entity_id=state.entity_id,
        overall_score=overall,
        previous_score=previous,
        score_change=overall - previous if previous is not None else None,
        grade=grade,
        rank=rank,
        overall_state=state.overall_state,
        categories=categories,
        risk_factors=_risk_factors(state),
        next_critical_action=state.next_critical_action,
        timeline=[
            ScoreTimelinePoint(recorded_at=h.recorded_at, score=score_from_risk(h.risk_score))
            for h in reversed(history)
        ],
        calculated_at=state.calculated_at,
    )
