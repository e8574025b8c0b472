"""
Domain and entity roll-ups.

Domain risk score  = Σ(criticality × weight(state)) / Σ criticality × 100
Entity risk score  = domain scores weighted by requirement count
                     (domains without requirements are left out)
State at every level is worst-of: RED > AMBER > GREEN.
"""
from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence

from compliance_engine.schemas.compliance_state import (
    ComplianceRequirementStatus,
    DomainComplianceState,
)
from compliance_engine.schemas.rules import ComplianceDomain, ComplianceState, worst_state

SEVERITY_WEIGHTS: dict[ComplianceState, Decimal] = {
    ComplianceState.GREEN: Decimal("0"),
    ComplianceState.AMBER: Decimal("0.5"),
    ComplianceState.RED: Decimal("1"),
}

HUNDRED = Decimal("100")
CENTS = Decimal("0.01")


def _q(value: Decimal) -> Decimal:
    return value.quantize(CENTS, ROUND_HALF_UP)


def is_overdue(req: ComplianceRequirementStatus) -> bool:
    return bool(req.days_overdue and req.days_overdue > 0)


def is_upcoming(req: ComplianceRequirementStatus, window_days: int = 7) -> bool:
    return req.days_until_due is not None and 0 < req.days_until_due <= window_days


def domain_risk_score(requirements: Sequence[ComplianceRequirementStatus]) -> Decimal:
    total_weight = sum(r.criticality_score for r in requirements)
    if total_weight == 0:
        return _q(Decimal("0"))
    weighted = sum(r.criticality_score * SEVERITY_WEIGHTS[r.state] for r in requirements)
    return _q(Decimal(weighted) / Decimal(total_weight) * HUNDRED)


def aggregate_domain(
    domain: ComplianceDomain,
    requirements: Iterable[ComplianceRequirementStatus],
    upcoming_window_days: int = 7,
) -> DomainComplianceState:
    reqs = sorted(requirements, key=lambda r: r.requirement_id)
    return DomainComplianceState(
        domain=domain,
        state=worst_state(r.state for r in reqs),
        risk_score=domain_risk_score(reqs),
        active_requirements=len(reqs),
        overdue_requirements=sum(1 for r in reqs if is_overdue(r)),
        upcoming_deadlines=sum(1 for r in reqs if is_upcoming(r, upcoming_window_days)),
        total_penalty_exposure=_q(sum((r.penalty_exposure for r in reqs), Decimal("0"))),
        requirements=tuple(reqs),
    )


def aggregate_domains(
    requirements: Iterable[ComplianceRequirementStatus],
    upcoming_window_days: int = 7,
) -> tuple[DomainComplianceState, ...]:
    """Always one entry per domain, in enum order."""
    by_domain: dict[ComplianceDomain, list[ComplianceRequirementStatus]] = {d: [] for d in ComplianceDomain}
    for req in requirements:
        by_domain[req.domain].append(req)
    return tuple(aggregate_domain(d, reqs, upcoming_window_days) for d, reqs in by_domain.items())


def overall_risk_score(domains: Sequence[DomainComplianceState]) -> Decimal:
    scored = [d for d in domains if d.active_requirements > 0]
    total = sum(d.active_requirements for d in scored)
    if total == 0:
        return _q(Decimal("0"))
    weighted = sum(d.risk_score * d.active_requirements for d in scored)
    return _q(Decimal(weighted) / Decimal(total))


def next_critical_requirement(
    domains: Sequence[DomainComplianceState],
) -> Optional[ComplianceRequirementStatus]:
    """Earliest-due non-GREEN requirement; ties → higher criticality, then rule id."""
    candidates = [r for d in domains for r in d.requirements if r.state != ComplianceState.GREEN]
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda r: (
            r.due_date is None,
            r.due_date or date.max,
            -r.criticality_score,
            r.requirement_id,
        ),
    )


def data_completeness_score(evaluated: int, unevaluated: int) -> Decimal:
    attempted = evaluated + unevaluated
    if attempted == 0:
        return _q(HUNDRED)
    return _q(Decimal(evaluated) / Decimal(attempted) * HUNDRED)
