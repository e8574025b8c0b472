"""
Rule Evaluator — one (entity, rule) pair at a time.

  1. Applicability   (entity type, turnover band, headcount, registrations,
                      state, lifecycle window)
  2. Due date        (evaluation.due_dates)
  3. Classification  RED > AMBER > GREEN
  4. Penalty exposure, priority, blockers, action text

Returns None for rules that do not apply. Missing facts raise
RuleEvaluationWarning, unusable rule definitions raise RuleEvaluationError;
the caller decides what to do with either.
"""
from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional

from compliance_engine.core.exceptions import RuleEvaluationWarning
from compliance_engine.evaluation.due_dates import resolve_due_date, validate_due_date_logic
from compliance_engine.schemas.calculation_input import StateCalculationInput
from compliance_engine.schemas.compliance_state import ComplianceRequirementStatus, Priority
from compliance_engine.schemas.rules import (
    ComplianceRule,
    ComplianceState,
    Frequency,
    normalize_entity_type,
)

CENTS = Decimal("0.01")


# ═══════════════════════════════════════════════════════════════
# 1. Applicability
# ═══════════════════════════════════════════════════════════════

def is_applicable(rule: ComplianceRule, facts: StateCalculationInput, today: date) -> bool:
    """
    A definite mismatch on any criterion makes the rule inapplicable even if
    other facts are missing; only when nothing disqualifies it does a
    missing fact surface as a warning.
    """
    if not rule.is_active:
        return False
    if rule.effective_from and today < rule.effective_from:
        return False
    if rule.effective_until and today > rule.effective_until:
        return False

    missing: list[str] = []

    if rule.applicable_entity_types:
        if not facts.entity_type:
            missing.append("entity_type")
        else:
            allowed = {normalize_entity_type(t) for t in rule.applicable_entity_types}
            if normalize_entity_type(facts.entity_type) not in allowed:
                return False

    if rule.turnover_min is not None or rule.turnover_max is not None:
        if facts.turnover is None:
            missing.append("turnover")
        else:
            if rule.turnover_min is not None and facts.turnover < rule.turnover_min:
                return False
            if rule.turnover_max is not None and facts.turnover > rule.turnover_max:
                return False

    if rule.employee_count_min is not None:
        if facts.employee_count is None:
            missing.append("employee_count")
        elif facts.employee_count < rule.employee_count_min:
            return False

    for required, value, field in (
        (rule.requires_gst, facts.has_gst, "has_gst"),
        (rule.requires_pf, facts.has_pf, "has_pf"),
        (rule.requires_esi, facts.has_esi, "has_esi"),
        (rule.requires_foreign_transactions, facts.has_foreign_transactions, "has_foreign_transactions"),
    ):
        if not required:
            continue
        if value is None:
            missing.append(field)
        elif not value:
            return False

    if rule.state_specific and rule.applicable_states:
        if not facts.state:
            missing.append("state")
        elif facts.state.strip().lower() not in {s.lower() for s in rule.applicable_states}:
            return False

    if missing:
        raise RuleEvaluationWarning(rule.rule_id, missing[0])
    return True


# ═══════════════════════════════════════════════════════════════
# 2-4. Evaluation
# ═══════════════════════════════════════════════════════════════

def evaluate_rule(
    rule: ComplianceRule,
    facts: StateCalculationInput,
    today: date,
    resolved: Mapping[str, Optional[ComplianceRequirementStatus]],
) -> Optional[ComplianceRequirementStatus]:
    """
    `resolved` holds the statuses already computed in this run, keyed by rule
    id; None marks a rule that was attempted but could not be evaluated.
    """
    validate_due_date_logic(rule.rule_id, rule.due_date_logic, rule.frequency)

    if not is_applicable(rule, facts, today):
        return None

    resolution = resolve_due_date(rule, facts)
    due = resolution.due_date
    delta = (due - today).days if due is not None else None
    days_until = max(delta, 0) if delta is not None else None
    days_overdue = max(-delta, 0) if delta is not None else None

    # ── Classification ──
    red_reasons: list[str] = []
    overdue_trigger = days_overdue is not None and days_overdue > rule.red_triggers.days_overdue
    if overdue_trigger:
        red_reasons.append(f"{days_overdue} days overdue")

    valid_docs = facts.valid_document_types(today)
    missing_docs = [d for d in rule.red_triggers.missing_documents if d not in valid_docs]
    if missing_docs:
        red_reasons.append("Missing or unapproved documents: " + ", ".join(missing_docs))

    unmet = [dep for dep in rule.red_triggers.dependencies_not_met if not dependency_met(dep, resolved)]
    if unmet:
        red_reasons.append("Dependencies not met: " + ", ".join(unmet))

    if red_reasons:
        state = ComplianceState.RED
    elif delta is not None and delta <= rule.amber_threshold_days:
        state = ComplianceState.AMBER
    else:
        state = ComplianceState.GREEN

    # ── Penalty ──
    exposure = Decimal("0")
    projected = Decimal("0")
    if state == ComplianceState.RED and overdue_trigger:
        exposure = penalty_for(rule, days_overdue)
    elif state == ComplianceState.AMBER:
        projected = penalty_for(rule, rule.amber_threshold_days)

    return ComplianceRequirementStatus(
        requirement_id=rule.rule_id,
        rule_version=rule.rule_version,
        name=rule.rule_name,
        domain=rule.domain,
        state=state,
        criticality_score=rule.criticality_score,
        due_date=due,
        days_until_due=days_until,
        days_overdue=days_overdue,
        penalty_exposure=exposure.quantize(CENTS, ROUND_HALF_UP),
        projected_penalty=projected.quantize(CENTS, ROUND_HALF_UP),
        priority=determine_priority(state, rule.criticality_score),
        is_recurring=rule.frequency not in (Frequency.ONE_TIME, Frequency.EVENT_BASED),
        period_end=resolution.period_end,
        last_filed=resolution.last_filed,
        blockers=tuple(identify_blockers(rule, facts, today, resolved)),
        red_reasons=tuple(red_reasons),
        action_required=action_text(
            rule, state, resolution.source, days_until, days_overdue, overdue_trigger, missing_docs, unmet,
        ),
    )


def dependency_met(rule_id: str, resolved: Mapping[str, Optional[ComplianceRequirementStatus]]) -> bool:
    """Unknown, inapplicable or unevaluated dependencies count as not met."""
    status = resolved.get(rule_id)
    return status is not None and status.state != ComplianceState.RED


def penalty_for(rule: ComplianceRule, days: int) -> Decimal:
    amount = rule.penalty_per_day * max(days, 0)
    if rule.max_penalty is not None:
        amount = min(amount, rule.max_penalty)
    return amount


def determine_priority(state: ComplianceState, criticality_score: int) -> Priority:
    critical = criticality_score >= 8
    if state == ComplianceState.RED:
        return Priority.CRITICAL if critical else Priority.HIGH
    if state == ComplianceState.AMBER:
        return Priority.HIGH if critical else Priority.MEDIUM
    return Priority.LOW


def identify_blockers(
    rule: ComplianceRule,
    facts: StateCalculationInput,
    today: date,
    resolved: Mapping[str, Optional[ComplianceRequirementStatus]],
) -> list[str]:
    blockers: list[str] = []
    uploaded = facts.uploaded_document_types()
    valid = facts.valid_document_types(today)
    for doc in rule.required_documents:
        if doc not in uploaded:
            blockers.append(f"Missing document: {doc}")
        elif doc not in valid:
            blockers.append(f"Document not approved or expired: {doc}")
    for dep in rule.depends_on_rules:
        if not dependency_met(dep, resolved):
            blockers.append(f"Waiting on {dep}")
    return blockers


def action_text(
    rule: ComplianceRule,
    state: ComplianceState,
    source: str,
    days_until: Optional[int],
    days_overdue: Optional[int],
    overdue_trigger: bool,
    missing_docs: list[str],
    unmet: list[str],
) -> str:
    name = rule.rule_name
    if state == ComplianceState.RED:
        if overdue_trigger:
            return f"File {name} immediately ({days_overdue} days overdue)"
        if missing_docs:
            return f"Upload approved documents for {name}: {', '.join(missing_docs)}"
        return f"Complete {', '.join(unmet)} before {name}"
    if state == ComplianceState.AMBER:
        if days_overdue:
            return f"File {name} now ({days_overdue} days past due)"
        if days_until == 0:
            return f"File {name} today"
        return f"Prepare {name} (due in {days_until} days)"
    if source == "SATISFIED":
        return f"{name} is complete"
    if source == "NO_PENDING_EVENT":
        return f"No pending {name}"
    return f"{name} is up to date"
