"""
Compliance State Engine — pure calculation pipeline

Orchestrates, for one entity:
  1. Topological ordering of the catalog snapshot (dependencies first)
  2. Rule evaluation (fan-out, warnings/errors collected per rule)
  3. Domain aggregation
  4. Entity aggregation (overall state, risk, next deadline, completeness)

No I/O: the same facts, catalog snapshot and clock always give the same
EntityComplianceState. Persistence, locking and alerts live in
services.calculation_service.
"""
from __future__ import annotations

import heapq
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Mapping, Optional, Sequence

import structlog

from compliance_engine.core.exceptions import RuleEvaluationError, RuleEvaluationWarning
from compliance_engine.evaluation import aggregation
from compliance_engine.evaluation.evaluator import evaluate_rule
from compliance_engine.schemas.calculation_input import StateCalculationInput
from compliance_engine.schemas.compliance_state import (
    ComplianceRequirementStatus,
    EntityComplianceState,
    UnevaluatedRequirement,
)
from compliance_engine.schemas.rules import ComplianceRule, worst_state

logger = structlog.get_logger()


@dataclass
class CalculationOutcome:
    state: EntityComplianceState
    rules_applied: int
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: int = 0


def order_rules(rules: Sequence[ComplianceRule]) -> tuple[list[ComplianceRule], list[ComplianceRule]]:
    """
    Kahn's algorithm over depends_on_rules ∪ red_triggers.dependencies_not_met.
    Ready rules are taken in rule-id order so the result never depends on
    catalog ordering. Returns (ordered, unorderable) — the latter sit on or
    behind a dependency cycle.
    """
    by_id = {r.rule_id: r for r in rules}
    indegree = {rid: 0 for rid in by_id}
    dependents: dict[str, list[str]] = {rid: [] for rid in by_id}
    for rule in rules:
        for dep in sorted(rule.dependencies):
            if dep in by_id and dep != rule.rule_id:
                indegree[rule.rule_id] += 1
                dependents[dep].append(rule.rule_id)
            elif dep == rule.rule_id:
                indegree[rule.rule_id] += 1  # self-dependency never resolves

    ready = [rid for rid, deg in indegree.items() if deg == 0]
    heapq.heapify(ready)
    ordered: list[ComplianceRule] = []
    while ready:
        rid = heapq.heappop(ready)
        ordered.append(by_id[rid])
        for child in dependents[rid]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, child)

    done = {r.rule_id for r in ordered}
    stuck = sorted((r for r in rules if r.rule_id not in done), key=lambda r: r.rule_id)
    return ordered, stuck


def calculate_state(
    facts: StateCalculationInput,
    rules: Sequence[ComplianceRule],
    catalog_version: int,
    calculated_at: datetime,
    *,
    today: Optional[date] = None,
    engine_version: str = "1.0.0",
    invalid_rules: Optional[Mapping[str, str]] = None,
    upcoming_window_days: int = 7,
) -> CalculationOutcome:
    """
    Main calculation entry point.
    """
    t0 = time.perf_counter_ns()
    today = today or calculated_at.date()
    errors: list[str] = []
    warnings: list[str] = []

    # ── Step 1: catalog rows that failed to load are reported, not evaluated ──
    for rule_id, message in sorted((invalid_rules or {}).items()):
        errors.append(f"{rule_id}: {message}")

    # ── Step 2: dependency order ──
    ordered, stuck = order_rules(rules)
    for rule in stuck:
        errors.append(str(RuleEvaluationError(rule.rule_id, "unresolvable dependency cycle")))
        logger.warning("rule_skipped_cycle", entity_id=facts.entity_id, rule_id=rule.rule_id)

    # ── Step 3: evaluate ──
    resolved: dict[str, Optional[ComplianceRequirementStatus]] = {}
    evaluated: list[ComplianceRequirementStatus] = []
    unevaluated: list[UnevaluatedRequirement] = []

    for rule in ordered:
        try:
            status = evaluate_rule(rule, facts, today, resolved)
        except RuleEvaluationWarning as w:
            resolved[rule.rule_id] = None
            warnings.append(str(w))
            unevaluated.append(UnevaluatedRequirement(requirement_id=rule.rule_id, reason=f"missing {w.field}"))
            continue
        except RuleEvaluationError as e:
            resolved[rule.rule_id] = None
            errors.append(str(e))
            logger.warning("rule_skipped_error", entity_id=facts.entity_id, rule_id=rule.rule_id, error=str(e))
            continue

        if status is None:
            continue  # not applicable
        resolved[rule.rule_id] = status
        evaluated.append(status)

    # ── Step 4: domains ──
    domains = aggregation.aggregate_domains(evaluated, upcoming_window_days)

    # ── Step 5: entity ──
    next_req = aggregation.next_critical_requirement(domains)

    state = EntityComplianceState(
        entity_id=facts.entity_id,
        entity_name=facts.entity_name,
        entity_type=facts.entity_type,
        overall_state=worst_state(d.state for d in domains),
        overall_risk_score=aggregation.overall_risk_score(domains),
        total_penalty_exposure=sum((d.total_penalty_exposure for d in domains), Decimal("0.00")),
        total_overdue_items=sum(d.overdue_requirements for d in domains),
        total_upcoming_items=sum(d.upcoming_deadlines for d in domains),
        next_critical_deadline=next_req.due_date if next_req else None,
        next_critical_action=next_req.action_required if next_req else None,
        next_critical_requirement_id=next_req.requirement_id if next_req else None,
        days_until_next_deadline=(
            (next_req.due_date - today).days if next_req and next_req.due_date else None
        ),
        data_completeness_score=aggregation.data_completeness_score(len(evaluated), len(unevaluated)),
        domains=domains,
        unevaluated_requirements=tuple(unevaluated),
        calculated_at=calculated_at,
        calculation_version=catalog_version,
        engine_version=engine_version,
        input_hash=facts.input_hash(),
    )

    elapsed_ms = int((time.perf_counter_ns() - t0) / 1_000_000)

    logger.info(
        "state_calculation_complete",
        entity_id=facts.entity_id,
        overall_state=state.overall_state.value,
        risk_score=str(state.overall_risk_score),
        rules_applied=len(evaluated),
        warnings_count=len(warnings),
        errors_count=len(errors),
        elapsed_ms=elapsed_ms,
    )

    return CalculationOutcome(
        state=state,
        rules_applied=len(evaluated),
        errors=errors,
        warnings=warnings,
        elapsed_ms=elapsed_ms,
    )
