"""
Alert Differ — compares a new entity state with the stored one, requirement
by requirement.

  STATE_CHANGE  severity rose (GREEN→AMBER, GREEN→RED, AMBER→RED)
  OVERDUE       requirement entered RED while past its due date
  UPCOMING      requirement entered AMBER (from either side)
  PENALTY_RISK  exposure crossed the configured threshold upwards

A requirement with no previous record is diffed against GREEN with zero
exposure. Requirements that are GREEN now (or gone) have their active
alerts resolved.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from compliance_engine.schemas.compliance_state import (
    AlertDraft,
    AlertSeverity,
    AlertType,
    ComplianceRequirementStatus,
    EntityComplianceState,
    Priority,
)
from compliance_engine.schemas.rules import ComplianceState


@dataclass
class AlertDiff:
    drafts: list[AlertDraft] = field(default_factory=list)
    resolved_rule_ids: set[str] = field(default_factory=set)


def diff_alerts(
    previous: Optional[EntityComplianceState],
    current: EntityComplianceState,
    penalty_threshold: Decimal,
) -> AlertDiff:
    before = previous.requirement_map() if previous else {}
    after = current.requirement_map()
    diff = AlertDiff()

    for rule_id in sorted(after):
        req = after[rule_id]
        prev = before.get(rule_id)
        prev_state = prev.state if prev else ComplianceState.GREEN
        prev_exposure = prev.penalty_exposure if prev else Decimal("0")

        if req.state.severity > prev_state.severity:
            diff.drafts.append(_state_change(req, prev_state))
        if req.state != prev_state:
            if req.state == ComplianceState.RED:
                # RED from a missing document or dependency alone is not overdue
                if req.days_overdue:
                    diff.drafts.append(_overdue(req))
            elif req.state == ComplianceState.AMBER:
                diff.drafts.append(_upcoming(req))

        if prev_exposure < penalty_threshold <= req.penalty_exposure:
            diff.drafts.append(_penalty_risk(req, penalty_threshold))

        if req.state == ComplianceState.GREEN:
            diff.resolved_rule_ids.add(rule_id)

    diff.resolved_rule_ids.update(set(before) - set(after))
    return diff


def _state_change(req: ComplianceRequirementStatus, prev_state: ComplianceState) -> AlertDraft:
    return AlertDraft(
        rule_id=req.requirement_id,
        alert_type=AlertType.STATE_CHANGE,
        severity=AlertSeverity.CRITICAL if req.state == ComplianceState.RED else AlertSeverity.WARNING,
        title=f"{req.name}: {prev_state.value} → {req.state.value}",
        message="; ".join(req.red_reasons) or req.action_required,
        action_required=req.action_required,
        expires_at=req.due_date,
    )


def _overdue(req: ComplianceRequirementStatus) -> AlertDraft:
    return AlertDraft(
        rule_id=req.requirement_id,
        alert_type=AlertType.OVERDUE,
        severity=AlertSeverity.CRITICAL,
        title=f"{req.name} Overdue",
        message=req.action_required,
        action_required=req.action_required,
    )


def _upcoming(req: ComplianceRequirementStatus) -> AlertDraft:
    urgent = req.priority in (Priority.CRITICAL, Priority.HIGH)
    return AlertDraft(
        rule_id=req.requirement_id,
        alert_type=AlertType.UPCOMING,
        severity=AlertSeverity.WARNING if urgent else AlertSeverity.INFO,
        title=f"{req.name} Due Soon",
        message=req.action_required,
        action_required=req.action_required,
        expires_at=req.due_date,
    )


def _penalty_risk(req: ComplianceRequirementStatus, threshold: Decimal) -> AlertDraft:
    return AlertDraft(
        rule_id=req.requirement_id,
        alert_type=AlertType.PENALTY_RISK,
        severity=AlertSeverity.CRITICAL,
        title=f"{req.name}: penalty exposure ₹{req.penalty_exposure}",
        message=f"Accrued late fees of ₹{req.penalty_exposure} exceed the ₹{threshold} alert threshold",
        action_required=req.action_required,
    )
