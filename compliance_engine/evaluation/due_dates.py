"""
Due-date derivation — closed strategies only.

Periods follow the Indian financial year (April → March):
  MONTHLY      → calendar month
  QUARTERLY    → Apr-Jun, Jul-Sep, Oct-Dec, Jan-Mar
  HALF_YEARLY  → Apr-Sep, Oct-Mar
  ANNUAL       → Apr-Mar

The outstanding period is the one containing the later of
  (a) the incorporation date, and
  (b) the day after the last period the rule's filing key was filed for.
Its nominal due date comes from the rule's strategy; grace days are added
on top. An open service request carrying an explicit due date for the same
key takes precedence over the derived date.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from compliance_engine.core.exceptions import RuleEvaluationError, RuleEvaluationWarning
from compliance_engine.schemas.calculation_input import StateCalculationInput
from compliance_engine.schemas.rules import ComplianceRule, DueDateLogic, DueDateStrategy, Frequency

FISCAL_YEAR_END_MONTH = 3

MONTHS_PER_PERIOD = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.HALF_YEARLY: 6,
    Frequency.ANNUAL: 12,
}

PERIODIC_STRATEGIES = {
    DueDateStrategy.DAYS_AFTER_PERIOD_END,
    DueDateStrategy.DAY_OF_MONTH_AFTER_PERIOD_END,
    DueDateStrategy.FIXED_CALENDAR_DATE,
}


@dataclass(frozen=True)
class DueDateResolution:
    due_date: Optional[date]           # incl. grace days; None = nothing pending
    source: str                        # SERVICE | DERIVED | SATISFIED | NO_PENDING_EVENT
    period_end: Optional[date] = None
    last_filed: Optional[date] = None


# ═══════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════

def validate_due_date_logic(rule_id: str, logic: DueDateLogic, frequency: Frequency) -> None:
    """Raise RuleEvaluationError when strategy parameters or frequency pairing are unusable."""
    strategy = logic.strategy

    if frequency == Frequency.ONE_TIME and strategy != DueDateStrategy.DAYS_AFTER_INCORPORATION:
        raise RuleEvaluationError(rule_id, f"{strategy.value} cannot schedule a ONE_TIME obligation")
    if frequency in MONTHS_PER_PERIOD and strategy not in PERIODIC_STRATEGIES:
        raise RuleEvaluationError(rule_id, f"{strategy.value} cannot schedule a {frequency.value} obligation")

    if strategy == DueDateStrategy.DAY_OF_MONTH_AFTER_PERIOD_END and logic.day is None:
        raise RuleEvaluationError(rule_id, "DAY_OF_MONTH_AFTER_PERIOD_END requires 'day'")

    if strategy == DueDateStrategy.FIXED_CALENDAR_DATE:
        if logic.month is None or logic.day is None:
            raise RuleEvaluationError(rule_id, "FIXED_CALENDAR_DATE requires 'month' and 'day'")
        # Feb 29 would silently move between years
        if logic.day > calendar.monthrange(2023, logic.month)[1]:
            raise RuleEvaluationError(rule_id, f"invalid calendar date {logic.day}/{logic.month}")


# ═══════════════════════════════════════════════════════════════
# Calendar helpers
# ═══════════════════════════════════════════════════════════════

def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def period_end_containing(d: date, frequency: Frequency) -> date:
    months = MONTHS_PER_PERIOD[frequency]
    # months elapsed since the start of the fiscal year (April = 0)
    fiscal_offset = (d.month - FISCAL_YEAR_END_MONTH - 1) % 12
    months_to_end = months - 1 - (fiscal_offset % months)
    year, month = _shift_month(d.year, d.month, months_to_end)
    return _month_end(year, month)


def previous_period_end(d: date, frequency: Frequency) -> date:
    """End of the period immediately before the one containing d."""
    end = period_end_containing(d, frequency)
    year, month = _shift_month(end.year, end.month, -MONTHS_PER_PERIOD[frequency])
    return _month_end(year, month)


def nominal_due_date(logic: DueDateLogic, period_end: date) -> date:
    strategy = logic.strategy
    if strategy == DueDateStrategy.DAYS_AFTER_PERIOD_END:
        return period_end + timedelta(days=logic.offset_days)
    if strategy == DueDateStrategy.DAY_OF_MONTH_AFTER_PERIOD_END:
        year, month = _shift_month(period_end.year, period_end.month, logic.months_after)
        return _clamped(year, month, logic.day)
    if strategy == DueDateStrategy.FIXED_CALENDAR_DATE:
        candidate = _clamped(period_end.year, logic.month, logic.day)
        if candidate <= period_end:
            candidate = _clamped(period_end.year + 1, logic.month, logic.day)
        return candidate
    raise ValueError(f"{strategy.value} is not period based")


# ═══════════════════════════════════════════════════════════════
# Resolution
# ═══════════════════════════════════════════════════════════════

def resolve_due_date(rule: ComplianceRule, facts: StateCalculationInput) -> DueDateResolution:
    """
    Work out the next due date for an applicable rule.
    Raises RuleEvaluationWarning when the facts needed to anchor it are missing.
    """
    key = rule.effective_filing_key
    grace = timedelta(days=rule.grace_days)
    services = facts.services_for(key)
    filings = facts.filings_for(key)

    completed_dates = [s.last_completed for s in services if s.last_completed and not s.is_open]
    filed_dates = [f.filed_date for f in filings] + completed_dates
    last_filed = max(filed_dates) if filed_dates else None

    # Explicit due date on an open service request wins
    open_due = sorted(s.due_date for s in services if s.is_open and s.due_date)
    if open_due:
        return DueDateResolution(open_due[0] + grace, "SERVICE", last_filed=last_filed)

    if rule.frequency == Frequency.EVENT_BASED:
        return DueDateResolution(None, "NO_PENDING_EVENT", last_filed=last_filed)

    if rule.frequency == Frequency.ONE_TIME:
        if last_filed is not None:
            return DueDateResolution(None, "SATISFIED", last_filed=last_filed)
        if facts.incorporation_date is None:
            raise RuleEvaluationWarning(rule.rule_id, "incorporation_date")
        nominal = facts.incorporation_date + timedelta(days=rule.due_date_logic.offset_days)
        return DueDateResolution(nominal + grace, "DERIVED")

    # ── Periodic ──
    covered_until: Optional[date] = None
    for filing in filings:
        end = filing.period_end or previous_period_end(filing.filed_date, rule.frequency)
        covered_until = end if covered_until is None else max(covered_until, end)
    for completed in completed_dates:
        end = previous_period_end(completed, rule.frequency)
        covered_until = end if covered_until is None else max(covered_until, end)

    anchors = []
    if facts.incorporation_date is not None:
        anchors.append(facts.incorporation_date)
    if covered_until is not None:
        anchors.append(covered_until + timedelta(days=1))
    if not anchors:
        raise RuleEvaluationWarning(rule.rule_id, "incorporation_date")

    period_end = period_end_containing(max(anchors), rule.frequency)
    nominal = nominal_due_date(rule.due_date_logic, period_end)
    return DueDateResolution(nominal + grace, "DERIVED", period_end=period_end, last_filed=last_filed)
