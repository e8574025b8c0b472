"""
Integration tests for the pure calculation pipeline.
Realistic Indian compliance scenarios, evaluated end-to-end without a database.
"""
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from compliance_engine.evaluation.alert_differ import diff_alerts
from compliance_engine.evaluation.engine import calculate_state, order_rules
from compliance_engine.schemas.calculation_input import ServiceStatus, StateCalculationInput
from compliance_engine.schemas.compliance_state import AlertType, TriggerSource
from compliance_engine.schemas.rules import (
    ComplianceDomain,
    ComplianceRule,
    ComplianceState,
    DueDateLogic,
    DueDateStrategy,
    Frequency,
    RedTriggers,
)
from compliance_engine.services.event_publisher import build_state_event

TODAY = date(2026, 7, 15)
NOW = datetime(2026, 7, 15, 6, 0, tzinfo=timezone.utc)


def _rule(rule_id: str, **overrides) -> ComplianceRule:
    kwargs = {
        "rule_id": rule_id,
        "rule_name": rule_id.replace("_", " ").title(),
        "domain": ComplianceDomain.TAX_GST,
        "frequency": Frequency.MONTHLY,
        "due_date_logic": DueDateLogic(strategy=DueDateStrategy.DAY_OF_MONTH_AFTER_PERIOD_END, day=20),
        "penalty_per_day": Decimal("50"),
        "max_penalty": Decimal("5000"),
        "criticality_score": 9,
        "amber_threshold_days": 7,
    }
    kwargs.update(overrides)
    return ComplianceRule(**kwargs)


GSTR3B = _rule("GST_GSTR3B_MONTHLY", rule_name="GSTR-3B", requires_gst=True)
PF_ECR = _rule(
    "LABOUR_PF_ECR_MONTHLY",
    rule_name="PF ECR",
    domain=ComplianceDomain.LABOUR,
    requires_pf=True,
    penalty_per_day=Decimal("0"),
    max_penalty=None,
    criticality_score=10,
    amber_threshold_days=5,
)


def _due_in(rule: ComplianceRule, days: int) -> ServiceStatus:
    return ServiceStatus(service_key=rule.rule_id, status="pending", due_date=TODAY + timedelta(days=days))


def _make_facts(**overrides) -> StateCalculationInput:
    kwargs = {
        "entity_id": 42,
        "entity_name": "Acme Widgets Pvt Ltd",
        "entity_type": "pvt_ltd",
        "incorporation_date": date(2020, 4, 10),
        "turnover": Decimal("30000000"),
        "employee_count": 25,
        "state": "Maharashtra",
        "has_gst": True,
        "has_pf": True,
        "has_esi": True,
        "has_foreign_transactions": False,
    }
    kwargs.update(overrides)
    return StateCalculationInput(**kwargs)


def _calc(facts, rules, **kwargs):
    return calculate_state(facts, rules, catalog_version=7, calculated_at=kwargs.pop("at", NOW), today=TODAY, **kwargs)


class TestScenarios:

    def test_gst_due_soon_is_amber(self):
        """GST due in 5 days (amber 7), PF due in 60 days → AMBER, one upcoming item."""
        facts = _make_facts(active_services=(_due_in(GSTR3B, 5), _due_in(PF_ECR, 60)))
        state = _calc(facts, [GSTR3B, PF_ECR]).state

        assert state.overall_state == ComplianceState.AMBER
        assert state.total_upcoming_items == 1
        assert state.total_overdue_items == 0
        assert state.total_penalty_exposure == Decimal("0.00")
        assert state.next_critical_requirement_id == "GST_GSTR3B_MONTHLY"
        assert state.next_critical_action == "Prepare GSTR-3B (due in 5 days)"
        assert state.next_critical_deadline == TODAY + timedelta(days=5)
        assert state.days_until_next_deadline == 5

        domains = {d.domain: d for d in state.domains}
        assert domains[ComplianceDomain.TAX_GST].state == ComplianceState.AMBER
        assert domains[ComplianceDomain.LABOUR].state == ComplianceState.GREEN

    def test_gst_overdue_is_red_with_penalty_and_alert(self):
        """GST 10 days overdue at ₹50/day → RED, ₹500 exposure, OVERDUE alert."""
        facts = _make_facts(active_services=(_due_in(GSTR3B, -10),))
        state = _calc(facts, [GSTR3B]).state

        assert state.overall_state == ComplianceState.RED
        assert state.total_penalty_exposure == Decimal("500.00")
        assert state.total_overdue_items == 1
        assert state.days_until_next_deadline == -10

        diff = diff_alerts(None, state, Decimal("10000"))
        types = {d.alert_type for d in diff.drafts}
        assert AlertType.OVERDUE in types
        assert AlertType.STATE_CHANGE in types

    def test_penalty_clamp_across_pipeline(self):
        rule = _rule("MCA_AOC4_ANNUAL", penalty_per_day=Decimal("100"), max_penalty=Decimal("5000"))
        state = _calc(_make_facts(active_services=(_due_in(rule, -60),)), [rule]).state
        assert state.total_penalty_exposure == Decimal("5000.00")

    def test_worst_of_across_domains(self):
        facts = _make_facts(active_services=(_due_in(GSTR3B, 30), _due_in(PF_ECR, -3)))
        state = _calc(facts, [GSTR3B, PF_ECR]).state
        assert state.overall_state == ComplianceState.RED
        assert len(state.domains) == len(ComplianceDomain)

    def test_no_applicable_rules(self):
        state = _calc(_make_facts(has_gst=False, has_pf=False), [GSTR3B, PF_ECR]).state
        assert state.overall_state == ComplianceState.GREEN
        assert state.overall_risk_score == Decimal("0.00")
        assert state.data_completeness_score == Decimal("100.00")
        assert state.next_critical_deadline is None
        assert state.days_until_next_deadline is None


class TestProperties:

    def test_idempotent_except_timestamp(self):
        facts = _make_facts(active_services=(_due_in(GSTR3B, 5), _due_in(PF_ECR, -2)))
        first = _calc(facts, [GSTR3B, PF_ECR]).state
        second = _calc(facts, [PF_ECR, GSTR3B], at=NOW + timedelta(hours=1)).state

        assert first.model_dump(exclude={"calculated_at"}) == second.model_dump(exclude={"calculated_at"})
        assert first.input_hash == second.input_hash
        assert first.calculation_version == 7

    def test_removing_a_required_field_lowers_completeness(self):
        rule = _rule("GST_GSTR1_MONTHLY", turnover_min=Decimal("20000000"))
        full = _calc(_make_facts(), [GSTR3B, rule])
        partial = _calc(_make_facts(turnover=None), [GSTR3B, rule])

        assert full.state.data_completeness_score == Decimal("100.00")
        assert partial.state.data_completeness_score == Decimal("50.00")
        assert partial.warnings == ["GST_GSTR1_MONTHLY: missing input field 'turnover'"]
        assert [u.requirement_id for u in partial.state.unevaluated_requirements] == ["GST_GSTR1_MONTHLY"]

    def test_missing_data_never_forces_red(self):
        outcome = _calc(_make_facts(incorporation_date=None), [GSTR3B])
        assert outcome.state.overall_state == ComplianceState.GREEN
        assert outcome.state.data_completeness_score == Decimal("0.00")


class TestDependencies:

    def test_dependencies_evaluated_first(self):
        aoc4 = _rule("MCA_AOC4_ANNUAL", domain=ComplianceDomain.CORPORATE)
        mgt7 = _rule(
            "MCA_MGT7_ANNUAL",
            domain=ComplianceDomain.CORPORATE,
            red_triggers=RedTriggers(dependencies_not_met=("MCA_AOC4_ANNUAL",)),
        )
        ordered, stuck = order_rules([mgt7, aoc4])
        assert [r.rule_id for r in ordered] == ["MCA_AOC4_ANNUAL", "MCA_MGT7_ANNUAL"]
        assert stuck == []

        facts = _make_facts(active_services=(_due_in(aoc4, -5), _due_in(mgt7, 40)))
        reqs = _calc(facts, [mgt7, aoc4]).state.requirement_map()
        assert reqs["MCA_AOC4_ANNUAL"].state == ComplianceState.RED
        assert reqs["MCA_MGT7_ANNUAL"].state == ComplianceState.RED
        assert reqs["MCA_MGT7_ANNUAL"].penalty_exposure == Decimal("0.00")

    def test_cycle_members_skipped_with_errors(self):
        a = _rule("RULE_A", depends_on_rules=("RULE_B",))
        b = _rule("RULE_B", depends_on_rules=("RULE_A",))
        outcome = _calc(_make_facts(), [a, b, GSTR3B])

        assert set(outcome.state.requirement_map()) == {"GST_GSTR3B_MONTHLY"}
        assert outcome.errors == [
            "RULE_A: unresolvable dependency cycle",
            "RULE_B: unresolvable dependency cycle",
        ]

    def test_invalid_catalog_rows_reported(self):
        outcome = _calc(_make_facts(), [GSTR3B], invalid_rules={"BROKEN_RULE": "invalid rule definition (1 errors)"})
        assert outcome.errors == ["BROKEN_RULE: invalid rule definition (1 errors)"]
        assert outcome.rules_applied == 1

    def test_malformed_rule_skipped(self):
        broken = _rule("BROKEN_RULE", due_date_logic=DueDateLogic(strategy=DueDateStrategy.DAY_OF_MONTH_AFTER_PERIOD_END))
        outcome = _calc(_make_facts(), [broken, GSTR3B])
        assert "BROKEN_RULE" not in outcome.state.requirement_map()
        assert len(outcome.errors) == 1
        assert outcome.state.data_completeness_score == Decimal("100.00")


class TestStateEvent:

    def test_event_payload(self):
        facts = _make_facts(active_services=(_due_in(GSTR3B, -10),))
        state = _calc(facts, [GSTR3B]).state
        drafts = diff_alerts(None, state, Decimal("10000")).drafts

        event = build_state_event(state, "AMBER", TriggerSource.WEBHOOK, drafts)

        assert event["event_type"] == "COMPLIANCE_STATE_CALCULATED"
        assert event["state_changed"] is True
        assert event["overall_state"] == "RED"
        assert event["total_penalty_exposure"] == "500.00"
        assert event["triggered_by"] == "WEBHOOK"
        assert [a["alert_type"] for a in event["alerts"]] == ["STATE_CHANGE", "OVERDUE"]
        assert event["calculated_at"] == "2026-07-15T06:00:00+00:00"
