"""
Tests for the versioned rule catalog (SQLite-backed).
"""
import pytest

from compliance_engine.core.exceptions import (
    CatalogUnavailableError,
    RuleConflictError,
    RuleEvaluationError,
    RuleNotFoundError,
)
from compliance_engine.models.compliance_state import ComplianceStateRule
from compliance_engine.schemas.rules import (
    ComplianceDomain,
    ComplianceRuleCreate,
    ComplianceRuleWrite,
    DueDateLogic,
    DueDateStrategy,
    Frequency,
)
from compliance_engine.services.rule_catalog import RuleCatalog


def _payload(rule_id: str = "GST_GSTR3B_MONTHLY", **overrides) -> ComplianceRuleCreate:
    kwargs = {
        "rule_id": rule_id,
        "rule_name": "GSTR-3B",
        "domain": ComplianceDomain.TAX_GST,
        "requires_gst": True,
        "frequency": Frequency.MONTHLY,
        "due_date_logic": DueDateLogic(strategy=DueDateStrategy.DAY_OF_MONTH_AFTER_PERIOD_END, day=20),
        "penalty_per_day": "50",
        "max_penalty": "5000",
        "criticality_score": 9,
    }
    kwargs.update(overrides)
    return ComplianceRuleCreate(**kwargs)


def _update(payload: ComplianceRuleCreate, **overrides) -> ComplianceRuleWrite:
    data = payload.model_dump(exclude={"rule_id"})
    data.update(overrides)
    return ComplianceRuleWrite(**data)


class TestCatalogWrites:

    async def test_every_write_bumps_catalog_version(self, session_factory):
        catalog = RuleCatalog()
        async with session_factory() as session:
            first = await catalog.create_rule(session, _payload(), "admin@example.in")
            second = await catalog.create_rule(session, _payload("GST_GSTR1_MONTHLY", rule_name="GSTR-1"), "admin@example.in")
            third = await catalog.update_rule(session, "GST_GSTR3B_MONTHLY", _update(_payload(), grace_days=2), "admin@example.in")
            await session.commit()

        assert (first.rule_version, first.catalog_version) == (1, 1)
        assert (second.rule_version, second.catalog_version) == (1, 2)
        assert (third.rule_version, third.catalog_version) == (2, 3)
        assert third.created_by == "admin@example.in"

    async def test_duplicate_create_conflicts(self, session_factory):
        catalog = RuleCatalog()
        async with session_factory() as session:
            await catalog.create_rule(session, _payload(), "admin")
            with pytest.raises(RuleConflictError):
                await catalog.create_rule(session, _payload(), "admin")

    async def test_update_unknown_rule(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(RuleNotFoundError):
                await RuleCatalog().update_rule(session, "NOPE_RULE", _update(_payload()), "admin")

    async def test_malformed_due_date_logic_rejected(self, session_factory):
        bad = _payload(due_date_logic=DueDateLogic(strategy=DueDateStrategy.FIXED_CALENDAR_DATE, day=15))
        async with session_factory() as session:
            with pytest.raises(RuleEvaluationError):
                await RuleCatalog().create_rule(session, bad, "admin")

    async def test_dependency_cycle_rejected(self, session_factory):
        catalog = RuleCatalog()
        async with session_factory() as session:
            await catalog.create_rule(session, _payload("MCA_AOC4_ANNUAL", depends_on_rules=["MCA_MGT7_ANNUAL"]), "admin")
            with pytest.raises(RuleEvaluationError, match="cycle"):
                await catalog.create_rule(
                    session, _payload("MCA_MGT7_ANNUAL", red_triggers={"dependencies_not_met": ["MCA_AOC4_ANNUAL"]}), "admin",
                )

    async def test_deactivate_twice_conflicts(self, session_factory):
        catalog = RuleCatalog()
        async with session_factory() as session:
            await catalog.create_rule(session, _payload(), "admin")
            row = await catalog.deactivate_rule(session, "GST_GSTR3B_MONTHLY", "admin")
            assert row.is_active is False
            assert row.rule_version == 2
            with pytest.raises(RuleConflictError):
                await catalog.deactivate_rule(session, "GST_GSTR3B_MONTHLY", "admin")


class TestCatalogSnapshots:

    async def test_snapshot_at_past_version(self, session_factory):
        catalog = RuleCatalog()
        async with session_factory() as session:
            await catalog.create_rule(session, _payload(), "admin")
            await catalog.update_rule(session, "GST_GSTR3B_MONTHLY", _update(_payload(), rule_name="GSTR-3B (revised)"), "admin")
            await session.commit()

        async with session_factory() as session:
            current = await catalog.snapshot(session)
            past = await catalog.snapshot(session, 1)

        assert current.version == 2
        assert current.get("GST_GSTR3B_MONTHLY").rule_name == "GSTR-3B (revised)"
        assert current.get("GST_GSTR3B_MONTHLY").rule_version == 2
        assert past.get("GST_GSTR3B_MONTHLY").rule_name == "GSTR-3B"

    async def test_deactivated_rules_leave_snapshot(self, session_factory):
        catalog = RuleCatalog()
        async with session_factory() as session:
            await catalog.create_rule(session, _payload(), "admin")
            await catalog.create_rule(session, _payload("GST_GSTR1_MONTHLY", rule_name="GSTR-1"), "admin")
            await catalog.deactivate_rule(session, "GST_GSTR1_MONTHLY", "admin")
            await session.commit()

            snap = await catalog.snapshot(session)
            assert snap.version == 3
            assert [r.rule_id for r in snap.rules] == ["GST_GSTR3B_MONTHLY"]
            assert len((await catalog.snapshot(session, 2)).rules) == 2

    async def test_empty_catalog_is_unavailable(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(CatalogUnavailableError) as exc:
                await RuleCatalog().snapshot(session)
        assert exc.value.reason == "CATALOG_UNAVAILABLE"

    async def test_unparseable_row_reported_not_raised(self, session_factory):
        catalog = RuleCatalog()
        async with session_factory() as session:
            await catalog.create_rule(session, _payload(), "admin")
            session.add(ComplianceStateRule(
                rule_id="BROKEN_RULE",
                rule_version=1,
                catalog_version=2,
                rule_name="Broken",
                domain="NOT_A_DOMAIN",
                frequency=Frequency.MONTHLY.value,
                due_date_logic={"strategy": "DAY_OF_MONTH_AFTER_PERIOD_END", "day": 20},
            ))
            await session.commit()

            snap = await catalog.snapshot(session)

        assert [r.rule_id for r in snap.rules] == ["GST_GSTR3B_MONTHLY"]
        assert set(snap.invalid_rules) == {"BROKEN_RULE"}

    async def test_rule_versions_listed_in_order(self, session_factory):
        catalog = RuleCatalog()
        async with session_factory() as session:
            await catalog.create_rule(session, _payload(), "admin")
            await catalog.update_rule(session, "GST_GSTR3B_MONTHLY", _update(_payload(), grace_days=1), "admin")
            rows = await catalog.rule_versions(session, "GST_GSTR3B_MONTHLY")
            assert [r.rule_version for r in rows] == [1, 2]
            with pytest.raises(RuleNotFoundError):
                await catalog.rule_versions(session, "NOPE_RULE")

    async def test_version_ahead_of_catalog_refused(self, session_factory):
        catalog = RuleCatalog()
        async with session_factory() as session:
            await catalog.create_rule(session, _payload(), "admin")
            await session.commit()

            with pytest.raises(CatalogUnavailableError, match="does not exist"):
                await catalog.snapshot(session, 2)

            await catalog.create_rule(session, _payload("GST_GSTR1_MONTHLY", rule_name="GSTR-1"), "admin")
            await session.commit()
            snap = await catalog.snapshot(session)

        assert snap.version == 2
        assert [r.rule_id for r in snap.rules] == ["GST_GSTR1_MONTHLY", "GST_GSTR3B_MONTHLY"]

    async def test_rolled_back_writes_leave_no_snapshot(self, session_factory):
        catalog = RuleCatalog()
        async with session_factory() as session:
            await catalog.create_rule(session, _payload(), "admin")
            await catalog.create_rule(session, _payload("GST_GSTR1_MONTHLY", rule_name="GSTR-1"), "admin")
            await session.rollback()

        async with session_factory() as session:
            pf = _payload(
                "LABOUR_PF_ECR_MONTHLY", rule_name="PF ECR", domain=ComplianceDomain.LABOUR, requires_gst=False,
            )
            await catalog.create_rule(session, pf, "admin")
            await session.commit()
            snap = await catalog.snapshot(session)

        assert snap.version == 1
        assert [r.rule_id for r in snap.rules] == ["LABOUR_PF_ECR_MONTHLY"]
