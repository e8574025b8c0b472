"""
Tests for the calculation service: persistence, skip-if-unchanged, alert
lifecycle, failure logging, optimistic writes and the daily sweep.
"""
import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, select, update

from compliance_engine.core.exceptions import StaleStateError
from compliance_engine.models.compliance_state import (
    ComplianceAlert,
    ComplianceStateHistory,
    ComplianceStateRecord,
    StateCalculationLog,
)
from compliance_engine.models.entity_facts import (
    BusinessEntity,
    EntityDocument,
    EntityServiceRequest,
)
from compliance_engine.schemas.compliance_state import AlertType, CalculationStatus, TriggerSource
from compliance_engine.schemas.rules import (
    ComplianceDomain,
    ComplianceRuleCreate,
    ComplianceRuleWrite,
    ComplianceState,
    DueDateLogic,
    DueDateStrategy,
    Frequency,
)
from compliance_engine.services import state_store
from compliance_engine.services.input_aggregator import build_input
from compliance_engine.services.sweep import run_sweep

# 2026-07-15 11:30 IST, matches the clock fixture
START = datetime(2026, 7, 15, 6, 0, tzinfo=timezone.utc)
TODAY = date(2026, 7, 15)

GSTR3B = {
    "rule_id": "GST_GSTR3B_MONTHLY",
    "rule_name": "GSTR-3B",
    "domain": ComplianceDomain.TAX_GST,
    "requires_gst": True,
    "frequency": Frequency.MONTHLY,
    "due_date_logic": DueDateLogic(strategy=DueDateStrategy.DAY_OF_MONTH_AFTER_PERIOD_END, day=20),
    "penalty_per_day": "50",
    "max_penalty": "5000",
    "criticality_score": 9,
    "amber_threshold_days": 7,
}


async def _seed_rule(service, **overrides):
    async with service.session_factory() as session:
        await service.catalog.create_rule(session, ComplianceRuleCreate(**{**GSTR3B, **overrides}), "test")
        await session.commit()


async def _set_gst_service(session_factory, due_in_days: int, status: str = "pending", completed_at=None):
    """One GSTR-3B service request for entity 1, replaced on every call."""
    async with session_factory() as session:
        row = await session.get(EntityServiceRequest, 1)
        if row is None:
            row = EntityServiceRequest(id=1, entity_id=1, service_key="GST_GSTR3B_MONTHLY")
            session.add(row)
        row.status = status
        row.due_date = TODAY + timedelta(days=due_in_days)
        row.completed_at = completed_at
        await session.commit()


async def _rows(session_factory, model, *where):
    async with session_factory() as session:
        result = await session.execute(select(model).where(*where).order_by(model.id))
        return list(result.scalars().all())


class TestCalculate:

    async def test_success_persists_state_history_log_and_alerts(self, service, session_factory, entity):
        await _seed_rule(service)
        await _set_gst_service(session_factory, -10)

        result = await service.calculate(1)

        assert result.success
        assert result.status == CalculationStatus.SUCCESS
        state = result.entity_state
        assert state.overall_state == ComplianceState.RED
        assert str(state.total_penalty_exposure) == "500.00"
        assert state.calculation_version == 1
        assert {a.alert_type for a in result.alerts} == {AlertType.STATE_CHANGE, AlertType.OVERDUE}

        [record] = await _rows(session_factory, ComplianceStateRecord)
        assert record.overall_state == "RED"
        assert record.row_version == 1
        assert state_store.to_entity_state(record) == state

        assert len(await _rows(session_factory, ComplianceStateHistory)) == 1

        [log] = await _rows(session_factory, StateCalculationLog)
        assert log.status == "SUCCESS"
        assert log.previous_state is None
        assert log.new_state == "RED"
        assert log.state_changed is True
        assert log.triggered_by == "MANUAL"
        assert log.catalog_version == 1

        alerts = await _rows(session_factory, ComplianceAlert)
        assert sorted(a.alert_type for a in alerts) == ["OVERDUE", "STATE_CHANGE"]
        assert all(a.is_active and a.trigger_count == 1 for a in alerts)

    async def test_unchanged_inputs_skipped_same_day(self, service, session_factory, entity, clock):
        await _seed_rule(service)
        await _set_gst_service(session_factory, -10)

        first = await service.calculate(1)
        second = await service.calculate(1, TriggerSource.WEBHOOK)

        assert second.status == CalculationStatus.SKIPPED
        assert second.entity_state.calculated_at == first.entity_state.calculated_at
        assert second.entity_state.overall_state == ComplianceState.RED
        assert len(await _rows(session_factory, ComplianceStateHistory)) == 1
        logs = await _rows(session_factory, StateCalculationLog)
        assert [l.status for l in logs] == ["SUCCESS", "SKIPPED"]

        # next calendar day: overdue days move even though no fact changed
        clock.advance(timedelta(days=1))
        third = await service.calculate(1)
        assert third.status == CalculationStatus.SUCCESS
        assert str(third.entity_state.total_penalty_exposure) == "550.00"
        assert len(await _rows(session_factory, ComplianceStateHistory)) == 2

    async def test_force_bypasses_skip(self, service, session_factory, entity):
        await _seed_rule(service)
        await service.calculate(1)
        result = await service.calculate(1, force=True)

        assert result.status == CalculationStatus.SUCCESS
        [record] = await _rows(session_factory, ComplianceStateRecord)
        assert record.row_version == 2

    async def test_changed_facts_recalculate(self, service, session_factory, entity):
        await _seed_rule(service)
        await _set_gst_service(session_factory, 30)
        assert (await service.calculate(1)).entity_state.overall_state == ComplianceState.GREEN

        await _set_gst_service(session_factory, 3)
        result = await service.calculate(1)
        assert result.status == CalculationStatus.SUCCESS
        assert result.entity_state.overall_state == ComplianceState.AMBER

    async def test_new_catalog_version_recalculates(self, service, session_factory, entity):
        await _seed_rule(service)
        await service.calculate(1)

        async with session_factory() as session:
            payload = ComplianceRuleWrite(**{k: v for k, v in GSTR3B.items() if k != "rule_id"}, grace_days=2)
            await service.catalog.update_rule(session, "GST_GSTR3B_MONTHLY", payload, "test")
            await session.commit()

        result = await service.calculate(1)
        assert result.status == CalculationStatus.SUCCESS
        assert result.entity_state.calculation_version == 2


class TestFailures:

    async def test_entity_not_found(self, service, session_factory):
        await _seed_rule(service)
        result = await service.calculate(99)

        assert not result.success
        assert result.status == CalculationStatus.FAILED
        assert result.failure_reason == "ENTITY_NOT_FOUND"
        assert result.entity_state is None

        [log] = await _rows(session_factory, StateCalculationLog)
        assert log.status == "FAILED"
        assert log.entity_id == 99
        assert log.errors[0].startswith("ENTITY_NOT_FOUND")
        assert await _rows(session_factory, ComplianceStateRecord) == []

    async def test_empty_catalog(self, service, session_factory, entity):
        result = await service.calculate(1)
        assert result.failure_reason == "CATALOG_UNAVAILABLE"
        assert await _rows(session_factory, ComplianceStateHistory) == []

    async def test_stale_write_rejected(self, service, session_factory, entity):
        await _seed_rule(service)
        await service.calculate(1)

        # another writer stored a later calculation meanwhile
        async with session_factory() as session:
            await session.execute(
                update(ComplianceStateRecord).values(calculated_at=START + timedelta(hours=6))
            )
            await session.commit()

        with pytest.raises(StaleStateError):
            await service.calculate(1, force=True)

        [record] = await _rows(session_factory, ComplianceStateRecord)
        assert record.row_version == 1
        assert len(await _rows(session_factory, ComplianceStateHistory)) == 1
        logs = await _rows(session_factory, StateCalculationLog)
        assert logs[-1].status == "FAILED"
        assert logs[-1].errors[0].startswith("STALE_STATE")

    async def test_failure_log_records_stored_state(self, service, session_factory, entity):
        await _seed_rule(service)
        await _set_gst_service(session_factory, -10)
        await service.calculate(1)

        async with session_factory() as session:
            await session.execute(delete(EntityServiceRequest))
            await session.execute(delete(BusinessEntity))
            await session.commit()

        result = await service.calculate(1)
        assert result.failure_reason == "ENTITY_NOT_FOUND"

        logs = await _rows(session_factory, StateCalculationLog)
        assert (logs[-1].status, logs[-1].previous_state, logs[-1].new_state) == ("FAILED", "RED", None)


class TestEntityLocking:

    async def test_concurrent_calculations_run_one_at_a_time(self, service, session_factory, entity):
        await _seed_rule(service)

        first, second = await asyncio.gather(
            service.calculate(1, force=True),
            service.calculate(1, force=True),
        )

        assert first.status == second.status == CalculationStatus.SUCCESS
        logs = await _rows(session_factory, StateCalculationLog)
        assert [l.status for l in logs] == ["SUCCESS", "SUCCESS"]
        history = await _rows(session_factory, ComplianceStateHistory)
        assert len(history) == 2
        assert state_store.as_utc(history[0].recorded_at) < state_store.as_utc(history[1].recorded_at)
        [record] = await _rows(session_factory, ComplianceStateRecord)
        assert record.row_version == 2

    async def test_locks_dropped_once_idle(self, service, entity):
        await _seed_rule(service)
        for entity_id in (1, 2, 3):
            await service.calculate(entity_id)
        await asyncio.gather(service.calculate(1, force=True), service.calculate(1, force=True))
        assert service._locks == {}
        assert service._lock_users == {}


class TestAlertLifecycle:

    async def test_repeat_alert_refreshes_in_place(self, service, session_factory, entity):
        await _seed_rule(service)
        await _set_gst_service(session_factory, -10)
        await service.calculate(1)        # GREEN → RED
        await _set_gst_service(session_factory, 3)
        await service.calculate(1)        # RED → AMBER
        await _set_gst_service(session_factory, -10)
        await service.calculate(1)        # AMBER → RED

        alerts = await _rows(session_factory, ComplianceAlert, ComplianceAlert.is_active.is_(True))
        by_type = {a.alert_type: a for a in alerts}
        assert len(alerts) == 3
        assert by_type["OVERDUE"].trigger_count == 2
        assert by_type["STATE_CHANGE"].trigger_count == 2
        assert by_type["UPCOMING"].trigger_count == 1

    async def test_acknowledged_alert_not_refreshed(self, service, session_factory, entity, clock):
        await _seed_rule(service)
        await _set_gst_service(session_factory, -10)
        await service.calculate(1)

        [overdue] = await _rows(session_factory, ComplianceAlert, ComplianceAlert.alert_type == "OVERDUE")
        async with session_factory() as session:
            acked = await state_store.acknowledge_alert(session, overdue.id, "ops@example.in", clock())
            await session.commit()
        assert acked.is_acknowledged
        assert acked.acknowledged_by == "ops@example.in"

        await _set_gst_service(session_factory, 3)
        await service.calculate(1)
        await _set_gst_service(session_factory, -10)
        await service.calculate(1)

        overdue_rows = await _rows(session_factory, ComplianceAlert, ComplianceAlert.alert_type == "OVERDUE")
        assert [a.trigger_count for a in overdue_rows] == [1, 1]

    async def test_recovery_resolves_alerts(self, service, session_factory, entity):
        await _seed_rule(service)
        await _set_gst_service(session_factory, -10)
        await service.calculate(1)

        await _set_gst_service(session_factory, -10, status="completed", completed_at=TODAY)
        result = await service.calculate(1)

        assert result.entity_state.overall_state == ComplianceState.GREEN
        assert result.entity_state.next_critical_deadline is None
        alerts = await _rows(session_factory, ComplianceAlert)
        assert alerts and all(not a.is_active and a.resolved_at is not None for a in alerts)

        logs = await _rows(session_factory, StateCalculationLog)
        assert (logs[-1].previous_state, logs[-1].new_state, logs[-1].state_changed) == ("RED", "GREEN", True)


class TestReads:

    async def test_current_state_calculates_on_first_access(self, service, session_factory, entity):
        await _seed_rule(service)

        first = await service.current_state(1)
        assert first.status == CalculationStatus.SUCCESS
        [log] = await _rows(session_factory, StateCalculationLog)
        assert log.triggered_by == "AUTO"

        again = await service.current_state(1)
        assert again.status == CalculationStatus.SKIPPED
        assert again.entity_state == first.entity_state
        assert len(await _rows(session_factory, StateCalculationLog)) == 1

    async def test_history_window(self, service, session_factory, entity, clock):
        await _seed_rule(service)
        await service.calculate(1)
        clock.advance(timedelta(days=1))
        await service.calculate(1)

        async with session_factory() as session:
            everything = await state_store.history(session, 1)
            recent = await state_store.history(session, 1, since=START + timedelta(hours=12))
        assert len(everything) == 2
        assert len(recent) == 1
        assert state_store.as_utc(everything[0].recorded_at) > state_store.as_utc(everything[1].recorded_at)


class TestInputAggregator:

    async def test_registrations_derived_from_profile(self, session_factory):
        async with session_factory() as session:
            session.add(BusinessEntity(
                id=5, name="Small Traders LLP", entity_type="LLP", employee_count=15, is_active=True,
            ))
            session.add(EntityDocument(entity_id=5, document_type="pan_card", status="approved"))
            session.add(EntityDocument(entity_id=5, document_type="gst_certificate", status="pending"))
            await session.commit()

            facts = await build_input(session, 5)

        assert facts.has_gst is False
        assert facts.has_pf is False     # below 20
        assert facts.has_esi is True     # 10 or more
        assert facts.turnover is None
        assert [(d.document_type, d.approved) for d in facts.document_status] == [
            ("gst_certificate", False),
            ("pan_card", True),
        ]

    async def test_explicit_flags_win(self, session_factory):
        async with session_factory() as session:
            session.add(BusinessEntity(id=6, employee_count=50, has_pf=False, gstin="29AAACB1234B1Z1", is_active=True))
            await session.commit()
            facts = await build_input(session, 6)
        assert facts.has_pf is False
        assert facts.has_gst is True

    async def test_completed_requests_ordered_by_completion(self, session_factory, entity):
        async with session_factory() as session:
            for completed in (date(2026, 6, 18), date(2026, 5, 19)):
                session.add(EntityServiceRequest(
                    entity_id=1, service_key="GST_GSTR3B_MONTHLY", status="completed", completed_at=completed,
                ))
            await session.commit()
            facts = await build_input(session, 1)

        assert [s.last_completed for s in facts.active_services] == [date(2026, 5, 19), date(2026, 6, 18)]

    async def test_unknown_headcount_leaves_flags_unknown(self, session_factory):
        async with session_factory() as session:
            session.add(BusinessEntity(id=7, is_active=True))
            await session.commit()
            facts = await build_input(session, 7)
        assert facts.has_pf is None
        assert facts.has_esi is None


class TestSweep:

    async def test_sweep_counts_outcomes(self, service, session_factory, entity):
        await _seed_rule(service)
        async with session_factory() as session:
            session.add(BusinessEntity(id=2, name="Beta Foods Pvt Ltd", entity_type="pvt_ltd",
                                       incorporation_date=date(2019, 1, 5), is_active=True))
            session.add(BusinessEntity(id=3, name="Dormant Co", is_active=False))
            await session.commit()
        await _set_gst_service(session_factory, -10)

        summary = await run_sweep(service, concurrency=1)

        assert summary["entities_processed"] == 2
        assert summary["succeeded"] == 2
        assert summary["failed"] == 0
        assert summary["state_counts"] == {"GREEN": 1, "AMBER": 0, "RED": 1}

        again = await run_sweep(service, concurrency=1)
        assert again["skipped"] == 2
        assert again["succeeded"] == 0
