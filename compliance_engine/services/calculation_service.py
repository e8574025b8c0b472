"""
Calculation service — the compute entry point around the pure engine.

For one entity, under that entity's lock:
  1. Snapshot-read the rule catalog
  2. Build the input snapshot from platform tables
  3. Skip if inputs, catalog version and calendar day match the last success
  4. calculate_state() → diff_alerts() against the stored state
  5. Write current state (optimistic), history, log and alerts in one transaction
  6. Publish the state event after commit (fire-and-forget)

Failures (entity missing, catalog unavailable, stale write) leave the
current state untouched and are logged as FAILED in a separate transaction.
"""
from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import structlog
from prometheus_client import Counter, Histogram
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compliance_engine.core.config import Settings, get_settings
from compliance_engine.core.exceptions import CalculationFailure, StaleStateError
from compliance_engine.evaluation.alert_differ import diff_alerts
from compliance_engine.evaluation.engine import calculate_state
from compliance_engine.models.database import get_session_factory
from compliance_engine.schemas.compliance_state import (
    CalculationResult,
    CalculationStatus,
    TriggerSource,
)
from compliance_engine.services import history_recorder, state_store
from compliance_engine.services.event_publisher import publish_state_event
from compliance_engine.services.input_aggregator import build_input
from compliance_engine.services.rule_catalog import RuleCatalog

logger = structlog.get_logger()

CALCULATIONS_TOTAL = Counter(
    "compliance_calculations_total",
    "Compliance state calculations by outcome",
    ["status", "triggered_by"],
)
CALCULATION_SECONDS = Histogram(
    "compliance_calculation_seconds",
    "Wall time of one entity calculation, including persistence",
)
STATE_TRANSITIONS_TOTAL = Counter(
    "compliance_state_transitions_total",
    "Overall state changes",
    ["from_state", "to_state"],
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CalculationService:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Optional[RuleCatalog] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.catalog = catalog or RuleCatalog()
        self.settings = settings or get_settings()
        self._clock = clock
        self._tz = ZoneInfo(self.settings.business_timezone)
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: dict[int, int] = {}

    @asynccontextmanager
    async def _entity_lock(self, entity_id: int):
        """At most one calculation per entity in flight; the lock lives only while in use."""
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        self._lock_users[entity_id] = self._lock_users.get(entity_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[entity_id] -= 1
            if not self._lock_users[entity_id]:
                del self._lock_users[entity_id]
                del self._locks[entity_id]

    def now(self) -> datetime:
        return self._clock()

    def today(self, now: Optional[datetime] = None):
        return state_store.local_day(now or self.now(), self._tz)

    async def calculate(
        self,
        entity_id: int,
        triggered_by: TriggerSource = TriggerSource.MANUAL,
        force: bool = False,
    ) -> CalculationResult:
        """
        Returns a CalculationResult; success=False for CalculationFailure.
        StaleStateError is logged and re-raised for the caller to map.
        """
        async with self._entity_lock(entity_id):
            t0 = time.perf_counter()
            now = self.now()
            previous_state: Optional[str] = None
            try:
                async with self.session_factory() as session:
                    result, previous, alerts = await self._calculate_in_session(
                        session, entity_id, triggered_by, force, now, t0,
                    )
                    previous_state = previous.overall_state.value if previous else None
                    await session.commit()
            except CalculationFailure as e:
                return await self._fail(entity_id, e.reason, str(e), triggered_by, now, t0)
            except StaleStateError as e:
                await self._fail(entity_id, "STALE_STATE", str(e), triggered_by, now, t0)
                raise
            finally:
                CALCULATION_SECONDS.observe(time.perf_counter() - t0)

        CALCULATIONS_TOTAL.labels(status=result.status.value, triggered_by=triggered_by.value).inc()
        if result.status == CalculationStatus.SUCCESS:
            new_state = result.entity_state.overall_state.value
            if previous_state != new_state:
                STATE_TRANSITIONS_TOTAL.labels(from_state=previous_state or "NONE", to_state=new_state).inc()
            await publish_state_event(result.entity_state, previous_state, triggered_by, alerts)
        return result

    async def _calculate_in_session(
        self,
        session: AsyncSession,
        entity_id: int,
        triggered_by: TriggerSource,
        force: bool,
        now: datetime,
        t0: float,
    ):
        today = self.today(now)
        snapshot = await self.catalog.snapshot(session)
        facts = await build_input(session, entity_id)

        record = await state_store.get_current(session, entity_id)
        previous = state_store.to_entity_state(record) if record else None

        # ── Skip-if-unchanged ──
        if previous is not None and not force and self.settings.skip_unchanged_inputs:
            last = await state_store.last_successful_log(session, entity_id)
            if (
                last is not None
                and last.input_hash == facts.input_hash()
                and last.catalog_version == snapshot.version
                and state_store.local_day(last.calculated_at, self._tz) == today
            ):
                elapsed_ms = int((time.perf_counter() - t0) * 1000)
                await history_recorder.record_skip(session, previous, triggered_by, now, elapsed_ms)
                logger.info("state_calculation_skipped", entity_id=entity_id, triggered_by=triggered_by.value)
                result = CalculationResult(
                    success=True,
                    entity_id=entity_id,
                    status=CalculationStatus.SKIPPED,
                    entity_state=previous,
                    calculation_time_ms=elapsed_ms,
                )
                return result, previous, []

        # ── Calculate ──
        outcome = calculate_state(
            facts,
            snapshot.rules,
            snapshot.version,
            now,
            today=today,
            engine_version=self.settings.engine_version,
            invalid_rules=snapshot.invalid_rules,
            upcoming_window_days=self.settings.upcoming_window_days,
        )
        diff = diff_alerts(previous, outcome.state, self.settings.penalty_alert_threshold)

        # ── Persist (single transaction) ──
        try:
            await state_store.write_current(session, record, outcome.state)
            await history_recorder.record_success(session, outcome, previous, triggered_by)
            await state_store.apply_alerts(session, entity_id, diff, now)
        except StaleStateError:
            logger.warning("stale_state_write_rejected", entity_id=entity_id)
            raise
        except SQLAlchemyError as e:
            logger.error("state_persist_failed", entity_id=entity_id, error=str(e))
            raise CalculationFailure(entity_id, f"State could not be persisted: {e}") from e

        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        result = CalculationResult(
            success=True,
            entity_id=entity_id,
            status=CalculationStatus.SUCCESS,
            entity_state=outcome.state,
            alerts=diff.drafts,
            errors=outcome.errors,
            warnings=outcome.warnings,
            calculation_time_ms=elapsed_ms,
        )
        return result, previous, diff.drafts

    async def _fail(
        self,
        entity_id: int,
        reason: str,
        message: str,
        triggered_by: TriggerSource,
        now: datetime,
        t0: float,
    ) -> CalculationResult:
        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        logger.error("state_calculation_failed", entity_id=entity_id, reason=reason, error=message)
        CALCULATIONS_TOTAL.labels(status=CalculationStatus.FAILED.value, triggered_by=triggered_by.value).inc()
        try:
            async with self.session_factory() as session:
                # the stored state is untouched by a failed run
                record = await state_store.get_current(session, entity_id)
                previous_state = record.overall_state if record else None
                await history_recorder.record_failure(
                    session, entity_id, reason, message, triggered_by, now, elapsed_ms, previous_state,
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("failure_log_write_failed", entity_id=entity_id, error=str(e))

        return CalculationResult(
            success=False,
            entity_id=entity_id,
            status=CalculationStatus.FAILED,
            errors=[message],
            failure_reason=reason,
            calculation_time_ms=elapsed_ms,
        )

    async def current_state(self, entity_id: int) -> CalculationResult:
        """Stored state, calculated on first access."""
        async with self.session_factory() as session:
            record = await state_store.get_current(session, entity_id)
            stored = state_store.to_entity_state(record) if record else None
        if stored is not None:
            return CalculationResult(
                success=True, entity_id=entity_id, status=CalculationStatus.SKIPPED, entity_state=stored,
            )
        return await self.calculate(entity_id, TriggerSource.AUTO)


_service: Optional[CalculationService] = None


def get_calculation_service() -> CalculationService:
    """FastAPI dependency; one service (and one lock table) per process."""
    global _service
    if _service is None:
        _service = CalculationService(get_session_factory())
    return _service
