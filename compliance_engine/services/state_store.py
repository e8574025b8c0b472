"""
State Store — current state, history reads, alerts and calculation log
reads for the compliance tables.

The current-state row is written optimistically: ``row_version`` must still
match what the writer read, and a write never replaces a state computed
later or against a newer catalog.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.core.exceptions import StaleStateError
from compliance_engine.evaluation.alert_differ import AlertDiff
from compliance_engine.models.compliance_state import (
    ComplianceAlert,
    ComplianceStateHistory,
    ComplianceStateRecord,
    StateCalculationLog,
)
from compliance_engine.schemas.compliance_state import (
    SCHEMA_VERSION,
    AlertSeverity,
    CalculationStatus,
    EntityComplianceState,
)

logger = structlog.get_logger()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ── Current state ──

async def get_current(session: AsyncSession, entity_id: int) -> Optional[ComplianceStateRecord]:
    result = await session.execute(
        select(ComplianceStateRecord).where(ComplianceStateRecord.entity_id == entity_id)
    )
    return result.scalar_one_or_none()


def to_entity_state(record: ComplianceStateRecord) -> Optional[EntityComplianceState]:
    """Decode the stored snapshot; None for schema versions this build does not read."""
    if record.schema_version != SCHEMA_VERSION:
        logger.warning(
            "snapshot_schema_unsupported",
            entity_id=record.entity_id,
            schema_version=record.schema_version,
        )
        return None
    return EntityComplianceState.model_validate(record.snapshot)


def _summary_columns(state: EntityComplianceState) -> dict:
    return dict(
        overall_state=state.overall_state.value,
        overall_risk_score=state.overall_risk_score,
        total_penalty_exposure=state.total_penalty_exposure,
        total_overdue_items=state.total_overdue_items,
        total_upcoming_items=state.total_upcoming_items,
        next_critical_deadline=state.next_critical_deadline,
        next_critical_action=state.next_critical_action,
        days_until_next_deadline=state.days_until_next_deadline,
        data_completeness_score=state.data_completeness_score,
        schema_version=state.schema_version,
        snapshot=state.model_dump(mode="json"),
        calculated_at=state.calculated_at,
        calculation_version=state.calculation_version,
        engine_version=state.engine_version,
        input_hash=state.input_hash,
    )


async def write_current(
    session: AsyncSession,
    previous: Optional[ComplianceStateRecord],
    state: EntityComplianceState,
) -> int:
    """
    Insert or replace the entity's current state. ``previous`` is the row the
    caller read at the start of the calculation (None if there was none).
    Returns the new row_version; raises StaleStateError if another writer won.
    """
    values = _summary_columns(state)
    now = datetime.now(timezone.utc)

    if previous is None:
        session.add(ComplianceStateRecord(entity_id=state.entity_id, row_version=1, updated_at=now, **values))
        try:
            await session.flush()
        except IntegrityError as e:
            raise StaleStateError(state.entity_id, "Current state was created by a concurrent calculation") from e
        return 1

    if state.calculation_version < previous.calculation_version:
        raise StaleStateError(
            state.entity_id,
            f"Catalog version {state.calculation_version} is older than stored {previous.calculation_version}",
        )
    if state.calculated_at <= as_utc(previous.calculated_at):
        raise StaleStateError(state.entity_id, "Stored state was calculated later")

    expected = previous.row_version
    result = await session.execute(
        update(ComplianceStateRecord)
        .where(
            ComplianceStateRecord.entity_id == state.entity_id,
            ComplianceStateRecord.row_version == expected,
        )
        .values(row_version=expected + 1, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise StaleStateError(state.entity_id, f"Current state changed since row_version {expected}")
    return expected + 1


# ── History ──

async def last_history_at(session: AsyncSession, entity_id: int) -> Optional[datetime]:
    result = await session.execute(
        select(ComplianceStateHistory.recorded_at)
        .where(ComplianceStateHistory.entity_id == entity_id)
        .order_by(ComplianceStateHistory.recorded_at.desc())
        .limit(1)
    )
    return as_utc(result.scalar())


async def history(
    session: AsyncSession,
    entity_id: int,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 100,
) -> list[ComplianceStateHistory]:
    stmt = select(ComplianceStateHistory).where(ComplianceStateHistory.entity_id == entity_id)
    if since is not None:
        stmt = stmt.where(ComplianceStateHistory.recorded_at >= as_utc(since).astimezone(timezone.utc))
    if until is not None:
        stmt = stmt.where(ComplianceStateHistory.recorded_at <= as_utc(until).astimezone(timezone.utc))
    stmt = stmt.order_by(ComplianceStateHistory.recorded_at.desc()).limit(limit)
    return list((await session.execute(stmt)).scalars().all())


# ── Alerts ──

async def active_alerts(
    session: AsyncSession, entity_id: int, severity: Optional[AlertSeverity] = None,
) -> list[ComplianceAlert]:
    stmt = select(ComplianceAlert).where(
        ComplianceAlert.entity_id == entity_id,
        ComplianceAlert.is_active.is_(True),
    )
    if severity is not None:
        stmt = stmt.where(ComplianceAlert.severity == severity.value)
    stmt = stmt.order_by(ComplianceAlert.triggered_at.desc(), ComplianceAlert.id.desc())
    return list((await session.execute(stmt)).scalars().all())


async def acknowledge_alert(
    session: AsyncSession, alert_id: int, actor: str, now: datetime,
) -> Optional[ComplianceAlert]:
    alert = await session.get(ComplianceAlert, alert_id)
    if alert is None:
        return None
    if not alert.is_acknowledged:
        alert.is_acknowledged = True
        alert.acknowledged_at = now
        alert.acknowledged_by = actor
        await session.flush()
    return alert


async def apply_alerts(
    session: AsyncSession, entity_id: int, diff: AlertDiff, now: datetime,
) -> list[ComplianceAlert]:
    """
    Persist the differ's output. An active, unacknowledged alert for the same
    (rule, type) is refreshed in place instead of duplicated; alerts of
    requirements that recovered are resolved.
    """
    touched: list[ComplianceAlert] = []

    for draft in diff.drafts:
        existing = (await session.execute(
            select(ComplianceAlert).where(
                ComplianceAlert.entity_id == entity_id,
                ComplianceAlert.rule_id == draft.rule_id,
                ComplianceAlert.alert_type == draft.alert_type.value,
                ComplianceAlert.is_active.is_(True),
                ComplianceAlert.is_acknowledged.is_(False),
            )
        )).scalars().first()

        if existing is not None:
            existing.severity = draft.severity.value
            existing.title = draft.title
            existing.message = draft.message
            existing.action_required = draft.action_required
            existing.expires_at = draft.expires_at
            existing.triggered_at = now
            existing.trigger_count += 1
            touched.append(existing)
            continue

        alert = ComplianceAlert(
            entity_id=entity_id,
            rule_id=draft.rule_id,
            alert_type=draft.alert_type.value,
            severity=draft.severity.value,
            title=draft.title,
            message=draft.message,
            action_required=draft.action_required,
            triggered_at=now,
            expires_at=draft.expires_at,
            trigger_count=1,
            is_active=True,
            is_acknowledged=False,
        )
        session.add(alert)
        touched.append(alert)

    if diff.resolved_rule_ids:
        await session.execute(
            update(ComplianceAlert)
            .where(
                ComplianceAlert.entity_id == entity_id,
                ComplianceAlert.rule_id.in_(sorted(diff.resolved_rule_ids)),
                ComplianceAlert.is_active.is_(True),
            )
            .values(is_active=False, resolved_at=now)
            .execution_options(synchronize_session=False)
        )

    await session.flush()
    return touched


# ── Calculation log ──

async def last_successful_log(session: AsyncSession, entity_id: int) -> Optional[StateCalculationLog]:
    result = await session.execute(
        select(StateCalculationLog)
        .where(
            StateCalculationLog.entity_id == entity_id,
            StateCalculationLog.status == CalculationStatus.SUCCESS.value,
        )
        .order_by(StateCalculationLog.calculated_at.desc(), StateCalculationLog.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def calculation_logs(session: AsyncSession, entity_id: int, limit: int = 50) -> list[StateCalculationLog]:
    result = await session.execute(
        select(StateCalculationLog)
        .where(StateCalculationLog.entity_id == entity_id)
        .order_by(StateCalculationLog.calculated_at.desc(), StateCalculationLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


def local_day(value: datetime, tz) -> date:
    return as_utc(value).astimezone(tz).date()
