"""
History / Audit Recorder.

  SUCCESS → one compliance_state_history row + one state_calculation_log row
  SKIPPED → log row only (inputs and catalog unchanged today)
  FAILED  → log row only, written by the caller in its own transaction
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.core.exceptions import StaleStateError
from compliance_engine.evaluation.engine import CalculationOutcome
from compliance_engine.models.compliance_state import ComplianceStateHistory, StateCalculationLog
from compliance_engine.schemas.compliance_state import (
    CalculationStatus,
    EntityComplianceState,
    TriggerSource,
)
from compliance_engine.services import state_store


async def record_success(
    session: AsyncSession,
    outcome: CalculationOutcome,
    previous: Optional[EntityComplianceState],
    triggered_by: TriggerSource,
) -> StateCalculationLog:
    state = outcome.state

    last = await state_store.last_history_at(session, state.entity_id)
    if last is not None and state.calculated_at <= last:
        raise StaleStateError(state.entity_id, f"History already recorded at {last.isoformat()}")

    session.add(ComplianceStateHistory(
        entity_id=state.entity_id,
        recorded_at=state.calculated_at,
        state=state.overall_state.value,
        risk_score=state.overall_risk_score,
        penalty_exposure=state.total_penalty_exposure,
        overdue_items=state.total_overdue_items,
        upcoming_items=state.total_upcoming_items,
        calculation_version=state.calculation_version,
        schema_version=state.schema_version,
        snapshot=state.model_dump(mode="json"),
    ))

    log = StateCalculationLog(
        entity_id=state.entity_id,
        status=CalculationStatus.SUCCESS.value,
        previous_state=previous.overall_state.value if previous else None,
        new_state=state.overall_state.value,
        state_changed=previous is None or previous.overall_state != state.overall_state,
        rules_applied=outcome.rules_applied,
        errors_count=len(outcome.errors),
        warnings_count=len(outcome.warnings),
        errors=list(outcome.errors),
        warnings=list(outcome.warnings),
        calculation_time_ms=outcome.elapsed_ms,
        triggered_by=triggered_by.value,
        input_hash=state.input_hash,
        catalog_version=state.calculation_version,
        calculated_at=state.calculated_at,
    )
    session.add(log)
    try:
        await session.flush()
    except IntegrityError as e:
        raise StaleStateError(state.entity_id, "History row collided with a concurrent calculation") from e
    return log


async def record_skip(
    session: AsyncSession,
    stored: EntityComplianceState,
    triggered_by: TriggerSource,
    now: datetime,
    elapsed_ms: int,
) -> StateCalculationLog:
    log = StateCalculationLog(
        entity_id=stored.entity_id,
        status=CalculationStatus.SKIPPED.value,
        previous_state=stored.overall_state.value,
        new_state=stored.overall_state.value,
        state_changed=False,
        calculation_time_ms=elapsed_ms,
        triggered_by=triggered_by.value,
        input_hash=stored.input_hash,
        catalog_version=stored.calculation_version,
        calculated_at=now,
    )
    session.add(log)
    await session.flush()
    return log


async def record_failure(
    session: AsyncSession,
    entity_id: int,
    reason: str,
    message: str,
    triggered_by: TriggerSource,
    now: datetime,
    elapsed_ms: int,
    previous_state: Optional[str] = None,
) -> StateCalculationLog:
    log = StateCalculationLog(
        entity_id=entity_id,
        status=CalculationStatus.FAILED.value,
        previous_state=previous_state,
        errors_count=1,
        errors=[f"{reason}: {message}"],
        calculation_time_ms=elapsed_ms,
        triggered_by=triggered_by.value,
        calculated_at=now,
    )
    session.add(log)
    await session.flush()
    return log
