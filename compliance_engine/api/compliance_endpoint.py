"""
Compliance state API — compute-and-fetch interface used by the platform
backend, dashboards and the notification service.

  POST /v1/compliance/entities/{entity_id}/calculate   → compute now
  POST /v1/compliance/webhooks/entity-updated          → facts changed upstream
  POST /v1/compliance/recalculate-all                  → sweep (admin)
  GET  /v1/compliance/entities/{entity_id}             → current state
  GET  /v1/compliance/entities/{entity_id}/summary     → dashboard summary
  GET  /v1/compliance/entities/{entity_id}/score       → compliance score + trend
  GET  /v1/compliance/entities/{entity_id}/history
  GET  /v1/compliance/entities/{entity_id}/alerts
  POST /v1/compliance/alerts/{alert_id}/acknowledge
  GET  /v1/compliance/entities/{entity_id}/calculation-log
  GET  /v1/compliance/health
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.core.auth import require_admin, verify_token
from compliance_engine.core.config import Settings, get_settings
from compliance_engine.core.exceptions import StaleStateError
from compliance_engine.evaluation.score import compliance_score
from compliance_engine.models.database import get_db
from compliance_engine.schemas.compliance_state import (
    AlertSeverity,
    CalculationLogResponse,
    CalculationResult,
    ComplianceAlertResponse,
    ComplianceScoreResponse,
    EntityComplianceState,
    HistoryEntryResponse,
    StateSummaryResponse,
    TriggerSource,
)
from compliance_engine.services import state_store
from compliance_engine.services.calculation_service import CalculationService, get_calculation_service
from compliance_engine.services.sweep import run_sweep

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/compliance", tags=["compliance"])

SCORE_TIMELINE_POINTS = 6

_FAILURE_STATUS = {
    "ENTITY_NOT_FOUND": 404,
    "CATALOG_UNAVAILABLE": 503,
}


class EntityUpdatedWebhook(BaseModel):
    entity_id: int
    event: Optional[str] = None   # e.g. "filing.created", "document.approved"


class SweepResponse(BaseModel):
    triggered_by: str
    status: str
    message: str
    job_result: Optional[dict] = None


def _raise_for_failure(result: CalculationResult) -> CalculationResult:
    if not result.success:
        status_code = _FAILURE_STATUS.get(result.failure_reason, 500)
        raise HTTPException(
            status_code=status_code,
            detail={"reason": result.failure_reason, "errors": result.errors},
        )
    return result


async def _calculate(service: CalculationService, entity_id: int, triggered_by: TriggerSource, force: bool):
    try:
        result = await service.calculate(entity_id, triggered_by, force=force)
    except StaleStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _raise_for_failure(result)


# ── Compute ──

@router.post(
    "/entities/{entity_id}/calculate",
    response_model=CalculationResult,
    summary="Calculate the compliance state of one entity",
)
async def calculate_entity(
    entity_id: int,
    triggered_by: TriggerSource = TriggerSource.MANUAL,
    force: bool = False,
    token: dict = Depends(verify_token),
    service: CalculationService = Depends(get_calculation_service),
) -> CalculationResult:
    logger.info(
        "state_calculation_requested",
        entity_id=entity_id,
        triggered_by=triggered_by.value,
        force=force,
        caller=token.get("sub", "unknown"),
    )
    return await _calculate(service, entity_id, triggered_by, force)


@router.post("/webhooks/entity-updated", response_model=CalculationResult)
async def entity_updated(
    payload: EntityUpdatedWebhook,
    token: dict = Depends(verify_token),
    service: CalculationService = Depends(get_calculation_service),
) -> CalculationResult:
    logger.info("entity_updated_webhook", entity_id=payload.entity_id, upstream_event=payload.event)
    return await _calculate(service, payload.entity_id, TriggerSource.WEBHOOK, force=False)


@router.post("/recalculate-all", response_model=SweepResponse)
async def recalculate_all(
    force: bool = False,
    token: dict = Depends(require_admin),
    service: CalculationService = Depends(get_calculation_service),
) -> SweepResponse:
    user = token.get("sub", "unknown")
    logger.info("sweep_triggered", triggered_by=user, force=force)

    result = await run_sweep(service, TriggerSource.AUTO, force=force)
    return SweepResponse(
        triggered_by=user,
        status="success" if result["failed"] == 0 else "partial",
        message=(
            f"{result['entities_processed']} entities: "
            f"{result['succeeded']} calculated, {result['skipped']} unchanged, "
            f"{result['failed']} failed ({result['elapsed_seconds']}s)"
        ),
        job_result=result,
    )


# ── Read ──

@router.get("/entities/{entity_id}", response_model=EntityComplianceState)
async def get_entity_state(
    entity_id: int,
    token: dict = Depends(verify_token),
    service: CalculationService = Depends(get_calculation_service),
) -> EntityComplianceState:
    try:
        result = await service.current_state(entity_id)
    except StaleStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _raise_for_failure(result).entity_state


@router.get("/entities/{entity_id}/summary", response_model=StateSummaryResponse)
async def get_entity_summary(
    entity_id: int,
    token: dict = Depends(verify_token),
    service: CalculationService = Depends(get_calculation_service),
) -> StateSummaryResponse:
    state = await get_entity_state(entity_id, token, service)
    return StateSummaryResponse.from_state(state)


@router.get("/entities/{entity_id}/score", response_model=ComplianceScoreResponse)
async def get_entity_score(
    entity_id: int,
    db: AsyncSession = Depends(get_db),
    token: dict = Depends(verify_token),
    service: CalculationService = Depends(get_calculation_service),
) -> ComplianceScoreResponse:
    state = await get_entity_state(entity_id, token, service)
    rows = await state_store.history(db, entity_id, limit=SCORE_TIMELINE_POINTS)
    return compliance_score(state, [HistoryEntryResponse.model_validate(r) for r in rows])


@router.get("/entities/{entity_id}/history", response_model=list[HistoryEntryResponse])
async def get_entity_history(
    entity_id: int,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    token: dict = Depends(verify_token),
    settings: Settings = Depends(get_settings),
    service: CalculationService = Depends(get_calculation_service),
) -> list[HistoryEntryResponse]:
    if since is None:
        since = service.now() - timedelta(days=settings.history_default_days)
    rows = await state_store.history(db, entity_id, since=since, until=until, limit=limit)
    return [HistoryEntryResponse.model_validate(r) for r in rows]


@router.get("/entities/{entity_id}/alerts", response_model=list[ComplianceAlertResponse])
async def get_entity_alerts(
    entity_id: int,
    severity: Optional[AlertSeverity] = None,
    db: AsyncSession = Depends(get_db),
    token: dict = Depends(verify_token),
) -> list[ComplianceAlertResponse]:
    rows = await state_store.active_alerts(db, entity_id, severity)
    return [ComplianceAlertResponse.model_validate(r) for r in rows]


@router.post("/alerts/{alert_id}/acknowledge", response_model=ComplianceAlertResponse)
async def acknowledge_alert(
    alert_id: int,
    db: AsyncSession = Depends(get_db),
    token: dict = Depends(verify_token),
    service: CalculationService = Depends(get_calculation_service),
) -> ComplianceAlertResponse:
    user = token.get("sub", "unknown")
    alert = await state_store.acknowledge_alert(db, alert_id, user, service.now())
    if alert is None:
        raise HTTPException(404, f"Alert {alert_id} not found")
    await db.commit()
    logger.info("alert_acknowledged", alert_id=alert_id, entity_id=alert.entity_id, acknowledged_by=user)
    return ComplianceAlertResponse.model_validate(alert)


@router.get("/entities/{entity_id}/calculation-log", response_model=list[CalculationLogResponse])
async def get_calculation_log(
    entity_id: int,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    token: dict = Depends(verify_token),
) -> list[CalculationLogResponse]:
    rows = await state_store.calculation_logs(db, entity_id, limit)
    return [CalculationLogResponse.model_validate(r) for r in rows]


@router.get("/health", tags=["health"])
async def health(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    service: CalculationService = Depends(get_calculation_service),
):
    try:
        catalog_version = await service.catalog.current_version(db)
    except SQLAlchemyError as e:
        logger.warning("health_db_unavailable", error=str(e))
        return {"status": "degraded", "service": settings.app_name, "engine_version": settings.engine_version}
    return {
        "status": "ok",
        "service": settings.app_name,
        "engine_version": settings.engine_version,
        "catalog_version": catalog_version,
    }
