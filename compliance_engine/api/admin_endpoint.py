"""
Rule catalog admin API (role: compliance-admin).

Endpoints:
  GET  /v1/admin/rules                      → catalog snapshot (current or ?catalog_version=)
  GET  /v1/admin/rules/catalog-version      → current catalog version + invalid rows
  GET  /v1/admin/rules/{rule_id}            → all versions of one rule
  POST /v1/admin/rules                      → create (version 1)
  PUT  /v1/admin/rules/{rule_id}            → new version
  POST /v1/admin/rules/{rule_id}/deactivate → new, inactive version

Rules are never edited in place: every write appends a row and bumps the
catalog version, so states always name the exact catalog they used.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.core.auth import require_admin
from compliance_engine.core.exceptions import (
    CatalogUnavailableError,
    RuleConflictError,
    RuleEvaluationError,
    RuleNotFoundError,
)
from compliance_engine.models.database import get_db
from compliance_engine.schemas.rules import (
    CatalogVersionResponse,
    ComplianceRule,
    ComplianceRuleCreate,
    ComplianceRuleWrite,
)
from compliance_engine.services.calculation_service import CalculationService, get_calculation_service
from compliance_engine.services.rule_catalog import row_to_rule

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/admin/rules", tags=["admin"])


# ── Pydantic Schemas ──

class RuleVersionResponse(BaseModel):
    rule_id: str
    rule_version: int
    catalog_version: int
    is_active: bool
    created_by: str
    created_at: datetime
    rule: Optional[ComplianceRule] = None
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


def _version_response(row) -> RuleVersionResponse:
    try:
        rule, error = row_to_rule(row), None
    except ValueError as e:   # pydantic.ValidationError
        rule, error = None, str(e)
    return RuleVersionResponse(
        rule_id=row.rule_id,
        rule_version=row.rule_version,
        catalog_version=row.catalog_version,
        is_active=row.is_active,
        created_by=row.created_by,
        created_at=row.created_at,
        rule=rule,
        error=error,
    )


# ── Endpoints ──

@router.get("", response_model=list[ComplianceRule])
async def list_rules(
    catalog_version: Optional[int] = None,
    db: AsyncSession = Depends(get_db),
    token: dict = Depends(require_admin),
    service: CalculationService = Depends(get_calculation_service),
):
    try:
        snap = await service.catalog.snapshot(db, catalog_version)
    except CatalogUnavailableError as e:
        raise HTTPException(404, str(e))
    return list(snap.rules)


@router.get("/catalog-version", response_model=CatalogVersionResponse)
async def catalog_version(
    db: AsyncSession = Depends(get_db),
    token: dict = Depends(require_admin),
    service: CalculationService = Depends(get_calculation_service),
):
    try:
        snap = await service.catalog.snapshot(db)
    except CatalogUnavailableError:
        return CatalogVersionResponse(catalog_version=0, active_rules=0)
    return CatalogVersionResponse(
        catalog_version=snap.version,
        active_rules=len(snap.rules),
        invalid_rules=snap.invalid_rules,
    )


@router.get("/{rule_id}", response_model=list[RuleVersionResponse])
async def get_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db),
    token: dict = Depends(require_admin),
    service: CalculationService = Depends(get_calculation_service),
):
    try:
        rows = await service.catalog.rule_versions(db, rule_id)
    except RuleNotFoundError as e:
        raise HTTPException(404, str(e))
    return [_version_response(r) for r in rows]


async def _write(db: AsyncSession, op, rule_id: str, user: str) -> RuleVersionResponse:
    try:
        row = await op
    except RuleNotFoundError as e:
        await db.rollback()
        raise HTTPException(404, str(e))
    except RuleConflictError as e:
        await db.rollback()
        raise HTTPException(409, str(e))
    except RuleEvaluationError as e:
        await db.rollback()
        raise HTTPException(422, str(e))
    await db.commit()
    logger.info("rule_catalog_changed", rule_id=rule_id, rule_version=row.rule_version,
                catalog_version=row.catalog_version, changed_by=user)
    return _version_response(row)


@router.post("", response_model=RuleVersionResponse, status_code=201)
async def create_rule(
    payload: ComplianceRuleCreate,
    db: AsyncSession = Depends(get_db),
    token: dict = Depends(require_admin),
    service: CalculationService = Depends(get_calculation_service),
):
    user = token.get("sub", "unknown")
    return await _write(db, service.catalog.create_rule(db, payload, user), payload.rule_id, user)


@router.put("/{rule_id}", response_model=RuleVersionResponse)
async def update_rule(
    rule_id: str,
    payload: ComplianceRuleWrite,
    db: AsyncSession = Depends(get_db),
    token: dict = Depends(require_admin),
    service: CalculationService = Depends(get_calculation_service),
):
    user = token.get("sub", "unknown")
    return await _write(db, service.catalog.update_rule(db, rule_id, payload, user), rule_id, user)


@router.post("/{rule_id}/deactivate", response_model=RuleVersionResponse)
async def deactivate_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db),
    token: dict = Depends(require_admin),
    service: CalculationService = Depends(get_calculation_service),
):
    user = token.get("sub", "unknown")
    return await _write(db, service.catalog.deactivate_rule(db, rule_id, user), rule_id, user)
