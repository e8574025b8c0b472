"""
Input Aggregator — builds the frozen StateCalculationInput for one entity
from the platform tables (profile, filings, documents, service requests).

Derived flags:
  has_gst  ← GSTIN present
  has_pf   ← explicit flag, else headcount ≥ 20 (EPF Act threshold)
  has_esi  ← explicit flag, else headcount ≥ 10 (ESI Act threshold)

Collections are sorted so the same facts always hash the same.
"""
from __future__ import annotations

from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.core.exceptions import CalculationFailure, EntityNotFoundError
from compliance_engine.models.entity_facts import (
    BusinessEntity,
    EntityDocument,
    EntityFiling,
    EntityServiceRequest,
)
from compliance_engine.schemas.calculation_input import (
    DocumentStatus,
    FilingRecord,
    ServiceStatus,
    StateCalculationInput,
)

logger = structlog.get_logger()

PF_HEADCOUNT_THRESHOLD = 20
ESI_HEADCOUNT_THRESHOLD = 10


def _derive_flag(explicit: Optional[bool], employee_count: Optional[int], threshold: int) -> Optional[bool]:
    if explicit is not None:
        return explicit
    if employee_count is None:
        return None
    return employee_count >= threshold


async def build_input(session: AsyncSession, entity_id: int) -> StateCalculationInput:
    try:
        entity = await session.get(BusinessEntity, entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)

        filings = (await session.execute(
            select(EntityFiling).where(EntityFiling.entity_id == entity_id)
        )).scalars().all()
        documents = (await session.execute(
            select(EntityDocument).where(EntityDocument.entity_id == entity_id)
        )).scalars().all()
        services = (await session.execute(
            select(EntityServiceRequest).where(EntityServiceRequest.entity_id == entity_id)
        )).scalars().all()
    except SQLAlchemyError as e:
        logger.error("entity_input_unavailable", entity_id=entity_id, error=str(e))
        raise CalculationFailure(entity_id, f"Entity input unavailable: {e}") from e

    facts = StateCalculationInput(
        entity_id=entity.id,
        entity_name=entity.name,
        entity_type=entity.entity_type,
        incorporation_date=entity.incorporation_date,
        turnover=entity.annual_turnover,
        employee_count=entity.employee_count,
        state=entity.state,
        has_gst=bool(entity.gstin),
        has_pf=_derive_flag(entity.has_pf, entity.employee_count, PF_HEADCOUNT_THRESHOLD),
        has_esi=_derive_flag(entity.has_esi, entity.employee_count, ESI_HEADCOUNT_THRESHOLD),
        has_foreign_transactions=entity.has_foreign_transactions,
        filing_history=tuple(sorted(
            (
                FilingRecord(filing_type=f.filing_type, filed_date=f.filed_date, period_end=f.period_end)
                for f in filings
            ),
            key=lambda f: (f.filing_type, f.filed_date, f.period_end or f.filed_date),
        )),
        document_status=tuple(sorted(
            (
                DocumentStatus(
                    document_type=d.document_type,
                    uploaded=True,
                    approved=(d.status or "").lower() == "approved",
                    expiry_date=d.expiry_date,
                )
                for d in documents
            ),
            key=lambda d: (d.document_type, not d.approved, d.expiry_date.isoformat() if d.expiry_date else ""),
        )),
        active_services=tuple(sorted(
            (
                ServiceStatus(
                    service_key=s.service_key,
                    status=s.status,
                    due_date=s.due_date,
                    last_completed=s.completed_at,
                )
                for s in services
            ),
            key=lambda s: (
                s.service_key,
                s.status,
                s.due_date.isoformat() if s.due_date else "",
                s.last_completed.isoformat() if s.last_completed else "",
            ),
        )),
    )

    logger.debug(
        "entity_input_built",
        entity_id=entity_id,
        filings=len(facts.filing_history),
        documents=len(facts.document_status),
        services=len(facts.active_services),
    )
    return facts
