"""
sweep.py
────────
Recalculates every active entity. Due dates move with the calendar even
when no fact changes, so this runs daily (00:30 IST via Kubernetes CronJob)
in addition to the webhook-driven recalculations.

Entities run in parallel, bounded by SWEEP_CONCURRENCY; one entity's
failure never stops the sweep.

Usage:
  python -m compliance_engine.services.sweep
  OR via the API: POST /v1/compliance/recalculate-all
"""
from __future__ import annotations

import asyncio
import time
from collections import Counter
from typing import Optional

import structlog
from sqlalchemy import select

from compliance_engine.core.exceptions import StaleStateError
from compliance_engine.models.entity_facts import BusinessEntity
from compliance_engine.schemas.compliance_state import CalculationStatus, TriggerSource
from compliance_engine.services.calculation_service import CalculationService

logger = structlog.get_logger(__name__)


async def active_entity_ids(service: CalculationService) -> list[int]:
    async with service.session_factory() as session:
        result = await session.execute(
            select(BusinessEntity.id).where(BusinessEntity.is_active.is_(True)).order_by(BusinessEntity.id)
        )
        return list(result.scalars().all())


async def run_sweep(
    service: CalculationService,
    triggered_by: TriggerSource = TriggerSource.AUTO,
    concurrency: Optional[int] = None,
    force: bool = False,
) -> dict:
    """
    Full sweep:
      1. List active entities
      2. Calculate each (bounded parallelism)
      3. Return summary counts
    """
    t0 = time.time()
    entity_ids = await active_entity_ids(service)
    semaphore = asyncio.Semaphore(concurrency or service.settings.sweep_concurrency)
    logger.info("sweep_started", entities=len(entity_ids), triggered_by=triggered_by.value)

    async def _one(entity_id: int) -> tuple[int, str, Optional[str]]:
        async with semaphore:
            try:
                result = await service.calculate(entity_id, triggered_by, force=force)
            except StaleStateError:
                return entity_id, CalculationStatus.FAILED.value, None
            overall = result.entity_state.overall_state.value if result.entity_state else None
            return entity_id, result.status.value, overall

    outcomes = await asyncio.gather(*(_one(eid) for eid in entity_ids))

    statuses = Counter(status for _, status, _ in outcomes)
    states = Counter(overall for _, _, overall in outcomes if overall)
    failed_ids = [eid for eid, status, _ in outcomes if status == CalculationStatus.FAILED.value]

    summary = {
        "entities_processed": len(entity_ids),
        "succeeded": statuses.get(CalculationStatus.SUCCESS.value, 0),
        "skipped": statuses.get(CalculationStatus.SKIPPED.value, 0),
        "failed": len(failed_ids),
        "failed_entity_ids": failed_ids,
        "state_counts": {s: states.get(s, 0) for s in ("GREEN", "AMBER", "RED")},
        "elapsed_seconds": round(time.time() - t0, 2),
    }
    logger.info("sweep_complete", **{k: v for k, v in summary.items() if k != "failed_entity_ids"})
    return summary


async def _main() -> dict:
    from compliance_engine.models.database import get_engine, get_session_factory

    service = CalculationService(get_session_factory())
    try:
        return await run_sweep(service)
    finally:
        await get_engine().dispose()


if __name__ == "__main__":
    import sys

    try:
        result = asyncio.run(_main())
        print(f"✓ Sweep complete: {result['entities_processed']} entities, "
              f"{result['failed']} failed ({result['elapsed_seconds']}s)")
    except Exception as e:
        print(f"✗ Sweep failed: {e}", file=sys.stderr)
        sys.exit(1)
