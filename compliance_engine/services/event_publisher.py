"""
Kafka event publisher — fire-and-forget.

Publishes compliance state changes for downstream consumers (dashboards,
notification service, data warehouse sync). Called after the calculation
transaction committed; gracefully degrades if Kafka is unavailable.
"""
from __future__ import annotations

import json
from typing import Optional

import structlog

from compliance_engine.core.config import get_settings
from compliance_engine.schemas.compliance_state import (
    AlertDraft,
    EntityComplianceState,
    TriggerSource,
)

logger = structlog.get_logger()

_producer = None


async def _get_producer():
    global _producer
    settings = get_settings()
    if not settings.kafka_enabled:
        return None
    if _producer is None:
        from aiokafka import AIOKafkaProducer
        _producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap)
        await _producer.start()
    return _producer


def build_state_event(
    state: EntityComplianceState,
    previous_state: Optional[str],
    triggered_by: TriggerSource,
    alerts: list[AlertDraft],
) -> dict:
    return {
        "event_type": "COMPLIANCE_STATE_CALCULATED",
        "entity_id": state.entity_id,
        "previous_state": previous_state,
        "overall_state": state.overall_state.value,
        "state_changed": previous_state != state.overall_state.value,
        "overall_risk_score": str(state.overall_risk_score),
        "total_penalty_exposure": str(state.total_penalty_exposure),
        "next_critical_deadline": state.next_critical_deadline.isoformat() if state.next_critical_deadline else None,
        "alerts": [{"rule_id": a.rule_id, "alert_type": a.alert_type.value, "severity": a.severity.value} for a in alerts],
        "calculation_version": state.calculation_version,
        "triggered_by": triggered_by.value,
        "calculated_at": state.calculated_at.isoformat(),
    }


async def publish_state_event(
    state: EntityComplianceState,
    previous_state: Optional[str],
    triggered_by: TriggerSource,
    alerts: list[AlertDraft],
) -> None:
    settings = get_settings()
    if not settings.kafka_enabled:
        return

    try:
        producer = await _get_producer()
        if producer:
            event = build_state_event(state, previous_state, triggered_by, alerts)
            await producer.send_and_wait(
                settings.kafka_topic_state_events,
                json.dumps(event).encode("utf-8"),
                key=str(state.entity_id).encode("utf-8"),
            )
            logger.info("kafka_event_published", entity_id=state.entity_id, overall_state=event["overall_state"])
    except Exception as e:
        # Fire-and-forget: log but don't fail the calculation
        logger.warning("kafka_publish_failed", entity_id=state.entity_id, error=str(e))


async def close_producer() -> None:
    global _producer
    if _producer is not None:
        await _producer.stop()
        _producer = None
