"""
Rule catalog — versioned, read-mostly.

Every write (create / update / deactivate) appends a new row version and
takes the next catalog version. A snapshot at catalog version V holds, per
rule_id, the latest row written at or before V. Snapshots of committed
versions never change, so they are cached per version in-process; a version
above the latest one written is refused rather than cached.

Rows that no longer parse into a ComplianceRule are reported in
``invalid_rules`` instead of failing the whole load.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import structlog
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.core.exceptions import (
    CatalogUnavailableError,
    RuleConflictError,
    RuleEvaluationError,
    RuleNotFoundError,
)
from compliance_engine.evaluation.due_dates import validate_due_date_logic
from compliance_engine.evaluation.engine import order_rules
from compliance_engine.models.compliance_state import ComplianceStateRule
from compliance_engine.schemas.rules import ComplianceRule, ComplianceRuleCreate, ComplianceRuleWrite

logger = structlog.get_logger()

_RULE_FIELDS = tuple(ComplianceRule.model_fields)


@dataclass(frozen=True)
class RuleCatalogSnapshot:
    version: int
    rules: tuple[ComplianceRule, ...]
    invalid_rules: dict[str, str] = field(default_factory=dict)

    def get(self, rule_id: str) -> Optional[ComplianceRule]:
        return next((r for r in self.rules if r.rule_id == rule_id), None)


def row_to_rule(row: ComplianceStateRule) -> ComplianceRule:
    """Raises pydantic.ValidationError for rows that do not describe a usable rule."""
    data = {name: getattr(row, name) for name in _RULE_FIELDS if hasattr(row, name)}
    return ComplianceRule.model_validate(data)


class RuleCatalog:

    def __init__(self):
        self._snapshots: dict[int, RuleCatalogSnapshot] = {}

    # ── Reads ──

    async def current_version(self, session: AsyncSession) -> int:
        result = await session.execute(select(func.max(ComplianceStateRule.catalog_version)))
        return result.scalar() or 0

    async def snapshot(
        self, session: AsyncSession, version: Optional[int] = None, cached: bool = True,
    ) -> RuleCatalogSnapshot:
        """
        Read the catalog once for a calculation.
        Raises CatalogUnavailableError when the catalog cannot be read, is empty,
        or has not reached the requested version yet.
        """
        try:
            latest_version = await self.current_version(session)
            if version is None:
                version = latest_version
            elif version > latest_version:
                raise CatalogUnavailableError(
                    0, f"Rule catalog version {version} does not exist (latest is {latest_version})",
                )
            if cached and version in self._snapshots:
                return self._snapshots[version]

            result = await session.execute(
                select(ComplianceStateRule)
                .where(ComplianceStateRule.catalog_version <= version)
                .order_by(ComplianceStateRule.rule_id, ComplianceStateRule.rule_version)
            )
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("catalog_read_failed", error=str(e))
            raise CatalogUnavailableError(0, f"Rule catalog unavailable: {e}") from e

        if not rows:
            raise CatalogUnavailableError(0, f"Rule catalog is empty at version {version}")

        latest: dict[str, ComplianceStateRule] = {}
        for row in rows:
            latest[row.rule_id] = row  # ordered by rule_version, last one wins

        rules: list[ComplianceRule] = []
        invalid: dict[str, str] = {}
        for rule_id, row in latest.items():
            if not row.is_active:
                continue
            try:
                rules.append(row_to_rule(row))
            except ValidationError as e:
                invalid[rule_id] = f"invalid rule definition ({e.error_count()} errors)"
                logger.warning("catalog_rule_invalid", rule_id=rule_id, rule_version=row.rule_version)

        snap = RuleCatalogSnapshot(version=version, rules=tuple(rules), invalid_rules=invalid)
        if cached:
            self._snapshots[version] = snap
        logger.info("catalog_snapshot_loaded", catalog_version=version, rules=len(rules), invalid=len(invalid))
        return snap

    async def rule_versions(self, session: AsyncSession, rule_id: str) -> list[ComplianceStateRule]:
        result = await session.execute(
            select(ComplianceStateRule)
            .where(ComplianceStateRule.rule_id == rule_id)
            .order_by(ComplianceStateRule.rule_version)
        )
        rows = list(result.scalars().all())
        if not rows:
            raise RuleNotFoundError(rule_id)
        return rows

    # ── Writes (caller commits) ──

    async def create_rule(self, session: AsyncSession, payload: ComplianceRuleCreate, actor: str) -> ComplianceStateRule:
        existing = await session.execute(
            select(func.count()).where(ComplianceStateRule.rule_id == payload.rule_id)
        )
        if existing.scalar():
            raise RuleConflictError(f"Rule {payload.rule_id} already exists")
        data = payload.model_dump(exclude={"rule_id"})
        return await self._append(session, payload.rule_id, 1, data, actor)

    async def update_rule(
        self, session: AsyncSession, rule_id: str, payload: ComplianceRuleWrite, actor: str,
    ) -> ComplianceStateRule:
        latest = (await self.rule_versions(session, rule_id))[-1]
        return await self._append(session, rule_id, latest.rule_version + 1, payload.model_dump(), actor)

    async def deactivate_rule(self, session: AsyncSession, rule_id: str, actor: str) -> ComplianceStateRule:
        latest = (await self.rule_versions(session, rule_id))[-1]
        if not latest.is_active:
            raise RuleConflictError(f"Rule {rule_id} is already inactive")
        data = {name: getattr(latest, name) for name in ComplianceRuleWrite.model_fields}
        data["is_active"] = False
        return await self._append(session, rule_id, latest.rule_version + 1, data, actor)

    async def _append(
        self, session: AsyncSession, rule_id: str, rule_version: int, data: dict, actor: str,
    ) -> ComplianceStateRule:
        candidate = ComplianceRule.model_validate({**data, "rule_id": rule_id, "rule_version": rule_version})
        validate_due_date_logic(rule_id, candidate.due_date_logic, candidate.frequency)

        # A write must not close a dependency cycle in the resulting catalog.
        current = await self.current_version(session)
        others: list[ComplianceRule] = []
        if current:
            # uncached: rows flushed by this session are not committed yet
            snap = await self.snapshot(session, current, cached=False)
            others = [r for r in snap.rules if r.rule_id != rule_id]
        _, stuck = order_rules(others + [candidate])
        if any(r.rule_id == rule_id for r in stuck):
            raise RuleEvaluationError(rule_id, "rule would create a dependency cycle")

        row = ComplianceStateRule(
            rule_id=rule_id,
            rule_version=rule_version,
            catalog_version=current + 1,
            created_by=actor,
            **_row_values(candidate),
        )
        session.add(row)
        try:
            await session.flush()
        except IntegrityError as e:
            raise RuleConflictError(f"Concurrent catalog write for {rule_id}; retry") from e

        logger.info(
            "catalog_rule_written",
            rule_id=rule_id,
            rule_version=rule_version,
            catalog_version=row.catalog_version,
            is_active=row.is_active,
            actor=actor,
        )
        return row


def _row_values(rule: ComplianceRule) -> dict:
    data = rule.model_dump(mode="json", exclude={"rule_id", "rule_version"})
    # Numeric / Date columns take python values, JSON columns take plain json
    for name in ("turnover_min", "turnover_max", "penalty_per_day", "max_penalty", "effective_from", "effective_until"):
        data[name] = getattr(rule, name)
    return data
