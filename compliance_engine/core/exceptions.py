"""
Error taxonomy of the state engine.

  RuleEvaluationWarning  → input field missing; rule left unevaluated, run continues
  RuleEvaluationError    → rule definition unusable; rule skipped, run continues
  CalculationFailure     → run aborted; current state row untouched
  StaleStateError        → optimistic write lost against a newer calculation
  RuleNotFoundError, RuleConflictError → rule catalog admin writes
"""
from __future__ import annotations

from typing import Optional


class RuleEvaluationWarning(Exception):
    def __init__(self, rule_id: str, field: str, message: Optional[str] = None):
        self.rule_id = rule_id
        self.field = field
        super().__init__(message or f"{rule_id}: missing input field '{field}'")


class RuleEvaluationError(Exception):
    def __init__(self, rule_id: str, message: str):
        self.rule_id = rule_id
        super().__init__(f"{rule_id}: {message}")


class CalculationFailure(Exception):
    """Fatal for one entity's calculation."""

    reason = "CALCULATION_FAILED"

    def __init__(self, entity_id: int, message: str):
        self.entity_id = entity_id
        super().__init__(message)


class EntityNotFoundError(CalculationFailure):
    reason = "ENTITY_NOT_FOUND"

    def __init__(self, entity_id: int):
        super().__init__(entity_id, f"Entity {entity_id} not found")


class CatalogUnavailableError(CalculationFailure):
    reason = "CATALOG_UNAVAILABLE"


class StaleStateError(Exception):
    def __init__(self, entity_id: int, message: str):
        self.entity_id = entity_id
        super().__init__(message)


class RuleNotFoundError(LookupError):
    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id} not found")


class RuleConflictError(Exception):
    """Catalog write clashed with an existing rule or a concurrent writer."""
