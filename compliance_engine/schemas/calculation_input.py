"""
Per-entity fact snapshot fed to the evaluator.

Built fresh for every calculation by services.input_aggregator and never
mutated afterwards. The canonical JSON hash drives skip-if-unchanged.
"""
from __future__ import annotations

import hashlib
import json
from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ServiceStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_key: str
    status: str = Field(description="pending | in_progress | completed | not_applicable | …")
    due_date: Optional[date] = None
    last_completed: Optional[date] = None

    @property
    def is_open(self) -> bool:
        return self.status.lower() not in ("completed", "not_applicable", "cancelled")


class DocumentStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_type: str
    uploaded: bool = False
    approved: bool = False
    expiry_date: Optional[date] = None

    def is_valid_on(self, today: date) -> bool:
        if not (self.uploaded and self.approved):
            return False
        return self.expiry_date is None or self.expiry_date >= today


class FilingRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    filing_type: str
    filed_date: date
    period_end: Optional[date] = Field(None, description="Last day of the period the filing covers")


class StateCalculationInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_id: int
    entity_name: Optional[str] = None
    entity_type: Optional[str] = None
    incorporation_date: Optional[date] = None
    turnover: Optional[Decimal] = None
    employee_count: Optional[int] = None
    state: Optional[str] = None
    has_gst: Optional[bool] = None
    has_pf: Optional[bool] = None
    has_esi: Optional[bool] = None
    has_foreign_transactions: Optional[bool] = None

    active_services: tuple[ServiceStatus, ...] = ()
    document_status: tuple[DocumentStatus, ...] = ()
    filing_history: tuple[FilingRecord, ...] = ()

    def input_hash(self) -> str:
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def filings_for(self, filing_key: str) -> list[FilingRecord]:
        return [f for f in self.filing_history if f.filing_type == filing_key]

    def services_for(self, service_key: str) -> list[ServiceStatus]:
        return [s for s in self.active_services if s.service_key == service_key]

    def valid_document_types(self, today: date) -> set[str]:
        return {d.document_type for d in self.document_status if d.is_valid_on(today)}

    def uploaded_document_types(self) -> set[str]:
        return {d.document_type for d in self.document_status if d.uploaded}
