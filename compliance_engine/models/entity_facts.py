"""
Platform tables the engine reads facts from.

They belong to the client-onboarding / documents / service-request side of
the platform and are migrated there; they sit on their own declarative base
so Alembic here never touches them.
"""
from sqlalchemy import Boolean, Column, Date, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import DeclarativeBase


class FactsBase(DeclarativeBase):
    pass


class BusinessEntity(FactsBase):
    __tablename__ = "business_entities"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=True)
    entity_type = Column(String(50), nullable=True)   # pvt_ltd, llp, opc, …
    incorporation_date = Column(Date, nullable=True)
    annual_turnover = Column(Numeric(16, 2), nullable=True)
    employee_count = Column(Integer, nullable=True)
    state = Column(String(50), nullable=True)
    gstin = Column(String(15), nullable=True)
    has_pf = Column(Boolean, nullable=True)            # NULL → derived from headcount
    has_esi = Column(Boolean, nullable=True)
    has_foreign_transactions = Column(Boolean, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class EntityFiling(FactsBase):
    __tablename__ = "entity_filings"

    id = Column(Integer, primary_key=True)
    entity_id = Column(Integer, ForeignKey("business_entities.id"), nullable=False, index=True)
    filing_type = Column(String(64), nullable=False)   # matches rule filing_key / rule_id
    filed_date = Column(Date, nullable=False)
    period_end = Column(Date, nullable=True)


class EntityDocument(FactsBase):
    __tablename__ = "entity_documents"

    id = Column(Integer, primary_key=True)
    entity_id = Column(Integer, ForeignKey("business_entities.id"), nullable=False, index=True)
    document_type = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending | approved | rejected
    expiry_date = Column(Date, nullable=True)


class EntityServiceRequest(FactsBase):
    __tablename__ = "entity_service_requests"

    id = Column(Integer, primary_key=True)
    entity_id = Column(Integer, ForeignKey("business_entities.id"), nullable=False, index=True)
    service_key = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    due_date = Column(Date, nullable=True)
    completed_at = Column(Date, nullable=True)
