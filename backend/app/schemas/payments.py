# app/schemas/payments.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SaleOut(BaseModel):
    id: UUID
    processor: str
    external_id: str
    amount: Decimal
    currency: str
    payment_type: str
    total_amount: Optional[Decimal] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    appointment_id: Optional[UUID] = None
    rep_id: Optional[UUID] = None
    matched_by: Optional[str] = None
    match_confidence: Optional[float] = None
    paid_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class UnmatchedPaymentOut(BaseModel):
    id: UUID
    status: str
    sale: SaleOut
    suggested_matches: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime
    reviewed_at: Optional[datetime] = None


class UnmatchedPageOut(BaseModel):
    items: List[UnmatchedPaymentOut]
    limit: int
    offset: int
    total: int


class ManualMatchIn(BaseModel):
    appointment_id: str = Field(..., min_length=1, description="Internal or CRM appointment id")


class MatchResultOut(BaseModel):
    status: str
    sale_id: Optional[str] = None
    appointment_id: Optional[str] = None
    commission_id: Optional[str] = None
    unmatched_payment_id: Optional[str] = None
    confidence: Optional[float] = None


class BulkMatchItem(BaseModel):
    payment_id: UUID = Field(..., description="Unmatched payment id")
    appointment_id: str = Field(..., min_length=1)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BulkMatchIn(BaseModel):
    matches: List[BulkMatchItem] = Field(..., min_length=1, max_length=200)


class BulkMatchItemOut(BaseModel):
    payment_id: UUID
    success: bool
    error: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BulkMatchOut(BaseModel):
    results: List[BulkMatchItemOut]
    matched: int
    failed: int
