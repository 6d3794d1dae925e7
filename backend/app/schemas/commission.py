# app/schemas/commission.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class CommissionOut(BaseModel):
    id: UUID
    sale_id: UUID
    rep_id: UUID
    rate: Decimal
    total_amount: Decimal
    released_amount: Decimal
    release_status: str
    calculated_at: datetime
    paid_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CommissionPageOut(BaseModel):
    items: List[CommissionOut]
    limit: int
    offset: int
    total: int
    total_commission: Decimal
    total_released: Decimal


class ReleaseIn(BaseModel):
    amount: Decimal = Field(..., ge=0, description="Additional amount to release; clamped at the commission total")


class CommissionCalcIn(BaseModel):
    sale_amount: Decimal = Field(..., ge=0)
    rate: Decimal = Field(..., ge=0, le=1)
    payment_amount: Optional[Decimal] = Field(default=None, ge=0)


class CommissionCalcOut(BaseModel):
    total_commission: Decimal
    released_commission: Decimal
    release_status: str
