# app/schemas/commission_role.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class CommissionRoleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    default_rate: Decimal = Field(..., ge=0, le=1)
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class CommissionRoleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    default_rate: Optional[Decimal] = Field(default=None, ge=0, le=1)
    description: Optional[str] = None


class CommissionRoleOut(BaseModel):
    id: UUID
    name: str
    default_rate: Decimal
    description: Optional[str] = None
    user_count: int = 0
    created_at: datetime


class RepCommissionIn(BaseModel):
    """Both fields may be cleared with null; a custom rate wins over the role default."""

    commission_role_id: Optional[UUID] = None
    custom_commission_rate: Optional[Decimal] = Field(default=None, ge=0, le=1)


class RepCommissionOut(BaseModel):
    user_id: UUID
    commission_role_id: Optional[UUID] = None
    custom_commission_rate: Optional[Decimal] = None
    effective_rate: Decimal


class CommissionRoleListOut(BaseModel):
    items: List[CommissionRoleOut]
