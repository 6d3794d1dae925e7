# app/schemas/company.py
from __future__ import annotations

from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.core.enums import AttributionStrategy, SubmissionSource

AUTOMATED_SOURCES = {SubmissionSource.SURVEY.value, SubmissionSource.AI.value}


class CompanyOut(BaseModel):
    id: UUID
    name: str
    ghl_location_id: Optional[str] = None
    ghl_account_id: Optional[str] = None
    zoom_account_id: Optional[str] = None
    attribution_strategy: str
    attribution_source_field: Optional[str] = None
    match_confidence_threshold: Optional[Decimal] = None
    pcn_auto_submit_sources: List[str] = Field(default_factory=list)
    has_ghl_api_key: bool = False
    is_active: bool


class CompanySettingsUpdate(BaseModel):
    ghl_location_id: Optional[str] = Field(default=None, max_length=100)
    ghl_account_id: Optional[str] = Field(default=None, max_length=100)
    zoom_account_id: Optional[str] = Field(default=None, max_length=100)
    attribution_strategy: Optional[AttributionStrategy] = None
    attribution_source_field: Optional[str] = Field(default=None, max_length=200)
    match_confidence_threshold: Optional[Decimal] = Field(default=None, ge=0, le=1)
    pcn_auto_submit_sources: Optional[List[str]] = None

    @field_validator("pcn_auto_submit_sources")
    @classmethod
    def validate_sources(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return None
        cleaned = sorted({s.strip().lower() for s in v if s and s.strip()})
        unknown = [s for s in cleaned if s not in AUTOMATED_SOURCES]
        if unknown:
            raise ValueError(f"Only automated sources can auto-submit: {', '.join(sorted(AUTOMATED_SOURCES))}")
        return cleaned


class CredentialIn(BaseModel):
    api_key: str = Field(..., min_length=1, max_length=500)


class WebhookSecretOut(BaseModel):
    webhook_secret: str
