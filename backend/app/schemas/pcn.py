# app/schemas/pcn.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.core.enums import CallOutcome, ReviewDecision
from app.core.errors import UnsupportedOutcome
from app.core.field_normalizer import coerce_bool, coerce_currency, coerce_outcome


class PCNSubmission(BaseModel):
    """
    Canonical post-call note. Accepts camelCase (callOutcome) or snake_case.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    call_outcome: CallOutcome
    notes: Optional[str] = None

    first_call_or_follow_up: Optional[str] = None
    was_offer_made: Optional[bool] = None
    why_didnt_move_forward: Optional[str] = None
    not_moving_forward_notes: Optional[str] = None
    objection_type: Optional[str] = None
    objection_notes: Optional[str] = None
    follow_up_scheduled: Optional[bool] = None
    follow_up_date: Optional[datetime] = None
    nurture_type: Optional[str] = None
    qualification_status: Optional[str] = None
    disqualification_reason: Optional[str] = None
    no_show_communicative: Optional[str] = None
    cancellation_reason: Optional[str] = None

    cash_collected: Optional[Decimal] = None
    payment_plan_or_pif: Optional[str] = None
    total_price: Optional[Decimal] = None
    number_of_payments: Optional[int] = Field(default=None, ge=1)

    @field_validator("call_outcome", mode="before")
    @classmethod
    def _outcome(cls, v: Any) -> CallOutcome:
        try:
            return coerce_outcome(v)
        except UnsupportedOutcome as e:
            raise ValueError(e.message) from e

    @field_validator("was_offer_made", "follow_up_scheduled", mode="before")
    @classmethod
    def _bool(cls, v: Any) -> Optional[bool]:
        return coerce_bool(v)

    @field_validator("cash_collected", "total_price", mode="before")
    @classmethod
    def _money(cls, v: Any) -> Optional[Decimal]:
        return coerce_currency(v)

    def to_record(self) -> Dict[str, Any]:
        """JSON-safe snapshot used for candidates and changelog data."""
        return self.model_dump(mode="json", exclude_none=True)


class PCNCorrection(PCNSubmission):
    reason: Optional[str] = None


class PCNDraftIn(PCNSubmission):
    source: str = Field(default="ai", description="Producer of the draft (ai or survey)")


class PCNReviewIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    appointment_id: str
    decision: ReviewDecision
    reason: Optional[str] = None


class PCNResultOut(BaseModel):
    appointment_id: UUID
    status: str
    pcn_submitted: bool
    pcn_submitted_at: Optional[datetime] = None
    action: str
    changelog_id: Optional[UUID] = None
    linked_sale_id: Optional[UUID] = None


class ChangelogEntryOut(BaseModel):
    id: UUID
    appointment_id: UUID
    action: str
    source: str
    actor_user_id: Optional[UUID] = None
    actor_name: str
    notes: Optional[str] = None
    previous_data: Optional[Dict[str, Any]] = None
    new_data: Optional[Dict[str, Any]] = None
    changes: Optional[Dict[str, Any]] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ChangelogPageOut(BaseModel):
    items: List[ChangelogEntryOut]
    total: int
