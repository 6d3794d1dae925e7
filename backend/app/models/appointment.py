# app/models/appointment.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class Appointment(Base):
    """
    Sales call booked through the CRM.

    Lifecycle:
      - created by an appointment webhook (upsert on company_id + external_id)
      - mutated by reschedule/cancel webhooks and by PCN submission
      - terminal once cancelled or once the PCN is submitted

    NOTE:
      - pcn_submitted only moves false -> true.
      - pcn_candidate holds a drafted PCN awaiting review; it never changes status.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        UniqueConstraint("company_id", "external_id", name="uq_appointments_company_external_id"),
        Index("ix_appointments_company_scheduled", "company_id", "scheduled_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True
    )

    external_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    contact_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    calendar_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("calendars.id", ondelete="SET NULL"), nullable=True
    )
    closer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    setter_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    title: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Video meeting linked to this call (set when a recording is matched)
    zoom_meeting_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # scheduled | showed | no_show | signed | cancelled
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="scheduled", server_default="scheduled")
    reschedule_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    # Attribution snapshot taken when the appointment is created
    attribution_source: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    lead_source: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    attribution_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # -----------------------------
    # PCN fields
    # -----------------------------
    outcome: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cash_collected: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    first_call_or_follow_up: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    was_offer_made: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    why_didnt_move_forward: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    not_moving_forward_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    objection_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    objection_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    follow_up_scheduled: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    follow_up_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    nurture_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    qualification_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    disqualification_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    no_show_communicative: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_plan_or_pif: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    total_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    number_of_payments: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    pcn_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    pcn_submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pcn_submitted_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    # Drafted (AI / unapproved survey) submission awaiting review
    pcn_candidate: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB(none_as_null=True), nullable=True)
    pcn_candidate_source: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    pcn_candidate_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.status == "cancelled" or bool(self.pcn_submitted)
