# app/models/pcn_changelog.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class PCNChangelog(Base):
    """Immutable audit trail of PCN actions. Rows are inserted, never updated."""

    __tablename__ = "pcn_changelog"
    __table_args__ = (
        Index("ix_pcn_changelog_appointment_created", "appointment_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
    )

    # submitted | updated | drafted | approved | rejected
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    # manual | survey | ai | review | system
    source: Mapped[str] = mapped_column(String(20), nullable=False)

    actor_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    actor_name: Mapped[str] = mapped_column(String(200), nullable=False)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    previous_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    new_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    changes: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)

    # clock_timestamp(): entries written in one transaction keep their insert order
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.clock_timestamp(), nullable=False)
