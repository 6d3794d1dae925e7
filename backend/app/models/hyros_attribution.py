# app/models/hyros_attribution.py

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class HyrosAttribution(Base):
    """Read-only here; rows are written by an out-of-band sync."""

    __tablename__ = "hyros_attributions"
    __table_args__ = (
        UniqueConstraint("company_id", "contact_id", name="uq_hyros_attributions_company_contact"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )

    first_source: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    last_source: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
