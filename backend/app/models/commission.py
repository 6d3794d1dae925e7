# app/models/commission.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class Commission(Base):
    """
    Commission owed to a rep for one sale.

    Stores:
      - rate (the effective rate applied)
      - total_amount (sale value x rate)
      - released_amount (portion payable so far)
      - release_status (pending | partial | released | paid)

    NOTE:
      - released_amount <= total_amount always (enforced in code and by a CHECK).
      - release_status only advances.
    """

    __tablename__ = "commissions"
    __table_args__ = (
        UniqueConstraint("sale_id", "rep_id", name="uq_commissions_sale_rep"),
        CheckConstraint("released_amount <= total_amount", name="ck_commissions_released_le_total"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sale_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True
    )
    rep_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    released_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"), server_default="0.00")

    release_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", server_default="pending")

    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
