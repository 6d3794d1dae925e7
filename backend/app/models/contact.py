# app/models/contact.py

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class Contact(Base):
    """
    Lead/customer as seen by the CRM. May legitimately lack email, phone and name.

    NOTE:
      - phone_digits is the digits-only copy used for matching; keep it in sync
        through set_phone().
    """

    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("company_id", "external_id", name="uq_contacts_company_external_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True
    )

    external_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), index=True, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    phone_digits: Mapped[Optional[str]] = mapped_column(String(32), index=True, nullable=True)

    custom_fields: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict, server_default="{}")
    tags: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list, server_default="[]")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def set_phone(self, value: Optional[str]) -> None:
        self.phone = value
        digits = "".join(ch for ch in (value or "") if ch.isdigit())
        self.phone_digits = digits or None
