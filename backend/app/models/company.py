# app/models/company.py

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class Company(Base):
    """
    Tenant. Every other row carries company_id and is never shared.

    Third-party credentials are stored as Fernet ciphertext; read them through
    app.core.encryption (decrypt_credential), never directly.
    """

    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # External identifiers used to resolve the owning tenant of a webhook
    ghl_location_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, index=True, nullable=True)
    ghl_account_id: Mapped[Optional[str]] = mapped_column(String(100), index=True, nullable=True)
    zoom_account_id: Mapped[Optional[str]] = mapped_column(String(100), index=True, nullable=True)

    # ghl_fields | calendars | hyros | tags | none
    attribution_strategy: Mapped[str] = mapped_column(String(20), nullable=False, default="none", server_default="none")
    attribution_source_field: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Query-pair secrets (survey / marketplace / processor channels)
    webhook_secret: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    marketplace_webhook_secret: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    processor_account_secret: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    match_confidence_threshold: Mapped[Optional[Decimal]] = mapped_column(Numeric(4, 3), nullable=True)

    # Sources whose PCN submissions apply immediately (others are stored for review)
    pcn_auto_submit_sources: Mapped[list[str]] = mapped_column(
        JSONB, nullable=False, default=lambda: ["survey"], server_default='["survey"]'
    )

    encrypted_ghl_api_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    settings: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict, server_default="{}")

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
