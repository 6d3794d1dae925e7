# app/crud/company.py
from __future__ import annotations

import uuid
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.encryption import decrypt_credential
from app.models.company import Company


def _as_uuid(value: Any) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


async def get_company(db: AsyncSession, company_id: Any) -> Optional[Company]:
    cid = _as_uuid(company_id)
    if cid is None:
        return None
    return await db.get(Company, cid)


def crm_tenant_identifiers(payload: Mapping[str, Any]) -> tuple[Optional[str], Optional[str]]:
    """(location_id, account_id) embedded in a CRM webhook, wherever it was nested."""

    def _nested(key: str, field: str) -> Any:
        value = payload.get(key)
        return value.get(field) if isinstance(value, Mapping) else None

    location_id = (
        payload.get("locationId")
        or payload.get("location_id")
        or _nested("location", "id")
        or _nested("data", "locationId")
        or _nested("triggerData", "locationId")
    )
    # companyId is the agency id shared by every location; never a tenant key
    account_id = payload.get("accountId") or _nested("account", "id")
    return (
        str(location_id).strip() if location_id else None,
        str(account_id).strip() if account_id else None,
    )


async def resolve_company_by_crm_ids(
    db: AsyncSession,
    *,
    location_id: Optional[str],
    account_id: Optional[str],
) -> Optional[Company]:
    """
    A location id is authoritative when present. The account id is only a
    fallback without one, and only when exactly one active company carries it.
    """
    active = select(Company).where(Company.is_active.is_(True))
    if location_id:
        stmt = active.where(Company.ghl_location_id == location_id)
        return (await db.execute(stmt)).scalar_one_or_none()
    if not account_id:
        return None

    rows = (await db.execute(active.where(Company.ghl_account_id == account_id).limit(2))).scalars().all()
    return rows[0] if len(rows) == 1 else None


async def resolve_company_by_zoom_account(db: AsyncSession, account_id: Optional[str]) -> Optional[Company]:
    if not account_id:
        return None
    stmt = select(Company).where(Company.zoom_account_id == account_id).limit(1)
    return (await db.execute(stmt)).scalar_one_or_none()


def crm_api_key(company: Company) -> Optional[str]:
    """Plaintext CRM API key. Raises ValueError if the ciphertext cannot be decrypted."""
    return decrypt_credential(company.encrypted_ghl_api_key)
