# app/api/v1/companies.py
from __future__ import annotations

import secrets

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps.auth import get_current_company, require_admin
from app.core.encryption import encrypt_credential
from app.db.session import get_db
from app.models.company import Company
from app.models.user import User
from app.schemas.company import CompanyOut, CompanySettingsUpdate, CredentialIn, WebhookSecretOut

router = APIRouter(prefix="/companies", tags=["companies"])


def _to_out(company: Company) -> CompanyOut:
    return CompanyOut(
        id=company.id,
        name=company.name,
        ghl_location_id=company.ghl_location_id,
        ghl_account_id=company.ghl_account_id,
        zoom_account_id=company.zoom_account_id,
        attribution_strategy=company.attribution_strategy,
        attribution_source_field=company.attribution_source_field,
        match_confidence_threshold=company.match_confidence_threshold,
        pcn_auto_submit_sources=list(company.pcn_auto_submit_sources or []),
        has_ghl_api_key=bool(company.encrypted_ghl_api_key),
        is_active=company.is_active,
    )


@router.get("/current", response_model=CompanyOut)
async def get_current_company_settings(company: Company = Depends(get_current_company)):
    return _to_out(company)


@router.patch("/current", response_model=CompanyOut)
async def update_company_settings(
    payload: CompanySettingsUpdate,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
):
    """
    Tenant configuration: CRM/meeting identifiers, attribution strategy,
    auto-match threshold, and which automated PCN sources submit directly.
    """
    data = payload.model_dump(exclude_unset=True)
    if "attribution_strategy" in data and data["attribution_strategy"] is not None:
        data["attribution_strategy"] = data["attribution_strategy"].value
    for key, value in data.items():
        setattr(company, key, value)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="CRM location is already connected to another company",
        )
    await db.refresh(company)
    return _to_out(company)


@router.put("/current/credentials/ghl", status_code=status.HTTP_204_NO_CONTENT)
async def set_crm_api_key(
    payload: CredentialIn,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
):
    """Stored as Fernet ciphertext; never returned by the API."""
    company.encrypted_ghl_api_key = encrypt_credential(payload.api_key.strip())
    await db.commit()


@router.post("/current/webhook-secret", response_model=WebhookSecretOut)
async def rotate_webhook_secret(
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
):
    """New query-pair secret for the survey channel; the old one stops working."""
    company.webhook_secret = secrets.token_urlsafe(32)
    await db.commit()
    return WebhookSecretOut(webhook_secret=company.webhook_secret)
