# app/api/v1/webhooks.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import PayloadMalformed, SignatureInvalid, TenantUnresolved
from app.core.payment_webhooks import handle_payment_webhook, handle_whop_webhook
from app.core.pcn_survey import handle_survey_webhook
from app.core.recording_analysis import handle_zoom_webhook
from app.core.webhook_dispatch import handle_crm_webhook
from app.core.webhook_signature import read_body_safe
from app.db.session import get_db

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _reject(e: SignatureInvalid | TenantUnresolved | PayloadMalformed) -> HTTPException:
    """Only failures before the delivery is authenticated reach the sender."""
    return HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/ghl")
async def crm_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    x_ghl_signature: Optional[str] = Header(default=None, alias="x-ghl-signature"),
    x_ghl_timestamp: Optional[str] = Header(default=None, alias="x-ghl-timestamp"),
):
    """
    CRM calendar/appointment events.
    401 on a bad signature; every other outcome is 200 with the result recorded.
    """
    raw_body = await read_body_safe(request)
    try:
        return await handle_crm_webhook(
            db,
            raw_body=raw_body,
            signature=x_ghl_signature,
            timestamp=x_ghl_timestamp,
            background_tasks=background_tasks,
        )
    except SignatureInvalid as e:
        raise _reject(e)


@router.post("/ghl/pcn-survey")
async def pcn_survey_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    company: Optional[str] = Query(default=None),
    secret: Optional[str] = Query(default=None),
):
    raw_body = await read_body_safe(request)
    try:
        return await handle_survey_webhook(db, company_ref=company, secret=secret, raw_body=raw_body)
    except (SignatureInvalid, TenantUnresolved) as e:
        raise _reject(e)


@router.post("/payments")
async def payments_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_webhook_secret: Optional[str] = Header(default=None, alias="x-webhook-secret"),
):
    raw_body = await read_body_safe(request)
    try:
        return await handle_payment_webhook(db, raw_body=raw_body, provided_secret=x_webhook_secret)
    except SignatureInvalid as e:
        raise _reject(e)


@router.post("/whop")
async def whop_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    company: Optional[str] = Query(default=None),
    secret: Optional[str] = Query(default=None),
):
    raw_body = await read_body_safe(request)
    try:
        return await handle_whop_webhook(db, company_ref=company, secret=secret, raw_body=raw_body)
    except SignatureInvalid as e:
        raise _reject(e)


@router.post("/zoom")
async def zoom_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    x_zm_signature: Optional[str] = Header(default=None, alias="x-zm-signature"),
    x_zm_request_timestamp: Optional[str] = Header(default=None, alias="x-zm-request-timestamp"),
):
    """
    Video-meeting events. endpoint.url_validation is answered with the
    encrypted challenge token; recording.completed queues PCN drafting.
    """
    raw_body = await read_body_safe(request)
    try:
        return await handle_zoom_webhook(
            db,
            raw_body=raw_body,
            signature=x_zm_signature,
            timestamp=x_zm_request_timestamp,
            background_tasks=background_tasks,
        )
    except (SignatureInvalid, PayloadMalformed) as e:
        raise _reject(e)

