# tests/test_companies_api.py
from __future__ import annotations

import pytest

from app.crud.company import crm_api_key
from app.models.calendar import Calendar


@pytest.mark.asyncio
async def test_admin_updates_tenant_settings(client, factory, headers_for):
    company = await factory.company()
    admin = await factory.user(company, role="admin")

    response = await client.patch(
        "/api/v1/companies/current",
        json={
            "attribution_strategy": "tags",
            "match_confidence_threshold": "0.85",
            "pcn_auto_submit_sources": ["AI", "survey", "ai"],
        },
        headers=headers_for(admin),
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["attribution_strategy"] == "tags"
    assert body["pcn_auto_submit_sources"] == ["ai", "survey"]
    assert body["has_ghl_api_key"] is False


@pytest.mark.asyncio
async def test_manual_sources_cannot_auto_submit(client, factory, headers_for):
    company = await factory.company()
    admin = await factory.user(company, role="admin")

    response = await client.patch(
        "/api/v1/companies/current", json={"pcn_auto_submit_sources": ["manual"]}, headers=headers_for(admin)
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_location_can_only_belong_to_one_company(client, factory, headers_for):
    taken = await factory.company()
    company = await factory.company()
    admin = await factory.user(company, role="admin")

    response = await client.patch(
        "/api/v1/companies/current", json={"ghl_location_id": taken.ghl_location_id}, headers=headers_for(admin)
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_crm_api_key_is_stored_encrypted(client, db, factory, headers_for):
    company = await factory.company()
    admin = await factory.user(company, role="admin")

    response = await client.put(
        "/api/v1/companies/current/credentials/ghl", json={"api_key": " pit-123 "}, headers=headers_for(admin)
    )
    assert response.status_code == 204

    await db.refresh(company)
    assert company.encrypted_ghl_api_key != "pit-123"
    assert crm_api_key(company) == "pit-123"

    current = await client.get("/api/v1/companies/current", headers=headers_for(admin))
    assert current.json()["has_ghl_api_key"] is True


@pytest.mark.asyncio
async def test_rotated_webhook_secret_replaces_old_one(client, factory, headers_for):
    company = await factory.company()
    admin = await factory.user(company, role="admin")
    appointment = await factory.appointment(company, external_id="appt_rotate")

    rotated = await client.post("/api/v1/companies/current/webhook-secret", headers=headers_for(admin))
    new_secret = rotated.json()["webhook_secret"]
    assert new_secret != "survey-secret"

    body = {"appointmentId": appointment.external_id, "outcome": "no show"}
    old = await client.post(
        "/api/v1/webhooks/ghl/pcn-survey", params={"company": str(company.id), "secret": "survey-secret"}, json=body
    )
    assert old.status_code == 401
    new = await client.post(
        "/api/v1/webhooks/ghl/pcn-survey", params={"company": str(company.id), "secret": new_secret}, json=body
    )
    assert new.status_code == 200


@pytest.mark.asyncio
async def test_settings_require_admin(client, factory, headers_for):
    company = await factory.company()
    closer = await factory.user(company)
    response = await client.patch(
        "/api/v1/companies/current", json={"attribution_strategy": "tags"}, headers=headers_for(closer)
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_missing_token_is_rejected(client, factory):
    response = await client.get("/api/v1/companies/current")
    assert response.status_code in (401, 403)


@pytest.mark.asyncio
async def test_attribution_rerun_uses_tenant_strategy(client, db, factory, headers_for):
    company = await factory.company(attribution_strategy="calendars")
    admin = await factory.user(company, role="admin")
    calendar = await factory._save(
        Calendar(company_id=company.id, external_id="cal_1", name="Strategy Call (META)")
    )
    appointment = await factory.appointment(company, calendar_id=calendar.id)

    response = await client.post(f"/api/v1/appointments/{appointment.id}/attribution", headers=headers_for(admin))
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["strategy"] == "calendars"
    assert body["traffic_source"] == "META"
    assert body["confidence"] == 0.8

    await db.refresh(appointment)
    assert appointment.attribution_source == "META"
    assert appointment.lead_source == "calendar"
