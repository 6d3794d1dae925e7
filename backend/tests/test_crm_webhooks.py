# tests/test_crm_webhooks.py
from __future__ import annotations

import json
import time

import pytest
from sqlalchemy import func, select

from app.core.config import settings
from app.core.webhook_signature import compute_signature
from app.models.appointment import Appointment
from app.models.contact import Contact
from app.models.webhook_event import WebhookEvent

URL = "/api/v1/webhooks/ghl"


@pytest.fixture()
def unsigned(monkeypatch):
    monkeypatch.setattr(settings, "GHL_WEBHOOK_SECRET", "")


def appointment_payload(company, external_id="appt_1", **overrides):
    payload = {
        "type": "AppointmentCreate",
        "locationId": company.ghl_location_id,
        "appointment": {
            "id": external_id,
            "startTime": "2025-10-30T14:00:00Z",
            "title": "Strategy Call",
        },
        "contactId": "contact_1",
        "email": "lead@example.com",
        "full_name": "Lee Lead",
    }
    payload.update(overrides)
    return payload


async def count(db, model, *where):
    return (await db.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


async def load_appointment(db, company, external_id):
    stmt = select(Appointment).where(Appointment.company_id == company.id, Appointment.external_id == external_id)
    appointment = (await db.execute(stmt)).scalar_one()
    await db.refresh(appointment)
    return appointment


@pytest.mark.asyncio
async def test_same_delivery_twice_creates_one_appointment(client, db, factory, unsigned):
    company = await factory.company()
    body = appointment_payload(company)

    first = await client.post(URL, json=body)
    second = await client.post(URL, json=body)

    assert first.status_code == 200, first.text
    assert first.json()["status"] == "created"
    assert second.json()["status"] == "duplicate"
    assert first.json()["appointment_id"] == second.json()["appointment_id"]

    assert await count(db, Appointment, Appointment.company_id == company.id) == 1
    assert await count(db, Contact, Contact.company_id == company.id) == 1
    # every delivery is logged, processed or not
    assert await count(db, WebhookEvent, WebhookEvent.company_id == company.id) == 2


@pytest.mark.asyncio
async def test_events_are_marked_processed(client, db, factory, unsigned):
    company = await factory.company()
    await client.post(URL, json=appointment_payload(company))

    event = (await db.execute(select(WebhookEvent))).scalar_one()
    assert event.processed is True
    assert event.error is None
    assert event.event_type == "AppointmentCreate"
    assert event.payload["appointment"]["id"] == "appt_1"


@pytest.mark.asyncio
async def test_cancel_before_create_is_terminal(client, db, factory, unsigned):
    company = await factory.company()

    cancelled = await client.post(URL, json=appointment_payload(company, type="AppointmentCancel"))
    assert cancelled.json()["status"] == "cancelled"

    late_create = await client.post(URL, json=appointment_payload(company))
    assert late_create.json()["status"] == "duplicate"

    update = await client.post(URL, json=appointment_payload(company, type="AppointmentUpdate"))
    assert update.json()["status"] == "ignored"

    appointment = await load_appointment(db, company, "appt_1")
    assert appointment.status == "cancelled"
    assert appointment.outcome == "cancelled"
    assert appointment.pcn_submitted is True
    assert appointment.pcn_submitted_at is not None


@pytest.mark.asyncio
async def test_cancel_of_known_appointment_stamps_submission(client, db, factory, unsigned):
    company = await factory.company()
    await client.post(URL, json=appointment_payload(company))

    response = await client.post(URL, json=appointment_payload(company, type="AppointmentCancel"))
    assert response.json()["status"] == "cancelled"

    appointment = await load_appointment(db, company, "appt_1")
    assert appointment.pcn_submitted is True
    assert appointment.pcn_submitted_at is not None


@pytest.mark.asyncio
async def test_reschedule_counts_and_moves_time(client, db, factory, unsigned):
    company = await factory.company()
    await client.post(URL, json=appointment_payload(company))

    moved = appointment_payload(company, type="AppointmentRescheduled")
    moved["appointment"] = {**moved["appointment"], "startTime": "2025-11-02T16:00:00Z"}
    response = await client.post(URL, json=moved)
    assert response.json()["status"] == "rescheduled"

    appointment = await load_appointment(db, company, "appt_1")
    assert appointment.reschedule_count == 1
    assert appointment.scheduled_at.isoformat().startswith("2025-11-02T16:00:00")


@pytest.mark.asyncio
async def test_replayed_reschedule_counts_once(client, db, factory, unsigned):
    company = await factory.company()
    await client.post(URL, json=appointment_payload(company))

    moved = appointment_payload(company, type="AppointmentRescheduled")
    moved["appointment"] = {**moved["appointment"], "startTime": "2025-11-02T16:00:00Z"}
    await client.post(URL, json=moved)
    await client.post(URL, json=moved)

    appointment = await load_appointment(db, company, "appt_1")
    assert appointment.reschedule_count == 1


@pytest.mark.asyncio
async def test_late_create_does_not_undo_reschedule(client, db, factory, unsigned):
    company = await factory.company()

    moved = appointment_payload(company, type="AppointmentRescheduled")
    moved["appointment"] = {**moved["appointment"], "startTime": "2025-11-02T16:00:00Z"}
    await client.post(URL, json=moved)

    late_create = await client.post(URL, json=appointment_payload(company))
    assert late_create.json()["status"] == "duplicate"

    appointment = await load_appointment(db, company, "appt_1")
    assert appointment.scheduled_at.isoformat().startswith("2025-11-02T16:00:00")


@pytest.mark.asyncio
async def test_submitted_pcn_is_not_overwritten_by_cancel(client, db, factory, unsigned):
    company = await factory.company()
    await factory.appointment(company, external_id="appt_done", status="signed", pcn_submitted=True)

    response = await client.post(URL, json=appointment_payload(company, external_id="appt_done", type="AppointmentCancel"))
    assert response.json()["status"] == "ignored"

    appointment = await load_appointment(db, company, "appt_done")
    assert appointment.status == "signed"


@pytest.mark.asyncio
async def test_unknown_tenant_is_acknowledged_with_error(client, db, unsigned):
    response = await client.post(URL, json={"type": "AppointmentCreate", "locationId": "nowhere", "appointmentId": "a"})
    assert response.status_code == 200
    assert response.json()["error"] == "TENANT_UNRESOLVED"

    event = (await db.execute(select(WebhookEvent))).scalar_one()
    assert event.processed is True
    assert event.error.startswith("TENANT_UNRESOLVED")


@pytest.mark.asyncio
async def test_location_wins_over_shared_agency_id(client, db, factory, unsigned):
    owner = await factory.company(ghl_location_id="loc_A")
    sibling = await factory.company(ghl_location_id="loc_B", ghl_account_id="agency_X")

    body = appointment_payload(owner, companyId="agency_X", accountId="agency_X")
    response = await client.post(URL, json=body)
    assert response.json()["status"] == "created"

    assert await count(db, Appointment, Appointment.company_id == owner.id) == 1
    assert await count(db, Appointment, Appointment.company_id == sibling.id) == 0


@pytest.mark.asyncio
async def test_shared_account_id_without_location_is_unresolved(client, db, factory, unsigned):
    await factory.company(ghl_account_id="agency_X")
    await factory.company(ghl_account_id="agency_X")
    solo = await factory.company(ghl_account_id="acct_solo")

    shared = await client.post(URL, json={"type": "AppointmentCreate", "accountId": "agency_X", "appointmentId": "a1"})
    assert shared.json()["error"] == "TENANT_UNRESOLVED"

    unique = await client.post(URL, json={"type": "AppointmentCreate", "accountId": "acct_solo", "appointmentId": "a2"})
    assert unique.json()["status"] == "created"
    assert await count(db, Appointment, Appointment.company_id == solo.id) == 1


@pytest.mark.asyncio
async def test_missing_appointment_id_is_recorded_not_raised(client, db, factory, unsigned):
    company = await factory.company()
    response = await client.post(URL, json={"type": "AppointmentCreate", "locationId": company.ghl_location_id})

    assert response.status_code == 200
    assert response.json()["error"] == "PAYLOAD_MALFORMED"
    assert await count(db, Appointment) == 0


@pytest.mark.asyncio
async def test_unrouted_event_type_is_ignored(client, factory, unsigned):
    company = await factory.company()
    response = await client.post(URL, json={"type": "ContactTagUpdate", "locationId": company.ghl_location_id})
    assert response.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_malformed_body_is_logged(client, db, unsigned):
    response = await client.post(URL, content=b"{broken", headers={"content-type": "application/json"})
    assert response.status_code == 200
    assert response.json()["error"] == "PAYLOAD_MALFORMED"

    event = (await db.execute(select(WebhookEvent))).scalar_one()
    assert event.event_type == "malformed"
    assert event.raw_body == "{broken"


@pytest.mark.asyncio
async def test_signed_delivery(client, db, factory, monkeypatch):
    monkeypatch.setattr(settings, "GHL_WEBHOOK_SECRET", "whsec_test")
    company = await factory.company()
    raw = json.dumps(appointment_payload(company)).encode()
    ts = str(int(time.time()))
    signature = compute_signature("whsec_test", ts.encode() + b"." + raw)

    ok = await client.post(URL, content=raw, headers={"x-ghl-signature": signature, "x-ghl-timestamp": ts})
    assert ok.status_code == 200
    assert ok.json()["status"] == "created"

    bad = await client.post(URL, content=raw, headers={"x-ghl-signature": "0" * 64, "x-ghl-timestamp": ts})
    assert bad.status_code == 401
    # rejected deliveries are not logged
    assert await count(db, WebhookEvent) == 1
