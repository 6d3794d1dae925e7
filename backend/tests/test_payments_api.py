# tests/test_payments_api.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.core.config import settings
from app.models.commission import Commission
from app.models.sale import Sale
from app.models.unmatched_payment import UnmatchedPayment

URL = "/api/v1/webhooks/payments"
SECRET = "pay-secret"
HEADERS = {"x-webhook-secret": SECRET}


@pytest.fixture(autouse=True)
def payment_secret(monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", SECRET)


def payment(payment_id="pi_1", amount=1500, email="lead@example.com", **extra):
    body = {"processor": "stripe", "paymentId": payment_id, "amount": amount, "customerEmail": email}
    body.update(extra)
    return body


async def count(db, model, *where):
    return (await db.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


async def booked(factory, *, email="lead@example.com", rate="0.10"):
    company = await factory.company()
    closer = await factory.user(company, custom_commission_rate=Decimal(rate))
    contact = await factory.contact(company, email=email, name="Lee Lead")
    appointment = await factory.appointment(company, contact=contact, closer=closer)
    return company, closer, contact, appointment


# -----------------------------
# Ingestion
# -----------------------------
@pytest.mark.asyncio
async def test_hint_matches_and_books_commission(client, db, factory):
    company, closer, _, appointment = await booked(factory)

    response = await client.post(URL, json=payment(metadata={"appointmentId": str(appointment.id)}), headers=HEADERS)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["status"] == "matched"
    assert body["confidence"] == 1.0
    assert body["appointment_id"] == str(appointment.id)

    commission = (await db.execute(select(Commission))).scalar_one()
    assert commission.rep_id == closer.id
    assert commission.total_amount == Decimal("150.00")
    assert commission.released_amount == Decimal("150.00")
    assert commission.release_status == "released"


@pytest.mark.asyncio
async def test_duplicate_delivery_records_one_sale(client, db, factory):
    company, *_ = await booked(factory)
    body = payment(companyId=str(company.id))

    first = await client.post(URL, json=body, headers=HEADERS)
    second = await client.post(URL, json=body, headers=HEADERS)

    assert first.json()["status"] == "matched"
    assert second.json()["status"] == "duplicate"
    assert second.json()["sale_id"] == first.json()["sale_id"]
    assert await count(db, Sale) == 1
    assert await count(db, Commission) == 1


@pytest.mark.asyncio
async def test_email_match_is_automatic(client, db, factory):
    company, _, _, appointment = await booked(factory)

    response = await client.post(URL, json=payment(companyId=str(company.id), email="LEAD@example.com"), headers=HEADERS)
    body = response.json()
    assert body["status"] == "matched"
    assert body["appointment_id"] == str(appointment.id)
    assert body["confidence"] == pytest.approx(0.9)

    sale = (await db.execute(select(Sale))).scalar_one()
    assert sale.matched_by == "auto"


@pytest.mark.asyncio
async def test_older_email_match_beats_newer_name_match(client, db, factory):
    company = await factory.company()
    closer = await factory.user(company)
    paying = await factory.contact(company, email="lead@example.com", name="Alex Smith")
    namesake = await factory.contact(company, email="other@example.com", name="Alex Smith")
    older = await factory.appointment(company, contact=paying, closer=closer, scheduled_at=datetime(2025, 10, 1, tzinfo=timezone.utc))
    await factory.appointment(company, contact=namesake, closer=closer, scheduled_at=datetime(2025, 10, 20, tzinfo=timezone.utc))

    response = await client.post(
        URL, json=payment(companyId=str(company.id), customerName="Alex Smith"), headers=HEADERS
    )
    body = response.json()
    assert body["status"] == "matched"
    assert body["appointment_id"] == str(older.id)
    assert await count(db, UnmatchedPayment) == 0


@pytest.mark.asyncio
async def test_name_only_is_left_for_review(client, db, factory):
    company, *_ = await booked(factory)

    response = await client.post(
        URL,
        json=payment(companyId=str(company.id), email="someone-else@example.com", customerName="Lee Lead"),
        headers=HEADERS,
    )
    assert response.json()["status"] == "unmatched"
    assert await count(db, Commission) == 0
    assert await count(db, UnmatchedPayment) == 1


@pytest.mark.asyncio
async def test_unknown_closer_is_ignored(client, db, factory):
    company, *_ = await booked(factory)
    response = await client.post(
        URL, json=payment(companyId=str(company.id), closerEmail="ghost@example.com"), headers=HEADERS
    )
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    assert await count(db, Sale) == 0


@pytest.mark.asyncio
async def test_tenant_from_unique_closer_email(client, factory):
    company, closer, _, appointment = await booked(factory)
    response = await client.post(URL, json=payment(closerEmail=closer.email), headers=HEADERS)
    body = response.json()
    assert body["status"] == "matched"
    assert body["appointment_id"] == str(appointment.id)
    assert body["confidence"] == pytest.approx(0.95)


@pytest.mark.asyncio
async def test_unresolvable_tenant_is_acknowledged(client, db):
    response = await client.post(URL, json=payment(), headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["error"] == "TENANT_UNRESOLVED"
    assert await count(db, Sale) == 0


@pytest.mark.asyncio
async def test_missing_fields_are_acknowledged(client):
    response = await client.post(URL, json={"processor": "stripe"}, headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["error"] == "PAYLOAD_MALFORMED"


@pytest.mark.asyncio
async def test_wrong_secret_is_rejected(client, db):
    response = await client.post(URL, json=payment(), headers={"x-webhook-secret": "nope"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_installments_advance_plan_commission(client, db, factory):
    company, _, _, appointment = await booked(factory)
    plan = {"paymentType": "payment_plan", "totalAmount": 6000, "metadata": {"appointmentId": str(appointment.id)}}

    first = await client.post(URL, json=payment("pi_1", 1000, **plan), headers=HEADERS)
    assert first.json()["status"] == "matched"

    commission = (await db.execute(select(Commission))).scalar_one()
    assert commission.total_amount == Decimal("600.00")
    assert commission.released_amount == Decimal("100.00")
    assert commission.release_status == "partial"

    second = await client.post(URL, json=payment("pi_2", 1000, **plan), headers=HEADERS)
    assert second.json()["status"] == "installment"

    await db.refresh(commission)
    assert commission.released_amount == Decimal("200.00")
    assert await count(db, Commission) == 1

    installment = (await db.execute(select(Sale).where(Sale.external_id == "pi_2"))).scalar_one()
    assert installment.plan_sale_id is not None


# -----------------------------
# Whop
# -----------------------------
@pytest.mark.asyncio
async def test_whop_payment_in_cents(client, db, factory):
    company = await factory.company(processor_account_secret="whop-secret")
    closer = await factory.user(company, custom_commission_rate=Decimal("0.10"))
    appointment = await factory.appointment(company, closer=closer, external_id="appt_whop")
    body = {
        "type": "payment.succeeded",
        "data": {"id": "pay_1", "amount": 150000, "metadata": {"appointmentId": "appt_whop"}},
    }

    response = await client.post(
        "/api/v1/webhooks/whop", params={"company": str(company.id), "secret": "whop-secret"}, json=body
    )
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "matched"

    sale = (await db.execute(select(Sale))).scalar_one()
    assert sale.processor == "whop"
    assert sale.amount == Decimal("1500.00")
    assert sale.appointment_id == appointment.id


@pytest.mark.asyncio
async def test_whop_rejects_bad_pair(client, factory):
    company = await factory.company(processor_account_secret="whop-secret")
    response = await client.post(
        "/api/v1/webhooks/whop", params={"company": str(company.id), "secret": "wrong"}, json={"type": "payment.succeeded"}
    )
    assert response.status_code == 401


# -----------------------------
# Review queue
# -----------------------------
@pytest.mark.asyncio
async def test_manual_match_from_review_queue(client, db, factory, headers_for):
    company, closer, _, appointment = await booked(factory)
    admin = await factory.user(company, role="admin")

    await client.post(URL, json=payment(companyId=str(company.id), email="stranger@example.com"), headers=HEADERS)

    queue = await client.get("/api/v1/payments/unmatched", headers=headers_for(admin))
    assert queue.status_code == 200
    page = queue.json()
    assert page["total"] == 1
    unmatched_id = page["items"][0]["id"]
    assert page["items"][0]["sale"]["customer_email"] == "stranger@example.com"

    matched = await client.post(
        f"/api/v1/payments/unmatched/{unmatched_id}/match",
        json={"appointment_id": appointment.external_id},
        headers=headers_for(admin),
    )
    assert matched.status_code == 200, matched.text
    assert matched.json()["status"] == "matched"
    assert matched.json()["confidence"] == 1.0

    sale = (await db.execute(select(Sale))).scalar_one()
    assert sale.manually_matched is True
    assert sale.matched_by == "manual"
    assert sale.matched_by_user_id == admin.id
    commission = (await db.execute(select(Commission))).scalar_one()
    assert commission.rep_id == closer.id

    again = await client.post(
        f"/api/v1/payments/unmatched/{unmatched_id}/match",
        json={"appointment_id": appointment.external_id},
        headers=headers_for(admin),
    )
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_review_queue_is_admin_only(client, factory, headers_for):
    company = await factory.company()
    closer = await factory.user(company)
    response = await client.get("/api/v1/payments/unmatched", headers=headers_for(closer))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_signed_pcn_claims_pending_payment(client, db, factory, headers_for):
    company, closer, _, appointment = await booked(factory)
    await client.post(URL, json=payment(companyId=str(company.id), email="later@example.com"), headers=HEADERS)

    other_contact = await factory.contact(company, email="later@example.com", name="Late Lead")
    signed_appointment = await factory.appointment(company, contact=other_contact, closer=closer)

    response = await client.post(
        f"/api/v1/appointments/{signed_appointment.id}/pcn",
        json={"callOutcome": "signed", "cashCollected": 1500, "paymentPlanOrPif": "paid_in_full"},
        headers=headers_for(closer),
    )
    assert response.status_code == 200, response.text
    assert response.json()["linked_sale_id"] is not None

    unmatched = (await db.execute(select(UnmatchedPayment))).scalar_one()
    assert unmatched.status == "matched"
    sale = (await db.execute(select(Sale))).scalar_one()
    assert sale.appointment_id == signed_appointment.id


@pytest.mark.asyncio
async def test_bulk_match_reports_each_pair(client, db, factory, headers_for):
    company, closer, _, appointment = await booked(factory)
    admin = await factory.user(company, role="admin")

    await client.post(URL, json=payment("pi_a", companyId=str(company.id), email="a@example.com"), headers=HEADERS)
    await client.post(URL, json=payment("pi_b", companyId=str(company.id), email="b@example.com"), headers=HEADERS)
    queue = (await client.get("/api/v1/payments/unmatched", headers=headers_for(admin))).json()
    first, second = [item["id"] for item in queue["items"]]

    response = await client.post(
        "/api/v1/payments/unmatched/bulk-match",
        json={
            "matches": [
                {"paymentId": first, "appointmentId": str(appointment.id)},
                {"paymentId": second, "appointmentId": "appt_missing"},
            ]
        },
        headers=headers_for(admin),
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["matched"] == 1
    assert body["failed"] == 1
    assert body["results"][0] == {"paymentId": first, "success": True, "error": None}
    assert body["results"][1]["error"] == "Appointment not found"

    assert await count(db, Commission) == 1
    statuses = {str(u.id): u.status for u in (await db.execute(select(UnmatchedPayment))).scalars()}
    assert statuses == {first: "matched", second: "pending"}

    again = await client.post(
        "/api/v1/payments/unmatched/bulk-match",
        json={"matches": [{"paymentId": first, "appointmentId": str(appointment.id)}]},
        headers=headers_for(admin),
    )
    assert again.json()["results"][0]["error"] == "Payment already matched"


@pytest.mark.asyncio
async def test_bulk_match_needs_pairs_and_admin(client, factory, headers_for):
    company = await factory.company()
    admin = await factory.user(company, role="admin")
    closer = await factory.user(company)

    empty = await client.post("/api/v1/payments/unmatched/bulk-match", json={"matches": []}, headers=headers_for(admin))
    assert empty.status_code == 422

    pair = {"paymentId": str(uuid.uuid4()), "appointmentId": "appt_1"}
    forbidden = await client.post(
        "/api/v1/payments/unmatched/bulk-match", json={"matches": [pair]}, headers=headers_for(closer)
    )
    assert forbidden.status_code == 403
