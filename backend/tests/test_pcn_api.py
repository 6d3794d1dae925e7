# tests/test_pcn_api.py
from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models.appointment import Appointment
from app.models.pcn_changelog import PCNChangelog

SURVEY_URL = "/api/v1/webhooks/ghl/pcn-survey"


async def changelog(db, appointment):
    stmt = (
        select(PCNChangelog)
        .where(PCNChangelog.appointment_id == appointment.id)
        .order_by(PCNChangelog.created_at.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


# -----------------------------
# Survey webhook
# -----------------------------
@pytest.mark.asyncio
async def test_survey_submits_signed_pcn(client, db, factory):
    company = await factory.company()
    appointment = await factory.appointment(company, external_id="appt_survey")

    response = await client.post(
        SURVEY_URL,
        params={"company": str(company.id), "secret": "survey-secret"},
        json={"appointmentId": "appt_survey", "PCN - Call Outcome": "Signed", "PCN - Cash Collected": "$1,500"},
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["status"] == "submitted"
    assert body["appointment_status"] == "signed"
    assert body["pcn_submitted"] is True

    await db.refresh(appointment)
    assert appointment.status == "signed"
    assert appointment.cash_collected == Decimal("1500.00")
    assert appointment.pcn_submitted is True

    entries = await changelog(db, appointment)
    assert [e.action for e in entries] == ["submitted"]
    assert entries[0].source == "survey"
    assert entries[0].actor_name == "GHL Survey Automation"


@pytest.mark.asyncio
async def test_survey_resubmission_is_recorded_not_applied(client, db, factory):
    company = await factory.company()
    appointment = await factory.appointment(company, external_id="appt_twice")
    params = {"company": str(company.id), "secret": "survey-secret"}

    await client.post(SURVEY_URL, params=params, json={"appointmentId": "appt_twice", "outcome": "no show"})
    second = await client.post(SURVEY_URL, params=params, json={"appointmentId": "appt_twice", "outcome": "signed"})

    assert second.status_code == 200
    assert second.json()["error"] == "ALREADY_PROCESSED"
    await db.refresh(appointment)
    assert appointment.status == "no_show"
    assert len(await changelog(db, appointment)) == 1


@pytest.mark.asyncio
async def test_survey_drafts_when_source_not_opted_in(client, db, factory):
    company = await factory.company(pcn_auto_submit_sources=[])
    appointment = await factory.appointment(company, external_id="appt_draft")

    response = await client.post(
        SURVEY_URL,
        params={"company": str(company.id), "secret": "survey-secret"},
        json={"appointmentId": "appt_draft", "outcome": "showed"},
    )
    assert response.json()["status"] == "drafted"

    await db.refresh(appointment)
    assert appointment.status == "scheduled"
    assert appointment.pcn_submitted is False
    assert appointment.pcn_candidate["call_outcome"] == "showed"
    assert appointment.pcn_candidate_source == "survey"


@pytest.mark.asyncio
async def test_survey_authentication(client, factory):
    company = await factory.company()
    body = {"appointmentId": "x", "outcome": "signed"}

    wrong = await client.post(SURVEY_URL, params={"company": str(company.id), "secret": "nope"}, json=body)
    assert wrong.status_code == 401

    missing = await client.post(SURVEY_URL, params={"company": str(company.id)}, json=body)
    assert missing.status_code == 401

    unknown = await client.post(
        SURVEY_URL,
        params={"company": "00000000-0000-0000-0000-000000000000", "secret": "survey-secret"},
        json=body,
    )
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_survey_with_unknown_outcome_is_acknowledged(client, db, factory):
    company = await factory.company()
    appointment = await factory.appointment(company, external_id="appt_bad")

    response = await client.post(
        SURVEY_URL,
        params={"company": str(company.id), "secret": "survey-secret"},
        json={"appointmentId": "appt_bad", "outcome": "maybe"},
    )
    assert response.status_code == 200
    assert response.json()["error"] == "UNSUPPORTED_OUTCOME"
    await db.refresh(appointment)
    assert appointment.pcn_submitted is False


# -----------------------------
# Manual submission
# -----------------------------
@pytest.mark.asyncio
async def test_manual_pcn_is_strict_and_single_shot(client, db, factory, headers_for):
    company = await factory.company()
    closer = await factory.user(company)
    appointment = await factory.appointment(company, closer=closer)
    url = f"/api/v1/appointments/{appointment.id}/pcn"

    incomplete = await client.post(url, json={"callOutcome": "showed"}, headers=headers_for(closer))
    assert incomplete.status_code == 422
    assert incomplete.json()["detail"] == "Please indicate if this was a first call or follow-up"

    complete = {
        "callOutcome": "showed",
        "firstCallOrFollowUp": "first_call",
        "qualificationStatus": "disqualified",
        "disqualificationReason": "No budget",
    }
    ok = await client.post(url, json=complete, headers=headers_for(closer))
    assert ok.status_code == 200, ok.text
    assert ok.json()["status"] == "showed"
    assert ok.json()["action"] == "submitted"

    again = await client.post(url, json=complete, headers=headers_for(closer))
    assert again.status_code == 409

    await db.refresh(appointment)
    assert appointment.pcn_submitted_by_id == closer.id


@pytest.mark.asyncio
async def test_correction_rewrites_and_logs_changes(client, db, factory, headers_for):
    company = await factory.company()
    closer = await factory.user(company, name="Casey Closer")
    appointment = await factory.appointment(company, closer=closer)
    headers = headers_for(closer)

    early = await client.post(
        f"/api/v1/appointments/{appointment.id}/pcn/correct",
        json={"callOutcome": "no_show", "noShowCommunicative": "yes"},
        headers=headers,
    )
    assert early.status_code == 409

    await client.post(
        f"/api/v1/appointments/{appointment.id}/pcn",
        json={"callOutcome": "no_show", "noShowCommunicative": "no"},
        headers=headers,
    )
    fixed = await client.post(
        f"/api/v1/appointments/{appointment.id}/pcn/correct",
        json={"callOutcome": "cancelled", "cancellationReason": "Lead rescheduled", "reason": "wrong outcome"},
        headers=headers,
    )
    assert fixed.status_code == 200, fixed.text
    assert fixed.json()["action"] == "updated"

    log = await client.get(f"/api/v1/appointments/{appointment.id}/pcn/changelog", headers=headers)
    assert log.status_code == 200
    page = log.json()
    assert page["total"] == 2
    assert [item["action"] for item in page["items"]] == ["submitted", "updated"]
    update = page["items"][1]
    assert update["actor_name"] == "Casey Closer"
    assert update["notes"] == "wrong outcome"
    assert update["changes"]["status"] == {"from": "no_show", "to": "cancelled"}
    assert update["changes"]["no_show_communicative"] == {"from": "no", "to": None}


@pytest.mark.asyncio
async def test_other_tenants_appointments_are_invisible(client, factory, headers_for):
    mine = await factory.company()
    theirs = await factory.company()
    closer = await factory.user(mine)
    foreign = await factory.appointment(theirs)

    response = await client.post(
        f"/api/v1/appointments/{foreign.id}/pcn",
        json={"callOutcome": "no_show", "noShowCommunicative": "yes"},
        headers=headers_for(closer),
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_closers_only_edit_their_own_pcns(client, factory, headers_for):
    company = await factory.company()
    owner = await factory.user(company)
    other = await factory.user(company)
    admin = await factory.user(company, role="admin")
    appointment = await factory.appointment(company, closer=owner)
    body = {"callOutcome": "no_show", "noShowCommunicative": "yes"}

    foreign = await client.post(f"/api/v1/appointments/{appointment.id}/pcn", json=body, headers=headers_for(other))
    assert foreign.status_code == 403

    by_admin = await client.post(f"/api/v1/appointments/{appointment.id}/pcn", json=body, headers=headers_for(admin))
    assert by_admin.status_code == 200, by_admin.text

    correction = {"callOutcome": "cancelled", "cancellationReason": "Lead cancelled", "reason": "fix"}
    not_owner = await client.post(
        f"/api/v1/appointments/{appointment.id}/pcn/correct", json=correction, headers=headers_for(other)
    )
    assert not_owner.status_code == 403

    by_owner = await client.post(
        f"/api/v1/appointments/{appointment.id}/pcn/correct", json=correction, headers=headers_for(owner)
    )
    assert by_owner.status_code == 200, by_owner.text


# -----------------------------
# Drafts and review
# -----------------------------
@pytest.mark.asyncio
async def test_approve_draft_submits_it(client, db, factory, headers_for):
    company = await factory.company()
    admin = await factory.user(company, role="admin")
    appointment = await factory.appointment(company)
    headers = headers_for(admin)

    drafted = await client.post(
        f"/api/v1/appointments/{appointment.id}/pcn/draft",
        json={"callOutcome": "signed", "cashCollected": 900, "source": "ai"},
        headers=headers,
    )
    assert drafted.status_code == 201, drafted.text
    assert drafted.json()["status"] == "scheduled"

    queue = await client.get("/api/v1/pcn-review", headers=headers)
    assert queue.json()["total"] == 1
    assert queue.json()["items"][0]["candidate_source"] == "ai"

    approved = await client.post(
        "/api/v1/pcn-review",
        json={"appointmentId": str(appointment.id), "decision": "approve"},
        headers=headers,
    )
    assert approved.status_code == 200, approved.text
    assert approved.json()["action"] == "approved"
    assert approved.json()["status"] == "signed"

    await db.refresh(appointment)
    assert appointment.pcn_submitted is True
    assert appointment.pcn_candidate is None
    assert appointment.cash_collected == Decimal("900.00")
    assert [e.action for e in await changelog(db, appointment)] == ["drafted", "submitted", "approved"]

    empty = await client.get("/api/v1/pcn-review", headers=headers)
    assert empty.json()["total"] == 0


@pytest.mark.asyncio
async def test_reject_draft_requires_reason(client, db, factory, headers_for):
    company = await factory.company()
    admin = await factory.user(company, role="admin")
    appointment = await factory.appointment(company)
    headers = headers_for(admin)

    await client.post(
        f"/api/v1/appointments/{appointment.id}/pcn/draft",
        json={"callOutcome": "no_show", "source": "ai"},
        headers=headers,
    )
    no_reason = await client.post(
        "/api/v1/pcn-review",
        json={"appointmentId": str(appointment.id), "decision": "reject"},
        headers=headers,
    )
    assert no_reason.status_code == 422

    rejected = await client.post(
        "/api/v1/pcn-review",
        json={"appointmentId": str(appointment.id), "decision": "reject", "reason": "Lead did show"},
        headers=headers,
    )
    assert rejected.status_code == 200
    assert rejected.json()["action"] == "rejected"

    await db.refresh(appointment)
    assert appointment.pcn_candidate is None
    assert appointment.pcn_submitted is False
    assert appointment.status == "scheduled"


@pytest.mark.asyncio
async def test_review_requires_admin(client, factory, headers_for):
    company = await factory.company()
    closer = await factory.user(company)
    appointment = await factory.appointment(company)

    response = await client.post(
        f"/api/v1/appointments/{appointment.id}/pcn/draft",
        json={"callOutcome": "no_show", "source": "ai"},
        headers=headers_for(closer),
    )
    assert response.status_code == 403
