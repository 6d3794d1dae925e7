# tests/test_recording_analysis.py
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.core.config import settings
from app.core.errors import PayloadMalformed, SignatureInvalid
from app.core.recording_analysis import (
    analyze_recording,
    parse_recording,
    set_pcn_drafter,
    transcript_file,
    url_validation_response,
)
from app.core.webhook_signature import zoom_url_validation_token
from app.models.pcn_changelog import PCNChangelog
from app.schemas.pcn import PCNSubmission

START = datetime(2025, 10, 30, 14, 0, tzinfo=timezone.utc)


def recording_body(meeting_id="987654321", **obj):
    values = {
        "id": meeting_id,
        "topic": "Strategy Call",
        "host_email": "Closer@Example.com",
        "start_time": "2025-10-30T14:05:00Z",
        "recording_files": [
            {"file_type": "MP4", "download_url": "https://zoom.example/video"},
            {"file_type": "TRANSCRIPT", "download_url": "https://zoom.example/transcript"},
        ],
    }
    values.update(obj)
    return {"event": "recording.completed", "payload": {"account_id": "acct_1", "object": values}, "download_token": "tok"}


# -----------------------------
# Parsing
# -----------------------------
def test_transcript_file_by_type_or_extension():
    assert transcript_file([{"file_type": "transcript", "download_url": "a"}])["download_url"] == "a"
    assert transcript_file([{"file_extension": "VTT", "download_url": "b"}])["download_url"] == "b"
    assert transcript_file([{"file_type": "MP4"}]) is None
    assert transcript_file(None) is None


def test_parse_recording():
    company_id = uuid.uuid4()
    context = parse_recording(company_id, recording_body())
    assert context.company_id == company_id
    assert context.meeting_id == "987654321"
    assert context.host_email == "closer@example.com"
    assert context.start_time == START + timedelta(minutes=5)
    assert context.transcript_url == "https://zoom.example/transcript"
    assert context.download_token == "tok"


def test_recording_without_meeting_id_is_malformed():
    with pytest.raises(PayloadMalformed):
        parse_recording(uuid.uuid4(), {"payload": {"object": {"topic": "x"}}})


def test_url_validation_challenge(monkeypatch):
    monkeypatch.setattr(settings, "ZOOM_WEBHOOK_SECRET", "zoom-secret")
    response = url_validation_response({"event": "endpoint.url_validation", "payload": {"plainToken": "abc"}})
    assert response == {"plainToken": "abc", "encryptedToken": zoom_url_validation_token("abc", secret="zoom-secret")}


def test_url_validation_needs_configured_secret(monkeypatch):
    monkeypatch.setattr(settings, "ZOOM_WEBHOOK_SECRET", "")
    with pytest.raises(SignatureInvalid):
        url_validation_response({"payload": {"plainToken": "abc"}})


# -----------------------------
# Drafting
# -----------------------------
async def draft_signed(context):
    assert context.appointment is not None
    return PCNSubmission(call_outcome="signed", cash_collected="2500", notes=f"From {context.meeting_id}")


@pytest.mark.asyncio
async def test_recording_matched_by_host_is_drafted(db, factory):
    company = await factory.company(pcn_auto_submit_sources=[])
    closer = await factory.user(company, email="closer@example.com")
    appointment = await factory.appointment(company, closer=closer, scheduled_at=START)

    result = await analyze_recording(db, parse_recording(company.id, recording_body()), drafter=draft_signed)
    await db.commit()

    assert result["status"] == "drafted"
    await db.refresh(appointment)
    assert appointment.zoom_meeting_id == "987654321"
    assert appointment.pcn_submitted is False
    assert appointment.pcn_candidate["call_outcome"] == "signed"
    assert appointment.pcn_candidate_source == "ai"

    entry = (await db.execute(select(PCNChangelog))).scalar_one()
    assert entry.action == "drafted"
    assert entry.actor_name == "AI Transcript Analyzer"


@pytest.mark.asyncio
async def test_opted_in_ai_submits_directly(db, factory):
    company = await factory.company(pcn_auto_submit_sources=["ai"])
    appointment = await factory.appointment(company, title="Strategy Call", scheduled_at=START)

    result = await analyze_recording(db, parse_recording(company.id, recording_body()), drafter=draft_signed)
    await db.commit()

    assert result["status"] == "submitted"
    await db.refresh(appointment)
    assert appointment.status == "signed"
    assert appointment.pcn_submitted is True


@pytest.mark.asyncio
async def test_recording_outside_window_is_unmatched(db, factory):
    company = await factory.company()
    closer = await factory.user(company, email="closer@example.com")
    await factory.appointment(company, closer=closer, scheduled_at=START - timedelta(hours=5))

    result = await analyze_recording(db, parse_recording(company.id, recording_body()), drafter=draft_signed)
    assert result == {"status": "unmatched"}


@pytest.mark.asyncio
async def test_submitted_appointment_is_skipped(db, factory):
    company = await factory.company()
    await factory.appointment(company, zoom_meeting_id="987654321", status="no_show", pcn_submitted=True)

    result = await analyze_recording(db, parse_recording(company.id, recording_body()), drafter=draft_signed)
    assert result["status"] == "skipped"


@pytest.mark.asyncio
async def test_default_drafter_drafts_nothing(db, factory):
    company = await factory.company()
    await factory.appointment(company, zoom_meeting_id="987654321")

    result = await analyze_recording(db, parse_recording(company.id, recording_body()))
    assert result["status"] == "no_draft"


@pytest.mark.asyncio
async def test_installed_drafter_is_used(db, factory):
    company = await factory.company(pcn_auto_submit_sources=[])
    await factory.appointment(company, zoom_meeting_id="987654321")

    set_pcn_drafter(draft_signed)
    try:
        result = await analyze_recording(db, parse_recording(company.id, recording_body()))
    finally:
        set_pcn_drafter(None)
    assert result["status"] == "drafted"
