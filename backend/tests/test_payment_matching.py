# tests/test_payment_matching.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.errors import PayloadMalformed
from app.core.payment_matching import (
    IncomingPayment,
    best_candidate,
    match_confidence,
    name_similarity,
    score_suggestion,
    signals_for,
)
from app.core.payment_webhooks import (
    cents_to_amount,
    normalize_payment_type,
    parse_generic_payment,
    parse_whop_payment,
    payment_company_ref,
)
from app.models.appointment import Appointment
from app.models.contact import Contact

NOW = datetime(2025, 11, 1, 12, 0, tzinfo=timezone.utc)


def make_payment(**kwargs) -> IncomingPayment:
    values = {"processor": "stripe", "external_id": "pi_1", "amount": Decimal("1500.00")}
    values.update(kwargs)
    return IncomingPayment(**values)


def make_contact(email=None, name=None, phone=None) -> Contact:
    contact = Contact(email=email, name=name)
    contact.set_phone(phone)
    return contact


# -----------------------------
# Confidence
# -----------------------------
@pytest.mark.parametrize(
    "signals,closer,expected",
    [
        ({"hint"}, False, 1.0),
        ({"email"}, False, 0.9),
        ({"email", "phone"}, False, 0.95),
        ({"email"}, True, 0.95),
        ({"email", "phone"}, True, 0.95),
        ({"phone"}, False, 0.85),
        ({"phone", "name"}, False, 0.9),
        ({"name"}, False, 0.5),
        ({"name"}, True, 0.55),
        (set(), False, 0.0),
    ],
)
def test_match_confidence(signals, closer, expected):
    assert match_confidence(signals, closer_agrees=closer) == pytest.approx(expected)


def test_only_a_hint_reaches_full_confidence():
    assert match_confidence({"email", "phone", "name"}, closer_agrees=True) < 1.0


def test_signals_compare_normalized_contact_keys():
    contact = make_contact(email="lead@example.com", name="Lee Lead", phone="(555) 010-2000")
    payment = make_payment(customer_email="LEAD@example.com ", customer_phone="555.010.2000", customer_name="lee lead")
    assert signals_for(payment, contact) == {"email", "phone", "name"}
    assert signals_for(make_payment(customer_email="other@example.com"), contact) == set()
    assert signals_for(payment, None) == set()


def test_name_only_match_stays_below_default_threshold():
    contact = make_contact(name="Lee Lead")
    confidence = match_confidence(signals_for(make_payment(customer_name="Lee Lead"), contact))
    assert confidence < 0.70



def test_strongest_candidate_beats_newest():
    newer = (Appointment(scheduled_at=NOW), make_contact(name="Lee Lead"))
    older = (Appointment(scheduled_at=NOW - timedelta(days=20)), make_contact(email="lead@example.com", name="Lee Lead"))
    payment = make_payment(customer_email="lead@example.com", customer_name="Lee Lead")

    appointment, contact, confidence = best_candidate(payment, [newer, older])
    assert appointment is older[0]
    assert confidence == pytest.approx(0.9)


def test_equal_candidates_keep_newest():
    newer = (Appointment(scheduled_at=NOW), make_contact(email="lead@example.com"))
    older = (Appointment(scheduled_at=NOW - timedelta(days=2)), make_contact(email="lead@example.com"))
    assert best_candidate(make_payment(customer_email="lead@example.com"), [newer, older])[0] is newer[0]
    assert best_candidate(make_payment(), []) is None

# -----------------------------
# Suggestions
# -----------------------------
def test_suggestion_score_combines_signals():
    contact = make_contact(email="lead@example.com", name="Lee Lead")
    appointment = Appointment(cash_collected=Decimal("1500.00"), scheduled_at=NOW - timedelta(days=2))
    payment = make_payment(customer_email="lead@example.com", customer_name="Lee Lead")

    score, reasons = score_suggestion(payment, appointment, contact, now=NOW)
    assert score == pytest.approx(0.95)
    assert "Name matches" in reasons
    assert "Email matches" in reasons
    assert "Amount matches" in reasons
    assert "Appointment within 7 days" in reasons


def test_suggestion_with_nothing_in_common_scores_zero():
    contact = make_contact(email="someone@example.com", name="Zed Quux")
    appointment = Appointment(cash_collected=None, scheduled_at=NOW - timedelta(days=90))
    payment = make_payment(customer_email="lead@example.com", customer_name="Ann Buyer")

    score, reasons = score_suggestion(payment, appointment, contact, now=NOW)
    assert score < 0.2
    assert "Email matches" not in reasons


def test_name_similarity():
    assert name_similarity("Lee Lead", "lee lead") == 1.0
    assert name_similarity(None, "x") == 0.0
    assert 0.5 < name_similarity("Jon Smith", "John Smith") < 1.0


# -----------------------------
# Payment payloads
# -----------------------------
def test_generic_payment_payload():
    payment = parse_generic_payment(
        {
            "processor": "Stripe",
            "paymentId": "pi_123",
            "amount": "$1,500",
            "customerEmail": "Lead@Example.com",
            "customerName": "Lee Lead",
            "closerEmail": "closer@example.com",
            "paymentType": "payment-plan",
            "totalAmount": 6000,
            "metadata": {"appointmentId": "appt_1"},
        }
    )
    assert payment.processor == "stripe"
    assert payment.external_id == "pi_123"
    assert payment.amount == Decimal("1500.00")
    assert payment.customer_email == "lead@example.com"
    assert payment.appointment_hint == "appt_1"
    assert payment.payment_type == "payment_plan"
    assert payment.total_amount == Decimal("6000.00")
    assert payment.currency == "USD"


def test_generic_payment_requires_core_fields():
    with pytest.raises(PayloadMalformed) as exc:
        parse_generic_payment({"processor": "stripe", "amount": 10})
    assert set(exc.value.details["missing"]) == {"paymentId", "customerEmail"}


def test_whop_amounts_arrive_in_cents():
    payment = parse_whop_payment(
        {
            "type": "payment.succeeded",
            "data": {
                "id": "pay_1",
                "amount": 150000,
                "customer_email": "lead@example.com",
                "metadata": {"closerEmail": "Closer@Example.com", "appointmentId": "appt_9"},
            },
        }
    )
    assert payment.processor == "whop"
    assert payment.amount == Decimal("1500.00")
    assert payment.closer_email == "closer@example.com"
    assert payment.appointment_hint == "appt_9"


def test_whop_payment_requires_id_and_amount():
    with pytest.raises(PayloadMalformed):
        parse_whop_payment({"data": {"amount": 100}})


def test_payment_helpers():
    assert cents_to_amount(1999) == Decimal("19.99")
    assert cents_to_amount(None) is None
    assert normalize_payment_type("Installments") == "payment_plan"
    assert normalize_payment_type(None) == "paid_in_full"
    assert payment_company_ref({"metadata": {"companyId": "c1"}}) == "c1"
    assert payment_company_ref({"company_id": "c2", "metadata": {"companyId": "c1"}}) == "c2"
    assert payment_company_ref({}) is None
