import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from app.main import app
from app.models import Booking, Notification, Payment, PaymentStatus, PSPWebhookEvent
from app.services.polling import OUTCOME_CONFIRMED, BookingPoller


def _bookings(db_session):
    return db_session.scalars(select(Booking)).all()


def _event_outcome(db_session, event_id):
    return db_session.scalars(
        select(PSPWebhookEvent.outcome).where(PSPWebhookEvent.event_id == event_id)
    ).one()


async def _deliver(client, payload, signature):
    return await client.post(
        "/psp/stripe/webhook",
        content=payload,
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


@pytest.mark.anyio
async def test_webhook_then_client_confirmation(client, db_session, storage_box, fake_gateway, make_event, stripe_signature):
    intent = fake_gateway.add("pi_order_wc", charge_id="ch_order_wc", receipt_email="wc@example.com")
    payload = make_event("payment_intent.succeeded", intent, event_id="evt_order_wc")

    webhook = await _deliver(client, payload, stripe_signature(payload))
    confirmation = await client.post("/payments/pi_order_wc/process-success")

    assert webhook.json()["processed"] is True
    assert _event_outcome(db_session, "evt_order_wc") == "booking_created"
    assert confirmation.status_code == 200
    assert confirmation.json()["created"] is False

    bookings = _bookings(db_session)
    assert len(bookings) == 1
    assert confirmation.json()["booking"]["id"] == bookings[0].id
    assert confirmation.json()["booking"]["lock_pin"] == bookings[0].lock_pin
    assert len(db_session.scalars(select(Notification)).all()) == 2


@pytest.mark.anyio
async def test_client_confirmation_then_webhook(client, db_session, storage_box, fake_gateway, make_event, stripe_signature):
    intent = fake_gateway.add("pi_order_cw", charge_id="ch_order_cw", receipt_email="cw@example.com")
    payload = make_event("payment_intent.succeeded", intent, event_id="evt_order_cw")

    confirmation = await client.post("/payments/pi_order_cw/process-success")
    webhook = await _deliver(client, payload, stripe_signature(payload))

    assert confirmation.json()["created"] is True
    assert webhook.status_code == 200
    assert webhook.json()["processed"] is True
    assert _event_outcome(db_session, "evt_order_cw") == "booking_exists"

    bookings = _bookings(db_session)
    assert len(bookings) == 1
    assert confirmation.json()["booking"]["id"] == bookings[0].id
    assert len(db_session.scalars(select(Notification)).all()) == 2


def test_poller_fallback_then_late_webhook(db_session, storage_box, fake_gateway, make_event, stripe_signature):
    intent = fake_gateway.add("pi_order_poll", charge_id="ch_order_poll", billing_email="poller@example.com")
    http = TestClient(app)

    with BookingPoller("http://testserver", max_attempts=2, client=http, sleep=lambda _: None) as poller:
        outcome = poller.poll("pi_order_poll")

    assert outcome.status == OUTCOME_CONFIRMED
    assert outcome.created is True
    booking = _bookings(db_session)[0]
    assert outcome.booking["id"] == booking.id

    payload = make_event("payment_intent.succeeded", intent, event_id="evt_order_poll")
    late = TestClient(app).post(
        "/psp/stripe/webhook",
        content=payload,
        headers={"Stripe-Signature": stripe_signature(payload), "Content-Type": "application/json"},
    )

    assert late.status_code == 200
    assert _event_outcome(db_session, "evt_order_poll") == "booking_exists"
    bookings = _bookings(db_session)
    assert [b.id for b in bookings] == [booking.id]
    assert bookings[0].lock_pin == outcome.booking["lock_pin"]
    payment = db_session.scalars(select(Payment).where(Payment.charge_id == "ch_order_poll")).one()
    assert payment.status == PaymentStatus.COMPLETED
