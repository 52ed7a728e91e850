import time

import pytest
from sqlalchemy import func, select

from app.models import Alert, Booking, Notification, Payment, PaymentStatus, PSPWebhookEvent


async def _deliver(client, payload, signature):
    return await client.post(
        "/psp/stripe/webhook",
        content=payload,
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


def _count(db_session, model, *criteria):
    return db_session.scalar(select(func.count()).select_from(model).where(*criteria))


@pytest.mark.anyio
async def test_payment_succeeded_creates_booking(client, db_session, storage_box, fake_gateway, make_event, stripe_signature):
    intent = fake_gateway.add("pi_wh_1", charge_id="ch_wh_1", billing_email="payer@example.com")
    payload = make_event("payment_intent.succeeded", intent, event_id="evt_wh_1")

    response = await _deliver(client, payload, stripe_signature(payload))

    assert response.status_code == 200
    assert response.json() == {"received": True, "processed": True}
    payment = db_session.scalars(select(Payment).where(Payment.charge_id == "ch_wh_1")).one()
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.user.email == "payer@example.com"
    assert _count(db_session, Booking, Booking.payment_id == payment.id) == 1
    assert _count(db_session, Notification) == 2
    event = db_session.scalars(select(PSPWebhookEvent).where(PSPWebhookEvent.event_id == "evt_wh_1")).one()
    assert event.outcome == "booking_created"


@pytest.mark.anyio
async def test_redelivered_event_is_acknowledged_once(client, db_session, storage_box, fake_gateway, make_event, stripe_signature):
    intent = fake_gateway.add("pi_wh_dup", charge_id="ch_wh_dup", receipt_email="dup@example.com")
    payload = make_event("payment_intent.succeeded", intent, event_id="evt_wh_dup")

    first = await _deliver(client, payload, stripe_signature(payload))
    second = await _deliver(client, payload, stripe_signature(payload))

    assert first.json()["processed"] is True
    assert second.status_code == 200
    assert second.json() == {"received": True, "duplicate": True}
    assert _count(db_session, Booking) == 1


@pytest.mark.anyio
async def test_distinct_events_for_same_charge_book_once(client, db_session, storage_box, fake_gateway, make_event, stripe_signature):
    intent = fake_gateway.add("pi_wh_twice", charge_id="ch_wh_twice", receipt_email="twice@example.com")
    first_payload = make_event("payment_intent.succeeded", intent, event_id="evt_wh_a")
    second_payload = make_event("payment_intent.succeeded", intent, event_id="evt_wh_b")

    await _deliver(client, first_payload, stripe_signature(first_payload))
    response = await _deliver(client, second_payload, stripe_signature(second_payload))

    assert response.status_code == 200
    assert response.json()["processed"] is True
    assert _count(db_session, Booking) == 1
    assert _count(db_session, Notification) == 2
    event = db_session.scalars(select(PSPWebhookEvent).where(PSPWebhookEvent.event_id == "evt_wh_b")).one()
    assert event.outcome == "booking_exists"


@pytest.mark.anyio
async def test_invalid_signature_rejected(client, db_session, fake_gateway, make_event, stripe_signature):
    intent = fake_gateway.add("pi_wh_sig", charge_id="ch_wh_sig", receipt_email="sig@example.com")
    payload = make_event("payment_intent.succeeded", intent)

    response = await _deliver(client, payload, stripe_signature(payload, secret="whsec_wrong"))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "STRIPE_SIGNATURE_INVALID"
    assert _count(db_session, Payment) == 0
    assert fake_gateway.calls == []


@pytest.mark.anyio
async def test_stale_signature_rejected(client, db_session, fake_gateway, make_event, stripe_signature):
    intent = fake_gateway.add("pi_wh_old", charge_id="ch_wh_old", receipt_email="old@example.com")
    payload = make_event("payment_intent.succeeded", intent)

    response = await _deliver(client, payload, stripe_signature(payload, timestamp=int(time.time()) - 3600))

    assert response.status_code == 400
    assert _count(db_session, Payment) == 0


@pytest.mark.anyio
async def test_missing_signature_header(client):
    response = await client.post("/psp/stripe/webhook", content=b"{}")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "STRIPE_SIGNATURE_MISSING"


@pytest.mark.anyio
async def test_rotated_secret_is_accepted(monkeypatch, client, db_session, storage_box, fake_gateway, make_event, stripe_signature):
    from app.config import get_settings

    monkeypatch.setattr(get_settings(), "STRIPE_WEBHOOK_SECRET_NEXT", "whsec_next")
    intent = fake_gateway.add("pi_wh_next", charge_id="ch_wh_next", receipt_email="next@example.com")
    payload = make_event("payment_intent.succeeded", intent, event_id="evt_wh_next")

    response = await _deliver(client, payload, stripe_signature(payload, secret="whsec_next"))

    assert response.status_code == 200
    assert response.json()["processed"] is True


@pytest.mark.anyio
async def test_mode_mismatch_raises_alert(client, db_session, fake_gateway, make_event, stripe_signature):
    intent = fake_gateway.add("pi_wh_live", charge_id="ch_wh_live", livemode=True, receipt_email="live@example.com")
    payload = make_event("payment_intent.succeeded", intent, event_id="evt_wh_live", livemode=True)

    response = await _deliver(client, payload, stripe_signature(payload))

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "PAYMENT_MODE_MISMATCH"
    assert _count(db_session, Payment) == 0
    alert = db_session.scalars(select(Alert).where(Alert.type == "PAYMENT_MODE_MISMATCH")).one()
    assert alert.payload_json["event_livemode"] is True


@pytest.mark.anyio
async def test_event_body_is_not_trusted(client, db_session, storage_box, fake_gateway, make_event, stripe_signature):
    """The event says succeeded but the gateway says otherwise: acknowledge, record nothing."""

    fake_gateway.add("pi_wh_fake", charge_id=None, status="requires_payment_method")
    forged = {"id": "pi_wh_fake", "status": "succeeded", "amount": 15000, "latest_charge": "ch_forged"}
    payload = make_event("payment_intent.succeeded", forged, event_id="evt_wh_fake")

    response = await _deliver(client, payload, stripe_signature(payload))

    assert response.status_code == 200
    assert response.json() == {"received": True, "processed": False, "reason": "not_verified"}
    assert _count(db_session, Payment) == 0


@pytest.mark.anyio
async def test_incomplete_metadata_is_acknowledged(client, db_session, storage_box, fake_gateway, make_event, stripe_signature):
    intent = fake_gateway.add(
        "pi_wh_meta",
        charge_id="ch_B",
        receipt_email="meta@example.com",
        metadata={"startDate": "2030-06-01", "endDate": "2030-06-03"},
    )
    payload = make_event("payment_intent.succeeded", intent, event_id="evt_wh_meta")

    response = await _deliver(client, payload, stripe_signature(payload))

    assert response.status_code == 200
    assert response.json()["reason"] == "incomplete_metadata"
    payment = db_session.scalars(select(Payment).where(Payment.charge_id == "ch_B")).one()
    assert payment.status == PaymentStatus.PROCESSING
    assert payment.booking_error is not None
    assert _count(db_session, Booking) == 0


@pytest.mark.anyio
async def test_missing_contact_is_acknowledged(client, db_session, storage_box, fake_gateway, make_event, stripe_signature):
    intent = fake_gateway.add("pi_wh_anon", charge_id="ch_wh_anon")
    payload = make_event("payment_intent.succeeded", intent, event_id="evt_wh_anon")

    response = await _deliver(client, payload, stripe_signature(payload))

    assert response.status_code == 200
    assert response.json()["reason"] == "missing_contact"
    assert _count(db_session, Payment, Payment.charge_id == "ch_wh_anon") == 1
    assert _count(db_session, Booking) == 0


@pytest.mark.anyio
async def test_lock_failure_is_retryable(monkeypatch, client, db_session, storage_box, fake_gateway, make_event, stripe_signature):
    from app.utils.errors import CredentialIssueError

    def _no_pin(*args, **kwargs):
        raise CredentialIssueError("Lock PIN could not be issued; the booking will be retried.")

    monkeypatch.setattr("app.services.bookings.issue_pin", _no_pin)
    intent = fake_gateway.add("pi_wh_lock", charge_id="ch_wh_lock", receipt_email="lock@example.com")
    payload = make_event("payment_intent.succeeded", intent, event_id="evt_wh_lock")

    response = await _deliver(client, payload, stripe_signature(payload))

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "LOCK_CREDENTIAL_UNAVAILABLE"
    assert _count(db_session, PSPWebhookEvent, PSPWebhookEvent.event_id == "evt_wh_lock") == 0
    assert _count(db_session, Booking) == 0


@pytest.mark.anyio
async def test_gateway_outage_returns_server_error(monkeypatch, client, db_session, fake_gateway, make_event, stripe_signature):
    def _down(self, payment_intent_id):
        raise ConnectionError("stripe unreachable")

    monkeypatch.setattr("app.services.psp_stripe.StripeClient.retrieve_payment_intent", _down)
    payload = make_event("payment_intent.succeeded", {"id": "pi_wh_down"}, event_id="evt_wh_down")

    response = await _deliver(client, payload, stripe_signature(payload))

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "INTERNAL_SERVER_ERROR"


@pytest.mark.anyio
async def test_payment_failed_event_marks_payment(client, db_session, fake_gateway, make_event, stripe_signature):
    from decimal import Decimal

    from app.services import payment_records

    payment, _ = payment_records.upsert_verified_payment(
        db_session,
        charge_id="ch_wh_failed",
        amount=Decimal("10.00"),
        currency="SEK",
        payment_intent_id="pi_wh_failed",
    )
    payload = make_event("payment_intent.payment_failed", {"id": "pi_wh_failed"}, event_id="evt_wh_failed")

    response = await _deliver(client, payload, stripe_signature(payload))

    assert response.status_code == 200
    assert response.json()["processed"] is True
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.FAILED


@pytest.mark.anyio
async def test_unhandled_event_type_is_ignored(client, db_session, make_event, stripe_signature):
    payload = make_event("customer.created", {"id": "cus_1"}, event_id="evt_wh_other")

    response = await _deliver(client, payload, stripe_signature(payload))

    assert response.status_code == 200
    assert response.json() == {"received": True, "processed": False, "reason": "ignored"}


@pytest.mark.anyio
async def test_webhook_disabled(monkeypatch, client):
    from app.config import get_settings

    monkeypatch.setattr(get_settings(), "STRIPE_ENABLED", False)
    response = await client.post("/psp/stripe/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"})

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "STRIPE_DISABLED"


@pytest.mark.anyio
async def test_late_failure_signal_does_not_strand_verified_payment(
    client, db_session, storage_box, fake_gateway, make_event, stripe_signature
):
    fake_gateway.add("pi_wh_late_fail", charge_id="ch_wh_late_fail")

    anonymous = await client.post("/payments/pi_wh_late_fail/process-success")
    assert anonymous.status_code == 422

    payload = make_event("payment_intent.payment_failed", {"id": "pi_wh_late_fail"}, event_id="evt_wh_late_fail")
    failed = await _deliver(client, payload, stripe_signature(payload))
    assert failed.status_code == 200
    payment = db_session.scalars(select(Payment).where(Payment.charge_id == "ch_wh_late_fail")).one()
    assert payment.status == PaymentStatus.FAILED

    response = await client.post(
        "/payments/pi_wh_late_fail/process-success", json={"customer_email": "late@example.com"}
    )

    assert response.status_code == 200
    assert response.json()["created"] is True
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.COMPLETED
    assert _count(db_session, Booking, Booking.payment_id == payment.id) == 1

    state = (await client.get("/payments/pi_wh_late_fail")).json()
    assert state["payment"]["status"] == "COMPLETED"
    assert state["next_action"] == "done"
