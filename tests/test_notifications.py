from decimal import Decimal

import pytest
from sqlalchemy import select

from app.config import Settings
from app.models import Notification, User, UserRole
from app.services import notifications, payment_records
from app.services.access_control import StubPinProvider
from app.services.bookings import materialize
from app.services.email import guest_bookings_link, render_booking_confirmation, send_email


@pytest.fixture
def booked(db_session, storage_box):
    payer = User(email="payer@example.com", role=UserRole.GUEST)
    db_session.add(payer)
    db_session.commit()
    payment, _ = payment_records.upsert_verified_payment(
        db_session,
        charge_id="ch_notify",
        amount=Decimal("150.00"),
        currency="SEK",
        payment_intent_id="pi_notify",
        metadata={"boxId": "C1", "startDate": "2030-06-01", "endDate": "2030-06-03"},
    )
    payment_records.attach_owner(db_session, payment, payer.id)
    return materialize(db_session, payment, pin_provider=StubPinProvider()).booking


def _notifications_for(db_session, booking):
    stmt = select(Notification).where(Notification.related_booking_id == booking.id)
    return list(db_session.scalars(stmt))


def test_dispatch_notifies_owner_and_payer(db_session, booked, location_owner):
    outcome = notifications.dispatch_booking_confirmed(db_session, booked, payer_email="payer@example.com")

    assert outcome == {"owner_notification": True, "payer_notification": True, "confirmation_email": True}
    rows = _notifications_for(db_session, booked)
    assert {row.user_id for row in rows} == {location_owner.id, booked.payment.user_id}
    owner_row = next(row for row in rows if row.user_id == location_owner.id)
    assert owner_row.title == "New Booking Confirmed"
    assert "C1" in owner_row.message


def test_side_effect_failures_are_isolated(monkeypatch, db_session, booked):
    def _boom(*args, **kwargs):
        raise RuntimeError("mail server down")

    monkeypatch.setattr("app.services.email.send_email", _boom)
    monkeypatch.setattr("app.services.notifications.notify_location_owner", _boom)

    outcome = notifications.dispatch_booking_confirmed(db_session, booked, payer_email="payer@example.com")

    assert outcome == {"owner_notification": False, "payer_notification": True, "confirmation_email": False}
    assert booked.payment.status.value == "COMPLETED"
    assert len(_notifications_for(db_session, booked)) == 1


def test_owner_notification_skipped_without_owner(db_session, booked):
    booked.box.location.owner_user_id = None
    db_session.commit()

    notifications.notify_location_owner(db_session, booked)

    assert _notifications_for(db_session, booked) == []


def test_confirmation_email_content(booked):
    settings = Settings(APP_PUBLIC_URL="https://boxes.example", SUPPORT_URL="https://boxes.example/help")

    subject, body = render_booking_confirmation(booked, payer_email="payer@example.com", settings=settings)

    assert subject.startswith("Booking confirmed")
    assert booked.lock_pin in body
    assert "Central Station" in body
    assert "https://boxes.example/guest/bookings?email=payer%40example.com&chargeId=ch_notify" in body
    assert "https://boxes.example/help" in body


def test_guest_link_trims_trailing_slash():
    settings = Settings(APP_PUBLIC_URL="https://boxes.example/")
    assert guest_bookings_link(settings, "a@b.se", "ch_1") == "https://boxes.example/guest/bookings?email=a%40b.se&chargeId=ch_1"


def test_send_email_disabled_by_default():
    assert send_email("a@b.se", "hi", "body", settings=Settings(EMAIL_ENABLED=False)) is False


def test_send_email_uses_sendgrid_when_configured(monkeypatch):
    sent = {}

    class _Response:
        def raise_for_status(self):
            return None

    def _post(url, json, headers, timeout):
        sent.update(url=url, json=json, headers=headers)
        return _Response()

    monkeypatch.setattr("app.services.email.httpx.post", _post)
    settings = Settings(EMAIL_ENABLED=True, SENDGRID_API_KEY="SG.key", EMAIL_FROM="bookings@boxes.example")

    assert send_email("a@b.se", "Subject", "Body", settings=settings) is True
    assert sent["url"] == "https://api.sendgrid.com/v3/mail/send"
    assert sent["headers"]["Authorization"] == "Bearer SG.key"
    assert sent["json"]["personalizations"][0]["to"][0]["email"] == "a@b.se"
