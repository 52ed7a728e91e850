import pytest
from sqlalchemy import func, select

from app.models import User, UserRole
from app.services.identity import (
    DEFAULT_GUEST_NAME,
    SessionIdentity,
    find_or_create_guest_user,
    normalize_email,
    resolve_owner,
)
from app.services.psp_stripe import BillingDetails
from app.utils.errors import MissingContactError


def _users_with_email(db_session, email):
    return db_session.scalar(select(func.count()).select_from(User).where(User.email == email))


def test_normalize_email():
    assert normalize_email("  Ada@Example.COM ") == "ada@example.com"
    assert normalize_email("not-an-email") is None
    assert normalize_email(None) is None


def test_guest_user_is_created_once(db_session):
    first = find_or_create_guest_user(db_session, "Payer@Example.com", name="Ada Payer")
    second = find_or_create_guest_user(db_session, "payer@example.com")

    assert first.id == second.id
    assert first.role == UserRole.GUEST
    assert first.full_name == "Ada Payer"
    assert _users_with_email(db_session, "payer@example.com") == 1


def test_guest_user_defaults_name(db_session):
    user = find_or_create_guest_user(db_session, "nameless@example.com")
    assert user.full_name == DEFAULT_GUEST_NAME


def test_registered_user_is_reused_not_shadowed(db_session):
    member = User(email="member@example.com", full_name="Member", role=UserRole.CUSTOMER)
    db_session.add(member)
    db_session.commit()

    owner = resolve_owner(db_session, provided_email="MEMBER@example.com")

    assert owner.user.id == member.id
    assert owner.user.role == UserRole.CUSTOMER
    assert _users_with_email(db_session, "member@example.com") == 1


def test_guest_creation_race_converges(monkeypatch, db_session):
    winner = find_or_create_guest_user(db_session, "race@example.com")

    from app.services import identity

    real_lookup = identity.get_user_by_email
    calls = {"n": 0}

    def _stale_then_fresh(db, email):
        calls["n"] += 1
        return None if calls["n"] == 1 else real_lookup(db, email)

    monkeypatch.setattr("app.services.identity.get_user_by_email", _stale_then_fresh)
    loser = find_or_create_guest_user(db_session, "race@example.com")

    assert loser.id == winner.id


def test_session_wins_over_emails(db_session):
    member = User(email="session@example.com", role=UserRole.CUSTOMER)
    db_session.add(member)
    db_session.commit()

    owner = resolve_owner(
        db_session,
        session=SessionIdentity(user_id=member.id, email=member.email),
        provided_email="someone-else@example.com",
        billing=BillingDetails(email="billing@example.com"),
    )

    assert owner.user.id == member.id
    assert owner.source == "session"
    assert owner.authoritative is True
    assert _users_with_email(db_session, "someone-else@example.com") == 0


def test_email_precedence(db_session):
    billing = BillingDetails(email="billing@example.com", metadata_email="meta@example.com", name="Ada")

    provided = resolve_owner(db_session, provided_email="given@example.com", billing=billing)
    assert provided.source == "provided_email"
    assert provided.user.email == "given@example.com"

    from_billing = resolve_owner(db_session, billing=billing)
    assert from_billing.source == "billing_email"
    assert from_billing.user.email == "billing@example.com"

    from_metadata = resolve_owner(db_session, billing=BillingDetails(metadata_email="meta@example.com"))
    assert from_metadata.source == "metadata_email"
    assert from_metadata.authoritative is False


def test_missing_contact_creates_nothing(db_session):
    before = db_session.scalar(select(func.count()).select_from(User))

    with pytest.raises(MissingContactError):
        resolve_owner(db_session, provided_email="   ", billing=BillingDetails())

    assert db_session.scalar(select(func.count()).select_from(User)) == before
