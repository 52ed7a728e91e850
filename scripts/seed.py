"""Seed a demo location with rentable boxes for local development."""
from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import select

from app import models
from app.config import get_settings
from app.db import get_sessionmaker

DEMO_BOXES = ("C1", "C2", "C3", "C4")


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    session = get_sessionmaker()()
    try:
        owner = session.scalars(select(models.User).where(models.User.email == "distributor@example.com")).first()
        if owner is None:
            owner = models.User(
                email="distributor@example.com",
                full_name="Demo Distributor",
                role=models.UserRole.DISTRIBUTOR,
            )
            session.add(owner)
            session.flush()

        location = session.scalars(select(models.Location).where(models.Location.name == "Demo Station")).first()
        if location is None:
            location = models.Location(name="Demo Station", address="Centralplan 1", owner_user_id=owner.id)
            session.add(location)
            session.flush()

        existing = set(session.scalars(select(models.Box.code).where(models.Box.code.in_(DEMO_BOXES))))
        for code in DEMO_BOXES:
            if code not in existing:
                session.add(models.Box(code=code, label=f"Locker {code}", location_id=location.id))
        session.commit()
        print(f"Seeded location {location.id} with boxes {', '.join(DEMO_BOXES)}.")
    finally:
        session.close()


if __name__ == "__main__":
    main()
