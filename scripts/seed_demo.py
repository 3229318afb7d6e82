#!/usr/bin/env python3
"""Seed demo data: subscribers in both confirmation states.

Usage:
    python scripts/seed_demo.py          # uses DATABASE_URL from env / .env
    DATABASE_URL=... python scripts/seed_demo.py
"""
from __future__ import annotations

import sys

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

# Ensure project root is on sys.path
sys.path.insert(0, ".")

from newsletter.core.settings import get_settings
from newsletter.db.base import Base
from newsletter.db.models import SUBSCRIPTION_CONFIRMED, SUBSCRIPTION_PENDING, Subscriber


def seed(session: Session) -> int:
    """Insert demo subscribers that are not already present; return how many."""
    demo_subscribers = [
        # (name, email, status)
        ("Alice Johnson", "alice.johnson@example.com", SUBSCRIPTION_CONFIRMED),
        ("Bob Smith", "bob.smith@example.com", SUBSCRIPTION_CONFIRMED),
        ("Priya Patel", "priya.patel@example.com", SUBSCRIPTION_CONFIRMED),
        ("Carlos Rivera", "carlos.r@example.com", SUBSCRIPTION_CONFIRMED),
        ("Fatima Khan", "fatima.khan@example.com", SUBSCRIPTION_PENDING),
        ("David Chen", "david.chen@example.com", SUBSCRIPTION_PENDING),
    ]

    existing = set(session.execute(select(Subscriber.email)).scalars())
    added = 0
    for name, email, status in demo_subscribers:
        if email in existing:
            continue
        session.add(Subscriber(name=name, email=email, status=status))
        added += 1

    session.commit()
    return added


def main() -> None:
    settings = get_settings()
    engine = create_engine(settings.database_url)
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        added = seed(session)
    print(f"Seeded {added} subscribers.")


if __name__ == "__main__":
    main()
