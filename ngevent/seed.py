"""Development helpers for populating fake organizers, events and participants."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .crud import create_event, create_user, get_user_by_email, register_user
from .database import get_session
from .models import Event, User
from .security import hash_password
from .storage import init_db
from .utils import utcnow

SEED_PASSWORD = "password123"

_categories = [
    "Technology",
    "Business",
    "Education",
    "Health",
    "Arts",
    "Community",
]
_event_types = [
    "Workshop",
    "Seminar",
    "Meetup",
    "Bootcamp",
    "Conference",
    "Webinar",
]
_statuses = ["published", "published", "published", "draft"]


def seed_fake_data(
    *,
    organizer_count: int = 3,
    events_per_organizer: int = 3,
    participant_count: int = 10,
    registrations_per_event: int = 5,
) -> dict[str, int]:
    """Populate the database with synthetic users, events and registrations."""
    if organizer_count < 0:
        raise ValueError("organizer_count must be >= 0")
    if events_per_organizer < 1:
        raise ValueError("events_per_organizer must be >= 1")
    if participant_count < 0:
        raise ValueError("participant_count must be >= 0")
    if registrations_per_event < 0:
        raise ValueError("registrations_per_event must be >= 0")

    init_db()
    fake = Faker()
    stats = {"organizers": 0, "participants": 0, "events": 0, "registrations": 0}
    # Hashing is slow; every seeded account shares one password.
    password_hash = hash_password(SEED_PASSWORD)

    with get_session() as session:
        participants = []
        for _ in range(participant_count):
            participants.append(
                _create_account(session, fake, role="participant", password_hash=password_hash)
            )
            stats["participants"] += 1

        for _ in range(organizer_count):
            organizer = _create_account(
                session, fake, role="organizer", password_hash=password_hash
            )
            stats["organizers"] += 1
            for _ in range(random.randint(1, events_per_organizer)):
                event = _create_event(session, fake, organizer=organizer)
                stats["events"] += 1
                if event.status == "published":
                    stats["registrations"] += _create_registrations(
                        session, event, participants, registrations_per_event
                    )

    return stats


def _create_account(
    session: Session, fake: Faker, *, role: str, password_hash: str
) -> User:
    for _ in range(20):
        email = fake.unique.email()
        if get_user_by_email(session, email):
            continue
        user = create_user(
            session,
            email=email,
            password_hash=password_hash,
            full_name=fake.name(),
            role=role,
            phone=fake.phone_number()[:32],
            institution=fake.company(),
            position=fake.job()[:100],
            city=fake.city(),
        )
        user.is_verified = True
        user.verification_token = None
        return user
    raise RuntimeError("Failed to create a unique seed account")


def _create_event(session: Session, fake: Faker, *, organizer: User) -> Event:
    start_date = _random_start_date()
    end_date = start_date + timedelta(hours=random.choice([2, 3, 4, 8, 26]))
    category = random.choice(_categories)
    title = f"{category} {random.choice(_event_types)}: {fake.catch_phrase()}"
    return create_event(
        session,
        organizer=organizer,
        title=title[:200],
        description="\n\n".join(fake.paragraphs(nb=2)),
        start_date=start_date,
        end_date=end_date,
        location=fake.address().replace("\n", ", "),
        capacity=random.choice([None, 20, 50, 100]),
        registration_fee=random.choice([0, 0, 50000, 100000]),
        status=random.choice(_statuses),
        category=category,
    )


def _random_start_date() -> datetime:
    now = utcnow()
    start = now + timedelta(days=random.randint(-14, 60))
    return start.replace(
        hour=random.randint(8, 19), minute=random.choice([0, 30]), second=0, microsecond=0
    )


def _create_registrations(
    session: Session, event: Event, participants: list[User], max_registrations: int
) -> int:
    if not participants or max_registrations <= 0:
        return 0
    upper = min(max_registrations, len(participants))
    if event.capacity:
        upper = min(upper, event.capacity)
    chosen = random.sample(participants, random.randint(0, upper))
    for participant in chosen:
        register_user(session, event=event, user=participant, registration_data={})
    return len(chosen)
