"""CRUD helpers for users, events, registrations and notifications."""

from __future__ import annotations

import secrets
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .models import (
    EVENT_STATUSES,
    NOTIFICATION_TYPES,
    REGISTRATION_STATUSES,
    ROLES,
    EmailLog,
    Event,
    FormField,
    Notification,
    Profile,
    Registration,
    Speaker,
    User,
)
from .utils import generate_event_id, normalize_email, utcnow

MAX_EVENT_ID_ATTEMPTS = 10
REQUIRED_PROFILE_FIELDS = ("full_name", "phone", "institution", "position", "city")
SPEAKER_FIELDS = (
    "name",
    "title",
    "company",
    "bio",
    "photo_url",
    "linkedin_url",
    "twitter_url",
    "website_url",
    "order_index",
)
EVENT_FIELDS = (
    "title",
    "description",
    "start_date",
    "end_date",
    "location",
    "image_url",
    "capacity",
    "registration_fee",
    "status",
    "category",
)
PROFILE_FIELDS = (
    "full_name",
    "phone",
    "institution",
    "position",
    "city",
    "avatar_url",
)


def _now() -> datetime:
    return utcnow()


# -------- users & profiles --------


def get_user_by_email(session: Session, email: str) -> User | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return session.scalars(select(User).where(User.email == normalized)).first()


def create_user(
    session: Session,
    *,
    email: str,
    password_hash: str | None,
    full_name: str | None = None,
    role: str = "participant",
    auth_provider: str = "email",
    **profile_fields: Any,
) -> User:
    """Create a user with its profile and a fresh verification token."""
    normalized = normalize_email(email)
    if not normalized:
        raise ValueError("Email is required")
    if role not in ROLES:
        raise ValueError("Invalid role")
    if get_user_by_email(session, normalized):
        raise ValueError("User already exists")
    user = User(
        email=normalized,
        password_hash=password_hash,
        is_verified=False,
        verification_token=secrets.token_urlsafe(32),
    )
    user.profile = Profile(
        full_name=(full_name or "").strip() or None,
        role=role,
        auth_provider=auth_provider,
        welcome_email_sent=False,
        **{k: v for k, v in profile_fields.items() if k in PROFILE_FIELDS},
    )
    session.add(user)
    session.flush()
    return user


def update_profile(session: Session, profile: Profile, **changes: Any) -> Profile:
    """Apply only the provided profile fields."""
    for key, value in changes.items():
        if key not in PROFILE_FIELDS:
            continue
        if isinstance(value, str):
            value = value.strip() or None
        setattr(profile, key, value)
    session.add(profile)
    session.flush()
    return profile


def missing_profile_fields(profile: Profile | None) -> list[str]:
    if profile is None:
        return list(REQUIRED_PROFILE_FIELDS)
    return [
        field
        for field in REQUIRED_PROFILE_FIELDS
        if not (getattr(profile, field) or "").strip()
    ]


def count_admins(session: Session) -> int:
    stmt = select(func.count()).select_from(Profile).where(Profile.role == "admin")
    return session.scalar(stmt) or 0


def set_role(session: Session, profile: Profile, role: str) -> Profile:
    if role not in ROLES:
        raise ValueError("Invalid role")
    if profile.role == "admin" and role != "admin" and count_admins(session) <= 1:
        raise ValueError("Cannot remove the last admin")
    profile.role = role
    session.add(profile)
    session.flush()
    return profile


# -------- events --------


def generate_unique_event_id(session: Session) -> str:
    for _ in range(MAX_EVENT_ID_ATTEMPTS):
        candidate = generate_event_id()
        if session.get(Event, candidate) is None:
            return candidate
    raise RuntimeError(
        f"Failed to generate unique event ID after {MAX_EVENT_ID_ATTEMPTS} attempts"
    )


def _validate_event_values(values: dict[str, Any]) -> None:
    title = values.get("title")
    if title is not None and len(title.strip()) < 3:
        raise ValueError("Title must be at least 3 characters")
    status = values.get("status")
    if status is not None and status not in EVENT_STATUSES:
        raise ValueError("Invalid event status")
    capacity = values.get("capacity")
    if capacity is not None and capacity < 1:
        raise ValueError("Capacity must be a positive number")
    fee = values.get("registration_fee")
    if fee is not None and fee < 0:
        raise ValueError("Registration fee cannot be negative")
    start = values.get("start_date")
    end = values.get("end_date")
    if start and end and end <= start:
        raise ValueError("End date must be after the start date")


def create_event(
    session: Session,
    *,
    organizer: User,
    title: str,
    start_date: datetime,
    end_date: datetime,
    description: str | None = None,
    location: str | None = None,
    image_url: str | None = None,
    capacity: int | None = None,
    registration_fee: float | None = 0,
    status: str = "draft",
    category: str | None = None,
) -> Event:
    values = {
        "title": title,
        "start_date": start_date,
        "end_date": end_date,
        "status": status,
        "capacity": capacity,
        "registration_fee": registration_fee,
    }
    _validate_event_values(values)
    event = Event(
        id=generate_unique_event_id(session),
        organizer_id=organizer.id,
        title=title.strip(),
        description=description,
        start_date=start_date,
        end_date=end_date,
        location=location,
        image_url=image_url,
        capacity=capacity,
        registration_fee=registration_fee or 0,
        status=status,
        category=category,
    )
    session.add(event)
    session.flush()
    return event


def update_event(session: Session, event: Event, **changes: Any) -> Event:
    """Apply the given keys only; absent keys keep their stored value."""
    merged = {key: changes[key] for key in EVENT_FIELDS if key in changes}
    check = dict(merged)
    check.setdefault("start_date", event.start_date)
    check.setdefault("end_date", event.end_date)
    _validate_event_values(check)
    for key, value in merged.items():
        if key == "title" and value is not None:
            value = value.strip()
        if key == "registration_fee" and value is None:
            value = 0
        setattr(event, key, value)
    event.updated_at = _now()
    session.add(event)
    session.flush()
    return event


def event_search_clause(query: str | None):
    cleaned = (query or "").strip()
    if not cleaned:
        return None
    pattern = f"%{cleaned}%"
    return or_(Event.title.ilike(pattern), Event.description.ilike(pattern))


def list_events(
    session: Session,
    *,
    status: str | None = "published",
    category: str | None = None,
    search: str | None = None,
    organizer_id: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[Sequence[Event], int]:
    """Return a page of events plus the total count for the filters."""
    filters = []
    if status and status != "all":
        filters.append(Event.status == status)
    if category:
        filters.append(Event.category == category)
    if organizer_id:
        filters.append(Event.organizer_id == organizer_id)
    search_clause = event_search_clause(search)
    if search_clause is not None:
        filters.append(search_clause)

    total = session.scalar(select(func.count()).select_from(Event).where(*filters)) or 0
    stmt = (
        select(Event)
        .where(*filters)
        .order_by(Event.start_date.asc())
        .limit(limit)
        .offset(offset)
    )
    return session.scalars(stmt).all(), total


def active_registration_count(session: Session, event_id: str) -> int:
    stmt = (
        select(func.count())
        .select_from(Registration)
        .where(Registration.event_id == event_id, Registration.status != "cancelled")
    )
    return session.scalar(stmt) or 0


def registration_counts(session: Session, event_ids: Sequence[str]) -> dict[str, int]:
    if not event_ids:
        return {}
    stmt = (
        select(Registration.event_id, func.count())
        .where(
            Registration.event_id.in_(list(event_ids)),
            Registration.status != "cancelled",
        )
        .group_by(Registration.event_id)
    )
    counts = {event_id: 0 for event_id in event_ids}
    counts.update({event_id: count for event_id, count in session.execute(stmt).all()})
    return counts


def complete_finished_events(session: Session, *, now: datetime | None = None) -> int:
    """Mark published events whose end date has passed as completed."""
    now = now or _now()
    stmt = select(Event).where(Event.status == "published", Event.end_date < now)
    events = session.scalars(stmt).all()
    for event in events:
        event.status = "completed"
        event.updated_at = now
    session.flush()
    return len(events)


# -------- speakers & form fields --------


def add_speaker(session: Session, event: Event, **fields: Any) -> Speaker:
    name = (fields.get("name") or "").strip()
    if not name:
        raise ValueError("Speaker name is required")
    values = {k: v for k, v in fields.items() if k in SPEAKER_FIELDS}
    values["name"] = name
    if values.get("order_index") is None:
        values["order_index"] = len(event.speakers)
    speaker = Speaker(event_id=event.id, **values)
    session.add(speaker)
    session.flush()
    session.refresh(event)
    return speaker


def update_speaker(session: Session, speaker: Speaker, **changes: Any) -> Speaker:
    for key, value in changes.items():
        if key not in SPEAKER_FIELDS:
            continue
        if key == "name" and not (value or "").strip():
            raise ValueError("Speaker name is required")
        setattr(speaker, key, value)
    speaker.updated_at = _now()
    session.add(speaker)
    session.flush()
    return speaker


def replace_form_fields(
    session: Session, event: Event, fields: Sequence[dict[str, Any]]
) -> list[FormField]:
    """Replace an event's custom registration fields."""
    for existing in list(event.form_fields):
        session.delete(existing)
    session.flush()
    created: list[FormField] = []
    for index, raw in enumerate(fields):
        name = (raw.get("field_name") or "").strip()
        if not name:
            raise ValueError("Form field name is required")
        field = FormField(
            event_id=event.id,
            field_name=name,
            field_type=raw.get("field_type") or "text",
            is_required=bool(raw.get("is_required", False)),
            options=raw.get("options"),
            order_index=raw.get("order_index", index),
        )
        session.add(field)
        created.append(field)
    session.flush()
    session.refresh(event)
    return created


def missing_required_answers(
    form_fields: Sequence[FormField], registration_data: dict[str, Any] | None
) -> list[str]:
    answers = registration_data or {}
    missing = []
    for field in form_fields:
        if not field.is_required:
            continue
        value = answers.get(field.field_name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(field.field_name)
    return missing


# -------- registrations --------


def get_registration(
    session: Session, *, event_id: str, user_id: str
) -> Registration | None:
    stmt = select(Registration).where(
        Registration.event_id == event_id, Registration.user_id == user_id
    )
    return session.scalars(stmt).first()


def register_user(
    session: Session,
    *,
    event: Event,
    user: User,
    registration_data: dict[str, Any] | None = None,
) -> Registration:
    """Create a registration, reactivating a cancelled one for the same pair."""
    existing = get_registration(session, event_id=event.id, user_id=user.id)
    if existing and existing.status != "cancelled":
        raise ValueError("Already registered for this event")
    if existing:
        existing.status = "registered"
        existing.registration_data = registration_data
        existing.registered_at = _now()
        session.add(existing)
        session.flush()
        return existing
    registration = Registration(
        event_id=event.id,
        user_id=user.id,
        registration_data=registration_data,
        status="registered",
    )
    session.add(registration)
    session.flush()
    return registration


def set_registration_status(
    session: Session, registration: Registration, status: str
) -> Registration:
    if status not in REGISTRATION_STATUSES:
        raise ValueError("Invalid registration status")
    registration.status = status
    session.add(registration)
    session.flush()
    return registration


def active_registrants(session: Session, event_id: str) -> list[tuple[User, Profile]]:
    """Return (user, profile) pairs for registrations still marked registered."""
    stmt = (
        select(User, Profile)
        .join(Registration, Registration.user_id == User.id)
        .join(Profile, Profile.id == User.id)
        .where(Registration.event_id == event_id, Registration.status == "registered")
        .order_by(Registration.registered_at.asc())
    )
    return [(user, profile) for user, profile in session.execute(stmt).all()]


# -------- notifications & email logs --------


def normalize_notification_type(value: str | None) -> str:
    return value if value in NOTIFICATION_TYPES else "general"


def create_notification(
    session: Session,
    *,
    user_id: str,
    title: str,
    message: str,
    type: str | None = "general",
    event_id: str | None = None,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        event_id=event_id,
        title=title,
        message=message,
        type=normalize_notification_type(type),
        read=False,
    )
    session.add(notification)
    session.flush()
    return notification


def mark_all_notifications_read(session: Session, user_id: str) -> int:
    stmt = select(Notification).where(
        Notification.user_id == user_id, Notification.read.is_(False)
    )
    notifications = session.scalars(stmt).all()
    for notification in notifications:
        notification.read = True
    session.flush()
    return len(notifications)


def record_email_log(
    session: Session,
    *,
    email_type: str,
    recipient_email: str,
    status: str,
    user_id: str | None = None,
    subject: str | None = None,
    error_message: str | None = None,
    details: dict[str, Any] | None = None,
) -> EmailLog:
    log = EmailLog(
        user_id=user_id,
        email_type=email_type,
        recipient_email=recipient_email,
        subject=subject,
        status=status,
        error_message=error_message,
        details=details,
    )
    session.add(log)
    session.flush()
    return log


def has_sent_email(session: Session, *, user_id: str, email_type: str) -> bool:
    stmt = (
        select(EmailLog.id)
        .where(
            EmailLog.user_id == user_id,
            EmailLog.email_type == email_type,
            EmailLog.status == "sent",
        )
        .limit(1)
    )
    return session.scalars(stmt).first() is not None
