"""SQLAlchemy models for Ngevent."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()

ROLES = ("participant", "organizer", "admin")
AUTH_PROVIDERS = ("email", "google")
EVENT_STATUSES = ("draft", "published", "cancelled", "completed")
REGISTRATION_STATUSES = ("registered", "attended", "cancelled")
NOTIFICATION_TYPES = ("registration", "event_update", "reminder", "general", "payment")
BROADCAST_STATUSES = ("sent", "queued", "failed")
BROADCAST_METHODS = ("queue", "direct")
EMAIL_TEMPLATE_TYPES = ("welcome", "registration_confirmation")
EMAIL_LOG_STATUSES = ("sent", "failed", "skipped")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


def _enum_check(column: str, values: tuple[str, ...], name: str) -> CheckConstraint:
    quoted = ", ".join(f"'{value}'" for value in values)
    return CheckConstraint(f"{column} IN ({quoted})", name=name)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    verification_token = Column(String(128), nullable=True, unique=True)
    reset_password_token = Column(String(128), nullable=True, unique=True)
    reset_password_expires = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    profile = relationship(
        "Profile",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )
    events = relationship(
        "Event", back_populates="organizer", cascade="all, delete-orphan"
    )
    registrations = relationship(
        "Registration", back_populates="user", cascade="all, delete-orphan"
    )
    notifications = relationship(
        "Notification", back_populates="user", cascade="all, delete-orphan"
    )


class Profile(Base):
    __tablename__ = "profiles"
    __table_args__ = (
        _enum_check("role", ROLES, "ck_profiles_role"),
        _enum_check("auth_provider", AUTH_PROVIDERS, "ck_profiles_auth_provider"),
    )

    id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    full_name = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    institution = Column(String(255), nullable=True)
    position = Column(String(255), nullable=True)
    city = Column(String(255), nullable=True)
    role = Column(String(16), nullable=False, default="participant")
    auth_provider = Column(String(16), nullable=False, default="email")
    avatar_url = Column(Text, nullable=True)
    welcome_email_sent = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    user = relationship("User", back_populates="profile")


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        _enum_check("status", EVENT_STATUSES, "ck_events_status"),
        CheckConstraint("capacity IS NULL OR capacity > 0", name="ck_events_capacity"),
    )

    id = Column(String(6), primary_key=True)
    uuid = Column(String(36), nullable=False, unique=True, default=_uuid)
    organizer_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    location = Column(String(255), nullable=True)
    image_url = Column(Text, nullable=True)
    capacity = Column(Integer, nullable=True)
    registration_fee = Column(Numeric(12, 2, asdecimal=False), default=0, nullable=False)
    status = Column(String(16), nullable=False, default="draft")
    category = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    organizer = relationship("User", back_populates="events")
    speakers = relationship(
        "Speaker",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="Speaker.order_index",
    )
    registrations = relationship(
        "Registration", back_populates="event", cascade="all, delete-orphan"
    )
    form_fields = relationship(
        "FormField",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="FormField.order_index",
    )
    notifications = relationship(
        "Notification", back_populates="event", cascade="all, delete-orphan"
    )
    broadcasts = relationship(
        "BroadcastHistory",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="desc(BroadcastHistory.sent_at)",
    )

    @property
    def active_registration_count(self) -> int:
        """Return registrations that still hold a seat."""
        return sum(1 for r in self.registrations if r.status != "cancelled")


class Speaker(Base):
    __tablename__ = "speakers"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(6), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(255), nullable=False)
    title = Column(String(255), nullable=True)
    company = Column(String(255), nullable=True)
    bio = Column(Text, nullable=True)
    photo_url = Column(Text, nullable=True)
    linkedin_url = Column(Text, nullable=True)
    twitter_url = Column(Text, nullable=True)
    website_url = Column(Text, nullable=True)
    order_index = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="speakers")


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_registrations_event_user"),
        _enum_check("status", REGISTRATION_STATUSES, "ck_registrations_status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(6), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    registration_data = Column(JSON, nullable=True)
    status = Column(String(16), nullable=False, default="registered")
    registered_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="registrations")
    user = relationship("User", back_populates="registrations")


class FormField(Base):
    __tablename__ = "form_fields"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(6), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    field_name = Column(String(255), nullable=False)
    field_type = Column(String(32), nullable=False, default="text")
    is_required = Column(Boolean, default=False, nullable=False)
    options = Column(JSON, nullable=True)
    order_index = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="form_fields")


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        _enum_check("type", NOTIFICATION_TYPES, "ck_notifications_type"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    event_id = Column(
        String(6), ForeignKey("events.id", ondelete="CASCADE"), nullable=True
    )
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(32), nullable=False, default="general")
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    user = relationship("User", back_populates="notifications")
    event = relationship("Event", back_populates="notifications")


class BroadcastHistory(Base):
    __tablename__ = "broadcast_history"
    __table_args__ = (
        _enum_check("status", BROADCAST_STATUSES, "ck_broadcast_history_status"),
        _enum_check("method", BROADCAST_METHODS, "ck_broadcast_history_method"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(6), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    subject = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    recipient_count = Column(Integer, default=0, nullable=False)
    status = Column(String(16), nullable=False, default="sent")
    method = Column(String(16), nullable=False, default="direct")
    sent_at = Column(DateTime, default=_now, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="broadcasts")


class EmailTemplate(Base):
    __tablename__ = "email_templates"
    __table_args__ = (
        _enum_check("template_type", EMAIL_TEMPLATE_TYPES, "ck_email_templates_type"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    template_type = Column(String(64), nullable=False, unique=True)
    subject = Column(String(255), nullable=False)
    html_body = Column(Text, nullable=False)
    text_body = Column(Text, nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class EmailLog(Base):
    __tablename__ = "email_logs"
    __table_args__ = (
        _enum_check("status", EMAIL_LOG_STATUSES, "ck_email_logs_status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    email_type = Column(String(64), nullable=False)
    recipient_email = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=True)
    status = Column(String(16), nullable=False, default="sent")
    error_message = Column(Text, nullable=True)
    details = Column("metadata", JSON, nullable=True)
    sent_at = Column(DateTime, default=_now, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
