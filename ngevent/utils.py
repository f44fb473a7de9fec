"""Utility helpers for Ngevent."""

from __future__ import annotations

from datetime import UTC, datetime
import html
import re
import secrets

from markupsafe import Markup

EVENT_ID_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"
EVENT_ID_LENGTH = 6

_event_id_pattern = re.compile(rf"^[{EVENT_ID_ALPHABET}]{{{EVENT_ID_LENGTH}}}$")
_email_pattern = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_placeholder_pattern = re.compile(r"\{(\w+)\}")
_template_placeholder_pattern = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize aware datetimes to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def parse_iso_datetime(raw: str) -> datetime:
    """Parse an ISO8601 string (``Z`` suffix allowed) into naive UTC."""
    cleaned = (raw or "").strip()
    if cleaned.endswith("Z"):
        cleaned = f"{cleaned[:-1]}+00:00"
    return to_naive_utc(datetime.fromisoformat(cleaned))


def generate_event_id() -> str:
    """Return a random short event code without look-alike characters."""
    return "".join(secrets.choice(EVENT_ID_ALPHABET) for _ in range(EVENT_ID_LENGTH))


def is_valid_event_id(value: str | None) -> bool:
    return bool(value) and bool(_event_id_pattern.match(value))


def is_valid_email(value: str | None) -> bool:
    return bool(value) and bool(_email_pattern.match(value.strip()))


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def fill_placeholders(text: str, values: dict[str, str]) -> str:
    """Replace ``{name}`` tokens; unknown tokens are left untouched."""

    def replace(match: re.Match[str]) -> str:
        key = match.group(1)
        return values[key] if key in values else match.group(0)

    return _placeholder_pattern.sub(replace, text or "")


def fill_template_placeholders(text: str, values: dict[str, str]) -> str:
    """Replace ``{{ name }}`` tokens used by stored email templates."""

    def replace(match: re.Match[str]) -> str:
        key = match.group(1)
        return values.get(key, "")

    return _template_placeholder_pattern.sub(replace, text or "")


def render_message_html(value: str | None) -> Markup:
    """Escape plain text and keep line breaks for HTML email bodies."""

    if not value:
        return Markup("")
    escaped = html.escape(value.strip())
    return Markup("<br>".join(escaped.splitlines()))


def format_event_date(value: datetime | None) -> str:
    """Return a long date such as 'Saturday, 14 March 2026'."""
    if not value:
        return ""
    return f"{value:%A}, {value.day} {value:%B %Y}"


def format_event_time(value: datetime | None) -> str:
    if not value:
        return ""
    return f"{value:%H:%M} UTC"
