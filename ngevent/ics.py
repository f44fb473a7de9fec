"""iCalendar (.ics) helpers."""

from __future__ import annotations

import html
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from ngevent.models import Event


_tag_pattern = re.compile(r"<[^>]+>")


def _ensure_utc(dt: datetime) -> datetime:
    """Return a timezone-aware UTC datetime."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _format_utc(dt: datetime) -> str:
    """Format a datetime as an RFC5545 UTC timestamp."""

    return _ensure_utc(dt).replace(microsecond=0).strftime("%Y%m%dT%H%M%SZ")


def _escape_text(value: str | None) -> str:
    """Escape text for ICS fields after stripping HTML from rich descriptions."""

    if not value:
        return ""
    normalized = value.replace("<br>", "\n").replace("</p>", "\n")
    stripped = _tag_pattern.sub("", html.unescape(normalized))
    stripped = stripped.replace("\r\n", "\n").replace("\r", "\n").strip()
    return (
        stripped.replace("\\", "\\\\")
        .replace(";", r"\;")
        .replace(",", r"\,")
        .replace("\n", r"\n")
    )


def _fold(line: str) -> list[str]:
    """Fold content lines longer than 75 octets."""
    encoded = line.encode("utf-8")
    if len(encoded) <= 75:
        return [line]
    folded: list[str] = []
    current = ""
    limit = 75
    for char in line:
        if len((current + char).encode("utf-8")) > limit:
            folded.append(current)
            current = " "
            limit = 75
        current += char
    folded.append(current)
    return folded


def _event_lines(event: Event, *, dtstamp: str, site_url: str | None) -> list[str]:
    lines = [
        "BEGIN:VEVENT",
        f"UID:{event.uuid or event.id}@ngevent",
        f"DTSTAMP:{dtstamp}",
        f"DTSTART:{_format_utc(event.start_date)}",
        f"DTEND:{_format_utc(event.end_date or event.start_date)}",
        f"SUMMARY:{_escape_text(event.title)}",
        f"DESCRIPTION:{_escape_text(event.description)}",
        f"LOCATION:{_escape_text(event.location)}",
    ]
    if event.status == "cancelled":
        lines.append("STATUS:CANCELLED")
    else:
        lines.append("STATUS:CONFIRMED")
    if site_url:
        lines.append(f"URL:{site_url.rstrip('/')}/events/{event.id}")
    lines.append("END:VEVENT")
    return lines


def generate_calendar(
    events: Iterable[Event],
    *,
    now: datetime | None = None,
    site_url: str | None = None,
    name: str | None = None,
) -> str:
    """Return ICS text for any number of events."""

    dtstamp = _format_utc(now or datetime.now(UTC))
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Ngevent//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
    ]
    if name:
        lines.append(f"X-WR-CALNAME:{_escape_text(name)}")
    for event in events:
        lines.extend(_event_lines(event, dtstamp=dtstamp, site_url=site_url))
    lines.append("END:VCALENDAR")
    folded = [part for line in lines for part in _fold(line)]
    return "\r\n".join(folded) + "\r\n"


def generate_ics(
    event: Event, *, now: datetime | None = None, site_url: str | None = None
) -> str:
    """Return ICS text for a single event."""

    return generate_calendar([event], now=now, site_url=site_url)
