"""Broadcast email fan-out to an event's registrants."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .crud import active_registrants, create_notification
from .mailer import Mailer, MailerError, build_message, render_email
from .models import BroadcastHistory, Event, Profile, User
from .queues import QueueClient, QueueError
from .utils import fill_placeholders, format_event_date, format_event_time

logger = logging.getLogger("uvicorn.error")

DEFAULT_FIRST_NAME = "Participant"
HISTORY_LIMIT = 10


@dataclass
class BroadcastOutcome:
    method: str
    recipients: int
    batches: int
    queued_batches: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.method == "queue":
            return "queued"
        if any(result["status"] == "success" for result in self.results):
            return "sent"
        return "failed"


def placeholder_values(event: Event, full_name: str | None) -> dict[str, str]:
    name = (full_name or "").strip()
    return {
        "firstName": name.split()[0] if name else DEFAULT_FIRST_NAME,
        "fullName": name or DEFAULT_FIRST_NAME,
        "eventTitle": event.title,
        "eventDate": format_event_date(event.start_date),
        "eventTime": format_event_time(event.start_date),
        "eventLocation": event.location or "TBA",
    }


def chunk(items: Sequence[Any], size: int) -> list[list[Any]]:
    if size < 1:
        raise ValueError("Batch size must be positive")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def build_broadcast_emails(
    event: Event,
    recipients: Sequence[tuple[User, Profile]],
    *,
    subject: str,
    message: str,
) -> list[dict[str, Any]]:
    """Return one personalized message per recipient that has an email."""
    emails = []
    for user, profile in recipients:
        if not user.email:
            continue
        values = placeholder_values(event, profile.full_name if profile else None)
        html = render_email(
            "event_notification.html",
            event_title=event.title,
            event_id=event.id,
            subject=fill_placeholders(subject, values),
            message=fill_placeholders(message, values),
        )
        emails.append(build_message(user.email, f"Update Event: {event.title}", html))
    return emails


def dispatch_batches(
    batches: list[list[dict[str, Any]]],
    *,
    event: Event,
    mailer: Mailer,
    queue: QueueClient | None,
) -> BroadcastOutcome:
    """Queue each batch when possible; send the rest through the batch API."""
    recipients = sum(len(batch) for batch in batches)
    outcome = BroadcastOutcome(method="queue", recipients=recipients, batches=len(batches))
    pending = list(batches)

    if queue is not None and queue.configured:
        while pending:
            body = {"batch": pending[0], "eventTitle": event.title, "eventId": event.id}
            try:
                queue.publish_json(settings.broadcast_worker_url, body)
            except QueueError as exc:
                logger.error(
                    "Queue publish failed for event %s, falling back to direct send: %s",
                    event.id,
                    exc,
                )
                break
            outcome.queued_batches += 1
            pending.pop(0)
        if not pending:
            return outcome

    outcome.method = "direct"
    for batch in pending:
        try:
            data = mailer.send_batch(batch)
        except MailerError as exc:
            logger.error("Batch send failed for event %s: %s", event.id, exc)
            outcome.results.append(
                {"status": "error", "error": str(exc), "size": len(batch)}
            )
            continue
        outcome.results.append({"status": "success", "data": data, "size": len(batch)})
    return outcome


def send_broadcast(
    session: Session,
    *,
    event: Event,
    subject: str,
    message: str,
    mailer: Mailer,
    queue: QueueClient | None,
) -> dict[str, Any]:
    recipients = active_registrants(session, event.id)
    if not recipients:
        return {"message": "No participants found for this event", "sent": 0}

    emails = build_broadcast_emails(event, recipients, subject=subject, message=message)
    batches = chunk(emails, settings.broadcast_batch_size)
    outcome = dispatch_batches(batches, event=event, mailer=mailer, queue=queue)

    for user, profile in recipients:
        values = placeholder_values(event, profile.full_name if profile else None)
        create_notification(
            session,
            user_id=user.id,
            event_id=event.id,
            title=fill_placeholders(subject, values),
            message=fill_placeholders(message, values),
            type="event_update",
        )

    history = BroadcastHistory(
        event_id=event.id,
        subject=subject,
        message=message,
        recipient_count=len(emails),
        status=outcome.status,
        method=outcome.method,
    )
    session.add(history)
    session.flush()

    payload: dict[str, Any] = {
        "success": outcome.status != "failed",
        "sent": len(emails),
        "event_title": event.title,
        "batches": outcome.batches,
        "method": outcome.method,
        "history_id": history.id,
    }
    if outcome.method == "queue":
        payload["message"] = f"Broadcast queued for {len(emails)} participants"
        payload["queued_batches"] = outcome.queued_batches
    else:
        payload["message"] = (
            f"Broadcast sent to {len(emails)} participants in {outcome.batches} batches"
        )
        payload["queued_batches"] = outcome.queued_batches
        payload["results"] = outcome.results
    return payload


def broadcast_history(session: Session, event_id: str) -> list[BroadcastHistory]:
    stmt = (
        select(BroadcastHistory)
        .where(BroadcastHistory.event_id == event_id)
        .order_by(BroadcastHistory.sent_at.desc())
        .limit(HISTORY_LIMIT)
    )
    return list(session.scalars(stmt).all())
