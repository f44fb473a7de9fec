"""Transactional email through a Resend-compatible REST API.

Messages are plain dicts in the provider's wire shape
(``from``, ``to``, ``subject``, ``html``, optional ``text``) so a batch can be
handed to the queue worker unchanged. HTML bodies are rendered from the Jinja2
templates in ``templates/email``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Sequence

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .config import settings
from .utils import format_event_date, format_event_time, render_message_html

MAX_BATCH_SIZE = 100

_templates = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates" / "email")),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)
_templates.filters["event_date"] = format_event_date
_templates.filters["event_time"] = format_event_time
_templates.filters["message_html"] = render_message_html


class MailerError(Exception):
    """Raised when the email API rejects a request."""

    def __init__(self, message: str, *, status_code: int | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details


def render_email(template_name: str, **context: Any) -> str:
    context.setdefault("site_url", settings.site_url.rstrip("/"))
    return _templates.get_template(template_name).render(**context)


def build_message(
    to: str | Sequence[str],
    subject: str,
    html: str,
    *,
    text: str | None = None,
    sender: str | None = None,
) -> dict[str, Any]:
    """Return a message dict; ``from`` is left to the sending ``Mailer`` unless given."""
    message: dict[str, Any] = {
        "to": [to] if isinstance(to, str) else list(to),
        "subject": subject,
        "html": html,
    }
    if sender:
        message["from"] = sender
    if text:
        message["text"] = text
    return message


class Mailer:
    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        sender: str | None = None,
        audience_id: str | None = None,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_key = settings.email_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.email_api_url).rstrip("/")
        self.sender = sender or settings.email_from
        self.audience_id = settings.email_audience_id if audience_id is None else audience_id
        self._client = client or httpx.Client(timeout=timeout)
        self._logger = logging.getLogger(__name__)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, payload: Any, *, action: str) -> Any:
        if not self.configured:
            raise MailerError("Email API key is not configured")
        try:
            response = self._client.post(
                f"{self.base_url}{path}", json=payload, headers=self._headers()
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise MailerError(
                f"{action} failed: {exc.response.status_code}",
                status_code=exc.response.status_code,
                details=exc.response.text,
            ) from exc
        except httpx.HTTPError as exc:
            raise MailerError(f"{action} failed: {exc}") from exc
        try:
            return response.json()
        except ValueError:
            return {}

    def send(self, message: dict[str, Any]) -> dict[str, Any]:
        """Send one message and return the provider response (``{"id": ...}``)."""
        payload = {"from": self.sender, **message}
        data = self._post("/emails", payload, action="Email send")
        self._logger.info("Sent email %r to %s", payload.get("subject"), payload.get("to"))
        return data

    def send_batch(self, messages: Sequence[dict[str, Any]]) -> dict[str, Any]:
        if not messages:
            return {"data": []}
        if len(messages) > MAX_BATCH_SIZE:
            raise MailerError(
                f"Batch of {len(messages)} exceeds the {MAX_BATCH_SIZE} message limit"
            )
        payload = [{"from": self.sender, **message} for message in messages]
        data = self._post("/emails/batch", payload, action="Batch email send")
        self._logger.info("Sent batch of %s emails", len(payload))
        return data

    def add_contact(
        self,
        *,
        email: str,
        first_name: str,
        last_name: str,
        unsubscribed: bool = False,
    ) -> dict[str, Any]:
        if not self.audience_id:
            raise MailerError("Email audience is not configured")
        payload = {
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "unsubscribed": unsubscribed,
        }
        return self._post(
            f"/audiences/{self.audience_id}/contacts", payload, action="Contact create"
        )

    # -------- composed messages --------

    def send_verification_email(self, email: str, token: str) -> dict[str, Any]:
        html = render_email("verification.html", token=token)
        return self.send(build_message(email, "Verify your email - NGEvent", html))

    def send_password_reset_email(self, email: str, token: str) -> dict[str, Any]:
        html = render_email("password_reset.html", token=token)
        return self.send(build_message(email, "Reset your password - NGEvent", html))

    def send_welcome_email(self, email: str, full_name: str | None) -> dict[str, Any]:
        html = render_email("welcome.html", full_name=full_name or "there")
        return self.send(build_message(email, "Welcome to NGEvent!", html))

    def send_registration_email(
        self,
        email: str,
        *,
        full_name: str | None,
        event: Any,
        organizer_name: str | None,
    ) -> dict[str, Any]:
        html = render_email(
            "registration_confirmation.html",
            full_name=full_name or "there",
            event=event,
            organizer_name=organizer_name,
        )
        return self.send(
            build_message(email, f"Registration confirmed: {event.title}", html)
        )
