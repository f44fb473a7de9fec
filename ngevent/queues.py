"""Publishing jobs to a hosted HTTP message queue and verifying deliveries.

The queue (QStash-compatible) accepts ``POST /v2/publish/<worker-url>`` and
later calls the worker URL with the same body, retrying on non-2xx answers.
Each delivery carries an ``Upstash-Signature`` header: an HS256 JWT signed with
the current or next signing key whose ``sub`` is the worker URL and whose
``body`` claim is the base64url SHA-256 digest of the raw request body.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from typing import Any

import httpx
import jwt

from .config import settings

SIGNATURE_HEADER = "upstash-signature"


class QueueError(Exception):
    """Raised when publishing to the queue fails."""

    def __init__(self, message: str, *, status_code: int | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class SignatureError(Exception):
    """Raised when a delivery signature does not verify."""


def body_digest(body: bytes) -> str:
    digest = hashlib.sha256(body).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class QueueClient:
    def __init__(
        self,
        token: str | None = None,
        *,
        base_url: str | None = None,
        retries: int | None = None,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.token = settings.queue_token if token is None else token
        self.base_url = (base_url or settings.queue_api_url).rstrip("/")
        self.retries = settings.queue_retries if retries is None else retries
        self._client = client or httpx.Client(timeout=timeout)
        self._logger = logging.getLogger(__name__)

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def publish_json(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        """Publish ``body`` for delivery to ``url``; returns ``{"messageId": ...}``."""
        if not self.configured:
            raise QueueError("Queue token is not configured")
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Upstash-Retries": str(self.retries),
        }
        try:
            response = self._client.post(
                f"{self.base_url}/v2/publish/{url}", json=body, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise QueueError(
                f"Queue publish failed: {exc.response.status_code}",
                status_code=exc.response.status_code,
                details=exc.response.text,
            ) from exc
        except httpx.HTTPError as exc:
            raise QueueError(f"Queue publish failed: {exc}") from exc
        data = response.json()
        self._logger.info("Published queue message %s to %s", data.get("messageId"), url)
        return data


class SignatureVerifier:
    def __init__(
        self,
        current_key: str | None = None,
        next_key: str | None = None,
    ) -> None:
        self.current_key = (
            settings.queue_current_signing_key if current_key is None else current_key
        )
        self.next_key = settings.queue_next_signing_key if next_key is None else next_key

    @property
    def configured(self) -> bool:
        return bool(self.current_key or self.next_key)

    def verify(self, signature: str, body: bytes, *, url: str | None = None) -> dict:
        """Return the verified claims or raise ``SignatureError``."""
        last_error: Exception | None = None
        for key in (self.current_key, self.next_key):
            if not key:
                continue
            try:
                claims = jwt.decode(
                    signature,
                    key,
                    algorithms=["HS256"],
                    options={"verify_aud": False},
                    leeway=5,
                )
            except jwt.InvalidTokenError as exc:
                last_error = exc
                continue
            if url and claims.get("sub") != url:
                raise SignatureError("Signature subject does not match the worker URL")
            if claims.get("body", "").rstrip("=") != body_digest(body):
                raise SignatureError("Signature body hash mismatch")
            return claims
        raise SignatureError(f"Invalid signature: {last_error or 'no signing key'}")
