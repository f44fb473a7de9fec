"""Server-side verification of human-check tokens."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx
from starlette.requests import Request

from .config import settings


@dataclass
class VerificationResult:
    success: bool
    error: str | None = None
    error_codes: list[str] = field(default_factory=list)


def get_client_ip(request: Request) -> str | None:
    """Return the first forwarded address, falling back to the socket peer."""
    forwarded = request.headers.get("x-forwarded-for") or ""
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


class HumanVerifier:
    """Thin client for a Turnstile-compatible ``siteverify`` endpoint.

    ``verify`` never raises: every failure, including network errors, is
    reported through ``VerificationResult.error`` so handlers can answer 403.
    """

    def __init__(
        self,
        secret: str | None = None,
        *,
        verify_url: str | None = None,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.secret = settings.turnstile_secret_key if secret is None else secret
        self.verify_url = verify_url or settings.turnstile_verify_url
        self._client = client or httpx.Client(timeout=timeout)
        self._logger = logging.getLogger(__name__)

    @property
    def configured(self) -> bool:
        return bool(self.secret)

    def verify(self, token: str | None, remote_ip: str | None = None) -> VerificationResult:
        if not token:
            return VerificationResult(success=False, error="missing-turnstile-token")
        if not self.secret:
            return VerificationResult(success=False, error="turnstile-secret-missing")

        form = {"secret": self.secret, "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip
        try:
            response = self._client.post(self.verify_url, data=form)
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._logger.warning("Human verification request failed: %s", exc)
            return VerificationResult(success=False, error=str(exc) or "network-error")

        if data.get("success"):
            return VerificationResult(success=True)
        codes = list(data.get("error-codes") or [])
        return VerificationResult(
            success=False,
            error=codes[0] if codes else "turnstile-verify-failed",
            error_codes=codes,
        )
