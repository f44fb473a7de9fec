"""Password hashing, access tokens and the optional Basic-auth gate."""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
from datetime import timedelta

import bcrypt
import jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from .config import settings
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")

JWT_ALGORITHM = "HS256"
MIN_PASSWORD_LENGTH = 6
MIN_RESET_PASSWORD_LENGTH = 8


class TokenError(Exception):
    """Raised when an access token cannot be decoded."""


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(
    *,
    user_id: str,
    email: str,
    expires_in: timedelta | None = None,
    secret: str | None = None,
) -> str:
    now = utcnow()
    payload = {
        "id": user_id,
        "email": email,
        "iat": now,
        "exp": now + (expires_in or settings.jwt_lifetime),
    }
    return jwt.encode(payload, secret or settings.jwt_secret, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str, *, secret: str | None = None) -> dict:
    """Return the token claims or raise ``TokenError``."""
    try:
        claims = jwt.decode(
            token, secret or settings.jwt_secret, algorithms=[JWT_ALGORITHM]
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise TokenError("Invalid token") from exc
    if not claims.get("id"):
        raise TokenError("Invalid token")
    return claims


def _parse_basic_credentials(raw: str | None) -> tuple[str, str] | None:
    value = (raw or "").strip()
    if value.lower().startswith("basic "):
        value = value[6:].strip()
    if not value:
        return None
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


def _matches_prefix(path: str, prefixes: list[str]) -> bool:
    return any(path == prefix or path.startswith(prefix.rstrip("/") + "/") for prefix in prefixes)


class BasicAuthGate(BaseHTTPMiddleware):
    """Require Basic credentials on API paths when the gate is enabled."""

    def __init__(self, app, *, config=None):
        super().__init__(app)
        self._config = config

    @property
    def config(self):
        return self._config or settings

    def _is_protected(self, path: str) -> bool:
        config = self.config
        if _matches_prefix(path, config.basic_auth_exempt):
            return False
        protected = config.basic_auth_protected or ["/api"]
        return _matches_prefix(path, protected)

    async def dispatch(self, request: Request, call_next):
        config = self.config
        if not config.basic_auth_enabled or not self._is_protected(request.url.path):
            return await call_next(request)
        if not config.basic_auth_username or not config.basic_auth_password:
            logger.error("Basic auth gate is enabled but credentials are not configured")
            return JSONResponse(
                {"detail": "API authentication is not configured"}, status_code=503
            )
        raw = request.headers.get(config.basic_auth_header)
        if raw is None:
            authorization = request.headers.get("authorization") or ""
            raw = authorization if authorization.lower().startswith("basic ") else None
        credentials = _parse_basic_credentials(raw)
        if credentials is None:
            return JSONResponse(
                {"detail": "API credentials required"},
                status_code=401,
                headers={"WWW-Authenticate": 'Basic realm="ngevent-api"'},
            )
        username, password = credentials
        valid_user = hmac.compare_digest(
            username.encode("utf-8"), config.basic_auth_username.encode("utf-8")
        )
        valid_password = hmac.compare_digest(
            password.encode("utf-8"), config.basic_auth_password.encode("utf-8")
        )
        if not (valid_user and valid_password):
            return JSONResponse({"detail": "Invalid API credentials"}, status_code=401)
        return await call_next(request)
