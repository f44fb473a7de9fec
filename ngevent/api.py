"""FastAPI application for Ngevent."""

from __future__ import annotations

import calendar as calendar_module
import json
import logging
import secrets
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any, Callable
import tomllib

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from markupsafe import escape
from pydantic import BaseModel, Field
from sqlalchemy import func, or_, select, text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .broadcast import broadcast_history, send_broadcast
from .cache import events_cache, make_key
from .config import settings
from .crud import (
    active_registration_count,
    add_speaker,
    count_admins,
    create_event,
    create_notification,
    create_user,
    get_registration,
    get_user_by_email,
    has_sent_email,
    list_events,
    mark_all_notifications_read,
    missing_profile_fields,
    missing_required_answers,
    record_email_log,
    register_user,
    registration_counts,
    replace_form_fields,
    set_registration_status,
    set_role,
    update_event,
    update_profile,
    update_speaker,
)
from .database import SessionLocal, get_session
from .ics import generate_calendar, generate_ics
from .mailer import Mailer, MailerError, build_message
from .models import (
    EVENT_STATUSES,
    ROLES,
    BroadcastHistory,
    EmailTemplate,
    Event,
    FormField,
    Notification,
    Profile,
    Registration,
    Speaker,
    User,
)
from .queues import SIGNATURE_HEADER, SignatureError, SignatureVerifier, QueueClient
from .ratelimit import RateLimiter
from .scheduler import start_scheduler, stop_scheduler
from .security import (
    MIN_PASSWORD_LENGTH,
    MIN_RESET_PASSWORD_LENGTH,
    BasicAuthGate,
    TokenError,
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)
from .storage import init_db
from .turnstile import HumanVerifier, get_client_ip
from .uploads import FOLDERS, UploadError, UploadSigner
from .utils import (
    fill_template_placeholders,
    format_event_date,
    is_valid_email,
    is_valid_event_id,
    normalize_email,
    parse_iso_datetime,
    utcnow,
)

# Use uvicorn's error logger so messages get the level prefix in the default log
# format (needed for downstream filtering like Loki).
logger = logging.getLogger("uvicorn.error")

STARTED_AT = time.monotonic()
EVENT_CACHE_CONTROL = "public, s-maxage=60, stale-while-revalidate=30"
HUMAN_COOKIE = "human_verified"
HUMAN_COOKIE_SECONDS = 5 * 60
UPCOMING_LIMIT = 5


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("ngevent")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="Ngevent", version=APP_VERSION, lifespan=lifespan)
app.add_middleware(BasicAuthGate)
if settings.cors_origin_list:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# -------- error handling --------


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    headers = getattr(exc, "headers", None)
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code, headers=headers)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "Database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        return JSONResponse(
            {"detail": "The database is busy at the moment. Please try again."},
            status_code=503,
        )
    logger.error(
        "Operational database error on %s %s: %s",
        request.method,
        request.url.path,
        raw,
    )
    return JSONResponse({"detail": "We hit a database issue. Please try again."}, status_code=500)


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning(
        "Integrity error on %s %s: %s", request.method, request.url.path, exc.orig
    )
    return JSONResponse(
        {"detail": "The request conflicts with existing data"}, status_code=409
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


# -------- dependencies --------


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@lru_cache
def get_mailer() -> Mailer:
    return Mailer()


@lru_cache
def get_queue() -> QueueClient:
    return QueueClient()


@lru_cache
def get_rate_limiter() -> RateLimiter:
    return RateLimiter()


@lru_cache
def get_human_verifier() -> HumanVerifier:
    return HumanVerifier()


@lru_cache
def get_upload_signer() -> UploadSigner:
    return UploadSigner()


@lru_cache
def get_signature_verifier() -> SignatureVerifier:
    return SignatureVerifier()


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    token = _get_bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    try:
        claims = decode_access_token(token)
    except TokenError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    user = db.get(User, claims["id"])
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_roles(*roles: str) -> Callable[..., User]:
    allowed = set(roles)

    def dependency(user: User = Depends(get_current_user)) -> User:
        if not user.profile:
            raise HTTPException(status_code=404, detail="Profile not found")
        if user.profile.role not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


require_organizer = require_roles("organizer", "admin")
require_admin = require_roles("admin")


def _is_admin(user: User) -> bool:
    return bool(user.profile and user.profile.role == "admin")


def _ensure_event(db: Session, event_id: str) -> Event:
    event = db.get(Event, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


def _require_event_manager(event: Event, user: User) -> None:
    if event.organizer_id != user.id and not _is_admin(user):
        raise HTTPException(
            status_code=403, detail="You are not the organizer of this event"
        )


def _invalidate_event_cache() -> None:
    events_cache.invalidate("event")


def _parse_datetime_field(name: str, raw: str | None) -> datetime | None:
    if raw is None:
        return None
    try:
        return parse_iso_datetime(raw)
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail=f"Invalid {name}; use ISO8601 format"
        ) from exc


def _value_error(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


# -------- email delivery --------


def _deliver_email(
    mailer: Mailer,
    *,
    email_type: str,
    recipient: str,
    subject: str,
    send: Callable[[], dict],
    user_id: str | None = None,
) -> str:
    """Send an email and record the outcome; failures are logged, not raised."""
    error_message = None
    details = None
    if not mailer.configured:
        logger.info("Email API not configured; skipping %s email", email_type)
        status = "skipped"
    else:
        try:
            data = send() or {}
            status = "sent"
            details = {"provider_id": data.get("id")}
        except MailerError as exc:
            logger.error("Failed to send %s email: %s", email_type, exc)
            status = "failed"
            error_message = str(exc)
    with get_session() as session:
        record_email_log(
            session,
            email_type=email_type,
            recipient_email=recipient,
            subject=subject,
            status=status,
            user_id=user_id,
            error_message=error_message,
            details=details,
        )
    return status


# -------- serializers --------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialize_profile(profile: Profile | None):
    if profile is None:
        return None
    return {
        "id": profile.id,
        "full_name": profile.full_name,
        "phone": profile.phone,
        "institution": profile.institution,
        "position": profile.position,
        "city": profile.city,
        "role": profile.role,
        "auth_provider": profile.auth_provider,
        "avatar_url": profile.avatar_url,
        "created_at": _iso(profile.created_at),
    }


def _serialize_user(user: User):
    return {
        "id": user.id,
        "email": user.email,
        "is_verified": user.is_verified,
        "created_at": _iso(user.created_at),
        "profile": _serialize_profile(user.profile),
    }


def _serialize_speaker(speaker: Speaker):
    return {
        "id": speaker.id,
        "event_id": speaker.event_id,
        "name": speaker.name,
        "title": speaker.title,
        "company": speaker.company,
        "bio": speaker.bio,
        "photo_url": speaker.photo_url,
        "linkedin_url": speaker.linkedin_url,
        "twitter_url": speaker.twitter_url,
        "website_url": speaker.website_url,
        "order_index": speaker.order_index,
    }


def _serialize_form_field(field: FormField):
    return {
        "id": field.id,
        "event_id": field.event_id,
        "field_name": field.field_name,
        "field_type": field.field_type,
        "is_required": field.is_required,
        "options": field.options,
        "order_index": field.order_index,
    }


def _serialize_event(
    event: Event,
    *,
    registration_count: int | None = None,
    include_speakers: bool = True,
    include_form_fields: bool = False,
):
    organizer_profile = event.organizer.profile if event.organizer else None
    payload = {
        "id": event.id,
        "uuid": event.uuid,
        "organizer_id": event.organizer_id,
        "organizer_name": organizer_profile.full_name if organizer_profile else None,
        "organizer_avatar_url": organizer_profile.avatar_url if organizer_profile else None,
        "title": event.title,
        "description": event.description,
        "start_date": _iso(event.start_date),
        "end_date": _iso(event.end_date),
        "location": event.location,
        "image_url": event.image_url,
        "capacity": event.capacity,
        "registration_fee": float(event.registration_fee or 0),
        "status": event.status,
        "category": event.category,
        "registration_count": (
            registration_count
            if registration_count is not None
            else event.active_registration_count
        ),
        "created_at": _iso(event.created_at),
        "updated_at": _iso(event.updated_at),
    }
    if include_speakers:
        payload["speakers"] = [_serialize_speaker(s) for s in event.speakers]
    if include_form_fields:
        payload["form_fields"] = [_serialize_form_field(f) for f in event.form_fields]
    return payload


def _serialize_event_summary(event: Event):
    return {
        "id": event.id,
        "title": event.title,
        "start_date": _iso(event.start_date),
        "end_date": _iso(event.end_date),
        "location": event.location,
        "image_url": event.image_url,
        "status": event.status,
        "category": event.category,
    }


def _serialize_registration(
    registration: Registration,
    *,
    include_event: bool = False,
    include_user: bool = False,
):
    payload = {
        "id": registration.id,
        "event_id": registration.event_id,
        "user_id": registration.user_id,
        "status": registration.status,
        "registration_data": registration.registration_data,
        "registered_at": _iso(registration.registered_at),
    }
    if include_event and registration.event:
        payload["event"] = _serialize_event_summary(registration.event)
    if include_user and registration.user:
        profile = registration.user.profile
        payload["user"] = {
            "email": registration.user.email,
            "full_name": profile.full_name if profile else None,
            "phone": profile.phone if profile else None,
            "institution": profile.institution if profile else None,
            "position": profile.position if profile else None,
            "city": profile.city if profile else None,
        }
    return payload


def _serialize_notification(notification: Notification):
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "event_id": notification.event_id,
        "title": notification.title,
        "message": notification.message,
        "type": notification.type,
        "read": notification.read,
        "created_at": _iso(notification.created_at),
    }


def _serialize_broadcast(history: BroadcastHistory):
    return {
        "id": history.id,
        "event_id": history.event_id,
        "subject": history.subject,
        "message": history.message,
        "recipient_count": history.recipient_count,
        "status": history.status,
        "method": history.method,
        "sent_at": _iso(history.sent_at),
    }


# -------- payloads --------


class RegisterPayload(BaseModel):
    email: str
    password: str
    full_name: str | None = None
    phone: str | None = None
    institution: str | None = None
    position: str | None = None
    city: str | None = None
    cf_turnstile_token: str | None = None
    website: str | None = Field(None, description="Honeypot; must stay empty")


class LoginPayload(BaseModel):
    email: str
    password: str


class TokenPayload(BaseModel):
    token: str


class ForgotPasswordPayload(BaseModel):
    email: str


class ResetPasswordPayload(BaseModel):
    token: str
    new_password: str


class VerifyHumanPayload(BaseModel):
    cf_turnstile_token: str | None = None
    email: str | None = None


class ProfileUpdatePayload(BaseModel):
    full_name: str | None = None
    phone: str | None = None
    institution: str | None = None
    position: str | None = None
    city: str | None = None
    avatar_url: str | None = None


class EventCreatePayload(BaseModel):
    title: str
    description: str | None = None
    start_date: str = Field(..., description="ISO datetime string")
    end_date: str = Field(..., description="ISO datetime string after start_date")
    location: str | None = None
    image_url: str | None = None
    capacity: int | None = Field(None, ge=1)
    registration_fee: float | None = Field(0, ge=0)
    status: str = "draft"
    category: str | None = None


class EventUpdatePayload(BaseModel):
    title: str | None = None
    description: str | None = None
    start_date: str | None = Field(None, description="ISO datetime string")
    end_date: str | None = Field(None, description="ISO datetime string")
    location: str | None = None
    image_url: str | None = None
    capacity: int | None = Field(None, ge=1)
    registration_fee: float | None = Field(None, ge=0)
    status: str | None = None
    category: str | None = None


class SpeakerPayload(BaseModel):
    name: str
    title: str | None = None
    company: str | None = None
    bio: str | None = None
    photo_url: str | None = None
    linkedin_url: str | None = None
    twitter_url: str | None = None
    website_url: str | None = None
    order_index: int | None = None


class SpeakerUpdatePayload(BaseModel):
    name: str | None = None
    title: str | None = None
    company: str | None = None
    bio: str | None = None
    photo_url: str | None = None
    linkedin_url: str | None = None
    twitter_url: str | None = None
    website_url: str | None = None
    order_index: int | None = None


class SpeakersBulkPayload(BaseModel):
    event_id: str
    speakers: list[SpeakerPayload]


class FormFieldPayload(BaseModel):
    field_name: str
    field_type: str = "text"
    is_required: bool = False
    options: list[str] | None = None
    order_index: int | None = None


class FormFieldsBulkPayload(BaseModel):
    event_id: str
    fields: list[FormFieldPayload]


class RegistrationCreatePayload(BaseModel):
    event_id: str
    registration_data: dict[str, Any] | None = None


class RegistrationStatusPayload(BaseModel):
    status: str


class BroadcastPayload(BaseModel):
    subject: str | None = None
    message: str | None = None


class AdminUserUpdatePayload(BaseModel):
    role: str | None = None
    full_name: str | None = None
    avatar_url: str | None = None
    is_verified: bool | None = None


class EmailWebhookPayload(BaseModel):
    type: str | None = None
    user_id: str | None = None
    email: str | None = None
    name: str | None = None
    event_id: str | None = None
    event_title: str | None = None
    event_date: str | None = None
    event_location: str | None = None
    organizer_name: str | None = None


class ContactPayload(BaseModel):
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    unsubscribed: bool = False


# -------- health --------


@app.get("/api/health")
def health():
    return {
        "status": "ok",
        "version": APP_VERSION,
        "timestamp": utcnow().isoformat(),
        "uptime": round(time.monotonic() - STARTED_AT, 3),
    }


@app.get("/api/health/db")
def health_db():
    started = time.monotonic()
    try:
        with SessionLocal() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Database health check failed: %s", exc)
        return JSONResponse(
            {"status": "error", "database": "unreachable"}, status_code=503
        )
    return {
        "status": "ok",
        "database": "reachable",
        "latency_ms": round((time.monotonic() - started) * 1000, 2),
    }


# -------- auth --------


def _rate_limit_or_429(limiter: RateLimiter, key: str, per_minute: int) -> None:
    result = limiter.limit(key, per_minute)
    if not result.success:
        retry_after = max(int(result.reset - time.time()), 1)
        raise HTTPException(
            status_code=429,
            detail="too-many-requests",
            headers={"Retry-After": str(retry_after)},
        )


def _verify_human_or_403(
    verifier: HumanVerifier, token: str | None, ip: str | None
) -> None:
    result = verifier.verify(token, ip)
    if not result.success:
        raise HTTPException(
            status_code=403,
            detail={"message": "human-verification-failed", "error": result.error},
        )


def _check_honeypot(value: str | None) -> None:
    if value and value.strip():
        raise HTTPException(status_code=400, detail="bot-detected")


def _validate_credentials(email: str, password: str) -> None:
    if not is_valid_email(email):
        raise HTTPException(status_code=400, detail="Invalid email address")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
        )


def _auth_response(user: User):
    token = create_access_token(user_id=user.id, email=user.email)
    return {"token": token, "user": _serialize_user(user)}


@app.post("/api/auth/register", status_code=201)
def register(
    payload: RegisterPayload,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
    verifier: HumanVerifier = Depends(get_human_verifier),
    mailer: Mailer = Depends(get_mailer),
):
    _check_honeypot(payload.website)
    email = normalize_email(payload.email)
    ip = get_client_ip(request)
    if verifier.configured:
        _verify_human_or_403(verifier, payload.cf_turnstile_token, ip)
    _rate_limit_or_429(
        limiter, f"reg:{ip or 'noip'}:{email}", settings.registration_rate_per_minute
    )
    _validate_credentials(email, payload.password)
    if get_user_by_email(db, email):
        raise HTTPException(status_code=400, detail="User already exists")

    user = create_user(
        db,
        email=email,
        password_hash=hash_password(payload.password),
        full_name=payload.full_name,
        phone=payload.phone,
        institution=payload.institution,
        position=payload.position,
        city=payload.city,
    )
    token = user.verification_token
    # Background email logging opens its own session; release the write lock first.
    db.commit()
    background_tasks.add_task(
        _deliver_email,
        mailer,
        email_type="verification",
        recipient=email,
        subject="Verify your email - NGEvent",
        send=lambda: mailer.send_verification_email(email, token),
        user_id=user.id,
    )
    logger.info("Registered new user %s", user.id)
    return _auth_response(user)


@app.post("/api/auth/send-confirmation")
def send_confirmation(
    payload: RegisterPayload,
    request: Request,
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
    verifier: HumanVerifier = Depends(get_human_verifier),
    mailer: Mailer = Depends(get_mailer),
):
    """Guarded sign-up that emails the verification link before answering."""
    if not payload.email or not payload.password:
        raise HTTPException(status_code=400, detail="email and password are required")
    _check_honeypot(payload.website)
    email = normalize_email(payload.email)
    ip = get_client_ip(request)
    _verify_human_or_403(verifier, payload.cf_turnstile_token, ip)
    _rate_limit_or_429(
        limiter, f"reg:{ip or 'noip'}:{email}", settings.registration_rate_per_minute
    )

    fail_key = f"regfail:{ip or 'noip'}:{email}"
    remaining = limiter.get_lock_seconds(f"{fail_key}:lock")
    if remaining > 0:
        raise HTTPException(
            status_code=423, detail={"message": "locked", "lock_remaining": remaining}
        )

    try:
        _validate_credentials(email, payload.password)
        user = create_user(
            db,
            email=email,
            password_hash=hash_password(payload.password),
            full_name=payload.full_name,
        )
    except (HTTPException, ValueError) as exc:
        message = exc.detail if isinstance(exc, HTTPException) else str(exc)
        limiter.incr_fail_and_maybe_lock(
            fail_key, settings.login_max_failures, settings.login_lock_seconds
        )
        remaining = limiter.get_lock_seconds(f"{fail_key}:lock")
        raise HTTPException(
            status_code=423 if remaining > 0 else 400,
            detail={"message": message, "lock_remaining": remaining},
        ) from exc

    verify_url = f"{settings.site_url.rstrip('/')}/verify-email?token={user.verification_token}"
    try:
        data = mailer.send_verification_email(email, user.verification_token)
    except MailerError as exc:
        logger.error("Verification email for %s failed: %s", user.id, exc)
        record_email_log(
            db,
            email_type="verification",
            recipient_email=email,
            subject="Verify your email - NGEvent",
            status="failed",
            user_id=user.id,
            error_message=str(exc),
        )
        return JSONResponse(
            {"detail": "Failed to send email", "provider": exc.details}, status_code=502
        )
    record_email_log(
        db,
        email_type="verification",
        recipient_email=email,
        subject="Verify your email - NGEvent",
        status="sent",
        user_id=user.id,
        details={"provider_id": data.get("id")},
    )
    return {"success": True, "verify_url": verify_url, "provider_id": data.get("id")}


@app.post("/api/auth/login")
def login(
    payload: LoginPayload,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
    mailer: Mailer = Depends(get_mailer),
):
    email = normalize_email(payload.email)
    ip = get_client_ip(request)
    fail_key = f"loginfail:{ip or 'noip'}:{email}"
    remaining = limiter.get_lock_seconds(f"{fail_key}:lock")
    if remaining > 0:
        raise HTTPException(
            status_code=423,
            detail={"message": "Too many failed attempts", "lock_remaining": remaining},
        )

    user = get_user_by_email(db, email)
    if not user or not verify_password(payload.password, user.password_hash):
        result = limiter.incr_fail_and_maybe_lock(
            fail_key, settings.login_max_failures, settings.login_lock_seconds
        )
        if result.locked:
            raise HTTPException(
                status_code=423,
                detail={
                    "message": "Too many failed attempts",
                    "lock_remaining": limiter.get_lock_seconds(f"{fail_key}:lock"),
                },
            )
        raise HTTPException(status_code=401, detail="Invalid credentials")

    limiter.reset_failures(fail_key)
    profile = user.profile
    if profile and not profile.welcome_email_sent:
        profile.welcome_email_sent = True
        db.add(profile)
        full_name = profile.full_name
        db.commit()
        background_tasks.add_task(
            _deliver_email,
            mailer,
            email_type="welcome_email",
            recipient=user.email,
            subject="Welcome to NGEvent!",
            send=lambda: mailer.send_welcome_email(user.email, full_name),
            user_id=user.id,
        )
    return _auth_response(user)


@app.post("/api/auth/verify-email")
def verify_email(payload: TokenPayload, db: Session = Depends(get_db)):
    user = db.scalars(
        select(User).where(User.verification_token == payload.token)
    ).first()
    if not user:
        raise HTTPException(status_code=400, detail="Invalid verification token")
    user.is_verified = True
    user.verification_token = None
    db.add(user)
    return {"message": "Email verified successfully"}


@app.post("/api/auth/forgot-password")
def forgot_password(
    payload: ForgotPasswordPayload,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    message = {"message": "If the email exists, a password reset link has been sent"}
    user = get_user_by_email(db, payload.email)
    if not user:
        return message
    token = secrets.token_urlsafe(32)
    user.reset_password_token = token
    user.reset_password_expires = utcnow() + timedelta(hours=settings.password_reset_hours)
    db.add(user)
    email = user.email
    db.commit()
    background_tasks.add_task(
        _deliver_email,
        mailer,
        email_type="password_reset",
        recipient=email,
        subject="Reset your password - NGEvent",
        send=lambda: mailer.send_password_reset_email(email, token),
        user_id=user.id,
    )
    return message


@app.post("/api/auth/reset-password")
def reset_password(payload: ResetPasswordPayload, db: Session = Depends(get_db)):
    user = db.scalars(
        select(User).where(User.reset_password_token == payload.token)
    ).first()
    if (
        not user
        or not user.reset_password_expires
        or user.reset_password_expires < utcnow()
    ):
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")
    if len(payload.new_password or "") < MIN_RESET_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {MIN_RESET_PASSWORD_LENGTH} characters",
        )
    user.password_hash = hash_password(payload.new_password)
    user.reset_password_token = None
    user.reset_password_expires = None
    db.add(user)
    return {"message": "Password reset successfully"}


@app.post("/api/auth/refresh")
def refresh_token(payload: TokenPayload, db: Session = Depends(get_db)):
    try:
        claims = decode_access_token(payload.token)
    except TokenError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    user = db.get(User, claims["id"])
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return {"token": create_access_token(user_id=user.id, email=user.email)}


@app.get("/api/auth/me")
def me(user: User = Depends(get_current_user)):
    return _serialize_user(user)


@app.post("/api/auth/verify-human")
def verify_human(
    payload: VerifyHumanPayload,
    request: Request,
    response: Response,
    limiter: RateLimiter = Depends(get_rate_limiter),
    verifier: HumanVerifier = Depends(get_human_verifier),
):
    ip = get_client_ip(request)
    email = normalize_email(payload.email) or "none"
    _rate_limit_or_429(
        limiter, f"vh:{ip or 'noip'}:{email}", settings.verify_human_rate_per_minute
    )
    _verify_human_or_403(verifier, payload.cf_turnstile_token, ip)
    response.set_cookie(
        HUMAN_COOKIE,
        "1",
        max_age=HUMAN_COOKIE_SECONDS,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )
    return {"success": True}


# -------- profiles --------


@app.get("/api/profile/me")
def get_my_profile(user: User = Depends(get_current_user)):
    if not user.profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return {**_serialize_profile(user.profile), "email": user.email}


@app.put("/api/profile/me")
def update_my_profile(
    payload: ProfileUpdatePayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not user.profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    data = payload.model_dump(exclude_unset=True)
    profile = update_profile(db, user.profile, **data)
    _invalidate_event_cache()
    return {**_serialize_profile(profile), "email": user.email}


@app.get("/api/profile/{profile_id}")
def get_profile(
    profile_id: str,
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    profile = db.get(Profile, profile_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return _serialize_profile(profile)


# -------- events --------


def _events_page(
    db: Session,
    *,
    status: str | None,
    category: str | None,
    search: str | None,
    limit: int,
    offset: int,
    organizer_id: str | None = None,
):
    if status and status != "all" and status not in EVENT_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid event status")
    events, total = list_events(
        db,
        status=status,
        category=category,
        search=search,
        organizer_id=organizer_id,
        limit=limit,
        offset=offset,
    )
    counts = registration_counts(db, [e.id for e in events])
    return {
        "events": [
            _serialize_event(e, registration_count=counts.get(e.id, 0)) for e in events
        ],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@app.get("/api/events")
def api_list_events(
    response: Response,
    status: str = Query("published"),
    category: str | None = Query(None),
    search: str | None = Query(None),
    limit: int = Query(settings.events_per_page, ge=1),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    limit = min(limit, settings.max_events_per_page)
    key = make_key(
        "events", status=status, category=category, search=search, limit=limit, offset=offset
    )
    response.headers["Cache-Control"] = EVENT_CACHE_CONTROL
    cached = events_cache.get(key)
    if cached is not None:
        response.headers["X-Cache"] = "HIT"
        return cached
    payload = _events_page(
        db, status=status, category=category, search=search, limit=limit, offset=offset
    )
    events_cache.set(key, payload)
    response.headers["X-Cache"] = "MISS"
    return payload


@app.get("/api/events/mine")
def api_my_events(
    status: str = Query("all"),
    category: str | None = Query(None),
    search: str | None = Query(None),
    limit: int = Query(settings.events_per_page, ge=1),
    offset: int = Query(0, ge=0),
    user: User = Depends(require_organizer),
    db: Session = Depends(get_db),
):
    return _events_page(
        db,
        status=status,
        category=category,
        search=search,
        limit=min(limit, settings.max_events_per_page),
        offset=offset,
        organizer_id=user.id,
    )


@app.get("/api/events/category/{category}")
def api_events_by_category(
    category: str,
    limit: int = Query(settings.events_per_page, ge=1),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    return _events_page(
        db,
        status="published",
        category=category,
        search=None,
        limit=min(limit, settings.max_events_per_page),
        offset=offset,
    )


@app.get("/api/events/{event_id}")
def api_get_event(event_id: str, response: Response, db: Session = Depends(get_db)):
    key = f"event:{event_id}"
    response.headers["Cache-Control"] = EVENT_CACHE_CONTROL
    cached = events_cache.get(key)
    if cached is not None:
        response.headers["X-Cache"] = "HIT"
        return cached
    event = _ensure_event(db, event_id)
    payload = _serialize_event(event, include_form_fields=True)
    events_cache.set(key, payload)
    response.headers["X-Cache"] = "MISS"
    return payload


@app.get("/api/events/{event_id}/registrations/count")
def api_event_registration_count(event_id: str, db: Session = Depends(get_db)):
    _ensure_event(db, event_id)
    return {"event_id": event_id, "count": active_registration_count(db, event_id)}


@app.get("/api/events/{event_id}/event.ics")
def api_get_event_ics(event_id: str, db: Session = Depends(get_db)):
    """Serve an event as a downloadable ICS file."""

    event = _ensure_event(db, event_id)
    ics_text = generate_ics(event, site_url=settings.site_url)
    filename = f"event_{event_id}.ics"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=ics_text, media_type="text/calendar", headers=headers)


@app.post("/api/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload,
    user: User = Depends(require_organizer),
    db: Session = Depends(get_db),
):
    start = _parse_datetime_field("start_date", payload.start_date)
    end = _parse_datetime_field("end_date", payload.end_date)
    try:
        event = create_event(
            db,
            organizer=user,
            title=payload.title,
            description=payload.description,
            start_date=start,
            end_date=end,
            location=payload.location,
            image_url=payload.image_url,
            capacity=payload.capacity,
            registration_fee=payload.registration_fee,
            status=payload.status,
            category=payload.category,
        )
    except ValueError as exc:
        raise _value_error(exc) from exc
    _invalidate_event_cache()
    logger.info("Event %s created by %s", event.id, user.id)
    return _serialize_event(event, registration_count=0)


@app.put("/api/events/{event_id}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    uploads: UploadSigner = Depends(get_upload_signer),
):
    event = _ensure_event(db, event_id)
    _require_event_manager(event, user)
    data = payload.model_dump(exclude_unset=True)
    if "start_date" in data:
        data["start_date"] = _parse_datetime_field("start_date", data["start_date"])
    if "end_date" in data:
        data["end_date"] = _parse_datetime_field("end_date", data["end_date"])
    for required in ("title", "start_date", "end_date", "status"):
        if required in data and data[required] is None:
            raise HTTPException(status_code=400, detail=f"{required} cannot be empty")
    previous_image = event.image_url
    try:
        event = update_event(db, event, **data)
    except ValueError as exc:
        raise _value_error(exc) from exc
    if "image_url" in data and previous_image and previous_image != event.image_url:
        uploads.delete_by_url(previous_image)
    _invalidate_event_cache()
    return _serialize_event(event)


@app.delete("/api/events/{event_id}")
def api_delete_event(
    event_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    uploads: UploadSigner = Depends(get_upload_signer),
):
    event = _ensure_event(db, event_id)
    _require_event_manager(event, user)
    image_url = event.image_url
    db.delete(event)
    db.flush()
    if image_url:
        uploads.delete_by_url(image_url)
    _invalidate_event_cache()
    logger.info("Event %s deleted by %s", event_id, user.id)
    return {"message": "Event deleted successfully"}


@app.post("/api/events/{event_id}/publish")
def api_publish_event(
    event_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    if event.organizer_id != user.id:
        raise HTTPException(
            status_code=403, detail="Only the organizer can publish this event"
        )
    event = update_event(db, event, status="published")
    _invalidate_event_cache()
    return _serialize_event(event)


# -------- speakers --------


def _ensure_speaker(db: Session, event: Event, speaker_id: str) -> Speaker:
    speaker = db.get(Speaker, speaker_id)
    if not speaker or speaker.event_id != event.id:
        raise HTTPException(status_code=404, detail="Speaker not found")
    return speaker


@app.post("/api/events/{event_id}/speakers", status_code=201)
def api_add_speaker(
    event_id: str,
    payload: SpeakerPayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_event_manager(event, user)
    try:
        speaker = add_speaker(db, event, **payload.model_dump())
    except ValueError as exc:
        raise _value_error(exc) from exc
    _invalidate_event_cache()
    return _serialize_speaker(speaker)


@app.put("/api/events/{event_id}/speakers/{speaker_id}")
def api_update_speaker(
    event_id: str,
    speaker_id: str,
    payload: SpeakerUpdatePayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_event_manager(event, user)
    speaker = _ensure_speaker(db, event, speaker_id)
    try:
        speaker = update_speaker(db, speaker, **payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise _value_error(exc) from exc
    _invalidate_event_cache()
    return _serialize_speaker(speaker)


@app.delete("/api/events/{event_id}/speakers/{speaker_id}")
def api_delete_speaker(
    event_id: str,
    speaker_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_event_manager(event, user)
    speaker = _ensure_speaker(db, event, speaker_id)
    db.delete(speaker)
    _invalidate_event_cache()
    return {"message": "Speaker deleted successfully"}


@app.get("/api/speakers/{event_id}")
def api_list_speakers(event_id: str, db: Session = Depends(get_db)):
    event = _ensure_event(db, event_id)
    return [_serialize_speaker(s) for s in event.speakers]


@app.post("/api/speakers", status_code=201)
def api_create_speakers(
    payload: SpeakersBulkPayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, payload.event_id)
    _require_event_manager(event, user)
    created = []
    try:
        for speaker in payload.speakers:
            created.append(add_speaker(db, event, **speaker.model_dump()))
    except ValueError as exc:
        raise _value_error(exc) from exc
    _invalidate_event_cache()
    return [_serialize_speaker(s) for s in created]


@app.delete("/api/speakers/{event_id}")
def api_delete_speakers(
    event_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_event_manager(event, user)
    removed = len(event.speakers)
    for speaker in list(event.speakers):
        db.delete(speaker)
    _invalidate_event_cache()
    return {"message": "Speakers deleted successfully", "deleted": removed}


# -------- form fields --------


@app.get("/api/form-fields/{event_id}")
def api_list_form_fields(event_id: str, db: Session = Depends(get_db)):
    event = _ensure_event(db, event_id)
    return [_serialize_form_field(f) for f in event.form_fields]


@app.post("/api/form-fields", status_code=201)
def api_create_form_fields(
    payload: FormFieldsBulkPayload,
    user: User = Depends(require_organizer),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, payload.event_id)
    _require_event_manager(event, user)
    try:
        fields = replace_form_fields(
            db, event, [f.model_dump(exclude_none=True) for f in payload.fields]
        )
    except ValueError as exc:
        raise _value_error(exc) from exc
    _invalidate_event_cache()
    return [_serialize_form_field(f) for f in fields]


@app.delete("/api/form-fields/{event_id}")
def api_delete_form_fields(
    event_id: str,
    user: User = Depends(require_organizer),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_event_manager(event, user)
    replace_form_fields(db, event, [])
    _invalidate_event_cache()
    return {"message": "Form fields deleted successfully"}


# -------- registrations --------


@app.post("/api/registrations", status_code=201)
def api_register_for_event(
    payload: RegistrationCreatePayload,
    request: Request,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
    mailer: Mailer = Depends(get_mailer),
):
    if not is_valid_event_id(payload.event_id):
        raise HTTPException(status_code=400, detail="Invalid event ID")
    ip = get_client_ip(request)
    _rate_limit_or_429(
        limiter,
        f"evreg:{ip or 'noip'}:{user.id}",
        settings.registration_rate_per_minute,
    )
    event = _ensure_event(db, payload.event_id)
    if event.status != "published":
        raise HTTPException(status_code=400, detail="Event is not available for registration")

    existing = get_registration(db, event_id=event.id, user_id=user.id)
    if existing and existing.status != "cancelled":
        raise HTTPException(status_code=400, detail="Already registered for this event")
    if event.capacity and active_registration_count(db, event.id) >= event.capacity:
        raise HTTPException(status_code=400, detail="Event is full")

    missing = missing_profile_fields(user.profile)
    if missing:
        raise HTTPException(
            status_code=403,
            detail={
                "message": "Please complete your profile before registering",
                "missing_fields": missing,
            },
        )
    missing_answers = missing_required_answers(event.form_fields, payload.registration_data)
    if missing_answers:
        raise HTTPException(
            status_code=400,
            detail={"message": "Missing required fields", "missing_fields": missing_answers},
        )

    try:
        registration = register_user(
            db, event=event, user=user, registration_data=payload.registration_data
        )
    except ValueError as exc:
        raise _value_error(exc) from exc
    create_notification(
        db,
        user_id=user.id,
        event_id=event.id,
        title="Registration confirmed",
        message=f"You are registered for {event.title}.",
        type="registration",
    )
    _invalidate_event_cache()

    organizer_profile = event.organizer.profile if event.organizer else None
    organizer_name = organizer_profile.full_name if organizer_profile else None
    full_name = user.profile.full_name
    db.commit()
    background_tasks.add_task(
        _deliver_email,
        mailer,
        email_type="registration_confirmation",
        recipient=user.email,
        subject=f"Registration confirmed: {event.title}",
        send=lambda: mailer.send_registration_email(
            user.email, full_name=full_name, event=event, organizer_name=organizer_name
        ),
        user_id=user.id,
    )
    return _serialize_registration(registration, include_event=True)


@app.get("/api/registrations/my-events")
def api_my_registrations(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    stmt = (
        select(Registration)
        .where(Registration.user_id == user.id)
        .order_by(Registration.registered_at.desc())
    )
    return [
        _serialize_registration(r, include_event=True) for r in db.scalars(stmt).all()
    ]


@app.get("/api/registrations/previous/{event_id}")
def api_previous_registration(
    event_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    registration = get_registration(db, event_id=event_id, user_id=user.id)
    return {
        "registration": _serialize_registration(registration) if registration else None
    }


@app.get("/api/registrations/event/{event_id}")
def api_event_registrations(
    event_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_event_manager(event, user)
    stmt = (
        select(Registration)
        .where(Registration.event_id == event.id)
        .order_by(Registration.registered_at.asc())
    )
    return [
        _serialize_registration(r, include_user=True) for r in db.scalars(stmt).all()
    ]


@app.put("/api/registrations/{registration_id}/status")
def api_update_registration_status(
    registration_id: str,
    payload: RegistrationStatusPayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    registration = db.get(Registration, registration_id)
    if not registration:
        raise HTTPException(status_code=404, detail="Registration not found")
    _require_event_manager(registration.event, user)
    try:
        registration = set_registration_status(db, registration, payload.status)
    except ValueError as exc:
        raise _value_error(exc) from exc
    _invalidate_event_cache()
    return _serialize_registration(registration, include_user=True)


@app.delete("/api/registrations/{registration_id}")
def api_cancel_registration(
    registration_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    registration = db.get(Registration, registration_id)
    if not registration or registration.user_id != user.id:
        raise HTTPException(status_code=404, detail="Registration not found")
    set_registration_status(db, registration, "cancelled")
    _invalidate_event_cache()
    return {"message": "Registration cancelled successfully"}


# -------- broadcast --------


@app.post("/api/events/{event_id}/broadcast")
def api_broadcast(
    event_id: str,
    payload: BroadcastPayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    queue: QueueClient = Depends(get_queue),
):
    subject = (payload.subject or "").strip()
    message = (payload.message or "").strip()
    if not subject or not message:
        raise HTTPException(status_code=400, detail="Subject and message are required")
    event = _ensure_event(db, event_id)
    _require_event_manager(event, user)
    result = send_broadcast(
        db, event=event, subject=subject, message=message, mailer=mailer, queue=queue
    )
    logger.info(
        "Broadcast for event %s: %s recipients via %s",
        event.id,
        result.get("sent"),
        result.get("method", "none"),
    )
    return result


@app.get("/api/events/{event_id}/broadcast/history")
def api_broadcast_history(
    event_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_event_manager(event, user)
    return [_serialize_broadcast(h) for h in broadcast_history(db, event.id)]


@app.post("/api/queues/broadcast")
async def api_broadcast_worker(
    request: Request,
    mailer: Mailer = Depends(get_mailer),
    verifier: SignatureVerifier = Depends(get_signature_verifier),
):
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        if settings.is_production:
            return JSONResponse({"detail": "Missing signature"}, status_code=401)
        logger.warning("Broadcast worker called without a queue signature")
    elif verifier.configured or settings.is_production:
        # Without signing keys verify() rejects every signature.
        try:
            verifier.verify(signature, body, url=settings.broadcast_worker_url)
        except SignatureError as exc:
            logger.warning("Rejected broadcast delivery: %s", exc)
            return JSONResponse({"detail": "Invalid signature"}, status_code=401)

    try:
        data = json.loads(body or b"{}")
    except ValueError:
        return JSONResponse({"detail": "Invalid JSON body"}, status_code=400)
    batch = data.get("batch") if isinstance(data, dict) else None
    if not batch or not isinstance(batch, list):
        return {"message": "No emails to send"}

    logger.info(
        "Processing broadcast batch of %s emails for event %s",
        len(batch),
        data.get("eventTitle"),
    )
    try:
        result = mailer.send_batch(batch)
    except MailerError as exc:
        logger.error("Broadcast batch send failed: %s", exc)
        # A non-2xx answer makes the queue retry the delivery.
        return JSONResponse(
            {"detail": "Failed to send batch", "error": str(exc)}, status_code=500
        )
    return {"success": True, "message": f"Sent {len(batch)} emails", "data": result}


# -------- notifications --------


def _ensure_own_notification(db: Session, notification_id: str, user: User) -> Notification:
    notification = db.get(Notification, notification_id)
    if not notification or notification.user_id != user.id:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


@app.get("/api/notifications")
def api_list_notifications(
    limit: int = Query(50, ge=1, le=200),
    unread_only: bool = Query(False),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    stmt = select(Notification).where(Notification.user_id == user.id)
    if unread_only:
        stmt = stmt.where(Notification.read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc()).limit(limit)
    unread = db.scalar(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user.id, Notification.read.is_(False))
    )
    return {
        "notifications": [_serialize_notification(n) for n in db.scalars(stmt).all()],
        "unread_count": unread or 0,
    }


@app.put("/api/notifications/read-all")
def api_mark_all_notifications_read(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    updated = mark_all_notifications_read(db, user.id)
    return {"message": "All notifications marked as read", "updated": updated}


@app.put("/api/notifications/{notification_id}/read")
def api_mark_notification_read(
    notification_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notification = _ensure_own_notification(db, notification_id, user)
    notification.read = True
    db.add(notification)
    return _serialize_notification(notification)


@app.delete("/api/notifications/{notification_id}")
def api_delete_notification(
    notification_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notification = _ensure_own_notification(db, notification_id, user)
    db.delete(notification)
    return {"message": "Notification deleted successfully"}


# -------- admin --------


@app.get("/api/admin/users")
def api_admin_list_users(
    search: str | None = Query(None),
    role: str | None = Query(None),
    limit: int = Query(settings.admin_users_per_page, ge=1),
    offset: int = Query(0, ge=0),
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    limit = min(limit, settings.max_admin_users_per_page)
    filters = []
    if role:
        if role not in ROLES:
            raise HTTPException(status_code=400, detail="Invalid role")
        filters.append(Profile.role == role)
    cleaned = (search or "").strip()
    if cleaned:
        pattern = f"%{cleaned}%"
        filters.append(or_(User.email.ilike(pattern), Profile.full_name.ilike(pattern)))
    base = select(User).join(Profile, Profile.id == User.id).where(*filters)
    total = db.scalar(select(func.count()).select_from(base.subquery())) or 0
    users = db.scalars(
        base.order_by(User.created_at.desc()).limit(limit).offset(offset)
    ).all()
    return {
        "users": [_serialize_user(u) for u in users],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@app.get("/api/admin/users/stats")
def api_admin_user_stats(
    _: User = Depends(require_admin), db: Session = Depends(get_db)
):
    rows = db.execute(select(Profile.role, func.count()).group_by(Profile.role)).all()
    by_role = {role: 0 for role in ROLES}
    by_role.update({role: count for role, count in rows})
    return {
        "total_users": db.scalar(select(func.count()).select_from(User)) or 0,
        "verified_users": db.scalar(
            select(func.count()).select_from(User).where(User.is_verified.is_(True))
        )
        or 0,
        "by_role": by_role,
        "total_events": db.scalar(select(func.count()).select_from(Event)) or 0,
        "published_events": db.scalar(
            select(func.count()).select_from(Event).where(Event.status == "published")
        )
        or 0,
        "total_registrations": db.scalar(
            select(func.count())
            .select_from(Registration)
            .where(Registration.status != "cancelled")
        )
        or 0,
    }


@app.patch("/api/admin/users/{user_id}")
def api_admin_update_user(
    user_id: str,
    payload: AdminUserUpdatePayload,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    target = db.get(User, user_id)
    if not target or not target.profile:
        raise HTTPException(status_code=404, detail="User not found")
    data = payload.model_dump(exclude_unset=True)
    if "role" in data and data["role"] is not None and data["role"] != target.profile.role:
        if target.id == admin.id:
            raise HTTPException(status_code=400, detail="You cannot change your own role")
        try:
            set_role(db, target.profile, data["role"])
        except ValueError as exc:
            raise _value_error(exc) from exc
    profile_changes = {k: data[k] for k in ("full_name", "avatar_url") if k in data}
    if profile_changes:
        update_profile(db, target.profile, **profile_changes)
    if data.get("is_verified") is not None:
        target.is_verified = data["is_verified"]
        db.add(target)
    db.flush()
    logger.info("Admin %s updated user %s", admin.id, target.id)
    return _serialize_user(target)


@app.delete("/api/admin/users/{user_id}")
def api_admin_delete_user(
    user_id: str,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if user_id == admin.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    target = db.get(User, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    if target.profile and target.profile.role == "admin" and count_admins(db) <= 1:
        raise HTTPException(status_code=400, detail="Cannot delete the last admin")
    db.delete(target)
    _invalidate_event_cache()
    logger.info("Admin %s deleted user %s", admin.id, user_id)
    return {"message": "User deleted successfully"}


# -------- uploads --------


@app.get("/api/upload/signature")
def api_upload_signature(
    folder: str = Query(...),
    user: User = Depends(get_current_user),
    signer: UploadSigner = Depends(get_upload_signer),
):
    policy = FOLDERS.get(folder)
    if policy is None:
        raise HTTPException(status_code=400, detail="Invalid upload folder")
    role = user.profile.role if user.profile else "participant"
    if policy.organizer_only and role not in {"organizer", "admin"}:
        raise HTTPException(
            status_code=403, detail="Only organizers can upload to this folder"
        )
    if not signer.configured:
        raise HTTPException(status_code=503, detail="Image storage is not configured")
    try:
        return signer.signature_for(folder)
    except UploadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# -------- email hooks --------


@app.post("/api/webhooks/email")
def api_email_webhook(
    payload: EmailWebhookPayload,
    request: Request,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    if settings.webhook_secret:
        provided = request.headers.get("x-webhook-secret") or ""
        if not secrets.compare_digest(provided, settings.webhook_secret):
            raise HTTPException(status_code=401, detail="Invalid webhook secret")
    if not payload.type or not payload.email or not payload.user_id:
        raise HTTPException(status_code=400, detail="Missing required fields")
    template_types = {
        "welcome_email": "welcome",
        "registration_confirmation": "registration_confirmation",
    }
    template_type = template_types.get(payload.type)
    if template_type is None:
        raise HTTPException(status_code=400, detail="Unknown email type")
    if payload.type == "welcome_email" and has_sent_email(
        db, user_id=payload.user_id, email_type="welcome_email"
    ):
        return {"success": True, "message": "Welcome email already sent", "skipped": True}

    template = db.scalars(
        select(EmailTemplate).where(
            EmailTemplate.template_type == template_type,
            EmailTemplate.active.is_(True),
        )
    ).first()
    if not template:
        raise HTTPException(status_code=404, detail="Email template not found")

    user = db.get(User, payload.user_id)
    profile = user.profile if user else None
    user_name = (
        payload.name
        or (profile.full_name if profile else None)
        or payload.email.split("@")[0]
    )
    values = {
        "user_name": user_name,
        "base_url": settings.site_url.rstrip("/"),
        "event_id": payload.event_id or "",
        "event_title": payload.event_title or "",
        "event_date": payload.event_date or "",
        "event_location": payload.event_location or "TBA",
        "organizer_name": payload.organizer_name or "",
    }
    event = db.get(Event, payload.event_id) if payload.event_id else None
    if event:
        organizer = event.organizer.profile if event.organizer else None
        values.update(
            event_title=payload.event_title or event.title,
            event_date=payload.event_date or format_event_date(event.start_date),
            event_location=payload.event_location or event.location or "TBA",
            organizer_name=payload.organizer_name
            or (organizer.full_name if organizer else ""),
        )
    subject = fill_template_placeholders(template.subject, values)
    html = fill_template_placeholders(
        template.html_body, {key: str(escape(value)) for key, value in values.items()}
    )
    text_body = fill_template_placeholders(template.text_body or "", values) or None

    if not mailer.configured:
        record_email_log(
            db,
            email_type=payload.type,
            recipient_email=payload.email,
            subject=subject,
            status="skipped",
            user_id=user.id if user else None,
            error_message="Email API not configured",
        )
        return {"success": True, "message": "Email API not configured; logged only"}

    try:
        data = mailer.send(build_message(payload.email, subject, html, text=text_body))
    except MailerError as exc:
        logger.error("Webhook %s email failed: %s", payload.type, exc)
        record_email_log(
            db,
            email_type=payload.type,
            recipient_email=payload.email,
            subject=subject,
            status="failed",
            user_id=user.id if user else None,
            error_message=str(exc),
        )
        return JSONResponse(
            {"detail": "Failed to send email", "error": str(exc)}, status_code=502
        )
    record_email_log(
        db,
        email_type=payload.type,
        recipient_email=payload.email,
        subject=subject,
        status="sent",
        user_id=user.id if user else None,
        details={"provider_id": data.get("id")},
    )
    if payload.type == "welcome_email" and profile and not profile.welcome_email_sent:
        profile.welcome_email_sent = True
        db.add(profile)
    return {"success": True, "message": "Email sent", "provider_id": data.get("id")}


@app.post("/api/resend/contacts", status_code=201)
def api_create_contact(
    payload: ContactPayload,
    mailer: Mailer = Depends(get_mailer),
):
    if not payload.email or not payload.first_name or not payload.last_name:
        raise HTTPException(
            status_code=400, detail="email, first_name and last_name are required"
        )
    try:
        data = mailer.add_contact(
            email=normalize_email(payload.email),
            first_name=payload.first_name,
            last_name=payload.last_name,
            unsubscribed=payload.unsubscribed,
        )
    except MailerError as exc:
        logger.error("Contact creation failed: %s", exc)
        status = 502 if exc.status_code else 503
        raise HTTPException(status_code=status, detail=str(exc)) from exc
    return {"success": True, "data": data}


# -------- calendar --------


def _month_grid(year: int, month: int) -> tuple[date, date]:
    """Return the first and last day of a Sunday-first month grid."""
    first = date(year, month, 1)
    last = date(year, month, calendar_module.monthrange(year, month)[1])
    grid_start = first - timedelta(days=(first.weekday() + 1) % 7)
    grid_end = last + timedelta(days=(5 - last.weekday()) % 7)
    return grid_start, grid_end


@app.get("/api/calendar")
def api_calendar(
    year: int | None = Query(None, ge=1970, le=9999),
    month: int | None = Query(None, ge=1, le=12),
    db: Session = Depends(get_db),
):
    today = utcnow().date()
    year = year or today.year
    month = month or today.month
    grid_start, grid_end = _month_grid(year, month)
    range_start = datetime.combine(grid_start, datetime.min.time())
    range_end = datetime.combine(grid_end + timedelta(days=1), datetime.min.time())
    stmt = (
        select(Event)
        .where(
            Event.status == "published",
            Event.start_date < range_end,
            Event.end_date >= range_start,
        )
        .order_by(Event.start_date.asc())
    )
    days: dict[str, list[dict]] = {}
    for event in db.scalars(stmt).all():
        current = max(event.start_date.date(), grid_start)
        last_day = min(event.end_date.date(), grid_end)
        summary = _serialize_event_summary(event)
        while current <= last_day:
            days.setdefault(current.isoformat(), []).append(summary)
            current += timedelta(days=1)

    now = utcnow()
    upcoming = db.scalars(
        select(Event)
        .where(Event.status == "published", Event.start_date >= now)
        .order_by(Event.start_date.asc())
        .limit(UPCOMING_LIMIT)
    ).all()
    return {
        "year": year,
        "month": month,
        "grid_start": grid_start.isoformat(),
        "grid_end": grid_end.isoformat(),
        "days": days,
        "upcoming": [_serialize_event_summary(e) for e in upcoming],
    }


@app.get("/api/calendar.ics")
def api_calendar_feed(db: Session = Depends(get_db)):
    """Subscribable feed of upcoming published events."""
    events = db.scalars(
        select(Event)
        .where(Event.status == "published", Event.end_date >= utcnow())
        .order_by(Event.start_date.asc())
    ).all()
    ics_text = generate_calendar(events, site_url=settings.site_url, name="NGEvent")
    return Response(content=ics_text, media_type="text/calendar")
