from __future__ import annotations

from datetime import timedelta
from urllib.parse import parse_qs

import httpx

from ngevent import api, database
from ngevent.mailer import Mailer
from ngevent.models import EmailLog, User
from ngevent.security import decode_access_token
from ngevent.turnstile import HumanVerifier
from ngevent.utils import utcnow

from conftest import DEFAULT_PASSWORD


def _turnstile_verifier(valid_token: str = "good-token") -> HumanVerifier:
    def handler(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        ok = form.get("response") == [valid_token]
        body = {"success": ok, "error-codes": [] if ok else ["invalid-input-response"]}
        return httpx.Response(200, json=body)

    return HumanVerifier(
        secret="turnstile-secret", client=httpx.Client(transport=httpx.MockTransport(handler))
    )


def _email_logs(email_type: str | None = None):
    session = database.SessionLocal()
    query = session.query(EmailLog)
    if email_type:
        query = query.filter(EmailLog.email_type == email_type)
    logs = query.all()
    session.close()
    return logs


def test_register_creates_participant_and_logs_skipped_verification(client):
    response = client.post(
        "/api/auth/register",
        json={"email": "New@Example.com", "password": "hunter22", "full_name": "New Person"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["user"]["email"] == "new@example.com"
    assert body["user"]["profile"]["role"] == "participant"
    assert body["user"]["is_verified"] is False
    claims = decode_access_token(body["token"])
    assert claims["id"] == body["user"]["id"]

    logs = _email_logs("verification")
    assert len(logs) == 1
    assert logs[0].status == "skipped"
    assert logs[0].recipient_email == "new@example.com"


def test_register_rejects_duplicate_and_short_password(client, make_user):
    make_user("taken@example.com")

    duplicate = client.post(
        "/api/auth/register", json={"email": "taken@example.com", "password": "hunter22"}
    )
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"] == "User already exists"

    short = client.post(
        "/api/auth/register", json={"email": "fresh@example.com", "password": "abc"}
    )
    assert short.status_code == 400

    invalid = client.post(
        "/api/auth/register", json={"email": "not-an-email", "password": "hunter22"}
    )
    assert invalid.status_code == 400


def test_register_honeypot_blocks_bots(client):
    response = client.post(
        "/api/auth/register",
        json={"email": "bot@example.com", "password": "hunter22", "website": "spam.example"},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "bot-detected"


def test_register_requires_turnstile_when_configured(client, services):
    services[api.get_human_verifier] = _turnstile_verifier()

    rejected = client.post(
        "/api/auth/register",
        json={"email": "a@example.com", "password": "hunter22", "cf_turnstile_token": "bad"},
    )
    assert rejected.status_code == 403
    assert rejected.json()["detail"]["message"] == "human-verification-failed"
    assert rejected.json()["detail"]["error"] == "invalid-input-response"

    accepted = client.post(
        "/api/auth/register",
        json={
            "email": "a@example.com",
            "password": "hunter22",
            "cf_turnstile_token": "good-token",
        },
    )
    assert accepted.status_code == 201


def test_register_is_rate_limited_per_ip_and_email(client, services, kv_store):
    services[api.get_rate_limiter] = kv_store.limiter()
    payload = {"email": "burst@example.com", "password": "hunter22"}

    statuses = [client.post("/api/auth/register", json=payload).status_code for _ in range(6)]

    assert statuses[0] == 201
    assert statuses[1:5] == [400, 400, 400, 400]
    assert statuses[5] == 429


def test_register_checks_turnstile_before_rate_limit(client, services, kv_store):
    services[api.get_human_verifier] = _turnstile_verifier()
    services[api.get_rate_limiter] = kv_store.limiter()
    payload = {"email": "burst@example.com", "password": "hunter22", "cf_turnstile_token": "bad"}

    statuses = [client.post("/api/auth/register", json=payload).status_code for _ in range(6)]
    assert statuses == [403] * 6

    payload["cf_turnstile_token"] = "good-token"
    assert client.post("/api/auth/register", json=payload).status_code == 201


def test_login_ignores_turnstile_configuration(client, services, make_user):
    services[api.get_human_verifier] = _turnstile_verifier()
    user = make_user("human@example.com")

    response = client.post(
        "/api/auth/login", json={"email": "human@example.com", "password": DEFAULT_PASSWORD}
    )

    assert response.status_code == 200
    assert response.json()["user"]["id"] == user.id


def test_login_returns_token_and_sends_welcome_once(client, make_user):
    user = make_user("login@example.com")

    first = client.post(
        "/api/auth/login", json={"email": "LOGIN@example.com", "password": DEFAULT_PASSWORD}
    )
    assert first.status_code == 200
    assert first.json()["user"]["id"] == user.id

    second = client.post(
        "/api/auth/login", json={"email": "login@example.com", "password": DEFAULT_PASSWORD}
    )
    assert second.status_code == 200

    welcome_logs = _email_logs("welcome_email")
    assert len(welcome_logs) == 1
    session = database.SessionLocal()
    assert session.get(User, user.id).profile.welcome_email_sent is True
    session.close()


def test_login_rejects_bad_password(client, make_user):
    make_user("login@example.com")

    response = client.post(
        "/api/auth/login", json={"email": "login@example.com", "password": "wrong-pass"}
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid credentials"


def test_login_locks_after_repeated_failures(client, services, kv_store, make_user):
    services[api.get_rate_limiter] = kv_store.limiter()
    make_user("locked@example.com")
    bad = {"email": "locked@example.com", "password": "wrong-pass"}

    statuses = [client.post("/api/auth/login", json=bad).status_code for _ in range(5)]
    assert statuses == [401, 401, 401, 401, 423]

    good = client.post(
        "/api/auth/login", json={"email": "locked@example.com", "password": DEFAULT_PASSWORD}
    )
    assert good.status_code == 423
    assert good.json()["detail"]["lock_remaining"] == 300


def test_verify_email_marks_user_verified(client, make_user):
    user = make_user("verify@example.com", verified=False)

    bad = client.post("/api/auth/verify-email", json={"token": "nope"})
    assert bad.status_code == 400

    response = client.post(
        "/api/auth/verify-email", json={"token": user.verification_token}
    )
    assert response.status_code == 200

    session = database.SessionLocal()
    stored = session.get(User, user.id)
    assert stored.is_verified is True
    assert stored.verification_token is None
    session.close()


def test_forgot_and_reset_password_flow(client, make_user):
    user = make_user("reset@example.com")

    unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    known = client.post("/api/auth/forgot-password", json={"email": "reset@example.com"})
    assert unknown.status_code == known.status_code == 200
    assert unknown.json() == known.json()

    session = database.SessionLocal()
    token = session.get(User, user.id).reset_password_token
    session.close()
    assert token

    too_short = client.post(
        "/api/auth/reset-password", json={"token": token, "new_password": "short"}
    )
    assert too_short.status_code == 400

    reset = client.post(
        "/api/auth/reset-password", json={"token": token, "new_password": "brand-new-pass"}
    )
    assert reset.status_code == 200

    reused = client.post(
        "/api/auth/reset-password", json={"token": token, "new_password": "brand-new-pass"}
    )
    assert reused.status_code == 400

    login = client.post(
        "/api/auth/login", json={"email": "reset@example.com", "password": "brand-new-pass"}
    )
    assert login.status_code == 200


def test_reset_password_rejects_expired_token(client, make_user):
    user = make_user("expired@example.com")
    session = database.SessionLocal()
    stored = session.get(User, user.id)
    stored.reset_password_token = "expired-token"
    stored.reset_password_expires = utcnow() - timedelta(minutes=1)
    session.commit()
    session.close()

    response = client.post(
        "/api/auth/reset-password",
        json={"token": "expired-token", "new_password": "brand-new-pass"},
    )
    assert response.status_code == 400


def test_me_and_refresh(client, make_user, auth_headers):
    user = make_user("me@example.com")

    assert client.get("/api/auth/me").status_code == 401
    assert (
        client.get("/api/auth/me", headers={"Authorization": "Bearer junk"}).status_code
        == 401
    )

    me = client.get("/api/auth/me", headers=auth_headers(user))
    assert me.status_code == 200
    assert me.json()["email"] == "me@example.com"

    token = auth_headers(user)["Authorization"].split(" ", 1)[1]
    refreshed = client.post("/api/auth/refresh", json={"token": token})
    assert refreshed.status_code == 200
    assert decode_access_token(refreshed.json()["token"])["id"] == user.id

    assert client.post("/api/auth/refresh", json={"token": "junk"}).status_code == 401


def test_verify_human_sets_short_lived_cookie(client, services):
    services[api.get_human_verifier] = _turnstile_verifier()

    failed = client.post("/api/auth/verify-human", json={"cf_turnstile_token": "bad"})
    assert failed.status_code == 403

    response = client.post(
        "/api/auth/verify-human",
        json={"cf_turnstile_token": "good-token", "email": "x@example.com"},
    )
    assert response.status_code == 200
    cookie = response.headers["set-cookie"]
    assert "human_verified=1" in cookie
    assert "Max-Age=300" in cookie
    assert "HttpOnly" in cookie


def test_send_confirmation_requires_turnstile(client):
    response = client.post(
        "/api/auth/send-confirmation",
        json={"email": "a@example.com", "password": "hunter22"},
    )
    assert response.status_code == 403
    assert response.json()["detail"]["error"] == "missing-turnstile-token"


def test_send_confirmation_creates_account_and_emails_link(client, services, mock_client):
    calls: list[httpx.Request] = []
    services[api.get_human_verifier] = _turnstile_verifier()
    services[api.get_mailer] = Mailer(
        api_key="re_test", client=mock_client({"id": "email_1"}, calls=calls)
    )

    response = client.post(
        "/api/auth/send-confirmation",
        json={
            "email": "confirm@example.com",
            "password": "hunter22",
            "cf_turnstile_token": "good-token",
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["provider_id"] == "email_1"
    assert body["verify_url"].startswith("https://ngevent.test/verify-email?token=")
    assert len(calls) == 1
    assert calls[0].url.path == "/emails"
    assert [log.status for log in _email_logs("verification")] == ["sent"]


def test_send_confirmation_reports_provider_failure_but_keeps_account(
    client, services, mock_client
):
    services[api.get_human_verifier] = _turnstile_verifier()
    services[api.get_mailer] = Mailer(
        api_key="re_test", client=mock_client({"message": "boom"}, status_code=500)
    )

    response = client.post(
        "/api/auth/send-confirmation",
        json={
            "email": "confirm@example.com",
            "password": "hunter22",
            "cf_turnstile_token": "good-token",
        },
    )
    assert response.status_code == 502
    assert response.json()["detail"] == "Failed to send email"

    session = database.SessionLocal()
    assert session.query(User).filter(User.email == "confirm@example.com").count() == 1
    session.close()
    assert [log.status for log in _email_logs("verification")] == ["failed"]


def test_send_confirmation_counts_failures_for_existing_email(
    client, services, kv_store, make_user
):
    services[api.get_human_verifier] = _turnstile_verifier()
    services[api.get_rate_limiter] = kv_store.limiter()
    make_user("taken@example.com")

    response = client.post(
        "/api/auth/send-confirmation",
        json={
            "email": "taken@example.com",
            "password": "hunter22",
            "cf_turnstile_token": "good-token",
        },
    )
    assert response.status_code == 400
    assert response.json()["detail"]["message"] == "User already exists"
    assert response.json()["detail"]["lock_remaining"] == 0
    assert kv_store.values["regfail:testclient:taken@example.com:fails"] == "1"
