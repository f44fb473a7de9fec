from __future__ import annotations

import json
from dataclasses import replace

from ngevent import api, database
from ngevent.config import settings
from ngevent.mailer import Mailer
from ngevent.models import EmailLog, User
from ngevent.uploads import UploadSigner


def _logs(email_type):
    session = database.SessionLocal()
    logs = session.query(EmailLog).filter_by(email_type=email_type).all()
    session.close()
    return logs


def test_webhook_requires_known_type_and_fields(client):
    missing = client.post("/api/webhooks/email", json={"type": "welcome_email"})
    assert missing.status_code == 400

    unknown = client.post(
        "/api/webhooks/email",
        json={"type": "newsletter", "email": "a@example.com", "user_id": "u1"},
    )
    assert unknown.status_code == 400
    assert unknown.json()["detail"] == "Unknown email type"


def test_webhook_logs_skipped_without_mail_provider(client, make_user):
    user = make_user("w@example.com", full_name="Wulan Sari")

    response = client.post(
        "/api/webhooks/email",
        json={"type": "welcome_email", "email": "w@example.com", "user_id": user.id},
    )
    assert response.status_code == 200
    assert "logged only" in response.json()["message"]

    logs = _logs("welcome_email")
    assert [log.status for log in logs] == ["skipped"]
    assert logs[0].subject == "Welcome to NGEvent, Wulan Sari!"


def test_webhook_sends_registration_confirmation_from_template(
    client, services, make_user, make_event, mock_client
):
    calls = []
    services[api.get_mailer] = Mailer(
        api_key="re_test", client=mock_client({"id": "email_9"}, calls=calls)
    )
    organizer = make_user("o@example.com", role="organizer", full_name="Olga Organizer")
    participant = make_user("p@example.com", full_name="Putri")
    event = make_event(organizer, location="Bandung")

    response = client.post(
        "/api/webhooks/email",
        json={
            "type": "registration_confirmation",
            "email": "p@example.com",
            "user_id": participant.id,
            "event_id": event.id,
        },
    )
    assert response.status_code == 200
    assert response.json()["provider_id"] == "email_9"

    sent = json.loads(calls[0].content)
    assert sent["to"] == ["p@example.com"]
    assert sent["subject"] == "Registration confirmed: Python Meetup"
    assert "Hi Putri" in sent["html"]
    assert "Organizer: Olga Organizer" in sent["html"]
    assert f"https://ngevent.test/events/{event.id}" in sent["html"]
    assert "Bandung" in sent["text"]
    assert [log.status for log in _logs("registration_confirmation")] == ["sent"]


def test_webhook_escapes_values_in_html_body(client, services, make_user, mock_client):
    calls = []
    services[api.get_mailer] = Mailer(
        api_key="re_test", client=mock_client({"id": "email_3"}, calls=calls)
    )
    user = make_user("x@example.com")
    name = '<a href="https://evil.test">click</a>'

    response = client.post(
        "/api/webhooks/email",
        json={"type": "welcome_email", "email": "x@example.com", "user_id": user.id, "name": name},
    )
    assert response.status_code == 200

    sent = json.loads(calls[0].content)
    assert "<a href=\"https://evil.test\">" not in sent["html"]
    assert "Hi &lt;a href=&#34;https://evil.test&#34;&gt;click&lt;/a&gt;," in sent["html"]
    assert sent["subject"] == f"Welcome to NGEvent, {name}!"
    assert name in sent["text"]


def test_webhook_sends_welcome_only_once(client, services, make_user, mock_client):
    calls = []
    services[api.get_mailer] = Mailer(
        api_key="re_test", client=mock_client({"id": "email_1"}, calls=calls)
    )
    user = make_user("w@example.com")
    payload = {"type": "welcome_email", "email": "w@example.com", "user_id": user.id}

    first = client.post("/api/webhooks/email", json=payload)
    second = client.post("/api/webhooks/email", json=payload)

    assert first.json()["message"] == "Email sent"
    assert second.json()["skipped"] is True
    assert len(calls) == 1
    session = database.SessionLocal()
    assert session.get(User, user.id).profile.welcome_email_sent is True
    session.close()


def test_webhook_reports_provider_failure(client, services, make_user, mock_client):
    services[api.get_mailer] = Mailer(
        api_key="re_test", client=mock_client({"message": "bad"}, status_code=422)
    )
    user = make_user("w@example.com")

    response = client.post(
        "/api/webhooks/email",
        json={"type": "welcome_email", "email": "w@example.com", "user_id": user.id},
    )
    assert response.status_code == 502
    assert [log.status for log in _logs("welcome_email")] == ["failed"]


def test_webhook_checks_shared_secret_when_configured(client, monkeypatch, make_user):
    monkeypatch.setattr(api, "settings", replace(settings, webhook_secret="hook-secret"))
    user = make_user("w@example.com")
    payload = {"type": "welcome_email", "email": "w@example.com", "user_id": user.id}

    rejected = client.post("/api/webhooks/email", json=payload)
    assert rejected.status_code == 401

    accepted = client.post(
        "/api/webhooks/email", json=payload, headers={"X-Webhook-Secret": "hook-secret"}
    )
    assert accepted.status_code == 200


def test_create_contact(client, services, mock_client):
    calls = []
    services[api.get_mailer] = Mailer(
        api_key="re_test",
        audience_id="aud_1",
        client=mock_client({"id": "contact_1"}, calls=calls),
    )

    missing = client.post("/api/resend/contacts", json={"email": "c@example.com"})
    assert missing.status_code == 400

    response = client.post(
        "/api/resend/contacts",
        json={"email": " C@Example.com ", "first_name": "Citra", "last_name": "Lestari"},
    )
    assert response.status_code == 201
    assert response.json()["data"] == {"id": "contact_1"}
    assert calls[0].url.path == "/audiences/aud_1/contacts"
    assert json.loads(calls[0].content)["email"] == "c@example.com"


def test_create_contact_without_audience(client):
    response = client.post(
        "/api/resend/contacts",
        json={"email": "c@example.com", "first_name": "Citra", "last_name": "Lestari"},
    )
    assert response.status_code == 503


def test_upload_signature_by_folder_and_role(client, services, make_user, auth_headers):
    services[api.get_upload_signer] = UploadSigner(
        cloud_name="demo", api_key="key-1", api_secret="shh", folder_prefix="ngevent"
    )
    participant = make_user("p@example.com")
    organizer = make_user("o@example.com", role="organizer")

    avatar = client.get(
        "/api/upload/signature",
        params={"folder": "avatar-images"},
        headers=auth_headers(participant),
    )
    assert avatar.status_code == 200
    body = avatar.json()
    assert body["folder"] == "ngevent/avatar-images"
    assert body["cloud_name"] == "demo"
    assert body["max_size"] == 2 * 1024 * 1024
    assert len(body["signature"]) == 64

    denied = client.get(
        "/api/upload/signature",
        params={"folder": "event-images"},
        headers=auth_headers(participant),
    )
    assert denied.status_code == 403

    allowed = client.get(
        "/api/upload/signature",
        params={"folder": "event-images"},
        headers=auth_headers(organizer),
    )
    assert allowed.status_code == 200

    unknown = client.get(
        "/api/upload/signature", params={"folder": "secrets"}, headers=auth_headers(organizer)
    )
    assert unknown.status_code == 400


def test_upload_signature_unconfigured_storage(client, make_user, auth_headers):
    user = make_user("p@example.com")

    response = client.get(
        "/api/upload/signature",
        params={"folder": "avatar-images"},
        headers=auth_headers(user),
    )
    assert response.status_code == 503
