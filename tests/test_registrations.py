from __future__ import annotations

from ngevent import database
from ngevent.crud import replace_form_fields
from ngevent.models import EmailLog, Event, Notification, Registration


def _register(client, headers, event_id, data=None):
    payload = {"event_id": event_id}
    if data is not None:
        payload["registration_data"] = data
    return client.post("/api/registrations", headers=headers, json=payload)


def test_register_for_event_creates_notification_and_email_log(
    client, make_user, make_event, auth_headers
):
    organizer = make_user("o@example.com", role="organizer")
    participant = make_user("p@example.com")
    event = make_event(organizer)

    response = _register(client, auth_headers(participant), event.id)
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "registered"
    assert body["event"]["id"] == event.id

    session = database.SessionLocal()
    notification = session.query(Notification).one()
    assert notification.type == "registration"
    assert notification.user_id == participant.id
    log = session.query(EmailLog).filter_by(email_type="registration_confirmation").one()
    assert log.recipient_email == "p@example.com"
    assert log.status == "skipped"
    session.close()

    count = client.get(f"/api/events/{event.id}/registrations/count")
    assert count.json()["count"] == 1


def test_register_rejects_duplicates_and_bad_ids(client, make_user, make_event, auth_headers):
    organizer = make_user("o@example.com", role="organizer")
    participant = make_user("p@example.com")
    event = make_event(organizer)
    headers = auth_headers(participant)

    assert _register(client, headers, event.id).status_code == 201
    duplicate = _register(client, headers, event.id)
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"] == "Already registered for this event"

    assert _register(client, headers, "abc").status_code == 400
    assert _register(client, headers, "ZZZZZZ").status_code == 404


def test_register_requires_published_event(client, make_user, make_event, auth_headers):
    organizer = make_user("o@example.com", role="organizer")
    participant = make_user("p@example.com")
    draft = make_event(organizer, status="draft")

    response = _register(client, auth_headers(participant), draft.id)
    assert response.status_code == 400


def test_register_requires_complete_profile(client, make_user, make_event, auth_headers):
    organizer = make_user("o@example.com", role="organizer")
    participant = make_user("p@example.com", complete_profile=False)
    event = make_event(organizer)

    response = _register(client, auth_headers(participant), event.id)
    assert response.status_code == 403
    missing = response.json()["detail"]["missing_fields"]
    assert set(missing) == {"phone", "institution", "position", "city"}


def test_register_respects_capacity(client, make_user, make_event, auth_headers):
    organizer = make_user("o@example.com", role="organizer")
    first = make_user("first@example.com")
    second = make_user("second@example.com")
    event = make_event(organizer, capacity=1)

    assert _register(client, auth_headers(first), event.id).status_code == 201
    full = _register(client, auth_headers(second), event.id)
    assert full.status_code == 400
    assert full.json()["detail"] == "Event is full"


def test_register_checks_required_form_answers(client, make_user, make_event, auth_headers):
    organizer = make_user("o@example.com", role="organizer")
    participant = make_user("p@example.com")
    event = make_event(organizer)
    with database.get_session() as session:
        stored = session.get(Event, event.id)
        replace_form_fields(
            session,
            stored,
            [
                {"field_name": "Motivation", "is_required": True},
                {"field_name": "Diet", "is_required": False},
            ],
        )
    headers = auth_headers(participant)

    missing = _register(client, headers, event.id, {"Diet": "vegan", "Motivation": "  "})
    assert missing.status_code == 400
    assert missing.json()["detail"]["missing_fields"] == ["Motivation"]

    ok = _register(client, headers, event.id, {"Motivation": "Learn Python"})
    assert ok.status_code == 201
    assert ok.json()["registration_data"] == {"Motivation": "Learn Python"}


def test_cancel_then_register_again_reuses_row(client, make_user, make_event, auth_headers):
    organizer = make_user("o@example.com", role="organizer")
    participant = make_user("p@example.com")
    event = make_event(organizer, capacity=1)
    headers = auth_headers(participant)

    registration_id = _register(client, headers, event.id).json()["id"]
    cancelled = client.delete(f"/api/registrations/{registration_id}", headers=headers)
    assert cancelled.status_code == 200

    count = client.get(f"/api/events/{event.id}/registrations/count")
    assert count.json()["count"] == 0

    again = _register(client, headers, event.id)
    assert again.status_code == 201
    assert again.json()["id"] == registration_id

    session = database.SessionLocal()
    assert session.query(Registration).count() == 1
    session.close()


def test_cancel_other_users_registration_is_not_found(
    client, make_user, make_event, auth_headers
):
    organizer = make_user("o@example.com", role="organizer")
    owner = make_user("owner@example.com")
    stranger = make_user("stranger@example.com")
    event = make_event(organizer)

    registration_id = _register(client, auth_headers(owner), event.id).json()["id"]
    response = client.delete(
        f"/api/registrations/{registration_id}", headers=auth_headers(stranger)
    )
    assert response.status_code == 404


def test_my_events_and_previous_registration(client, make_user, make_event, auth_headers):
    organizer = make_user("o@example.com", role="organizer")
    participant = make_user("p@example.com")
    event = make_event(organizer)
    other = make_event(organizer, title="Other Event")
    headers = auth_headers(participant)

    _register(client, headers, event.id)

    mine = client.get("/api/registrations/my-events", headers=headers)
    assert [r["event"]["title"] for r in mine.json()] == ["Python Meetup"]

    previous = client.get(f"/api/registrations/previous/{event.id}", headers=headers)
    assert previous.json()["registration"]["event_id"] == event.id
    none = client.get(f"/api/registrations/previous/{other.id}", headers=headers)
    assert none.json()["registration"] is None


def test_organizer_lists_registrants_and_updates_status(
    client, make_user, make_event, auth_headers
):
    organizer = make_user("o@example.com", role="organizer")
    participant = make_user("p@example.com")
    event = make_event(organizer)

    registration_id = _register(client, auth_headers(participant), event.id).json()["id"]

    denied = client.get(
        f"/api/registrations/event/{event.id}", headers=auth_headers(participant)
    )
    assert denied.status_code == 403

    listed = client.get(f"/api/registrations/event/{event.id}", headers=auth_headers(organizer))
    assert listed.status_code == 200
    registrant = listed.json()[0]["user"]
    assert registrant["email"] == "p@example.com"
    assert registrant["institution"] == "Universitas Contoh"

    attended = client.put(
        f"/api/registrations/{registration_id}/status",
        headers=auth_headers(organizer),
        json={"status": "attended"},
    )
    assert attended.status_code == 200
    assert attended.json()["status"] == "attended"

    invalid = client.put(
        f"/api/registrations/{registration_id}/status",
        headers=auth_headers(organizer),
        json={"status": "paid"},
    )
    assert invalid.status_code == 400
