from __future__ import annotations

from ngevent import database
from ngevent.models import User


def test_admin_routes_require_admin_role(client, make_user, auth_headers):
    organizer = make_user("o@example.com", role="organizer")

    assert client.get("/api/admin/users").status_code == 401
    denied = client.get("/api/admin/users", headers=auth_headers(organizer))
    assert denied.status_code == 403


def test_admin_lists_and_filters_users(client, make_user, auth_headers):
    admin = make_user("admin@example.com", role="admin", full_name="Ada Admin")
    make_user("budi@example.com", full_name="Budi Santoso")
    make_user("org@example.com", role="organizer", full_name="Olga Organizer")
    headers = auth_headers(admin)

    everyone = client.get("/api/admin/users", headers=headers).json()
    assert everyone["total"] == 3

    searched = client.get("/api/admin/users", params={"search": "budi"}, headers=headers)
    assert [u["email"] for u in searched.json()["users"]] == ["budi@example.com"]

    organizers = client.get("/api/admin/users", params={"role": "organizer"}, headers=headers)
    assert [u["email"] for u in organizers.json()["users"]] == ["org@example.com"]

    paged = client.get("/api/admin/users", params={"limit": 1, "offset": 1}, headers=headers)
    assert len(paged.json()["users"]) == 1
    assert paged.json()["total"] == 3

    invalid = client.get("/api/admin/users", params={"role": "owner"}, headers=headers)
    assert invalid.status_code == 400


def test_admin_stats(client, make_user, make_event, auth_headers):
    admin = make_user("admin@example.com", role="admin")
    organizer = make_user("o@example.com", role="organizer")
    make_user("p@example.com", verified=False)
    make_event(organizer)
    make_event(organizer, status="draft")

    stats = client.get("/api/admin/users/stats", headers=auth_headers(admin)).json()
    assert stats["total_users"] == 3
    assert stats["verified_users"] == 2
    assert stats["by_role"] == {"participant": 1, "organizer": 1, "admin": 1}
    assert stats["total_events"] == 2
    assert stats["published_events"] == 1
    assert stats["total_registrations"] == 0


def test_admin_updates_role_and_profile(client, make_user, auth_headers):
    admin = make_user("admin@example.com", role="admin")
    member = make_user("member@example.com", verified=False)
    headers = auth_headers(admin)

    response = client.patch(
        f"/api/admin/users/{member.id}",
        headers=headers,
        json={"role": "organizer", "full_name": "  New Name ", "is_verified": True},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["profile"]["role"] == "organizer"
    assert body["profile"]["full_name"] == "New Name"
    assert body["is_verified"] is True

    invalid = client.patch(
        f"/api/admin/users/{member.id}", headers=headers, json={"role": "owner"}
    )
    assert invalid.status_code == 400

    own = client.patch(
        f"/api/admin/users/{admin.id}", headers=headers, json={"role": "participant"}
    )
    assert own.status_code == 400
    assert own.json()["detail"] == "You cannot change your own role"

    missing = client.patch("/api/admin/users/nope", headers=headers, json={"role": "admin"})
    assert missing.status_code == 404


def test_admin_deletes_users_but_not_self(client, make_user, auth_headers):
    admin = make_user("admin@example.com", role="admin")
    member = make_user("member@example.com")
    headers = auth_headers(admin)

    own = client.delete(f"/api/admin/users/{admin.id}", headers=headers)
    assert own.status_code == 400

    deleted = client.delete(f"/api/admin/users/{member.id}", headers=headers)
    assert deleted.status_code == 200

    session = database.SessionLocal()
    assert session.get(User, member.id) is None
    session.close()

    assert client.delete(f"/api/admin/users/{member.id}", headers=headers).status_code == 404
