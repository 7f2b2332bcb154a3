import heapq
from datetime import datetime

import pytest

from models import Role

EVENT_BODY = {
    "title": "Test Event",
    "description": "An event for testing",
    "date": "2030-05-01",
    "time": "10:00",
    "venue": "Room 1",
    "capacity": 2,
    "duration_hours": 2.0,
    "type_of_event": "Workshop",
    "reminders": ["Bring a laptop"],
}

@pytest.fixture
def admin_user(app_db, make_user):
    return make_user(app_db, "Admin User", Role.ADMIN)

@pytest.fixture
def organizer_user(app_db, make_user):
    return make_user(app_db, "Test Organizer", Role.TEACHER)

@pytest.fixture
def student_user(app_db, make_user):
    return make_user(app_db, "Test Student")

@pytest.fixture
def admin_headers(auth_headers, admin_user):
    return auth_headers(admin_user)

@pytest.fixture
def organizer_headers(auth_headers, organizer_user):
    return auth_headers(organizer_user)

@pytest.fixture
def student_headers(auth_headers, student_user):
    return auth_headers(student_user)

@pytest.fixture
def event_id(client, organizer_headers):
    response = client.post("/events", json=EVENT_BODY, headers=organizer_headers)
    return response.json()["data"]["id"]

@pytest.fixture
def approved_event_id(client, event_id, admin_headers):
    client.put(f"/events/{event_id}/approve", headers=admin_headers)
    return event_id

def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["message"] == "Welcome to Event Hub API"

def test_register_user(client):
    response = client.post("/register", json={
        "name": "Test User",
        "email": "test@example.com",
        "password": "password123",
    })
    assert response.status_code == 201
    assert response.json()["message"] == "User registered"
    assert response.json()["data"]["role"] == "Admin"
    assert "password" not in response.json()["data"]

    again = client.post("/register", json={
        "name": "Test User",
        "email": "test@example.com",
        "password": "password123",
    })
    assert again.status_code == 400
    assert again.json()["message"] == "User already exists"

def test_login_success(client, organizer_user):
    response = client.post("/login", json={"email": organizer_user.email, "password": "password123"})
    assert response.status_code == 200
    assert "access_token" in response.json()
    assert "refresh_token" in response.json()
    assert response.json()["user"]["role"] == "Teacher"

def test_login_wrong_password(client, organizer_user):
    response = client.post("/login", json={"email": organizer_user.email, "password": "nope"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid credentials"

def test_refresh_token(client, organizer_user):
    tokens = client.post("/login", json={"email": organizer_user.email, "password": "password123"}).json()
    response = client.post("/refresh", headers={"Authorization": f"Bearer {tokens['refresh_token']}"})
    assert response.status_code == 200
    assert "access_token" in response.json()["data"]
    rejected = client.post("/refresh", headers={"Authorization": f"Bearer {tokens['access_token']}"})
    assert rejected.status_code == 401

def test_events_require_authentication(client):
    response = client.get("/events")
    assert response.status_code == 401
    assert "message" in response.json()

def test_create_event(client, organizer_headers, organizer_user):
    response = client.post("/events", json=EVENT_BODY, headers=organizer_headers)
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "pending"
    assert data["participants"] == []
    assert data["remaining_slots"] == 2
    assert data["created_by"] == organizer_user.id

def test_invalid_capacity(client, organizer_headers):
    response = client.post("/events", json={**EVENT_BODY, "capacity": 0}, headers=organizer_headers)
    assert response.status_code == 400
    assert response.json()["message"] == "Capacity must be at least 1"

def test_missing_required_field(client, organizer_headers):
    body = {k: v for k, v in EVENT_BODY.items() if k != "venue"}
    response = client.post("/events", json=body, headers=organizer_headers)
    assert response.status_code == 400
    assert "venue" in response.json()["message"]

def test_list_events_by_role(client, event_id, organizer_headers, student_headers, admin_headers):
    assert client.get("/events", headers=student_headers).json()["data"] == []
    assert [e["id"] for e in client.get("/events", headers=organizer_headers).json()["data"]] == [event_id]
    assert [e["id"] for e in client.get("/events/pending", headers=admin_headers).json()["data"]] == [event_id]
    assert client.get("/events/pending", headers=student_headers).status_code == 403

    client.put(f"/events/{event_id}/approve", headers=admin_headers)
    assert [e["id"] for e in client.get("/events", headers=student_headers).json()["data"]] == [event_id]
    assert [e["id"] for e in client.get("/events/available", headers=student_headers).json()["data"]] == [event_id]
    assert [e["id"] for e in client.get("/events/mine", headers=organizer_headers).json()["data"]] == [event_id]

def test_approve_requires_admin(client, event_id, organizer_headers, admin_headers):
    response = client.put(f"/events/{event_id}/approve", headers=organizer_headers)
    assert response.status_code == 403
    assert client.get(f"/events/{event_id}", headers=admin_headers).json()["data"]["status"] == "pending"

    for _ in range(2):
        response = client.put(f"/events/{event_id}/approve", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "approved"

def test_approve_missing_event(client, admin_headers):
    response = client.put("/events/missing/approve", headers=admin_headers)
    assert response.status_code == 404
    assert response.json()["message"] == "Event not found"

def test_reject_event(client, event_id, admin_headers):
    response = client.put(f"/events/{event_id}/reject", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "rejected"
    assert client.put(f"/events/{event_id}/approve", headers=admin_headers).status_code == 409

def test_update_event(client, event_id, organizer_headers, student_headers):
    response = client.put(f"/events/{event_id}", json={"venue": "Main Hall"}, headers=organizer_headers)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["venue"] == "Main Hall"
    assert data["title"] == "Test Event"
    assert data["status"] == "pending"

    assert client.put(f"/events/{event_id}", json={"title": "Mine"}, headers=student_headers).status_code == 403
    assert client.put("/events/missing", json={"title": "Mine"}, headers=organizer_headers).status_code == 404

def test_delete_event(client, event_id, organizer_headers, student_headers):
    assert client.delete(f"/events/{event_id}", headers=student_headers).status_code == 403
    response = client.delete(f"/events/{event_id}", headers=organizer_headers)
    assert response.status_code == 200
    assert client.get(f"/events/{event_id}", headers=organizer_headers).status_code == 404

def test_join_and_leave(client, approved_event_id, student_headers, student_user):
    response = client.post(f"/events/{approved_event_id}/join", headers=student_headers)
    assert response.status_code == 200
    assert response.json()["data"]["participants"] == [student_user.id]
    assert response.json()["data"]["remaining_slots"] == 1

    again = client.post(f"/events/{approved_event_id}/join", headers=student_headers)
    assert again.status_code == 409
    assert again.json()["message"] == "You have already joined this event"

    joined = client.get("/events/joined", headers=student_headers).json()["data"]
    assert [e["id"] for e in joined] == [approved_event_id]

    response = client.post(f"/events/{approved_event_id}/leave", headers=student_headers)
    assert response.status_code == 200
    assert response.json()["data"]["participants"] == []

    response = client.post(f"/events/{approved_event_id}/leave", headers=student_headers)
    assert response.status_code == 409
    assert response.json()["message"] == "You have not joined this event"

def test_join_full_event(client, approved_event_id, app_db, make_user, auth_headers):
    guests = [make_user(app_db, f"Guest {i}") for i in range(3)]
    statuses = [client.post(f"/events/{approved_event_id}/join", headers=auth_headers(g)).status_code for g in guests]
    assert statuses == [200, 200, 409]
    event = client.get(f"/events/{approved_event_id}", headers=auth_headers(guests[0])).json()["data"]
    assert event["remaining_slots"] == 0
    assert len(event["participants"]) == 2

def test_export_participants(client, approved_event_id, organizer_headers, student_headers, student_user):
    client.post(f"/events/{approved_event_id}/join", headers=student_headers)
    response = client.get(f"/events/{approved_event_id}/participants/export", headers=organizer_headers)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert student_user.email in response.text
    assert client.get(f"/events/{approved_event_id}/participants/export", headers=student_headers).status_code == 403

def test_join_and_review_need_visible_unrejected_event(client, event_id, admin_headers, organizer_headers, student_headers):
    response = client.post(f"/events/{event_id}/join", headers=student_headers)
    assert response.status_code == 404
    assert response.json()["message"] == "Event not found"
    review = {"rating": 4, "comment": "Early look"}
    assert client.post(f"/feedback/{event_id}", json=review, headers=student_headers).status_code == 404

    client.put(f"/events/{event_id}/reject", headers=admin_headers)
    response = client.post(f"/events/{event_id}/join", headers=organizer_headers)
    assert response.status_code == 409
    assert response.json()["message"] == "Rejected events cannot be joined"
    assert client.post(f"/feedback/{event_id}", json=review, headers=organizer_headers).status_code == 409

def test_submit_feedback(client, approved_event_id, student_headers):
    response = client.post(f"/feedback/{approved_event_id}", json={"rating": 4, "comment": "Nice"}, headers=student_headers)
    assert response.status_code == 201
    assert response.json()["data"]["rating"] == 4

    listing = client.get(f"/feedback/{approved_event_id}", headers=student_headers).json()["data"]
    assert listing["summary"]["total"] == 1
    assert listing["summary"]["average"] == 4
    event = client.get(f"/events/{approved_event_id}", headers=student_headers).json()["data"]
    assert event["total_reviews"] == 1
    assert event["average_rating"] == 4

def test_feedback_rating_out_of_range(client, approved_event_id, student_headers):
    response = client.post(f"/feedback/{approved_event_id}", json={"rating": 6, "comment": "Too good"}, headers=student_headers)
    assert response.status_code == 400
    listing = client.get(f"/feedback/{approved_event_id}", headers=student_headers).json()["data"]
    assert listing["items"] == []

def test_feedback_for_missing_event(client, student_headers):
    response = client.post("/feedback/missing", json={"rating": 3, "comment": "Hmm"}, headers=student_headers)
    assert response.status_code == 404

def test_admin_manages_users(client, admin_headers, student_user, student_headers):
    assert client.get("/users", headers=student_headers).status_code == 403
    users = client.get("/users", headers=admin_headers).json()["data"]
    assert student_user.id in {u["id"] for u in users}

    response = client.put(f"/users/{student_user.id}/role", json={"role": "Teacher"}, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["data"]["role"] == "Teacher"
    assert client.put(f"/users/{student_user.id}/role", json={"role": "Janitor"}, headers=admin_headers).status_code == 400

    response = client.put(f"/users/{student_user.id}/active", json={"active": False}, headers=admin_headers)
    assert response.json()["data"]["active"] is False
    assert client.get("/events", headers=student_headers).status_code == 403

def test_update_profile(client, student_headers):
    response = client.put("/users/me", json={"name": "Renamed Student"}, headers=student_headers)
    assert response.status_code == 200
    assert client.get("/users/me", headers=student_headers).json()["data"]["name"] == "Renamed Student"

def test_scheduler_routes(client, approved_event_id, student_headers):
    response = client.get("/scheduler/next", headers=student_headers)
    assert response.status_code == 200
    assert response.json()["data"]["id"] == approved_event_id
    assert response.json()["data"]["starts_at"] == "2030-05-01T10:00:00"

    window = client.get(
        "/scheduler/window",
        params={"start": "2030-05-01T00:00:00", "end": "2030-05-02T00:00:00"},
        headers=student_headers,
    ).json()["data"]
    assert [e["id"] for e in window] == [approved_event_id]

def test_scheduler_next_skips_entries_without_an_event(client, approved_event_id, student_headers):
    from main import scheduler
    heapq.heappush(scheduler.event_queue, (datetime(2030, 1, 1).timestamp(), "vanished"))
    response = client.get("/scheduler/next", headers=student_headers)
    assert response.status_code == 200
    assert response.json()["data"]["id"] == approved_event_id
