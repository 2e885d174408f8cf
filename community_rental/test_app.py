from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from .app import app, get_notifier, get_rate_limiter
from .auth import create_access_token, get_current_user
from .clock import isoformat_z, utcnow
from .config import settings
from .conftest import RecordingNotifier
from .database import get_session
from .models import BookingStatus
from .rate_limit import SlidingWindowRateLimiter

client = TestClient(app)

TOMORROW = (utcnow() + timedelta(days=1)).replace(hour=10, minute=0, second=0, microsecond=0)


def iso(hours: float) -> str:
    return isoformat_z(TOMORROW + timedelta(hours=hours))


def teardown_function():
    app.dependency_overrides = {}


@pytest.fixture
def api(session, users, items):
    """Route requests through the test database; ``login`` picks the acting user."""
    notifier = RecordingNotifier()
    limiter = SlidingWindowRateLimiter(limit=100, window_seconds=60)

    def get_test_session():
        yield session

    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    def login(name):
        user = users[name]
        app.dependency_overrides[get_current_user] = lambda: user

    return login


def request_booking(item_id, start=0, end=2, quantity=1, notes=None):
    body = {"item_id": item_id, "quantity": quantity, "start": iso(start), "end": iso(end)}
    if notes is not None:
        body["notes"] = notes
    return client.post("/bookings", json=body)


# --------
# Authentication
# --------


def test_healthz():
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_get_bookings_not_logged_in(api):
    response = client.get("/bookings")
    assert response.status_code == 401


def test_post_booking_not_logged_in(api, items):
    response = request_booking(items["room"].id)
    assert response.status_code == 401


def test_bearer_token(api, monkeypatch):
    monkeypatch.setattr(settings, "secret_key", "test-secret")
    token = create_access_token({"sub": "alice"})

    response = client.get("/bookings", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json() == []


def test_bearer_token_unknown_user(api, monkeypatch):
    monkeypatch.setattr(settings, "secret_key", "test-secret")
    token = create_access_token({"sub": "mallory"})

    response = client.get("/bookings", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_bearer_token_bad_signature(api, monkeypatch):
    monkeypatch.setattr(settings, "secret_key", "test-secret")
    token = create_access_token({"sub": "alice"})
    monkeypatch.setattr(settings, "secret_key", "another-secret")

    response = client.get("/bookings", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


# --------
# Items
# --------


def test_list_items_hides_inactive(api):
    api("alice")
    response = client.get("/items")
    assert response.status_code == 200
    assert [item["title"] for item in response.json()] == ["Badminton rackets", "Party room"]


def test_get_item(api, items):
    api("alice")
    response = client.get(f"/items/{items['rackets'].id}")
    assert response.status_code == 200
    assert response.json()["total_quantity"] == 3

    response = client.get("/items/missing")
    assert response.status_code == 404
    assert response.json() == {"detail": "Item not found.", "kind": "NOT_FOUND"}


def test_availability_is_public(api, items):
    api("alice")
    booking = request_booking(items["room"].id).json()
    del app.dependency_overrides[get_current_user]

    response = client.get(
        f"/items/{items['room'].id}/availability", params={"from": iso(-10), "to": iso(10)}
    )
    assert response.status_code == 200
    slots = response.json()
    assert [slot["id"] for slot in slots] == [booking["id"]]
    assert slots[0]["status"] == "REQUESTED"
    assert slots[0]["start_date"] == iso(0)


def test_availability_rejects_inverted_window(api, items):
    response = client.get(
        f"/items/{items['room'].id}/availability", params={"from": iso(2), "to": iso(1)}
    )
    assert response.status_code == 400
    assert response.json()["kind"] == "BAD_REQUEST"


# --------
# Bookings
# --------


def test_create_booking(api, items):
    api("alice")
    response = request_booking(items["rackets"].id, quantity=2, notes="Tournament")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "REQUESTED"
    assert data["quantity"] == 2
    assert data["start_date"] == iso(0)
    assert data["end_date"].endswith("Z")
    assert data["latest_note"] == "Tournament"
    assert data["notes"][0]["kind"] == "REQUESTER"


def test_create_booking_validation_error(api, items):
    api("alice")
    response = request_booking(items["room"].id, start=0, end=50)
    assert response.status_code == 400
    assert response.json() == {
        "detail": "Booking range cannot exceed 2 days.",
        "kind": "BAD_REQUEST",
    }


def test_create_booking_is_rate_limited(api, items):
    api("alice")
    limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60)
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    assert request_booking(items["rackets"].id).status_code == 200
    response = request_booking(items["rackets"].id)
    assert response.status_code == 429
    assert response.json()["kind"] == "RATE_LIMITED"


def test_booking_flow(api, items):
    api("alice")
    booking_id = request_booking(items["room"].id).json()["id"]

    api("rita")
    response = client.post(f"/bookings/{booking_id}/status", json={"status": "ACCEPTED"})
    assert response.status_code == 200
    assert response.json()["status"] == "ACCEPTED"

    api("alice")
    response = client.put(f"/bookings/{booking_id}", json={"start": iso(1), "end": iso(3)})
    assert response.status_code == 200
    assert response.json()["status"] == "REQUESTED"
    assert response.json()["start_date"] == iso(1)

    response = client.post(f"/bookings/{booking_id}/cancel")
    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"


def test_status_change_by_user_is_forbidden(api, items):
    api("alice")
    booking_id = request_booking(items["room"].id).json()["id"]

    response = client.post(f"/bookings/{booking_id}/status", json={"status": "ACCEPTED"})
    assert response.status_code == 403
    assert response.json() == {"detail": "Access denied.", "kind": "FORBIDDEN"}


def test_update_someone_elses_booking(api, items):
    api("alice")
    booking_id = request_booking(items["room"].id).json()["id"]

    api("bob")
    response = client.put(f"/bookings/{booking_id}", json={"start": iso(1), "end": iso(3)})
    assert response.status_code == 403


def test_cancel_missing_booking(api):
    api("alice")
    response = client.post("/bookings/missing/cancel")
    assert response.status_code == 404
    assert response.json()["detail"] == "Booking not found."


def test_decline_needs_reason(api, items):
    api("alice")
    booking_id = request_booking(items["room"].id).json()["id"]

    api("rita")
    response = client.post(f"/bookings/{booking_id}/status", json={"status": "DECLINED"})
    assert response.status_code == 400

    response = client.post(
        f"/bookings/{booking_id}/status", json={"status": "DECLINED", "note": "Fully booked"}
    )
    assert response.status_code == 200
    assert response.json()["latest_note"] == "Fully booked"


def test_add_note(api, items):
    api("alice")
    booking_id = request_booking(items["room"].id).json()["id"]

    api("rita")
    response = client.post(f"/bookings/{booking_id}/notes", json={"body": "Key at reception"})
    assert response.status_code == 200
    assert response.json()["notes"][-1]["kind"] == "TEAM"


def test_list_own_bookings(api, items):
    api("alice")
    request_booking(items["room"].id)
    api("bob")
    request_booking(items["rackets"].id)

    response = client.get("/bookings")
    assert len(response.json()) == 1

    response = client.get("/bookings", params={"all": True})
    assert response.status_code == 403

    api("rita")
    response = client.get("/bookings", params={"all": True})
    assert len(response.json()) == 2
    response = client.get("/bookings", params={"all": True, "status": "ACCEPTED"})
    assert response.json() == []


# --------
# Rental team
# --------


def test_block_slots(api, items):
    api("rita")
    response = client.post(
        f"/items/{items['room'].id}/blocks",
        json={
            "start": iso(0),
            "end": iso(2),
            "reason": "Painting",
            "recurrence": {"frequency": "DAILY", "until": iso(48)},
        },
    )
    assert response.status_code == 200
    assert response.json() == {
        "created_count": 3,
        "skipped_count": 0,
        "skipped": [],
        "title": "Party room",
    }


def test_block_slots_reports_skips(api, items):
    api("alice")
    booking_id = request_booking(items["room"].id, start=24, end=25).json()["id"]
    api("rita")
    client.post(f"/bookings/{booking_id}/status", json={"status": "ACCEPTED"})

    response = client.post(
        f"/items/{items['room'].id}/blocks",
        json={"start": iso(0), "end": iso(2), "recurrence": {"frequency": "DAILY", "until": iso(48)}},
    )
    data = response.json()
    assert data["created_count"] == 2
    assert data["skipped_count"] == 1
    assert data["skipped"][0]["start"] == iso(24)


def test_block_slots_requires_team(api, items):
    api("alice")
    response = client.post(
        f"/items/{items['room'].id}/blocks", json={"start": iso(0), "end": iso(2)}
    )
    assert response.status_code == 403


def test_team_queue(api, items):
    api("alice")
    racket_booking = request_booking(items["rackets"].id, start=2, end=3).json()["id"]
    room_booking = request_booking(items["room"].id, start=1, end=2).json()["id"]

    api("ada")
    client.post(f"/items/{items['room'].id}/blocks", json={"start": iso(5), "end": iso(6)})
    response = client.get("/bookings/team")
    assert response.status_code == 200
    assert [b["id"] for b in response.json()["bookings"]] == [room_booking, racket_booking]

    api("rita")
    response = client.get("/bookings/team")
    assert [b["id"] for b in response.json()["bookings"]] == [racket_booking]

    api("ralf")
    assert client.get("/bookings/team").json()["bookings"] == []

    api("alice")
    assert client.get("/bookings/team").status_code == 403


def test_team_queue_search_and_pages(api, items):
    api("alice")
    first = request_booking(items["rackets"].id, start=1, end=2).json()["id"]
    api("bob")
    second = request_booking(items["rackets"].id, start=2, end=3).json()["id"]
    third = request_booking(items["room"].id, start=3, end=4).json()["id"]

    api("ada")
    response = client.get("/bookings/team", params={"search": "bob"})
    assert [b["id"] for b in response.json()["bookings"]] == [second, third]
    response = client.get("/bookings/team", params={"search": "party"})
    assert [b["id"] for b in response.json()["bookings"]] == [third]

    page = client.get("/bookings/team", params={"limit": 2}).json()
    assert [b["id"] for b in page["bookings"]] == [first, second]
    assert page["next_cursor"] == second
    page = client.get("/bookings/team", params={"limit": 2, "cursor": page["next_cursor"]}).json()
    assert [b["id"] for b in page["bookings"]] == [third]
    assert page["next_cursor"] is None

    api("alice")
    client.post(f"/bookings/{first}/cancel")
    api("ada")
    response = client.get("/bookings/team", params={"status": BookingStatus.CANCELLED.value})
    assert [b["id"] for b in response.json()["bookings"]] == [first]
