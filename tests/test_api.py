import asyncio
from datetime import timedelta

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import chat
import database
from schemas import utcnow

from conftest import LAT, LON, auth_header


def _make_admin(db, user):
    db.user.update_one({"_id": ObjectId(user["id"])}, {"$set": {"is_admin": True}})


def _create_bank(client, token, **fields):
    payload = {
        "name": "Central Blood Bank",
        "license_number": "LIC-100",
        "phone": "+91 98765 43210",
        "email": "central@example.com",
        "location": {"type": "Point", "coordinates": [LON, LAT]},
    }
    payload.update(fields)
    resp = client.post("/blood-banks", json=payload, headers=auth_header(token))
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "Hemolink backend is live"}
    assert client.get("/health").json()["success"] is True


def test_register_login_and_profile(client, register):
    user, token = register(email="Asha@Example.com")
    assert user["email"] == "asha@example.com"
    assert "password_hash" not in user
    assert user["lives_impacted"] == 0

    resp = client.post("/auth/login", json={"email": "asha@example.com", "password": "correct-horse"})
    assert resp.status_code == 200
    token = resp.json()["data"]["token"]

    me = client.get("/users/me", headers=auth_header(token)).json()["data"]
    assert me["id"] == user["id"]

    resp = client.patch("/users/me", json={"name": "Asha K"}, headers=auth_header(token))
    assert resp.json()["data"]["name"] == "Asha K"


def test_duplicate_email_is_conflict(client, register):
    register(email="dup@example.com")
    resp = client.post("/auth/register", json={
        "email": "dup@example.com", "password": "another-pass", "name": "Dup", "blood_group": "A+"})
    assert resp.status_code == 409
    assert resp.json()["error"] == "conflict"


def test_bad_credentials_and_missing_token(client, register):
    register(email="x@example.com")
    resp = client.post("/auth/login", json={"email": "x@example.com", "password": "wrong-password"})
    assert resp.status_code == 401
    assert client.get("/users/me").status_code == 401
    assert client.get("/users/me", headers=auth_header("garbage")).status_code == 401


def test_validation_errors_are_invalid_input(client):
    resp = client.post("/auth/register", json={"email": "short@example.com", "password": "123",
                                               "name": "S", "blood_group": "Q"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "invalid_input"
    assert body["errors"]


def test_google_sign_in(client, register):
    resp = client.post("/auth/google", json={"email": "new@example.com", "external_id": "g-1"})
    assert resp.status_code == 400

    resp = client.post("/auth/google", json={"email": "new@example.com", "name": "New User",
                                             "external_id": "g-1", "blood_group": "B-"})
    assert resp.status_code == 200
    created = resp.json()["data"]["user"]
    assert created["google_id"] == "g-1"

    # Same Google id signs into the same account
    again = client.post("/auth/google", json={"email": "new@example.com", "external_id": "g-1"})
    assert again.json()["data"]["user"]["id"] == created["id"]

    # An existing local account is linked by email
    local, _ = register(email="local@example.com")
    linked = client.post("/auth/google", json={"email": "local@example.com", "external_id": "g-2"})
    assert linked.json()["data"]["user"]["id"] == local["id"]


def test_admin_routes_are_guarded(client, register):
    _, token = register()
    resp = client.post("/blood-banks", json={}, headers=auth_header(token))
    assert resp.status_code in (400, 403)
    resp = client.patch(f"/blood-banks/{ObjectId()}/inventory", json={"blood_group": "O+", "delta": 1},
                        headers=auth_header(token))
    assert resp.status_code == 403


def test_donation_flow(client, db, register):
    admin, admin_token = register(email="admin@example.com")
    _make_admin(db, admin)
    bank = _create_bank(client, admin_token)
    donor, token = register(email="donor@example.com")

    date = (utcnow() - timedelta(days=1)).replace(microsecond=0)
    payload = {"blood_bank_id": bank["id"], "blood_group": "O+", "units": 2, "donation_date": date.isoformat()}
    resp = client.post("/donations", json=payload, headers=auth_header(token))
    assert resp.status_code == 201, resp.text
    data = resp.json()["data"]
    assert data["accepted"] is True
    assert data["progression"]["total_donations"] == 1
    assert data["progression"]["badges"] == ["first_donation"]

    # Inside the window: refused with the date the donor can come back
    retry = dict(payload, donation_date=(date + timedelta(hours=1)).isoformat())
    resp = client.post("/donations", json=retry, headers=auth_header(token))
    assert resp.status_code == 400
    body = resp.json()
    assert body["accepted"] is False
    assert body["error"] == "ineligible_donor"
    assert body["next_eligible_date"].startswith((date + timedelta(days=90)).date().isoformat())

    donation_id = data["donation"]["id"]
    for status in ("approved", "completed"):
        resp = client.patch(f"/donations/{donation_id}/status", json={"status": status},
                            headers=auth_header(admin_token))
        assert resp.status_code == 200, resp.text

    stocked = client.get(f"/blood-banks/{bank['id']}").json()["data"]
    assert stocked["inventory"]["O+"] == 2

    history = client.get("/donations/history", headers=auth_header(token)).json()
    assert history["pagination"]["total"] == 1
    assert history["data"][0]["status"] == "completed"

    rewards = client.get("/rewards/status", headers=auth_header(token)).json()["data"]
    assert rewards["current_points"] == 100
    assert rewards["lives_impacted"] == 3


def test_future_donation_date_is_rejected(client, db, register):
    admin, admin_token = register(email="admin@example.com")
    _make_admin(db, admin)
    bank = _create_bank(client, admin_token)
    _, token = register()
    payload = {"blood_bank_id": bank["id"], "blood_group": "O+", "units": 1,
               "donation_date": (utcnow() + timedelta(days=2)).isoformat()}
    resp = client.post("/donations", json=payload, headers=auth_header(token))
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_input"


def test_request_flow(client, register):
    requester, requester_token = register(email="req@example.com", role="recipient")
    donor, donor_token = register(email="donor@example.com")

    payload = {
        "patient_name": "Ravi",
        "blood_group": "O+",
        "units": 2,
        "urgency": "urgent",
        "hospital": "General Hospital",
        "required_by": (utcnow() + timedelta(days=1)).isoformat(),
        "location": {"type": "Point", "coordinates": [LON, LAT]},
    }
    resp = client.post("/requests", json=payload, headers=auth_header(requester_token))
    assert resp.status_code == 201, resp.text
    data = resp.json()["data"]
    assert [d["id"] for d in data["candidate_donors"]] == [donor["id"]]
    request_id = data["request"]["id"]

    resp = client.post(f"/requests/{request_id}/respond", headers=auth_header(donor_token))
    assert resp.json()["data"]["donors_responded"] == 1
    resp = client.post(f"/requests/{request_id}/respond", headers=auth_header(donor_token))
    assert resp.status_code == 409
    assert resp.json()["error"] == "duplicate_response"

    resp = client.patch(f"/requests/{request_id}/status", json={"status": "in-progress"},
                        headers=auth_header(donor_token))
    assert resp.status_code == 403
    resp = client.patch(f"/requests/{request_id}/status", json={"status": "in-progress"},
                        headers=auth_header(requester_token))
    assert resp.json()["data"]["status"] == "in-progress"

    mine = client.get("/requests/mine", headers=auth_header(requester_token)).json()
    assert [r["id"] for r in mine["data"]] == [request_id]

    nearby = client.get("/requests/nearby", params={"lat": LAT, "lng": LON}).json()["data"]
    assert nearby[0]["id"] == request_id


def test_unknown_request_is_not_found(client):
    assert client.get(f"/requests/{ObjectId()}").status_code == 404
    assert client.get("/requests/not-an-id").status_code == 400


def test_leaderboard(client, register):
    _, token = register()
    resp = client.get("/rewards/leaderboard", params={"type": "donations"}, headers=auth_header(token))
    assert resp.status_code == 200
    assert resp.json()["data"]["user_stats"]["rank"] == 1


def test_chat_room_broadcast(client, register):
    user, token = register()
    with client.websocket_connect(f"/ws/chat/support?token={token}") as ws:
        ws.send_json({"type": "message", "content": "Hello"})
        message = ws.receive_json()
        assert message["content"] == "Hello"
        assert message["sender_id"] == user["id"]

        ws.send_json({"type": "shout"})
        assert ws.receive_json()["type"] == "error"


def test_chat_requires_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/chat/support?token=bad"):
            pass


def test_eligibility_honours_the_date_offset(client, db, register):
    donor, token = register()
    last = utcnow().replace(microsecond=0) - timedelta(days=100)
    db.user.update_one({"_id": ObjectId(donor["id"])}, {"$set": {"last_donation_date": last}})

    # One hour before the window closes in UTC, written in India time
    local = last + timedelta(days=90, hours=-1) + timedelta(hours=5, minutes=30)
    resp = client.get("/donations/eligibility", params={"date": local.isoformat() + "+05:30"},
                      headers=auth_header(token))
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    assert data["eligible"] is False
    assert data["next_eligible_date"].startswith((last + timedelta(days=90)).date().isoformat())


def test_malformed_chat_frames_get_an_error(client, register):
    user, token = register()
    with client.websocket_connect(f"/ws/chat/help-desk?token={token}") as ws:
        ws.send_text("not json")
        assert ws.receive_json()["type"] == "error"
        ws.send_text("[1]")
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "message", "content": "Still here"})
        assert ws.receive_json()["content"] == "Still here"
    assert "help-desk" not in chat.rooms.rooms


class BrokenSocket:
    async def send_json(self, payload):
        raise RuntimeError("Cannot call send once a close message has been sent")


class RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, payload):
        self.sent.append(payload)


def test_broadcast_drops_unreachable_members():
    rooms = chat.ChatRooms()
    broken, alive = BrokenSocket(), RecordingSocket()
    rooms.rooms["ward"].update({broken, alive})

    asyncio.run(rooms.broadcast("ward", {"type": "typing"}))

    assert alive.sent == [{"type": "typing"}]
    assert rooms.rooms["ward"] == {alive}


def test_startup_creates_indexes(db, monkeypatch):
    from main import app
    calls = []
    monkeypatch.setattr(database, "ensure_indexes", lambda: calls.append(True))
    with TestClient(app) as c:
        assert c.get("/").status_code == 200
    assert calls == [True]
