import jwt

from supportchat.core import jwt_auth

from conftest import TENANT, WIDGET, open_room, staff

SECRET = "test-secret-key-with-enough-length-for-hs256"


def test_widget_creates_waiting_room(client):
    room = open_room(client, first_message="hello")
    assert room["status"] == "waiting"
    assert room["attendant_id"] is None
    assert room["visitor"]["name"] == "Vera"

    messages = client.get(f"/api/rooms/{room['id']}/visitor-messages", params={"visitor_token": "visitor-1"}, headers=WIDGET)
    assert [m["content"] for m in messages.json()] == ["hello"]


def test_widget_requires_tenant_header(client):
    assert client.post("/api/rooms", json={"visitor_token": "v"}).status_code == 400


def test_second_open_room_for_visitor_is_429(client):
    open_room(client)
    response = client.post("/api/rooms", json={"visitor_token": "visitor-1"}, headers=WIDGET)
    assert response.status_code == 429
    assert response.json()["error"] == "capacity_exceeded"


def test_staff_routes_require_identity(client):
    assert client.get("/api/rooms").status_code == 401
    assert client.get("/api/rooms", headers={"X-Tenant-Id": TENANT}).status_code == 401


def test_claim_race_returns_409_for_loser(client, attendants):
    room = open_room(client)
    first = client.post(f"/api/rooms/{room['id']}/claim", headers=staff("u-1"))
    assert first.status_code == 200
    assert first.json()["attendant_id"] == attendants["u-1"]

    second = client.post(f"/api/rooms/{room['id']}/claim", headers=staff("u-2"))
    assert second.status_code == 409
    assert second.json()["error"] == "conflict"
    assert second.json()["room_id"] == room["id"]


def test_user_without_profile_cannot_claim(client, attendants):
    room = open_room(client)
    assert client.post(f"/api/rooms/{room['id']}/claim", headers=staff("stranger")).status_code == 403


def test_rooms_are_tenant_scoped(client, attendants):
    room = open_room(client)
    other_tenant = {"X-Tenant-Id": "globex", "X-User-Id": "u-1"}
    assert client.get(f"/api/rooms/{room['id']}", headers=other_tenant).status_code == 404
    assert client.get("/api/rooms/9999", headers=staff("u-1")).status_code == 404


def test_close_and_csat_flow(client, attendants):
    room = open_room(client)
    room_id = room["id"]

    # a waiting room must be claimed first
    assert client.post(f"/api/rooms/{room_id}/close", json={"resolution_status": "resolved"}, headers=staff("u-1")).status_code == 422

    client.post(f"/api/rooms/{room_id}/claim", headers=staff("u-1"))
    closed = client.post(
        f"/api/rooms/{room_id}/close",
        json={"resolution_status": "resolved", "note": "refund issued"},
        headers=staff("u-1"),
    )
    assert closed.status_code == 200
    assert closed.json()["status"] == "closed"

    csat = {"score": 5, "visitor_token": "visitor-1"}
    assert client.post(f"/api/rooms/{room_id}/csat", json=csat, headers=WIDGET).status_code == 200
    assert client.post(f"/api/rooms/{room_id}/csat", json=csat, headers=WIDGET).status_code == 409
    assert client.post(f"/api/rooms/{room_id}/csat", json={"score": 9, "visitor_token": "visitor-1"}, headers=WIDGET).status_code == 422

    reply = client.post(f"/api/rooms/{room_id}/messages", json={"content": "one more thing"}, headers=staff("u-1"))
    assert reply.status_code == 422
    note = client.post(f"/api/rooms/{room_id}/messages", json={"content": "for the record", "is_internal": True}, headers=staff("u-1"))
    assert note.status_code == 201

    public = client.get(f"/api/rooms/{room_id}/visitor-messages", params={"visitor_token": "visitor-1"}, headers=WIDGET).json()
    assert "refund issued" not in [m["content"] for m in public]
    assert "for the record" not in [m["content"] for m in public]


def test_foreign_visitor_token_is_404(client):
    room = open_room(client)
    response = client.post(
        f"/api/rooms/{room['id']}/visitor-messages",
        json={"visitor_token": "someone-else", "content": "hi"},
        headers=WIDGET,
    )
    assert response.status_code == 404


def test_empty_message_is_rejected(client, attendants):
    room = open_room(client)
    assert client.post(f"/api/rooms/{room['id']}/messages", json={"content": "  "}, headers=staff("u-1")).status_code == 422


def test_room_list_carries_unread_counts(client, attendants):
    room = open_room(client)
    for text in ("one", "two"):
        client.post(
            f"/api/rooms/{room['id']}/visitor-messages",
            json={"visitor_token": "visitor-1", "content": text},
            headers=WIDGET,
        )

    listing = client.get("/api/rooms", headers=staff("u-1")).json()
    assert listing["total"] == 1
    assert listing["rooms"][0]["unread_count"] == 2

    read = client.post(f"/api/rooms/{room['id']}/read", headers=staff("u-1"))
    assert read.status_code == 200
    assert read.json()["unread_count"] == 0
    assert client.get("/api/rooms", headers=staff("u-1")).json()["rooms"][0]["unread_count"] == 0


def test_transfer_endpoint(client, attendants):
    room = open_room(client)
    client.post(f"/api/rooms/{room['id']}/claim", headers=staff("u-1"))
    response = client.post(
        f"/api/rooms/{room['id']}/transfer",
        json={"to_attendant_id": attendants["u-2"], "from_attendant_id": attendants["u-1"]},
        headers=staff("u-1"),
    )
    assert response.status_code == 200
    assert response.json()["room"]["attendant_id"] == attendants["u-2"]
    assert response.json()["message_id"] is not None


def test_queue_and_attendant_loads(client, attendants):
    first = open_room(client, token="v-1")
    urgent = open_room(client, token="v-2", priority="urgent")
    queue = client.get("/api/queue", headers=staff("u-1")).json()
    assert [r["id"] for r in queue] == [urgent["id"], first["id"]]

    client.post(f"/api/rooms/{first['id']}/claim", headers=staff("u-1"))
    me = client.get("/api/attendants/me", headers=staff("u-1")).json()
    assert me["active_count"] == 1
    assert me["capacity_label"] == "1/5"


def test_business_hours_settings_and_widget_state(client, attendants):
    hours = [{"day_of_week": d, "start_time": "08:00", "end_time": "18:00"} for d in range(5)]
    assert client.put("/api/business-hours", json=hours, headers=staff("u-1")).status_code == 200
    client.put("/api/business-hours/settings", json={"timezone": "UTC", "outside_hours_message": "Closed"}, headers=staff("u-1"))

    result = client.post("/api/business-hours/evaluate", json={"now": "2024-03-09T12:00:00Z"}, headers=staff("u-1"))
    assert result.status_code == 200
    assert result.json()["outside_hours"] is True

    widget = client.get("/api/business-hours/widget", headers=WIDGET).json()
    assert widget["outside_hours"] is True
    assert widget["outside_hours_message"] == "Closed"


def test_jwt_without_chat_module_is_forbidden(client, monkeypatch):
    monkeypatch.setattr(jwt_auth, "JWT_SECRET_KEY", SECRET)
    allowed = jwt.encode({"sub": "u-9", "tenant_id": TENANT, "modules": ["chat"]}, SECRET, algorithm="HS256")
    denied = jwt.encode({"sub": "u-9", "tenant_id": TENANT, "modules": ["crm"]}, SECRET, algorithm="HS256")

    assert client.get("/api/rooms", headers={"Authorization": f"Bearer {allowed}"}).status_code == 200
    assert client.get("/api/rooms", headers={"Authorization": f"Bearer {denied}"}).status_code == 403
    assert client.get("/api/rooms", headers={"Authorization": "Bearer not-a-token"}).status_code == 401


def test_development_headers_refused_once_jwt_is_configured(client, monkeypatch):
    assert client.get("/api/rooms", headers=staff("u-1")).status_code == 200

    monkeypatch.setattr(jwt_auth, "JWT_SECRET_KEY", SECRET)
    assert client.get("/api/rooms", headers=staff("u-1")).status_code == 401
