"""HTTP surface under /api/v1."""
import pytest

from conftest import auth_headers, expired_token
from lifestream.models import UserRole

NEW_REQUEST = {
    "patientName": "Jane Patient",
    "bloodType": "B+",
    "unitsNeeded": 3,
    "hospital": "St. Mary",
    "urgency": "medium",
    "location": {"latitude": 40.7, "longitude": -74.0},
}


def create_request(client, user, **overrides):
    body = dict(NEW_REQUEST, **overrides)
    response = client.post("/api/v1/requests/", json=body, headers=auth_headers(user))
    assert response.status_code == 201, response.text
    return response.json()


def test_root_and_health(client):
    assert client.get("/").json()["websocket"] == "/ws"
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert "X-Request-ID" in health.headers


@pytest.mark.parametrize("headers, code", [
    ({}, "MISSING_CREDENTIAL"),
    ({"Authorization": "Bearer garbage"}, "INVALID_CREDENTIAL"),
])
def test_requires_credentials(client, headers, code):
    response = client.get("/api/v1/requests/active", headers=headers)
    assert response.status_code == 401
    body = response.json()
    assert body["status"] == "error"
    assert body["code"] == code


def test_expired_token(client, donor):
    response = client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {expired_token(donor)}"})
    assert response.status_code == 401
    assert response.json()["code"] == "EXPIRED_CREDENTIAL"


def test_current_user_and_location(client, donor):
    me = client.get("/api/v1/users/me", headers=auth_headers(donor))
    assert me.status_code == 200
    assert me.json()["id"] == donor.id
    assert me.json()["role"] == "donor"

    bad = client.post("/api/v1/users/location", json={"latitude": -91, "longitude": 0}, headers=auth_headers(donor))
    assert bad.status_code == 422
    assert bad.json()["code"] == "VALIDATION_ERROR"

    moved = client.post("/api/v1/users/location", json={"latitude": 51.5, "longitude": -0.12}, headers=auth_headers(donor))
    assert moved.status_code == 200
    assert moved.json()["latitude"] == 51.5
    assert moved.json()["location_updated_at"] is not None


def test_create_request_validation(client, requester):
    response = client.post(
        "/api/v1/requests/",
        json=dict(NEW_REQUEST, unitsNeeded=0),
        headers=auth_headers(requester),
    )
    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_create_and_list_requests(client, requester):
    medium = create_request(client, requester)
    emergency = client.post("/api/v1/requests/emergency", json=NEW_REQUEST, headers=auth_headers(requester))
    assert emergency.status_code == 201
    assert emergency.json()["urgency"] == "critical"
    assert emergency.json()["is_emergency"] is True
    low = create_request(client, requester, urgency="low", bloodType="A-")

    active = client.get("/api/v1/requests/active", headers=auth_headers(requester)).json()
    assert [r["id"] for r in active] == [emergency.json()["id"], medium["id"], low["id"]]
    assert active[0]["requester_name"] == "Alice Requester"

    filtered = client.get("/api/v1/requests/active?blood_type=A-", headers=auth_headers(requester)).json()
    assert [r["id"] for r in filtered] == [low["id"]]

    emergencies = client.get("/api/v1/requests/emergency/active", headers=auth_headers(requester)).json()
    assert [r["id"] for r in emergencies] == [emergency.json()["id"]]


def test_respond_and_select_over_http(client, requester, donor, make_user):
    other = make_user(role=UserRole.BOTH)
    request = create_request(client, requester)
    rid = request["id"]

    check = client.get(f"/api/v1/requests/{rid}/existing-response", headers=auth_headers(donor)).json()
    assert check == {"has_responded": False, "response": None}

    first = client.post(f"/api/v1/requests/{rid}/respond", json={"message": "can help"}, headers=auth_headers(donor))
    assert first.status_code == 201
    assert first.json()["status"] == "pending"
    client.post(f"/api/v1/requests/{rid}/respond", json={"message": "me too"}, headers=auth_headers(other))

    duplicate = client.post(f"/api/v1/requests/{rid}/respond", json={"message": "again"}, headers=auth_headers(donor))
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "DUPLICATE_RESPONSE"

    recipient_reply = client.post(f"/api/v1/requests/{rid}/respond", json={}, headers=auth_headers(make_user(role=UserRole.RECIPIENT)))
    assert recipient_reply.status_code == 403

    assert client.get(f"/api/v1/requests/{rid}/existing-response", headers=auth_headers(donor)).json()["has_responded"] is True
    assert client.get(f"/api/v1/requests/{rid}/responses", headers=auth_headers(donor)).status_code == 403
    responses = client.get(f"/api/v1/requests/{rid}/responses", headers=auth_headers(requester)).json()
    assert {r["donor_id"] for r in responses} == {donor.id, other.id}

    selected = client.post(f"/api/v1/requests/{rid}/select-donor", json={"donorId": donor.id}, headers=auth_headers(requester))
    assert selected.status_code == 200
    body = selected.json()
    assert body["request"]["status"] == "fulfilled"
    assert body["donation"]["donor_id"] == donor.id
    assert body["donation"]["status"] == "scheduled"
    assert body["rejected_donor_ids"] == [other.id]

    donations = client.get("/api/v1/requests/donations", headers=auth_headers(donor)).json()
    assert [d["request_id"] for d in donations] == [rid]

    history = client.get("/api/v1/requests/history", headers=auth_headers(requester)).json()
    assert history[0]["id"] == rid
    assert history[0]["response_count"] == 2


def test_select_donor_errors(client, requester, donor):
    rid = create_request(client, requester)["id"]

    missing = client.post("/api/v1/requests/9999/select-donor", json={"donorId": donor.id}, headers=auth_headers(requester))
    assert missing.status_code == 404

    no_response = client.post(f"/api/v1/requests/{rid}/select-donor", json={"donorId": donor.id}, headers=auth_headers(requester))
    assert no_response.status_code == 404
    assert no_response.json()["code"] == "INVALID_DONOR"

    client.post(f"/api/v1/requests/{rid}/respond", json={"message": "ok"}, headers=auth_headers(donor))
    not_owner = client.post(f"/api/v1/requests/{rid}/select-donor", json={"donorId": donor.id}, headers=auth_headers(donor))
    assert not_owner.status_code == 403


def test_status_update_and_cancel(client, requester, donor):
    rid = create_request(client, requester)["id"]

    fulfilled = client.put(f"/api/v1/requests/{rid}/status", json={"status": "fulfilled"}, headers=auth_headers(requester))
    assert fulfilled.status_code == 422

    forbidden = client.delete(f"/api/v1/requests/{rid}", headers=auth_headers(donor))
    assert forbidden.status_code == 403

    expired = client.put(f"/api/v1/requests/{rid}/status", json={"status": "expired"}, headers=auth_headers(requester))
    assert expired.status_code == 200
    assert expired.json()["status"] == "expired"

    again = client.delete(f"/api/v1/requests/{rid}", headers=auth_headers(requester))
    assert again.status_code == 409
    assert again.json()["code"] == "INVALID_STATE"


def test_request_details_not_found(client, donor):
    response = client.get("/api/v1/requests/4040", headers=auth_headers(donor))
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_chat_over_http(client, requester, donor, make_user):
    rid = create_request(client, requester)["id"]
    client.post(f"/api/v1/requests/{rid}/respond", json={"message": "ok"}, headers=auth_headers(donor))

    sent = client.post("/api/v1/chat/messages", json={"requestId": rid, "text": "Hello there"}, headers=auth_headers(donor))
    assert sent.status_code == 201
    message = sent.json()
    assert message["senderType"] == "donor"
    assert message["conversationId"] == f"request:{rid}"

    blank = client.post("/api/v1/chat/messages", json={"requestId": rid, "text": "  "}, headers=auth_headers(donor))
    assert blank.status_code == 422
    assert blank.json()["code"] == "EMPTY_MESSAGE"

    stranger = make_user(role=UserRole.DONOR)
    denied = client.get(f"/api/v1/chat/conversation/request/{rid}", headers=auth_headers(stranger))
    assert denied.status_code == 403
    assert denied.json()["code"] == "ACCESS_DENIED"

    conversation = client.get(f"/api/v1/chat/conversation/request/{rid}", headers=auth_headers(requester)).json()
    assert conversation["conversationId"] == f"request:{rid}"
    assert conversation["requestDetails"]["patientName"] == "Jane Patient"
    assert [m["text"] for m in conversation["messages"]] == ["Hello there"]

    assert client.get("/api/v1/chat/unread-count", headers=auth_headers(requester)).json() == {"unreadCount": 1}

    summaries = client.get("/api/v1/chat/conversations", headers=auth_headers(requester)).json()
    assert summaries[0]["requestId"] == rid
    assert summaries[0]["unreadCount"] == 1
    assert summaries[0]["lastMessageText"] == "Hello there"

    found = client.get(f"/api/v1/chat/conversation/{rid}/search?q=hello", headers=auth_headers(requester)).json()
    assert found["total"] == 1

    read = client.post("/api/v1/chat/messages/read", json={"messageIds": [message["id"]]}, headers=auth_headers(requester))
    assert read.json() == {"markedCount": 1, "messageIds": [message["id"]]}
    assert client.get("/api/v1/chat/unread-count", headers=auth_headers(requester)).json() == {"unreadCount": 0}

    client.post("/api/v1/chat/messages", json={"requestId": rid, "text": "Still there?"}, headers=auth_headers(donor))
    cleared = client.post(f"/api/v1/chat/conversation/{rid}/clear", headers=auth_headers(requester)).json()
    assert cleared["markedCount"] == 1


@pytest.mark.parametrize("method, path, body", [
    ("get", "/api/v1/requests/9223372036854775808", None),
    ("get", "/api/v1/requests/2147483648", None),
    ("get", "/api/v1/requests/0", None),
    ("delete", "/api/v1/requests/9223372036854775808", None),
    ("post", "/api/v1/requests/9223372036854775808/respond", {"message": "hi"}),
    ("get", "/api/v1/requests/active?offset=9223372036854775808", None),
    ("get", "/api/v1/chat/conversation/request/9223372036854775808", None),
    ("get", "/api/v1/chat/conversation/9223372036854775808/search?q=hi", None),
    ("post", "/api/v1/chat/messages", {"requestId": 2**63, "text": "hi"}),
    ("post", "/api/v1/chat/messages/read", {"messageIds": [1, 2**63]}),
])
def test_ids_outside_key_range_rejected(client, donor, method, path, body):
    kwargs = {"headers": auth_headers(donor)}
    if body is not None:
        kwargs["json"] = body
    response = getattr(client, method)(path, **kwargs)
    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_select_donor_id_outside_key_range(client, requester):
    rid = create_request(client, requester)["id"]
    response = client.post(f"/api/v1/requests/{rid}/select-donor", json={"donorId": 2**63}, headers=auth_headers(requester))
    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"
