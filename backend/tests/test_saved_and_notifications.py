import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import auth_header


def test_save_toggle_and_notes(client, tenant, live_listing):
    assert client.get(f"/listings/{live_listing}/saved").json() == {"saved": False}

    r = client.post(f"/listings/{live_listing}/save/toggle", headers=auth_header(tenant))
    assert r.json()["saved"] is True
    assert client.get(f"/listings/{live_listing}/saved", headers=auth_header(tenant)).json() == {"saved": True}

    items = client.get("/listings", headers=auth_header(tenant)).json()["items"]
    assert items[0]["is_saved"] is True

    r = client.post(f"/listings/{live_listing}/save/toggle", headers=auth_header(tenant))
    assert r.json()["saved"] is False
    assert client.get("/me/saved", headers=auth_header(tenant)).json()["items"] == []

    r = client.post(f"/listings/{live_listing}/save", json={"notes": "near work"}, headers=auth_header(tenant))
    assert r.status_code == 200
    saved_id = r.json()["id"]
    assert client.post(f"/listings/{live_listing}/save", headers=auth_header(tenant)).status_code == 409

    r = client.patch(f"/me/saved/{saved_id}", json={"notes": "call Monday"}, headers=auth_header(tenant))
    assert r.status_code == 200
    saved = client.get("/me/saved", headers=auth_header(tenant)).json()["items"]
    assert saved[0]["notes"] == "call Monday"
    assert saved[0]["listing"]["id"] == live_listing

    assert client.delete(f"/listings/{live_listing}/save", headers=auth_header(tenant)).json()["saved"] is False


def test_saved_check_tolerates_bad_ids(client, tenant):
    assert client.get("/listings/not-a-uuid/saved", headers=auth_header(tenant)).json() == {"saved": False}


def test_notifications_read_flags(client, owner, tenant):
    owner_id = client.get("/me", headers=auth_header(owner)).json()["user"]["id"]
    for text in ("one", "two"):
        client.post("/messages", json={"recipient_id": owner_id, "content": text}, headers=auth_header(tenant))

    listing = client.get("/notifications", headers=auth_header(owner)).json()
    assert listing["unread"] == 2
    first_id = listing["items"][0]["id"]

    assert client.post(f"/notifications/{first_id}/read", headers=auth_header(tenant)).status_code == 404
    assert client.post(f"/notifications/{first_id}/read", headers=auth_header(owner)).status_code == 200
    assert client.get("/notifications/unread-count", headers=auth_header(owner)).json()["count"] == 1

    assert client.post("/notifications/read-all", headers=auth_header(owner)).status_code == 200
    assert client.get("/notifications/unread-count", headers=auth_header(owner)).json()["count"] == 0
    assert client.get("/notifications", params={"unread_only": True}, headers=auth_header(owner)).json()["items"] == []


def test_websocket_pushes_unread_count(client, owner, tenant):
    owner_id = client.get("/me", headers=auth_header(owner)).json()["user"]["id"]

    with client.websocket_connect(f"/ws/notifications?token={owner}") as ws:
        assert ws.receive_json() == {"type": "unread_count", "count": 0}

        client.post("/messages", json={"recipient_id": owner_id, "content": "hello"}, headers=auth_header(tenant))
        assert ws.receive_json() == {"type": "unread_count", "count": 1}

        client.post("/notifications/read-all", headers=auth_header(owner))
        assert ws.receive_json() == {"type": "unread_count", "count": 0}


def test_websocket_rejects_bad_token_after_handshake(client):
    with client.websocket_connect("/ws/notifications?token=bogus") as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4401
    assert exc.value.reason == "Unauthorized"
