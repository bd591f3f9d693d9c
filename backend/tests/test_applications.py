from conftest import activate_listing, auth_header


APPLICATION = {
    "full_name": "Tom Tenant",
    "email": "tenant@example.com",
    "phone": "555-0101",
    "move_in_date": "2030-02-01",
    "message": "I love the balcony.",
}


def test_apply_creates_message_and_notification(client, owner, tenant, live_listing):
    r = client.post(f"/listings/{live_listing}/applications", json=APPLICATION, headers=auth_header(tenant))
    assert r.status_code == 200, r.text
    app_out = r.json()["application"]
    assert app_out["status"] == "pending"
    assert app_out["listing"]["id"] == live_listing

    inbox = client.get("/messages", headers=auth_header(owner)).json()
    assert inbox["unread"] == 1
    content = inbox["items"][0]["content"]
    assert content.startswith("New Application for Sunny 2BR near the park")
    assert "Desired Move-in Date: February 1, 2030" in content
    assert "I love the balcony." in content

    notes = client.get("/notifications", headers=auth_header(owner)).json()
    assert notes["unread"] == 1
    assert notes["items"][0]["kind"] == "application"

    mine = client.get(f"/listings/{live_listing}/applications/mine", headers=auth_header(tenant)).json()
    assert mine["application"]["status"] == "pending"


def test_duplicate_application_conflicts(client, tenant, live_listing):
    assert client.post(f"/listings/{live_listing}/applications", json=APPLICATION, headers=auth_header(tenant)).status_code == 200
    r = client.post(f"/listings/{live_listing}/applications", json=APPLICATION, headers=auth_header(tenant))
    assert r.status_code == 409


def test_cannot_apply_to_own_or_unpublished_listing(client, owner, tenant, listing_id):
    r = client.post(f"/listings/{listing_id}/applications", json=APPLICATION, headers=auth_header(tenant))
    assert r.status_code == 404

    activate_listing(listing_id)
    r = client.post(f"/listings/{listing_id}/applications", json=APPLICATION, headers=auth_header(owner))
    assert r.status_code == 400


def test_owner_decides_application(client, owner, tenant, live_listing):
    app_id = client.post(
        f"/listings/{live_listing}/applications", json=APPLICATION, headers=auth_header(tenant)
    ).json()["application"]["id"]

    assert client.post(f"/applications/{app_id}/approve", headers=auth_header(tenant)).status_code == 403

    pending = client.get("/owner/applications", params={"status": "pending"}, headers=auth_header(owner)).json()
    assert [a["id"] for a in pending["items"]] == [app_id]

    r = client.post(f"/applications/{app_id}/approve", headers=auth_header(owner))
    assert r.status_code == 200
    assert r.json()["application"]["status"] == "approved"

    mine = client.get("/me/applications", headers=auth_header(tenant)).json()["items"]
    assert mine[0]["status"] == "approved"
    notes = client.get("/notifications", headers=auth_header(tenant)).json()["items"]
    assert notes[0]["kind"] == "application_status"


def test_messaging_thread(client, owner, tenant, live_listing):
    owner_id = client.get("/me", headers=auth_header(owner)).json()["user"]["id"]
    tenant_id = client.get("/me", headers=auth_header(tenant)).json()["user"]["id"]

    r = client.post(
        "/messages",
        json={"recipient_id": owner_id, "content": "Is it still available?", "listing_id": live_listing},
        headers=auth_header(tenant),
    )
    assert r.status_code == 200, r.text
    first = r.json()["message"]
    conversation_id = first["conversation_id"]
    assert first["listing"]["id"] == live_listing

    r = client.post(
        "/messages",
        json={"recipient_id": tenant_id, "content": "Yes it is.", "conversation_id": conversation_id},
        headers=auth_header(owner),
    )
    assert r.status_code == 200

    thread = client.get("/messages", params={"conversation_id": conversation_id}, headers=auth_header(tenant)).json()
    assert len(thread["items"]) == 2
    assert thread["unread"] == 1

    reply = next(m for m in thread["items"] if m["content"] == "Yes it is.")
    assert client.post(f"/messages/{reply['id']}/read", headers=auth_header(owner)).status_code == 404
    assert client.post(f"/messages/{reply['id']}/read", headers=auth_header(tenant)).status_code == 200
    assert client.get("/messages", headers=auth_header(tenant)).json()["unread"] == 0


def test_message_validation(client, owner, tenant):
    owner_id = client.get("/me", headers=auth_header(owner)).json()["user"]["id"]
    tenant_id = client.get("/me", headers=auth_header(tenant)).json()["user"]["id"]

    assert client.post("/messages", json={"recipient_id": owner_id, "content": "  "}, headers=auth_header(tenant)).status_code == 400
    assert client.post("/messages", json={"recipient_id": tenant_id, "content": "hi"}, headers=auth_header(tenant)).status_code == 400
    assert client.post("/messages", json={"recipient_id": "nobody", "content": "hi"}, headers=auth_header(tenant)).status_code == 404
    r = client.post(
        "/messages",
        json={"recipient_id": owner_id, "content": "hi", "conversation_id": "not-my-thread"},
        headers=auth_header(tenant),
    )
    assert r.status_code == 404


def test_deleting_listing_keeps_message_threads(client, owner, tenant, live_listing):
    client.post(f"/listings/{live_listing}/applications", json=APPLICATION, headers=auth_header(tenant))
    assert client.delete(f"/listings/{live_listing}", headers=auth_header(owner)).status_code == 200

    items = client.get("/messages", headers=auth_header(owner)).json()["items"]
    assert len(items) == 1
    assert items[0]["listing"] is None
