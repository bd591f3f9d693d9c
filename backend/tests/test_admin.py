from conftest import activate_listing, auth_header


def test_admin_routes_require_admin(client, tenant):
    for path in ("/admin/listings", "/admin/users", "/admin/logs", "/admin/revenue", "/admin/highlights/pending"):
        assert client.get(path, headers=auth_header(tenant)).status_code == 403


def test_admin_listing_moderation(client, admin, owner, listing_id):
    pending = client.get("/admin/listings", params={"status": "pending"}, headers=auth_header(admin)).json()["items"]
    assert [l["id"] for l in pending] == [listing_id]

    r = client.post(f"/admin/listings/{listing_id}/reject", json={"reason": "Blurry photos"}, headers=auth_header(admin))
    assert r.status_code == 200
    detail = client.get(f"/listings/{listing_id}", headers=auth_header(owner)).json()
    assert detail["status"] == "archived"
    assert detail["moderation_reason"] == "Blurry photos"

    r = client.post(f"/admin/listings/{listing_id}/approve", headers=auth_header(admin))
    assert r.status_code == 200
    activate_listing(listing_id)
    assert [l["id"] for l in client.get("/listings").json()["items"]] == [listing_id]

    logs = client.get("/admin/logs", params={"entity_type": "listing"}, headers=auth_header(admin)).json()["items"]
    actions = [entry["action"] for entry in logs]
    assert "reject" in actions and "approve" in actions and "create" in actions

    titles = [n["title"] for n in client.get("/notifications", headers=auth_header(owner)).json()["items"]]
    assert titles[:2] == ["Listing approved", "Listing rejected"]


def test_admin_user_management(client, admin, owner, listing_id):
    users = client.get("/admin/users", params={"q": "owner"}, headers=auth_header(admin)).json()["items"]
    assert len(users) == 1
    assert users[0]["total_listings"] == 1

    admin_id = client.get("/me", headers=auth_header(admin)).json()["user"]["id"]
    assert client.delete(f"/admin/users/{admin_id}", headers=auth_header(admin)).status_code == 403

    r = client.request(
        "DELETE", f"/admin/users/{users[0]['id']}", json={"reason": "spam"}, headers=auth_header(admin)
    )
    assert r.status_code == 200
    assert client.get("/me", headers=auth_header(owner)).status_code == 401
    assert client.get("/admin/listings", headers=auth_header(admin)).json()["items"] == []


def test_admin_revenue(client, admin, owner, listing_id):
    activate_listing(listing_id)
    revenue = client.get("/admin/revenue", headers=auth_header(admin)).json()
    assert revenue["total"] == 100
    assert revenue["active_subscriptions"] == 1
    assert revenue["by_plan"]["monthly"] == {"count": 1, "amount": 100}


def test_admin_lists_applications(client, admin, tenant, listing_id):
    activate_listing(listing_id)
    client.post(
        f"/listings/{listing_id}/applications",
        json={"full_name": "Tom", "email": "tenant@example.com", "move_in_date": "2030-03-01"},
        headers=auth_header(tenant),
    )
    items = client.get("/admin/applications", headers=auth_header(admin)).json()["items"]
    assert len(items) == 1
    assert items[0]["listing"]["id"] == listing_id


def test_highlight_submission_and_review(client, admin, tenant):
    r = client.post(
        "/neighborhoods/astoria/highlights",
        json={"kind": "karaoke", "name": "Somewhere"},
        headers=auth_header(tenant),
    )
    assert r.status_code == 400

    r = client.post(
        "/neighborhoods/astoria/highlights",
        json={"kind": "restaurants-bars", "name": "Taverna Kyclades", "description": "Greek seafood"},
        headers=auth_header(tenant),
    )
    assert r.status_code == 200
    highlight = r.json()["highlight"]
    assert highlight["status"] == "pending"
    assert highlight["kind_label"] == "Restaurants & Bars"

    assert client.get("/neighborhoods/astoria").json()["highlights"] == []

    pending = client.get("/admin/highlights/pending", headers=auth_header(admin)).json()["items"]
    assert [h["id"] for h in pending] == [highlight["id"]]
    assert client.post(f"/admin/highlights/{highlight['id']}/approve", headers=auth_header(admin)).status_code == 200

    hood = client.get("/neighborhoods/astoria").json()
    assert hood["borough"]["name"] == "Queens"
    assert [h["name"] for h in hood["highlights"]] == ["Taverna Kyclades"]

    assert client.get("/neighborhoods/atlantis").status_code == 404
    assert client.post("/neighborhoods/astoria/highlights", json={"kind": "gyms-fitness", "name": "x"}).status_code == 401


def test_feedback(client, monkeypatch):
    sent = []
    monkeypatch.setattr("dumbrent.main.send_feedback_email", lambda **kw: sent.append(kw))

    body = {
        "name": "Fran",
        "email": "fran@example.com",
        "category": "bug",
        "rating": 4,
        "subject": "Map",
        "message": "The map is slow.",
        "allow_contact": True,
    }
    r = client.post("/feedback", json=body)
    assert r.status_code == 200
    assert sent[0]["rating"] == 4
    assert sent[0]["allow_contact"] is True

    assert client.post("/feedback", json={**body, "rating": 6}).status_code == 422
    assert client.post("/feedback", json={**body, "email": "nope"}).status_code == 400

    for _ in range(3):
        client.post("/feedback", json=body)
    assert client.post("/feedback", json=body).status_code == 429
