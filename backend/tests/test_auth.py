from conftest import auth_header, latest_code, login, make_user


def test_catalog_endpoints(client):
    boroughs = client.get("/meta/boroughs").json()["items"]
    assert [b["name"] for b in boroughs][:2] == ["Manhattan", "Brooklyn"]

    hoods = client.get("/meta/neighborhoods", params={"borough_id": "3"}).json()["items"]
    assert hoods
    assert all(n["borough_id"] == "3" for n in hoods)

    assert "Dishwasher" in client.get("/meta/amenities").json()["items"]
    plans = {p["plan_type"]: p for p in client.get("/meta/plans").json()["items"]}
    assert plans["monthly"]["amount"] == 100
    assert plans["quarterly"]["duration_days"] == 90


def test_signup_requires_email_confirmation(client):
    r = client.post(
        "/auth/signup",
        json={"email": "New@Example.com", "password": "secret123", "display_name": "Nia", "role": "tenant"},
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["user"]["email"] == "new@example.com"
    assert body["user"]["email_verified"] is False
    assert "access_token" not in body

    r = client.post("/auth/login", json={"email": "new@example.com", "password": "secret123"})
    assert r.status_code == 403
    assert r.json()["detail"] == "Email not confirmed"

    r = client.post("/auth/verify-email", json={"email": "new@example.com", "code": "000000x"})
    assert r.status_code == 401

    code = latest_code("new@example.com", "verify_email")
    r = client.post("/auth/verify-email", json={"email": "new@example.com", "code": code})
    assert r.status_code == 200
    assert r.json()["user"]["email_verified"] is True

    assert login(client, "new@example.com")


def test_signup_rejects_bad_input_and_duplicates(client):
    assert client.post("/auth/signup", json={"email": "nope", "password": "secret123"}).status_code == 400
    assert client.post("/auth/signup", json={"email": "a@b.com", "password": "123"}).status_code == 400
    assert client.post("/auth/signup", json={"email": "a@b.com", "password": "secret123", "role": "admin"}).status_code == 400

    make_user("taken@example.com")
    r = client.post("/auth/signup", json={"email": "taken@example.com", "password": "secret123"})
    assert r.status_code == 409


def test_login_wrong_password(client):
    make_user("someone@example.com")
    r = client.post("/auth/login", json={"email": "someone@example.com", "password": "wrong-password"})
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid email or password"


def test_password_reset_flow(client):
    make_user("forgetful@example.com", verified=False)
    r = client.post("/auth/password/forgot", json={"email": "forgetful@example.com"})
    assert r.status_code == 200

    code = latest_code("forgetful@example.com", "reset_password")
    r = client.post(
        "/auth/password/reset",
        json={"email": "forgetful@example.com", "code": code, "new_password": "brand-new"},
    )
    assert r.status_code == 200

    # The code is single-use.
    r = client.post(
        "/auth/password/reset",
        json={"email": "forgetful@example.com", "code": code, "new_password": "another1"},
    )
    assert r.status_code == 401

    assert login(client, "forgetful@example.com", "brand-new")


def test_profile_update_and_delete(client, tenant):
    r = client.patch("/me", json={"display_name": "Tommy", "preferred_contact": "text"}, headers=auth_header(tenant))
    assert r.status_code == 200
    assert r.json()["user"]["display_name"] == "Tommy"
    assert r.json()["user"]["preferred_contact"] == "text"

    r = client.patch("/me", json={"preferred_contact": "pigeon"}, headers=auth_header(tenant))
    assert r.status_code == 400

    r = client.patch("/me", json={"current_password": "nope", "new_password": "another1"}, headers=auth_header(tenant))
    assert r.status_code == 400

    assert client.delete("/me", headers=auth_header(tenant)).status_code == 200
    assert client.get("/me", headers=auth_header(tenant)).status_code == 401


def test_missing_or_bad_token(client):
    assert client.get("/me").status_code == 401
    assert client.get("/me", headers=auth_header("not-a-jwt")).status_code == 401
