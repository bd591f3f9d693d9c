import datetime as dt

import pytest

import dumbrent.stripe_billing as stripe_billing
from conftest import VALID_LISTING, FakeResponse, activate_listing, auth_header, signed_webhook
from dumbrent.stripe_billing import StripeSignatureError, compute_signature, construct_event


@pytest.fixture
def stripe_api(monkeypatch):
    """Configure Stripe and capture checkout session requests."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_PRICE_MONTHLY", "price_monthly")
    monkeypatch.setenv("STRIPE_PRICE_QUARTERLY", "price_quarterly")
    calls = []

    def fake_post(url, auth=None, data=None, timeout=None):
        calls.append({"url": url, "auth": auth, "data": data})
        n = len(calls)
        return FakeResponse(200, {"id": f"cs_test_{n}", "url": f"https://checkout.stripe.test/{n}"})

    monkeypatch.setattr(stripe_billing.requests, "post", fake_post)
    return calls


def _paid_session_event(session_id: str, metadata: dict, subscription: str = "sub_123") -> dict:
    return {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "payment_status": "paid",
                "subscription": subscription,
                "metadata": metadata,
            }
        },
    }


def test_construct_event_checks_signature_and_age():
    payload = b'{"type": "ping"}'
    ts = 1_700_000_000
    sig = compute_signature(payload=payload, timestamp=ts, secret="whsec_x")

    event = construct_event(payload=payload, sig_header=f"t={ts},v1={sig}", secret="whsec_x", tolerance=0)
    assert event["type"] == "ping"

    with pytest.raises(StripeSignatureError):
        construct_event(payload=payload, sig_header=f"t={ts},v1={sig}", secret="whsec_other", tolerance=0)
    with pytest.raises(StripeSignatureError):
        construct_event(payload=payload, sig_header=f"t={ts},v1={sig}", secret="whsec_x", tolerance=300)
    with pytest.raises(StripeSignatureError):
        construct_event(payload=payload, sig_header="garbage", secret="whsec_x")


def test_checkout_requires_configuration(client, owner, listing_id):
    r = client.post(
        "/billing/checkout",
        json={"listing_id": listing_id, "plan_type": "monthly"},
        headers=auth_header(owner),
    )
    assert r.status_code == 503


def test_checkout_and_webhook_publish_listing(client, owner, listing_id, stripe_api):
    r = client.post(
        "/billing/checkout",
        json={"listing_id": listing_id, "plan_type": "weekly"},
        headers=auth_header(owner),
    )
    assert r.status_code == 400

    r = client.post(
        "/billing/checkout",
        json={"listing_id": listing_id, "plan_type": "monthly"},
        headers=auth_header(owner),
    )
    assert r.status_code == 200, r.text
    session_id = r.json()["session_id"]
    form = stripe_api[-1]["data"]
    assert form["mode"] == "subscription"
    assert form["line_items[0][price]"] == "price_monthly"
    assert form["metadata[listingId]"] == listing_id
    assert form["subscription_data[metadata][planType]"] == "monthly"

    # Still pending until the webhook confirms payment.
    assert client.get(f"/listings/{listing_id}/subscription").json()["status"] == "none"
    status = client.get(f"/billing/checkout/{session_id}").json()
    assert status["kind"] == "listing"
    assert status["subscription_status"] == "pending"

    owner_id = client.get("/me", headers=auth_header(owner)).json()["user"]["id"]
    payload, headers = signed_webhook(
        _paid_session_event(session_id, {"listingId": listing_id, "planType": "monthly", "userId": owner_id})
    )
    r = client.post("/billing/webhook", content=payload, headers=headers)
    assert r.status_code == 200, r.text
    assert r.json() == {"received": True}

    sub = client.get(f"/listings/{listing_id}/subscription").json()
    assert sub["status"] == "active"
    assert sub["days_remaining"] == 30
    assert sub["plan_type"] == "monthly"
    assert [i["id"] for i in client.get("/listings").json()["items"]] == [listing_id]

    unread = client.get("/notifications/unread-count", headers=auth_header(owner)).json()
    assert unread["count"] == 1


def test_webhook_rejections(client, owner, listing_id):
    payload, headers = signed_webhook(_paid_session_event("cs_x", {"listingId": listing_id}))

    r = client.post("/billing/webhook", content=payload, headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Missing signature"

    bad = dict(headers, **{"stripe-signature": headers["stripe-signature"][:-4] + "0000"})
    r = client.post("/billing/webhook", content=payload, headers=bad)
    assert r.status_code == 400
    assert r.json()["detail"] == "Webhook signature verification failed"

    r = client.post("/billing/webhook", content=payload, headers=headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "Missing metadata"

    payload, headers = signed_webhook(
        _paid_session_event("cs_x", {"listingId": listing_id, "planType": "yearly", "userId": "u"})
    )
    r = client.post("/billing/webhook", content=payload, headers=headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid plan type"

    payload, headers = signed_webhook(
        _paid_session_event("cs_x", {"listingId": listing_id, "planType": "monthly", "userId": "someone-else"})
    )
    r = client.post("/billing/webhook", content=payload, headers=headers)
    assert r.status_code == 500


def test_unpaid_and_unhandled_events_are_acknowledged(client):
    event = {"type": "checkout.session.completed", "data": {"object": {"id": "cs_1", "payment_status": "unpaid"}}}
    payload, headers = signed_webhook(event)
    assert client.post("/billing/webhook", content=payload, headers=headers).json() == {"received": True}

    payload, headers = signed_webhook({"type": "customer.created", "data": {"object": {}}})
    assert client.post("/billing/webhook", content=payload, headers=headers).status_code == 200


def test_subscription_last_day_is_still_live(client, owner, listing_id):
    activate_listing(listing_id, days=0)
    sub = client.get(f"/listings/{listing_id}/subscription").json()
    assert sub["status"] == "active"
    assert sub["days_remaining"] == 0
    assert sub["end_date"] == dt.date.today().isoformat()

    # Reading the status must not take the listing out of browse.
    assert [i["id"] for i in client.get("/listings").json()["items"]] == [listing_id]


def test_subscription_status_reports_expiry(client, owner, listing_id):
    activate_listing(listing_id, days=-1)
    sub = client.get(f"/listings/{listing_id}/subscription").json()
    assert sub["status"] == "expired"
    assert sub["days_remaining"] == 0
    assert sub["end_date"] == (dt.date.today() - dt.timedelta(days=1)).isoformat()
    assert client.get("/listings").json()["items"] == []

    assert client.get("/listings/not-a-uuid/subscription").status_code == 400


def _submission_form(**overrides) -> dict:
    return {
        **VALID_LISTING,
        "display_name": "Gina Guest",
        "email": "gina@example.com",
        "phone": "555-0100",
        "password": "guestpass",
        "confirm_password": "guestpass",
        "agree_to_terms": True,
        "plan_type": "quarterly",
        **overrides,
    }


def test_submission_checkout_validation(client, stripe_api):
    r = client.post("/submissions/checkout", json=_submission_form(confirm_password="different"))
    assert r.status_code == 400
    assert r.json()["detail"] == "Passwords do not match"

    r = client.post("/submissions/checkout", json=_submission_form(agree_to_terms=False))
    assert r.status_code == 400

    r = client.post("/submissions/checkout", json=_submission_form(price="free"))
    assert r.status_code == 400
    assert stripe_api == []


def test_guest_submission_pipeline(client, stripe_api):
    r = client.post("/submissions/checkout", json=_submission_form())
    assert r.status_code == 200, r.text
    token = r.json()["token"]
    session_id = r.json()["session_id"]
    assert stripe_api[-1]["data"]["metadata[submissionToken]"] == token
    assert stripe_api[-1]["data"]["metadata[listingId]"] == "temp"

    r = client.post(f"/submissions/{token}/complete", json={"password": "guestpass"})
    assert r.status_code == 409

    payload, headers = signed_webhook(
        _paid_session_event(
            session_id,
            {"listingId": "temp", "planType": "quarterly", "userId": "temp", "submissionToken": token},
            subscription="sub_guest",
        )
    )
    assert client.post("/billing/webhook", content=payload, headers=headers).status_code == 200
    status = client.get(f"/billing/checkout/{session_id}").json()
    assert status["kind"] == "submission"
    assert status["status"] == "paid"

    r = client.post(f"/submissions/{token}/complete", json={"password": "wrong-one"})
    assert r.status_code == 401

    r = client.post(f"/submissions/{token}/complete", json={"password": "guestpass"})
    assert r.status_code == 200, r.text
    body = r.json()
    listing_id = body["listing_id"]
    assert body["user"]["role"] == "listing_owner"
    assert body["user"]["email"] == "gina@example.com"

    sub = client.get(f"/listings/{listing_id}/subscription").json()
    assert sub["status"] == "active"
    assert sub["days_remaining"] == 90
    assert [i["id"] for i in client.get("/listings").json()["items"]] == [listing_id]

    # Completing twice hands back the same listing.
    again = client.post(f"/submissions/{token}/complete", json={"password": "guestpass"}).json()
    assert again["listing_id"] == listing_id

    assert client.get(f"/billing/checkout/{session_id}").json()["kind"] == "listing"


def test_submission_complete_unknown_token(client):
    r = client.post("/submissions/not-a-token/complete", json={"password": "whatever"})
    assert r.status_code == 404
