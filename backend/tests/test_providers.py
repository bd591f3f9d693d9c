import pytest

import dumbrent.ai as ai
import dumbrent.geocoding as geocoding
from conftest import VALID_LISTING, FakeResponse, auth_header


AI_INPUT = {"neighborhood_id": "astoria", "bedrooms": 2, "bathrooms": 1.5, "key_feature": "Private balcony"}


@pytest.fixture
def openai(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    calls = []

    def install(response: FakeResponse):
        def fake_post(url, headers=None, json=None, timeout=None):
            calls.append({"url": url, "json": json})
            return response

        monkeypatch.setattr(ai.requests, "post", fake_post)
        return calls

    return install


def _chat_reply(text: str) -> FakeResponse:
    return FakeResponse(200, {"choices": [{"message": {"content": text}}]})


def test_ai_title(client, openai):
    calls = openai(_chat_reply('"Sunny Astoria 2BR with Balcony"'))
    r = client.post("/ai/listing-title", json={**AI_INPUT, "borough_id": "3"})
    assert r.status_code == 200, r.text
    assert r.json() == {"title": "Sunny Astoria 2BR with Balcony"}

    sent = calls[0]["json"]
    assert sent["max_tokens"] == 50
    assert sent["temperature"] == 0.7
    prompt = sent["messages"][1]["content"]
    assert "- 2 bedrooms" in prompt
    assert "- 1.5 bathrooms" in prompt
    assert "Located in Astoria, Queens" in prompt


def test_ai_description_includes_amenities(client, openai):
    calls = openai(_chat_reply("Welcome to Your Charming Astoria Retreat!"))
    r = client.post("/ai/listing-description", json={**AI_INPUT, "amenities": ["Dishwasher", "Elevator"]})
    assert r.status_code == 200
    assert r.json()["description"].startswith("Welcome")
    assert calls[0]["json"]["max_tokens"] == 300
    assert "Amenities: Dishwasher, Elevator" in calls[0]["json"]["messages"][1]["content"]


def test_ai_requires_inputs(client, openai):
    openai(_chat_reply("unused"))
    r = client.post("/ai/listing-title", json={**AI_INPUT, "key_feature": ""})
    assert r.status_code == 400


def test_ai_rate_limited_upstream(client, openai):
    openai(FakeResponse(429, {"error": {"message": "slow down"}}))
    r = client.post("/ai/listing-title", json=AI_INPUT)
    assert r.status_code == 503
    assert r.json()["detail"].startswith("AI generation is temporarily unavailable")


def test_ai_upstream_failure(client, openai):
    openai(FakeResponse(500, {"error": {"message": "boom"}}))
    r = client.post("/ai/listing-description", json=AI_INPUT)
    assert r.status_code == 502
    assert r.json()["detail"] == "Failed to generate description. Please try again or enter your description manually."


def test_ai_without_key(client):
    r = client.post("/ai/listing-title", json=AI_INPUT)
    assert r.status_code == 502


@pytest.fixture
def maps(monkeypatch):
    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "maps-key")
    calls = []

    def install(payload: dict):
        def fake_get(url, params=None, timeout=None):
            calls.append({"url": url, "params": params})
            return FakeResponse(200, payload)

        monkeypatch.setattr(geocoding.requests, "get", fake_get)
        return calls

    return install


def test_autocomplete(client, maps):
    calls = maps({"status": "OK", "predictions": [{"description": "123 Test St, Queens, NY, USA", "place_id": "p1"}]})
    r = client.get("/geo/autocomplete", params={"q": "123 Test"})
    assert r.status_code == 200
    assert r.json()["items"] == [{"description": "123 Test St, Queens, NY, USA", "place_id": "p1"}]
    assert calls[0]["params"]["components"] == "country:us"

    # Short queries never reach the provider.
    assert client.get("/geo/autocomplete", params={"q": "12"}).json()["items"] == []
    assert len(calls) == 1


def test_geocode(client, maps):
    maps(
        {
            "status": "OK",
            "results": [
                {
                    "formatted_address": "123 Test St, Astoria, NY 11102, USA",
                    "address_components": [{"types": ["postal_code"], "short_name": "11102"}],
                    "geometry": {"location": {"lat": 40.77, "lng": -73.93}},
                }
            ],
        }
    )
    body = client.get("/geo/geocode", params={"address": "123 Test St"}).json()
    assert body["zip_code"] == "11102"
    assert geocoding.in_nyc_bounds(body["lat"], body["lng"])


def test_geocode_no_results(client, maps):
    maps({"status": "ZERO_RESULTS", "results": []})
    assert client.get("/geo/geocode", params={"address": "nowhere"}).status_code == 404


def test_geocoding_not_configured(client):
    assert client.get("/geo/autocomplete", params={"q": "123 Test"}).status_code == 503


def test_zip_fallback_from_address():
    assert geocoding.zip_from_text("45 Main St, Brooklyn, NY 11201") == "11201"
    assert geocoding.zip_from_text("no zip here") == ""
    assert not geocoding.in_nyc_bounds(34.05, -118.24)


def _geocode_payload(lat: float, lng: float) -> dict:
    return {
        "status": "OK",
        "results": [
            {
                "formatted_address": "123 Test St",
                "address_components": [],
                "geometry": {"location": {"lat": lat, "lng": lng}},
            }
        ],
    }


def test_listing_coordinates_kept_only_inside_nyc(client, owner, maps):
    maps(_geocode_payload(40.77, -73.93))
    lid = client.post("/listings", json=VALID_LISTING, headers=auth_header(owner)).json()["id"]
    detail = client.get(f"/listings/{lid}", headers=auth_header(owner)).json()
    assert (detail["lat"], detail["lng"]) == (40.77, -73.93)

    maps(_geocode_payload(34.05, -118.24))
    lid = client.post("/listings", json=VALID_LISTING, headers=auth_header(owner)).json()["id"]
    detail = client.get(f"/listings/{lid}", headers=auth_header(owner)).json()
    assert detail["lat"] is None and detail["lng"] is None
