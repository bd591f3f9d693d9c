from __future__ import annotations

import logging
import re

import requests

from dumbrent.config import google_maps_api_key

logger = logging.getLogger(__name__)

AUTOCOMPLETE_URL = "https://maps.googleapis.com/maps/api/place/autocomplete/json"
GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

# New York City bounding box.
NYC_BOUNDS = {
    "north": 40.917577,
    "south": 40.477399,
    "east": -73.700272,
    "west": -74.259090,
}
_NYC_CENTER = (
    (NYC_BOUNDS["north"] + NYC_BOUNDS["south"]) / 2,
    (NYC_BOUNDS["east"] + NYC_BOUNDS["west"]) / 2,
)
# Roughly covers the bounding box from its center, in meters.
_NYC_RADIUS_M = 35_000

_ZIP_RE = re.compile(r"\b\d{5}\b")


class GeocodingError(RuntimeError):
    pass


def _api_key() -> str:
    key = google_maps_api_key()
    if not key:
        raise GeocodingError("GOOGLE_MAPS_API_KEY not configured")
    return key


def _get(url: str, params: dict) -> dict:
    try:
        resp = requests.get(url, params=params, timeout=10)
    except requests.RequestException as e:
        raise GeocodingError(f"Maps request failed: {e}") from e
    if not (200 <= int(resp.status_code) < 300):
        raise GeocodingError(f"Maps request failed: HTTP {resp.status_code}")
    try:
        data = resp.json()
    except ValueError as e:
        raise GeocodingError("Maps returned invalid JSON") from e
    status = str(data.get("status") or "")
    if status not in ("OK", "ZERO_RESULTS"):
        raise GeocodingError(f"Maps error: {status} {data.get('error_message') or ''}".strip())
    return data


def zip_from_text(address: str) -> str:
    m = _ZIP_RE.search(address or "")
    return m.group(0) if m else ""


def autocomplete(query: str) -> list[dict]:
    """
    US-only address suggestions biased to the city.
    Returns [{"description": ..., "place_id": ...}].
    """
    q = (query or "").strip()
    if len(q) < 3:
        return []
    data = _get(
        AUTOCOMPLETE_URL,
        {
            "input": q,
            "key": _api_key(),
            "components": "country:us",
            "types": "address",
            "location": f"{_NYC_CENTER[0]},{_NYC_CENTER[1]}",
            "radius": _NYC_RADIUS_M,
        },
    )
    out = []
    for p in data.get("predictions") or []:
        desc = str(p.get("description") or "").strip()
        if desc:
            out.append({"description": desc, "place_id": str(p.get("place_id") or "")})
    return out


def geocode(address: str) -> dict | None:
    """
    Resolve an address to {"formatted_address", "zip_code", "lat", "lng"}.
    Returns None when nothing matched.
    """
    addr = (address or "").strip()
    if not addr:
        return None
    data = _get(
        GEOCODE_URL,
        {
            "address": addr,
            "key": _api_key(),
            "components": "country:US",
            "bounds": f"{NYC_BOUNDS['south']},{NYC_BOUNDS['west']}|{NYC_BOUNDS['north']},{NYC_BOUNDS['east']}",
        },
    )
    results = data.get("results") or []
    if not results:
        return None
    first = results[0]
    zip_code = ""
    for comp in first.get("address_components") or []:
        if "postal_code" in (comp.get("types") or []):
            zip_code = str(comp.get("short_name") or comp.get("long_name") or "")
            break
    if not zip_code:
        zip_code = zip_from_text(addr)
    loc = (first.get("geometry") or {}).get("location") or {}
    return {
        "formatted_address": str(first.get("formatted_address") or addr),
        "zip_code": zip_code,
        "lat": loc.get("lat"),
        "lng": loc.get("lng"),
    }


def in_nyc_bounds(lat: float | None, lng: float | None) -> bool:
    if lat is None or lng is None:
        return False
    return (
        NYC_BOUNDS["south"] <= float(lat) <= NYC_BOUNDS["north"]
        and NYC_BOUNDS["west"] <= float(lng) <= NYC_BOUNDS["east"]
    )
