from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time

import requests

from dumbrent.config import stripe_price_id, stripe_secret_key, stripe_webhook_tolerance_seconds

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"

# plan_type -> (amount in USD, days per billing cycle)
PLANS: dict[str, dict] = {
    "monthly": {"amount": 100, "duration_days": 30, "label": "Monthly"},
    "quarterly": {"amount": 175, "duration_days": 90, "label": "Quarterly"},
}


class StripeError(RuntimeError):
    pass


class StripeNotConfigured(StripeError):
    pass


class StripeSignatureError(StripeError):
    pass


def plan_or_none(plan_type: str | None) -> dict | None:
    return PLANS.get((plan_type or "").strip().lower())


def _flatten(prefix: str, value: dict) -> dict[str, str]:
    out: dict[str, str] = {}
    for k, v in value.items():
        key = f"{prefix}[{k}]"
        if isinstance(v, dict):
            out.update(_flatten(key, v))
        elif v is None:
            continue
        else:
            out[key] = str(v)
    return out


def create_checkout_session(
    *,
    plan_type: str,
    success_url: str,
    cancel_url: str,
    metadata: dict[str, str],
    customer_email: str | None = None,
) -> dict:
    """
    Create a subscription-mode Checkout Session for one of the listing plans.

    The metadata is attached both to the session and to the resulting
    subscription so later invoices can be traced back to the listing.
    Returns the session object (at least `id` and `url`).
    """
    key = stripe_secret_key()
    if not key:
        raise StripeNotConfigured("STRIPE_SECRET_KEY not configured")
    plan = plan_or_none(plan_type)
    if not plan:
        raise StripeError(f"Invalid plan type: {plan_type}")
    price = stripe_price_id(plan_type)
    if not price:
        raise StripeNotConfigured(f"Stripe price for plan '{plan_type}' not configured")

    form: dict[str, str] = {
        "mode": "subscription",
        "payment_method_types[0]": "card",
        "line_items[0][price]": price,
        "line_items[0][quantity]": "1",
        "success_url": success_url,
        "cancel_url": cancel_url,
    }
    if customer_email:
        form["customer_email"] = customer_email
    form.update(_flatten("metadata", metadata))
    form.update(_flatten("subscription_data[metadata]", metadata))

    try:
        resp = requests.post(
            f"{STRIPE_API_BASE}/checkout/sessions",
            auth=(key, ""),
            data=form,
            timeout=20,
        )
    except requests.RequestException as e:
        raise StripeError(f"Stripe request failed: {e}") from e

    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not (200 <= int(resp.status_code) < 300):
        msg = ((body.get("error") or {}).get("message") if isinstance(body, dict) else "") or resp.text[:300]
        raise StripeError(f"Stripe checkout failed: HTTP {resp.status_code}: {msg}")
    if not body.get("id"):
        raise StripeError("Stripe checkout returned no session id")
    logger.info("Stripe checkout session created: %s plan=%s", body.get("id"), plan_type)
    return body


def _parse_signature_header(header: str) -> tuple[int, list[str]]:
    timestamp = None
    signatures: list[str] = []
    for part in (header or "").split(","):
        k, _, v = part.strip().partition("=")
        if k == "t":
            try:
                timestamp = int(v)
            except ValueError:
                timestamp = None
        elif k == "v1" and v:
            signatures.append(v)
    if timestamp is None or not signatures:
        raise StripeSignatureError("Unable to extract timestamp and signatures from header")
    return timestamp, signatures


def compute_signature(*, payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def construct_event(*, payload: bytes, sig_header: str, secret: str, tolerance: int | None = None) -> dict:
    """
    Verify a webhook delivery the way Stripe documents it and return the
    decoded event.

    Header format: `t=<unix ts>,v1=<hex hmac-sha256(secret, "<ts>.<body>")>`.
    """
    if not secret:
        raise StripeNotConfigured("STRIPE_WEBHOOK_SECRET not configured")
    timestamp, signatures = _parse_signature_header(sig_header)
    expected = compute_signature(payload=payload, timestamp=timestamp, secret=secret)
    if not any(hmac.compare_digest(expected, s) for s in signatures):
        raise StripeSignatureError("No signatures found matching the expected signature for payload")

    tol = stripe_webhook_tolerance_seconds() if tolerance is None else int(tolerance)
    if tol > 0 and abs(int(time.time()) - timestamp) > tol:
        raise StripeSignatureError("Timestamp outside the tolerance zone")

    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise StripeSignatureError(f"Invalid payload: {e}") from e
    if not isinstance(event, dict) or not event.get("type"):
        raise StripeSignatureError("Invalid payload: missing event type")
    return event
