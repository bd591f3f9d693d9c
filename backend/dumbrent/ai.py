from __future__ import annotations

import logging

import requests

from dumbrent.config import openai_api_key, openai_model

logger = logging.getLogger(__name__)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"

TITLE_SYSTEM_PROMPT = (
    "You are a helpful assistant that generates apartment listing titles. "
    "Keep titles concise and highlight key features."
)

DESCRIPTION_SYSTEM_PROMPT = """You are a helpful assistant that generates apartment listing descriptions. Use this template:

Welcome to Your [Adjective] [Neighborhood] Retreat!

Discover this [Bedrooms] BR / [Bathrooms] BA gem in the heart of [Neighborhood], offering [Key Feature] and [Bonus Selling Point]. Step into a thoughtfully designed space featuring [Additional Highlight], perfect for modern city living.

Enjoy the convenience of [Nearby Attraction], plus easy access to [Transportation or Local Hotspot]. Whether you're relaxing in your [Feature] or exploring the vibrant streets of [Neighborhood], this home is designed for comfort and style.

Don't miss out, schedule a tour today!"""


class AIGenerationError(RuntimeError):
    def __init__(self, message: str, *, rate_limited: bool = False) -> None:
        super().__init__(message)
        self.rate_limited = rate_limited


def _format_number(v: float) -> str:
    return str(int(v)) if float(v).is_integer() else str(v)


def _chat(*, system: str, user: str, max_tokens: int, what: str) -> str:
    unavailable = (
        f"AI generation is temporarily unavailable. Please try again later or enter your {what} manually."
    )
    failed = f"Failed to generate {what}. Please try again or enter your {what} manually."

    key = openai_api_key()
    if not key:
        logger.warning("OPENAI_API_KEY not configured; %s generation skipped", what)
        raise AIGenerationError(failed)

    payload = {
        "model": openai_model(),
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        "temperature": 0.7,
        "max_tokens": int(max_tokens),
    }
    try:
        resp = requests.post(
            OPENAI_CHAT_URL,
            headers={"Authorization": f"Bearer {key}", "Content-Type": "application/json"},
            json=payload,
            timeout=30,
        )
    except requests.RequestException as e:
        logger.warning("OpenAI request failed: %s", e)
        raise AIGenerationError(failed) from e

    if int(resp.status_code) == 429:
        raise AIGenerationError(unavailable, rate_limited=True)
    if not (200 <= int(resp.status_code) < 300):
        logger.warning("OpenAI error: HTTP %s: %s", resp.status_code, resp.text[:300])
        raise AIGenerationError(failed)

    try:
        content = resp.json()["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise AIGenerationError(failed) from e
    text = (content or "").strip()
    if not text:
        raise AIGenerationError(failed)
    return text


def generate_listing_title(
    *,
    neighborhood: str,
    borough: str,
    bedrooms: int,
    bathrooms: float,
    key_feature: str,
) -> str:
    user = (
        "Create a title for an apartment with these details:\n"
        f"- {bedrooms} bedrooms\n"
        f"- {_format_number(bathrooms)} bathrooms\n"
        f"- Located in {neighborhood}, {borough}\n"
        f"- Key feature: {key_feature}\n\n"
        "Keep it under 60 characters and highlight the most appealing aspects."
    )
    title = _chat(system=TITLE_SYSTEM_PROMPT, user=user, max_tokens=50, what="title")
    # Models sometimes wrap the title in quotes.
    return title.strip().strip('"').strip()


def generate_listing_description(
    *,
    neighborhood: str,
    bedrooms: int,
    bathrooms: float,
    key_feature: str,
    amenities: list[str],
) -> str:
    user = (
        "Create an engaging description for an apartment with these details:\n"
        f"- {bedrooms} bedrooms\n"
        f"- {_format_number(bathrooms)} bathrooms\n"
        f"- Located in {neighborhood}\n"
        f"- Key feature: {key_feature}\n"
        f"- Amenities: {', '.join(amenities or [])}\n\n"
        "Follow the template exactly, filling in the placeholders with engaging content."
    )
    return _chat(system=DESCRIPTION_SYSTEM_PROMPT, user=user, max_tokens=300, what="description")
