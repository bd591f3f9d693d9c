from __future__ import annotations

import datetime as dt
import hmac
import secrets

import jwt
import bcrypt

from dumbrent.config import jwt_exp_hours, jwt_secret


JWT_ALGORITHM = "HS256"
BCRYPT_ROUNDS = 12


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Stored hash is not a bcrypt string.
        return False


def create_access_token(*, user_id: str, role: str) -> str:
    """
    Session token handed to the web client after signup/login/submission.
    `sub` is the user UUID; `role` lets the client pick a dashboard without a round trip.
    """
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + dt.timedelta(hours=jwt_exp_hours())).timestamp()),
    }
    return jwt.encode(payload, jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    return jwt.decode(token, jwt_secret(), algorithms=[JWT_ALGORITHM])


def bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


def user_id_from_token(token: str | None) -> str | None:
    """Subject of a valid session token, or None for missing/expired/forged tokens."""
    if not token:
        return None
    try:
        payload = decode_access_token(token)
    except jwt.PyJWTError:
        return None
    return str(payload.get("sub") or "") or None


def new_auth_code() -> str:
    # Six digits, zero padded. Used for email verification and password reset.
    return f"{secrets.randbelow(1_000_000):06d}"


def auth_codes_match(expected: str, given: str | None) -> bool:
    return hmac.compare_digest((expected or "").encode(), (given or "").strip().encode())


def upload_suffix() -> str:
    return secrets.token_hex(6)
