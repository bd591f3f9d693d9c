from __future__ import annotations

import datetime as dt
import json
import logging
import math
import os
import re
from functools import lru_cache
from typing import Annotated, Any

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response
from pydantic import BaseModel, Field
from sqlalchemy import delete, func, or_, select, update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload
from starlette.concurrency import run_in_threadpool
from starlette.middleware.trustedhost import TrustedHostMiddleware

from dumbrent.ai import AIGenerationError, generate_listing_description, generate_listing_title
from dumbrent.config import (
    admin_email,
    admin_password,
    allowed_hosts,
    app_env,
    auth_code_exp_minutes,
    catalog_path,
    cors_origins,
    enforce_secure_secrets,
    google_maps_api_key,
    is_local_dev,
    max_upload_image_bytes,
    pending_submission_ttl_hours,
    require_email_verification,
    site_url,
    stripe_webhook_secret,
    uploads_dir,
)
from dumbrent.db import init_schema, session_scope
from dumbrent.geocoding import GeocodingError, autocomplete as geo_autocomplete, geocode as geo_geocode, in_nyc_bounds
from dumbrent.mailer import (
    EmailSendError,
    send_application_confirmation_email,
    send_feedback_email,
    send_password_reset_email,
    send_verification_email,
)
from dumbrent.models import (
    Application,
    AuthCode,
    Borough,
    Listing,
    ListingImage,
    ListingSubscription,
    Message,
    ModerationLog,
    Neighborhood,
    NeighborhoodHighlight,
    Notification,
    PendingSubmission,
    SavedListing,
    User,
)
from dumbrent.rate_limit import client_ip, limiter
from dumbrent.realtime import hub
from dumbrent.security import (
    auth_codes_match,
    bearer_token,
    create_access_token,
    hash_password,
    new_auth_code,
    upload_suffix,
    user_id_from_token,
    verify_password,
)
from dumbrent.stripe_billing import (
    PLANS,
    StripeError,
    StripeNotConfigured,
    StripeSignatureError,
    construct_event,
    create_checkout_session,
    plan_or_none,
)
from dumbrent.utils.cloudinary_storage import (
    cloudinary_enabled,
    destroy as cloudinary_destroy,
    optimize_image,
    upload_image as cloudinary_upload_image,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Dumb Rent NYC API")

# Production hardening: refuse to run with the default JWT secret.
enforce_secure_secrets()

app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts())


@app.middleware("http")
async def _security_headers(request, call_next):
    resp = await call_next(request)
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    resp.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    return resp


app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


ROLES = {"tenant", "listing_owner", "admin"}
SIGNUP_ROLES = {"tenant", "listing_owner"}
CONTACT_METHODS = {"email", "phone", "text"}
LISTING_STATUSES = {"draft", "pending", "published", "archived"}
REQUIRED_LISTING_FIELDS = (
    "title",
    "description",
    "price",
    "deposit",
    "bedrooms",
    "bathrooms",
    "address",
    "zip_code",
    "neighborhood_id",
    "borough_id",
    "key_feature",
    "available_date",
)
MAX_LISTING_IMAGES = 10

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)
_ZIP_RE = re.compile(r"^\d{5}$")


# -----------------------
# Catalog (boroughs / neighborhoods / amenities / highlight types)
# -----------------------
@lru_cache(maxsize=1)
def _load_catalog() -> dict[str, Any]:
    path = catalog_path()
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise RuntimeError(f"Invalid catalog file: {path}")
    return data


def _catalog_amenities() -> list[str]:
    return [str(a) for a in (_load_catalog().get("amenities") or [])]


def _catalog_highlight_types() -> dict[str, str]:
    return {str(h.get("id")): str(h.get("label") or "") for h in (_load_catalog().get("highlight_types") or [])}


def _seed_catalog(db: Session) -> None:
    """
    Upsert boroughs and neighborhoods from the catalog file. Safe to run on
    every startup.
    """
    catalog = _load_catalog()
    for b in catalog.get("boroughs") or []:
        row = db.get(Borough, str(b["id"])) or Borough(id=str(b["id"]))
        row.name = str(b.get("name") or "")
        row.description = str(b.get("description") or "")
        row.image_url = str(b.get("image_url") or "")
        db.add(row)
    db.flush()
    for n in catalog.get("neighborhoods") or []:
        row = db.get(Neighborhood, str(n["id"])) or Neighborhood(id=str(n["id"]))
        row.borough_id = str(n.get("borough_id") or "")
        row.name = str(n.get("name") or "")
        row.description = str(n.get("description") or "")
        row.image_url = str(n.get("image_url") or "")
        db.add(row)


# -----------------------
# Helpers
# -----------------------
def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _today() -> dt.date:
    return _now().date()


def _aware(v: dt.datetime) -> dt.datetime:
    # SQLite hands back naive datetimes even for timezone=True columns.
    return v if v.tzinfo is not None else v.replace(tzinfo=dt.timezone.utc)


def _iso(v: dt.datetime | dt.date | None) -> str:
    return v.isoformat() if v is not None else ""


def _is_admin(u: User | None) -> bool:
    return bool(u) and (u.role or "").lower() == "admin"


def _require_admin(me: User) -> None:
    if not _is_admin(me):
        raise HTTPException(status_code=403, detail="Admin only")


def _is_uuid(v: str | None) -> bool:
    return bool(_UUID_RE.match((v or "").strip()))


def _parse_listing_id(raw: str) -> str:
    if not _is_uuid(raw):
        raise HTTPException(status_code=400, detail="Invalid listing ID format")
    return raw.strip().lower()


def _user_out(u: User) -> dict[str, Any]:
    return {
        "id": u.id,
        "email": u.email,
        "display_name": u.display_name,
        "role": u.role,
        "phone": u.phone,
        "preferred_contact": u.preferred_contact,
        "email_verified": u.email_verified_at is not None,
        "email_notifications": bool(u.email_notifications),
        "notification_consent": bool(u.notification_consent),
        "created_at": _iso(u.created_at),
    }


def _contact_out(u: User | None) -> dict[str, Any]:
    if not u:
        return {}
    return {
        "id": u.id,
        "display_name": u.display_name,
        "email": u.email,
        "phone": u.phone,
        "preferred_contact": u.preferred_contact,
    }


def _public_image_url(file_path: str) -> str:
    """
    Stored image paths are either absolute (Cloudinary) URLs or names relative
    to the local uploads directory.
    """
    fp = (file_path or "").strip().replace("\\", "/")
    if not fp:
        return ""
    if fp.startswith(("http://", "https://", "/uploads/")):
        return fp
    return f"/uploads/{fp.lstrip('/')}"


def _amenities(listing: Listing) -> list[str]:
    try:
        v = json.loads(listing.amenities_json or "[]")
    except ValueError:
        return []
    return [str(x) for x in v] if isinstance(v, list) else []


def _subscription_out(s: ListingSubscription | None) -> dict[str, Any] | None:
    if not s:
        return None
    return {
        "id": s.id,
        "plan_type": s.plan_type,
        "status": s.status,
        "start_date": _iso(s.start_date),
        "end_date": _iso(s.end_date),
        "amount_paid": s.amount_paid,
        "recurring": bool(s.recurring),
        "billing_cycle": s.billing_cycle,
    }


def _listing_out(
    l: Listing,
    *,
    landlord: User | None = None,
    include_internal: bool = False,
    is_saved: bool | None = None,
) -> dict[str, Any]:
    images = [
        {"id": i.id, "url": _public_image_url(i.url), "position": i.position}
        for i in sorted((l.images or []), key=lambda x: (int(x.position or 0), int(x.id or 0)))
    ]
    out: dict[str, Any] = {
        "id": l.id,
        "title": l.title,
        "description": l.description,
        "price": l.price,
        "price_display": f"${l.price:,}",
        "deposit": l.deposit,
        "bedrooms": l.bedrooms,
        "bathrooms": l.bathrooms,
        "square_feet": l.square_feet,
        "address": l.address,
        "zip_code": l.zip_code,
        "neighborhood_id": l.neighborhood_id,
        "borough_id": l.borough_id,
        "lat": l.lat,
        "lng": l.lng,
        "key_feature": l.key_feature,
        "amenities": _amenities(l),
        "available_date": _iso(l.available_date),
        "featured": bool(l.featured),
        "status": l.status,
        "landlord_id": l.landlord_id,
        "images": images,
        "created_at": _iso(l.created_at),
        "updated_at": _iso(l.updated_at),
    }
    o = landlord or getattr(l, "landlord", None)
    if o:
        out["landlord"] = _contact_out(o)
    if is_saved is not None:
        out["is_saved"] = bool(is_saved)
    if include_internal:
        out["moderation_reason"] = l.moderation_reason
    return out


def _log_moderation(
    db: Session,
    *,
    actor_user_id: str | None,
    entity_type: str,
    entity_id: str,
    action: str,
    reason: str = "",
) -> None:
    db.add(
        ModerationLog(
            actor_user_id=actor_user_id,
            entity_type=(entity_type or "").strip(),
            entity_id=str(entity_id),
            action=(action or "").strip(),
            reason=(reason or "").strip(),
        )
    )


def _unread_notification_count(db: Session, user_id: str) -> int:
    return int(
        db.execute(
            select(func.count(Notification.id)).where((Notification.user_id == user_id) & (Notification.read.is_(False)))
        ).scalar()
        or 0
    )


def _push_unread_count(db: Session, user_id: str) -> None:
    hub.push(user_id, {"type": "unread_count", "count": _unread_notification_count(db, user_id)})


def _notify(db: Session, *, user_id: str, kind: str, title: str, body: str = "", link: str = "") -> Notification:
    n = Notification(user_id=user_id, kind=kind, title=title, body=body, link=link)
    db.add(n)
    db.flush()
    _push_unread_count(db, user_id)
    return n


def _issue_auth_code(db: Session, *, email: str, purpose: str) -> str:
    code = new_auth_code()
    expires = _now() + dt.timedelta(minutes=auth_code_exp_minutes())
    db.execute(delete(AuthCode).where((AuthCode.email == email) & (AuthCode.purpose == purpose)))
    db.add(AuthCode(email=email, purpose=purpose, code=code, expires_at=expires))
    return code


def _consume_auth_code(db: Session, *, email: str, purpose: str, code: str) -> bool:
    now = _now()
    rows = (
        db.execute(
            select(AuthCode)
            .where((AuthCode.email == email) & (AuthCode.purpose == purpose))
            .order_by(AuthCode.id.desc())
        )
        .scalars()
        .all()
    )
    rec = next((r for r in rows if _aware(r.expires_at) > now and auth_codes_match(r.code, code)), None)
    if not rec:
        return False
    db.execute(delete(AuthCode).where(AuthCode.id == rec.id))
    return True


def _token_response(u: User) -> dict[str, Any]:
    return {
        "access_token": create_access_token(user_id=u.id, role=u.role),
        "token_type": "bearer",
        "user": _user_out(u),
    }


os.makedirs(uploads_dir(), exist_ok=True)


@app.get("/uploads/{path:path}", include_in_schema=False)
def uploads_proxy(path: str):
    """
    Serve locally-stored uploads. Missing files answer 204 so stale rows on
    ephemeral disks don't flood the logs with 404s.
    """
    rel = (path or "").lstrip("/").replace("\\", "/")
    if not rel or ".." in rel.split("/"):
        return Response(status_code=204)
    direct = os.path.join(uploads_dir(), rel)
    if os.path.isfile(direct):
        return FileResponse(direct)
    return Response(status_code=204)


@app.on_event("startup")
def seed_catalog_and_admin() -> None:
    """
    Create tables for local/test sqlite, load the borough/neighborhood
    catalog and make sure the administrator account exists.
    """
    if is_local_dev() or app_env() in {"local", "test"}:
        init_schema()
    try:
        with session_scope() as db:
            _seed_catalog(db)
            email = admin_email()
            admin = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
            if admin:
                return
            db.add(
                User(
                    email=email,
                    display_name="Administrator",
                    role="admin",
                    password_hash=hash_password(admin_password()),
                    email_verified_at=_now(),
                )
            )
    except SQLAlchemyError:
        # Not migrated yet; seeding runs again on the next start.
        logger.exception("Startup seeding skipped")


# -----------------------
# Dependencies
# -----------------------
def get_db():
    with session_scope() as db:
        yield db


def get_current_user(
    db: Annotated[Session, Depends(get_db)],
    authorization: Annotated[str | None, Header()] = None,
) -> User:
    token = bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user_id = user_id_from_token(token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_optional_user(
    db: Annotated[Session, Depends(get_db)],
    authorization: Annotated[str | None, Header()] = None,
) -> User | None:
    user_id = user_id_from_token(bearer_token(authorization))
    if not user_id:
        return None
    return db.get(User, user_id)


# -----------------------
# Schemas
# -----------------------
class SignupIn(BaseModel):
    email: str
    password: str
    display_name: str = ""
    role: str = "tenant"
    phone: str = ""
    preferred_contact: str = "email"
    notification_consent: bool = False


class VerifyEmailIn(BaseModel):
    email: str
    code: str


class EmailOnlyIn(BaseModel):
    email: str


class LoginIn(BaseModel):
    email: str
    password: str


class PasswordResetIn(BaseModel):
    email: str
    code: str
    new_password: str


class MeUpdateIn(BaseModel):
    display_name: str | None = None
    phone: str | None = None
    preferred_contact: str | None = None
    email_notifications: bool | None = None
    notification_consent: bool | None = None
    current_password: str | None = None
    new_password: str | None = None


class ListingFormIn(BaseModel):
    # Loosely typed so validation can name the offending field.
    title: Any = None
    description: Any = None
    price: Any = None
    deposit: Any = None
    bedrooms: Any = None
    bathrooms: Any = None
    square_feet: Any = None
    address: Any = None
    zip_code: Any = None
    neighborhood_id: Any = None
    borough_id: Any = None
    key_feature: Any = None
    amenities: list[str] = Field(default_factory=list)
    available_date: Any = None
    status: str | None = None


class ListingUpdateIn(BaseModel):
    title: Any = None
    description: Any = None
    price: Any = None
    deposit: Any = None
    bedrooms: Any = None
    bathrooms: Any = None
    square_feet: Any = None
    address: Any = None
    zip_code: Any = None
    neighborhood_id: Any = None
    borough_id: Any = None
    key_feature: Any = None
    amenities: list[str] | None = None
    available_date: Any = None
    featured: bool | None = None
    status: str | None = None


class ListingPreviewIn(ListingFormIn):
    display_name: str = ""
    email: str = ""
    phone: str = ""
    preferred_contact: str = "email"


class SubmissionCheckoutIn(ListingPreviewIn):
    password: str = ""
    confirm_password: str = ""
    agree_to_terms: bool = False
    plan_type: str = "monthly"
    success_url: str | None = None
    cancel_url: str | None = None


class SubmissionCompleteIn(BaseModel):
    password: str


class CheckoutIn(BaseModel):
    listing_id: str
    plan_type: str
    success_url: str | None = None
    cancel_url: str | None = None


class AITitleIn(BaseModel):
    neighborhood_id: str = ""
    borough_id: str = ""
    bedrooms: Any = None
    bathrooms: Any = None
    key_feature: str = ""


class AIDescriptionIn(BaseModel):
    neighborhood_id: str = ""
    bedrooms: Any = None
    bathrooms: Any = None
    key_feature: str = ""
    amenities: list[str] = Field(default_factory=list)


class ApplicationIn(BaseModel):
    full_name: str
    email: str
    phone: str | None = None
    move_in_date: dt.date
    message: str | None = None


class MessageIn(BaseModel):
    recipient_id: str
    content: str
    listing_id: str | None = None
    conversation_id: str | None = None


class SaveListingIn(BaseModel):
    notes: str = ""


class SavedNotesIn(BaseModel):
    notes: str = ""


class HighlightIn(BaseModel):
    kind: str
    name: str
    description: str = ""
    image_url: str = ""


class FeedbackIn(BaseModel):
    name: str
    email: str
    category: str = "general"
    rating: int = Field(ge=1, le=5)
    subject: str
    message: str
    allow_contact: bool = False


class ModerateIn(BaseModel):
    reason: str = ""


@app.get("/health")
def health():
    return {"ok": True}


# -----------------------
# Catalog
# -----------------------
@app.get("/meta/boroughs")
def meta_boroughs(db: Annotated[Session, Depends(get_db)]) -> dict[str, Any]:
    rows = db.execute(select(Borough).order_by(Borough.id.asc())).scalars().all()
    return {
        "items": [
            {"id": b.id, "name": b.name, "description": b.description, "image_url": b.image_url}
            for b in rows
        ]
    }


@app.get("/meta/neighborhoods")
def meta_neighborhoods(
    db: Annotated[Session, Depends(get_db)],
    borough_id: str | None = Query(default=None),
) -> dict[str, Any]:
    stmt = select(Neighborhood).order_by(Neighborhood.name.asc())
    bid = (borough_id or "").strip()
    if bid:
        stmt = stmt.where(Neighborhood.borough_id == bid)
    rows = db.execute(stmt).scalars().all()
    return {
        "items": [
            {
                "id": n.id,
                "name": n.name,
                "borough_id": n.borough_id,
                "description": n.description,
                "image_url": n.image_url,
            }
            for n in rows
        ]
    }


@app.get("/meta/amenities")
def meta_amenities() -> dict[str, Any]:
    return {"items": _catalog_amenities()}


@app.get("/meta/highlight-types")
def meta_highlight_types() -> dict[str, Any]:
    return {"items": [{"id": k, "label": v} for k, v in _catalog_highlight_types().items()]}


@app.get("/meta/plans")
def meta_plans() -> dict[str, Any]:
    return {
        "items": [
            {
                "plan_type": k,
                "label": v["label"],
                "amount": v["amount"],
                "duration_days": v["duration_days"],
            }
            for k, v in PLANS.items()
        ]
    }


# -----------------------
# Auth
# -----------------------
@app.post("/auth/signup")
def signup(data: SignupIn, request: Request, db: Annotated[Session, Depends(get_db)]):
    limiter.check("signup", client_ip(request))
    email = data.email.strip().lower()
    role = (data.role or "tenant").strip().lower()
    preferred_contact = (data.preferred_contact or "email").strip().lower()
    if not email or "@" not in email:
        raise HTTPException(status_code=400, detail="Invalid email")
    if len(data.password or "") < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")
    if role not in SIGNUP_ROLES:
        raise HTTPException(status_code=400, detail="Invalid role")
    if preferred_contact not in CONTACT_METHODS:
        raise HTTPException(status_code=400, detail="Invalid preferred contact method")

    exists = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="User already exists")

    user = User(
        email=email,
        display_name=(data.display_name or "").strip(),
        role=role,
        phone=(data.phone or "").strip(),
        preferred_contact=preferred_contact,
        notification_consent=bool(data.notification_consent),
        password_hash=hash_password(data.password),
    )
    db.add(user)
    try:
        db.flush()
    except IntegrityError:
        # Concurrent double-submit raced past the pre-check.
        db.rollback()
        raise HTTPException(status_code=409, detail="User already exists")

    if not require_email_verification():
        user.email_verified_at = _now()
        db.add(user)
        return {"ok": True, **_token_response(user)}

    code = _issue_auth_code(db, email=email, purpose="verify_email")
    try:
        delivery = send_verification_email(to_email=email, code=code, display_name=user.display_name)
    except EmailSendError as e:
        logger.exception("Verification email failed to=%s", email)
        raise HTTPException(status_code=500, detail=str(e) or "Failed to send verification email")
    return {
        "ok": True,
        "user": _user_out(user),
        "delivery": delivery,
        "message": "Check your email to confirm your account.",
    }


@app.post("/auth/verify-email")
def verify_email(data: VerifyEmailIn, db: Annotated[Session, Depends(get_db)]):
    email = data.email.strip().lower()
    limiter.check("verify", email)
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.email_verified_at is None:
        if not _consume_auth_code(db, email=email, purpose="verify_email", code=data.code):
            raise HTTPException(status_code=401, detail="Invalid or expired code")
        user.email_verified_at = _now()
        db.add(user)
    return {"ok": True, **_token_response(user)}


@app.post("/auth/verify-email/resend")
def verify_email_resend(data: EmailOnlyIn, db: Annotated[Session, Depends(get_db)]):
    email = data.email.strip().lower()
    limiter.check("verify_resend", email)
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.email_verified_at is not None:
        return {"ok": True, "message": "Email already verified"}
    code = _issue_auth_code(db, email=email, purpose="verify_email")
    try:
        delivery = send_verification_email(to_email=email, code=code, display_name=user.display_name)
    except EmailSendError as e:
        raise HTTPException(status_code=500, detail=str(e) or "Failed to send verification email")
    return {"ok": True, "delivery": delivery}


@app.post("/auth/login")
def login(data: LoginIn, db: Annotated[Session, Depends(get_db)]):
    email = data.email.strip().lower()
    limiter.check("login", email)
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user or not verify_password(data.password or "", user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if require_email_verification() and user.email_verified_at is None and not _is_admin(user):
        raise HTTPException(status_code=403, detail="Email not confirmed")
    return _token_response(user)


@app.post("/auth/logout")
def logout(me: Annotated[User, Depends(get_current_user)]):
    hub.disconnect(me.id)
    return {"ok": True}


@app.post("/auth/password/forgot")
def password_forgot(data: EmailOnlyIn, db: Annotated[Session, Depends(get_db)]):
    email = data.email.strip().lower()
    limiter.check("reset_request", email)
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    code = _issue_auth_code(db, email=email, purpose="reset_password")
    try:
        delivery = send_password_reset_email(to_email=email, code=code)
    except EmailSendError as e:
        raise HTTPException(status_code=500, detail=str(e) or "Failed to send reset code")
    if delivery == "console":
        return {"ok": True, "message": "Reset code generated. Email service not configured; check server logs."}
    return {"ok": True, "message": "Reset code sent to your email."}


@app.post("/auth/password/reset")
def password_reset(data: PasswordResetIn, db: Annotated[Session, Depends(get_db)]):
    email = data.email.strip().lower()
    limiter.check("reset", email)
    if len(data.new_password or "") < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if not _consume_auth_code(db, email=email, purpose="reset_password", code=data.code):
        raise HTTPException(status_code=401, detail="Invalid or expired code")
    user.password_hash = hash_password(data.new_password)
    # Receiving the code proves ownership of the mailbox.
    if user.email_verified_at is None:
        user.email_verified_at = _now()
    db.add(user)
    return {"ok": True}


# -----------------------
# Profile
# -----------------------
@app.get("/me")
def me_profile(me: Annotated[User, Depends(get_current_user)]) -> dict[str, Any]:
    return {"user": _user_out(me)}


@app.patch("/me")
def me_update(
    data: MeUpdateIn,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
) -> dict[str, Any]:
    if data.display_name is not None:
        me.display_name = data.display_name.strip()
    if data.phone is not None:
        me.phone = data.phone.strip()
    if data.preferred_contact is not None:
        pc = data.preferred_contact.strip().lower()
        if pc not in CONTACT_METHODS:
            raise HTTPException(status_code=400, detail="Invalid preferred contact method")
        me.preferred_contact = pc
    if data.email_notifications is not None:
        me.email_notifications = bool(data.email_notifications)
    if data.notification_consent is not None:
        me.notification_consent = bool(data.notification_consent)
    if data.new_password is not None:
        if not verify_password(data.current_password or "", me.password_hash):
            raise HTTPException(status_code=400, detail="Current password is incorrect")
        if len(data.new_password) < 6:
            raise HTTPException(status_code=400, detail="Password must be at least 6 characters")
        me.password_hash = hash_password(data.new_password)
    db.add(me)
    return {"ok": True, "user": _user_out(me)}


def _delete_listing_rows(db: Session, listing_ids: list[str]) -> None:
    if not listing_ids:
        return
    public_ids = (
        db.execute(
            select(ListingImage.cloudinary_public_id).where(
                ListingImage.listing_id.in_(listing_ids) & (ListingImage.cloudinary_public_id != "")
            )
        )
        .scalars()
        .all()
    )
    for pid in public_ids:
        try:
            cloudinary_destroy(public_id=pid)
        except Exception:
            logger.warning("Cloudinary destroy failed public_id=%s", pid, exc_info=True)
    # Message threads outlive the listing they were about.
    db.execute(sa_update(Message).where(Message.listing_id.in_(listing_ids)).values(listing_id=None))
    db.execute(sa_update(PendingSubmission).where(PendingSubmission.listing_id.in_(listing_ids)).values(listing_id=None))
    db.execute(delete(ListingImage).where(ListingImage.listing_id.in_(listing_ids)))
    db.execute(delete(SavedListing).where(SavedListing.listing_id.in_(listing_ids)))
    db.execute(delete(Application).where(Application.listing_id.in_(listing_ids)))
    db.execute(delete(ListingSubscription).where(ListingSubscription.listing_id.in_(listing_ids)))
    db.execute(delete(Listing).where(Listing.id.in_(listing_ids)))


def _delete_user_rows(db: Session, user: User) -> None:
    listing_ids = list(db.execute(select(Listing.id).where(Listing.landlord_id == user.id)).scalars().all())
    _delete_listing_rows(db, listing_ids)
    db.execute(delete(Application).where((Application.tenant_id == user.id) | (Application.landlord_id == user.id)))
    db.execute(delete(SavedListing).where(SavedListing.tenant_id == user.id))
    db.execute(delete(Message).where((Message.sender_id == user.id) | (Message.recipient_id == user.id)))
    db.execute(delete(Notification).where(Notification.user_id == user.id))
    db.execute(delete(ListingSubscription).where(ListingSubscription.owner_id == user.id))
    db.execute(sa_update(NeighborhoodHighlight).where(NeighborhoodHighlight.added_by == user.id).values(added_by=None))
    db.execute(delete(AuthCode).where(AuthCode.email == user.email))
    db.execute(delete(User).where(User.id == user.id))


@app.delete("/me")
def me_delete(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
) -> dict[str, Any]:
    if _is_admin(me):
        raise HTTPException(status_code=403, detail="Admin account cannot be deleted")
    user_id = me.id
    _delete_user_rows(db, me)
    hub.disconnect(user_id)
    return {"ok": True}


# -----------------------
# Listings
# -----------------------
def _is_blank(v: Any) -> bool:
    return v is None or (isinstance(v, str) and not v.strip())


def _parse_number(v: Any, field: str, *, integer: bool, minimum: float = 0) -> int | float:
    if isinstance(v, bool):
        raise HTTPException(status_code=400, detail=f"Invalid {field} value")
    try:
        n = float(str(v).strip().replace(",", ""))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"Invalid {field} value")
    if not math.isfinite(n) or n < minimum:
        raise HTTPException(status_code=400, detail=f"Invalid {field} value")
    if integer:
        if not n.is_integer():
            raise HTTPException(status_code=400, detail=f"Invalid {field} value")
        return int(n)
    return n


def _parse_date(v: Any, field: str) -> dt.date:
    if isinstance(v, dt.date):
        return v
    raw = str(v).strip()
    try:
        # Accept full ISO timestamps too; only the date part matters.
        return dt.date.fromisoformat(raw[:10])
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {field} value")


def _validate_listing_form(db: Session, data: ListingFormIn) -> dict[str, Any]:
    """
    Check a submitted listing form and return the cleaned column values.
    Raises 400 naming the first missing or malformed field.
    """
    for field in REQUIRED_LISTING_FIELDS:
        if _is_blank(getattr(data, field)):
            raise HTTPException(status_code=400, detail=f"Missing required field: {field}")

    price = _parse_number(data.price, "price", integer=True)
    deposit = _parse_number(data.deposit, "deposit", integer=True)
    bedrooms = _parse_number(data.bedrooms, "bedrooms", integer=True)
    bathrooms = _parse_number(data.bathrooms, "bathrooms", integer=False)
    if (bathrooms * 2) % 1:
        raise HTTPException(status_code=400, detail="Invalid bathrooms value")
    square_feet = None
    if not _is_blank(data.square_feet):
        square_feet = _parse_number(data.square_feet, "square_feet", integer=True, minimum=1)
    zip_code = str(data.zip_code).strip()
    if not _ZIP_RE.match(zip_code):
        raise HTTPException(status_code=400, detail="Invalid zip_code value")
    available_date = _parse_date(data.available_date, "available_date")

    borough_id = str(data.borough_id).strip()
    neighborhood_id = str(data.neighborhood_id).strip()
    if not db.get(Borough, borough_id):
        raise HTTPException(status_code=400, detail="Invalid borough_id value")
    n = db.get(Neighborhood, neighborhood_id)
    if not n:
        raise HTTPException(status_code=400, detail="Invalid neighborhood_id value")
    if n.borough_id != borough_id:
        raise HTTPException(status_code=400, detail="Invalid neighborhood or borough selection")

    amenities: list[str] = []
    for a in data.amenities or []:
        a = str(a or "").strip()
        if a and a not in amenities:
            amenities.append(a)

    return {
        "title": str(data.title).strip(),
        "description": str(data.description).strip(),
        "price": price,
        "deposit": deposit,
        "bedrooms": bedrooms,
        "bathrooms": float(bathrooms),
        "square_feet": square_feet,
        "address": str(data.address).strip(),
        "zip_code": zip_code,
        "neighborhood_id": neighborhood_id,
        "borough_id": borough_id,
        "key_feature": str(data.key_feature).strip(),
        "amenities_json": json.dumps(amenities),
        "available_date": available_date,
    }


def _listing_form_values(l: Listing) -> dict[str, Any]:
    return {
        "title": l.title,
        "description": l.description,
        "price": l.price,
        "deposit": l.deposit,
        "bedrooms": l.bedrooms,
        "bathrooms": l.bathrooms,
        "square_feet": l.square_feet,
        "address": l.address,
        "zip_code": l.zip_code,
        "neighborhood_id": l.neighborhood_id,
        "borough_id": l.borough_id,
        "key_feature": l.key_feature,
        "amenities": _amenities(l),
        "available_date": l.available_date,
    }


def _geocode_listing(l: Listing) -> None:
    """
    Best-effort: fill lat/lng (and a missing zip) from the address.
    """
    if not google_maps_api_key():
        return
    try:
        res = geo_geocode(f"{l.address}, New York, NY {l.zip_code}".strip())
    except GeocodingError as e:
        logger.warning("Geocoding failed listing_id=%s: %s", l.id, e)
        return
    if not res:
        return
    if not in_nyc_bounds(res.get("lat"), res.get("lng")):
        logger.warning("Geocoded address outside NYC listing_id=%s address=%s", l.id, res.get("formatted_address"))
        return
    l.lat = res.get("lat")
    l.lng = res.get("lng")
    if not l.zip_code and res.get("zip_code"):
        l.zip_code = res["zip_code"]


def _create_listing(db: Session, *, owner: User, values: dict[str, Any], status: str) -> Listing:
    l = Listing(landlord_id=owner.id, status=status, updated_at=_now(), **values)
    db.add(l)
    db.flush()
    _geocode_listing(l)
    if owner.role == "tenant":
        owner.role = "listing_owner"
        db.add(owner)
    _log_moderation(db, actor_user_id=owner.id, entity_type="listing", entity_id=l.id, action="create", reason="")
    return l


def _active_subscription_clause(today: dt.date):
    return (
        select(ListingSubscription.id)
        .where(
            (ListingSubscription.listing_id == Listing.id)
            & (ListingSubscription.status == "active")
            & (ListingSubscription.end_date >= today)
        )
        .exists()
    )


def _saved_listing_ids(db: Session, user: User | None, listing_ids: list[str]) -> set[str]:
    if not user or not listing_ids:
        return set()
    rows = db.execute(
        select(SavedListing.listing_id).where((SavedListing.tenant_id == user.id) & SavedListing.listing_id.in_(listing_ids))
    ).scalars()
    return set(rows)


def _get_listing_for_edit(db: Session, listing_id: str, me: User) -> Listing:
    l = db.get(Listing, _parse_listing_id(listing_id))
    if not l:
        raise HTTPException(status_code=404, detail="Listing not found")
    if not _is_admin(me) and l.landlord_id != me.id:
        raise HTTPException(status_code=403, detail="Not allowed")
    return l


def _latest_subscription(db: Session, listing_id: str) -> ListingSubscription | None:
    return (
        db.execute(
            select(ListingSubscription)
            .where(ListingSubscription.listing_id == listing_id)
            .order_by(ListingSubscription.created_at.desc())
            .limit(1)
        )
        .scalars()
        .first()
    )


def _split_csv_values(v: str | None) -> list[str]:
    return [x.strip() for x in (v or "").split(",") if x.strip()]


@app.post("/listings")
def create_listing(
    data: ListingFormIn,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    status = (data.status or "pending").strip().lower()
    if status not in {"draft", "pending"}:
        raise HTTPException(status_code=400, detail="Invalid status value")
    values = _validate_listing_form(db, data)
    l = _create_listing(db, owner=me, values=values, status=status)
    return {"id": l.id, "status": l.status, "listing": _listing_out(l, landlord=me, include_internal=True)}


@app.post("/listings/draft")
def create_listing_draft(
    data: ListingFormIn,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    values = _validate_listing_form(db, data)
    l = _create_listing(db, owner=me, values=values, status="draft")
    return {"id": l.id, "status": l.status, "listing": _listing_out(l, landlord=me, include_internal=True)}


@app.post("/listings/preview")
def preview_listing(
    data: ListingPreviewIn,
    db: Annotated[Session, Depends(get_db)],
    me: Annotated[User | None, Depends(get_optional_user)],
):
    """
    Validate the form and render it the way the detail page would, without
    saving anything.
    """
    values = _validate_listing_form(db, data)
    n = db.get(Neighborhood, values["neighborhood_id"])
    b = db.get(Borough, values["borough_id"])
    if me:
        landlord = _contact_out(me)
    else:
        landlord = {
            "display_name": (data.display_name or "").strip(),
            "email": (data.email or "").strip().lower(),
            "phone": (data.phone or "").strip(),
            "preferred_contact": (data.preferred_contact or "email").strip().lower(),
        }
    listing = {k: v for k, v in values.items() if k != "amenities_json"}
    listing["amenities"] = json.loads(values["amenities_json"])
    listing["available_date"] = _iso(values["available_date"])
    listing["price_display"] = f"${values['price']:,}"
    listing["neighborhood_name"] = n.name if n else ""
    listing["borough_name"] = b.name if b else ""
    return {"listing": listing, "landlord": landlord}


@app.get("/listings")
def browse_listings(
    db: Annotated[Session, Depends(get_db)],
    me: Annotated[User | None, Depends(get_optional_user)],
    q: str | None = Query(default=None),
    min_price: int | None = Query(default=None, ge=0),
    max_price: int | None = Query(default=None, ge=0),
    bedrooms: int | None = Query(default=None, ge=0),
    bathrooms: float | None = Query(default=None, ge=0),
    min_square_feet: int | None = Query(default=None, ge=0),
    max_square_feet: int | None = Query(default=None, ge=0),
    borough_id: str | None = Query(default=None),
    neighborhood_id: str | None = Query(default=None),
    amenities: str | None = Query(default=None),
    available_by: dt.date | None = Query(default=None),
    featured: bool | None = Query(default=None),
    sort: str = Query(default="newest"),
    limit: int = Query(default=50, ge=1, le=200),
):
    """
    Public browse. Only published listings with a paid, unexpired
    subscription are visible.
    """
    stmt = (
        select(Listing)
        .options(selectinload(Listing.images), selectinload(Listing.landlord))
        .where((Listing.status == "published") & _active_subscription_clause(_today()))
    )
    if min_price is not None:
        stmt = stmt.where(Listing.price >= int(min_price))
    if max_price is not None:
        stmt = stmt.where(Listing.price <= int(max_price))
    if bedrooms is not None:
        stmt = stmt.where(Listing.bedrooms >= int(bedrooms))
    if bathrooms is not None:
        stmt = stmt.where(Listing.bathrooms >= float(bathrooms))
    if min_square_feet is not None:
        stmt = stmt.where(Listing.square_feet >= int(min_square_feet))
    if max_square_feet is not None:
        stmt = stmt.where(Listing.square_feet <= int(max_square_feet))
    boroughs = _split_csv_values(borough_id)
    if boroughs:
        stmt = stmt.where(Listing.borough_id.in_(boroughs))
    hoods = _split_csv_values(neighborhood_id)
    if hoods:
        stmt = stmt.where(Listing.neighborhood_id.in_(hoods))
    if available_by is not None:
        stmt = stmt.where(Listing.available_date <= available_by)
    if featured is not None:
        stmt = stmt.where(Listing.featured.is_(bool(featured)))
    qq = (q or "").strip().lower()
    if qq:
        like = f"%{qq}%"
        stmt = stmt.where(
            or_(
                func.lower(Listing.title).like(like),
                func.lower(Listing.description).like(like),
                func.lower(Listing.address).like(like),
                func.lower(Listing.key_feature).like(like),
            )
        )

    s = (sort or "newest").strip().lower()
    if s == "price_asc":
        stmt = stmt.order_by(Listing.price.asc(), Listing.created_at.desc())
    elif s == "price_desc":
        stmt = stmt.order_by(Listing.price.desc(), Listing.created_at.desc())
    else:
        stmt = stmt.order_by(Listing.created_at.desc())

    rows = db.execute(stmt).scalars().all()
    wanted = _split_csv_values(amenities)
    if wanted:
        # Amenities live in a JSON column; every requested one must be present.
        rows = [l for l in rows if set(wanted).issubset(set(_amenities(l)))]
    rows = rows[: int(limit)]

    saved = _saved_listing_ids(db, me, [l.id for l in rows])
    items = [_listing_out(l, is_saved=(l.id in saved) if me else None) for l in rows]
    return {"items": items, "total": len(items)}


@app.get("/listings/{listing_id}")
def get_listing(
    listing_id: str,
    db: Annotated[Session, Depends(get_db)],
    me: Annotated[User | None, Depends(get_optional_user)],
):
    lid = _parse_listing_id(listing_id)
    l = db.execute(
        select(Listing).options(selectinload(Listing.images), selectinload(Listing.landlord)).where(Listing.id == lid)
    ).scalar_one_or_none()
    if not l:
        raise HTTPException(status_code=404, detail="Listing not found")
    is_owner = bool(me) and (me.id == l.landlord_id or _is_admin(me))
    if l.status != "published" and not is_owner:
        raise HTTPException(status_code=404, detail="Listing not found")
    saved = bool(_saved_listing_ids(db, me, [l.id])) if me else False
    out = _listing_out(l, include_internal=is_owner, is_saved=saved)
    n = db.get(Neighborhood, l.neighborhood_id)
    b = db.get(Borough, l.borough_id)
    out["neighborhood_name"] = n.name if n else ""
    out["borough_name"] = b.name if b else ""
    if is_owner:
        out["subscription"] = _subscription_out(_latest_subscription(db, l.id))
    return out


def _cancel_active_subscriptions(db: Session, listing_id: str) -> None:
    db.execute(
        sa_update(ListingSubscription)
        .where((ListingSubscription.listing_id == listing_id) & (ListingSubscription.status == "active"))
        .values(status="cancelled")
    )


@app.patch("/listings/{listing_id}")
def update_listing(
    listing_id: str,
    data: ListingUpdateIn,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    """
    Partial update by the owner (or an admin). Owners cannot publish; that
    happens through payment or moderation. Only admins can feature a listing.
    Archiving here cancels the active subscription, same as the archive endpoint.
    """
    l = _get_listing_for_edit(db, listing_id, me)
    updates = data.model_dump(exclude_unset=True)
    new_status = (updates.pop("status", None) or "").strip().lower()
    featured = updates.pop("featured", None)
    merged = ListingFormIn(**{**_listing_form_values(l), **{k: v for k, v in updates.items() if v is not None}})
    values = _validate_listing_form(db, merged)
    address_changed = values["address"] != l.address or values["zip_code"] != l.zip_code
    for k, v in values.items():
        setattr(l, k, v)
    if featured is not None and _is_admin(me):
        l.featured = bool(featured)
    if new_status:
        allowed = LISTING_STATUSES if _is_admin(me) else {"draft", "pending", "archived"}
        if new_status not in allowed:
            raise HTTPException(status_code=400, detail="Invalid status value")
        l.status = new_status
        if new_status == "archived":
            _cancel_active_subscriptions(db, l.id)
    if address_changed:
        _geocode_listing(l)
    l.updated_at = _now()
    db.add(l)
    _log_moderation(db, actor_user_id=me.id, entity_type="listing", entity_id=l.id, action="update", reason="")
    return {"ok": True, "listing": _listing_out(l, include_internal=True)}


@app.post("/listings/{listing_id}/archive")
def archive_listing(
    listing_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    l = _get_listing_for_edit(db, listing_id, me)
    l.status = "archived"
    l.updated_at = _now()
    db.add(l)
    _cancel_active_subscriptions(db, l.id)
    _log_moderation(db, actor_user_id=me.id, entity_type="listing", entity_id=l.id, action="archive", reason="")
    return {"ok": True, "status": l.status}


@app.delete("/listings/{listing_id}")
def delete_listing(
    listing_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    l = _get_listing_for_edit(db, listing_id, me)
    lid = l.id
    _delete_listing_rows(db, [lid])
    _log_moderation(db, actor_user_id=me.id, entity_type="listing", entity_id=lid, action="delete", reason="")
    return {"ok": True}


def _store_image(*, raw: bytes, name: str, kind: str) -> tuple[str, str]:
    """
    Persist optimized JPEG bytes to Cloudinary when configured, else to the
    local uploads directory. Returns (stored path or URL, cloudinary public id).
    """
    if cloudinary_enabled():
        try:
            url, pid = cloudinary_upload_image(raw=raw, public_id=name, kind=kind)
        except Exception as e:
            logger.exception("Cloudinary upload failed kind=%s name=%s size_bytes=%s", kind, name, len(raw))
            msg = str(e) or "Cloudinary upload failed"
            raise HTTPException(status_code=500, detail=f"Failed to upload image: {msg[:200]}")
        if not url:
            raise HTTPException(status_code=500, detail="Failed to upload image")
        return url, pid
    safe_name = f"{name}.jpg"
    try:
        with open(os.path.join(uploads_dir(), safe_name), "wb") as out:
            out.write(raw)
    except OSError:
        logger.exception("Failed to save upload name=%s", safe_name)
        raise HTTPException(status_code=500, detail="Failed to save upload")
    return safe_name, ""


def _read_image_upload(file: UploadFile) -> bytes:
    raw = file.file.read()
    if not raw:
        raise HTTPException(status_code=400, detail="Empty upload")
    if len(raw) > max_upload_image_bytes():
        raise HTTPException(status_code=413, detail="Image is too large")
    optimized = optimize_image(raw)
    if optimized is None:
        raise HTTPException(status_code=400, detail="Only image uploads are allowed")
    return optimized


@app.post("/listings/{listing_id}/images")
def upload_listing_image(
    listing_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    file: UploadFile = File(...),
):
    l = _get_listing_for_edit(db, listing_id, me)
    existing = db.execute(select(ListingImage.position).where(ListingImage.listing_id == l.id)).scalars().all()
    if len(existing) >= MAX_LISTING_IMAGES:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_LISTING_IMAGES} images are allowed per listing")
    stored = _read_image_upload(file)
    stored_path, cloud_pid = _store_image(raw=stored, name=f"listing_{l.id}_{upload_suffix()}", kind="listings")
    img = ListingImage(
        listing_id=l.id,
        url=stored_path,
        position=(max(existing) + 1) if existing else 0,
        cloudinary_public_id=cloud_pid,
        content_type="image/jpeg",
        size_bytes=len(stored),
    )
    db.add(img)
    db.flush()
    return {"id": img.id, "url": _public_image_url(img.url), "position": img.position}


@app.delete("/listings/{listing_id}/images/{image_id}")
def delete_listing_image(
    listing_id: str,
    image_id: int,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    l = _get_listing_for_edit(db, listing_id, me)
    img = db.get(ListingImage, int(image_id))
    if not img or img.listing_id != l.id:
        raise HTTPException(status_code=404, detail="Image not found")
    if img.cloudinary_public_id:
        try:
            cloudinary_destroy(public_id=img.cloudinary_public_id)
        except Exception:
            logger.warning("Cloudinary destroy failed public_id=%s", img.cloudinary_public_id, exc_info=True)
    db.delete(img)
    return {"ok": True}


@app.get("/owner/listings")
def owner_listings(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    rows = (
        db.execute(
            select(Listing)
            .options(selectinload(Listing.images))
            .where(Listing.landlord_id == me.id)
            .order_by(Listing.created_at.desc())
        )
        .scalars()
        .all()
    )
    items = []
    for l in rows:
        out = _listing_out(l, include_internal=True)
        out["subscription"] = _subscription_out(_latest_subscription(db, l.id))
        items.append(out)
    return {"items": items}


# -----------------------
# AI listing copy
# -----------------------
_AI_MISSING_INPUTS = "Please fill in neighborhood, bedrooms, bathrooms, and key feature first"


def _ai_error(e: AIGenerationError) -> HTTPException:
    return HTTPException(status_code=503 if e.rate_limited else 502, detail=str(e))


def _ai_common_inputs(db: Session, data: AITitleIn | AIDescriptionIn) -> tuple[Neighborhood | None, str, int, float, str]:
    if _is_blank(data.neighborhood_id) or _is_blank(data.bedrooms) or _is_blank(data.bathrooms) or _is_blank(data.key_feature):
        raise HTTPException(status_code=400, detail=_AI_MISSING_INPUTS)
    bedrooms = _parse_number(data.bedrooms, "bedrooms", integer=True)
    bathrooms = _parse_number(data.bathrooms, "bathrooms", integer=False)
    n = db.get(Neighborhood, data.neighborhood_id.strip())
    name = n.name if n else data.neighborhood_id.strip()
    return n, name, int(bedrooms), float(bathrooms), data.key_feature.strip()


@app.post("/ai/listing-title")
def ai_listing_title(data: AITitleIn, request: Request, db: Annotated[Session, Depends(get_db)]):
    n, hood, bedrooms, bathrooms, key_feature = _ai_common_inputs(db, data)
    limiter.check("ai", client_ip(request))
    b = db.get(Borough, (data.borough_id or "").strip() or (n.borough_id if n else ""))
    try:
        title = generate_listing_title(
            neighborhood=hood,
            borough=b.name if b else (data.borough_id or "New York"),
            bedrooms=bedrooms,
            bathrooms=bathrooms,
            key_feature=key_feature,
        )
    except AIGenerationError as e:
        raise _ai_error(e)
    return {"title": title}


@app.post("/ai/listing-description")
def ai_listing_description(data: AIDescriptionIn, request: Request, db: Annotated[Session, Depends(get_db)]):
    _, hood, bedrooms, bathrooms, key_feature = _ai_common_inputs(db, data)
    limiter.check("ai", client_ip(request))
    try:
        description = generate_listing_description(
            neighborhood=hood,
            bedrooms=bedrooms,
            bathrooms=bathrooms,
            key_feature=key_feature,
            amenities=[str(a).strip() for a in data.amenities if str(a).strip()],
        )
    except AIGenerationError as e:
        raise _ai_error(e)
    return {"description": description}


# -----------------------
# Address lookup
# -----------------------
def _geo_error(e: GeocodingError) -> HTTPException:
    if "not configured" in str(e).lower():
        return HTTPException(status_code=503, detail="Address lookup is not available")
    return HTTPException(status_code=502, detail="Address lookup failed")


@app.get("/geo/autocomplete")
def geo_autocomplete_route(request: Request, q: str = Query(default="")):
    limiter.check("geo", client_ip(request))
    try:
        items = geo_autocomplete(q)
    except GeocodingError as e:
        logger.warning("Autocomplete failed q=%r: %s", q, e)
        raise _geo_error(e)
    return {"items": items}


@app.get("/geo/geocode")
def geo_geocode_route(request: Request, address: str = Query(..., min_length=1)):
    limiter.check("geo", client_ip(request))
    try:
        res = geo_geocode(address)
    except GeocodingError as e:
        logger.warning("Geocode failed address=%r: %s", address, e)
        raise _geo_error(e)
    if not res:
        raise HTTPException(status_code=404, detail="Address not found")
    return res


# -----------------------
# Billing (Stripe checkout + webhook)
# -----------------------
def _checkout_urls(success_url: str | None, cancel_url: str | None) -> tuple[str, str]:
    success = (success_url or "").strip() or f"{site_url()}/payment-success?session_id={{CHECKOUT_SESSION_ID}}"
    cancel = (cancel_url or "").strip() or f"{site_url()}/submit-listing"
    return success, cancel


def _checkout_or_http_error(**kwargs) -> dict:
    try:
        return create_checkout_session(**kwargs)
    except StripeNotConfigured as e:
        logger.error("Stripe not configured: %s", e)
        raise HTTPException(status_code=503, detail="Payment system is not configured. Please contact support.")
    except StripeError as e:
        logger.warning("Stripe checkout failed: %s", e)
        raise HTTPException(status_code=502, detail=str(e) or "Failed to create subscription")


@app.post("/billing/checkout")
def billing_checkout(
    data: CheckoutIn,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    lid = _parse_listing_id(data.listing_id)
    plan_type = (data.plan_type or "").strip().lower()
    plan = plan_or_none(plan_type)
    if not plan:
        raise HTTPException(status_code=400, detail=f"Invalid plan type: {data.plan_type}")
    l = db.get(Listing, lid)
    if not l or l.landlord_id != me.id:
        raise HTTPException(status_code=404, detail="Listing not found or access denied")
    if l.status == "archived":
        raise HTTPException(status_code=400, detail="Archived listings cannot be published")

    success, cancel = _checkout_urls(data.success_url, data.cancel_url)
    duration = int(plan["duration_days"])
    session = _checkout_or_http_error(
        plan_type=plan_type,
        success_url=success,
        cancel_url=cancel,
        metadata={"listingId": l.id, "planType": plan_type, "userId": me.id, "duration": str(duration)},
        customer_email=me.email,
    )
    today = _today()
    db.add(
        ListingSubscription(
            listing_id=l.id,
            owner_id=me.id,
            plan_type=plan_type,
            start_date=today,
            end_date=today + dt.timedelta(days=duration),
            amount_paid=int(plan["amount"]),
            stripe_session_id=str(session["id"]),
            status="pending",
            recurring=True,
            billing_cycle=duration,
        )
    )
    return {"session_id": session["id"], "url": session.get("url") or ""}


@app.post("/submissions/checkout")
def submission_checkout(
    data: SubmissionCheckoutIn,
    request: Request,
    db: Annotated[Session, Depends(get_db)],
):
    """
    Pay-first flow for visitors without an account. The form is parked
    server-side and turned into a listing once the payment is confirmed
    and the account is created.
    """
    limiter.check("submission", client_ip(request))
    _validate_listing_form(db, data)
    email = (data.email or "").strip().lower()
    if not email or "@" not in email:
        raise HTTPException(status_code=400, detail="Invalid email")
    if len(data.password or "") < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")
    if data.password != data.confirm_password:
        raise HTTPException(status_code=400, detail="Passwords do not match")
    if not data.agree_to_terms:
        raise HTTPException(status_code=400, detail="You must agree to the terms")
    plan_type = (data.plan_type or "").strip().lower()
    plan = plan_or_none(plan_type)
    if not plan:
        raise HTTPException(status_code=400, detail=f"Invalid plan type: {data.plan_type}")

    form = data.model_dump(exclude={"password", "confirm_password", "agree_to_terms", "plan_type", "success_url", "cancel_url"})
    sub = PendingSubmission(
        email=email,
        display_name=(data.display_name or "").strip(),
        password_hash=hash_password(data.password),
        form_json=json.dumps(form, default=str),
        plan_type=plan_type,
        status="awaiting_payment",
        expires_at=_now() + dt.timedelta(hours=pending_submission_ttl_hours()),
    )
    db.add(sub)
    db.flush()

    success, cancel = _checkout_urls(data.success_url, data.cancel_url)
    session = _checkout_or_http_error(
        plan_type=plan_type,
        success_url=success,
        cancel_url=cancel,
        metadata={
            "listingId": "temp",
            "planType": plan_type,
            "userId": "temp",
            "duration": str(plan["duration_days"]),
            "guestEmail": email,
            "guestName": sub.display_name,
            "submissionToken": sub.id,
        },
        customer_email=email,
    )
    sub.stripe_session_id = str(session["id"])
    db.add(sub)
    return {"token": sub.id, "session_id": session["id"], "url": session.get("url") or ""}


@app.get("/billing/checkout/{session_id}")
def billing_checkout_status(session_id: str, db: Annotated[Session, Depends(get_db)]):
    """
    Where to resume after the checkout redirect: the listing it paid for or
    the parked submission waiting for account creation.
    """
    sid = (session_id or "").strip()
    ls = db.execute(select(ListingSubscription).where(ListingSubscription.stripe_session_id == sid)).scalar_one_or_none()
    if ls:
        l = db.get(Listing, ls.listing_id)
        return {
            "kind": "listing",
            "listing_id": ls.listing_id,
            "subscription_status": ls.status,
            "listing_status": l.status if l else "",
        }
    ps = db.execute(select(PendingSubmission).where(PendingSubmission.stripe_session_id == sid)).scalar_one_or_none()
    if ps:
        return {
            "kind": "submission",
            "token": ps.id,
            "status": ps.status,
            "email": ps.email,
            "plan_type": ps.plan_type,
            "listing_id": ps.listing_id,
        }
    raise HTTPException(status_code=404, detail="Checkout session not found")


class _WebhookProcessingError(RuntimeError):
    pass


def _apply_paid_checkout(db: Session, session: dict[str, Any], metadata: dict[str, Any], plan: dict[str, Any]) -> None:
    session_id = str(session.get("id") or "")
    stripe_sub_id = str(session.get("subscription") or "")
    listing_id = str(metadata.get("listingId") or "")
    plan_type = str(metadata.get("planType") or "").strip().lower()
    duration = int(plan["duration_days"])
    start = _today()
    end = start + dt.timedelta(days=duration)

    if listing_id == "temp":
        token = str(metadata.get("submissionToken") or "")
        ps = db.get(PendingSubmission, token) if token else None
        if not ps and session_id:
            ps = db.execute(select(PendingSubmission).where(PendingSubmission.stripe_session_id == session_id)).scalar_one_or_none()
        if not ps:
            raise _WebhookProcessingError(f"No pending submission for session {session_id}")
        if ps.status == "awaiting_payment":
            ps.status = "paid"
        ps.stripe_session_id = ps.stripe_session_id or session_id
        ps.stripe_subscription_id = stripe_sub_id
        db.add(ps)
        logger.info("Guest submission %s marked paid (session %s)", ps.id, session_id)
        return

    l = db.get(Listing, listing_id)
    if not l or l.landlord_id != str(metadata.get("userId") or ""):
        raise _WebhookProcessingError(f"Listing {listing_id} not found for user {metadata.get('userId')}")
    l.status = "published"
    l.moderation_reason = ""
    l.updated_at = _now()
    db.add(l)

    ls = db.execute(select(ListingSubscription).where(ListingSubscription.stripe_session_id == session_id)).scalar_one_or_none()
    if not ls:
        logger.warning("No pending subscription row for session %s; creating one", session_id)
        ls = ListingSubscription(
            listing_id=l.id,
            owner_id=l.landlord_id,
            plan_type=plan_type,
            amount_paid=int(plan["amount"]),
            stripe_session_id=session_id or None,
            recurring=True,
            billing_cycle=duration,
        )
    ls.status = "active"
    ls.start_date = start
    ls.end_date = end
    ls.stripe_subscription_id = stripe_sub_id
    db.add(ls)
    _log_moderation(db, actor_user_id=None, entity_type="listing", entity_id=l.id, action="publish", reason="payment")
    _notify(
        db,
        user_id=l.landlord_id,
        kind="listing",
        title="Your listing is live",
        body=f"{l.title} is now published until {end.isoformat()}.",
        link=f"/listings/{l.id}",
    )
    logger.info("Listing %s published (session %s, plan %s)", l.id, session_id, plan_type)


def _apply_renewal(db: Session, invoice: dict[str, Any]) -> None:
    stripe_sub_id = str(invoice.get("subscription") or "")
    if not stripe_sub_id or invoice.get("billing_reason") != "subscription_cycle":
        return
    ls = (
        db.execute(
            select(ListingSubscription)
            .where(ListingSubscription.stripe_subscription_id == stripe_sub_id)
            .order_by(ListingSubscription.created_at.desc())
        )
        .scalars()
        .first()
    )
    if not ls:
        logger.warning("Renewal for unknown subscription %s", stripe_sub_id)
        return
    base = max(ls.end_date, _today())
    ls.end_date = base + dt.timedelta(days=int(ls.billing_cycle or 30))
    ls.status = "active"
    db.add(ls)
    logger.info("Subscription %s renewed until %s", ls.id, ls.end_date.isoformat())


def _cancel_by_stripe_subscription(db: Session, stripe_subscription: dict[str, Any]) -> None:
    stripe_sub_id = str(stripe_subscription.get("id") or "")
    if not stripe_sub_id:
        return
    db.execute(
        sa_update(ListingSubscription)
        .where((ListingSubscription.stripe_subscription_id == stripe_sub_id) & (ListingSubscription.status == "active"))
        .values(status="cancelled")
    )


def _handle_webhook(payload: bytes, sig_header: str | None) -> dict[str, Any]:
    secret = stripe_webhook_secret()
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET environment variable is not set")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing signature")
    try:
        event = construct_event(payload=payload, sig_header=sig_header, secret=secret)
    except StripeSignatureError as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise HTTPException(status_code=400, detail="Webhook signature verification failed")

    etype = str(event.get("type") or "")
    obj = ((event.get("data") or {}).get("object")) or {}
    logger.info("Processing webhook event: %s", etype)

    if etype == "checkout.session.completed":
        if obj.get("payment_status") != "paid":
            logger.info("Payment not completed, status: %s", obj.get("payment_status"))
            return {"received": True}
        metadata = obj.get("metadata") or {}
        if not metadata.get("listingId") or not metadata.get("planType") or not metadata.get("userId"):
            logger.error("Missing required metadata in session %s: %s", obj.get("id"), metadata)
            raise HTTPException(status_code=400, detail="Missing metadata")
        plan = plan_or_none(metadata.get("planType"))
        if not plan:
            logger.error("Invalid plan type: %s", metadata.get("planType"))
            raise HTTPException(status_code=400, detail="Invalid plan type")
        try:
            with session_scope() as db:
                _apply_paid_checkout(db, obj, metadata, plan)
        except (_WebhookProcessingError, SQLAlchemyError) as e:
            logger.exception("Error processing checkout.session.completed session=%s", obj.get("id"))
            raise HTTPException(status_code=500, detail=f"Processing error: {e}")
    elif etype == "invoice.paid":
        with session_scope() as db:
            _apply_renewal(db, obj)
    elif etype == "customer.subscription.deleted":
        with session_scope() as db:
            _cancel_by_stripe_subscription(db, obj)
    elif etype in ("payment_intent.payment_failed", "invoice.payment_failed"):
        logger.warning("Payment failed: %s %s", etype, obj.get("id"))
    else:
        logger.info("Unhandled event type: %s", etype)
    return {"received": True}


@app.post("/billing/webhook")
async def billing_webhook(request: Request):
    payload = await request.body()
    return await run_in_threadpool(_handle_webhook, payload, request.headers.get("stripe-signature"))


@app.post("/submissions/{token}/complete")
def submission_complete(
    token: str,
    data: SubmissionCompleteIn,
    db: Annotated[Session, Depends(get_db)],
):
    """
    Post-payment account creation: create (or reuse) the owner account and
    publish the parked listing with an active subscription.
    """
    missing = "No pending listing data found. Please submit your listing again."
    if not _is_uuid(token):
        raise HTTPException(status_code=404, detail=missing)
    ps = db.get(PendingSubmission, token.strip().lower())
    if not ps:
        raise HTTPException(status_code=404, detail=missing)
    limiter.check("submission_complete", ps.id)
    if not verify_password(data.password or "", ps.password_hash):
        raise HTTPException(status_code=401, detail="Invalid password")

    user = db.execute(select(User).where(User.email == ps.email)).scalar_one_or_none()
    if ps.status == "completed" and user:
        return {"ok": True, "listing_id": ps.listing_id, **_token_response(user)}
    if ps.status != "paid":
        if ps.status == "awaiting_payment" and _aware(ps.expires_at) < _now():
            raise HTTPException(status_code=410, detail="This submission has expired. Please submit your listing again.")
        raise HTTPException(status_code=409, detail="Payment not confirmed yet. Please try again in a moment.")

    form = json.loads(ps.form_json or "{}")
    if user:
        if not verify_password(data.password or "", user.password_hash):
            raise HTTPException(status_code=409, detail="An account with this email already exists. Please use that account's password.")
    else:
        user = User(
            email=ps.email,
            display_name=ps.display_name,
            role="listing_owner",
            phone=str(form.get("phone") or "").strip(),
            preferred_contact=str(form.get("preferred_contact") or "email").strip().lower() or "email",
            password_hash=ps.password_hash,
        )
        db.add(user)
        db.flush()

    values = _validate_listing_form(db, ListingFormIn(**{k: form.get(k) for k in ListingFormIn.model_fields if k in form}))
    l = _create_listing(db, owner=user, values=values, status="published")
    plan = PLANS[ps.plan_type]
    duration = int(plan["duration_days"])
    start = _today()
    db.add(
        ListingSubscription(
            listing_id=l.id,
            owner_id=user.id,
            plan_type=ps.plan_type,
            start_date=start,
            end_date=start + dt.timedelta(days=duration),
            amount_paid=int(plan["amount"]),
            stripe_session_id=ps.stripe_session_id,
            stripe_subscription_id=ps.stripe_subscription_id,
            status="active",
            recurring=True,
            billing_cycle=duration,
        )
    )
    ps.status = "completed"
    ps.listing_id = l.id
    # The session id now belongs to the subscription row.
    ps.stripe_session_id = None
    db.add(ps)

    delivery = ""
    if user.email_verified_at is None:
        code = _issue_auth_code(db, email=user.email, purpose="verify_email")
        try:
            delivery = send_verification_email(to_email=user.email, code=code, display_name=user.display_name)
        except EmailSendError:
            logger.exception("Verification email failed after submission to=%s", user.email)
    return {
        "ok": True,
        "listing_id": l.id,
        "verification_delivery": delivery,
        **_token_response(user),
    }


@app.get("/listings/{listing_id}/subscription")
def listing_subscription_status(listing_id: str, db: Annotated[Session, Depends(get_db)]):
    lid = _parse_listing_id(listing_id)
    sub = _latest_subscription(db, lid)
    if not sub or sub.status == "pending":
        return {"status": "none", "days_remaining": 0}

    today = _today()
    # end_date is the last paid day, inclusive; browse uses the same cutoff.
    days_remaining = max(0, (sub.end_date - today).days)
    if sub.status in ("cancelled", "expired"):
        status = "expired"
    elif sub.end_date < today:
        status = "expired"
        if sub.status == "active":
            logger.info("Marking subscription %s expired", sub.id)
            sub.status = "expired"
            db.add(sub)
    else:
        status = "active"
    return {
        "status": status,
        "start_date": _iso(sub.start_date),
        "end_date": _iso(sub.end_date),
        "days_remaining": days_remaining,
        "plan_type": sub.plan_type,
        "amount_paid": sub.amount_paid,
    }


# -----------------------
# Applications
# -----------------------
def _application_out(a: Application, *, listing: Listing | None = None) -> dict[str, Any]:
    l = listing or getattr(a, "listing", None)
    return {
        "id": a.id,
        "listing_id": a.listing_id,
        "tenant_id": a.tenant_id,
        "landlord_id": a.landlord_id,
        "full_name": a.full_name,
        "email": a.email,
        "phone": a.phone,
        "move_in_date": _iso(a.move_in_date),
        "message": a.message,
        "status": a.status,
        "created_at": _iso(a.created_at),
        "listing": {"id": l.id, "title": l.title, "address": l.address, "price": l.price, "status": l.status} if l else None,
    }


def _application_message(l: Listing, data: ApplicationIn) -> str:
    move_in = f"{data.move_in_date:%B} {data.move_in_date.day}, {data.move_in_date.year}"
    lines = [
        f"New Application for {l.title}",
        "",
        f"Applicant: {data.full_name.strip()}",
        f"Email: {data.email.strip()}",
    ]
    if (data.phone or "").strip():
        lines.append(f"Phone: {data.phone.strip()}")
    lines += [f"Desired Move-in Date: {move_in}", ""]
    if (data.message or "").strip():
        lines += ["Message from applicant:", data.message.strip()]
    else:
        lines.append("No additional message provided.")
    lines += [
        "",
        "---",
        "This message was automatically generated from a rental application. "
        "You can reply to communicate directly with the applicant.",
    ]
    return "\n".join(lines)


@app.post("/listings/{listing_id}/applications")
def submit_application(
    listing_id: str,
    data: ApplicationIn,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    lid = _parse_listing_id(listing_id)
    l = db.get(Listing, lid)
    if not l or l.status != "published":
        raise HTTPException(status_code=404, detail="Listing not found")
    if l.landlord_id == me.id:
        raise HTTPException(status_code=400, detail="You cannot apply to your own listing")
    if not data.full_name.strip() or "@" not in (data.email or ""):
        raise HTTPException(status_code=400, detail="Full name and a valid email are required")

    exists = db.execute(
        select(Application.id).where((Application.listing_id == lid) & (Application.tenant_id == me.id))
    ).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="You have already applied for this listing")

    a = Application(
        listing_id=lid,
        tenant_id=me.id,
        landlord_id=l.landlord_id,
        full_name=data.full_name.strip(),
        email=data.email.strip().lower(),
        phone=(data.phone or "").strip() or None,
        move_in_date=data.move_in_date,
        message=(data.message or "").strip() or None,
    )
    db.add(a)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="You have already applied for this listing")

    # The landlord's copy of the application arrives as a new conversation.
    try:
        with db.begin_nested():
            db.add(
                Message(
                    sender_id=me.id,
                    recipient_id=l.landlord_id,
                    listing_id=l.id,
                    content=_application_message(l, data),
                )
            )
            _notify(
                db,
                user_id=l.landlord_id,
                kind="application",
                title="New application",
                body=f"{a.full_name} applied for {l.title}",
                link=f"/listings/{l.id}",
            )
    except SQLAlchemyError:
        logger.exception("Error creating application message application_id=%s", a.id)

    try:
        send_application_confirmation_email(
            tenant_name=a.full_name,
            tenant_email=a.email,
            listing_title=l.title,
            listing_address=l.address,
            move_in_date=a.move_in_date,
            message=a.message,
            listing_id=l.id,
        )
    except EmailSendError:
        logger.exception("Failed to send confirmation email application_id=%s", a.id)

    return {"ok": True, "application": _application_out(a, listing=l)}


@app.get("/listings/{listing_id}/applications/mine")
def my_application_for_listing(
    listing_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    lid = _parse_listing_id(listing_id)
    a = db.execute(
        select(Application).where((Application.listing_id == lid) & (Application.tenant_id == me.id))
    ).scalar_one_or_none()
    if not a:
        return {"application": None}
    return {"application": {"id": a.id, "status": a.status, "created_at": _iso(a.created_at)}}


@app.get("/me/applications")
def my_applications(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    rows = (
        db.execute(
            select(Application)
            .options(selectinload(Application.listing))
            .where(Application.tenant_id == me.id)
            .order_by(Application.created_at.desc())
        )
        .scalars()
        .all()
    )
    return {"items": [_application_out(a) for a in rows]}


@app.get("/owner/applications")
def owner_applications(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    status: str | None = Query(default=None),
):
    stmt = (
        select(Application)
        .options(selectinload(Application.listing))
        .where(Application.landlord_id == me.id)
        .order_by(Application.created_at.desc())
    )
    st = (status or "").strip().lower()
    if st:
        stmt = stmt.where(Application.status == st)
    rows = db.execute(stmt).scalars().all()
    return {"items": [_application_out(a) for a in rows]}


def _decide_application(db: Session, *, application_id: str, me: User, status: str) -> dict[str, Any]:
    if not _is_uuid(application_id):
        raise HTTPException(status_code=400, detail="Invalid application ID format")
    a = db.get(Application, application_id.strip().lower())
    if not a:
        raise HTTPException(status_code=404, detail="Application not found")
    if a.landlord_id != me.id and not _is_admin(me):
        raise HTTPException(status_code=403, detail="Not allowed")
    a.status = status
    db.add(a)
    l = db.get(Listing, a.listing_id)
    title = l.title if l else "a listing"
    _notify(
        db,
        user_id=a.tenant_id,
        kind="application_status",
        title=f"Application {status}",
        body=f"Your application for {title} was {status}.",
        link=f"/listings/{a.listing_id}",
    )
    _log_moderation(
        db,
        actor_user_id=me.id,
        entity_type="application",
        entity_id=a.id,
        action="approve" if status == "approved" else "reject",
        reason="",
    )
    return {"ok": True, "application": _application_out(a, listing=l)}


@app.post("/applications/{application_id}/approve")
def approve_application(
    application_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return _decide_application(db, application_id=application_id, me=me, status="approved")


@app.post("/applications/{application_id}/reject")
def reject_application(
    application_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return _decide_application(db, application_id=application_id, me=me, status="rejected")


# -----------------------
# Messages
# -----------------------
def _message_out(m: Message) -> dict[str, Any]:
    return {
        "id": m.id,
        "conversation_id": m.conversation_id,
        "content": m.content,
        "created_at": _iso(m.created_at),
        "read_at": _iso(m.read_at) or None,
        "sender": _contact_out(m.sender),
        "recipient": _contact_out(m.recipient),
        "listing": {"id": m.listing.id, "title": m.listing.title} if m.listing else None,
    }


@app.get("/messages")
def list_messages(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    conversation_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
):
    stmt = (
        select(Message)
        .options(selectinload(Message.sender), selectinload(Message.recipient), selectinload(Message.listing))
        .where((Message.sender_id == me.id) | (Message.recipient_id == me.id))
        .order_by(Message.created_at.desc())
    )
    if (conversation_id or "").strip():
        stmt = stmt.where(Message.conversation_id == conversation_id.strip())
    rows = db.execute(stmt.limit(int(limit))).scalars().all()
    unread = sum(1 for m in rows if m.recipient_id == me.id and m.read_at is None)
    return {"items": [_message_out(m) for m in rows], "unread": unread}


@app.post("/messages")
def send_message(
    data: MessageIn,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    content = (data.content or "").strip()
    if not content:
        raise HTTPException(status_code=400, detail="Message cannot be empty")
    if data.recipient_id == me.id:
        raise HTTPException(status_code=400, detail="You cannot message yourself")
    recipient = db.get(User, data.recipient_id)
    if not recipient:
        raise HTTPException(status_code=404, detail="Recipient not found")
    listing_id = None
    if data.listing_id:
        listing_id = _parse_listing_id(data.listing_id)
        if not db.get(Listing, listing_id):
            raise HTTPException(status_code=404, detail="Listing not found")

    conversation_id = (data.conversation_id or "").strip()
    if conversation_id:
        # Replies must belong to a thread the sender is part of.
        member = db.execute(
            select(Message.id)
            .where(
                (Message.conversation_id == conversation_id)
                & ((Message.sender_id == me.id) | (Message.recipient_id == me.id))
            )
            .limit(1)
        ).scalar_one_or_none()
        if not member:
            raise HTTPException(status_code=404, detail="Conversation not found")

    m = Message(sender_id=me.id, recipient_id=recipient.id, listing_id=listing_id, content=content)
    if conversation_id:
        m.conversation_id = conversation_id
    db.add(m)
    db.flush()
    _notify(
        db,
        user_id=recipient.id,
        kind="message",
        title="New message",
        body=f"{me.display_name or me.email}: {content[:120]}",
        link=f"/messages?conversation_id={m.conversation_id}",
    )
    return {"ok": True, "message": _message_out(m)}


@app.post("/messages/{message_id}/read")
def mark_message_read(
    message_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    m = db.get(Message, message_id)
    if not m or m.recipient_id != me.id:
        raise HTTPException(status_code=404, detail="Message not found")
    if m.read_at is None:
        m.read_at = _now()
        db.add(m)
    return {"ok": True, "read_at": _iso(m.read_at)}


# -----------------------
# Saved listings
# -----------------------
def _saved_out(s: SavedListing) -> dict[str, Any]:
    return {
        "id": s.id,
        "listing_id": s.listing_id,
        "notes": s.notes,
        "created_at": _iso(s.created_at),
        "listing": _listing_out(s.listing) if s.listing else None,
    }


def _find_saved(db: Session, *, tenant_id: str, listing_id: str) -> SavedListing | None:
    return db.execute(
        select(SavedListing).where((SavedListing.tenant_id == tenant_id) & (SavedListing.listing_id == listing_id))
    ).scalar_one_or_none()


@app.post("/listings/{listing_id}/save")
def save_listing(
    listing_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    data: SaveListingIn | None = None,
):
    lid = _parse_listing_id(listing_id)
    if not db.get(Listing, lid):
        raise HTTPException(status_code=404, detail="Listing not found")
    existing = _find_saved(db, tenant_id=me.id, listing_id=lid)
    if existing:
        raise HTTPException(status_code=409, detail="Listing already saved")
    s = SavedListing(tenant_id=me.id, listing_id=lid, notes=(data.notes if data else "") or "")
    db.add(s)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Listing already saved")
    return {"ok": True, "saved": True, "id": s.id}


@app.delete("/listings/{listing_id}/save")
def unsave_listing(
    listing_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    lid = _parse_listing_id(listing_id)
    db.execute(delete(SavedListing).where((SavedListing.tenant_id == me.id) & (SavedListing.listing_id == lid)))
    return {"ok": True, "saved": False}


@app.post("/listings/{listing_id}/save/toggle")
def toggle_saved_listing(
    listing_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    lid = _parse_listing_id(listing_id)
    existing = _find_saved(db, tenant_id=me.id, listing_id=lid)
    if existing:
        db.delete(existing)
        return {"ok": True, "saved": False}
    if not db.get(Listing, lid):
        raise HTTPException(status_code=404, detail="Listing not found")
    db.add(SavedListing(tenant_id=me.id, listing_id=lid))
    return {"ok": True, "saved": True}


@app.get("/listings/{listing_id}/saved")
def is_listing_saved(
    listing_id: str,
    db: Annotated[Session, Depends(get_db)],
    me: Annotated[User | None, Depends(get_optional_user)],
):
    if not me or not _is_uuid(listing_id):
        return {"saved": False}
    return {"saved": _find_saved(db, tenant_id=me.id, listing_id=listing_id.strip().lower()) is not None}


@app.get("/me/saved")
def my_saved_listings(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    rows = (
        db.execute(
            select(SavedListing)
            .options(selectinload(SavedListing.listing).selectinload(Listing.images))
            .where(SavedListing.tenant_id == me.id)
            .order_by(SavedListing.created_at.desc())
        )
        .scalars()
        .all()
    )
    return {"items": [_saved_out(s) for s in rows]}


@app.patch("/me/saved/{saved_id}")
def update_saved_notes(
    saved_id: str,
    data: SavedNotesIn,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    if not _is_uuid(saved_id):
        raise HTTPException(status_code=400, detail="Invalid saved listing ID format")
    s = db.get(SavedListing, saved_id.strip().lower())
    if not s or s.tenant_id != me.id:
        raise HTTPException(status_code=404, detail="Saved listing not found")
    s.notes = data.notes or ""
    db.add(s)
    return {"ok": True, "saved": _saved_out(s)}


# -----------------------
# Notifications
# -----------------------
def _notification_out(n: Notification) -> dict[str, Any]:
    return {
        "id": n.id,
        "kind": n.kind,
        "title": n.title,
        "body": n.body,
        "link": n.link,
        "read": bool(n.read),
        "created_at": _iso(n.created_at),
    }


@app.get("/notifications")
def list_notifications(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
):
    stmt = select(Notification).where(Notification.user_id == me.id).order_by(Notification.id.desc())
    if unread_only:
        stmt = stmt.where(Notification.read.is_(False))
    rows = db.execute(stmt.limit(int(limit))).scalars().all()
    return {"items": [_notification_out(n) for n in rows], "unread": _unread_notification_count(db, me.id)}


@app.get("/notifications/unread-count")
def notifications_unread_count(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return {"count": _unread_notification_count(db, me.id)}


@app.post("/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: int,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    n = db.get(Notification, int(notification_id))
    if not n or n.user_id != me.id:
        raise HTTPException(status_code=404, detail="Notification not found")
    if not n.read:
        n.read = True
        db.add(n)
        db.flush()
        _push_unread_count(db, me.id)
    return {"ok": True}


@app.post("/notifications/read-all")
def mark_all_notifications_read(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    db.execute(
        sa_update(Notification)
        .where((Notification.user_id == me.id) & (Notification.read.is_(False)))
        .values(read=True)
    )
    _push_unread_count(db, me.id)
    return {"ok": True}


def _ws_unread_count(user_id: str) -> int | None:
    with session_scope() as db:
        if not db.get(User, user_id):
            return None
        return _unread_notification_count(db, user_id)


@app.websocket("/ws/notifications")
async def ws_notifications(websocket: WebSocket, token: str = Query(default="")):
    user_id = user_id_from_token(token)
    count = await run_in_threadpool(_ws_unread_count, user_id) if user_id else None
    await websocket.accept()
    if count is None:
        # Closing after accept so browsers see 4401 rather than a failed handshake.
        await websocket.close(code=4401, reason="Unauthorized")
        return
    await hub.register(user_id, websocket)
    try:
        await websocket.send_json({"type": "unread_count", "count": count})
        while True:
            # Client pings keep the channel open; content is ignored.
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister(user_id, websocket)


# -----------------------
# Neighborhoods & highlights
# -----------------------
def _highlight_out(h: NeighborhoodHighlight) -> dict[str, Any]:
    return {
        "id": h.id,
        "neighborhood_id": h.neighborhood_id,
        "kind": h.kind,
        "kind_label": _catalog_highlight_types().get(h.kind, h.kind),
        "name": h.name,
        "description": h.description,
        "image_url": _public_image_url(h.image_url),
        "status": h.status,
        "added_by": h.added_by,
        "created_at": _iso(h.created_at),
    }


@app.get("/neighborhoods/{neighborhood_id}")
def get_neighborhood(neighborhood_id: str, db: Annotated[Session, Depends(get_db)]):
    n = db.get(Neighborhood, (neighborhood_id or "").strip())
    if not n:
        raise HTTPException(status_code=404, detail="Neighborhood not found")
    b = db.get(Borough, n.borough_id)
    highlights = (
        db.execute(
            select(NeighborhoodHighlight)
            .where((NeighborhoodHighlight.neighborhood_id == n.id) & (NeighborhoodHighlight.status == "approved"))
            .order_by(NeighborhoodHighlight.kind.asc(), NeighborhoodHighlight.created_at.desc())
        )
        .scalars()
        .all()
    )
    listing_count = db.execute(
        select(func.count(Listing.id)).where(
            (Listing.neighborhood_id == n.id) & (Listing.status == "published") & _active_subscription_clause(_today())
        )
    ).scalar()
    return {
        "id": n.id,
        "name": n.name,
        "description": n.description,
        "image_url": n.image_url,
        "borough": {"id": b.id, "name": b.name} if b else None,
        "listing_count": int(listing_count or 0),
        "highlights": [_highlight_out(h) for h in highlights],
    }


@app.post("/neighborhoods/{neighborhood_id}/highlights")
def submit_highlight(
    neighborhood_id: str,
    data: HighlightIn,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    n = db.get(Neighborhood, (neighborhood_id or "").strip())
    if not n:
        raise HTTPException(status_code=404, detail="Neighborhood not found")
    kind = (data.kind or "").strip().lower()
    if kind not in _catalog_highlight_types():
        raise HTTPException(status_code=400, detail="Invalid highlight type")
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Missing required field: name")
    limiter.check("highlight", me.id)
    h = NeighborhoodHighlight(
        neighborhood_id=n.id,
        kind=kind,
        name=name,
        description=(data.description or "").strip(),
        image_url=(data.image_url or "").strip(),
        added_by=me.id,
        status="pending",
    )
    db.add(h)
    db.flush()
    return {"ok": True, "highlight": _highlight_out(h)}


@app.post("/highlights/images")
def upload_highlight_image(
    me: Annotated[User, Depends(get_current_user)],
    file: UploadFile = File(...),
):
    stored = _read_image_upload(file)
    stored_path, _ = _store_image(raw=stored, name=f"highlight_{me.id}_{upload_suffix()}", kind="highlights")
    return {"url": _public_image_url(stored_path)}


# -----------------------
# Feedback
# -----------------------
@app.post("/feedback")
def submit_feedback(data: FeedbackIn, request: Request):
    limiter.check("feedback", client_ip(request))
    email = (data.email or "").strip()
    if not data.name.strip() or "@" not in email:
        raise HTTPException(status_code=400, detail="Name and a valid email are required")
    if not data.subject.strip() or not data.message.strip():
        raise HTTPException(status_code=400, detail="Subject and message are required")
    try:
        send_feedback_email(
            name=data.name.strip(),
            email=email,
            category=(data.category or "general").strip(),
            rating=int(data.rating),
            subject=data.subject.strip(),
            message=data.message.strip(),
            allow_contact=bool(data.allow_contact),
        )
    except EmailSendError as e:
        logger.exception("Feedback email failed from=%s", email)
        raise HTTPException(status_code=500, detail=str(e) or "Failed to send feedback")
    return {"success": True, "message": "Feedback email sent successfully"}


# -----------------------
# Admin moderation
# -----------------------
@app.get("/admin/listings")
def admin_list_listings(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
):
    _require_admin(me)
    stmt = select(Listing).options(selectinload(Listing.images), selectinload(Listing.landlord)).order_by(Listing.created_at.desc())
    st = (status or "").strip().lower()
    if st:
        if st not in LISTING_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid status value")
        stmt = stmt.where(Listing.status == st)
    rows = db.execute(stmt.limit(int(limit))).scalars().all()
    return {"items": [_listing_out(l, include_internal=True) for l in rows]}


@app.post("/admin/listings/{listing_id}/approve")
def admin_approve_listing(
    listing_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    data: ModerateIn | None = None,
):
    _require_admin(me)
    l = db.get(Listing, _parse_listing_id(listing_id))
    if not l:
        raise HTTPException(status_code=404, detail="Listing not found")
    l.status = "published"
    l.moderation_reason = ""
    l.updated_at = _now()
    db.add(l)
    _log_moderation(db, actor_user_id=me.id, entity_type="listing", entity_id=l.id, action="approve", reason=(data.reason if data else "") or "")
    _notify(db, user_id=l.landlord_id, kind="listing", title="Listing approved", body=f"{l.title} was approved.", link=f"/listings/{l.id}")
    return {"ok": True}


@app.post("/admin/listings/{listing_id}/reject")
def admin_reject_listing(
    listing_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    data: ModerateIn | None = None,
):
    _require_admin(me)
    l = db.get(Listing, _parse_listing_id(listing_id))
    if not l:
        raise HTTPException(status_code=404, detail="Listing not found")
    l.status = "archived"
    l.moderation_reason = (data.reason if data else "") or ""
    l.updated_at = _now()
    db.add(l)
    _log_moderation(db, actor_user_id=me.id, entity_type="listing", entity_id=l.id, action="reject", reason=l.moderation_reason)
    _notify(
        db,
        user_id=l.landlord_id,
        kind="listing",
        title="Listing rejected",
        body=l.moderation_reason or f"{l.title} was not approved.",
        link=f"/listings/{l.id}",
    )
    return {"ok": True}


@app.get("/admin/highlights/pending")
def admin_pending_highlights(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    _require_admin(me)
    rows = (
        db.execute(
            select(NeighborhoodHighlight)
            .where(NeighborhoodHighlight.status == "pending")
            .order_by(NeighborhoodHighlight.created_at.asc())
        )
        .scalars()
        .all()
    )
    return {"items": [_highlight_out(h) for h in rows]}


def _moderate_highlight(db: Session, *, highlight_id: str, me: User, status: str, reason: str) -> dict[str, Any]:
    _require_admin(me)
    h = db.get(NeighborhoodHighlight, highlight_id)
    if not h:
        raise HTTPException(status_code=404, detail="Highlight not found")
    h.status = status
    db.add(h)
    _log_moderation(
        db,
        actor_user_id=me.id,
        entity_type="highlight",
        entity_id=h.id,
        action="approve" if status == "approved" else "reject",
        reason=reason,
    )
    return {"ok": True, "highlight": _highlight_out(h)}


@app.post("/admin/highlights/{highlight_id}/approve")
def admin_approve_highlight(
    highlight_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    data: ModerateIn | None = None,
):
    return _moderate_highlight(db, highlight_id=highlight_id, me=me, status="approved", reason=(data.reason if data else "") or "")


@app.post("/admin/highlights/{highlight_id}/reject")
def admin_reject_highlight(
    highlight_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    data: ModerateIn | None = None,
):
    return _moderate_highlight(db, highlight_id=highlight_id, me=me, status="rejected", reason=(data.reason if data else "") or "")


@app.get("/admin/applications")
def admin_list_applications(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    status: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
):
    _require_admin(me)
    stmt = select(Application).options(selectinload(Application.listing)).order_by(Application.created_at.desc())
    st = (status or "").strip().lower()
    if st:
        stmt = stmt.where(Application.status == st)
    rows = db.execute(stmt.limit(int(limit))).scalars().all()
    return {"items": [_application_out(a) for a in rows]}


@app.get("/admin/users")
def admin_list_users(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    q: str | None = Query(default=None),
    role: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
):
    _require_admin(me)
    stmt = select(User).order_by(User.created_at.desc())
    qq = (q or "").strip().lower()
    if qq:
        stmt = stmt.where(
            (func.lower(User.email).contains(qq))
            | (func.lower(User.display_name).contains(qq))
            | (func.lower(User.phone).contains(qq))
        )
    rr = (role or "").strip().lower()
    if rr:
        if rr not in ROLES:
            raise HTTPException(status_code=400, detail="Invalid role")
        stmt = stmt.where(User.role == rr)
    users = db.execute(stmt.limit(int(limit))).scalars().all()
    ids = [u.id for u in users]

    counts: dict[str, int] = {}
    if ids:
        rows = db.execute(
            select(Listing.landlord_id, func.count(Listing.id)).where(Listing.landlord_id.in_(ids)).group_by(Listing.landlord_id)
        ).all()
        counts = {str(owner_id): int(cnt or 0) for owner_id, cnt in rows}

    items = []
    for u in users:
        out = _user_out(u)
        out["total_listings"] = counts.get(u.id, 0)
        items.append(out)
    return {"items": items}


@app.delete("/admin/users/{user_id}")
def admin_delete_user(
    user_id: str,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    data: ModerateIn | None = None,
):
    _require_admin(me)
    u = db.get(User, user_id)
    if not u:
        raise HTTPException(status_code=404, detail="User not found")
    if _is_admin(u):
        raise HTTPException(status_code=403, detail="Admin account cannot be deleted")
    deleted_id = u.id
    _delete_user_rows(db, u)
    _log_moderation(db, actor_user_id=me.id, entity_type="user", entity_id=deleted_id, action="delete", reason=(data.reason if data else "") or "")
    hub.disconnect(deleted_id)
    return {"ok": True}


@app.get("/admin/logs")
def admin_logs(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    entity_type: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
):
    _require_admin(me)
    stmt = select(ModerationLog).order_by(ModerationLog.id.desc())
    et = (entity_type or "").strip().lower()
    if et:
        stmt = stmt.where(ModerationLog.entity_type == et)
    rows = db.execute(stmt.limit(int(limit))).scalars().all()
    return {
        "items": [
            {
                "id": r.id,
                "actor_user_id": r.actor_user_id,
                "entity_type": r.entity_type,
                "entity_id": r.entity_id,
                "action": r.action,
                "reason": r.reason,
                "created_at": _iso(r.created_at),
            }
            for r in rows
        ]
    }


@app.get("/admin/revenue")
def admin_revenue(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    """
    Totals over paid subscriptions (anything that got past `pending`).
    """
    _require_admin(me)
    paid = ListingSubscription.status.in_(("active", "expired", "cancelled"))
    total = db.execute(select(func.coalesce(func.sum(ListingSubscription.amount_paid), 0)).where(paid)).scalar()
    by_plan_rows = db.execute(
        select(ListingSubscription.plan_type, func.count(ListingSubscription.id), func.coalesce(func.sum(ListingSubscription.amount_paid), 0))
        .where(paid)
        .group_by(ListingSubscription.plan_type)
    ).all()
    active = db.execute(
        select(func.count(ListingSubscription.id)).where(
            (ListingSubscription.status == "active") & (ListingSubscription.end_date >= _today())
        )
    ).scalar()
    return {
        "total": int(total or 0),
        "active_subscriptions": int(active or 0),
        "by_plan": {str(p): {"count": int(c or 0), "amount": int(a or 0)} for p, c, a in by_plan_rows},
    }
