from __future__ import annotations

import os

from dotenv import load_dotenv


# Values from a local `.env` never override the process environment.
load_dotenv(override=False)


def _env_str(name: str, default: str = "") -> str:
    # Unset and empty both mean "use the default".
    return (os.environ.get(name) or default).strip()


def _env_int(name: str, default: int, *, lo: int | None = None, hi: int | None = None) -> int:
    raw = _env_str(name)
    try:
        v = int(raw or default)
    except ValueError:
        v = int(default)
    if lo is not None:
        v = max(v, lo)
    if hi is not None:
        v = min(v, hi)
    return v


def _env_flag(name: str, default: bool) -> bool:
    raw = _env_str(name).lower()
    if not raw:
        return default
    return raw not in {"0", "false", "no", "off"}


def database_url() -> str:
    # sqlite file when DATABASE_URL is unset (local dev).
    url = _env_str("DATABASE_URL", "sqlite:///./local.db")
    # Heroku-style `postgres://` is not accepted by SQLAlchemy 2.
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def jwt_secret() -> str:
    return os.environ.get("JWT_SECRET") or "dev-secret-change-me"


def jwt_exp_hours() -> int:
    return _env_int("JWT_EXP_HOURS", 24 * 7, lo=1, hi=24 * 90)


def is_local_dev() -> bool:
    """
    We treat the app as "local dev" when DATABASE_URL is not set, because
    `database_url()` falls back to sqlite in that case.
    """
    return not _env_str("DATABASE_URL")


def app_env() -> str:
    """
    Application environment marker:
    - local (default when running with sqlite fallback)
    - test
    - staging
    - prod
    """
    raw = _env_str("APP_ENV").lower()
    if raw:
        return raw
    return "local" if is_local_dev() else "prod"


def site_url() -> str:
    """
    Public URL of the web client. Used to build links in emails and the
    default checkout success/cancel URLs.
    """
    return _env_str("SITE_URL", "http://localhost:5173").rstrip("/")


def allowed_hosts() -> list[str]:
    """
    Comma-separated list for TrustedHost middleware.
    Example: ALLOWED_HOSTS=api.dumbrent.nyc,dumbrent.nyc
    """
    raw = _env_str("ALLOWED_HOSTS")
    if not raw:
        return ["*"]
    hosts = [h.strip() for h in raw.split(",") if h.strip()]
    return hosts or ["*"]


def cors_origins() -> list[str]:
    raw = _env_str("CORS_ORIGINS")
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


def enforce_secure_secrets() -> None:
    """
    Fail-fast in production if dangerous defaults are still in use.
    """
    if app_env() in {"prod", "production"}:
        if jwt_secret() == "dev-secret-change-me":
            raise RuntimeError("JWT_SECRET must be set in production (default dev secret detected)")


def require_email_verification() -> bool:
    """
    Block password logins until the email address is confirmed.
    Disable with REQUIRE_EMAIL_VERIFICATION=0 (local testing).
    """
    return _env_flag("REQUIRE_EMAIL_VERIFICATION", True)


def auth_code_exp_minutes() -> int:
    """
    Expiry of email verification / password reset codes, in minutes.
    """
    return _env_int("AUTH_CODE_EXP_MINUTES", 60, lo=5, hi=24 * 60)


def admin_email() -> str:
    return _env_str("ADMIN_EMAIL", "admin@dumbrent.local").lower()


def admin_password() -> str:
    return os.environ.get("ADMIN_PASSWORD") or "Admin@123"


def feedback_inbox() -> str:
    """
    Mailbox that receives feedback form submissions.
    """
    return _env_str("FEEDBACK_EMAIL", "feedback@dumbrent.nyc")


def catalog_path() -> str:
    default = os.path.abspath(os.path.join(os.path.dirname(__file__), "data", "nyc_catalog.json"))
    return _env_str("CATALOG_PATH", default)


def uploads_dir() -> str:
    return os.environ.get("UPLOADS_DIR") or os.path.join(os.path.dirname(__file__), "..", "uploads")


def max_upload_image_bytes() -> int:
    # Default: 15 MB (raw upload bytes).
    return _env_int("MAX_UPLOAD_IMAGE_BYTES", 15_000_000, lo=1)


def pending_submission_ttl_hours() -> int:
    return _env_int("PENDING_SUBMISSION_TTL_HOURS", 48, lo=1, hi=24 * 30)


# -----------------------
# Email (Brevo / SMTP)
# -----------------------
def email_backend() -> str:
    """
    Email backend selector:
    - "auto" (default): prefer Brevo if configured, else SMTP
    - "brevo": force Brevo (requires BREVO_API_KEY + sender)
    - "smtp": force SMTP (requires SMTP_HOST + sender)
    - "console": log email contents instead of sending (dev-only)
    """
    return _env_str("EMAIL_BACKEND", "auto").lower()


def brevo_api_key() -> str:
    return _env_str("BREVO_API_KEY")


def brevo_from_email() -> str:
    return _env_str("BREVO_FROM")


def brevo_sender_name() -> str:
    return _env_str("BREVO_SENDER_NAME", "Dumb Rent NYC")


def smtp_host() -> str:
    return _env_str("SMTP_HOST")


def smtp_port() -> int:
    return _env_int("SMTP_PORT", 587)


def smtp_user() -> str:
    return _env_str("SMTP_USER")


def smtp_pass() -> str:
    return _env_str("SMTP_PASS")


def smtp_from_email() -> str:
    # Allow either SMTP_FROM or BREVO_FROM as the sender address.
    return (_env_str("SMTP_FROM") or brevo_from_email() or smtp_user()).strip()


# -----------------------
# Stripe
# -----------------------
def stripe_secret_key() -> str:
    return _env_str("STRIPE_SECRET_KEY")


def stripe_webhook_secret() -> str:
    return _env_str("STRIPE_WEBHOOK_SECRET")


def stripe_price_id(plan_type: str) -> str:
    """
    Recurring price ids, one per plan.
    STRIPE_PRICE_MONTHLY / STRIPE_PRICE_QUARTERLY.
    """
    return _env_str(f"STRIPE_PRICE_{(plan_type or '').strip().upper()}")


def stripe_webhook_tolerance_seconds() -> int:
    return _env_int("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300, lo=1)


# -----------------------
# OpenAI (listing copy generation)
# -----------------------
def openai_api_key() -> str:
    return _env_str("OPENAI_API_KEY")


def openai_model() -> str:
    return _env_str("OPENAI_MODEL", "gpt-3.5-turbo")


# -----------------------
# Google Maps (autocomplete / geocoding)
# -----------------------
def google_maps_api_key() -> str:
    return _env_str("GOOGLE_MAPS_API_KEY")
