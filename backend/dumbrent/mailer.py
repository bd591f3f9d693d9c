from __future__ import annotations

import datetime as dt
import html
import json
import logging
import smtplib
import ssl
from email.message import EmailMessage

import requests

from dumbrent.config import (
    auth_code_exp_minutes,
    brevo_api_key,
    brevo_from_email,
    brevo_sender_name,
    email_backend,
    feedback_inbox,
    is_local_dev,
    site_url,
    smtp_from_email,
    smtp_host,
    smtp_pass,
    smtp_port,
    smtp_user,
)

logger = logging.getLogger(__name__)


class EmailSendError(RuntimeError):
    pass


def _is_delivery_configuration_error(err: EmailSendError) -> bool:
    """
    Returns True when the email send failed because the delivery provider
    isn't configured (missing credentials/host), not because the recipient
    is invalid or the provider actively rejected the request.
    """
    msg = (str(err) or "").lower()
    needles = (
        "not configured",
        "provider not configured",
        "brevo_api_key",
        "brevo_from",
        "smtp_host",
        "smtp_from",
    )
    return any(n in msg for n in needles)


def _send_via_brevo(*, to_email: str, subject: str, text: str, html_body: str | None, reply_to: str | None) -> None:
    """
    Uses Brevo Transactional Email API:
    https://developers.brevo.com/docs/send-a-transactional-email
    """
    key = brevo_api_key()
    if not key:
        raise EmailSendError("BREVO_API_KEY not configured")
    sender_email = (brevo_from_email() or smtp_from_email()).strip()
    if not sender_email:
        raise EmailSendError("BREVO_FROM/SMTP_FROM not configured")

    payload: dict = {
        "sender": {"email": sender_email, "name": brevo_sender_name()},
        "to": [{"email": to_email}],
        "subject": subject,
        "textContent": text,
    }
    if html_body:
        payload["htmlContent"] = html_body
    if reply_to:
        payload["replyTo"] = {"email": reply_to}
    try:
        resp = requests.post(
            "https://api.brevo.com/v3/smtp/email",
            headers={"api-key": key, "Content-Type": "application/json", "Accept": "application/json"},
            data=json.dumps(payload),
            timeout=15,
        )
    except requests.RequestException as e:
        raise EmailSendError(f"Brevo request failed: {e}") from e
    if not (200 <= int(resp.status_code) < 300):
        raise EmailSendError(f"Brevo send failed: HTTP {resp.status_code}: {resp.text[:500]}")


def _send_via_smtp(*, to_email: str, subject: str, text: str, html_body: str | None, reply_to: str | None) -> None:
    host = smtp_host()
    port = int(smtp_port())
    user = smtp_user()
    password = smtp_pass()
    sender = smtp_from_email()
    if not host:
        raise EmailSendError("SMTP_HOST not configured")
    if not sender:
        raise EmailSendError("SMTP_FROM (or BREVO_FROM/SMTP_USER) not configured")

    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to_email
    msg["Subject"] = subject
    if reply_to:
        msg["Reply-To"] = reply_to
    msg.set_content(text)
    if html_body:
        msg.add_alternative(html_body, subtype="html")

    timeout = 15
    try:
        if port == 465:
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(host, port, timeout=timeout, context=context) as s:
                if user and password:
                    s.login(user, password)
                s.send_message(msg)
            return

        with smtplib.SMTP(host, port, timeout=timeout) as s:
            s.ehlo()
            # STARTTLS when offered (typical on 587).
            if s.has_extn("starttls"):
                s.starttls(context=ssl.create_default_context())
                s.ehlo()
            if user and password:
                s.login(user, password)
            s.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        raise EmailSendError(f"SMTP send failed: {e}") from e


def send_email(*, to_email: str, subject: str, text: str, html_body: str | None = None, reply_to: str | None = None) -> None:
    """
    Prefer Brevo if configured; otherwise fall back to SMTP.
    """
    to_email = (to_email or "").strip()
    if not to_email or "@" not in to_email:
        raise EmailSendError("Invalid recipient email")

    kwargs = {"to_email": to_email, "subject": subject, "text": text, "html_body": html_body, "reply_to": reply_to}

    backend = email_backend()
    if backend in ("console", "log"):
        logger.warning(
            "EMAIL_BACKEND=console: to=%s subject=%s\n%s",
            to_email,
            subject,
            text,
        )
        return

    if backend == "brevo":
        _send_via_brevo(**kwargs)
        return

    if backend == "smtp":
        _send_via_smtp(**kwargs)
        return

    # "auto" (default): prefer Brevo when API key is present.
    if brevo_api_key():
        _send_via_brevo(**kwargs)
        return

    if smtp_host():
        _send_via_smtp(**kwargs)
        return

    # No external email service configured.
    if is_local_dev():
        logger.warning(
            "No email provider configured; falling back to console output in local dev. "
            "Set EMAIL_BACKEND=smtp/brevo (or configure SMTP_/BREVO_ env vars) for real delivery.\n"
            "to=%s subject=%s\n%s",
            to_email,
            subject,
            text,
        )
        return

    raise EmailSendError(
        "Email provider not configured. Set BREVO_API_KEY+BREVO_FROM (Brevo) or SMTP_HOST+SMTP_FROM (SMTP)."
    )


def _wrap_html(title: str, inner: str) -> str:
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(title)} - Dumb Rent NYC</title></head>"
        "<body style=\"font-family: Arial, sans-serif; line-height: 1.6; color: #333;\">"
        "<div style=\"max-width: 600px; margin: 0 auto;\">"
        "<div style=\"background: #4f46e5; color: white; padding: 20px; text-align: center;\">"
        f"<h1 style=\"margin: 0;\">{html.escape(title)}</h1><p style=\"margin: 8px 0 0 0;\">Dumb Rent NYC</p></div>"
        f"<div style=\"padding: 24px;\">{inner}</div>"
        "<div style=\"background: #e5e7eb; padding: 12px; text-align: center; font-size: 12px; color: #6b7280;\">"
        "Dumb Rent NYC - No-fee apartment rentals in New York City</div>"
        "</div></body></html>"
    )


def send_verification_email(*, to_email: str, code: str, display_name: str = "") -> str:
    """
    Email the address confirmation code (and a link carrying it).
    Returns the channel used: "email" or "console".
    """
    mins = auth_code_exp_minutes()
    link = f"{site_url()}/auth/callback?email={requests.utils.quote(to_email)}&code={code}"
    greeting = f"Hi {display_name}," if display_name else "Hi,"
    subject = "Verify your email - Dumb Rent NYC"
    text = (
        f"{greeting}\n\n"
        "Welcome to Dumb Rent NYC! Please confirm your email address to finish creating your account.\n\n"
        f"Verification code: {code}\n"
        f"Or open: {link}\n\n"
        f"This code expires in {mins} minutes.\n\n"
        "If you did not create an account, you can ignore this email."
    )
    html_body = _wrap_html(
        "Verify Your Email",
        f"<p>{html.escape(greeting)}</p>"
        "<p>Welcome to Dumb Rent NYC! Please confirm your email address to finish creating your account.</p>"
        f"<p style=\"font-size: 24px; font-weight: bold; letter-spacing: 4px;\">{html.escape(code)}</p>"
        f"<p><a href=\"{html.escape(link)}\">Verify Email Address</a></p>"
        f"<p style=\"color: #666; font-size: 14px;\">This code expires in {mins} minutes.</p>",
    )
    return _send_with_console_fallback(to_email=to_email, subject=subject, text=text, html_body=html_body, label="verify_email")


def send_password_reset_email(*, to_email: str, code: str) -> str:
    mins = auth_code_exp_minutes()
    subject = "Password reset - Dumb Rent NYC"
    text = (
        f"Your password reset code is: {code}\n\n"
        f"This code expires in {mins} minutes.\n\n"
        "If you did not request this, you can ignore this email."
    )
    return _send_with_console_fallback(to_email=to_email, subject=subject, text=text, html_body=None, label="reset_password")


def _send_with_console_fallback(*, to_email: str, subject: str, text: str, html_body: str | None, label: str) -> str:
    try:
        send_email(to_email=to_email, subject=subject, text=text, html_body=html_body)
        return "email"
    except EmailSendError as e:
        # Unconfigured delivery: keep auth flows usable by logging the code.
        if _is_delivery_configuration_error(e):
            logger.warning(
                "Auth code delivery fallback (email not configured): purpose=%s to=%s error=%s\n%s",
                label,
                to_email,
                str(e),
                text,
            )
            return "console"
        raise


def send_application_confirmation_email(
    *,
    tenant_name: str,
    tenant_email: str,
    listing_title: str,
    listing_address: str,
    move_in_date: dt.date,
    message: str | None,
    listing_id: str,
) -> None:
    listing_url = f"{site_url()}/listings/{listing_id}"
    move_in = f"{move_in_date:%B} {move_in_date.day}, {move_in_date.year}"
    subject = f"Application Confirmation - {listing_title}"
    lines = [
        f"Hi {tenant_name},",
        "",
        "Your application has been submitted successfully. The landlord has been notified and will review it.",
        "",
        f"Property: {listing_title}",
        f"Address: {listing_address}",
        f"Desired move-in date: {move_in}",
    ]
    if message:
        lines += ["", "Your message:", message]
    lines += [
        "",
        "What happens next?",
        "- The landlord will review your application",
        "- You'll be contacted directly if they're interested",
        "- You can check replies in your messages",
        "",
        f"View the listing: {listing_url}",
    ]
    rows = (
        f"<p><b>Property:</b> {html.escape(listing_title)}</p>"
        f"<p><b>Address:</b> {html.escape(listing_address)}</p>"
        f"<p><b>Desired move-in date:</b> {html.escape(move_in)}</p>"
    )
    if message:
        rows += f"<p><b>Your message:</b><br>{html.escape(message).replace(chr(10), '<br>')}</p>"
    html_body = _wrap_html(
        "Application Submitted!",
        f"<p>Hi {html.escape(tenant_name)},</p>"
        "<p>Your application has been submitted successfully. The landlord has been notified and will review it.</p>"
        f"{rows}<p><a href=\"{html.escape(listing_url)}\">View Listing</a></p>",
    )
    send_email(to_email=tenant_email, subject=subject, text="\n".join(lines), html_body=html_body)


def send_feedback_email(
    *,
    name: str,
    email: str,
    category: str,
    rating: int,
    subject: str,
    message: str,
    allow_contact: bool,
) -> None:
    rating = max(1, min(5, int(rating)))
    stars = "★" * rating + "☆" * (5 - rating)
    contact = "User allows follow-up contact" if allow_contact else "User prefers no follow-up contact"
    submitted = dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    text = (
        f"From: {name} ({email})\n"
        f"Category: {category}\n"
        f"Rating: {stars} ({rating}/5)\n"
        f"Subject: {subject}\n\n"
        f"{message}\n\n"
        f"Contact permission: {contact}\n"
        f"Submitted: {submitted}\n"
    )
    html_body = _wrap_html(
        "New Feedback Submission",
        f"<p><b>From:</b> {html.escape(name)} ({html.escape(email)})</p>"
        f"<p><b>Category:</b> {html.escape(category)}</p>"
        f"<p><b>Rating:</b> <span style=\"color: #f59e0b;\">{stars}</span> ({rating}/5)</p>"
        f"<p><b>Subject:</b> {html.escape(subject)}</p>"
        f"<div style=\"background: white; padding: 15px; border-left: 4px solid #4f46e5;\">"
        f"{html.escape(message).replace(chr(10), '<br>')}</div>"
        f"<p><b>Contact Permission:</b> {contact}</p>"
        f"<p><b>Submitted:</b> {submitted}</p>",
    )
    send_email(
        to_email=feedback_inbox(),
        subject=f"[Feedback] {category}: {subject}",
        text=text,
        html_body=html_body,
        reply_to=email,
    )
