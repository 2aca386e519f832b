"""
Email service: sends email via SMTP or logs to console.

Uses EMAIL_BACKEND config to choose transport:
  - "log" (default): prints email to console/log
  - "smtp": sends via SMTP using MAIL_* settings

Mail is sent inline; callers treat a False return as "not sent".
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app, render_template_string

logger = logging.getLogger(__name__)


APPROVAL_TEMPLATE = """
<h2>Welcome to {{ organization }}!</h2>
<p>Hi {{ name or "there" }},</p>
<p>Your account has been approved. You can now sign in and access lessons and resources.</p>
<p><a href="{{ base_url }}">Sign in to the portal</a></p>
"""

REJECTION_TEMPLATE = """
<h2>Your {{ organization }} account request</h2>
<p>Hi {{ name or "there" }},</p>
<p>Unfortunately we were unable to approve your account at this time.
Please contact us if you believe this is a mistake.</p>
"""

SIGNUP_NOTICE_TEMPLATE = """
<h2>New user registration</h2>
<p><strong>Name:</strong> {{ name or "Unknown" }}</p>
<p><strong>Email:</strong> {{ email }}</p>
<p><strong>Signed up:</strong> {{ signup_date }}</p>
<p><a href="{{ base_url }}/admin">Review pending users</a></p>
"""

INVITATION_TEMPLATE = """
<h2>Welcome to {{ organization }} Learning Portal</h2>
<p>You've been invited to access your child's learning progress.</p>
<p><strong>Student:</strong> {{ student.firstName }} {{ student.lastName }}</p>
<p><strong>Year Group:</strong> {{ student.yearGroup }}</p>
<p>Click the link below to create your parent account:</p>
<a href="{{ link }}">Create Parent Account</a>
<p><small>This invitation expires in {{ expiry_days }} days.</small></p>
"""

PAYMENT_FAILED_TEMPLATE = """
<h2>Payment failed</h2>
<p>We couldn't take payment for your subscription{% if amount %} ({{ amount }}){% endif %}.</p>
<p>Please update your payment method to keep access to your lessons.</p>
<p><a href="{{ base_url }}/account">Update payment method</a></p>
"""

UPCOMING_INVOICE_TEMPLATE = """
<h2>Upcoming payment</h2>
<p>Your next subscription payment{% if amount %} of {{ amount }}{% endif %} will be taken
{% if due %}on {{ due }}{% else %}soon{% endif %}.</p>
"""


def format_amount(amount_minor: Any, currency: Any) -> str:
    if amount_minor in (None, ""):
        return ""
    try:
        value = int(amount_minor) / 100
    except (TypeError, ValueError):
        return ""
    return f"{value:.2f} {str(currency or '').upper()}".strip()


class EmailService:
    @staticmethod
    def send(to: str, subject: str, body_html: str) -> bool:
        """Send an email inline. Returns True on success."""
        if not to:
            logger.warning("Email '%s' dropped: no recipient", subject)
            return False

        backend = current_app.config.get("EMAIL_BACKEND", "log")

        if backend == "log":
            logger.info(
                "EMAIL [to=%s] subject=%s\n%s",
                to, subject, body_html,
            )
            return True

        config = {
            "mail_from": current_app.config.get("MAIL_FROM", "noreply@example.com"),
            "mail_server": current_app.config.get("MAIL_SERVER", "localhost"),
            "mail_port": current_app.config.get("MAIL_PORT", 587),
            "mail_username": current_app.config.get("MAIL_USERNAME", ""),
            "mail_password": current_app.config.get("MAIL_PASSWORD", ""),
        }
        return EmailService._do_send(to, subject, body_html, config)

    @staticmethod
    def _do_send(to: str, subject: str, body_html: str, config: dict) -> bool:
        """Actual SMTP send: no Flask context required."""
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = config.get("mail_from", "noreply@example.com")
            msg["To"] = to
            msg.attach(MIMEText(body_html, "html"))

            with smtplib.SMTP(config.get("mail_server", "localhost"), config.get("mail_port", 587)) as smtp:
                smtp.starttls()
                username = config.get("mail_username", "")
                password = config.get("mail_password", "")
                if username and password:
                    smtp.login(username, password)
                smtp.send_message(msg)
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error("SMTP send failed: %s", e)
            return False


def _org() -> str:
    return current_app.config.get("DEFAULT_ORGANIZATION", "BrightStars")


def send_approval_email(user: dict[str, Any]) -> bool:
    html = render_template_string(
        APPROVAL_TEMPLATE, name=user.get("name"), organization=_org(),
        base_url=current_app.config.get("BASE_URL", ""),
    )
    return EmailService.send(user["email"], "Your account has been approved", html)


def send_rejection_email(user: dict[str, Any]) -> bool:
    html = render_template_string(REJECTION_TEMPLATE, name=user.get("name"), organization=_org())
    return EmailService.send(user["email"], "Your account request", html)


def send_signup_notice(user: dict[str, Any]) -> bool:
    admin = current_app.config.get("ADMIN_NOTIFY_EMAIL", "")
    if not admin:
        logger.info("ADMIN_NOTIFY_EMAIL not set; skipping signup notice for %s", user.get("email"))
        return False
    html = render_template_string(
        SIGNUP_NOTICE_TEMPLATE, name=user.get("name"), email=user.get("email"),
        signup_date=user.get("signupDate"), base_url=current_app.config.get("BASE_URL", ""),
    )
    return EmailService.send(admin, f"New user registration: {user.get('email')}", html)


def send_invitation_email(invitation: dict[str, Any]) -> bool:
    student = invitation.get("studentInfo") or {}
    link = f"{current_app.config.get('BASE_URL', '')}/register?token={invitation['token']}"
    html = render_template_string(
        INVITATION_TEMPLATE, organization=_org(), student=student, link=link,
        expiry_days=current_app.config.get("INVITATION_EXPIRY_DAYS", 7),
    )
    subject = f"Invitation to join {student.get('firstName') or 'your child'}'s learning portal"
    return EmailService.send(invitation.get("parentEmail", ""), subject, html)


def send_payment_failed_email(email: str, invoice: dict[str, Any]) -> bool:
    html = render_template_string(
        PAYMENT_FAILED_TEMPLATE,
        amount=format_amount(invoice.get("amount_due"), invoice.get("currency")),
        base_url=current_app.config.get("BASE_URL", ""),
    )
    return EmailService.send(email, "Your subscription payment failed", html)


def send_upcoming_invoice_email(email: str, invoice: dict[str, Any], due: str = "") -> bool:
    html = render_template_string(
        UPCOMING_INVOICE_TEMPLATE,
        amount=format_amount(invoice.get("amount_due"), invoice.get("currency")),
        due=due,
    )
    return EmailService.send(email, "Upcoming subscription payment", html)
