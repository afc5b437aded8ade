"""SendGrid email service for deadline warnings, penalties and suspensions.

Uses asyncio.to_thread to wrap the synchronous SendGrid client. Every
public function returns False instead of raising.
"""

import asyncio
import html
import logging
from datetime import datetime

import sendgrid
from sendgrid.helpers.mail import Email, HtmlContent, Mail, To

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration, read from Pydantic settings (which loads .env)
# ---------------------------------------------------------------------------


def _get_config():
    """Get email config from app settings (lazy to avoid import-time issues)."""
    from nexa_platform.app.config import get_settings
    s = get_settings()
    return s.sendgrid_api_key, s.mail_from


def _get_client() -> sendgrid.SendGridAPIClient:
    """Return a configured SendGrid API client."""
    api_key, _ = _get_config()
    return sendgrid.SendGridAPIClient(api_key=api_key)


def _fmt(value: datetime | None) -> str:
    return value.strftime("%d/%m/%Y %H:%M") if value else "-"


def _wrap_html(heading: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #1f2937;">
    <h2 style="color: #111827;">{html.escape(heading)}</h2>
    <p style="font-size: 15px; line-height: 1.5;">{body}</p>
    <p style="font-size: 12px; color: #6b7280;">Nexa Creators</p>
</body>
</html>
"""


def _send_mail(mail: Mail) -> bool:
    """Synchronous send via SendGrid. Returns True on success."""
    client = _get_client()
    response = client.send(mail)
    if response.status_code in (200, 201, 202):
        return True
    logger.error(
        "SendGrid returned status %s: %s",
        response.status_code,
        response.body,
    )
    return False


async def _deliver(to_email: str, subject: str, html_body: str) -> bool:
    api_key, mail_from = _get_config()
    if not api_key:
        logger.warning("SENDGRID_API_KEY not set, skipping email to %s", to_email)
        return False
    if not to_email:
        return False

    try:
        mail = Mail(
            from_email=Email(mail_from, "Nexa Creators"),
            to_emails=To(to_email),
            subject=subject,
            html_content=HtmlContent(html_body),
        )
        result = await asyncio.to_thread(_send_mail, mail)
        if result:
            logger.info("Email '%s' sent to %s", subject, to_email)
        return result
    except Exception:
        logger.exception("Failed to send email '%s' to %s", subject, to_email)
        return False


# ---------------------------------------------------------------------------
# Public async API
# ---------------------------------------------------------------------------


async def send_milestone_overdue(
    email: str,
    name: str,
    milestone_title: str,
    contract_title: str,
    justification_deadline: datetime,
) -> bool:
    """Tell a creator a milestone is overdue and when the justification window closes."""
    body = (
        f"Hi {html.escape(name)},<br><br>"
        f"The milestone <strong>{html.escape(milestone_title)}</strong> of "
        f"<strong>{html.escape(contract_title)}</strong> passed its deadline. "
        f"Please justify the delay before {_fmt(justification_deadline)}."
    )
    return await _deliver(email, f"Milestone overdue: {milestone_title}", _wrap_html("Milestone overdue", body))


async def send_penalty_applied(email: str, name: str, penalty_until: datetime, reason: str) -> bool:
    body = (
        f"Hi {html.escape(name)},<br><br>"
        f"{html.escape(reason)}. You will not receive new invitations until "
        f"{_fmt(penalty_until)}."
    )
    return await _deliver(email, "A penalty was applied to your account", _wrap_html("Penalty applied", body))


async def send_account_suspended(email: str, name: str, suspended_until: datetime, overdue_count: int) -> bool:
    body = (
        f"Hi {html.escape(name)},<br><br>"
        f"Your account is suspended until {_fmt(suspended_until)} because "
        f"{overdue_count} milestones are overdue."
    )
    return await _deliver(email, "Your account was suspended", _wrap_html("Account suspended", body))
