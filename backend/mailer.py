"""Transactional email through Resend."""
import logging
import os
from typing import Dict, Optional

import resend

logger = logging.getLogger(__name__)

DEFAULT_SENDER = "Storefront <no-reply@storefront.local>"


def send_email_via_resend(payload: Dict[str, object], api_key: str):
    configured_api_key = (api_key or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def send_mail(
    to: Optional[str],
    subject: Optional[str],
    body: Optional[str],
    html: bool = False,
    sender: Optional[str] = None,
    api_key: Optional[str] = None,
) -> bool:
    """Send one message and report whether the provider accepted it.

    Failures are logged and reported as ``False``; callers are never
    interrupted by mail problems.
    """
    if not to or not subject or not body:
        logger.error("Mail not sent: recipient, subject and body are required.")
        return False

    payload: Dict[str, object] = {
        "from": sender or os.getenv("MAIL_FROM") or DEFAULT_SENDER,
        "to": [to],
        "subject": subject,
    }
    if html:
        payload["html"] = body
    else:
        payload["text"] = body

    sent, error_details = send_email_via_resend(
        payload, api_key if api_key is not None else os.getenv("RESEND_API_KEY", "")
    )
    if not sent:
        logger.error("Mail to %s failed: %s", to, error_details or "Unknown Resend error")
    return sent
