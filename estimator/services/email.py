# estimator/services/email.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from estimator.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

POSTMARK_SEND_URL = "https://api.postmarkapp.com/email"


class EmailError(RuntimeError):
    pass


def send_postmark_email(
    *,
    to: str,
    subject: str,
    html_body: str,
    text_body: Optional[str] = None,
    message_stream: str = "outbound",
    metadata: Optional[Dict[str, Any]] = None,
    settings: Optional[Settings] = None,
) -> str:
    """
    Returns Postmark MessageID on success.
    Raises EmailError on failure.
    """
    settings = settings or get_settings()
    if not settings.postmark_server_token:
        raise EmailError("postmark_not_configured: POSTMARK_SERVER_TOKEN missing")
    if not settings.postmark_from:
        raise EmailError("postmark_not_configured: POSTMARK_FROM missing")

    payload: Dict[str, Any] = {
        "From": settings.postmark_from,
        "To": to,
        "Subject": subject,
        "HtmlBody": html_body,
        "MessageStream": message_stream,
    }
    if settings.postmark_reply_to:
        payload["ReplyTo"] = settings.postmark_reply_to
    if text_body:
        payload["TextBody"] = text_body
    if metadata:
        payload["Metadata"] = metadata

    headers = {
        "Accept": "application/json",
        "Content-Type": "application/json",
        "X-Postmark-Server-Token": settings.postmark_server_token,
    }

    try:
        r = requests.post(
            POSTMARK_SEND_URL,
            headers=headers,
            data=json.dumps(payload),
            timeout=15,
        )
    except requests.RequestException as e:
        raise EmailError(f"postmark_network_error:{type(e).__name__}:{e}") from e

    if r.status_code >= 300:
        try:
            data = r.json()
        except ValueError:
            data = {"raw": r.text}
        raise EmailError(f"postmark_send_failed:{r.status_code}:{data}")

    data = r.json()
    message_id = str(data.get("MessageID") or "")
    if not message_id:
        raise EmailError(f"postmark_send_failed:no_message_id:{data}")

    return message_id


@dataclass(frozen=True)
class QuoteReadyMessage:
    to: str
    customer_name: str
    business_name: str
    service_name: str
    total_display: str
    quote_url: str


class QuoteNotifier:
    """Tells the customer their quote is ready. Callers treat EmailError as non-fatal."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def quote_url(self, quote_token: str) -> str:
        return f"{self.settings.public_quote_base_url.rstrip('/')}/q/{quote_token}"

    def send_quote_ready(self, message: QuoteReadyMessage, *, quote_id: str) -> str:
        subject = f"Your {message.service_name} quote from {message.business_name}"
        text_body = (
            f"Hi {message.customer_name},\n\n"
            f"Your estimate for {message.service_name} is ready: {message.total_display}.\n"
            f"View it here: {message.quote_url}\n"
        )
        html_body = (
            f"<p>Hi {message.customer_name},</p>"
            f"<p>Your estimate for {message.service_name} is ready: "
            f"<strong>{message.total_display}</strong>.</p>"
            f'<p><a href="{message.quote_url}">View your quote</a></p>'
        )
        message_id = send_postmark_email(
            to=message.to,
            subject=subject,
            html_body=html_body,
            text_body=text_body,
            metadata={"quote_id": quote_id},
            settings=self.settings,
        )
        logger.info("Quote ready email sent for quote %s (message %s)", quote_id, message_id)
        return message_id
