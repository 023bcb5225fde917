"""
Delivery backends for confirmed side-effect actions.

Email goes through Django's configured email backend. SMS goes through the
Vonage Messages API.
"""
import logging
import re
from typing import Optional

import httpx
from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
VONAGE_MESSAGES_URL = 'https://api.nexmo.com/v1/messages'
SMS_TIMEOUT = 15.0
MAX_SUBJECT_LENGTH = 200
MAX_BODY_LENGTH = 10000


class ActionError(Exception):
    """Raised when an action cannot be performed. status is the HTTP code to return."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


def is_valid_email(address: str) -> bool:
    return bool(EMAIL_PATTERN.match(address))


def normalize_phone(raw: str) -> Optional[str]:
    """
    Normalize a phone number to E.164.

    Ten digits are read as a US number; anything else needs a country code.
    Returns None when the input cannot be a phone number.
    """
    cleaned = re.sub(r'[^\d+]', '', raw)
    if cleaned.startswith('+'):
        return cleaned if len(cleaned) >= 8 and cleaned[1:].isdigit() else None
    if re.fullmatch(r'\d{10}', cleaned):
        return f'+1{cleaned}'
    if re.fullmatch(r'1\d{10}', cleaned):
        return f'+{cleaned}'
    if len(cleaned) >= 7:
        return f'+{cleaned}'
    return None


def send_email_message(to: str, subject: str, body: str) -> int:
    """
    Send a plain-text email on the tenant's behalf.

    Raises:
        ActionError: If the email backend fails
    """
    try:
        return send_mail(
            subject=subject[:MAX_SUBJECT_LENGTH],
            message=body[:MAX_BODY_LENGTH],
            from_email=getattr(settings, 'DEFAULT_FROM_EMAIL', None),
            recipient_list=[to],
            fail_silently=False,
        )
    except Exception as e:
        logger.error(f"Email delivery failed: {type(e).__name__}: {e}")
        raise ActionError('Failed to send email', status=502)


def sms_configured() -> bool:
    return bool(getattr(settings, 'VONAGE_API_KEY', '') and getattr(settings, 'VONAGE_API_SECRET', ''))


def send_sms_message(to: str, body: str, client: Optional[httpx.Client] = None) -> str:
    """
    Send an SMS through Vonage.

    Args:
        to: E.164 number
        body: Message text
        client: Optional httpx client (tests inject a mock transport)

    Returns:
        The Vonage message UUID

    Raises:
        ActionError: 503 when not configured, 502 on delivery failure
    """
    if not sms_configured():
        raise ActionError('SMS service not configured. Contact your administrator.', status=503)

    payload = {
        'message_type': 'text',
        'channel': 'sms',
        'text': body[:MAX_BODY_LENGTH],
        'to': to.lstrip('+'),
        'from': getattr(settings, 'VONAGE_FROM_NUMBER', ''),
    }
    auth = (settings.VONAGE_API_KEY, settings.VONAGE_API_SECRET)

    owns_client = client is None
    if owns_client:
        client = httpx.Client(timeout=SMS_TIMEOUT)
    try:
        response = client.post(VONAGE_MESSAGES_URL, json=payload, auth=auth)
    except httpx.HTTPError as e:
        logger.error(f"Vonage request failed: {type(e).__name__}")
        raise ActionError('Failed to send SMS', status=502)
    finally:
        if owns_client:
            client.close()

    if not response.is_success:
        logger.error(f"Vonage error {response.status_code}: {response.text[:200]}")
        raise ActionError(f'SMS delivery failed: {response.status_code}', status=502)

    try:
        return response.json().get('message_uuid', '')
    except ValueError:
        return ''
