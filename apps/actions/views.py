"""
Side-effect action endpoints.

Called by the chat client only after the user confirmed the action. Each
accepts the confirmed payload verbatim and answers {success, error?}.
"""
import json
import logging

from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from apps.authn.audit import AuditEvent, audit_action
from apps.authn.middleware import auth_required
from apps.authn.ratelimit import check_action_rate_limit, rate_limited

from .senders import (
    ActionError,
    is_valid_email,
    normalize_phone,
    send_email_message,
    send_sms_message,
)

logger = logging.getLogger(__name__)


def _failure(message: str, status: int) -> JsonResponse:
    return JsonResponse({'success': False, 'error': message}, status=status)


def _read_payload(request):
    try:
        payload = json.loads(request.body)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _text(payload, name: str) -> str:
    value = payload.get(name)
    return value.strip() if isinstance(value, str) else ''


@method_decorator(csrf_exempt, name='dispatch')
@method_decorator(auth_required, name='dispatch')
@method_decorator(rate_limited(check_action_rate_limit), name='dispatch')
class SendEmailView(View):
    """
    POST /api/actions/send-email

    Request body:
        {"to": "a@example.com", "subject": "...", "body": "..."}
    """

    def post(self, request):
        payload = _read_payload(request)
        if payload is None:
            return _failure('Invalid JSON', 400)

        to, subject, body = _text(payload, 'to'), _text(payload, 'subject'), _text(payload, 'body')
        if not to or not subject or not body:
            return _failure('Missing required fields: to, subject, body', 400)
        if not is_valid_email(to):
            return _failure('Invalid email address format', 400)

        try:
            send_email_message(to, subject, body)
        except ActionError as e:
            audit_action(request, AuditEvent.ACTION_EMAIL_SENT, success=False, error=str(e))
            return _failure(str(e), e.status)

        logger.info(f"Email sent for user {request.user_claims.sub}")
        audit_action(request, AuditEvent.ACTION_EMAIL_SENT, success=True)
        return JsonResponse({'success': True})


@method_decorator(csrf_exempt, name='dispatch')
@method_decorator(auth_required, name='dispatch')
@method_decorator(rate_limited(check_action_rate_limit), name='dispatch')
class SendSmsView(View):
    """
    POST /api/actions/send-sms

    Request body:
        {"to": "+15551234567", "body": "..."}
    """

    def post(self, request):
        payload = _read_payload(request)
        if payload is None:
            return _failure('Invalid JSON', 400)

        to, body = _text(payload, 'to'), _text(payload, 'body')
        if not to or not body:
            return _failure('Missing required fields: to, body', 400)

        number = normalize_phone(to)
        if not number:
            return _failure('Invalid phone number. Use E.164 format (e.g. +15551234567).', 400)

        try:
            message_id = send_sms_message(number, body)
        except ActionError as e:
            audit_action(request, AuditEvent.ACTION_SMS_SENT, success=False, error=str(e))
            return _failure(str(e), e.status)

        logger.info(f"SMS sent for user {request.user_claims.sub}: message_id={message_id}")
        audit_action(request, AuditEvent.ACTION_SMS_SENT, success=True)
        return JsonResponse({'success': True})
