"""
Audit logging for security and compliance.

Emits one JSON object per event on the dedicated 'audit' logger. Metadata
never contains query text, message bodies or credentials; API keys only
ever appear in their masked form.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Dedicated audit logger
audit_logger = logging.getLogger('audit')


class AuditEvent:
    """Standard audit event types."""
    # Auth events
    AUTH_TOKEN_REJECTED = 'auth.token_rejected'

    # LLM configuration events
    LLM_CONFIG_UPDATED = 'llm_config.updated'
    LLM_CONFIG_DELETED = 'llm_config.deleted'
    LLM_CONFIG_TESTED = 'llm_config.tested'

    # Chat events
    CHAT_QUERY = 'chat.query'

    # Side-effect actions
    ACTION_EMAIL_SENT = 'action.email_sent'
    ACTION_SMS_SENT = 'action.sms_sent'

    # Rate limiting events
    RATELIMIT_EXCEEDED = 'ratelimit.exceeded'


def get_client_ip(request) -> str:
    """Extract client IP from request, handling proxies."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        # First IP in the chain is the client
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', 'unknown')


def get_request_id(request) -> str:
    """Get or generate a request ID for correlation."""
    request_id = getattr(request, 'request_id', None)
    if not request_id:
        request_id = request.META.get('HTTP_X_REQUEST_ID')
    if not request_id:
        request_id = str(uuid.uuid4())[:8]
        request.request_id = request_id
    return request_id


def log_audit(
    event_type: str,
    user_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    request_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """
    Log a structured audit event.

    Args:
        event_type: One of AuditEvent constants
        user_id: Keycloak subject ID (from JWT)
        tenant_id: Tenant the request acted for
        request_id: Correlation ID for request tracing
        client_ip: Client IP address
        outcome: 'success' or 'failure'
        metadata: Event-specific data (no PII/secrets)
    """
    event = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'event_type': event_type,
        'user_id': user_id,
        'tenant_id': tenant_id,
        'request_id': request_id,
        'client_ip': client_ip,
        'outcome': outcome,
        'metadata': metadata or {}
    }

    audit_logger.info(json.dumps(event))


def log_audit_from_request(
    request,
    event_type: str,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """Log an audit event with user, tenant and request context filled in."""
    claims = getattr(request, 'user_claims', None)

    log_audit(
        event_type=event_type,
        user_id=getattr(claims, 'sub', None),
        tenant_id=getattr(claims, 'tenant_id', None),
        request_id=get_request_id(request),
        client_ip=get_client_ip(request),
        outcome=outcome,
        metadata=metadata
    )


# Convenience functions for common events

def audit_llm_config_updated(request, provider: str, policy: str, masked_key: Optional[str],
                             key_changed: bool):
    """Log a configuration write. Only the masked key is recorded."""
    log_audit_from_request(
        request,
        AuditEvent.LLM_CONFIG_UPDATED,
        metadata={
            'provider': provider,
            'policy': policy,
            'masked_key': masked_key,
            'key_changed': key_changed,
        }
    )


def audit_llm_config_deleted(request, deleted: bool):
    """Log a configuration removal."""
    log_audit_from_request(
        request,
        AuditEvent.LLM_CONFIG_DELETED,
        metadata={'deleted': deleted}
    )


def audit_llm_config_tested(request, provider: str, success: bool, latency_ms: int):
    """Log a provider connectivity test."""
    log_audit_from_request(
        request,
        AuditEvent.LLM_CONFIG_TESTED,
        outcome='success' if success else 'failure',
        metadata={
            'provider': provider,
            'latency_ms': latency_ms,
        }
    )


def audit_chat_query(request, query_length: int, history_length: int, route: str,
                     provider: Optional[str], stream: bool, outcome: str = 'success',
                     status_code: Optional[int] = None):
    """Log a chat query (without the query text)."""
    log_audit_from_request(
        request,
        AuditEvent.CHAT_QUERY,
        outcome=outcome,
        metadata={
            'query_length': query_length,
            'history_length': history_length,
            'route': route,
            'provider': provider,
            'stream': stream,
            'status_code': status_code,
        }
    )


def audit_action(request, event_type: str, success: bool, error: Optional[str] = None):
    """Log a confirmed side-effect action (recipient and body omitted)."""
    metadata = {}
    if error:
        metadata['error'] = error[:200]
    log_audit_from_request(
        request,
        event_type,
        outcome='success' if success else 'failure',
        metadata=metadata
    )


def audit_ratelimit_exceeded(request, endpoint: str, limit: int):
    """Log rate limit exceeded."""
    log_audit_from_request(
        request,
        AuditEvent.RATELIMIT_EXCEEDED,
        outcome='failure',
        metadata={
            'endpoint': endpoint,
            'limit': limit,
        }
    )


def audit_auth_rejected(request, reason: str):
    """Log failed token validation."""
    log_audit_from_request(
        request,
        AuditEvent.AUTH_TOKEN_REJECTED,
        outcome='failure',
        metadata={
            'reason': reason,
        }
    )
