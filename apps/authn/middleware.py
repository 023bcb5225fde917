"""
Authentication decorator for JWT-protected endpoints.
"""
import logging
from typing import Optional, Callable
from functools import wraps

from asgiref.sync import iscoroutinefunction, sync_to_async
from django.http import JsonResponse, HttpRequest

from .audit import audit_auth_rejected
from .jwt_validator import validate_token, JWTValidationError

logger = logging.getLogger(__name__)


def get_token_from_request(request: HttpRequest) -> Optional[str]:
    """
    Extract Bearer token from Authorization header.

    Args:
        request: The Django HTTP request

    Returns:
        The token string if found, None otherwise
    """
    parts = request.META.get('HTTP_AUTHORIZATION', '').split()
    if len(parts) != 2 or parts[0].lower() != 'bearer':
        return None
    return parts[1]


def auth_required(view_func: Callable) -> Callable:
    """
    Decorator that requires a valid JWT token.

    Attaches the validated claims to request.user_claims; the tenant the
    request acts for is request.user_claims.tenant_id.

    Usage:
        @method_decorator(auth_required, name='dispatch')
        class SettingsView(View):
            ...
    """
    if iscoroutinefunction(view_func):
        @wraps(view_func)
        async def async_wrapper(request: HttpRequest, *args, **kwargs):
            # JWKS fetches block, so validation runs off the event loop
            rejection = await sync_to_async(_authenticate)(request)
            if rejection is not None:
                return rejection
            return await view_func(request, *args, **kwargs)

        return async_wrapper

    @wraps(view_func)
    def wrapper(request: HttpRequest, *args, **kwargs):
        rejection = _authenticate(request)
        if rejection is not None:
            return rejection
        return view_func(request, *args, **kwargs)

    return wrapper


def _unauthorized(message: str) -> JsonResponse:
    return JsonResponse(
        {'success': False, 'error': message, 'code': 'UNAUTHORIZED'},
        status=401
    )


def _authenticate(request: HttpRequest) -> Optional[JsonResponse]:
    """Attach claims to the request, or return the 401 response to send."""
    token = get_token_from_request(request)

    if not token:
        return _unauthorized('Authentication required')

    try:
        claims = validate_token(token)
    except JWTValidationError as e:
        logger.warning(f"JWT validation failed: {e}")
        audit_auth_rejected(request, reason=str(e)[:100])
        return _unauthorized(str(e))

    if not claims.sub:
        return _unauthorized('Invalid token: missing sub')

    request.user_claims = claims
    logger.debug(
        f"Authenticated user: {claims.preferred_username} "
        f"(sub={claims.sub}, tenant={claims.tenant_id})"
    )
    return None
