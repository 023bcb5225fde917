"""
Health check endpoints for Kubernetes/Docker probes.

- /healthz - Liveness (is process running?)
- /readyz - Readiness (can we serve traffic?)
"""
import logging
from datetime import datetime, timezone

import redis
import httpx
from django.conf import settings
from django.db import connection
from django.http import JsonResponse
from django.views.decorators.http import require_GET
from django.views.decorators.csrf import csrf_exempt

logger = logging.getLogger(__name__)


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


@csrf_exempt
@require_GET
def healthz(request):
    """Liveness probe. Does not touch dependencies."""
    return JsonResponse({
        'status': 'healthy',
        'timestamp': get_timestamp()
    })


def check_database() -> tuple[str, bool]:
    """Check database connectivity (LLM configurations live here)."""
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
            cursor.fetchone()
        return 'ok', True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_redis() -> tuple[str, bool]:
    """Check Redis connectivity (rate limiting)."""
    try:
        redis_url = getattr(settings, 'REDIS_URL', 'redis://redis:6379/0')
        client = redis.from_url(redis_url, socket_timeout=3)
        client.ping()
        return 'ok', True
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_rag_backend() -> tuple[str, bool]:
    """
    Check the RAG backend. Reported but never blocks readiness: settings
    endpoints keep working while the backend is down.
    """
    try:
        base_url = getattr(settings, 'RAG_BACKEND_URL', 'http://rag-backend:8080').rstrip('/')
        with httpx.Client(timeout=5.0) as client:
            response = client.get(f'{base_url}/health')
        if response.status_code == 200:
            return 'ok', True
        return f'status: {response.status_code}', True
    except httpx.HTTPError as e:
        logger.warning(f"RAG backend health check failed: {e}")
        return f'degraded: {str(e)[:30]}', True


@csrf_exempt
@require_GET
def readyz(request):
    """
    Readiness probe.

    Returns 200 only if the database and Redis are reachable.
    """
    checks = {}
    all_ok = True

    for name, check in (('database', check_database), ('redis', check_redis)):
        status, ok = check()
        checks[name] = status
        all_ok = all_ok and ok

    checks['rag_backend'], _ = check_rag_backend()

    return JsonResponse(
        {
            'status': 'ready' if all_ok else 'not_ready',
            'timestamp': get_timestamp(),
            'checks': checks
        },
        status=200 if all_ok else 503
    )
