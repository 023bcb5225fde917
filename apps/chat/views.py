"""
Chat API view.

POST /api/chat evaluates the tenant's routing policy, forwards the
effective request to the RAG backend and relays the answer.
"""
import json
import logging

from asgiref.sync import sync_to_async
from django.db import DatabaseError
from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from apps.authn.audit import audit_chat_query
from apps.authn.middleware import auth_required
from apps.authn.ratelimit import check_chat_rate_limit, rate_limited
from apps.llmconfig import store
from apps.llmconfig.crypto import CredentialFormatError

from .errors import internal_error_response, upstream_failure_response
from .policy import ChatRequest, ChatValidationError, build_effective_request
from .upstream import UpstreamError, forward, relay

logger = logging.getLogger(__name__)


def _validation_error(message: str) -> JsonResponse:
    return JsonResponse(
        {'success': False, 'error': message, 'code': 'VALIDATION_ERROR', 'canRetry': False},
        status=400
    )


@method_decorator(
    [csrf_exempt, auth_required, rate_limited(check_chat_rate_limit)], name='dispatch'
)
class ChatView(View):
    """
    POST /api/chat

    Request body:
        {
            "query": "What is the NDA term?",
            "history": [{"role": "user", "content": "..."}],
            "stream": true,
            "privilegeMode": false,
            "llmProvider": "byollm",    // optional
            "llmModel": "openai/gpt-4o" // optional
        }

    Response:
        JSON {"success": true, "data": {"answer": ..., "confidence": ..., "citations": [...]}}
        or an event stream (status, token, citations, confidence, silence,
        metadata, done) relayed from the RAG backend.

    Failure bodies carry "canRetry". The view is async so that event
    streams reach the client frame by frame under ASGI.
    """

    async def dispatch(self, request, *args, **kwargs):
        return await super().dispatch(request, *args, **kwargs)

    async def post(self, request):
        try:
            body = json.loads(request.body)
        except json.JSONDecodeError:
            return _validation_error('Invalid JSON')

        try:
            chat_request = ChatRequest.from_body(body)
        except ChatValidationError as e:
            return _validation_error(str(e))

        claims = request.user_claims
        tenant_id = claims.tenant_id

        # Configuration is re-read on every request; a lookup failure
        # degrades to the platform model instead of failing the query.
        try:
            config = await sync_to_async(store.get_internal)(tenant_id)
        except DatabaseError as e:
            logger.warning(f"LLM config lookup failed for tenant {tenant_id}, using AEGIS: {e}")
            config = None

        try:
            effective = build_effective_request(config, chat_request)
        except CredentialFormatError as e:
            logger.error(
                f"Stored credential for tenant {tenant_id} could not be decrypted: {type(e).__name__}"
            )
            audit_chat_query(
                request, len(chat_request.query), len(chat_request.history),
                route='byollm', provider=config.provider if config else None,
                stream=chat_request.stream, outcome='failure', status_code=500,
            )
            return JsonResponse(internal_error_response(), status=500)

        logger.info(
            f"Forwarding chat for tenant {tenant_id}: route={effective.route.value}, "
            f"provider={effective.llm_provider}, model={effective.llm_model}, "
            f"stream={effective.stream}, history={len(effective.history)}"
        )

        try:
            client, upstream = await forward(effective, claims.sub, tenant_id)
        except UpstreamError as e:
            audit_chat_query(
                request, len(chat_request.query), len(chat_request.history),
                route=effective.route.value, provider=effective.llm_provider,
                stream=chat_request.stream, outcome='failure', status_code=e.status,
            )
            return JsonResponse(upstream_failure_response(True), status=e.status)

        try:
            response = await relay(client, upstream, effective.llm_api_key)
        except Exception as e:
            logger.exception(f"Unexpected error relaying chat response: {e}")
            return JsonResponse(internal_error_response(), status=500)

        audit_chat_query(
            request, len(chat_request.query), len(chat_request.history),
            route=effective.route.value, provider=effective.llm_provider,
            stream=chat_request.stream,
            outcome='success' if response.status_code < 400 else 'failure',
            status_code=response.status_code,
        )
        return response
