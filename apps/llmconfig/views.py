"""
LLM settings API views.

Provides endpoints for:
- Reading, saving and removing the tenant's BYOLLM configuration
- Testing connectivity to the configured provider

No response from this module ever carries the plaintext or encrypted key;
the key is only returned as its masked form.
"""
import json
import logging

from django.db import DatabaseError
from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from apps.authn.audit import (
    audit_llm_config_deleted,
    audit_llm_config_tested,
    audit_llm_config_updated,
)
from apps.authn.middleware import auth_required
from apps.authn.ratelimit import check_settings_rate_limit, rate_limited

from . import store
from .crypto import CredentialFormatError, decrypt
from .models import LLMProvider
from .probe import run_probe

logger = logging.getLogger(__name__)

MAX_TEST_MODEL_LENGTH = 200


def _error(message: str, code: str, status: int) -> JsonResponse:
    return JsonResponse({'success': False, 'error': message, 'code': code}, status=status)


def _parse_body(request):
    if not request.body:
        return {}
    return json.loads(request.body)


@method_decorator(csrf_exempt, name='dispatch')
@method_decorator(auth_required, name='dispatch')
@method_decorator(rate_limited(check_settings_rate_limit, methods=['PUT', 'DELETE']), name='dispatch')
class LLMSettingsView(View):
    """
    GET|PUT|DELETE /api/settings/llm

    GET response:
        {"success": true, "data": {"configured": false, "policy": "choice"}}
        {"success": true, "data": {"configured": true, "provider": "openrouter",
                                   "maskedKey": "sk-or***xyz", "baseUrl": null,
                                   "defaultModel": null, "policy": "choice",
                                   "lastTestedAt": null, "lastTestResult": null,
                                   "lastTestLatency": null}}

    PUT request body (all fields optional except apiKey on first save):
        {"provider": "openai", "apiKey": "sk-...", "baseUrl": null,
         "defaultModel": "gpt-4o", "policy": "byollm_only"}

    DELETE response:
        {"success": true, "deleted": true}
    """

    def get(self, request):
        tenant_id = request.user_claims.tenant_id
        try:
            data = store.read(tenant_id)
        except DatabaseError as e:
            logger.error(f"Failed to read LLM configuration for tenant {tenant_id}: {e}")
            return _error('Failed to fetch LLM configuration', 'INTERNAL_ERROR', 500)
        return JsonResponse({'success': True, 'data': data})

    def put(self, request):
        try:
            body = _parse_body(request)
        except json.JSONDecodeError:
            return _error('Invalid JSON', 'VALIDATION_ERROR', 400)

        tenant_id = request.user_claims.tenant_id
        try:
            data = store.write(tenant_id, body)
        except store.ConfigurationError as e:
            return _error(str(e), 'VALIDATION_ERROR', 400)
        except DatabaseError as e:
            logger.error(f"Failed to save LLM configuration for tenant {tenant_id}: {e}")
            return _error('Failed to save LLM configuration', 'INTERNAL_ERROR', 500)

        audit_llm_config_updated(
            request,
            provider=data['provider'],
            policy=data['policy'],
            masked_key=data['maskedKey'],
            key_changed='apiKey' in body,
        )
        return JsonResponse({'success': True, 'data': data})

    def delete(self, request):
        tenant_id = request.user_claims.tenant_id
        try:
            deleted = store.delete(tenant_id)
        except DatabaseError as e:
            logger.error(f"Failed to delete LLM configuration for tenant {tenant_id}: {e}")
            return _error('Failed to delete LLM configuration', 'INTERNAL_ERROR', 500)

        audit_llm_config_deleted(request, deleted=deleted)
        return JsonResponse({'success': True, 'deleted': deleted})


@method_decorator(csrf_exempt, name='dispatch')
@method_decorator(auth_required, name='dispatch')
@method_decorator(rate_limited(check_settings_rate_limit), name='dispatch')
class LLMConnectionTestView(View):
    """
    POST /api/settings/llm/test

    Sends a minimal prompt to the provider and reports latency.

    With an "apiKey" in the body this is a dry run of unsaved settings and
    nothing is recorded. Without one, the stored configuration is tested
    and its lastTested* diagnostics are updated.

    Request body:
        {"provider": "openai", "apiKey": "sk-...", "baseUrl": "...", "model": "..."}

    Response:
        {"success": true, "latencyMs": 412, "response": "connected", "model": "gpt-4o-mini"}
        {"success": false, "latencyMs": 120, "error": "Invalid API key", "statusCode": 401}
    """

    def post(self, request):
        try:
            body = _parse_body(request)
        except json.JSONDecodeError:
            return _error('Invalid JSON', 'VALIDATION_ERROR', 400)
        if not isinstance(body, dict):
            return _error('Request body must be a JSON object', 'VALIDATION_ERROR', 400)

        tenant_id = request.user_claims.tenant_id
        model = body.get('model')
        if model is not None and (not isinstance(model, str) or len(model) > MAX_TEST_MODEL_LENGTH):
            return _error('Invalid model', 'VALIDATION_ERROR', 400)

        stored = None
        if body.get('apiKey'):
            try:
                store.validate_fields({
                    k: body[k] for k in ('provider', 'apiKey', 'baseUrl') if k in body
                })
            except store.ConfigurationError as e:
                return _error(str(e), 'VALIDATION_ERROR', 400)
            provider = body.get('provider', LLMProvider.OPENROUTER.value)
            api_key = body['apiKey']
            base_url = body.get('baseUrl')
        else:
            stored = store.get_internal(tenant_id)
            if stored is None:
                return _error('No LLM configuration to test', 'NOT_CONFIGURED', 404)
            try:
                api_key = decrypt(stored.api_key_encrypted)
            except CredentialFormatError as e:
                logger.error(
                    f"Stored credential for tenant {tenant_id} is unreadable: {type(e).__name__}"
                )
                return _error('Stored API key could not be read. Please re-enter it.',
                              'INTERNAL_ERROR', 500)
            provider = stored.provider
            base_url = stored.base_url
            model = model or stored.default_model

        result = run_probe(provider, api_key, base_url=base_url, model=model)

        if stored is not None:
            store.record_test_result(tenant_id, result.result_label, result.latency_ms)

        audit_llm_config_tested(request, provider, result.success, result.latency_ms)
        return JsonResponse(result.to_dict())
