"""
Provider connectivity probe.

Sends one minimal completion request to the tenant's provider and measures
latency. Nothing is stored here; callers decide whether to record the
diagnostics on the configuration.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx
from django.conf import settings

from .masking import mask

logger = logging.getLogger(__name__)

TEST_PROMPT = 'Respond with exactly one word: "connected"'
TEST_MAX_TOKENS = 10
MAX_RESPONSE_PREVIEW = 100


@dataclass
class ProviderTarget:
    """Where and how to send the probe request for one provider."""
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]
    model: str
    extract: Callable[[Any], str]


@dataclass
class ProbeResult:
    """Outcome of a connectivity probe."""
    success: bool
    latency_ms: int
    model: Optional[str] = None
    response: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def result_label(self) -> str:
        return 'success' if self.success else 'failure'

    def to_dict(self) -> Dict[str, Any]:
        data = {'success': self.success, 'latencyMs': self.latency_ms}
        if self.success:
            data['response'] = self.response
            data['model'] = self.model
        else:
            data['error'] = self.error
            if self.status_code is not None:
                data['statusCode'] = self.status_code
        return data


def _chat_completions_text(data: Any) -> str:
    try:
        return data['choices'][0]['message']['content'] or ''
    except (KeyError, IndexError, TypeError):
        return ''


def _anthropic_text(data: Any) -> str:
    try:
        return data['content'][0]['text'] or ''
    except (KeyError, IndexError, TypeError):
        return ''


def _gemini_text(data: Any) -> str:
    try:
        return data['candidates'][0]['content']['parts'][0]['text'] or ''
    except (KeyError, IndexError, TypeError):
        return ''


def build_target(provider: str, api_key: str, base_url: Optional[str] = None,
                 model: Optional[str] = None) -> ProviderTarget:
    """
    Build the probe request for a provider.

    Raises:
        ValueError: If the provider is not supported
    """
    messages = [{'role': 'user', 'content': TEST_PROMPT}]

    if provider == 'openrouter':
        model = model or 'anthropic/claude-sonnet-4-20250514'
        return ProviderTarget(
            url=base_url or 'https://openrouter.ai/api/v1/chat/completions',
            headers={
                'Authorization': f'Bearer {api_key}',
                'X-Title': 'VaultChat BYOLLM Test',
            },
            body={'model': model, 'messages': messages, 'max_tokens': TEST_MAX_TOKENS},
            model=model,
            extract=_chat_completions_text,
        )

    if provider == 'openai':
        model = model or 'gpt-4o-mini'
        return ProviderTarget(
            url=base_url or 'https://api.openai.com/v1/chat/completions',
            headers={'Authorization': f'Bearer {api_key}'},
            body={'model': model, 'messages': messages, 'max_tokens': TEST_MAX_TOKENS},
            model=model,
            extract=_chat_completions_text,
        )

    if provider == 'anthropic':
        model = model or 'claude-sonnet-4-20250514'
        return ProviderTarget(
            url=base_url or 'https://api.anthropic.com/v1/messages',
            headers={'x-api-key': api_key, 'anthropic-version': '2023-06-01'},
            body={'model': model, 'messages': messages, 'max_tokens': TEST_MAX_TOKENS},
            model=model,
            extract=_anthropic_text,
        )

    if provider == 'google':
        model = model or 'gemini-2.0-flash'
        # Key goes in a header so it never shows up in a logged URL
        return ProviderTarget(
            url=base_url or (
                f'https://generativelanguage.googleapis.com/v1beta/models/{quote(model, safe="")}:generateContent'
            ),
            headers={'x-goog-api-key': api_key},
            body={
                'contents': [{'parts': [{'text': TEST_PROMPT}]}],
                'generationConfig': {'maxOutputTokens': TEST_MAX_TOKENS},
            },
            model=model,
            extract=_gemini_text,
        )

    raise ValueError(f"Unsupported provider: {provider}")


def _provider_error_message(response: httpx.Response) -> str:
    message = f"Provider returned {response.status_code}"
    try:
        data = response.json()
    except ValueError:
        return message
    if isinstance(data, dict):
        error = data.get('error')
        if isinstance(error, dict) and isinstance(error.get('message'), str):
            return error['message']
        if isinstance(data.get('message'), str):
            return data['message']
    return message


def _scrub(text: str, api_key: str) -> str:
    return text.replace(api_key, mask(api_key)) if api_key else text


def run_probe(provider: str, api_key: str, base_url: Optional[str] = None,
              model: Optional[str] = None, client: Optional[httpx.Client] = None) -> ProbeResult:
    """
    Send the test prompt to the provider and time the round trip.

    Args:
        provider: Provider identifier
        api_key: Plaintext key, used only for this request
        base_url: Optional endpoint override
        model: Optional model override
        client: Optional httpx client (tests inject a mock transport)

    Returns:
        ProbeResult; provider and transport failures are reported, not raised
    """
    target = build_target(provider, api_key, base_url, model)
    timeout = float(getattr(settings, 'LLM_TEST_TIMEOUT', 30))
    owns_client = client is None
    if owns_client:
        client = httpx.Client(timeout=timeout)

    start = time.monotonic()
    try:
        response = client.post(target.url, headers=target.headers, json=target.body)
    except httpx.TimeoutException:
        latency_ms = int((time.monotonic() - start) * 1000)
        logger.warning(f"LLM probe to {provider} timed out after {latency_ms}ms")
        return ProbeResult(
            success=False,
            latency_ms=latency_ms,
            error=f"Connection timed out after {int(timeout)} seconds",
        )
    except httpx.HTTPError as e:
        latency_ms = int((time.monotonic() - start) * 1000)
        logger.warning(f"LLM probe to {provider} failed: {type(e).__name__}")
        return ProbeResult(
            success=False,
            latency_ms=latency_ms,
            error=_scrub(str(e) or 'Connection failed', api_key),
        )
    finally:
        if owns_client:
            client.close()

    latency_ms = int((time.monotonic() - start) * 1000)

    if not response.is_success:
        logger.info(f"LLM probe to {provider} returned {response.status_code} in {latency_ms}ms")
        return ProbeResult(
            success=False,
            latency_ms=latency_ms,
            error=_scrub(_provider_error_message(response), api_key),
            status_code=response.status_code,
        )

    try:
        text = target.extract(response.json())
    except ValueError:
        text = ''

    logger.info(f"LLM probe to {provider} succeeded in {latency_ms}ms")
    return ProbeResult(
        success=True,
        latency_ms=latency_ms,
        model=target.model,
        response=_scrub(text[:MAX_RESPONSE_PREVIEW], api_key),
    )
