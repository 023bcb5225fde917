"""
RAG backend forwarding and response relay.

The backend is an opaque HTTP service. This module sends the effective
request, then hands its response back to the client unchanged apart from
credential redaction: JSON bodies as-is, event streams frame by frame.
"""
import json
import logging
from typing import AsyncIterator, Optional

import httpx
from django.conf import settings
from django.http import HttpResponse, JsonResponse, StreamingHttpResponse

from apps.llmconfig.masking import mask

from .errors import failure_from_backend_body, upstream_failure_response
from .policy import EffectiveRequest

logger = logging.getLogger(__name__)

EVENT_STREAM = 'text/event-stream'
FRAME_DELIMITERS = (b'\r\n\r\n', b'\n\n')
# A frame larger than this is released without waiting for its delimiter
MAX_PENDING_BYTES = 1024 * 1024
CONNECT_TIMEOUT = 10.0


class UpstreamError(Exception):
    """Raised when the RAG backend cannot be reached or times out."""

    def __init__(self, message: str, status: int = 502):
        super().__init__(message)
        self.status = status


class Redactor:
    """
    Replaces a secret with its masked form in relayed bytes.

    Stream chunks are held back until a frame delimiter is seen so that a
    secret split across two network reads is still caught. Frames are
    otherwise emitted byte for byte.
    """

    def __init__(self, secret: Optional[str]):
        self._secret = secret.encode('utf-8') if secret else b''
        self._masked = mask(secret).encode('utf-8') if secret else b''
        self._buffer = b''

    @property
    def active(self) -> bool:
        return bool(self._secret)

    def redact(self, data: bytes) -> bytes:
        if not self._secret:
            return data
        return data.replace(self._secret, self._masked)

    def feed(self, chunk: bytes) -> bytes:
        """Accept a chunk; return the complete frames that can be released."""
        if not self._secret:
            return chunk
        self._buffer += chunk

        cut = 0
        for delimiter in FRAME_DELIMITERS:
            idx = self._buffer.rfind(delimiter)
            if idx >= 0:
                cut = max(cut, idx + len(delimiter))
        if cut == 0 and len(self._buffer) > MAX_PENDING_BYTES:
            # Redact first; only a possible key prefix may stay behind
            redacted = self.redact(self._buffer)
            cut = len(redacted) - (len(self._secret) - 1)
            ready, self._buffer = redacted[:cut], redacted[cut:]
            return ready

        ready, self._buffer = self._buffer[:cut], self._buffer[cut:]
        return self.redact(ready)

    def flush(self) -> bytes:
        rest, self._buffer = self._buffer, b''
        return self.redact(rest)


def get_http_client() -> httpx.AsyncClient:
    """Create the client used for one forwarded request."""
    timeout = float(getattr(settings, 'RAG_BACKEND_TIMEOUT', 120))
    return httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=CONNECT_TIMEOUT))


def backend_headers(user_id: str, tenant_id: str) -> dict:
    headers = {
        'Content-Type': 'application/json',
        'X-User-ID': user_id,
        'X-Tenant-ID': tenant_id,
    }
    secret = getattr(settings, 'RAG_BACKEND_INTERNAL_SECRET', '')
    if secret:
        headers['X-Internal-Auth'] = secret
    return headers


async def forward(effective: EffectiveRequest, user_id: str, tenant_id: str):
    """
    POST the effective request to the RAG backend without reading the body.

    Returns:
        (client, response) - the caller owns both and must close them

    Raises:
        UpstreamError: On timeout or transport failure
    """
    url = f"{getattr(settings, 'RAG_BACKEND_URL', 'http://rag-backend:8080').rstrip('/')}/api/chat"
    client = get_http_client()
    request = client.build_request(
        'POST',
        url,
        json=effective.to_payload(),
        headers=backend_headers(user_id, tenant_id),
    )
    try:
        response = await client.send(request, stream=True)
    except httpx.TimeoutException:
        await client.aclose()
        logger.warning(f"RAG backend timed out for tenant {tenant_id}")
        raise UpstreamError('RAG backend timed out', status=504)
    except httpx.HTTPError as e:
        await client.aclose()
        logger.error(f"RAG backend unreachable for tenant {tenant_id}: {type(e).__name__}")
        raise UpstreamError('RAG backend unreachable', status=502)
    return client, response


async def _close(client: httpx.AsyncClient, response: httpx.Response):
    await response.aclose()
    await client.aclose()


async def _stream_frames(client: httpx.AsyncClient, response: httpx.Response,
                         redactor: Redactor) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            ready = redactor.feed(chunk)
            if ready:
                yield ready
        tail = redactor.flush()
        if tail:
            yield tail
    except httpx.HTTPError as e:
        logger.warning(f"RAG backend stream interrupted: {type(e).__name__}")
        tail = redactor.flush()
        if tail:
            yield tail
        payload = json.dumps({
            'message': 'The response stream was interrupted. Please try again.',
            'canRetry': True,
        })
        yield f"event: error\ndata: {payload}\n\n".encode('utf-8')
    finally:
        await _close(client, response)


async def relay(client: httpx.AsyncClient, response: httpx.Response, secret: Optional[str]):
    """
    Turn the backend response into the client response.

    Args:
        client: The httpx client that sent the request
        response: The un-read backend response
        secret: Plaintext key to redact, if one was forwarded

    Returns:
        A Django response; failure bodies always carry canRetry
    """
    redactor = Redactor(secret)
    content_type = response.headers.get('content-type', '')

    if response.is_success and content_type.startswith(EVENT_STREAM):
        relayed = StreamingHttpResponse(
            _stream_frames(client, response, redactor),
            content_type=content_type,
            status=response.status_code,
        )
        relayed['Cache-Control'] = 'no-cache'
        relayed['X-Accel-Buffering'] = 'no'  # Disable nginx buffering
        return relayed

    try:
        raw = await response.aread()
    except httpx.HTTPError as e:
        logger.warning(f"RAG backend body could not be read: {type(e).__name__}")
        return JsonResponse(upstream_failure_response(True), status=502)
    finally:
        await _close(client, response)

    raw = redactor.redact(raw)
    try:
        body = json.loads(raw) if raw else None
    except ValueError:
        body = None

    if not response.is_success:
        logger.warning(f"RAG backend returned {response.status_code}")
        return JsonResponse(failure_from_backend_body(body), status=response.status_code)

    if body is None:
        logger.warning("RAG backend returned a malformed JSON body")
        return JsonResponse(upstream_failure_response(True), status=502)

    return HttpResponse(raw, status=response.status_code, content_type='application/json')
