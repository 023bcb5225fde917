"""
Tests for POST /api/chat: routing, forwarding and response relay.

The RAG backend is replaced with an httpx MockTransport so the forwarded
request can be inspected and any response shape replayed.
"""
import asyncio
import json

import httpx
import pytest
from unittest.mock import patch

from django.db import DatabaseError

from apps.chat.upstream import MAX_PENDING_BYTES, Redactor, relay
from apps.llmconfig import store
from apps.llmconfig.models import LLMConfiguration

from .conftest import MASKED_RAW_KEY, RAW_KEY


pytestmark = pytest.mark.django_db

CHAT_URL = '/api/chat'


class Backend:
    """Records forwarded requests and answers with a canned response."""

    def __init__(self, respond):
        self.respond = respond
        self.requests = []

    def handler(self, request):
        self.requests.append(request)
        return self.respond(request)

    @property
    def payload(self):
        return json.loads(self.requests[-1].content)


@pytest.fixture
def backend():
    holder = {}

    def install(respond):
        fake = Backend(respond)
        holder['backend'] = fake
        return fake

    with patch('apps.chat.upstream.get_http_client') as get_client:
        get_client.side_effect = lambda: httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: holder['backend'].handler(r))
        )
        yield install


def post_chat(api, **body):
    body.setdefault('query', 'What is the NDA term?')
    return api.post(CHAT_URL, data=json.dumps(body), content_type='application/json')


def json_answer(request):
    return httpx.Response(200, json={
        'success': True,
        'data': {'answer': 'Two years.', 'confidence': 0.92, 'citations': []},
    })


def sse(*frames):
    return ''.join(f'event: {label}\ndata: {json.dumps(data)}\n\n' for label, data in frames).encode()


def read_stream(response):
    async def collect():
        return b''.join([part async for part in response.streaming_content])

    return asyncio.run(collect())


async def delivered(chunks):
    for chunk in chunks:
        yield chunk


def configure(policy='choice', **fields):
    store.write('tenant-a', dict({'apiKey': RAW_KEY, 'policy': policy}, **fields))


# ============================================================================
# Validation
# ============================================================================

class TestValidation:
    """Tests for rejected chat requests."""

    def test_invalid_json(self, api, backend):
        """Should reject malformed JSON with canRetry false."""
        fake = backend(json_answer)
        response = api.post(CHAT_URL, data='{oops', content_type='application/json')

        assert response.status_code == 400
        assert response.json()['canRetry'] is False
        assert fake.requests == []

    def test_missing_query(self, api, backend):
        """Should reject a request without a query."""
        backend(json_answer)
        response = api.post(CHAT_URL, data='{}', content_type='application/json')

        assert response.status_code == 400
        assert response.json()['code'] == 'VALIDATION_ERROR'

    def test_unauthenticated(self, backend):
        """Should require a token."""
        from django.test import Client

        backend(json_answer)
        response = Client().post(CHAT_URL, data='{"query": "hi"}', content_type='application/json')
        assert response.status_code == 401


# ============================================================================
# Routing
# ============================================================================

class TestRouting:
    """Tests for what is forwarded to the backend."""

    def test_no_configuration_forwards_aegis(self, api, backend):
        """Should forward no BYOLLM fields when nothing is configured."""
        fake = backend(json_answer)

        response = post_chat(api, llmProvider='byollm', llmModel='openai/gpt-4o')

        assert response.status_code == 200
        assert 'llmApiKey' not in fake.payload
        assert 'llmProvider' not in fake.payload
        assert fake.requests[0].url == 'http://rag.test/api/chat'

    def test_identity_headers(self, api, backend, settings):
        """Should pass user, tenant and the internal secret as headers."""
        settings.RAG_BACKEND_INTERNAL_SECRET = 'internal-secret'
        fake = backend(json_answer)

        post_chat(api)

        headers = fake.requests[0].headers
        assert headers['x-user-id'] == 'user-1'
        assert headers['x-tenant-id'] == 'tenant-a'
        assert headers['x-internal-auth'] == 'internal-secret'

    def test_choice_with_byollm_request(self, api, backend):
        """Should forward the stored provider and key with the client's model."""
        configure('choice')
        fake = backend(json_answer)

        post_chat(api, llmProvider='byollm', llmModel='openai/gpt-4o')

        assert fake.payload['llmProvider'] == 'openrouter'
        assert fake.payload['llmModel'] == 'openai/gpt-4o'
        assert fake.payload['llmApiKey'] == RAW_KEY

    def test_choice_without_byollm_request(self, api, backend):
        """Should use AEGIS when the client does not opt in."""
        configure('choice')
        fake = backend(json_answer)

        post_chat(api)

        assert 'llmApiKey' not in fake.payload

    def test_aegis_only(self, api, backend):
        """Should never forward the key under aegis_only."""
        configure('aegis_only')
        fake = backend(json_answer)

        post_chat(api, llmProvider='byollm')

        assert 'llmApiKey' not in fake.payload

    def test_byollm_only(self, api, backend):
        """Should always forward the key and stored model under byollm_only."""
        configure('byollm_only', defaultModel='gpt-4o', provider='openai')
        fake = backend(json_answer)

        post_chat(api, llmModel='something-else')

        assert fake.payload['llmApiKey'] == RAW_KEY
        assert fake.payload['llmModel'] == 'gpt-4o'
        assert fake.payload['llmProvider'] == 'openai'

    def test_configuration_read_per_request(self, api, backend):
        """Should pick up configuration changes without restart."""
        fake = backend(json_answer)
        post_chat(api, llmProvider='byollm')
        configure('byollm_only')
        post_chat(api)

        assert 'llmApiKey' not in json.loads(fake.requests[0].content)
        assert json.loads(fake.requests[1].content)['llmApiKey'] == RAW_KEY

    def test_database_error_falls_back_to_aegis(self, api, backend):
        """Should answer with AEGIS when the configuration cannot be read."""
        fake = backend(json_answer)

        with patch('apps.chat.views.store.get_internal', side_effect=DatabaseError('down')):
            response = post_chat(api, llmProvider='byollm')

        assert response.status_code == 200
        assert 'llmApiKey' not in fake.payload

    def test_undecryptable_key(self, api, backend):
        """Should fail generically and never contact the backend."""
        LLMConfiguration.objects.create(
            tenant_id='tenant-a', api_key_encrypted='fernet1:garbage', policy='byollm_only'
        )
        fake = backend(json_answer)

        response = post_chat(api)

        assert response.status_code == 500
        assert response.json() == {
            'success': False,
            'error': 'Failed to process chat request',
            'code': 'INTERNAL_ERROR',
            'canRetry': False,
        }
        assert fake.requests == []


# ============================================================================
# Relay
# ============================================================================

class TestRelay:
    """Tests for handing the backend response back to the client."""

    def test_json_relayed_verbatim(self, api, backend):
        """Should return the backend JSON body unchanged."""
        backend(json_answer)

        response = post_chat(api, stream=False)

        assert response.status_code == 200
        assert response.json()['data']['answer'] == 'Two years.'

    def test_event_stream_relayed(self, api, backend):
        """Should relay SSE frames with streaming headers."""
        body = sse(
            ('status', {'stage': 'retrieving'}),
            ('token', {'text': 'Two '}),
            ('token', {'text': 'years.'}),
            ('done', {'answer': 'Two years.'}),
        )
        backend(lambda r: httpx.Response(200, headers={'content-type': 'text/event-stream'}, content=body))

        response = post_chat(api)

        assert response.streaming
        assert response['Cache-Control'] == 'no-cache'
        assert response['X-Accel-Buffering'] == 'no'
        assert read_stream(response) == body

    def test_json_echoing_key_is_redacted(self, api, backend):
        """Should mask the forwarded key if the backend echoes it."""
        configure('byollm_only')
        backend(lambda r: httpx.Response(200, json={'success': True, 'debug': RAW_KEY}))

        response = post_chat(api)
        content = response.content.decode()

        assert RAW_KEY not in content
        assert MASKED_RAW_KEY in content

    def test_stream_echoing_split_key_is_redacted(self, api, backend):
        """Should catch a key split across network reads."""
        configure('byollm_only')
        frame = f'event: token\ndata: {{"text": "{RAW_KEY}"}}\n\n'.encode()
        chunks = [frame[:30], frame[30:], b'event: done\ndata: {}\n\n']
        backend(lambda r: httpx.Response(
            200, headers={'content-type': 'text/event-stream'}, content=delivered(chunks)
        ))

        response = post_chat(api)
        streamed = read_stream(response).decode()

        assert RAW_KEY not in streamed
        assert MASKED_RAW_KEY in streamed
        assert streamed.endswith('event: done\ndata: {}\n\n')

    def test_interrupted_stream_ends_with_error_frame(self, api, backend):
        """Should close a broken stream with a retryable error event."""
        async def chunks():
            yield b'event: token\ndata: {"text": "Two"}\n\n'
            raise httpx.ReadError('connection reset')

        backend(lambda r: httpx.Response(200, headers={'content-type': 'text/event-stream'}, content=chunks()))

        response = post_chat(api)
        streamed = read_stream(response).decode()

        assert streamed.startswith('event: token')
        assert 'event: error' in streamed
        assert '"canRetry": true' in streamed

    def test_frames_released_as_they_arrive(self):
        """Should yield each frame before the next one is read from the backend."""
        read = []

        async def frames():
            for i in range(3):
                read.append(i)
                yield f'event: token\ndata: {{"text": "{i}"}}\n\n'.encode()

        async def first_part():
            client = httpx.AsyncClient(transport=httpx.MockTransport(
                lambda r: httpx.Response(200, headers={'content-type': 'text/event-stream'}, content=frames())
            ))
            upstream = await client.send(client.build_request('POST', 'http://rag.test/api/chat'), stream=True)
            relayed = await relay(client, upstream, RAW_KEY)
            async for part in relayed.streaming_content:
                return len(read), part

        count, part = asyncio.run(first_part())

        assert count == 1
        assert part == b'event: token\ndata: {"text": "0"}\n\n'


class TestOversizedFrames:
    """Tests for redacting frames released before their delimiter."""

    def test_oversized_frame_never_splits_key(self):
        """Should not release part of a key when flushing a frame without a delimiter."""
        redactor = Redactor(RAW_KEY)
        key = RAW_KEY.encode()
        total = MAX_PENDING_BYTES + 100
        offset = total - len(key) - 1
        chunk = b'x' * offset + key + b'x'

        streamed = redactor.feed(chunk) + redactor.feed(b'\n\n') + redactor.flush()

        assert key not in streamed
        assert MASKED_RAW_KEY.encode() in streamed

    def test_oversized_frame_keeps_key_prefix(self):
        """Should hold back a possible key prefix at the end of an oversized frame."""
        redactor = Redactor(RAW_KEY)
        key = RAW_KEY.encode()
        chunk = b'x' * (MAX_PENDING_BYTES + 100) + key[:4]

        streamed = redactor.feed(chunk) + redactor.feed(key[4:] + b'\n\n') + redactor.flush()

        assert key not in streamed
        assert streamed.endswith(MASKED_RAW_KEY.encode() + b'\n\n')


# ============================================================================
# Failures
# ============================================================================

class TestFailures:
    """Tests for failure bodies and canRetry."""

    def test_backend_error_keeps_status_and_hint(self, api, backend):
        """Should pass through the backend's status and canRetry."""
        backend(lambda r: httpx.Response(400, json={'error': 'bad history', 'canRetry': False}))

        response = post_chat(api)

        assert response.status_code == 400
        assert response.json()['success'] is False
        assert response.json()['canRetry'] is False

    def test_backend_error_defaults_to_retryable(self, api, backend):
        """Should default canRetry to true."""
        backend(lambda r: httpx.Response(503, text='unavailable'))

        response = post_chat(api)

        assert response.status_code == 503
        assert response.json()['canRetry'] is True
        assert response.json()['response'] == 'I encountered an issue processing your request. Please try again.'

    def test_structured_tool_error(self, api, backend):
        """Should rewrite structured tool errors for the user."""
        backend(lambda r: httpx.Response(403, json={'error': {
            'code': 'PERMISSION_DENIED', 'message': 'nope', 'recoverable': False,
            'suggestion': 'Ask an admin.',
        }}))

        response = post_chat(api)
        body = response.json()

        assert body['response'] == "You don't have permission to do that. Ask an admin."
        assert body['canRetry'] is False

    def test_error_body_echoing_key_is_redacted(self, api, backend):
        """Should not leak the key through a failure body."""
        configure('byollm_only')
        backend(lambda r: httpx.Response(401, json={
            'error': {'code': 'X', 'message': f'bad key {RAW_KEY}', 'recoverable': False, 'suggestion': ''}
        }))

        response = post_chat(api)

        assert RAW_KEY not in response.content.decode()

    def test_malformed_success_body(self, api, backend):
        """Should turn an unparseable 2xx body into a 502."""
        backend(lambda r: httpx.Response(200, text='<html>oops</html>'))

        response = post_chat(api)

        assert response.status_code == 502
        assert response.json()['canRetry'] is True

    def test_timeout(self, api, backend):
        """Should return 504 with canRetry true on a backend timeout."""
        def respond(request):
            raise httpx.ReadTimeout('slow', request=request)

        backend(respond)
        response = post_chat(api)

        assert response.status_code == 504
        assert response.json()['canRetry'] is True

    def test_unreachable(self, api, backend):
        """Should return 502 with canRetry true when the backend is down."""
        def respond(request):
            raise httpx.ConnectError('refused', request=request)

        backend(respond)
        response = post_chat(api)

        assert response.status_code == 502
        assert response.json()['canRetry'] is True
