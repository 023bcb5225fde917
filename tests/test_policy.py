"""
Tests for routing policy evaluation and effective request construction.
"""
import pytest
from unittest.mock import MagicMock

from apps.chat.policy import (
    DECISION_TABLE,
    MAX_QUERY_LENGTH,
    ChatRequest,
    ChatValidationError,
    ModelSource,
    Route,
    build_effective_request,
    decide_route,
)
from apps.llmconfig.crypto import CredentialVaultError
from apps.llmconfig.models import LLMConfiguration


RAW_KEY = 'sk-raw-api-key-1234567890'


def make_config(policy='choice', provider='openrouter', default_model='anthropic/claude-3.5-sonnet',
                base_url=None):
    return LLMConfiguration(
        tenant_id='tenant-a',
        provider=provider,
        api_key_encrypted='fernet1:ciphertext',
        policy=policy,
        default_model=default_model,
        base_url=base_url,
    )


def make_request(**body):
    body.setdefault('query', 'What is the NDA term?')
    return ChatRequest.from_body(body)


@pytest.fixture
def decrypt():
    return MagicMock(return_value=RAW_KEY)


# ============================================================================
# ChatRequest validation
# ============================================================================

class TestChatRequest:
    """Tests for client request validation."""

    def test_minimal_request(self):
        """Should default to streaming, no history and no BYOLLM."""
        request = make_request()

        assert request.query == 'What is the NDA term?'
        assert request.history == []
        assert request.stream is True
        assert request.privilege_mode is False
        assert request.wants_byollm is False

    def test_query_is_trimmed(self):
        """Should strip surrounding whitespace."""
        assert make_request(query='  hello  ').query == 'hello'

    @pytest.mark.parametrize('body', [
        {},
        {'query': ''},
        {'query': '   '},
        {'query': 42},
    ])
    def test_query_required(self, body):
        """Should reject missing or blank queries."""
        with pytest.raises(ChatValidationError):
            ChatRequest.from_body(body)

    def test_query_too_long(self):
        """Should reject queries over the maximum length."""
        with pytest.raises(ChatValidationError):
            make_request(query='x' * (MAX_QUERY_LENGTH + 1))

    def test_non_object_body(self):
        """Should reject a JSON array body."""
        with pytest.raises(ChatValidationError):
            ChatRequest.from_body(['query'])

    def test_history_parsed(self):
        """Should keep role/content pairs in order."""
        request = make_request(history=[
            {'role': 'user', 'content': 'hi'},
            {'role': 'assistant', 'content': 'hello'},
        ])
        assert [m.to_dict() for m in request.history] == [
            {'role': 'user', 'content': 'hi'},
            {'role': 'assistant', 'content': 'hello'},
        ]

    @pytest.mark.parametrize('history', [
        'not a list',
        [{'role': 'robot', 'content': 'x'}],
        [{'role': 'user'}],
        ['text'],
    ])
    def test_invalid_history(self, history):
        """Should reject malformed history."""
        with pytest.raises(ChatValidationError):
            make_request(history=history)

    def test_non_boolean_flags(self):
        """Should reject non-boolean stream/privilegeMode."""
        with pytest.raises(ChatValidationError):
            make_request(stream='yes')

    @pytest.mark.parametrize('provider,expected', [
        ('byollm', True),
        ('openai', True),
        ('aegis', False),
        ('AEGIS', False),
        (None, False),
        ('', False),
    ])
    def test_wants_byollm(self, provider, expected):
        """Any provider other than the platform model asks for BYOLLM."""
        assert make_request(llmProvider=provider).wants_byollm is expected


# ============================================================================
# Decision table
# ============================================================================

class TestDecideRoute:
    """Tests for the routing decision table."""

    @pytest.mark.parametrize('policy,present,wants,route,source', [
        (None, False, False, Route.AEGIS, None),
        (None, False, True, Route.AEGIS, None),
        ('aegis_only', True, False, Route.AEGIS, None),
        ('aegis_only', True, True, Route.AEGIS, None),
        ('byollm_only', True, False, Route.BYOLLM, ModelSource.STORED),
        ('byollm_only', True, True, Route.BYOLLM, ModelSource.STORED),
        ('choice', True, True, Route.BYOLLM, ModelSource.CLIENT_OVERRIDE),
        ('choice', True, False, Route.AEGIS, None),
    ])
    def test_table(self, policy, present, wants, route, source):
        """Should return the documented route for every input combination."""
        assert decide_route(policy, present, wants) == (route, source)

    def test_table_is_complete(self):
        """Should cover all eight reachable combinations."""
        assert len(DECISION_TABLE) == 8

    def test_policy_without_config_is_aegis(self):
        """A policy value is ignored when no configuration exists."""
        assert decide_route('byollm_only', False, True) == (Route.AEGIS, None)

    def test_unknown_policy_falls_back_to_aegis(self):
        """Should never route to BYOLLM on an unknown policy."""
        assert decide_route('weird', True, True) == (Route.AEGIS, None)


# ============================================================================
# Effective request
# ============================================================================

class TestBuildEffectiveRequest:
    """Tests for the request forwarded to the RAG backend."""

    def test_no_config_is_aegis(self, decrypt):
        """Should forward no BYOLLM fields without a configuration."""
        effective = build_effective_request(None, make_request(llmProvider='byollm'), decrypt)

        assert effective.route is Route.AEGIS
        payload = effective.to_payload()
        assert 'llmApiKey' not in payload
        assert 'llmProvider' not in payload
        assert 'llmModel' not in payload
        assert 'llmBaseUrl' not in payload
        decrypt.assert_not_called()

    def test_aegis_only_never_decrypts(self, decrypt):
        """Should not touch the key when the policy forbids BYOLLM."""
        effective = build_effective_request(
            make_config(policy='aegis_only'), make_request(llmProvider='byollm'), decrypt
        )

        assert effective.route is Route.AEGIS
        assert effective.llm_api_key is None
        decrypt.assert_not_called()

    def test_choice_without_byollm_request(self, decrypt):
        """Should use the platform model when the client does not opt in."""
        effective = build_effective_request(make_config(), make_request(), decrypt)

        assert effective.route is Route.AEGIS
        decrypt.assert_not_called()

    def test_choice_with_client_model(self, decrypt):
        """Should forward the stored key and provider with the client's model."""
        effective = build_effective_request(
            make_config(),
            make_request(llmProvider='byollm', llmModel='openai/gpt-4o'),
            decrypt,
        )

        assert effective.to_payload() == {
            'query': 'What is the NDA term?',
            'history': [],
            'privilegeMode': False,
            'stream': True,
            'llmProvider': 'openrouter',
            'llmModel': 'openai/gpt-4o',
            'llmApiKey': RAW_KEY,
        }
        decrypt.assert_called_once_with('fernet1:ciphertext')

    def test_choice_without_client_model_uses_stored(self, decrypt):
        """Should fall back to the stored default model."""
        effective = build_effective_request(make_config(), make_request(llmProvider='byollm'), decrypt)
        assert effective.llm_model == 'anthropic/claude-3.5-sonnet'

    def test_byollm_only_ignores_client_model(self, decrypt):
        """Should always forward the stored model under byollm_only."""
        effective = build_effective_request(
            make_config(policy='byollm_only'),
            make_request(llmModel='openai/gpt-4o'),
            decrypt,
        )

        assert effective.route is Route.BYOLLM
        assert effective.llm_model == 'anthropic/claude-3.5-sonnet'
        assert effective.llm_api_key == RAW_KEY

    def test_provider_is_always_stored(self, decrypt):
        """Should ignore a client-supplied provider name."""
        effective = build_effective_request(
            make_config(provider='anthropic'), make_request(llmProvider='openai'), decrypt
        )
        assert effective.llm_provider == 'anthropic'

    def test_base_url_forwarded(self, decrypt):
        """Should forward a stored base URL on BYOLLM routes."""
        effective = build_effective_request(
            make_config(policy='byollm_only', base_url='https://llm.internal/v1'),
            make_request(),
            decrypt,
        )
        assert effective.to_payload()['llmBaseUrl'] == 'https://llm.internal/v1'

    def test_missing_model_is_omitted(self, decrypt):
        """Should leave llmModel out when neither side names one."""
        effective = build_effective_request(
            make_config(policy='byollm_only', default_model=None), make_request(), decrypt
        )
        assert 'llmModel' not in effective.to_payload()

    def test_history_and_flags_preserved(self, decrypt):
        """Should carry history, stream and privilegeMode through."""
        effective = build_effective_request(
            None,
            make_request(history=[{'role': 'user', 'content': 'hi'}], stream=False, privilegeMode=True),
            decrypt,
        )
        payload = effective.to_payload()

        assert payload['history'] == [{'role': 'user', 'content': 'hi'}]
        assert payload['stream'] is False
        assert payload['privilegeMode'] is True

    def test_decrypt_failure_propagates(self):
        """Should surface vault failures to the caller."""
        failing = MagicMock(side_effect=CredentialVaultError('bad'))
        with pytest.raises(CredentialVaultError):
            build_effective_request(make_config(policy='byollm_only'), make_request(), failing)

    def test_key_not_in_repr(self, decrypt):
        """Should keep the plaintext key out of the dataclass repr."""
        effective = build_effective_request(make_config(policy='byollm_only'), make_request(), decrypt)
        assert RAW_KEY not in repr(effective)
