"""
Shared fixtures for the VaultChat test suite.
"""
import pytest
from unittest.mock import patch

from cryptography.fernet import Fernet
from django.test import Client

from apps.authn.jwt_validator import TokenClaims
from apps.llmconfig.crypto import reset_vault

TEST_ENCRYPTION_KEY = Fernet.generate_key().decode()
RAW_KEY = 'sk-raw-api-key-1234567890'
MASKED_RAW_KEY = 'sk-ra***890'


@pytest.fixture(autouse=True)
def test_settings(settings):
    """Deterministic settings with no Redis, SMTP or real backend."""
    settings.DISABLE_RATE_LIMITING = True
    settings.LLM_KEY_ENCRYPTION_KEY = TEST_ENCRYPTION_KEY
    settings.RAG_BACKEND_URL = 'http://rag.test'
    settings.RAG_BACKEND_INTERNAL_SECRET = ''
    settings.EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
    settings.VONAGE_API_KEY = ''
    settings.VONAGE_API_SECRET = ''
    reset_vault()
    yield settings
    reset_vault()


def make_claims(sub='user-1', tenant_id='tenant-a'):
    return TokenClaims(
        sub=sub,
        preferred_username='alice',
        email='alice@example.com',
        roles=['user'],
        tenant_id=tenant_id,
        raw_claims={'sub': sub, 'tenant_id': tenant_id},
    )


@pytest.fixture
def claims():
    return make_claims()


@pytest.fixture
def authenticated(claims):
    """Accept any bearer token as the claims fixture."""
    with patch('apps.authn.middleware.validate_token', return_value=claims) as mock:
        yield mock


@pytest.fixture
def api(authenticated):
    """Django test client that sends a bearer token on every request."""
    return Client(HTTP_AUTHORIZATION='Bearer test-token')
