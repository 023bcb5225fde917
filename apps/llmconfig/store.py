"""
LLM configuration store.

Two read paths exist on purpose:
- get_internal() returns the model row with the vault ciphertext and is
  only used while building a backend request.
- read() returns the external view in which the key is masked.

All writes go through write(), which encrypts a submitted key before it
touches the database.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from django.core.exceptions import ValidationError
from django.core.validators import URLValidator
from django.db import transaction
from django.utils import timezone

from .crypto import CredentialFormatError, decrypt, encrypt
from .masking import MASK, mask
from .models import LLMConfiguration, LLMProvider, RoutingPolicy

logger = logging.getLogger(__name__)

WRITABLE_FIELDS = ('provider', 'apiKey', 'baseUrl', 'defaultModel', 'policy')

MAX_API_KEY_LENGTH = 500
MAX_BASE_URL_LENGTH = 500
MAX_DEFAULT_MODEL_LENGTH = 200

_url_validator = URLValidator(schemes=['http', 'https'])


class ConfigurationError(Exception):
    """Raised when submitted configuration fields are rejected."""
    pass


def get_internal(tenant_id: str) -> Optional[LLMConfiguration]:
    """Return the tenant's configuration row (ciphertext included), or None."""
    return LLMConfiguration.objects.filter(tenant_id=tenant_id).first()


def masked_key_for(config: LLMConfiguration) -> str:
    """Decrypt the stored key only to mask it."""
    try:
        return mask(decrypt(config.api_key_encrypted))
    except CredentialFormatError as e:
        logger.warning(
            f"Stored credential for tenant {config.tenant_id} could not be decrypted: "
            f"{type(e).__name__}"
        )
        return MASK


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize(config: Optional[LLMConfiguration], masked_key: Optional[str] = None) -> Dict[str, Any]:
    """Build the external (masked) view of a configuration."""
    if config is None:
        return {'configured': False, 'policy': RoutingPolicy.CHOICE.value}

    return {
        'configured': True,
        'provider': config.provider,
        'maskedKey': masked_key if masked_key is not None else masked_key_for(config),
        'baseUrl': config.base_url,
        'defaultModel': config.default_model,
        'policy': config.policy,
        'lastTestedAt': _isoformat(config.last_tested_at),
        'lastTestResult': config.last_test_result,
        'lastTestLatency': config.last_test_latency,
    }


def read(tenant_id: str) -> Dict[str, Any]:
    """External read path: never exposes ciphertext or plaintext."""
    return serialize(get_internal(tenant_id))


def validate_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate a settings payload.

    Args:
        fields: Client-submitted fields (camelCase keys)

    Returns:
        The validated subset of fields that were supplied

    Raises:
        ConfigurationError: On unknown keys or invalid values
    """
    if not isinstance(fields, dict):
        raise ConfigurationError("Configuration must be a JSON object")

    unknown = sorted(set(fields) - set(WRITABLE_FIELDS))
    if unknown:
        raise ConfigurationError(f"Unknown configuration field(s): {', '.join(unknown)}")

    if 'provider' in fields and fields['provider'] not in LLMProvider.values:
        raise ConfigurationError(
            f"Invalid provider. Must be one of: {', '.join(LLMProvider.values)}"
        )

    if 'policy' in fields and fields['policy'] not in RoutingPolicy.values:
        raise ConfigurationError(
            f"Invalid policy. Must be one of: {', '.join(RoutingPolicy.values)}"
        )

    if 'apiKey' in fields:
        api_key = fields['apiKey']
        if not isinstance(api_key, str) or not api_key:
            raise ConfigurationError("API key is required")
        if len(api_key) > MAX_API_KEY_LENGTH:
            raise ConfigurationError(f"API key too long. Maximum {MAX_API_KEY_LENGTH} characters.")

    base_url = fields.get('baseUrl')
    if base_url is not None:
        if not isinstance(base_url, str) or len(base_url) > MAX_BASE_URL_LENGTH:
            raise ConfigurationError("Base URL must be a valid URL")
        try:
            _url_validator(base_url)
        except ValidationError:
            raise ConfigurationError("Base URL must be a valid URL")

    default_model = fields.get('defaultModel')
    if default_model is not None:
        if not isinstance(default_model, str) or len(default_model) > MAX_DEFAULT_MODEL_LENGTH:
            raise ConfigurationError(
                f"Default model must be a string of at most {MAX_DEFAULT_MODEL_LENGTH} characters"
            )

    return dict(fields)


def write(tenant_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create or update the tenant's configuration.

    Only supplied fields change. A new API key is encrypted before it is
    persisted and resets the connectivity diagnostics.

    Returns:
        The external (masked) view of the saved configuration

    Raises:
        ConfigurationError: If validation fails or a new record has no key
    """
    fields = validate_fields(fields)

    with transaction.atomic():
        config = (
            LLMConfiguration.objects.select_for_update()
            .filter(tenant_id=tenant_id)
            .first()
        )

        if config is None:
            if 'apiKey' not in fields:
                raise ConfigurationError("API key is required for initial configuration")
            config = LLMConfiguration(tenant_id=tenant_id)

        if 'provider' in fields:
            config.provider = fields['provider']
        if 'policy' in fields:
            config.policy = fields['policy']
        if 'baseUrl' in fields:
            config.base_url = fields['baseUrl']
        if 'defaultModel' in fields:
            config.default_model = fields['defaultModel']

        masked_key = None
        if 'apiKey' in fields:
            config.api_key_encrypted = encrypt(fields['apiKey'])
            config.clear_diagnostics()
            masked_key = mask(fields['apiKey'])

        config.save()

    logger.info(
        f"LLM configuration saved for tenant {tenant_id}: "
        f"provider={config.provider}, policy={config.policy}, key_updated={masked_key is not None}"
    )
    return serialize(config, masked_key=masked_key)


def delete(tenant_id: str) -> bool:
    """Remove the tenant's configuration. Returns True if a row was deleted."""
    deleted, _ = LLMConfiguration.objects.filter(tenant_id=tenant_id).delete()
    if deleted:
        logger.info(f"LLM configuration deleted for tenant {tenant_id}")
    return bool(deleted)


def record_test_result(tenant_id: str, result: str, latency_ms: Optional[int]) -> bool:
    """Store connectivity diagnostics on the tenant's configuration."""
    updated = LLMConfiguration.objects.filter(tenant_id=tenant_id).update(
        last_tested_at=timezone.now(),
        last_test_result=result,
        last_test_latency=latency_ms,
    )
    return bool(updated)
