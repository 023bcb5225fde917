"""
Per-tenant LLM configuration model.

Holds the tenant's provider choice, the encrypted API key, the routing
policy and the diagnostics of the last connectivity test.
"""
from django.db import models


class LLMProvider(models.TextChoices):
    """Providers a tenant can bring their own key for."""
    OPENROUTER = 'openrouter', 'OpenRouter'
    OPENAI = 'openai', 'OpenAI'
    ANTHROPIC = 'anthropic', 'Anthropic'
    GOOGLE = 'google', 'Google'


class RoutingPolicy(models.TextChoices):
    """Which backend answers chat requests for a tenant."""
    CHOICE = 'choice', 'User chooses per request'
    BYOLLM_ONLY = 'byollm_only', 'Always use the tenant model'
    AEGIS_ONLY = 'aegis_only', 'Always use the platform model'


class LLMConfiguration(models.Model):
    """
    A tenant's bring-your-own-LLM configuration.

    At most one row exists per tenant. The API key is only ever stored as
    vault ciphertext; use apps.llmconfig.store to read or change it.
    """
    tenant_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Owning tenant identifier"
    )

    provider = models.CharField(
        max_length=32,
        choices=LLMProvider.choices,
        default=LLMProvider.OPENROUTER,
    )
    api_key_encrypted = models.TextField(
        help_text="Tagged vault ciphertext of the provider API key"
    )

    # Optional routing hints
    base_url = models.CharField(max_length=500, null=True, blank=True)
    default_model = models.CharField(max_length=200, null=True, blank=True)

    policy = models.CharField(
        max_length=20,
        choices=RoutingPolicy.choices,
        default=RoutingPolicy.CHOICE,
    )

    # Connectivity test diagnostics (advisory only)
    last_tested_at = models.DateTimeField(null=True, blank=True)
    last_test_result = models.CharField(max_length=20, null=True, blank=True)
    last_test_latency = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Latency of the last connectivity test in milliseconds"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'llm_configurations'

    def __str__(self):
        return f"LLMConfiguration(tenant={self.tenant_id}, provider={self.provider}, policy={self.policy})"

    def clear_diagnostics(self):
        self.last_tested_at = None
        self.last_test_result = None
        self.last_test_latency = None
