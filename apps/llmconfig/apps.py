from django.apps import AppConfig


class LLMConfigConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.llmconfig'
    verbose_name = 'Tenant LLM Configuration'
