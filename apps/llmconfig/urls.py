"""
LLM settings URL routing.
"""
from django.urls import path

from apps.llmconfig.views import LLMSettingsView, LLMConnectionTestView

urlpatterns = [
    path('llm', LLMSettingsView.as_view(), name='llm-settings'),
    path('llm/test', LLMConnectionTestView.as_view(), name='llm-settings-test'),
]
