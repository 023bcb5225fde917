"""
URL configuration for VaultChat backend.
"""
from django.urls import path, include

from apps.chat.health import healthz, readyz

urlpatterns = [
    # Health check endpoints (no auth)
    path('healthz', healthz, name='healthz'),
    path('readyz', readyz, name='readyz'),

    # API routes
    path('api/', include('apps.authn.urls')),
    path('api/', include('apps.chat.urls')),
    path('api/settings/', include('apps.llmconfig.urls')),
    path('api/actions/', include('apps.actions.urls')),
]
