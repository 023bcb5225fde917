"""
ASGI config for VaultChat backend.

Served by daphne so chat event streams are relayed without worker-level
buffering.
"""
import os

from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

application = get_asgi_application()
