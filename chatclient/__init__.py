"""
Python client for the VaultChat query pipeline.
"""
from .config import ClientSettings
from .confirmation import ConfirmationGate, Resolution
from .session import ChatSession
from .state import ChatMessage, ConfirmationRequest, Phase, SessionState

__all__ = [
    'ChatMessage',
    'ChatSession',
    'ClientSettings',
    'ConfirmationGate',
    'ConfirmationRequest',
    'Phase',
    'Resolution',
    'SessionState',
]
