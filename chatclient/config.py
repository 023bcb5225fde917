"""
Client settings.
"""
import os
from dataclasses import dataclass
from typing import Dict, Optional

from dotenv import load_dotenv

DEFAULT_CONFIRMATION_TTL = 30.0


@dataclass
class ClientSettings:
    """Where the chat client talks to and how long it waits."""
    base_url: str = 'http://localhost:8000'
    token: Optional[str] = None
    timeout: float = 120.0
    confirmation_ttl: float = DEFAULT_CONFIRMATION_TTL
    chat_path: str = '/api/chat'
    thread_messages_path: str = '/api/thread/messages'
    thread_title_path: str = '/api/thread/generate-title'

    @classmethod
    def from_env(cls) -> 'ClientSettings':
        load_dotenv()
        return cls(
            base_url=os.getenv('VAULTCHAT_BASE_URL', cls.base_url),
            token=os.getenv('VAULTCHAT_TOKEN') or None,
            timeout=float(os.getenv('VAULTCHAT_TIMEOUT', str(cls.timeout))),
            confirmation_ttl=float(
                os.getenv('VAULTCHAT_CONFIRMATION_TTL', str(DEFAULT_CONFIRMATION_TTL))
            ),
        )

    def headers(self) -> Dict[str, str]:
        return {'Authorization': f'Bearer {self.token}'} if self.token else {}
