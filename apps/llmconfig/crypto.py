"""
Credential vault for tenant-supplied LLM API keys.

Ciphertexts are stored as "<tag>:<body>" where the tag names the scheme
that produced the body. New ciphertexts always use the active scheme;
older tags stay decryptable as long as their key manager is registered.
"""
import base64
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)

FERNET_TAG = 'fernet1'
TAG_SEPARATOR = ':'

# Plaintexts shorter than this can appear in any base64 token by chance
MIN_GUARDED_LENGTH = 6
MAX_ENCRYPT_ATTEMPTS = 5


class CredentialFormatError(Exception):
    """Base class for ciphertexts the vault cannot turn back into a key."""
    pass


class UnknownFormatError(CredentialFormatError):
    """Raised when a ciphertext carries no tag or an unregistered tag."""
    pass


class CredentialVaultError(CredentialFormatError):
    """Raised when encryption or decryption fails for a known scheme."""
    pass


class KeyManager(ABC):
    """A single encryption scheme the vault can delegate to."""

    @abstractmethod
    def encrypt(self, plaintext: bytes) -> str:
        pass

    @abstractmethod
    def decrypt(self, body: str) -> bytes:
        pass


class FernetKeyManager(KeyManager):
    """
    Fernet (AES-128-CBC + HMAC-SHA256) key manager.

    Accepts one or more urlsafe base64 keys. The first key encrypts, all
    keys are tried on decrypt, which allows key rotation without
    re-encrypting stored rows up front.
    """

    def __init__(self, keys):
        if not keys:
            raise CredentialVaultError("At least one Fernet key is required")
        self._cipher = MultiFernet([Fernet(k) for k in keys])

    def encrypt(self, plaintext: bytes) -> str:
        return self._cipher.encrypt(plaintext).decode('ascii')

    def decrypt(self, body: str) -> bytes:
        try:
            return self._cipher.decrypt(body.encode('ascii'))
        except (InvalidToken, UnicodeEncodeError) as e:
            raise CredentialVaultError("Ciphertext could not be decrypted") from e


class CredentialVault:
    """Tag-dispatching front end over registered key managers."""

    def __init__(self, managers: Dict[str, KeyManager], active_tag: str):
        if active_tag not in managers:
            raise CredentialVaultError(f"No key manager registered for tag '{active_tag}'")
        self._managers = dict(managers)
        self._active_tag = active_tag

    @property
    def active_tag(self) -> str:
        return self._active_tag

    def register(self, tag: str, manager: KeyManager):
        """Register an additional scheme so its ciphertexts can be decrypted."""
        self._managers[tag] = manager

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a secret with the active scheme.

        Args:
            plaintext: The secret to protect

        Returns:
            Tagged ciphertext, never containing the plaintext

        Raises:
            CredentialVaultError: If no acceptable ciphertext was produced
        """
        raw = plaintext.encode('utf-8', 'surrogatepass')
        manager = self._managers[self._active_tag]

        for _ in range(MAX_ENCRYPT_ATTEMPTS):
            ciphertext = f"{self._active_tag}{TAG_SEPARATOR}{manager.encrypt(raw)}"
            if ciphertext == plaintext:
                continue
            if len(plaintext) >= MIN_GUARDED_LENGTH and plaintext in ciphertext:
                continue
            return ciphertext

        raise CredentialVaultError("Could not produce a ciphertext free of the plaintext")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a tagged ciphertext.

        Raises:
            UnknownFormatError: If the tag is missing or not registered
            CredentialVaultError: If the body is corrupt for its scheme
        """
        tag = self.tag_of(ciphertext)
        if tag is None or tag not in self._managers:
            raise UnknownFormatError("Unrecognized credential format")

        body = ciphertext[len(tag) + len(TAG_SEPARATOR):]
        raw = self._managers[tag].decrypt(body)
        try:
            return raw.decode('utf-8', 'surrogatepass')
        except UnicodeDecodeError as e:
            raise CredentialVaultError("Decrypted credential is not valid text") from e

    @staticmethod
    def tag_of(ciphertext) -> Optional[str]:
        if not isinstance(ciphertext, str) or TAG_SEPARATOR not in ciphertext:
            return None
        tag = ciphertext.split(TAG_SEPARATOR, 1)[0]
        return tag or None


def _fernet_keys_from_settings():
    configured = getattr(settings, 'LLM_KEY_ENCRYPTION_KEY', '') or ''
    keys = [k.strip() for k in configured.split(',') if k.strip()]
    if keys:
        return keys

    if not settings.DEBUG:
        raise ImproperlyConfigured("LLM_KEY_ENCRYPTION_KEY must be set when DEBUG is off")

    # Development fallback: derive a stable key from SECRET_KEY
    logger.warning(
        "LLM_KEY_ENCRYPTION_KEY not set; deriving the credential key from SECRET_KEY"
    )
    digest = hashlib.sha256(settings.SECRET_KEY.encode('utf-8')).digest()
    return [base64.urlsafe_b64encode(digest)]


# Singleton instance
_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Get the process-wide credential vault."""
    global _vault
    if _vault is None:
        _vault = CredentialVault(
            managers={FERNET_TAG: FernetKeyManager(_fernet_keys_from_settings())},
            active_tag=FERNET_TAG,
        )
    return _vault


def reset_vault():
    """Drop the cached vault so settings changes take effect (tests)."""
    global _vault
    _vault = None


def encrypt(plaintext: str) -> str:
    return get_vault().encrypt(plaintext)


def decrypt(ciphertext: str) -> str:
    return get_vault().decrypt(ciphertext)
