"""
Tests for the credential vault and secret masking.
"""
import pytest
from cryptography.fernet import Fernet
from django.core.exceptions import ImproperlyConfigured

from apps.llmconfig.crypto import (
    FERNET_TAG,
    MAX_ENCRYPT_ATTEMPTS,
    CredentialFormatError,
    CredentialVault,
    CredentialVaultError,
    FernetKeyManager,
    KeyManager,
    UnknownFormatError,
    decrypt,
    encrypt,
    get_vault,
    reset_vault,
)
from apps.llmconfig.masking import mask


def make_vault(*keys):
    keys = keys or (Fernet.generate_key(),)
    return CredentialVault({FERNET_TAG: FernetKeyManager(list(keys))}, active_tag=FERNET_TAG)


class EchoManager(KeyManager):
    """A broken scheme that 'encrypts' by returning the plaintext."""

    def __init__(self):
        self.calls = 0

    def encrypt(self, plaintext: bytes) -> str:
        self.calls += 1
        return plaintext.decode('utf-8')

    def decrypt(self, body: str) -> bytes:
        return body.encode('utf-8')


class FlakyManager(KeyManager):
    """Leaks the plaintext on the first attempt only."""

    def __init__(self):
        self.calls = 0

    def encrypt(self, plaintext: bytes) -> str:
        self.calls += 1
        if self.calls == 1:
            return plaintext.decode('utf-8')
        return 'opaque-body'

    def decrypt(self, body: str) -> bytes:
        return b'secret-value-123'


# ============================================================================
# Masking
# ============================================================================

class TestMask:
    """Tests for the display form of secrets."""

    def test_long_secret_keeps_prefix_and_suffix(self):
        """Should keep the first 5 and last 3 characters."""
        assert mask('sk-raw-api-key-1234567890') == 'sk-ra***890'

    def test_ten_characters_is_partially_masked(self):
        """Should partially mask at exactly 10 characters."""
        assert mask('0123456789') == '01234***789'

    def test_short_secret_fully_masked(self):
        """Should fully redact secrets under 10 characters."""
        assert mask('012345678') == '***'
        assert mask('abc') == '***'
        assert mask('') == '***'


# ============================================================================
# Vault
# ============================================================================

class TestCredentialVault:
    """Tests for encrypt/decrypt through the tagged vault."""

    def test_round_trip(self):
        """Should decrypt back to the original key."""
        vault = make_vault()
        ciphertext = vault.encrypt('sk-raw-api-key-1234567890')
        assert vault.decrypt(ciphertext) == 'sk-raw-api-key-1234567890'

    def test_ciphertext_is_tagged_and_opaque(self):
        """Should prefix the scheme tag and never contain the plaintext."""
        vault = make_vault()
        ciphertext = vault.encrypt('sk-raw-api-key-1234567890')

        assert ciphertext.startswith(f'{FERNET_TAG}:')
        assert 'sk-raw-api-key-1234567890' not in ciphertext

    def test_non_ascii_secret(self):
        """Should preserve non-ASCII text."""
        vault = make_vault()
        assert vault.decrypt(vault.encrypt('clé-секрет-🔑')) == 'clé-секрет-🔑'

    def test_encryptions_differ(self):
        """Should produce a fresh ciphertext each time."""
        vault = make_vault()
        assert vault.encrypt('same-secret') != vault.encrypt('same-secret')

    def test_untagged_ciphertext_rejected(self):
        """Should raise UnknownFormatError for legacy untagged values."""
        vault = make_vault()
        with pytest.raises(UnknownFormatError):
            vault.decrypt('plain-old-value')

    def test_unknown_tag_rejected(self):
        """Should raise UnknownFormatError for an unregistered tag."""
        vault = make_vault()
        with pytest.raises(UnknownFormatError):
            vault.decrypt('kms9:abcdef')

    def test_corrupt_body_rejected(self):
        """Should raise CredentialVaultError for a tampered body."""
        vault = make_vault()
        with pytest.raises(CredentialVaultError):
            vault.decrypt(f'{FERNET_TAG}:not-a-fernet-token')

    def test_errors_share_a_base_class(self):
        """Callers can catch every decrypt failure as CredentialFormatError."""
        assert issubclass(UnknownFormatError, CredentialFormatError)
        assert issubclass(CredentialVaultError, CredentialFormatError)

    def test_wrong_key_rejected(self):
        """Should not decrypt with a different key."""
        ciphertext = make_vault().encrypt('sk-raw-api-key-1234567890')
        with pytest.raises(CredentialVaultError):
            make_vault().decrypt(ciphertext)

    def test_key_rotation(self):
        """Old ciphertexts stay readable when the old key is listed second."""
        old_key, new_key = Fernet.generate_key(), Fernet.generate_key()
        ciphertext = make_vault(old_key).encrypt('sk-raw-api-key-1234567890')

        rotated = make_vault(new_key, old_key)
        assert rotated.decrypt(ciphertext) == 'sk-raw-api-key-1234567890'

    def test_registered_scheme_is_decryptable(self):
        """Should dispatch on the tag to an additionally registered manager."""
        vault = make_vault()
        vault.register('echo', EchoManager())
        assert vault.decrypt('echo:legacy-value') == 'legacy-value'

    def test_active_tag_must_be_registered(self):
        """Should refuse a vault whose active scheme is missing."""
        with pytest.raises(CredentialVaultError):
            CredentialVault({}, active_tag=FERNET_TAG)

    def test_leaking_scheme_is_refused(self):
        """Should give up rather than store a ciphertext containing the key."""
        manager = EchoManager()
        vault = CredentialVault({'echo': manager}, active_tag='echo')

        with pytest.raises(CredentialVaultError):
            vault.encrypt('secret-value-123')
        assert manager.calls == MAX_ENCRYPT_ATTEMPTS

    def test_leak_is_retried(self):
        """Should retry when one attempt leaks the plaintext."""
        manager = FlakyManager()
        vault = CredentialVault({'flaky': manager}, active_tag='flaky')

        assert vault.encrypt('secret-value-123') == 'flaky:opaque-body'
        assert manager.calls == 2

    def test_tag_of(self):
        """Should read the tag, or None without a separator."""
        assert CredentialVault.tag_of('fernet1:abc') == 'fernet1'
        assert CredentialVault.tag_of('abc') is None
        assert CredentialVault.tag_of(None) is None


class TestVaultFromSettings:
    """Tests for the process-wide vault."""

    def test_module_functions_round_trip(self):
        """Should encrypt and decrypt with the configured key."""
        assert decrypt(encrypt('sk-raw-api-key-1234567890')) == 'sk-raw-api-key-1234567890'

    def test_comma_separated_keys_rotate(self, settings):
        """Should decrypt with any configured key and encrypt with the first."""
        old_key = settings.LLM_KEY_ENCRYPTION_KEY
        ciphertext = encrypt('sk-raw-api-key-1234567890')

        settings.LLM_KEY_ENCRYPTION_KEY = f'{Fernet.generate_key().decode()},{old_key}'
        reset_vault()
        assert decrypt(ciphertext) == 'sk-raw-api-key-1234567890'

    def test_development_fallback_key(self, settings):
        """Should derive a stable key from SECRET_KEY when none is set."""
        settings.DEBUG = True
        settings.LLM_KEY_ENCRYPTION_KEY = ''
        reset_vault()
        ciphertext = encrypt('sk-raw-api-key-1234567890')

        reset_vault()
        assert get_vault().decrypt(ciphertext) == 'sk-raw-api-key-1234567890'

    def test_missing_key_outside_debug(self, settings):
        """Should refuse to derive a key when DEBUG is off."""
        settings.DEBUG = False
        settings.LLM_KEY_ENCRYPTION_KEY = ''
        reset_vault()

        with pytest.raises(ImproperlyConfigured):
            encrypt('sk-raw-api-key-1234567890')
