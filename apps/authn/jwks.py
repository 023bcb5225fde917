"""
JWKS fetching and caching for Keycloak JWT validation.
"""
import logging
import time
import threading
from typing import Optional, Dict, Any

import requests
from django.conf import settings

logger = logging.getLogger(__name__)

# Minimum seconds between forced refetches on an unknown kid
REFETCH_DEBOUNCE_SECONDS = 5
JWKS_FETCH_TIMEOUT = 10


class JWKSCache:
    """
    Thread-safe JWKS cache with TTL and a debounced refetch on key rotation.
    """

    def __init__(self, jwks_url: str, cache_ttl: int = 600):
        self._jwks_url = jwks_url
        self._cache_ttl = cache_ttl
        self._keys: Dict[str, Dict[str, Any]] = {}
        self._last_fetch: float = 0
        self._lock = threading.RLock()

    def _refresh(self):
        logger.debug(f"Fetching JWKS from {self._jwks_url}")
        try:
            response = requests.get(self._jwks_url, timeout=JWKS_FETCH_TIMEOUT)
            response.raise_for_status()
            jwks = response.json()
        except requests.RequestException as e:
            logger.error(f"Failed to fetch JWKS: {e}")
            raise

        self._keys = {k['kid']: k for k in jwks.get('keys', []) if k.get('kid')}
        self._last_fetch = time.time()
        logger.info(f"Fetched {len(self._keys)} keys from JWKS endpoint")

    def _age(self) -> float:
        return time.time() - self._last_fetch

    def get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """
        Get a public key by its key ID (kid).

        An unknown kid triggers one refetch (at most every few seconds) in
        case the realm rotated its signing keys.
        """
        with self._lock:
            if not self._keys or self._age() >= self._cache_ttl:
                self._refresh()

            if kid not in self._keys and self._age() > REFETCH_DEBOUNCE_SECONDS:
                logger.info(f"Key {kid} not found, refetching JWKS for potential key rotation")
                self._refresh()

            key = self._keys.get(kid)
            if key is None:
                logger.warning(f"Key {kid} not found in JWKS")
            return key

    def clear(self):
        with self._lock:
            self._keys = {}
            self._last_fetch = 0


# Global singleton instance
_jwks_cache: Optional[JWKSCache] = None


def get_jwks_cache() -> JWKSCache:
    """Get the global JWKS cache instance."""
    global _jwks_cache
    if _jwks_cache is None:
        _jwks_cache = JWKSCache(
            jwks_url=settings.KC_JWKS_URL,
            cache_ttl=settings.KC_JWKS_CACHE_TTL
        )
    return _jwks_cache
