"""
JWT validation for Keycloak tokens.

Resolves the caller's tenant from a configurable claim so every
downstream lookup is tenant-scoped.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Dict, Any

import jwt
from jwt import PyJWK
from django.conf import settings

from .jwks import get_jwks_cache

logger = logging.getLogger(__name__)

# Keycloak bookkeeping roles that carry no application meaning
INTERNAL_ROLES = {'offline_access', 'uma_authorization', 'default-roles-vaultchat'}


class JWTValidationError(Exception):
    """Raised when JWT validation fails."""
    pass


@dataclass
class TokenClaims:
    """Validated token claims."""
    sub: str  # Subject (user ID)
    preferred_username: str
    email: Optional[str]
    roles: List[str]
    tenant_id: str
    raw_claims: Dict[str, Any]


def extract_roles(claims: Dict[str, Any], client_id: str) -> List[str]:
    """
    Collect realm and client roles from Keycloak claims.

    Args:
        claims: The decoded JWT claims
        client_id: The client whose resource_access roles are included

    Returns:
        Sorted, deduplicated role names without Keycloak internals
    """
    roles = set(claims.get('realm_access', {}).get('roles', []))
    roles.update(
        claims.get('resource_access', {}).get(client_id, {}).get('roles', [])
    )
    return sorted(r for r in roles if r not in INTERNAL_ROLES)


def extract_tenant(claims: Dict[str, Any]) -> str:
    """
    Resolve the tenant a token acts for.

    Reads the claim named by TENANT_CLAIM. Single-tenant deployments that
    do not map the claim fall back to DEFAULT_TENANT_ID.
    """
    claim_name = getattr(settings, 'TENANT_CLAIM', 'tenant_id')
    tenant = claims.get(claim_name)
    if isinstance(tenant, list):
        tenant = tenant[0] if tenant else None
    if isinstance(tenant, str) and tenant.strip():
        return tenant.strip()
    return getattr(settings, 'DEFAULT_TENANT_ID', 'default')


def _check_audience(claims: Dict[str, Any]):
    aud = claims.get('aud', [])
    if isinstance(aud, str):
        aud = [aud]
    azp = claims.get('azp', '')
    expected = settings.KC_AUDIENCE

    if expected in aud or azp == expected:
        return

    message = f"Token audience mismatch. Expected: {expected}, got aud: {aud}, azp: {azp}"
    if getattr(settings, 'KC_ENFORCE_AUDIENCE', False):
        raise JWTValidationError("Invalid token audience")
    logger.warning(message)


def validate_token(token: str) -> TokenClaims:
    """
    Validate a Keycloak JWT token.

    Checks, in order: header kid, signing key from the JWKS cache, issuer
    against KC_VALID_ISSUERS, RS256 signature and expiry, then audience.

    Args:
        token: The JWT token string (without 'Bearer ' prefix)

    Returns:
        TokenClaims with validated claims and the resolved tenant

    Raises:
        JWTValidationError: If validation fails
    """
    try:
        kid = jwt.get_unverified_header(token).get('kid')
        if not kid:
            raise JWTValidationError("Token header missing 'kid'")

        jwk_data = get_jwks_cache().get_key(kid)
        if not jwk_data:
            raise JWTValidationError(f"Unknown key ID: {kid}")
        public_key = PyJWK.from_dict(jwk_data).key

        unverified_claims = jwt.decode(token, options={"verify_signature": False})
        token_issuer = unverified_claims.get('iss', '')
        valid_issuers = getattr(settings, 'KC_VALID_ISSUERS', [settings.KC_ISSUER])
        if token_issuer not in valid_issuers:
            logger.warning(f"Invalid issuer: {token_issuer}, expected one of: {valid_issuers}")
            raise JWTValidationError("Invalid token issuer")

        claims = jwt.decode(
            token,
            public_key,
            algorithms=['RS256'],
            issuer=token_issuer,
            options={
                'verify_signature': True,
                'verify_exp': True,
                'verify_iss': True,
                'verify_aud': False,  # checked in _check_audience
            }
        )
        _check_audience(claims)

        return TokenClaims(
            sub=claims.get('sub', ''),
            preferred_username=claims.get('preferred_username', ''),
            email=claims.get('email'),
            roles=extract_roles(claims, settings.KC_AUDIENCE),
            tenant_id=extract_tenant(claims),
            raw_claims=claims
        )

    except JWTValidationError:
        raise
    except jwt.ExpiredSignatureError:
        raise JWTValidationError("Token has expired")
    except jwt.InvalidIssuerError:
        raise JWTValidationError("Invalid token issuer")
    except jwt.InvalidTokenError as e:
        raise JWTValidationError(f"Invalid token: {e}")
    except Exception as e:
        logger.exception("Unexpected error during token validation")
        raise JWTValidationError(f"Token validation failed: {e}")
