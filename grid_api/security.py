"""
Bearer token authentication for the grid endpoints.

Tokens are RS256 JWTs issued by the organisation's IdP and verified against
its published JWKS. The grid core never sees the token: it receives a
``Caller`` carrying the subject and the role set used by the registry gate.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from cachetools import TTLCache, cached
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicNumbers
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError
from jose.utils import base64url_decode

logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION
# ============================================================================

ISSUER = os.environ.get("JWT_ISSUER")
AUDIENCE = os.environ.get("JWT_AUDIENCE")

if not ISSUER or not AUDIENCE:
    raise ValueError(
        "JWT_ISSUER and JWT_AUDIENCE must be set in environment. "
        "Example: JWT_ISSUER=https://login.example.com/oauth2/default"
    )

JWKS_URL = os.environ.get("JWT_JWKS_URL") or f"{ISSUER.rstrip('/')}/v1/keys"

# Claim carrying the caller's roles; ASP.NET-issued tokens use the long URI form
ROLES_CLAIM = os.environ.get("JWT_ROLES_CLAIM", "roles")
ROLE_CLAIM_FALLBACKS = (
    "role",
    "groups",
    "http://schemas.microsoft.com/ws/2008/06/identity/claims/role",
)

MAX_MODULUS_BITS = 16384

bearer_scheme = HTTPBearer()

# Key sets are refreshed hourly, or immediately when a token names an unknown kid
JWKS_CACHE = TTLCache(maxsize=1, ttl=3600)


@dataclass(frozen=True)
class Caller:
    user_id: str
    roles: List[str] = field(default_factory=list)


# ============================================================================
# SIGNING KEYS
# ============================================================================

@cached(cache=JWKS_CACHE)
def get_jwks() -> Dict[str, Any]:
    """
    Download the IdP's JSON Web Key Set.

    Raises:
        HTTPException: 500 when the key set cannot be fetched
    """
    try:
        response = requests.get(JWKS_URL, timeout=5)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        logger.critical(f"JWKS download from {JWKS_URL} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication configuration error: JWKS unavailable",
        )
    logger.info(f"Loaded signing keys from {JWKS_URL}")
    return response.json()


def jwk_to_pem(jwk: Dict[str, Any]) -> str:
    """SubjectPublicKeyInfo PEM for an RSA JWK."""
    if jwk.get("kty") != "RSA":
        raise ValueError("Only RSA keys supported")

    modulus, exponent = (
        int.from_bytes(base64url_decode(jwk[part].encode()), "big") for part in ("n", "e")
    )
    if modulus.bit_length() > MAX_MODULUS_BITS:
        raise ValueError("Invalid RSA modulus size")

    pem = RSAPublicNumbers(exponent, modulus).public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return pem.decode()


def _find_key(kid: str) -> Optional[str]:
    match = next(
        (key for key in get_jwks().get("keys", []) if key.get("kid") == kid and key.get("kty") == "RSA"),
        None,
    )
    return jwk_to_pem(match) if match else None


def _signing_key_for(token: str) -> str:
    kid = jwt.get_unverified_header(token).get("kid")
    if not kid:
        raise JWTError("Missing 'kid' in token header")

    pem = _find_key(kid)
    if pem is None:
        # Key rotation: drop the cached set and look once more
        logger.warning(f"Unknown signing key kid={kid}; reloading JWKS")
        JWKS_CACHE.clear()
        pem = _find_key(kid)
    if pem is None:
        raise JWTError(f"No signing key for kid={kid}")
    return pem


def _decode(token: str) -> Dict[str, Any]:
    return jwt.decode(
        token,
        _signing_key_for(token),
        algorithms=["RS256"],
        issuer=ISSUER,
        audience=AUDIENCE,
    )


# ============================================================================
# VERIFICATION
# ============================================================================

def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_jwt(token: str) -> Dict[str, Any]:
    """
    Decode a bearer token after checking signature, expiry, issuer and audience.

    Returns:
        The token payload

    Raises:
        HTTPException: 401 for any invalid token, 500 when verification
            itself cannot run
    """
    try:
        return _decode(token)
    except ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except JWTClaimsError as e:
        raise _unauthorized(f"Invalid token claim: {e}")
    except JWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise _unauthorized("Invalid authentication credentials")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Token verification error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication service error",
        )


def extract_roles(payload: Dict[str, Any]) -> List[str]:
    """
    Read the caller's roles from the token payload.

    Accepts a list or a comma-separated string under the configured claim,
    then under the common fallbacks. Missing claims mean no roles.
    """
    for claim in (ROLES_CLAIM,) + ROLE_CLAIM_FALLBACKS:
        value = payload.get(claim)
        if value is None:
            continue
        if isinstance(value, str):
            return [role.strip() for role in value.split(",") if role.strip()]
        if isinstance(value, list):
            return [role for role in value if isinstance(role, str) and role]
    return []


def get_user_id_from_token(token: str) -> str:
    """Subject of a valid token, for rate-limit keys. Never raises."""
    try:
        return _decode(token).get("sub", "unknown_user")
    except Exception as e:
        logger.debug(f"No rate-limit identity from token: {e}")
        return "invalid_user"


# ============================================================================
# FASTAPI DEPENDENCIES
# ============================================================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)
) -> Dict[str, Any]:
    return verify_jwt(credentials.credentials)


async def get_current_caller(
    payload: Dict[str, Any] = Depends(get_current_user)
) -> Caller:
    """
    Usage:
        @app.post("/api/DynamicGrid/execute")
        def execute(caller: Caller = Depends(get_current_caller)):
            executor.execute_read(request, caller.roles)
    """
    return Caller(user_id=str(payload.get("sub", "unknown")), roles=extract_roles(payload))
