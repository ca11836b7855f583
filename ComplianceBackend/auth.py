import logging
import os
import time
from typing import Any, Dict, Optional

import requests
from fastapi import Request
from jose import JWTError, jwt

from ComplianceBackend.errors import AppError, AuthenticationError

logger = logging.getLogger(__name__)

_JWKS_CACHE: Optional[Dict[str, Any]] = None
_JWKS_CACHE_TS: float = 0.0
_JWKS_TTL_SECONDS: int = 300


# Reads JWT configuration from env; issuer is derived from the JWKS URL. None when JWT auth is off
def _get_auth_config() -> Optional[tuple[str, Optional[str], str]]:
    jwks_url = os.getenv("AUTH_JWKS_URL")
    if not jwks_url:
        return None
    audience = os.getenv("AUTH_AUDIENCE") or None
    issuer = jwks_url.split("/.well-known/")[0]
    return jwks_url, audience, issuer


# Fetches JWKS keys (cached for a short TTL) so we can validate incoming JWT signatures
def get_jwks(jwks_url: str):
    global _JWKS_CACHE, _JWKS_CACHE_TS
    now = time.time()
    if _JWKS_CACHE is not None and (now - _JWKS_CACHE_TS) < _JWKS_TTL_SECONDS:
        return _JWKS_CACHE.get("keys", [])
    try:
        response = requests.get(jwks_url, timeout=3.0)
        response.raise_for_status()
        data = response.json()
        _JWKS_CACHE = data
        _JWKS_CACHE_TS = now
        return data.get("keys", [])
    except (requests.RequestException, ValueError) as e:
        if _JWKS_CACHE is not None:
            return _JWKS_CACHE.get("keys", [])
        raise AppError(f"Unable to fetch JWKS: {e}", status_code=503) from e


# Finds the JWK matching the token's `kid`
def get_public_key(token: str, jwks_url: str):
    unverified_header = jwt.get_unverified_header(token)
    for key in get_jwks(jwks_url):
        if key.get("kid") == unverified_header.get("kid"):
            return key
    raise AuthenticationError("Public key not found.")


# Verifies the bearer token from the Authorization header and returns decoded claims
def verify_bearer_jwt(request: Request, config: tuple[str, Optional[str], str]) -> dict:
    jwks_url, audience, issuer = config

    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise AuthenticationError("Missing or invalid token.")

    token = auth_header.split(" ", 1)[1]
    if token.count(".") != 2:
        raise AuthenticationError("Token is not a valid JWT.")

    try:
        key = get_public_key(token, jwks_url)
        return jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=audience,
            issuer=issuer,
            options={"verify_aud": False} if not audience else {},
        )
    except JWTError as e:
        raise AuthenticationError(f"Token verification failed: {e}") from e


MAX_USER_ID_LENGTH = 128


def _bounded_user_id(user_id: str) -> str:
    if len(user_id) > MAX_USER_ID_LENGTH:
        raise AuthenticationError("User id is too long")
    return user_id


# FastAPI dependency: the caller's user id, from a verified JWT when configured, else the x-user-id header
def require_user_id(request: Request) -> str:
    config = _get_auth_config()
    if config is not None:
        claims = verify_bearer_jwt(request, config)
        sub = claims.get("sub")
        if not sub:
            raise AuthenticationError("Token has no subject claim.")
        return _bounded_user_id(str(sub))

    user_id = (request.headers.get("x-user-id") or "").strip()
    if not user_id:
        raise AuthenticationError("Missing x-user-id header")
    return _bounded_user_id(user_id)
