"""
JWT Token Verification: OIDC-Compatible

Any issuer that signs RS256 tokens and publishes its keys at
<issuer>/.well-known/jwks.json works (Supabase, Auth0, Cognito, Keycloak).
Required claims: sub, exp, iss. Optional: email.

We fetch the public JWKS once and cache it (TTL: 1 hour). If a kid is
missing we force-refresh: handles key rotation transparently.

Token sources:
  Authorization: Bearer <jwt>   every route
  ?auth=<jwt>                   progress stream only; browser EventSource
                                cannot set request headers
"""

from __future__ import annotations

import logging
import time
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel, Field

from app.core.config import settings
from app.schemas.jobs import JobErrors

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# HTTP Bearer extractor: missing header is handled below so the 401 body
# uses the ErrorResponse envelope
# ---------------------------------------------------------------------------

bearer_scheme = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# Verified token payload
# ---------------------------------------------------------------------------

class TokenPayload(BaseModel):
    """Parsed, validated JWT claims: passed to route handlers."""
    sub:   str          # provider user ID
    email: str = ""
    exp:   int
    iss:   str
    token: str = Field("", repr=False, exclude=True)   # raw JWT, forwarded to the remote pipeline


# ---------------------------------------------------------------------------
# JWKS cache (in-memory, TTL-based)
# ---------------------------------------------------------------------------

_JWKS_CACHE: dict[str, tuple[dict, float]] = {}   # issuer → (jwks, fetched_at)
_JWKS_TTL   = 3600   # 1 hour


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=JobErrors.unauthorized(detail).model_dump(),
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _fetch_jwks(issuer: str) -> dict:
    """Fetch JWKS from the provider's well-known endpoint with TTL caching."""
    now = time.monotonic()
    cached = _JWKS_CACHE.get(issuer)
    if cached and (now - cached[1]) < _JWKS_TTL:
        return cached[0]

    jwks_uri = f"{issuer.rstrip('/')}/.well-known/jwks.json"
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.get(jwks_uri)
            resp.raise_for_status()
            jwks = resp.json()
    except httpx.HTTPError as exc:
        logger.error("JWKS fetch failed | issuer=%s error=%s", issuer, exc)
        raise _unauthorized("Unable to fetch signing keys") from exc

    _JWKS_CACHE[issuer] = (jwks, now)
    logger.debug("JWKS refreshed for issuer: %s", issuer)
    return jwks


async def _get_signing_key(token: str):
    """
    Extract kid from token header, fetch matching public key from JWKS.
    Force-refreshes the cache if the kid is not found (handles key rotation).
    """
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise _unauthorized("Invalid token header") from exc

    kid = header.get("kid")
    issuer = settings.auth_issuer

    for attempt in range(2):   # 0 = cached, 1 = force refresh
        if attempt == 1:
            _JWKS_CACHE.pop(issuer, None)

        jwks = await _fetch_jwks(issuer)
        for key_data in jwks.get("keys", []):
            if key_data.get("kid") == kid:
                return jwk.construct(key_data).public_key()

    raise _unauthorized(f"Unable to find signing key for kid={kid}")


# ---------------------------------------------------------------------------
# Main verification function
# ---------------------------------------------------------------------------

async def verify_token(token: str) -> TokenPayload:
    """
    Verify a JWT token:
      1. Fetch matching public key from JWKS (cached).
      2. Verify signature, expiry, issuer, audience.
      3. Return a typed TokenPayload.
    """
    if not settings.auth_issuer:
        logger.error("AUTH_ISSUER is not configured; rejecting token")
        raise _unauthorized("Token verification is not configured")

    signing_key = await _get_signing_key(token)

    try:
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            audience=settings.auth_audience or None,
            issuer=settings.auth_issuer,
            options={"verify_exp": True, "verify_aud": bool(settings.auth_audience)},
        )
    except ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except JWTError as exc:
        raise _unauthorized(f"Invalid token: {exc}")

    if not claims.get("sub"):
        raise _unauthorized("Token missing sub claim")

    return TokenPayload(
        sub=claims["sub"],
        email=claims.get("email") or "",
        exp=claims["exp"],
        iss=claims["iss"],
        token=token,
    )


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------

async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> TokenPayload:
    """
    Extracts and validates the Bearer token. Inject into any route that
    requires authentication:

        @router.post("/start-job")
        async def start_job(user: TokenPayload = Depends(get_current_user)):
            ...
    """
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Missing or invalid Authorization header.")
    return await verify_token(credentials.credentials)


async def get_stream_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    auth:        Annotated[str | None, Query(description="JWT for EventSource clients")] = None,
) -> TokenPayload:
    """Same as get_current_user, but also accepts the token as ?auth=."""
    if credentials is not None and credentials.credentials:
        return await verify_token(credentials.credentials)
    if auth:
        return await verify_token(auth)
    raise _unauthorized("Missing Authorization header or auth query parameter.")


CurrentUser = Annotated[TokenPayload, Depends(get_current_user)]
StreamUser  = Annotated[TokenPayload, Depends(get_stream_user)]
