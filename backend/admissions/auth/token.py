"""
Bearer token verification.

Parents and school staff sign in with the school's OIDC provider; the API
receives RS256 access tokens and checks them against the provider's JWKS.
Keys are cached per issuer for an hour, and an unknown `kid` forces one
refetch so a key rotation does not lock everyone out.

What a handler gets back is a RequestContext: who is calling, with which
role, and where they want to be notified. Services receive it as an
argument.

Claim lookup order for role and chat id: `custom:<name>`, then
`<auth_namespace>/<name>`, then the bare `<name>`.

Roles: applicant (parent or guardian), staff (reads every application),
verifier (decides on extracted data), admin (upstream not-found signals).
"""

from __future__ import annotations

import logging
import time
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel

from admissions.core.config import settings

logger = logging.getLogger(__name__)

VALID_ROLES = frozenset({"applicant", "staff", "verifier", "admin"})
DEFAULT_ROLE = "applicant"

bearer_scheme = HTTPBearer(auto_error=True)


class RequestContext(BaseModel):
    """The verified caller."""
    user_id:          str
    email:            str = ""
    role:             str = DEFAULT_ROLE
    telegram_chat_id: str | None = None
    exp:              int = 0
    iss:              str = ""


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status.HTTP_401_UNAUTHORIZED, detail=detail)


# ---------------------------------------------------------------------------
# JWKS
# ---------------------------------------------------------------------------

_JWKS_CACHE: dict[str, tuple[dict, float]] = {}
_JWKS_TTL_SECONDS = 3600


async def _fetch_jwks(issuer: str) -> dict:
    cached = _JWKS_CACHE.get(issuer)
    if cached is not None and time.monotonic() - cached[1] < _JWKS_TTL_SECONDS:
        return cached[0]

    url = issuer.rstrip("/") + "/.well-known/jwks.json"
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.get(url)
        response.raise_for_status()
        keys = response.json()

    _JWKS_CACHE[issuer] = (keys, time.monotonic())
    logger.info("JWKS loaded | issuer=%s keys=%d", issuer, len(keys.get("keys", [])))
    return keys


async def _signing_key(token: str):
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError as exc:
        raise _unauthorized("Invalid token header") from exc

    issuer = settings.auth_issuer
    for refresh in (False, True):
        if refresh:
            _JWKS_CACHE.pop(issuer, None)
        keys = await _fetch_jwks(issuer)
        match = next((k for k in keys.get("keys", []) if k.get("kid") == kid), None)
        if match is not None:
            return jwk.construct(match)

    logger.warning("No signing key for token | kid=%s issuer=%s", kid, issuer)
    raise _unauthorized(f"Unable to find signing key for kid={kid}")


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------

def _claim(claims: dict, name: str):
    for key in (f"custom:{name}", f"{settings.auth_namespace}/{name}", name):
        value = claims.get(key)
        if value:
            return value
    return None


def _extract_role(claims: dict) -> str:
    role = _claim(claims, "role")
    if role in VALID_ROLES:
        return role
    if role is not None:
        logger.warning("Unrecognised role claim, treating caller as %s | role=%s", DEFAULT_ROLE, role)
    return DEFAULT_ROLE


def _extract_chat_id(claims: dict) -> str | None:
    value = _claim(claims, "telegram_chat_id")
    return None if value is None else str(value)


async def verify_token(token: str) -> RequestContext:
    """Check signature, expiry, issuer and audience; build the RequestContext."""
    key = await _signing_key(token)
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
        )
    except ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except JWTError as exc:
        raise _unauthorized(f"Invalid token: {exc}")

    return RequestContext(
        user_id=str(claims["sub"]),
        email=claims.get("email", ""),
        role=_extract_role(claims),
        telegram_chat_id=_extract_chat_id(claims),
        exp=claims["exp"],
        iss=claims["iss"],
    )


async def get_request_context(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> RequestContext:
    """FastAPI dependency; overridden in tests."""
    return await verify_token(credentials.credentials)
