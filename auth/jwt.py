from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt
from jose.exceptions import JWTError

from core.settings import AuthSettings, get_settings

bearer = HTTPBearer(auto_error=False)


class JwksKeyStore:
    """
    Realm signing keys by kid.

    Keys are refetched when the TTL runs out, when the certs URL changes, or
    when a token names a kid we have not seen (key rotation). Unknown-kid
    refetches are spaced by min_refresh_seconds.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        min_refresh_seconds: float = 10.0,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.min_refresh_seconds = min_refresh_seconds
        self._transport = transport
        self._clock = clock
        self._keys: Dict[str, Dict[str, Any]] = {}
        self._url: Optional[str] = None
        self._fetched_at: Optional[float] = None

    def _age(self) -> float:
        if self._fetched_at is None:
            return float("inf")
        return self._clock() - self._fetched_at

    async def _refresh(self, url: str) -> None:
        async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            body = resp.json()

        self._keys = {
            k["kid"]: k
            for k in body.get("keys") or []
            if k.get("kid") and k.get("use", "sig") == "sig"
        }
        self._url = url
        self._fetched_at = self._clock()

    async def key_for(self, url: str, kid: str) -> Optional[Dict[str, Any]]:
        if url != self._url or self._age() >= self.ttl_seconds:
            await self._refresh(url)
        elif kid not in self._keys and self._age() >= self.min_refresh_seconds:
            await self._refresh(url)
        return self._keys.get(kid)


signing_keys = JwksKeyStore()


def certs_url(auth: AuthSettings) -> str:
    # KEYCLOAK_ISSUER may be the internal (docker network) URL; only keys come from it
    return f"{auth.issuer.rstrip('/')}/protocol/openid-connect/certs"


def audience_matches(claims: Dict[str, Any], client_id: str) -> bool:
    """Keycloak puts the client in aud (string or list) or only in azp."""
    aud = claims.get("aud")
    audiences = {aud} if isinstance(aud, str) else set(aud or [])
    return client_id in audiences or claims.get("azp") == client_id


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def verify_token(
    token: str,
    auth: AuthSettings,
    keys: Optional[JwksKeyStore] = None,
) -> Dict[str, Any]:
    keys = keys or signing_keys
    try:
        kid = jwt.get_unverified_header(token).get("kid")
        if not kid:
            raise _unauthorized("Token missing kid")

        key = await keys.key_for(certs_url(auth), kid)
        if key is None:
            raise _unauthorized("Signing key not found")

        # issuer/audience are checked against the allowlist below
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            options={"verify_aud": False, "verify_iss": False},
        )
    except JWTError as e:
        raise _unauthorized(f"Invalid token: {e}") from e
    except httpx.HTTPError as e:
        raise _unauthorized(f"Auth error: {e}") from e

    iss = (claims.get("iss") or "").rstrip("/")
    if iss not in auth.issuer_allowed:
        raise _unauthorized(f"Invalid issuer: {iss}")
    if not audience_matches(claims, auth.client_id):
        raise _unauthorized("Invalid token audience")
    return claims


async def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Optional[Dict[str, Any]]:
    """Validated claims, or None when AUTH_ENABLED=false."""
    auth = get_settings().auth
    if not auth.enabled:
        return None
    if not creds or not creds.credentials:
        raise _unauthorized("Missing bearer token")
    return await verify_token(creds.credentials, auth)


async def get_requester_id(
    claims: Optional[Dict[str, Any]] = Depends(get_current_user),
) -> Optional[str]:
    """Requester identity passed to the permission hook: the token subject."""
    if claims is None:
        return None
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub:
        raise _unauthorized("Token missing subject")
    return sub
