from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from fastapi import Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.errors import Unauthorized
from app.services.http_client import JsonHttpClient

log = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class BuyerIdentity:
    id: str
    email: str | None


class IdentityProvider(Protocol):
    async def get_identity(self, token: str) -> BuyerIdentity | None: ...

    async def aclose(self) -> None: ...


class HostedAuthProvider:
    """Resolves bearer tokens against the hosted auth backend's user endpoint."""

    def __init__(self, http: JsonHttpClient, *, api_key: str):
        self._http = http
        self._api_key = api_key

    async def get_identity(self, token: str) -> BuyerIdentity | None:
        result = await self._http.get_json(
            path="/auth/v1/user",
            headers={"Authorization": f"Bearer {token}", "apikey": self._api_key},
        )
        if not result.ok:
            if result.retryable:
                log.warning("auth backend unavailable: %s", result.error_message)
            return None

        user_id = result.detail.get("id")
        if not user_id:
            return None
        return BuyerIdentity(id=str(user_id), email=result.detail.get("email"))

    async def aclose(self) -> None:
        await self._http.aclose()


async def get_buyer(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> BuyerIdentity:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Missing bearer token")

    identity_provider: IdentityProvider = request.app.state.services.identity
    buyer = await identity_provider.get_identity(credentials.credentials)
    if buyer is None:
        raise Unauthorized("Authentication failed or user not found")
    return buyer
