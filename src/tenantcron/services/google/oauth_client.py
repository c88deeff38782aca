"""Google OAuth token endpoint (refresh_token grant)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from tenantcron import settings
from tenantcron.utils.httpx_client import make_async_client


DEFAULT_EXPIRES_IN = 3600


class TokenRefreshError(Exception):
    """Raised when Google refuses or cannot process a refresh.

    `permanent` is True for refusals that will not succeed on retry
    (revoked grant, invalid client); False for transport errors, 429 and 5xx.
    """

    def __init__(self, message: str, *, permanent: bool, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.permanent = permanent
        self.status_code = status_code


@dataclass(frozen=True)
class RefreshedToken:
    access_token: str
    expires_in: int


class GoogleTokenClient:
    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        token_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id if client_id is not None else settings.GOOGLE_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.GOOGLE_CLIENT_SECRET
        self.token_url = token_url or settings.GOOGLE_TOKEN_URL
        self._transport = transport

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        async with make_async_client(transport=self._transport) as client:
            try:
                resp = await client.post(self.token_url, data=form)
            except httpx.HTTPError as exc:
                raise TokenRefreshError(
                    f"token endpoint unreachable: {type(exc).__name__}", permanent=False
                ) from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TokenRefreshError(
                f"token endpoint returned {resp.status_code}",
                permanent=False,
                status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            try:
                reason = resp.json().get("error", "")
            except ValueError:
                reason = ""
            raise TokenRefreshError(
                f"token refresh rejected ({resp.status_code} {reason})".strip(),
                permanent=True,
                status_code=resp.status_code,
            )

        payload = resp.json()
        access_token = payload.get("access_token")
        if not access_token:
            raise TokenRefreshError("token response missing access_token", permanent=True)
        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        return RefreshedToken(access_token=access_token, expires_in=expires_in)
