"""HTTP client for the Google OAuth refresh-token exchange."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from techassist.config import get_settings
from techassist.core.errors import TokenRefreshTimeout, TokenRevoked

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600

# OAuth error codes meaning the refresh token itself is no longer usable
REVOKED_ERRORS = {"invalid_grant", "unauthorized_client", "invalid_client"}


@dataclass
class TokenGrant:
    """Result of a successful refresh."""

    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "TokenGrant":
        """Create from token endpoint response."""
        expires_in = data.get("expires_in", DEFAULT_EXPIRES_IN)
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        return cls(
            access_token=data["access_token"],
            expires_in=max(expires_in, 1),
            refresh_token=data.get("refresh_token"),
        )


class GoogleOAuthClient:
    """
    Refresh-token exchange against the Google token endpoint.

    Failures are split in two:
    - TokenRevoked: 400/401 with an OAuth error like invalid_grant (terminal)
    - TokenRefreshTimeout: timeouts, connection errors, 5xx (retryable)
    """

    def __init__(
        self,
        token_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.token_url = token_url or settings.google_token_url
        self.client_id = client_id or settings.google_client_id
        self.client_secret = client_secret or settings.google_client_secret
        self.timeout = timeout or settings.external_timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token.

        Raises:
            TokenRevoked: Refresh token rejected by the provider
            TokenRefreshTimeout: Transient failure
        """
        client = await self._get_client()

        try:
            response = await client.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise TokenRefreshTimeout(f"Token refresh timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TokenRefreshTimeout(f"Token refresh request failed: {e}") from e

        if response.status_code >= 500:
            raise TokenRefreshTimeout(
                f"Token endpoint unavailable ({response.status_code})"
            )

        if response.status_code in (400, 401):
            error = _oauth_error(response)
            if error in REVOKED_ERRORS:
                raise TokenRevoked(details={"oauth_error": error})
            raise TokenRefreshTimeout(f"Token refresh rejected ({error})")

        if response.status_code >= 300:
            raise TokenRefreshTimeout(f"Unexpected token response ({response.status_code})")

        try:
            return TokenGrant.from_dict(response.json())
        except (KeyError, ValueError) as e:
            raise TokenRefreshTimeout("Token endpoint returned an invalid body") from e


def _oauth_error(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return "unknown"
    if isinstance(body, dict):
        return str(body.get("error", "unknown"))
    return "unknown"
