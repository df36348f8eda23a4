"""
OAuth Token Manager.

Credential lifecycle per tenant as an explicit state machine:

    VALID -> EXPIRING -> REFRESHING -> VALID
                                    -> REVOKED (terminal until re-authorized)

Refreshes are mutually exclusive per tenant: concurrent callers wait on the
tenant lock and all receive the single refreshed token. The refreshed set
is persisted before it is handed to any caller.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Set

from techassist.config import settings
from techassist.core.auth.oauth_client import GoogleOAuthClient
from techassist.core.errors import (
    AdapterTimeout,
    CalendarAuthError,
    TokenRefreshTimeout,
    TokenRevoked,
)
from techassist.core.records import OAuthTokenSet
from techassist.infra.retry import call_with_retry
from techassist.persistence.base import Store

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class TokenState(str, Enum):
    """Lifecycle of a tenant's calendar credentials."""

    VALID = "valid"
    EXPIRING = "expiring"
    REFRESHING = "refreshing"
    REVOKED = "revoked"


VALID_TRANSITIONS: dict[TokenState, Set[TokenState]] = {
    TokenState.VALID: {TokenState.EXPIRING, TokenState.REVOKED},
    TokenState.EXPIRING: {TokenState.REFRESHING, TokenState.VALID, TokenState.REVOKED},
    TokenState.REFRESHING: {TokenState.VALID, TokenState.EXPIRING, TokenState.REVOKED},
    # Only out-of-band re-authorization leaves REVOKED
    TokenState.REVOKED: {TokenState.VALID},
}


def can_transition(from_state: TokenState, to_state: TokenState) -> bool:
    """Check if a state transition is valid."""
    if from_state == to_state:
        return True
    return to_state in VALID_TRANSITIONS.get(from_state, set())


class TokenManager:
    """Hands out valid calendar access tokens per tenant."""

    def __init__(
        self,
        store: Store,
        oauth_client: Optional[GoogleOAuthClient] = None,
        margin_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._oauth = oauth_client or GoogleOAuthClient()
        self._margin = settings.token_refresh_margin if margin_seconds is None else margin_seconds
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._states: dict[str, TokenState] = {}
        self._cache: dict[str, OAuthTokenSet] = {}

    @property
    def oauth_client(self) -> GoogleOAuthClient:
        return self._oauth

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    def state(self, tenant_id: str) -> Optional[TokenState]:
        return self._states.get(tenant_id)

    def _set_state(self, tenant_id: str, new_state: TokenState) -> None:
        current = self._states.get(tenant_id)
        if current is not None and not can_transition(current, new_state):
            logger.warning(
                f"Invalid token state transition for tenant={tenant_id}: "
                f"{current.value} -> {new_state.value}"
            )
            return
        self._states[tenant_id] = new_state

    def _is_fresh(self, token_set: OAuthTokenSet, margin: int) -> bool:
        return token_set.seconds_remaining(self._clock()) > margin

    async def _load(self, tenant_id: str) -> OAuthTokenSet:
        token_set = self._cache.get(tenant_id)
        if token_set is None:
            token_set = await self._store.get_token_set(tenant_id)
            if token_set is None:
                raise CalendarAuthError(
                    "Calendar not authorized for tenant", details={"tenant_id": tenant_id}
                )
            self._cache[tenant_id] = token_set
        if token_set.revoked:
            self._states[tenant_id] = TokenState.REVOKED
        return token_set

    async def get_valid_token(self, tenant_id: str, margin: Optional[int] = None) -> str:
        """
        Get an access token with more than ``margin`` seconds remaining.

        Args:
            tenant_id: Tenant identifier
            margin: Override for the refresh margin (tenant-configurable)

        Raises:
            TokenRevoked: Credentials need out-of-band re-authorization
            TokenRefreshTimeout: Refresh failed transiently after retries
            CalendarAuthError: Tenant has no calendar credentials
        """
        margin = self._margin if margin is None else margin

        token_set = await self._load(tenant_id)
        if token_set.revoked:
            raise TokenRevoked(details={"tenant_id": tenant_id})
        if self._is_fresh(token_set, margin):
            self._set_state(tenant_id, TokenState.VALID)
            return token_set.access_token

        async with self._lock_for(tenant_id):
            # Waiters find the token refreshed by whoever held the lock
            token_set = await self._load(tenant_id)
            if token_set.revoked:
                raise TokenRevoked(details={"tenant_id": tenant_id})
            if self._is_fresh(token_set, margin):
                return token_set.access_token

            self._set_state(tenant_id, TokenState.EXPIRING)
            return await self._refresh(token_set)

    async def force_refresh(self, tenant_id: str, rejected_token: str) -> str:
        """
        Refresh after the provider rejected ``rejected_token``.

        If another caller already replaced that token, the newer one is
        returned without a second refresh.
        """
        async with self._lock_for(tenant_id):
            token_set = await self._load(tenant_id)
            if token_set.revoked:
                raise TokenRevoked(details={"tenant_id": tenant_id})
            if token_set.access_token != rejected_token:
                return token_set.access_token

            self._set_state(tenant_id, TokenState.EXPIRING)
            return await self._refresh(token_set)

    async def _refresh(self, token_set: OAuthTokenSet) -> str:
        """Refresh under the tenant lock. Caller must hold it."""
        tenant_id = token_set.tenant_id
        self._set_state(tenant_id, TokenState.REFRESHING)
        logger.info(f"Refreshing calendar token for tenant={tenant_id}")

        try:
            grant = await call_with_retry(
                lambda: self._oauth.refresh(token_set.refresh_token),
                description=f"token refresh tenant={tenant_id}",
            )
        except TokenRevoked:
            revoked = OAuthTokenSet(
                tenant_id=tenant_id,
                access_token=token_set.access_token,
                refresh_token=token_set.refresh_token,
                expires_at=token_set.expires_at,
                revoked=True,
            )
            await self._store.save_token_set(revoked)
            self._cache[tenant_id] = revoked
            self._set_state(tenant_id, TokenState.REVOKED)
            logger.error(f"Calendar refresh token revoked for tenant={tenant_id}")
            raise
        except AdapterTimeout as e:
            self._set_state(tenant_id, TokenState.EXPIRING)
            raise TokenRefreshTimeout(f"Token refresh failed: {e}") from e
        except (TokenRefreshTimeout, CalendarAuthError, asyncio.CancelledError):
            self._set_state(tenant_id, TokenState.EXPIRING)
            raise

        refreshed = OAuthTokenSet(
            tenant_id=tenant_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or token_set.refresh_token,
            expires_at=self._clock() + timedelta(seconds=grant.expires_in),
        )

        # Write before use
        await self._store.save_token_set(refreshed)
        self._cache[tenant_id] = refreshed
        self._set_state(tenant_id, TokenState.VALID)
        return refreshed.access_token

    async def authorize(self, token_set: OAuthTokenSet) -> None:
        """Store credentials obtained out-of-band, clearing a revoked state."""
        token_set.revoked = False
        async with self._lock_for(token_set.tenant_id):
            await self._store.save_token_set(token_set)
            self._cache[token_set.tenant_id] = token_set
            self._states[token_set.tenant_id] = TokenState.VALID
        logger.info(f"Calendar credentials authorized for tenant={token_set.tenant_id}")

    def forget(self, tenant_id: str) -> None:
        """Drop cached credentials so the next call reads the store."""
        self._cache.pop(tenant_id, None)
