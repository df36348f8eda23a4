"""
Tenant Registry with a TTL config cache.

Cache entries are immutable and replaced wholesale, so a concurrent
invalidation never tears a read in progress. Reloads are single-flight per
tenant. When a reload fails the last known good config is served with
``stale=True``; with no prior value the lookup fails with ConfigUnavailable.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from techassist.config import settings
from techassist.core.errors import ConfigUnavailable, TenantResolutionError
from techassist.core.tenancy.types import ConfigSnapshot, Tenant, TenantConfig
from techassist.persistence.base import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _CacheEntry:
    config: TenantConfig
    loaded_at: float
    invalidated: bool = False


class TenantRegistry:
    """
    Maps tenant ids to configuration, backed by the store.

    Also keeps the messaging-instance index used by the resolver.
    """

    def __init__(
        self,
        store: Store,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._ttl = settings.config_cache_ttl if ttl is None else ttl
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._instance_index: dict[str, str] = {}
        self._reload_locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._reload_locks.get(tenant_id)
        if lock is None:
            lock = self._reload_locks[tenant_id] = asyncio.Lock()
        return lock

    def _is_fresh(self, entry: Optional[_CacheEntry]) -> bool:
        if entry is None or entry.invalidated:
            return False
        return self._clock() - entry.loaded_at < self._ttl

    async def get_tenant(self, tenant_id: str) -> Tenant:
        """
        Load an active tenant.

        Raises:
            TenantResolutionError: If the tenant does not exist or is inactive
        """
        tenant = await self._store.get_tenant(tenant_id)
        if tenant is None or not tenant.active:
            raise TenantResolutionError(details={"tenant_id": tenant_id})
        return tenant

    async def get_config(self, tenant_id: str) -> ConfigSnapshot:
        """
        Get tenant configuration, reloading on miss or expiry.

        Raises:
            TenantResolutionError: Tenant has no configuration
            ConfigUnavailable: Store failed and nothing is cached
        """
        entry = self._entries.get(tenant_id)
        if self._is_fresh(entry):
            return ConfigSnapshot(config=entry.config)

        async with self._lock_for(tenant_id):
            # Another waiter may have reloaded already
            entry = self._entries.get(tenant_id)
            if self._is_fresh(entry):
                return ConfigSnapshot(config=entry.config)

            try:
                config = await self._store.get_tenant_config(tenant_id)
            except Exception as e:
                if entry is not None:
                    logger.warning(
                        f"Config reload failed for tenant={tenant_id}, "
                        f"serving stale version {entry.config.version}: {e}"
                    )
                    return ConfigSnapshot(config=entry.config, stale=True)
                logger.error(f"Config unavailable for tenant={tenant_id}: {e}")
                raise ConfigUnavailable(details={"tenant_id": tenant_id}) from e

            if config is None:
                self._drop(tenant_id)
                raise TenantResolutionError(
                    "Tenant has no configuration", details={"tenant_id": tenant_id}
                )

            self._entries[tenant_id] = _CacheEntry(config=config, loaded_at=self._clock())
            if config.instance_id:
                self._instance_index[config.instance_id] = tenant_id
            logger.debug(f"Config loaded for tenant={tenant_id} version={config.version}")
            return ConfigSnapshot(config=config)

    def invalidate(self, tenant_id: str) -> None:
        """
        Invalidation hook for administrative updates.

        The cached value is kept as last-known-good but is no longer fresh.
        """
        entry = self._entries.get(tenant_id)
        if entry is not None:
            self._entries[tenant_id] = _CacheEntry(
                config=entry.config,
                loaded_at=entry.loaded_at,
                invalidated=True,
            )
        self._instance_index = {
            instance: owner
            for instance, owner in self._instance_index.items()
            if owner != tenant_id
        }
        logger.info(f"Config cache invalidated for tenant={tenant_id}")

    def _drop(self, tenant_id: str) -> None:
        self._entries.pop(tenant_id, None)
        self._instance_index = {
            instance: owner
            for instance, owner in self._instance_index.items()
            if owner != tenant_id
        }

    async def tenant_for_instance(self, instance_id: str) -> Optional[str]:
        """Map a messaging-instance id back to its tenant."""
        tenant_id = self._instance_index.get(instance_id)
        if tenant_id is not None:
            return tenant_id

        tenant_id = await self._store.find_tenant_by_instance(instance_id)
        if tenant_id is not None:
            self._instance_index[instance_id] = tenant_id
        return tenant_id
