"""Tests for the tenant registry config cache."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from techassist.core.errors import ConfigUnavailable, TenantResolutionError
from techassist.core.tenancy.registry import TenantRegistry
from techassist.core.tenancy.types import Tenant

from tests.factories import FakeClock, TENANT_ID, make_config, make_store


class TestTenantRegistry:
    """Config caching, invalidation and stale fallback."""

    @pytest.fixture
    def store(self):
        return make_store()

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def registry(self, store, clock):
        return TenantRegistry(store, ttl=60, clock=clock)

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, registry, store, clock):
        store.get_tenant_config = AsyncMock(wraps=store.get_tenant_config)

        await registry.get_config(TENANT_ID)
        clock.advance(59)
        snapshot = await registry.get_config(TENANT_ID)

        assert store.get_tenant_config.await_count == 1
        assert snapshot.config.tenant_id == TENANT_ID
        assert not snapshot.stale

    @pytest.mark.asyncio
    async def test_reloaded_after_ttl(self, registry, store, clock):
        await registry.get_config(TENANT_ID)
        store.configs[TENANT_ID] = make_config(version=2)

        clock.advance(61)
        snapshot = await registry.get_config(TENANT_ID)

        assert snapshot.config.version == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_reload(self, registry, store):
        await registry.get_config(TENANT_ID)
        store.configs[TENANT_ID] = make_config(version=3)

        registry.invalidate(TENANT_ID)
        snapshot = await registry.get_config(TENANT_ID)

        assert snapshot.config.version == 3

    @pytest.mark.asyncio
    async def test_stale_served_when_store_fails(self, registry, store, clock):
        await registry.get_config(TENANT_ID)
        store.get_tenant_config = AsyncMock(side_effect=ConnectionError("db down"))

        clock.advance(120)
        snapshot = await registry.get_config(TENANT_ID)

        assert snapshot.stale
        assert snapshot.config.tenant_id == TENANT_ID

    @pytest.mark.asyncio
    async def test_stale_served_after_invalidation_when_store_fails(self, registry, store):
        await registry.get_config(TENANT_ID)
        registry.invalidate(TENANT_ID)
        store.get_tenant_config = AsyncMock(side_effect=ConnectionError("db down"))

        snapshot = await registry.get_config(TENANT_ID)

        assert snapshot.stale

    @pytest.mark.asyncio
    async def test_config_unavailable_without_cache(self, registry, store):
        store.get_tenant_config = AsyncMock(side_effect=ConnectionError("db down"))

        with pytest.raises(ConfigUnavailable):
            await registry.get_config(TENANT_ID)

    @pytest.mark.asyncio
    async def test_missing_config_is_resolution_error(self, registry):
        with pytest.raises(TenantResolutionError):
            await registry.get_config("empresa_404")

    @pytest.mark.asyncio
    async def test_concurrent_misses_load_once(self, registry, store):
        original = store.get_tenant_config

        async def slow_load(tenant_id):
            await asyncio.sleep(0.01)
            return await original(tenant_id)

        store.get_tenant_config = AsyncMock(side_effect=slow_load)

        await asyncio.gather(*(registry.get_config(TENANT_ID) for _ in range(5)))

        assert store.get_tenant_config.await_count == 1

    @pytest.mark.asyncio
    async def test_inactive_tenant_rejected(self, registry, store):
        store.tenants[TENANT_ID] = Tenant(id=TENANT_ID, name="Fechada", active=False)

        with pytest.raises(TenantResolutionError):
            await registry.get_tenant(TENANT_ID)

    @pytest.mark.asyncio
    async def test_instance_index(self, registry, store):
        assert await registry.tenant_for_instance(TENANT_ID) == TENANT_ID
        assert await registry.tenant_for_instance("unknown-instance") is None

    @pytest.mark.asyncio
    async def test_snapshot_is_read_only(self, registry):
        snapshot = await registry.get_config(TENANT_ID)

        with pytest.raises(TypeError):
            snapshot.config.pricing["celular"]["padrao"] = 1
