"""
Tenant Resolver.

Strategies, in priority order:
1. Explicit tenant id in the URL path or query string
2. Messaging-instance id in the payload, via the registry instance index
3. Account bindings: business phone, payment id, calendar id

Read-only; never loads configuration.
"""

import logging
from typing import Optional

from techassist.core.errors import TenantResolutionError
from techassist.core.events.types import EventEnvelope, EventSource, RawEvent
from techassist.core.tenancy.registry import TenantRegistry
from techassist.persistence.base import Store

logger = logging.getLogger(__name__)


class TenantResolver:
    """Extracts tenant identity from an inbound event."""

    def __init__(self, registry: TenantRegistry, store: Store):
        self._registry = registry
        self._store = store

    async def resolve(self, raw: RawEvent, envelope: EventEnvelope) -> str:
        """
        Resolve the tenant for an event.

        An explicit id that is unknown or inactive fails immediately
        rather than falling through to another strategy.

        Raises:
            TenantResolutionError: If no strategy matches
        """
        explicit = raw.path_tenant or raw.query_tenant
        if explicit:
            tenant = await self._registry.get_tenant(explicit)
            return tenant.id

        tenant_id = None
        if envelope.instance_id:
            tenant_id = await self._registry.tenant_for_instance(envelope.instance_id)

        if tenant_id is None:
            tenant_id = await self._resolve_binding(envelope)

        if tenant_id is None:
            logger.info(
                f"Unresolved tenant for {envelope.source.value} event "
                f"'{envelope.provider_event}'"
            )
            raise TenantResolutionError(details={"source": envelope.source.value})

        tenant = await self._registry.get_tenant(tenant_id)
        return tenant.id

    async def _resolve_binding(self, envelope: EventEnvelope) -> Optional[str]:
        if envelope.business_phone:
            tenant_id = await self._store.find_tenant_by_phone(envelope.business_phone)
            if tenant_id:
                return tenant_id

        if envelope.source is EventSource.PAYMENT:
            for provider_id in (envelope.payment_id, envelope.subscription_id):
                if provider_id:
                    tenant_id = await self._store.find_tenant_by_payment(provider_id)
                    if tenant_id:
                        return tenant_id

        if envelope.source is EventSource.CALENDAR and envelope.calendar_id:
            return await self._store.find_tenant_by_calendar(envelope.calendar_id)

        return None
