"""
Tenancy

Tenant resolution and per-tenant configuration cache.

Only the value types are re-exported here; the registry and resolver
depend on the persistence layer, which itself imports these types.
Import them from ``techassist.core.tenancy.registry`` and
``techassist.core.tenancy.resolver``.
"""

from techassist.core.tenancy.types import (
    BusinessHours,
    ConfigSnapshot,
    DiscountPolicy,
    Tenant,
    TenantConfig,
)

__all__ = [
    "BusinessHours",
    "ConfigSnapshot",
    "DiscountPolicy",
    "Tenant",
    "TenantConfig",
]
