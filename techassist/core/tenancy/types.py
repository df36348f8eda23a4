"""Tenant and tenant configuration types.

TenantConfig is an immutable snapshot: mappings are wrapped in
MappingProxyType so flows cannot mutate shared cached state.
"""

from dataclasses import dataclass, field
from datetime import datetime, time
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Mapping, Optional


DEFAULT_DISCOUNT_THRESHOLD_DAYS = 180
DEFAULT_DISCOUNT_RATE = Decimal("0.10")
DEFAULT_REFRESH_MARGIN_SECONDS = 60

# Template keys
TEMPLATE_QUOTE = "quote"
TEMPLATE_WELCOME = "welcome"
TEMPLATE_AFTER_HOURS = "after_hours"
TEMPLATE_HANDOFF = "handoff"

DEFAULT_QUOTE_TEMPLATE = (
    "Olá {{CLIENTE}}! O orçamento para o reparo do seu {{APARELHO}} "
    "é de R$ {{VALOR}}."
)

# Key used in pricing tables for the type-level default price
DEFAULT_PRICE_KEY = "padrao"


@dataclass(frozen=True)
class Tenant:
    """A technical-assistance company using the platform."""

    id: str
    name: str
    active: bool = True
    email: Optional[str] = None
    phone: Optional[str] = None
    tax_id: Optional[str] = None


@dataclass(frozen=True)
class DiscountPolicy:
    """Loyalty discount for long-standing clients."""

    enabled: bool = False
    threshold_days: int = DEFAULT_DISCOUNT_THRESHOLD_DAYS
    rate: Decimal = DEFAULT_DISCOUNT_RATE

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "DiscountPolicy":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            threshold_days=int(data.get("threshold_days", DEFAULT_DISCOUNT_THRESHOLD_DAYS)),
            rate=Decimal(str(data.get("rate", DEFAULT_DISCOUNT_RATE))),
        )

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "threshold_days": self.threshold_days,
            "rate": str(self.rate),
        }


@dataclass(frozen=True)
class BusinessHours:
    """Opening hours; weekdays use Monday=0."""

    start: time = time(8, 0)
    end: time = time(18, 0)
    weekdays: tuple[int, ...] = (0, 1, 2, 3, 4)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "BusinessHours":
        data = data or {}
        return cls(
            start=time.fromisoformat(data.get("start", "08:00")),
            end=time.fromisoformat(data.get("end", "18:00")),
            weekdays=tuple(int(d) for d in data.get("weekdays", (0, 1, 2, 3, 4))),
        )

    def to_dict(self) -> dict:
        return {
            "start": self.start.strftime("%H:%M"),
            "end": self.end.strftime("%H:%M"),
            "weekdays": list(self.weekdays),
        }

    def is_open(self, moment: datetime) -> bool:
        """Check whether a local datetime falls inside business hours."""
        return (
            moment.weekday() in self.weekdays
            and self.start <= moment.time() < self.end
        )


def _freeze_pricing(pricing: Optional[Mapping[str, Mapping[str, Any]]]) -> Mapping[str, Mapping[str, Decimal]]:
    frozen = {}
    for device_type, prices in (pricing or {}).items():
        frozen[device_type.lower()] = MappingProxyType(
            {brand.lower(): Decimal(str(value)) for brand, value in prices.items()}
        )
    return MappingProxyType(frozen)


@dataclass(frozen=True)
class TenantConfig:
    """
    Per-tenant configuration snapshot.

    Read-only to the dispatcher and flows. Pricing keys are lower-cased;
    each device type may carry a ``padrao`` default price.
    """

    tenant_id: str
    instance_id: Optional[str] = None
    calendar_id: Optional[str] = None
    payment_wallet_id: Optional[str] = None
    business_phone: Optional[str] = None
    timezone: str = "America/Sao_Paulo"
    business_hours: BusinessHours = field(default_factory=BusinessHours)
    templates: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    pricing: Mapping[str, Mapping[str, Decimal]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    discount: DiscountPolicy = field(default_factory=DiscountPolicy)
    token_refresh_margin: int = DEFAULT_REFRESH_MARGIN_SECONDS
    version: int = 1

    @classmethod
    def from_dict(cls, data: dict) -> "TenantConfig":
        """Build a frozen snapshot from a plain dict (store row or admin payload)."""
        return cls(
            tenant_id=str(data["tenant_id"]),
            instance_id=data.get("instance_id"),
            calendar_id=data.get("calendar_id"),
            payment_wallet_id=data.get("payment_wallet_id"),
            business_phone=data.get("business_phone"),
            timezone=data.get("timezone") or "America/Sao_Paulo",
            business_hours=BusinessHours.from_dict(data.get("business_hours")),
            templates=MappingProxyType(dict(data.get("templates") or {})),
            pricing=_freeze_pricing(data.get("pricing")),
            discount=DiscountPolicy.from_dict(data.get("discount")),
            token_refresh_margin=int(
                data.get("token_refresh_margin", DEFAULT_REFRESH_MARGIN_SECONDS)
            ),
            version=int(data.get("version", 1)),
        )

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "instance_id": self.instance_id,
            "calendar_id": self.calendar_id,
            "payment_wallet_id": self.payment_wallet_id,
            "business_phone": self.business_phone,
            "timezone": self.timezone,
            "business_hours": self.business_hours.to_dict(),
            "templates": dict(self.templates),
            "pricing": {
                device_type: {brand: str(value) for brand, value in prices.items()}
                for device_type, prices in self.pricing.items()
            },
            "discount": self.discount.to_dict(),
            "token_refresh_margin": self.token_refresh_margin,
            "version": self.version,
        }

    def template(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.templates.get(key, default)


@dataclass(frozen=True)
class ConfigSnapshot:
    """Config returned by the registry, flagged when served stale."""

    config: TenantConfig
    stale: bool = False
