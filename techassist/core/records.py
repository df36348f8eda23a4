"""Domain records exchanged between flows and the persistence layer.

All records carry ``tenant_id``; the store never returns a record for a
tenant other than the one asked for.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import uuid4


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class AppointmentStatus(str, Enum):
    """Appointment status."""
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """PaymentIntent status."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class PaymentKind(str, Enum):
    CHARGE = "charge"
    SUBSCRIPTION = "subscription"


class ServiceOrderStatus(str, Enum):
    """Service order lifecycle as tracked by the workshop."""
    RECEIVED = "recebido"
    IN_ANALYSIS = "em_analise"
    AWAITING_APPROVAL = "aguardando_aprovacao"
    IN_REPAIR = "em_reparo"
    READY = "pronto"
    DELIVERED = "entregue"
    CANCELLED = "cancelado"


@dataclass
class Client:
    """End customer of a tenant, keyed by phone."""

    tenant_id: str
    phone: str
    name: str
    id: str = field(default_factory=new_id)
    email: Optional[str] = None
    tax_id: Optional[str] = None
    registered_at: datetime = field(default_factory=_utcnow)


@dataclass
class Device:
    tenant_id: str
    client_id: str
    type: str
    brand: str
    model: str = ""
    id: str = field(default_factory=new_id)

    @property
    def label(self) -> str:
        """Brand and model as shown to the client."""
        return f"{self.brand} {self.model}".strip() or self.type


@dataclass(frozen=True)
class Quote:
    """Issued quote. Immutable; a new quote supersedes an older one."""

    tenant_id: str
    client_id: str
    device_id: str
    base_price: Decimal
    discount_rate: Decimal
    value: Decimal
    message: str
    issued_at: datetime
    id: str = field(default_factory=new_id)

    @property
    def discount_applied(self) -> bool:
        return self.discount_rate > 0


@dataclass
class ServiceOrder:
    tenant_id: str
    client_id: str
    device_id: Optional[str] = None
    quote_id: Optional[str] = None
    problem: str = ""
    status: ServiceOrderStatus = ServiceOrderStatus.RECEIVED
    quote_value: Optional[Decimal] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class StockItem:
    tenant_id: str
    name: str
    quantity: int
    price: Optional[Decimal] = None
    id: str = field(default_factory=new_id)


@dataclass
class Appointment:
    """Appointment; only written once the calendar event exists."""

    tenant_id: str
    client_id: str
    scheduled_start: datetime
    scheduled_end: datetime
    external_event_id: str
    status: AppointmentStatus = AppointmentStatus.CONFIRMED
    external_link: Optional[str] = None
    service_order_id: Optional[str] = None
    id: str = field(default_factory=new_id)


@dataclass
class PaymentIntent:
    """Our record of a requested charge or subscription."""

    tenant_id: str
    client_id: str
    amount: Decimal
    provider_payment_id: str
    kind: PaymentKind = PaymentKind.CHARGE
    status: PaymentStatus = PaymentStatus.PENDING
    service_order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_link: Optional[str] = None
    billing_type: str = "UNDEFINED"
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=_utcnow)
    paid_at: Optional[datetime] = None


@dataclass
class OAuthTokenSet:
    """Calendar credentials for one tenant."""

    tenant_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    revoked: bool = False

    def seconds_remaining(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()
