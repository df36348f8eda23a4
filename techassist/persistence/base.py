"""
Persistence interface.

Every read and write is scoped by tenant id. The ``find_tenant_by_*``
lookups are the only cross-tenant queries, and they return a tenant id
and nothing else.
"""

from abc import ABC, abstractmethod
from typing import Optional

from techassist.core.records import (
    Appointment,
    AppointmentStatus,
    Client,
    Device,
    OAuthTokenSet,
    PaymentIntent,
    PaymentStatus,
    Quote,
    ServiceOrder,
    StockItem,
)
from techassist.core.tenancy.types import Tenant, TenantConfig


class Store(ABC):
    """Abstract tenant-scoped store."""

    # === Tenants ===

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        ...

    @abstractmethod
    async def get_tenant_config(self, tenant_id: str) -> Optional[TenantConfig]:
        ...

    @abstractmethod
    async def save_tenant_config(self, config: TenantConfig) -> None:
        """Replace the active config of a tenant (admin path only)."""

    @abstractmethod
    async def find_tenant_by_instance(self, instance_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def find_tenant_by_phone(self, phone: str) -> Optional[str]:
        """Tenant whose business phone matches."""

    @abstractmethod
    async def find_tenant_by_payment(self, provider_payment_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def find_tenant_by_calendar(self, calendar_id: str) -> Optional[str]:
        ...

    # === OAuth tokens ===

    @abstractmethod
    async def get_token_set(self, tenant_id: str) -> Optional[OAuthTokenSet]:
        ...

    @abstractmethod
    async def save_token_set(self, token_set: OAuthTokenSet) -> None:
        ...

    # === Clients and devices ===

    @abstractmethod
    async def get_client(self, tenant_id: str, client_id: str) -> Optional[Client]:
        ...

    @abstractmethod
    async def get_client_by_phone(self, tenant_id: str, phone: str) -> Optional[Client]:
        ...

    @abstractmethod
    async def create_client(self, client: Client) -> Client:
        """Insert a client; returns the existing one on (tenant, phone) clash."""

    @abstractmethod
    async def set_client_tax_id(self, tenant_id: str, client_id: str, tax_id: str) -> None:
        ...

    @abstractmethod
    async def get_or_create_device(self, device: Device) -> Device:
        """Return the client's device with the same type/brand/model, or insert it."""

    # === Quotes and service orders ===

    @abstractmethod
    async def save_quote(self, quote: Quote) -> None:
        ...

    @abstractmethod
    async def create_service_order(self, order: ServiceOrder) -> ServiceOrder:
        ...

    @abstractmethod
    async def get_service_order(self, tenant_id: str, order_id: str) -> Optional[ServiceOrder]:
        ...

    @abstractmethod
    async def list_service_orders(
        self, tenant_id: str, client_id: str, limit: int = 5
    ) -> list[ServiceOrder]:
        """Most recent first."""

    @abstractmethod
    async def list_stock_items(self, tenant_id: str) -> list[StockItem]:
        ...

    # === Appointments ===

    @abstractmethod
    async def save_appointment(self, appointment: Appointment) -> None:
        ...

    @abstractmethod
    async def get_appointment_by_event(
        self, tenant_id: str, external_event_id: str
    ) -> Optional[Appointment]:
        ...

    @abstractmethod
    async def update_appointment_status(
        self, tenant_id: str, appointment_id: str, status: AppointmentStatus
    ) -> None:
        ...

    # === Payments ===

    @abstractmethod
    async def save_payment_intent(self, intent: PaymentIntent) -> None:
        ...

    @abstractmethod
    async def get_payment_intent_by_provider_id(
        self, tenant_id: str, provider_payment_id: str
    ) -> Optional[PaymentIntent]:
        ...

    @abstractmethod
    async def get_open_payment_intent(
        self, tenant_id: str, service_order_id: str
    ) -> Optional[PaymentIntent]:
        """Latest pending or paid intent for a service order."""

    @abstractmethod
    async def count_payment_intents(self, tenant_id: str, service_order_id: str) -> int:
        """Number of intents ever created for a service order, in any status."""

    @abstractmethod
    async def transition_payment_intent(
        self,
        tenant_id: str,
        intent_id: str,
        new_status: PaymentStatus,
    ) -> bool:
        """
        Compare-and-set from ``pending`` to ``new_status``.

        Returns:
            True if the status changed, False if the intent was already terminal
        """
