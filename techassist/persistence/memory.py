"""In-process Store for local development and tests."""

import asyncio
import dataclasses
from datetime import datetime, timezone
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
from techassist.persistence.base import Store


class InMemoryStore(Store):
    """
    Dict-backed store.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self.tenants: dict[str, Tenant] = {}
        self.configs: dict[str, TenantConfig] = {}
        self.tokens: dict[str, OAuthTokenSet] = {}
        self.clients: dict[str, Client] = {}
        self.devices: dict[str, Device] = {}
        self.quotes: dict[str, Quote] = {}
        self.orders: dict[str, ServiceOrder] = {}
        self.stock: dict[str, StockItem] = {}
        self.appointments: dict[str, Appointment] = {}
        self.payments: dict[str, PaymentIntent] = {}
        self._lock = asyncio.Lock()

    # === Seeding helpers ===

    def add_tenant(self, tenant: Tenant, config: Optional[TenantConfig] = None) -> None:
        self.tenants[tenant.id] = tenant
        if config is not None:
            self.configs[tenant.id] = config

    def add_stock_item(self, item: StockItem) -> None:
        self.stock[item.id] = item

    def entity_count(self) -> int:
        """Number of derived entities stored (clients, quotes, orders, ...)."""
        return sum(
            len(bucket)
            for bucket in (
                self.clients,
                self.devices,
                self.quotes,
                self.orders,
                self.appointments,
                self.payments,
            )
        )

    # === Tenants ===

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self.tenants.get(tenant_id)

    async def get_tenant_config(self, tenant_id: str) -> Optional[TenantConfig]:
        return self.configs.get(tenant_id)

    async def save_tenant_config(self, config: TenantConfig) -> None:
        self.configs[config.tenant_id] = config

    async def find_tenant_by_instance(self, instance_id: str) -> Optional[str]:
        for config in self.configs.values():
            if config.instance_id == instance_id:
                return config.tenant_id
        return None

    async def find_tenant_by_phone(self, phone: str) -> Optional[str]:
        for config in self.configs.values():
            if config.business_phone and config.business_phone == phone:
                return config.tenant_id
        return None

    async def find_tenant_by_payment(self, provider_payment_id: str) -> Optional[str]:
        for intent in self.payments.values():
            if provider_payment_id in (intent.provider_payment_id, intent.subscription_id):
                return intent.tenant_id
        return None

    async def find_tenant_by_calendar(self, calendar_id: str) -> Optional[str]:
        for config in self.configs.values():
            if config.calendar_id == calendar_id:
                return config.tenant_id
        return None

    # === OAuth tokens ===

    async def get_token_set(self, tenant_id: str) -> Optional[OAuthTokenSet]:
        token_set = self.tokens.get(tenant_id)
        return dataclasses.replace(token_set) if token_set else None

    async def save_token_set(self, token_set: OAuthTokenSet) -> None:
        self.tokens[token_set.tenant_id] = dataclasses.replace(token_set)

    # === Clients and devices ===

    async def get_client(self, tenant_id: str, client_id: str) -> Optional[Client]:
        client = self.clients.get(client_id)
        if client is None or client.tenant_id != tenant_id:
            return None
        return dataclasses.replace(client)

    async def get_client_by_phone(self, tenant_id: str, phone: str) -> Optional[Client]:
        for client in self.clients.values():
            if client.tenant_id == tenant_id and client.phone == phone:
                return dataclasses.replace(client)
        return None

    async def create_client(self, client: Client) -> Client:
        async with self._lock:
            existing = await self.get_client_by_phone(client.tenant_id, client.phone)
            if existing:
                return existing
            self.clients[client.id] = dataclasses.replace(client)
            return client

    async def set_client_tax_id(self, tenant_id: str, client_id: str, tax_id: str) -> None:
        client = self.clients.get(client_id)
        if client is not None and client.tenant_id == tenant_id:
            client.tax_id = tax_id

    async def get_or_create_device(self, device: Device) -> Device:
        for existing in self.devices.values():
            if (
                existing.tenant_id == device.tenant_id
                and existing.client_id == device.client_id
                and (existing.type, existing.brand, existing.model)
                == (device.type, device.brand, device.model)
            ):
                return dataclasses.replace(existing)
        self.devices[device.id] = dataclasses.replace(device)
        return device

    # === Quotes and service orders ===

    async def save_quote(self, quote: Quote) -> None:
        self.quotes[quote.id] = quote

    async def create_service_order(self, order: ServiceOrder) -> ServiceOrder:
        self.orders[order.id] = dataclasses.replace(order)
        return order

    async def get_service_order(self, tenant_id: str, order_id: str) -> Optional[ServiceOrder]:
        order = self.orders.get(order_id)
        if order is None or order.tenant_id != tenant_id:
            return None
        return dataclasses.replace(order)

    async def list_service_orders(
        self, tenant_id: str, client_id: str, limit: int = 5
    ) -> list[ServiceOrder]:
        orders = [
            dataclasses.replace(o)
            for o in self.orders.values()
            if o.tenant_id == tenant_id and o.client_id == client_id
        ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders[:limit]

    async def list_stock_items(self, tenant_id: str) -> list[StockItem]:
        return [item for item in self.stock.values() if item.tenant_id == tenant_id]

    # === Appointments ===

    async def save_appointment(self, appointment: Appointment) -> None:
        self.appointments[appointment.id] = dataclasses.replace(appointment)

    async def get_appointment_by_event(
        self, tenant_id: str, external_event_id: str
    ) -> Optional[Appointment]:
        for appointment in self.appointments.values():
            if (
                appointment.tenant_id == tenant_id
                and appointment.external_event_id == external_event_id
            ):
                return dataclasses.replace(appointment)
        return None

    async def update_appointment_status(
        self, tenant_id: str, appointment_id: str, status: AppointmentStatus
    ) -> None:
        appointment = self.appointments.get(appointment_id)
        if appointment is not None and appointment.tenant_id == tenant_id:
            appointment.status = status

    # === Payments ===

    async def save_payment_intent(self, intent: PaymentIntent) -> None:
        self.payments[intent.id] = dataclasses.replace(intent)

    async def get_payment_intent_by_provider_id(
        self, tenant_id: str, provider_payment_id: str
    ) -> Optional[PaymentIntent]:
        for intent in self.payments.values():
            if intent.tenant_id == tenant_id and provider_payment_id in (
                intent.provider_payment_id,
                intent.subscription_id,
            ):
                return dataclasses.replace(intent)
        return None

    async def get_open_payment_intent(
        self, tenant_id: str, service_order_id: str
    ) -> Optional[PaymentIntent]:
        candidates = [
            intent
            for intent in self.payments.values()
            if intent.tenant_id == tenant_id
            and intent.service_order_id == service_order_id
            and intent.status in (PaymentStatus.PENDING, PaymentStatus.PAID)
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda intent: intent.created_at)
        return dataclasses.replace(latest)

    async def count_payment_intents(self, tenant_id: str, service_order_id: str) -> int:
        return sum(
            1
            for intent in self.payments.values()
            if intent.tenant_id == tenant_id and intent.service_order_id == service_order_id
        )

    async def transition_payment_intent(
        self,
        tenant_id: str,
        intent_id: str,
        new_status: PaymentStatus,
    ) -> bool:
        async with self._lock:
            intent = self.payments.get(intent_id)
            if intent is None or intent.tenant_id != tenant_id:
                return False
            if intent.status.is_terminal:
                return False
            intent.status = new_status
            if new_status is PaymentStatus.PAID:
                intent.paid_at = datetime.now(timezone.utc)
            return True
