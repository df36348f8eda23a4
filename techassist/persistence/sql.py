"""
PostgreSQL-backed Store.

Each operation opens its own session through ``get_db_context`` and filters
every query on ``tenant_id``.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from techassist.core.records import (
    Appointment,
    AppointmentStatus,
    Client,
    Device,
    OAuthTokenSet,
    PaymentIntent,
    PaymentKind,
    PaymentStatus,
    Quote,
    ServiceOrder,
    ServiceOrderStatus,
    StockItem,
)
from techassist.core.tenancy.types import Tenant, TenantConfig
from techassist.infra.database import get_db_context
from techassist.models.database import (
    AppointmentModel,
    ClientModel,
    DeviceModel,
    OAuthTokenModel,
    PaymentIntentModel,
    QuoteModel,
    ServiceOrderModel,
    StockItemModel,
    TenantConfigModel,
    TenantModel,
)
from techassist.persistence.base import Store

logger = logging.getLogger(__name__)


def _client_from_row(row: ClientModel) -> Client:
    return Client(
        id=row.id,
        tenant_id=row.tenant_id,
        phone=row.phone,
        name=row.name,
        email=row.email,
        tax_id=row.tax_id,
        registered_at=row.registered_at,
    )


def _order_from_row(row: ServiceOrderModel) -> ServiceOrder:
    return ServiceOrder(
        id=row.id,
        tenant_id=row.tenant_id,
        client_id=row.client_id,
        device_id=row.device_id,
        quote_id=row.quote_id,
        problem=row.problem or "",
        status=ServiceOrderStatus(row.status),
        quote_value=row.quote_value,
        created_at=row.opened_at,
    )


def _appointment_from_row(row: AppointmentModel) -> Appointment:
    return Appointment(
        id=row.id,
        tenant_id=row.tenant_id,
        client_id=row.client_id,
        service_order_id=row.service_order_id,
        scheduled_start=row.scheduled_start,
        scheduled_end=row.scheduled_end,
        external_event_id=row.external_event_id,
        external_link=row.external_link,
        status=AppointmentStatus(row.status),
    )


def _intent_from_row(row: PaymentIntentModel) -> PaymentIntent:
    return PaymentIntent(
        id=row.id,
        tenant_id=row.tenant_id,
        client_id=row.client_id,
        service_order_id=row.service_order_id,
        provider_payment_id=row.provider_payment_id,
        subscription_id=row.subscription_id,
        kind=PaymentKind(row.kind),
        amount=row.amount,
        billing_type=row.billing_type,
        status=PaymentStatus(row.status),
        payment_link=row.payment_link,
        created_at=row.requested_at,
        paid_at=row.paid_at,
    )


class SqlStore(Store):
    """Store implementation over the SQLAlchemy models."""

    # === Tenants ===

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        async with get_db_context() as db:
            row = await db.get(TenantModel, tenant_id)
            if row is None or row.is_deleted:
                return None
            return Tenant(
                id=row.id,
                name=row.name,
                active=row.active,
                email=row.email,
                phone=row.phone,
                tax_id=row.tax_id,
            )

    async def get_tenant_config(self, tenant_id: str) -> Optional[TenantConfig]:
        async with get_db_context() as db:
            row = await db.get(TenantConfigModel, tenant_id)
            if row is None:
                return None
            return TenantConfig.from_dict({
                "tenant_id": row.tenant_id,
                "instance_id": row.instance_id,
                "calendar_id": row.calendar_id,
                "payment_wallet_id": row.payment_wallet_id,
                "business_phone": row.business_phone,
                "timezone": row.timezone,
                "business_hours": row.business_hours,
                "templates": row.templates,
                "pricing": row.pricing,
                "discount": row.discount,
                "token_refresh_margin": row.token_refresh_margin,
                "version": row.version,
            })

    async def save_tenant_config(self, config: TenantConfig) -> None:
        data = config.to_dict()
        async with get_db_context() as db:
            row = await db.get(TenantConfigModel, config.tenant_id)
            if row is None:
                db.add(TenantConfigModel(**data))
                return
            for key, value in data.items():
                setattr(row, key, value)
            row.version = (row.version or 0) + 1
            row.updated_at = datetime.now(timezone.utc)

    async def _find_config_tenant(self, column, value: str) -> Optional[str]:
        async with get_db_context() as db:
            result = await db.execute(
                select(TenantConfigModel.tenant_id)
                .join(TenantModel, TenantModel.id == TenantConfigModel.tenant_id)
                .where(column == value, TenantModel.active.is_(True))
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def find_tenant_by_instance(self, instance_id: str) -> Optional[str]:
        return await self._find_config_tenant(TenantConfigModel.instance_id, instance_id)

    async def find_tenant_by_phone(self, phone: str) -> Optional[str]:
        return await self._find_config_tenant(TenantConfigModel.business_phone, phone)

    async def find_tenant_by_calendar(self, calendar_id: str) -> Optional[str]:
        return await self._find_config_tenant(TenantConfigModel.calendar_id, calendar_id)

    async def find_tenant_by_payment(self, provider_payment_id: str) -> Optional[str]:
        async with get_db_context() as db:
            result = await db.execute(
                select(PaymentIntentModel.tenant_id)
                .where(
                    (PaymentIntentModel.provider_payment_id == provider_payment_id)
                    | (PaymentIntentModel.subscription_id == provider_payment_id)
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    # === OAuth tokens ===

    async def get_token_set(self, tenant_id: str) -> Optional[OAuthTokenSet]:
        async with get_db_context() as db:
            row = await db.get(OAuthTokenModel, tenant_id)
            if row is None:
                return None
            return OAuthTokenSet(
                tenant_id=row.tenant_id,
                access_token=row.access_token,
                refresh_token=row.refresh_token,
                expires_at=row.expires_at,
                revoked=row.revoked,
            )

    async def save_token_set(self, token_set: OAuthTokenSet) -> None:
        async with get_db_context() as db:
            row = await db.get(OAuthTokenModel, token_set.tenant_id)
            if row is None:
                row = OAuthTokenModel(tenant_id=token_set.tenant_id)
                db.add(row)
            row.access_token = token_set.access_token
            row.refresh_token = token_set.refresh_token
            row.expires_at = token_set.expires_at
            row.revoked = token_set.revoked

    # === Clients and devices ===

    async def get_client(self, tenant_id: str, client_id: str) -> Optional[Client]:
        async with get_db_context() as db:
            result = await db.execute(
                select(ClientModel).where(
                    ClientModel.tenant_id == tenant_id,
                    ClientModel.id == client_id,
                )
            )
            row = result.scalar_one_or_none()
            return _client_from_row(row) if row else None

    async def get_client_by_phone(self, tenant_id: str, phone: str) -> Optional[Client]:
        async with get_db_context() as db:
            result = await db.execute(
                select(ClientModel).where(
                    ClientModel.tenant_id == tenant_id,
                    ClientModel.phone == phone,
                )
            )
            row = result.scalar_one_or_none()
            return _client_from_row(row) if row else None

    async def create_client(self, client: Client) -> Client:
        try:
            async with get_db_context() as db:
                db.add(ClientModel(
                    id=client.id,
                    tenant_id=client.tenant_id,
                    name=client.name,
                    phone=client.phone,
                    email=client.email,
                    tax_id=client.tax_id,
                    registered_at=client.registered_at,
                ))
            return client
        except IntegrityError:
            # Concurrent first contact from the same phone
            existing = await self.get_client_by_phone(client.tenant_id, client.phone)
            if existing is None:
                raise
            return existing

    async def set_client_tax_id(self, tenant_id: str, client_id: str, tax_id: str) -> None:
        async with get_db_context() as db:
            await db.execute(
                update(ClientModel)
                .where(ClientModel.tenant_id == tenant_id, ClientModel.id == client_id)
                .values(tax_id=tax_id)
            )

    async def get_or_create_device(self, device: Device) -> Device:
        async with get_db_context() as db:
            result = await db.execute(
                select(DeviceModel).where(
                    DeviceModel.tenant_id == device.tenant_id,
                    DeviceModel.client_id == device.client_id,
                    DeviceModel.type == device.type,
                    DeviceModel.brand == device.brand,
                    DeviceModel.model == device.model,
                )
            )
            row = result.scalars().first()
            if row is not None:
                return Device(
                    id=row.id,
                    tenant_id=row.tenant_id,
                    client_id=row.client_id,
                    type=row.type,
                    brand=row.brand,
                    model=row.model,
                )
            db.add(DeviceModel(
                id=device.id,
                tenant_id=device.tenant_id,
                client_id=device.client_id,
                type=device.type,
                brand=device.brand,
                model=device.model,
            ))
            return device

    # === Quotes and service orders ===

    async def save_quote(self, quote: Quote) -> None:
        async with get_db_context() as db:
            db.add(QuoteModel(
                id=quote.id,
                tenant_id=quote.tenant_id,
                client_id=quote.client_id,
                device_id=quote.device_id,
                base_price=quote.base_price,
                discount_rate=quote.discount_rate,
                value=quote.value,
                message=quote.message,
                issued_at=quote.issued_at,
            ))

    async def create_service_order(self, order: ServiceOrder) -> ServiceOrder:
        async with get_db_context() as db:
            db.add(ServiceOrderModel(
                id=order.id,
                tenant_id=order.tenant_id,
                client_id=order.client_id,
                device_id=order.device_id,
                quote_id=order.quote_id,
                problem=order.problem,
                status=order.status.value,
                quote_value=order.quote_value,
                opened_at=order.created_at,
            ))
        return order

    async def get_service_order(self, tenant_id: str, order_id: str) -> Optional[ServiceOrder]:
        async with get_db_context() as db:
            result = await db.execute(
                select(ServiceOrderModel).where(
                    ServiceOrderModel.tenant_id == tenant_id,
                    ServiceOrderModel.id == order_id,
                )
            )
            row = result.scalar_one_or_none()
            return _order_from_row(row) if row else None

    async def list_service_orders(
        self, tenant_id: str, client_id: str, limit: int = 5
    ) -> list[ServiceOrder]:
        async with get_db_context() as db:
            result = await db.execute(
                select(ServiceOrderModel)
                .where(
                    ServiceOrderModel.tenant_id == tenant_id,
                    ServiceOrderModel.client_id == client_id,
                )
                .order_by(ServiceOrderModel.opened_at.desc())
                .limit(limit)
            )
            return [_order_from_row(row) for row in result.scalars()]

    async def list_stock_items(self, tenant_id: str) -> list[StockItem]:
        async with get_db_context() as db:
            result = await db.execute(
                select(StockItemModel).where(StockItemModel.tenant_id == tenant_id)
            )
            return [
                StockItem(
                    id=row.id,
                    tenant_id=row.tenant_id,
                    name=row.name,
                    quantity=row.quantity,
                    price=row.price,
                )
                for row in result.scalars()
            ]

    # === Appointments ===

    async def save_appointment(self, appointment: Appointment) -> None:
        async with get_db_context() as db:
            db.add(AppointmentModel(
                id=appointment.id,
                tenant_id=appointment.tenant_id,
                client_id=appointment.client_id,
                service_order_id=appointment.service_order_id,
                scheduled_start=appointment.scheduled_start,
                scheduled_end=appointment.scheduled_end,
                external_event_id=appointment.external_event_id,
                external_link=appointment.external_link,
                status=appointment.status.value,
            ))

    async def get_appointment_by_event(
        self, tenant_id: str, external_event_id: str
    ) -> Optional[Appointment]:
        async with get_db_context() as db:
            result = await db.execute(
                select(AppointmentModel).where(
                    AppointmentModel.tenant_id == tenant_id,
                    AppointmentModel.external_event_id == external_event_id,
                )
            )
            row = result.scalars().first()
            return _appointment_from_row(row) if row else None

    async def update_appointment_status(
        self, tenant_id: str, appointment_id: str, status: AppointmentStatus
    ) -> None:
        async with get_db_context() as db:
            await db.execute(
                update(AppointmentModel)
                .where(
                    AppointmentModel.tenant_id == tenant_id,
                    AppointmentModel.id == appointment_id,
                )
                .values(status=status.value)
            )

    # === Payments ===

    async def save_payment_intent(self, intent: PaymentIntent) -> None:
        async with get_db_context() as db:
            db.add(PaymentIntentModel(
                id=intent.id,
                tenant_id=intent.tenant_id,
                client_id=intent.client_id,
                service_order_id=intent.service_order_id,
                provider_payment_id=intent.provider_payment_id,
                subscription_id=intent.subscription_id,
                kind=intent.kind.value,
                amount=intent.amount,
                billing_type=intent.billing_type,
                status=intent.status.value,
                payment_link=intent.payment_link,
                requested_at=intent.created_at,
            ))

    async def get_payment_intent_by_provider_id(
        self, tenant_id: str, provider_payment_id: str
    ) -> Optional[PaymentIntent]:
        async with get_db_context() as db:
            result = await db.execute(
                select(PaymentIntentModel).where(
                    PaymentIntentModel.tenant_id == tenant_id,
                    (PaymentIntentModel.provider_payment_id == provider_payment_id)
                    | (PaymentIntentModel.subscription_id == provider_payment_id),
                )
            )
            row = result.scalars().first()
            return _intent_from_row(row) if row else None

    async def get_open_payment_intent(
        self, tenant_id: str, service_order_id: str
    ) -> Optional[PaymentIntent]:
        async with get_db_context() as db:
            result = await db.execute(
                select(PaymentIntentModel)
                .where(
                    PaymentIntentModel.tenant_id == tenant_id,
                    PaymentIntentModel.service_order_id == service_order_id,
                    PaymentIntentModel.status.in_(
                        [PaymentStatus.PENDING.value, PaymentStatus.PAID.value]
                    ),
                )
                .order_by(PaymentIntentModel.requested_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _intent_from_row(row) if row else None

    async def count_payment_intents(self, tenant_id: str, service_order_id: str) -> int:
        async with get_db_context() as db:
            result = await db.execute(
                select(func.count())
                .select_from(PaymentIntentModel)
                .where(
                    PaymentIntentModel.tenant_id == tenant_id,
                    PaymentIntentModel.service_order_id == service_order_id,
                )
            )
            return result.scalar_one()

    async def transition_payment_intent(
        self,
        tenant_id: str,
        intent_id: str,
        new_status: PaymentStatus,
    ) -> bool:
        values: dict = {"status": new_status.value}
        if new_status is PaymentStatus.PAID:
            values["paid_at"] = datetime.now(timezone.utc)

        async with get_db_context() as db:
            result = await db.execute(
                update(PaymentIntentModel)
                .where(
                    PaymentIntentModel.tenant_id == tenant_id,
                    PaymentIntentModel.id == intent_id,
                    PaymentIntentModel.status == PaymentStatus.PENDING.value,
                )
                .values(**values)
            )
            changed = result.rowcount == 1

        if not changed:
            logger.info(f"Payment intent {intent_id} already terminal, skipping {new_status.value}")
        return changed
