"""
Database Models

SQLAlchemy ORM models for the multi-tenant technical-assistance platform.
Every table except ``tenants`` carries ``tenant_id``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text,
    UniqueConstraint, text
)
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class SoftDeleteMixin:
    """Mixin that adds soft delete functionality."""

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )


def _tenant_fk() -> Mapped[str]:
    return mapped_column(
        String(64),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False
    )


class TenantModel(Base, TimestampMixin, SoftDeleteMixin):
    """
    Tenant (technical-assistance company).

    Deactivated rather than deleted.
    """

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    tax_id: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name='{self.name}', active={self.active})>"


class TenantConfigModel(Base, TimestampMixin):
    """Active configuration of a tenant. At most one row per tenant."""

    __tablename__ = "tenant_configs"
    __table_args__ = (
        Index("idx_config_instance", "instance_id"),
        Index("idx_config_calendar", "calendar_id"),
        Index("idx_config_phone", "business_phone"),
    )

    tenant_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        primary_key=True
    )
    instance_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    calendar_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_wallet_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    business_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    timezone: Mapped[str] = mapped_column(String(50), default="America/Sao_Paulo")
    business_hours: Mapped[dict] = mapped_column(JSON, default=dict)
    templates: Mapped[dict] = mapped_column(JSON, default=dict)
    pricing: Mapped[dict] = mapped_column(JSON, default=dict)
    discount: Mapped[dict] = mapped_column(JSON, default=dict)
    token_refresh_margin: Mapped[int] = mapped_column(Integer, default=60)
    version: Mapped[int] = mapped_column(Integer, default=1)


class OAuthTokenModel(Base, TimestampMixin):
    """Calendar OAuth token set of a tenant."""

    __tablename__ = "oauth_tokens"

    tenant_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        primary_key=True
    )
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class ClientModel(Base, TimestampMixin):
    """End customer of a tenant."""

    __tablename__ = "clients"
    __table_args__ = (
        UniqueConstraint("tenant_id", "phone", name="uq_client_tenant_phone"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = _tenant_fk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    tax_id: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    registered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class DeviceModel(Base):
    __tablename__ = "devices"
    __table_args__ = (
        Index("idx_device_client", "tenant_id", "client_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = _tenant_fk()
    client_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    brand: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str] = mapped_column(String(100), default="")


class QuoteModel(Base, TimestampMixin):
    """Issued quote. Rows are never updated."""

    __tablename__ = "quotes"
    __table_args__ = (
        Index("idx_quote_client", "tenant_id", "client_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = _tenant_fk()
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False)
    device_id: Mapped[str] = mapped_column(String(36), ForeignKey("devices.id"), nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ServiceOrderModel(Base, TimestampMixin):
    __tablename__ = "service_orders"
    __table_args__ = (
        Index("idx_order_client", "tenant_id", "client_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = _tenant_fk()
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False)
    device_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("devices.id"), nullable=True)
    quote_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("quotes.id"), nullable=True)
    problem: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(50), default="recebido")
    quote_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class StockItemModel(Base, TimestampMixin):
    __tablename__ = "stock_items"
    __table_args__ = (
        Index("idx_stock_tenant", "tenant_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = _tenant_fk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)


class AppointmentModel(Base, TimestampMixin):
    """Appointment synced to the tenant's calendar."""

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointment_event", "tenant_id", "external_event_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = _tenant_fk()
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False)
    service_order_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("service_orders.id"), nullable=True
    )
    scheduled_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="confirmed")


class PaymentIntentModel(Base, TimestampMixin):
    """Charge or subscription requested from the payment provider."""

    __tablename__ = "payment_intents"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_payment_id", name="uq_payment_provider_id"),
        Index("idx_payment_provider", "provider_payment_id"),
        Index("idx_payment_order", "tenant_id", "service_order_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = _tenant_fk()
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False)
    service_order_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("service_orders.id"), nullable=True
    )
    provider_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    kind: Mapped[str] = mapped_column(String(20), default="charge")
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    billing_type: Mapped[str] = mapped_column(String(20), default="UNDEFINED")
    status: Mapped[str] = mapped_column(String(20), default="pending")
    payment_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
