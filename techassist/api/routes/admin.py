"""
Administrative Endpoints.

Operator actions on a tenant: cache invalidation, messaging instance
provisioning, calendar re-authorization and staff-initiated payments.

All endpoints require the admin key in the ``X-API-Key`` header.
"""

import hmac
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Security, status
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from techassist.config import settings
from techassist.core.dispatch import Dispatcher, get_dispatcher
from techassist.core.errors import (
    AuthenticationError,
    DispatchError,
    MalformedPayload,
    RecordNotFound,
    TenantResolutionError,
)
from techassist.core.events.types import Intent
from techassist.core.flows.payment import PaymentFlow, link_message
from techassist.core.records import OAuthTokenSet, PaymentKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/tenants", tags=["Admin"])

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_admin(api_key: Optional[str] = Security(api_key_header)) -> None:
    """
    Require the admin API key.

    Uses constant-time comparison.

    Raises:
        AuthenticationError: Key missing or wrong
    """
    if not api_key:
        logger.warning("Admin auth failed: No API key provided")
        raise AuthenticationError("API key required")
    if not hmac.compare_digest(api_key.encode(), settings.admin_api_key.encode()):
        logger.warning("Admin auth failed: Invalid API key")
        raise AuthenticationError()


# === Schemas ===


class InvalidateResponse(BaseModel):
    tenant_id: str
    invalidated: bool = True


class InstanceResponse(BaseModel):
    """Messaging instance bound to the tenant."""

    instance_id: str
    qrcode: Optional[str] = None
    created: bool


class CalendarTokenRequest(BaseModel):
    """Credentials obtained through the OAuth consent screen."""

    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)
    expires_in: int = Field(default=3600, gt=0, description="Seconds until the access token expires")


class CalendarTokenResponse(BaseModel):
    tenant_id: str
    expires_at: datetime


class PaymentRequest(BaseModel):
    """Staff-initiated charge or subscription."""

    kind: Literal["charge", "subscription"] = "charge"
    amount: Decimal = Field(..., gt=0)
    client_id: str
    service_order_id: Optional[str] = None
    cycle: Literal["WEEKLY", "BIWEEKLY", "MONTHLY", "QUARTERLY", "SEMIANNUALLY", "YEARLY"] = "MONTHLY"
    description: str = "Serviço de assistência técnica"
    tax_id: Optional[str] = Field(default=None, description="CPF/CNPJ, stored on the client when given")
    idempotency_key: Optional[str] = None
    notify: bool = Field(default=True, description="Send the payment link to the client")


class PaymentResponse(BaseModel):
    payment_intent_id: str
    provider_payment_id: str
    status: str
    payment_link: Optional[str] = None
    subscription_id: Optional[str] = None


# === Endpoints ===


@router.post(
    "/{tenant_id}/config/invalidate",
    response_model=InvalidateResponse,
    dependencies=[Depends(require_admin)],
    summary="Invalidate cached tenant configuration",
)
async def invalidate_config(
    tenant_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> InvalidateResponse:
    await dispatcher.registry.get_tenant(tenant_id)
    dispatcher.registry.invalidate(tenant_id)
    logger.info(f"Config invalidated for tenant={tenant_id}")
    return InvalidateResponse(tenant_id=tenant_id)


@router.post(
    "/{tenant_id}/instance",
    response_model=InstanceResponse,
    dependencies=[Depends(require_admin)],
    summary="Provision the tenant's messaging instance",
)
async def provision_instance(
    tenant_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> InstanceResponse:
    """
    Create the messaging instance for a tenant. Idempotent: an existing
    instance is returned with ``created`` false.
    """
    await dispatcher.registry.get_tenant(tenant_id)
    config = await dispatcher.store.get_tenant_config(tenant_id)
    if config is None:
        raise TenantResolutionError(details={"tenant_id": tenant_id})

    info = await dispatcher.messaging.create_instance(tenant_id, instance_name=config.instance_id)

    if config.instance_id != info.instance_id:
        await dispatcher.store.save_tenant_config(
            replace(config, instance_id=info.instance_id, version=config.version + 1)
        )
    dispatcher.registry.invalidate(tenant_id)

    return InstanceResponse(instance_id=info.instance_id, qrcode=info.qrcode, created=info.created)


@router.put(
    "/{tenant_id}/calendar-token",
    response_model=CalendarTokenResponse,
    dependencies=[Depends(require_admin)],
    summary="Store calendar credentials",
)
async def authorize_calendar(
    tenant_id: str,
    request: CalendarTokenRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> CalendarTokenResponse:
    """Re-authorize the tenant calendar; clears a revoked state."""
    await dispatcher.registry.get_tenant(tenant_id)
    if dispatcher.token_manager is None:
        raise DispatchError("Calendar integration is not configured")

    token_set = OAuthTokenSet(
        tenant_id=tenant_id,
        access_token=request.access_token,
        refresh_token=request.refresh_token,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=request.expires_in),
    )
    await dispatcher.token_manager.authorize(token_set)
    return CalendarTokenResponse(tenant_id=tenant_id, expires_at=token_set.expires_at)


@router.post(
    "/{tenant_id}/payments",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
    summary="Create a charge or subscription for a client",
)
async def create_payment(
    tenant_id: str,
    request: PaymentRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> PaymentResponse:
    """
    Create a payment for a client.

    The pending PaymentIntent is stored before the link is returned or
    sent. Without ``idempotency_key`` the provider call is not retried.
    """
    await dispatcher.registry.get_tenant(tenant_id)
    flow = dispatcher.flows.get(Intent.PAYMENT)
    if not isinstance(flow, PaymentFlow):
        raise DispatchError("Payment integration is not configured")

    client = await dispatcher.store.get_client(tenant_id, request.client_id)
    if client is None:
        raise RecordNotFound("Client not found", details={"client_id": request.client_id})

    if request.service_order_id:
        order = await dispatcher.store.get_service_order(tenant_id, request.service_order_id)
        if order is None:
            raise RecordNotFound(
                "Service order not found", details={"service_order_id": request.service_order_id}
            )

    if request.tax_id and request.tax_id != client.tax_id:
        await dispatcher.store.set_client_tax_id(tenant_id, client.id, request.tax_id)
        client.tax_id = request.tax_id
    if not client.tax_id:
        raise MalformedPayload("Client has no CPF/CNPJ on file", details={"client_id": client.id})

    intent = await flow.create_subscription_or_charge(
        client,
        amount=request.amount,
        kind=PaymentKind(request.kind),
        service_order_id=request.service_order_id,
        cycle=request.cycle,
        description=request.description,
        idempotency_key=request.idempotency_key,
    )

    if request.notify and intent.payment_link:
        snapshot = await dispatcher.registry.get_config(tenant_id)
        if snapshot.config.instance_id:
            try:
                await dispatcher.messaging.send_message(
                    snapshot.config.instance_id, client.phone, link_message(intent)
                )
            except DispatchError as e:
                # Intent is already stored; staff can share the returned link
                logger.error(f"Failed to send payment link for intent {intent.id}: {e.message}")

    return PaymentResponse(
        payment_intent_id=intent.id,
        provider_payment_id=intent.provider_payment_id,
        status=intent.status.value,
        payment_link=intent.payment_link,
        subscription_id=intent.subscription_id,
    )
