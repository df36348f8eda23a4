"""
Payment Flow.

Creates charges and subscriptions through the payment provider and applies
provider callbacks to our PaymentIntent records.

Ordering rules:
- The PaymentIntent (status pending) is persisted before the payment link
  is handed to anyone.
- Only provider callbacks move an intent out of pending; a duplicate or
  late callback for a settled intent changes nothing.
"""

import logging
import re
from decimal import Decimal
from typing import Optional

from techassist.core.adapters.payment import AsaasClient, CustomerInfo
from techassist.core.events.types import EventEnvelope, Intent
from techassist.core.flows.base import Flow, FlowContext, FlowResult
from techassist.core.records import (
    Client,
    PaymentIntent,
    PaymentKind,
    PaymentStatus,
)
from techassist.persistence.base import Store

logger = logging.getLogger(__name__)

# Provider callback event -> our status. Unlisted events change nothing.
PROVIDER_EVENT_STATUS: dict[str, PaymentStatus] = {
    "PAYMENT_RECEIVED": PaymentStatus.PAID,
    "PAYMENT_CONFIRMED": PaymentStatus.PAID,
    "PAYMENT_OVERDUE": PaymentStatus.EXPIRED,
    "PAYMENT_REFUNDED": PaymentStatus.FAILED,
    "PAYMENT_DELETED": PaymentStatus.FAILED,
    "PAYMENT_CREDIT_CARD_CAPTURE_REFUSED": PaymentStatus.FAILED,
    "PAYMENT_REPROVED_BY_RISK_ANALYSIS": PaymentStatus.FAILED,
}

# CPF (11 digits) or CNPJ (14 digits), with or without punctuation
TAX_ID_PATTERN = re.compile(
    r"\b(\d{2}\.?\d{3}\.?\d{3}/?\d{4}-?\d{2}|\d{3}\.?\d{3}\.?\d{3}-?\d{2})\b"
)

ASK_TAX_ID_MESSAGE = "Para gerar o link de pagamento, me envie o seu CPF ou CNPJ."
NO_OPEN_ORDER_MESSAGE = "Não encontrei nenhum orçamento em aberto para pagamento."
ALREADY_PAID_MESSAGE = "Esse serviço já está pago. Obrigado!"
PAID_CONFIRMATION_MESSAGE = "Recebemos o seu pagamento de R$ {amount}. Obrigado!"


def status_for_event(provider_event: Optional[str]) -> Optional[PaymentStatus]:
    if not provider_event:
        return None
    return PROVIDER_EVENT_STATUS.get(provider_event.upper())


def extract_tax_id(text: str) -> Optional[str]:
    """Digits of the first CPF/CNPJ found in ``text``."""
    match = TAX_ID_PATTERN.search(text)
    if match is None:
        return None
    digits = re.sub(r"\D", "", match.group(1))
    return digits if len(digits) in (11, 14) else None


def link_message(intent: PaymentIntent) -> str:
    return f"Segue o link para pagamento de R$ {intent.amount:.2f}: {intent.payment_link}"


class PaymentFlow(Flow):
    """Payment requests from clients and provider status callbacks."""

    intent = Intent.PAYMENT

    def __init__(self, store: Store, payments: AsaasClient):
        super().__init__(store)
        self.payments = payments

    async def run(self, ctx: FlowContext) -> FlowResult:
        if ctx.event.envelope.payment_id:
            return await self.apply_callback(ctx.tenant_id, ctx.event.envelope)
        return await self._handle_request(ctx)

    # === Creation ===

    async def create_subscription_or_charge(
        self,
        client: Client,
        amount: Decimal,
        kind: PaymentKind = PaymentKind.CHARGE,
        service_order_id: Optional[str] = None,
        cycle: str = "MONTHLY",
        description: str = "Serviço de assistência técnica",
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        """
        Create a charge or subscription and persist a pending PaymentIntent.

        The intent is saved before this returns, so nobody can see the
        payment link without a record existing. Without an idempotency key
        the creation call is attempted exactly once.

        Raises:
            ValueError: The client has no tax id
            AdapterError: Provider failure
        """
        if not client.tax_id:
            raise ValueError("Client tax id is required to create a payment")

        customer_id = await self.payments.upsert_customer(
            client.tax_id,
            CustomerInfo(name=client.name, email=client.email, phone=client.phone),
        )

        billing_type = "UNDEFINED"
        if kind is PaymentKind.SUBSCRIPTION:
            billing_type = "CREDIT_CARD"
            subscription_id = await self.payments.create_subscription(
                customer_id,
                plan=description,
                amount=amount,
                cycle=cycle,
                billing_type=billing_type,
                idempotency_key=idempotency_key,
            )
            charge = await self.payments.first_subscription_payment(subscription_id)
        else:
            charge = await self.payments.create_charge(
                customer_id,
                amount=amount,
                description=description,
                billing_type=billing_type,
                idempotency_key=idempotency_key,
            )

        intent = PaymentIntent(
            tenant_id=client.tenant_id,
            client_id=client.id,
            amount=amount,
            provider_payment_id=charge.payment_id,
            kind=kind,
            service_order_id=service_order_id,
            subscription_id=charge.subscription_id,
            payment_link=charge.invoice_url,
            billing_type=billing_type,
        )
        await self.store.save_payment_intent(intent)
        logger.info(
            f"PaymentIntent {intent.id} pending for tenant={client.tenant_id} "
            f"provider_id={intent.provider_payment_id} amount={amount}"
        )
        return intent

    async def _handle_request(self, ctx: FlowContext) -> FlowResult:
        client = await self.get_or_create_client(ctx)

        orders = await self.store.list_service_orders(ctx.tenant_id, client.id)
        order = next((o for o in orders if o.quote_value is not None), None)
        if order is None:
            return FlowResult(intent=self.intent, reply=NO_OPEN_ORDER_MESSAGE, status="no_order")

        existing = await self.store.get_open_payment_intent(ctx.tenant_id, order.id)
        if existing is not None:
            if existing.status is PaymentStatus.PAID:
                return FlowResult(intent=self.intent, reply=ALREADY_PAID_MESSAGE)
            return FlowResult(
                intent=self.intent,
                reply=link_message(existing),
                entities={"payment_intent_id": existing.id},
            )

        tax_id = client.tax_id or extract_tax_id(ctx.event.text)
        if tax_id is None:
            return FlowResult(intent=self.intent, reply=ASK_TAX_ID_MESSAGE, status="awaiting_info")
        if client.tax_id != tax_id:
            await self.store.set_client_tax_id(ctx.tenant_id, client.id, tax_id)
            client.tax_id = tax_id

        intent = await self.create_subscription_or_charge(
            client,
            amount=order.quote_value,
            service_order_id=order.id,
            description=f"Ordem de serviço {order.id[:8]}",
            idempotency_key=await self._charge_key(ctx.tenant_id, order.id),
        )
        return FlowResult(
            intent=self.intent,
            reply=link_message(intent),
            entities={"payment_intent_id": intent.id, "service_order_id": order.id},
        )

    async def _charge_key(self, tenant_id: str, order_id: str) -> str:
        """
        Idempotency key for the next charge of a service order.

        Each expired or failed intent starts a new attempt with its own key,
        otherwise the provider lookup would hand back the dead charge.
        """
        attempt = await self.store.count_payment_intents(tenant_id, order_id) + 1
        if attempt == 1:
            return f"{tenant_id}:{order_id}"
        return f"{tenant_id}:{order_id}:{attempt}"

    # === Callbacks ===

    async def apply_callback(self, tenant_id: str, envelope: EventEnvelope) -> FlowResult:
        """
        Apply a provider status callback.

        Unknown payments, unmapped events and intents already out of pending
        are acknowledged without changes.
        """
        new_status = status_for_event(envelope.provider_event)
        if new_status is None:
            return FlowResult(intent=self.intent, status="ignored")

        intent = None
        for provider_id in (envelope.payment_id, envelope.subscription_id):
            if provider_id:
                intent = await self.store.get_payment_intent_by_provider_id(tenant_id, provider_id)
                if intent is not None:
                    break

        if intent is None:
            logger.warning(
                f"Callback {envelope.provider_event} for unknown payment "
                f"{envelope.payment_id} (tenant={tenant_id})"
            )
            return FlowResult(intent=self.intent, status="ignored")

        if intent.status.is_terminal:
            logger.info(f"PaymentIntent {intent.id} already {intent.status.value}, callback ignored")
            return FlowResult(intent=self.intent, status="duplicate")

        changed = await self.store.transition_payment_intent(tenant_id, intent.id, new_status)
        if not changed:
            # Another delivery of the same callback won the race
            return FlowResult(intent=self.intent, status="duplicate")

        logger.info(f"PaymentIntent {intent.id}: pending -> {new_status.value}")
        result = FlowResult(
            intent=self.intent,
            status=new_status.value,
            entities={"payment_intent_id": intent.id},
        )

        if new_status is PaymentStatus.PAID:
            client = await self.store.get_client(tenant_id, intent.client_id)
            if client is not None:
                result.reply = PAID_CONFIRMATION_MESSAGE.format(amount=f"{intent.amount:.2f}")
                result.reply_to = client.phone
        return result

