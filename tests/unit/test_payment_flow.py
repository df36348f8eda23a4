"""Tests for the payment flow and provider callbacks."""

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from techassist.core.adapters.payment import AsaasClient, ChargeResult
from techassist.core.events.parser import parse_payload
from techassist.core.flows.base import FlowContext
from techassist.core.flows.payment import (
    ALREADY_PAID_MESSAGE,
    ASK_TAX_ID_MESSAGE,
    NO_OPEN_ORDER_MESSAGE,
    PaymentFlow,
    extract_tax_id,
)
from techassist.core.records import PaymentKind, PaymentStatus, ServiceOrder
from techassist.core.tenancy.types import Tenant

from tests.factories import (
    CLIENT_PHONE,
    OTHER_TENANT_ID,
    TENANT_ID,
    inbound,
    make_client,
    make_config,
    make_store,
    message_payload,
    payment_payload,
)

TAX_ID = "12345678909"


@pytest.fixture
def payments():
    client = MagicMock()
    client.upsert_customer = AsyncMock(return_value="cus_1")
    client.create_charge = AsyncMock(return_value=ChargeResult(
        payment_id="pay_1",
        invoice_url="https://pay.test/i/pay_1",
        status="PENDING",
    ))
    client.create_subscription = AsyncMock(return_value="sub_1")
    client.first_subscription_payment = AsyncMock(return_value=ChargeResult(
        payment_id="pay_s1",
        invoice_url="https://pay.test/i/pay_s1",
        subscription_id="sub_1",
    ))
    return client


@pytest.fixture
def store():
    return make_store(TENANT_ID, OTHER_TENANT_ID)


@pytest.fixture
def flow(store, payments):
    return PaymentFlow(store, payments)


def context(text: str) -> FlowContext:
    return FlowContext(
        tenant=Tenant(id=TENANT_ID, name="Assistência"),
        config=make_config(),
        event=inbound(message_payload(text)),
    )


async def seed_order(store, tax_id=None, value="135.00"):
    client = await store.create_client(make_client(tax_id=tax_id))
    order = await store.create_service_order(ServiceOrder(
        tenant_id=TENANT_ID,
        client_id=client.id,
        quote_value=Decimal(value),
    ))
    return client, order


class TestExtractTaxId:

    @pytest.mark.parametrize("text,expected", [
        ("meu cpf é 123.456.789-09", "12345678909"),
        ("CNPJ 12.345.678/0001-95", "12345678000195"),
        ("12345678909", "12345678909"),
        ("meu telefone é 1234-5678", None),
    ])
    def test_extract(self, text, expected):
        assert extract_tax_id(text) == expected


class TestCreatePayment:

    @pytest.mark.asyncio
    async def test_charge_persisted_as_pending(self, flow, store, payments):
        client = make_client(tax_id=TAX_ID)

        intent = await flow.create_subscription_or_charge(client, Decimal("135.00"))

        stored = store.payments[intent.id]
        assert stored.status is PaymentStatus.PENDING
        assert stored.provider_payment_id == "pay_1"
        assert stored.payment_link == "https://pay.test/i/pay_1"
        assert stored.billing_type == "UNDEFINED"
        payments.upsert_customer.assert_awaited_once()
        assert payments.upsert_customer.await_args.args[0] == TAX_ID

    @pytest.mark.asyncio
    async def test_link_not_returned_when_persist_fails(self, flow, store):
        store.save_payment_intent = AsyncMock(side_effect=ConnectionError("db down"))

        with pytest.raises(ConnectionError):
            await flow.create_subscription_or_charge(make_client(tax_id=TAX_ID), Decimal("10"))

    @pytest.mark.asyncio
    async def test_subscription(self, flow, store, payments):
        intent = await flow.create_subscription_or_charge(
            make_client(tax_id=TAX_ID),
            Decimal("49.90"),
            kind=PaymentKind.SUBSCRIPTION,
            cycle="MONTHLY",
        )

        assert intent.kind is PaymentKind.SUBSCRIPTION
        assert intent.subscription_id == "sub_1"
        assert intent.provider_payment_id == "pay_s1"
        assert intent.billing_type == "CREDIT_CARD"
        payments.create_charge.assert_not_awaited()
        assert payments.create_subscription.await_args.kwargs["cycle"] == "MONTHLY"

    @pytest.mark.asyncio
    async def test_tax_id_required(self, flow, payments):
        with pytest.raises(ValueError):
            await flow.create_subscription_or_charge(make_client(), Decimal("10"))

        payments.upsert_customer.assert_not_awaited()


class TestPaymentRequest:

    @pytest.mark.asyncio
    async def test_link_for_latest_quote(self, flow, store, payments):
        client, order = await seed_order(store)

        result = await flow.run(context("Quero pagar, meu CPF é 123.456.789-09"))

        assert result.reply == "Segue o link para pagamento de R$ 135.00: https://pay.test/i/pay_1"
        assert store.clients[client.id].tax_id == TAX_ID
        kwargs = payments.create_charge.await_args.kwargs
        assert kwargs["idempotency_key"] == f"{TENANT_ID}:{order.id}"
        assert kwargs["amount"] == Decimal("135.00")

    @pytest.mark.asyncio
    async def test_asks_for_tax_id(self, flow, store, payments):
        await seed_order(store)

        result = await flow.run(context("Quero pagar"))

        assert result.reply == ASK_TAX_ID_MESSAGE
        assert result.status == "awaiting_info"
        payments.create_charge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_open_order(self, flow, payments):
        result = await flow.run(context("Quero pagar"))

        assert result.reply == NO_OPEN_ORDER_MESSAGE
        payments.create_charge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pending_link_resent(self, flow, store, payments):
        await seed_order(store, tax_id=TAX_ID)
        await flow.run(context("pagar"))

        result = await flow.run(context("pagar"))

        assert "https://pay.test/i/pay_1" in result.reply
        payments.create_charge.assert_awaited_once()
        assert len(store.payments) == 1

    @pytest.mark.asyncio
    async def test_already_paid(self, flow, store):
        await seed_order(store, tax_id=TAX_ID)
        first = await flow.run(context("pagar"))
        intent_id = first.entities["payment_intent_id"]
        await store.transition_payment_intent(TENANT_ID, intent_id, PaymentStatus.PAID)

        result = await flow.run(context("pagar"))

        assert result.reply == ALREADY_PAID_MESSAGE


class TestCallbacks:

    async def create_intent(self, flow, store):
        await store.create_client(make_client(tax_id=TAX_ID))
        client = await store.get_client_by_phone(TENANT_ID, CLIENT_PHONE)
        return await flow.create_subscription_or_charge(client, Decimal("135.00"))

    def callback(self, event: str, payment_id: str = "pay_1", subscription=None):
        return parse_payload(payment_payload(event, payment_id, subscription))

    @pytest.mark.asyncio
    async def test_received_marks_paid(self, flow, store):
        intent = await self.create_intent(flow, store)

        result = await flow.apply_callback(TENANT_ID, self.callback("PAYMENT_RECEIVED"))

        assert result.status == "paid"
        assert result.reply == "Recebemos o seu pagamento de R$ 135.00. Obrigado!"
        assert result.reply_to == CLIENT_PHONE
        assert store.payments[intent.id].status is PaymentStatus.PAID
        assert store.payments[intent.id].paid_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_paid_is_noop(self, flow, store):
        intent = await self.create_intent(flow, store)

        await flow.apply_callback(TENANT_ID, self.callback("PAYMENT_RECEIVED"))
        paid_at = store.payments[intent.id].paid_at

        result = await flow.apply_callback(TENANT_ID, self.callback("PAYMENT_CONFIRMED"))

        assert result.status == "duplicate"
        assert result.reply is None
        assert store.payments[intent.id].paid_at == paid_at

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_apply_once(self, flow, store):
        await self.create_intent(flow, store)

        results = await asyncio.gather(
            flow.apply_callback(TENANT_ID, self.callback("PAYMENT_RECEIVED")),
            flow.apply_callback(TENANT_ID, self.callback("PAYMENT_RECEIVED")),
        )

        assert sorted(r.status for r in results) == ["duplicate", "paid"]

    @pytest.mark.asyncio
    async def test_late_overdue_does_not_regress_paid(self, flow, store):
        intent = await self.create_intent(flow, store)

        await flow.apply_callback(TENANT_ID, self.callback("PAYMENT_RECEIVED"))

        result = await flow.apply_callback(TENANT_ID, self.callback("PAYMENT_OVERDUE"))

        assert result.status == "duplicate"
        assert store.payments[intent.id].status is PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_overdue_expires_pending(self, flow, store):
        await self.create_intent(flow, store)

        result = await flow.apply_callback(TENANT_ID, self.callback("PAYMENT_OVERDUE"))

        assert result.status == "expired"
        assert result.reply is None

    @pytest.mark.asyncio
    async def test_unmapped_event_ignored(self, flow, store):
        intent = await self.create_intent(flow, store)

        result = await flow.apply_callback(TENANT_ID, self.callback("PAYMENT_CREATED"))

        assert result.status == "ignored"
        assert store.payments[intent.id].status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_payment_ignored(self, flow, store):
        await self.create_intent(flow, store)

        result = await flow.apply_callback(TENANT_ID, self.callback("PAYMENT_RECEIVED", "pay_404"))

        assert result.status == "ignored"

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_settle(self, flow, store):
        intent = await self.create_intent(flow, store)

        result = await flow.apply_callback(OTHER_TENANT_ID, self.callback("PAYMENT_RECEIVED"))

        assert result.status == "ignored"
        assert store.payments[intent.id].status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_subscription_id_fallback(self, flow, store, payments):
        client = await store.create_client(make_client(tax_id=TAX_ID))
        intent = await flow.create_subscription_or_charge(
            client, Decimal("49.90"), kind=PaymentKind.SUBSCRIPTION
        )

        result = await flow.apply_callback(
            TENANT_ID, self.callback("PAYMENT_RECEIVED", "pay_next_cycle", subscription="sub_1")
        )

        assert result.status == "paid"
        assert store.payments[intent.id].status is PaymentStatus.PAID


class FakeAsaas:
    """In-process Asaas double: customers by cpfCnpj, payments by externalReference."""

    def __init__(self):
        self.payments: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/customers":
            if request.method == "GET":
                return httpx.Response(200, json={"data": []})
            return httpx.Response(200, json={"id": "cus_1"})

        if request.method == "GET":
            reference = request.url.params.get("externalReference")
            found = [p for p in self.payments if p["externalReference"] == reference]
            return httpx.Response(200, json={"data": found})

        body = json.loads(request.content)
        payment_id = f"pay_{len(self.payments) + 1}"
        payment = {
            "id": payment_id,
            "status": "PENDING",
            "invoiceUrl": f"https://pay.test/i/{payment_id}",
            "externalReference": body.get("externalReference"),
        }
        self.payments.append(payment)
        return httpx.Response(200, json=payment)

    @property
    def references(self) -> list[str]:
        return [p["externalReference"] for p in self.payments]


class TestRequestAfterDeadCharge:

    @pytest.fixture
    def asaas(self):
        return FakeAsaas()

    @pytest.fixture
    def live_flow(self, store, asaas):
        client = AsaasClient(api_key="k")
        client._client = httpx.AsyncClient(
            base_url="https://provider.test", transport=httpx.MockTransport(asaas)
        )
        return PaymentFlow(store, client)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event,dead_status", [
        ("PAYMENT_OVERDUE", PaymentStatus.EXPIRED),
        ("PAYMENT_REFUNDED", PaymentStatus.FAILED),
    ])
    async def test_new_charge_after_dead_one(self, live_flow, store, asaas, event, dead_status):
        _, order = await seed_order(store, tax_id=TAX_ID)

        first = await live_flow.run(context("quero pagar"))
        await live_flow.apply_callback(TENANT_ID, parse_payload(payment_payload(event, "pay_1")))

        second = await live_flow.run(context("quero pagar"))

        assert second.reply.endswith("https://pay.test/i/pay_2")
        assert asaas.references == [f"{TENANT_ID}:{order.id}", f"{TENANT_ID}:{order.id}:2"]
        first_id = first.entities["payment_intent_id"]
        second_id = second.entities["payment_intent_id"]
        assert store.payments[first_id].status is dead_status
        assert store.payments[second_id].provider_payment_id == "pay_2"
        assert store.payments[second_id].status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_new_charge_settles(self, live_flow, store):
        await seed_order(store, tax_id=TAX_ID)
        first = await live_flow.run(context("quero pagar"))
        await live_flow.apply_callback(
            TENANT_ID, parse_payload(payment_payload("PAYMENT_OVERDUE", "pay_1"))
        )
        second = await live_flow.run(context("quero pagar"))

        result = await live_flow.apply_callback(
            TENANT_ID, parse_payload(payment_payload("PAYMENT_RECEIVED", "pay_2"))
        )

        assert result.status == "paid"
        assert store.payments[second.entities["payment_intent_id"]].status is PaymentStatus.PAID
        assert store.payments[first.entities["payment_intent_id"]].status is PaymentStatus.EXPIRED
