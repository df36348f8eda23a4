"""Tests for the read-only flows and the handoff handler."""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from techassist.core.conversation import ConversationStore
from techassist.core.flows.base import FlowContext
from techassist.core.flows.handoff import DEFAULT_HANDOFF_MESSAGE, HandoffHandler
from techassist.core.flows.status import NO_ORDERS_MESSAGE, StatusFlow
from techassist.core.flows.stock import NOT_FOUND_MESSAGE, StockFlow
from techassist.core.records import ServiceOrder, ServiceOrderStatus, StockItem
from techassist.core.tenancy.types import Tenant

from tests.factories import (
    CLIENT_PHONE,
    NOW,
    OTHER_TENANT_ID,
    TENANT_ID,
    inbound,
    make_client,
    make_config,
    make_store,
    message_payload,
)


@pytest.fixture(autouse=True)
def no_redis():
    with patch("techassist.core.conversation.get_redis", return_value=None):
        yield


@pytest.fixture
def store():
    return make_store(TENANT_ID, OTHER_TENANT_ID)


def context(text: str) -> FlowContext:
    return FlowContext(
        tenant=Tenant(id=TENANT_ID, name="Assistência"),
        config=make_config(),
        event=inbound(message_payload(text)),
    )


class TestStatusFlow:

    @pytest.mark.asyncio
    async def test_unknown_client(self, store):
        result = await StatusFlow(store).run(context("qual o status do meu aparelho?"))

        assert result.reply == NO_ORDERS_MESSAGE

    @pytest.mark.asyncio
    async def test_latest_orders_first(self, store):
        client = await store.create_client(make_client())
        older = await store.create_service_order(ServiceOrder(
            tenant_id=TENANT_ID,
            client_id=client.id,
            status=ServiceOrderStatus.DELIVERED,
            created_at=NOW - timedelta(days=30),
        ))
        newer = await store.create_service_order(ServiceOrder(
            tenant_id=TENANT_ID,
            client_id=client.id,
            status=ServiceOrderStatus.IN_REPAIR,
            quote_value=Decimal("135.00"),
            created_at=NOW,
        ))

        result = await StatusFlow(store).run(context("status da minha OS"))

        lines = result.reply.splitlines()
        assert lines[1] == f"- OS {newer.id[:8]}: em reparo (orçamento R$ 135.00)"
        assert lines[2] == f"- OS {older.id[:8]}: entregue"

    @pytest.mark.asyncio
    async def test_other_tenant_orders_hidden(self, store):
        other = await store.create_client(make_client(tenant_id=OTHER_TENANT_ID))
        await store.create_service_order(ServiceOrder(tenant_id=OTHER_TENANT_ID, client_id=other.id))
        await store.create_client(make_client())

        result = await StatusFlow(store).run(context("status"))

        assert result.reply == NO_ORDERS_MESSAGE


class TestStockFlow:

    @pytest.fixture
    def stocked(self, store):
        store.add_stock_item(StockItem(TENANT_ID, "Tela iPhone 11", 2, Decimal("350.00")))
        store.add_stock_item(StockItem(TENANT_ID, "Bateria iPhone 11", 0))
        store.add_stock_item(StockItem(TENANT_ID, "Tela Samsung A12", 5))
        store.add_stock_item(StockItem(OTHER_TENANT_ID, "Tela iPhone 11 Original", 9))
        return store

    @pytest.mark.asyncio
    async def test_best_match_first(self, stocked):
        result = await StockFlow(stocked).run(context("Vocês têm tela de iPhone 11 em estoque?"))

        lines = result.reply.splitlines()
        assert lines[0] == "- Tela iPhone 11: disponível (2 un.) por R$ 350.00"
        assert "- Bateria iPhone 11: sem estoque no momento" in lines
        assert not any("Original" in line for line in lines)

    @pytest.mark.asyncio
    async def test_not_found(self, stocked):
        result = await StockFlow(stocked).run(context("tem controle de videogame?"))

        assert result.reply == NOT_FOUND_MESSAGE
        assert result.status == "not_found"


class TestHandoffHandler:

    @pytest.mark.asyncio
    async def test_pauses_automation(self):
        conversations = ConversationStore()
        state = await conversations.get(TENANT_ID, CLIENT_PHONE)
        state.scheduling = {"state": "proposals_sent"}
        await conversations.save(state)
        handler = HandoffHandler(conversations, ttl=3600)

        reply = await handler.handoff(TENANT_ID, CLIENT_PHONE, make_config(), "no_match", now=NOW)

        assert reply == DEFAULT_HANDOFF_MESSAGE
        state = await conversations.get(TENANT_ID, CLIENT_PHONE)
        assert state.handoff_until == NOW + timedelta(hours=1)
        assert state.scheduling is None
        assert state.is_handed_off(NOW + timedelta(minutes=59))
        assert not state.is_handed_off(NOW + timedelta(minutes=61))

    @pytest.mark.asyncio
    async def test_without_sender(self):
        conversations = ConversationStore()
        handler = HandoffHandler(conversations, ttl=3600)

        reply = await handler.handoff(TENANT_ID, None, None, "config_unavailable", now=NOW)

        assert reply == DEFAULT_HANDOFF_MESSAGE
