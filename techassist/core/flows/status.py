"""Status Flow: reports the client's most recent service orders."""

import logging

from techassist.core.events.types import Intent
from techassist.core.flows.base import Flow, FlowContext, FlowResult
from techassist.core.records import ServiceOrderStatus

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    ServiceOrderStatus.RECEIVED: "recebido",
    ServiceOrderStatus.IN_ANALYSIS: "em análise",
    ServiceOrderStatus.AWAITING_APPROVAL: "aguardando aprovação do orçamento",
    ServiceOrderStatus.IN_REPAIR: "em reparo",
    ServiceOrderStatus.READY: "pronto para retirada",
    ServiceOrderStatus.DELIVERED: "entregue",
    ServiceOrderStatus.CANCELLED: "cancelado",
}

NO_ORDERS_MESSAGE = "Não encontrei ordens de serviço no seu número."


class StatusFlow(Flow):
    """Read-only lookup of service order status."""

    intent = Intent.STATUS_QUERY

    async def run(self, ctx: FlowContext) -> FlowResult:
        client = await self.store.get_client_by_phone(ctx.tenant_id, ctx.event.sender or "")
        if client is None:
            return FlowResult(intent=self.intent, reply=NO_ORDERS_MESSAGE)

        orders = await self.store.list_service_orders(ctx.tenant_id, client.id, limit=3)
        if not orders:
            return FlowResult(intent=self.intent, reply=NO_ORDERS_MESSAGE)

        lines = ["Suas ordens de serviço:"]
        for order in orders:
            line = f"- OS {order.id[:8]}: {STATUS_LABELS.get(order.status, order.status.value)}"
            if order.quote_value is not None:
                line += f" (orçamento R$ {order.quote_value:.2f})"
            lines.append(line)

        return FlowResult(intent=self.intent, reply="\n".join(lines))
