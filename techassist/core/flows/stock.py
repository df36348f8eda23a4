"""Stock Flow: answers part availability questions from the tenant's stock."""

import logging

from techassist.core.events.classifier import normalize_text
from techassist.core.events.types import Intent
from techassist.core.flows.base import Flow, FlowContext, FlowResult

logger = logging.getLogger(__name__)

# Words that carry no product meaning
STOPWORDS = {
    "tem", "voce", "voces", "vcs", "em", "estoque", "de", "do", "da", "para",
    "pra", "o", "a", "os", "as", "um", "uma", "disponivel", "peca", "pecas",
    "ola", "oi", "bom", "dia", "quero", "saber", "se", "ai",
}

NOT_FOUND_MESSAGE = "Não encontrei esse item no estoque. Um atendente pode verificar para você."


class StockFlow(Flow):
    """Keyword search over stock items."""

    intent = Intent.STOCK_QUERY

    async def run(self, ctx: FlowContext) -> FlowResult:
        words = {
            w for w in normalize_text(ctx.event.text).replace("?", " ").split()
            if len(w) > 1 and w not in STOPWORDS
        }
        items = await self.store.list_stock_items(ctx.tenant_id)

        matches = []
        for item in items:
            name_words = set(normalize_text(item.name).split())
            score = len(words & name_words)
            if score:
                matches.append((score, item))

        if not matches:
            return FlowResult(intent=self.intent, reply=NOT_FOUND_MESSAGE, status="not_found")

        matches.sort(key=lambda pair: (-pair[0], pair[1].name))
        lines = []
        for _, item in matches[:3]:
            if item.quantity > 0:
                line = f"- {item.name}: disponível ({item.quantity} un.)"
                if item.price is not None:
                    line += f" por R$ {item.price:.2f}"
            else:
                line = f"- {item.name}: sem estoque no momento"
            lines.append(line)

        return FlowResult(intent=self.intent, reply="\n".join(lines))
