"""
Rule-based event classification.

Deterministic keyword scoring, no ML. The unique highest-scoring intent
wins; ties and zero scores resolve to Intent.OTHER (human handoff) so that
ambiguous input never triggers a financial or scheduling action.
"""

import logging
import re
import unicodedata
from typing import Optional

from techassist.core.events.types import (
    ClassificationResult,
    EventSource,
    InboundEvent,
    Intent,
)

logger = logging.getLogger(__name__)


# Patterns run against accent-stripped, lower-cased text
INTENT_PATTERNS: dict[Intent, tuple[str, ...]] = {
    Intent.QUOTE: (
        r"orcamento",
        r"quanto (custa|fica|sai|cobra)",
        r"preco",
        r"valor do (conserto|reparo)",
        r"consert(o|ar)",
        r"reparo",
        r"quote",
        r"how much",
    ),
    Intent.STOCK_QUERY: (
        r"estoque",
        r"tem (a |o )?(peca|tela|bateria|carregador|capinha|pelicula)",
        r"(peca|pecas) disponive(l|is)",
        r"in stock",
    ),
    Intent.STATUS_QUERY: (
        r"status",
        r"ordem de servico",
        r"\b((minha|a) os\b|os\s*#?\d+)",
        r"andamento",
        r"(ja )?(esta|ficou|fica) pronto",
        r"meu aparelho",
    ),
    Intent.SCHEDULING: (
        r"agenda(r|mento)?",
        r"marcar",
        r"horario",
        r"visita",
        r"levar (o|meu) aparelho",
        r"appointment",
        r"schedule",
    ),
    Intent.PAYMENT: (
        r"paga(r|mento)",
        r"\bpix\b",
        r"boleto",
        r"cartao",
        r"link de pagamento",
        r"fatura",
        r"assinatura",
        r"\bpay\b",
    ),
}

HUMAN_PATTERNS = (r"atendente", r"humano", r"falar com (alguem|uma pessoa)", r"\bhuman\b")

AFFIRMATIVE_PATTERN = re.compile(r"^(sim|ok|pode ser|confirmo|confirmar|isso|yes|claro)\b")
OPTION_PATTERN = re.compile(r"^(opcao\s*)?(\d{1,2})\W*$")


def normalize_text(text: str) -> str:
    """Lower-case and strip accents."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).strip()


def _compile(patterns: tuple[str, ...]) -> list[re.Pattern]:
    return [re.compile(rf"\b{p}" if not p.startswith(r"\b") else p) for p in patterns]


class EventClassifier:
    """
    Deterministic classifier.

    Callbacks are classified by source; chat messages by keyword score.
    ``awaiting_slot_choice`` is a conversation hint: when slot proposals
    are open, a bare option number or an affirmative reply is Scheduling.
    """

    def __init__(self):
        self._patterns = {
            intent: _compile(patterns) for intent, patterns in INTENT_PATTERNS.items()
        }
        self._human = _compile(HUMAN_PATTERNS)

    def classify(
        self,
        event: InboundEvent,
        awaiting_slot_choice: bool = False,
    ) -> ClassificationResult:
        """
        Classify an inbound event.

        Args:
            event: Tenant-bound event
            awaiting_slot_choice: Whether the conversation has open slot proposals

        Returns:
            ClassificationResult with intent and per-intent scores
        """
        if event.source is EventSource.PAYMENT:
            return ClassificationResult(intent=Intent.PAYMENT, reason="payment_callback")
        if event.source is EventSource.CALENDAR:
            return ClassificationResult(intent=Intent.SCHEDULING, reason="calendar_callback")

        return self.classify_text(event.text, awaiting_slot_choice=awaiting_slot_choice)

    def classify_text(
        self,
        text: str,
        awaiting_slot_choice: bool = False,
    ) -> ClassificationResult:
        normalized = normalize_text(text)
        if not normalized:
            return ClassificationResult(intent=Intent.OTHER, reason="empty")

        if any(p.search(normalized) for p in self._human):
            return ClassificationResult(intent=Intent.OTHER, reason="human_requested")

        if awaiting_slot_choice and (
            OPTION_PATTERN.match(normalized) or AFFIRMATIVE_PATTERN.match(normalized)
        ):
            return ClassificationResult(intent=Intent.SCHEDULING, reason="slot_choice")

        scores: dict[str, int] = {}
        matched: list[str] = []
        for intent, patterns in self._patterns.items():
            score = 0
            for pattern in patterns:
                if pattern.search(normalized):
                    score += 1
                    matched.append(f"{intent.value}:{pattern.pattern}")
            scores[intent.value] = score

        best = max(scores.values())
        if best == 0:
            return ClassificationResult(
                intent=Intent.OTHER, scores=scores, matched=matched, reason="no_match"
            )

        winners = [name for name, score in scores.items() if score == best]
        if len(winners) > 1:
            logger.debug(f"Classification tie between {winners}, handing off")
            return ClassificationResult(
                intent=Intent.OTHER, scores=scores, matched=matched, reason="tie"
            )

        return ClassificationResult(
            intent=Intent(winners[0]), scores=scores, matched=matched, reason="keywords"
        )


# Singleton
_classifier: Optional[EventClassifier] = None


def get_classifier() -> EventClassifier:
    """Get singleton classifier."""
    global _classifier
    if _classifier is None:
        _classifier = EventClassifier()
    return _classifier
