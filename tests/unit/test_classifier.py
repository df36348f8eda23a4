"""Tests for the rule-based event classifier."""

import pytest

from techassist.core.events.classifier import EventClassifier, normalize_text
from techassist.core.events.types import Intent

from tests.factories import inbound, message_payload, payment_payload


@pytest.fixture
def classifier():
    return EventClassifier()


class TestNormalizeText:

    def test_accents_and_case(self):
        assert normalize_text("  Orçamento HORÁRIO ") == "orcamento horario"


class TestClassifyText:

    @pytest.mark.parametrize("text,intent", [
        ("Quanto custa o conserto do celular Samsung?", Intent.QUOTE),
        ("Quero um orçamento", Intent.QUOTE),
        ("Vocês têm tela de iPhone em estoque?", Intent.STOCK_QUERY),
        ("Qual o status da minha OS?", Intent.STATUS_QUERY),
        ("Meu aparelho já está pronto?", Intent.STATUS_QUERY),
        ("Quero agendar um horário", Intent.SCHEDULING),
        ("Posso pagar com pix?", Intent.PAYMENT),
    ])
    def test_single_intent(self, classifier, text, intent):
        assert classifier.classify_text(text).intent is intent

    def test_no_match_is_other(self, classifier):
        result = classifier.classify_text("bom dia")

        assert result.intent is Intent.OTHER
        assert result.reason == "no_match"

    def test_tie_is_other(self, classifier):
        result = classifier.classify_text("orçamento e agendar")

        assert result.intent is Intent.OTHER
        assert result.reason == "tie"
        assert result.scores["quote"] == result.scores["scheduling"] == 1

    def test_empty_is_other(self, classifier):
        assert classifier.classify_text("   ").intent is Intent.OTHER

    def test_human_request_wins(self, classifier):
        result = classifier.classify_text("quero falar com um atendente sobre o orçamento")

        assert result.intent is Intent.OTHER
        assert result.reason == "human_requested"

    def test_os_article_does_not_count_as_status(self, classifier):
        assert classifier.classify_text("quais os preços?").intent is Intent.QUOTE

    def test_deterministic(self, classifier):
        text = "orçamento do notebook"
        results = {classifier.classify_text(text).intent for _ in range(5)}

        assert results == {Intent.QUOTE}


class TestSlotChoice:

    @pytest.mark.parametrize("text", ["2", "opção 1", "Sim", "ok, pode ser"])
    def test_choice_while_awaiting(self, classifier, text):
        result = classifier.classify_text(text, awaiting_slot_choice=True)

        assert result.intent is Intent.SCHEDULING
        assert result.reason == "slot_choice"

    def test_bare_number_without_proposals(self, classifier):
        assert classifier.classify_text("2").intent is Intent.OTHER


class TestClassifyEvent:

    def test_payment_callback(self, classifier):
        event = inbound(payment_payload("PAYMENT_RECEIVED", "pay_1"))

        assert classifier.classify(event).intent is Intent.PAYMENT

    def test_calendar_callback(self, classifier):
        event = inbound({
            "kind": "calendar#event",
            "calendarId": "agenda@group.calendar.google.com",
            "id": "ta1",
            "status": "cancelled",
        })

        assert classifier.classify(event).intent is Intent.SCHEDULING

    def test_message(self, classifier):
        event = inbound(message_payload("preciso de um orçamento"))

        assert classifier.classify(event).intent is Intent.QUOTE
