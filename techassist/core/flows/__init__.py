"""
Flows

Fixed automation handlers, one per intent, plus the human handoff.
"""

from techassist.core.flows.base import Flow, FlowContext, FlowResult
from techassist.core.flows.handoff import HandoffHandler
from techassist.core.flows.payment import PaymentFlow
from techassist.core.flows.quote import QuoteFlow, compute_quote
from techassist.core.flows.scheduling import SchedulingAttempt, SchedulingFlow, SchedulingState
from techassist.core.flows.status import StatusFlow
from techassist.core.flows.stock import StockFlow

__all__ = [
    "Flow",
    "FlowContext",
    "FlowResult",
    "HandoffHandler",
    "PaymentFlow",
    "QuoteFlow",
    "compute_quote",
    "SchedulingAttempt",
    "SchedulingFlow",
    "SchedulingState",
    "StatusFlow",
    "StockFlow",
]
