"""
Events

Webhook payload parsing and rule-based intent classification.
"""

from techassist.core.events.classifier import EventClassifier, get_classifier
from techassist.core.events.parser import normalize_phone, parse_payload
from techassist.core.events.types import (
    ClassificationResult,
    EventEnvelope,
    EventSource,
    InboundEvent,
    Intent,
    RawEvent,
)

__all__ = [
    "EventClassifier",
    "get_classifier",
    "normalize_phone",
    "parse_payload",
    "ClassificationResult",
    "EventEnvelope",
    "EventSource",
    "InboundEvent",
    "Intent",
    "RawEvent",
]
