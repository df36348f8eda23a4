"""Inbound event types and intents."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional
from uuid import uuid4


class Intent(str, Enum):
    """Purpose of an inbound event; each maps to one flow."""

    QUOTE = "quote"
    STOCK_QUERY = "stock_query"
    STATUS_QUERY = "status_query"
    SCHEDULING = "scheduling"
    PAYMENT = "payment"

    # Human handoff, never automated
    OTHER = "other"


class EventSource(str, Enum):
    """Provider that sent the event."""

    MESSAGING = "messaging"
    CALENDAR = "calendar"
    PAYMENT = "payment"


@dataclass(frozen=True)
class RawEvent:
    """Webhook request as received, before parsing."""

    payload: Any
    path_tenant: Optional[str] = None
    query_tenant: Optional[str] = None


@dataclass(frozen=True)
class EventEnvelope:
    """
    Parsed, provider-normalised event that has no tenant yet.

    ``actionable`` is False for provider notifications that need no
    handling (connection updates, our own outbound messages).
    """

    source: EventSource
    provider_event: str
    payload: Mapping[str, Any]
    actionable: bool = True

    # Messaging
    instance_id: Optional[str] = None
    business_phone: Optional[str] = None
    sender: Optional[str] = None
    sender_name: Optional[str] = None
    text: Optional[str] = None
    message_id: Optional[str] = None

    # Payment callback
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None

    # Calendar callback
    calendar_id: Optional[str] = None
    calendar_event_id: Optional[str] = None
    calendar_status: Optional[str] = None


@dataclass(frozen=True)
class InboundEvent:
    """Envelope bound to a resolved tenant; intent is set by the classifier."""

    tenant_id: str
    envelope: EventEnvelope
    intent: Optional[Intent] = None
    event_id: str = field(default_factory=lambda: str(uuid4()))
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def source(self) -> EventSource:
        return self.envelope.source

    @property
    def sender(self) -> Optional[str]:
        return self.envelope.sender

    @property
    def text(self) -> str:
        return self.envelope.text or ""

    def with_intent(self, intent: Intent) -> "InboundEvent":
        return replace(self, intent=intent)


@dataclass
class ClassificationResult:
    """Result of event classification."""

    intent: Intent
    scores: dict[str, int] = field(default_factory=dict)
    matched: list[str] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "intent": self.intent.value,
            "scores": self.scores,
            "matched": self.matched,
            "reason": self.reason,
        }


def freeze(payload: dict) -> Mapping[str, Any]:
    """Read-only view of a payload."""
    return MappingProxyType(dict(payload))
