"""
Webhook payload parsing.

Recognises three provider shapes:
- Evolution API messaging events (``event`` + ``instance`` + ``data``)
- Asaas payment callbacks (``event`` PAYMENT_* + ``payment``)
- Calendar event callbacks (``kind`` == "calendar#event")
"""

import logging
from typing import Any, Optional

from techassist.core.errors import MalformedPayload
from techassist.core.events.types import EventEnvelope, EventSource, freeze

logger = logging.getLogger(__name__)

WHATSAPP_SUFFIXES = ("@s.whatsapp.net", "@c.us")
MESSAGE_UPSERT = "messages.upsert"


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Strip WhatsApp JID suffixes and non-digits."""
    if not value:
        return None
    for suffix in WHATSAPP_SUFFIXES:
        if value.endswith(suffix):
            value = value[: -len(suffix)]
    digits = "".join(ch for ch in value if ch.isdigit())
    return digits or None


def _message_text(message: Any) -> Optional[str]:
    if not isinstance(message, dict):
        return None
    if isinstance(message.get("conversation"), str):
        return message["conversation"]
    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict) and isinstance(extended.get("text"), str):
        return extended["text"]
    return None


def _parse_messaging(payload: dict) -> EventEnvelope:
    event = str(payload["event"])
    instance_id = payload.get("instance")
    if instance_id is not None and not isinstance(instance_id, str):
        raise MalformedPayload("instance must be a string")
    business_phone = normalize_phone(payload.get("sender"))

    if event.lower().replace("_", ".") != MESSAGE_UPSERT:
        return EventEnvelope(
            source=EventSource.MESSAGING,
            provider_event=event,
            payload=freeze(payload),
            actionable=False,
            instance_id=instance_id,
            business_phone=business_phone,
        )

    data = payload.get("data")
    if not isinstance(data, dict):
        raise MalformedPayload("messages.upsert without data")
    key = data.get("key")
    if not isinstance(key, dict) or not isinstance(key.get("remoteJid"), str):
        raise MalformedPayload("messages.upsert without data.key.remoteJid")

    from_me = bool(key.get("fromMe", False))
    text = _message_text(data.get("message"))

    return EventEnvelope(
        source=EventSource.MESSAGING,
        provider_event=event,
        payload=freeze(payload),
        actionable=not from_me and text is not None,
        instance_id=instance_id,
        business_phone=business_phone,
        sender=normalize_phone(key["remoteJid"]),
        sender_name=data.get("pushName"),
        text=text.strip() if text else None,
        message_id=key.get("id"),
    )


def _parse_payment(payload: dict) -> EventEnvelope:
    payment = payload.get("payment")
    if not isinstance(payment, dict) or not payment.get("id"):
        raise MalformedPayload("payment callback without payment.id")
    return EventEnvelope(
        source=EventSource.PAYMENT,
        provider_event=str(payload["event"]),
        payload=freeze(payload),
        payment_id=str(payment["id"]),
        subscription_id=payment.get("subscription"),
    )


def _parse_calendar(payload: dict) -> EventEnvelope:
    event_id = payload.get("id")
    calendar_id = payload.get("calendarId")
    if not event_id or not calendar_id:
        raise MalformedPayload("calendar callback without id/calendarId")
    return EventEnvelope(
        source=EventSource.CALENDAR,
        provider_event=str(payload.get("kind")),
        payload=freeze(payload),
        calendar_id=str(calendar_id),
        calendar_event_id=str(event_id),
        calendar_status=payload.get("status"),
    )


def parse_payload(payload: Any) -> EventEnvelope:
    """
    Parse a webhook body into an envelope.

    Raises:
        MalformedPayload: If the body is not a JSON object of a known shape
    """
    if not isinstance(payload, dict):
        raise MalformedPayload("Payload must be a JSON object")

    event = payload.get("event")
    if isinstance(event, str) and event.upper().startswith("PAYMENT_"):
        return _parse_payment(payload)
    if str(payload.get("kind", "")).startswith("calendar#"):
        return _parse_calendar(payload)
    if isinstance(event, str) and ("data" in payload or "instance" in payload):
        return _parse_messaging(payload)

    logger.debug(f"Unrecognised payload keys: {sorted(payload)}")
    raise MalformedPayload("Unrecognised event payload")
