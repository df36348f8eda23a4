"""
External adapters.

Thin typed clients for the messaging, calendar and payment providers.
"""

from techassist.core.adapters.calendar import CreatedEvent, EventSpec, GoogleCalendarClient, Slot
from techassist.core.adapters.messaging import EvolutionClient, InstanceInfo
from techassist.core.adapters.payment import AsaasClient, ChargeResult, CustomerInfo

__all__ = [
    "CreatedEvent",
    "EventSpec",
    "GoogleCalendarClient",
    "Slot",
    "EvolutionClient",
    "InstanceInfo",
    "AsaasClient",
    "ChargeResult",
    "CustomerInfo",
]
