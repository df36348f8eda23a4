"""
Base types shared by all flows.

A flow receives an immutable FlowContext and returns a FlowResult. It may
call adapters and persist entities; the dispatcher sends ``reply``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from techassist.core.events.types import InboundEvent, Intent
from techassist.core.records import Client
from techassist.core.tenancy.types import Tenant, TenantConfig
from techassist.persistence.base import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlowContext:
    """Everything a flow may read about the event. Immutable."""

    tenant: Tenant
    config: TenantConfig
    event: InboundEvent
    stale_config: bool = False

    @property
    def tenant_id(self) -> str:
        return self.tenant.id


@dataclass
class FlowResult:
    """Outcome of running a flow."""

    intent: Intent
    reply: Optional[str] = None
    reply_to: Optional[str] = None
    handoff: bool = False
    status: str = "handled"
    error_code: Optional[str] = None
    entities: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        result = {
            "intent": self.intent.value,
            "status": self.status,
            "handoff": self.handoff,
        }
        if self.reply:
            result["reply"] = self.reply
        if self.error_code:
            result["error_code"] = self.error_code
        if self.entities:
            result["entities"] = self.entities
        return result


class Flow(ABC):
    """Fixed automation handler for one intent."""

    intent: Intent

    def __init__(self, store: Store):
        self.store = store

    @abstractmethod
    async def run(self, ctx: FlowContext) -> FlowResult:
        """Handle the event."""
        ...

    async def get_or_create_client(self, ctx: FlowContext) -> Client:
        """Client for the event sender, created on first contact."""
        phone = ctx.event.sender
        if not phone:
            raise ValueError("Event has no sender")
        client = await self.store.get_client_by_phone(ctx.tenant_id, phone)
        if client is not None:
            return client
        name = ctx.event.envelope.sender_name or phone
        logger.info(f"New client for tenant={ctx.tenant_id}")
        return await self.store.create_client(
            Client(tenant_id=ctx.tenant_id, phone=phone, name=name)
        )
