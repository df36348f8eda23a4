"""
Human handoff.

Used whenever automation cannot or should not answer: intent Other, flow
failures, timeouts. Replies with a deterministic message and pauses
automation for the client so a person can take over.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from techassist.config import settings
from techassist.core.conversation import ConversationStore
from techassist.core.tenancy.types import TEMPLATE_AFTER_HOURS, TEMPLATE_HANDOFF, TenantConfig

logger = logging.getLogger(__name__)

DEFAULT_HANDOFF_MESSAGE = (
    "Vou transferir você para um dos nossos atendentes. "
    "Em instantes alguém continua a conversa por aqui."
)

DEFAULT_AFTER_HOURS_MESSAGE = (
    "Estamos fora do horário de atendimento. "
    "Um atendente responderá assim que abrirmos."
)


def handoff_message(config: Optional[TenantConfig], now: datetime) -> str:
    """
    Message sent on handoff.

    Uses the tenant's ``after_hours`` template outside business hours and
    its ``handoff`` template otherwise, falling back to fixed text.
    """
    if config is None:
        return DEFAULT_HANDOFF_MESSAGE

    local_now = now.astimezone(ZoneInfo(config.timezone))
    if not config.business_hours.is_open(local_now):
        return config.template(TEMPLATE_AFTER_HOURS) or DEFAULT_AFTER_HOURS_MESSAGE
    return config.template(TEMPLATE_HANDOFF) or DEFAULT_HANDOFF_MESSAGE


class HandoffHandler:
    """Builds handoff replies and pauses automation for the client."""

    def __init__(self, conversations: ConversationStore, ttl: Optional[int] = None):
        self.conversations = conversations
        self.ttl = ttl or settings.handoff_ttl

    async def handoff(
        self,
        tenant_id: str,
        phone: Optional[str],
        config: Optional[TenantConfig],
        reason: str,
        now: Optional[datetime] = None,
    ) -> str:
        """Mark the conversation as handed off and return the reply text."""
        now = now or datetime.now(timezone.utc)
        logger.warning(f"Handoff for tenant={tenant_id}: {reason}")

        if phone:
            state = await self.conversations.get(tenant_id, phone)
            state.handoff_until = now + timedelta(seconds=self.ttl)
            state.scheduling = None
            await self.conversations.save(state)

        return handoff_message(config, now)
