"""
Dispatcher.

Main orchestrator for inbound webhook events.

Flow:
1. Parse the payload into an envelope (422 on failure)
2. Resolve the tenant (404 on failure); nothing is persisted before this
3. Load the tenant config snapshot and conversation state
4. Classify the event into an intent
5. Run the flow for the intent under an overall timeout
6. Send the reply through the tenant's messaging instance

Anything that goes wrong after step 2 ends in a human handoff, never in a
silent drop.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from techassist.config import settings
from techassist.core.adapters.calendar import GoogleCalendarClient
from techassist.core.adapters.messaging import EvolutionClient
from techassist.core.adapters.payment import AsaasClient
from techassist.core.auth.oauth_client import GoogleOAuthClient
from techassist.core.auth.token_manager import TokenManager
from techassist.core.conversation import ConversationStore
from techassist.core.errors import DispatchError
from techassist.core.events.classifier import EventClassifier, get_classifier
from techassist.core.events.parser import parse_payload
from techassist.core.events.types import EventSource, InboundEvent, Intent, RawEvent
from techassist.core.flows.base import Flow, FlowContext, FlowResult
from techassist.core.flows.handoff import HandoffHandler
from techassist.core.flows.payment import PaymentFlow
from techassist.core.flows.quote import QuoteFlow
from techassist.core.flows.scheduling import SchedulingFlow, SchedulingState
from techassist.core.flows.status import StatusFlow
from techassist.core.flows.stock import StockFlow
from techassist.core.tenancy.registry import TenantRegistry
from techassist.core.tenancy.resolver import TenantResolver
from techassist.core.tenancy.types import TenantConfig
from techassist.persistence import get_store
from techassist.persistence.base import Store

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """Outcome of handling one inbound event."""

    tenant_id: str
    event_id: str
    status: str  # handled | handoff | ignored
    intent: Optional[Intent] = None
    reply: Optional[str] = None
    error_code: Optional[str] = None
    flow_status: Optional[str] = None
    processing_time_ms: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        result = {
            "tenant_id": self.tenant_id,
            "event_id": self.event_id,
            "status": self.status,
        }
        if self.intent:
            result["intent"] = self.intent.value
        if self.reply:
            result["reply"] = self.reply
        if self.error_code:
            result["error_code"] = self.error_code
        if self.flow_status:
            result["flow_status"] = self.flow_status
        if self.processing_time_ms is not None:
            result["processing_time_ms"] = self.processing_time_ms
        return result


class Dispatcher:
    """Routes tenant events to automation flows."""

    def __init__(
        self,
        store: Store,
        registry: TenantRegistry,
        resolver: TenantResolver,
        classifier: EventClassifier,
        messaging: EvolutionClient,
        flows: dict[Intent, Flow],
        handoff: HandoffHandler,
        conversations: ConversationStore,
        token_manager: Optional[TokenManager] = None,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.registry = registry
        self.resolver = resolver
        self.classifier = classifier
        self.messaging = messaging
        self.flows = flows
        self.handoff = handoff
        self.conversations = conversations
        self.token_manager = token_manager
        self.timeout = timeout or settings.dispatch_timeout

    # === Intake ===

    async def accept(self, raw: RawEvent) -> InboundEvent:
        """
        Validate and bind an event to its tenant.

        Raises:
            MalformedPayload: Payload is not a recognised provider event
            TenantResolutionError: No active tenant matches the event
        """
        envelope = parse_payload(raw.payload)
        tenant_id = await self.resolver.resolve(raw, envelope)
        return InboundEvent(tenant_id=tenant_id, envelope=envelope)

    async def process(self, raw: RawEvent) -> DispatchResult:
        """Accept and handle an event in one call."""
        event = await self.accept(raw)
        return await self.handle(event)

    # === Handling ===

    async def handle(self, event: InboundEvent) -> DispatchResult:
        """
        Handle a tenant-bound event. Never raises.

        Args:
            event: Event returned by ``accept``

        Returns:
            DispatchResult; failures are reported with status ``handoff``
        """
        start_time = time.time()
        context: dict = {}

        try:
            result = await asyncio.wait_for(self._run(event, context), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Event {event.event_id} timed out after {self.timeout}s")
            result = await self._handoff(event, context, "dispatch_timeout")
        except DispatchError as e:
            logger.warning(f"Event {event.event_id} failed: {e.error_code}: {e.message}")
            result = await self._handoff(event, context, e.error_code)
        except Exception as e:
            logger.exception(f"Error processing event {event.event_id}: {e}")
            result = await self._handoff(event, context, "internal_error")

        result.processing_time_ms = (time.time() - start_time) * 1000
        return result

    async def _run(self, event: InboundEvent, context: dict) -> DispatchResult:
        envelope = event.envelope
        if not envelope.actionable:
            return self._result(event, "ignored")

        snapshot = await self.registry.get_config(event.tenant_id)
        context["config"] = snapshot.config
        if snapshot.stale:
            logger.warning(f"Serving stale config for tenant={event.tenant_id}")
        tenant = await self.registry.get_tenant(event.tenant_id)

        awaiting_slot_choice = False
        if event.source is EventSource.MESSAGING and event.sender:
            conversation = await self.conversations.get(event.tenant_id, event.sender)
            if conversation.is_handed_off(event.received_at):
                logger.info(f"Conversation handed off, skipping automation for event {event.event_id}")
                return self._result(event, "ignored", flow_status="handed_off")
            scheduling = conversation.scheduling or {}
            awaiting_slot_choice = scheduling.get("state") == SchedulingState.PROPOSALS_SENT.value

        classification = self.classifier.classify(event, awaiting_slot_choice=awaiting_slot_choice)
        event = event.with_intent(classification.intent)
        context["intent"] = classification.intent
        logger.info(
            f"Event {event.event_id} tenant={event.tenant_id} "
            f"intent={classification.intent.value} ({classification.reason})"
        )

        flow = self.flows.get(classification.intent)
        if flow is None:
            return await self._handoff(event, context, classification.reason or "other")

        ctx = FlowContext(tenant=tenant, config=snapshot.config, event=event, stale_config=snapshot.stale)
        flow_result = await flow.run(ctx)

        if flow_result.handoff:
            return await self._handoff(
                event, context, flow_result.error_code or "flow_handoff", reply=flow_result.reply
            )

        await self._send_reply(event, snapshot.config, flow_result)
        return self._result(
            event,
            "handled",
            intent=flow_result.intent,
            reply=flow_result.reply,
            flow_status=flow_result.status,
        )

    async def _send_reply(self, event: InboundEvent, config: TenantConfig, result: FlowResult) -> None:
        to = result.reply_to or event.sender
        if not result.reply or not to:
            return
        if not config.instance_id:
            logger.warning(f"Tenant {event.tenant_id} has no messaging instance, reply dropped")
            return
        await self.messaging.send_message(config.instance_id, to, result.reply)

    async def _handoff(
        self,
        event: InboundEvent,
        context: dict,
        reason: str,
        reply: Optional[str] = None,
    ) -> DispatchResult:
        """Hand the conversation to a human. Never raises."""
        config: Optional[TenantConfig] = context.get("config")
        phone = event.sender if event.source is EventSource.MESSAGING else None

        try:
            message = await self.handoff.handoff(
                event.tenant_id, phone, config, reason, now=event.received_at
            )
            if reply:
                message = reply
            if phone and config is not None and config.instance_id:
                await self.messaging.send_message(config.instance_id, phone, message)
        except Exception as e:
            logger.exception(f"Handoff notification failed for event {event.event_id}: {e}")
            message = None

        return self._result(
            event,
            "handoff",
            intent=context.get("intent", Intent.OTHER),
            reply=message,
            error_code=reason,
        )

    @staticmethod
    def _result(event: InboundEvent, status: str, **kwargs) -> DispatchResult:
        return DispatchResult(tenant_id=event.tenant_id, event_id=event.event_id, status=status, **kwargs)

    async def close(self) -> None:
        """Close provider HTTP clients."""
        await self.messaging.close()
        for flow in self.flows.values():
            for attr in ("calendar", "payments"):
                client = getattr(flow, attr, None)
                if client is not None:
                    await client.close()
        if self.token_manager is not None:
            await self.token_manager.oauth_client.close()


# Global dispatcher instance
_dispatcher: Optional[Dispatcher] = None


def build_dispatcher(store: Optional[Store] = None) -> Dispatcher:
    """Wire a dispatcher with the default adapters and flows."""
    store = store or get_store()
    registry = TenantRegistry(store)
    conversations = ConversationStore()
    token_manager = TokenManager(store, GoogleOAuthClient())

    flows: dict[Intent, Flow] = {
        Intent.QUOTE: QuoteFlow(store),
        Intent.STOCK_QUERY: StockFlow(store),
        Intent.STATUS_QUERY: StatusFlow(store),
        Intent.SCHEDULING: SchedulingFlow(
            store, GoogleCalendarClient(), token_manager, conversations
        ),
        Intent.PAYMENT: PaymentFlow(store, AsaasClient()),
    }

    return Dispatcher(
        store=store,
        registry=registry,
        resolver=TenantResolver(registry, store),
        classifier=get_classifier(),
        messaging=EvolutionClient(),
        flows=flows,
        handoff=HandoffHandler(conversations),
        conversations=conversations,
        token_manager=token_manager,
    )


def get_dispatcher() -> Dispatcher:
    """Get singleton dispatcher instance."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher()
    return _dispatcher


async def close_dispatcher() -> None:
    global _dispatcher
    if _dispatcher is not None:
        await _dispatcher.close()
        _dispatcher = None
