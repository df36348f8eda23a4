"""
Scheduling Flow.

Lifecycle of one attempt:

    REQUESTED -> PROPOSALS_SENT -> CONFIRMED -> SYNCED

Any non-terminal state may move to FAILED.

The attempt lives in the client's conversation state between messages.
Confirmation runs under a per-tenant lock and re-checks availability
before the calendar event is created, so two clients picking the same
slot cannot both get it. An Appointment is only persisted once the
calendar event exists.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import uuid4
from zoneinfo import ZoneInfo

from techassist.config import settings
from techassist.core.adapters.calendar import EventSpec, GoogleCalendarClient, Slot
from techassist.core.auth.token_manager import TokenManager
from techassist.core.conversation import ConversationState, ConversationStore
from techassist.core.errors import CalendarAuthError, DispatchError, SlotConflict, TokenRevoked
from techassist.core.events.classifier import AFFIRMATIVE_PATTERN, OPTION_PATTERN, normalize_text
from techassist.core.events.types import EventSource, Intent
from techassist.core.flows.base import Flow, FlowContext, FlowResult
from techassist.core.records import Appointment, AppointmentStatus, Client
from techassist.core.tenancy.types import TenantConfig
from techassist.persistence.base import Store

logger = logging.getLogger(__name__)

T = TypeVar("T")

WEEKDAY_NAMES = ("seg", "ter", "qua", "qui", "sex", "sáb", "dom")

NO_SLOTS_MESSAGE = (
    "No momento não encontrei horários livres nos próximos dias. "
    "Vou pedir para um atendente combinar com você."
)
CONFLICT_PREFIX = "Esse horário acabou de ser reservado. "


class SchedulingState(str, Enum):
    """State of one scheduling attempt."""
    REQUESTED = "requested"
    PROPOSALS_SENT = "proposals_sent"
    CONFIRMED = "confirmed"
    SYNCED = "synced"
    FAILED = "failed"


VALID_TRANSITIONS: dict[SchedulingState, set[SchedulingState]] = {
    SchedulingState.REQUESTED: {SchedulingState.PROPOSALS_SENT, SchedulingState.FAILED},
    SchedulingState.PROPOSALS_SENT: {SchedulingState.CONFIRMED, SchedulingState.FAILED},
    SchedulingState.CONFIRMED: {SchedulingState.SYNCED, SchedulingState.FAILED},
    SchedulingState.SYNCED: set(),
    SchedulingState.FAILED: set(),
}


def can_transition(from_state: SchedulingState, to_state: SchedulingState) -> bool:
    """Check if a state transition is valid."""
    return to_state in VALID_TRANSITIONS.get(from_state, set())


@dataclass
class SchedulingAttempt:
    """One attempt at booking an appointment for a client."""

    attempt_id: str = field(default_factory=lambda: uuid4().hex)
    state: SchedulingState = SchedulingState.REQUESTED
    proposals: list[Slot] = field(default_factory=list)
    conflicts: int = 0
    error_code: Optional[str] = None

    def transition(self, new_state: SchedulingState) -> None:
        if not can_transition(self.state, new_state):
            raise ValueError(
                f"Invalid scheduling transition: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def fail(self, error_code: str) -> None:
        if self.state is not SchedulingState.FAILED:
            self.transition(SchedulingState.FAILED)
        self.error_code = error_code

    @property
    def event_id(self) -> str:
        """Calendar event id derived from the attempt (base32hex-safe)."""
        return f"ta{self.attempt_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "state": self.state.value,
            "proposals": [slot.to_dict() for slot in self.proposals],
            "conflicts": self.conflicts,
            "error_code": self.error_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SchedulingAttempt":
        return cls(
            attempt_id=data["attempt_id"],
            state=SchedulingState(data["state"]),
            proposals=[Slot.from_dict(s) for s in data.get("proposals", [])],
            conflicts=int(data.get("conflicts", 0)),
            error_code=data.get("error_code"),
        )


def candidate_slots(
    config: TenantConfig,
    now: datetime,
    duration_minutes: int,
    days: int,
) -> list[Slot]:
    """
    Slots inside business hours from ``now`` over the next ``days`` days.

    Slots are aligned to the opening time and expressed in the tenant's
    timezone.
    """
    tz = ZoneInfo(config.timezone)
    local_now = now.astimezone(tz)
    hours = config.business_hours
    duration = timedelta(minutes=duration_minutes)

    slots = []
    for offset in range(days + 1):
        day = (local_now + timedelta(days=offset)).date()
        if day.weekday() not in hours.weekdays:
            continue
        start = datetime.combine(day, hours.start, tzinfo=tz)
        closing = datetime.combine(day, hours.end, tzinfo=tz)
        while start + duration <= closing:
            if start > local_now:
                slots.append(Slot(start=start, end=start + duration))
            start += duration
    return slots


def parse_choice(text: str, option_count: int) -> Optional[int]:
    """Index of the chosen proposal, or None when the text is not a choice.

    A bare affirmative picks the first option.
    """
    normalized = normalize_text(text)
    match = OPTION_PATTERN.match(normalized)
    if match:
        index = int(match.group(2)) - 1
        return index if 0 <= index < option_count else None
    if AFFIRMATIVE_PATTERN.match(normalized) and option_count:
        return 0
    return None


def format_slot(slot: Slot, tz_name: str) -> str:
    local = slot.start.astimezone(ZoneInfo(tz_name))
    return f"{WEEKDAY_NAMES[local.weekday()]} {local:%d/%m} às {local:%H:%M}"


class SchedulingFlow(Flow):
    """Proposes free slots and books the chosen one in the tenant calendar."""

    intent = Intent.SCHEDULING

    def __init__(
        self,
        store: Store,
        calendar: GoogleCalendarClient,
        token_manager: TokenManager,
        conversations: ConversationStore,
        duration_minutes: Optional[int] = None,
        proposal_count: Optional[int] = None,
        proposal_days: Optional[int] = None,
        max_conflicts: Optional[int] = None,
    ):
        super().__init__(store)
        self.calendar = calendar
        self.tokens = token_manager
        self.conversations = conversations
        self.duration_minutes = duration_minutes or settings.appointment_duration_minutes
        self.proposal_count = proposal_count or settings.proposal_count
        self.proposal_days = proposal_days or settings.proposal_days
        self.max_conflicts = max_conflicts or settings.max_slot_conflicts
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    async def run(self, ctx: FlowContext) -> FlowResult:
        if ctx.event.source is EventSource.CALENDAR:
            return await self.apply_calendar_update(ctx)

        if not ctx.config.calendar_id:
            logger.warning(f"Tenant {ctx.tenant_id} has no calendar configured")
            return FlowResult(
                intent=self.intent,
                handoff=True,
                status="handoff",
                error_code="calendar_not_configured",
            )

        client = await self.get_or_create_client(ctx)
        conversation = await self.conversations.get(ctx.tenant_id, client.phone)

        attempt = None
        if conversation.scheduling:
            attempt = SchedulingAttempt.from_dict(conversation.scheduling)

        if attempt is not None and attempt.state is SchedulingState.PROPOSALS_SENT:
            choice = parse_choice(ctx.event.text, len(attempt.proposals))
            if choice is not None:
                return await self._confirm_choice(ctx, client, conversation, attempt, choice)

        return await self._propose(ctx, conversation, SchedulingAttempt())

    # === Proposals ===

    async def propose(self, ctx: FlowContext, attempt: SchedulingAttempt) -> SchedulingAttempt:
        """Fill ``attempt`` with free slots and move it to PROPOSALS_SENT.

        Moves the attempt to FAILED with ``no_availability`` when nothing
        is free.
        """
        config = ctx.config
        candidates = candidate_slots(
            config, ctx.event.received_at, self.duration_minutes, self.proposal_days
        )
        free = await self._with_token(
            ctx,
            lambda token: self.calendar.query_availability(
                config.calendar_id, token, candidates, config.timezone
            ),
        )

        if not free:
            attempt.fail("no_availability")
            return attempt

        attempt.proposals = free[: self.proposal_count]
        attempt.transition(SchedulingState.PROPOSALS_SENT)
        return attempt

    async def _propose(
        self,
        ctx: FlowContext,
        conversation: ConversationState,
        attempt: SchedulingAttempt,
        prefix: str = "",
    ) -> FlowResult:
        try:
            await self.propose(ctx, attempt)
        except DispatchError as e:
            attempt.fail(e.error_code)
            raise
        finally:
            conversation.scheduling = attempt.to_dict()
            await self.conversations.save(conversation)

        if attempt.state is SchedulingState.FAILED:
            return FlowResult(
                intent=self.intent,
                reply=NO_SLOTS_MESSAGE,
                handoff=True,
                status="handoff",
                error_code=attempt.error_code,
            )

        lines = [f"{prefix}Tenho estes horários disponíveis:"]
        for number, slot in enumerate(attempt.proposals, start=1):
            lines.append(f"{number}) {format_slot(slot, ctx.config.timezone)}")
        lines.append("Responda com o número da opção desejada.")

        return FlowResult(
            intent=self.intent,
            reply="\n".join(lines),
            status="proposals_sent",
            entities={"attempt_id": attempt.attempt_id},
        )

    # === Confirmation ===

    async def confirm(
        self,
        ctx: FlowContext,
        client: Client,
        attempt: SchedulingAttempt,
        slot: Slot,
    ) -> Appointment:
        """
        Book ``slot`` for ``client``.

        Re-validates availability under the tenant lock, creates the
        calendar event and only then persists the Appointment.

        Raises:
            SlotConflict: The slot was taken since it was proposed
            CalendarAuthError: Credentials could not be made to work
            AdapterError: Calendar provider failure
        """
        config = ctx.config
        attempt.transition(SchedulingState.CONFIRMED)

        try:
            async with self._lock_for(ctx.tenant_id):
                still_free = await self._with_token(
                    ctx,
                    lambda token: self.calendar.query_availability(
                        config.calendar_id, token, [slot], config.timezone
                    ),
                )
                if not still_free:
                    raise SlotConflict(
                        "Slot no longer available",
                        details={"start": slot.start.isoformat()},
                    )

                spec = EventSpec(
                    summary=f"Atendimento - {client.name}",
                    start=slot.start,
                    end=slot.end,
                    timezone=config.timezone,
                    description=f"Cliente: {client.name}\nTelefone: {client.phone}",
                    event_id=attempt.event_id,
                )
                created = await self._with_token(
                    ctx,
                    lambda token: self.calendar.create_event(config.calendar_id, token, spec),
                )

                appointment = Appointment(
                    tenant_id=ctx.tenant_id,
                    client_id=client.id,
                    scheduled_start=slot.start,
                    scheduled_end=slot.end,
                    external_event_id=created.event_id,
                    external_link=created.link,
                )
                await self.store.save_appointment(appointment)
        except DispatchError as e:
            attempt.fail(e.error_code)
            logger.warning(
                f"Scheduling attempt {attempt.attempt_id} failed for "
                f"tenant={ctx.tenant_id}: {e.error_code}"
            )
            raise

        attempt.transition(SchedulingState.SYNCED)
        logger.info(
            f"Appointment {appointment.id} synced for tenant={ctx.tenant_id} "
            f"event={appointment.external_event_id}"
        )
        return appointment

    async def _confirm_choice(
        self,
        ctx: FlowContext,
        client: Client,
        conversation: ConversationState,
        attempt: SchedulingAttempt,
        choice: int,
    ) -> FlowResult:
        slot = attempt.proposals[choice]
        try:
            appointment = await self.confirm(ctx, client, attempt, slot)
        except SlotConflict:
            conflicts = attempt.conflicts + 1
            if conflicts >= self.max_conflicts:
                attempt.conflicts = conflicts
                conversation.scheduling = attempt.to_dict()
                await self.conversations.save(conversation)
                return FlowResult(
                    intent=self.intent,
                    handoff=True,
                    status="handoff",
                    error_code=SlotConflict.error_code,
                )
            return await self._propose(
                ctx, conversation, SchedulingAttempt(conflicts=conflicts), prefix=CONFLICT_PREFIX
            )
        except DispatchError:
            conversation.scheduling = attempt.to_dict()
            await self.conversations.save(conversation)
            raise

        conversation.scheduling = attempt.to_dict()
        await self.conversations.save(conversation)

        return FlowResult(
            intent=self.intent,
            reply=f"Agendamento confirmado para {format_slot(slot, ctx.config.timezone)}.",
            entities={
                "appointment_id": appointment.id,
                "external_event_id": appointment.external_event_id,
            },
        )

    # === Calendar callbacks ===

    async def apply_calendar_update(self, ctx: FlowContext) -> FlowResult:
        """Mirror a cancellation made in the calendar onto the Appointment."""
        envelope = ctx.event.envelope
        if envelope.calendar_status != "cancelled" or not envelope.calendar_event_id:
            return FlowResult(intent=self.intent, status="ignored")

        appointment = await self.store.get_appointment_by_event(
            ctx.tenant_id, envelope.calendar_event_id
        )
        if appointment is None:
            return FlowResult(intent=self.intent, status="ignored")

        if appointment.status is not AppointmentStatus.CANCELLED:
            await self.store.update_appointment_status(
                ctx.tenant_id, appointment.id, AppointmentStatus.CANCELLED
            )
            logger.info(f"Appointment {appointment.id} cancelled from calendar")
        return FlowResult(
            intent=self.intent,
            status="cancelled",
            entities={"appointment_id": appointment.id},
        )

    # === Token handling ===

    async def _with_token(self, ctx: FlowContext, call: Callable[[str], Awaitable[T]]) -> T:
        """
        Run a calendar call with a valid token.

        A rejected token triggers exactly one forced refresh and one retry;
        a second rejection propagates.
        """
        token = await self.tokens.get_valid_token(
            ctx.tenant_id, margin=ctx.config.token_refresh_margin
        )
        try:
            return await call(token)
        except TokenRevoked:
            raise
        except CalendarAuthError:
            logger.warning(f"Calendar rejected token for tenant={ctx.tenant_id}, refreshing")
            token = await self.tokens.force_refresh(ctx.tenant_id, token)
            return await call(token)
