"""Tests for the scheduling flow."""

import asyncio
import warnings
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch
from zoneinfo import ZoneInfo

import pytest

from techassist.core.adapters.calendar import Slot
from techassist.core.auth.token_manager import TokenManager
from techassist.core.conversation import ConversationStore
from techassist.core.errors import CalendarAuthError, SlotConflict, TokenRevoked
from techassist.core.flows import scheduling
from techassist.core.flows.base import FlowContext
from techassist.core.flows.scheduling import (
    CONFLICT_PREFIX,
    NO_SLOTS_MESSAGE,
    SchedulingAttempt,
    SchedulingFlow,
    SchedulingState,
    candidate_slots,
    parse_choice,
)
from techassist.core.records import Appointment, AppointmentStatus
from techassist.core.tenancy.types import Tenant

from tests.factories import (
    CLIENT_PHONE,
    NOW,
    TENANT_ID,
    FakeCalendar,
    inbound,
    make_client,
    make_config,
    make_oauth,
    make_store,
    message_payload,
    token_set,
)

SAO_PAULO = ZoneInfo("America/Sao_Paulo")
OTHER_PHONE = "5511977776666"


@pytest.fixture(autouse=True)
def no_redis():
    with patch("techassist.core.conversation.get_redis", return_value=None):
        yield


@pytest.fixture
def store():
    return make_store()


@pytest.fixture
def calendar():
    return FakeCalendar(delay=0.01)


@pytest.fixture
def oauth():
    return make_oauth()


@pytest.fixture
def conversations():
    return ConversationStore(ttl=1800)


@pytest.fixture
def flow(store, calendar, oauth, conversations):
    store.tokens[TENANT_ID] = token_set()
    tokens = TokenManager(store, oauth_client=oauth, clock=lambda: NOW)
    return SchedulingFlow(
        store,
        calendar,
        tokens,
        conversations,
        duration_minutes=60,
        proposal_count=3,
        proposal_days=5,
        max_conflicts=2,
    )


def context(text: str, phone: str = CLIENT_PHONE, **config_overrides) -> FlowContext:
    return FlowContext(
        tenant=Tenant(id=TENANT_ID, name="Assistência"),
        config=make_config(**config_overrides),
        event=inbound(message_payload(text, phone=phone)),
    )


class TestCandidateSlots:

    def test_business_days_after_now(self):
        slots = candidate_slots(make_config(), NOW, duration_minutes=60, days=5)

        first = slots[0].start.astimezone(SAO_PAULO)
        assert (first.weekday(), first.hour) == (2, 11)
        assert all(s.start > NOW for s in slots)
        assert all(s.start.astimezone(SAO_PAULO).weekday() < 5 for s in slots)
        assert all(s.end.astimezone(SAO_PAULO).hour <= 18 for s in slots)

    def test_weekend_only_window_is_empty(self):
        config = make_config(business_hours={"start": "08:00", "end": "18:00", "weekdays": [5, 6]})

        # Wednesday plus one day never reaches the weekend
        assert candidate_slots(config, NOW, duration_minutes=60, days=1) == []


class TestParseChoice:

    @pytest.mark.parametrize("text,expected", [
        ("2", 1),
        ("opção 3", 2),
        ("sim", 0),
        ("7", None),
        ("talvez amanhã", None),
    ])
    def test_choice(self, text, expected):
        assert parse_choice(text, 3) == expected


class TestModuleSource:

    def test_compiles_without_warnings(self):
        source = Path(scheduling.__file__).read_text(encoding="utf-8")

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(source, scheduling.__file__, "exec")


class TestSchedulingAttempt:

    def test_cannot_skip_proposals(self):
        attempt = SchedulingAttempt()

        with pytest.raises(ValueError):
            attempt.transition(SchedulingState.CONFIRMED)

    def test_failed_is_terminal(self):
        attempt = SchedulingAttempt()
        attempt.fail("no_availability")

        with pytest.raises(ValueError):
            attempt.transition(SchedulingState.PROPOSALS_SENT)
        assert attempt.error_code == "no_availability"


class TestProposals:

    @pytest.mark.asyncio
    async def test_proposes_free_slots(self, flow, conversations, store):
        result = await flow.run(context("Quero agendar um horário"))

        assert result.status == "proposals_sent"
        assert "1) qua 12/03 às 11:00" in result.reply
        assert "3) qua 12/03 às 13:00" in result.reply

        state = await conversations.get(TENANT_ID, CLIENT_PHONE)
        assert state.scheduling["state"] == "proposals_sent"
        assert len(state.scheduling["proposals"]) == 3
        assert not store.appointments

    @pytest.mark.asyncio
    async def test_busy_slots_skipped(self, flow, calendar):
        taken = candidate_slots(make_config(), NOW, 60, 5)[0]
        calendar.busy.append(taken)

        result = await flow.run(context("agendar"))

        assert "1) qua 12/03 às 12:00" in result.reply

    @pytest.mark.asyncio
    async def test_no_availability_hands_off(self, flow, calendar, conversations):
        calendar.busy.append(Slot(start=NOW - timedelta(days=1), end=NOW + timedelta(days=30)))

        result = await flow.run(context("agendar"))

        assert result.handoff
        assert result.reply == NO_SLOTS_MESSAGE
        assert result.error_code == "no_availability"
        state = await conversations.get(TENANT_ID, CLIENT_PHONE)
        assert state.scheduling["state"] == "failed"

    @pytest.mark.asyncio
    async def test_calendar_not_configured(self, flow, calendar):
        result = await flow.run(context("agendar", calendar_id=None))

        assert result.handoff
        assert result.error_code == "calendar_not_configured"
        assert calendar.tokens_seen == []


class TestConfirmation:

    @pytest.mark.asyncio
    async def test_choice_books_appointment(self, flow, store, calendar, conversations):
        await flow.run(context("agendar"))

        result = await flow.run(context("2"))

        assert result.reply == "Agendamento confirmado para qua 12/03 às 12:00."
        [appointment] = store.appointments.values()
        assert appointment.status is AppointmentStatus.CONFIRMED
        assert appointment.external_event_id == result.entities["external_event_id"]
        assert appointment.external_event_id in calendar.events

        state = await conversations.get(TENANT_ID, CLIENT_PHONE)
        assert state.scheduling["state"] == "synced"
        assert appointment.external_event_id == f"ta{state.scheduling['attempt_id']}"

    @pytest.mark.asyncio
    async def test_unrecognised_reply_starts_new_attempt(self, flow, conversations):
        await flow.run(context("agendar"))
        first = (await conversations.get(TENANT_ID, CLIENT_PHONE)).scheduling["attempt_id"]

        result = await flow.run(context("quero outro horário"))

        assert result.status == "proposals_sent"
        assert result.entities["attempt_id"] != first

    @pytest.mark.asyncio
    async def test_concurrent_confirmations_same_slot(self, flow, store):
        """Two confirmations for one slot: one synced, one conflict."""
        slot = candidate_slots(make_config(), NOW, 60, 5)[0]
        first = SchedulingAttempt(state=SchedulingState.PROPOSALS_SENT, proposals=[slot])
        second = SchedulingAttempt(state=SchedulingState.PROPOSALS_SENT, proposals=[slot])
        ctx = context("1")

        results = await asyncio.gather(
            flow.confirm(ctx, make_client(), first, slot),
            flow.confirm(ctx, make_client(phone=OTHER_PHONE, name="João"), second, slot),
            return_exceptions=True,
        )

        states = sorted(a.state.value for a in (first, second))
        assert states == ["failed", "synced"]
        failed = first if first.state is SchedulingState.FAILED else second
        assert failed.error_code == "slot_conflict"

        assert sum(isinstance(r, Appointment) for r in results) == 1
        assert sum(isinstance(r, SlotConflict) for r in results) == 1
        assert len(store.appointments) == 1

    @pytest.mark.asyncio
    async def test_concurrent_clients_conflict_is_reproposed(self, flow, store):
        await flow.run(context("agendar"))
        await flow.run(context("agendar", phone=OTHER_PHONE))

        results = await asyncio.gather(
            flow.run(context("1")),
            flow.run(context("1", phone=OTHER_PHONE)),
        )

        confirmed = [r for r in results if r.reply.startswith("Agendamento confirmado")]
        reproposed = [r for r in results if r.reply.startswith(CONFLICT_PREFIX)]
        assert len(confirmed) == 1
        assert len(reproposed) == 1
        assert reproposed[0].status == "proposals_sent"
        assert "qua 12/03 às 11:00" not in reproposed[0].reply
        assert len(store.appointments) == 1

    @pytest.mark.asyncio
    async def test_repeated_conflicts_hand_off(self, flow, calendar, store, conversations):
        await flow.run(context("agendar"))
        state = await conversations.get(TENANT_ID, CLIENT_PHONE)
        state.scheduling["conflicts"] = 1
        await conversations.save(state)
        calendar.busy.append(candidate_slots(make_config(), NOW, 60, 5)[0])

        result = await flow.run(context("1"))

        assert result.handoff
        assert result.error_code == "slot_conflict"
        assert not store.appointments


class TestCalendarAuth:

    @pytest.mark.asyncio
    async def test_rejected_token_refreshed_once(self, flow, calendar, oauth):
        calendar.reject_tokens = {"access-1"}

        result = await flow.run(context("agendar"))

        assert result.status == "proposals_sent"
        assert calendar.tokens_seen == ["access-1", "access-2"]
        oauth.refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_rejection_propagates(self, flow, calendar, oauth, conversations):
        calendar.reject_tokens = {"access-1", "access-2"}

        with pytest.raises(CalendarAuthError):
            await flow.run(context("agendar"))

        oauth.refresh.assert_awaited_once()
        state = await conversations.get(TENANT_ID, CLIENT_PHONE)
        assert state.scheduling["state"] == "failed"
        assert state.scheduling["error_code"] == "calendar_auth_error"

    @pytest.mark.asyncio
    async def test_revoked_credentials_not_used(self, flow, store, calendar):
        await store.save_token_set(token_set(revoked=True))
        flow.tokens.forget(TENANT_ID)

        with pytest.raises(TokenRevoked):
            await flow.run(context("agendar"))

        assert calendar.tokens_seen == []
        assert not store.appointments


class TestCalendarCallbacks:

    def calendar_context(self, event_id: str, status: str) -> FlowContext:
        return FlowContext(
            tenant=Tenant(id=TENANT_ID, name="Assistência"),
            config=make_config(),
            event=inbound({
                "kind": "calendar#event",
                "calendarId": "agenda-7@group.calendar.google.com",
                "id": event_id,
                "status": status,
            }),
        )

    @pytest.mark.asyncio
    async def test_cancellation_mirrored(self, flow, store):
        appointment = Appointment(
            tenant_id=TENANT_ID,
            client_id="c1",
            scheduled_start=NOW,
            scheduled_end=NOW + timedelta(hours=1),
            external_event_id="ta1",
        )
        await store.save_appointment(appointment)

        result = await flow.run(self.calendar_context("ta1", "cancelled"))

        assert result.status == "cancelled"
        assert store.appointments[appointment.id].status is AppointmentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, flow):
        result = await flow.run(self.calendar_context("ta404", "cancelled"))

        assert result.status == "ignored"

    @pytest.mark.asyncio
    async def test_non_cancellation_ignored(self, flow, store):
        result = await flow.run(self.calendar_context("ta1", "confirmed"))

        assert result.status == "ignored"
