"""Builders and fakes shared by the unit tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

from techassist.core.adapters.calendar import CreatedEvent, EventSpec, Slot
from techassist.core.auth.oauth_client import TokenGrant
from techassist.core.errors import CalendarAuthError
from techassist.core.events.parser import parse_payload
from techassist.core.events.types import InboundEvent
from techassist.core.records import Client, OAuthTokenSet
from techassist.core.tenancy.types import Tenant, TenantConfig
from techassist.persistence.memory import InMemoryStore

TENANT_ID = "empresa_7"
OTHER_TENANT_ID = "empresa_9"
CLIENT_PHONE = "5511988887777"

# Wednesday 10:00 in Sao Paulo
NOW = datetime(2025, 3, 12, 13, 0, tzinfo=timezone.utc)


def make_config(tenant_id: str = TENANT_ID, **overrides) -> TenantConfig:
    suffix = tenant_id.rsplit("_", 1)[-1]
    data = {
        "tenant_id": tenant_id,
        "instance_id": tenant_id,
        "calendar_id": f"agenda-{suffix}@group.calendar.google.com",
        "business_phone": f"55119999900{suffix.zfill(2)}",
        "timezone": "America/Sao_Paulo",
        "business_hours": {"start": "08:00", "end": "18:00", "weekdays": [0, 1, 2, 3, 4]},
        "pricing": {
            "celular": {"padrao": "150.00", "apple": "250.00"},
            "computador": {"padrao": "200.00"},
        },
        "discount": {"enabled": True, "threshold_days": 180, "rate": "0.10"},
    }
    data.update(overrides)
    return TenantConfig.from_dict(data)


def make_store(*tenant_ids: str) -> InMemoryStore:
    store = InMemoryStore()
    for tenant_id in tenant_ids or (TENANT_ID,):
        store.add_tenant(
            Tenant(id=tenant_id, name=f"Assistência {tenant_id}"),
            make_config(tenant_id),
        )
    return store


def make_client(
    tenant_id: str = TENANT_ID,
    phone: str = CLIENT_PHONE,
    registered_days_ago: int = 0,
    now: datetime = NOW,
    **kwargs,
) -> Client:
    return Client(
        tenant_id=tenant_id,
        phone=phone,
        name=kwargs.pop("name", "Maria"),
        registered_at=now - timedelta(days=registered_days_ago),
        **kwargs,
    )


def message_payload(
    text: str,
    instance: str = TENANT_ID,
    phone: str = CLIENT_PHONE,
    from_me: bool = False,
    push_name: str = "Maria",
) -> dict:
    """Evolution API messages.upsert payload."""
    return {
        "event": "messages.upsert",
        "instance": instance,
        "data": {
            "key": {
                "remoteJid": f"{phone}@s.whatsapp.net",
                "fromMe": from_me,
                "id": "3EB0C767D26A1D6F",
            },
            "pushName": push_name,
            "message": {"conversation": text},
        },
    }


def payment_payload(event: str, payment_id: str, subscription: Optional[str] = None) -> dict:
    """Asaas payment callback payload."""
    payment = {"id": payment_id, "status": event.replace("PAYMENT_", ""), "value": 135.0}
    if subscription:
        payment["subscription"] = subscription
    return {"event": event, "payment": payment}


def inbound(
    payload: dict,
    tenant_id: str = TENANT_ID,
    received_at: datetime = NOW,
) -> InboundEvent:
    return InboundEvent(
        tenant_id=tenant_id,
        envelope=parse_payload(payload),
        received_at=received_at,
    )


def token_set(
    tenant_id: str = TENANT_ID,
    access_token: str = "access-1",
    expires_in: int = 3600,
    now: datetime = NOW,
    revoked: bool = False,
) -> OAuthTokenSet:
    return OAuthTokenSet(
        tenant_id=tenant_id,
        access_token=access_token,
        refresh_token="refresh-1",
        expires_at=now + timedelta(seconds=expires_in),
        revoked=revoked,
    )


class FakeCalendar:
    """
    In-memory calendar provider.

    Created events become busy time. ``reject_tokens`` makes calls with
    those tokens fail with CalendarAuthError.
    """

    def __init__(self, busy: Optional[list[Slot]] = None, delay: float = 0.0):
        self.busy: list[Slot] = list(busy or [])
        self.events: dict[str, EventSpec] = {}
        self.reject_tokens: set[str] = set()
        self.tokens_seen: list[str] = []
        self.delay = delay
        self.close = AsyncMock()

    def _check(self, token: str) -> None:
        self.tokens_seen.append(token)
        if token in self.reject_tokens:
            raise CalendarAuthError("Calendar rejected access token")

    async def query_availability(self, calendar_id, token, candidates, timezone):
        self._check(token)
        if self.delay:
            await asyncio.sleep(self.delay)
        return [slot for slot in candidates if not any(slot.overlaps(b) for b in self.busy)]

    async def create_event(self, calendar_id, token, spec: EventSpec) -> CreatedEvent:
        self._check(token)
        if self.delay:
            await asyncio.sleep(self.delay)
        self.events[spec.event_id] = spec
        self.busy.append(Slot(start=spec.start, end=spec.end))
        return CreatedEvent(event_id=spec.event_id, link=f"https://calendar.test/{spec.event_id}")


class FakeClock:
    """Monotonic clock for cache TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_oauth(*grants, delay: float = 0.0) -> MagicMock:
    """
    OAuth client whose refresh yields ``grants`` in order.

    The last grant repeats; exceptions in ``grants`` are raised.
    """
    oauth = MagicMock()
    oauth.close = AsyncMock()
    pending = list(grants) or [TokenGrant(access_token="access-2", expires_in=3600)]

    async def refresh(refresh_token):
        if delay:
            await asyncio.sleep(delay)
        result = pending.pop(0) if len(pending) > 1 else pending[0]
        if isinstance(result, Exception):
            raise result
        return result

    oauth.refresh = AsyncMock(side_effect=refresh)
    return oauth
