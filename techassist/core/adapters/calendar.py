"""
HTTP client for the calendar provider (Google Calendar API v3).

All calls take a bearer token obtained from the TokenManager. A 401 is
raised as CalendarAuthError so the caller can force one refresh.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import quote

import httpx

from techassist.config import get_settings
from techassist.core.adapters.http import json_body, raise_for_provider, send
from techassist.core.errors import AdapterError, CalendarAuthError
from techassist.infra.retry import call_with_retry

logger = logging.getLogger(__name__)

PROVIDER = "google_calendar"


@dataclass(frozen=True)
class Slot:
    """Candidate appointment window."""

    start: datetime
    end: datetime

    def overlaps(self, other: "Slot") -> bool:
        return self.start < other.end and other.start < self.end

    @classmethod
    def from_dict(cls, data: dict) -> "Slot":
        """Create from dict with ISO timestamps."""
        return cls(
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass
class EventSpec:
    """Calendar event to create."""

    summary: str
    start: datetime
    end: datetime
    timezone: str
    description: str = ""
    event_id: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {
            "summary": self.summary,
            "description": self.description,
            "start": {"dateTime": self.start.isoformat(), "timeZone": self.timezone},
            "end": {"dateTime": self.end.isoformat(), "timeZone": self.timezone},
        }
        if self.event_id:
            payload["id"] = self.event_id
        return payload


@dataclass
class CreatedEvent:
    """Calendar event created by the provider."""

    event_id: str
    link: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "CreatedEvent":
        return cls(event_id=data["id"], link=data.get("htmlLink"))


def _parse_rfc3339(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class GoogleCalendarClient:
    """Calendar Provider Adapter."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.base_url = (base_url or settings.google_calendar_api_url).rstrip("/")
        self.timeout = timeout or settings.external_timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _headers(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    @staticmethod
    def _check_auth(response: httpx.Response) -> None:
        if response.status_code == 401:
            raise CalendarAuthError(
                "Calendar rejected access token", details={"status": 401}
            )

    # === Availability ===

    async def query_busy(
        self,
        calendar_id: str,
        token: str,
        window: Slot,
        timezone: str,
    ) -> list[Slot]:
        """Busy periods inside ``window`` (freeBusy API)."""

        async def _query() -> list[Slot]:
            client = await self._get_client()
            response = await send(
                client,
                "POST",
                "/freeBusy",
                provider=PROVIDER,
                headers=self._headers(token),
                json={
                    "timeMin": window.start.isoformat(),
                    "timeMax": window.end.isoformat(),
                    "timeZone": timezone,
                    "items": [{"id": calendar_id}],
                },
            )
            self._check_auth(response)
            raise_for_provider(response, PROVIDER)

            data = json_body(response, PROVIDER)
            calendar = (data.get("calendars") or {}).get(calendar_id)
            if not isinstance(calendar, dict):
                raise AdapterError("freeBusy response missing calendar", provider=PROVIDER)
            if calendar.get("errors"):
                raise AdapterError(
                    f"freeBusy error for calendar: {calendar['errors']}", provider=PROVIDER
                )
            return [
                Slot(start=_parse_rfc3339(b["start"]), end=_parse_rfc3339(b["end"]))
                for b in calendar.get("busy", [])
                if isinstance(b, dict) and b.get("start") and b.get("end")
            ]

        return await call_with_retry(_query, description=f"freeBusy {calendar_id}")

    async def query_availability(
        self,
        calendar_id: str,
        token: str,
        candidates: list[Slot],
        timezone: str,
    ) -> list[Slot]:
        """Return the candidates that do not overlap any busy period.

        Args:
            calendar_id: Tenant calendar
            token: Bearer token
            candidates: Slots to check, already inside business hours
            timezone: IANA timezone of the tenant

        Returns:
            Free slots, in the order given
        """
        if not candidates:
            return []
        window = Slot(
            start=min(slot.start for slot in candidates),
            end=max(slot.end for slot in candidates),
        )
        busy = await self.query_busy(calendar_id, token, window, timezone)
        return [slot for slot in candidates if not any(slot.overlaps(b) for b in busy)]

    # === Events ===

    async def create_event(self, calendar_id: str, token: str, spec: EventSpec) -> CreatedEvent:
        """Create an event.

        When ``spec.event_id`` is set the call is idempotent: a 409 means
        a previous attempt already created it and that event is returned.
        """
        path = f"/calendars/{quote(calendar_id, safe='')}/events"

        async def _create() -> CreatedEvent:
            client = await self._get_client()
            response = await send(
                client,
                "POST",
                path,
                provider=PROVIDER,
                headers=self._headers(token),
                json=spec.to_payload(),
            )
            self._check_auth(response)

            if response.status_code == 409 and spec.event_id:
                existing = await send(
                    client,
                    "GET",
                    f"{path}/{spec.event_id}",
                    provider=PROVIDER,
                    headers=self._headers(token),
                )
                self._check_auth(existing)
                raise_for_provider(existing, PROVIDER)
                return CreatedEvent.from_dict(json_body(existing, PROVIDER))

            raise_for_provider(response, PROVIDER)
            return CreatedEvent.from_dict(json_body(response, PROVIDER))

        return await call_with_retry(_create, description=f"create event {calendar_id}")
