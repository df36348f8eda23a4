"""
HTTP client for the payment provider (Asaas API v3).

Asaas exposes:
- GET/POST /customers - Look up by cpfCnpj, create
- POST /payments - Create a charge
- POST /subscriptions - Create a recurring subscription
- GET /subscriptions/{id}/payments - Payments generated by a subscription

Creation calls are never blindly retried. With an idempotency key the key
is sent as ``externalReference`` and looked up before each attempt, which
makes retries safe; without one the call runs exactly once.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Optional

import httpx

from techassist.config import get_settings
from techassist.core.adapters.http import json_body, raise_for_provider, send
from techassist.core.errors import AdapterError
from techassist.infra.retry import call_once, call_with_retry

logger = logging.getLogger(__name__)

PROVIDER = "asaas"


@dataclass
class CustomerInfo:
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class ChargeResult:
    """A payment created by the provider."""

    payment_id: str
    invoice_url: Optional[str] = None
    status: Optional[str] = None
    subscription_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ChargeResult":
        """Create from API response dict."""
        return cls(
            payment_id=data["id"],
            invoice_url=data.get("invoiceUrl"),
            status=data.get("status"),
            subscription_id=data.get("subscription"),
        )


def _first(data: Any) -> Optional[dict]:
    items = data.get("data") if isinstance(data, dict) else None
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return None


class AsaasClient:
    """Payment Provider Adapter."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.asaas_api_url).rstrip("/")
        self.api_key = api_key or settings.asaas_api_key
        self.timeout = timeout or settings.external_timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={
                    "access_token": self.api_key,
                    "Content-Type": "application/json",
                    "User-Agent": "techassist-dispatcher",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, params: Optional[dict] = None) -> Any:
        client = await self._get_client()
        response = await send(client, "GET", path, provider=PROVIDER, params=params)
        raise_for_provider(response, PROVIDER)
        return json_body(response, PROVIDER)

    async def _post(self, path: str, payload: dict) -> Any:
        client = await self._get_client()
        response = await send(client, "POST", path, provider=PROVIDER, json=payload)
        raise_for_provider(response, PROVIDER)
        return json_body(response, PROVIDER)

    # === Customers ===

    async def upsert_customer(self, tax_id: str, info: CustomerInfo) -> str:
        """Return the customer id for ``tax_id``, creating it if absent.

        Keyed by tax id, so repeating the call never duplicates customers.
        """

        async def _upsert() -> str:
            existing = _first(await self._get("/customers", {"cpfCnpj": tax_id}))
            if existing is not None:
                return existing["id"]

            payload = {"name": info.name, "cpfCnpj": tax_id}
            if info.email:
                payload["email"] = info.email
            if info.phone:
                payload["mobilePhone"] = info.phone
            created = await self._post("/customers", payload)
            logger.info(f"Payment customer created: {created.get('id')}")
            return created["id"]

        return await call_with_retry(_upsert, description="upsert payment customer")

    # === Charges ===

    async def find_payment_by_reference(self, reference: str) -> Optional[ChargeResult]:
        existing = _first(await self._get("/payments", {"externalReference": reference}))
        return ChargeResult.from_dict(existing) if existing else None

    async def create_charge(
        self,
        customer_id: str,
        amount: Decimal,
        description: str,
        due_date: Optional[date] = None,
        billing_type: str = "UNDEFINED",
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        """Create a one-off charge.

        Args:
            customer_id: Provider customer id
            amount: Charge value
            description: Shown on the invoice
            due_date: Defaults to tomorrow
            billing_type: UNDEFINED lets the client pick PIX, boleto or card
            idempotency_key: Enables safe retries

        Returns:
            ChargeResult with payment id and invoice URL
        """
        payload: dict[str, Any] = {
            "customer": customer_id,
            "billingType": billing_type,
            "value": float(amount),
            "dueDate": (due_date or date.today() + timedelta(days=1)).isoformat(),
            "description": description,
        }

        if idempotency_key is None:
            async def _create_once() -> ChargeResult:
                return ChargeResult.from_dict(await self._post("/payments", payload))

            return await call_once(_create_once, description="create charge")

        payload["externalReference"] = idempotency_key

        async def _create_idempotent() -> ChargeResult:
            existing = await self.find_payment_by_reference(idempotency_key)
            if existing is not None:
                logger.info(f"Charge for reference {idempotency_key} already exists")
                return existing
            return ChargeResult.from_dict(await self._post("/payments", payload))

        return await call_with_retry(_create_idempotent, description="create charge")

    # === Subscriptions ===

    async def create_subscription(
        self,
        customer_id: str,
        plan: str,
        amount: Decimal,
        cycle: str = "MONTHLY",
        billing_type: str = "CREDIT_CARD",
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Create a subscription; returns the subscription id."""
        payload: dict[str, Any] = {
            "customer": customer_id,
            "billingType": billing_type,
            "value": float(amount),
            "nextDueDate": (date.today() + timedelta(days=1)).isoformat(),
            "cycle": cycle,
            "description": plan,
        }

        if idempotency_key is None:
            async def _create_once() -> str:
                return (await self._post("/subscriptions", payload))["id"]

            return await call_once(_create_once, description="create subscription")

        payload["externalReference"] = idempotency_key

        async def _create_idempotent() -> str:
            existing = _first(
                await self._get("/subscriptions", {"externalReference": idempotency_key})
            )
            if existing is not None:
                return existing["id"]
            return (await self._post("/subscriptions", payload))["id"]

        return await call_with_retry(_create_idempotent, description="create subscription")

    async def first_subscription_payment(self, subscription_id: str) -> ChargeResult:
        """First payment generated by a subscription (carries the invoice link)."""

        async def _fetch() -> ChargeResult:
            first = _first(await self._get(f"/subscriptions/{subscription_id}/payments"))
            if first is None:
                # Provider generates the first payment asynchronously
                raise AdapterError(
                    "Subscription has no payments yet", provider=PROVIDER, retryable=True
                )
            result = ChargeResult.from_dict(first)
            result.subscription_id = subscription_id
            return result

        return await call_with_retry(_fetch, description="fetch subscription payment")
