"""
HTTP client for the messaging provider (Evolution API).

Evolution exposes:
- GET  /instance/fetchInstances?instanceName= - Look up an instance
- POST /instance/create - Create an instance (returns QR code)
- POST /message/sendText/{instance} - Send a text message
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from techassist.config import get_settings
from techassist.core.adapters.http import json_body, raise_for_provider, send
from techassist.core.errors import AdapterError
from techassist.infra.retry import call_with_retry

logger = logging.getLogger(__name__)

PROVIDER = "evolution"


def instance_name_for(tenant_id: str) -> str:
    """Instance naming convention: one instance per tenant, ``empresa_{id}``."""
    return tenant_id if tenant_id.startswith("empresa_") else f"empresa_{tenant_id}"


@dataclass
class InstanceInfo:
    """Messaging instance bound to a tenant."""

    instance_id: str
    status: Optional[str] = None
    qrcode: Optional[str] = None
    created: bool = False

    @classmethod
    def from_dict(cls, data: dict, created: bool = False) -> "InstanceInfo":
        """Create from an Evolution create/fetch response."""
        instance = data.get("instance") if isinstance(data.get("instance"), dict) else data
        qrcode = data.get("qrcode")
        if isinstance(qrcode, dict):
            qrcode = qrcode.get("base64") or qrcode.get("code")
        return cls(
            instance_id=instance.get("instanceName", instance.get("name", "")),
            status=instance.get("status", instance.get("connectionStatus")),
            qrcode=qrcode,
            created=created,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "instance_id": self.instance_id,
            "status": self.status,
            "qrcode": self.qrcode,
            "created": self.created,
        }


class EvolutionClient:
    """Messaging Provider Adapter."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize client.

        Args:
            base_url: Evolution API base URL (defaults to settings)
            api_key: Global API key sent in the ``apikey`` header
            timeout: Request timeout in seconds
        """
        settings = get_settings()
        self.base_url = (base_url or settings.evolution_api_url).rstrip("/")
        self.api_key = api_key or settings.evolution_api_key
        self.timeout = timeout or settings.external_timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"apikey": self.api_key, "Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # === Instances ===

    async def fetch_instance(self, instance_name: str) -> Optional[InstanceInfo]:
        """Look up an existing instance by name."""
        client = await self._get_client()
        response = await send(
            client,
            "GET",
            "/instance/fetchInstances",
            provider=PROVIDER,
            params={"instanceName": instance_name},
        )
        if response.status_code == 404:
            return None
        raise_for_provider(response, PROVIDER)

        data: Any = json_body(response, PROVIDER)
        items = data if isinstance(data, list) else [data]
        for item in items:
            if not isinstance(item, dict):
                continue
            info = InstanceInfo.from_dict(item)
            if info.instance_id == instance_name:
                return info
        return None

    async def create_instance(
        self,
        tenant_id: str,
        instance_name: Optional[str] = None,
        token: Optional[str] = None,
    ) -> InstanceInfo:
        """Create the tenant's instance, or return it if it already exists.

        Args:
            tenant_id: Tenant identifier
            instance_name: Existing binding to reuse (defaults to ``empresa_{id}``)
            token: Instance token

        Returns:
            InstanceInfo; ``created`` is False when the instance already existed
        """
        name = instance_name or instance_name_for(tenant_id)

        async def _create() -> InstanceInfo:
            existing = await self.fetch_instance(name)
            if existing is not None:
                logger.info(f"Instance {name} already exists for tenant={tenant_id}")
                return existing

            client = await self._get_client()
            payload: dict[str, Any] = {"instanceName": name, "qrcode": True}
            if token:
                payload["token"] = token
            response = await send(
                client, "POST", "/instance/create", provider=PROVIDER, json=payload
            )

            # Lost a race with a concurrent create
            if response.status_code in (403, 409) and "already" in response.text.lower():
                existing = await self.fetch_instance(name)
                if existing is not None:
                    return existing

            raise_for_provider(response, PROVIDER)
            info = InstanceInfo.from_dict(json_body(response, PROVIDER), created=True)
            info.instance_id = info.instance_id or name
            logger.info(f"Instance {name} created for tenant={tenant_id}")
            return info

        return await call_with_retry(_create, description=f"create instance {name}")

    # === Messages ===

    async def send_message(self, instance_id: str, to: str, body: str) -> str:
        """Send a text message.

        Args:
            instance_id: Tenant's instance
            to: Destination phone number (digits only)
            body: Message text

        Returns:
            Provider delivery id
        """

        async def _send() -> str:
            client = await self._get_client()
            response = await send(
                client,
                "POST",
                f"/message/sendText/{instance_id}",
                provider=PROVIDER,
                json={"number": to, "text": body},
            )
            raise_for_provider(response, PROVIDER)
            data = json_body(response, PROVIDER)
            key = data.get("key") if isinstance(data, dict) else None
            if not isinstance(key, dict) or not key.get("id"):
                raise AdapterError("Send response without message key", provider=PROVIDER)
            return str(key["id"])

        return await call_with_retry(_send, description=f"send message via {instance_id}")
