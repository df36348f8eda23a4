"""Shared HTTP error mapping for provider adapters."""

import logging
from typing import Any

import httpx

from techassist.core.errors import AdapterError, AdapterTimeout

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    provider: str,
    **kwargs: Any,
) -> httpx.Response:
    """
    Send a request, mapping transport failures to AdapterTimeout.

    The response is returned as-is; callers decide which statuses they
    handle before calling ``raise_for_provider``.
    """
    try:
        return await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise AdapterTimeout(f"{provider} request timed out: {e}", provider=provider) from e
    except httpx.TransportError as e:
        raise AdapterTimeout(f"{provider} connection failed: {e}", provider=provider) from e


def raise_for_provider(response: httpx.Response, provider: str) -> None:
    """Raise AdapterError for non-2xx responses (retryable for 5xx/429)."""
    if response.status_code < 300:
        return

    try:
        body = response.text[:300]
    except UnicodeDecodeError:
        body = "<binary>"

    logger.warning(f"{provider} returned {response.status_code}: {body}")
    raise AdapterError(
        f"{provider} returned {response.status_code}",
        provider=provider,
        status=response.status_code,
        retryable=response.status_code in RETRYABLE_STATUS,
    )


def json_body(response: httpx.Response, provider: str) -> Any:
    """Decode a JSON response body."""
    try:
        return response.json()
    except ValueError as e:
        raise AdapterError(f"{provider} returned invalid JSON", provider=provider) from e
