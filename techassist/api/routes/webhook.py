"""
Webhook Endpoint.

Single inbound endpoint for messaging, calendar and payment provider
callbacks. The event is validated and bound to a tenant synchronously;
flow execution happens after the response.

Responses:
- 200 accepted: tenant resolved, event queued
- 404 tenant_not_found: no tenant could be determined, nothing persisted
- 422 malformed_payload: body is not a recognised provider event
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from pydantic import BaseModel, Field

from techassist.core.dispatch import Dispatcher, get_dispatcher
from techassist.core.errors import MalformedPayload
from techassist.core.events.types import RawEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["Webhook"])


class AcceptedResponse(BaseModel):
    """Webhook accepted."""

    status: str = Field(default="accepted")
    tenant_id: str
    event_id: str


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    detail: Optional[str] = None


async def _read_payload(request: Request) -> object:
    try:
        return await request.json()
    except ValueError as e:
        raise MalformedPayload("Body is not valid JSON") from e


async def _accept(
    request: Request,
    background_tasks: BackgroundTasks,
    dispatcher: Dispatcher,
    path_tenant: Optional[str],
    query_tenant: Optional[str],
) -> AcceptedResponse:
    payload = await _read_payload(request)
    raw = RawEvent(payload=payload, path_tenant=path_tenant, query_tenant=query_tenant)

    event = await dispatcher.accept(raw)
    background_tasks.add_task(dispatcher.handle, event)

    logger.info(
        f"Webhook accepted: tenant={event.tenant_id} event={event.event_id} "
        f"source={event.source.value}"
    )
    return AcceptedResponse(tenant_id=event.tenant_id, event_id=event.event_id)


@router.post(
    "",
    response_model=AcceptedResponse,
    status_code=status.HTTP_200_OK,
    summary="Receive a provider webhook",
    responses={
        404: {"model": ErrorResponse, "description": "Tenant could not be resolved"},
        422: {"model": ErrorResponse, "description": "Malformed payload"},
    },
)
async def receive(
    request: Request,
    background_tasks: BackgroundTasks,
    tenant: Optional[str] = Query(default=None, description="Explicit tenant id"),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> AcceptedResponse:
    """Receive a webhook; the tenant is taken from the query or the payload."""
    return await _accept(request, background_tasks, dispatcher, None, tenant)


@router.post(
    "/{tenant_id}",
    response_model=AcceptedResponse,
    status_code=status.HTTP_200_OK,
    summary="Receive a provider webhook for a tenant",
    responses={
        404: {"model": ErrorResponse, "description": "Unknown tenant"},
        422: {"model": ErrorResponse, "description": "Malformed payload"},
    },
)
async def receive_for_tenant(
    tenant_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> AcceptedResponse:
    """Receive a webhook registered with an explicit tenant path."""
    return await _accept(request, background_tasks, dispatcher, tenant_id, None)
