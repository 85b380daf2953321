"""Inbound chat webhooks from the messaging providers."""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request

from driverchat.core.auth import verify_webhook_token
from driverchat.core.logging import logger
from driverchat.models.messaging import InboundMessage
from driverchat.services.dispatcher import CommandDispatcher, command_dispatcher
from driverchat.services.normalization import normalize

router = APIRouter(prefix="/webhook", tags=["webhook"], dependencies=[Depends(verify_webhook_token)])


def get_dispatcher() -> CommandDispatcher:
    return command_dispatcher


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


async def _dispatch(message: Optional[InboundMessage], dispatcher: CommandDispatcher) -> dict:
    if message is None:
        return {"status": "ignored"}
    logger.info("Webhook message received", provider=message.provider, kind=message.kind.value)
    outcome = await dispatcher.handle(message)
    return outcome.model_dump(mode="json")


@router.post("/whatsapp")
async def whatsapp_webhook(
    request: Request,
    tenant: Optional[str] = Query(default=None),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    """Z-API payloads and Meta Cloud API envelopes relayed by Z-API."""
    payload = await _json_body(request)
    return await _dispatch(normalize("zapi", payload, tenant_id=tenant), dispatcher)


@router.post("/sendpulse")
async def sendpulse_webhook(
    request: Request,
    tenant: Optional[str] = Query(default=None),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    payload = await _json_body(request)
    return await _dispatch(normalize("sendpulse", payload, tenant_id=tenant), dispatcher)


@router.post("/messages")
async def normalized_message(
    message: InboundMessage,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    """Messages already normalized by an upstream adapter."""
    return await _dispatch(message, dispatcher)
