from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, status
from fastapi.responses import PlainTextResponse

from inbox.core.config import Settings, get_settings
from inbox.core.logs import log_event
from inbox.core.security import tokens_match
from inbox.models.enums import Channel
from inbox.schemas.webhooks import WebhookAck, WebhookStatus
from inbox.services.ingest.normalizer import ROUTE_CHANNELS
from inbox.services.ingest.processing import process_webhook_delivery

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("inbox.api")


def _route_channel(channel: str) -> Channel:
    ch = ROUTE_CHANNELS.get(channel)
    if ch is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown channel")
    return ch


def _verify_token_for(channel: Channel, settings: Settings) -> str:
    if channel == Channel.whatsapp:
        return settings.WHATSAPP_VERIFY_TOKEN or settings.META_VERIFY_TOKEN
    return settings.META_VERIFY_TOKEN


@router.get("/{channel}", response_model=None)
def webhook_handshake(channel: str, request: Request) -> PlainTextResponse | WebhookStatus:
    ch = _route_channel(channel)
    params = request.query_params
    mode = params.get("hub.mode")
    if mode is None and params.get("hub.verify_token") is None:
        return WebhookStatus(status="ok", channel=channel)

    expected = _verify_token_for(ch, get_settings())
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook verify token is not configured",
        )
    if mode != "subscribe" or not tokens_match(expected, params.get("hub.verify_token")):
        log_event(logger, "webhook.handshake_rejected", level=logging.WARNING, channel=channel)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")
    return PlainTextResponse(params.get("hub.challenge") or "")


@router.post("/{channel}", response_model=WebhookAck)
async def webhook_receive(channel: str, request: Request, background_tasks: BackgroundTasks) -> WebhookAck:
    ch = _route_channel(channel)
    body = await request.body()
    background_tasks.add_task(
        process_webhook_delivery,
        channel=ch,
        body=body,
        signature=request.headers.get("x-hub-signature-256"),
    )
    return WebhookAck(status="received")
