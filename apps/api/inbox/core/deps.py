from __future__ import annotations

import httpx
from fastapi import Depends, HTTPException, Request, status

from inbox.core.config import Settings, get_settings
from inbox.core.http import get_http_client
from inbox.core.security import tokens_match
from inbox.services.channels.meta import build_channel_client
from inbox.services.replies import HttpReplyGenerator, ReplyGenerator
from inbox.worker.jobs.outbound_reply import ChannelClientFactory


def _bearer_token(request: Request) -> str | None:
    auth = request.headers.get("authorization") or ""
    scheme, _, value = auth.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def require_runner_token(request: Request) -> None:
    """Accepts ``?token=`` or ``Authorization: Bearer``; both compared in constant time."""
    settings = get_settings()
    provided = request.query_params.get("token") or _bearer_token(request)
    if not tokens_match(settings.JOB_RUNNER_TOKEN, provided):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid runner token")


def get_reply_generator(http_client: httpx.Client = Depends(get_http_client)) -> ReplyGenerator:
    settings = get_settings()
    return HttpReplyGenerator(http_client, url=settings.REPLY_GENERATOR_URL, token=settings.REPLY_GENERATOR_TOKEN)


def channel_client_factory(*, http_client: httpx.Client, settings: Settings) -> ChannelClientFactory:
    def _client_for(channel: str):
        return build_channel_client(channel, http_client=http_client, settings=settings)

    return _client_for


def get_channel_client_factory(http_client: httpx.Client = Depends(get_http_client)) -> ChannelClientFactory:
    return channel_client_factory(http_client=http_client, settings=get_settings())
