from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from inbox.core.config import Settings
from inbox.models.enums import Channel


@dataclass(frozen=True)
class SendResponse:
    message_id: str


class ChannelSendError(RuntimeError):
    """Transient provider failure: network error, 5xx or rate limiting."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermanentSendError(ChannelSendError):
    """The provider rejected the request itself; resending cannot succeed."""


class ChannelClient(Protocol):
    channel: Channel

    def send_text(self, recipient: str, text: str) -> SendResponse: ...

    def send_template(
        self, recipient: str, template_name: str, locale: str, params: list[str]
    ) -> SendResponse: ...

    def send_media(
        self, recipient: str, media_type: str, url_or_id: str, meta: dict[str, Any] | None = None
    ) -> SendResponse: ...


class WhatsAppCloudClient:
    channel = Channel.whatsapp

    def __init__(
        self,
        client: httpx.Client,
        *,
        base_url: str,
        api_version: str,
        access_token: str,
        phone_number_id: str,
    ) -> None:
        self._client = client
        self._url = f"{base_url.rstrip('/')}/{api_version}/{phone_number_id}/messages"
        self._access_token = access_token

    def send_text(self, recipient: str, text: str) -> SendResponse:
        return self._post(
            {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": _wa_recipient(recipient),
                "type": "text",
                "text": {"preview_url": False, "body": text},
            }
        )

    def send_template(self, recipient: str, template_name: str, locale: str, params: list[str]) -> SendResponse:
        template: dict[str, Any] = {"name": template_name, "language": {"code": locale}}
        if params:
            template["components"] = [
                {"type": "body", "parameters": [{"type": "text", "text": p} for p in params]}
            ]
        return self._post(
            {
                "messaging_product": "whatsapp",
                "to": _wa_recipient(recipient),
                "type": "template",
                "template": template,
            }
        )

    def send_media(
        self, recipient: str, media_type: str, url_or_id: str, meta: dict[str, Any] | None = None
    ) -> SendResponse:
        media: dict[str, Any] = {"link": url_or_id} if _is_url(url_or_id) else {"id": url_or_id}
        for key in ("caption", "filename"):
            if meta and meta.get(key):
                media[key] = meta[key]
        return self._post(
            {
                "messaging_product": "whatsapp",
                "to": _wa_recipient(recipient),
                "type": media_type,
                media_type: media,
            }
        )

    def _post(self, body: dict[str, Any]) -> SendResponse:
        res = _send(self._client, self._url, body=body, headers={"Authorization": f"Bearer {self._access_token}"})
        messages = res.get("messages") or []
        message_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        if not message_id:
            raise ChannelSendError("WhatsApp response carried no message id")
        return SendResponse(message_id=str(message_id))


class MessengerClient:
    """Messenger Send API; Instagram messaging uses the same shape."""

    def __init__(
        self,
        client: httpx.Client,
        *,
        channel: Channel,
        base_url: str,
        api_version: str,
        access_token: str,
        account_id: str = "",
    ) -> None:
        self.channel = channel
        self._client = client
        self._url = f"{base_url.rstrip('/')}/{api_version}/{account_id or 'me'}/messages"
        self._access_token = access_token

    def send_text(self, recipient: str, text: str) -> SendResponse:
        return self._post({"text": text}, recipient=recipient)

    def send_template(self, recipient: str, template_name: str, locale: str, params: list[str]) -> SendResponse:
        raise PermanentSendError(f"{self.channel.value} does not support message templates")

    def send_media(
        self, recipient: str, media_type: str, url_or_id: str, meta: dict[str, Any] | None = None
    ) -> SendResponse:
        if not _is_url(url_or_id):
            raise PermanentSendError(f"{self.channel.value} media must be sent by URL")
        attachment_type = media_type if media_type in {"image", "audio", "video"} else "file"
        return self._post(
            {"attachment": {"type": attachment_type, "payload": {"url": url_or_id, "is_reusable": True}}},
            recipient=recipient,
        )

    def _post(self, message: dict[str, Any], *, recipient: str) -> SendResponse:
        res = _send(
            self._client,
            self._url,
            body={"recipient": {"id": recipient}, "messaging_type": "RESPONSE", "message": message},
            params={"access_token": self._access_token},
        )
        message_id = res.get("message_id")
        if not message_id:
            raise ChannelSendError(f"{self.channel.value} response carried no message id")
        return SendResponse(message_id=str(message_id))


def build_channel_client(channel: Channel | str, *, http_client: httpx.Client, settings: Settings) -> ChannelClient:
    ch = Channel(channel)
    if ch == Channel.whatsapp:
        if not settings.WHATSAPP_ACCESS_TOKEN or not settings.WHATSAPP_PHONE_NUMBER_ID:
            raise PermanentSendError("WhatsApp credentials are not configured")
        return WhatsAppCloudClient(
            http_client,
            base_url=settings.GRAPH_API_BASE_URL,
            api_version=settings.GRAPH_API_VERSION,
            access_token=settings.WHATSAPP_ACCESS_TOKEN,
            phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
        )
    if ch in {Channel.instagram, Channel.facebook}:
        if not settings.META_PAGE_ACCESS_TOKEN:
            raise PermanentSendError("Meta page access token is not configured")
        account_id = settings.INSTAGRAM_ACCOUNT_ID if ch == Channel.instagram else settings.FACEBOOK_PAGE_ID
        return MessengerClient(
            http_client,
            channel=ch,
            base_url=settings.GRAPH_API_BASE_URL,
            api_version=settings.GRAPH_API_VERSION,
            access_token=settings.META_PAGE_ACCESS_TOKEN,
            account_id=account_id,
        )
    raise PermanentSendError(f"channel {ch.value} has no send API")


def _send(
    client: httpx.Client,
    url: str,
    *,
    body: dict[str, Any],
    headers: dict[str, str] | None = None,
    params: dict[str, str] | None = None,
) -> dict[str, Any]:
    try:
        res = client.post(url, json=body, headers=headers, params=params)
    except httpx.HTTPError as e:
        raise ChannelSendError(f"provider request failed: {e}") from e

    if res.status_code == 429 or res.status_code >= 500 or _is_throttled(res):
        raise ChannelSendError(_error_message(res), status_code=res.status_code)
    if res.status_code >= 400:
        raise PermanentSendError(_error_message(res), status_code=res.status_code)

    try:
        payload = res.json()
    except ValueError as e:
        raise ChannelSendError("provider returned invalid JSON", status_code=res.status_code) from e
    return payload if isinstance(payload, dict) else {}


def _error_message(res: httpx.Response) -> str:
    try:
        err = res.json().get("error") or {}
        message = err.get("message") if isinstance(err, dict) else None
    except (ValueError, AttributeError):
        message = None
    return f"provider returned {res.status_code}: {message or res.text[:200]}"


# Graph API error codes that mean "slow down" even when delivered as a 4xx.
_THROTTLE_ERROR_CODES = {4, 17, 32, 613, 80007, 130429, 131056}


def _is_throttled(res: httpx.Response) -> bool:
    try:
        err = res.json().get("error") or {}
    except (ValueError, AttributeError):
        return False
    return isinstance(err, dict) and err.get("code") in _THROTTLE_ERROR_CODES


def _wa_recipient(recipient: str) -> str:
    return recipient.lstrip("+")


def _is_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))
