from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# WhatsApp Cloud API ---------------------------------------------------------


class WaText(_Lenient):
    body: str = ""


class WaMedia(_Lenient):
    id: str | None = None
    mime_type: str | None = None
    caption: str | None = None
    link: str | None = None
    filename: str | None = None


class WaLocation(_Lenient):
    latitude: float | None = None
    longitude: float | None = None
    name: str | None = None


class WaContext(_Lenient):
    from_: str | None = Field(default=None, alias="from")
    id: str | None = None


class WaButton(_Lenient):
    text: str | None = None


class WaReplyOption(_Lenient):
    id: str | None = None
    title: str | None = None


class WaInteractive(_Lenient):
    type: str | None = None
    button_reply: WaReplyOption | None = None
    list_reply: WaReplyOption | None = None


class WaMessage(_Lenient):
    from_: str = Field(alias="from")
    id: str | None = None
    timestamp: str | int | None = None
    type: str = "text"
    text: WaText | None = None
    image: WaMedia | None = None
    audio: WaMedia | None = None
    video: WaMedia | None = None
    document: WaMedia | None = None
    sticker: WaMedia | None = None
    location: WaLocation | None = None
    button: WaButton | None = None
    interactive: WaInteractive | None = None
    context: WaContext | None = None


class WaStatusError(_Lenient):
    code: int | None = None
    title: str | None = None
    message: str | None = None


class WaStatus(_Lenient):
    id: str
    status: str
    timestamp: str | int | None = None
    recipient_id: str | None = None
    errors: list[WaStatusError] = []


class WaProfile(_Lenient):
    name: str | None = None


class WaContact(_Lenient):
    wa_id: str | None = None
    profile: WaProfile | None = None


class WaMetadata(_Lenient):
    phone_number_id: str | None = None
    display_phone_number: str | None = None


class WaValue(_Lenient):
    messaging_product: str | None = None
    metadata: WaMetadata | None = None
    # Items are validated one at a time by the normalizer.
    contacts: list[Any] = []
    messages: list[Any] = []
    statuses: list[Any] = []


class WaChange(_Lenient):
    field: str | None = None
    value: WaValue = Field(default_factory=WaValue)


class WaEntry(_Lenient):
    id: str | None = None
    changes: list[WaChange] = []


class WhatsAppPayload(_Lenient):
    object: str | None = None
    entry: list[WaEntry]


# Messenger / Instagram ------------------------------------------------------


class MsgParty(_Lenient):
    id: str


class MsgAttachmentPayload(_Lenient):
    url: str | None = None


class MsgAttachment(_Lenient):
    type: str = "file"
    payload: MsgAttachmentPayload | None = None


class MsgMessage(_Lenient):
    mid: str | None = None
    text: str | None = None
    attachments: list[MsgAttachment] = []
    is_echo: bool = False


class MsgPostback(_Lenient):
    mid: str | None = None
    title: str | None = None
    payload: str | None = None


class MessagingEvent(_Lenient):
    sender: MsgParty | None = None
    recipient: MsgParty | None = None
    timestamp: int | None = None
    message: MsgMessage | None = None
    postback: MsgPostback | None = None


class MessengerEntry(_Lenient):
    id: str | None = None
    time: int | None = None
    messaging: list[Any] = []


class MessengerPayload(_Lenient):
    object: str | None = None
    entry: list[MessengerEntry]


# Lead Ads -------------------------------------------------------------------


class LeadFieldData(_Lenient):
    name: str
    values: list[str] = []


class LeadgenValue(_Lenient):
    leadgen_id: str | None = None
    page_id: str | None = None
    form_id: str | None = None
    ad_id: str | None = None
    created_time: int | None = None
    field_data: list[LeadFieldData] = []


class LeadChange(_Lenient):
    field: str | None = None
    value: LeadgenValue


class LeadEntry(_Lenient):
    id: str | None = None
    time: int | None = None
    changes: list[Any] = []


class LeadAdsPayload(_Lenient):
    object: str | None = None
    entry: list[LeadEntry]


WebhookPayload = WhatsAppPayload | MessengerPayload | LeadAdsPayload


# Responses ------------------------------------------------------------------


class WebhookAck(BaseModel):
    status: str


class WebhookStatus(BaseModel):
    status: str
    channel: str
