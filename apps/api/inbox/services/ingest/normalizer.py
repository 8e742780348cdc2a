"""Provider webhook payloads -> canonical events.

Pure functions: nothing here touches the database or the network. Malformed
payloads never raise; they come back as ``ParseError`` values next to whatever
events could still be extracted.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from inbox.core.logs import log_event
from inbox.core.security import new_random_token
from inbox.models.enums import Channel
from inbox.schemas.webhooks import (
    LeadAdsPayload,
    LeadChange,
    MessagingEvent,
    MessengerPayload,
    WaContact,
    WaMessage,
    WaStatus,
    WaValue,
    WebhookPayload,
    WhatsAppPayload,
)
from inbox.services.ingest.types import (
    CanonicalAttachment,
    CanonicalEvent,
    NormalizeResult,
    ParseError,
)

logger = logging.getLogger("inbox.ingest")

# URL path segment -> channel.
ROUTE_CHANNELS: dict[str, Channel] = {
    "whatsapp": Channel.whatsapp,
    "instagram": Channel.instagram,
    "facebook": Channel.facebook,
    "meta-leads": Channel.facebook_lead,
}

_PAYLOAD_MODELS: dict[Channel, type[BaseModel]] = {
    Channel.whatsapp: WhatsAppPayload,
    Channel.instagram: MessengerPayload,
    Channel.facebook: MessengerPayload,
    Channel.facebook_lead: LeadAdsPayload,
}

_WA_MEDIA_TYPES = ("image", "audio", "video", "document", "sticker")

_ItemT = TypeVar("_ItemT", bound=BaseModel)


def normalize(raw: object, channel: Channel | str) -> NormalizeResult:
    try:
        ch = Channel(channel)
    except ValueError:
        return _fail(str(channel), "unknown_channel")

    if not isinstance(raw, dict):
        return _fail(ch.value, "payload_not_object")

    model = _PAYLOAD_MODELS[ch]
    try:
        payload: WebhookPayload = model.model_validate(raw)
    except ValidationError as e:
        return NormalizeResult(events=[], errors=[_shape_error(ch, e)])

    errors: list[ParseError] = []
    if isinstance(payload, WhatsAppPayload):
        events = _whatsapp_events(payload, errors=errors)
    elif isinstance(payload, MessengerPayload):
        events = _messenger_events(payload, channel=ch, errors=errors)
    else:
        events = _lead_events(payload, errors=errors)

    if not events and not errors:
        log_event(logger, "webhook.normalize.empty", channel=ch.value)
    return NormalizeResult(events=events, errors=errors)


def parse_provider_timestamp(value: str | int | None) -> datetime:
    """Seconds or milliseconds since epoch; anything unusable becomes now()."""
    if value is None:
        return datetime.now(UTC)
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return datetime.now(UTC)
    if ts > 1e12:
        ts = ts / 1000.0
    try:
        return datetime.fromtimestamp(ts, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return datetime.now(UTC)


def synthesize_message_id(channel: Channel, timestamp: datetime) -> str:
    return f"{channel.value}:{int(timestamp.timestamp())}:{new_random_token(nbytes=6)}"


def _parse_error(channel: str, reason: str, *, path: str | None = None) -> ParseError:
    log_event(
        logger,
        "webhook.normalize.parse_error",
        level=logging.WARNING,
        channel=channel,
        reason=reason,
        path=path,
    )
    return ParseError(channel=channel, reason=reason, path=path)


def _fail(channel: str, reason: str) -> NormalizeResult:
    return NormalizeResult(events=[], errors=[_parse_error(channel, reason)])


def _shape_error(channel: Channel, exc: ValidationError, *, prefix: str = "") -> ParseError:
    first = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(p) for p in first.get("loc", ()))
    path = ".".join(p for p in (prefix, loc) if p)
    return _parse_error(channel.value, "invalid_shape", path=path or None)


def _validate_item(
    model: type[_ItemT], raw: Any, *, channel: Channel, path: str, errors: list[ParseError]
) -> _ItemT | None:
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        errors.append(_shape_error(channel, e, prefix=path))
        return None


def _provider_id(channel: Channel, provider_id: str | None, timestamp: datetime) -> tuple[str, bool]:
    if provider_id:
        return provider_id, False
    synthetic = synthesize_message_id(channel, timestamp)
    log_event(
        logger,
        "webhook.normalize.synthetic_id",
        level=logging.WARNING,
        channel=channel.value,
        provider_message_id=synthetic,
    )
    return synthetic, True


# WhatsApp -------------------------------------------------------------------


def _whatsapp_events(payload: WhatsAppPayload, *, errors: list[ParseError]) -> list[CanonicalEvent]:
    ch = Channel.whatsapp
    events: list[CanonicalEvent] = []
    for i, entry in enumerate(payload.entry):
        for j, change in enumerate(entry.changes):
            value = change.value
            base = f"entry.{i}.changes.{j}.value"
            names: dict[str, str] = {}
            for k, raw_contact in enumerate(value.contacts):
                c = _validate_item(WaContact, raw_contact, channel=ch, path=f"{base}.contacts.{k}", errors=errors)
                if c is not None and c.wa_id and c.profile is not None and c.profile.name:
                    names[c.wa_id] = c.profile.name
            for k, raw_msg in enumerate(value.messages):
                msg = _validate_item(WaMessage, raw_msg, channel=ch, path=f"{base}.messages.{k}", errors=errors)
                if msg is None or _is_whatsapp_echo(msg, value):
                    continue
                events.append(_whatsapp_message(msg, sender_name=names.get(msg.from_)))
            for k, raw_st in enumerate(value.statuses):
                st = _validate_item(WaStatus, raw_st, channel=ch, path=f"{base}.statuses.{k}", errors=errors)
                if st is not None:
                    events.append(_whatsapp_status(st))
    return events


def _is_whatsapp_echo(msg: WaMessage, value: WaValue) -> bool:
    own_id = value.metadata.phone_number_id if value.metadata is not None else None
    if not own_id:
        return False
    if msg.context is not None and msg.context.from_ == own_id:
        return True
    return msg.from_ == own_id


def _whatsapp_message(msg: WaMessage, *, sender_name: str | None) -> CanonicalEvent:
    ts = parse_provider_timestamp(msg.timestamp)
    provider_id, synthetic = _provider_id(Channel.whatsapp, msg.id, ts)

    text = ""
    event_type = "message"
    attachments: list[CanonicalAttachment] = []
    if msg.type == "text" and msg.text is not None:
        text = msg.text.body
    elif msg.type in _WA_MEDIA_TYPES:
        media = getattr(msg, msg.type)
        if media is not None:
            attachments.append(
                CanonicalAttachment(
                    media_type=msg.type,
                    media_url=media.link,
                    provider_media_id=media.id,
                    mime_type=media.mime_type,
                )
            )
            text = media.caption or ""
    elif msg.type == "location" and msg.location is not None:
        text = f"[location: {msg.location.latitude}, {msg.location.longitude}]"
    elif msg.type == "button" and msg.button is not None:
        text = msg.button.text or ""
    elif msg.type == "interactive" and msg.interactive is not None:
        option = msg.interactive.button_reply or msg.interactive.list_reply
        text = (option.title or "") if option is not None else ""
    else:
        event_type = "other"

    return CanonicalEvent(
        channel=Channel.whatsapp,
        event_type=event_type,
        provider_message_id=provider_id,
        timestamp=ts,
        sender_id=msg.from_,
        sender_phone=msg.from_,
        sender_name=sender_name,
        text=text,
        message_type=msg.type,
        attachments=tuple(attachments),
        synthetic_id=synthetic,
        raw=msg.model_dump(by_alias=True, exclude_none=True),
    )


def _whatsapp_status(st: WaStatus) -> CanonicalEvent:
    error = None
    if st.errors:
        first = st.errors[0]
        error = first.message or first.title
    return CanonicalEvent(
        channel=Channel.whatsapp,
        event_type="status",
        provider_message_id=st.id,
        timestamp=parse_provider_timestamp(st.timestamp),
        sender_id=st.recipient_id,
        status=st.status,
        status_error=error,
        message_type="status",
        raw=st.model_dump(exclude_none=True),
    )


# Messenger / Instagram ------------------------------------------------------


def _messenger_events(
    payload: MessengerPayload, *, channel: Channel, errors: list[ParseError]
) -> list[CanonicalEvent]:
    events: list[CanonicalEvent] = []
    for i, entry in enumerate(payload.entry):
        for j, raw_item in enumerate(entry.messaging):
            path = f"entry.{i}.messaging.{j}"
            item = _validate_item(MessagingEvent, raw_item, channel=channel, path=path, errors=errors)
            if item is None:
                continue
            if item.sender is None:
                errors.append(_parse_error(channel.value, "missing_sender", path=path))
                continue
            event = _messenger_event(item, channel=channel)
            if event is not None:
                events.append(event)
    return events


def _messenger_event(item: MessagingEvent, *, channel: Channel) -> CanonicalEvent | None:
    ts = parse_provider_timestamp(item.timestamp)
    sender_id = item.sender.id if item.sender is not None else None

    if item.message is not None:
        if item.message.is_echo:
            return None
        provider_id, synthetic = _provider_id(channel, item.message.mid, ts)
        attachments = tuple(
            CanonicalAttachment(
                media_type=a.type,
                media_url=a.payload.url if a.payload is not None else None,
            )
            for a in item.message.attachments
        )
        message_type = "text" if not attachments else attachments[0].media_type
        return CanonicalEvent(
            channel=channel,
            event_type="message",
            provider_message_id=provider_id,
            timestamp=ts,
            sender_id=sender_id,
            text=item.message.text or "",
            message_type=message_type,
            attachments=attachments,
            synthetic_id=synthetic,
            raw=item.model_dump(exclude_none=True),
        )

    if item.postback is not None:
        provider_id, synthetic = _provider_id(channel, item.postback.mid, ts)
        return CanonicalEvent(
            channel=channel,
            event_type="message",
            provider_message_id=provider_id,
            timestamp=ts,
            sender_id=sender_id,
            text=item.postback.title or item.postback.payload or "",
            message_type="postback",
            synthetic_id=synthetic,
            raw=item.model_dump(exclude_none=True),
        )

    # Read and delivery receipts carry nothing we persist.
    return None


# Lead Ads -------------------------------------------------------------------

_LEAD_PHONE_FIELDS = ("phone_number", "phone", "mobile_number")
_LEAD_NAME_FIELDS = ("full_name", "name")


def _lead_events(payload: LeadAdsPayload, *, errors: list[ParseError]) -> list[CanonicalEvent]:
    events: list[CanonicalEvent] = []
    for i, entry in enumerate(payload.entry):
        for j, raw_change in enumerate(entry.changes):
            path = f"entry.{i}.changes.{j}"
            change = _validate_item(LeadChange, raw_change, channel=Channel.facebook_lead, path=path, errors=errors)
            if change is None or change.field != "leadgen":
                continue
            value = change.value
            if not value.leadgen_id:
                errors.append(_parse_error(Channel.facebook_lead.value, "missing_leadgen_id", path=f"{path}.value"))
                continue

            fields = {fd.name.lower(): fd.values[0] for fd in value.field_data if fd.values}
            phone = next((fields[k] for k in _LEAD_PHONE_FIELDS if fields.get(k)), None)
            name = next((fields[k] for k in _LEAD_NAME_FIELDS if fields.get(k)), None)
            if name is None and (fields.get("first_name") or fields.get("last_name")):
                name = " ".join(p for p in (fields.get("first_name"), fields.get("last_name")) if p)

            events.append(
                CanonicalEvent(
                    channel=Channel.facebook_lead,
                    event_type="lead",
                    provider_message_id=value.leadgen_id,
                    timestamp=parse_provider_timestamp(value.created_time or entry.time),
                    sender_id=value.leadgen_id,
                    sender_phone=phone,
                    sender_name=name,
                    sender_email=fields.get("email"),
                    text=_lead_summary(value.form_id, fields),
                    message_type="lead",
                    raw=value.model_dump(exclude_none=True),
                )
            )
    return events


def _lead_summary(form_id: str | None, fields: dict[str, str]) -> str:
    lines = [f"Lead form submission{f' ({form_id})' if form_id else ''}"]
    lines.extend(f"{k}: {v}" for k, v in sorted(fields.items()))
    return "\n".join(lines)
