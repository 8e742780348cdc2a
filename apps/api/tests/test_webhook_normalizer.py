from __future__ import annotations

from datetime import UTC, datetime

from inbox.models.enums import Channel
from inbox.services.ingest.normalizer import normalize, parse_provider_timestamp


def _wa_payload(*, messages: list[dict] | None = None, statuses: list[dict] | None = None) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": "1000", "display_phone_number": "15550001000"},
                            "contacts": [{"wa_id": "971501234567", "profile": {"name": "Sara"}}],
                            "messages": messages or [],
                            "statuses": statuses or [],
                        },
                    }
                ],
            }
        ],
    }


def test_whatsapp_text_message_is_normalized() -> None:
    raw = _wa_payload(
        messages=[
            {
                "from": "971501234567",
                "id": "wamid.A",
                "timestamp": "1700000000",
                "type": "text",
                "text": {"body": "Hi, is the villa available?"},
            }
        ]
    )

    result = normalize(raw, Channel.whatsapp)

    assert result.errors == []
    assert len(result.events) == 1
    ev = result.events[0]
    assert ev.channel == Channel.whatsapp
    assert ev.event_type == "message"
    assert ev.provider_message_id == "wamid.A"
    assert ev.sender_phone == "971501234567"
    assert ev.sender_name == "Sara"
    assert ev.text == "Hi, is the villa available?"
    assert ev.timestamp == datetime.fromtimestamp(1700000000, tz=UTC)
    assert ev.synthetic_id is False


def test_whatsapp_media_location_and_interactive_render_text() -> None:
    raw = _wa_payload(
        messages=[
            {
                "from": "971501234567",
                "id": "wamid.IMG",
                "timestamp": "1700000000",
                "type": "image",
                "image": {"id": "media-1", "mime_type": "image/jpeg", "caption": "floor plan"},
            },
            {
                "from": "971501234567",
                "id": "wamid.LOC",
                "timestamp": "1700000001",
                "type": "location",
                "location": {"latitude": 25.2, "longitude": 55.27},
            },
            {
                "from": "971501234567",
                "id": "wamid.BTN",
                "timestamp": "1700000002",
                "type": "interactive",
                "interactive": {"type": "button_reply", "button_reply": {"id": "yes", "title": "Yes please"}},
            },
        ]
    )

    events = normalize(raw, "whatsapp").events

    image, location, button = events
    assert image.text == "floor plan"
    assert image.attachments[0].provider_media_id == "media-1"
    assert image.attachments[0].mime_type == "image/jpeg"
    assert location.text == "[location: 25.2, 55.27]"
    assert button.text == "Yes please"


def test_whatsapp_echo_of_own_number_is_dropped() -> None:
    raw = _wa_payload(
        messages=[
            {"from": "1000", "id": "wamid.ECHO", "timestamp": "1700000000", "type": "text", "text": {"body": "x"}},
            {
                "from": "971501234567",
                "id": "wamid.CTX",
                "timestamp": "1700000000",
                "type": "text",
                "text": {"body": "y"},
                "context": {"from": "1000", "id": "wamid.PREV"},
            },
        ]
    )

    assert normalize(raw, Channel.whatsapp).events == []


def test_whatsapp_status_receipts_become_status_events() -> None:
    raw = _wa_payload(
        statuses=[
            {
                "id": "wamid.OUT",
                "status": "failed",
                "timestamp": "1700000000",
                "recipient_id": "971501234567",
                "errors": [{"code": 131047, "title": "Re-engagement message"}],
            }
        ]
    )

    (ev,) = normalize(raw, Channel.whatsapp).events
    assert ev.event_type == "status"
    assert ev.provider_message_id == "wamid.OUT"
    assert ev.status == "failed"
    assert ev.status_error == "Re-engagement message"


def test_missing_message_id_gets_a_synthetic_one() -> None:
    raw = _wa_payload(
        messages=[{"from": "971501234567", "timestamp": "1700000000", "type": "text", "text": {"body": "hi"}}]
    )

    (ev,) = normalize(raw, Channel.whatsapp).events
    assert ev.synthetic_id is True
    assert ev.provider_message_id.startswith("whatsapp:1700000000:")


def test_messenger_message_postback_and_echo() -> None:
    raw = {
        "object": "instagram",
        "entry": [
            {
                "id": "ig-1",
                "time": 1700000000000,
                "messaging": [
                    {
                        "sender": {"id": "igsid-1"},
                        "recipient": {"id": "ig-1"},
                        "timestamp": 1700000000000,
                        "message": {"mid": "m_1", "text": "price?"},
                    },
                    {
                        "sender": {"id": "ig-1"},
                        "recipient": {"id": "igsid-1"},
                        "timestamp": 1700000000500,
                        "message": {"mid": "m_echo", "text": "reply", "is_echo": True},
                    },
                    {
                        "sender": {"id": "igsid-1"},
                        "recipient": {"id": "ig-1"},
                        "timestamp": 1700000001000,
                        "postback": {"mid": "m_2", "title": "Book a viewing", "payload": "BOOK"},
                    },
                ],
            }
        ],
    }

    events = normalize(raw, Channel.instagram).events

    assert [e.provider_message_id for e in events] == ["m_1", "m_2"]
    assert events[0].sender_id == "igsid-1"
    assert events[0].sender_phone is None
    assert events[0].timestamp == datetime.fromtimestamp(1700000000, tz=UTC)
    assert events[1].text == "Book a viewing"
    assert events[1].message_type == "postback"


def test_messenger_entry_without_sender_is_a_parse_error() -> None:
    raw = {"object": "page", "entry": [{"id": "p", "messaging": [{"message": {"mid": "m_1", "text": "x"}}]}]}

    result = normalize(raw, Channel.facebook)

    assert result.events == []
    assert [e.reason for e in result.errors] == ["missing_sender"]
    assert result.errors[0].path == "entry.0.messaging.0"


def test_lead_ads_submission_extracts_contact_fields() -> None:
    raw = {
        "object": "page",
        "entry": [
            {
                "id": "page-1",
                "time": 1700000000,
                "changes": [
                    {
                        "field": "leadgen",
                        "value": {
                            "leadgen_id": "lead-123",
                            "form_id": "form-9",
                            "created_time": 1700000000,
                            "field_data": [
                                {"name": "full_name", "values": ["Omar K"]},
                                {"name": "phone_number", "values": ["+971 50 123 4567"]},
                                {"name": "email", "values": ["omar@example.com"]},
                            ],
                        },
                    }
                ],
            }
        ],
    }

    (ev,) = normalize(raw, Channel.facebook_lead).events

    assert ev.event_type == "lead"
    assert ev.provider_message_id == "lead-123"
    assert ev.sender_phone == "+971 50 123 4567"
    assert ev.sender_name == "Omar K"
    assert ev.sender_email == "omar@example.com"
    assert ev.text.startswith("Lead form submission (form-9)")


def test_malformed_payloads_never_raise() -> None:
    assert normalize([], Channel.whatsapp).errors[0].reason == "payload_not_object"
    assert normalize({"entry": "nope"}, Channel.whatsapp).errors[0].reason == "invalid_shape"
    assert normalize({}, "telegram").errors[0].reason == "unknown_channel"

    no_from = _wa_payload(messages=[{"id": "wamid.X", "type": "text", "text": {"body": "x"}}])
    result = normalize(no_from, Channel.whatsapp)
    assert result.events == []
    assert result.errors[0].reason == "invalid_shape"
    assert "from" in (result.errors[0].path or "")


def test_malformed_whatsapp_item_keeps_its_siblings() -> None:
    raw = _wa_payload(
        messages=[
            {"from": "971501234567", "id": "wamid.GOOD", "type": "text", "text": {"body": "hello"}},
            {"id": "wamid.NOFROM", "type": "text", "text": {"body": "lost sender"}},
        ]
    )
    raw["entry"].append(
        {"id": "waba-1", "changes": [{"field": "messages", "value": {"statuses": [{"status": "delivered"}]}}]}
    )

    result = normalize(raw, Channel.whatsapp)

    assert [e.provider_message_id for e in result.events] == ["wamid.GOOD"]
    assert [(e.reason, e.path) for e in result.errors] == [
        ("invalid_shape", "entry.0.changes.0.value.messages.1.from"),
        ("invalid_shape", "entry.1.changes.0.value.statuses.0.id"),
    ]


def test_malformed_messenger_item_keeps_its_siblings() -> None:
    raw = {
        "object": "page",
        "entry": [
            {
                "id": "p",
                "messaging": [
                    {"sender": {}, "recipient": {"id": "page"}, "message": {"mid": "m.BAD", "text": "x"}},
                    {"sender": {"id": "psid-1"}, "recipient": {"id": "page"}, "message": {"mid": "m.GOOD", "text": "hi"}},
                ],
            }
        ],
    }

    result = normalize(raw, Channel.facebook)

    assert [e.provider_message_id for e in result.events] == ["m.GOOD"]
    assert [(e.reason, e.path) for e in result.errors] == [("invalid_shape", "entry.0.messaging.0.sender.id")]


def test_malformed_lead_change_keeps_its_siblings() -> None:
    raw = {
        "object": "page",
        "entry": [
            {
                "id": "page-1",
                "changes": [
                    {"field": "leadgen", "value": {"leadgen_id": "lead-bad", "field_data": [{"values": ["x"]}]}},
                    {"field": "leadgen", "value": {"leadgen_id": "lead-good"}},
                ],
            }
        ],
    }

    result = normalize(raw, Channel.facebook_lead)

    assert [e.provider_message_id for e in result.events] == ["lead-good"]
    assert result.errors[0].path == "entry.0.changes.0.value.field_data.0.name"


def test_parse_provider_timestamp_accepts_seconds_and_millis() -> None:
    seconds = parse_provider_timestamp("1700000000")
    millis = parse_provider_timestamp(1700000000000)
    assert seconds == millis

    fallback = parse_provider_timestamp("not-a-number")
    assert abs((datetime.now(UTC) - fallback).total_seconds()) < 5
