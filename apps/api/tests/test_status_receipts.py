from __future__ import annotations

from datetime import UTC, datetime

import orjson
from sqlalchemy import text
from sqlalchemy.orm import Session

from inbox.models.enums import Channel
from inbox.services.channels.meta import SendResponse
from inbox.services.ingest.admit import admit
from inbox.services.ingest.processing import process_webhook_delivery
from inbox.services.ingest.types import CanonicalEvent
from inbox.services.outbound.sender import OutboundSendRequest, send_outbound


class FakeClient:
    channel = Channel.whatsapp

    def send_text(self, recipient: str, text: str) -> SendResponse:
        return SendResponse(message_id="wamid.OUT")


def _sent_message(session: Session):
    seed = admit(
        session=session,
        event=CanonicalEvent(
            channel=Channel.whatsapp,
            event_type="message",
            provider_message_id="wamid.IN",
            timestamp=datetime.now(UTC),
            sender_id="971501234567",
            sender_phone="971501234567",
            text="Hello",
        ),
    )
    session.commit()
    return send_outbound(
        session=session,
        client=FakeClient(),
        request=OutboundSendRequest(
            conversation_id=seed.conversation_id,
            contact_id=seed.contact_id,
            lead_id=seed.lead_id,
            channel="whatsapp",
            recipient="+971501234567",
            text="Hi Sara!",
            trigger_provider_message_id="wamid.IN",
        ),
    )


def _status_body(status: str, *, message_id: str = "wamid.OUT", errors: list[dict] | None = None) -> bytes:
    st: dict = {"id": message_id, "status": status, "timestamp": "1700000000", "recipient_id": "971501234567"}
    if errors:
        st["errors"] = errors
    return orjson.dumps(
        {
            "object": "whatsapp_business_account",
            "entry": [{"id": "waba", "changes": [{"field": "messages", "value": {"statuses": [st]}}]}],
        }
    )


def _deliver(status: str, **kwargs):
    return process_webhook_delivery(channel=Channel.whatsapp, body=_status_body(status, **kwargs), signature=None)


def _message_status(session: Session, message_id) -> str:
    return str(
        session.execute(text("SELECT status FROM messages WHERE id = :id"), {"id": str(message_id)}).scalar_one()
    )


def test_status_moves_forward_only(db_session: Session) -> None:
    sent = _sent_message(db_session)

    assert _deliver("delivered").statuses == 1
    assert _message_status(db_session, sent.message_id) == "delivered"

    _deliver("sent")
    assert _message_status(db_session, sent.message_id) == "delivered"

    _deliver("read")
    assert _message_status(db_session, sent.message_id) == "read"

    _deliver("failed", errors=[{"code": 131026, "title": "Message undeliverable"}])
    assert _message_status(db_session, sent.message_id) == "read"

    events = db_session.execute(
        text("SELECT status FROM message_status_events WHERE message_id = :id ORDER BY created_at"),
        {"id": str(sent.message_id)},
    ).scalars().all()
    assert sorted(str(s) for s in events) == ["delivered", "failed", "read", "sent"]


def test_repeated_receipt_is_recorded_once(db_session: Session) -> None:
    sent = _sent_message(db_session)

    _deliver("delivered")
    _deliver("delivered")

    count = db_session.execute(
        text("SELECT count(*) FROM message_status_events WHERE message_id = :id"),
        {"id": str(sent.message_id)},
    ).scalar_one()
    assert count == 1


def test_failed_receipt_marks_undelivered_message(db_session: Session) -> None:
    sent = _sent_message(db_session)

    _deliver("failed", errors=[{"code": 131047, "title": "Re-engagement message"}])

    assert _message_status(db_session, sent.message_id) == "failed"
    err = db_session.execute(
        text("SELECT error_message FROM message_status_events WHERE message_id = :id"),
        {"id": str(sent.message_id)},
    ).scalar_one()
    assert err == "Re-engagement message"


def test_receipt_for_unknown_message_is_ignored(db_session: Session) -> None:
    summary = _deliver("delivered", message_id="wamid.UNKNOWN")

    assert summary.statuses == 1
    assert summary.errors == []
    assert db_session.execute(text("SELECT count(*) FROM message_status_events")).scalar_one() == 0
