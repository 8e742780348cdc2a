from __future__ import annotations

import threading
import time
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session

from inbox.db.session import session_scope
from inbox.models.enums import Channel
from inbox.services.channels.meta import ChannelSendError, PermanentSendError, SendResponse
from inbox.services.ingest.admit import admit
from inbox.services.ingest.types import AdmitResult, CanonicalEvent
from inbox.services.outbound.sender import OutboundSendRequest, send_outbound


class FakeClient:
    channel = Channel.whatsapp

    def __init__(self, *, fail_with: Exception | None = None, delay: float = 0.0) -> None:
        self.sent: list[tuple[str, str]] = []
        self._fail_with = fail_with
        self._delay = delay
        self._lock = threading.Lock()

    def send_text(self, recipient: str, text: str) -> SendResponse:
        if self._delay:
            time.sleep(self._delay)
        with self._lock:
            self.sent.append((recipient, text))
            n = len(self.sent)
        if self._fail_with is not None:
            raise self._fail_with
        return SendResponse(message_id=f"wamid.OUT{n}")


def _seed(session: Session) -> AdmitResult:
    res = admit(
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
    return res


def _request(seed: AdmitResult, **overrides) -> OutboundSendRequest:
    fields = {
        "conversation_id": seed.conversation_id,
        "contact_id": seed.contact_id,
        "lead_id": seed.lead_id,
        "channel": "whatsapp",
        "recipient": "+971501234567",
        "text": "Thanks for reaching out!",
        "trigger_provider_message_id": "wamid.IN",
    }
    fields.update(overrides)
    return OutboundSendRequest(**fields)


def test_send_records_ledger_and_outbound_message(db_session: Session) -> None:
    seed = _seed(db_session)
    client = FakeClient()

    result = send_outbound(session=db_session, client=client, request=_request(seed))

    assert result.success is True
    assert result.was_duplicate is False
    assert result.provider_message_id == "wamid.OUT1"
    assert client.sent == [("+971501234567", "Thanks for reaching out!")]

    ledger = db_session.execute(
        text("SELECT status, provider_message_id, attempts FROM outbound_message_logs"),
    ).mappings().one()
    assert str(ledger["status"]) == "sent"
    assert ledger["provider_message_id"] == "wamid.OUT1"
    assert ledger["attempts"] == 1

    msg = db_session.execute(
        text("SELECT direction, status, provider_message_id FROM messages WHERE id = :id"),
        {"id": str(result.message_id)},
    ).mappings().one()
    assert str(msg["direction"]) == "outbound"
    assert str(msg["status"]) == "sent"
    assert msg["provider_message_id"] == "wamid.OUT1"

    last_outbound = db_session.execute(
        text("SELECT last_outbound_at FROM conversations WHERE id = :id"),
        {"id": str(seed.conversation_id)},
    ).scalar_one()
    assert last_outbound is not None


def test_repeat_send_is_a_duplicate_and_skips_the_provider(db_session: Session) -> None:
    seed = _seed(db_session)
    client = FakeClient()

    first = send_outbound(session=db_session, client=client, request=_request(seed))
    second = send_outbound(session=db_session, client=client, request=_request(seed))

    assert first.was_duplicate is False
    assert second.success is True
    assert second.was_duplicate is True
    assert second.provider_message_id == "wamid.OUT1"
    assert second.outbound_log_id == first.outbound_log_id
    assert len(client.sent) == 1


def test_concurrent_sends_reach_the_provider_once(db_session: Session) -> None:
    seed = _seed(db_session)
    client = FakeClient(delay=0.2)
    workers = 5
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def attempt() -> None:
        barrier.wait()
        with session_scope() as session:
            res = send_outbound(session=session, client=client, request=_request(seed))
        with lock:
            results.append(res)

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(client.sent) == 1
    assert len(results) == workers
    assert sum(1 for r in results if not r.was_duplicate) == 1
    assert all(r.success for r in results)
    outbound = db_session.execute(
        text("SELECT count(*) FROM messages WHERE direction = 'outbound'")
    ).scalar_one()
    assert outbound == 1


def test_failed_send_can_be_reclaimed(db_session: Session) -> None:
    seed = _seed(db_session)

    with pytest.raises(ChannelSendError):
        send_outbound(
            session=db_session,
            client=FakeClient(fail_with=ChannelSendError("provider returned 503", status_code=503)),
            request=_request(seed),
        )
    failed = db_session.execute(text("SELECT status, error FROM outbound_message_logs")).mappings().one()
    assert str(failed["status"]) == "failed"
    assert "503" in failed["error"]

    client = FakeClient()
    result = send_outbound(session=db_session, client=client, request=_request(seed))

    assert result.was_duplicate is False
    assert len(client.sent) == 1
    ledger = db_session.execute(text("SELECT status, attempts, error FROM outbound_message_logs")).mappings().one()
    assert str(ledger["status"]) == "sent"
    assert ledger["attempts"] == 2
    assert ledger["error"] is None


def test_closed_free_form_window_rejects_send(db_session: Session) -> None:
    seed = _seed(db_session)
    db_session.execute(
        text("UPDATE conversations SET last_inbound_at = now() - interval '25 hours' WHERE id = :id"),
        {"id": str(seed.conversation_id)},
    )
    db_session.commit()
    client = FakeClient()

    with pytest.raises(PermanentSendError, match="window"):
        send_outbound(session=db_session, client=client, request=_request(seed))

    assert client.sent == []
    assert db_session.execute(text("SELECT count(*) FROM outbound_message_logs")).scalar_one() == 0


def test_repeat_after_window_closes_is_still_a_duplicate(db_session: Session) -> None:
    seed = _seed(db_session)
    client = FakeClient()
    first = send_outbound(session=db_session, client=client, request=_request(seed))

    later = datetime.now(UTC) + timedelta(hours=25)
    again = send_outbound(session=db_session, client=client, request=_request(seed), now=later)

    assert again.was_duplicate is True
    assert again.provider_message_id == first.provider_message_id
    assert again.outbound_log_id == first.outbound_log_id
    assert len(client.sent) == 1


def test_window_rejection_releases_the_claim(db_session: Session) -> None:
    seed = _seed(db_session)
    client = FakeClient()
    later = datetime.now(UTC) + timedelta(hours=25)

    with pytest.raises(PermanentSendError, match="window"):
        send_outbound(session=db_session, client=client, request=_request(seed), now=later)
    assert db_session.execute(text("SELECT count(*) FROM outbound_message_logs")).scalar_one() == 0

    result = send_outbound(session=db_session, client=client, request=_request(seed))
    assert result.was_duplicate is False
    assert client.sent == [("+971501234567", "Thanks for reaching out!")]


def test_empty_text_is_rejected(db_session: Session) -> None:
    seed = _seed(db_session)
    with pytest.raises(PermanentSendError):
        send_outbound(session=db_session, client=FakeClient(), request=_request(seed, text='{"reply": "  "}'))
