"""Webhook delivery processing, run after the HTTP response has been sent."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import orjson
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from inbox.core.config import Settings, get_settings
from inbox.core.logs import log_event
from inbox.core.metrics import observe_webhook_event
from inbox.core.security import verify_meta_signature
from inbox.db.session import session_scope
from inbox.models.enums import Channel
from inbox.services.ingest.admit import admit, mark_admission_completed
from inbox.services.ingest.normalizer import normalize
from inbox.services.ingest.types import CanonicalEvent
from inbox.worker.queue import enqueue_outbound_job

logger = logging.getLogger("inbox.ingest")

EXTERNAL_EVENT_PAYLOAD_LIMIT = 20_000

_STATUS_RANK = {"sent": 1, "delivered": 2, "read": 3}


@dataclass
class ProcessingSummary:
    admitted: int = 0
    duplicates: int = 0
    enqueued: int = 0
    statuses: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


def process_webhook_delivery(
    *,
    channel: Channel,
    body: bytes,
    signature: str | None,
    session_factory: sessionmaker | None = None,
    settings: Settings | None = None,
) -> ProcessingSummary:
    settings = settings or get_settings()
    summary = ProcessingSummary()

    if not verify_meta_signature(body, signature, app_secret=settings.META_APP_SECRET):
        record_external_event(
            channel=channel.value,
            reason="invalid_signature",
            payload=body,
            session_factory=session_factory,
        )
        observe_webhook_event(channel=channel.value, outcome="invalid_signature")
        summary.errors.append("invalid_signature")
        return summary

    try:
        raw = orjson.loads(body)
    except orjson.JSONDecodeError:
        record_external_event(
            channel=channel.value,
            reason="invalid_json",
            payload=body,
            session_factory=session_factory,
        )
        observe_webhook_event(channel=channel.value, outcome="invalid_json")
        summary.errors.append("invalid_json")
        return summary

    result = normalize(raw, channel)
    if result.errors:
        reasons = sorted({e.reason for e in result.errors})
        record_external_event(
            channel=channel.value,
            reason="parse_error:" + ",".join(reasons),
            payload=body,
            session_factory=session_factory,
        )
        observe_webhook_event(channel=channel.value, outcome="parse_error")
        summary.errors.extend(reasons)

    for event in result.events:
        with session_scope(session_factory) as session:
            try:
                _process_event(session=session, event=event, settings=settings, summary=summary)
            except Exception as e:
                session.rollback()
                log_event(
                    logger,
                    "inbound.process_failed",
                    level=logging.ERROR,
                    channel=event.channel.value,
                    provider_message_id=event.provider_message_id,
                    error=str(e),
                )
                observe_webhook_event(channel=event.channel.value, outcome="error")
                summary.errors.append(f"process_failed:{event.provider_message_id}")
                record_external_event(
                    channel=event.channel.value,
                    reason=f"process_failed: {type(e).__name__}: {e}"[:500],
                    payload=orjson.dumps(event.raw, default=str),
                    session_factory=session_factory,
                )
    return summary


def _process_event(*, session: Session, event: CanonicalEvent, settings: Settings, summary: ProcessingSummary) -> None:
    channel = event.channel.value
    if event.event_type == "status":
        applied = apply_status_event(session=session, event=event)
        session.commit()
        summary.statuses += 1
        observe_webhook_event(channel=channel, outcome="status" if applied else "status_unmatched")
        return

    res = admit(session=session, event=event, settings=settings)
    if res.duplicate:
        summary.duplicates += 1
        observe_webhook_event(channel=channel, outcome="duplicate")
        return
    if not res.created:
        summary.skipped += 1
        observe_webhook_event(channel=channel, outcome="skipped")
        return

    if res.reply_eligible and res.message_id is not None and res.conversation_id is not None:
        job_id = enqueue_outbound_job(
            session=session,
            message_id=res.message_id,
            conversation_id=res.conversation_id,
            inbound_provider_message_id=event.provider_message_id,
        )
        summary.enqueued += 1
        log_event(logger, "outbound.job.enqueued", job_id=str(job_id), message_id=str(res.message_id))
    mark_admission_completed(session=session, channel=channel, provider_message_id=event.provider_message_id)
    session.commit()
    summary.admitted += 1
    observe_webhook_event(channel=channel, outcome="admitted")


def apply_status_event(*, session: Session, event: CanonicalEvent) -> bool:
    """Attach a delivery receipt to the outbound message it refers to.

    Message status only moves forward (sent -> delivered -> read); ``failed``
    applies unless the message was already read.
    """
    msg = (
        session.execute(
            text(
                """
                SELECT id, conversation_id, status
                FROM messages
                WHERE channel = :channel
                  AND direction = 'outbound'
                  AND provider_message_id = :provider_message_id
                ORDER BY created_at DESC
                LIMIT 1
                FOR UPDATE
                """
            ),
            {"channel": event.channel.value, "provider_message_id": event.provider_message_id},
        )
        .mappings()
        .fetchone()
    )
    provider_status = (event.status or "").lower()
    if msg is None or provider_status not in {"sent", "delivered", "read", "failed"}:
        log_event(
            logger,
            "inbound.status_unmatched",
            channel=event.channel.value,
            provider_message_id=event.provider_message_id,
            status=provider_status,
        )
        return False

    session.execute(
        text(
            """
            INSERT INTO message_status_events (
              message_id,
              conversation_id,
              status,
              provider_status,
              error_message,
              raw_payload,
              created_at
            )
            VALUES (
              :message_id,
              :conversation_id,
              :status,
              :provider_status,
              :error_message,
              CAST(:raw_payload AS jsonb),
              now()
            )
            ON CONFLICT (message_id, status) DO NOTHING
            """
        ),
        {
            "message_id": str(msg["id"]),
            "conversation_id": str(msg["conversation_id"]),
            "status": provider_status,
            "provider_status": event.status,
            "error_message": event.status_error,
            "raw_payload": orjson.dumps(event.raw, default=str).decode("utf-8"),
        },
    )

    current = str(msg["status"])
    if provider_status == "failed":
        advance = current != "read"
    else:
        advance = _STATUS_RANK.get(provider_status, 0) > _STATUS_RANK.get(current, 0)
    if advance:
        session.execute(
            text("UPDATE messages SET status = :status WHERE id = :id"),
            {"id": str(msg["id"]), "status": provider_status},
        )
    return True


def record_external_event(
    *,
    channel: str,
    reason: str,
    payload: bytes | str,
    session_factory: sessionmaker | None = None,
) -> None:
    raw = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
    log_event(logger, "webhook.external_event_logged", level=logging.WARNING, channel=channel, reason=reason)
    with session_scope(session_factory) as session:
        session.execute(
            text(
                """
                INSERT INTO external_event_logs (channel, reason, payload, created_at)
                VALUES (:channel, :reason, :payload, now())
                """
            ),
            {"channel": channel, "reason": reason, "payload": raw[:EXTERNAL_EVENT_PAYLOAD_LIMIT]},
        )
        session.commit()
