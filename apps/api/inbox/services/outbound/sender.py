"""Idempotent outbound send backed by the ``outbound_message_logs`` ledger.

The ledger row for a dedupe key is claimed and committed before the provider
is called, so of any number of concurrent or repeated attempts at the same
logical reply exactly one reaches the provider. A failed row can be re-claimed
by a later attempt; a pending or sent row never is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from inbox.core.config import Settings, get_settings
from inbox.core.logs import log_event
from inbox.core.metrics import observe_outbound_send
from inbox.models.enums import Channel, ReplyType
from inbox.services.channels.meta import ChannelClient, PermanentSendError
from inbox.services.outbound.keys import (
    day_bucket,
    normalize_outbound_text,
    outbound_dedupe_key,
    text_hash,
)

logger = logging.getLogger("inbox.outbound")

FREE_FORM_CHANNELS = frozenset({Channel.whatsapp, Channel.instagram, Channel.facebook})


@dataclass(frozen=True)
class OutboundSendRequest:
    conversation_id: UUID
    contact_id: UUID
    lead_id: UUID | None
    channel: str
    recipient: str
    text: str
    trigger_provider_message_id: str | None = None
    reply_type: str = ReplyType.answer.value
    question_key: str | None = None


@dataclass(frozen=True)
class OutboundSendResult:
    success: bool
    was_duplicate: bool
    message_id: UUID | None = None
    provider_message_id: str | None = None
    outbound_log_id: UUID | None = None
    error: str | None = None


def send_outbound(
    *,
    session: Session,
    client: ChannelClient,
    request: OutboundSendRequest,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> OutboundSendResult:
    settings = settings or get_settings()
    now = now or datetime.now(UTC)

    body = normalize_outbound_text(request.text)
    if not body:
        raise PermanentSendError("outbound text is empty")

    dedupe_key = outbound_dedupe_key(
        conversation_id=request.conversation_id,
        reply_type=request.reply_type,
        text=body,
        question_key=request.question_key,
        trigger_provider_message_id=request.trigger_provider_message_id,
        now=now,
    )
    log_id = _claim_ledger_row(session=session, request=request, dedupe_key=dedupe_key, body=body, now=now)
    if log_id is None:
        session.rollback()
        existing = _ledger_row(session=session, dedupe_key=dedupe_key)
        session.commit()
        log_event(
            logger,
            "outbound.duplicate",
            channel=request.channel,
            conversation_id=str(request.conversation_id),
            outbound_dedupe_key=dedupe_key,
            ledger_status=existing["status"] if existing else None,
        )
        observe_outbound_send(channel=request.channel, outcome="duplicate")
        return OutboundSendResult(
            success=True,
            was_duplicate=True,
            provider_message_id=existing["provider_message_id"] if existing else None,
            outbound_log_id=UUID(str(existing["id"])) if existing else None,
        )

    try:
        _check_free_form_window(session=session, request=request, settings=settings, now=now)
    except PermanentSendError as e:
        # Releases the uncommitted claim; nothing reached the provider.
        session.rollback()
        log_event(
            logger,
            "outbound.window_closed",
            level=logging.WARNING,
            channel=request.channel,
            conversation_id=str(request.conversation_id),
            outbound_dedupe_key=dedupe_key,
            error=str(e),
        )
        observe_outbound_send(channel=request.channel, outcome="rejected")
        raise

    # The claim must be visible to other workers before the provider call.
    session.commit()

    try:
        response = client.send_text(request.recipient, body)
    except Exception as e:
        _mark_failed(session=session, log_id=log_id, error=str(e))
        session.commit()
        log_event(
            logger,
            "outbound.send_failed",
            level=logging.WARNING,
            channel=request.channel,
            conversation_id=str(request.conversation_id),
            outbound_log_id=str(log_id),
            error=str(e),
        )
        observe_outbound_send(channel=request.channel, outcome="failed")
        raise

    message_id = _record_sent(
        session=session,
        request=request,
        log_id=log_id,
        body=body,
        provider_message_id=response.message_id,
        settings=settings,
    )
    session.commit()
    log_event(
        logger,
        "outbound.sent",
        channel=request.channel,
        conversation_id=str(request.conversation_id),
        outbound_log_id=str(log_id),
        provider_message_id=response.message_id,
        reply_type=request.reply_type,
    )
    observe_outbound_send(channel=request.channel, outcome="sent")
    return OutboundSendResult(
        success=True,
        was_duplicate=False,
        message_id=message_id,
        provider_message_id=response.message_id,
        outbound_log_id=log_id,
    )


def _check_free_form_window(
    *, session: Session, request: OutboundSendRequest, settings: Settings, now: datetime
) -> None:
    if request.channel not in FREE_FORM_CHANNELS:
        return
    last_inbound_at = session.execute(
        text("SELECT last_inbound_at FROM conversations WHERE id = :id"),
        {"id": str(request.conversation_id)},
    ).scalar_one_or_none()
    window = timedelta(hours=settings.FREE_FORM_WINDOW_HOURS)
    if last_inbound_at is None or now - last_inbound_at > window:
        raise PermanentSendError(
            f"free-form window closed: no inbound message in the last {settings.FREE_FORM_WINDOW_HOURS}h"
        )


def _claim_ledger_row(
    *,
    session: Session,
    request: OutboundSendRequest,
    dedupe_key: str,
    body: str,
    now: datetime,
) -> UUID | None:
    row = session.execute(
        text(
            """
            INSERT INTO outbound_message_logs (
              outbound_dedupe_key,
              channel,
              conversation_id,
              trigger_provider_message_id,
              reply_type,
              question_key,
              day_bucket,
              text_hash,
              status,
              attempts,
              created_at,
              updated_at
            )
            VALUES (
              :dedupe_key,
              :channel,
              :conversation_id,
              :trigger_provider_message_id,
              :reply_type,
              :question_key,
              :day_bucket,
              :text_hash,
              'pending',
              1,
              now(),
              now()
            )
            ON CONFLICT (outbound_dedupe_key) DO UPDATE
            SET status = 'pending',
                attempts = outbound_message_logs.attempts + 1,
                error = NULL,
                failed_at = NULL,
                updated_at = now()
            WHERE outbound_message_logs.status = 'failed'
            RETURNING id
            """
        ),
        {
            "dedupe_key": dedupe_key,
            "channel": request.channel,
            "conversation_id": str(request.conversation_id),
            "trigger_provider_message_id": request.trigger_provider_message_id,
            "reply_type": request.reply_type,
            "question_key": request.question_key,
            "day_bucket": day_bucket(now),
            "text_hash": text_hash(body),
        },
    ).fetchone()
    if row is None:
        return None
    return UUID(str(row[0]))


def _ledger_row(*, session: Session, dedupe_key: str) -> dict | None:
    row = (
        session.execute(
            text(
                """
                SELECT id, status, provider_message_id
                FROM outbound_message_logs
                WHERE outbound_dedupe_key = :dedupe_key
                """
            ),
            {"dedupe_key": dedupe_key},
        )
        .mappings()
        .fetchone()
    )
    return dict(row) if row is not None else None


def _mark_failed(*, session: Session, log_id: UUID, error: str) -> None:
    session.execute(
        text(
            """
            UPDATE outbound_message_logs
            SET status = 'failed',
                error = :error,
                failed_at = now(),
                updated_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(log_id), "error": error[:2000]},
    )


def _record_sent(
    *,
    session: Session,
    request: OutboundSendRequest,
    log_id: UUID,
    body: str,
    provider_message_id: str,
    settings: Settings,
) -> UUID:
    session.execute(
        text(
            """
            UPDATE outbound_message_logs
            SET status = 'sent',
                provider_message_id = :provider_message_id,
                sent_at = now(),
                updated_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(log_id), "provider_message_id": provider_message_id},
    )
    message_id = session.execute(
        text(
            """
            INSERT INTO messages (
              workspace_id,
              conversation_id,
              contact_id,
              lead_id,
              direction,
              channel,
              message_type,
              body,
              provider_message_id,
              status,
              sent_at,
              created_at
            )
            VALUES (
              :workspace_id,
              :conversation_id,
              :contact_id,
              :lead_id,
              'outbound',
              :channel,
              'text',
              :body,
              :provider_message_id,
              'sent',
              now(),
              now()
            )
            RETURNING id
            """
        ),
        {
            "workspace_id": settings.WORKSPACE_ID,
            "conversation_id": str(request.conversation_id),
            "contact_id": str(request.contact_id),
            "lead_id": str(request.lead_id) if request.lead_id else None,
            "channel": request.channel,
            "body": body,
            "provider_message_id": provider_message_id,
        },
    ).scalar_one()
    session.execute(
        text(
            """
            UPDATE conversations
            SET last_outbound_at = now(),
                last_message_at = now(),
                updated_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(request.conversation_id)},
    )
    return UUID(str(message_id))
