"""Admit one canonical inbound event into the CRM.

Everything happens in the caller's transaction, in this order: contact, lead,
conversation, dedup row, message. The unique constraints on
``inbound_message_dedup`` and ``messages`` decide which delivery wins; a losing
delivery rolls the transaction back so it leaves nothing behind.
"""

from __future__ import annotations

import logging
from uuid import UUID

import orjson
from sqlalchemy import text
from sqlalchemy.orm import Session

from inbox.core.config import Settings, get_settings
from inbox.core.logs import log_event
from inbox.services.contacts import build_identity, resolve_contact
from inbox.services.ingest.types import AdmitResult, CanonicalEvent

logger = logging.getLogger("inbox.ingest")

OPEN_LEAD_MAX_AGE_DAYS = 30


def admit(*, session: Session, event: CanonicalEvent, settings: Settings | None = None) -> AdmitResult:
    settings = settings or get_settings()
    workspace_id = settings.WORKSPACE_ID
    channel = event.channel.value

    if event.event_type not in {"message", "lead"}:
        return AdmitResult(created=False, duplicate=False, reply_eligible=False, skip_reason="unsupported_event")

    if _already_admitted(session=session, channel=channel, provider_message_id=event.provider_message_id):
        return _duplicate(event)

    identity = build_identity(
        channel=event.channel,
        sender_id=event.sender_id,
        sender_phone=event.sender_phone,
        sender_name=event.sender_name,
        sender_email=event.sender_email,
        default_region=settings.DEFAULT_PHONE_REGION,
    )
    contact_id = resolve_contact(session=session, workspace_id=workspace_id, identity=identity)
    lead_id = _resolve_lead(session=session, workspace_id=workspace_id, contact_id=contact_id, event=event)
    conversation = _upsert_conversation(
        session=session,
        workspace_id=workspace_id,
        contact_id=contact_id,
        lead_id=lead_id,
        channel=channel,
        resurrect_days=settings.CONVERSATION_RESURRECT_DAYS,
    )
    conversation_id = UUID(str(conversation["id"]))

    dedup_row = session.execute(
        text(
            """
            INSERT INTO inbound_message_dedup (
              channel,
              provider_message_id,
              conversation_id,
              processing_status,
              created_at
            )
            VALUES (:channel, :provider_message_id, :conversation_id, 'processing', now())
            ON CONFLICT (channel, provider_message_id) DO NOTHING
            RETURNING id
            """
        ),
        {
            "channel": channel,
            "provider_message_id": event.provider_message_id,
            "conversation_id": str(conversation_id),
        },
    ).fetchone()
    if dedup_row is None:
        session.rollback()
        return _duplicate(event)

    message_row = session.execute(
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
              attachments,
              created_at
            )
            VALUES (
              :workspace_id,
              :conversation_id,
              :contact_id,
              :lead_id,
              'inbound',
              :channel,
              :message_type,
              :body,
              :provider_message_id,
              'received',
              CAST(:attachments AS jsonb),
              :created_at
            )
            ON CONFLICT (conversation_id, provider_message_id) WHERE direction = 'inbound' DO NOTHING
            RETURNING id
            """
        ),
        {
            "workspace_id": workspace_id,
            "conversation_id": str(conversation_id),
            "contact_id": str(contact_id),
            "lead_id": str(lead_id),
            "channel": channel,
            "message_type": event.message_type,
            "body": event.text,
            "provider_message_id": event.provider_message_id,
            "attachments": orjson.dumps([a.as_json() for a in event.attachments]).decode("utf-8"),
            "created_at": event.timestamp,
        },
    ).fetchone()
    if message_row is None:
        session.rollback()
        return _duplicate(event)
    message_id = UUID(str(message_row[0]))

    session.execute(
        text(
            """
            UPDATE conversations
            SET last_message_at = GREATEST(COALESCE(last_message_at, :ts), :ts),
                last_inbound_at = GREATEST(COALESCE(last_inbound_at, :ts), :ts),
                unread_count = unread_count + 1,
                updated_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(conversation_id), "ts": event.timestamp},
    )

    skip_reason = _ineligibility(event=event, conversation=conversation, settings=settings)
    log_event(
        logger,
        "inbound.admitted",
        channel=channel,
        provider_message_id=event.provider_message_id,
        message_id=str(message_id),
        conversation_id=str(conversation_id),
        conversation_created=bool(conversation["inserted"]),
        reply_eligible=skip_reason is None,
        skip_reason=skip_reason,
        synthetic_id=event.synthetic_id,
    )
    return AdmitResult(
        created=True,
        duplicate=False,
        reply_eligible=skip_reason is None,
        message_id=message_id,
        conversation_id=conversation_id,
        contact_id=contact_id,
        lead_id=lead_id,
        skip_reason=skip_reason,
    )


def mark_admission_completed(*, session: Session, channel: str, provider_message_id: str) -> None:
    session.execute(
        text(
            """
            UPDATE inbound_message_dedup
            SET processing_status = 'completed',
                processed_at = now()
            WHERE channel = :channel
              AND provider_message_id = :provider_message_id
            """
        ),
        {"channel": channel, "provider_message_id": provider_message_id},
    )


def _already_admitted(*, session: Session, channel: str, provider_message_id: str) -> bool:
    row = session.execute(
        text(
            """
            SELECT 1
            FROM inbound_message_dedup
            WHERE channel = :channel
              AND provider_message_id = :provider_message_id
            """
        ),
        {"channel": channel, "provider_message_id": provider_message_id},
    ).fetchone()
    return row is not None


def _duplicate(event: CanonicalEvent) -> AdmitResult:
    log_event(
        logger,
        "inbound.duplicate",
        channel=event.channel.value,
        provider_message_id=event.provider_message_id,
    )
    return AdmitResult(created=False, duplicate=True, reply_eligible=False, skip_reason="duplicate")


def _resolve_lead(*, session: Session, workspace_id: str, contact_id: UUID, event: CanonicalEvent) -> UUID:
    row = session.execute(
        text(
            """
            SELECT id
            FROM leads
            WHERE workspace_id = :workspace_id
              AND contact_id = :contact_id
              AND stage NOT IN ('won', 'lost', 'on_hold')
              AND created_at >= now() - make_interval(days => CAST(:max_age_days AS integer))
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """
        ),
        {
            "workspace_id": workspace_id,
            "contact_id": str(contact_id),
            "max_age_days": OPEN_LEAD_MAX_AGE_DAYS,
        },
    ).fetchone()

    if row is not None:
        lead_id = UUID(str(row[0]))
    else:
        lead_id = UUID(
            str(
                session.execute(
                    text(
                        """
                        INSERT INTO leads (workspace_id, contact_id, stage, created_at, updated_at)
                        VALUES (:workspace_id, :contact_id, 'new', now(), now())
                        RETURNING id
                        """
                    ),
                    {"workspace_id": workspace_id, "contact_id": str(contact_id)},
                ).scalar_one()
            )
        )
        session.execute(
            text(
                """
                UPDATE conversations
                SET lead_id = :lead_id,
                    updated_at = now()
                WHERE contact_id = :contact_id
                """
            ),
            {"lead_id": str(lead_id), "contact_id": str(contact_id)},
        )
        log_event(logger, "lead.created", lead_id=str(lead_id), contact_id=str(contact_id))

    session.execute(
        text(
            """
            UPDATE leads
            SET last_contact_channel = :channel,
                last_inbound_at = GREATEST(COALESCE(last_inbound_at, :ts), :ts),
                updated_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(lead_id), "channel": event.channel.value, "ts": event.timestamp},
    )
    return lead_id


def _upsert_conversation(
    *,
    session: Session,
    workspace_id: str,
    contact_id: UUID,
    lead_id: UUID,
    channel: str,
    resurrect_days: int,
) -> dict:
    row = (
        session.execute(
            text(
                """
                INSERT INTO conversations (
                  workspace_id,
                  contact_id,
                  lead_id,
                  channel,
                  status,
                  unread_count,
                  created_at,
                  updated_at
                )
                VALUES (:workspace_id, :contact_id, :lead_id, lower(:channel), 'open', 0, now(), now())
                ON CONFLICT (workspace_id, contact_id, channel) DO UPDATE
                SET lead_id = EXCLUDED.lead_id,
                    status = 'open',
                    unread_count = CASE
                      WHEN conversations.deleted_at IS NOT NULL
                       AND COALESCE(conversations.last_message_at, conversations.updated_at)
                           < now() - make_interval(days => CAST(:resurrect_days AS integer))
                        THEN 0
                      ELSE conversations.unread_count
                    END,
                    deleted_at = NULL,
                    updated_at = now()
                RETURNING id, assigned_user_id, (xmax = 0) AS inserted
                """
            ),
            {
                "workspace_id": workspace_id,
                "contact_id": str(contact_id),
                "lead_id": str(lead_id),
                "channel": channel,
                "resurrect_days": resurrect_days,
            },
        )
        .mappings()
        .one()
    )
    return dict(row)


def _ineligibility(*, event: CanonicalEvent, conversation: dict, settings: Settings) -> str | None:
    if event.event_type == "lead":
        return "lead_event"
    if conversation.get("assigned_user_id"):
        return "assigned"
    if not event.has_content:
        return "no_content"
    if event.channel.value not in settings.auto_reply_channels:
        return "channel_disabled"
