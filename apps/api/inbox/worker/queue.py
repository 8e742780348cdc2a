from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from inbox.core.config import get_settings


def enqueue_outbound_job(
    *,
    session: Session,
    message_id: UUID,
    conversation_id: UUID,
    inbound_provider_message_id: str | None,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
    workspace_id: str | None = None,
) -> UUID:
    """Queue the automated reply for one inbound message.

    Idempotent per inbound message: a second call returns the existing job id.
    """
    settings = get_settings()
    row = session.execute(
        text(
            """
            INSERT INTO outbound_jobs (
              workspace_id,
              conversation_id,
              inbound_message_id,
              inbound_provider_message_id,
              status,
              run_at,
              attempts,
              max_attempts,
              created_at,
              updated_at
            )
            VALUES (
              :workspace_id,
              :conversation_id,
              :message_id,
              :inbound_provider_message_id,
              'queued',
              COALESCE(CAST(:run_at AS timestamptz), now()),
              0,
              :max_attempts,
              now(),
              now()
            )
            ON CONFLICT (inbound_message_id) DO NOTHING
            RETURNING id
            """
        ),
        {
            "workspace_id": workspace_id or settings.WORKSPACE_ID,
            "conversation_id": str(conversation_id),
            "message_id": str(message_id),
            "inbound_provider_message_id": inbound_provider_message_id,
            "run_at": run_at,
            "max_attempts": max_attempts or settings.OUTBOUND_MAX_ATTEMPTS,
        },
    ).fetchone()
    if row is not None:
        return UUID(str(row[0]))

    existing = session.execute(
        text("SELECT id FROM outbound_jobs WHERE inbound_message_id = :message_id"),
        {"message_id": str(message_id)},
    ).scalar_one()
    return UUID(str(existing))
