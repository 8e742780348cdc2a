from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from inbox.core.logs import log_event

logger = logging.getLogger("inbox.worker")


def create_follow_up_task(
    *,
    session: Session,
    workspace_id: str,
    task_type: str,
    title: str,
    idempotency_key: str,
    details: str | None = None,
    contact_id: UUID | None = None,
    lead_id: UUID | None = None,
    conversation_id: UUID | None = None,
) -> UUID | None:
    """Open a human follow-up task once per ``idempotency_key``.

    Returns the new task id, or None when the key already has a task.
    """
    row = session.execute(
        text(
            """
            INSERT INTO tasks (
              workspace_id,
              task_type,
              title,
              details,
              status,
              contact_id,
              lead_id,
              conversation_id,
              idempotency_key,
              created_at
            )
            VALUES (
              :workspace_id,
              :task_type,
              :title,
              :details,
              'open',
              :contact_id,
              :lead_id,
              :conversation_id,
              :idempotency_key,
              now()
            )
            ON CONFLICT (idempotency_key) DO NOTHING
            RETURNING id
            """
        ),
        {
            "workspace_id": workspace_id,
            "task_type": task_type,
            "title": title,
            "details": details,
            "contact_id": str(contact_id) if contact_id else None,
            "lead_id": str(lead_id) if lead_id else None,
            "conversation_id": str(conversation_id) if conversation_id else None,
            "idempotency_key": idempotency_key,
        },
    ).fetchone()
    if row is None:
        return None
    task_id = UUID(str(row[0]))
    log_event(logger, "task.created", task_id=str(task_id), task_type=task_type, idempotency_key=idempotency_key)
    return task_id
