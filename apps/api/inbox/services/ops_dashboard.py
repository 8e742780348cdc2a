from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from inbox.core.config import Settings
from inbox.models.enums import JobStatus


@dataclass(frozen=True)
class OpsJobView:
    id: UUID
    conversation_id: UUID
    inbound_message_id: UUID
    status: str
    attempts: int
    max_attempts: int
    last_error: str | None
    skip_reason: str | None
    locked_by: str | None
    run_at: datetime
    started_at: datetime | None
    updated_at: datetime


@dataclass(frozen=True)
class OpsJobsSummaryView:
    counts: dict[str, int]
    stuck: int
    oldest_queued_at: datetime | None


@dataclass(frozen=True)
class ChannelCheckView:
    channel: str
    ok: bool
    missing: list[str]


_JOB_COLUMNS = """
  id,
  conversation_id,
  inbound_message_id,
  status,
  attempts,
  max_attempts,
  last_error,
  skip_reason,
  locked_by,
  run_at,
  started_at,
  updated_at
"""


def get_jobs_summary(*, session: Session, workspace_id: str, stuck_after_seconds: int) -> OpsJobsSummaryView:
    rows = (
        session.execute(
            text(
                """
                SELECT status, COUNT(*) AS c, MIN(run_at) AS oldest_run_at
                FROM outbound_jobs
                WHERE workspace_id = :workspace_id
                GROUP BY status
                """
            ),
            {"workspace_id": workspace_id},
        )
        .mappings()
        .all()
    )
    counts = {s.value: 0 for s in JobStatus}
    oldest_queued_at = None
    for row in rows:
        counts[str(row["status"])] = int(row["c"])
        if str(row["status"]) == JobStatus.queued.value:
            oldest_queued_at = row["oldest_run_at"]

    stuck = len(list_stuck_jobs(session=session, workspace_id=workspace_id, stuck_after_seconds=stuck_after_seconds))
    return OpsJobsSummaryView(counts=counts, stuck=stuck, oldest_queued_at=oldest_queued_at)


def list_stuck_jobs(
    *, session: Session, workspace_id: str, stuck_after_seconds: int, limit: int = 200
) -> list[OpsJobView]:
    rows = (
        session.execute(
            text(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM outbound_jobs
                WHERE workspace_id = :workspace_id
                  AND status = 'running'
                  AND started_at < now() - make_interval(secs => CAST(:threshold AS double precision))
                ORDER BY started_at ASC, id ASC
                LIMIT :limit
                """
            ),
            {"workspace_id": workspace_id, "threshold": stuck_after_seconds, "limit": limit},
        )
        .mappings()
        .all()
    )
    return [_job_view(row) for row in rows]


def list_failed_jobs(*, session: Session, workspace_id: str, limit: int) -> list[OpsJobView]:
    rows = (
        session.execute(
            text(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM outbound_jobs
                WHERE workspace_id = :workspace_id
                  AND status = 'failed'
                ORDER BY updated_at DESC, id DESC
                LIMIT :limit
                """
            ),
            {"workspace_id": workspace_id, "limit": limit},
        )
        .mappings()
        .all()
    )
    return [_job_view(row) for row in rows]


def replay_job(*, session: Session, workspace_id: str, job_id: UUID, stuck_after_seconds: int) -> bool:
    """Requeue a failed job, or a running job that has been stuck past the threshold.

    Attempts are reset so the job gets its full retry budget again. Caller commits.
    """
    row = session.execute(
        text(
            """
            SELECT id
            FROM outbound_jobs
            WHERE id = :id
              AND workspace_id = :workspace_id
              AND (
                status = 'failed'
                OR (
                  status = 'running'
                  AND started_at < now() - make_interval(secs => CAST(:threshold AS double precision))
                )
              )
            FOR UPDATE
            """
        ),
        {"id": str(job_id), "workspace_id": workspace_id, "threshold": stuck_after_seconds},
    ).fetchone()
    if row is None:
        return False

    session.execute(
        text(
            """
            UPDATE outbound_jobs
            SET status = 'queued',
                run_at = now(),
                attempts = 0,
                started_at = NULL,
                completed_at = NULL,
                locked_by = NULL,
                last_error = NULL,
                updated_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(job_id)},
    )
    return True


def check_channels(settings: Settings) -> list[ChannelCheckView]:
    required = {
        "whatsapp": {
            "WHATSAPP_VERIFY_TOKEN|META_VERIFY_TOKEN": settings.WHATSAPP_VERIFY_TOKEN or settings.META_VERIFY_TOKEN,
            "WHATSAPP_ACCESS_TOKEN": settings.WHATSAPP_ACCESS_TOKEN,
            "WHATSAPP_PHONE_NUMBER_ID": settings.WHATSAPP_PHONE_NUMBER_ID,
        },
        "instagram": {
            "META_VERIFY_TOKEN": settings.META_VERIFY_TOKEN,
            "META_PAGE_ACCESS_TOKEN": settings.META_PAGE_ACCESS_TOKEN,
        },
        "facebook": {
            "META_VERIFY_TOKEN": settings.META_VERIFY_TOKEN,
            "META_PAGE_ACCESS_TOKEN": settings.META_PAGE_ACCESS_TOKEN,
        },
        "meta-leads": {
            "META_VERIFY_TOKEN": settings.META_VERIFY_TOKEN,
        },
    }
    out: list[ChannelCheckView] = []
    for channel, keys in required.items():
        missing = sorted(k for k, v in keys.items() if not v)
        out.append(ChannelCheckView(channel=channel, ok=not missing, missing=missing))
    return out


def _job_view(row) -> OpsJobView:
    return OpsJobView(
        id=row["id"],
        conversation_id=row["conversation_id"],
        inbound_message_id=row["inbound_message_id"],
        status=str(row["status"]),
        attempts=int(row["attempts"]),
        max_attempts=int(row["max_attempts"]),
        last_error=row["last_error"],
        skip_reason=row["skip_reason"],
        locked_by=row["locked_by"],
        run_at=row["run_at"],
        started_at=row["started_at"],
        updated_at=row["updated_at"],
    )
