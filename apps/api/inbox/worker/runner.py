from __future__ import annotations

import logging
import os
import socket
import time
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from inbox.core.config import Settings, get_settings
from inbox.core.logs import log_event
from inbox.core.metrics import observe_outbound_job
from inbox.db.session import get_sessionmaker
from inbox.models.enums import JobStatus
from inbox.services.replies import ReplyGenerator
from inbox.services.tasks import create_follow_up_task
from inbox.worker.errors import PermanentJobError
from inbox.worker.jobs.outbound_reply import ChannelClientFactory, process_outbound_job

logger = logging.getLogger("inbox.worker")


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass(frozen=True)
class WorkerConfig:
    poll_interval_seconds: float = 1.0
    batch_size: int = 10
    worker_id: str = field(default_factory=default_worker_id)


@dataclass(frozen=True)
class BatchResult:
    processed: list[UUID]
    failed: list[UUID]

    def as_response(self) -> dict:
        return {
            "processed": len(self.processed),
            "failed": len(self.failed),
            "job_ids": {
                "processed": [str(j) for j in self.processed],
                "failed": [str(j) for j in self.failed],
            },
        }


def backoff_seconds(attempts: int) -> int:
    return 2**attempts


def run_worker_forever(
    config: WorkerConfig,
    *,
    reply_generator: ReplyGenerator,
    client_for: ChannelClientFactory,
) -> None:
    while True:
        result = run_outbound_batch(
            max_jobs=config.batch_size,
            worker_id=config.worker_id,
            reply_generator=reply_generator,
            client_for=client_for,
        )
        if not result.processed and not result.failed:
            time.sleep(config.poll_interval_seconds)


def run_outbound_batch(
    *,
    max_jobs: int,
    worker_id: str,
    reply_generator: ReplyGenerator,
    client_for: ChannelClientFactory,
    session_factory: sessionmaker | None = None,
    settings: Settings | None = None,
) -> BatchResult:
    """Claim up to ``max_jobs`` due jobs and drive each to its next state."""
    settings = settings or get_settings()
    session = (session_factory or get_sessionmaker())()
    processed: list[UUID] = []
    failed: list[UUID] = []
    try:
        jobs = claim_due_jobs(session=session, worker_id=worker_id, limit=max(0, max_jobs))
        # Claimed rows are 'running' for everyone else from here on.
        session.commit()

        for job in jobs:
            job_id = UUID(str(job["id"]))
            _mark_started(session=session, job_id=job_id)
            session.commit()
            if _run_claimed_job(
                session=session,
                job=job,
                reply_generator=reply_generator,
                client_for=client_for,
                settings=settings,
            ):
                processed.append(job_id)
            else:
                failed.append(job_id)
    finally:
        session.close()

    if processed or failed:
        log_event(
            logger,
            "outbound.batch.completed",
            worker_id=worker_id,
            processed=len(processed),
            failed=len(failed),
        )
    return BatchResult(processed=processed, failed=failed)


def claim_due_jobs(*, session: Session, worker_id: str, limit: int) -> list[dict]:
    if limit <= 0:
        return []
    sql = text(
        """
        WITH due AS (
          SELECT id
          FROM outbound_jobs
          WHERE status = 'queued'
            AND run_at <= now()
          ORDER BY run_at ASC, id ASC
          LIMIT :limit
          FOR UPDATE SKIP LOCKED
        )
        UPDATE outbound_jobs
        SET status = 'running',
            started_at = now(),
            attempts = attempts + 1,
            locked_by = :worker_id,
            updated_at = now()
        WHERE id IN (SELECT id FROM due)
        RETURNING id, workspace_id, conversation_id, inbound_message_id,
                  inbound_provider_message_id, attempts, max_attempts
        """
    )
    rows = session.execute(sql, {"worker_id": worker_id, "limit": limit}).mappings().all()
    return [dict(r) for r in rows]


def _mark_started(*, session: Session, job_id: UUID) -> None:
    # The stuck-job clock starts when work on this job begins, not when the batch was claimed.
    session.execute(
        text(
            """
            UPDATE outbound_jobs
            SET started_at = now(),
                updated_at = now()
            WHERE id = :id
              AND status = 'running'
            """
        ),
        {"id": str(job_id)},
    )


def _run_claimed_job(
    *,
    session: Session,
    job: dict,
    reply_generator: ReplyGenerator,
    client_for: ChannelClientFactory,
    settings: Settings,
) -> bool:
    job_id = UUID(str(job["id"]))
    try:
        outcome = process_outbound_job(
            session=session,
            job=job,
            reply_generator=reply_generator,
            client_for=client_for,
            settings=settings,
        )
    except PermanentJobError as e:
        session.rollback()
        _mark_failed(session=session, job=job, error=str(e), permanent=True)
        _open_failure_task(session=session, job=job, task_type=e.task_type, error=str(e))
        session.commit()
        return False
    except Exception as e:
        session.rollback()
        status = _mark_failed(session=session, job=job, error=str(e) or type(e).__name__, permanent=False)
        if status == JobStatus.failed:
            _open_failure_task(session=session, job=job, task_type="retries_exhausted", error=str(e))
        session.commit()
        return False

    _mark_succeeded(session=session, job_id=job_id, skip_reason=outcome.skip_reason)
    session.commit()
    log_event(
        logger,
        "outbound.job.done",
        job_id=str(job_id),
        skip_reason=outcome.skip_reason,
        was_duplicate=outcome.was_duplicate,
    )
    observe_outbound_job(outcome=outcome.skip_reason or ("duplicate" if outcome.was_duplicate else "sent"))
    return True


def _mark_succeeded(*, session: Session, job_id: UUID, skip_reason: str | None) -> None:
    session.execute(
        text(
            """
            UPDATE outbound_jobs
            SET status = :status,
                skip_reason = :skip_reason,
                completed_at = now(),
                locked_by = NULL,
                updated_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(job_id), "status": JobStatus.done.value, "skip_reason": skip_reason},
    )


def _mark_failed(*, session: Session, job: dict, error: str, permanent: bool) -> JobStatus:
    job_id = str(job["id"])
    attempts = int(job["attempts"])
    max_attempts = int(job["max_attempts"])

    if permanent or attempts >= max_attempts:
        session.execute(
            text(
                """
                UPDATE outbound_jobs
                SET status = :status,
                    last_error = :error,
                    completed_at = now(),
                    locked_by = NULL,
                    updated_at = now()
                WHERE id = :id
                """
            ),
            {"id": job_id, "status": JobStatus.failed.value, "error": error},
        )
        log_event(
            logger,
            "outbound.job.failed",
            level=logging.WARNING,
            job_id=job_id,
            attempts=attempts,
            permanent=permanent,
            error=error,
        )
        observe_outbound_job(outcome="failed")
        return JobStatus.failed

    delay = backoff_seconds(attempts)
    session.execute(
        text(
            """
            UPDATE outbound_jobs
            SET status = :status,
                last_error = :error,
                run_at = now() + make_interval(secs => CAST(:backoff_seconds AS double precision)),
                locked_by = NULL,
                updated_at = now()
            WHERE id = :id
            """
        ),
        {"id": job_id, "status": JobStatus.queued.value, "error": error, "backoff_seconds": delay},
    )
    log_event(
        logger,
        "outbound.job.retry_scheduled",
        job_id=job_id,
        attempts=attempts,
        backoff_seconds=delay,
        error=error,
    )
    observe_outbound_job(outcome="retry")
    return JobStatus.queued


def _open_failure_task(*, session: Session, job: dict, task_type: str, error: str) -> None:
    conv = (
        session.execute(
            text("SELECT contact_id, lead_id, channel FROM conversations WHERE id = :id"),
            {"id": str(job["conversation_id"])},
        )
        .mappings()
        .fetchone()
    )
    create_follow_up_task(
        session=session,
        workspace_id=job["workspace_id"],
        task_type=task_type,
        title=f"Automated reply failed ({task_type.replace('_', ' ')})",
        details=error[:2000],
        contact_id=conv["contact_id"] if conv else None,
        lead_id=conv["lead_id"] if conv else None,
        conversation_id=job["conversation_id"] if conv else None,
        idempotency_key=f"{task_type}:{job['id']}",
    )
