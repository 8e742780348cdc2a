from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from inbox.core.config import get_settings
from inbox.core.deps import require_runner_token
from inbox.db.session import get_session
from inbox.schemas.ops import (
    OpsChannelCheckItem,
    OpsChannelCheckResponse,
    OpsJobItem,
    OpsJobsResponse,
    OpsJobsSummaryResponse,
    OpsMergeResponse,
    OpsReplayResponse,
)
from inbox.services.contacts import merge_duplicate_contacts
from inbox.services.ops_dashboard import (
    OpsJobView,
    check_channels,
    get_jobs_summary,
    list_failed_jobs,
    list_stuck_jobs,
    replay_job,
)

router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[Depends(require_runner_token)])


@router.get("/jobs/summary", response_model=OpsJobsSummaryResponse)
def ops_jobs_summary(session: Session = Depends(get_session)) -> OpsJobsSummaryResponse:
    settings = get_settings()
    view = get_jobs_summary(
        session=session,
        workspace_id=settings.WORKSPACE_ID,
        stuck_after_seconds=settings.STUCK_JOB_THRESHOLD_SECONDS,
    )
    return OpsJobsSummaryResponse(
        counts=view.counts,
        stuck=view.stuck,
        oldest_queued_at=view.oldest_queued_at,
        stuck_threshold_seconds=settings.STUCK_JOB_THRESHOLD_SECONDS,
    )


@router.get("/jobs/stuck", response_model=OpsJobsResponse)
def ops_jobs_stuck(
    limit: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_session),
) -> OpsJobsResponse:
    settings = get_settings()
    rows = list_stuck_jobs(
        session=session,
        workspace_id=settings.WORKSPACE_ID,
        stuck_after_seconds=settings.STUCK_JOB_THRESHOLD_SECONDS,
        limit=limit,
    )
    return OpsJobsResponse(items=[_job_item(r) for r in rows])


@router.get("/jobs/failed", response_model=OpsJobsResponse)
def ops_jobs_failed(
    limit: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_session),
) -> OpsJobsResponse:
    rows = list_failed_jobs(session=session, workspace_id=get_settings().WORKSPACE_ID, limit=limit)
    return OpsJobsResponse(items=[_job_item(r) for r in rows])


@router.post("/jobs/{job_id}/replay", response_model=OpsReplayResponse)
def ops_job_replay(job_id: UUID, session: Session = Depends(get_session)) -> OpsReplayResponse:
    settings = get_settings()
    replayed = replay_job(
        session=session,
        workspace_id=settings.WORKSPACE_ID,
        job_id=job_id,
        stuck_after_seconds=settings.STUCK_JOB_THRESHOLD_SECONDS,
    )
    if not replayed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Failed or stuck job not found")
    session.commit()
    return OpsReplayResponse(status="queued", job_id=job_id)


@router.post("/contacts/merge-duplicates", response_model=OpsMergeResponse)
def ops_merge_duplicate_contacts(session: Session = Depends(get_session)) -> OpsMergeResponse:
    settings = get_settings()
    report = merge_duplicate_contacts(
        session=session,
        workspace_id=settings.WORKSPACE_ID,
        default_region=settings.DEFAULT_PHONE_REGION,
    )
    session.commit()
    return OpsMergeResponse(
        groups=report.groups,
        merged_contacts=report.merged_contacts,
        canonical_contact_ids=report.canonical_ids,
    )


@router.get("/channels/check", response_model=OpsChannelCheckResponse)
def ops_channels_check() -> JSONResponse:
    items = [
        OpsChannelCheckItem(channel=c.channel, ok=c.ok, missing=c.missing) for c in check_channels(get_settings())
    ]
    body = OpsChannelCheckResponse(ok=all(i.ok for i in items), channels=items)
    return JSONResponse(
        status_code=status.HTTP_200_OK if body.ok else status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body.model_dump(),
    )


def _job_item(view: OpsJobView) -> OpsJobItem:
    return OpsJobItem(
        id=view.id,
        conversation_id=view.conversation_id,
        inbound_message_id=view.inbound_message_id,
        status=view.status,
        attempts=view.attempts,
        max_attempts=view.max_attempts,
        last_error=view.last_error,
        skip_reason=view.skip_reason,
        locked_by=view.locked_by,
        run_at=view.run_at,
        started_at=view.started_at,
        updated_at=view.updated_at,
    )
