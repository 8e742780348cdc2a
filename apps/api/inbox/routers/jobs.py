from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from inbox.core.config import get_settings
from inbox.core.deps import get_channel_client_factory, get_reply_generator, require_runner_token
from inbox.schemas.jobs import RunOutboundResponse
from inbox.services.replies import ReplyGenerator
from inbox.worker.jobs.outbound_reply import ChannelClientFactory
from inbox.worker.runner import default_worker_id, run_outbound_batch

router = APIRouter(tags=["jobs"], dependencies=[Depends(require_runner_token)])


@router.get("/run-outbound", response_model=RunOutboundResponse)
@router.post("/run-outbound", response_model=RunOutboundResponse)
def run_outbound(
    max_jobs: int | None = Query(default=None, alias="max", ge=1),
    reply_generator: ReplyGenerator = Depends(get_reply_generator),
    client_for: ChannelClientFactory = Depends(get_channel_client_factory),
) -> RunOutboundResponse:
    settings = get_settings()
    limit = min(max_jobs or settings.RUN_OUTBOUND_MAX_BATCH, settings.RUN_OUTBOUND_MAX_BATCH)
    result = run_outbound_batch(
        max_jobs=limit,
        worker_id=f"http:{default_worker_id()}",
        reply_generator=reply_generator,
        client_for=client_for,
        settings=settings,
    )
    return RunOutboundResponse.model_validate(result.as_response())
