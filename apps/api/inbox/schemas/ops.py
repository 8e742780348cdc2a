from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class OpsJobItem(BaseModel):
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


class OpsJobsResponse(BaseModel):
    items: list[OpsJobItem]


class OpsJobsSummaryResponse(BaseModel):
    counts: dict[str, int]
    stuck: int
    oldest_queued_at: datetime | None
    stuck_threshold_seconds: int


class OpsReplayResponse(BaseModel):
    status: str
    job_id: UUID


class OpsMergeResponse(BaseModel):
    groups: int
    merged_contacts: int
    canonical_contact_ids: list[UUID]


class OpsChannelCheckItem(BaseModel):
    channel: str
    ok: bool
    missing: list[str]


class OpsChannelCheckResponse(BaseModel):
    ok: bool
    channels: list[OpsChannelCheckItem]
